"""Reader for the usage spool written by the OS usage source.

The usage source appends one JSON object per line. Draining renames the
spool before reading it, so samples appended meanwhile go to a fresh file
and each sample is consumed once.
"""

import logging
from pathlib import Path

from pydantic import ValidationError

from watchwise_shared import AppUsageSample

logger = logging.getLogger(__name__)


class UsageSpool:
    """Consumes usage samples from a JSON lines file."""

    def __init__(self, path: Path):
        self._path = path
        self._processing_path = path.with_suffix(path.suffix + ".processing")

    def append(self, sample: AppUsageSample) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a") as f:
            f.write(sample.model_dump_json() + "\n")

    def drain(self) -> list[AppUsageSample]:
        """Return and remove every spooled sample."""
        # A leftover processing file means the last drain did not finish.
        if not self._processing_path.exists():
            if not self._path.exists():
                return []
            self._path.replace(self._processing_path)

        samples = []
        with self._processing_path.open() as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    samples.append(AppUsageSample.model_validate_json(line))
                except ValidationError:
                    logger.warning("Skipping malformed usage sample on line %d", line_number)
        self._processing_path.unlink()
        logger.debug("Drained %d usage samples", len(samples))
        return samples
