"""Tests for the usage spool reader."""

from datetime import UTC, datetime
from pathlib import Path

import pytest

from watchwise_device.usage import UsageSpool
from watchwise_shared import AppUsageSample

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=UTC)


@pytest.fixture
def spool_path(tmp_path: Path) -> Path:
    return tmp_path / "spool" / "usage.jsonl"


def _sample(bundle_id: str, duration: float = 60) -> AppUsageSample:
    return AppUsageSample(bundle_id=bundle_id, duration=duration, timestamp=NOW)


def test_drain_returns_samples_once(spool_path: Path) -> None:
    spool = UsageSpool(spool_path)
    spool.append(_sample("com.roblox.client", 120))
    spool.append(_sample("com.tencent.ig"))

    samples = spool.drain()

    assert [s.bundle_id for s in samples] == ["com.roblox.client", "com.tencent.ig"]
    assert samples[0].duration == 120
    assert spool.drain() == []


def test_empty_spool(spool_path: Path) -> None:
    assert UsageSpool(spool_path).drain() == []


def test_malformed_lines_skipped(spool_path: Path) -> None:
    spool_path.parent.mkdir(parents=True)
    spool_path.write_text(
        _sample("com.roblox.client").model_dump_json()
        + "\n"
        + '{"bundle_id": "com.tencent.ig", "duration": -5}\n'
        + "\n"
        + "not json\n"
    )

    samples = UsageSpool(spool_path).drain()

    assert [s.bundle_id for s in samples] == ["com.roblox.client"]


def test_resumes_interrupted_drain(spool_path: Path) -> None:
    spool_path.parent.mkdir(parents=True)
    leftover = spool_path.with_suffix(".jsonl.processing")
    leftover.write_text(_sample("com.roblox.client").model_dump_json() + "\n")

    spool = UsageSpool(spool_path)
    spool.append(_sample("com.tencent.ig"))

    assert [s.bundle_id for s in spool.drain()] == ["com.roblox.client"]
    assert [s.bundle_id for s in spool.drain()] == ["com.tencent.ig"]
