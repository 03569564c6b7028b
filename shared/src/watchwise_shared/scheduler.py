"""Periodic and deferred task scheduling on background threads.

A `Ticker` runs one callable at a fixed interval; `Scheduler` owns a set of
tickers and one-shot timers so a process can start and stop them together.
Stopping only prevents future runs; a run already in progress completes.
"""

import logging
import threading
from collections.abc import Callable
from datetime import timedelta

logger = logging.getLogger(__name__)


def _seconds(interval: timedelta | float) -> float:
    if isinstance(interval, timedelta):
        return interval.total_seconds()
    return float(interval)


class Ticker:
    """Runs ``fn`` every ``interval`` on a daemon thread."""

    def __init__(
        self,
        name: str,
        interval: timedelta | float,
        fn: Callable[[], object],
        run_immediately: bool = False,
    ):
        self.name = name
        self._interval = _seconds(interval)
        if self._interval <= 0:
            raise ValueError(f"Ticker {name} needs a positive interval")
        self._fn = fn
        self._run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError(f"Ticker {self.name} already started")
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.debug("Started ticker %s (every %.0fs)", self.name, self._interval)

    def stop(self, wait: bool = False, timeout: float | None = None) -> None:
        """Stop future ticks. With ``wait``, block until an in-flight tick ends."""
        self._stop.set()
        if wait and self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def tick(self) -> None:
        """Run the task once. Failures are logged; the next tick retries."""
        try:
            self._fn()
        except Exception:
            logger.exception("Scheduled task %s failed", self.name)
        finally:
            self.runs += 1

    def _run(self) -> None:
        if self._run_immediately and not self._stop.is_set():
            self.tick()
        while not self._stop.wait(self._interval):
            self.tick()
        logger.debug("Ticker %s stopped", self.name)


class Scheduler:
    """Owns the tickers and deferred calls of one process."""

    def __init__(self) -> None:
        self._tickers: list[Ticker] = []
        self._timers: list[threading.Timer] = []
        self._lock = threading.Lock()
        self._closed = False

    @property
    def tickers(self) -> list[Ticker]:
        return list(self._tickers)

    def every(
        self,
        name: str,
        interval: timedelta | float,
        fn: Callable[[], object],
        run_immediately: bool = False,
    ) -> Ticker:
        ticker = Ticker(name, interval, fn, run_immediately=run_immediately)
        with self._lock:
            if self._closed:
                raise RuntimeError("Scheduler is shut down")
            self._tickers.append(ticker)
        ticker.start()
        return ticker

    def call_later(
        self, name: str, delay: timedelta | float, fn: Callable[[], object]
    ) -> threading.Timer:
        """Run ``fn`` once after ``delay``. Failures are logged."""

        def run() -> None:
            try:
                fn()
            except Exception:
                logger.exception("Deferred task %s failed", name)

        timer = threading.Timer(max(_seconds(delay), 0.0), run)
        timer.name = name
        timer.daemon = True
        with self._lock:
            if self._closed:
                raise RuntimeError("Scheduler is shut down")
            self._timers = [t for t in self._timers if t.is_alive()]
            self._timers.append(timer)
        timer.start()
        return timer

    def shutdown(self, wait: bool = False) -> None:
        """Stop all tickers and cancel pending deferred calls."""
        with self._lock:
            self._closed = True
            tickers, timers = list(self._tickers), list(self._timers)
        for timer in timers:
            timer.cancel()
        for ticker in tickers:
            ticker.stop(wait=wait)
        logger.info("Scheduler shut down (%d tickers)", len(tickers))
