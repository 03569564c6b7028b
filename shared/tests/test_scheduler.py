"""Tests for tickers and the scheduler."""

import threading
from datetime import timedelta

import pytest

from watchwise_shared.scheduler import Scheduler, Ticker


class TestTicker:
    def test_tick_counts_runs_and_logs_failures(self, caplog: pytest.LogCaptureFixture) -> None:
        def boom() -> None:
            raise RuntimeError("boom")

        ticker = Ticker("boom", 60, boom)
        ticker.tick()
        ticker.tick()

        assert ticker.runs == 2
        assert "Scheduled task boom failed" in caplog.text

    def test_rejects_non_positive_interval(self) -> None:
        with pytest.raises(ValueError):
            Ticker("bad", timedelta(0), lambda: None)

    def test_runs_repeatedly_until_stopped(self) -> None:
        ran = threading.Event()
        count = 0

        def task() -> None:
            nonlocal count
            count += 1
            if count >= 3:
                ran.set()

        ticker = Ticker("fast", 0.01, task)
        ticker.start()
        assert ran.wait(2)
        ticker.stop(wait=True, timeout=2)

        assert not ticker.running
        stopped_at = ticker.runs
        threading.Event().wait(0.05)
        assert ticker.runs == stopped_at

    def test_stop_lets_in_flight_tick_finish(self) -> None:
        started = threading.Event()
        release = threading.Event()
        finished = threading.Event()

        def slow() -> None:
            started.set()
            release.wait(2)
            finished.set()

        ticker = Ticker("slow", 60, slow, run_immediately=True)
        ticker.start()
        assert started.wait(2)

        ticker.stop()
        assert not finished.is_set()
        release.set()
        ticker.stop(wait=True, timeout=2)

        assert finished.is_set()
        assert ticker.runs == 1

    def test_cannot_start_twice(self) -> None:
        ticker = Ticker("once", 60, lambda: None)
        ticker.start()
        try:
            with pytest.raises(RuntimeError):
                ticker.start()
        finally:
            ticker.stop(wait=True, timeout=2)


class TestScheduler:
    def test_call_later_runs_once(self) -> None:
        scheduler = Scheduler()
        done = threading.Event()
        scheduler.call_later("later", 0.01, done.set)
        assert done.wait(2)
        scheduler.shutdown()

    def test_shutdown_cancels_pending_calls(self) -> None:
        scheduler = Scheduler()
        done = threading.Event()
        scheduler.call_later("later", timedelta(seconds=30), done.set)
        scheduler.shutdown()
        assert not done.wait(0.05)

    def test_shutdown_stops_tickers(self) -> None:
        scheduler = Scheduler()
        ticker = scheduler.every("tick", 0.01, lambda: None)
        assert scheduler.tickers == [ticker]
        scheduler.shutdown(wait=True)
        assert not ticker.running

    def test_closed_scheduler_rejects_new_work(self) -> None:
        scheduler = Scheduler()
        scheduler.shutdown()
        with pytest.raises(RuntimeError):
            scheduler.every("late", 1, lambda: None)
        with pytest.raises(RuntimeError):
            scheduler.call_later("late", 1, lambda: None)
