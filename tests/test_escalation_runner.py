"""
Tests: scheduled escalation runner.

Covers start/stop lifecycle, double start, failing sweeps, and the
in-flight guard that skips overlapping ticks.
"""

import threading
import time

from flask import current_app

from privileges.services.escalation_runner import ScheduledEscalationRunner


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestRunOnce:
    def test_returns_sweep_result(self):
        runner = ScheduledEscalationRunner(lambda: {"processed": 2, "escalated": 1})
        assert runner.run_once() == {"processed": 2, "escalated": 1}

    def test_failing_sweep_is_caught(self, caplog):
        def boom():
            raise RuntimeError("database unavailable")

        runner = ScheduledEscalationRunner(boom)
        assert runner.run_once() is None
        assert "Error during escalation sweep" in caplog.text
        # the lock is released, so the next tick runs
        assert runner._sweep_lock.acquire(blocking=False)
        runner._sweep_lock.release()

    def test_overlapping_tick_is_skipped(self):
        entered, release = threading.Event(), threading.Event()
        calls = []

        def slow_sweep():
            calls.append(1)
            entered.set()
            release.wait(2)
            return {"processed": 0}

        runner = ScheduledEscalationRunner(slow_sweep)
        worker = threading.Thread(target=runner.run_once)
        worker.start()
        assert entered.wait(2)

        assert runner.run_once() is None
        release.set()
        worker.join(2)
        assert calls == [1]

    def test_runs_inside_app_context(self, app):
        runner = ScheduledEscalationRunner(lambda: current_app.name, app=app)
        assert runner.run_once() == app.name


class TestLifecycle:
    def test_start_runs_immediately_and_stop(self):
        calls = []
        runner = ScheduledEscalationRunner(lambda: calls.append(1), interval_minutes=60)
        runner.start()
        try:
            assert runner.is_active() is True
            assert _wait_for(lambda: len(calls) == 1)
        finally:
            runner.stop()
        assert runner.is_active() is False

    def test_double_start_is_noop(self, caplog):
        calls = []
        runner = ScheduledEscalationRunner(lambda: calls.append(1), interval_minutes=60)
        runner.start()
        try:
            assert _wait_for(lambda: len(calls) == 1)
            runner.start()
            assert "already running" in caplog.text
            time.sleep(0.05)
            assert len(calls) == 1
        finally:
            runner.stop()

    def test_interval_ticks_and_survives_failures(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("first sweep fails")

        runner = ScheduledEscalationRunner(flaky)
        runner.start(interval_minutes=0.001)   # 60 ms
        try:
            assert _wait_for(lambda: len(calls) >= 3)
            assert runner.is_active() is True
        finally:
            runner.stop()

    def test_stop_prevents_further_ticks(self):
        calls = []
        runner = ScheduledEscalationRunner(lambda: calls.append(1))
        runner.start(interval_minutes=0.001)
        assert _wait_for(lambda: len(calls) >= 1)
        runner.stop()
        time.sleep(0.1)
        settled = len(calls)
        time.sleep(0.2)
        assert len(calls) == settled

    def test_stop_when_idle_is_noop(self):
        runner = ScheduledEscalationRunner(lambda: None)
        runner.stop()
        assert runner.is_active() is False

    def test_restart_after_stop(self):
        calls = []
        runner = ScheduledEscalationRunner(lambda: calls.append(1), interval_minutes=60)
        runner.start()
        assert _wait_for(lambda: len(calls) == 1)
        runner.stop()
        runner.start()
        try:
            assert _wait_for(lambda: len(calls) == 2)
        finally:
            runner.stop()
