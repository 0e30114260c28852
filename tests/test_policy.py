"""
Tests for the run policy state machine.
"""

import threading
from datetime import datetime
from pathlib import Path

from runchange.events import ChangeEvent, EventType
from runchange.policy import RunPolicy, RunState

from conftest import modified


class TestRunPolicy:
    """Decisions made while idle and while running."""

    def test_idle_policy_starts_run(self):
        policy = RunPolicy()

        assert policy.should_run(modified("/tmp/proj/a.txt"))
        assert policy.is_running
        assert policy.state.runs == 1
        assert policy.state.last_run_started_at is not None
        assert policy.state.last_run_finished_at is None

    def test_run_once_drops_events_while_running(self):
        policy = RunPolicy(run_once=True)
        policy.should_run(modified("/tmp/proj/a.txt"))

        assert not policy.should_run(modified("/tmp/proj/b.txt"))
        assert not policy.should_run(modified("/tmp/proj/c.txt"))
        assert policy.finish() is None
        assert not policy.is_running
        assert policy.state.dropped == 2
        assert policy.state.runs == 1

    def test_burst_coalesces_into_one_follow_up(self):
        policy = RunPolicy(run_once=False)
        policy.should_run(modified("/tmp/proj/a.txt"))

        for name in ("b", "c", "d"):
            assert not policy.should_run(modified(f"/tmp/proj/{name}.txt"))

        follow_up = policy.finish()
        assert follow_up == modified("/tmp/proj/d.txt")
        assert policy.is_running
        assert policy.state.runs == 2

        assert policy.finish() is None
        assert not policy.is_running
        assert policy.state.runs == 2

    def test_run_possible_again_after_finish(self):
        policy = RunPolicy(run_once=True)
        policy.should_run(modified("/tmp/proj/a.txt"))
        policy.finish()

        assert policy.should_run(modified("/tmp/proj/a.txt"))

    def test_finish_records_timestamp(self):
        stamps = iter([datetime(2024, 1, 1, 12, 0, 0), datetime(2024, 1, 1, 12, 0, 5)])
        policy = RunPolicy(clock=lambda: next(stamps))

        policy.should_run(modified("/tmp/proj/a.txt"))
        policy.finish()

        assert policy.state.last_run_started_at == datetime(2024, 1, 1, 12, 0, 0)
        assert policy.state.last_run_finished_at == datetime(2024, 1, 1, 12, 0, 5)

    def test_authorize_startup(self):
        policy = RunPolicy()

        event = policy.authorize_startup(Path("/tmp/proj"))

        assert event == ChangeEvent(event_type=EventType.STARTUP, path=Path("/tmp/proj"))
        assert policy.is_running
        assert policy.authorize_startup(Path("/tmp/proj")) is None

    def test_shared_state(self):
        state = RunState()
        policy = RunPolicy(state=state)

        policy.should_run(modified("/tmp/proj/a.txt"))

        assert state.is_running

    def test_wait_idle(self):
        policy = RunPolicy()
        policy.should_run(modified("/tmp/proj/a.txt"))

        assert not policy.wait_idle(timeout=0.05)

        timer = threading.Timer(0.05, policy.finish)
        timer.start()
        try:
            assert policy.wait_idle(timeout=5)
        finally:
            timer.join()

    def test_concurrent_events_start_one_run(self):
        policy = RunPolicy(run_once=True)
        barrier = threading.Barrier(16)
        results = []
        lock = threading.Lock()

        def contend(index):
            barrier.wait()
            decision = policy.should_run(modified(f"/tmp/proj/{index}.txt"))
            with lock:
                results.append(decision)

        threads = [threading.Thread(target=contend, args=(i,)) for i in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1
        assert policy.state.dropped == 15
