"""
Shared fixtures for the watcher tests.
"""

import threading
from datetime import datetime
from pathlib import Path
from typing import List, Mapping, Optional, Tuple

import pytest

from runchange.config import Options, WatchTarget
from runchange.events import ChangeEvent, EventType
from runchange.monitor import WatchEngine
from runchange.runner import CommandResult
from runchange.source import EventSource


class RecordingRunner:
    """Stands in for CommandRunner; records calls and can block until released."""

    def __init__(self, block: bool = False) -> None:
        self.calls: List[Tuple[str, Mapping[str, str], Optional[ChangeEvent]]] = []
        self.started = threading.Event()
        self.release = threading.Event()
        if not block:
            self.release.set()

    def execute(self, command, env, event=None) -> CommandResult:
        self.calls.append((command, dict(env), event))
        self.started.set()
        self.release.wait(timeout=10)
        now = datetime.now()
        return CommandResult(command=command, exit_status=0, started_at=now, finished_at=now)

    @property
    def events(self) -> List[Optional[ChangeEvent]]:
        return [event for _command, _env, event in self.calls]


def modified(path: str) -> ChangeEvent:
    return ChangeEvent(event_type=EventType.MODIFIED, path=Path(path))


@pytest.fixture
def project_dir() -> WatchTarget:
    """A directory target that need not exist on disk."""
    return WatchTarget(path=Path("/tmp/proj"), is_directory=True)


@pytest.fixture
def source() -> EventSource:
    return EventSource()


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def make_engine(source, runner):
    """Build an engine around the in-memory source and recording runner."""

    def _make(targets, **option_values) -> WatchEngine:
        option_values.setdefault("command", "echo hi")
        options = Options(**option_values)
        return WatchEngine(
            options,
            targets,
            source,
            runner=runner,
            base_env={"HOME": "/home/tester"},
            poll_interval=0.05,
        )

    return _make
