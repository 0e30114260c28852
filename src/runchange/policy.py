"""Run-policy state machine deciding when the command may start."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from .events import ChangeEvent, EventType

logger = logging.getLogger(__name__)


@dataclass
class RunState:
    """Mutable record of command executions, owned by a single RunPolicy."""

    is_running: bool = False
    rerun_requested: bool = False
    pending_event: Optional[ChangeEvent] = None
    last_run_started_at: Optional[datetime] = None
    last_run_finished_at: Optional[datetime] = None
    runs: int = 0
    dropped: int = 0


class RunPolicy:
    """Serializes run decisions so that at most one command is in flight.

    While a command is running, new events are either dropped (``run_once``)
    or collapsed into a single follow-up run that starts as soon as the
    current one finishes. Only the most recent event of a burst is kept, so
    memory stays constant no matter how many notifications arrive.
    """

    def __init__(
        self,
        *,
        run_once: bool = False,
        state: Optional[RunState] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._run_once = run_once
        self._state = state if state is not None else RunState()
        self._clock = clock
        self._condition = threading.Condition()

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def is_running(self) -> bool:
        with self._condition:
            return self._state.is_running

    def should_run(self, event: ChangeEvent) -> bool:
        """Return True when the command should start now for ``event``."""

        with self._condition:
            state = self._state
            if not state.is_running:
                self._begin()
                return True

            if self._run_once:
                state.dropped += 1
                logger.debug("Command still running; dropping %s", event.path)
                return False

            if state.rerun_requested:
                logger.debug("Follow-up run already queued; coalescing %s", event.path)
            else:
                logger.debug("Command still running; queueing follow-up for %s", event.path)
            state.rerun_requested = True
            state.pending_event = event
            return False

    def authorize_startup(self, path: Path) -> Optional[ChangeEvent]:
        """Authorize the run-at-start execution, independent of any event."""

        event = ChangeEvent(event_type=EventType.STARTUP, path=path)
        if self.should_run(event):
            return event
        return None

    def finish(self) -> Optional[ChangeEvent]:
        """Record completion and return the coalesced follow-up event, if any.

        When an event is returned the policy stays in the running state and
        the caller is expected to execute the command again for it.
        """

        with self._condition:
            state = self._state
            state.last_run_finished_at = self._clock()
            if state.rerun_requested and state.pending_event is not None:
                event = state.pending_event
                state.rerun_requested = False
                state.pending_event = None
                self._begin()
                return event

            state.is_running = False
            state.rerun_requested = False
            state.pending_event = None
            self._condition.notify_all()
            return None

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no command is running; False if ``timeout`` expired."""

        with self._condition:
            return self._condition.wait_for(lambda: not self._state.is_running, timeout=timeout)

    def _begin(self) -> None:
        state = self._state
        state.is_running = True
        state.last_run_started_at = self._clock()
        state.runs += 1
