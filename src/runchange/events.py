"""Event models shared across watcher components."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional


class EventType(str, Enum):
    """Kinds of filesystem notifications delivered by the event source."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    MOVED = "moved"
    CHMOD = "chmod"
    # Synthetic kind used for the run-at-start execution.
    STARTUP = "startup"


@dataclass(frozen=True)
class ChangeEvent:
    """A single change observed under one of the watched paths."""

    event_type: EventType
    path: Path
    previous_path: Optional[Path] = None
    is_directory: bool = False

    def candidate_paths(self) -> Iterator[Path]:
        """Paths that may make this event interesting, most specific first."""

        yield self.path
        if self.previous_path is not None:
            yield self.previous_path
