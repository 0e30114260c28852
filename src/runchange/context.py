"""Environment handed to the command describing the triggering change."""
from __future__ import annotations

import os
from typing import Dict, Mapping, Optional

from .events import ChangeEvent, EventType

EVENT_VARIABLE = "WHEN_CHANGED_EVENT"
FILE_VARIABLE = "WHEN_CHANGED_FILE"

_EVENT_NAMES = {
    EventType.CREATED: "file_created",
    EventType.MODIFIED: "file_modified",
    EventType.MOVED: "file_moved",
    EventType.DELETED: "file_deleted",
    # attribute changes and the startup run report as modifications
    EventType.CHMOD: "file_modified",
    EventType.STARTUP: "file_modified",
}


def event_name(event_type: EventType) -> str:
    return _EVENT_NAMES[event_type]


def build_env(event: ChangeEvent, base_env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Return the inherited environment plus the two change variables."""

    env = dict(os.environ if base_env is None else base_env)
    env[EVENT_VARIABLE] = event_name(event.event_type)
    env[FILE_VARIABLE] = os.path.abspath(os.fspath(event.path))
    return env
