"""Raw filesystem event sources feeding the watch engine."""
from __future__ import annotations

import logging
import os
import queue
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .events import ChangeEvent, EventType

logger = logging.getLogger(__name__)


class StartupError(Exception):
    """The event source could not be created or a path could not be registered."""


class TransportError(Exception):
    """An error reported by the event source while watching."""


class SourceClosed(Exception):
    """Raised by :meth:`EventSource.get` once the source is closed and drained."""


SourceItem = Union[ChangeEvent, TransportError]

# (st_mtime_ns, st_size) per file, used to tell content changes from metadata ones.
Snapshot = Dict[Path, Tuple[int, int]]

_CLOSED = object()


class EventSource:
    """In-memory event source: a queue of change events and transport errors.

    Concrete backends register paths with the operating system and feed this
    queue from their own threads; tests feed it directly.
    """

    supports_recursive = False

    def __init__(self) -> None:
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._closed = threading.Event()
        self.registrations: Dict[Path, bool] = {}

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def register(self, path: Path, *, recursive: bool = False) -> None:
        if self.closed:
            raise StartupError(f"Cannot register {path}: event source is closed")
        self.registrations[path] = recursive

    def put_event(self, event: ChangeEvent) -> None:
        self._queue.put(event)

    def put_error(self, error: TransportError) -> None:
        self._queue.put(error)

    def get(self, timeout: Optional[float] = None) -> Optional[SourceItem]:
        """Return the next event or error, or None if ``timeout`` expires."""

        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            # Keep the marker visible to any other reader.
            self._queue.put(_CLOSED)
            raise SourceClosed()
        return item

    def close(self) -> None:
        if self.closed:
            return
        self._closed.set()
        self._queue.put(_CLOSED)


class _ChangeHandler(FileSystemEventHandler):
    """Translates watchdog callbacks into :class:`ChangeEvent` values."""

    def __init__(self, source: "WatchdogEventSource"):
        super().__init__()
        self._source = source

    def on_any_event(self, event: FileSystemEvent) -> None:
        try:
            change = translate_event(event)
        except Exception as exc:  # pragma: no cover - protective logging
            self._source.put_error(TransportError(f"Could not translate {event!r}: {exc}"))
            return
        if change is not None:
            self._source.put_event(self._source.track(change))


class WatchdogEventSource(EventSource):
    """Event source backed by a watchdog observer thread.

    Some backends (inotify among them) report attribute-only changes such as
    ``chmod`` as plain modifications. The source keeps the last seen
    ``(mtime, size)`` of every file under its watches and reports a
    modification that leaves both untouched as :attr:`EventType.CHMOD`.
    """

    supports_recursive = True

    def __init__(self, observer: Optional[Any] = None) -> None:
        super().__init__()
        try:
            self._observer = observer if observer is not None else Observer()
        except OSError as exc:
            raise StartupError(f"Unable to create filesystem observer: {exc}") from exc
        self._handler = _ChangeHandler(self)
        self._watches: Dict[Tuple[Path, bool], Any] = {}
        self._started = False
        self._reported_failure = False
        self._snapshot: Snapshot = {}
        self._snapshot_lock = threading.Lock()

    def register(self, path: Path, *, recursive: bool = False) -> None:
        super().register(path, recursive=recursive)
        key = (path, recursive)
        if key in self._watches:
            return
        seeded = _scan(path, recursive=recursive)
        with self._snapshot_lock:
            for file_path, signature in seeded.items():
                self._snapshot.setdefault(file_path, signature)
        try:
            self._watches[key] = self._observer.schedule(
                self._handler, os.fspath(path), recursive=recursive
            )
        except OSError as exc:
            raise StartupError(f"Unable to watch {path}: {exc}") from exc
        logger.debug("Registered %s (recursive=%s)", path, recursive)
        if not self._started:
            try:
                self._observer.start()
            except OSError as exc:
                raise StartupError(f"Unable to start filesystem observer: {exc}") from exc
            self._started = True

    def track(self, change: ChangeEvent) -> ChangeEvent:
        """Update the file snapshot and reclassify metadata-only modifications.

        Only a modification of a file whose previous state is known can become
        a chmod; the first modification after a create or an unseen file is
        always reported as a content change.
        """

        if change.is_directory:
            return change

        with self._snapshot_lock:
            if change.event_type is EventType.DELETED:
                self._snapshot.pop(change.path, None)
                return change
            if change.previous_path is not None:
                self._snapshot.pop(change.previous_path, None)
            if change.event_type is EventType.CREATED:
                # The writer may still be filling the file in.
                self._snapshot.pop(change.path, None)
                return change

            previous = self._snapshot.get(change.path)
            current = _signature(change.path)
            if current is None:
                self._snapshot.pop(change.path, None)
            else:
                self._snapshot[change.path] = current

        if change.event_type is EventType.MODIFIED and previous is not None and previous == current:
            logger.debug("Metadata-only change: %s", change.path)
            return replace(change, event_type=EventType.CHMOD)
        return change

    def get(self, timeout: Optional[float] = None) -> Optional[SourceItem]:
        item = super().get(timeout=timeout)
        if item is None and self._started and not self.closed and not self._observer.is_alive():
            if not self._reported_failure:
                self._reported_failure = True
                self.close()
                return TransportError("Filesystem observer stopped unexpectedly")
        return item

    def close(self) -> None:
        if self.closed:
            return
        super().close()
        if self._started:
            self._observer.unschedule_all()
            self._observer.stop()
            self._observer.join(timeout=5.0)
        logger.debug("Event source closed")


def translate_event(event: FileSystemEvent) -> Optional[ChangeEvent]:
    """Map a watchdog event onto a ChangeEvent; None for ignored kinds."""

    if isinstance(event, DirModifiedEvent):
        # Reported for the parent whenever a child changes.
        return None

    is_directory = bool(event.is_directory)
    if isinstance(event, (FileMovedEvent, DirMovedEvent)):
        return ChangeEvent(
            event_type=EventType.MOVED,
            path=Path(_decode(event.dest_path)),
            previous_path=Path(_decode(event.src_path)),
            is_directory=is_directory,
        )

    kind = _KIND_BY_CLASS.get(type(event))
    if kind is None:
        return None
    return ChangeEvent(event_type=kind, path=Path(_decode(event.src_path)), is_directory=is_directory)


_KIND_BY_CLASS = {
    FileCreatedEvent: EventType.CREATED,
    DirCreatedEvent: EventType.CREATED,
    FileModifiedEvent: EventType.MODIFIED,
    FileDeletedEvent: EventType.DELETED,
    DirDeletedEvent: EventType.DELETED,
}


def _decode(path: Union[str, bytes]) -> str:
    return os.fsdecode(path)


def _signature(path: Path) -> Optional[Tuple[int, int]]:
    try:
        stat = path.stat()
    except OSError:
        return None
    return (stat.st_mtime_ns, stat.st_size)


def _scan(root: Path, *, recursive: bool) -> Snapshot:
    results: Snapshot = {}
    if not root.is_dir():
        return results
    try:
        for path in _iter_paths(root, recursive=recursive):
            if not path.is_file():
                continue
            signature = _signature(path)
            if signature is not None:
                results[path] = signature
    except OSError as exc:
        logger.debug("Could not scan %s: %s", root, exc)
    return results


def _iter_paths(root: Path, *, recursive: bool) -> Iterable[Path]:
    if recursive:
        yield from root.rglob("*")
    else:
        yield from root.glob("*")
