"""Watch loop: drain the event source and dispatch the command."""
from __future__ import annotations

import logging
import os
import signal
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .config import Options, WatchTarget
from .context import build_env
from .events import ChangeEvent, EventType
from .matcher import ExcludeRuleSet, PathMatcher
from .policy import RunPolicy
from .runner import CommandRunner
from .source import EventSource, SourceClosed, StartupError, TransportError

logger = logging.getLogger(__name__)

EventHook = Callable[[ChangeEvent], None]

FAREWELL = "\r- Stopped watching. Bye!"


@dataclass
class EngineStats:
    """Counters emitted by the engine for observability."""

    events_received: int = 0
    events_interesting: int = 0
    transport_errors: int = 0


class WatchEngine:
    """Feeds change events through the matcher and run policy to the runner."""

    def __init__(
        self,
        options: Options,
        targets: Sequence[WatchTarget],
        source: EventSource,
        *,
        runner: Optional[CommandRunner] = None,
        matcher: Optional[PathMatcher] = None,
        policy: Optional[RunPolicy] = None,
        base_env: Optional[Mapping[str, str]] = None,
        poll_interval: float = 0.2,
    ):
        self._options = options
        self._targets = tuple(targets)
        self._source = source
        self._rules = ExcludeRuleSet(options.exclude_patterns)
        self._matcher = matcher or PathMatcher(self._targets, recursive=options.recursive, rules=self._rules)
        self._policy = policy or RunPolicy(run_once=options.run_once)
        self._runner = runner or CommandRunner(
            verbosity=options.verbosity,
            quiet=options.quiet,
            timeout=options.command_timeout,
        )
        self._base_env = base_env
        self._poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._hooks: Dict[EventType, List[EventHook]] = {}
        self._worker: Optional[threading.Thread] = None
        self._stats = EngineStats()
        self._started = False

    @property
    def policy(self) -> RunPolicy:
        return self._policy

    @property
    def stats(self) -> EngineStats:
        return self._stats

    def add_hook(self, event_type: EventType, hook: EventHook) -> None:
        """Call ``hook`` for every event of ``event_type``, interesting or not."""

        self._hooks.setdefault(event_type, []).append(hook)

    def start(self) -> None:
        """Register every target with the source and do the startup run."""

        if self._started:
            return
        if not self._targets:
            raise StartupError("No paths to watch")

        for path, recursive in self._registrations():
            self._source.register(path, recursive=recursive)
        self._started = True
        logger.info(
            "Watching %s path(s) (recursive=%s): %s",
            len(self._targets),
            self._options.recursive,
            ", ".join(str(target.path) for target in self._targets),
        )

        if self._options.run_at_start:
            event = self._policy.authorize_startup(self._targets[0].path)
            if event is not None:
                self._launch(event)

    def run(self) -> int:
        """Run until stopped or until the source closes; returns the exit status."""

        self.start()
        try:
            while not self._stop_event.is_set():
                try:
                    item = self._source.get(timeout=self._poll_interval)
                except SourceClosed:
                    logger.info("Event source closed; stopping")
                    break
                if item is None:
                    continue
                if isinstance(item, TransportError):
                    self._stats.transport_errors += 1
                    logger.error("Event source error: %s", item)
                    continue
                self.dispatch(item)
        except KeyboardInterrupt:
            logger.info("Watcher interrupted by user")
        finally:
            self.shutdown()
        return 0

    def stop(self) -> None:
        """Signal the loop to stop at the next opportunity."""

        self._stop_event.set()

    def install_signal_handlers(self) -> None:
        """Stop cleanly on SIGINT and SIGTERM. Must be called from the main thread."""

        def _handle(signum, _frame):
            logger.debug("Received signal %s", signum)
            self.stop()

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)

    def shutdown(self) -> None:
        """Release the subscription and, if configured, let a running command finish."""

        self._stop_event.set()
        self._source.close()

        grace = self._options.shutdown_grace_period
        if self._policy.is_running:
            if grace > 0:
                logger.info("Waiting up to %.1fs for the running command", grace)
                if not self._policy.wait_idle(timeout=grace):
                    logger.warning("Command still running after %.1fs; leaving it behind", grace)
            else:
                logger.info("Leaving the running command behind")

        logger.info(
            "Watcher stopped after %s events (%s interesting, %s runs)",
            self._stats.events_received,
            self._stats.events_interesting,
            self._policy.state.runs,
        )
        print(FAREWELL, flush=True)

    def dispatch(self, event: ChangeEvent) -> bool:
        """Handle one event; returns True if it started a command run."""

        self._stats.events_received += 1
        logger.debug("event: %s %s", event.event_type.value, event.path)
        self._notify(event)

        if event.event_type is EventType.CREATED and event.is_directory:
            self._register_new_directory(event.path)

        if (
            event.event_type is EventType.MOVED
            and event.previous_path is not None
            and self._matcher.is_excluded(event.path)
        ):
            # Renamed to an ignored name (an editor backup, say): the source is gone.
            event = ChangeEvent(
                event_type=EventType.DELETED,
                path=event.previous_path,
                is_directory=event.is_directory,
            )

        if event.event_type not in self._options.trigger_on:
            return False
        if not any(self._matcher.is_interested(path) for path in event.candidate_paths()):
            return False

        self._stats.events_interesting += 1
        if not self._policy.should_run(event):
            return False
        self._launch(event)
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no command is running."""

        return self._policy.wait_idle(timeout=timeout)

    def _launch(self, event: ChangeEvent) -> None:
        worker = threading.Thread(
            target=self._run_commands,
            args=(event,),
            name="runchange-command",
            daemon=True,
        )
        self._worker = worker
        worker.start()

    def _run_commands(self, event: ChangeEvent) -> None:
        next_event: Optional[ChangeEvent] = event
        while next_event is not None:
            try:
                env = build_env(next_event, self._base_env)
                self._runner.execute(self._options.command, env, next_event)
            except Exception:  # pragma: no cover - protective logging
                logger.exception("Unexpected failure running command for %s", next_event.path)
            finally:
                next_event = self._policy.finish()

    def _notify(self, event: ChangeEvent) -> None:
        for hook in self._hooks.get(event.event_type, ()):
            try:
                hook(event)
            except Exception:  # pragma: no cover - protective logging
                logger.exception("Hook %r failed for event %s", hook, event)

    def _registrations(self) -> Iterable[tuple]:
        """Yield (path, recursive) pairs covering every target."""

        seen = set()
        for target in self._targets:
            if not target.is_directory:
                # Files are observed through their directory; the matcher
                # drops the siblings.
                pairs = [(target.path.parent, False)]
            elif not target.recursive:
                pairs = [(target.path, False)]
            elif self._source.supports_recursive:
                pairs = [(target.path, True)]
            else:
                pairs = [(directory, False) for directory in self._walk_directories(target.path)]

            for pair in pairs:
                if pair not in seen:
                    seen.add(pair)
                    yield pair

    def _walk_directories(self, root: Path) -> Iterable[Path]:
        for dirpath, dirnames, _filenames in os.walk(root):
            dirnames[:] = [
                name for name in dirnames if not self._rules.matches(os.path.join(dirpath, name))
            ]
            yield Path(dirpath)

    def _register_new_directory(self, path: Path) -> None:
        if not self._options.recursive or self._source.supports_recursive:
            return
        if self._rules.matches(path) or not self._matcher.is_interested(path):
            return
        try:
            for directory in self._walk_directories(path):
                self._source.register(directory, recursive=False)
        except StartupError as exc:
            logger.warning("Could not watch new directory %s: %s", path, exc)
