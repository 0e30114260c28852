"""Execute the user's shell command for a triggering change."""
from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional

from .context import event_name
from .events import ChangeEvent

logger = logging.getLogger(__name__)


class CommandExecutionError(Exception):
    """The command could not be spawned, timed out, or exited non-zero."""

    def __init__(self, message: str, *, exit_status: Optional[int] = None):
        super().__init__(message)
        self.exit_status = exit_status


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a single command execution."""

    command: str
    exit_status: Optional[int]
    started_at: datetime
    finished_at: datetime
    error: Optional[CommandExecutionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


class CommandRunner:
    """Runs a shell command line, framing it with verbosity-dependent banners."""

    def __init__(self, *, verbosity: int = 0, quiet: bool = False, timeout: Optional[float] = None):
        self._verbosity = verbosity
        self._quiet = quiet
        self._timeout = timeout

    def execute(self, command: str, env: Mapping[str, str], event: Optional[ChangeEvent] = None) -> CommandResult:
        """Run ``command`` to completion and describe what happened.

        Failures are logged and returned on the result rather than raised so
        that a broken command never takes the watcher down with it.
        """

        banner = self.describe(command, event)
        if banner:
            print(f"==> {banner} <==", flush=True)

        output = subprocess.DEVNULL if self._quiet else None
        started_at = datetime.now()
        started = time.monotonic()
        exit_status: Optional[int] = None
        error: Optional[CommandExecutionError] = None

        logger.debug("Executing command: %s", command)
        try:
            exit_status = self._spawn(command, env, output)
        except subprocess.TimeoutExpired:
            error = CommandExecutionError(f"Command timed out after {self._timeout}s: {command}")
        except OSError as exc:
            error = CommandExecutionError(f"Command could not be started: {command} ({exc})")
        else:
            if exit_status != 0:
                error = CommandExecutionError(
                    f"Command failed (exit {exit_status}): {command}", exit_status=exit_status
                )

        elapsed = time.monotonic() - started
        finished_at = datetime.now()
        if error is not None:
            logger.warning("%s", error)
        else:
            logger.info("Command finished in %.2fs: %s", elapsed, command)
        if self._verbosity > 2:
            status = exit_status if exit_status is not None else "n/a"
            print(f"==> finished in {elapsed:.2f}s (exit {status}) <==", flush=True)

        return CommandResult(
            command=command,
            exit_status=exit_status,
            started_at=started_at,
            finished_at=finished_at,
            error=error,
        )

    def _spawn(self, command: str, env: Mapping[str, str], output: Optional[int]) -> int:
        # A timed command runs in its own process group so a timeout takes
        # down everything the shell started, not just the shell.
        isolate = self._timeout is not None and hasattr(os, "killpg")
        process = subprocess.Popen(
            command,
            shell=True,
            env=dict(env),
            stdout=output,
            stderr=output,
            start_new_session=isolate,
        )
        try:
            return process.wait(timeout=self._timeout)
        except subprocess.TimeoutExpired:
            _kill(process, group=isolate)
            process.wait()
            raise

    def describe(self, command: str, event: Optional[ChangeEvent]) -> str:
        """Build the banner text; each verbosity level adds to the one below."""

        if self._verbosity < 1:
            return ""

        parts = []
        if self._verbosity > 2:
            parts.append(datetime.now().strftime("%Y-%m-%d %H:%M:%S"))
        if event is not None:
            if self._verbosity > 1:
                parts.append(f"{event_name(event.event_type)} {event.path}")
            else:
                parts.append(event.path.name or str(event.path))
        if self._verbosity > 1:
            parts.append(f"$ {command}")
        return " ".join(parts)


def _kill(process: "subprocess.Popen[bytes]", *, group: bool) -> None:
    try:
        if group:
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        # Already gone.
        pass
