"""Command-line entry point for the change watcher."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .config import ConfigError, load_config, resolve_options, resolve_targets
from .monitor import WatchEngine
from .source import StartupError, WatchdogEventSource

ENVIRONMENT_HELP = """\
Environment variables:

  - WHEN_CHANGED_EVENT: reflects the current event type that occurs.
      Could be either: file_created, file_modified, file_moved, file_deleted
  - WHEN_CHANGED_FILE: provides the full path of the file that has generated the event.
"""

USAGE = (
    "%(prog)s [options] FILE/DIR COMMAND...\n"
    "       %(prog)s [options] FILE/DIR [FILE/DIR ...] -c COMMAND"
)

_COMMAND_FLAGS = ("-c", "--command")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="run-change",
        usage=USAGE,
        description="Run a command when a file is changed",
        epilog=ENVIRONMENT_HELP,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-r", "--recursive", action="store_true", default=None, help="Watch recursively")
    parser.add_argument("-v", "--verbose", type=int, metavar="NUM", help="Verbose output level (0-3)")
    parser.add_argument(
        "-1",
        "--run-once",
        dest="run_once",
        action="store_true",
        default=None,
        help="Don't re-run command if files changed while command was running",
    )
    parser.add_argument(
        "-s",
        "--run-at-start",
        dest="run_at_start",
        action="store_true",
        default=None,
        help="Run command immediately at start",
    )
    parser.add_argument("-q", "--quiet", action="store_true", default=None, help="Run command quietly")
    parser.add_argument("-c", "--command", help="Command to execute")
    parser.add_argument("--config", help="Path to a YAML configuration file")
    parser.add_argument(
        "--timeout",
        dest="command_timeout",
        type=float,
        metavar="SECONDS",
        help="Kill the command if it runs longer than this",
    )
    parser.add_argument(
        "--grace",
        dest="shutdown_grace_period",
        type=float,
        metavar="SECONDS",
        help="On shutdown, wait this long for a running command (default: 0)",
    )
    parser.add_argument(
        "--trigger-on",
        dest="trigger_on",
        metavar="KINDS",
        help="Comma-separated event kinds that run the command "
        "(created, modified, moved, deleted, chmod; default: all but chmod). "
        "Writing a new file reports created then modified, so with the default "
        "the command runs twice",
    )
    parser.add_argument("--log-level", help="Logging level (DEBUG, INFO, WARNING, ERROR)")
    parser.add_argument("args", nargs=argparse.REMAINDER, metavar="FILE/DIR", help=argparse.SUPPRESS)
    return parser


def split_invocation(arguments: Sequence[str], command: Optional[str]) -> Tuple[List[str], Optional[str]]:
    """Separate watch paths from the command in the trailing arguments.

    ``FILE COMMAND...`` takes the first argument as the only path, while
    ``FILE [FILE ...] -c COMMAND`` (or an earlier ``-c``) makes every argument
    a path.
    """

    remainder = list(arguments)
    for index, token in enumerate(remainder):
        if token in _COMMAND_FLAGS:
            return remainder[:index], " ".join(remainder[index + 1:]) or command
        if token.startswith("--command="):
            return remainder[:index], token.split("=", 1)[1] or command

    if command is not None:
        return remainder, command
    if len(remainder) > 1:
        return remainder[:1], " ".join(remainder[1:])
    return remainder, None


def verbosity_log_level(verbosity: int) -> int:
    if verbosity >= 2:
        return logging.DEBUG
    if verbosity == 1:
        return logging.INFO
    return logging.WARNING


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    paths, command = split_invocation(args.args, args.command)

    if args.log_level:
        level = getattr(logging, args.log_level.upper(), logging.INFO)
    else:
        level = verbosity_log_level(args.verbose or 0)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )

    file_config = None
    try:
        if args.config:
            file_config = load_config(Path(args.config))
        options = resolve_options(
            {
                "command": command,
                "recursive": args.recursive,
                "verbosity": args.verbose,
                "run_once": args.run_once,
                "run_at_start": args.run_at_start,
                "quiet": args.quiet,
                "command_timeout": args.command_timeout,
                "shutdown_grace_period": args.shutdown_grace_period,
                "trigger_on": args.trigger_on,
            },
            file_config,
        )
    except ConfigError as exc:
        logging.error("%s", exc)
        raise SystemExit(2) from exc

    if not args.log_level:
        logging.getLogger().setLevel(verbosity_log_level(options.verbosity))

    watch_paths = [Path(path) for path in paths]
    if not watch_paths and file_config is not None:
        watch_paths = list(file_config.paths)
    if not watch_paths or not options.command.strip():
        parser.print_usage(sys.stderr)
        raise SystemExit(2)

    targets = resolve_targets(watch_paths, recursive=options.recursive)
    try:
        source = WatchdogEventSource()
    except StartupError as exc:
        logging.error("%s", exc)
        raise SystemExit(1) from exc

    engine = WatchEngine(options, targets, source)
    engine.install_signal_handlers()
    try:
        status = engine.run()
    except StartupError as exc:
        source.close()
        logging.error("%s", exc)
        raise SystemExit(1) from exc
    raise SystemExit(status)


if __name__ == "__main__":
    main()
