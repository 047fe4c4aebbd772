"""multitask-runner command-line entry point.

Runs shell commands concurrently and prints what each one wrote.

Usage:
    multitask-runner -t 120 "a=ffmpeg -i a.mkv a.mp4" "b=ffmpeg -i b.mkv b.mp4"
    multitask-runner --json "echo hello" "echo world"
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Sequence

from . import __version__
from .config import Config, get_config
from .orchestrator import Orchestrator

__all__ = ["main", "parse_commands", "setup_logging"]

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(config: Config, verbose: bool = False) -> None:
    """Configure logging for the CLI.

    Args:
        config: Loaded configuration (log_debug selects the temp log file)
        verbose: Log debug messages to stderr
    """
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        # LOG_DEBUG mode: write to the temp file
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log_handlers.append(stderr_handler)
        log_level = logging.DEBUG if verbose else logging.WARNING

    # Root logger (third-party libraries) stays at WARNING
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    logging.getLogger("multitask_runner").setLevel(log_level)


def parse_commands(items: Sequence[str]) -> dict[str, str]:
    """Turn ``key=command`` arguments into a command mapping.

    An argument without ``=`` before its first space is keyed by its
    position, so ``"echo a=b"`` stays a command.

    Raises:
        ValueError: On an empty command or a duplicate key
    """
    commands: dict[str, str] = {}
    for index, item in enumerate(items):
        head, sep, rest = item.partition("=")
        if sep and head and " " not in head:
            key, command = head, rest
        else:
            key, command = str(index), item
        if not command.strip():
            raise ValueError(f"empty command for key {key!r}")
        if key in commands:
            raise ValueError(f"duplicate key {key!r}")
        commands[key] = command
    return commands


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="multitask-runner",
        description="Run shell commands concurrently and collect their output.",
    )
    parser.add_argument(
        "commands",
        nargs="+",
        metavar="COMMAND",
        help="shell command, optionally prefixed with 'key='",
    )
    parser.add_argument(
        "-t",
        "--timeout",
        type=float,
        default=None,
        help="per-command timeout in seconds (0 = none, default: MTR_TIMEOUT)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="print results as a JSON object keyed by command key",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point.

    Returns:
        0 if every command completed with exit code 0, 1 otherwise,
        2 on usage errors
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    config = get_config()
    setup_logging(config, verbose=args.verbose)
    logger.debug(f"Loaded {config}")

    try:
        commands = parse_commands(args.commands)
    except ValueError as e:
        parser.print_usage(sys.stderr)
        print(f"{parser.prog}: error: {e}", file=sys.stderr)
        return 2

    with Orchestrator(commands, args.timeout) as orchestrator:
        orchestrator.run()
    results = orchestrator.results

    if args.json:
        payload = {key: result.to_dict() for key, result in results.items()}
        print(json.dumps(payload, ensure_ascii=False, indent=2))
    else:
        for key, result in results.items():
            print(f"Command {key} ({result.outcome.value}, exit {result.exit_code}): {result.command}")
            print(f"Output {result.output}")
            print(f"Error {result.error or result.reason or ''}")
            print()

    return 0 if all(result.ok for result in results.values()) else 1


if __name__ == "__main__":
    sys.exit(main())
