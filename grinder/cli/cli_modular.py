"""grinder command line: a thin dispatcher over lazily imported command modules."""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Callable
from importlib import import_module

# Command modules are lazy-loaded so that `grinder --help` does not pull in
# selenium, pandas or the AI SDKs.

logger = logging.getLogger(__name__)

CommandHandler = Callable[[argparse.Namespace], int]

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_FATAL = 2

COMMAND_MODULES: dict[str, str] = {
    "load-events": "load_events",
    "acquire": "acquire",
    "cache-probe": "cache_probe",
    "verify-url": "verify_url",
}

COMMAND_HELP: dict[str, str] = {
    "load-events": "Import Target Events from a CSV or JSON file",
    "acquire": "Acquire and verify article text for pending events",
    "cache-probe": "Show what the content cache holds for a URL",
    "verify-url": "Fetch one URL and run the match verifier against a title",
}


def create_parser() -> argparse.ArgumentParser:
    """Top-level parser; only global options and the command name."""
    parser = argparse.ArgumentParser(
        prog="grinder",
        description="grinder - news article acquisition and verification",
        add_help=False,
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Root logger level, e.g. DEBUG or WARNING",
    )
    parser.add_argument(
        "command",
        nargs="?",
        help="One of: " + ", ".join(COMMAND_MODULES),
    )
    return parser


def _load_command_parser(command: str) -> tuple[Callable, Callable] | None:
    """Import a command module and return its ``(add_parser, handler)`` pair.

    Unknown commands and modules missing either function give ``None``.
    """
    module_name = COMMAND_MODULES.get(command)
    if not module_name:
        return None

    try:
        module = import_module(f"grinder.cli.commands.{module_name}")
    except ImportError as e:
        logger.warning(f"Command module for {command} could not be imported: {e}")
        return None

    name = command.replace("-", "_")
    parser_func = getattr(module, f"add_{name}_parser", None)
    handler_func = getattr(module, f"handle_{name}_command", None)
    if parser_func is None or handler_func is None:
        return None
    return parser_func, handler_func


def main(
    argv: list[str] | None = None,
    *,
    setup_logging_func: Callable[[str], None] | None = None,
    handler_overrides: dict[str, CommandHandler] | None = None,
) -> int:
    """Parse ``argv``, configure logging and run one command; returns the exit code."""
    parser = create_parser()
    args, remaining = parser.parse_known_args(argv)

    log_level = getattr(args, "log_level", "INFO") or "INFO"
    if setup_logging_func is None:
        from .context import setup_logging as default_setup_logging

        setup_logging_func = default_setup_logging

    setup_logging_func(log_level)

    command = args.command
    if not command:
        print("Available commands:", file=sys.stderr)
        for name, help_text in COMMAND_HELP.items():
            print(f"  {name:<12} - {help_text}", file=sys.stderr)
        print("Use: grinder COMMAND --help for more info", file=sys.stderr)
        return EXIT_ERROR

    loaded = _load_command_parser(command)
    if loaded is None:
        print(f"Unknown command: {command}", file=sys.stderr)
        return EXIT_ERROR

    add_parser_func, handle_func = loaded

    command_parser = argparse.ArgumentParser(
        prog=f"grinder {command}",
        description=COMMAND_HELP.get(command, f"Run {command} command"),
    )
    command_parser.add_argument("--log-level", default="INFO")
    subparsers = command_parser.add_subparsers(dest="command")
    add_parser_func(subparsers)
    command_args = command_parser.parse_args([command] + remaining)

    if handler_overrides and command in handler_overrides:
        return handler_overrides[command](command_args)
    return handle_func(command_args)


if __name__ == "__main__":
    sys.exit(main())
