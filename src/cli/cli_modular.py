"""Command line interface with lazily loaded command modules."""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Callable

# Command modules are imported on demand in _load_command_parser().

logger = logging.getLogger(__name__)


CommandHandler = Callable[[argparse.Namespace], int]

COMMAND_MODULES: dict[str, str] = {
    "discover": "discovery",
    "scrape": "discovery",
    "finalize": "discovery",
    "session-status": "discovery",
    "bulk-scrape": "bulk_scrape",
    "process-batches": "bulk_scrape",
    "automated-pipeline": "automated_pipeline",
}

COMMAND_HELP: dict[str, str] = {
    "discover": "Phase 1: discover candidate article URLs",
    "scrape": "Phase 2: scrape selected URLs of a session",
    "finalize": "Phase 3: create articles from scraped content",
    "session-status": "Show discovery sessions",
    "bulk-scrape": "Scrape and store a list of URLs",
    "process-batches": "Process queued or interrupted URL batches",
    "automated-pipeline": "Run all phases for eligible organizations",
}


def create_parser() -> argparse.ArgumentParser:
    """Create the minimal top-level parser; commands add their own arguments."""
    parser = argparse.ArgumentParser(
        prog="news-pipeline",
        description="Organization news discovery pipeline",
        add_help=False,
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (e.g. INFO, DEBUG)",
    )
    parser.add_argument(
        "command",
        nargs="?",
        help="Command to run (use 'COMMAND --help' for command-specific help)",
    )
    return parser


def _load_command_parser(command: str) -> tuple[Callable, Callable] | None:
    """Import the module for ``command`` and return (add_parser, handler)."""
    module_name = COMMAND_MODULES.get(command)
    if not module_name:
        return None

    try:
        module = __import__(f"src.cli.commands.{module_name}", fromlist=["*"])
    except ImportError as e:
        logger.warning(f"Failed to load command '{command}': {e}")
        return None

    slug = command.replace("-", "_")
    parser_func = getattr(module, f"add_{slug}_parser", None)
    handler_func = getattr(module, f"handle_{slug}_command", None)
    if parser_func and handler_func:
        return (parser_func, handler_func)
    return None


def _print_usage() -> None:
    print("Available commands:", file=sys.stderr)
    for name, description in COMMAND_HELP.items():
        print(f"  {name:<20} - {description}", file=sys.stderr)
    print("Use: news-pipeline COMMAND --help for more info", file=sys.stderr)


def main(
    argv: list[str] | None = None,
    *,
    setup_logging_func: Callable[[str], None] | None = None,
    handler_overrides: dict[str, CommandHandler] | None = None,
) -> int:
    """Main CLI entry point with on-demand command loading."""
    parser = create_parser()
    args, remaining = parser.parse_known_args(argv)

    log_level = getattr(args, "log_level", "INFO") or "INFO"
    if setup_logging_func is None:
        from .context import setup_logging as default_setup_logging

        setup_logging_func = default_setup_logging
    setup_logging_func(log_level)

    command = args.command
    if not command:
        _print_usage()
        return 1

    if handler_overrides and command in handler_overrides:
        override_parser = argparse.ArgumentParser()
        override_parser.add_argument("command")
        override_args, _ = override_parser.parse_known_args([command] + remaining)
        return handler_overrides[command](override_args)

    result = _load_command_parser(command)
    if result is None:
        print(f"Unknown command: {command}", file=sys.stderr)
        return 1
    add_parser_func, handle_func = result

    full_parser = argparse.ArgumentParser(
        prog=f"news-pipeline {command}",
        description=COMMAND_HELP.get(command),
    )
    full_parser.add_argument("--log-level", default=log_level)
    subparsers = full_parser.add_subparsers(dest="command")
    add_parser_func(subparsers)
    full_args = full_parser.parse_args([command] + remaining)
    return handle_func(full_args)


if __name__ == "__main__":
    sys.exit(main())
