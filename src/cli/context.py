"""Shared helpers for CLI command modules."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any

from src import config

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = config.LOG_LEVEL) -> None:
    """Configure the root logger for CLI and API processes."""
    numeric = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(
        level=numeric,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
    logging.getLogger("urllib3").setLevel(max(numeric, logging.WARNING))


def print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))
