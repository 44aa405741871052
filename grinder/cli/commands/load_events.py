"""Import Target Events from a CSV or JSON file into the event store."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import pandas as pd

from ...config import load_settings
from ..context import open_store

logger = logging.getLogger(__name__)


def read_event_rows(path: str | Path) -> list[dict[str, Any]]:
    """Rows from ``path`` (``.csv``, ``.json`` or ``.jsonl``) with missing values as ``""``."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".csv":
        df = pd.read_csv(path, dtype=str, keep_default_na=False)
    elif suffix in (".json", ".jsonl"):
        df = pd.read_json(path, lines=suffix == ".jsonl", dtype=False)
    else:
        raise ValueError(f"Unsupported file type: {path.suffix or path.name}")
    df = df.astype(object).where(pd.notnull(df), "")
    return df.to_dict(orient="records")


def add_load_events_parser(subparsers):
    parser = subparsers.add_parser("load-events", help="Import Target Events from CSV or JSON")
    parser.add_argument("file", help="CSV, JSON or JSON-lines file with one event per row")
    parser.set_defaults(func=handle_load_events_command)
    return parser


def handle_load_events_command(args) -> int:
    try:
        rows = read_event_rows(args.file)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to read {args.file}: {e}")
        return 1

    store = open_store(load_settings())
    count = store.add_events(rows)
    print(f"Loaded {count} events from {args.file}")
    return 0
