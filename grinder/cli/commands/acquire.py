"""Run the acquisition pipeline over pending events."""

from __future__ import annotations

import logging

from ...config import load_settings
from ...pipeline.report import FailureReport
from ..cli_modular import EXIT_ERROR, EXIT_FATAL, EXIT_OK
from ..context import build_pipeline, open_store

logger = logging.getLogger(__name__)


def add_acquire_parser(subparsers):
    parser = subparsers.add_parser("acquire", help="Acquire and verify article text for pending events")
    parser.add_argument("--limit", type=int, default=None, help="Process at most N events")
    parser.add_argument("--id", type=int, default=None, dest="event_id", help="Process only this event id")
    parser.add_argument("--report", default=None, help="Write a JSON failure report to this path")
    parser.set_defaults(func=handle_acquire_command)
    return parser


def handle_acquire_command(args) -> int:
    """
    Handle acquire command.

    Returns:
        Exit code (0 for success, 1 when nothing could be loaded, 2 when a
        fatal error stopped the run)
    """
    settings = load_settings()
    store = open_store(settings)
    events = store.pending_events(limit=args.limit, event_id=args.event_id)
    if not events:
        if args.event_id is not None:
            logger.error(f"Event {args.event_id} not found")
            return EXIT_ERROR
        print("No pending events")
        return EXIT_OK

    pipeline = build_pipeline(settings)

    def persist(event, outcome) -> None:
        store.save_event(event)

    summary = pipeline.orchestrator.run(events, on_done=persist)

    print()
    print("Acquisition summary")
    print("-" * 40)
    print(f"  Processed: {summary.processed}")
    print(f"  Accepted:  {summary.accepted}")
    print(f"  Failed:    {summary.failed}")

    report = FailureReport.from_run(events, summary)
    for status, count in sorted(report.by_status().items()):
        print(f"    {status}: {count}")
    if args.report:
        report.write(args.report)

    if summary.fatal:
        print(f"Run stopped: {summary.fatal}")
        return EXIT_FATAL
    return EXIT_OK
