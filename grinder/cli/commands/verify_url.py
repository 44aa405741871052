"""Fetch one URL and check it against a title with the match verifier."""

from __future__ import annotations

import logging

from ...config import load_settings
from ...models.events import TargetEvent
from ...services import VerifierUnavailableError
from ..cli_modular import EXIT_FATAL
from ..context import build_pipeline

logger = logging.getLogger(__name__)


def add_verify_url_parser(subparsers):
    parser = subparsers.add_parser("verify-url", help="Fetch a URL and verify it matches a title")
    parser.add_argument("url", help="Candidate article URL")
    parser.add_argument("--title", required=True, help="Title of the original event")
    parser.add_argument("--source", default="", help="Source of the original event")
    parser.add_argument("--date", default="", help="Date of the original event")
    parser.set_defaults(func=handle_verify_url_command)
    return parser


def handle_verify_url_command(args) -> int:
    settings = load_settings()
    pipeline = build_pipeline(settings)
    event = TargetEvent(id="cli", title_en=args.title, source=args.source, date=args.date)
    event.capture_original()

    response = pipeline.fetcher.fetch(args.url)
    if not response.text:
        status = "short" if response.short else (response.skipped_reason or "no_text")
        print(f"No text from {args.url} ({status}, method={response.method or 'fetch'})")
        return 1

    try:
        result = pipeline.verifier.check(event, args.url, response.text, is_fallback=True, method=response.method)
    except VerifierUnavailableError as e:
        logger.error(str(e))
        return EXIT_FATAL

    print(f"Method:     {response.method}")
    print(f"Length:     {len(response.text)}")
    print(f"Status:     {result.status}")
    print(f"Match:      {result.match}")
    print(f"Confidence: {result.confidence:.2f}")
    if result.reason:
        print(f"Reason:     {result.reason}")
    if result.page_summary:
        print(f"Summary:    {result.page_summary}")
    return 0 if result.ok else 1
