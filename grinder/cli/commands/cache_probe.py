"""Show what the content cache holds for a URL."""

from __future__ import annotations

from ...config import load_settings
from ...pipeline.cache import ContentCache


def add_cache_probe_parser(subparsers):
    parser = subparsers.add_parser("cache-probe", help="Show cached status for a URL")
    parser.add_argument("url", help="URL to look up (tracking parameters are ignored)")
    parser.set_defaults(func=handle_cache_probe_command)
    return parser


def handle_cache_probe_command(args) -> int:
    cache = ContentCache.from_settings(load_settings())
    probe = cache.probe(args.url)
    if not probe.key:
        print(f"Not a cacheable URL: {args.url!r}")
        return 1

    print(f"URL:     {probe.url}")
    print(f"Key:     {probe.key}")
    print(f"Found:   {probe.reason}")
    if probe.available:
        print(f"Status:  {probe.status or '-'}")
        print(f"Method:  {probe.method or '-'}")
        print(f"Stored:  {probe.meta.get('ts', '-')}")
        print(f"Length:  {probe.meta.get('textLength', '-')}")
        print(f"Files:   {'html ' if probe.has_html else ''}{'txt' if probe.has_txt else ''}")
    return 0
