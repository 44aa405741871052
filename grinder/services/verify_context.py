"""Original-article context handed to the match verifier.

Built once per event from the caller's identification (URL, title, source,
date), enriched with metadata and a text snippet from the original page when
it can be fetched, then cached on the event.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from ..crawler.metadata import extract_meta
from ..crawler.text import html_to_text
from ..crawler.utils import normalize_title_for_search
from ..models.events import TargetEvent
from .verification import clamp_text

logger = logging.getLogger(__name__)

_STYLE_RE = re.compile(r"<style[\s\S]*?</style>", re.IGNORECASE)


def extract_text_snippet(html: str, limit: int = 0) -> str:
    if not html:
        return ""
    text = html_to_text(_STYLE_RE.sub("", html)).strip()
    return clamp_text(text, limit)


class VerifyContextBuilder:
    def __init__(self, fetcher, max_chars: int = 0):
        self.fetcher = fetcher
        self.max_chars = max_chars

    def build(self, event: TargetEvent) -> dict[str, Any]:
        if event.verify_context is not None:
            return event.verify_context

        original = event.original
        context: dict[str, Any] = {
            "url": (original.url if original else "") or event.url,
            "gnUrl": (original.gn_url if original else "") or event.gn_url,
            "title": event.original_title,
            "source": event.original_source,
            "date": event.original_date,
            "description": event.description or "",
            "keywords": event.keywords or "",
            "textSnippet": "",
        }

        if context["url"] and self.fetcher is not None:
            html = self.fetcher.fetch_html(context["url"])
            if html:
                meta = extract_meta(html)
                for key in ("title", "description", "keywords", "date"):
                    if meta.get(key):
                        context[key] = meta[key]
                context["textSnippet"] = extract_text_snippet(html, self.max_chars)
            else:
                logger.debug(f"No original page for verify context: {context['url']}")

        context["title"] = normalize_title_for_search(context["title"])
        event.verify_context = context
        return context
