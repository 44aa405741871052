"""Article text extraction from raw HTML.

Strategies, in order, each accepted only when the result is longer than the
minimum text length:

1. plain text input (no markup at all)
2. JSON-LD ``articleBody`` / ``text`` / ``description``
3. the longest match among common article-body selectors
4. whole-document HTML-to-text
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)

MIN_TEXT_LENGTH = 400
MAX_HTML_TO_TEXT_CHARS = 4_000_000

ARTICLE_SELECTORS = [
    '[itemprop="articleBody"]',
    "article",
    "main",
    ".article-body",
    ".article-body__content",
    ".story-body",
    ".content__article-body",
    ".ArticleBody",
    ".ArticleBody-articleBody",
]

PAGE_STATE_PATTERNS = {
    "js_required": [
        "enable javascript",
        "javascript is required",
        "requires javascript",
        "please enable javascript",
        "please enable cookies",
    ],
    "blocked": [
        "access denied",
        "request blocked",
        "forbidden",
        "service unavailable",
        "unusual traffic",
        "automated requests",
        "temporarily blocked",
    ],
    "paywall": [
        "subscribe to continue",
        "subscribe to read",
        "subscription required",
        "subscriber-only",
        "sign in to continue",
        "log in to continue",
        "please subscribe",
        "paywall",
        "metered",
    ],
    "consent": [
        "cookie consent",
        "cookie preferences",
        "privacy settings",
        "gdpr",
        "accept cookies",
        "accept all cookies",
        "manage cookies",
        "cookie policy",
    ],
}

_STYLE_RE = re.compile(r"<style[\s\S]*?</style>", re.IGNORECASE)
_TAG_PRESENT_RE = re.compile(r"<[a-z][\s\S]*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")
_DROP_TAGS = ("script", "style", "noscript", "template", "svg", "iframe")
_BLOCK_TAGS = (
    "p", "div", "br", "li", "h1", "h2", "h3", "h4", "h5", "h6",
    "blockquote", "section", "article", "tr", "pre", "figcaption",
)


def strip_html_fast(html: Optional[str], limit: int = MAX_HTML_TO_TEXT_CHARS) -> str:
    """Regex tag strip, used for oversized markup and previews."""
    value = html or ""
    if limit and len(value) > limit:
        value = value[:limit]
    value = _TAG_RE.sub(" ", value)
    return _SPACE_RE.sub(" ", value).strip()


def _soup_to_text(node: Tag) -> str:
    for tag in node.find_all(_DROP_TAGS):
        tag.decompose()
    for tag in node.find_all(_BLOCK_TAGS):
        tag.insert_before("\n")
        tag.insert_after("\n")
    text = node.get_text(" ")
    lines = [_SPACE_RE.sub(" ", line).strip() for line in text.splitlines()]
    text = "\n".join(line for line in lines if line)
    return _BLANK_LINES_RE.sub("\n\n", text).strip()


def html_to_text(html: Optional[str], limit: int = MAX_HTML_TO_TEXT_CHARS) -> str:
    """Readable text for an HTML fragment; oversized input uses ``strip_html_fast``."""
    if not html:
        return ""
    if len(html) > limit:
        logger.debug(f"HTML too large for html_to_text ({len(html)} chars)")
        return strip_html_fast(html, limit)
    return _soup_to_text(BeautifulSoup(html, "html.parser"))


def _collect_json_text(node: Any, buckets: dict[str, list[str]], depth: int = 0) -> None:
    if depth > 20:
        return
    if isinstance(node, list):
        for item in node:
            _collect_json_text(item, buckets, depth + 1)
        return
    if not isinstance(node, dict):
        return
    for key, bucket in (("articleBody", "body"), ("text", "text"), ("description", "desc")):
        value = node.get(key)
        if isinstance(value, str) and value:
            buckets[bucket].append(value)
    for value in node.values():
        if isinstance(value, (dict, list)):
            _collect_json_text(value, buckets, depth + 1)


def _extract_json_ld_text(soup: BeautifulSoup, min_length: int) -> Optional[str]:
    buckets: dict[str, list[str]] = {"body": [], "text": [], "desc": []}
    for script in soup.find_all("script", type="application/ld+json"):
        raw = (script.string or script.get_text() or "").strip()
        if not raw:
            continue
        try:
            _collect_json_text(json.loads(raw), buckets)
        except ValueError:
            continue
    for name in ("body", "text", "desc"):
        if buckets[name]:
            candidate = max(buckets[name], key=len)
            if len(candidate) > min_length:
                return candidate.strip()
            return None
    return None


def _extract_dom_text(soup: BeautifulSoup, min_length: int, limit: int) -> Optional[str]:
    best = ""
    for selector in ARTICLE_SELECTORS:
        for node in soup.select(selector):
            text = html_to_text(node.decode_contents(), limit)
            if len(text) > len(best):
                best = text
    if len(best) > min_length:
        return best
    return None


def extract_text(
    html: Optional[str],
    min_length: int = MIN_TEXT_LENGTH,
    limit: int = MAX_HTML_TO_TEXT_CHARS,
) -> Optional[str]:
    """Return article text longer than ``min_length``, or None."""
    if not html:
        return None
    cleaned = _STYLE_RE.sub("", html)
    if not _TAG_PRESENT_RE.search(cleaned):
        plain = cleaned.strip()
        return plain if len(plain) > min_length else None

    if len(cleaned) <= limit:
        soup = BeautifulSoup(cleaned, "html.parser")
        text = _extract_json_ld_text(soup, min_length)
        if text:
            return text
        text = _extract_dom_text(soup, min_length, limit)
        if text:
            return text

    text = html_to_text(cleaned, limit)
    if not text or len(text) <= min_length:
        return None
    return text


def classify_page_state(html: Optional[str], title: str = "") -> dict[str, str]:
    """Label why a page carried no article text.

    Returns ``{"state": ..., "reason": ...}`` where state is one of
    ``js_required``, ``blocked``, ``paywall``, ``consent``, ``empty`` or
    ``unknown`` and reason is the matching phrase.
    """
    sample = f"{title or ''}\n{html or ''}".lower()
    if not sample.strip():
        return {"state": "empty", "reason": "empty"}
    for state, patterns in PAGE_STATE_PATTERNS.items():
        for pattern in patterns:
            if pattern in sample:
                return {"state": state, "reason": pattern}
    return {"state": "unknown", "reason": ""}


def extract_title_from_html(html: Optional[str]) -> str:
    """Best title for a page: og/twitter/meta title, then <title>, then <h1>."""
    if not html:
        return ""
    soup = BeautifulSoup(html[:MAX_HTML_TO_TEXT_CHARS], "html.parser")
    for attr, value in (("property", "og:title"), ("name", "twitter:title"), ("name", "title")):
        meta = soup.find("meta", attrs={attr: value})
        if isinstance(meta, Tag):
            content = meta.get("content")
            if content and str(content).strip():
                return str(content).strip()
    title_tag = soup.find("title")
    if title_tag and title_tag.get_text().strip():
        return title_tag.get_text().strip()
    h1_tag = soup.find("h1")
    if h1_tag:
        return h1_tag.get_text().strip()
    return ""
