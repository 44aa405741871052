"""Disk-backed article cache.

Every URL maps to two files under the cache directory, named by the sha256
of the tracking-free, scheme-normalized URL:

``<key>.html``::

    <!--
    url: https://example.com/story
    status: ok
    method: fetch
    ts: 2026-02-01T10:00:00+00:00
    textLength: 5120
    v: 1
    -->
    <html>...

``<key>.txt``::

    # url: https://example.com/story
    # status: ok
    # ...

    Title line

    Article text

Header contract:

* keys are written in a fixed order (``url, status, method, ts, textLength``)
  followed by the format version ``v``;
* empty values are omitted, never written as ``key:`` with nothing after it;
* values are single-line: embedded line breaks collapse to one space and
  ``-->`` is escaped as ``--&gt;`` so it can never close the HTML comment;
* readers accept any key order, lowercase keys, and treat a bare line
  without ``:`` as the URL (headers written before keys were introduced);
* a file without a header is a bare body with empty metadata.

Status values: ``ok``, ``mismatch``, ``short``, ``blocked`` or empty.
``mismatch``, ``short`` and ``blocked`` are terminal for that URL within a
run; they never stop a different URL from being tried.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from ..crawler.text import extract_title_from_html
from ..crawler.utils import content_address, is_blank, normalize_cache_url, source_from_url
from ..models.events import TargetEvent

logger = logging.getLogger(__name__)

HEADER_VERSION = 1
META_KEYS = ("url", "status", "method", "ts", "textLength")
TERMINAL_STATUSES = ("mismatch", "short", "blocked")
DEFAULT_MAX_TEXT_LENGTH = 30000

_LINE_BREAK_RE = re.compile(r"[\r\n]+")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _escape_value(value: Any) -> str:
    text = _LINE_BREAK_RE.sub(" ", str(value)).strip()
    return text.replace("-->", "--&gt;")


def format_meta_lines(meta: dict[str, Any]) -> list[str]:
    """Serialize metadata into ``key: value`` lines, skipping empty values."""
    lines = []
    for key in META_KEYS:
        value = meta.get(key)
        if value is None or value == "":
            continue
        escaped = _escape_value(value)
        if escaped:
            lines.append(f"{key}: {escaped}")
    if lines:
        lines.append(f"v: {HEADER_VERSION}")
    return lines


def parse_meta_lines(block: str) -> dict[str, str]:
    meta: dict[str, str] = {}
    for raw in (block or "").splitlines():
        line = raw.strip()
        if not line:
            continue
        if ":" not in line or line.lower().startswith(("http://", "https://")):
            meta.setdefault("url", line)
            continue
        key, value = line.split(":", 1)
        key = key.strip()
        if not key:
            continue
        # textLength keeps its camelCase spelling on disk
        key = "textLength" if key.lower() == "textlength" else key.lower()
        meta[key] = value.strip()
    return meta


def split_html_header(raw: str) -> tuple[dict[str, str], str]:
    if not raw or not raw.startswith("<!--"):
        return {}, raw or ""
    end = raw.find("-->")
    if end == -1:
        return {}, raw
    meta = parse_meta_lines(raw[4:end])
    html = raw[end + 3 :]
    if html.startswith("\n"):
        html = html[1:]
    return meta, html


def split_txt_header(raw: str) -> tuple[dict[str, str], str]:
    if not raw:
        return {}, ""
    lines = raw.split("\n")
    meta_lines = []
    index = 0
    while index < len(lines) and lines[index].startswith("#"):
        meta_lines.append(re.sub(r"^#\s?", "", lines[index]))
        index += 1
    # Exactly one blank line separates the header from the title line
    if meta_lines and index < len(lines) and not lines[index].strip():
        index += 1
    return parse_meta_lines("\n".join(meta_lines)), "\n".join(lines[index:])


def build_html(html: str, meta: dict[str, Any]) -> str:
    lines = format_meta_lines(meta)
    header = "<!--\n" + "\n".join(lines) + "\n-->\n" if lines else ""
    return header + (html or "")


def build_txt(title: str, text: str, meta: dict[str, Any]) -> str:
    lines = [f"# {line}" for line in format_meta_lines(meta)]
    header = "\n".join(lines) + "\n\n" if lines else ""
    return f"{header}{title or ''}\n\n{text or ''}"


def split_title_body(body: str) -> tuple[str, str]:
    """Split a .txt body into its title line and the article text.

    The title is the first line and is followed by one blank line, even when
    it is empty. A body without that layout is all text.
    """
    title, newline, rest = (body or "").partition("\n")
    if not newline or not rest.startswith("\n"):
        return "", (body or "").strip()
    return title.strip(), rest[1:].strip()


@dataclass
class CacheProbe:
    """What the cache knows about a URL."""

    available: bool
    reason: str
    key: str = ""
    url: str = ""
    html_path: str = ""
    txt_path: str = ""
    has_html: bool = False
    has_txt: bool = False
    meta: dict[str, str] = field(default_factory=dict)

    @property
    def status(self) -> str:
        return (self.meta.get("status") or "").lower()

    @property
    def method(self) -> str:
        return self.meta.get("method") or ""

    @property
    def has_body(self) -> bool:
        return self.has_html or self.has_txt

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class CachedArticle:
    html: str = ""
    text: str = ""
    title: str = ""
    meta: dict[str, str] = field(default_factory=dict)


class ContentCache:
    """Content-addressed article store on local disk."""

    def __init__(self, directory: str = "articles", max_text_length: int = DEFAULT_MAX_TEXT_LENGTH):
        self.directory = directory
        self.max_text_length = max_text_length

    @classmethod
    def from_settings(cls, settings) -> "ContentCache":
        return cls(settings.articles_dir, settings.max_text_length)

    def _paths(self, key: str) -> tuple[str, str]:
        return (
            os.path.join(self.directory, f"{key}.html"),
            os.path.join(self.directory, f"{key}.txt"),
        )

    def _read(self, path: str) -> str:
        try:
            with open(path, encoding="utf-8") as handle:
                return handle.read()
        except FileNotFoundError:
            return ""
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to read cache file {path}: {e}")
            return ""

    def _write(self, path: str, content: str) -> None:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(content)

    def key_for(self, url: Optional[str]) -> tuple[str, str]:
        """Return ``(content_address, normalized_url)``; both empty without a URL."""
        cleaned = normalize_cache_url(url)
        if not cleaned:
            return "", ""
        return content_address(cleaned), cleaned

    def probe(self, url: Optional[str]) -> CacheProbe:
        key, cleaned = self.key_for(url)
        if not key:
            return CacheProbe(available=False, reason="no_url")
        html_path, txt_path = self._paths(key)
        has_html = os.path.exists(html_path)
        has_txt = os.path.exists(txt_path)
        meta: dict[str, str] = {}
        if has_html:
            meta, _ = split_html_header(self._read(html_path))
        if not meta.get("status") and has_txt:
            meta, _ = split_txt_header(self._read(txt_path))
        found = has_html or has_txt
        return CacheProbe(
            available=found,
            reason="found" if found else "missing",
            key=key,
            url=cleaned,
            html_path=html_path,
            txt_path=txt_path,
            has_html=has_html,
            has_txt=has_txt,
            meta=meta,
        )

    def read(self, url: Optional[str]) -> CachedArticle:
        key, _ = self.key_for(url)
        if not key:
            return CachedArticle()
        html_path, txt_path = self._paths(key)
        html_meta, html = split_html_header(self._read(html_path))
        txt_meta, body = split_txt_header(self._read(txt_path))
        title, text = split_title_body(body)
        return CachedArticle(html=html, text=text, title=title, meta=html_meta or txt_meta)

    def save_article(
        self,
        event: TargetEvent,
        html: str,
        text: str,
        url: Optional[str] = None,
        status: str = "",
        method: str = "",
        mutate_event: bool = True,
    ) -> Optional[str]:
        """Write markup and text for a URL (default: the event's URL).

        With ``mutate_event`` the event receives the truncated text and, when
        missing, a title taken from the markup and a source inferred from its
        URL. With ``mutate_event=False`` the event is left exactly as it was;
        this is how rejected bodies are kept as evidence.

        Returns the content address written, or None without a URL.
        """
        body = (text or "")[: self.max_text_length]
        if mutate_event:
            if is_blank(event.title_en) and html:
                extracted = extract_title_from_html(html)
                if extracted:
                    event.title_en = extracted
            if is_blank(event.source) and event.url and "news.google.com" not in event.url:
                inferred = source_from_url(event.url)
                if inferred:
                    event.source = inferred
            event.text = body

        key, cleaned = self.key_for(url if not is_blank(url) else event.url)
        if not key:
            return None
        meta = {
            "url": cleaned,
            "status": status,
            "method": method,
            "ts": _now_iso(),
            "textLength": len(body),
        }
        html_path, txt_path = self._paths(key)
        self._write(html_path, build_html(html or "", meta))
        title = event.title or ("" if mutate_event else extract_title_from_html(html))
        self._write(txt_path, build_txt(title, body, meta))
        logger.debug(f"Cached {cleaned} ({status or 'no status'}, {len(body)} chars)")
        return key

    def write_meta(
        self,
        url: Optional[str],
        status: str = "",
        method: str = "",
        text_length: Optional[int] = None,
        title: str = "",
    ) -> bool:
        """Rewrite only the metadata header; stored bodies are preserved."""
        key, cleaned = self.key_for(url)
        if not key:
            return False
        html_path, txt_path = self._paths(key)
        meta = {
            "url": cleaned,
            "status": status,
            "method": method,
            "ts": _now_iso(),
            "textLength": text_length if text_length is not None else "",
        }
        _, html = split_html_header(self._read(html_path))
        self._write(html_path, build_html(html, meta))

        txt_exists = os.path.exists(txt_path)
        _, body = split_txt_header(self._read(txt_path))
        stored_title, text = split_title_body(body)
        if txt_exists or stored_title or text:
            self._write(txt_path, build_txt(stored_title or title, text, meta))
        return True

    def backfill_meta(self, event: TargetEvent, url: Optional[str] = None) -> bool:
        """Fill a missing URL, title or source on the event from the cached markup."""
        key, _ = self.key_for(url if not is_blank(url) else event.url)
        if not key:
            return False
        html_path, _ = self._paths(key)
        changed = False
        if os.path.exists(html_path):
            meta, html = split_html_header(self._read(html_path))
            if meta.get("url") and is_blank(event.url):
                event.url = meta["url"].strip()
                changed = True
            if is_blank(event.title_en):
                extracted = extract_title_from_html(html)
                if extracted:
                    event.title_en = extracted
                    changed = True
        if is_blank(event.source) and event.url and "news.google.com" not in event.url:
            inferred = source_from_url(event.url)
            if inferred:
                event.source = inferred
                changed = True
        return changed
