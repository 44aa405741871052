"""Page metadata (title, description, keywords, date, canonical URL).

JSON-LD wins over meta tags for every field it provides; meta tags are read
in a fixed priority order.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from bs4 import BeautifulSoup, Tag

from .utils import decode_html_entities

logger = logging.getLogger(__name__)

META_FIELDS = ("title", "description", "keywords", "date", "canonical_url", "site_name")

TITLE_SELECTORS = [("property", "og:title"), ("name", "twitter:title"), ("name", "title")]
DESCRIPTION_SELECTORS = [
    ("property", "og:description"),
    ("name", "description"),
    ("name", "twitter:description"),
]
KEYWORD_SELECTORS = [("name", "keywords"), ("name", "news_keywords")]
DATE_SELECTORS = [
    ("property", "article:published_time"),
    ("name", "pubdate"),
    ("name", "publishdate"),
    ("name", "date"),
    ("itemprop", "datePublished"),
    ("property", "og:updated_time"),
]


def _read_meta(soup: BeautifulSoup, selectors: list[tuple[str, str]]) -> str:
    for attr, value in selectors:
        tag = soup.find("meta", attrs={attr: value})
        if not isinstance(tag, Tag):
            continue
        content = tag.get("content") or tag.get("value")
        if content and str(content).strip():
            return decode_html_entities(str(content)).strip()
    return ""


def _read_canonical(soup: BeautifulSoup) -> str:
    for link in soup.find_all("link", href=True):
        rel = link.get("rel") or []
        if isinstance(rel, str):
            rel = rel.split()
        if "canonical" in [value.lower() for value in rel]:
            return decode_html_entities(str(link["href"])).strip()
    return ""


def _keywords_value(value: Any) -> str:
    if isinstance(value, list):
        return ", ".join(str(item).strip() for item in value if str(item).strip())
    return str(value).strip()


def _collect_ld(node: Any, result: dict[str, str], depth: int = 0) -> None:
    if depth > 20:
        return
    if isinstance(node, list):
        for item in node:
            _collect_ld(item, result, depth + 1)
        return
    if not isinstance(node, dict):
        return

    headline = node.get("headline") or node.get("name")
    if headline and isinstance(headline, str) and not result.get("title"):
        result["title"] = headline.strip()
    description = node.get("description")
    if description and isinstance(description, str) and not result.get("description"):
        result["description"] = description.strip()
    keywords = node.get("keywords")
    if keywords and not result.get("keywords"):
        result["keywords"] = _keywords_value(keywords)
    published = node.get("datePublished") or node.get("dateCreated") or node.get("dateModified")
    if published and not result.get("date"):
        result["date"] = str(published).strip()
    main_entity = node.get("mainEntityOfPage")
    if isinstance(main_entity, dict) and not result.get("canonical_url"):
        url = main_entity.get("@id") or main_entity.get("url")
        if url:
            result["canonical_url"] = str(url).strip()

    for value in node.values():
        if isinstance(value, (dict, list)):
            _collect_ld(value, result, depth + 1)


def _extract_ld_meta(soup: BeautifulSoup) -> dict[str, str]:
    result: dict[str, str] = {}
    for script in soup.find_all("script", type="application/ld+json"):
        raw = (script.string or script.get_text() or "").strip()
        if not raw:
            continue
        try:
            _collect_ld(json.loads(raw), result)
        except ValueError:
            continue
    return result


def extract_meta(html: Optional[str]) -> dict[str, str]:
    """Return a metadata dict with every key of ``META_FIELDS`` (possibly empty)."""
    if not html:
        return {}
    soup = BeautifulSoup(html, "html.parser")
    ld = _extract_ld_meta(soup)

    title = ld.get("title") or _read_meta(soup, TITLE_SELECTORS)
    if not title and soup.title and soup.title.get_text().strip():
        title = decode_html_entities(soup.title.get_text()).strip()

    return {
        "title": title or "",
        "description": ld.get("description") or _read_meta(soup, DESCRIPTION_SELECTORS),
        "keywords": ld.get("keywords") or _read_meta(soup, KEYWORD_SELECTORS),
        "date": ld.get("date") or _read_meta(soup, DATE_SELECTORS),
        "canonical_url": ld.get("canonical_url")
        or _read_canonical(soup)
        or _read_meta(soup, [("property", "og:url")]),
        "site_name": _read_meta(soup, [("property", "og:site_name")]),
    }


def has_meta(meta: Optional[dict[str, Any]]) -> bool:
    return bool(meta) and any(bool(value) for value in meta.values())


def merge_meta(meta: Optional[dict[str, Any]], hints: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Fill empty metadata fields from candidate hints; page values win."""
    merged = dict(meta or {})
    for key, value in (hints or {}).items():
        if value and not merged.get(key):
            merged[key] = value
    if merged.get("site_name") and not merged.get("source"):
        merged["source"] = merged["site_name"]
    return merged
