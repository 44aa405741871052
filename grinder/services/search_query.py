"""Search-query construction for alternative-source discovery.

Plain queries come from the event title (quoted) or from the URL slug. When
the event is identified by little more than a URL, an AI model is asked to
write the query from whatever context is available.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ..crawler.utils import (
    STOPWORDS,
    ensure_scheme,
    extract_search_terms_from_url,
    get_host,
    is_blank,
    normalize_title_for_search,
)
from ..models.events import FailureContext, TargetEvent
from . import AIProviderError, SearchQueryFatalError
from .ai_client import build_client, clean_json_text

logger = logging.getLogger(__name__)

SITE_DROP_MARKERS = (
    "blocked",
    "captcha",
    "cooldown",
    "forbidden",
    "rate_limit",
    "429",
    "403",
    "401",
    "timeout",
)

MAX_FALLBACK_QUERIES = 3
QUERY_MAX_TOKENS = 200

SYSTEM_PROMPT = " ".join(
    [
        "Generate a short web search query to find the original news article.",
        "Use ONLY the provided context fields. Do not invent names, places, or facts.",
        'If the context is insufficient or looks like an ID/placeholder, return {"queries": []}.',
        "The query should be 3-10 words, no URLs, no site: operators.",
        "You may include the source name if helpful.",
        'Return JSON only: {"query": "..."} or {"queries": []}.',
    ]
)

_SITE_RE = re.compile(r"site:\S+", re.IGNORECASE)
_QUOTE_RE = re.compile(r"[\"']")
_SPACE_RE = re.compile(r"\s+")
_LETTER_RE = re.compile(r"[^\W\d_]", re.UNICODE)
_TOKEN_RE = re.compile(r"[^\w\s]+", re.UNICODE)


def _has_letters(value: str) -> bool:
    return bool(_LETTER_RE.search(value or ""))


def normalize_query(value: Any) -> str:
    if not value:
        return ""
    return _SPACE_RE.sub(" ", str(value)).strip()


def is_weak_search_query(query: Optional[str]) -> bool:
    """A query with no real words, or one short word, is not worth sending."""
    cleaned = _SITE_RE.sub("", str(query or ""))
    cleaned = _QUOTE_RE.sub("", cleaned)
    cleaned = normalize_query(cleaned)
    if not cleaned or not _has_letters(cleaned):
        return True
    alpha_tokens = [token for token in cleaned.split() if _has_letters(token)]
    if not alpha_tokens:
        return True
    if len(alpha_tokens) >= 2:
        return False
    return max(len(token) for token in alpha_tokens) < 4


def should_use_ai_search_query(event: Optional[TargetEvent], queries: list[str]) -> bool:
    if event is None:
        return True
    if not queries:
        return True
    return all(is_weak_search_query(query) for query in queries)


def _original_title(event: TargetEvent) -> str:
    return normalize_title_for_search(
        event.original_title or event.title or (event.content_meta or {}).get("title", "")
    )


def build_required_query(text: str, max_terms: int = 6) -> str:
    """Quote up to ``max_terms`` distinctive words of a title."""
    cleaned = normalize_title_for_search(text)
    if not cleaned:
        return ""
    tokens = [
        token
        for token in _TOKEN_RE.sub(" ", cleaned.lower()).split()
        if len(token) > 2 and token not in STOPWORDS
    ]
    unique: list[str] = []
    for token in tokens:
        if token in unique:
            continue
        unique.append(token)
        if len(unique) >= max_terms:
            break
    if not unique:
        return f'"{cleaned}"'
    return " ".join(f'"{token}"' for token in unique)


def build_search_query(event: TargetEvent, allow_site: bool = True) -> str:
    """Primary news-search query: the quoted title, else ``site:host slug``."""
    title = _original_title(event)
    if title:
        return f'"{title}"'
    if is_blank(event.url):
        return ""
    host = get_host(event.url)
    if not host:
        return event.url
    path = ensure_scheme(event.url).split("?", 1)[0].split("#", 1)[0]
    segments = [segment for segment in path.split("/")[3:] if segment]
    slug = segments[-1] if segments else ""
    terms = re.sub(r"[-_]", " ", slug).strip()
    if not allow_site:
        return terms or host
    return f"site:{host} {terms}" if terms else f"site:{host}"


def should_drop_site_for_fallback(failure: FailureContext | str | None) -> bool:
    """True when the last failure means the original site is unreachable."""
    if failure is None:
        return False
    if isinstance(failure, FailureContext):
        reason = f"{failure.status} {failure.reason}"
    else:
        reason = str(failure)
    reason = reason.lower().strip()
    if not reason:
        return False
    return any(marker in reason for marker in SITE_DROP_MARKERS)


def _terms_from_any_url(url: str) -> str:
    if not url:
        return ""
    terms = extract_search_terms_from_url(url)
    if terms:
        return terms
    if "://" not in url:
        return extract_search_terms_from_url(f"https://{url}")
    return ""


def _unique(queries: list[str], limit: int | None = None) -> list[str]:
    seen: set[str] = set()
    result = []
    for query in queries:
        if not query:
            continue
        key = query.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(query)
    return result[:limit] if limit else result


def build_fallback_search_queries(event: TargetEvent) -> list[str]:
    queries = []
    title = _original_title(event)
    if title:
        queries.append(f'"{title}"')
    if not queries:
        url = event.original_url or event.url or event.alternative_url or event.gn_url
        terms = _terms_from_any_url(url)
        if terms:
            queries.append(f'"{terms}"')
    return _unique(queries, MAX_FALLBACK_QUERIES)


def search_query_source(event: TargetEvent) -> str:
    if _original_title(event):
        return "title"
    if event.original_url or event.url or event.alternative_url or event.gn_url:
        return "url_terms"
    return "unknown"


@dataclass
class SearchQueryContext:
    context: dict[str, str]
    log_context: dict[str, str]
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def used_url(self) -> bool:
        return bool(self.meta.get("used_url"))


def build_search_query_context(
    event: TargetEvent, min_title_chars: int = 20, min_description_chars: int = 40
) -> SearchQueryContext:
    """Context for the query generator.

    The URL is only exposed to the model when neither the title nor the
    description is long enough to search on.
    """
    meta = event.content_meta or {}
    url = event.original_url or event.url or event.gn_url or ""
    host = get_host(url)
    title = _original_title(event)
    description = event.description or meta.get("description") or ""
    title_length = len(title.strip())
    description_length = len(description.strip())
    use_url = not (title_length >= min_title_chars or description_length >= min_description_chars)

    full = {
        "url": url,
        "host": host,
        "title": title,
        "description": description,
        "keywords": event.keywords or meta.get("keywords") or "",
        "date": event.date or meta.get("date") or "",
        "source": event.original_source or meta.get("site_name") or meta.get("source") or "",
    }
    context = dict(full)
    if not use_url:
        context["url"] = ""
        context["host"] = ""
    return SearchQueryContext(
        context=context,
        log_context=full,
        meta={
            "mode": "url" if use_url else "title_desc",
            "title_length": title_length,
            "description_length": description_length,
            "url_length": len(url.strip()),
            "has_title": title_length > 0,
            "has_description": description_length > 0,
            "used_url": use_url,
        },
    )


def parse_queries(raw: str) -> list[str]:
    cleaned = clean_json_text(raw)
    if not cleaned:
        return []
    try:
        parsed = json.loads(cleaned)
    except ValueError:
        return []
    if isinstance(parsed, list):
        return [str(item) for item in parsed]
    if not isinstance(parsed, dict):
        return []
    queries = parsed.get("queries")
    if isinstance(queries, list):
        return [str(item) for item in queries]
    if isinstance(parsed.get("query"), str):
        return [parsed["query"]]
    if isinstance(queries, str):
        return [queries]
    return []


def sanitize_queries(queries: list[str], max_queries: int, max_chars: int = 120) -> list[str]:
    seen: set[str] = set()
    cleaned: list[str] = []
    for query in queries or []:
        normalized = normalize_query(query)
        if not normalized:
            continue
        if max_chars and len(normalized) > max_chars:
            normalized = normalized[:max_chars]
        key = normalized.lower()
        if key in seen:
            continue
        seen.add(key)
        if is_weak_search_query(normalized):
            continue
        cleaned.append(normalized)
        if len(cleaned) >= max_queries:
            break
    return cleaned


def query_schema(max_queries: int) -> dict[str, Any]:
    return {
        "name": "search_queries",
        "schema": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "queries": {
                    "type": "array",
                    "items": {"type": "string"},
                    "maxItems": max_queries,
                }
            },
            "required": ["queries"],
        },
        "strict": True,
    }


@dataclass
class GeneratedQueries:
    queries: list[str]
    provider: str = ""
    model: str = ""
    context: dict[str, str] = field(default_factory=dict)
    context_meta: dict[str, Any] = field(default_factory=dict)
    raw: str = ""
    fallback_used: bool = False
    reason: str = ""
    ai_used: bool = False


class SearchQueryGenerator:
    """Ask an AI model for a search query when the event has only a URL."""

    def __init__(self, settings, client=None, fallback_client=None):
        self.settings = settings
        self.enabled = settings.search_query_enabled
        self.provider = settings.search_query_provider
        self.model = settings.search_query_model
        self.fallback_provider = settings.search_query_fallback_provider
        self.fallback_model = settings.search_query_fallback_model or self.model
        self.max_queries = settings.search_query_max_queries
        self.max_chars = settings.search_query_max_chars
        self._client = client
        self._fallback_client = fallback_client

    def context_for(self, event: TargetEvent) -> SearchQueryContext:
        return build_search_query_context(
            event,
            min_title_chars=self.settings.search_query_min_title_chars,
            min_description_chars=self.settings.search_query_min_description_chars,
        )

    def _client_for(self, provider: str, fallback: bool = False):
        if fallback:
            if self._fallback_client is None:
                self._fallback_client = build_client(provider, self.settings)
            return self._fallback_client
        if self._client is None:
            self._client = build_client(provider, self.settings)
        return self._client

    def _call(self, client, model: str, system: str, user: str) -> str:
        response = client.chat(
            system,
            user,
            model=model,
            temperature=0.0,
            max_tokens=QUERY_MAX_TOKENS,
            json_schema=query_schema(self.max_queries),
        )
        return response.text

    def generate(self, event: TargetEvent) -> GeneratedQueries:
        if not self.enabled:
            return GeneratedQueries(queries=[], provider=self.provider, model=self.model)

        info = self.context_for(event)
        user = "Context:\n" + json.dumps(info.context, indent=2, ensure_ascii=False)
        provider, model = self.provider, self.model
        fallback_used = False
        try:
            raw = self._call(self._client_for(provider), model, SYSTEM_PROMPT, user)
        except AIProviderError as exc:
            if provider != "xai" or self.fallback_provider != "openai":
                raise
            logger.warning(f"Search query generation via xai failed ({exc}); trying openai")
            provider, model = "openai", self.fallback_model
            raw = self._call(self._client_for(provider, fallback=True), model, SYSTEM_PROMPT, user)
            fallback_used = True

        queries = sanitize_queries(parse_queries(raw), self.max_queries, self.max_chars)
        logger.info(f"#{event.id} AI search queries ({provider}/{model}): {queries}")
        return GeneratedQueries(
            queries=queries,
            provider=provider,
            model=model,
            context=info.context,
            context_meta=info.meta,
            raw=raw,
            fallback_used=fallback_used,
            ai_used=True,
        )


def _title_description_query(context: dict[str, str]) -> str:
    title = normalize_title_for_search(context.get("title", ""))
    description = normalize_title_for_search(context.get("description", ""))
    if title and description:
        return f'"{title}" {description}'
    if title:
        return f'"{title}"'
    if description:
        return f'"{description}"'
    return ""


def build_fallback_search_queries_with_ai(
    event: TargetEvent,
    generator: Optional[SearchQueryGenerator],
    allow_ai: bool = True,
    context_builder: Optional[Callable[[TargetEvent], SearchQueryContext]] = None,
) -> GeneratedQueries:
    """Queries for the fallback search, using AI only when the URL is all we have.

    Raises:
        SearchQueryFatalError: AI is needed but disabled or failing.
    """
    if context_builder is not None:
        info = context_builder(event)
    elif generator is not None:
        info = generator.context_for(event)
    else:
        info = build_search_query_context(event)

    if not info.used_url:
        query = _title_description_query(info.log_context)
        return GeneratedQueries(
            queries=[query] if query else [],
            context=info.context,
            context_meta=info.meta,
            reason="title_desc" if query else "title_desc_empty",
        )

    if not allow_ai or generator is None or not generator.enabled:
        raise SearchQueryFatalError(
            "search query unavailable: AI disabled", reason="search_query_disabled"
        )
    try:
        result = generator.generate(event)
    except (AIProviderError, ValueError) as exc:
        raise SearchQueryFatalError(
            f"search query unavailable: {exc}", reason="search_query_failed"
        ) from exc

    mode = (result.context_meta or info.meta).get("mode")
    if result.queries:
        result.reason = "ai_url" if mode == "url" else "ai_title_desc"
    else:
        result.reason = "ai_empty"
    return result
