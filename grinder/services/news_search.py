"""News search: Google News RSS with a SerpAPI fallback.

Google News is queried through its RSS search endpoint and parsed with
feedparser. Each item's description embeds a list of related coverage
(``<ol><li><a href=...>title</a><font>Source</font></li>...``), which is
the primary source of alternative candidates.

Results are cached per query for five minutes. A 429/503 from Google News
starts a ten-minute search cooldown during which SerpAPI's ``google_news``
engine answers instead (results filtered by title relevance).
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Optional
from urllib.parse import quote_plus

import feedparser
import requests
from bs4 import BeautifulSoup

from ..crawler.utils import (
    extract_search_terms_from_url,
    get_host,
    is_blank,
    normalize_source,
    normalize_title_for_search,
    normalize_title_key,
    source_from_url,
)
from ..models.events import Candidate, TargetEvent
from ..utils.rate_limiter import RateLimiter
from .search_query import build_fallback_search_queries, build_search_query

logger = logging.getLogger(__name__)

GOOGLE_NEWS_RSS_URL = "https://news.google.com/rss/search"
GOOGLE_NEWS_DEFAULTS = "hl=en-US&gl=US&ceid=US:en"
SERPAPI_URL = "https://serpapi.com/search.json"

SEARCH_CACHE_TTL = 5 * 60
SEARCH_COOLDOWN_SECONDS = 10 * 60
SEARCH_COOLDOWN_STATUSES = (429, 503)

RSS_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept-Language": "en-US,en;q=0.9",
    "Accept": "application/rss+xml,application/xml;q=0.9,*/*;q=0.8",
}


def _struct_time_to_datetime(value: Any) -> datetime | None:
    try:
        if not value:
            return None
        year, month, day, hour, minute, second = list(value)[:6]
        return datetime(year, month, day, hour, minute, second)
    except (TypeError, ValueError):
        return None


def parse_related_articles(description: Optional[str]) -> list[dict[str, Any]]:
    """Related coverage embedded in a Google News item description."""
    if not description:
        return []
    soup = BeautifulSoup(description, "html.parser")
    container = soup.find("ol")
    if container is None:
        return []
    articles = []
    for index, item in enumerate(container.find_all("li"), start=1):
        link = item.find("a")
        font = item.find("font")
        gn_url = link.get("href", "") if link else ""
        source = font.get_text(strip=True) if font else ""
        if not gn_url or not source:
            continue
        articles.append(
            {
                "titleEn": link.get_text(strip=True),
                "gnUrl": gn_url,
                "source": source,
                "origin": "gn",
                "rank": index,
            }
        )
    return articles


def parse_google_news_feed(content: bytes | str) -> list[Candidate]:
    """Parse a Google News RSS search response into candidates."""
    feed = feedparser.parse(content)
    results = []
    for index, entry in enumerate(getattr(feed, "entries", None) or [], start=1):
        link = str(entry.get("link") or "")
        if not link:
            continue
        source = entry.get("source") or {}
        source_title = source.get("title", "") if isinstance(source, dict) else str(source)
        description = entry.get("description") or entry.get("summary") or ""
        results.append(
            Candidate(
                title=str(entry.get("title") or "").strip(),
                gn_url=link,
                source=str(source_title or "").strip(),
                origin="gn",
                date=_struct_time_to_datetime(entry.get("published_parsed")),
                articles=parse_related_articles(description),
                rank=index,
            )
        )
    return results


def _event_title_key(event: TargetEvent) -> str:
    key = normalize_title_key(event.original_title or event.title)
    if key:
        return key
    terms = extract_search_terms_from_url(event.url or event.gn_url)
    return normalize_title_key(terms) if terms else ""


def title_relevant(event: TargetEvent, candidate: Candidate) -> bool:
    """Loose relevance check for generic search hits."""
    target = _event_title_key(event)
    if not target:
        return False
    cand = normalize_title_key(candidate.title or extract_search_terms_from_url(candidate.url))
    if not cand:
        return False
    if cand == target or cand in target or target in cand:
        return True
    target_tokens = set(target.split())
    cand_tokens = set(cand.split())
    if len(target_tokens) <= 2:
        return False
    common = len(target_tokens & cand_tokens)
    ratio = common / max(len(target_tokens), len(cand_tokens))
    return common >= 2 and ratio >= 0.3


def score_gn_candidate(event: TargetEvent, candidate: Candidate) -> int:
    """Title exact +3 (containment +1), same source +2."""
    target_title = normalize_title_key(event.title)
    target_source = normalize_source(event.source) or normalize_source(source_from_url(event.url))
    cand_title = normalize_title_key(candidate.title)
    cand_source = normalize_source(candidate.source)
    score = 0
    if target_title and cand_title:
        if target_title == cand_title:
            score += 3
        elif target_title in cand_title or cand_title in target_title:
            score += 1
    if target_source and cand_source and target_source == cand_source:
        score += 2
    return score


def build_serpapi_query(event: Optional[TargetEvent], fallback_query: str) -> str:
    if fallback_query or event is None:
        return fallback_query or ""
    title = normalize_title_for_search(event.original_title or event.title)
    if title:
        return f'"{title}"'
    terms = extract_search_terms_from_url(event.url or event.gn_url)
    return f'"{terms}"' if terms else ""


def summarize_results(results: list[Candidate], limit: int = 8) -> list[dict[str, Any]]:
    return [
        {
            "source": item.source,
            "title": " ".join(item.title.split()),
            "url": item.url,
            "gnUrl": item.gn_url,
            "origin": item.origin,
            "rank": item.rank,
        }
        for item in results[:limit]
    ]


def _sample(results: list[Candidate], limit: int = 3) -> str:
    return " | ".join(
        f"{item.source}: {' '.join(item.title.split())} ({item.link})" for item in results[:limit]
    )


class NewsSearchService:
    """Query Google News (and SerpAPI as a fallback) for event coverage."""

    def __init__(
        self,
        settings,
        session: Optional[requests.Session] = None,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], float] = time.time,
        fetch_log=None,
    ):
        self.settings = settings
        self.session = session or requests.Session()
        self.rate_limiter = rate_limiter or RateLimiter(
            settings.gn_search_min_interval, name="gn_search"
        )
        self.clock = clock
        self.fetch_log = fetch_log
        self.timeout = settings.external_search_timeout
        self._cache: dict[str, tuple[float, list[Candidate]]] = {}
        self._cooldown_until = 0.0

    # ------------------------------------------------------------------
    # Cooldown and cache
    # ------------------------------------------------------------------

    def cooldown_remaining(self) -> float:
        return max(0.0, self._cooldown_until - self.clock())

    def set_cooldown(self, seconds: float = SEARCH_COOLDOWN_SECONDS) -> None:
        self._cooldown_until = self.clock() + seconds
        logger.warning(f"Google News search cooling down for {int(seconds)}s")

    def _cached(self, query: str) -> Optional[list[Candidate]]:
        entry = self._cache.get(query)
        if entry and self.clock() - entry[0] < SEARCH_CACHE_TTL:
            return entry[1]
        return None

    def _store(self, query: str, results: list[Candidate]) -> None:
        self._cache[query] = (self.clock(), results)

    # ------------------------------------------------------------------
    # SerpAPI
    # ------------------------------------------------------------------

    def _serpapi(self, params: dict[str, Any]) -> dict[str, Any]:
        if not self.settings.serpapi_api_key:
            return {}
        params = {**params, "api_key": self.settings.serpapi_api_key}
        try:
            response = self.session.get(SERPAPI_URL, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"SerpAPI request failed: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _to_candidate(item: dict[str, Any], index: int, origin: str) -> Candidate:
        rank = item.get("position") or item.get("rank") or item.get("index")
        try:
            rank = int(rank)
        except (TypeError, ValueError):
            rank = index
        link = str(item.get("link") or item.get("url") or "")
        gn_url = ""
        direct_url = link
        if link and get_host(link) == "news.google.com":
            gn_url, direct_url = link, ""
        source = item.get("source")
        if isinstance(source, dict):
            source = source.get("title") or source.get("name") or ""
        if not source and link:
            source = source_from_url(link)
        return Candidate(
            title=str(item.get("title") or ""),
            url=direct_url,
            gn_url=gn_url,
            source=str(source or ""),
            origin=origin,
            rank=rank,
            date=item.get("date") or None,
        )

    def search_serpapi(self, query: str) -> list[Candidate]:
        """Google News results via SerpAPI; only hits with a direct URL are kept."""
        if not query or not self.settings.serpapi_api_key:
            return []
        data = self._serpapi(
            {
                "engine": "google_news",
                "hl": "en",
                "gl": "us",
                "num": self.settings.external_search_max_results,
                "q": query,
            }
        )
        items = []
        for item in data.get("news_results") or []:
            if not isinstance(item, dict):
                continue
            items.append(item)
            items.extend(story for story in item.get("stories") or [] if isinstance(story, dict))
        results = [self._to_candidate(item, index, "serpapi") for index, item in enumerate(items, 1)]
        return [item for item in results if item.source and item.url]

    def search_external(self, query: str) -> list[Candidate]:
        """Generic web search via SerpAPI (``engine=google``)."""
        if not query or not self.settings.serpapi_api_key:
            return []
        data = self._serpapi(
            {"engine": "google", "num": self.settings.external_search_max_results, "q": query}
        )
        results = [
            self._to_candidate(item, index, "external")
            for index, item in enumerate(data.get("organic_results") or [], 1)
            if isinstance(item, dict)
        ]
        return [item for item in results if item.link]

    def _fallback(self, query: str, event: Optional[TargetEvent]) -> list[Candidate]:
        serpapi_query = build_serpapi_query(event, query)
        logger.info(f"SerpAPI query {serpapi_query}")
        results = self.search_serpapi(serpapi_query)
        if event is not None:
            accepted = [item for item in results if title_relevant(event, item)]
            rejected = [item for item in results if item not in accepted]
            logger.info(
                f"SerpAPI results {len(results)} | accepted {len(accepted)} | rejected {len(rejected)}"
            )
            if accepted:
                logger.debug(f"SerpAPI accepted sample {_sample(accepted)}")
            if rejected:
                logger.debug(f"SerpAPI rejected sample {_sample(rejected)}")
            results = accepted
        if results:
            logger.info(f"Google News search fallback (serpapi) returned {len(results)}")
            self._store(query, results)
        return results

    # ------------------------------------------------------------------
    # Google News
    # ------------------------------------------------------------------

    def search(self, query: str, event: Optional[TargetEvent] = None) -> list[Candidate]:
        """Ordered results for ``query``; never raises."""
        if not query:
            return []
        remaining = self.cooldown_remaining()
        if remaining > 0:
            logger.info(f"Google News search cooldown active {int(remaining) + 1}s")
            return self._fallback(query, event)

        cached = self._cached(query)
        if cached is not None:
            return cached

        logger.info(f"Google News query {query}")
        self.rate_limiter.wait()
        url = f"{GOOGLE_NEWS_RSS_URL}?q={quote_plus(query)}&{GOOGLE_NEWS_DEFAULTS}"
        try:
            response = self.session.get(url, headers=RSS_HEADERS, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.warning(f"Google News search failed: {e}")
            return self._fallback(query, event)

        if response.status_code >= 400:
            logger.warning(f"Google News search failed {response.status_code} {response.reason}")
            if response.status_code in SEARCH_COOLDOWN_STATUSES:
                self.set_cooldown()
            return self._fallback(query, event)

        results = parse_google_news_feed(response.content)
        logger.info(f"Google News results {len(results)}")
        if results:
            logger.debug(f"Google News sample {_sample(results)}")
        self._store(query, results)
        return results

    def _log(self, event: TargetEvent, data: dict[str, Any], message: str, level: str) -> None:
        if self.fetch_log is not None:
            self.fetch_log.record({"eventId": event.id, **data}, message, level)
        else:
            logger.log(logging.WARNING if level == "warn" else logging.INFO, message)

    # ------------------------------------------------------------------
    # Event metadata
    # ------------------------------------------------------------------

    def backfill_gn_url(self, event: TargetEvent) -> bool:
        """Find a Google News link for an event that only has a URL/title."""
        if not is_blank(event.gn_url):
            return False
        queries = build_fallback_search_queries(event)
        short_title = normalize_title_for_search(event.title)
        if short_title and event.source:
            queries.insert(0, f'"{short_title}" {event.source}')
        if short_title and event.url:
            host = get_host(event.url)
            if host:
                queries.insert(0, f"site:{host} {short_title}")

        seen: set[str] = set()
        unique: list[str] = []
        for query in queries:
            if query.lower() in seen:
                continue
            seen.add(query.lower())
            unique.append(query)
        if not unique:
            return False

        best: Optional[Candidate] = None
        best_score = -1
        best_rank = float("inf")
        used_query = ""
        for query in unique:
            results = self.search(query, event)
            self._log(
                event,
                {
                    "phase": "gn_backfill_search",
                    "status": "ok" if results else "empty",
                    "query": query,
                    "count": len(results),
                    "results": summarize_results(results),
                },
                f"#{event.id} GN backfill search {len(results)}",
                "info" if results else "warn",
            )
            if not results:
                continue
            used_query = query
            for item in results[:6]:
                score = score_gn_candidate(event, item)
                rank = item.rank if item.rank is not None else float("inf")
                if score > best_score or (score == best_score and rank < best_rank):
                    best, best_score, best_rank = item, score, rank
            if best_score >= 3:
                break

        if best is None:
            if self._backfill_from_external(event, short_title):
                return True
            self._log(
                event,
                {"phase": "gn_backfill", "status": "empty", "queries": unique},
                f"#{event.id} google news link not found",
                "warn",
            )
            return False

        changed = False
        if is_blank(event.title_en) and best.title:
            event.title_en = best.title
            changed = True
        if is_blank(event.source) and best.source:
            event.source = best.source
            changed = True
        if is_blank(event.gn_url) and best.gn_url:
            event.gn_url = best.gn_url
            changed = True
        if changed:
            self._log(
                event,
                {
                    "phase": "gn_backfill",
                    "status": "ok",
                    "query": used_query or unique[0],
                    "source": best.source,
                },
                f"#{event.id} google news link filled",
                "info",
            )
        return changed

    def _backfill_from_external(self, event: TargetEvent, short_title: str) -> bool:
        if not self.settings.serpapi_api_key:
            return False
        queries = []
        if short_title:
            queries.append(f'site:news.google.com "{short_title}"')
            if event.source:
                queries.append(f'site:news.google.com "{short_title}" {event.source}')
        terms = extract_search_terms_from_url(event.url)
        if terms:
            queries.append(f"site:news.google.com {terms}")
        for query in queries[:3]:
            hit = next((item for item in self.search_external(query) if item.gn_url), None)
            if hit is None:
                continue
            event.gn_url = hit.gn_url
            if is_blank(event.title_en) and hit.title:
                event.title_en = hit.title
            if is_blank(event.source) and hit.source:
                event.source = hit.source
            self._log(
                event,
                {"phase": "gn_backfill_external", "status": "ok", "query": query, "source": hit.source},
                f"#{event.id} google news link found via external search",
                "info",
            )
            return True
        return False

    def hydrate(
        self,
        event: TargetEvent,
        decode_url: Optional[Callable[[str], str]] = None,
    ) -> bool:
        """Fill missing title/source/redirect link and related coverage."""
        has_meta = not (is_blank(event.title_en) or is_blank(event.source) or is_blank(event.gn_url))
        has_articles = bool(event.articles)
        if has_meta and has_articles:
            return False

        query = build_search_query(event)
        results = self.search(query, event)
        self._log(
            event,
            {
                "phase": "gn_search",
                "status": "ok" if results else "empty",
                "query": query,
                "count": len(results),
                "results": summarize_results(results),
            },
            f"#{event.id} GN search {len(results)}",
            "info" if results else "warn",
        )
        if not results:
            return False

        best = results[0]
        if is_blank(event.title_en) and best.title:
            event.title_en = best.title
        if is_blank(event.source) and best.source:
            event.source = best.source
        if is_blank(event.gn_url) and best.gn_url:
            event.gn_url = best.gn_url

        if not has_articles:
            articles = list(best.articles) or [
                {"titleEn": item.title, "gnUrl": item.gn_url, "source": item.source, "origin": "gn"}
                for item in results
                if item.gn_url and item.source
            ]
            if articles:
                event.articles = articles

        if is_blank(event.url) and not is_blank(event.gn_url) and decode_url is not None:
            event.url = decode_url(event.gn_url) or ""

        self._log(
            event,
            {"phase": "gn_search", "status": "ok", "query": query},
            f"#{event.id} google news metadata filled",
            "info",
        )
        return True
