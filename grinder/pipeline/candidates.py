"""Alternative candidate engine: classify, deduplicate and rank other sources.

Candidates come from the event's embedded related-articles list, from news
search and from external search. ``CandidateEngine.classify`` splits them
into an ordered ``accepted`` queue and a ``rejected`` list where every entry
carries a machine-readable reason.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from dateutil import parser as date_parser

from ..crawler.cooldown import DomainCooldownTracker
from ..crawler.utils import (
    extract_search_terms_from_url,
    get_host,
    normalize_source,
    normalize_title_key,
    title_matches,
)
from ..models.events import Candidate, TargetEvent
from ..services.agency_search import AgencyLevel, AgencyRegistry

logger = logging.getLogger(__name__)

REJECT_REASONS = (
    "missing_link_or_source",
    "domain_cooldown",
    "date_out_of_range",
    "same_source",
    "same_domain",
    "below_min_agency",
    "duplicate_candidate",
    "filtered",
)

GOOGLE_NEWS_HOST = "news.google.com"


def parse_date(value: Any) -> Optional[datetime]:
    """Parse a date-ish value to a naive UTC datetime, or None."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = date_parser.parse(str(value))
        except (ValueError, OverflowError, TypeError):
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def candidate_domain(candidate: Candidate) -> str:
    """Publisher host; redirect-only candidates fall back to the source key."""
    host = get_host(candidate.link)
    if host and host != GOOGLE_NEWS_HOST:
        return host
    return normalize_source(candidate.source) or host


def event_domain(event: TargetEvent) -> str:
    host = get_host(event.link)
    if host and host != GOOGLE_NEWS_HOST:
        return host
    return normalize_source(event.source) or host


def candidate_title_key(candidate: Candidate) -> str:
    key = normalize_title_key(candidate.title)
    if key:
        return key
    terms = extract_search_terms_from_url(candidate.link)
    return normalize_title_key(terms) if terms else ""


def event_title_key(event: TargetEvent) -> str:
    key = normalize_title_key(event.title or event.original_title)
    if key:
        return key
    terms = extract_search_terms_from_url(event.link)
    return normalize_title_key(terms) if terms else ""


@dataclass
class Classification:
    accepted: list[Candidate] = field(default_factory=list)
    rejected: list[Candidate] = field(default_factory=list)

    def rejected_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for item in self.rejected:
            counts[item.reason] = counts.get(item.reason, 0) + 1
        return counts


class CandidateEngine:
    """Rank alternative sources for an event whose primary source failed."""

    def __init__(
        self,
        registry: AgencyRegistry,
        cooldowns: Optional[DomainCooldownTracker] = None,
        date_window_days: float = 3.0,
        min_level: AgencyLevel | str = AgencyLevel.NICHE,
        deprioritize_undated: bool = False,
    ):
        self.registry = registry
        self.cooldowns = cooldowns or DomainCooldownTracker()
        self.date_window_days = date_window_days
        self.min_level = AgencyLevel.parse(min_level, AgencyLevel.NICHE)
        self.deprioritize_undated = deprioritize_undated

    @classmethod
    def from_settings(cls, settings, registry: AgencyRegistry, cooldowns=None) -> "CandidateEngine":
        return cls(
            registry,
            cooldowns=cooldowns,
            date_window_days=settings.alternative_date_window_days,
            min_level=settings.min_agency_level,
            deprioritize_undated=settings.deprioritize_undated,
        )

    def within_date_window(self, event_date: Optional[datetime], candidate_date: Optional[datetime]) -> bool:
        if not self.date_window_days or self.date_window_days <= 0:
            return True
        if event_date is None or candidate_date is None:
            return True
        diff_days = abs((candidate_date - event_date).total_seconds()) / 86400
        return diff_days <= self.date_window_days

    def _prepare(self, raw: Candidate | dict[str, Any]) -> Candidate:
        candidate = Candidate.from_raw(raw)
        candidate.level = int(self.registry.level(candidate.source, candidate.url))
        candidate.normalized_source = normalize_source(candidate.source)
        candidate.normalized_title = candidate_title_key(candidate)
        candidate.domain = candidate_domain(candidate)
        candidate.parsed_date = parse_date(candidate.date)
        return candidate

    def _sort_key(self, candidate: Candidate) -> tuple:
        rank = candidate.rank if candidate.rank is not None else float("inf")
        undated = 1 if self.deprioritize_undated and candidate.parsed_date is None else 0
        return (-candidate.level, 0 if candidate.has_direct_url else 1, undated, rank)

    def _prefilter_reason(
        self,
        event: TargetEvent,
        candidate: Candidate,
        event_date: Optional[datetime],
        current_source: str,
        current_domain: str,
        current_link: str,
    ) -> str:
        if not candidate.link or not candidate.normalized_source:
            return "missing_link_or_source"
        if candidate.url and self.cooldowns.is_in_cooldown(candidate.url):
            return "domain_cooldown"
        if not self.within_date_window(event_date, candidate.parsed_date):
            return "date_out_of_range"
        if current_source and candidate.normalized_source == current_source:
            return "same_source"
        if current_domain and candidate.domain == current_domain:
            return "same_domain"
        if current_link and candidate.link in (event.url, event.gn_url):
            return "duplicate_candidate"
        if candidate.level < self.min_level:
            return "below_min_agency"
        return ""

    def classify(self, event: TargetEvent, raw_candidates: Iterable[Candidate | dict[str, Any]]) -> Classification:
        result = Classification()
        event_date = parse_date(event.original_date or event.date)
        current_source = normalize_source(event.source)
        current_domain = event_domain(event)
        current_link = event.link

        eligible: list[Candidate] = []
        for raw in raw_candidates or []:
            candidate = self._prepare(raw)
            reason = self._prefilter_reason(
                event, candidate, event_date, current_source, current_domain, current_link
            )
            if reason:
                candidate.reason = reason
                result.rejected.append(candidate)
            else:
                eligible.append(candidate)

        seen_pairs: set[tuple[str, str]] = set()
        seen_domains: set[str] = set()
        titles_by_source: dict[str, list[str]] = {}
        for candidate in sorted(eligible, key=self._sort_key):
            source = candidate.normalized_source
            pair = (source, candidate.domain)
            title_key = candidate.normalized_title
            duplicate = pair in seen_pairs or (candidate.domain and candidate.domain in seen_domains)
            if not duplicate:
                for previous in titles_by_source.get(source, []):
                    if (not title_key and not previous) or title_matches(previous, title_key):
                        duplicate = True
                        break
            if duplicate:
                candidate.reason = "duplicate_candidate"
                result.rejected.append(candidate)
                continue
            seen_pairs.add(pair)
            if candidate.domain:
                seen_domains.add(candidate.domain)
            titles_by_source.setdefault(source, []).append(title_key)
            result.accepted.append(candidate)

        if result.rejected:
            logger.debug(f"#{event.id} rejected candidates: {result.rejected_counts()}")
        return result

    def alternatives(self, event: TargetEvent) -> list[Candidate]:
        """Accepted candidates from the event's own related-articles list."""
        return self.classify(event, event.articles).accepted


def should_expand_alternatives(event: TargetEvent, accepted: list[Candidate]) -> bool:
    """Search for more when there is nothing, or only the event's own source."""
    if not accepted:
        return True
    current_source = normalize_source(event.source)
    if not current_source:
        return True
    return all(normalize_source(item.source) == current_source for item in accepted)


def should_external_search(accepted: list[Candidate]) -> bool:
    """External search helps when no candidate has a direct publisher URL."""
    if not accepted:
        return True
    return all(not item.has_direct_url for item in accepted)


def merge_candidates(event: TargetEvent, candidates: Iterable[Candidate | dict[str, Any]]) -> int:
    """Add search hits about the same story to ``event.articles``.

    A hit is kept when its title key fuzzy-matches the event's and its
    ``(source, link)`` pair is new. Returns the number added.
    """
    target_key = event_title_key(event)
    seen: set[tuple[str, str]] = set()
    for existing in event.articles:
        item = Candidate.from_raw(existing)
        if item.link and item.source:
            seen.add((normalize_source(item.source), item.link))

    added = 0
    for raw in candidates or []:
        item = Candidate.from_raw(raw)
        if not item.link or not item.source:
            continue
        if target_key and not title_matches(target_key, candidate_title_key(item)):
            continue
        key = (normalize_source(item.source), item.link)
        if key in seen:
            continue
        seen.add(key)
        event.articles.append(item.to_dict())
        added += 1
    return added
