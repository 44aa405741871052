"""Source-authority ranking and agency site search.

The ranking ships as ``grinder/data/agencies.yaml``; ``AGENCIES_FILE``
points at a replacement. A source is looked up by its normalized name, any
alias, or a domain it publishes on. Unknown sources rank as ``NICHE``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any, Optional

import yaml

from ..crawler.utils import get_host, normalize_source
from ..models.events import Candidate, TargetEvent
from .search_query import build_fallback_search_queries

logger = logging.getLogger(__name__)

DEFAULT_AGENCIES_FILE = Path(__file__).resolve().parent.parent / "data" / "agencies.yaml"


class AgencyLevel(IntEnum):
    RESTRICTED = 0
    NICHE = 1
    REGIONAL = 2
    NATIONAL = 3
    MAJOR = 4
    WIRE = 5

    @classmethod
    def parse(cls, value: Any, default: "AgencyLevel | None" = None) -> "AgencyLevel":
        if isinstance(value, AgencyLevel):
            return value
        text = str(value if value is not None else "").strip().upper()
        try:
            if text.lstrip("-").isdigit():
                return cls(int(text))
            return cls[text]
        except (KeyError, ValueError):
            if default is None:
                raise ValueError(f"Unknown agency level: {value!r}") from None
            logger.warning(f"Unknown agency level {value!r}; using {default.name.lower()}")
            return default


@dataclass
class Agency:
    name: str
    level: AgencyLevel
    domains: list[str] = field(default_factory=list)
    aliases: list[str] = field(default_factory=list)


class AgencyRegistry:
    """Lookup table from source names and domains to agency levels."""

    def __init__(self, agencies: Optional[list[Agency]] = None):
        self.agencies = list(agencies or [])
        self._by_key: dict[str, Agency] = {}
        self._by_domain: dict[str, Agency] = {}
        for agency in self.agencies:
            for label in [agency.name, *agency.aliases, *agency.domains]:
                key = normalize_source(label)
                if key:
                    self._by_key.setdefault(key, agency)
            for domain in agency.domains:
                self._by_domain.setdefault(domain.lower().removeprefix("www."), agency)

    @classmethod
    def from_file(cls, path: str | Path | None = None) -> "AgencyRegistry":
        path = Path(path or DEFAULT_AGENCIES_FILE)
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        agencies = []
        for entry in data.get("agencies") or []:
            if not isinstance(entry, dict) or not entry.get("name"):
                continue
            domains = entry.get("domains") or []
            if isinstance(domains, str):
                domains = [domains]
            agencies.append(
                Agency(
                    name=str(entry["name"]),
                    level=AgencyLevel.parse(entry.get("level"), AgencyLevel.NICHE),
                    domains=[str(domain) for domain in domains],
                    aliases=[str(alias) for alias in entry.get("aliases") or []],
                )
            )
        logger.debug(f"Loaded {len(agencies)} agencies from {path}")
        return cls(agencies)

    @classmethod
    def from_settings(cls, settings) -> "AgencyRegistry":
        return cls.from_file(settings.agencies_file or None)

    def find(self, source: Optional[str] = None, url: Optional[str] = None) -> Optional[Agency]:
        host = get_host(url)
        if host:
            parts = host.split(".")
            for index in range(len(parts) - 1):
                agency = self._by_domain.get(".".join(parts[index:]))
                if agency:
                    return agency
        key = normalize_source(source)
        if key:
            return self._by_key.get(key)
        return None

    def level(self, source: Optional[str] = None, url: Optional[str] = None) -> AgencyLevel:
        agency = self.find(source, url)
        return agency.level if agency else AgencyLevel.NICHE

    def ranked(self) -> list[Agency]:
        """Agencies from the highest level down, file order within a level."""
        return sorted(self.agencies, key=lambda agency: -int(agency.level))


class AgencySearch:
    """``site:<domain> <query>`` searches against the top-ranked agencies."""

    def __init__(self, news_search, registry: AgencyRegistry, max_targets: int = 8, max_queries: int = 2):
        self.news_search = news_search
        self.registry = registry
        self.max_targets = max(1, max_targets or 1)
        self.max_queries = max(1, max_queries or 1)

    @classmethod
    def from_settings(cls, settings, news_search, registry: AgencyRegistry) -> "AgencySearch":
        return cls(
            news_search,
            registry,
            max_targets=settings.agency_search_max,
            max_queries=settings.agency_search_query_max,
        )

    def search(self, event: TargetEvent) -> list[Candidate]:
        queries = build_fallback_search_queries(event)[: self.max_queries]
        if not queries:
            return []
        results: list[Candidate] = []
        for agency in self.registry.ranked()[: self.max_targets]:
            if agency.level <= AgencyLevel.RESTRICTED:
                continue
            for domain in agency.domains:
                for query in queries:
                    for hit in self.news_search.search(f"site:{domain} {query}"):
                        item = Candidate.from_raw(hit)
                        item.source = item.source or agency.name
                        item.origin = item.origin or "agency"
                        results.append(item)
        logger.info(f"#{event.id} agency search found {len(results)} results")
        return results
