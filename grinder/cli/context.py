"""Shared wiring for CLI commands: logging setup and pipeline construction."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import Optional

from ..config import Settings, load_settings
from ..crawler import ArticleFetcher
from ..crawler.browser import BrowserSession
from ..crawler.cooldown import DomainCooldownTracker
from ..models.database import EventStore
from ..pipeline.cache import ContentCache
from ..pipeline.candidates import CandidateEngine
from ..pipeline.fetch_text import TextAcquirer
from ..pipeline.orchestrator import AcquisitionOrchestrator
from ..services.agency_search import AgencyRegistry, AgencySearch
from ..services.news_search import NewsSearchService
from ..services.redirect_decoder import RedirectDecoder
from ..services.search_query import SearchQueryGenerator
from ..services.verification import MatchVerifier
from ..services.verify_context import VerifyContextBuilder
from ..utils.fetch_log import FetchLog

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging for CLI runs."""
    log_level = getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
    # Selenium and urllib3 are chatty at DEBUG
    for noisy in ("selenium", "urllib3", "undetected_chromedriver"):
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))


@dataclass
class PipelineContext:
    settings: Settings
    fetch_log: FetchLog
    cooldowns: DomainCooldownTracker
    cache: ContentCache
    fetcher: ArticleFetcher
    browser: BrowserSession
    verifier: MatchVerifier
    orchestrator: AcquisitionOrchestrator


def open_store(settings: Optional[Settings] = None) -> EventStore:
    settings = settings or load_settings()
    return EventStore(settings.database_url)


def build_pipeline(settings: Optional[Settings] = None) -> PipelineContext:
    """Wire every pipeline component from one ``Settings``.

    The cooldown tracker and fetch log are shared so that a block seen by the
    fetch chain is honored by the browser and the candidate engine.
    """
    settings = settings or load_settings()
    fetch_log = FetchLog.from_settings(settings)
    cooldowns = DomainCooldownTracker(settings.cooldown_probe_seconds)
    cache = ContentCache.from_settings(settings)
    fetcher = ArticleFetcher(settings, cooldowns=cooldowns, fetch_log=fetch_log)
    browser = BrowserSession(settings, cooldowns=cooldowns, fetch_log=fetch_log)
    context_builder = VerifyContextBuilder(fetcher, max_chars=settings.verify_context_max_chars)
    verifier = MatchVerifier(settings, context_builder=context_builder, fetch_log=fetch_log)
    acquirer = TextAcquirer(settings, fetcher, browser=browser, verifier=verifier, fetch_log=fetch_log)

    registry = AgencyRegistry.from_settings(settings)
    engine = CandidateEngine.from_settings(settings, registry, cooldowns=cooldowns)
    news_search = NewsSearchService(settings, fetch_log=fetch_log)
    agency_search = AgencySearch.from_settings(settings, news_search, registry)
    decoder = RedirectDecoder(settings)
    generator = SearchQueryGenerator(settings)

    orchestrator = AcquisitionOrchestrator(
        settings,
        cache,
        acquirer,
        engine,
        cooldowns=cooldowns,
        news_search=news_search,
        agency_search=agency_search,
        decoder=decoder,
        query_generator=generator,
        browser=browser,
        fetch_log=fetch_log,
    )
    return PipelineContext(
        settings=settings,
        fetch_log=fetch_log,
        cooldowns=cooldowns,
        cache=cache,
        fetcher=fetcher,
        browser=browser,
        verifier=verifier,
        orchestrator=orchestrator,
    )
