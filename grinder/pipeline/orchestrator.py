"""Per-event acquisition state machine.

One ``TargetEvent`` is advanced at a time::

    START -> CACHE_PROBE -> CACHE_ACCEPT | CACHE_REJECT_TERMINAL | CACHE_MISS
          -> NETWORK_FETCH -> BROWSER_FETCH -> VERIFY
          -> ACCEPTED | MISMATCH | EXHAUSTED
          -> FALLBACK_CANDIDATE_LOOP -> ACCEPTED | FAILED

The network, browser and verify steps live in ``TextAcquirer``; this module
owns the cache decisions, the candidate queue and every mutation of the
event. Each stage hands back a ``FailureContext`` which feeds the next
decision (for example dropping ``site:`` from search queries after a block).

Two errors end the whole run rather than the event: ``BrowserClosedError``
and ``VerifierUnavailableError``. ``process()`` lets them through; ``run()``
records the fatal reason on the event being processed, closes the browser
and stops.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from ..crawler import BrowserClosedError
from ..crawler.cooldown import DomainCooldownTracker
from ..crawler.utils import is_blank, normalize_cache_url
from ..models.events import AcquisitionResult, Candidate, FailureContext, TargetEvent, VerificationResult
from ..services import SearchQueryFatalError, VerifierUnavailableError
from ..services.search_query import (
    build_fallback_search_queries_with_ai,
    build_search_query,
    should_drop_site_for_fallback,
)
from ..utils.fetch_log import FetchLog
from .cache import ContentCache
from .candidates import CandidateEngine, merge_candidates, should_expand_alternatives, should_external_search
from .fetch_text import TextAcquirer

logger = logging.getLogger(__name__)

FATAL_ERRORS = (BrowserClosedError, VerifierUnavailableError)


class AcquisitionState(str, Enum):
    START = "start"
    CACHE_PROBE = "cache_probe"
    CACHE_ACCEPT = "cache_accept"
    CACHE_REJECT_TERMINAL = "cache_reject_terminal"
    CACHE_MISS = "cache_miss"
    NETWORK_FETCH = "network_fetch"
    BROWSER_FETCH = "browser_fetch"
    VERIFY = "verify"
    MISMATCH = "mismatch"
    EXHAUSTED = "exhausted"
    FALLBACK_CANDIDATE_LOOP = "fallback_candidate_loop"
    ACCEPTED = "accepted"
    FAILED = "failed"


TERMINAL_STATES = (AcquisitionState.ACCEPTED, AcquisitionState.FAILED)


@dataclass
class EventOutcome:
    """What happened to one event, for the run summary and failure report."""

    event_id: Any
    state: AcquisitionState = AcquisitionState.START
    url: str = ""
    method: str = ""
    source: str = ""
    fallback: bool = False
    failure: Optional[FailureContext] = None
    transitions: list[str] = field(default_factory=list)
    tried_urls: list[str] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.state == AcquisitionState.ACCEPTED

    def move(self, state: AcquisitionState) -> None:
        self.state = state
        self.transitions.append(state.value)


@dataclass
class RunSummary:
    processed: int = 0
    accepted: int = 0
    failed: int = 0
    outcomes: list[EventOutcome] = field(default_factory=list)
    fatal: str = ""


def candidate_hints(candidate: Candidate) -> dict[str, Any]:
    hints = {"title": candidate.title, "source": candidate.source}
    if candidate.date:
        hints["date"] = str(candidate.date)
    return {key: value for key, value in hints.items() if value}


def _flatten_hits(hits: Iterable[Candidate]) -> list[Candidate]:
    """Search hits plus the related coverage embedded in each hit."""
    flat: list[Candidate] = []
    for hit in hits or []:
        flat.append(hit)
        flat.extend(Candidate.from_raw(item) for item in hit.articles if isinstance(item, dict))
    return flat


class AcquisitionOrchestrator:
    """Drive events through cache, fetch chain, browser, verifier and fallbacks."""

    def __init__(
        self,
        settings,
        cache: ContentCache,
        acquirer: TextAcquirer,
        engine: CandidateEngine,
        cooldowns: Optional[DomainCooldownTracker] = None,
        news_search=None,
        agency_search=None,
        decoder=None,
        query_generator=None,
        browser=None,
        fetch_log: Optional[FetchLog] = None,
    ):
        self.settings = settings
        self.cache = cache
        self.acquirer = acquirer
        self.engine = engine
        self.cooldowns = cooldowns or engine.cooldowns
        self.news_search = news_search
        self.agency_search = agency_search
        self.decoder = decoder
        self.query_generator = query_generator
        self.browser = browser
        self.fetch_log = fetch_log or FetchLog()
        self.min_text_length = settings.min_text_length

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    def _log(self, event: TargetEvent, data: dict[str, Any], message: str, level: str = "info") -> None:
        payload = {"eventId": event.id}
        payload.update({key: value for key, value in data.items() if value not in (None, "")})
        self.fetch_log.record(payload, message, level)

    # ------------------------------------------------------------------
    # Commit points; the only places that mutate acquisition fields
    # ------------------------------------------------------------------

    def _commit_text(
        self,
        event: TargetEvent,
        url: str,
        text: str,
        method: str,
        verification: Optional[VerificationResult],
        candidate: Optional[Candidate] = None,
    ) -> None:
        event.text = text[: self.settings.max_text_length]
        event.content_method = method
        event.verification = verification
        event.verify_status = verification.status if verification else "skipped"
        event.failure = None
        event.acquisition_status = "ok"
        if candidate is not None:
            event.alternative_url = url
            event.url = url
            if candidate.source:
                event.source = candidate.source
        elif is_blank(event.url):
            event.url = url

    def _commit_failure(self, event: TargetEvent, failure: Optional[FailureContext]) -> None:
        event.failure = failure or FailureContext(phase="acquire", status="no_text")
        event.acquisition_status = "failed"

    # ------------------------------------------------------------------
    # One URL: cache, then the fetch/browse/verify loop
    # ------------------------------------------------------------------

    def _cache_terminal(self, url: str, status: str) -> bool:
        # A cached block only counts while the host is still cooling down.
        if status == "blocked":
            return self.cooldowns.is_in_cooldown(url) is not None
        return True

    def try_url(
        self,
        event: TargetEvent,
        url: str,
        outcome: EventOutcome,
        candidate: Optional[Candidate] = None,
    ) -> Optional[FailureContext]:
        """Run the cache and fetch chain for ``url``; None means accepted."""
        is_fallback = candidate is not None
        outcome.tried_urls.append(url)

        outcome.move(AcquisitionState.CACHE_PROBE)
        probe = self.cache.probe(url)
        if probe.available and probe.terminal and self._cache_terminal(url, probe.status):
            outcome.move(AcquisitionState.CACHE_REJECT_TERMINAL)
            self._log(
                event,
                {"phase": "cache", "status": probe.status, "method": probe.method, "url": url},
                f"#{event.id} cache {probe.status}, skipping {url}",
            )
            return FailureContext(phase="cache", status=probe.status, method=probe.method, url=url,
                                  reason="cached terminal status")
        if probe.available and probe.status in ("ok", ""):
            cached = self.cache.read(url)
            if len(cached.text) > self.min_text_length:
                outcome.move(AcquisitionState.CACHE_ACCEPT)
                method = probe.method or "cache"
                if candidate is None:
                    # Events loaded without a title or source get them from the cached page
                    self.cache.backfill_meta(event, url)
                self._commit_text(event, url, cached.text, method, VerificationResult.skipped("cached"), candidate)
                event.verify_status = "cached"
                self._log(
                    event,
                    {"phase": "cache", "status": "ok", "method": method, "url": url,
                     "textLength": len(cached.text)},
                    f"#{event.id} cache hit ({len(cached.text)} chars)",
                )
                return None
        outcome.move(AcquisitionState.CACHE_MISS)

        outcome.move(AcquisitionState.NETWORK_FETCH)
        hints = candidate_hints(candidate) if candidate is not None else None
        origin = candidate.origin if candidate is not None else "primary"
        result = self.acquirer.acquire(event, url, is_fallback=is_fallback, origin=origin, hints=hints)
        if result.method == "browse":
            outcome.move(AcquisitionState.BROWSER_FETCH)
        if result.verification is not None:
            outcome.move(AcquisitionState.VERIFY)
        return self._handle_result(event, url, result, outcome, candidate)

    def _handle_result(
        self,
        event: TargetEvent,
        url: str,
        result: AcquisitionResult,
        outcome: EventOutcome,
        candidate: Optional[Candidate],
    ) -> Optional[FailureContext]:
        if result.ok:
            self.cache.save_article(event, result.html, result.text, url=url, status="ok", method=result.method)
            self._commit_text(event, url, result.text, result.method, result.verification, candidate)
            return None

        if result.mismatch:
            outcome.move(AcquisitionState.MISMATCH)
            self.cache.save_article(
                event, result.html, result.text, url=url, status="mismatch",
                method=result.method, mutate_event=False,
            )
            reason = result.verification.reason if result.verification else ""
            return FailureContext(phase="verify", status="mismatch", method=result.method, url=url, reason=reason)

        outcome.move(AcquisitionState.EXHAUSTED)
        if result.short:
            self.cache.save_article(
                event, result.html, "", url=url, status="short",
                method=result.method, mutate_event=False,
            )
            return FailureContext(phase="fetch", status="short", method=result.method, url=url,
                                  reason=f"text length {result.text_length}")
        if result.blocked:
            self.cache.write_meta(url, status="blocked", method=result.method)
        return FailureContext(
            phase="fetch",
            status=result.status or "no_text",
            method=result.method,
            url=url,
            http_status=result.http_status,
        )

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    def search_queries(self, event: TargetEvent, failure: Optional[FailureContext]) -> list[str]:
        """Queries for discovering alternatives.

        Raises:
            SearchQueryFatalError: only the URL identifies the event and AI
                query generation is disabled or failing.
        """
        generated = build_fallback_search_queries_with_ai(
            event,
            self.query_generator,
            allow_ai=self.settings.search_query_enabled,
        )
        queries = list(generated.queries)
        if not queries:
            query = build_search_query(event, allow_site=not should_drop_site_for_fallback(failure))
            if query:
                queries.append(query)
        self._log(
            event,
            {"phase": "search_query", "status": "ok" if queries else "empty", "reason": generated.reason,
             "queries": queries, "aiUsed": generated.ai_used},
            f"#{event.id} search queries ({generated.reason}) {queries}",
        )
        return queries

    def discover(self, event: TargetEvent, failure: Optional[FailureContext]) -> list[Candidate]:
        """Ranked candidate queue: embedded first, then news, external and agency search."""
        accepted = self.engine.alternatives(event)
        if self.news_search is None or not should_expand_alternatives(event, accepted):
            return accepted

        queries = self.search_queries(event, failure)
        for query in queries:
            merge_candidates(event, _flatten_hits(self.news_search.search(query, event)))
        accepted = self.engine.alternatives(event)

        if queries and should_external_search(accepted):
            merge_candidates(event, self.news_search.search_external(queries[0]))
            accepted = self.engine.alternatives(event)

        if self.agency_search is not None and should_expand_alternatives(event, accepted):
            merge_candidates(event, self.agency_search.search(event))
            accepted = self.engine.alternatives(event)

        logger.info(f"#{event.id} {len(accepted)} alternative candidates")
        return accepted

    def _resolve(self, event: TargetEvent, candidate: Candidate) -> str:
        if candidate.url:
            return candidate.url
        if self.decoder is None or not candidate.gn_url or candidate.gn_url == event.gn_url:
            return ""
        return self.decoder.decode(candidate.gn_url)

    def _try_candidate(
        self, event: TargetEvent, candidate: Candidate, outcome: EventOutcome, url: str
    ) -> Optional[FailureContext]:
        key = normalize_cache_url(url)
        if not key or key in {normalize_cache_url(tried) for tried in outcome.tried_urls}:
            return FailureContext(phase="candidate", status="duplicate_candidate", url=url)
        cooldown = self.cooldowns.is_in_cooldown(url)
        if cooldown is not None:
            logger.info(f"#{event.id} skipping {url}: {cooldown.host} cooling down ({cooldown.reason})")
            return FailureContext(phase="candidate", status="domain_cooldown", url=url, reason=cooldown.reason)
        logger.info(f"#{event.id} trying fallback {candidate.source or 'unknown'} {url}")
        return self.try_url(event, url, outcome, candidate=candidate)

    def fallback_loop(
        self, event: TargetEvent, outcome: EventOutcome, failure: Optional[FailureContext]
    ) -> Optional[FailureContext]:
        """Walk the candidate queue; None means a candidate was accepted."""
        outcome.move(AcquisitionState.FALLBACK_CANDIDATE_LOOP)
        try:
            queue = self.discover(event, failure)
        except SearchQueryFatalError as e:
            logger.warning(f"#{event.id} {e}")
            return FailureContext(phase="search_query", status="failed", reason=e.reason)

        deferred: Optional[Candidate] = None
        for candidate in queue:
            if (
                not candidate.url
                and deferred is None
                and self.decoder is not None
                and candidate.gn_url
                and not self.decoder.ready(candidate.gn_url)
            ):
                logger.info(f"#{event.id} deferring {candidate.source}: redirect decode rate limited")
                deferred = candidate
                continue
            url = self._resolve(event, candidate)
            if not url:
                failure = FailureContext(phase="decode", status="decode_failed", url=candidate.gn_url)
                continue
            result = self._try_candidate(event, candidate, outcome, url)
            if result is None:
                outcome.source = candidate.source
                return None
            if result.phase != "candidate" or failure is None:
                failure = result

        if deferred is not None:
            url = self._resolve(event, deferred)
            if url:
                result = self._try_candidate(event, deferred, outcome, url)
                if result is None:
                    outcome.source = deferred.source
                    return None
                failure = result
            else:
                failure = FailureContext(phase="decode", status="decode_failed", url=deferred.gn_url)

        if not queue:
            self._log(
                event,
                {"phase": "candidates", "status": "empty", "lastStatus": failure.status if failure else ""},
                f"#{event.id} no alternative candidates",
                "warn",
            )
        return failure

    # ------------------------------------------------------------------
    # Event and run
    # ------------------------------------------------------------------

    def _primary_url(self, event: TargetEvent) -> str:
        if not is_blank(event.url):
            return event.url
        if self.decoder is not None and not is_blank(event.gn_url):
            decoded = self.decoder.decode(event.gn_url)
            if decoded:
                event.url = decoded
                return decoded
        return ""

    def process(self, event: TargetEvent) -> EventOutcome:
        """Advance ``event`` to ACCEPTED or FAILED.

        Raises:
            BrowserClosedError: the browser session is gone.
            VerifierUnavailableError: the judge failed and fail-open is off.
        """
        outcome = EventOutcome(event_id=event.id)
        outcome.move(AcquisitionState.START)
        event.capture_original()

        if self.news_search is not None:
            decode = self.decoder.decode if self.decoder is not None else None
            self.news_search.hydrate(event, decode)

        failure: Optional[FailureContext] = None
        url = self._primary_url(event)
        if url:
            failure = self.try_url(event, url, outcome)
            if failure is None:
                outcome.url, outcome.method = url, event.content_method
                outcome.move(AcquisitionState.ACCEPTED)
                return outcome
            logger.info(f"#{event.id} primary failed ({failure.status}), trying alternatives")
        else:
            failure = FailureContext(phase="decode", status="no_url", url=event.gn_url)

        failure = self.fallback_loop(event, outcome, failure)
        if failure is None:
            outcome.url, outcome.method, outcome.fallback = event.url, event.content_method, True
            outcome.move(AcquisitionState.ACCEPTED)
            return outcome

        self._commit_failure(event, failure)
        outcome.failure = event.failure
        outcome.move(AcquisitionState.FAILED)
        self._log(
            event,
            {"phase": "event", "status": "failed", **event.failure.to_dict()},
            f"#{event.id} failed: {event.failure.status} ({event.failure.phase})",
            "warn",
        )
        return outcome

    def close(self) -> None:
        if self.browser is not None:
            self.browser.close()

    def run(self, events: Iterable[TargetEvent], on_done=None) -> RunSummary:
        """Process events in order; ``on_done(event, outcome)`` persists each one.

        A fatal error stops the run: the current event is marked with the
        fatal reason and handed to ``on_done``, the browser is closed and
        ``RunSummary.fatal`` names the reason. Any other exception fails only
        the event that raised it.
        """
        summary = RunSummary()
        events = list(events)
        try:
            for index, event in enumerate(events, 1):
                logger.info(f"#{event.id} [{index}/{len(events)}] {event.title}")
                try:
                    outcome = self.process(event)
                except FATAL_ERRORS as e:
                    reason = "browser_closed" if isinstance(e, BrowserClosedError) else "verifier_unavailable"
                    logger.error(f"#{event.id} fatal, stopping run: {e}")
                    summary.fatal = reason
                    outcome = self._failed_outcome(event, FailureContext(phase="fatal", status=reason, reason=str(e)))
                    self._record(summary, event, outcome, on_done)
                    break
                except Exception as e:
                    logger.exception(f"#{event.id} failed with an unexpected error")
                    outcome = self._failed_outcome(
                        event, FailureContext(phase="error", status="error", reason=f"{type(e).__name__}: {e}")
                    )
                self._record(summary, event, outcome, on_done)
        finally:
            self.close()
        logger.info(f"Run finished: {summary.accepted} ok, {summary.failed} failed")
        return summary

    def _failed_outcome(self, event: TargetEvent, failure: FailureContext) -> EventOutcome:
        self._commit_failure(event, failure)
        outcome = EventOutcome(event_id=event.id, failure=event.failure)
        outcome.move(AcquisitionState.FAILED)
        return outcome

    @staticmethod
    def _record(summary: RunSummary, event: TargetEvent, outcome: EventOutcome, on_done) -> None:
        summary.outcomes.append(outcome)
        summary.processed += 1
        if outcome.accepted:
            summary.accepted += 1
        else:
            summary.failed += 1
        if on_done is not None:
            on_done(event, outcome)
