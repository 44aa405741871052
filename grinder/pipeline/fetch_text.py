"""Fetch, verify and browse one URL, with a single retry.

``TextAcquirer.acquire`` runs the mirror chain, verifies any text it finds,
and falls back to the browser when the chain yields nothing usable. Each
attempt ends in one of:

* accepted text (``ok=True``);
* ``mismatch``: the judge says the page is about something else;
* ``blocked`` / ``captcha`` / ``rate_limited`` / ``forbidden``: the host
  refused us and stays in cooldown;
* ``short``: only a stub page was found;
* any other failure status (``no_text``, ``cooldown``, ``timeout``, ``504``).

The browser is launched at most once per URL; its result is reused by the
second attempt.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from ..crawler import (
    FETCH_METHODS,
    ArticleFetcher,
    BrowserClosedError,
    CaptchaError,
    NavigationTimeoutError,
)
from ..crawler.browser import BrowserSession
from ..crawler.metadata import extract_meta, has_meta, merge_meta
from ..crawler.text import classify_page_state, extract_text, strip_html_fast
from ..models.events import AcquisitionResult, BrowseResult, TargetEvent, VerificationResult
from ..utils.error_guidance import action_for_fetch
from ..utils.fetch_log import FetchLog

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2
NON_RETRYABLE_STATUSES = (429, 403, 401, 503, "captcha")
BROWSE_STOP_REASONS = ("captcha", "cooldown", "timeout")
SHORT_PROBE_CHARS = 4000


def block_label(status: Any) -> str:
    if status == "captcha":
        return "captcha"
    if status in (429, 503):
        return "rate_limited"
    return "forbidden"


def apply_content_meta(event: TargetEvent, meta: dict[str, Any], method: str) -> None:
    """Remember the accepted page's metadata on the event."""
    if not has_meta(meta):
        return
    event.content_meta = {**meta, "method": method}


class _MetaSnapshot:
    """First non-empty page metadata seen for a URL, merged with candidate hints."""

    def __init__(self, hints: dict[str, Any]):
        self.hints = hints
        self.meta: Optional[dict[str, Any]] = None
        self.canonical_url = ""

    def update(self, page_meta: dict[str, Any]) -> None:
        if has_meta(page_meta):
            merged = merge_meta(page_meta, self.hints)
            if self.meta is None:
                self.meta = merged
            if merged.get("canonical_url") and not self.canonical_url:
                self.canonical_url = merged["canonical_url"]
        elif has_meta(self.hints) and self.meta is None:
            self.meta = merge_meta({}, self.hints)

    def value(self) -> dict[str, Any]:
        return dict(self.meta or {})


class TextAcquirer:
    """Retry loop around the fetch chain, the browser and the match verifier."""

    def __init__(
        self,
        settings,
        fetcher: ArticleFetcher,
        browser: Optional[BrowserSession] = None,
        verifier=None,
        fetch_log: Optional[FetchLog] = None,
    ):
        self.settings = settings
        self.fetcher = fetcher
        self.browser = browser
        self.verifier = verifier
        self.fetch_log = fetch_log or FetchLog()
        self.min_text_length = settings.min_text_length
        self.max_html_chars = settings.max_html_to_text_chars

    def _log(self, event: TargetEvent, data: dict[str, Any], message: str, level: str = "info") -> None:
        payload = {"eventId": event.id}
        payload.update({key: value for key, value in data.items() if value not in (None, "")})
        self.fetch_log.record(payload, message, level)

    def _verify(
        self,
        event: TargetEvent,
        url: str,
        text: str,
        is_fallback: bool,
        method: str,
        meta: dict[str, Any],
    ) -> VerificationResult:
        if self.verifier is None:
            return VerificationResult.skipped("no verifier configured")
        return self.verifier.check(event, url, text, is_fallback=is_fallback, method=method, meta=meta)

    def _browse(self, event: TargetEvent, url: str, is_fallback: bool) -> BrowseResult:
        """One browser acquisition; every failure except a closed session is folded in."""
        if self.browser is None:
            return BrowseResult(aborted=True, abort_reason="disabled")
        try:
            return self.browser.browse(url, ignore_cooldown=not is_fallback)
        except CaptchaError as e:
            logger.warning(f"#{event.id} browse captcha: {e}")
            return BrowseResult(aborted=True, abort_reason="captcha")
        except NavigationTimeoutError as e:
            logger.warning(f"#{event.id} browse timeout: {e}")
            return BrowseResult(failed=True, aborted=True, abort_reason="timeout")
        except BrowserClosedError:
            raise
        except Exception as e:
            logger.warning(f"#{event.id} browse failed for {url}: {e}")
            return BrowseResult(failed=True, aborted=True, abort_reason="error")

    def _short_probe(self, html: str) -> int:
        """Visible text length when the page is a stub, else 0."""
        if not html:
            return 0
        probe = strip_html_fast(html, SHORT_PROBE_CHARS)
        if 0 < len(probe) <= self.min_text_length:
            return len(probe)
        return 0

    def acquire(
        self,
        event: TargetEvent,
        url: str,
        is_fallback: bool = False,
        origin: str = "",
        hints: Optional[dict[str, Any]] = None,
    ) -> AcquisitionResult:
        """Acquire verified text for ``url`` on behalf of ``event``.

        Args:
            is_fallback: ``url`` belongs to an alternative candidate, not the
                event's own source. Fallback URLs honor every browser cooldown.
            origin: Where the candidate came from, for the fetch log.
            hints: Candidate metadata (title, source, date) used where the
                page itself carries none.

        Raises:
            BrowserClosedError: the browser session is gone.
            VerifierUnavailableError: the judge failed and fail-open is off.
        """
        snapshot = _MetaSnapshot(dict(hints or {}))
        short_html = ""
        short_method = ""
        short_length = 0
        failure_status = ""
        failure_method = ""
        page_state: dict[str, str] = {}
        http_status: Optional[int] = None
        browse_result: Optional[BrowseResult] = None

        def on_method(method: str) -> None:
            nonlocal failure_status, failure_method
            if method in FETCH_METHODS:
                failure_method = method
            elif method in ("captcha", "timeout"):
                failure_status = method
                failure_method = "fetch"

        for attempt in range(1, MAX_ATTEMPTS + 1):
            blocked_status = None
            mismatch: Optional[AcquisitionResult] = None

            response = self.fetcher.fetch(url, on_method)
            html = response.html
            fetch_method = response.method or "fetch"
            fetch_meta = extract_meta(html) if html else {}
            snapshot.update(fetch_meta)

            last_status = self.fetcher.last_status(url)
            if response.skipped_reason:
                last_status = None
                failure_status = response.skipped_reason
                failure_method = "fetch"
            if isinstance(last_status, int):
                http_status = last_status

            text = response.text
            if not text and html:
                page_state = classify_page_state(html, fetch_meta.get("title", ""))
                probe_length = self._short_probe(html)
                if probe_length:
                    short_html, short_method, short_length = html, fetch_method, probe_length
                    failure_status, failure_method = "short", fetch_method
                    self._log(
                        event,
                        {"phase": "fetch", "method": fetch_method, "status": "short", "attempt": attempt,
                         "textLength": probe_length, "url": url},
                        f"#{event.id} {fetch_method} short ({probe_length})",
                        "warn",
                    )
                else:
                    action = action_for_fetch("no_text")
                    self._log(
                        event,
                        {"phase": "fetch", "method": fetch_method, "status": "no_text", "attempt": attempt,
                         "pageState": page_state.get("state"), "pageStateReason": page_state.get("reason"),
                         "action": action, "url": url},
                        f"#{event.id} fetch no text ({attempt}/{MAX_ATTEMPTS})",
                        "warn",
                    )

            if not text and last_status in NON_RETRYABLE_STATUSES:
                label = block_label(last_status)
                failure_status = label
                failure_method = failure_method or "fetch"
                blocked_status = last_status
                action = action_for_fetch(last_status, label)
                self._log(
                    event,
                    {"phase": "fetch", "method": "fetch", "status": label, "httpStatus": last_status,
                     "attempt": attempt, "action": action, "url": url},
                    f"#{event.id} fetch {label} ({last_status})",
                    "warn",
                )
            elif not text and last_status == 504:
                failure_status = "504"
            elif not text and not failure_status:
                failure_status = "no_text"

            if text:
                verify_meta = merge_meta(fetch_meta, snapshot.hints)
                verification = self._verify(event, url, text, is_fallback, fetch_method, verify_meta)
                if verification.ok:
                    self._log(
                        event,
                        {"phase": "fetch", "method": fetch_method, "status": "ok", "attempt": attempt,
                         "textLength": len(text), "origin": origin, "url": url},
                        f"#{event.id} {fetch_method} ok ({attempt}/{MAX_ATTEMPTS}) {verification.note()}",
                    )
                    apply_content_meta(event, fetch_meta, fetch_method)
                    return AcquisitionResult(
                        ok=True,
                        status="ok",
                        url=url,
                        method=fetch_method,
                        html=html,
                        text=text,
                        text_length=len(text),
                        verification=verification,
                        meta=verify_meta,
                        canonical_url=snapshot.canonical_url,
                        http_status=http_status,
                    )
                if verification.status == "mismatch":
                    mismatch = AcquisitionResult(
                        ok=False,
                        status="mismatch",
                        url=url,
                        method=fetch_method,
                        html=html,
                        text=text,
                        text_length=len(text),
                        verification=verification,
                        meta=snapshot.value(),
                        canonical_url=snapshot.canonical_url,
                        http_status=http_status,
                    )

            if mismatch and not self.settings.browse_on_mismatch:
                return mismatch

            if browse_result is None:
                browse_result = self._browse(event, url, is_fallback)
            html = browse_result.html
            browse_meta = browse_result.meta if has_meta(browse_result.meta) else extract_meta(html)
            snapshot.update(browse_meta)
            if html:
                page_state = classify_page_state(html, browse_meta.get("title", ""))

            text = extract_text(html, self.min_text_length, self.max_html_chars) if html else None
            abort_reason = browse_result.abort_reason
            if not text and browse_result.aborted and abort_reason and abort_reason != "disabled":
                failure_status, failure_method = abort_reason, "browse"
                if abort_reason in BROWSE_STOP_REASONS:
                    if mismatch:
                        return mismatch
                    break

            if text:
                verify_meta = merge_meta(browse_meta, snapshot.hints)
                verification = self._verify(event, url, text, is_fallback, "browse", verify_meta)
                if verification.ok:
                    self._log(
                        event,
                        {"phase": "fetch", "method": "browse", "status": "ok", "attempt": attempt,
                         "textLength": len(text), "origin": origin, "url": url},
                        f"#{event.id} browse ok ({attempt}/{MAX_ATTEMPTS}) {verification.note()}",
                    )
                    apply_content_meta(event, browse_meta, "browse")
                    return AcquisitionResult(
                        ok=True,
                        status="ok",
                        url=url,
                        method="browse",
                        html=html,
                        text=text,
                        text_length=len(text),
                        verification=verification,
                        meta=verify_meta,
                        canonical_url=snapshot.canonical_url,
                        http_status=http_status,
                    )
                if verification.status == "mismatch":
                    mismatch = AcquisitionResult(
                        ok=False,
                        status="mismatch",
                        url=url,
                        method="browse",
                        html=html,
                        text=text,
                        text_length=len(text),
                        verification=verification,
                        meta=snapshot.value(),
                        canonical_url=snapshot.canonical_url,
                        http_status=http_status,
                    )
            elif not browse_result.failed and not browse_result.aborted:
                probe_length = self._short_probe(html)
                if probe_length:
                    short_html, short_method, short_length = html, "browse", probe_length
                    failure_status, failure_method = "short", "browse"
                else:
                    action = action_for_fetch("no_text")
                    self._log(
                        event,
                        {"phase": "fetch", "method": "browse", "status": "no_text", "attempt": attempt,
                         "pageState": page_state.get("state"), "pageStateReason": page_state.get("reason"),
                         "action": action, "url": url},
                        f"#{event.id} browse no text ({attempt}/{MAX_ATTEMPTS})",
                        "warn",
                    )

            if mismatch:
                return mismatch
            if blocked_status is not None:
                return AcquisitionResult(
                    ok=False,
                    status=block_label(blocked_status),
                    url=url,
                    method=failure_method or "fetch",
                    meta=snapshot.value(),
                    canonical_url=snapshot.canonical_url,
                    http_status=blocked_status if isinstance(blocked_status, int) else http_status,
                )

        final_status = failure_status or ("short" if short_html else "no_text")
        final_method = failure_method or "fetch"
        action = action_for_fetch(final_status, final_status)
        self._log(
            event,
            {"phase": "fetch", "status": final_status, "method": final_method, "attempts": MAX_ATTEMPTS,
             "pageState": page_state.get("state"), "pageStateReason": page_state.get("reason"),
             "action": action, "url": url},
            f"#{event.id} no text after {MAX_ATTEMPTS} attempts ({final_status})",
            "warn",
        )
        if short_html:
            return AcquisitionResult(
                ok=False,
                status="short",
                url=url,
                method=short_method or final_method,
                html=short_html,
                text_length=short_length,
                meta=snapshot.value(),
                canonical_url=snapshot.canonical_url,
                http_status=http_status,
            )
        return AcquisitionResult(
            ok=False,
            status=final_status,
            url=url,
            method=final_method,
            meta=snapshot.value(),
            canonical_url=snapshot.canonical_url,
            http_status=http_status,
        )
