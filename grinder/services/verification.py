"""AI match verification: is this candidate text about the same event?

``MatchVerifier.verify`` is the raw judge call. ``MatchVerifier.check`` is
what the pipeline uses: it applies the verification policy, builds the
original context, and turns an unavailable judge into
``VerifierUnavailableError`` unless fail-open is configured.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Optional

from ..models.events import TargetEvent, VerificationResult
from ..utils.error_guidance import describe_error
from ..utils.rate_limiter import RateLimiter
from . import AIProviderError, VerifierUnavailableError
from .ai_client import build_client, is_length_error, parse_json_object

logger = logging.getLogger(__name__)

VERIFY_MODES = ("always", "fallback-only", "only-if-short", "never")

SYSTEM_PROMPT = " ".join(
    [
        "You verify whether the candidate article is about the same news event as the original article.",
        "Be strict: only mark match=true if it is clearly the same event.",
        "The candidate may contain MORE information, but must NOT contradict the original.",
        "If the candidate omits key facts from the original or is about a related but different event, set match=false.",
        "Use web_search to confirm details when needed.",
        "Dates and sources may differ slightly, but the event must be the same.",
        "Return ONLY JSON with keys:",
        "- match (boolean)",
        "- confidence (number 0-1)",
        "- reason (string, <=200 chars)",
        "- page_summary (string, <=200 chars)",
    ]
)


def clamp_text(text: Any, limit: int) -> str:
    """Cut ``text`` to ``limit`` characters; a limit of 0 or less means unbounded."""
    if not text:
        return ""
    value = str(text)
    if not limit or limit <= 0:
        return value
    return value[:limit]


def build_payload(
    original: dict[str, Any],
    candidate: dict[str, Any],
    max_chars: int = 0,
    context_max_chars: int = 0,
) -> dict[str, Any]:
    original = original or {}
    candidate = candidate or {}
    return {
        "original": {
            "title": original.get("title") or "",
            "description": original.get("description") or "",
            "keywords": original.get("keywords") or "",
            "date": original.get("date") or "",
            "source": original.get("source") or "",
            "url": original.get("url") or "",
            "gnUrl": original.get("gnUrl") or original.get("gn_url") or "",
            "textSnippet": clamp_text(original.get("textSnippet") or "", context_max_chars),
        },
        "candidate": {
            "url": candidate.get("url") or "",
            "title": candidate.get("title") or "",
            "source": candidate.get("source") or "",
            "date": candidate.get("date") or "",
            "text": clamp_text(candidate.get("text") or "", max_chars),
        },
    }


def build_prompt(payload: dict[str, Any]) -> tuple[str, str]:
    user = "\n".join(
        [
            "Original context:",
            json.dumps(payload["original"], indent=2, ensure_ascii=False),
            "Candidate:",
            json.dumps(payload["candidate"], indent=2, ensure_ascii=False),
        ]
    )
    return SYSTEM_PROMPT, user


def _to_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if confidence != confidence:  # NaN
        return 0.0
    return confidence


def should_verify(mode: str, text: str, is_fallback: bool, short_threshold: int) -> bool:
    """Apply the verification policy to one accepted text."""
    mode = (mode or "always").strip().lower()
    if mode == "never":
        return False
    if mode == "fallback-only":
        return bool(is_fallback)
    if mode == "only-if-short":
        return len(text or "") < short_threshold
    return True


class MatchVerifier:
    """Judge candidate texts against the original event with an AI provider."""

    def __init__(
        self,
        settings,
        context_builder=None,
        primary_client=None,
        fallback_client=None,
        rate_limiter: Optional[RateLimiter] = None,
        fetch_log=None,
    ):
        self.settings = settings
        self.context_builder = context_builder
        self.min_confidence = settings.verify_min_confidence
        self.fail_open = settings.verify_fail_open
        self.mode = settings.verify_mode if settings.verify_mode in VERIFY_MODES else "always"
        self._primary_client = primary_client
        self._fallback_client = fallback_client
        self.rate_limiter = rate_limiter or RateLimiter(
            settings.verify_min_interval, name="verify"
        )
        self.fetch_log = fetch_log
        self.calls = 0

    @property
    def primary_client(self):
        if self._primary_client is None:
            self._primary_client = build_client(self.settings.verify_provider, self.settings)
        return self._primary_client

    @property
    def fallback_client(self):
        provider = self.settings.verify_fallback_provider
        if self._fallback_client is None and provider:
            self._fallback_client = build_client(provider, self.settings)
        return self._fallback_client

    def _call(self, client, model: str, system: str, user: str):
        self.rate_limiter.wait()
        self.calls += 1
        return client.respond(
            system,
            user,
            model=model,
            temperature=self.settings.verify_temperature,
            use_search=self.settings.verify_use_search,
        )

    def _call_with_shrink(self, client, model: str, original, candidate) -> tuple[Any, bool]:
        """Call the judge; on a size error retry once with the fallback limits."""
        payload = build_payload(
            original,
            candidate,
            max_chars=self.settings.verify_max_chars,
            context_max_chars=self.settings.verify_context_max_chars,
        )
        system, user = build_prompt(payload)
        try:
            return self._call(client, model, system, user), False
        except AIProviderError as exc:
            if not is_length_error(exc):
                raise
            logger.info(f"Verification payload too large for {client.provider}; shrinking")
        payload = build_payload(
            original,
            candidate,
            max_chars=self.settings.verify_fallback_max_chars,
            context_max_chars=self.settings.verify_fallback_context_max_chars,
        )
        system, user = build_prompt(payload)
        return self._call(client, model, system, user), True

    def verify(self, original: dict[str, Any], candidate: dict[str, Any]) -> VerificationResult:
        """Run the judge. Never raises; failures come back as error/unverified."""
        started = time.monotonic()
        provider = self.settings.verify_provider
        model = self.settings.verify_model
        try:
            try:
                response, shrunk = self._call_with_shrink(
                    self.primary_client, model, original, candidate
                )
            except AIProviderError as exc:
                fallback = self.fallback_client
                fallback_model = self.settings.verify_fallback_model
                if fallback is None or (
                    fallback.provider == provider and fallback_model == model
                ):
                    raise
                description = describe_error(exc, scope=provider)
                logger.warning(
                    f"Verifier {provider} failed ({description.summary}); "
                    f"falling back to {fallback.provider}/{fallback_model}"
                )
                provider, model = fallback.provider, fallback_model
                response, shrunk = self._call_with_shrink(fallback, model, original, candidate)

            parsed = parse_json_object(response.text)
            if parsed is None:
                raise ValueError(f"Unparseable verifier response: {response.text[:200]!r}")

            summary_limit = self.settings.verify_summary_max_chars
            match = bool(parsed.get("match"))
            confidence = _to_confidence(parsed.get("confidence", 0))
            ok = match and confidence >= self.min_confidence
            return VerificationResult(
                ok=ok,
                match=match,
                confidence=confidence,
                reason=clamp_text(str(parsed.get("reason") or ""), summary_limit),
                page_summary=clamp_text(
                    str(parsed.get("page_summary") or parsed.get("pageSummary") or ""),
                    summary_limit,
                ),
                status="ok" if ok else "mismatch",
                verified=True,
                tokens=response.tokens,
                fallback_used=shrunk,
                provider=provider,
                model=model,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        except (AIProviderError, ValueError) as exc:
            description = describe_error(exc, scope=provider)
            if description.action:
                logger.warning(f"Verification failed: {exc} | action={description.action}")
            else:
                logger.warning(f"Verification failed: {exc}")
            duration_ms = int((time.monotonic() - started) * 1000)
            if self.fail_open:
                return VerificationResult(
                    ok=True,
                    status="unverified",
                    reason="verification unavailable",
                    provider=provider,
                    model=model,
                    error=str(exc),
                    duration_ms=duration_ms,
                )
            return VerificationResult(
                ok=False,
                status="error",
                reason="verification failed",
                provider=provider,
                model=model,
                error=str(exc),
                duration_ms=duration_ms,
            )

    def check(
        self,
        event: TargetEvent,
        url: str,
        text: str,
        is_fallback: bool = False,
        method: str = "",
        meta: Optional[dict[str, Any]] = None,
    ) -> VerificationResult:
        """Verify text acquired for ``event`` from ``url``.

        Raises:
            VerifierUnavailableError: the judge failed and fail-open is off.
        """
        if not should_verify(self.mode, text, is_fallback, self.settings.verify_short_threshold):
            return VerificationResult.skipped(f"verify mode {self.mode}")

        original = (
            self.context_builder.build(event)
            if self.context_builder is not None
            else {
                "title": event.original_title,
                "source": event.original_source,
                "date": event.original_date,
                "url": event.original_url,
                "gnUrl": event.gn_url,
            }
        )
        meta = meta or {}
        candidate = {
            "url": url,
            "title": meta.get("title") or "",
            "source": meta.get("source") or meta.get("site_name") or "",
            "date": meta.get("date") or "",
            "text": text,
        }
        result = self.verify(original, candidate)
        if self.fetch_log is not None:
            self.fetch_log.record(
                {
                    "phase": "verify",
                    "eventId": event.id,
                    "url": url,
                    "method": method,
                    "status": result.status,
                    "match": result.match,
                    "confidence": result.confidence,
                    "reason": result.reason,
                    "provider": result.provider,
                    "tokens": result.tokens,
                    "fallback": is_fallback,
                },
                "verify result",
                "info" if result.ok else "warn",
            )
        if result.status == "error":
            raise VerifierUnavailableError(f"Verifier unavailable for {url}: {result.error}")
        return result
