"""Value types passed between pipeline stages.

A ``TargetEvent`` is the unit of work. The orchestrator owns it for the
duration of one acquisition run and mutates only the acquisition fields
(``text``, ``url``, ``source``, ``content_method``, ``verify_status``,
``verification``, ``alternative_url``, ``failure``, ``acquisition_status``).
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class OriginalReference:
    """Snapshot of how the caller identified the event before any fallback."""

    url: str = ""
    gn_url: str = ""
    title: str = ""
    source: str = ""
    date: str = ""


@dataclass
class VerificationResult:
    """Outcome of one match-verification call.

    For a verifier that actually ran (``verified`` true), ``ok`` holds exactly
    when ``match`` is true and ``confidence`` clears the configured minimum;
    anything else is ``status="mismatch"``.

    Two results are ``ok`` without a match. ``status="skipped"`` means the
    verification policy did not call the judge, and ``status="unverified"``
    means the judge failed while fail-open is set. Both carry ``match=False``
    and ``verified=False``; the pipeline accepts the text and the status tag
    keeps them apart from real matches in the audit trail.
    """

    ok: bool
    match: bool = False
    confidence: float = 0.0
    reason: str = ""
    page_summary: str = ""
    status: str = "ok"
    verified: bool = False
    tokens: int | None = None
    fallback_used: bool = False
    provider: str = ""
    model: str = ""
    error: str = ""
    duration_ms: int | None = None

    @classmethod
    def skipped(cls, reason: str = "verification skipped") -> "VerificationResult":
        return cls(ok=True, status="skipped", reason=reason)

    def note(self) -> str:
        """Compact ``status conf=.. reason`` string for progress logs."""
        parts = [self.status]
        if self.verified:
            parts.append(f"conf={self.confidence:.2f}")
        if self.reason:
            parts.append(self.reason)
        return " ".join(parts)


@dataclass
class FailureContext:
    """Why a stage did not produce accepted text.

    Returned from each stage and threaded into the next decision; the last
    one seen for an event becomes its failure record.
    """

    phase: str
    status: str
    method: str = ""
    reason: str = ""
    url: str = ""
    http_status: int | None = None
    action: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value not in ("", None)}


@dataclass
class FetchResponse:
    """Result of one pass through the fetch/mirror chain."""

    html: str = ""
    text: str = ""
    method: str = ""
    status: int | str | None = None
    short: bool = False
    skipped_reason: str = ""

    @property
    def ok(self) -> bool:
        return bool(self.text) and not self.short


@dataclass
class BrowseResult:
    """Result of one browser acquisition."""

    html: str = ""
    meta: dict[str, Any] = field(default_factory=dict)
    aborted: bool = False
    abort_reason: str = ""
    failed: bool = False


@dataclass
class AcquisitionResult:
    """Outcome of the fetch/verify retry loop for one URL."""

    ok: bool
    status: str = ""
    url: str = ""
    method: str = ""
    html: str = ""
    text: str = ""
    text_length: int = 0
    verification: VerificationResult | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    canonical_url: str = ""
    http_status: int | None = None

    @property
    def mismatch(self) -> bool:
        return self.status == "mismatch"

    @property
    def short(self) -> bool:
        return self.status == "short"

    @property
    def blocked(self) -> bool:
        return self.status in ("blocked", "captcha", "rate_limited", "forbidden")


def _first(raw: dict[str, Any], *keys: str, default: Any = "") -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return default


def _parse_rank(raw: dict[str, Any]) -> int | None:
    for key in ("rank", "position"):
        value = raw.get(key)
        if value in (None, ""):
            continue
        try:
            return int(float(value))
        except (TypeError, ValueError):
            continue
    return None


@dataclass
class Candidate:
    """An alternative source believed to report the same event."""

    source: str = ""
    url: str = ""
    gn_url: str = ""
    title: str = ""
    date: Any = None
    origin: str = ""
    rank: int | None = None
    articles: list[dict[str, Any]] = field(default_factory=list)

    # Derived by the candidate engine
    level: int = 0
    normalized_source: str = ""
    normalized_title: str = ""
    domain: str = ""
    parsed_date: datetime | None = None
    reason: str = ""

    @property
    def link(self) -> str:
        return self.url or self.gn_url

    @property
    def has_direct_url(self) -> bool:
        return bool(self.url)

    @classmethod
    def from_raw(cls, raw: "Candidate | dict[str, Any]") -> "Candidate":
        if isinstance(raw, Candidate):
            return cls(
                source=raw.source,
                url=raw.url,
                gn_url=raw.gn_url,
                title=raw.title,
                date=raw.date,
                origin=raw.origin,
                rank=raw.rank,
                articles=list(raw.articles),
            )
        gn_url = str(_first(raw, "gn_url", "gnUrl") or "")
        origin = _first(raw, "origin", "provider", "from")
        if not origin and gn_url:
            origin = "gn"
        return cls(
            source=str(_first(raw, "source") or ""),
            url=str(_first(raw, "url") or ""),
            gn_url=gn_url,
            title=str(_first(raw, "title", "titleEn", "title_en", "titleRu", "title_ru") or ""),
            date=_first(raw, "date", default=None),
            origin=str(origin or ""),
            rank=_parse_rank(raw),
            articles=list(raw.get("articles") or []),
        )

    def to_dict(self) -> dict[str, Any]:
        data = {
            "source": self.source,
            "url": self.url,
            "gnUrl": self.gn_url,
            "titleEn": self.title,
            "origin": self.origin,
            "rank": self.rank,
            "level": self.level,
        }
        if self.date:
            data["date"] = self.date.isoformat() if isinstance(self.date, datetime) else str(self.date)
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass
class TargetEvent:
    """A logical news item whose article text is to be acquired."""

    id: Any = None
    url: str = ""
    gn_url: str = ""
    title_en: str = ""
    title_ru: str = ""
    source: str = ""
    date: str = ""
    summary: str = ""
    topic: str = ""
    priority: str = ""
    description: str = ""
    keywords: str = ""
    text: str = ""
    articles: list[dict[str, Any]] = field(default_factory=list)

    # Acquisition state
    content_method: str = ""
    verify_status: str = ""
    verification: VerificationResult | None = None
    alternative_url: str = ""
    content_meta: dict[str, Any] = field(default_factory=dict)
    original: OriginalReference | None = None
    verify_context: dict[str, Any] | None = None
    failure: FailureContext | None = None
    acquisition_status: str = ""

    @property
    def title(self) -> str:
        return self.title_en or self.title_ru

    @property
    def link(self) -> str:
        return self.url or self.gn_url

    def capture_original(self) -> OriginalReference:
        """Record the caller's identification once, before fallbacks mutate it."""
        if self.original is None:
            self.original = OriginalReference(
                url=self.url,
                gn_url=self.gn_url,
                title=self.title,
                source=self.source,
                date=self.date,
            )
        return self.original

    @property
    def original_title(self) -> str:
        if self.original and self.original.title:
            return self.original.title
        return self.title

    @property
    def original_url(self) -> str:
        if self.original and self.original.url:
            return self.original.url
        return self.url

    @property
    def original_date(self) -> str:
        if self.original and self.original.date:
            return self.original.date
        return self.date

    @property
    def original_source(self) -> str:
        if self.original and self.original.source:
            return self.original.source
        return self.source

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "TargetEvent":
        """Build an event from a storage row using either naming convention."""
        articles = row.get("articles") or []
        if isinstance(articles, str):
            try:
                articles = json.loads(articles)
            except ValueError:
                articles = []
        if not isinstance(articles, list):
            articles = []
        return cls(
            id=row.get("id"),
            url=str(_first(row, "url") or ""),
            gn_url=str(_first(row, "gn_url", "gnUrl") or ""),
            title_en=str(_first(row, "title_en", "titleEn") or ""),
            title_ru=str(_first(row, "title_ru", "titleRu") or ""),
            source=str(_first(row, "source") or ""),
            date=str(_first(row, "date") or ""),
            summary=str(_first(row, "summary") or ""),
            topic=str(_first(row, "topic") or ""),
            priority=str(_first(row, "priority") or ""),
            description=str(_first(row, "description") or ""),
            keywords=str(_first(row, "keywords") or ""),
            text=str(_first(row, "text") or ""),
            articles=articles,
        )
