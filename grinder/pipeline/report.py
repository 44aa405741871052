"""End-of-run failure report."""

from __future__ import annotations

import json
import logging
import os
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..models.events import TargetEvent
from .orchestrator import EventOutcome, RunSummary

logger = logging.getLogger(__name__)


@dataclass
class FailureReport:
    """Failed events with their last failure context, grouped by status."""

    generated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    processed: int = 0
    accepted: int = 0
    fatal: str = ""
    failures: list[dict[str, Any]] = field(default_factory=list)

    def add(self, event: TargetEvent, outcome: EventOutcome) -> None:
        if outcome.accepted:
            return
        failure = outcome.failure or event.failure
        record = {
            "id": event.id,
            "title": event.original_title,
            "source": event.original_source,
            "url": event.original_url,
            "gnUrl": event.gn_url,
            "tried": list(outcome.tried_urls),
            "states": list(outcome.transitions),
        }
        if failure is not None:
            details = failure.to_dict()
            # The failing URL may be a candidate, not the event's own link.
            if "url" in details:
                details["failedUrl"] = details.pop("url")
            record.update(details)
        self.failures.append(record)

    def by_status(self) -> dict[str, int]:
        return dict(Counter(item.get("status", "unknown") for item in self.failures))

    @classmethod
    def from_run(cls, events: list[TargetEvent], summary: RunSummary) -> "FailureReport":
        report = cls(processed=summary.processed, accepted=summary.accepted, fatal=summary.fatal)
        outcomes = {outcome.event_id: outcome for outcome in summary.outcomes}
        for event in events:
            outcome = outcomes.get(event.id)
            if outcome is not None:
                report.add(event, outcome)
        return report

    def to_dict(self) -> dict[str, Any]:
        return {
            "generatedAt": self.generated_at,
            "processed": self.processed,
            "accepted": self.accepted,
            "failed": len(self.failures),
            "fatal": self.fatal or None,
            "byStatus": self.by_status(),
            "failures": self.failures,
        }

    def write(self, path: str) -> str:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(self.to_dict(), handle, ensure_ascii=False, indent=2, default=str)
        logger.info(f"Failure report written to {path} ({len(self.failures)} failures)")
        return path
