"""SQLAlchemy-backed event store.

This is the storage collaborator for the acquisition pipeline: it hands out
``TargetEvent`` values and persists the fields the pipeline writes back. The
pipeline itself never touches the database.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, create_engine, select
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, sessionmaker

from .events import TargetEvent

logger = logging.getLogger(__name__)

Base: Any = declarative_base()


class EventRecord(Base):
    """One Target Event row."""

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    url = Column(String, default="")
    gn_url = Column(String, default="")
    title_en = Column(String, default="")
    title_ru = Column(String, default="")
    source = Column(String, default="")
    date = Column(String, default="")
    summary = Column(Text, default="")
    topic = Column(String, default="")
    priority = Column(String, default="")
    description = Column(Text, default="")
    keywords = Column(String, default="")
    text = Column(Text, default="")
    articles: Mapped[list | None] = mapped_column(JSON)
    content_method = Column(String, default="")
    verify_status = Column(String, default="")
    alternative_url = Column(String, default="")
    acquisition_status = Column(String, default="")
    failure: Mapped[dict | None] = mapped_column(JSON)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, onupdate=datetime.utcnow)


_EVENT_FIELDS = (
    "url",
    "gn_url",
    "title_en",
    "title_ru",
    "source",
    "date",
    "summary",
    "topic",
    "priority",
    "description",
    "keywords",
    "text",
)

_RESULT_FIELDS = (
    "url",
    "source",
    "text",
    "title_en",
    "content_method",
    "verify_status",
    "alternative_url",
    "acquisition_status",
)


def _record_to_event(record: EventRecord) -> TargetEvent:
    event = TargetEvent(id=record.id, articles=list(record.articles or []))
    for name in _EVENT_FIELDS:
        setattr(event, name, getattr(record, name) or "")
    return event


class EventStore:
    """Load and persist Target Events through SQLAlchemy."""

    def __init__(self, database_url: str = "sqlite:///grinder.db"):
        self.database_url = database_url
        self.engine = create_engine(database_url)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.debug(f"Event store ready at {database_url}")

    def add_events(self, rows: Iterable[dict[str, Any]]) -> int:
        """Insert raw rows; returns the number inserted."""
        count = 0
        with self.Session() as session:
            for row in rows:
                event = TargetEvent.from_row(row)
                record = EventRecord(articles=event.articles or None)
                if event.id not in (None, ""):
                    try:
                        record.id = int(event.id)
                    except (TypeError, ValueError):
                        logger.warning(f"Ignoring non-numeric event id {event.id!r}")
                for name in _EVENT_FIELDS:
                    setattr(record, name, getattr(event, name))
                session.merge(record)
                count += 1
            session.commit()
        logger.info(f"Stored {count} events")
        return count

    def pending_events(
        self, limit: int | None = None, event_id: int | None = None
    ) -> list[TargetEvent]:
        """Events that still need text: no text, no summary, not topic 'other'."""
        with self.Session() as session:
            stmt = select(EventRecord).order_by(EventRecord.id)
            if event_id is not None:
                stmt = stmt.where(EventRecord.id == event_id)
            else:
                stmt = stmt.where(
                    (EventRecord.text == "") | (EventRecord.text.is_(None)),
                    (EventRecord.summary == "") | (EventRecord.summary.is_(None)),
                    (EventRecord.topic != "other") | (EventRecord.topic.is_(None)),
                )
            if limit:
                stmt = stmt.limit(limit)
            return [_record_to_event(record) for record in session.scalars(stmt)]

    def get_event(self, event_id: int) -> TargetEvent | None:
        with self.Session() as session:
            record = session.get(EventRecord, event_id)
            return _record_to_event(record) if record else None

    def save_event(self, event: TargetEvent) -> None:
        """Persist the fields the pipeline writes back onto an event."""
        with self.Session() as session:
            record = session.get(EventRecord, event.id)
            if record is None:
                logger.warning(f"Event {event.id} not found; nothing saved")
                return
            for name in _RESULT_FIELDS:
                setattr(record, name, getattr(event, name) or "")
            record.articles = event.articles or None
            record.failure = event.failure.to_dict() if event.failure else None
            session.commit()
        logger.debug(f"Saved event {event.id} ({event.acquisition_status})")
