"""Pytest-wide fixtures for grinder tests."""

from __future__ import annotations

import os

import pytest

from grinder.config import Settings
from grinder.models.events import TargetEvent
from tests.helpers import ClockStub

# Never talk to real AI providers or search APIs from tests
for key in ("XAI_API_KEY", "OPENAI_API_KEY", "SERPAPI_API_KEY", "FETCH_LOG_FILE"):
    os.environ.pop(key, None)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        articles_dir=str(tmp_path / "articles"),
        database_url=f"sqlite:///{tmp_path / 'events.db'}",
        search_query_enabled=False,
        gn_search_min_interval=0.0,
        url_decode_delay=0.0,
        url_decode_increment=0.0,
    )


@pytest.fixture
def clock():
    return ClockStub()


@pytest.fixture
def event():
    return TargetEvent(
        id=1,
        url="https://www.localpaper.com/news/flood-waters-rise-in-valley",
        title_en="Flood waters rise in valley as rescue crews search",
        source="Local Paper",
        date="2026-02-01",
    )
