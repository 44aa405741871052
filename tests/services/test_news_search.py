from datetime import datetime
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from grinder.models.events import Candidate, TargetEvent
from grinder.services.news_search import (
    NewsSearchService,
    parse_google_news_feed,
    parse_related_articles,
    score_gn_candidate,
    title_relevant,
)

TITLE = "Flood waters rise in valley as rescue crews search"

RELATED = (
    '<ol><li><a href="https://news.google.com/rss/articles/AP1">Valley flood forces evacuations</a>'
    '&nbsp;&nbsp;<font color="#6f6f6f">Associated Press</font></li>'
    '<li><a href="https://news.google.com/rss/articles/BBC1">Rescue crews in flooded valley</a>'
    '&nbsp;&nbsp;<font color="#6f6f6f">BBC</font></li></ol>'
)

RSS = f"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel><title>search</title>
<item>
  <title>{TITLE} - Reuters</title>
  <link>https://news.google.com/rss/articles/RTR1</link>
  <pubDate>Sun, 01 Feb 2026 10:00:00 GMT</pubDate>
  <description><![CDATA[{RELATED}]]></description>
  <source url="https://www.reuters.com">Reuters</source>
</item>
<item>
  <title>Another story entirely - CNN</title>
  <link>https://news.google.com/rss/articles/CNN1</link>
  <source url="https://www.cnn.com">CNN</source>
</item>
</channel></rss>"""


def rss_response(status_code=200, content=RSS):
    return SimpleNamespace(status_code=status_code, reason="OK", content=content.encode("utf-8"))


def serpapi_response(body):
    response = Mock(status_code=200)
    response.json.return_value = body
    return response


@pytest.fixture
def session():
    return Mock()


@pytest.fixture
def service(settings, session, clock):
    return NewsSearchService(settings, session=session, clock=clock)


def test_parse_related_articles():
    articles = parse_related_articles(RELATED)
    assert [item["source"] for item in articles] == ["Associated Press", "BBC"]
    assert articles[0]["gnUrl"] == "https://news.google.com/rss/articles/AP1"
    assert articles[0]["titleEn"] == "Valley flood forces evacuations"
    assert articles[1]["rank"] == 2
    assert parse_related_articles("<p>no list</p>") == []


def test_parse_google_news_feed():
    results = parse_google_news_feed(RSS)

    assert [item.source for item in results] == ["Reuters", "CNN"]
    first = results[0]
    assert first.gn_url == "https://news.google.com/rss/articles/RTR1"
    assert first.url == ""
    assert first.origin == "gn"
    assert first.rank == 1
    assert first.date == datetime(2026, 2, 1, 10, 0, 0)
    assert [item["source"] for item in first.articles] == ["Associated Press", "BBC"]


def test_search_uses_rss_and_caches(service, session, clock):
    session.get.return_value = rss_response()

    first = service.search(f'"{TITLE}"')
    again = service.search(f'"{TITLE}"')

    assert len(first) == 2
    assert again is first
    assert session.get.call_count == 1
    url = session.get.call_args.args[0]
    assert url.startswith("https://news.google.com/rss/search?q=%22Flood+waters")
    assert url.endswith("hl=en-US&gl=US&ceid=US:en")

    clock.advance(301)
    service.search(f'"{TITLE}"')
    assert session.get.call_count == 2


def test_rate_limit_switches_to_serpapi(settings, service, session):
    settings.serpapi_api_key = "serp-key"
    event = TargetEvent(id=1, title_en=TITLE)
    calls = []

    def route(url, params=None, headers=None, timeout=None):
        calls.append(url)
        if url.startswith("https://news.google.com"):
            return rss_response(429)
        return serpapi_response(
            {
                "news_results": [
                    {
                        "position": 1,
                        "title": "Rescue crews search as flood waters rise in valley",
                        "link": "https://www.reuters.com/world/flood",
                        "source": {"name": "Reuters"},
                    },
                    {"position": 2, "title": "Stock markets close higher", "link": "https://cnbc.com/markets"},
                ]
            }
        )

    session.get.side_effect = route

    results = service.search(f'"{TITLE}"', event)

    assert [item.source for item in results] == ["Reuters"]
    assert results[0].url == "https://www.reuters.com/world/flood"
    assert results[0].origin == "serpapi"
    assert service.cooldown_remaining() == 600
    assert session.get.call_args.kwargs["params"]["engine"] == "google_news"

    service.search("valley flood rescue", event)
    assert sum(1 for url in calls if url.startswith("https://news.google.com")) == 1


def test_cooldown_without_serpapi_returns_nothing(service, session):
    session.get.return_value = rss_response(503)
    assert service.search("valley flood") == []
    assert service.cooldown_remaining() > 0


def test_search_external_keeps_linked_results(settings, service, session):
    settings.serpapi_api_key = "serp-key"
    session.get.return_value = serpapi_response(
        {
            "organic_results": [
                {"title": "Valley flood", "link": "https://news.google.com/rss/articles/X1", "source": "AP"},
                {"title": "No link"},
                {"title": "Flood story", "link": "https://www.bbc.com/news/flood"},
            ]
        }
    )
    results = service.search_external("valley flood")

    assert [item.link for item in results] == ["https://news.google.com/rss/articles/X1", "https://www.bbc.com/news/flood"]
    assert results[0].gn_url and not results[0].url
    assert results[1].source == "bbc"


def test_title_relevance_and_scoring(event):
    assert title_relevant(event, Candidate(title="Rescue crews search the valley as flood waters rise"))
    assert not title_relevant(event, Candidate(title="Parliament passes budget"))
    assert score_gn_candidate(event, Candidate(title=f"{TITLE} - Local Paper", source="Local Paper")) == 5
    assert score_gn_candidate(event, Candidate(title="Flood waters rise", source="CNN")) == 1


def test_hydrate_fills_missing_metadata(service, session):
    session.get.return_value = rss_response()
    event = TargetEvent(id=9, title_en=TITLE)
    decoded = []

    def decode(gn_url):
        decoded.append(gn_url)
        return "https://www.reuters.com/world/flood"

    assert service.hydrate(event, decode)
    assert event.source == "Reuters"
    assert event.gn_url == "https://news.google.com/rss/articles/RTR1"
    assert [item["source"] for item in event.articles] == ["Associated Press", "BBC"]
    assert event.url == "https://www.reuters.com/world/flood"
    assert decoded == ["https://news.google.com/rss/articles/RTR1"]


def test_hydrate_skips_complete_events(service, session):
    event = TargetEvent(
        id=9, title_en=TITLE, source="Reuters", gn_url="https://news.google.com/rss/articles/RTR1",
        articles=[{"source": "AP", "gnUrl": "https://news.google.com/rss/articles/AP1"}],
    )
    assert not service.hydrate(event)
    session.get.assert_not_called()


def test_backfill_gn_url(service, session, event):
    session.get.return_value = rss_response()
    assert service.backfill_gn_url(event)
    assert event.gn_url == "https://news.google.com/rss/articles/RTR1"
    assert event.source == "Local Paper"
    assert session.get.call_count == 1
