from datetime import datetime

import pytest

from grinder.crawler.cooldown import DomainCooldownTracker
from grinder.models.events import Candidate, TargetEvent
from grinder.pipeline.candidates import (
    CandidateEngine,
    merge_candidates,
    parse_date,
    should_expand_alternatives,
    should_external_search,
)
from grinder.services.agency_search import Agency, AgencyLevel, AgencyRegistry

TITLE = "Flood waters rise in valley as rescue crews search"


@pytest.fixture
def registry():
    return AgencyRegistry(
        [
            Agency("Reuters", AgencyLevel.WIRE, domains=["reuters.com"]),
            Agency("Associated Press", AgencyLevel.WIRE, domains=["apnews.com"], aliases=["AP"]),
            Agency("BBC", AgencyLevel.MAJOR, domains=["bbc.com", "bbc.co.uk"]),
            Agency("State Outlet", AgencyLevel.RESTRICTED, domains=["state.example"]),
        ]
    )


@pytest.fixture
def cooldowns(clock):
    return DomainCooldownTracker(clock=clock)


@pytest.fixture
def engine(registry, cooldowns):
    return CandidateEngine(registry, cooldowns=cooldowns, date_window_days=3)


def reasons(classification):
    return {item.source: item.reason for item in classification.rejected}


def test_wire_services_rank_first_and_direct_links_first(engine, event):
    result = engine.classify(
        event,
        [
            {"source": "Valley Blog", "url": "https://valleyblog.net/flood", "title": TITLE, "rank": 1},
            {"source": "AP", "gnUrl": "https://news.google.com/articles/ap", "title": TITLE, "rank": 2},
            {"source": "BBC News", "url": "https://www.bbc.co.uk/news/flood", "title": TITLE, "rank": 3},
            {"source": "Reuters", "url": "https://www.reuters.com/world/flood", "title": TITLE, "rank": 4},
        ],
    )

    assert [item.source for item in result.accepted] == ["Reuters", "AP", "BBC News", "Valley Blog"]
    assert [item.level for item in result.accepted] == [5, 5, 4, 1]


def test_rank_breaks_ties_within_level(engine, event):
    result = engine.classify(
        event,
        [
            {"source": "Reuters", "url": "https://reuters.com/b", "rank": 7},
            {"source": "AP", "url": "https://apnews.com/a", "rank": 2},
        ],
    )
    assert [item.source for item in result.accepted] == ["AP", "Reuters"]


def test_prefilter_rejections(engine, cooldowns, event):
    cooldowns.set_cooldown("reuters.com", 600, "rate_limited")
    event.gn_url = "https://news.google.com/articles/self"
    result = engine.classify(
        event,
        [
            {"source": "", "url": "https://nosource.com/x"},
            {"source": "Reuters", "url": "https://www.reuters.com/world/flood"},
            {"source": "Old News", "url": "https://oldnews.com/x", "date": "2026-01-20"},
            {"source": "Local Paper", "url": "https://mirror.localpaper.org/x"},
            {"source": "Local Paper Syndication", "url": "https://localpaper.com/other"},
            {"source": "AP", "gnUrl": "https://news.google.com/articles/self"},
            {"source": "State Outlet", "url": "https://state.example/x"},
        ],
    )

    assert result.accepted == []
    assert reasons(result) == {
        "": "missing_link_or_source",
        "Reuters": "domain_cooldown",
        "Old News": "date_out_of_range",
        "Local Paper": "same_source",
        "Local Paper Syndication": "same_domain",
        "AP": "duplicate_candidate",
        "State Outlet": "below_min_agency",
    }


def test_undated_candidates_pass_date_filter(engine, event):
    result = engine.classify(event, [{"source": "AP", "url": "https://apnews.com/a"}])
    assert len(result.accepted) == 1


def test_deprioritize_undated(registry, cooldowns, event):
    candidates = [
        {"source": "AP", "url": "https://apnews.com/a", "rank": 1},
        {"source": "Reuters", "url": "https://reuters.com/b", "rank": 2, "date": "2026-02-01"},
    ]
    plain = CandidateEngine(registry, cooldowns=cooldowns).classify(event, candidates)
    assert plain.accepted[0].source == "AP"

    engine = CandidateEngine(registry, cooldowns=cooldowns, deprioritize_undated=True)
    assert engine.classify(event, candidates).accepted[0].source == "Reuters"


def test_min_level_filters_niche(registry, cooldowns, event):
    engine = CandidateEngine(registry, cooldowns=cooldowns, min_level="major")
    result = engine.classify(
        event,
        [{"source": "Valley Blog", "url": "https://valleyblog.net/x"}, {"source": "BBC", "url": "https://bbc.com/x"}],
    )
    assert [item.source for item in result.accepted] == ["BBC"]
    assert reasons(result) == {"Valley Blog": "below_min_agency"}


def test_duplicates_keep_best_ranked_entry(engine, event):
    result = engine.classify(
        event,
        [
            {"source": "AP", "gnUrl": "https://news.google.com/articles/ap1", "title": TITLE, "rank": 1},
            {"source": "Associated Press", "url": "https://apnews.com/article/flood", "title": TITLE, "rank": 5},
            {"source": "AP", "url": "https://apnews.com/article/flood-2", "title": "Flood waters rise in valley", "rank": 6},
        ],
    )

    assert len(result.accepted) == 2
    assert result.accepted[0].url == "https://apnews.com/article/flood"
    assert result.rejected_counts() == {"duplicate_candidate": 1}


def test_alternatives_reads_event_articles(engine, event):
    event.articles = [{"source": "Reuters", "url": "https://reuters.com/x", "titleEn": TITLE}]
    assert [item.source for item in engine.alternatives(event)] == ["Reuters"]


def test_should_expand_alternatives(event):
    assert should_expand_alternatives(event, [])
    same_source = [Candidate(source="Local Paper", url="https://other.com/x")]
    assert should_expand_alternatives(event, same_source)
    assert not should_expand_alternatives(event, [Candidate(source="AP", url="https://apnews.com/x")])


def test_should_external_search():
    assert should_external_search([])
    assert should_external_search([Candidate(source="AP", gn_url="https://news.google.com/articles/x")])
    assert not should_external_search([Candidate(source="AP", url="https://apnews.com/x")])


def test_merge_candidates_adds_matching_new_hits(event):
    event.articles = [{"source": "AP", "url": "https://apnews.com/flood", "titleEn": TITLE}]
    added = merge_candidates(
        event,
        [
            Candidate(source="AP", url="https://apnews.com/flood", title=TITLE),
            Candidate(source="Reuters", url="https://reuters.com/flood", title="Rescue crews search valley as flood waters rise"),
            Candidate(source="BBC", url="https://bbc.com/budget", title="Parliament passes budget after long debate"),
            Candidate(source="", url="https://nosource.com/x", title=TITLE),
        ],
    )

    assert added == 1
    assert [item["source"] for item in event.articles] == ["AP", "Reuters"]


def test_merge_candidates_without_title_accepts_any_linked_hit():
    event = TargetEvent(id=2, gn_url="https://news.google.com/articles/x")
    assert merge_candidates(event, [Candidate(source="AP", url="https://apnews.com/a", title="Anything")]) == 1


def test_parse_date_normalizes_to_naive_utc():
    assert parse_date("2026-02-01T10:00:00+02:00") == datetime(2026, 2, 1, 8, 0)
    assert parse_date("not a date") is None
    assert parse_date(None) is None
