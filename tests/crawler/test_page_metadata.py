import json

from grinder.crawler.metadata import META_FIELDS, extract_meta, has_meta, merge_meta


def test_meta_tags_in_priority_order():
    html = (
        "<html><head><title>Fallback title</title>"
        '<meta name="twitter:title" content="Twitter title">'
        '<meta property="og:title" content="OG title">'
        '<meta name="description" content="Plain description">'
        '<meta property="og:description" content="OG description">'
        '<meta name="news_keywords" content="flood, rescue">'
        '<meta property="article:published_time" content="2026-02-01T10:00:00Z">'
        '<meta property="og:site_name" content="Local Paper">'
        '<link rel="canonical" href="https://example.com/canonical">'
        "</head></html>"
    )
    meta = extract_meta(html)
    assert set(meta) == set(META_FIELDS)
    assert meta["title"] == "OG title"
    assert meta["description"] == "OG description"
    assert meta["keywords"] == "flood, rescue"
    assert meta["date"] == "2026-02-01T10:00:00Z"
    assert meta["canonical_url"] == "https://example.com/canonical"
    assert meta["site_name"] == "Local Paper"


def test_json_ld_wins_over_meta_tags():
    ld = {
        "@context": "https://schema.org",
        "@graph": [
            {
                "@type": "NewsArticle",
                "headline": "LD headline",
                "keywords": ["flood", "valley"],
                "datePublished": "2026-02-02",
                "mainEntityOfPage": {"@id": "https://example.com/ld"},
            }
        ],
    }
    html = (
        '<html><head><meta property="og:title" content="OG title">'
        f'<script type="application/ld+json">{json.dumps(ld)}</script>'
        "</head></html>"
    )
    meta = extract_meta(html)
    assert meta["title"] == "LD headline"
    assert meta["keywords"] == "flood, valley"
    assert meta["date"] == "2026-02-02"
    assert meta["canonical_url"] == "https://example.com/ld"


def test_title_tag_fallback_and_empty_input():
    assert extract_meta("<html><head><title>Only &amp; title</title></head></html>")["title"] == "Only & title"
    assert extract_meta("") == {}


def test_broken_json_ld_is_ignored():
    html = '<html><head><script type="application/ld+json">{not json</script><title>T</title></head></html>'
    assert extract_meta(html)["title"] == "T"


def test_merge_meta_page_values_win():
    merged = merge_meta({"title": "Page", "description": ""}, {"title": "Hint", "description": "D", "source": "AP"})
    assert merged == {"title": "Page", "description": "D", "source": "AP"}


def test_merge_meta_copies_site_name_to_source():
    assert merge_meta({"site_name": "Reuters"}, None)["source"] == "Reuters"


def test_has_meta():
    assert not has_meta({})
    assert not has_meta({"title": ""})
    assert has_meta({"title": "x"})
