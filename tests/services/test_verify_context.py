from grinder.services.verify_context import VerifyContextBuilder, extract_text_snippet
from tests.helpers import SENTENCE, long_text

ORIGINAL_PAGE = (
    "<html><head><title>Flood waters rise in valley - Local Paper</title>"
    '<meta name="description" content="Crews searched through the night.">'
    '<meta name="keywords" content="flood, rescue">'
    "<style>p { color: red }</style>"
    f"</head><body><article><p>{long_text()}</p></article></body></html>"
)


class PageFetcher:
    def __init__(self, html=""):
        self.html = html
        self.calls = []

    def fetch_html(self, url):
        self.calls.append(url)
        return self.html


def test_context_enriched_from_original_page(event):
    event.capture_original()
    fetcher = PageFetcher(ORIGINAL_PAGE)
    context = VerifyContextBuilder(fetcher, max_chars=100).build(event)

    assert fetcher.calls == [event.url]
    assert context["url"] == event.url
    assert context["source"] == "Local Paper"
    assert context["title"] == "Flood waters rise in valley"
    assert context["description"] == "Crews searched through the night."
    assert context["keywords"] == "flood, rescue"
    assert len(context["textSnippet"]) == 100
    assert SENTENCE[:21] in context["textSnippet"]


def test_context_is_built_once_per_event(event):
    fetcher = PageFetcher(ORIGINAL_PAGE)
    builder = VerifyContextBuilder(fetcher)
    first = builder.build(event)
    assert builder.build(event) is first
    assert len(fetcher.calls) == 1


def test_context_uses_original_url_after_fallback(event):
    event.capture_original()
    original_url = event.url
    event.url = "https://apnews.com/article/flood"
    fetcher = PageFetcher("")
    context = VerifyContextBuilder(fetcher).build(event)

    assert fetcher.calls == [original_url]
    assert context["title"] == "Flood waters rise in valley as rescue crews search"
    assert context["textSnippet"] == ""


def test_extract_text_snippet_drops_styles():
    snippet = extract_text_snippet("<style>.x { color: red }</style><p>Visible words</p>")
    assert snippet == "Visible words"
    assert extract_text_snippet("") == ""
