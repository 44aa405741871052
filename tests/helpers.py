"""Fakes and HTML builders shared by the grinder tests."""

from __future__ import annotations

from grinder.models.events import BrowseResult, FetchResponse, VerificationResult

SENTENCE = (
    "Rescue crews searched the flooded valley through the night as water levels "
    "kept rising along the river banks. "
)


def long_text(sentences: int = 8) -> str:
    """Plain article text comfortably above the default minimum length."""
    return (SENTENCE * sentences).strip()


def article_html(text: str | None = None, title: str = "Flood waters rise in valley") -> str:
    body = text if text is not None else long_text()
    return (
        "<html><head>"
        f"<title>{title}</title>"
        f'<meta property="og:title" content="{title}">'
        "</head><body>"
        f"<article><p>{body}</p></article>"
        "</body></html>"
    )


def text_response(url_text: str | None = None, method: str = "fetch", status=200) -> FetchResponse:
    text = url_text or long_text()
    return FetchResponse(html=article_html(text), text=text, method=method, status=status)


class ClockStub:
    """Manual clock with a sleep that advances it."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeFetcher:
    """Scripted fetch chain: ``responses`` maps URL to a response or a list of them."""

    def __init__(self, responses=None, statuses=None):
        self.responses = dict(responses or {})
        self.statuses = dict(statuses or {})
        self.calls: list[str] = []

    def fetch(self, url, on_method=None):
        self.calls.append(url)
        value = self.responses.get(url, FetchResponse())
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if on_method is not None:
            on_method(value.method or "fetch")
        return value

    def last_status(self, url):
        return self.statuses.get(url)

    def fetch_html(self, url):
        return ""


class FakeBrowser:
    def __init__(self, results=None, error=None):
        self.results = dict(results or {})
        self.error = error
        self.calls: list[tuple[str, bool]] = []
        self.closed = False

    def browse(self, url, ignore_cooldown=False):
        self.calls.append((url, ignore_cooldown))
        if self.error is not None:
            raise self.error
        return self.results.get(url, BrowseResult())

    def close(self):
        self.closed = True


def ok_verdict(confidence: float = 0.9) -> VerificationResult:
    return VerificationResult(ok=True, match=True, confidence=confidence, status="ok", verified=True)


def mismatch_verdict(reason: str = "different event") -> VerificationResult:
    return VerificationResult(
        ok=False, match=False, confidence=0.2, status="mismatch", verified=True, reason=reason
    )


class FakeVerifier:
    """``verdicts`` maps URL to a VerificationResult or an exception to raise."""

    def __init__(self, verdicts=None, default=None):
        self.verdicts = dict(verdicts or {})
        self.default = default or ok_verdict()
        self.calls: list[dict] = []

    def check(self, event, url, text, is_fallback=False, method="", meta=None):
        self.calls.append(
            {"url": url, "is_fallback": is_fallback, "method": method, "meta": meta or {}}
        )
        verdict = self.verdicts.get(url, self.default)
        if isinstance(verdict, Exception):
            raise verdict
        return verdict
