"""BrowserSession against a scripted driver; no real Chrome is started."""

from types import SimpleNamespace

import pytest
from selenium.common.exceptions import InvalidSessionIdException, TimeoutException, WebDriverException

from grinder.crawler import ARCHIVE_COOLDOWN_KEY, BrowserClosedError, CaptchaError, NavigationTimeoutError
from grinder.crawler.browser import (
    CONTENT_METRICS_SCRIPT,
    BrowserSession,
    captcha_keyword_reason,
    has_article_content,
)
from grinder.crawler.cooldown import DomainCooldownTracker
from tests.helpers import article_html

URL = "https://www.localpaper.com/news/flood-waters-rise-in-valley"
ARCHIVE_URL = f"https://archive.ph/{URL}"
CONTENT_METRICS = {"bodyLen": 2000, "articleLen": 900, "words": 300, "paragraphs": 6, "hasTitle": True}


def element(html):
    return SimpleNamespace(get_attribute=lambda name: html, click=lambda: None)


class FakeDriver:
    def __init__(self, pages=None):
        self.pages = pages or {}
        self.current = {}
        self.visited = []
        self.quit_called = False
        self.page_timeout = None

    def set_page_load_timeout(self, seconds):
        self.page_timeout = seconds

    def get(self, url):
        self.visited.append(url)
        page = self.pages.get(url, {})
        self.current = page
        if page.get("error") is not None:
            self.current = {}
            raise page["error"]

    @property
    def page_source(self):
        return self.current.get("html", "")

    def execute_script(self, script, *args):
        if script == CONTENT_METRICS_SCRIPT:
            return self.current.get("metrics", {})
        if "innerHTML" in script:
            return self.current.get("body", self.current.get("html", ""))
        return None

    def find_elements(self, by, selector):
        return self.current.get("elements", {}).get(selector, [])

    def quit(self):
        self.quit_called = True


@pytest.fixture
def cooldowns(clock):
    return DomainCooldownTracker(clock=clock)


def make_session(settings, cooldowns, driver):
    return BrowserSession(settings, cooldowns=cooldowns, driver_factory=lambda: driver)


def test_archive_copy_is_preferred(settings, cooldowns):
    html = article_html()
    driver = FakeDriver(
        {ARCHIVE_URL: {"metrics": CONTENT_METRICS, "elements": {".body": [element(html)]}}}
    )
    result = make_session(settings, cooldowns, driver).browse(URL)

    assert result.html == html
    assert result.meta["title"] == "Flood waters rise in valley"
    assert driver.visited == [ARCHIVE_URL]
    assert driver.page_timeout == settings.browser_page_timeout


def test_original_page_rendered_when_archive_empty(settings, cooldowns):
    driver = FakeDriver({URL: {"html": article_html(), "body": "<article>body</article>", "metrics": CONTENT_METRICS}})

    result = make_session(settings, cooldowns, driver).browse(URL)

    assert driver.visited == [ARCHIVE_URL, URL]
    assert result.html == "<article>body</article>"
    assert result.meta["title"] == "Flood waters rise in valley"
    assert not result.aborted


def test_captcha_on_original_raises_and_cools_host(settings, cooldowns):
    driver = FakeDriver({URL: {"html": "<h1>Please verify you are human</h1>"}})

    with pytest.raises(CaptchaError):
        make_session(settings, cooldowns, driver).browse(URL)

    assert cooldowns.is_in_cooldown(URL).reason == "captcha"


def test_real_content_is_never_flagged_as_captcha(settings, cooldowns):
    html = article_html() + '<script src="https://www.google.com/recaptcha/api.js"></script>captcha'
    driver = FakeDriver({URL: {"html": html, "metrics": CONTENT_METRICS}})

    result = make_session(settings, cooldowns, driver).browse(URL)

    assert result.html


def test_navigation_timeout_raises_and_cools_host(settings, cooldowns):
    driver = FakeDriver({URL: {"error": TimeoutException("slow")}})

    with pytest.raises(NavigationTimeoutError):
        make_session(settings, cooldowns, driver).browse(URL)

    assert cooldowns.is_in_cooldown(URL).reason == "timeout"


def test_soft_cooldown_ignored_only_for_primary(settings, cooldowns):
    cooldowns.set_cooldown(URL, 600, "http_403")
    driver = FakeDriver({URL: {"html": article_html(), "metrics": CONTENT_METRICS}})
    session = make_session(settings, cooldowns, driver)

    fallback = session.browse(URL, ignore_cooldown=False)
    assert fallback.aborted
    assert fallback.abort_reason == "cooldown"
    assert URL not in driver.visited

    primary = session.browse(URL, ignore_cooldown=True)
    assert not primary.aborted
    assert URL in driver.visited


def test_hard_cooldown_always_honored(settings, cooldowns):
    cooldowns.set_cooldown(URL, 600, "captcha")
    driver = FakeDriver({URL: {"html": article_html(), "metrics": CONTENT_METRICS}})

    result = make_session(settings, cooldowns, driver).browse(URL, ignore_cooldown=True)

    assert result.aborted
    assert result.abort_reason == "cooldown"


def test_archive_captcha_cools_archive_and_continues(settings, cooldowns):
    driver = FakeDriver(
        {
            ARCHIVE_URL: {"html": "<p>Are you a robot?</p>"},
            URL: {"html": article_html(), "metrics": CONTENT_METRICS},
        }
    )
    session = make_session(settings, cooldowns, driver)

    result = session.browse(URL)

    assert result.html
    assert cooldowns.is_in_cooldown(ARCHIVE_COOLDOWN_KEY) is not None

    session.browse(URL)
    assert driver.visited.count(ARCHIVE_URL) == 1


def test_closed_session_is_fatal(settings, cooldowns):
    driver = FakeDriver({ARCHIVE_URL: {"error": InvalidSessionIdException("invalid session id")}})
    session = make_session(settings, cooldowns, driver)

    with pytest.raises(BrowserClosedError):
        session.browse(URL)

    assert driver.quit_called
    assert session.stats()["running"] is False


def test_other_driver_errors_fold_into_result(settings, cooldowns):
    driver = FakeDriver({ARCHIVE_URL: {"error": WebDriverException("renderer crashed")}})

    result = make_session(settings, cooldowns, driver).browse(URL)

    assert result.failed
    assert result.aborted
    assert result.abort_reason == "error"


def test_driver_is_created_once_and_reused(settings, cooldowns):
    created = []

    def factory():
        created.append(1)
        return FakeDriver()

    session = BrowserSession(settings, cooldowns=cooldowns, driver_factory=factory)
    session.browse(URL)
    session.browse(URL)

    stats = session.stats()
    assert len(created) == 1
    assert stats["started"] == 1
    assert stats["reused"] == 1
    assert stats["kind"] == "injected"


def test_has_article_content_thresholds():
    assert has_article_content({"articleLen": 160})
    assert has_article_content({"paragraphs": 2})
    assert has_article_content({"hasTitle": True, "bodyLen": 200})
    assert not has_article_content({"hasTitle": True, "bodyLen": 199})
    assert not has_article_content({})


def test_captcha_keyword_reason():
    assert captcha_keyword_reason("solve this captcha (hcaptcha)") == "keyword:captcha+challenge"
    assert captcha_keyword_reason("Press and hold the button") == "keyword:press_and_hold"
    assert captcha_keyword_reason("<p>regular story</p>") == ""
