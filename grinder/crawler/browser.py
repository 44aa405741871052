"""Browser acquisition, the fallback of last resort.

One persistent Chrome session is created lazily and reused for every event
in a run. Pages are tried through an archive mirror first and only then
rendered from the original host.
"""

import logging
import random
from typing import Any, Callable, Dict, Optional

from selenium import webdriver
from selenium.common.exceptions import (
    InvalidSessionIdException,
    NoSuchWindowException,
    TimeoutException,
    WebDriverException,
)
from selenium.webdriver.chrome.options import Options as ChromeOptions
from selenium.webdriver.chrome.service import Service as ChromeService
from selenium.webdriver.common.by import By
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import WebDriverWait

from ..models.events import BrowseResult
from ..utils.fetch_log import FetchLog
from . import ARCHIVE_COOLDOWN_KEY, BrowserClosedError, CaptchaError, NavigationTimeoutError
from .cooldown import DomainCooldownTracker
from .metadata import extract_meta
from .utils import strip_query

# Advanced anti-detection libraries
try:
    import undetected_chromedriver as uc

    UNDETECTED_CHROME_AVAILABLE = True
except ImportError:
    UNDETECTED_CHROME_AVAILABLE = False
    logging.warning("undetected-chromedriver not available, using standard Selenium")

try:
    from selenium_stealth import stealth

    SELENIUM_STEALTH_AVAILABLE = True
except ImportError:
    SELENIUM_STEALTH_AVAILABLE = False
    logging.warning("selenium-stealth not available, using basic stealth mode")

logger = logging.getLogger(__name__)

ARCHIVE_BROWSE_HOST = "archive.ph"

CAPTCHA_FRAME_SELECTORS = [
    ("iframe:recaptcha", "iframe[src*='recaptcha']"),
    ("iframe:hcaptcha", "iframe[src*='hcaptcha']"),
    ("turnstile", "input[name='cf-turnstile-response'], div.cf-turnstile"),
]

CONTENT_METRICS_SCRIPT = """
const normalize = text => String(text || '').replace(/\\s+/g, ' ').trim();
const bodyText = normalize(document.body ? document.body.innerText : '');
const article = document.querySelector('article, main, [role="main"]');
const articleText = normalize(article ? article.innerText : '');
const h1 = document.querySelector('h1');
const paragraphs = [...document.querySelectorAll('p')]
    .map(node => normalize(node.innerText))
    .filter(text => text.length >= 80);
return {
    bodyLen: bodyText.length,
    articleLen: articleText.length,
    hasTitle: Boolean(h1 && normalize(h1.innerText)),
    words: bodyText ? bodyText.split(/\\s+/).length : 0,
    paragraphs: paragraphs.length,
};
"""

# Chrome error fragments that mean the session is gone for good
_SESSION_CLOSED_MARKERS = (
    "invalid session id",
    "no such window",
    "chrome not reachable",
    "target window already closed",
    "session deleted",
    "disconnected",
)

# Cooldown reasons the browser never overrides, even for a primary URL
_HARD_COOLDOWN_REASONS = ("captcha", "rate_limited", "perimeterx", "datadome",
                          "cloudflare", "bot_protection")


def has_article_content(metrics: Dict[str, Any]) -> bool:
    """True when page metrics indicate real content rather than a challenge page."""
    body_len = int(metrics.get("bodyLen") or 0)
    return (
        int(metrics.get("articleLen") or 0) >= 160
        or body_len >= 500
        or int(metrics.get("words") or 0) >= 120
        or int(metrics.get("paragraphs") or 0) >= 2
        or (bool(metrics.get("hasTitle")) and body_len >= 200)
    )


def captcha_keyword_reason(html: str) -> str:
    lower = (html or "").lower()
    if "captcha" in lower and any(word in lower for word in ("recaptcha", "hcaptcha", "turnstile")):
        return "keyword:captcha+challenge"
    if "verify you are human" in lower:
        return "keyword:verify_you_are_human"
    if "are you a robot" in lower:
        return "keyword:are_you_a_robot"
    if "press and hold" in lower:
        return "keyword:press_and_hold"
    if "cloudflare" in lower:
        return "keyword:cloudflare"
    return ""


def _is_session_closed(error: Exception) -> bool:
    if isinstance(error, (InvalidSessionIdException, NoSuchWindowException)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _SESSION_CLOSED_MARKERS)


class BrowserSession:
    """Persistent Selenium session used for last-resort acquisition."""

    def __init__(
        self,
        settings,
        cooldowns: Optional[DomainCooldownTracker] = None,
        fetch_log: Optional[FetchLog] = None,
        driver_factory: Optional[Callable[[], Any]] = None,
    ):
        self.settings = settings
        self.cooldowns = cooldowns or DomainCooldownTracker(settings.cooldown_probe_seconds)
        self.fetch_log = fetch_log or FetchLog()
        self._driver_factory = driver_factory

        self._driver = None
        self._sessions_started = 0
        self._sessions_reused = 0
        self._driver_kind: Optional[str] = None

    def _chrome_arguments(self) -> list:
        args = ["--no-sandbox", "--disable-dev-shm-usage", "--disable-gpu"]
        if self.settings.browser_headless:
            args.append("--headless=new")
        if self.settings.browser_profile_dir:
            args.append(f"--user-data-dir={self.settings.browser_profile_dir}")
        # Randomized viewport so repeated runs do not share one fingerprint
        args.append(f"--window-size={random.randint(1366, 1920)},{random.randint(768, 1080)}")
        return args

    def _hide_automation(self, driver) -> None:
        if SELENIUM_STEALTH_AVAILABLE:
            try:
                stealth(
                    driver,
                    languages=["en-US", "en"],
                    vendor="Google Inc.",
                    platform="Win32",
                    webgl_vendor="Intel Inc.",
                    renderer="Intel Iris OpenGL Engine",
                    fix_hairline=True,
                )
            except WebDriverException as e:
                logger.debug(f"Stealth patches not applied: {e}")
        try:
            driver.execute_script(
                "Object.defineProperty(navigator, 'webdriver', {get: () => undefined})"
            )
        except WebDriverException as e:
            logger.debug(f"Could not mask navigator.webdriver: {e}")

    def _start_undetected(self):
        options = uc.ChromeOptions()
        options.page_load_strategy = "eager"
        for arg in self._chrome_arguments():
            options.add_argument(arg)

        kwargs: Dict[str, Any] = {"options": options, "use_subprocess": False, "log_level": 3}
        if self.settings.chromedriver_path:
            kwargs["driver_executable_path"] = self.settings.chromedriver_path
        if self.settings.chrome_bin:
            kwargs["browser_executable_path"] = self.settings.chrome_bin
        return uc.Chrome(**kwargs)

    def _start_selenium(self):
        options = ChromeOptions()
        options.page_load_strategy = "eager"
        for arg in self._chrome_arguments() + ["--disable-blink-features=AutomationControlled"]:
            options.add_argument(arg)
        options.add_experimental_option("excludeSwitches", ["enable-automation"])
        options.add_experimental_option("useAutomationExtension", False)
        # Deny permission prompts that would cover the article
        blocked_prompts = {name: 2 for name in ("notifications", "geolocation", "media_stream")}
        options.add_experimental_option(
            "prefs", {"profile.default_content_setting_values": blocked_prompts}
        )
        if self.settings.chrome_bin:
            options.binary_location = self.settings.chrome_bin

        service = None
        if self.settings.chromedriver_path:
            service = ChromeService(executable_path=self.settings.chromedriver_path)
        return webdriver.Chrome(service=service, options=options)

    def _start_driver(self):
        if self._driver_factory is not None:
            self._driver_kind = "injected"
            return self._driver_factory()
        if UNDETECTED_CHROME_AVAILABLE:
            try:
                driver = self._start_undetected()
                self._driver_kind = "undetected-chromedriver"
            except (WebDriverException, OSError, RuntimeError) as e:
                logger.warning(f"undetected-chromedriver could not start ({e}); using plain Selenium")
            else:
                self._hide_automation(driver)
                return driver
        driver = self._start_selenium()
        self._driver_kind = "selenium"
        self._hide_automation(driver)
        return driver

    def driver(self):
        """Return the session's Chrome driver, starting it on first use."""
        if self._driver is not None:
            self._sessions_reused += 1
            return self._driver

        driver = self._start_driver()
        if self.settings.browser_page_timeout:
            driver.set_page_load_timeout(self.settings.browser_page_timeout)
        self._driver = driver
        self._sessions_started += 1
        logger.info(f"Browser session started ({self._driver_kind})")
        return driver

    def close(self):
        """Quit Chrome if it is running; safe to call more than once."""
        if self._driver is None:
            return
        logger.info(f"Closing browser session after {self._sessions_reused + 1} navigations")
        try:
            self._driver.quit()
        except WebDriverException as e:
            logger.warning(f"Browser did not quit cleanly: {e}")
        finally:
            self._driver = None
            self._sessions_reused = 0

    def stats(self) -> Dict[str, Any]:
        return {
            "running": self._driver is not None,
            "started": self._sessions_started,
            "reused": self._sessions_reused,
            "kind": self._driver_kind,
        }

    def detect_captcha_reason(self, driver) -> str:
        """Return why the current page looks like a challenge, or ``""``.

        Pages with real content are never flagged, even if they mention a
        captcha provider in a script tag.
        """
        try:
            metrics = driver.execute_script(CONTENT_METRICS_SCRIPT) or {}
        except WebDriverException as e:
            if _is_session_closed(e):
                raise
            metrics = {}
        if has_article_content(metrics):
            return ""
        reason = captcha_keyword_reason(driver.page_source or "")
        if reason:
            return reason
        for label, selector in CAPTCHA_FRAME_SELECTORS:
            if driver.find_elements(By.CSS_SELECTOR, selector):
                return label
        return ""

    def _navigate(self, driver, url: str) -> None:
        try:
            driver.get(url)
        except TimeoutException:
            # Eager load strategy: DOM may be usable even after the timeout
            try:
                driver.execute_script("window.stop();")
            except WebDriverException as e:
                logger.debug(f"window.stop failed after timeout: {e}")
            if not (driver.page_source or "").strip():
                raise

    def _browse_archive(self, driver, url: str) -> str:
        if self.cooldowns.is_in_cooldown(ARCHIVE_COOLDOWN_KEY):
            return ""
        archive_url = f"https://{ARCHIVE_BROWSE_HOST}/{strip_query(url)}"
        logger.debug(f"Browsing archive {archive_url}")
        try:
            self._navigate(driver, archive_url)
        except TimeoutException:
            logger.info(f"Archive page timed out for {url}")
            return ""

        reason = self.detect_captcha_reason(driver)
        if reason:
            wait = self.settings.browser_captcha_wait
            if wait <= 0:
                logger.info(f"Archive captcha ({reason}); skipping archive for {url}")
                self.cooldowns.set_cooldown(
                    ARCHIVE_COOLDOWN_KEY, self.settings.archive_cooldown_seconds, "captcha"
                )
                return ""
            logger.info(f"Waiting up to {wait:.0f}s for archive captcha to be solved")
            try:
                WebDriverWait(driver, wait).until(
                    EC.presence_of_element_located((By.CSS_SELECTOR, "#CONTENT"))
                )
            except TimeoutException:
                return ""

        versions = driver.find_elements(By.CSS_SELECTOR, ".TEXT-BLOCK > a")
        if versions:
            versions[0].click()
        bodies = driver.find_elements(By.CSS_SELECTOR, ".body")
        return "".join(node.get_attribute("innerHTML") or "" for node in bodies)

    def _host_blocked(self, url: str, ignore_cooldown: bool) -> Optional[str]:
        status = self.cooldowns.is_in_cooldown(url)
        if status is None:
            return None
        if ignore_cooldown and not any(
            hard in (status.reason or "") for hard in _HARD_COOLDOWN_REASONS
        ):
            return None
        return status.reason or "cooldown"

    def browse(self, url: str, ignore_cooldown: bool = False) -> BrowseResult:
        """Render ``url`` (archive first) and return its markup.

        Raises:
            CaptchaError: the original page is a challenge; the host is put
                into captcha cooldown.
            NavigationTimeoutError: the original page did not load; the host
                is put into timeout cooldown.
            BrowserClosedError: the session is gone; fatal to the run.
        """
        try:
            driver = self.driver()
            html = self._browse_archive(driver, url)
            if html:
                self.fetch_log.record(
                    {"phase": "browse", "method": "browse", "status": "ok", "url": url,
                     "source": "archive"},
                    f"browse archive ok {url}",
                )
                return BrowseResult(html=html, meta=extract_meta(html))

            blocked = self._host_blocked(url, ignore_cooldown)
            if blocked:
                logger.info(f"Browser skipping {url}: host cooling down ({blocked})")
                return BrowseResult(aborted=True, abort_reason="cooldown")

            try:
                self._navigate(driver, url)
            except TimeoutException as e:
                self.cooldowns.set_cooldown(
                    url, self.settings.cooldown_for_status("timeout"), "timeout"
                )
                raise NavigationTimeoutError(f"Timed out loading {url}") from e

            reason = self.detect_captcha_reason(driver)
            if reason:
                self.cooldowns.set_cooldown(
                    url, self.settings.cooldown_for_status("captcha"), "captcha"
                )
                raise CaptchaError(f"Captcha on {url} ({reason})")

            page_source = driver.page_source or ""
            body = driver.execute_script("return document.body ? document.body.innerHTML : '';")
            return BrowseResult(html=body or page_source, meta=extract_meta(page_source))
        except WebDriverException as e:
            if _is_session_closed(e):
                self.close()
                raise BrowserClosedError(f"Browser session closed: {e}") from e
            logger.warning(f"Browser failed for {url}: {e}")
            return BrowseResult(failed=True, aborted=True, abort_reason="error")
