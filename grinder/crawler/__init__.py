"""Article fetching: direct HTTP, text proxy, archive mirrors and the Wayback Machine."""

import logging
import random
from typing import Any, Callable, Dict, Optional

import requests

from ..models.events import FetchResponse
from ..utils.error_guidance import action_for_fetch
from ..utils.fetch_log import FetchLog
from .cooldown import DomainCooldownTracker
from .text import extract_text, strip_html_fast
from .utils import get_host, strip_query


class RateLimitError(Exception):
    """Exception raised when a host answers 429 and must be left alone."""

    pass


class CaptchaError(Exception):
    """Exception raised when a captcha or bot challenge blocks a page."""

    pass


class NavigationTimeoutError(Exception):
    """Exception raised when a page does not load within the timeout."""

    pass


class BrowserClosedError(Exception):
    """Exception raised when the browser session is gone.

    Fatal to the whole run: a fresh session needs operator attention.
    """

    pass


# Optional: Cloudflare-aware session
try:
    import cloudscraper

    CLOUDSCRAPER_AVAILABLE = True
except ImportError:
    CLOUDSCRAPER_AVAILABLE = False
    cloudscraper = None
    logging.warning("cloudscraper not available, Cloudflare bypass disabled")

logger = logging.getLogger(__name__)

# Sentinel key in the cooldown tracker covering every archive mirror at once
ARCHIVE_COOLDOWN_KEY = "archive-mirrors.invalid"

FETCH_METHODS = ("fetch", "jina", "archive", "wayback", "wayback-jina")

USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/129.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/129.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/128.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:131.0) Gecko/20100101 Firefox/131.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/18.0 Safari/605.1.15",
)

# Each header is drawn once per session from its pool
HEADER_POOLS = {
    "Accept": (
        "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
        "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    ),
    "Accept-Language": ("en-US,en;q=0.9", "en-GB,en;q=0.9", "en-US,en;q=0.9,es;q=0.8"),
    "Accept-Encoding": ("gzip, deflate, br", "gzip, deflate"),
}

FIXED_HEADERS = {
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
}

# Checked in order; only active challenges count, since passive recaptcha
# script tags show up on plenty of normal article pages.
PROTECTION_MARKERS = (
    ("perimeterx", ("window._pxappid", "px-captcha", "captcha.px-cloud.net")),
    ("datadome", ("window.ddjskey", "geo.captcha-delivery.com")),
    ("cloudflare", ("checking your browser", "cf-challenge", "<title>just a moment...</title>",
                    "attention required! | cloudflare")),
    ("bot_protection", ("are you a robot", "verify you are human", "please complete the captcha",
                        "solve the captcha", "press and hold")),
)


def detect_protection(text: str, status_code: int = 200) -> Optional[str]:
    """Name the bot-protection vendor behind a response body, if any."""
    if not text:
        return None
    lower = text.lower()
    for kind, markers in PROTECTION_MARKERS:
        if any(marker in lower for marker in markers):
            return kind
    if status_code in (403, 503) and len(text) < 500:
        return "suspicious_short_response"
    return None


COOLDOWN_CONTINUE_STATUSES = (401, 403, 503, 504)
ARCHIVE_NO_RESULTS_MARKERS = ("no results", "list of urls, ordered from newer to older")


class ArticleFetcher:
    """Single-attempt fetch chain for one URL.

    Strategies run strictly in order and stop at the first one whose markup
    yields article text:

    1. ``fetch``: direct GET with browser-like headers. A 429 puts the host in
       cooldown and aborts the whole chain; 401/403/503/504, bot challenges
       and timeouts put the host in cooldown and fall through.
    2. ``jina``: the text-rendering proxy.
    3. ``archive``: archive mirrors in sequence; a 429 from any mirror starts
       an archive-wide cooldown.
    4. ``wayback`` / ``wayback-jina``: closest Wayback snapshot, fetched
       directly and then through the text proxy.

    Markup that only yields text shorter than the minimum is remembered as
    ``short`` and returned when nothing better turns up.
    """

    def __init__(
        self,
        settings,
        cooldowns: Optional[DomainCooldownTracker] = None,
        fetch_log: Optional[FetchLog] = None,
        user_agent: Optional[str] = None,
    ):
        self.settings = settings
        self.timeout = settings.fetch_timeout
        self.min_text_length = settings.min_text_length
        self.max_html_chars = settings.max_html_to_text_chars
        self.cooldowns = cooldowns or DomainCooldownTracker(settings.cooldown_probe_seconds)
        self.fetch_log = fetch_log or FetchLog()
        # Direct-fetch status per URL, read back by the retry loop
        self.last_statuses: Dict[str, Any] = {}

        self.user_agent = user_agent or random.choice(USER_AGENTS)
        self.session = self._new_session()

    def _new_session(self):
        """Build an HTTP session carrying this fetcher's browser identity."""
        if CLOUDSCRAPER_AVAILABLE and cloudscraper is not None:
            session = cloudscraper.create_scraper()
        else:
            session = requests.Session()
        headers = {"User-Agent": self.user_agent, **FIXED_HEADERS}
        for name, choices in HEADER_POOLS.items():
            headers[name] = random.choice(choices)
        if random.random() < 0.7:
            headers["DNT"] = "1"
        session.headers.update(headers)
        return session

    def _set_cooldown(self, url: str, status, reason: str) -> None:
        seconds = self.settings.cooldown_for_status(status)
        if seconds:
            self.cooldowns.set_cooldown(url, seconds, reason)

    def _get(self, url: str, **kwargs) -> requests.Response:
        return self.session.get(url, timeout=self.timeout, allow_redirects=True, **kwargs)

    def _log(self, url: str, method: str, status, message: str, level: str = "info", **data):
        payload = {"phase": "fetch", "method": method, "status": status, "url": url}
        payload.update({key: value for key, value in data.items() if value not in (None, "")})
        self.fetch_log.record(payload, message, level)

    def last_status(self, url: str):
        return self.last_statuses.get(url)

    # Strategies. Each returns markup (possibly "") and never raises, except
    # fetch_direct which raises RateLimitError on 429.

    def fetch_direct(self, url: str) -> str:
        """Direct GET; records the outcome in ``last_statuses``."""
        try:
            response = self._get(url)
        except requests.exceptions.Timeout:
            self.last_statuses[url] = "timeout"
            self._set_cooldown(url, "timeout", "timeout")
            self._log(url, "fetch", "timeout", f"fetch timeout {url}", "warn",
                      action=action_for_fetch("timeout"))
            return ""
        except requests.exceptions.RequestException as e:
            self.last_statuses[url] = "error"
            self._log(url, "fetch", "error", f"fetch failed {url}: {e}", "warn")
            return ""

        status = response.status_code
        self.last_statuses[url] = status

        if status == 429:
            self._set_cooldown(url, 429, "rate_limited")
            self._log(url, "fetch", 429, f"fetch rate limited {url}", "warn",
                      action=action_for_fetch(429))
            raise RateLimitError(f"Host {get_host(url)} returned 429")

        # Short 403/503 bodies are handled as plain status blocks below
        protection = detect_protection(response.text, response.status_code)
        if protection and protection != "suspicious_short_response":
            self.last_statuses[url] = "captcha"
            self._set_cooldown(url, "captcha", protection)
            self._log(url, "fetch", "captcha", f"fetch captcha ({protection}) {url}", "warn",
                      http_status=status, action=action_for_fetch("captcha"))
            return ""

        if status in COOLDOWN_CONTINUE_STATUSES:
            self._set_cooldown(url, status, f"http_{status}")
            self._log(url, "fetch", status, f"fetch blocked ({status}) {url}", "warn",
                      action=action_for_fetch(status))
            return ""

        if status >= 400:
            self._log(url, "fetch", status, f"fetch failed ({status}) {url}", "warn",
                      action=action_for_fetch(status))
            return ""

        return response.text or ""

    def fetch_jina(self, url: str) -> str:
        proxy_url = f"{self.settings.jina_base_url}{url}"
        if self.cooldowns.is_in_cooldown(proxy_url):
            logger.debug(f"Text proxy cooling down, skipping {url}")
            return ""
        try:
            response = self._get(proxy_url, headers={"Accept": "text/plain"})
        except requests.exceptions.RequestException as e:
            self._log(url, "jina", "error", f"jina failed {url}: {e}", "warn")
            return ""
        if response.status_code == 429:
            self._set_cooldown(proxy_url, 429, "rate_limited")
        if response.status_code != 200:
            self._log(url, "jina", response.status_code, f"jina failed ({response.status_code}) {url}", "warn")
            return ""
        return response.text or ""

    def fetch_archive(self, url: str) -> str:
        target = strip_query(url)
        for mirror in self.settings.archive_mirrors:
            if self.cooldowns.is_in_cooldown(ARCHIVE_COOLDOWN_KEY):
                logger.debug("Archive mirrors cooling down")
                return ""
            archive_url = f"https://{mirror}/newest/{target}"
            try:
                response = self._get(archive_url)
            except requests.exceptions.RequestException as e:
                self._log(url, "archive", "error", f"archive {mirror} failed: {e}", "warn")
                continue
            if response.status_code == 429:
                self.cooldowns.set_cooldown(
                    ARCHIVE_COOLDOWN_KEY, self.settings.archive_cooldown_seconds, f"429 from {mirror}"
                )
                self._log(url, "archive", 429, f"archive {mirror} rate limited", "warn")
                return ""
            if response.status_code != 200 or not response.text:
                continue
            lower = response.text.lower()
            if any(marker in lower for marker in ARCHIVE_NO_RESULTS_MARKERS):
                logger.debug(f"No archived copy of {url} on {mirror}")
                continue
            if detect_protection(response.text, response.status_code):
                self._log(url, "archive", "captcha", f"archive {mirror} challenge", "warn")
                continue
            return response.text
        return ""

    def find_wayback_snapshot(self, url: str) -> str:
        try:
            response = self.session.get(
                self.settings.wayback_api_url,
                params={"url": strip_query(url)},
                timeout=self.timeout,
            )
            if response.status_code != 200:
                return ""
            closest = (response.json().get("archived_snapshots") or {}).get("closest") or {}
        except (requests.exceptions.RequestException, ValueError) as e:
            self._log(url, "wayback", "error", f"wayback lookup failed {url}: {e}", "warn")
            return ""
        if closest.get("available") and closest.get("url"):
            return str(closest["url"])
        return ""

    def fetch_wayback(self, snapshot_url: str) -> str:
        try:
            response = self._get(snapshot_url)
        except requests.exceptions.RequestException as e:
            logger.debug(f"Wayback snapshot fetch failed {snapshot_url}: {e}")
            return ""
        if response.status_code != 200:
            return ""
        return response.text or ""

    def _evaluate(self, html: str) -> tuple[str, bool]:
        """Return ``(text, short)`` for a piece of markup."""
        text = extract_text(html, self.min_text_length, self.max_html_chars)
        if text:
            return text, False
        probe = strip_html_fast(html, 4000)
        return "", bool(probe) and len(probe) <= self.min_text_length

    def fetch(self, url: str, on_method: Optional[Callable[[str], None]] = None) -> FetchResponse:
        """Run the chain once for ``url``."""
        notify = on_method or (lambda method: None)
        fallback = FetchResponse()
        skipped_reason = ""
        direct_status = None

        def consider(html: str, method: str) -> Optional[FetchResponse]:
            nonlocal fallback
            if not html:
                return None
            text, short = self._evaluate(html)
            if text:
                self._log(url, method, "ok", f"{method} ok {url}", text_length=len(text))
                return FetchResponse(html=html, text=text, method=method, status=direct_status)
            if short and not fallback.short:
                fallback = FetchResponse(html=html, method=method, short=True)
            elif not fallback.html:
                fallback = FetchResponse(html=html, method=method)
            self._log(url, method, "short" if short else "no_text", f"{method} no usable text {url}")
            return None

        cooldown = self.cooldowns.is_in_cooldown(url)
        if cooldown:
            skipped_reason = "cooldown"
            self._log(url, "fetch", "skipped", f"fetch skipped, {cooldown.host} cooling down "
                      f"{cooldown.remaining:.0f}s ({cooldown.reason})")
        else:
            notify("fetch")
            try:
                html = self.fetch_direct(url)
            except RateLimitError as e:
                logger.warning(f"{e}; aborting fetch chain for {url}")
                return FetchResponse(method="fetch", status=429)
            direct_status = self.last_statuses.get(url)
            if direct_status in ("captcha", "timeout"):
                notify(direct_status)
            result = consider(html, "fetch")
            if result:
                return result

        for method, strategy in (("jina", self.fetch_jina), ("archive", self.fetch_archive)):
            notify(method)
            result = consider(strategy(url), method)
            if result:
                return self._finish(result, skipped_reason)

        notify("wayback")
        snapshot = self.find_wayback_snapshot(url)
        if snapshot:
            result = consider(self.fetch_wayback(snapshot), "wayback")
            if result:
                return self._finish(result, skipped_reason)
            notify("wayback-jina")
            result = consider(self.fetch_jina(snapshot), "wayback-jina")
            if result:
                return self._finish(result, skipped_reason)

        fallback.status = direct_status
        fallback.skipped_reason = skipped_reason
        return fallback

    @staticmethod
    def _finish(result: FetchResponse, skipped_reason: str) -> FetchResponse:
        result.skipped_reason = skipped_reason
        return result

    def fetch_html(self, url: str, attempts: int = 2) -> str:
        """Plain direct GET, cooldown-aware, retried once on connection errors."""
        for _ in range(attempts):
            if not url or self.cooldowns.is_in_cooldown(url):
                return ""
            try:
                html = self.fetch_direct(url)
            except RateLimitError:
                return ""
            if html or self.last_statuses.get(url) != "error":
                return html
        return ""
