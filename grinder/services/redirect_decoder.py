"""Decode Google News article links to publisher URLs.

Old-style article ids are base64-wrapped protobuf messages that carry the
target URL and can be decoded offline. Newer ids (``AU_yqL...``) only
resolve through Google's ``batchexecute`` endpoint, which needs a signature
and timestamp scraped from the article page. Those calls are spaced by a
rate limiter whose interval grows with every call, since Google starts
answering 429 after a burst.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Optional
from urllib.parse import quote, urlparse

import requests
from bs4 import BeautifulSoup

from ..crawler.utils import get_host
from ..utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

BATCHEXECUTE_URL = "https://news.google.com/_/DotsSplashUi/data/batchexecute"
ARTICLE_PAGE_URL = "https://news.google.com/rss/articles/{article_id}"

_PREFIX = b"\x08\x13\x22"
_SUFFIX = b"\xd2\x01\x00"

DECODER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept-Language": "en-US,en;q=0.9",
}


def is_google_news_url(url: Optional[str]) -> bool:
    return get_host(url) == "news.google.com"


def article_id_from_url(url: str) -> str:
    """The opaque id after ``/articles/`` (or ``/read/``), or ``""``."""
    try:
        path = urlparse(url).path
    except ValueError:
        return ""
    segments = [segment for segment in path.split("/") if segment]
    for marker in ("articles", "read"):
        if marker in segments:
            index = segments.index(marker)
            if index + 1 < len(segments):
                return segments[index + 1]
    return ""


def decode_legacy_id(article_id: str) -> str:
    """Decode an old-style base64 id offline; ``""`` when it needs the API."""
    if not article_id:
        return ""
    padded = article_id + "=" * (-len(article_id) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        return ""
    if raw.startswith(_PREFIX):
        raw = raw[len(_PREFIX) :]
    if raw.endswith(_SUFFIX):
        raw = raw[: -len(_SUFFIX)]
    if not raw:
        return ""
    # Field length is a protobuf varint: one byte, or two when the high bit is set.
    length, start = raw[0], 1
    if length >= 0x80 and len(raw) > 1:
        length, start = (raw[0] & 0x7F) | (raw[1] << 7), 2
    text = raw[start : start + length].decode("latin-1", errors="ignore")
    if text.startswith("AU_yqL"):
        return ""
    return text if text.startswith("http") else ""


class RedirectDecoder:
    """Resolve ``news.google.com`` article links, with growing spacing."""

    def __init__(
        self,
        settings=None,
        session: Optional[requests.Session] = None,
        rate_limiter: Optional[RateLimiter] = None,
        timeout: float = 10.0,
    ):
        self.session = session or requests.Session()
        if rate_limiter is None:
            delay = settings.url_decode_delay if settings is not None else 30.0
            increment = settings.url_decode_increment if settings is not None else 1.0
            rate_limiter = RateLimiter(delay, increment=increment, name="url_decode")
        self.rate_limiter = rate_limiter
        self.timeout = timeout
        self._cache: dict[str, str] = {}

    def needs_network(self, url: str) -> bool:
        """True when decoding ``url`` has to call Google (and so is rate-limited)."""
        if not is_google_news_url(url) or url in self._cache:
            return False
        return not decode_legacy_id(article_id_from_url(url))

    def ready(self, url: str) -> bool:
        """True when ``url`` can be decoded now without waiting."""
        return not self.needs_network(url) or self.rate_limiter.ready()

    def _signature(self, article_id: str) -> tuple[str, str]:
        response = self.session.get(
            ARTICLE_PAGE_URL.format(article_id=article_id),
            headers=DECODER_HEADERS,
            timeout=self.timeout,
        )
        response.raise_for_status()
        soup = BeautifulSoup(response.text, "html.parser")
        node = soup.select_one("c-wiz > div[jscontroller]")
        if node is None:
            return "", ""
        return str(node.get("data-n-a-sg") or ""), str(node.get("data-n-a-ts") or "")

    def _batchexecute(self, article_id: str, signature: str, timestamp: str) -> str:
        request = [
            "Fbv4je",
            (
                '["garturlreq",[["X","X",["X","X"],null,null,1,1,"US:en",null,1,'
                'null,null,null,null,null,0,1],"X","X",1,[1,1,1],1,1,null,0,0,null,0],'
                f'"{article_id}",{timestamp},"{signature}"]'
            ),
        ]
        body = f"f.req={quote(json.dumps([[request]]))}"
        response = self.session.post(
            BATCHEXECUTE_URL,
            data=body,
            headers={
                **DECODER_HEADERS,
                "Content-Type": "application/x-www-form-urlencoded;charset=UTF-8",
            },
            timeout=self.timeout,
        )
        if response.status_code == 429:
            # Push the next call out by a full interval on top of the normal spacing.
            self.rate_limiter.bump(2 * self.rate_limiter.interval)
        response.raise_for_status()
        chunks = response.text.split("\n\n", 1)
        payload = json.loads(chunks[1] if len(chunks) > 1 else chunks[0].replace(")]}'", ""))
        inner = json.loads(payload[0][2])
        url = inner[1] if isinstance(inner, list) and len(inner) > 1 else ""
        return url if isinstance(url, str) and url.startswith("http") else ""

    def decode(self, url: str) -> str:
        """Publisher URL for ``url``; non-Google URLs pass through unchanged.

        Returns ``""`` when the link cannot be decoded.
        """
        if not url or not is_google_news_url(url):
            return url or ""
        if url in self._cache:
            return self._cache[url]

        article_id = article_id_from_url(url)
        decoded = decode_legacy_id(article_id)
        if decoded:
            self._cache[url] = decoded
            return decoded
        if not article_id:
            logger.warning(f"No article id in Google News link {url}")
            return ""

        self.rate_limiter.wait()
        try:
            signature, timestamp = self._signature(article_id)
            if not signature or not timestamp:
                logger.warning(f"No decoding signature for {url}")
                return ""
            decoded = self._batchexecute(article_id, signature, timestamp)
        except (requests.exceptions.RequestException, ValueError, IndexError, TypeError) as e:
            logger.warning(f"Google News link decode failed for {url}: {e}")
            return ""
        if decoded:
            logger.info(f"Decoded {url} -> {decoded}")
            self._cache[url] = decoded
        return decoded
