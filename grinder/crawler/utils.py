"""URL, source-name and title normalization helpers.

These helpers define the identity rules the rest of the pipeline relies on:
- a host is compared without its ``www.`` prefix
- a cache key is derived from the URL with tracking parameters removed
- source names and titles are compared through lowercase, punctuation-free
  keys so that "The Associated Press" and "associated press" collide
"""

from __future__ import annotations

import hashlib
import html
import re
import unicodedata
from urllib.parse import parse_qsl, unquote, urlencode, urlparse, urlunparse

TRACKING_PREFIXES = ("utm_", "gaa_", "ga_")
TRACKING_KEYS = frozenset(
    {
        "gclid",
        "fbclid",
        "yclid",
        "mc_cid",
        "mc_eid",
        "igshid",
        "cmpid",
        "ref",
        "refsrc",
        "mkt_tok",
    }
)

STOPWORDS = frozenset(
    """
    the a an and or but if then than that this these those to of for in on at
    by with from as is are was were be been being it its into over after before
    between about amid amidst against up down out off under again more most some
    any no not only very just so too also can could may might will would should
    shall do does did doing has have had having i you he she we they them their
    our your my
    """.split()
)

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)
_NON_WORD_RE = re.compile(r"[^\w\s]+", re.UNICODE)
_SPACE_RE = re.compile(r"\s+")
_SOURCE_SUFFIX_RE = re.compile(r"\.(com|org|net|co\.uk|co|news|info|io)$")
_ID_TOKEN_RE = re.compile(r"^(?:\d+|[0-9a-f]{8,}|[a-z]?\d{5,}[a-z]?)$", re.IGNORECASE)


def is_blank(value) -> bool:
    return value is None or not str(value).strip()


def get_host(url: str | None) -> str:
    """Return the lowercase hostname without ``www.``, or ``""``."""
    if not url:
        return ""
    try:
        host = urlparse(str(url).strip()).hostname or ""
    except ValueError:
        return ""
    host = host.lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def ensure_scheme(url: str) -> str:
    url = (url or "").strip()
    if url and not _SCHEME_RE.match(url):
        url = f"https://{url}"
    return url


def strip_tracking_params(url: str) -> str:
    """Drop analytics query parameters; other parameters keep their order."""
    if not url:
        return ""
    try:
        parsed = urlparse(url)
    except ValueError:
        return url
    params = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not (
            key.lower().startswith(TRACKING_PREFIXES) or key.lower() in TRACKING_KEYS
        )
    ]
    return urlunparse(parsed._replace(query=urlencode(params)))


def _canonical_parts(url: str) -> str:
    """Lowercase scheme and host, and give an empty path its root slash."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return url
    userinfo, at, host = parsed.netloc.rpartition("@")
    netloc = f"{userinfo}{at}{host.lower()}"
    path = parsed.path or ("/" if netloc else "")
    return urlunparse(parsed._replace(scheme=parsed.scheme.lower(), netloc=netloc, path=path))


def normalize_cache_url(url: str | None) -> str:
    """Scheme-normalized, tracking-free form of ``url`` used for cache identity."""
    if is_blank(url):
        return ""
    return strip_tracking_params(_canonical_parts(ensure_scheme(str(url))))


def content_address(url: str | None) -> str:
    """sha256 hex digest of the normalized URL, or ``""`` when there is none."""
    cleaned = normalize_cache_url(url)
    if not cleaned:
        return ""
    return hashlib.sha256(cleaned.encode("utf-8")).hexdigest()


def strip_query(url: str) -> str:
    return (url or "").split("?", 1)[0]


def decode_html_entities(value: str | None) -> str:
    return html.unescape(value or "")


def _fold(value: str) -> str:
    value = unicodedata.normalize("NFKC", value or "").lower()
    value = _NON_WORD_RE.sub(" ", value).replace("_", " ")
    return _SPACE_RE.sub(" ", value).strip()


def normalize_source(source: str | None) -> str:
    """Comparable key for a publisher name or bare domain."""
    if is_blank(source):
        return ""
    value = str(source).strip().lower()
    if value.startswith("www."):
        value = value[4:]
    value = _SOURCE_SUFFIX_RE.sub("", value)
    value = _fold(value)
    if value.startswith("the "):
        value = value[4:]
    return value


def normalize_title_for_search(title: str | None) -> str:
    """Title cleaned for use inside a quoted search query.

    Drops a trailing `` - Publisher`` suffix (Google News appends one), quotes
    and redundant whitespace.
    """
    if is_blank(title):
        return ""
    value = decode_html_entities(str(title))
    value = value.replace('"', " ").replace("“", " ").replace("”", " ")
    value = _SPACE_RE.sub(" ", value).strip()
    parts = value.rsplit(" - ", 1)
    if len(parts) == 2 and parts[0].strip() and len(parts[1].split()) <= 4:
        value = parts[0].strip()
    return value


def normalize_title_key(title: str | None) -> str:
    """Lowercase token key with stopwords removed, used for fuzzy matching."""
    cleaned = normalize_title_for_search(title)
    if not cleaned:
        return ""
    tokens = [
        token
        for token in _fold(cleaned).split()
        if token not in STOPWORDS and len(token) > 1
    ]
    return " ".join(tokens)


def title_matches(target_key: str, candidate_key: str) -> bool:
    """Fuzzy title match on token sets.

    Two tokens or fewer on the target side must all be present; longer titles
    need at least two shared tokens and a 0.3 overlap ratio.
    """
    if not target_key or not candidate_key:
        return False
    target_tokens = set(target_key.split())
    candidate_tokens = set(candidate_key.split())
    if not target_tokens or not candidate_tokens:
        return False
    common = len(target_tokens & candidate_tokens)
    if len(target_tokens) <= 2:
        return common == len(target_tokens)
    ratio = common / max(len(target_tokens), len(candidate_tokens))
    return common >= 2 and ratio >= 0.3


def extract_search_terms_from_url(url: str | None) -> str:
    """Turn an article slug into search terms.

    ``https://x.com/world/2026/02/01/ship-sinks-off-coast-12345.html`` gives
    ``ship sinks off coast``. Numeric and id-like segments are skipped.
    """
    if is_blank(url):
        return ""
    try:
        parsed = urlparse(ensure_scheme(str(url)))
    except ValueError:
        return ""
    if get_host(parsed.geturl()) == "news.google.com":
        return ""
    segments = [unquote(segment) for segment in parsed.path.split("/") if segment]
    for segment in reversed(segments):
        segment = re.sub(r"\.(s?html?|php|aspx?)$", "", segment, flags=re.IGNORECASE)
        tokens = [
            token
            for token in re.split(r"[-_+\s]+", segment)
            if token and not _ID_TOKEN_RE.match(token)
        ]
        words = [token for token in tokens if re.search(r"[^\W\d_]", token)]
        if len(words) >= 2:
            return " ".join(token.lower() for token in tokens)
    return ""


def source_from_url(url: str | None) -> str:
    """Best-effort publisher label from a URL host (``apnews.com`` -> ``apnews``)."""
    host = get_host(url)
    if not host or host == "news.google.com":
        return ""
    parts = host.split(".")
    if len(parts) >= 3 and parts[-2] in ("co", "com", "org", "net") and len(parts[-1]) == 2:
        return parts[-3]
    return parts[-2] if len(parts) >= 2 else host
