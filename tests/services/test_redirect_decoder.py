import base64
import json
from urllib.parse import unquote
from unittest.mock import Mock

import pytest
import requests

from grinder.services.redirect_decoder import (
    RedirectDecoder,
    article_id_from_url,
    decode_legacy_id,
    is_google_news_url,
)
from grinder.utils.rate_limiter import RateLimiter

TARGET = "https://www.reuters.com/world/flood-waters-rise-in-valley"

SIGNATURE_PAGE = (
    "<html><body><c-wiz>"
    '<div jscontroller="x" data-n-a-sg="SIG123" data-n-a-ts="1700000000"></div>'
    "</c-wiz></body></html>"
)


def legacy_id(url: str) -> str:
    data = url.encode("latin-1")
    length = len(data)
    if length < 0x80:
        varint = bytes([length])
    else:
        varint = bytes([(length & 0x7F) | 0x80, length >> 7])
    raw = b"\x08\x13\x22" + varint + data + b"\xd2\x01\x00"
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def batchexecute_body(url: str) -> str:
    inner = json.dumps(["garturlres", url, 1])
    return ")]}'\n\n" + json.dumps([["wrb.fr", "Fbv4je", inner, None, None, None, "generic"]])


@pytest.fixture
def limiter(clock):
    return RateLimiter(30, increment=1, name="url_decode", clock=clock, sleep=clock.sleep)


def network_session(url=TARGET, status_code=200):
    session = Mock()
    session.get.return_value = Mock(status_code=200, text=SIGNATURE_PAGE)
    post = Mock(status_code=status_code, text=batchexecute_body(url))
    if status_code >= 400:
        post.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status_code} error")
    session.post.return_value = post
    return session


def test_article_id_from_url():
    assert article_id_from_url("https://news.google.com/rss/articles/CBMiABC?oc=5") == "CBMiABC"
    assert article_id_from_url("https://news.google.com/read/XYZ") == "XYZ"
    assert article_id_from_url("https://news.google.com/topics/abc") == ""
    assert is_google_news_url("https://news.google.com/rss/articles/x")
    assert not is_google_news_url(TARGET)


def test_decode_legacy_ids_offline():
    assert decode_legacy_id(legacy_id(TARGET)) == TARGET
    long_url = TARGET + "?" + "x" * 200
    assert decode_legacy_id(legacy_id(long_url)) == long_url
    assert decode_legacy_id(legacy_id("AU_yqLnewstyleid")) == ""
    assert decode_legacy_id("!!not base64!!") == ""


def test_legacy_link_needs_no_network(limiter):
    session = Mock()
    decoder = RedirectDecoder(session=session, rate_limiter=limiter)
    gn_url = f"https://news.google.com/rss/articles/{legacy_id(TARGET)}?oc=5"

    assert not decoder.needs_network(gn_url)
    assert decoder.decode(gn_url) == TARGET
    session.get.assert_not_called()


def test_non_google_urls_pass_through(limiter):
    decoder = RedirectDecoder(session=Mock(), rate_limiter=limiter)
    assert decoder.decode(TARGET) == TARGET
    assert decoder.decode("") == ""


def test_network_decode_is_spaced_and_cached(clock, limiter):
    session = network_session()
    decoder = RedirectDecoder(session=session, rate_limiter=limiter)
    first = "https://news.google.com/rss/articles/AU_yqLfirst"
    second = "https://news.google.com/rss/articles/AU_yqLsecond"

    assert decoder.ready(first)
    assert decoder.decode(first) == TARGET
    assert decoder.decode(first) == TARGET
    assert session.post.call_count == 1
    assert not decoder.needs_network(first)

    assert not decoder.ready(second)
    decoder.decode(second)
    assert clock.sleeps == [30]
    assert limiter.interval == 31

    body = session.post.call_args.kwargs["data"]
    assert body.startswith("f.req=")
    assert "SIG123" in unquote(body)


def test_rate_limited_decode_backs_off(limiter):
    decoder = RedirectDecoder(session=network_session(status_code=429), rate_limiter=limiter)

    assert decoder.decode("https://news.google.com/rss/articles/AU_yqLblocked") == ""
    assert limiter.remaining() == 60


def test_missing_signature_gives_up(limiter):
    session = Mock()
    session.get.return_value = Mock(status_code=200, text="<html><body>consent wall</body></html>")
    decoder = RedirectDecoder(session=session, rate_limiter=limiter)

    assert decoder.decode("https://news.google.com/rss/articles/AU_yqLconsent") == ""
    session.post.assert_not_called()
