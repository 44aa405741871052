import json

import pytest

from grinder.services import AIProviderError, VerifierUnavailableError
from grinder.services.ai_client import AIResponse
from grinder.services.verification import MatchVerifier, build_payload, clamp_text, should_verify
from grinder.utils.fetch_log import FetchLog
from tests.helpers import long_text


class ScriptedClient:
    def __init__(self, provider, *replies):
        self.provider = provider
        self.replies = list(replies)
        self.calls = []

    def respond(self, system, user, model, temperature=0.0, use_search=False):
        self.calls.append({"user": user, "model": model, "use_search": use_search})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def verdict(match=True, confidence=0.9, reason="same flood"):
    return AIResponse(
        text=json.dumps({"match": match, "confidence": confidence, "reason": reason, "page_summary": "s"}),
        tokens=321,
    )


def make_verifier(settings, primary, fallback=None, **kwargs):
    return MatchVerifier(settings, primary_client=primary, fallback_client=fallback, **kwargs)


ORIGINAL = {"title": "Flood waters rise", "source": "Local Paper"}
CANDIDATE = {"url": "https://apnews.com/a", "title": "Valley flood", "text": long_text()}


@pytest.mark.parametrize(
    "confidence,ok,status",
    [(0.7, True, "ok"), (0.69, False, "mismatch"), (0.95, True, "ok")],
)
def test_confidence_threshold_is_inclusive(settings, confidence, ok, status):
    result = make_verifier(settings, ScriptedClient("xai", verdict(confidence=confidence))).verify(
        ORIGINAL, CANDIDATE
    )
    assert result.ok is ok
    assert result.status == status
    assert result.verified
    assert result.tokens == 321
    assert result.provider == "xai"


def test_no_match_is_mismatch_even_when_confident(settings):
    result = make_verifier(settings, ScriptedClient("xai", verdict(match=False, confidence=0.99))).verify(
        ORIGINAL, CANDIDATE
    )
    assert not result.ok
    assert result.status == "mismatch"
    assert result.reason == "same flood"


def test_length_error_retries_once_with_smaller_payload(settings):
    settings.verify_fallback_max_chars = 50
    client = ScriptedClient(
        "xai",
        AIProviderError("xAI error 400: maximum context length exceeded", status=400, provider="xai"),
        verdict(),
    )
    result = make_verifier(settings, client).verify(ORIGINAL, CANDIDATE)

    assert result.ok
    assert result.fallback_used
    assert len(client.calls) == 2
    assert len(client.calls[1]["user"]) < len(client.calls[0]["user"])


def test_provider_error_switches_to_fallback_provider(settings):
    primary = ScriptedClient("xai", AIProviderError("xAI error 500: boom", status=500, provider="xai"))
    fallback = ScriptedClient("openai", verdict())
    result = make_verifier(settings, primary, fallback).verify(ORIGINAL, CANDIDATE)

    assert result.ok
    assert result.provider == "openai"
    assert result.model == "gpt-4o"
    assert fallback.calls[0]["model"] == "gpt-4o"


def test_failure_is_error_or_unverified(settings):
    failing = AIProviderError("xAI error 500: boom", status=500, provider="xai")
    settings.verify_fallback_provider = ""

    result = make_verifier(settings, ScriptedClient("xai", failing)).verify(ORIGINAL, CANDIDATE)
    assert result.status == "error"
    assert not result.ok
    assert "boom" in result.error

    settings.verify_fail_open = True
    result = make_verifier(settings, ScriptedClient("xai", failing)).verify(ORIGINAL, CANDIDATE)
    assert result.status == "unverified"
    assert result.ok
    assert not result.match and not result.verified


def test_unparseable_reply_is_an_error(settings):
    settings.verify_fallback_provider = ""
    result = make_verifier(settings, ScriptedClient("xai", AIResponse(text="I think so"))).verify(
        ORIGINAL, CANDIDATE
    )
    assert result.status == "error"
    assert "Unparseable" in result.error


def test_check_raises_when_judge_unavailable(settings, event):
    settings.verify_fallback_provider = ""
    verifier = make_verifier(settings, ScriptedClient("xai", AIProviderError("down", status=503)))
    with pytest.raises(VerifierUnavailableError):
        verifier.check(event, "https://apnews.com/a", long_text())


def test_check_builds_original_from_event_and_logs(settings, event, tmp_path):
    event.capture_original()
    log = FetchLog(str(tmp_path / "fetch.log"))
    client = ScriptedClient("xai", verdict())
    result = make_verifier(settings, client, fetch_log=log).check(
        event, "https://apnews.com/a", long_text(), is_fallback=True, method="jina",
        meta={"title": "Valley flood", "site_name": "AP"},
    )

    assert result.ok
    payload = client.calls[0]["user"]
    assert '"source": "Local Paper"' in payload
    assert '"source": "AP"' in payload
    assert "verify result" in (tmp_path / "fetch.log").read_text(encoding="utf-8")


def test_check_skips_by_mode(settings, event):
    settings.verify_mode = "never"
    client = ScriptedClient("xai")
    result = make_verifier(settings, client).check(event, "https://apnews.com/a", long_text())

    assert result.status == "skipped"
    assert result.ok
    assert not result.match and not result.verified
    assert client.calls == []


@pytest.mark.parametrize(
    "mode,text_length,is_fallback,expected",
    [
        ("always", 5000, False, True),
        ("never", 10, True, False),
        ("fallback-only", 10, False, False),
        ("fallback-only", 10, True, True),
        ("only-if-short", 1199, False, True),
        ("only-if-short", 1200, False, False),
        ("", 10, False, True),
    ],
)
def test_should_verify(mode, text_length, is_fallback, expected):
    assert should_verify(mode, "x" * text_length, is_fallback, 1200) is expected


def test_payload_clamps_texts():
    payload = build_payload(
        {"title": "T", "textSnippet": "abcdef", "gn_url": "https://news.google.com/x"},
        {"text": "0123456789"},
        max_chars=4,
        context_max_chars=3,
    )
    assert payload["candidate"]["text"] == "0123"
    assert payload["original"]["textSnippet"] == "abc"
    assert payload["original"]["gnUrl"] == "https://news.google.com/x"
    assert clamp_text("abc", 0) == "abc"
