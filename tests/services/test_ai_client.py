from types import SimpleNamespace
from unittest.mock import Mock

import pytest
import requests

from grinder.services import AIProviderError
from grinder.services.ai_client import (
    OpenAIClient,
    XaiClient,
    build_client,
    clean_json_text,
    extract_response_text,
    is_length_error,
    parse_json_object,
)


def http_response(status_code=200, body=None, reason="OK"):
    response = Mock(status_code=status_code, reason=reason, text=str(body))
    response.json.return_value = body if body is not None else {}
    return response


def test_is_length_error():
    assert is_length_error(AIProviderError("This model's maximum context length is 128000 tokens"))
    assert is_length_error(AIProviderError("bad request", reason="input size exceeded"))
    assert not is_length_error(AIProviderError("xAI error 401: invalid key"))
    assert not is_length_error(AIProviderError("OpenAI error 401: invalid token", status=401))
    assert not is_length_error(AIProviderError("maximum retries exceeded"))
    assert is_length_error(AIProviderError("Request too large for gpt-4o: too many tokens"))


def test_clean_json_text():
    assert clean_json_text('```json\n{"match": true}\n```') == '{"match": true}'
    assert clean_json_text('Sure! {"match": false} hope that helps') == '{"match": false}'
    assert clean_json_text("") == ""


def test_parse_json_object():
    assert parse_json_object('{"confidence": 0.8}') == {"confidence": 0.8}
    assert parse_json_object("[1, 2]") is None
    assert parse_json_object("not json") is None


def test_extract_response_text_shapes():
    assert extract_response_text({"output_text": "direct"}) == "direct"
    responses_body = {
        "output": [
            {"type": "web_search_call"},
            {"type": "message", "content": [{"type": "output_text", "text": "from responses"}]},
        ]
    }
    assert extract_response_text(responses_body) == "from responses"
    chat_body = {"choices": [{"message": {"content": "from chat"}}]}
    assert extract_response_text(chat_body) == "from chat"
    assert extract_response_text({}) == ""


def test_xai_requires_key():
    with pytest.raises(AIProviderError) as info:
        XaiClient(api_key="", session=Mock()).respond("sys", "user", model="grok-4")
    assert info.value.reason == "missing_api_key"


def test_xai_respond_with_search_tool():
    session = Mock()
    session.post.return_value = http_response(body={"output_text": '{"match": true}', "usage": {"total_tokens": 42}})
    client = XaiClient(api_key="k", session=session)

    reply = client.respond("sys", "user", model="grok-4", use_search=True)

    assert reply.text == '{"match": true}'
    assert reply.tokens == 42
    assert reply.provider == "xai"
    url = session.post.call_args.args[0]
    body = session.post.call_args.kwargs["json"]
    assert url == "https://api.x.ai/v1/responses"
    assert body["tools"] == [{"type": "web_search"}]
    assert session.post.call_args.kwargs["headers"]["Authorization"] == "Bearer k"


def test_xai_chat_uses_chat_endpoint():
    session = Mock()
    session.post.return_value = http_response(body={"choices": [{"message": {"content": "q"}}]})
    XaiClient(api_key="k", session=session).chat("sys", "user", model="grok-4-1-fast", max_tokens=50)

    assert session.post.call_args.args[0] == "https://api.x.ai/v1/chat/completions"
    assert session.post.call_args.kwargs["json"]["max_tokens"] == 50


def test_xai_http_error_carries_status_and_reason():
    session = Mock()
    session.post.return_value = http_response(
        429, {"error": {"message": "slow down", "type": "rate_limit", "code": "rate_limited"}}, "Too Many Requests"
    )
    with pytest.raises(AIProviderError) as info:
        XaiClient(api_key="k", session=session).respond("sys", "user", model="grok-4")

    assert info.value.status == 429
    assert info.value.reason == "rate_limit"
    assert info.value.code == "rate_limited"
    assert "slow down" in str(info.value)


def test_xai_timeout_is_wrapped():
    session = Mock()
    session.post.side_effect = requests.exceptions.Timeout("read timed out")
    with pytest.raises(AIProviderError) as info:
        XaiClient(api_key="k", session=session).respond("sys", "user", model="grok-4")
    assert info.value.reason == "timeout"


def fake_openai(content='{"match": true}'):
    completion = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(total_tokens=12),
    )
    sdk = Mock()
    sdk.chat.completions.create.return_value = completion
    return sdk


def test_openai_respond_requests_json_object():
    sdk = fake_openai()
    reply = OpenAIClient(client=sdk).respond("sys", "user", model="gpt-4o", temperature=0.0)

    assert reply.text == '{"match": true}'
    assert reply.tokens == 12
    kwargs = sdk.chat.completions.create.call_args.kwargs
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["messages"][0] == {"role": "system", "content": "sys"}


def test_openai_chat_with_schema():
    sdk = fake_openai('{"queries": ["a"]}')
    schema = {"name": "queries", "schema": {"type": "object"}}
    OpenAIClient(client=sdk).chat("sys", "user", model="gpt-4o", json_schema=schema)
    kwargs = sdk.chat.completions.create.call_args.kwargs
    assert kwargs["response_format"] == {"type": "json_schema", "json_schema": schema}


def test_openai_requires_key():
    with pytest.raises(AIProviderError) as info:
        OpenAIClient(api_key="").respond("sys", "user", model="gpt-4o")
    assert info.value.provider == "openai"


def test_build_client(settings):
    assert isinstance(build_client("grok", settings), XaiClient)
    assert isinstance(build_client("OpenAI", settings), OpenAIClient)
    with pytest.raises(ValueError):
        build_client("claude", settings)
