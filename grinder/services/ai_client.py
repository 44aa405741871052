"""Thin clients for the AI providers used as judges and query generators.

Two providers are supported:

* ``xai``: called over plain HTTP with ``requests``. The Responses endpoint
  is used for verification (it can run the ``web_search`` tool); the chat
  completions endpoint is used for search-query generation.
* ``openai``: called through the official SDK.

Both clients return an ``AIResponse`` and raise ``AIProviderError`` with the
HTTP status and provider reason when a call fails, so callers can pick
between a payload-shrink retry and a provider fallback.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

import openai
import requests

from . import AIProviderError

logger = logging.getLogger(__name__)

LENGTH_ERROR_KEYWORDS = (
    "context length",
    "context_length",
    "context window",
    "maximum context",
    "too many tokens",
    "prompt is too long",
    "input is too long",
    "input size",
    "request too large",
    "max_tokens",
)


@dataclass
class AIResponse:
    text: str
    tokens: int | None = None
    provider: str = ""
    model: str = ""


def is_length_error(error: Exception) -> bool:
    """True when the provider rejected the request because of its size."""
    message = str(error or "").lower()
    reason = str(getattr(error, "reason", "") or "").lower()
    haystack = f"{message} {reason}"
    return any(keyword in haystack for keyword in LENGTH_ERROR_KEYWORDS)


def clean_json_text(text: str) -> str:
    """Strip code fences, or cut out the outermost ``{...}`` block."""
    value = str(text or "").strip()
    if not value:
        return ""
    fenced = re.search(r"```(?:json)?\s*(.*?)```", value, re.IGNORECASE | re.DOTALL)
    if fenced:
        return fenced.group(1).strip()
    start = value.find("{")
    end = value.rfind("}")
    if start != -1 and end > start:
        return value[start : end + 1]
    return value


def parse_json_object(text: str) -> Optional[dict[str, Any]]:
    cleaned = clean_json_text(text)
    if not cleaned:
        return None
    try:
        data = json.loads(cleaned)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def extract_response_text(data: dict[str, Any]) -> str:
    """Pull the assistant text out of a Responses or chat-completions body."""
    if not isinstance(data, dict):
        return ""
    output_text = data.get("output_text")
    if isinstance(output_text, str) and output_text.strip():
        return output_text

    parts: list[str] = []
    for item in data.get("output") or []:
        if not isinstance(item, dict) or item.get("type") != "message":
            continue
        for part in item.get("content") or []:
            if not isinstance(part, dict):
                continue
            if part.get("type") in ("output_text", "text") and isinstance(part.get("text"), str):
                parts.append(part["text"])
    if parts:
        return "\n".join(parts)

    choices = data.get("choices") or []
    if choices and isinstance(choices[0], dict):
        content = (choices[0].get("message") or {}).get("content")
        if isinstance(content, str):
            return content
    return ""


def _usage_tokens(usage: Any) -> int | None:
    if usage is None:
        return None
    if isinstance(usage, dict):
        value = usage.get("total_tokens")
    else:
        value = getattr(usage, "total_tokens", None)
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class XaiClient:
    """xAI over HTTP."""

    provider = "xai"

    def __init__(
        self,
        api_key: str,
        responses_url: str = "https://api.x.ai/v1/responses",
        chat_url: str = "https://api.x.ai/v1/chat/completions",
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.responses_url = responses_url
        self.chat_url = chat_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        if not self.api_key:
            raise AIProviderError("XAI_API_KEY is not set", reason="missing_api_key", provider="xai")
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        try:
            response = self.session.post(url, json=body, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout as exc:
            raise AIProviderError(
                f"xAI request timed out: {exc}", reason="timeout", provider="xai"
            ) from exc
        except requests.exceptions.RequestException as exc:
            raise AIProviderError(
                f"xAI request failed: {exc}", reason="network", provider="xai"
            ) from exc

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.status_code >= 400:
            error = data.get("error") if isinstance(data.get("error"), dict) else {}
            message = error.get("message") or data.get("error") or response.text[:200]
            raise AIProviderError(
                f"xAI error {response.status_code}: {message}",
                status=response.status_code,
                reason=str(error.get("type") or error.get("status") or response.reason or ""),
                code=str(error.get("code") or data.get("code") or ""),
                provider="xai",
            )
        return data

    def respond(
        self,
        system: str,
        user: str,
        model: str,
        temperature: float = 0.0,
        use_search: bool = False,
    ) -> AIResponse:
        body: dict[str, Any] = {
            "model": model,
            "temperature": temperature,
            "input": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }
        if use_search:
            body["tools"] = [{"type": "web_search"}]
        data = self._post(self.responses_url, body)
        return AIResponse(
            text=extract_response_text(data),
            tokens=_usage_tokens(data.get("usage")),
            provider=self.provider,
            model=model,
        )

    def chat(
        self,
        system: str,
        user: str,
        model: str,
        temperature: float = 0.0,
        max_tokens: int | None = None,
        json_schema: Optional[dict[str, Any]] = None,
    ) -> AIResponse:
        body: dict[str, Any] = {
            "model": model,
            "temperature": temperature,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }
        if max_tokens:
            body["max_tokens"] = max_tokens
        data = self._post(self.chat_url, body)
        return AIResponse(
            text=extract_response_text(data),
            tokens=_usage_tokens(data.get("usage")),
            provider=self.provider,
            model=model,
        )


class OpenAIClient:
    """OpenAI through the official SDK (chat completions)."""

    provider = "openai"

    def __init__(self, api_key: str = "", timeout: float = 60.0, client: Any = None):
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    @property
    def client(self):
        if self._client is None:
            if not self.api_key:
                raise AIProviderError(
                    "OPENAI_API_KEY is not set", reason="missing_api_key", provider="openai"
                )
            self._client = openai.OpenAI(api_key=self.api_key, timeout=self.timeout)
        return self._client

    def _create(self, **kwargs) -> Any:
        try:
            return self.client.chat.completions.create(**kwargs)
        except openai.APIStatusError as exc:
            body = exc.body if isinstance(exc.body, dict) else {}
            error = body.get("error") if isinstance(body.get("error"), dict) else body
            raise AIProviderError(
                f"OpenAI error {exc.status_code}: {exc.message}",
                status=exc.status_code,
                reason=str(error.get("type") or ""),
                code=str(error.get("code") or ""),
                provider="openai",
            ) from exc
        except openai.APITimeoutError as exc:
            raise AIProviderError(
                f"OpenAI request timed out: {exc}", reason="timeout", provider="openai"
            ) from exc
        except openai.OpenAIError as exc:
            raise AIProviderError(
                f"OpenAI request failed: {exc}", reason="network", provider="openai"
            ) from exc

    @staticmethod
    def _content(completion: Any) -> str:
        try:
            return completion.choices[0].message.content or ""
        except (AttributeError, IndexError):
            return ""

    def chat(
        self,
        system: str,
        user: str,
        model: str,
        temperature: float = 0.0,
        max_tokens: int | None = None,
        json_schema: Optional[dict[str, Any]] = None,
    ) -> AIResponse:
        kwargs: dict[str, Any] = {
            "model": model,
            "temperature": temperature,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        if json_schema:
            kwargs["response_format"] = {"type": "json_schema", "json_schema": json_schema}
        completion = self._create(**kwargs)
        return AIResponse(
            text=self._content(completion),
            tokens=_usage_tokens(getattr(completion, "usage", None)),
            provider=self.provider,
            model=model,
        )

    def respond(
        self,
        system: str,
        user: str,
        model: str,
        temperature: float = 0.0,
        use_search: bool = False,
    ) -> AIResponse:
        # Chat completions has no web_search tool; the judge works from the payload alone.
        completion = self._create(
            model=model,
            temperature=temperature,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            response_format={"type": "json_object"},
        )
        return AIResponse(
            text=self._content(completion),
            tokens=_usage_tokens(getattr(completion, "usage", None)),
            provider=self.provider,
            model=model,
        )


def build_client(provider: str, settings) -> XaiClient | OpenAIClient:
    """Create the client for ``provider`` (``xai`` or ``openai``)."""
    name = (provider or "").strip().lower()
    if name in ("xai", "grok"):
        return XaiClient(
            api_key=settings.xai_api_key,
            responses_url=settings.xai_responses_url,
            chat_url=settings.xai_chat_url,
            timeout=settings.ai_timeout,
        )
    if name == "openai":
        return OpenAIClient(api_key=settings.openai_api_key, timeout=settings.ai_timeout)
    raise ValueError(f"Unknown AI provider: {provider!r}")
