"""Turn exceptions and failure signals into short operator guidance."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class ErrorDescription:
    status: int | str | None
    reason: str
    code: str
    message: str
    action: str
    summary: str


def _normalize_status(value: Any) -> int | str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    if text.isdigit():
        return int(text)
    return text


def _response_error(error: Any) -> dict:
    response = getattr(error, "response", None)
    if response is None:
        return {}
    try:
        payload = response.json()
    except (ValueError, AttributeError, TypeError):
        return {}
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        return payload["error"]
    return {}


def _extract_status(error: Any) -> int | str | None:
    response = getattr(error, "response", None)
    for value in (
        getattr(response, "status_code", None),
        getattr(error, "status_code", None),
        getattr(error, "status", None),
    ):
        status = _normalize_status(value)
        if status is not None:
            return status
    return None


def _extract_reason(error: Any) -> str:
    body = _response_error(error)
    reason = getattr(error, "reason", "") or body.get("status") or body.get("type") or ""
    return str(reason) if reason else ""


def _extract_code(error: Any) -> str:
    code = getattr(error, "code", "") or _response_error(error).get("code") or ""
    return str(code) if code else ""


def _extract_message(error: Any) -> str:
    if isinstance(error, BaseException):
        message = str(error)
    else:
        message = getattr(error, "message", "") or ""
    if not message:
        message = _response_error(error).get("message") or ""
    return str(message)


def action_for_fetch(status: Any, reason: str = "", code: str = "") -> str:
    status = _normalize_status(status)
    reason_text = str(reason or "").lower()
    code_text = str(code or "").lower()
    if status in (401, 403) or "forbidden" in reason_text:
        return "Access blocked or paywalled. Try archive/Jina or alternative sources."
    if status in (429, 503) or "rate_limit" in reason_text:
        return "Rate limited. Wait or reduce request rate."
    if status == 404:
        return "Page not found. Use alternative sources."
    if "captcha" in reason_text or "captcha" in code_text or status == "captcha":
        return "Captcha detected. Try archive or manual browser."
    if "timeout" in reason_text or "timeout" in code_text or status == "timeout":
        return "Request timeout. Retry or increase timeout."
    if "short" in reason_text or status == "short":
        return "Content too short. Try alternative sources or adjust MIN_TEXT_LENGTH."
    if "no_text" in reason_text or status == "no_text":
        return "No extractable text. Try alternative sources or the browser/archive path."
    return ""


def action_for_browser(reason: str = "", code: str = "") -> str:
    reason_text = str(reason or "").lower()
    code_text = str(code or "").lower()
    if "captcha" in reason_text or "captcha" in code_text:
        return "Captcha detected. Use archive or manual browser."
    if "timeout" in reason_text or "timeout" in code_text:
        return "Browser timeout. Retry or increase BROWSER_PAGE_TIMEOUT."
    if "browser_closed" in code_text or "browser_closed" in reason_text:
        return "Browser window was closed. Re-run and keep the browser open."
    return ""


def action_for_openai(status: Any, reason: str = "", message: str = "") -> str:
    reason_text = str(reason or "").lower()
    message_text = str(message or "").lower()
    if status == 401 or "invalid" in reason_text or "api key" in message_text:
        return "Check OPENAI_API_KEY and model access."
    if "insufficient_quota" in reason_text or "insufficient_quota" in message_text:
        return "Insufficient quota. Check billing or raise limits."
    if status == 429 or "rate" in reason_text or "rate" in message_text:
        return "Rate limited. Wait or reduce request rate."
    return ""


def action_for_xai(status: Any, reason: str = "", message: str = "") -> str:
    reason_text = str(reason or "").lower()
    message_text = str(message or "").lower()
    if status == 401 or "invalid" in reason_text or "api key" in message_text:
        return "Check XAI_API_KEY and model access."
    if "model" in message_text and "does not exist" in message_text:
        return "Check VERIFY_MODEL and that the model exists for your xAI account."
    if status == 429 or "rate" in reason_text or "rate" in message_text:
        return "Rate limited. Wait or reduce request rate."
    if status == 403 or "forbidden" in reason_text:
        return "Access denied. Check account permissions for the model."
    return ""


def describe_error(error: Any, scope: str = "") -> ErrorDescription:
    """Summarize an exception (or any object carrying status/reason/code).

    Args:
        error: The exception or failure object.
        scope: One of ``fetch``, ``browser``, ``xai``, ``openai``. Selects
            which guidance table produces ``action``.
    """
    status = _extract_status(error)
    reason = _extract_reason(error)
    code = _extract_code(error)
    message = _extract_message(error)

    action = ""
    if scope == "fetch":
        action = action_for_fetch(status, reason, code)
    elif scope == "browser":
        action = action_for_browser(reason, code)
    elif scope in ("xai", "grok"):
        action = action_for_xai(status, reason, message)
    elif scope in ("openai", "verify"):
        action = action_for_openai(status, reason, message)

    parts = []
    if status is not None:
        parts.append(f"status={status}")
    if reason:
        parts.append(f"reason={reason}")
    if code:
        parts.append(f"code={code}")
    if not parts and message:
        parts.append(message)
    return ErrorDescription(
        status=status,
        reason=reason,
        code=code,
        message=message,
        action=action,
        summary=" ".join(parts),
    )
