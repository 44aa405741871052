"""Structured JSON-lines log of fetch attempts.

Every fetch, browse and verification step can emit one record. Records go
to the regular ``logging`` logger and, when ``FETCH_LOG_FILE`` is set, are
appended as one JSON object per line to that file. Long strings (HTML
snippets, model replies) are truncated so a single record stays readable.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def truncate_string(value: Any, limit: int) -> Any:
    if not isinstance(value, str) or not limit or limit <= 0 or len(value) <= limit:
        return value
    suffix = f"... ({len(value) - limit} more chars)"
    return value[: max(0, limit - len(suffix))] + suffix


def sanitize_data(value: Any, limit: int) -> Any:
    if isinstance(value, str):
        return truncate_string(value, limit)
    if isinstance(value, (list, tuple)):
        return [sanitize_data(item, limit) for item in value]
    if isinstance(value, dict):
        return {str(key): sanitize_data(item, limit) for key, item in value.items()}
    return value


class FetchLog:
    """Append-only JSON-lines sink with size-based rotation.

    Args:
        path: Target file. Empty disables the file sink.
        max_bytes: Rotate once the file reaches this size. 0 disables rotation.
        max_files: Numbered backups to keep (``fetch.log.1`` ...). With 0 the
            file is truncated in place instead.
        max_string: Per-string truncation limit for record values.
    """

    def __init__(
        self,
        path: str = "",
        max_bytes: int = 0,
        max_files: int = 0,
        max_string: int = 800,
    ):
        self.path = path
        self.max_bytes = max(0, int(max_bytes or 0))
        self.max_files = max(0, int(max_files or 0))
        self.max_string = max_string

    @classmethod
    def from_settings(cls, settings) -> "FetchLog":
        return cls(
            path=settings.fetch_log_file,
            max_bytes=settings.fetch_log_max_bytes,
            max_files=settings.fetch_log_max_files,
            max_string=settings.fetch_log_max_string,
        )

    def _rotate_if_needed(self) -> None:
        if not self.max_bytes or not os.path.exists(self.path):
            return
        try:
            if os.path.getsize(self.path) < self.max_bytes:
                return
            if self.max_files <= 0:
                with open(self.path, "w", encoding="utf-8"):
                    pass
                return
            oldest = f"{self.path}.{self.max_files}"
            if os.path.exists(oldest):
                os.remove(oldest)
            for index in range(self.max_files - 1, 0, -1):
                src = f"{self.path}.{index}"
                if os.path.exists(src):
                    os.replace(src, f"{self.path}.{index + 1}")
            os.replace(self.path, f"{self.path}.1")
        except OSError as e:
            logger.warning(f"fetch log rotate failed: {e}")

    def record(self, data: dict[str, Any] | None, message: str = "", level: str = "info") -> None:
        """Log ``message`` and append ``data`` as a JSON line."""
        if message:
            alternative = (data or {}).get("alternative_url")
            text = f"{message} | alternative_url={alternative}" if alternative else message
            logger.log(_LEVELS.get(level, logging.INFO), text)
        if not data or not self.path:
            return
        safe = sanitize_data(data, self.max_string)
        line = json.dumps(
            {
                "ts": datetime.now(timezone.utc).isoformat(),
                "level": level,
                "message": message,
                **safe,
            },
            ensure_ascii=False,
            default=str,
        )
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            self._rotate_if_needed()
            with open(self.path, "a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as e:
            logger.warning(f"fetch log write failed: {e}")
