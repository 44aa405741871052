"""Per-host cooldown tracking.

When a host answers with a block signal (429, 403, captcha ...) it is put
into cooldown for a status-dependent duration. While a host is cooling down
no component should contact it; the tracker is shared by the fetcher, the
browser and the candidate engine for the lifetime of one run.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from .utils import get_host

logger = logging.getLogger(__name__)


@dataclass
class CooldownStatus:
    """A host that is currently cooling down."""

    host: str
    until: float
    reason: str
    remaining: float


@dataclass
class _CooldownEntry:
    until: float
    reason: str
    last_probe: float = 0.0


class DomainCooldownTracker:
    """In-memory map of host -> cooldown expiry.

    Args:
        probe_seconds: When positive, one request per ``probe_seconds`` is
            let through a cooling host to check whether the block lifted.
            Zero disables probing.
        clock: Time source, injectable for tests.
    """

    def __init__(self, probe_seconds: float = 0.0, clock: Callable[[], float] = time.time):
        self.probe_seconds = max(0.0, float(probe_seconds or 0.0))
        self._clock = clock
        self._entries: dict[str, _CooldownEntry] = {}

    def _key(self, url_or_host: str | None) -> str:
        if not url_or_host:
            return ""
        value = str(url_or_host).strip()
        if "://" in value:
            return get_host(value)
        value = value.lower()
        return value[4:] if value.startswith("www.") else value

    def is_in_cooldown(self, url_or_host: str | None) -> CooldownStatus | None:
        """Return the cooldown status for a host, or None when it may be contacted."""
        host = self._key(url_or_host)
        if not host:
            return None
        entry = self._entries.get(host)
        if entry is None:
            return None
        now = self._clock()
        if now >= entry.until:
            del self._entries[host]
            logger.debug(f"Cooldown for {host} expired")
            return None
        if self.probe_seconds > 0 and now - entry.last_probe >= self.probe_seconds:
            entry.last_probe = now
            logger.info(f"Allowing probe request to {host} during cooldown")
            return None
        return CooldownStatus(
            host=host, until=entry.until, reason=entry.reason, remaining=entry.until - now
        )

    def set_cooldown(
        self, url_or_host: str | None, seconds: float, reason: str = ""
    ) -> CooldownStatus | None:
        """Put a host into cooldown; an existing longer cooldown is kept.

        Returns the effective status, or None when nothing was recorded
        (no host or a non-positive duration).
        """
        host = self._key(url_or_host)
        if not host or not seconds or seconds <= 0:
            return None
        now = self._clock()
        until = now + float(seconds)
        entry = self._entries.get(host)
        if entry is not None and entry.until >= until:
            return CooldownStatus(
                host=host, until=entry.until, reason=entry.reason, remaining=entry.until - now
            )
        if entry is None:
            entry = _CooldownEntry(until=until, reason=reason, last_probe=now)
            self._entries[host] = entry
        else:
            entry.until = until
            entry.reason = reason or entry.reason
            entry.last_probe = now
        logger.warning(f"Host {host} in cooldown for {seconds:.0f}s ({reason or 'blocked'})")
        return CooldownStatus(host=host, until=until, reason=entry.reason, remaining=until - now)

    def clear(self, url_or_host: str | None = None) -> None:
        if url_or_host is None:
            self._entries.clear()
            return
        self._entries.pop(self._key(url_or_host), None)

    def snapshot(self) -> dict[str, dict[str, float | str]]:
        """Active cooldowns, for reports and debugging."""
        now = self._clock()
        return {
            host: {"until": entry.until, "reason": entry.reason, "remaining": entry.until - now}
            for host, entry in self._entries.items()
            if entry.until > now
        }
