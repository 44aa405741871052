"""Runtime settings for the acquisition pipeline.

All knobs are read from environment variables once, at ``load_settings()``
time, and frozen into a ``Settings`` instance that is passed explicitly to
the components that need it. Malformed numeric values never abort start-up:
they fall back to the default and a warning is logged.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

TRUE_VALUES = ("1", "true", "yes", "on")


def _env_str(name: str, default: str = "") -> str:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in TRUE_VALUES


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(float(value))
    except ValueError:
        logger.warning(f"Invalid integer for {name}={value!r}; using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Invalid number for {name}={value!r}; using {default}")
        return default


def _env_list(name: str, default: list[str]) -> list[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Settings:
    """Pipeline configuration resolved from the environment."""

    # Content cache
    articles_dir: str = "articles"
    min_text_length: int = 400
    max_text_length: int = 30000
    max_html_to_text_chars: int = 4_000_000

    # Fetch chain
    fetch_timeout: float = 10.0
    jina_base_url: str = "https://r.jina.ai/"
    archive_mirrors: list[str] = field(
        default_factory=lambda: ["archive.ph", "archive.is", "archive.today"]
    )
    wayback_api_url: str = "https://archive.org/wayback/available"
    browse_on_mismatch: bool = False

    # Cooldowns, in seconds
    cooldown_probe_seconds: float = 0.0
    cooldown_429_seconds: float = 600.0
    cooldown_403_seconds: float = 1800.0
    cooldown_401_seconds: float = 1800.0
    cooldown_503_seconds: float = 600.0
    cooldown_504_seconds: float = 300.0
    cooldown_captcha_seconds: float = 3600.0
    cooldown_timeout_seconds: float = 120.0
    archive_cooldown_seconds: float = 900.0

    # Verification
    verify_mode: str = "always"
    verify_min_confidence: float = 0.7
    verify_short_threshold: int = 1200
    verify_fail_open: bool = False
    verify_max_chars: int = 0
    verify_context_max_chars: int = 0
    verify_fallback_max_chars: int = 12000
    verify_fallback_context_max_chars: int = 4000
    verify_summary_max_chars: int = 200
    verify_provider: str = "xai"
    verify_model: str = "grok-4"
    verify_fallback_provider: str = "openai"
    verify_fallback_model: str = "gpt-4o"
    verify_temperature: float = 0.0
    verify_use_search: bool = True
    verify_min_interval: float = 0.0

    # Search and candidates
    gn_search_min_interval: float = 2.0
    url_decode_delay: float = 30.0
    url_decode_increment: float = 1.0
    alternative_date_window_days: float = 3.0
    min_agency_level: str = "niche"
    deprioritize_undated: bool = False
    agency_search_max: int = 8
    agency_search_query_max: int = 2
    agencies_file: str = ""
    serpapi_api_key: str = ""
    external_search_max_results: int = 6
    external_search_timeout: float = 10.0

    # AI search-query generation
    search_query_enabled: bool = True
    search_query_provider: str = "openai"
    search_query_model: str = "gpt-4o"
    search_query_fallback_provider: str = "openai"
    search_query_fallback_model: str = "gpt-4o"
    search_query_max_queries: int = 1
    search_query_min_title_chars: int = 20
    search_query_min_description_chars: int = 40
    search_query_max_chars: int = 120

    # AI endpoints and credentials
    xai_api_key: str = ""
    xai_responses_url: str = "https://api.x.ai/v1/responses"
    xai_chat_url: str = "https://api.x.ai/v1/chat/completions"
    openai_api_key: str = ""
    ai_timeout: float = 60.0

    # Fetch log
    fetch_log_file: str = ""
    fetch_log_max_bytes: int = 0
    fetch_log_max_files: int = 0
    fetch_log_max_string: int = 800

    # Browser
    chrome_bin: str = ""
    chromedriver_path: str = ""
    browser_profile_dir: str = ""
    browser_headless: bool = True
    browser_page_timeout: float = 15.0
    browser_captcha_wait: float = 0.0

    # Event store
    database_url: str = "sqlite:///grinder.db"

    def cooldown_for_status(self, status: int | str) -> float:
        """Return the per-host cooldown (seconds) for a block signal."""
        mapping = {
            429: self.cooldown_429_seconds,
            403: self.cooldown_403_seconds,
            401: self.cooldown_401_seconds,
            503: self.cooldown_503_seconds,
            504: self.cooldown_504_seconds,
            "captcha": self.cooldown_captcha_seconds,
            "timeout": self.cooldown_timeout_seconds,
        }
        return mapping.get(status, 0.0)


def load_settings() -> Settings:
    """Build ``Settings`` from the current environment."""
    xai_key = _env_str("XAI_API_KEY")
    default_query_provider = "xai" if xai_key else "openai"
    query_provider = _env_str("SEARCH_QUERY_PROVIDER", default_query_provider)
    default_query_model = "grok-4-1-fast" if query_provider == "xai" else "gpt-4o"

    return Settings(
        articles_dir=_env_str("ARTICLES_DIR", "articles"),
        min_text_length=_env_int("MIN_TEXT_LENGTH", 400),
        max_text_length=_env_int("MAX_TEXT_LENGTH", 30000),
        max_html_to_text_chars=_env_int("MAX_HTML_TO_TEXT_CHARS", 4_000_000),
        fetch_timeout=_env_float("FETCH_TIMEOUT", 10.0),
        jina_base_url=_env_str("JINA_BASE_URL", "https://r.jina.ai/"),
        archive_mirrors=_env_list(
            "ARCHIVE_MIRRORS", ["archive.ph", "archive.is", "archive.today"]
        ),
        wayback_api_url=_env_str(
            "WAYBACK_API_URL", "https://archive.org/wayback/available"
        ),
        browse_on_mismatch=_env_bool("BROWSE_ON_MISMATCH", False),
        cooldown_probe_seconds=_env_float("COOLDOWN_PROBE_SECONDS", 0.0),
        cooldown_429_seconds=_env_float("COOLDOWN_429_SECONDS", 600.0),
        cooldown_403_seconds=_env_float("COOLDOWN_403_SECONDS", 1800.0),
        cooldown_401_seconds=_env_float("COOLDOWN_401_SECONDS", 1800.0),
        cooldown_503_seconds=_env_float("COOLDOWN_503_SECONDS", 600.0),
        cooldown_504_seconds=_env_float("COOLDOWN_504_SECONDS", 300.0),
        cooldown_captcha_seconds=_env_float("COOLDOWN_CAPTCHA_SECONDS", 3600.0),
        cooldown_timeout_seconds=_env_float("COOLDOWN_TIMEOUT_SECONDS", 120.0),
        archive_cooldown_seconds=_env_float("ARCHIVE_COOLDOWN_SECONDS", 900.0),
        verify_mode=_env_str("VERIFY_MODE", "always").lower(),
        verify_min_confidence=_env_float("VERIFY_MIN_CONFIDENCE", 0.7),
        verify_short_threshold=_env_int("VERIFY_SHORT_THRESHOLD", 1200),
        verify_fail_open=_env_bool("VERIFY_FAIL_OPEN", False),
        verify_max_chars=_env_int("VERIFY_MAX_CHARS", 0),
        verify_context_max_chars=_env_int("VERIFY_CONTEXT_MAX_CHARS", 0),
        verify_fallback_max_chars=_env_int("VERIFY_FALLBACK_MAX_CHARS", 12000),
        verify_fallback_context_max_chars=_env_int(
            "VERIFY_FALLBACK_CONTEXT_MAX_CHARS", 4000
        ),
        verify_summary_max_chars=_env_int("VERIFY_SUMMARY_MAX_CHARS", 200),
        verify_provider=_env_str("VERIFY_PROVIDER", "xai").lower(),
        verify_model=_env_str("VERIFY_MODEL", "grok-4"),
        verify_fallback_provider=_env_str("VERIFY_FALLBACK_PROVIDER", "openai").lower(),
        verify_fallback_model=_env_str("VERIFY_FALLBACK_MODEL", "gpt-4o"),
        verify_temperature=_env_float("VERIFY_TEMPERATURE", 0.0),
        verify_use_search=_env_bool("VERIFY_USE_SEARCH", True),
        verify_min_interval=_env_float("VERIFY_MIN_INTERVAL", 0.0),
        gn_search_min_interval=_env_float("GN_SEARCH_MIN_INTERVAL", 2.0),
        url_decode_delay=_env_float("URL_DECODE_DELAY", 30.0),
        url_decode_increment=_env_float("URL_DECODE_INCREMENT", 1.0),
        alternative_date_window_days=_env_float("ALTERNATIVE_DATE_WINDOW_DAYS", 3.0),
        min_agency_level=_env_str("MIN_AGENCY_LEVEL", "niche").lower(),
        deprioritize_undated=_env_bool("DEPRIORITIZE_UNDATED", False),
        agency_search_max=_env_int("AGENCY_SEARCH_MAX", 8),
        agency_search_query_max=_env_int("AGENCY_SEARCH_QUERY_MAX", 2),
        agencies_file=_env_str("AGENCIES_FILE"),
        serpapi_api_key=_env_str("SERPAPI_API_KEY"),
        external_search_max_results=_env_int("EXTERNAL_SEARCH_MAX_RESULTS", 6),
        external_search_timeout=_env_float("EXTERNAL_SEARCH_TIMEOUT", 10.0),
        search_query_enabled=_env_bool("SEARCH_QUERY_ENABLED", True),
        search_query_provider=query_provider.lower(),
        search_query_model=_env_str("SEARCH_QUERY_MODEL", default_query_model),
        search_query_fallback_provider=_env_str(
            "SEARCH_QUERY_FALLBACK_PROVIDER", "openai"
        ).lower(),
        search_query_fallback_model=_env_str("SEARCH_QUERY_FALLBACK_MODEL", "gpt-4o"),
        xai_api_key=xai_key,
        xai_responses_url=_env_str("XAI_API_URL", "https://api.x.ai/v1/responses"),
        xai_chat_url=_env_str("XAI_CHAT_URL", "https://api.x.ai/v1/chat/completions"),
        openai_api_key=_env_str("OPENAI_API_KEY"),
        ai_timeout=_env_float("AI_TIMEOUT", 60.0),
        fetch_log_file=_env_str("FETCH_LOG_FILE"),
        fetch_log_max_bytes=_env_int("FETCH_LOG_MAX_BYTES", 0),
        fetch_log_max_files=_env_int("FETCH_LOG_MAX_FILES", 0),
        fetch_log_max_string=_env_int("FETCH_LOG_MAX_STRING", 800),
        chrome_bin=_env_str("CHROME_BIN") or _env_str("GOOGLE_CHROME_BIN"),
        chromedriver_path=_env_str("CHROMEDRIVER_PATH"),
        browser_profile_dir=_env_str("BROWSER_PROFILE_DIR"),
        browser_headless=_env_bool("BROWSER_HEADLESS", True),
        browser_page_timeout=_env_float("BROWSER_PAGE_TIMEOUT", 15.0),
        browser_captcha_wait=_env_float("BROWSER_CAPTCHA_WAIT", 0.0),
        database_url=_env_str("DATABASE_URL", "sqlite:///grinder.db"),
    )
