"""External services used by the acquisition pipeline (AI judges, search)."""


class VerifierUnavailableError(Exception):
    """Raised when the match verifier cannot produce a decision and fail-open is off.

    Fatal to the whole run.
    """


class SearchQueryFatalError(Exception):
    """Raised when an AI-generated search query is required but unavailable."""

    def __init__(self, message: str, reason: str = "search_query_failed"):
        super().__init__(message)
        self.reason = reason


class AIProviderError(Exception):
    """An AI provider call failed; carries the HTTP status and provider reason."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        reason: str = "",
        code: str = "",
        provider: str = "",
    ):
        super().__init__(message)
        self.status = status
        self.reason = reason
        self.code = code
        self.provider = provider
