"""Data model for the acquisition pipeline."""

from .events import (  # noqa: F401
    AcquisitionResult,
    BrowseResult,
    Candidate,
    FailureContext,
    FetchResponse,
    OriginalReference,
    TargetEvent,
    VerificationResult,
)
