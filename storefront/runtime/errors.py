# storefront/runtime/errors.py
from __future__ import annotations


class AssistantError(Exception):
    """Base class for recoverable and fatal turn errors."""


class ClassificationError(AssistantError):
    """Completion output was not JSON or did not match the classification schema."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class RetrievalError(AssistantError):
    """Embedding or index failure inside a retrieval lane."""

    def __init__(self, lane: str, message: str):
        super().__init__(f"{lane}: {message}")
        self.lane = lane


class ResolutionAmbiguous(AssistantError):
    """A proposed navigation target could not be verified against known content."""

    def __init__(self, url: str, reason: str = "unverified"):
        super().__init__(f"{url!r} ({reason})")
        self.url = url
        self.reason = reason


class UpstreamUnavailable(AssistantError):
    """The completion, embedding or index service could not be reached."""
