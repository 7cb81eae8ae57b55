"""Exception hierarchy shared by the indexing, storage and provider layers."""

from __future__ import annotations

from typing import Optional


class CodeGraphError(Exception):
    """Base class for every error raised by this package."""


class ParseError(CodeGraphError):
    """A source file could not be turned into a parse tree."""

    def __init__(self, file_path: str, reason: str) -> None:
        super().__init__(f"{file_path}: {reason}")
        self.file_path = file_path
        self.reason = reason


class GraphStoreError(CodeGraphError):
    """The graph backend rejected an operation."""


class UnsafeIdentifierError(GraphStoreError, ValueError):
    """A label, relationship type or property name is not in the allow-list."""


class ProviderError(CodeGraphError):
    """A description or embedding provider returned an unusable answer."""

    retryable = False

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class RetryableProviderError(ProviderError):
    """Transient provider failure (rate limit, 5xx, connection problem)."""

    retryable = True


def classify_status(status: int, body: str = "") -> ProviderError:
    """Map an HTTP status code to the matching provider error."""
    message = f"HTTP {status}"
    if body:
        message = f"{message}: {body[:200]}"
    if status == 429 or status >= 500:
        return RetryableProviderError(message, status=status)
    return ProviderError(message, status=status)
