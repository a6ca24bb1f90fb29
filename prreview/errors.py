"""Error taxonomy for the review pipeline."""

from __future__ import annotations

from enum import IntEnum
from typing import Optional

from prreview.config import RATE_LIMIT_MESSAGE_PATTERNS


class ExitCode(IntEnum):
    SUCCESS = 0
    GENERAL_ERROR = 1
    FINDINGS_ABOVE_THRESHOLD = 2
    USER_ERROR = 3
    API_ERROR = 4
    INTERNAL_ERROR = 5


class ReviewError(Exception):
    """Base class for every error raised by the review pipeline."""

    exit_code = ExitCode.GENERAL_ERROR

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        details: Optional[dict] = None,
    ):
        super().__init__(message)
        self.retryable = retryable
        self.details = details or {}


class ParseError(ReviewError):
    """The LLM response held no recoverable findings."""


class ConfigurationError(ReviewError):
    """A required setting (API key, provider name) is missing or invalid."""

    exit_code = ExitCode.USER_ERROR


class InternalError(ReviewError):
    """A programming invariant was violated (e.g. missing collaborator)."""

    exit_code = ExitCode.INTERNAL_ERROR


class ProviderError(ReviewError):
    """The LLM provider call failed."""

    exit_code = ExitCode.API_ERROR

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
        details: Optional[dict] = None,
    ):
        super().__init__(message, retryable=retryable, details=details)
        self.status_code = status_code


class RateLimitError(ProviderError):
    """The provider rejected the call for rate or quota reasons."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(
            message,
            status_code=429,
            retryable=True,
            details={"retry_after": retry_after},
        )
        self.retry_after = retry_after


class GeneralProviderError(ProviderError):
    """Any provider failure that is not a rate limit."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(
            message,
            status_code=status_code,
            retryable=status_code is None or status_code >= 500,
        )


def is_rate_limit_error(error: BaseException) -> bool:
    """Classify an adapter failure as rate-limited.

    Typed RateLimitError first, then a 429 status on any of the attributes
    providers commonly use, then message substrings.
    """
    if isinstance(error, RateLimitError):
        return True
    for attr in ("status_code", "status", "code"):
        if getattr(error, attr, None) == 429:
            return True
    message = str(error).lower()
    return any(pattern in message for pattern in RATE_LIMIT_MESSAGE_PATTERNS)
