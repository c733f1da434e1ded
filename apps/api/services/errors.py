"""Error taxonomy shared by the publishing pipeline."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional


TOKEN_ERROR_MARKERS = (
    "access token",
    "session has expired",
    "session is invalid",
    "session has been invalidated",
    "error validating access token",
    "oauthexception",
)


class PipelineError(Exception):
    """Base class for pipeline failures; `retryable` drives the retry executor."""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        service: Optional[str] = None,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.service = service
        self.status = status
        self.timestamp = datetime.now(timezone.utc)


class ValidationError(PipelineError):
    """Bad input; never retried, surfaced to the caller."""

    def __init__(self, message: str, fields: Optional[List[str]] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.fields = list(fields or [])


class NotFoundError(ValidationError):
    """Referenced record does not exist."""


class InvalidStateError(PipelineError):
    """Operation is not legal from the record's current status."""


class NoCredentialsError(PipelineError):
    """None of the requested platforms has a usable credential."""


class RemoteTransientError(PipelineError):
    """Remote 5xx or network failure; retried with backoff."""

    retryable = True


class RateLimitError(RemoteTransientError):
    def __init__(self, service: str, reset_time: Optional[str] = None) -> None:
        super().__init__(f"Rate limit exceeded for {service}", service=service, status=429)
        self.reset_time = reset_time


class RemoteRejectionError(PipelineError):
    """Remote 4xx other than rate limiting or an invalid token."""


class CredentialError(PipelineError):
    """Expired or rejected access token."""


class PersistenceError(PipelineError):
    """Storage write failed."""


def is_retryable(error: BaseException) -> bool:
    return bool(getattr(error, "retryable", False))


def is_token_error_message(message: Optional[str]) -> bool:
    text = str(message or "").lower()
    return any(marker in text for marker in TOKEN_ERROR_MARKERS)


def classify_http_failure(
    service: str,
    status: Optional[int],
    message: str,
    *,
    error_code: Optional[int] = None,
) -> PipelineError:
    """Map a failed remote HTTP call onto the error taxonomy."""
    if status == 429 or error_code in (4, 17, 32, 613):
        return RateLimitError(service)
    if status is not None and status >= 500:
        return RemoteTransientError(f"{service} API error: {message}", service=service, status=status)
    if error_code == 190 or is_token_error_message(message):
        return CredentialError(f"{service} rejected the access token: {message}", service=service, status=status)
    return RemoteRejectionError(f"{service} API error: {message}", service=service, status=status)
