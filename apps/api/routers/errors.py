"""Translate pipeline errors into HTTP responses."""

from fastapi import HTTPException

from services.connectors import ConnectorUnavailableError
from services.errors import (
    CredentialError,
    InvalidStateError,
    NoCredentialsError,
    NotFoundError,
    PersistenceError,
    PipelineError,
    RateLimitError,
    RemoteRejectionError,
    RemoteTransientError,
    ValidationError,
)


def to_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=exc.message)
    if isinstance(exc, InvalidStateError):
        return HTTPException(status_code=exc.status or 409, detail=exc.message)
    if isinstance(exc, NoCredentialsError):
        return HTTPException(status_code=400, detail=exc.message)
    if isinstance(exc, RateLimitError):
        return HTTPException(status_code=429, detail=exc.message)
    if isinstance(exc, RemoteTransientError):
        return HTTPException(status_code=503, detail=exc.message)
    if isinstance(exc, (RemoteRejectionError, CredentialError)):
        return HTTPException(status_code=502, detail=exc.message)
    if isinstance(exc, ConnectorUnavailableError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, PersistenceError):
        return HTTPException(status_code=500, detail="Failed to save changes. Retry shortly.")
    if isinstance(exc, PipelineError):
        return HTTPException(status_code=500, detail=exc.message)
    return HTTPException(status_code=500, detail="Internal server error")
