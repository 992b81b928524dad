"""
Shared utility functions.
"""

import logging
from fastapi import HTTPException

from app.klaviyo_client import (
    UpstreamError, UpstreamAuthError, UpstreamNotFoundError, UpstreamTransientError,
)
from app.services.credential_store import ConfigurationError, DuplicateAccountError, AccountNotFoundError
from app.services.metric_catalog import RemoteUnavailableError
from app.services.profile_service import InvalidCursorError, MergeFailure

logger = logging.getLogger(__name__)


def safe_error_detail(exc: Exception, fallback: str = "An internal error occurred. Please try again later.") -> str:
    """
    Return a sanitized error message safe for client consumption.
    Logs the real exception detail server-side.
    """
    logger.error(f"Operation failed: {exc}", exc_info=True)
    return fallback


def _upstream_status(exc: UpstreamError) -> int:
    if isinstance(exc, UpstreamTransientError):
        return 502
    if exc.status_code and 400 <= exc.status_code < 600:
        return exc.status_code
    return 502


def to_http_exception(exc: Exception) -> HTTPException:
    """
    Translate a domain/upstream exception into an HTTPException, keeping the
    Klaviyo status code where one exists.
    """
    if isinstance(exc, HTTPException):
        return exc
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (ValueError, InvalidCursorError)) and not isinstance(exc, UpstreamError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, DuplicateAccountError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, AccountNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, UpstreamAuthError):
        return HTTPException(status_code=exc.status_code or 401, detail=str(exc))
    if isinstance(exc, UpstreamNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, UpstreamError):
        return HTTPException(status_code=_upstream_status(exc), detail=str(exc))
    if isinstance(exc, RemoteUnavailableError):
        status = 400 if exc.missing_credentials else 502
        return HTTPException(status_code=status, detail=str(exc))
    if isinstance(exc, MergeFailure):
        first = next(iter(exc.errors.values()))
        status = to_http_exception(first).status_code
        return HTTPException(
            status_code=status,
            detail={"error": str(exc), "accounts": {aid: str(e) for aid, e in exc.errors.items()}},
        )
    return HTTPException(status_code=500, detail=safe_error_detail(exc))
