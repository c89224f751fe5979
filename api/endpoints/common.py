"""
Shared helpers for API routers.

Maps domain errors to HTTP responses and resolves the acting principal.
"""

import logging

from fastapi import Header, HTTPException

from core.errors import (
    AlreadyExistsError,
    CertificateError,
    InvalidConfigError,
    InvalidInputError,
    NotFoundError,
    NotYetDueError,
    PreconditionFailedError,
    ProxyManagerError,
    RateLimitedError,
    ReloadFailedError,
    RollbackFailedError,
)

logger = logging.getLogger(__name__)

# Checked in order; subclasses before their bases.
ERROR_STATUS: list[tuple[type[ProxyManagerError], int, str]] = [
    (AlreadyExistsError, 409, "already_exists"),
    (NotFoundError, 404, "not_found"),
    (PreconditionFailedError, 412, "precondition_failed"),
    (InvalidInputError, 422, "invalid_input"),
    (InvalidConfigError, 422, "invalid_config"),
    (CertificateError, 422, "certificate_invalid"),
    (RollbackFailedError, 500, "rollback_failed"),
    (ReloadFailedError, 502, "reload_failed"),
    (RateLimitedError, 429, "rate_limited"),
    (NotYetDueError, 409, "not_yet_due"),
]


def to_http_exception(error: ProxyManagerError) -> HTTPException:
    """Build the HTTPException for a domain error."""
    status_code, code = 502, "ca_error"
    for error_class, candidate_status, candidate_code in ERROR_STATUS:
        if isinstance(error, error_class):
            status_code, code = candidate_status, candidate_code
            break
    else:
        if not hasattr(error, "kind"):
            status_code, code = 500, "internal_error"

    detail = {"error": code, "message": error.message}
    if error.resource:
        detail["resource"] = error.resource
    if error.suggestion:
        detail["suggestion"] = error.suggestion
    if isinstance(error, ReloadFailedError):
        detail["reason"] = error.reason
    if isinstance(error, RollbackFailedError):
        detail["restore_error"] = error.restore_error

    if status_code >= 500:
        logger.error(f"{code}: {error.message}")
    return HTTPException(status_code=status_code, detail=detail)


async def get_actor(x_actor: str | None = Header(None, description="Who is performing the request")) -> str:
    """Resolve the actor recorded in the activity log."""
    if x_actor and x_actor.strip():
        return x_actor.strip()
    return "system"
