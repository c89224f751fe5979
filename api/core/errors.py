"""
Domain errors raised by the reconciler, certificate lifecycle and CA client.

Every error carries a human-readable ``message``, the affected ``resource``
when known, and an optional ``suggestion`` surfaced to API callers.
"""

from enum import Enum


class ProxyManagerError(Exception):
    """Base exception for site and certificate operations."""

    def __init__(self, message: str, resource: str | None = None, suggestion: str | None = None):
        self.message = message
        self.resource = resource
        self.suggestion = suggestion
        super().__init__(message)


class AlreadyExistsError(ProxyManagerError):
    """Resource with the same identity already exists."""

    pass


class NotFoundError(ProxyManagerError):
    """Resource does not exist."""

    pass


class PreconditionFailedError(ProxyManagerError):
    """Operation is not allowed in the resource's current state."""

    pass


class InvalidInputError(ProxyManagerError):
    """Request data failed validation."""

    pass


class InvalidConfigError(ProxyManagerError):
    """The configuration generator rejected the proposed state."""

    pass


class ReloadFailedError(ProxyManagerError):
    """Activation failed; persisted and live state were restored."""

    def __init__(self, message: str, reason: str, resource: str | None = None, suggestion: str | None = None):
        self.reason = reason
        super().__init__(message, resource=resource, suggestion=suggestion)


class RollbackFailedError(ReloadFailedError):
    """
    Activation failed and re-activating the previous artifact failed too.

    Persisted state was restored but the live proxy may be serving neither
    version. Requires manual intervention.
    """

    def __init__(self, message: str, reason: str, restore_error: str, resource: str | None = None):
        self.restore_error = restore_error
        super().__init__(
            message,
            reason=reason,
            resource=resource,
            suggestion="Inspect the NGINX configuration on disk and run a manual reload once it validates",
        )


# Certificate errors


class CertificateError(ProxyManagerError):
    """Base exception for certificate validation errors."""

    pass


class ParseError(CertificateError):
    """Certificate PEM could not be parsed."""

    pass


class DomainMismatchError(CertificateError):
    """Neither the common name nor any SAN covers the target hostname."""

    pass


class ExpiredError(CertificateError):
    """Certificate validity window has already ended."""

    pass


class KeyMismatchError(CertificateError):
    """Private key does not belong to the certificate."""

    pass


# CA client errors


class CAErrorKind(str, Enum):
    """Closed set of failure kinds a CA client can report."""

    RATE_LIMITED = "rate_limited"
    NOT_YET_DUE = "not_yet_due"
    FATAL = "fatal"


class CAError(ProxyManagerError):
    """Certificate authority request failed."""

    kind: CAErrorKind = CAErrorKind.FATAL

    @classmethod
    def from_kind(cls, kind: CAErrorKind, message: str, resource: str | None = None) -> "CAError":
        """Build the subclass matching ``kind``."""
        error_class = {
            CAErrorKind.RATE_LIMITED: RateLimitedError,
            CAErrorKind.NOT_YET_DUE: NotYetDueError,
        }.get(kind, FatalCAError)
        return error_class(message, resource=resource)


class RateLimitedError(CAError):
    """CA refused the request because of rate limits."""

    kind = CAErrorKind.RATE_LIMITED

    def __init__(self, message: str, resource: str | None = None, suggestion: str | None = None):
        super().__init__(
            message,
            resource=resource,
            suggestion=suggestion or "Wait before retrying or use the staging environment for testing",
        )


class NotYetDueError(CAError):
    """CA reports the certificate is not yet due for renewal."""

    kind = CAErrorKind.NOT_YET_DUE


class FatalCAError(CAError):
    """Any other CA failure."""

    kind = CAErrorKind.FATAL
