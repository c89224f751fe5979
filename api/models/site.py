"""
Site models for reverse proxy virtual hosts.

A Site is the unit the reconciler renders into an NGINX server block:
its upstream pool, optional load balancer settings and TLS flags.
"""

import re
import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator

HOSTNAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9.-]*[a-z0-9])?$")


class SiteStatus(str, Enum):
    """Site lifecycle status."""

    PENDING = "pending"  # Persisted, not yet activated
    ACTIVE = "active"  # Serving with the current artifact
    ERROR = "error"


class UpstreamProtocol(str, Enum):
    """Protocol used to reach an upstream server."""

    HTTP = "http"
    HTTPS = "https"


class LoadBalancerAlgorithm(str, Enum):
    """Upstream selection strategy."""

    ROUND_ROBIN = "round_robin"
    LEAST_CONN = "least_conn"
    IP_HASH = "ip_hash"


class Upstream(BaseModel):
    """A backend server in the site's upstream pool."""

    host: str = Field(..., min_length=1, description="Upstream hostname or IP address")
    port: int = Field(default=80, ge=1, le=65535, description="Upstream port")
    protocol: UpstreamProtocol = Field(default=UpstreamProtocol.HTTP, description="Protocol to the upstream")
    weight: int = Field(default=1, ge=1, description="Relative weight for load balancing")
    max_fails: int = Field(default=3, ge=0, description="Failed attempts before the server is marked down")
    fail_timeout: int = Field(default=10, ge=1, description="Seconds a failed server stays down")
    ssl_verify: bool = Field(default=True, description="Verify the upstream TLS certificate (https only)")


class LoadBalancer(BaseModel):
    """Load balancer settings for a site's upstream pool."""

    algorithm: LoadBalancerAlgorithm = Field(default=LoadBalancerAlgorithm.ROUND_ROBIN)
    health_check_enabled: bool = Field(default=False)
    health_check_interval: int = Field(default=30, ge=1, description="Seconds between health probes")
    health_check_timeout: int = Field(default=5, ge=1, description="Seconds before a probe times out")
    health_check_path: str = Field(default="/health", description="Path probed on each upstream")


class Site(BaseModel):
    """
    Represents a managed virtual host.

    Used for both repository storage and API responses. Equality is
    structural, which is what rollback checks compare against.
    """

    id: str = Field(default_factory=lambda: f"site-{uuid.uuid4().hex[:12]}", description="Unique site identifier")
    name: str = Field(..., description="Proxied hostname, unique across sites")
    status: SiteStatus = Field(default=SiteStatus.PENDING)
    ssl_enabled: bool = Field(default=False)
    ssl_expiry: datetime | None = Field(None, description="Cached expiry of the bound certificate")
    modsec_enabled: bool = Field(default=True, description="Enable ModSecurity for this site")
    upstreams: list[Upstream] = Field(default_factory=list, description="Ordered upstream pool")
    load_balancer: LoadBalancer | None = Field(None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def _normalize_hostname(value: str) -> str:
    value = value.strip().lower()
    if not value:
        raise ValueError("Site name cannot be empty")
    if len(value) > 253:
        raise ValueError("Site name exceeds 253 characters")
    if not HOSTNAME_PATTERN.match(value) or ".." in value:
        raise ValueError(f"Invalid hostname: {value}")
    return value


# Request Models


class SiteCreateRequest(BaseModel):
    """Request to create a new site."""

    name: str = Field(..., min_length=1, max_length=253, description="Hostname to proxy")
    modsec_enabled: bool = Field(default=True)
    upstreams: list[Upstream] = Field(..., min_length=1, description="Backend servers")
    load_balancer: LoadBalancer | None = Field(None)
    auto_ssl: bool = Field(default=False, description="Issue a certificate and enable SSL after creation")
    ssl_email: str | None = Field(None, description="Contact email used for auto-SSL issuance")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate hostname format."""
        return _normalize_hostname(v)


class SiteUpdateRequest(BaseModel):
    """
    Partial update of a site.

    Omitted fields are untouched. Providing ``upstreams`` replaces the whole
    pool. Providing ``load_balancer`` replaces the load balancer, and an
    explicit ``null`` removes it.
    """

    name: str | None = Field(None, min_length=1, max_length=253)
    status: SiteStatus | None = Field(None)
    modsec_enabled: bool | None = Field(None)
    upstreams: list[Upstream] | None = Field(None, min_length=1)
    load_balancer: LoadBalancer | None = Field(None)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        """Validate hostname format."""
        if v is None:
            return v
        return _normalize_hostname(v)


class SSLToggleRequest(BaseModel):
    """Request to enable or disable SSL on a site."""

    enabled: bool = Field(..., description="Desired SSL state")
