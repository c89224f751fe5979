"""
Models for rendered configuration artifacts and NGINX activation results.
"""

from enum import Enum

from pydantic import BaseModel, Field


class ReloadMethod(str, Enum):
    """How the live configuration was swapped."""

    RELOAD = "reload"  # nginx -s reload (graceful)
    RESTART = "restart"  # Container restart fallback
    NONE = "none"  # Nothing was swapped


class ReloadMode(str, Enum):
    """Where NGINX is running."""

    CONTAINER = "container"
    HOST = "host"


class ReloadResult(BaseModel):
    """Outcome of an activation attempt. Transient, never persisted."""

    success: bool
    method: ReloadMethod = ReloadMethod.NONE
    mode: ReloadMode
    error: str | None = None


class ConfigArtifact(BaseModel):
    """
    A rendered, activatable site configuration.

    ``files`` maps paths relative to the SSL directory to their content
    (certificate, key and chain for TLS sites).
    """

    name: str = Field(..., description="Site name the artifact belongs to")
    content: str = Field(..., description="Rendered NGINX server configuration")
    files: dict[str, str] = Field(default_factory=dict, description="Auxiliary files keyed by file name")
