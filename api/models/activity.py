"""
Activity models for the audit log.

One activity entry is written per mutating operation, successful or not.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ActivityType(str, Enum):
    """Activity categories for filtering."""

    CONFIG_CHANGE = "config_change"
    SSL = "ssl"
    SYSTEM = "system"


class Activity(BaseModel):
    """A single audit log entry."""

    id: str = Field(default_factory=lambda: f"act-{uuid.uuid4().hex[:12]}", description="Unique activity identifier")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    actor: str = Field(..., description="Who performed the action")
    action: str = Field(..., description="Human-readable description of the action")
    type: ActivityType = Field(default=ActivityType.CONFIG_CHANGE)
    success: bool = Field(..., description="Whether the action succeeded")
    details: dict[str, Any] | None = Field(None, description="Additional structured data")
