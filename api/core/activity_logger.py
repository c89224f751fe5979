"""
Audit log for site and certificate operations.

Writing an entry never raises: storage failures are logged locally and
swallowed so that auditing cannot fail the operation being audited.
"""

import logging
from typing import Optional, List, Dict, Any

from core.database import (
    Database,
    get_database,
    serialize_json,
    deserialize_json,
    serialize_timestamp,
    deserialize_timestamp,
)
from models.activity import Activity, ActivityType

logger = logging.getLogger(__name__)


class ActivityLogger:
    """Persistent storage and retrieval of activity entries."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    async def log(
        self,
        actor: str,
        action: str,
        type: ActivityType = ActivityType.CONFIG_CHANGE,
        success: bool = True,
        details: Optional[Dict[str, Any]] = None,
    ) -> Activity | None:
        """
        Record an activity entry.

        Args:
            actor: Who performed the action
            action: Human-readable description
            type: Activity category
            success: Whether the action succeeded
            details: Additional structured data

        Returns:
            The stored Activity, or None if it could not be written
        """
        activity = Activity(actor=actor, action=action, type=type, success=success, details=details)

        data = {
            "id": activity.id,
            "timestamp": serialize_timestamp(activity.timestamp),
            "actor": activity.actor,
            "action": activity.action,
            "type": activity.type.value,
            "success": activity.success,
            "details_json": serialize_json(activity.details),
        }

        try:
            await self.db.insert("activity_logs", data)
        except Exception as e:
            logger.error(f"Failed to write activity log entry '{action}': {e}")
            return None

        logger.debug(f"Recorded activity: {activity.id} [{activity.type.value}] {activity.action}")
        return activity

    async def list_activities(
        self,
        type: Optional[ActivityType] = None,
        limit: int = 100,
    ) -> List[Activity]:
        """List activity entries, newest first."""
        where_sql = "1=1"
        params: List[Any] = []
        if type:
            where_sql = "type = ?"
            params.append(type.value)

        rows = await self.db.fetch_all(
            f"""
            SELECT * FROM activity_logs
            WHERE {where_sql}
            ORDER BY timestamp DESC
            LIMIT ?
            """,
            tuple(params + [limit]),
        )
        return [self._row_to_activity(row) for row in rows]

    def _row_to_activity(self, row: Dict[str, Any]) -> Activity:
        """Convert a database row to an Activity object."""
        return Activity(
            id=row["id"],
            timestamp=deserialize_timestamp(row["timestamp"]),
            actor=row["actor"],
            action=row["action"],
            type=ActivityType(row["type"]),
            success=bool(row["success"]),
            details=deserialize_json(row.get("details_json")),
        )


# Singleton instance
_activity_logger: ActivityLogger | None = None


def get_activity_logger() -> ActivityLogger:
    """Get the global activity logger instance."""
    global _activity_logger
    if _activity_logger is None:
        _activity_logger = ActivityLogger()
    return _activity_logger
