"""
SQLite database management for sites, certificates and activity.

Provides async database operations using aiosqlite for
storing the proxy's desired state and its audit log.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any
from contextlib import asynccontextmanager
import json

import aiosqlite

from config import settings

logger = logging.getLogger(__name__)

# Database schema
SCHEMA = """
-- Sites table
CREATE TABLE IF NOT EXISTS sites (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL DEFAULT 'pending',
    ssl_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    ssl_expiry TIMESTAMP,
    modsec_enabled BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sites_name ON sites(name);

-- Upstreams table (ordered pool per site)
CREATE TABLE IF NOT EXISTS upstreams (
    site_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    host TEXT NOT NULL,
    port INTEGER NOT NULL DEFAULT 80,
    protocol TEXT NOT NULL DEFAULT 'http',
    weight INTEGER NOT NULL DEFAULT 1,
    max_fails INTEGER NOT NULL DEFAULT 3,
    fail_timeout INTEGER NOT NULL DEFAULT 10,
    ssl_verify BOOLEAN NOT NULL DEFAULT TRUE,

    PRIMARY KEY (site_id, position),
    FOREIGN KEY (site_id) REFERENCES sites(id) ON DELETE CASCADE
);

-- Load balancer settings (at most one per site)
CREATE TABLE IF NOT EXISTS load_balancers (
    site_id TEXT PRIMARY KEY,
    algorithm TEXT NOT NULL DEFAULT 'round_robin',
    health_check_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    health_check_interval INTEGER NOT NULL DEFAULT 30,
    health_check_timeout INTEGER NOT NULL DEFAULT 5,
    health_check_path TEXT NOT NULL DEFAULT '/health',

    FOREIGN KEY (site_id) REFERENCES sites(id) ON DELETE CASCADE
);

-- Certificates table (at most one per site)
CREATE TABLE IF NOT EXISTS ssl_certificates (
    id TEXT PRIMARY KEY,
    site_id TEXT NOT NULL UNIQUE,
    common_name TEXT NOT NULL,
    sans_json TEXT,
    issuer TEXT NOT NULL,
    subject TEXT,
    subject_details_json TEXT,
    issuer_details_json TEXT,
    serial_number TEXT,
    valid_from TIMESTAMP NOT NULL,
    valid_to TIMESTAMP NOT NULL,
    auto_renew BOOLEAN NOT NULL DEFAULT TRUE,
    status TEXT NOT NULL DEFAULT 'valid',

    certificate_pem TEXT NOT NULL,
    private_key_pem TEXT NOT NULL,
    chain_pem TEXT,

    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL,

    FOREIGN KEY (site_id) REFERENCES sites(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_ssl_certificates_valid_to ON ssl_certificates(valid_to);

-- Activity log
CREATE TABLE IF NOT EXISTS activity_logs (
    id TEXT PRIMARY KEY,
    timestamp TIMESTAMP NOT NULL,
    actor TEXT NOT NULL,
    action TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'config_change',
    success BOOLEAN NOT NULL,
    details_json TEXT
);

CREATE INDEX IF NOT EXISTS idx_activity_logs_timestamp ON activity_logs(timestamp);
CREATE INDEX IF NOT EXISTS idx_activity_logs_type ON activity_logs(type);

-- ACME accounts table (for Let's Encrypt account persistence)
CREATE TABLE IF NOT EXISTS acme_accounts (
    id TEXT PRIMARY KEY,
    email TEXT,
    directory_url TEXT NOT NULL,
    account_url TEXT,
    private_key_pem TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    terms_accepted BOOLEAN DEFAULT TRUE
);

CREATE INDEX IF NOT EXISTS idx_acme_accounts_directory_url ON acme_accounts(directory_url);
"""


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = str(db_path or settings.database_path)

    async def initialize(self) -> None:
        """Initialize database and create tables if needed."""
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        async with self.connection() as db:
            await db.executescript(SCHEMA)
            await db.commit()

        logger.info(f"Database initialized at {self.db_path}")

    @asynccontextmanager
    async def connection(self):
        """Get a database connection context manager."""
        conn = await aiosqlite.connect(self.db_path)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
        finally:
            await conn.close()

    @asynccontextmanager
    async def transaction(self):
        """
        Run several statements atomically.

        Commits when the block exits normally, rolls back on any exception.
        """
        async with self.connection() as db:
            try:
                yield db
                await db.commit()
            except BaseException:
                await db.rollback()
                raise

    async def fetch_one(
        self,
        query: str,
        params: tuple = ()
    ) -> Optional[Dict[str, Any]]:
        """Execute a query and fetch one result."""
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()
            if row:
                return dict(row)
            return None

    async def fetch_all(
        self,
        query: str,
        params: tuple = ()
    ) -> List[Dict[str, Any]]:
        """Execute a query and fetch all results."""
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def insert(
        self,
        table: str,
        data: Dict[str, Any]
    ) -> str:
        """Insert a row and return the id."""
        columns = list(data.keys())
        placeholders = ", ".join(["?" for _ in columns])
        columns_str = ", ".join(columns)

        query = f"INSERT INTO {table} ({columns_str}) VALUES ({placeholders})"
        values = tuple(data.values())

        async with self.connection() as db:
            await db.execute(query, values)
            await db.commit()

        return data.get("id", "")

    async def update(
        self,
        table: str,
        id_value: str,
        data: Dict[str, Any],
        id_column: str = "id"
    ) -> bool:
        """Update a row by id."""
        set_clause = ", ".join([f"{k} = ?" for k in data.keys()])
        query = f"UPDATE {table} SET {set_clause} WHERE {id_column} = ?"
        values = tuple(data.values()) + (id_value,)

        async with self.connection() as db:
            cursor = await db.execute(query, values)
            await db.commit()
            return cursor.rowcount > 0

    async def delete(
        self,
        table: str,
        id_value: str,
        id_column: str = "id"
    ) -> bool:
        """Delete a row by id."""
        query = f"DELETE FROM {table} WHERE {id_column} = ?"

        async with self.connection() as db:
            cursor = await db.execute(query, (id_value,))
            await db.commit()
            return cursor.rowcount > 0

    async def count(
        self,
        table: str,
        where_clause: str = "",
        params: tuple = ()
    ) -> int:
        """Count rows in a table."""
        query = f"SELECT COUNT(*) as count FROM {table}"
        if where_clause:
            query += f" WHERE {where_clause}"

        result = await self.fetch_one(query, params)
        return result["count"] if result else 0


def serialize_json(data: Any) -> Optional[str]:
    """Serialize a dict or list to JSON string for storage."""
    if data is None:
        return None
    return json.dumps(data)


def deserialize_json(data: Optional[str]) -> Any:
    """Deserialize a JSON string from storage."""
    if data is None:
        return None
    return json.loads(data)


def serialize_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Store datetimes as ISO-8601 UTC. Naive values are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def deserialize_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Read an ISO-8601 timestamp back as an aware UTC datetime."""
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# Singleton database instance
_db_instance: Optional[Database] = None


def get_database() -> Database:
    """Get the global database instance."""
    global _db_instance
    if _db_instance is None:
        _db_instance = Database()
    return _db_instance


async def initialize_database() -> Database:
    """Initialize and return the database instance."""
    db = get_database()
    await db.initialize()
    return db
