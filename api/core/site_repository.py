"""
Persistence for Site aggregates.

A site is stored across three tables (sites, upstreams, load_balancers)
and always written as a whole, so saving a previously read Site restores
it exactly.
"""

import logging
from typing import Optional

import aiosqlite

from core.database import (
    Database,
    get_database,
    serialize_timestamp,
    deserialize_timestamp,
)
from core.errors import AlreadyExistsError
from models.site import (
    LoadBalancer,
    LoadBalancerAlgorithm,
    Site,
    SiteStatus,
    Upstream,
    UpstreamProtocol,
)

logger = logging.getLogger(__name__)


class SiteRepository:
    """Durable CRUD for sites including their upstream pool and load balancer."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    async def get(self, site_id: str) -> Site | None:
        """
        Read a site by id.

        The returned model is detached from storage, so it doubles as a
        point-in-time snapshot for rollback.
        """
        row = await self.db.fetch_one("SELECT * FROM sites WHERE id = ?", (site_id,))
        if not row:
            return None
        return await self._load(row)

    async def get_by_name(self, name: str) -> Site | None:
        """Read a site by its hostname."""
        row = await self.db.fetch_one("SELECT * FROM sites WHERE name = ?", (name,))
        if not row:
            return None
        return await self._load(row)

    async def list_sites(self) -> list[Site]:
        """List all sites ordered by name."""
        rows = await self.db.fetch_all("SELECT * FROM sites ORDER BY name")
        return [await self._load(row) for row in rows]

    async def create(self, site: Site) -> Site:
        """
        Insert a new site.

        Raises:
            AlreadyExistsError: If a site with the same name exists
        """
        try:
            async with self.db.transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO sites (id, name, status, ssl_enabled, ssl_expiry,
                                       modsec_enabled, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    self._site_row(site),
                )
                await self._write_children(conn, site)
        except aiosqlite.IntegrityError as e:
            raise AlreadyExistsError(
                f"Site '{site.name}' already exists",
                resource=site.name,
                suggestion="Choose a different hostname or update the existing site",
            ) from e

        logger.debug(f"Created site record {site.id} ({site.name})")
        return site

    async def save(self, site: Site) -> Site:
        """
        Overwrite an existing site with ``site`` verbatim.

        Upstreams and load balancer are replaced as a unit in the same
        transaction as the site row.
        """
        try:
            async with self.db.transaction() as conn:
                await conn.execute(
                    """
                    UPDATE sites
                    SET name = ?, status = ?, ssl_enabled = ?, ssl_expiry = ?,
                        modsec_enabled = ?, created_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    self._site_row(site)[1:] + (site.id,),
                )
                await conn.execute("DELETE FROM upstreams WHERE site_id = ?", (site.id,))
                await conn.execute("DELETE FROM load_balancers WHERE site_id = ?", (site.id,))
                await self._write_children(conn, site)
        except aiosqlite.IntegrityError as e:
            raise AlreadyExistsError(
                f"Site '{site.name}' already exists",
                resource=site.name,
            ) from e

        logger.debug(f"Saved site record {site.id}")
        return site

    async def delete(self, site_id: str) -> bool:
        """Delete a site. Upstreams, load balancer and certificate cascade."""
        deleted = await self.db.delete("sites", site_id)
        if deleted:
            logger.debug(f"Deleted site record {site_id}")
        return deleted

    def _site_row(self, site: Site) -> tuple:
        return (
            site.id,
            site.name,
            site.status.value,
            site.ssl_enabled,
            serialize_timestamp(site.ssl_expiry),
            site.modsec_enabled,
            serialize_timestamp(site.created_at),
            serialize_timestamp(site.updated_at),
        )

    async def _write_children(self, conn: aiosqlite.Connection, site: Site) -> None:
        for position, upstream in enumerate(site.upstreams):
            await conn.execute(
                """
                INSERT INTO upstreams (site_id, position, host, port, protocol, weight,
                                       max_fails, fail_timeout, ssl_verify)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    site.id,
                    position,
                    upstream.host,
                    upstream.port,
                    upstream.protocol.value,
                    upstream.weight,
                    upstream.max_fails,
                    upstream.fail_timeout,
                    upstream.ssl_verify,
                ),
            )

        if site.load_balancer:
            lb = site.load_balancer
            await conn.execute(
                """
                INSERT INTO load_balancers (site_id, algorithm, health_check_enabled,
                                            health_check_interval, health_check_timeout,
                                            health_check_path)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    site.id,
                    lb.algorithm.value,
                    lb.health_check_enabled,
                    lb.health_check_interval,
                    lb.health_check_timeout,
                    lb.health_check_path,
                ),
            )

    async def _load(self, row: dict) -> Site:
        """Convert a sites row plus its child rows to a Site model."""
        upstream_rows = await self.db.fetch_all(
            "SELECT * FROM upstreams WHERE site_id = ? ORDER BY position",
            (row["id"],),
        )
        lb_row = await self.db.fetch_one(
            "SELECT * FROM load_balancers WHERE site_id = ?",
            (row["id"],),
        )

        return Site(
            id=row["id"],
            name=row["name"],
            status=SiteStatus(row["status"]),
            ssl_enabled=bool(row["ssl_enabled"]),
            ssl_expiry=deserialize_timestamp(row.get("ssl_expiry")),
            modsec_enabled=bool(row["modsec_enabled"]),
            upstreams=[
                Upstream(
                    host=u["host"],
                    port=u["port"],
                    protocol=UpstreamProtocol(u["protocol"]),
                    weight=u["weight"],
                    max_fails=u["max_fails"],
                    fail_timeout=u["fail_timeout"],
                    ssl_verify=bool(u["ssl_verify"]),
                )
                for u in upstream_rows
            ],
            load_balancer=LoadBalancer(
                algorithm=LoadBalancerAlgorithm(lb_row["algorithm"]),
                health_check_enabled=bool(lb_row["health_check_enabled"]),
                health_check_interval=lb_row["health_check_interval"],
                health_check_timeout=lb_row["health_check_timeout"],
                health_check_path=lb_row["health_check_path"],
            ) if lb_row else None,
            created_at=deserialize_timestamp(row["created_at"]),
            updated_at=deserialize_timestamp(row["updated_at"]),
        )


# Singleton instance
_site_repository: SiteRepository | None = None


def get_site_repository() -> SiteRepository:
    """Get the global site repository instance."""
    global _site_repository
    if _site_repository is None:
        _site_repository = SiteRepository()
    return _site_repository
