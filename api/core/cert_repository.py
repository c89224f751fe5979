"""
Persistence for Certificate aggregates.

Status is stored as a cache and recomputed from ``valid_to`` on every read.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

import aiosqlite

from core.cert_lifecycle import compute_status, utc_now
from core.database import (
    Database,
    get_database,
    serialize_json,
    deserialize_json,
    serialize_timestamp,
    deserialize_timestamp,
)
from core.errors import AlreadyExistsError
from models.certificate import (
    Certificate,
    CertificateMaterial,
    CertificateStatus,
    NameDetails,
)

logger = logging.getLogger(__name__)


class CertificateRepository:
    """Durable CRUD for certificates, at most one per site."""

    def __init__(self, db: Optional[Database] = None, clock: Callable[[], datetime] = utc_now):
        self.db = db or get_database()
        self.clock = clock

    async def get(self, cert_id: str) -> Certificate | None:
        row = await self.db.fetch_one("SELECT * FROM ssl_certificates WHERE id = ?", (cert_id,))
        return self._row_to_certificate(row) if row else None

    async def get_by_site(self, site_id: str) -> Certificate | None:
        row = await self.db.fetch_one("SELECT * FROM ssl_certificates WHERE site_id = ?", (site_id,))
        return self._row_to_certificate(row) if row else None

    async def list_certificates(self) -> list[Certificate]:
        """List all certificates, soonest expiry first."""
        rows = await self.db.fetch_all("SELECT * FROM ssl_certificates ORDER BY valid_to")
        return [self._row_to_certificate(row) for row in rows]

    async def create(self, cert: Certificate) -> Certificate:
        """
        Insert a certificate.

        Raises:
            AlreadyExistsError: If the site already has a certificate
        """
        try:
            await self.db.insert("ssl_certificates", self._certificate_to_row(cert))
        except aiosqlite.IntegrityError as e:
            raise AlreadyExistsError(
                "SSL certificate already exists for this site",
                resource=cert.site_id,
                suggestion="Use the update endpoint instead",
            ) from e
        logger.debug(f"Created certificate record {cert.id} for site {cert.site_id}")
        return cert

    async def save(self, cert: Certificate) -> Certificate:
        """Overwrite an existing certificate verbatim."""
        row = self._certificate_to_row(cert)
        row.pop("id")
        await self.db.update("ssl_certificates", cert.id, row)
        logger.debug(f"Saved certificate record {cert.id}")
        return cert

    async def set_status(self, cert_id: str, status: CertificateStatus) -> bool:
        """Overwrite only the cached status column."""
        return await self.db.update(
            "ssl_certificates",
            cert_id,
            {"status": status.value, "updated_at": serialize_timestamp(self.clock())},
        )

    async def delete(self, cert_id: str) -> bool:
        deleted = await self.db.delete("ssl_certificates", cert_id)
        if deleted:
            logger.debug(f"Deleted certificate record {cert_id}")
        return deleted

    def _certificate_to_row(self, cert: Certificate) -> dict:
        """Convert Certificate model to database row."""
        return {
            "id": cert.id,
            "site_id": cert.site_id,
            "common_name": cert.common_name,
            "sans_json": serialize_json(cert.sans),
            "issuer": cert.issuer,
            "subject": cert.subject,
            "subject_details_json": serialize_json(cert.subject_details.model_dump()) if cert.subject_details else None,
            "issuer_details_json": serialize_json(cert.issuer_details.model_dump()) if cert.issuer_details else None,
            "serial_number": cert.serial_number,
            "valid_from": serialize_timestamp(cert.valid_from),
            "valid_to": serialize_timestamp(cert.valid_to),
            "auto_renew": cert.auto_renew,
            "status": cert.status.value,
            "certificate_pem": cert.material.certificate,
            "private_key_pem": cert.material.private_key,
            "chain_pem": cert.material.chain,
            "created_at": serialize_timestamp(cert.created_at),
            "updated_at": serialize_timestamp(cert.updated_at),
        }

    def _row_to_certificate(self, row: dict) -> Certificate:
        """Convert database row to Certificate model with a freshly derived status."""
        subject_details = deserialize_json(row.get("subject_details_json"))
        issuer_details = deserialize_json(row.get("issuer_details_json"))
        valid_to = deserialize_timestamp(row["valid_to"])

        return Certificate(
            id=row["id"],
            site_id=row["site_id"],
            common_name=row["common_name"],
            sans=deserialize_json(row.get("sans_json")) or [],
            issuer=row["issuer"],
            subject=row.get("subject"),
            subject_details=NameDetails(**subject_details) if subject_details else None,
            issuer_details=NameDetails(**issuer_details) if issuer_details else None,
            serial_number=row.get("serial_number"),
            valid_from=deserialize_timestamp(row["valid_from"]),
            valid_to=valid_to,
            auto_renew=bool(row["auto_renew"]),
            status=compute_status(valid_to, self.clock()),
            material=CertificateMaterial(
                certificate=row["certificate_pem"],
                private_key=row["private_key_pem"],
                chain=row.get("chain_pem"),
            ),
            created_at=deserialize_timestamp(row["created_at"]),
            updated_at=deserialize_timestamp(row["updated_at"]),
        )


# Singleton instance
_certificate_repository: CertificateRepository | None = None


def get_certificate_repository() -> CertificateRepository:
    """Get the global certificate repository instance."""
    global _certificate_repository
    if _certificate_repository is None:
        _certificate_repository = CertificateRepository()
    return _certificate_repository
