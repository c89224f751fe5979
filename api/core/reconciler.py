"""
Reconciler for sites and certificates.

Every mutation follows the same transaction: snapshot the current state,
persist the proposed state, render it, activate it against NGINX, and on
failure write the snapshot back, re-render and re-activate it before
surfacing the error. The reconciler is the only caller of the
ReloadExecutor.
"""

import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from config import settings
from core.activity_logger import ActivityLogger, get_activity_logger
from core.cert_lifecycle import CertificateLifecycleManager, compute_status, utc_now
from core.cert_repository import CertificateRepository, get_certificate_repository
from core.config_generator import ConfigGenerator, ConfigGeneratorError, get_config_generator
from core.errors import (
    AlreadyExistsError,
    InvalidConfigError,
    NotFoundError,
    ParseError,
    PreconditionFailedError,
    ProxyManagerError,
    ReloadFailedError,
    RollbackFailedError,
)
from core.reload_executor import ReloadExecutor, get_reload_executor
from core.site_locks import SiteLocks
from core.site_repository import SiteRepository, get_site_repository
from models.activity import ActivityType
from models.certificate import (
    Certificate,
    CertificateIssueRequest,
    CertificateMaterial,
    CertificateUpdateRequest,
    CertificateUploadRequest,
    RenewedCertificate,
)
from models.reload import ConfigArtifact, ReloadResult
from models.site import Site, SiteCreateRequest, SiteStatus, SiteUpdateRequest

logger = logging.getLogger(__name__)


class Reconciler:
    """Applies site and certificate mutations to storage and the live proxy."""

    def __init__(
        self,
        sites: Optional[SiteRepository] = None,
        certificates: Optional[CertificateRepository] = None,
        generator: Optional[ConfigGenerator] = None,
        executor: Optional[ReloadExecutor] = None,
        lifecycle: Optional[CertificateLifecycleManager] = None,
        activity: Optional[ActivityLogger] = None,
        locks: Optional[SiteLocks] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.sites = sites or get_site_repository()
        self.certificates = certificates or get_certificate_repository()
        self.generator = generator or get_config_generator()
        self.executor = executor or get_reload_executor()
        self.lifecycle = lifecycle or CertificateLifecycleManager(clock=clock)
        self.activity = activity or get_activity_logger()
        self.locks = locks or SiteLocks(enabled=settings.serialize_site_mutations)
        self.clock = clock

    # Reads

    async def list_sites(self) -> list[Site]:
        return await self.sites.list_sites()

    async def get_site(self, site_id: str) -> Site:
        return await self._require_site(site_id)

    async def get_certificate(self, cert_id: str) -> Certificate:
        return await self._require_certificate(cert_id)

    async def list_certificates(self) -> list[Certificate]:
        """
        List certificates, correcting stored validity dates from the material.

        A row whose stored dates disagree with what its PEM actually says
        is rewritten; unreadable material is left as stored.
        """
        result = []
        for cert in await self.certificates.list_certificates():
            try:
                parsed = self.lifecycle.parse_certificate(cert.material.certificate)
            except ParseError as e:
                logger.warning(f"Could not re-parse certificate {cert.id}: {e.message}")
                result.append(cert)
                continue

            if parsed.valid_from != cert.valid_from or parsed.valid_to != cert.valid_to:
                logger.info(f"Correcting stored validity for certificate {cert.id}")
                cert = cert.model_copy(
                    update={
                        "valid_from": parsed.valid_from,
                        "valid_to": parsed.valid_to,
                        "status": compute_status(parsed.valid_to, self.clock()),
                        "updated_at": self.clock(),
                    }
                )
                await self.certificates.save(cert)
            result.append(cert)
        return result

    # Site operations

    async def create_site(self, request: SiteCreateRequest, actor: str = "system") -> Site:
        """
        Create a site and bring it live.

        Raises:
            AlreadyExistsError: A site with this name exists
            InvalidConfigError: The site cannot be rendered (record removed)
            ReloadFailedError: Activation failed (record and artifact removed)
        """
        now = self.clock()
        site = Site(
            name=request.name,
            status=SiteStatus.PENDING,
            modsec_enabled=request.modsec_enabled,
            upstreams=request.upstreams,
            load_balancer=request.load_balancer,
            created_at=now,
            updated_at=now,
        )

        async with self.locks.hold(site.id):
            try:
                site = await self._create_site(site)
            except ProxyManagerError as e:
                await self._audit(actor, f"Failed to create site {request.name}: {e.message}", success=False)
                raise
            await self._audit(actor, f"Created site {site.name}", details={"site_id": site.id})

            if request.auto_ssl:
                site = await self._auto_ssl(site, request.ssl_email, actor)

        return site

    async def _create_site(self, site: Site) -> Site:
        if await self.sites.get_by_name(site.name):
            raise AlreadyExistsError(
                f"Site '{site.name}' already exists",
                resource=site.name,
                suggestion="Choose a different hostname or update the existing site",
            )

        await self.sites.create(site)

        try:
            artifact = self._render(site, None)
        except InvalidConfigError:
            await self.sites.delete(site.id)
            raise

        try:
            await self.executor.write(artifact)
            await self.executor.enable(site.name)
        except OSError as e:
            await self.executor.delete(site.name)
            await self.sites.delete(site.id)
            raise ReloadFailedError(
                f"Failed to write config for {site.name}", reason=str(e), resource=site.name
            ) from e

        site = site.model_copy(update={"status": SiteStatus.ACTIVE, "updated_at": self.clock()})
        await self.sites.save(site)

        result = await self.executor.reload()
        if not result.success:
            logger.error(f"NGINX reload failed for new site {site.name}: {result.error}")
            await self.executor.delete(site.name)
            await self.sites.delete(site.id)
            raise ReloadFailedError(
                f"Nginx reload failed: {result.error or 'Unknown error'}",
                reason=result.error or "Unknown error",
                resource=site.name,
                suggestion="Check the upstream settings and the NGINX error log",
            )

        logger.info(f"Site {site.name} created and activated")
        return site

    async def _auto_ssl(self, site: Site, email: str | None, actor: str) -> Site:
        """Best-effort certificate issuance after creation. Never rolls back the site."""
        try:
            material, parsed = await self.lifecycle.issue(site.name, email=email)
            cert = self._new_certificate(site.id, material, parsed, issuer=parsed.issuer, auto_renew=True)
            await self.certificates.create(cert)
        except ProxyManagerError as e:
            logger.warning(f"Auto-SSL issuance failed for {site.name}: {e.message}")
            await self._audit(
                actor,
                f"Failed to issue certificate for {site.name}: {e.message}",
                type=ActivityType.SSL,
                success=False,
                details={"site_id": site.id},
            )
            return site

        await self._audit(
            actor,
            f"Issued certificate for {site.name}",
            type=ActivityType.SSL,
            details={"site_id": site.id, "certificate_id": cert.id},
        )

        site = site.model_copy(
            update={"ssl_enabled": True, "ssl_expiry": cert.valid_to, "updated_at": self.clock()}
        )
        await self.sites.save(site)

        try:
            result = await self.executor.activate(self._render(site, cert))
            if not result.success:
                logger.error(f"Reload after enabling SSL for {site.name} failed: {result.error}")
        except InvalidConfigError as e:
            logger.error(f"Could not render SSL config for {site.name}: {e.message}")

        return site

    async def update_site(self, site_id: str, request: SiteUpdateRequest, actor: str = "system") -> Site:
        """
        Apply a partial update and re-activate.

        Raises:
            NotFoundError, AlreadyExistsError, InvalidConfigError, ReloadFailedError
        """
        async with self.locks.hold(site_id):
            try:
                site = await self._update_site(site_id, request)
            except ProxyManagerError as e:
                await self._audit(
                    actor, f"Failed to update site {site_id}: {e.message}", success=False, details={"site_id": site_id}
                )
                raise
            await self._audit(actor, f"Updated site {site.name}", details={"site_id": site.id})
            return site

    async def _update_site(self, site_id: str, request: SiteUpdateRequest) -> Site:
        snapshot = await self._require_site(site_id)
        cert = await self.certificates.get_by_site(site_id)

        changes = request.model_dump(exclude_none=True)
        if "upstreams" in changes:
            changes["upstreams"] = request.upstreams
        if "load_balancer" in request.model_fields_set:
            changes["load_balancer"] = request.load_balancer
        changes["updated_at"] = self.clock()

        if "name" in changes and changes["name"] != snapshot.name:
            if await self.sites.get_by_name(changes["name"]):
                raise AlreadyExistsError(f"Site '{changes['name']}' already exists", resource=changes["name"])

        await self.sites.save(snapshot.model_copy(update=changes))
        site = await self.sites.get(site_id)

        await self._activate_or_restore(
            site,
            cert,
            snapshot,
            cert,
            restore=lambda: self.sites.save(snapshot),
        )
        return site

    async def delete_site(self, site_id: str, actor: str = "system") -> ReloadResult:
        """
        Remove a site, its certificate and its artifact, then reload.

        A reload failure here is reported but not rolled back.
        """
        async with self.locks.hold(site_id):
            try:
                site, result = await self._delete_site(site_id)
            except ProxyManagerError as e:
                await self._audit(
                    actor, f"Failed to delete site {site_id}: {e.message}", success=False, details={"site_id": site_id}
                )
                raise
            await self._audit(
                actor,
                f"Deleted site {site.name}",
                details={"site_id": site_id, "reload_success": result.success, "reload_error": result.error},
            )
            return result

    async def _delete_site(self, site_id: str) -> tuple[Site, ReloadResult]:
        site = await self._require_site(site_id)

        try:
            await self.executor.delete(site.name)
        except OSError as e:
            raise ReloadFailedError(
                f"Failed to remove config for {site.name}",
                reason=str(e),
                resource=site.name,
                suggestion="Check permissions on the NGINX config and SSL directories",
            ) from e
        await self.sites.delete(site_id)

        result = await self.executor.reload()
        if not result.success:
            logger.warning(f"Reload after deleting {site.name} failed: {result.error}")
        return site, result

    async def toggle_ssl(self, site_id: str, enabled: bool, actor: str = "system") -> Site:
        """
        Enable or disable SSL on a site.

        Raises:
            NotFoundError: Unknown site
            PreconditionFailedError: Enabling without a certificate
            ReloadFailedError: Activation failed, flag reverted
        """
        async with self.locks.hold(site_id):
            try:
                site = await self._toggle_ssl(site_id, enabled)
            except ProxyManagerError as e:
                await self._audit(
                    actor,
                    f"Failed to {'enable' if enabled else 'disable'} SSL for {site_id}: {e.message}",
                    type=ActivityType.SSL,
                    success=False,
                    details={"site_id": site_id},
                )
                raise
            await self._audit(
                actor,
                f"{'Enabled' if enabled else 'Disabled'} SSL for {site.name}",
                type=ActivityType.SSL,
                details={"site_id": site_id},
            )
            return site

    async def _toggle_ssl(self, site_id: str, enabled: bool) -> Site:
        snapshot = await self._require_site(site_id)
        cert = await self.certificates.get_by_site(site_id)

        if enabled and cert is None:
            raise PreconditionFailedError(
                "Cannot enable SSL: no certificate found for this site",
                resource=site_id,
                suggestion="Issue or upload a certificate first",
            )

        changes = {"ssl_enabled": enabled, "updated_at": self.clock()}
        if enabled:
            changes["ssl_expiry"] = cert.valid_to

        await self.sites.save(snapshot.model_copy(update=changes))
        site = await self.sites.get(site_id)

        await self._activate_or_restore(
            site,
            cert,
            snapshot,
            cert,
            restore=lambda: self.sites.save(snapshot),
        )
        return site

    async def reload_now(self, actor: str = "system") -> ReloadResult:
        """Reload NGINX without changing anything. Never retried."""
        result = await self.executor.reload()
        if result.success:
            await self._audit(
                actor,
                f"Reloaded nginx ({result.method.value}, {result.mode.value} mode)",
                type=ActivityType.SYSTEM,
            )
        else:
            await self._audit(
                actor,
                f"Failed to reload nginx: {result.error}",
                type=ActivityType.SYSTEM,
                success=False,
            )
        return result

    # Certificate operations

    async def issue_certificate(self, request: CertificateIssueRequest, actor: str = "system") -> Certificate:
        """
        Obtain a certificate from the CA for a site. SSL is not enabled automatically.

        Raises:
            NotFoundError, AlreadyExistsError, InvalidInputError, CAError
        """
        async with self.locks.hold(request.site_id):
            try:
                site = await self._require_site(request.site_id)
                await self._require_no_certificate(site)
                material, parsed = await self.lifecycle.issue(
                    site.name,
                    sans=request.sans,
                    email=request.email,
                    challenge_method=request.challenge_method,
                )
                cert = self._new_certificate(
                    site.id, material, parsed, issuer=parsed.issuer, auto_renew=request.auto_renew
                )
                await self._commit_certificate_change(site, None, cert)
            except ProxyManagerError as e:
                await self._audit(
                    actor,
                    f"Failed to issue certificate for {request.site_id}: {e.message}",
                    type=ActivityType.SSL,
                    success=False,
                    details={"site_id": request.site_id},
                )
                raise

            await self._audit(
                actor,
                f"Issued certificate for {site.name}",
                type=ActivityType.SSL,
                details={"site_id": site.id, "certificate_id": cert.id},
            )
            return cert

    async def upload_certificate(self, request: CertificateUploadRequest, actor: str = "system") -> Certificate:
        """
        Store a certificate obtained elsewhere. Uploaded certificates never auto-renew.

        Raises:
            NotFoundError, AlreadyExistsError, ParseError, ExpiredError,
            DomainMismatchError, KeyMismatchError
        """
        async with self.locks.hold(request.site_id):
            try:
                site = await self._require_site(request.site_id)
                await self._require_no_certificate(site)
                parsed = self.lifecycle.validate_upload(
                    site.name, request.certificate, request.private_key, request.chain
                )
                material = CertificateMaterial(
                    certificate=request.certificate, private_key=request.private_key, chain=request.chain
                )
                issuer = request.issuer or parsed.issuer or settings.manual_issuer_name
                cert = self._new_certificate(site.id, material, parsed, issuer=issuer, auto_renew=False)
                await self._commit_certificate_change(site, None, cert)
            except ProxyManagerError as e:
                await self._audit(
                    actor,
                    f"Failed to upload certificate for {request.site_id}: {e.message}",
                    type=ActivityType.SSL,
                    success=False,
                    details={"site_id": request.site_id},
                )
                raise

            await self._audit(
                actor,
                f"Uploaded certificate for {site.name}",
                type=ActivityType.SSL,
                details={"site_id": site.id, "certificate_id": cert.id},
            )
            return cert

    async def update_certificate(
        self, cert_id: str, request: CertificateUpdateRequest, actor: str = "system"
    ) -> Certificate:
        """
        Replace certificate material and/or the auto-renew flag.

        Raises:
            NotFoundError, ParseError, ReloadFailedError
        """
        existing = await self._require_certificate(cert_id)
        async with self.locks.hold(existing.site_id):
            try:
                before = await self._require_certificate(cert_id)
                site = await self._require_site(before.site_id)

                material = CertificateMaterial(
                    certificate=request.certificate or before.material.certificate,
                    private_key=request.private_key or before.material.private_key,
                    chain=request.chain if request.chain is not None else before.material.chain,
                )
                parsed = self.lifecycle.parse_certificate(material.certificate)
                now = self.clock()
                cert = before.model_copy(
                    update={
                        "common_name": parsed.common_name,
                        "sans": parsed.sans,
                        "subject": parsed.subject,
                        "subject_details": parsed.subject_details,
                        "issuer_details": parsed.issuer_details,
                        "serial_number": parsed.serial_number,
                        "valid_from": parsed.valid_from,
                        "valid_to": parsed.valid_to,
                        "status": compute_status(parsed.valid_to, now),
                        "auto_renew": request.auto_renew if request.auto_renew is not None else before.auto_renew,
                        "material": material,
                        "updated_at": now,
                    }
                )
                await self._commit_certificate_change(site, before, cert)
            except ProxyManagerError as e:
                await self._audit(
                    actor,
                    f"Failed to update certificate {cert_id}: {e.message}",
                    type=ActivityType.SSL,
                    success=False,
                    details={"certificate_id": cert_id},
                )
                raise

            await self._audit(
                actor,
                f"Updated certificate for {site.name}",
                type=ActivityType.SSL,
                details={"site_id": site.id, "certificate_id": cert_id},
            )
            return cert

    async def renew_certificate(self, cert_id: str, actor: str = "system") -> Certificate:
        """
        Manually renew a certificate through the CA.

        Raises:
            NotFoundError: Unknown certificate
            PreconditionFailedError: Issuer not renewable or not yet in the renewal window
            RateLimitedError, NotYetDueError, FatalCAError: CA refused the renewal
        """
        try:
            cert = await self._require_certificate(cert_id)
            if cert.issuer not in self.lifecycle.renewable_issuers:
                raise PreconditionFailedError(
                    f"Only certificates from {', '.join(self.lifecycle.renewable_issuers)} can be renewed automatically",
                    resource=cert_id,
                    suggestion="Upload a new certificate instead",
                )
            if not self.lifecycle.is_renewal_eligible(cert):
                days = self.lifecycle.days_until_expiry(cert.valid_to)
                raise PreconditionFailedError(
                    f"Certificate is not yet due for renewal ({days} days remaining)",
                    resource=cert_id,
                    suggestion=f"Renewal is allowed within {self.lifecycle.renewal_threshold_days} days of expiry",
                )
            renewed = await self.lifecycle.renew(cert)
        except ProxyManagerError as e:
            await self._audit(
                actor,
                f"Failed to renew certificate {cert_id}: {e.message}",
                type=ActivityType.SSL,
                success=False,
                details={"certificate_id": cert_id},
            )
            raise

        return await self.apply_renewal(renewed, actor=actor)

    async def apply_renewal(self, renewed: RenewedCertificate, actor: str = "system") -> Certificate:
        """
        Store renewed material, keeping the certificate's identity.

        Used by manual renewal and the renewal scheduler. Re-activates the
        site when SSL is enabled.
        """
        existing = await self._require_certificate(renewed.certificate_id)
        async with self.locks.hold(existing.site_id):
            try:
                before = await self._require_certificate(renewed.certificate_id)
                site = await self._require_site(before.site_id)
                now = self.clock()
                cert = before.model_copy(
                    update={
                        "material": renewed.material,
                        "common_name": renewed.parsed.common_name,
                        "sans": renewed.parsed.sans,
                        "issuer": renewed.parsed.issuer,
                        "subject": renewed.parsed.subject,
                        "subject_details": renewed.parsed.subject_details,
                        "issuer_details": renewed.parsed.issuer_details,
                        "serial_number": renewed.parsed.serial_number,
                        "valid_from": renewed.parsed.valid_from,
                        "valid_to": renewed.parsed.valid_to,
                        "status": compute_status(renewed.parsed.valid_to, now),
                        "updated_at": now,
                    }
                )
                await self._commit_certificate_change(site, before, cert)
            except ProxyManagerError as e:
                await self._audit(
                    actor,
                    f"Failed to store renewed certificate {renewed.certificate_id}: {e.message}",
                    type=ActivityType.SSL,
                    success=False,
                    details={"certificate_id": renewed.certificate_id},
                )
                raise

            await self._audit(
                actor,
                f"Renewed certificate for {site.name}",
                type=ActivityType.SSL,
                details={"site_id": site.id, "certificate_id": cert.id, "valid_to": cert.valid_to.isoformat()},
            )
            return cert

    async def delete_certificate(self, cert_id: str, actor: str = "system") -> None:
        """Delete a certificate and force SSL off on its site."""
        existing = await self._require_certificate(cert_id)
        async with self.locks.hold(existing.site_id):
            try:
                before = await self._require_certificate(cert_id)
                site = await self._require_site(before.site_id)
                await self._commit_certificate_change(site, before, None)
            except ProxyManagerError as e:
                await self._audit(
                    actor,
                    f"Failed to delete certificate {cert_id}: {e.message}",
                    type=ActivityType.SSL,
                    success=False,
                    details={"certificate_id": cert_id},
                )
                raise

            await self._audit(
                actor,
                f"Deleted certificate for {site.name}",
                type=ActivityType.SSL,
                details={"site_id": site.id, "certificate_id": cert_id},
            )

    # Transaction helpers

    async def _commit_certificate_change(
        self, site: Site, before: Certificate | None, after: Certificate | None
    ) -> None:
        """
        Persist a certificate change and the matching site fields.

        Deleting forces SSL off; any other change refreshes the site's
        cached expiry. Sites serving SSL are re-activated with rollback.
        """
        if after is None:
            site_after = site.model_copy(update={"ssl_enabled": False, "ssl_expiry": None, "updated_at": self.clock()})
        else:
            site_after = site.model_copy(update={"ssl_expiry": after.valid_to, "updated_at": self.clock()})

        await self._write_certificate(before, after)
        await self.sites.save(site_after)

        if not site.ssl_enabled:
            return

        async def restore():
            await self._write_certificate(after, before)
            await self.sites.save(site)

        await self._activate_or_restore(site_after, after, site, before, restore=restore)

    async def _write_certificate(self, current: Certificate | None, target: Certificate | None) -> None:
        """Move the stored certificate from ``current`` to ``target``."""
        if target is None:
            if current is not None:
                await self.certificates.delete(current.id)
        elif current is None or await self.certificates.get(target.id) is None:
            await self.certificates.create(target)
        else:
            await self.certificates.save(target)

    async def _activate_or_restore(
        self,
        site: Site,
        cert: Certificate | None,
        snapshot_site: Site,
        snapshot_cert: Certificate | None,
        restore: Callable[[], Awaitable],
    ) -> ReloadResult:
        """
        Render and activate the proposed state.

        On failure the repository is restored through ``restore`` and the
        snapshot is re-rendered and re-activated. Raises ReloadFailedError,
        or RollbackFailedError when the restore activation fails too.
        """
        try:
            artifact = self._render(site, cert)
        except InvalidConfigError:
            await restore()
            raise

        renamed = site.name != snapshot_site.name
        if renamed:
            try:
                await self.executor.delete(snapshot_site.name)
            except OSError as e:
                await restore()
                raise ReloadFailedError(
                    f"Failed to remove config for {snapshot_site.name}", reason=str(e), resource=snapshot_site.name
                ) from e

        result = await self.executor.activate(artifact)
        if result.success:
            return result

        reason = result.error or "Unknown error"
        logger.error(f"Activation failed for {site.name}, restoring previous state: {reason}")
        await restore()
        if renamed:
            await self.executor.delete(site.name)

        try:
            restore_result = await self.executor.activate(self._render(snapshot_site, snapshot_cert))
            restore_error = None if restore_result.success else (restore_result.error or "Unknown error")
        except InvalidConfigError as e:
            restore_error = e.message

        if restore_error:
            logger.critical(
                f"Restoring previous config for {snapshot_site.name} failed: {restore_error}. "
                "Manual intervention required."
            )
            raise RollbackFailedError(
                f"Nginx reload failed and the previous configuration could not be restored: {reason}",
                reason=reason,
                restore_error=restore_error,
                resource=snapshot_site.name,
            )

        raise ReloadFailedError(
            f"Nginx reload failed: {reason}",
            reason=reason,
            resource=site.name,
            suggestion="Previous configuration restored; check the NGINX error log",
        )

    def _render(self, site: Site, cert: Certificate | None) -> ConfigArtifact:
        try:
            return self.generator.generate(site, cert)
        except ConfigGeneratorError as e:
            raise InvalidConfigError(
                f"Invalid nginx configuration: {e.message}",
                resource=site.name,
                suggestion="Review the site's upstreams and load balancer settings",
            ) from e

    def _new_certificate(self, site_id, material, parsed, issuer: str, auto_renew: bool) -> Certificate:
        now = self.clock()
        return Certificate(
            site_id=site_id,
            common_name=parsed.common_name,
            sans=parsed.sans,
            issuer=issuer,
            subject=parsed.subject,
            subject_details=parsed.subject_details,
            issuer_details=parsed.issuer_details,
            serial_number=parsed.serial_number,
            valid_from=parsed.valid_from,
            valid_to=parsed.valid_to,
            auto_renew=auto_renew,
            status=compute_status(parsed.valid_to, now),
            material=material,
            created_at=now,
            updated_at=now,
        )

    async def _require_site(self, site_id: str) -> Site:
        site = await self.sites.get(site_id)
        if not site:
            raise NotFoundError(f"Site '{site_id}' not found", resource=site_id)
        return site

    async def _require_certificate(self, cert_id: str) -> Certificate:
        cert = await self.certificates.get(cert_id)
        if not cert:
            raise NotFoundError(f"Certificate '{cert_id}' not found", resource=cert_id)
        return cert

    async def _require_no_certificate(self, site: Site) -> None:
        if await self.certificates.get_by_site(site.id):
            raise AlreadyExistsError(
                f"SSL certificate already exists for {site.name}",
                resource=site.id,
                suggestion="Use the update endpoint instead",
            )

    async def _audit(
        self,
        actor: str,
        action: str,
        type: ActivityType = ActivityType.CONFIG_CHANGE,
        success: bool = True,
        details: dict | None = None,
    ) -> None:
        await self.activity.log(actor, action, type=type, success=success, details=details)


# Singleton instance
_reconciler: Reconciler | None = None


def get_reconciler() -> Reconciler:
    """Get the global reconciler instance."""
    global _reconciler
    if _reconciler is None:
        from core.acme_service import get_acme_service

        _reconciler = Reconciler(lifecycle=CertificateLifecycleManager(ca_client=get_acme_service()))
    return _reconciler
