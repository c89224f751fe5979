"""
Certificate renewal scheduler.

Background sweep over all certificates using APScheduler. Each sweep
decides per certificate whether to renew, and starts renewals as tracked
background tasks without waiting for them. Outcomes are logged and never
surfaced to API callers; failed renewals are simply retried next sweep.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel

from config import settings
from core.cert_lifecycle import CertificateLifecycleManager, days_until_expiry, utc_now
from core.cert_repository import CertificateRepository
from core.errors import NotYetDueError, ProxyManagerError, RateLimitedError
from core.reconciler import Reconciler, get_reconciler
from models.certificate import Certificate, CertificateStatus

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "cert_renewal_sweep"


class SkipReason(str, Enum):
    """Why a certificate was left alone in a sweep."""

    AUTO_RENEW_DISABLED = "auto_renew_disabled"
    ISSUER_NOT_RENEWABLE = "issuer_not_renewable"
    NOT_DUE_YET = "not_due_yet"


class RenewalDecision(BaseModel):
    """Outcome of evaluating one certificate."""

    renew: bool
    reason: SkipReason | None = None
    days_until_expiry: int


class CertScheduler:
    """
    Periodic renewal sweep.

    Runs once at startup and then every ``interval_seconds``.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        lifecycle: Optional[CertificateLifecycleManager] = None,
        certificates: Optional[CertificateRepository] = None,
        interval_seconds: Optional[int] = None,
        threshold_days: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.reconciler = reconciler
        self.lifecycle = lifecycle or reconciler.lifecycle
        self.certificates = certificates or reconciler.certificates
        self.interval_seconds = interval_seconds or settings.cert_renewal_check_interval_seconds
        self.threshold_days = threshold_days if threshold_days is not None else self.lifecycle.renewal_threshold_days
        self.clock = clock
        self.scheduler: AsyncIOScheduler | None = None
        self._started = False
        self._pending: set[asyncio.Task] = set()
        self._in_flight: set[str] = set()

    async def start(self) -> None:
        """Start the renewal scheduler with an immediate first sweep."""
        if self._started:
            logger.warning("Certificate scheduler already started")
            return

        self.scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        self.scheduler.add_job(
            self.sweep,
            IntervalTrigger(seconds=self.interval_seconds),
            id=SWEEP_JOB_ID,
            name="Certificate Renewal Sweep",
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.start()
        self._started = True
        logger.info(
            f"Certificate renewal scheduler started (every {self.interval_seconds}s, "
            f"threshold {self.threshold_days} days)"
        )

    async def stop(self) -> None:
        """Stop the scheduler and cancel renewals still in progress."""
        if self._started:
            self.scheduler.shutdown(wait=False)
            self._started = False
            for task in list(self._pending):
                task.cancel()
            logger.info("Certificate renewal scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._started

    def evaluate(self, cert: Certificate, now: Optional[datetime] = None) -> RenewalDecision:
        """Decide whether ``cert`` should be renewed in this sweep."""
        days = days_until_expiry(cert.valid_to, now or self.clock())
        if not cert.auto_renew:
            return RenewalDecision(renew=False, reason=SkipReason.AUTO_RENEW_DISABLED, days_until_expiry=days)
        if cert.issuer not in self.lifecycle.renewable_issuers:
            return RenewalDecision(renew=False, reason=SkipReason.ISSUER_NOT_RENEWABLE, days_until_expiry=days)
        if days > self.threshold_days:
            return RenewalDecision(renew=False, reason=SkipReason.NOT_DUE_YET, days_until_expiry=days)
        return RenewalDecision(renew=True, days_until_expiry=days)

    async def sweep(self) -> dict:
        """
        Check every certificate and start renewals for those that are due.

        Returns:
            Summary with counts of checked, started and skipped certificates
        """
        logger.info("Starting certificate renewal sweep")
        summary = {"checked": 0, "renewals_started": 0, "skipped": {}}

        try:
            certificates = await self.certificates.list_certificates()
        except Exception as e:
            logger.exception(f"Error loading certificates for renewal sweep: {e}")
            return summary

        now = self.clock()
        for cert in certificates:
            summary["checked"] += 1
            decision = self.evaluate(cert, now)

            if not decision.renew:
                logger.debug(f"Skipping {cert.common_name}: {decision.reason.value}")
                reason = decision.reason.value
                summary["skipped"][reason] = summary["skipped"].get(reason, 0) + 1
                continue

            if cert.id in self._in_flight:
                logger.debug(f"Renewal already in progress for {cert.common_name}")
                continue

            logger.info(f"Auto-renewing certificate for {cert.common_name} ({decision.days_until_expiry} days left)")
            self._in_flight.add(cert.id)
            task = asyncio.create_task(self._renew(cert), name=f"renew-{cert.id}")
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            summary["renewals_started"] += 1

        logger.info(
            f"Certificate renewal sweep complete: {summary['checked']} checked, "
            f"{summary['renewals_started']} renewals started"
        )
        return summary

    async def _renew(self, cert: Certificate) -> None:
        try:
            renewed = await self.lifecycle.renew(cert)
            updated = await self.reconciler.apply_renewal(renewed, actor="system")
            logger.info(
                f"Certificate for {cert.common_name} renewed, valid until {updated.valid_to.isoformat()}"
            )
        except RateLimitedError as e:
            logger.warning(f"Rate limited renewing {cert.common_name}, retrying next sweep: {e.message}")
        except NotYetDueError as e:
            logger.info(f"Certificate for {cert.common_name} not yet due at the CA: {e.message}")
        except ProxyManagerError as e:
            logger.error(f"Failed to renew {cert.common_name}: {e.message}")
            await self._mark_expiring(cert)
        except Exception as e:
            logger.exception(f"Unexpected error renewing {cert.common_name}: {e}")
            await self._mark_expiring(cert)
        finally:
            self._in_flight.discard(cert.id)

    async def _mark_expiring(self, cert: Certificate) -> None:
        try:
            await self.certificates.set_status(cert.id, CertificateStatus.EXPIRING)
        except Exception as e:
            logger.error(f"Could not update status for certificate {cert.id}: {e}")

    async def wait_for_pending(self) -> None:
        """Wait until every renewal started so far has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def trigger_sweep(self) -> dict:
        """Manually run a sweep now."""
        logger.info("Manual renewal sweep triggered")
        return await self.sweep()

    def get_status(self) -> dict:
        return {
            "is_running": self._started,
            "check_interval_seconds": self.interval_seconds,
            "renew_threshold_days": self.threshold_days,
            "pending_renewals": len(self._pending),
            "next_runs": self.get_next_run_times() if self._started else {},
        }

    def get_next_run_times(self) -> dict:
        """Get next scheduled run times for all jobs."""
        jobs = {}
        if self.scheduler is None:
            return jobs
        for job in self.scheduler.get_jobs():
            jobs[job.id] = {"name": job.name, "next_run": job.next_run_time.isoformat() if job.next_run_time else None}
        return jobs


# Singleton instance
_cert_scheduler: CertScheduler | None = None


def get_cert_scheduler() -> CertScheduler:
    """Get the global certificate scheduler instance."""
    global _cert_scheduler
    if _cert_scheduler is None:
        _cert_scheduler = CertScheduler(get_reconciler())
    return _cert_scheduler
