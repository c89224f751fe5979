"""
Certificate management endpoints.

REST API endpoints for SSL certificates: issuance through the ACME CA,
custom uploads, manual renewal, and the background renewal scheduler.
Private keys are never returned.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response

from core.cert_scheduler import get_cert_scheduler
from core.errors import ProxyManagerError
from core.reconciler import get_reconciler
from endpoints.common import get_actor, to_http_exception
from models.certificate import (
    Certificate,
    CertificateIssueRequest,
    CertificateResponse,
    CertificateStatus,
    CertificateUpdateRequest,
    CertificateUploadRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/certificates", tags=["SSL Certificates"])


def _to_response(cert: Certificate) -> CertificateResponse:
    reconciler = get_reconciler()
    return CertificateResponse.from_certificate(cert, reconciler.lifecycle.days_until_expiry(cert.valid_to))


@router.get(
    "/",
    response_model=List[CertificateResponse],
    summary="List All SSL Certificates",
    description="""
    List all certificates ordered by expiry.

    Stored validity dates are re-checked against the certificate material
    and corrected when they disagree. Status is always computed from the
    current time.
    """,
)
async def list_certificates(
    status: Optional[CertificateStatus] = Query(None, description="Filter by certificate status"),
) -> List[CertificateResponse]:
    certs = await get_reconciler().list_certificates()
    responses = [_to_response(cert) for cert in certs]
    if status is not None:
        responses = [r for r in responses if r.status == status]
    return responses


@router.get(
    "/scheduler/status",
    summary="Renewal Scheduler Status",
    description="Whether the renewal scheduler is running, its interval, threshold and pending renewals.",
)
async def scheduler_status() -> dict:
    return get_cert_scheduler().get_status()


@router.post(
    "/scheduler/sweep",
    summary="Run Renewal Sweep",
    description="""
    Run a renewal sweep now.

    Renewals are started in the background; the response only reports
    how many certificates were checked, started or skipped.
    """,
)
async def trigger_sweep() -> dict:
    return await get_cert_scheduler().trigger_sweep()


@router.get(
    "/{cert_id}",
    response_model=CertificateResponse,
    summary="Get Certificate",
    responses={404: {"description": "Certificate not found"}},
)
async def get_certificate(cert_id: str) -> CertificateResponse:
    try:
        cert = await get_reconciler().get_certificate(cert_id)
    except ProxyManagerError as e:
        raise to_http_exception(e)
    return _to_response(cert)


@router.post(
    "/",
    response_model=CertificateResponse,
    status_code=201,
    summary="Issue Certificate",
    description="""
    Request a certificate for a site from the ACME CA using HTTP-01.

    SSL is not enabled automatically; use `POST /sites/{site_id}/ssl`.
    """,
    responses={
        404: {"description": "Site not found"},
        409: {"description": "Site already has a certificate, or the CA reports it is not yet due"},
        422: {"description": "Invalid contact email"},
        429: {"description": "CA rate limit reached"},
        502: {"description": "CA request failed"},
    },
)
async def issue_certificate(request: CertificateIssueRequest, actor: str = Depends(get_actor)) -> CertificateResponse:
    try:
        cert = await get_reconciler().issue_certificate(request, actor=actor)
    except ProxyManagerError as e:
        raise to_http_exception(e)
    return _to_response(cert)


@router.post(
    "/upload",
    response_model=CertificateResponse,
    status_code=201,
    summary="Upload Custom Certificate",
    description="""
    Upload a certificate obtained elsewhere.

    The certificate must parse, must not be expired, must cover the site's
    hostname (exactly or by wildcard) and must match the private key.
    Uploaded certificates are never renewed automatically.
    """,
    responses={
        404: {"description": "Site not found"},
        409: {"description": "Site already has a certificate"},
        422: {"description": "Certificate unreadable, expired, for another domain, or key mismatch"},
    },
)
async def upload_certificate(request: CertificateUploadRequest, actor: str = Depends(get_actor)) -> CertificateResponse:
    try:
        cert = await get_reconciler().upload_certificate(request, actor=actor)
    except ProxyManagerError as e:
        raise to_http_exception(e)
    return _to_response(cert)


@router.put(
    "/{cert_id}",
    response_model=CertificateResponse,
    summary="Update Certificate",
    description="Replace certificate material or toggle auto-renew. Sites serving SSL are re-activated.",
    responses={
        404: {"description": "Certificate not found"},
        422: {"description": "Replacement certificate unreadable"},
        502: {"description": "NGINX rejected the configuration; previous state restored"},
    },
)
async def update_certificate(
    cert_id: str, request: CertificateUpdateRequest, actor: str = Depends(get_actor)
) -> CertificateResponse:
    try:
        cert = await get_reconciler().update_certificate(cert_id, request, actor=actor)
    except ProxyManagerError as e:
        raise to_http_exception(e)
    return _to_response(cert)


@router.post(
    "/{cert_id}/renew",
    response_model=CertificateResponse,
    summary="Renew Certificate",
    description="Renew now. Only CA-issued certificates within 30 days of expiry can be renewed.",
    responses={
        404: {"description": "Certificate not found"},
        412: {"description": "Issuer not renewable or renewal window not reached"},
        429: {"description": "CA rate limit reached"},
        502: {"description": "CA request or reload failed"},
    },
)
async def renew_certificate(cert_id: str, actor: str = Depends(get_actor)) -> CertificateResponse:
    try:
        cert = await get_reconciler().renew_certificate(cert_id, actor=actor)
    except ProxyManagerError as e:
        raise to_http_exception(e)
    return _to_response(cert)


@router.delete(
    "/{cert_id}",
    status_code=204,
    summary="Delete Certificate",
    description="Delete a certificate. SSL is turned off on its site.",
    responses={404: {"description": "Certificate not found"}},
)
async def delete_certificate(cert_id: str, actor: str = Depends(get_actor)) -> Response:
    try:
        await get_reconciler().delete_certificate(cert_id, actor=actor)
    except ProxyManagerError as e:
        raise to_http_exception(e)
    return Response(status_code=204)
