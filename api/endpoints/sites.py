"""
Site management endpoints.

REST API endpoints for creating, updating and removing proxied sites.
Every mutation is applied through the reconciler, which keeps the
stored record and the live NGINX configuration in step.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from core.activity_logger import get_activity_logger
from core.errors import ProxyManagerError
from core.reconciler import get_reconciler
from endpoints.common import get_actor, to_http_exception
from models.activity import Activity, ActivityType
from models.reload import ReloadResult
from models.site import Site, SiteCreateRequest, SiteUpdateRequest, SSLToggleRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sites", tags=["Sites"])


@router.get(
    "/",
    response_model=List[Site],
    summary="List All Sites",
    description="List every managed site with its upstreams, load balancer and SSL state.",
)
async def list_sites() -> List[Site]:
    return await get_reconciler().list_sites()


@router.get(
    "/activity",
    response_model=List[Activity],
    summary="List Activity",
    description="""
    Audit log of site, SSL and system operations, newest first.

    One entry is written per mutating operation, whether it succeeded or not.
    """,
)
async def list_activity(
    type: Optional[ActivityType] = Query(None, description="Filter by activity type"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum entries to return"),
) -> List[Activity]:
    return await get_activity_logger().list_activities(type=type, limit=limit)


@router.post(
    "/reload",
    response_model=ReloadResult,
    summary="Reload NGINX",
    description="Test and reload the running NGINX configuration without changing any site.",
)
async def reload_nginx(actor: str = Depends(get_actor)) -> ReloadResult:
    return await get_reconciler().reload_now(actor=actor)


@router.get(
    "/{site_id}",
    response_model=Site,
    summary="Get Site",
    responses={404: {"description": "Site not found"}},
)
async def get_site(site_id: str) -> Site:
    try:
        return await get_reconciler().get_site(site_id)
    except ProxyManagerError as e:
        raise to_http_exception(e)


@router.post(
    "/",
    response_model=Site,
    status_code=201,
    summary="Create Site",
    description="""
    Create a site and bring it live.

    The configuration is rendered, written, enabled and NGINX is reloaded.
    If any step fails the record and its files are removed again.

    With `auto_ssl` a certificate is requested afterwards on a best-effort
    basis; an issuance failure leaves the site running without SSL.
    """,
    responses={
        409: {"description": "A site with this name already exists"},
        422: {"description": "The configuration could not be rendered"},
        502: {"description": "NGINX rejected the configuration"},
    },
)
async def create_site(request: SiteCreateRequest, actor: str = Depends(get_actor)) -> Site:
    try:
        return await get_reconciler().create_site(request, actor=actor)
    except ProxyManagerError as e:
        raise to_http_exception(e)


@router.put(
    "/{site_id}",
    response_model=Site,
    summary="Update Site",
    description="""
    Apply a partial update and re-activate the site.

    On a failed reload the previous record and configuration are restored
    before the error is returned.
    """,
    responses={
        404: {"description": "Site not found"},
        409: {"description": "Renaming onto an existing site"},
        422: {"description": "The configuration could not be rendered"},
        500: {"description": "Reload failed and the previous configuration could not be restored"},
        502: {"description": "NGINX rejected the configuration; previous state restored"},
    },
)
async def update_site(site_id: str, request: SiteUpdateRequest, actor: str = Depends(get_actor)) -> Site:
    try:
        return await get_reconciler().update_site(site_id, request, actor=actor)
    except ProxyManagerError as e:
        raise to_http_exception(e)


@router.delete(
    "/{site_id}",
    response_model=ReloadResult,
    summary="Delete Site",
    description="Remove a site, its certificate and its configuration files, then reload NGINX.",
    responses={404: {"description": "Site not found"}},
)
async def delete_site(site_id: str, actor: str = Depends(get_actor)) -> ReloadResult:
    try:
        return await get_reconciler().delete_site(site_id, actor=actor)
    except ProxyManagerError as e:
        raise to_http_exception(e)


@router.post(
    "/{site_id}/ssl",
    response_model=Site,
    summary="Toggle SSL",
    description="Enable or disable SSL for a site. Enabling requires a stored certificate.",
    responses={
        404: {"description": "Site not found"},
        412: {"description": "No certificate stored for the site"},
        502: {"description": "NGINX rejected the configuration; previous state restored"},
    },
)
async def toggle_ssl(site_id: str, request: SSLToggleRequest, actor: str = Depends(get_actor)) -> Site:
    try:
        return await get_reconciler().toggle_ssl(site_id, request.enabled, actor=actor)
    except ProxyManagerError as e:
        raise to_http_exception(e)
