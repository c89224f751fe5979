"""
Proxy Manager API

Manages reverse-proxy sites and their TLS certificates on NGINX. Every
change is rendered, activated and verified against the running proxy,
with the previous state restored when activation fails. Certificates
issued by an ACME CA are renewed in the background.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import ensure_directories, settings
from core.request_logger import RequestLoggerMiddleware
from endpoints import certificates, sites

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Proxy Manager API starting up...")

    ensure_directories()

    from core.database import initialize_database

    await initialize_database()
    logger.info("Database initialized")

    cert_scheduler = None
    if settings.cert_renewal_scheduler_enabled:
        from core.cert_scheduler import get_cert_scheduler

        cert_scheduler = get_cert_scheduler()
        try:
            await cert_scheduler.start()
        except Exception as e:
            logger.warning(f"Failed to start certificate scheduler: {e}")
    else:
        logger.info("Certificate renewal scheduler disabled")

    yield

    if cert_scheduler is not None:
        try:
            await cert_scheduler.stop()
        except Exception as e:
            logger.warning(f"Error stopping certificate scheduler: {e}")

    logger.info("Proxy Manager API shutting down...")


app = FastAPI(
    title="Proxy Manager API",
    description="""
    Reverse-proxy site and certificate management for NGINX.

    - Sites: upstream pools, load balancing, ModSecurity and SSL toggles
    - Certificates: ACME issuance, custom uploads, automatic renewal
    - Every change is activated with a config test and reload, and rolled
      back to the previous configuration when NGINX rejects it
    - Errors carry a `message` and, where useful, a `suggestion`

    Send an `X-Actor` header to attribute changes in the activity log.
    """,
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.include_router(sites.router)
app.include_router(certificates.router)

app.add_middleware(RequestLoggerMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.api_debug else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get(
    "/",
    summary="API Status",
    description="Basic check that the API is running.",
    tags=["Health"],
)
async def root():
    return {
        "message": "Proxy Manager API is running",
        "version": "0.1.0",
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "docs_url": "/docs",
    }


@app.get(
    "/health",
    summary="Detailed Health Check",
    description="API status with site, certificate and renewal scheduler summaries.",
    tags=["Health"],
)
async def health_check():
    """
    Summarize the managed state.

    Returns:
        dict: Site counts, certificate status counts and scheduler status
    """
    from core.cert_scheduler import get_cert_scheduler
    from core.reconciler import get_reconciler
    from models.certificate import CertificateStatus

    reconciler = get_reconciler()
    site_list = await reconciler.list_sites()
    certs = await reconciler.certificates.list_certificates()

    ssl_status = {status.value: 0 for status in CertificateStatus}
    for cert in certs:
        ssl_status[cert.status.value] += 1

    return {
        "status": "healthy" if ssl_status[CertificateStatus.EXPIRED.value] == 0 else "warning",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "reload_mode": reconciler.executor.mode.value,
        "sites": {
            "total": len(site_list),
            "ssl_enabled": len([s for s in site_list if s.ssl_enabled]),
        },
        "ssl": {"total": len(certs), **ssl_status},
        "scheduler": get_cert_scheduler().get_status(),
    }


if __name__ == "__main__":
    uvicorn.run("main:app", host=settings.api_host, port=settings.api_port, reload=settings.api_debug)
