"""
certkeeper API

Keeps the client TLS certificate used for upstream API traffic valid:
loads it from the configured secret store, validates and monitors it,
renews it before it expires and hot-reloads the HTTPS client.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

import uvicorn
from fastapi import FastAPI

from certkeeper.config import settings
from certkeeper.core.cert_service import get_cert_service
from certkeeper.endpoints import certificates
from certkeeper.models.certificate import classify_certificate

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info(f"certkeeper starting up ({settings.app_env} mode)...")

    service = get_cert_service()

    info = await service.ensure_certificates()
    logger.info(f"Active certificate: {info.domain or 'none'} ({classify_certificate(info).value})")

    result = await service.start_monitoring(auto_update=settings.auto_update_certificates)
    if not result.success:
        logger.warning(f"Failed to start certificate monitoring: {result.error}")

    yield

    await service.stop_monitoring()
    service.transport.close()
    logger.info("certkeeper shutting down...")


app = FastAPI(
    title="certkeeper API",
    description="""
    Lifecycle management for the client TLS certificate that secures
    outbound API traffic.

    - Load certificates from Azure Key Vault, AWS Secrets Manager,
      HashiCorp Vault, local files or Let's Encrypt output
    - Validate and classify the active certificate
    - Renew expiring certificates on a schedule
    - Upload a replacement certificate manually
    """,
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.include_router(certificates.router)


@app.get(
    "/health",
    summary="Health Check",
    description="Service status with the active certificate and TLS connection summary.",
    tags=["Health"],
)
async def health_check():
    service = get_cert_service()
    status = service.get_status()
    info = status.certificate_info
    classification = classify_certificate(info)

    return {
        "status": "healthy" if info.valid else "degraded",
        "timestamp": datetime.now().isoformat(),
        "certificate": {
            "domain": info.domain,
            "classification": classification.value,
            "expires": info.not_after.isoformat() if info.not_after else None,
            "days_until_expiry": info.days_until_expiry(),
        },
        "connections": status.connections.model_dump(),
        "last_error": status.last_error,
        "monitoring": service.scheduler.running,
    }


def run() -> None:
    uvicorn.run("certkeeper.main:app", host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
