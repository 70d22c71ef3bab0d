"""
Certificate endpoints.

REST API endpoints for inspecting the active client certificate, running
checks, uploading a replacement and controlling periodic monitoring.
"""

import logging

from fastapi import APIRouter, HTTPException

from certkeeper.core.cert_service import get_cert_service
from certkeeper.models.certificate import (
    CertificateInfoResponse,
    CertificateUploadRequest,
    CheckRequest,
    MonitoringRequest,
    MonitoringResult,
    TlsStatus,
    UploadResult,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/certificates", tags=["TLS Certificates"])


@router.get(
    "/info",
    response_model=CertificateInfoResponse,
    summary="Get Active Certificate",
    description="""
    Parse the active client certificate and report its details.

    Includes the trust classification (missing, invalid, self_signed,
    untrusted, production) and the configured certificate source.
    """,
)
async def get_certificate_info() -> CertificateInfoResponse:
    service = get_cert_service()
    info = await service.get_info()
    return CertificateInfoResponse.from_info(info, source=service.get_source_label())


@router.get(
    "/status",
    response_model=TlsStatus,
    summary="Get TLS Status",
    description="Connection counters, last error and certificate snapshot of the secure transport.",
)
async def get_tls_status() -> TlsStatus:
    return get_cert_service().get_status()


@router.post(
    "/check",
    response_model=CertificateInfoResponse,
    summary="Check Certificate",
    description="""
    Validate the active certificate now.

    With `auto_update=true` an expiring or unusable certificate is replaced
    from `source` (a provider name or a directory), defaulting to the
    configured secret provider.
    """,
)
async def check_certificate(request: CheckRequest) -> CertificateInfoResponse:
    service = get_cert_service()
    info = await service.check_and_update(auto_update=request.auto_update, source=request.source)
    return CertificateInfoResponse.from_info(info, source=service.get_source_label(request.source))


@router.post(
    "/upload",
    response_model=UploadResult,
    summary="Upload Certificate",
    description="""
    Replace the active certificate set with an uploaded one.

    The certificate must parse and the private key must match it;
    otherwise the active files are left unchanged.
    """,
    responses={
        400: {
            "description": "Certificate rejected",
            "content": {
                "application/json": {
                    "example": {
                        "detail": {
                            "error": "key_cert_mismatch",
                            "message": "Private key does not match certificate",
                            "suggestion": "Upload the private key that was used to request this certificate",
                        }
                    }
                }
            },
        }
    },
)
async def upload_certificate(request: CertificateUploadRequest) -> UploadResult:
    result = await get_cert_service().upload_manual(
        cert_pem=request.certificate_pem,
        key_pem=request.private_key_pem,
        ca_pem=request.ca_pem,
    )

    if not result.success:
        raise HTTPException(
            status_code=500 if result.error_code == "storage_error" else 400,
            detail={
                "error": result.error_code,
                "message": result.error,
                "suggestion": result.suggestion,
            },
        )

    return result


@router.post(
    "/monitoring/start",
    response_model=MonitoringResult,
    summary="Start Monitoring",
    description="Start (or restart) periodic certificate checks. The first check runs immediately.",
)
async def start_monitoring(request: MonitoringRequest) -> MonitoringResult:
    result = await get_cert_service().start_monitoring(
        interval_ms=request.interval_ms,
        auto_update=request.auto_update,
        source=request.source,
    )
    if not result.success:
        raise HTTPException(status_code=500, detail=f"Failed to start monitoring: {result.error}")
    return result


@router.post(
    "/monitoring/stop",
    response_model=MonitoringResult,
    summary="Stop Monitoring",
)
async def stop_monitoring() -> MonitoringResult:
    result = await get_cert_service().stop_monitoring()
    if not result.success:
        raise HTTPException(status_code=409, detail=result.error)
    return result
