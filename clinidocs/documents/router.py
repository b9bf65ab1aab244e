"""Documents Router - patient document upload / listing endpoints

Endpoints (bearer token required):
- POST /upload-file: multipart patientId + 1..5 files (PDF/PNG/JPEG, 20 MiB each)
- GET /get-patient-files?patientId=: documents with 24h access URLs
- GET /whoami: resolved identity, user row created on first call
OPTIONS on each answers 204; the app adds the per-route CORS headers. Wrong methods get 405.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Header, Request, Response
from starlette.concurrency import run_in_threadpool

from clinidocs.documents.errors import DocumentRequestError
from clinidocs.documents.models import ClientContext, UserProfile, WhoAmIResponse
from clinidocs.documents.retrieval_pipeline import list_patient_documents
from clinidocs.documents.upload_pipeline import process_upload
from clinidocs.governance.auth import AuthenticationError
from clinidocs.services import ServiceContainer, get_services

router = APIRouter()
logger = structlog.get_logger()


def client_context(request: Request) -> ClientContext:
    """Caller IP (first x-forwarded-for hop, else x-client-ip) and user agent"""
    forwarded = request.headers.get("x-forwarded-for")
    ip_address = forwarded.split(",")[0].strip() if forwarded else request.headers.get("x-client-ip")
    return ClientContext(ip_address=ip_address or None, user_agent=request.headers.get("user-agent"))


CORS_METHODS = {
    "/upload-file": "POST,OPTIONS",
    "/get-patient-files": "GET,OPTIONS",
    "/whoami": "GET,OPTIONS",
}
CORS_ALLOW_HEADERS = "content-type,authorization"


def cors_headers(path: str, origin: str) -> dict:
    """CORS response headers for one documents route; empty for any other path"""
    methods = CORS_METHODS.get(path)
    if methods is None:
        return {}
    return {
        "access-control-allow-origin": origin,
        "access-control-allow-methods": methods,
        "access-control-allow-headers": CORS_ALLOW_HEADERS,
    }


@router.options("/upload-file", include_in_schema=False)
async def upload_file_preflight():
    return Response(status_code=204)


@router.options("/get-patient-files", include_in_schema=False)
async def patient_files_preflight():
    return Response(status_code=204)


@router.get("/get-patient-files")
async def get_patient_files(
    request: Request,
    patientId: Optional[str] = None,
    authorization: Optional[str] = Header(None),
    services: ServiceContainer = Depends(get_services),
):
    try:
        result = await list_patient_documents(services, authorization, patientId, client_context(request))
    except DocumentRequestError:
        raise
    except Exception as e:
        logger.exception("Retrieve error", error=str(e))
        raise DocumentRequestError(500, str(e) or "Failed to retrieve files") from e
    return result.to_json()


@router.options("/whoami", include_in_schema=False)
async def whoami_preflight():
    return Response(status_code=204)


@router.get("/whoami")
async def whoami(
    authorization: Optional[str] = Header(None),
    services: ServiceContainer = Depends(get_services),
):
    if not authorization:
        raise DocumentRequestError(401, "Missing Authorization header")
    try:
        user = await services.auth_resolver.resolve(authorization)
    except AuthenticationError as e:
        raise DocumentRequestError(401, str(e)) from e

    row = await run_in_threadpool(services.metadata_store.get_or_create_user, user) or {}
    profile = UserProfile(
        id=row.get("id"),
        user_id=row.get("user_id") or user.user_id,
        azure_oid=row.get("azure_oid") or user.oid or None,
        email=row.get("email") or user.email,
        first_name=row.get("first_name") or user.first_name or None,
        last_name=row.get("last_name") or user.last_name or None,
        role=row.get("role") or user.role,
        created_at=row.get("created_at"),
    )
    return WhoAmIResponse(user=profile).to_json()
