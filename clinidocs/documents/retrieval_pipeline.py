"""Retrieval Pipeline - list a patient's documents with time-limited URLs

How: Same identity + patient gate as upload, rows newest first, one signed URL per
row minted concurrently (bounded). A row whose URL cannot be signed keeps its
stored URL and is reported under sasGenerationFailedFor.
"""

import asyncio
from typing import List, Optional, Tuple

import structlog
from starlette.concurrency import run_in_threadpool

from clinidocs.documents.errors import DocumentRequestError
from clinidocs.documents.metadata_store import DocumentRecord
from clinidocs.documents.models import ClientContext, ListWarnings, PatientFile, PatientFilesResponse
from clinidocs.documents.storage_backend import is_valid_patient_id
from clinidocs.governance import audit_logger as audit
from clinidocs.governance.auth import AuthenticationError, can_access_patient
from clinidocs.services import ServiceContainer
from clinidocs.utils.metrics import access_url_fallbacks_total

logger = structlog.get_logger()

RESOURCE_TYPE = "patient_document"


async def list_patient_documents(
    services: ServiceContainer,
    authorization: Optional[str],
    patient_id: Optional[str],
    client: ClientContext,
) -> PatientFilesResponse:
    if not authorization:
        raise DocumentRequestError(401, "Missing Authorization header")

    patient_id = (patient_id or "").strip()
    if not patient_id:
        raise DocumentRequestError(400, "Missing patientId query parameter")
    if not is_valid_patient_id(patient_id):
        raise DocumentRequestError(400, "Invalid patientId format")

    try:
        user = await services.auth_resolver.resolve(authorization)
    except AuthenticationError as e:
        raise DocumentRequestError(401, str(e)) from e

    await run_in_threadpool(services.metadata_store.get_or_create_user, user)

    if not can_access_patient(user, patient_id):
        logger.warning("File list refused", user_id=user.user_id, patient_id=patient_id)
        await run_in_threadpool(
            services.audit_logger.log_event,
            user.user_id,
            audit.UNAUTHORIZED_FILE_LIST,
            resource_type=RESOURCE_TYPE,
            patient_id=patient_id,
            details={"reason": "User attempted to list files for another user"},
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
        raise DocumentRequestError(403, "Unauthorized: You can only view your own files")

    records = await run_in_threadpool(services.metadata_store.list_documents, patient_id)
    files, failures = await _with_access_urls(services, patient_id, records)

    details = {"count": len(files)}
    if failures:
        details["sas_failures"] = len(failures)
    await run_in_threadpool(
        services.audit_logger.log_event,
        user.user_id,
        audit.FILES_LIST_VIEWED,
        resource_type=RESOURCE_TYPE,
        patient_id=patient_id,
        details=details,
        ip_address=client.ip_address,
        user_agent=client.user_agent,
    )

    logger.info("Patient files retrieved", patient_id=patient_id, count=len(files), url_failures=len(failures))
    return PatientFilesResponse(
        patient_id=patient_id,
        files=files,
        warnings=ListWarnings(sas_generation_failed_for=failures) if failures else None,
        count=len(files),
    )


async def _with_access_urls(
    services: ServiceContainer, patient_id: str, records: List[DocumentRecord]
) -> Tuple[List[PatientFile], List[int]]:
    """Mint one URL per record; output keeps the input order"""
    semaphore = asyncio.Semaphore(max(1, services.settings.access_url_concurrency))
    validity_hours = services.settings.access_url_validity_hours
    failures: List[int] = []

    async def mint(record: DocumentRecord) -> PatientFile:
        source = record.blob_path or record.blob_url or f"{patient_id}/{record.file_name}"
        async with semaphore:
            try:
                url = await run_in_threadpool(services.storage.mint_access_url, source, validity_hours)
            except Exception as e:
                logger.warning("Access URL generation failed", document_id=record.id, error=str(e))
                access_url_fallbacks_total.inc()
                failures.append(record.id)
                url = record.blob_url

        return PatientFile(
            id=record.id,
            name=record.file_name,
            size=record.file_size,
            uploaded_at=record.uploaded_at,
            url=url,
            blob_path=record.blob_path or None,
            uploaded_by=record.uploaded_by_user_id or None,
        )

    files = await asyncio.gather(*(mint(record) for record in records))
    failed = set(failures)
    return list(files), [r.id for r in records if r.id in failed]
