"""Upload Pipeline - multipart body -> stored blobs + metadata rows + audit

Self-Explanatory: Accept up to N documents for one patient in one request.
How:
1. Reject early when there is no credential (body never read)
2. Stream-parse the body; bad parts become warnings, bad framing a 400
3. Validate patientId, resolve identity, upsert user, apply the patient gate
4. Persist accepted files one by one; a failed file never stops the others
5. Audit FILES_UPLOADED and answer with per-file info + warnings
"""

from typing import AsyncIterable, List, Optional

import structlog
from starlette.concurrency import run_in_threadpool

from clinidocs.documents.errors import DocumentRequestError, MalformedUploadError
from clinidocs.documents.models import (
    ClientContext,
    FileOutcome,
    FilePart,
    UploadedFileInfo,
    UploadResponse,
    UploadWarnings,
)
from clinidocs.documents.multipart_reader import read_multipart
from clinidocs.documents.storage_backend import is_valid_patient_id
from clinidocs.governance import audit_logger as audit
from clinidocs.governance.auth import AuthenticatedUser, AuthenticationError, can_access_patient
from clinidocs.services import ServiceContainer
from clinidocs.utils.metrics import record_document_upload, record_rejected_part, upload_duration_seconds

logger = structlog.get_logger()

RESOURCE_TYPE = "patient_document"


def _record_rejections(parts: List[FilePart]) -> None:
    reasons = {
        FileOutcome.REJECTED_INVALID_TYPE: "invalid_type",
        FileOutcome.REJECTED_OVERSIZED: "oversized",
        FileOutcome.REJECTED_BY_LIMIT: "files_limit",
    }
    for outcome, reason in reasons.items():
        record_rejected_part(reason, sum(1 for p in parts if p.outcome == outcome))


async def process_upload(
    services: ServiceContainer,
    authorization: Optional[str],
    content_type: Optional[str],
    body: AsyncIterable[bytes],
    client: ClientContext,
) -> UploadResponse:
    """Run one upload request end to end

    Raises:
        DocumentRequestError for every 4xx outcome
    """
    if not authorization:
        raise DocumentRequestError(401, "Missing Authorization header")

    settings = services.settings
    with upload_duration_seconds.time():
        try:
            parsed = await read_multipart(
                content_type,
                body,
                max_file_bytes=settings.max_file_bytes,
                max_files=settings.max_files_per_request,
            )
        except MalformedUploadError as e:
            logger.warning("Multipart parse failed", error=str(e))
            raise DocumentRequestError(400, "Invalid request format") from e

        _record_rejections(parsed.parts)
        warnings = UploadWarnings.from_parts(parsed.parts, settings.max_files_per_request)

        patient_id = parsed.patient_id
        if not patient_id:
            raise DocumentRequestError(400, "Missing patientId")
        if not is_valid_patient_id(patient_id):
            raise DocumentRequestError(400, "Invalid patientId format")
        accepted = parsed.accepted
        if not accepted:
            raise DocumentRequestError(400, "No files provided", warnings)

        try:
            user = await services.auth_resolver.resolve(authorization)
        except AuthenticationError as e:
            raise DocumentRequestError(401, str(e)) from e

        await run_in_threadpool(services.metadata_store.get_or_create_user, user)

        if not can_access_patient(user, patient_id):
            logger.warning("Upload refused", user_id=user.user_id, patient_id=patient_id)
            await run_in_threadpool(
                services.audit_logger.log_event,
                user.user_id,
                audit.UNAUTHORIZED_FILE_UPLOAD,
                resource_type=RESOURCE_TYPE,
                patient_id=patient_id,
                details={"reason": "User attempted to upload files for another user"},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
            raise DocumentRequestError(403, "Unauthorized: You can only upload files for your own profile")

        uploaded = await _persist_files(services, user, patient_id, accepted)
        if not uploaded:
            raise DocumentRequestError(400, "No files were successfully uploaded", warnings)

        await run_in_threadpool(
            services.audit_logger.log_event,
            user.user_id,
            audit.FILES_UPLOADED,
            resource_type=RESOURCE_TYPE,
            patient_id=patient_id,
            details={
                "file_count": len(uploaded),
                "total_size": sum(f.size for f in uploaded),
                "warnings": warnings.to_json() if warnings else None,
            },
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )

    logger.info("Files uploaded", patient_id=patient_id, user_id=user.user_id, count=len(uploaded))
    return UploadResponse(files=uploaded, warnings=warnings, uploaded_by=user.user_id)


async def _persist_files(
    services: ServiceContainer,
    user: AuthenticatedUser,
    patient_id: str,
    parts: List[FilePart],
) -> List[UploadedFileInfo]:
    """Store blob then record metadata, strictly in arrival order"""
    uploaded: List[UploadedFileInfo] = []

    for part in parts:
        try:
            stored = await run_in_threadpool(
                services.storage.upload, patient_id, part.filename, part.data, part.media_type
            )
        except Exception as e:
            logger.error("Failed to upload file", filename=part.filename, patient_id=patient_id, error=str(e))
            record_rejected_part("persist_failed")
            continue

        try:
            await run_in_threadpool(
                services.metadata_store.insert_document,
                patient_id,
                user.user_id,
                stored.safe_file_name,
                part.media_type,
                part.size,
                stored.url,
                stored.key,
            )
        except Exception as e:
            logger.error("Failed to record file", filename=part.filename, blob_path=stored.key, error=str(e))
            record_rejected_part("persist_failed")
            await _discard_orphan(services, stored.key)
            continue

        record_document_upload(part.media_type, part.size)
        uploaded.append(
            UploadedFileInfo(filename=stored.safe_file_name, size=part.size, url=stored.url, blob_name=stored.key)
        )

    return uploaded


async def _discard_orphan(services: ServiceContainer, key: str) -> None:
    try:
        await run_in_threadpool(services.storage.delete, key)
        logger.info("Orphaned blob removed", blob_path=key)
    except Exception as e:
        logger.warning("Orphaned blob left in storage", blob_path=key, error=str(e))
