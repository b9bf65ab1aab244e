"""Document models - per-file outcomes and the JSON shapes returned to the web app"""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class FileOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED_INVALID_TYPE = "rejected_invalid_type"
    REJECTED_OVERSIZED = "rejected_oversized"
    REJECTED_BY_LIMIT = "rejected_by_limit"


class FilePart(BaseModel):
    """One file part of a multipart upload; data is only kept for ACCEPTED parts"""
    field_name: str
    filename: str
    media_type: str
    outcome: FileOutcome
    data: bytes = b""

    @property
    def size(self) -> int:
        return len(self.data)


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MaxFilesExceeded(ApiModel):
    limit: int


class UploadWarnings(ApiModel):
    max_files_exceeded: Optional[MaxFilesExceeded] = None
    unsupported_files: Optional[List[str]] = None
    oversized_files: Optional[List[str]] = None

    @classmethod
    def from_parts(cls, parts: List[FilePart], max_files: int) -> Optional["UploadWarnings"]:
        """Aggregate per-file outcomes; None when nothing was skipped"""
        unsupported = [p.filename for p in parts if p.outcome == FileOutcome.REJECTED_INVALID_TYPE]
        oversized = [p.filename for p in parts if p.outcome == FileOutcome.REJECTED_OVERSIZED]
        limit_hit = any(p.outcome == FileOutcome.REJECTED_BY_LIMIT for p in parts)

        if not (unsupported or oversized or limit_hit):
            return None
        return cls(
            max_files_exceeded=MaxFilesExceeded(limit=max_files) if limit_hit else None,
            unsupported_files=unsupported or None,
            oversized_files=oversized or None,
        )


class UploadedFileInfo(ApiModel):
    filename: str
    size: int
    url: str
    blob_name: str


class UploadResponse(ApiModel):
    ok: bool = True
    message: str = "Files uploaded successfully"
    files: List[UploadedFileInfo]
    warnings: Optional[UploadWarnings] = None
    uploaded_by: str


class PatientFile(ApiModel):
    id: int
    name: str
    size: Optional[int] = None
    uploaded_at: datetime
    url: Optional[str] = None
    blob_path: Optional[str] = None
    uploaded_by: Optional[str] = None


class ListWarnings(ApiModel):
    sas_generation_failed_for: List[Union[int, str]]


class PatientFilesResponse(ApiModel):
    ok: bool = True
    patient_id: str
    files: List[PatientFile]
    warnings: Optional[ListWarnings] = None
    count: int


class UserProfile(ApiModel):
    id: Optional[int] = None
    user_id: str
    azure_oid: Optional[str] = None
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str
    created_at: Optional[datetime] = None


class WhoAmIResponse(ApiModel):
    ok: bool = True
    user: UserProfile


class ClientContext(BaseModel):
    """Caller network details recorded on audit rows"""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
