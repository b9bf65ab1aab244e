"""Document Object Storage - S3/MinIO backend

Self-Explanatory: Upload, download, list, delete patient documents; mint time-limited read URLs.
How: Boto3 for S3. Keys look like {patientId}/{millis}-{uuid4}-{safeFileName}.
Only this module touches raw document bytes; the metadata store keeps key + URL.
"""
import re
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from urllib.parse import quote, urlsplit

import boto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel

from clinidocs.config import ACCESS_URL_VALIDITY_HOURS, CONTAINER_NAME, PATIENT_ID_PATTERN

logger = structlog.get_logger()

PATIENT_ID_RE = re.compile(PATIENT_ID_PATTERN)
FALLBACK_FILE_NAME = "file"
MAX_NAME_CHARS = 120
MAX_EXTENSION_CHARS = 20
MAX_FILE_NAME_CHARS = 180


class StorageError(Exception):
    """Object store call failed (network, credentials, missing object...)"""


class InvalidPatientIdError(ValueError):
    pass


class InvalidBlobKeyError(ValueError):
    pass


class ContainerState(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


class StoredBlob(BaseModel):
    key: str
    url: str
    safe_file_name: str


class BlobEntry(BaseModel):
    name: str
    size: Optional[int] = None
    url: str
    uploaded_at: Optional[datetime] = None


def is_valid_patient_id(patient_id: Optional[str]) -> bool:
    return bool(patient_id) and PATIENT_ID_RE.fullmatch(patient_id) is not None


def ensure_valid_patient_id(patient_id: Optional[str]) -> str:
    """Trim and validate; the id becomes the key prefix so no separators allowed"""
    trimmed = (patient_id or "").strip()
    if not is_valid_patient_id(trimmed):
        raise InvalidPatientIdError("Invalid patientId format")
    return trimmed


def sanitize_file_name(file_name: Optional[str]) -> str:
    """Strip path segments and restrict characters/length

    Name part keeps [A-Za-z0-9_-] (others become "_", runs collapsed, max 120),
    extension keeps [A-Za-z0-9.] (max 20), whole name max 180.
    """
    base = re.split(r"[/\\]", file_name or "")[-1] or FALLBACK_FILE_NAME

    parts = base.split(".")
    extension = "." + parts.pop() if len(parts) > 1 else ""
    name_part = ".".join(parts) or FALLBACK_FILE_NAME

    safe_name = re.sub(r"_+", "_", re.sub(r"[^A-Za-z0-9_-]", "_", name_part))[:MAX_NAME_CHARS]
    safe_extension = re.sub(r"[^A-Za-z0-9.]", "", extension)[:MAX_EXTENSION_CHARS]

    return f"{safe_name or FALLBACK_FILE_NAME}{safe_extension}"[:MAX_FILE_NAME_CHARS]


def build_blob_key(patient_id: str, safe_file_name: str) -> str:
    timestamp = int(time.time() * 1000)
    return f"{patient_id}/{timestamp}-{uuid.uuid4()}-{safe_file_name}"


def normalize_key(key_or_url: Optional[str], container: str = CONTAINER_NAME) -> Optional[str]:
    """Accept a bare key or a full object URL and return the bare key

    Absolute URL: path without leading slashes, first segment dropped only when it
    is the container. Anything else: leading slashes and a "{container}/" prefix dropped.
    Returns None when nothing is left.
    """
    if not key_or_url:
        return None
    trimmed = key_or_url.strip()
    if not trimmed:
        return None

    parsed = urlsplit(trimmed)
    if parsed.scheme and parsed.netloc:
        segments = parsed.path.lstrip("/").split("/")
        if segments[0] == container:
            segments = segments[1:]
        return "/".join(segments) or None

    without_leading_slash = trimmed.lstrip("/")
    prefix = f"{container}/"
    if without_leading_slash.startswith(prefix):
        return without_leading_slash[len(prefix):] or None
    return without_leading_slash or None


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def build_s3_client(
    region_name: Optional[str] = None,
    endpoint_url: Optional[str] = None,
    aws_access_key_id: Optional[str] = None,
    aws_secret_access_key: Optional[str] = None,
):
    """S3 client that signs access URLs with SigV4 (X-Amz-* query parameters)"""
    return boto3.client(
        "s3",
        region_name=region_name,
        endpoint_url=endpoint_url,
        aws_access_key_id=aws_access_key_id,
        aws_secret_access_key=aws_secret_access_key,
        config=BotoConfig(signature_version="s3v4"),
    )


class BlobStorage:
    """S3-compatible document vault (one bucket = one container)"""

    def __init__(
        self,
        container: str = CONTAINER_NAME,
        client=None,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
    ):
        self.container = container
        self._client = client or build_s3_client(
            region_name=region_name,
            endpoint_url=endpoint_url,
            aws_access_key_id=aws_access_key_id,
            aws_secret_access_key=aws_secret_access_key,
        )
        logger.info("Blob storage initialized", container=container, endpoint=self._client.meta.endpoint_url)

    @classmethod
    def from_settings(cls, settings) -> "BlobStorage":
        return cls(
            container=settings.storage_container,
            region_name=settings.aws_region,
            endpoint_url=settings.s3_endpoint_url,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
        )

    def ensure_container(self) -> ContainerState:
        """Create the bucket unless it already exists; other provisioning errors propagate"""
        try:
            self._client.head_bucket(Bucket=self.container)
            logger.info("Storage container exists", container=self.container)
            return ContainerState.ALREADY_EXISTS
        except ClientError as e:
            if _error_code(e) not in ("404", "NoSuchBucket", "NotFound"):
                raise

        create_params = {"Bucket": self.container}
        region = self._client.meta.region_name
        if region and region != "us-east-1":
            create_params["CreateBucketConfiguration"] = {"LocationConstraint": region}

        try:
            self._client.create_bucket(**create_params)
        except ClientError as e:
            # Lost a create race with another process
            if _error_code(e) in ("BucketAlreadyOwnedByYou", "BucketAlreadyExists"):
                return ContainerState.ALREADY_EXISTS
            raise

        logger.info("Storage container created", container=self.container)
        return ContainerState.CREATED

    def check_connection(self) -> None:
        self._client.head_bucket(Bucket=self.container)

    def object_url(self, key: str) -> str:
        """Durable (unsigned) URL of an object"""
        endpoint = self._client.meta.endpoint_url.rstrip("/")
        return f"{endpoint}/{self.container}/{key}"

    def upload(self, patient_id: str, file_name: str, data: bytes, media_type: str) -> StoredBlob:
        """Write document bytes under a fresh unique key

        Args:
            patient_id: Owner of the document (validated, becomes the key prefix)
            file_name: Client-supplied name (sanitized before use)
            data: Full document bytes
            media_type: Declared MIME type, stored as Content-Type

        Returns:
            StoredBlob with key, durable URL and the sanitized name actually used
        """
        safe_patient_id = ensure_valid_patient_id(patient_id)
        safe_file_name = sanitize_file_name(file_name)
        key = build_blob_key(safe_patient_id, safe_file_name)

        try:
            self._client.put_object(
                Bucket=self.container,
                Key=key,
                Body=data,
                ContentType=media_type,
                ContentDisposition=f'inline; filename="{quote(safe_file_name)}"',
                Metadata={
                    "patient-id": safe_patient_id,
                    "original-filename": quote(file_name or ""),
                    "safe-filename": safe_file_name,
                    "uploaded-at": datetime.now(timezone.utc).isoformat(),
                },
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("Blob upload failed", key=key, error=str(e))
            raise StorageError(f"Failed to upload file: {e}") from e

        logger.info("Blob uploaded", key=key, size=len(data), media_type=media_type)
        return StoredBlob(key=key, url=self.object_url(key), safe_file_name=safe_file_name)

    def download(self, key_or_url: str) -> bytes:
        key = self._require_key(key_or_url)
        try:
            response = self._client.get_object(Bucket=self.container, Key=key)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as e:
            logger.error("Blob download failed", key=key, error=str(e))
            raise StorageError(f"Failed to download file: {e}") from e

    def list(self, patient_id: str) -> List[BlobEntry]:
        """List every object under the patient's prefix

        Each entry gets a time-limited URL when one can be minted, the direct URL otherwise.
        """
        safe_patient_id = ensure_valid_patient_id(patient_id)
        entries: List[BlobEntry] = []

        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.container, Prefix=f"{safe_patient_id}/"):
                for obj in page.get("Contents", []):
                    key = obj["Key"]
                    try:
                        url = self.mint_access_url(key)
                    except (StorageError, InvalidBlobKeyError):
                        url = self.object_url(key)
                    entries.append(
                        BlobEntry(name=key, size=obj.get("Size"), url=url, uploaded_at=obj.get("LastModified"))
                    )
        except (BotoCoreError, ClientError) as e:
            logger.error("Blob listing failed", patient_id=safe_patient_id, error=str(e))
            raise StorageError(f"Failed to list files: {e}") from e

        return entries

    def delete(self, key_or_url: str) -> None:
        key = self._require_key(key_or_url)
        try:
            self._client.delete_object(Bucket=self.container, Key=key)
        except (BotoCoreError, ClientError) as e:
            logger.error("Blob delete failed", key=key, error=str(e))
            raise StorageError(f"Failed to delete file: {e}") from e
        logger.info("Blob deleted", key=key)

    def mint_access_url(self, key_or_url: str, validity_hours: int = ACCESS_URL_VALIDITY_HOURS) -> str:
        """Signed read-only GET URL expiring validity_hours from now"""
        key = self._require_key(key_or_url)
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.container, "Key": key},
                ExpiresIn=int(validity_hours * 3600),
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to generate access URL: {e}") from e

    def _require_key(self, key_or_url: str) -> str:
        key = normalize_key(key_or_url, self.container)
        if not key:
            raise InvalidBlobKeyError("Invalid blob name or URL")
        return key
