"""Service Configuration - env / .env driven settings

Self-Explanatory: One Settings object per process, read from the environment.
How: starlette Config for lookup and casting, pydantic model for the typed result.
"""

from typing import List, Optional

from pydantic import BaseModel
from starlette.config import Config
from starlette.datastructures import CommaSeparatedStrings

MAX_FILE_BYTES = 20 * 1024 * 1024  # 20 MiB per file
MAX_FILES_PER_REQUEST = 5
ALLOWED_MEDIA_TYPES = frozenset({"application/pdf", "image/png", "image/jpeg"})
PATIENT_ID_PATTERN = r"^[A-Za-z0-9._-]+$"
CONTAINER_NAME = "medical-documents"
ACCESS_URL_VALIDITY_HOURS = 24

config = Config(".env")


class Settings(BaseModel):
    database_url: str = "sqlite:///./clinidocs.db"

    # Object storage (S3 compatible)
    storage_container: str = CONTAINER_NAME
    aws_region: Optional[str] = None
    s3_endpoint_url: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None

    # Upload limits
    max_file_bytes: int = MAX_FILE_BYTES
    max_files_per_request: int = MAX_FILES_PER_REQUEST

    # Time-limited access URLs
    access_url_validity_hours: int = ACCESS_URL_VALIDITY_HOURS
    access_url_concurrency: int = 8

    audit_signing_key: Optional[str] = None

    # Bearer token handling
    auth_verify_signature: bool = False
    auth_shared_secret: Optional[str] = None
    auth_jwks_url: Optional[str] = None
    auth_tenant_id: Optional[str] = None
    auth_audience: Optional[str] = None
    auth_issuer: Optional[str] = None
    auth_algorithms: List[str] = ["RS256"]

    cors_allow_origins: List[str] = ["*"]
    log_level: str = "INFO"


def load_settings(source: Config = config) -> Settings:
    """Build Settings from environment variables (and .env if present)"""
    return Settings(
        database_url=source("DATABASE_URL", default="sqlite:///./clinidocs.db"),
        storage_container=source("STORAGE_CONTAINER", default=CONTAINER_NAME),
        aws_region=source("AWS_REGION", default=None),
        s3_endpoint_url=source("S3_ENDPOINT_URL", default=None),
        aws_access_key_id=source("AWS_ACCESS_KEY_ID", default=None),
        aws_secret_access_key=source("AWS_SECRET_ACCESS_KEY", default=None),
        max_file_bytes=source("MAX_FILE_BYTES", cast=int, default=MAX_FILE_BYTES),
        max_files_per_request=source("MAX_FILES_PER_REQUEST", cast=int, default=MAX_FILES_PER_REQUEST),
        access_url_validity_hours=source(
            "ACCESS_URL_VALIDITY_HOURS", cast=int, default=ACCESS_URL_VALIDITY_HOURS
        ),
        access_url_concurrency=source("ACCESS_URL_CONCURRENCY", cast=int, default=8),
        audit_signing_key=source("AUDIT_SIGNING_KEY", default=None),
        auth_verify_signature=source("AUTH_VERIFY_SIGNATURE", cast=bool, default=False),
        auth_shared_secret=source("AUTH_SHARED_SECRET", default=None),
        auth_jwks_url=source("AUTH_JWKS_URL", default=None),
        auth_tenant_id=source("AUTH_TENANT_ID", default=None),
        auth_audience=source("AUTH_AUDIENCE", default=None),
        auth_issuer=source("AUTH_ISSUER", default=None),
        auth_algorithms=list(source("AUTH_ALGORITHMS", cast=CommaSeparatedStrings, default="RS256")),
        cors_allow_origins=list(source("CORS_ALLOW_ORIGINS", cast=CommaSeparatedStrings, default="*")),
        log_level=source("LOG_LEVEL", default="INFO"),
    )
