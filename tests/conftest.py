"""Shared fixtures - in-memory SQLite, fake object storage, app client, bearer tokens

Run: pytest tests/ -v
"""
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from clinidocs.config import CONTAINER_NAME, Settings
from clinidocs.db import build_engine, init_schema
from clinidocs.documents.storage_backend import (
    ContainerState,
    InvalidBlobKeyError,
    StorageError,
    StoredBlob,
    build_blob_key,
    ensure_valid_patient_id,
    normalize_key,
    sanitize_file_name,
)
from clinidocs.main import create_app
from clinidocs.services import build_services

PATIENT_ID = "p-001"
OTHER_PATIENT_ID = "p-002"
PDF_BYTES = b"%PDF-1.4 fake clinical summary"
PNG_BYTES = b"\x89PNG\r\n\x1a\nfake scan"


class FakeBlobStorage:
    """Dict-backed stand-in for BlobStorage with failure injection"""

    def __init__(self, container: str = CONTAINER_NAME):
        self.container = container
        self.objects: Dict[str, bytes] = {}
        self.deleted = []
        self.fail_uploads_for = set()  # original filenames
        self.fail_mint_for = set()  # keys
        self.reachable = True

    def ensure_container(self):
        return ContainerState.ALREADY_EXISTS

    def check_connection(self):
        if not self.reachable:
            raise StorageError("storage unreachable")

    def object_url(self, key):
        return f"https://storage.test/{self.container}/{key}"

    def upload(self, patient_id, file_name, data, media_type):
        safe_patient_id = ensure_valid_patient_id(patient_id)
        if file_name in self.fail_uploads_for:
            raise StorageError("Failed to upload file: injected failure")
        safe_file_name = sanitize_file_name(file_name)
        key = build_blob_key(safe_patient_id, safe_file_name)
        self.objects[key] = data
        return StoredBlob(key=key, url=self.object_url(key), safe_file_name=safe_file_name)

    def download(self, key_or_url):
        return self.objects[self._key(key_or_url)]

    def delete(self, key_or_url):
        key = self._key(key_or_url)
        self.objects.pop(key, None)
        self.deleted.append(key)

    def mint_access_url(self, key_or_url, validity_hours=24):
        key = self._key(key_or_url)
        if key in self.fail_mint_for:
            raise StorageError("Failed to generate access URL: injected failure")
        return f"{self.object_url(key)}?se={validity_hours}h&sig=test"

    def _key(self, key_or_url):
        key = normalize_key(key_or_url, self.container)
        if not key:
            raise InvalidBlobKeyError("Invalid blob name or URL")
        return key


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", audit_signing_key="test-audit-key")


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def storage():
    return FakeBlobStorage()


@pytest.fixture
def services(settings, engine, storage):
    return build_services(settings, engine=engine, storage=storage)


@pytest.fixture
def client(services):
    return TestClient(create_app(services=services))


def bearer(**claims) -> str:
    return "Bearer " + jwt.encode(claims, "test-secret", algorithm="HS256")


@pytest.fixture
def patient_headers():
    """Patient p-001 acting on their own record"""
    token = bearer(oid="oid-patient-1", email="pat@example.org", role="patient", patient_id=PATIENT_ID,
                   given_name="Pat", family_name="Doe")
    return {"Authorization": token}


@pytest.fixture
def provider_headers():
    token = bearer(oid="oid-provider-1", email="doc@example.org", role="provider")
    return {"Authorization": token}


@pytest.fixture
def make_headers():
    """Build Authorization headers from arbitrary token claims"""
    def _make(**claims):
        return {"Authorization": bearer(**claims)}
    return _make


@pytest.fixture
def make_client(engine, storage):
    """App client with Settings overrides (limits, concurrency...)"""
    def _make(**overrides):
        custom = Settings(database_url="sqlite://", audit_signing_key="test-audit-key", **overrides)
        return TestClient(create_app(services=build_services(custom, engine=engine, storage=storage)))
    return _make
