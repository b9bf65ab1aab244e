"""Service Container - adapters built once per process

How: create_app() builds a ServiceContainer at startup (or takes one from tests)
and keeps it on app.state; routes pull it in with Depends(get_services).
"""

import secrets
from typing import Optional

import structlog
from fastapi import Request
from sqlalchemy.engine import Engine

from clinidocs.config import Settings
from clinidocs.db import build_engine
from clinidocs.documents.metadata_store import MetadataStore
from clinidocs.documents.storage_backend import BlobStorage
from clinidocs.governance.audit_logger import AuditLogger
from clinidocs.governance.auth import AuthResolver

logger = structlog.get_logger()


class ServiceContainer:
    def __init__(
        self,
        settings: Settings,
        engine: Engine,
        storage: BlobStorage,
        metadata_store: MetadataStore,
        audit_logger: AuditLogger,
        auth_resolver: AuthResolver,
    ):
        self.settings = settings
        self.engine = engine
        self.storage = storage
        self.metadata_store = metadata_store
        self.audit_logger = audit_logger
        self.auth_resolver = auth_resolver


def audit_key_from_settings(settings: Settings) -> bytes:
    if settings.audit_signing_key:
        return settings.audit_signing_key.encode()
    logger.warning("AUDIT_SIGNING_KEY not set, using an ephemeral per-process key")
    return secrets.token_bytes(32)


def build_services(settings: Settings, engine: Optional[Engine] = None,
                   storage: Optional[BlobStorage] = None) -> ServiceContainer:
    engine = engine or build_engine(settings.database_url)
    storage = storage or BlobStorage.from_settings(settings)
    return ServiceContainer(
        settings=settings,
        engine=engine,
        storage=storage,
        metadata_store=MetadataStore(engine, container=settings.storage_container),
        audit_logger=AuditLogger(engine, audit_key_from_settings(settings)),
        auth_resolver=AuthResolver.from_settings(settings),
    )


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services
