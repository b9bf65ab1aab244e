"""Document Metadata Store - one row per uploaded document, users upserted on sight

How: SQLAlchemy Core on the shared engine; rows are inserted, never updated.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import insert, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from clinidocs.config import CONTAINER_NAME
from clinidocs.db import patient_documents, users
from clinidocs.governance.auth import AuthenticatedUser

logger = structlog.get_logger()


class DocumentRecord(BaseModel):
    id: int
    patient_id: str
    user_id: str
    file_name: str
    file_type: Optional[str] = None
    file_size: Optional[int] = None
    blob_url: Optional[str] = None
    blob_path: Optional[str] = None
    blob_container: Optional[str] = None
    uploaded_by_user_id: Optional[str] = None
    uploaded_at: datetime
    created_at: Optional[datetime] = None


class MetadataStore:
    def __init__(self, engine: Engine, container: str = CONTAINER_NAME):
        self.engine = engine
        self.container = container

    def check_connection(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def get_or_create_user(self, user: AuthenticatedUser) -> Dict[str, Any]:
        """Return the users row for this identity, inserting it on first sight"""
        existing = self._find_user(user.user_id)
        if existing:
            return existing

        try:
            with self.engine.begin() as conn:
                conn.execute(
                    insert(users).values(
                        user_id=user.user_id,
                        azure_oid=user.oid or None,
                        email=user.email,
                        first_name=user.first_name,
                        last_name=user.last_name,
                        role=user.role,
                    )
                )
        except IntegrityError:
            # Concurrent first request for the same user already inserted it
            logger.info("User created concurrently", user_id=user.user_id)
        else:
            logger.info("User created", user_id=user.user_id, role=user.role)

        return self._find_user(user.user_id)

    def _find_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self.engine.connect() as conn:
            row = conn.execute(select(users).where(users.c.user_id == user_id)).first()
        return dict(row._mapping) if row else None

    def insert_document(
        self,
        patient_id: str,
        user_id: str,
        file_name: str,
        file_type: str,
        file_size: int,
        blob_url: str,
        blob_path: str,
    ) -> DocumentRecord:
        values = {
            "patient_id": patient_id,
            "user_id": user_id,
            "file_name": file_name,
            "file_type": file_type,
            "file_size": file_size,
            "blob_url": blob_url,
            "blob_path": blob_path,
            "blob_container": self.container,
            "uploaded_by_user_id": user_id,
            "uploaded_at": datetime.now(timezone.utc),
        }
        with self.engine.begin() as conn:
            result = conn.execute(insert(patient_documents).values(**values))
            document_id = result.inserted_primary_key[0]

        logger.info("Document recorded", document_id=document_id, patient_id=patient_id, blob_path=blob_path)
        return DocumentRecord(id=document_id, **values)

    def list_documents(self, patient_id: str) -> List[DocumentRecord]:
        """All documents for a patient, most recent first"""
        query = (
            select(patient_documents)
            .where(patient_documents.c.patient_id == patient_id)
            .order_by(patient_documents.c.uploaded_at.desc(), patient_documents.c.id.desc())
        )
        with self.engine.connect() as conn:
            return [DocumentRecord(**row._mapping) for row in conn.execute(query)]
