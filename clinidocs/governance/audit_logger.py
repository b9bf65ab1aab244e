"""Audit Logger - Non-repudiable trail

Self-Explanatory: Append-only record of uploads, list views and refused access attempts.
How: Insert-only rows in audit_logs, each signed with HMAC-SHA256.
A failed audit write is logged and never fails the request that caused it.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.hmac import HMAC
from sqlalchemy import insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from clinidocs.db import audit_logs
from clinidocs.utils.metrics import audit_logs_written_total

logger = structlog.get_logger()

# Actions
UNAUTHORIZED_FILE_UPLOAD = "UNAUTHORIZED_FILE_UPLOAD"
UNAUTHORIZED_FILE_LIST = "UNAUTHORIZED_FILE_LIST"
FILES_UPLOADED = "FILES_UPLOADED"
FILES_LIST_VIEWED = "FILES_LIST_VIEWED"


def _signing_message(user_id, action, resource_id, patient_id, details) -> bytes:
    details_json = json.dumps(details, sort_keys=True, default=str) if details is not None else ""
    return f"{user_id}|{action}|{resource_id or ''}|{patient_id or ''}|{details_json}".encode()


class AuditLogger:
    def __init__(self, engine: Engine, signing_key: bytes):
        self.engine = engine
        self._key = signing_key

    def sign(self, user_id, action, resource_id=None, patient_id=None, details=None) -> str:
        hmac = HMAC(self._key, hashes.SHA256())
        hmac.update(_signing_message(user_id, action, resource_id, patient_id, details))
        return hmac.finalize().hex()

    def verify(self, entry: Dict[str, Any]) -> bool:
        """Check a stored row against its signature (constant-time compare)"""
        hmac = HMAC(self._key, hashes.SHA256())
        hmac.update(
            _signing_message(
                entry["user_id"], entry["action"], entry.get("resource_id"),
                entry.get("patient_id"), entry.get("details"),
            )
        )
        try:
            hmac.verify(bytes.fromhex(entry["signature"]))
            return True
        except (InvalidSignature, ValueError):
            return False

    def log_event(
        self,
        user_id: str,
        action: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[str]:
        """Append one audit row

        Returns:
            The row signature, or None if the write failed
        """
        signature = self.sign(user_id, action, resource_id, patient_id, details)
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    insert(audit_logs).values(
                        user_id=user_id,
                        action=action,
                        resource_type=resource_type,
                        resource_id=resource_id,
                        patient_id=patient_id,
                        details=details,
                        ip_address=ip_address,
                        user_agent=(user_agent or "")[:500] or None,
                        signature=signature,
                        created_at=datetime.now(timezone.utc),
                    )
                )
        except SQLAlchemyError as e:
            logger.warning("Failed to log audit event", action=action, user_id=user_id, error=str(e))
            return None

        audit_logs_written_total.labels(action=action).inc()
        logger.info("Audit logged", action=action, user_id=user_id, patient_id=patient_id, signature=signature[:16])
        return signature

    def list_events(self, action: Optional[str] = None, patient_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query = select(audit_logs).order_by(audit_logs.c.id)
        if action:
            query = query.where(audit_logs.c.action == action)
        if patient_id:
            query = query.where(audit_logs.c.patient_id == patient_id)
        with self.engine.connect() as conn:
            return [dict(row._mapping) for row in conn.execute(query)]
