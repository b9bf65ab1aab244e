"""Database - tables for users, patient documents and the audit trail

How: SQLAlchemy Core tables on one MetaData; Postgres in prod, SQLite for local/tests.
"""

import structlog
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    false,
    func,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

logger = structlog.get_logger()

metadata_obj = MetaData()

users = Table(
    "users",
    metadata_obj,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(255), unique=True, nullable=False),
    Column("azure_oid", String(255)),
    Column("email", String(255), nullable=False),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("role", String(50), nullable=False, server_default="patient"),
    Column("verified", Boolean, server_default=false()),
    Column("created_at", DateTime(timezone=True), server_default=func.current_timestamp()),
    Column("updated_at", DateTime(timezone=True), server_default=func.current_timestamp()),
)
Index("idx_users_email", users.c.email)
Index("idx_users_role", users.c.role)

patient_documents = Table(
    "patient_documents",
    metadata_obj,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("patient_id", String(255), nullable=False),
    Column("user_id", String(255), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False),
    Column("file_name", String(500), nullable=False),
    Column("file_type", String(50)),
    Column("file_size", Integer),
    Column("blob_url", String(2048)),
    Column("blob_path", String(1024)),
    Column("blob_container", String(100)),
    Column("uploaded_by_user_id", String(255), ForeignKey("users.user_id")),
    Column("uploaded_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.current_timestamp()),
)
Index("idx_patient_documents_patient_id", patient_documents.c.patient_id)
Index("idx_patient_documents_uploaded_at", patient_documents.c.uploaded_at)

audit_logs = Table(
    "audit_logs",
    metadata_obj,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(255), nullable=False),
    Column("action", String(100), nullable=False),
    Column("resource_type", String(50)),
    Column("resource_id", String(255)),
    Column("patient_id", String(255)),
    Column("details", JSON),
    Column("ip_address", String(45)),
    Column("user_agent", String(500)),
    Column("signature", String(64), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
Index("idx_audit_logs_action", audit_logs.c.action)
Index("idx_audit_logs_patient_id", audit_logs.c.patient_id)


def build_engine(database_url: str) -> Engine:
    """Create the engine; in-memory SQLite shares one connection across threads"""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_size=5, pool_pre_ping=True)


def init_schema(engine: Engine) -> None:
    metadata_obj.create_all(engine)
    logger.info("Database schema initialized", tables=sorted(metadata_obj.tables))
