"""Tests for the signed audit trail

How: Real AuditLogger on in-memory SQLite; failure path with a mocked engine.
Run: pytest tests/governance/ -v
"""
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from clinidocs.governance import audit_logger as audit
from clinidocs.governance.audit_logger import AuditLogger


def test_log_event_writes_signed_row(engine):
    logger = AuditLogger(engine, b"k1")
    signature = logger.log_event(
        "user-1",
        audit.FILES_UPLOADED,
        resource_type="patient_document",
        patient_id="p-001",
        details={"file_count": 2, "total_size": 300},
        ip_address="198.51.100.7",
        user_agent="portal",
    )

    [entry] = logger.list_events()
    assert entry["signature"] == signature
    assert len(signature) == 64
    assert entry["details"] == {"file_count": 2, "total_size": 300}
    assert entry["ip_address"] == "198.51.100.7"
    assert entry["created_at"] is not None
    assert logger.verify(entry)


def test_tampered_row_fails_verification(engine):
    logger = AuditLogger(engine, b"k1")
    logger.log_event("user-1", audit.FILES_LIST_VIEWED, patient_id="p-001", details={"count": 3})
    [entry] = logger.list_events()

    assert not logger.verify({**entry, "details": {"count": 4}})
    assert not logger.verify({**entry, "patient_id": "p-002"})
    assert not logger.verify({**entry, "signature": "zz"})
    assert not AuditLogger(engine, b"other-key").verify(entry)


def test_signature_ignores_details_key_order(engine):
    logger = AuditLogger(engine, b"k1")
    first = logger.sign("u", audit.FILES_UPLOADED, details={"a": 1, "b": 2})
    second = logger.sign("u", audit.FILES_UPLOADED, details={"b": 2, "a": 1})
    assert first == second


def test_list_events_filters(engine):
    logger = AuditLogger(engine, b"k1")
    logger.log_event("u1", audit.UNAUTHORIZED_FILE_LIST, patient_id="p-002")
    logger.log_event("u1", audit.FILES_LIST_VIEWED, patient_id="p-001", details={"count": 0})
    logger.log_event("u2", audit.FILES_LIST_VIEWED, patient_id="p-002", details={"count": 1})

    assert len(logger.list_events(action=audit.FILES_LIST_VIEWED)) == 2
    assert [e["user_id"] for e in logger.list_events(patient_id="p-002")] == ["u1", "u2"]
    assert len(logger.list_events(action=audit.FILES_LIST_VIEWED, patient_id="p-002")) == 1


def test_long_user_agent_truncated(engine):
    logger = AuditLogger(engine, b"k1")
    logger.log_event("u1", audit.FILES_LIST_VIEWED, user_agent="x" * 900)
    [entry] = logger.list_events()
    assert len(entry["user_agent"]) == 500


def test_write_failure_is_swallowed(mocker):
    engine = mocker.Mock()
    engine.begin.side_effect = OperationalError("INSERT", {}, Exception("database is locked"))
    logger = AuditLogger(engine, b"k1")

    assert logger.log_event("u1", audit.FILES_UPLOADED, details={"file_count": 1}) is None


def test_write_failure_does_not_break_upload(client, services, patient_headers, mocker):
    mocker.patch.object(services.audit_logger, "engine", mocker.Mock(**{"begin.side_effect": SQLAlchemyError("down")}))
    response = client.post(
        "/upload-file",
        data={"patientId": "p-001"},
        files=[("files", ("summary.pdf", b"%PDF", "application/pdf"))],
        headers=patient_headers,
    )
    assert response.status_code == 200
