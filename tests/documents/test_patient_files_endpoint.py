"""Integration Tests for GET /get-patient-files and GET /whoami

How: Documents seeded through the upload endpoint or the metadata store directly,
access-URL failures injected in the fake storage.
Run: pytest tests/documents/ -v
"""
import pytest

from clinidocs.governance import audit_logger as audit
from clinidocs.governance.auth import AuthenticatedUser

PATIENT = AuthenticatedUser(user_id="oid-patient-1", email="pat@example.org", linked_patient_id="p-001")


@pytest.fixture
def seed(services):
    """Insert n document rows for p-001; returns the records in insertion order"""
    def _seed(n, **overrides):
        store = services.metadata_store
        store.get_or_create_user(PATIENT)
        records = []
        for i in range(n):
            values = {
                "patient_id": "p-001",
                "user_id": PATIENT.user_id,
                "file_name": f"doc{i}.pdf",
                "file_type": "application/pdf",
                "file_size": 100 + i,
                "blob_url": f"https://storage.test/medical-documents/p-001/{i}-doc{i}.pdf",
                "blob_path": f"p-001/{i}-doc{i}.pdf",
            }
            values.update(overrides)
            records.append(store.insert_document(**values))
        return records
    return _seed


def list_files(client, headers, patient_id="p-001"):
    return client.get("/get-patient-files", params={"patientId": patient_id}, headers=headers)


def test_upload_then_list_round_trip(client, patient_headers):
    upload = client.post(
        "/upload-file",
        data={"patientId": "p-001"},
        files=[("files", ("Lab Results.pdf", b"%PDF results", "application/pdf"))],
        headers=patient_headers,
    )
    assert upload.status_code == 200
    uploaded = upload.json()["files"][0]

    response = list_files(client, patient_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["patientId"] == "p-001"
    assert body["count"] == 1
    [listed] = body["files"]
    assert listed["name"] == uploaded["filename"] == "Lab_Results.pdf"
    assert listed["size"] == uploaded["size"]
    assert listed["blobPath"] == uploaded["blobName"]
    assert listed["uploadedBy"] == "oid-patient-1"
    assert listed["url"].endswith("?se=24h&sig=test")
    assert "uploadedAt" in listed
    assert "warnings" not in body


def test_newest_first(client, patient_headers, seed):
    records = seed(3)
    body = list_files(client, patient_headers).json()
    assert [f["id"] for f in body["files"]] == [r.id for r in reversed(records)]


def test_access_url_failure_falls_back(client, services, storage, patient_headers, seed):
    records = seed(5)
    storage.fail_mint_for.add(records[2].blob_path)

    response = list_files(client, patient_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 5
    assert body["warnings"] == {"sasGenerationFailedFor": [records[2].id]}

    by_id = {f["id"]: f for f in body["files"]}
    assert by_id[records[2].id]["url"] == records[2].blob_url
    assert all(by_id[r.id]["url"].endswith("sig=test") for r in records if r is not records[2])

    [event] = services.audit_logger.list_events(action=audit.FILES_LIST_VIEWED)
    assert event["details"] == {"count": 5, "sas_failures": 1}


def test_url_minted_from_blob_url_when_no_path(client, patient_headers, seed):
    seed(1, blob_path=None)
    [listed] = list_files(client, patient_headers).json()["files"]

    assert listed["url"] == "https://storage.test/medical-documents/p-001/0-doc0.pdf?se=24h&sig=test"
    assert "blobPath" not in listed


def test_bounded_concurrency_keeps_order(make_client, patient_headers, seed):
    records = seed(6)
    client = make_client(access_url_concurrency=2)
    body = list_files(client, patient_headers).json()
    assert [f["id"] for f in body["files"]] == [r.id for r in reversed(records)]


def test_empty_list(client, services, patient_headers):
    response = list_files(client, patient_headers)

    assert response.status_code == 200
    assert response.json() == {"ok": True, "patientId": "p-001", "files": [], "count": 0}
    [event] = services.audit_logger.list_events(action=audit.FILES_LIST_VIEWED)
    assert event["details"] == {"count": 0}


def test_patient_id_is_trimmed(client, patient_headers):
    response = list_files(client, patient_headers, patient_id="  p-001  ")
    assert response.status_code == 200
    assert response.json()["patientId"] == "p-001"


@pytest.mark.parametrize(
    "patient_id, error",
    [
        (None, "Missing patientId query parameter"),
        ("   ", "Missing patientId query parameter"),
        ("p 001", "Invalid patientId format"),
        ("p-001/..", "Invalid patientId format"),
    ],
)
def test_bad_patient_id(client, patient_headers, patient_id, error):
    params = {"patientId": patient_id} if patient_id is not None else {}
    response = client.get("/get-patient-files", params=params, headers=patient_headers)
    assert response.status_code == 400
    assert response.json() == {"error": error}


def test_missing_authorization(client):
    response = list_files(client, {})
    assert response.status_code == 401
    assert response.json() == {"error": "Missing Authorization header"}


def test_non_bearer_authorization(client):
    response = list_files(client, {"Authorization": "Basic dXNlcjpwYXNz"})
    assert response.status_code == 401
    assert response.json() == {"error": "Missing or invalid Authorization header"}


def test_patient_cannot_list_someone_else(client, services, patient_headers):
    response = list_files(client, patient_headers, patient_id="p-002")

    assert response.status_code == 403
    assert response.json() == {"error": "Unauthorized: You can only view your own files"}
    events = services.audit_logger.list_events()
    assert [e["action"] for e in events] == [audit.UNAUTHORIZED_FILE_LIST]
    assert events[0]["details"] == {"reason": "User attempted to list files for another user"}


def test_researcher_may_list_any_patient(client, make_headers, seed):
    seed(2)
    headers = make_headers(oid="oid-res-1", email="res@example.org", role="researcher")
    response = list_files(client, headers)
    assert response.status_code == 200
    assert response.json()["count"] == 2


def test_preflight_and_wrong_method(client):
    preflight = client.options("/get-patient-files")
    assert preflight.status_code == 204
    assert preflight.headers["access-control-allow-methods"] == "GET,OPTIONS"

    browser = client.options(
        "/get-patient-files",
        headers={"Origin": "https://portal.example", "Access-Control-Request-Method": "GET"},
    )
    assert browser.status_code == 204
    assert browser.headers["access-control-allow-methods"] == "GET,OPTIONS"

    whoami = client.options(
        "/whoami",
        headers={"Origin": "https://portal.example", "Access-Control-Request-Method": "GET"},
    )
    assert whoami.status_code == 204
    assert whoami.headers["access-control-allow-methods"] == "GET,OPTIONS"

    response = client.post("/get-patient-files")
    assert response.status_code == 405
    assert response.json() == {"error": "Method not allowed"}


def test_whoami_creates_user(client, services, patient_headers):
    response = client.get("/whoami", headers=patient_headers)

    assert response.status_code == 200
    user = response.json()["user"]
    assert user["userId"] == "oid-patient-1"
    assert user["azureOid"] == "oid-patient-1"
    assert user["email"] == "pat@example.org"
    assert user["firstName"] == "Pat"
    assert user["lastName"] == "Doe"
    assert user["role"] == "patient"
    assert isinstance(user["id"], int)

    again = client.get("/whoami", headers=patient_headers).json()["user"]
    assert again["id"] == user["id"]


def test_whoami_requires_token(client):
    assert client.get("/whoami").status_code == 401
    response = client.get("/whoami", headers={"Authorization": "Bearer a.b"})
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized: Invalid token format"}
