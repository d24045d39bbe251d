# tests/test_api.py
from io import BytesIO

import httpx
from openpyxl import Workbook
from starlette.testclient import TestClient

from vehicle_intake.errors import ExtractionError, ServiceUnavailableError
from vehicle_intake.schemas import DocumentKind, VehicleFields
from vehicle_intake.spreadsheet import TEMPLATE_HEADERS

IMAGE = ("ruhsat.jpg", b"fake-image-bytes", "image/jpeg")


def start_record(client: TestClient, branch="Istanbul", headers=None):
    r = client.put("/session/branch", json={"branch": branch}, headers=headers)
    assert r.status_code == 200, r.text
    r = client.post("/session/record-choice", json={"choice": "new"}, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()


def scan_registration(client: TestClient, fake_extractor, chassis="CH1"):
    fake_extractor.results[DocumentKind.REGISTRATION] = VehicleFields(
        chassis_number=chassis, brand="FORD", owner="AHMET YILMAZ"
    )
    r = client.post("/session/documents/registration", files={"file": IMAGE})
    assert r.status_code == 200, r.text
    r = client.post("/session/scan/registration")
    assert r.status_code == 200, r.text
    return r.json()


def workbook_bytes(rows):
    wb = Workbook()
    for row in rows:
        wb.active.append(row)
    buffer = BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def test_health(client: TestClient):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_schema_fields(client: TestClient):
    fields = {f["field_key"]: f for f in client.get("/schema/fields").json()["fields"]}
    assert fields["chassis_number"]["canonical_source"] == "registration"
    assert fields["brand"]["overridable"] is True


def test_new_session_starts_at_branch_selection(client: TestClient):
    data = client.get("/session").json()
    assert data["step"] == "select-branch"
    assert data["branch"] is None
    assert data["scanning"] is False


def test_invalid_session_id(client: TestClient):
    r = client.get("/session", headers={"X-Session-Id": "../etc"})
    assert r.status_code == 400


def test_sessions_are_isolated(client: TestClient):
    start_record(client, "Istanbul", headers={"X-Session-Id": "desk-1"})
    assert client.get("/session", headers={"X-Session-Id": "desk-2"}).json()["branch"] is None


def test_navigation_redirects_to_earliest_unmet_gate(client: TestClient):
    r = client.get("/session/steps/label")
    assert r.json()["step"] == "select-branch"
    assert r.json()["requested"] == "label"

    start_record(client)
    assert client.get("/session/steps/work-order").json()["step"] == "registration"


def test_registration_scan_fills_record(client: TestClient, fake_extractor):
    start_record(client)
    data = scan_registration(client, fake_extractor)

    assert data["result"]["updates"]["chassis_number"] == "CH1"
    assert data["record"]["chassis_number"] == "CH1"
    assert data["record"]["registration_document"] == {
        "kind": "descriptor",
        "name": "ruhsat.jpg",
        "type": "image/jpeg",
        "size": 16,
    }


def test_scan_uses_unsaved_form_values(client: TestClient, fake_extractor, fake_policy):
    start_record(client)
    client.post("/session/documents/registration", files={"file": IMAGE})
    fake_extractor.results[DocumentKind.REGISTRATION] = VehicleFields(brand="FORD")

    client.post("/session/scan/registration", json={"brand": "Ford Otosan"})

    _, currents = fake_policy.calls[0]
    assert currents.brand == "Ford Otosan"


def test_label_scan_reports_chassis_conflict(client: TestClient, fake_extractor):
    start_record(client)
    scan_registration(client, fake_extractor)
    fake_extractor.results[DocumentKind.LABEL] = VehicleFields(chassis_number="CH2", version="TFB7R")
    client.post("/session/documents/label", files={"file": ("etiket.png", b"png", "image/png")})

    data = client.post("/session/scan/label").json()

    assert data["result"]["conflicts"] == ["chassis_number"]
    assert data["record"]["chassis_number"] == "CH1"
    assert data["record"]["version"] == "TFB7R"
    assert data["step"] == "label"


def test_scan_without_document(client: TestClient):
    start_record(client)
    assert client.post("/session/scan/registration").status_code == 400


def test_scan_service_unavailable(client: TestClient, fake_extractor):
    start_record(client)
    client.post("/session/documents/registration", files={"file": IMAGE})
    fake_extractor.error = ServiceUnavailableError("overloaded")

    r = client.post("/session/scan/registration")

    assert r.status_code == 503
    assert client.get("/session").json()["record"]["chassis_number"] is None


def test_scan_extraction_failure(client: TestClient, fake_extractor):
    start_record(client)
    client.post("/session/documents/registration", files={"file": IMAGE})
    fake_extractor.error = ExtractionError("unreadable")
    assert client.post("/session/scan/registration").status_code == 502


def test_scan_unexpected_backend_failure_is_a_bad_gateway(client: TestClient, fake_extractor):
    start_record(client)
    client.post("/session/documents/registration", files={"file": IMAGE})
    fake_extractor.error = httpx.ConnectTimeout("timed out")

    r = client.post("/session/scan/registration")

    assert r.status_code == 502
    data = client.get("/session").json()
    assert data["record"]["chassis_number"] is None
    assert data["scanning"] is False


def test_empty_upload_rejected(client: TestClient):
    start_record(client)
    r = client.post("/session/documents/registration", files={"file": ("empty.jpg", b"", "image/jpeg")})
    assert r.status_code == 400


def test_branch_locked_while_record_in_progress(client: TestClient, fake_extractor):
    start_record(client)
    scan_registration(client, fake_extractor)

    r = client.put("/session/branch", json={"branch": "Ankara"})
    assert r.status_code == 409

    client.post("/session/reset")
    assert client.put("/session/branch", json={"branch": "Ankara"}).status_code == 200


def test_previews(client: TestClient):
    start_record(client)
    token = client.post("/session/documents/registration", files={"file": IMAGE}).json()["token"]

    r = client.get(f"/session/previews/{token}")
    assert r.status_code == 200
    assert r.content == b"fake-image-bytes"
    assert r.headers["content-type"] == "image/jpeg"

    assert client.delete(f"/session/previews/{token}").status_code == 200
    assert client.get(f"/session/previews/{token}").status_code == 404
    assert client.delete(f"/session/previews/{token}").status_code == 404


def test_media_upload(client: TestClient):
    start_record(client)
    r = client.post(
        "/session/media/photo",
        files=[("files", ("p1.jpg", b"1", "image/jpeg")), ("files", ("p2.jpg", b"22", "image/jpeg"))],
    )
    assert r.status_code == 200
    data = r.json()
    assert len(data["tokens"]) == 2
    assert [p["name"] for p in data["record"]["additional_photos"]] == ["p1.jpg", "p2.jpg"]

    assert client.delete("/session/previews").json()["released"] == 2


def test_step_forms_are_namespaced(client: TestClient, fake_extractor):
    start_record(client)
    scan_registration(client, fake_extractor)

    r = client.post("/session/steps/inspection", json={"inspection": {"customer_name": "ACME"}})
    assert r.json()["step"] == "work-order"
    r = client.post(
        "/session/steps/work-order",
        json={"work_order": {"project_name": "Kasa", "offer_items": [{"quantity": 2, "unit_price": 10.5}]}},
    )
    assert r.json()["step"] == "final-check"

    record = client.get("/session").json()["record"]
    assert record["inspection"]["customer_name"] == "ACME"
    assert record["inspection"]["q1_suitable"] == "positive"
    assert record["work_order"]["offer_items"][0]["total_price"] == 21.0
    assert record["final_check"]["check1_exposed_parts_interim"] is True


def test_patch_record_and_back(client: TestClient, fake_extractor):
    start_record(client)
    scan_registration(client, fake_extractor)
    client.get("/session/steps/media")

    r = client.patch("/session/record", json={"plate_number": "34 ABC 123"})
    assert r.json()["record"]["plate_number"] == "34 ABC 123"
    assert client.post("/session/back").json()["step"] == "label"


def test_full_flow_commit_and_archive(client: TestClient, fake_extractor):
    start_record(client)
    scan_registration(client, fake_extractor)
    client.get("/session/steps/summary")

    r = client.post("/session/commit")
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["committed"]["file_name"] == "Istanbul/CH1"
    assert data["step"] == "registration"
    assert data["branch"] == "Istanbul"
    assert data["archive_count"] == 1
    assert data["record"]["chassis_number"] is None

    listing = client.get("/archive", params={"q": "ahmet"}).json()
    assert listing["count"] == 1
    entry = client.get("/archive/Istanbul/CH1").json()
    assert entry["brand"] == "FORD"
    assert entry["registration_document"]["kind"] == "descriptor"
    assert client.get("/archive/Istanbul/CH9").status_code == 404


def test_edit_archived_record(client: TestClient, fake_extractor):
    start_record(client)
    scan_registration(client, fake_extractor)
    client.post("/session/commit")

    r = client.post("/session/record-choice", json={"choice": "archived", "key": "Istanbul/CH1"})
    assert r.json()["editing_key"] == "Istanbul/CH1"
    assert r.json()["record"]["brand"] == "FORD"
    client.post("/session/steps/registration", json={"brand": "FORD OTOSAN"})

    committed = client.post("/session/commit").json()["committed"]

    assert committed["file_name"] == "Istanbul/CH1"
    entries = client.get("/archive").json()["entries"]
    assert [e["brand"] for e in entries] == ["FORD OTOSAN"]


def test_record_choice_unknown_archive_key(client: TestClient):
    client.put("/session/branch", json={"branch": "Istanbul"})
    r = client.post("/session/record-choice", json={"choice": "archived", "key": "Istanbul/none"})
    assert r.status_code == 404


def test_commit_without_chassis_redirects(client: TestClient):
    start_record(client)
    data = client.post("/session/commit").json()
    assert data["committed"] is None
    assert data["step"] == "registration"


def test_type_approval_upload_lookup_and_conformity(client: TestClient, fake_extractor):
    workbook = workbook_bytes(
        [
            TEMPLATE_HEADERS,
            ["Istanbul", "Kasa", "AT", "2", "CXE1A", "TFB7R", "e1*2007/46*0001*00"],
            ["Istanbul", "Kasa", "AT", "2", "CXE1A", "TFB7R", None],
        ]
    )
    r = client.post(
        "/type-approvals/upload",
        files={"file": ("tip-onay.xlsx", workbook, "application/octet-stream")},
    )
    assert r.status_code == 200, r.text
    assert r.json() == {"inserted": 1, "skipped_rows": [3]}

    assert client.get("/type-approvals").json()["count"] == 1
    r = client.get("/type-approvals/lookup", params={"approval_number": "E1*2007", "variant": "cxe1a"})
    assert r.json()["count"] == 1
    assert client.get("/type-approvals/lookup", params={"approval_number": "*"}).status_code == 400

    start_record(client)
    assert client.get("/session/conformity").json()["status"] == "pending"
    fake_extractor.results[DocumentKind.REGISTRATION] = VehicleFields(
        chassis_number="CH1",
        type_approval_number="e1200746000100",
        type_and_variant="CXE1A",
        version="TFB7R",
    )
    client.post("/session/documents/registration", files={"file": IMAGE})
    client.post("/session/scan/registration")

    data = client.get("/session/steps/summary").json()
    assert data["conformity"]["status"] == "match"
    assert data["record"]["summary"]["type_approval_type"] == "AT"
    assert data["record"]["summary"]["type_approval_level"] == "2"


def test_type_approval_upload_rejects_header_only_workbook(client: TestClient):
    r = client.post(
        "/type-approvals/upload",
        files={"file": ("t.xlsx", workbook_bytes([TEMPLATE_HEADERS]), "application/octet-stream")},
    )
    assert r.status_code == 400


def test_type_approval_json_insert(client: TestClient):
    r = client.post("/type-approvals", json=[{"branch_name": "Ankara", "approval_number": "e4*01"}])
    assert r.json() == {"inserted": 1}
    assert client.get("/type-approvals").json()["records"][0]["approval_number"] == "e401"


def test_type_approval_template(client: TestClient):
    r = client.get("/type-approvals/template")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("application/vnd.openxmlformats")
    assert r.content[:2] == b"PK"


def test_type_approval_edit_and_delete(client: TestClient):
    client.post("/type-approvals", json=[{"branch_name": "Ankara", "variant": "A1", "approval_number": "e4*01"}])
    record_id = client.get("/type-approvals").json()["records"][0]["id"]

    r = client.put(f"/type-approvals/{record_id}", json={"variant": "B2"})
    assert r.status_code == 200, r.text
    assert r.json()["variant"] == "B2"
    assert r.json()["branch_name"] == "Ankara"
    assert client.put(f"/type-approvals/{record_id}", json={"approval_number": ""}).status_code == 400
    assert client.put("/type-approvals/missing", json={"variant": "C"}).status_code == 404

    assert client.delete(f"/type-approvals/{record_id}").json() == {"id": record_id, "deleted": True}
    assert client.get("/type-approvals").json()["count"] == 0
    assert client.delete(f"/type-approvals/{record_id}").status_code == 404
