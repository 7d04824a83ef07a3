from config import PUBLIC_STORAGE_PREFIX, STORAGE_DIR
from conftest import signup_and_login
from main import app, get_blob_store
from record_store import BlobStore

NEW_PATIENT = {
    "name": "Mary Jane Watson",
    "age": 68,
    "gender": "Female",
    "email": "mary@example.com",
    "phone": "555-0199",
}


def create_patient(client, headers, **overrides):
    response = client.post("/doctor/patients", json={**NEW_PATIENT, **overrides}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def save_report(client, headers, patient_id, file_name="scan.nii.gz", text="Findings: normal"):
    return client.post(
        f"/doctor/patients/{patient_id}/reports",
        files={"file": (file_name, b"nifti-bytes", "application/octet-stream")},
        data={"report_text": text, "predicted_class": "CN", "probability": "0.92"},
        headers=headers,
    )


# ------------------------
# Auth and session
# ------------------------
def test_signup_rejects_mismatched_passwords(client):
    response = client.post("/signup", data={
        "email": "a@b.test", "password": "one", "confirm_password": "two", "user_type": "doctor",
    })
    assert response.status_code == 400
    assert response.json()["detail"] == "Passwords do not match"


def test_patient_cannot_sign_up_before_doctor_adds_them(client):
    response = client.post("/signup", data={
        "email": "stranger@example.com", "password": "pw", "confirm_password": "pw", "user_type": "patient",
    })
    assert response.status_code == 400
    assert "added by their doctor" in response.json()["detail"]


def test_doctor_routes_need_completed_profile(client):
    headers = signup_and_login(client, "new@clinic.test")
    assert client.get("/me", headers=headers).json()["first_login"] is True
    assert client.get("/doctor/dashboard", headers=headers).status_code == 403


def test_fill_info_only_once(client, doctor_headers):
    response = client.post(
        "/fill-info/doctor",
        data={"name": "Someone Else", "specialization": "Neurology"},
        headers=doctor_headers,
    )
    assert response.status_code == 400


def test_dashboard_greets_doctor_by_first_name(client, doctor_headers):
    body = client.get("/doctor/dashboard", headers=doctor_headers).json()
    assert body["greeting"] == "Welcome, Dr. Gregory"


def test_logout_invalidates_token(client, doctor_headers):
    assert client.post("/logout", headers=doctor_headers).status_code == 200
    assert client.get("/me", headers=doctor_headers).status_code == 401


def test_requests_without_token_are_rejected(client):
    assert client.get("/doctor/patients").status_code == 401


# ------------------------
# Patient roster
# ------------------------
def test_patient_form_validation(client, doctor_headers):
    cases = [
        ({"name": "  "}, "Patient name is required"),
        ({"age": None}, "Patient age is required"),
        ({"age": 130}, "Please enter a valid age between 1 and 120"),
        ({"email": "not-an-email"}, "Please enter a valid email address"),
    ]
    for overrides, message in cases:
        response = client.post("/doctor/patients", json={**NEW_PATIENT, **overrides}, headers=doctor_headers)
        assert response.status_code == 400
        assert response.json()["detail"] == message
    assert client.get("/doctor/patients", headers=doctor_headers).json() == []


def test_roster_search_and_update(client, doctor_headers):
    mary = create_patient(client, doctor_headers)
    create_patient(client, doctor_headers, name="Peter Parker", email="peter@example.com", phone="555-0200")

    found = client.get("/doctor/patients", params={"search": "WATSON"}, headers=doctor_headers).json()
    assert [p["patient_id"] for p in found] == [mary["patient_id"]]
    by_phone = client.get("/doctor/patients", params={"search": "0200"}, headers=doctor_headers).json()
    assert [p["name"] for p in by_phone] == ["Peter Parker"]

    response = client.put(
        f"/doctor/patients/{mary['patient_id']}",
        json={**NEW_PATIENT, "age": 69},
        headers=doctor_headers,
    )
    assert response.status_code == 200
    assert response.json()["age"] == 69


def test_doctor_cannot_see_another_doctors_patient(client, doctor_headers):
    mary = create_patient(client, doctor_headers)
    other = signup_and_login(client, "wilson@clinic.test")
    client.post("/fill-info/doctor", data={"name": "James Wilson", "specialization": "Oncology"}, headers=other)

    assert client.get(f"/doctor/patients/{mary['patient_id']}", headers=other).status_code == 404
    assert client.delete(f"/doctor/patients/{mary['patient_id']}", headers=other).status_code == 404


# ------------------------
# Analysis, save and lists
# ------------------------
def test_analyze_returns_prediction_and_report_draft(client, doctor_headers, inference_client):
    mary = create_patient(client, doctor_headers)
    response = client.post(
        f"/doctor/patients/{mary['patient_id']}/analyze",
        files={"file": ("scan.nii", b"nifti-bytes", "application/octet-stream")},
        headers=doctor_headers,
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["predicted_class"] == "AD"
    assert body["heatmap_image"].startswith("data:image/png")
    assert "Mary Jane Watson" in body["report_text"]
    assert "Alzheimer's Disease" in body["report_text"]
    assert "87.00%" in body["report_text"]
    assert inference_client.calls == ["preprocess", "predict", "gradcam"]


def test_save_creates_linked_scan_and_report(client, doctor_headers):
    mary = create_patient(client, doctor_headers)

    response = save_report(client, doctor_headers, mary["patient_id"])

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["status"] == "success"
    assert body["failed_step"] is None

    scans = client.get(f"/doctor/patients/{mary['patient_id']}/scans", headers=doctor_headers).json()
    assert scans["total_items"] == 1
    assert scans["items"][0]["image_id"] == body["image_id"]
    assert scans["items"][0]["image_type"] == "NIfTI-GZ"
    assert scans["categories"] == ["all", "NIfTI-GZ"]

    reports = client.get(f"/doctor/patients/{mary['patient_id']}/reports", headers=doctor_headers).json()
    assert reports["total_items"] == 1
    assert reports["items"][0]["image_id"] == body["image_id"]
    assert reports["items"][0]["doctor_display_name"] == "G. House"


def test_save_with_empty_report_is_rejected(client, doctor_headers):
    mary = create_patient(client, doctor_headers)
    response = save_report(client, doctor_headers, mary["patient_id"], text="   ")
    assert response.status_code == 400
    scans = client.get(f"/doctor/patients/{mary['patient_id']}/scans", headers=doctor_headers).json()
    assert scans["total_items"] == 0


def test_scan_list_filters_and_reports_no_results(client, doctor_headers):
    mary = create_patient(client, doctor_headers)
    save_report(client, doctor_headers, mary["patient_id"], file_name="a.nii.gz")
    save_report(client, doctor_headers, mary["patient_id"], file_name="b.nii")
    url = f"/doctor/patients/{mary['patient_id']}/scans"

    gz = client.get(url, params={"image_type": "NIfTI-GZ"}, headers=doctor_headers).json()
    assert gz["total_filtered"] == 1
    assert gz["total_items"] == 2

    none = client.get(url, params={"search": "nothing-matches"}, headers=doctor_headers).json()
    assert none["no_results"] is True
    assert none["total_pages"] == 0

    bad = client.get(url, params={"sort_field": "bogus"}, headers=doctor_headers)
    assert bad.status_code == 400


def test_delete_scan_removes_its_reports(client, doctor_headers, records):
    mary = create_patient(client, doctor_headers)
    image_id = save_report(client, doctor_headers, mary["patient_id"]).json()["image_id"]

    assert client.delete(f"/doctor/scans/{image_id}", headers=doctor_headers).status_code == 200
    scans = client.get(f"/doctor/patients/{mary['patient_id']}/scans", headers=doctor_headers).json()
    assert scans["total_items"] == 0
    assert records.select("Reports", {"patient_id": mary["patient_id"]}) == []
    reports = client.get(f"/doctor/patients/{mary['patient_id']}/reports", headers=doctor_headers).json()
    assert reports["total_items"] == 0


def test_scan_with_unsafe_file_name_is_downloadable(client, doctor_headers):
    app.dependency_overrides[get_blob_store] = lambda: BlobStore(STORAGE_DIR, PUBLIC_STORAGE_PREFIX)
    mary = create_patient(client, doctor_headers)

    response = save_report(client, doctor_headers, mary["patient_id"], file_name="scan #2 final.nii")
    assert response.json()["status"] == "success"

    scan = client.get(f"/doctor/patients/{mary['patient_id']}/scans", headers=doctor_headers).json()["items"][0]
    assert scan["file_name"].endswith("_scan #2 final.nii")
    assert "#" not in scan["image_url"]

    download = client.get(scan["image_url"])
    assert download.status_code == 200
    assert download.content == b"nifti-bytes"


# ------------------------
# Patient surface
# ------------------------
def test_patient_sees_and_searches_own_reports(client, doctor_headers):
    mary = create_patient(client, doctor_headers)
    save_report(client, doctor_headers, mary["patient_id"])
    patient_headers = signup_and_login(client, NEW_PATIENT["email"], user_type="patient")

    reports = client.get("/patient/reports", headers=patient_headers).json()
    assert reports["total_items"] == 1

    by_doctor = client.get("/patient/reports", params={"search": "house"}, headers=patient_headers).json()
    assert by_doctor["total_filtered"] == 1
    other = client.get("/patient/reports", params={"search": "jones"}, headers=patient_headers).json()
    assert other["total_filtered"] == 0

    assert client.get("/doctor/patients", headers=patient_headers).status_code == 403


def test_patient_updates_name_and_phone_only(client, doctor_headers):
    create_patient(client, doctor_headers)
    patient_headers = signup_and_login(client, NEW_PATIENT["email"], user_type="patient")

    empty = client.patch("/patient/me", json={"name": " ", "phone": "1"}, headers=patient_headers)
    assert empty.status_code == 400

    response = client.patch("/patient/me", json={"name": "Mary Watson", "phone": "555-1234"}, headers=patient_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["name"] == "Mary Watson"
    assert body["phone"] == "555-1234"
    assert body["email"] == NEW_PATIENT["email"]


def test_report_pdf_download(client, doctor_headers):
    mary = create_patient(client, doctor_headers)
    report_id = save_report(client, doctor_headers, mary["patient_id"]).json()["report_id"]

    response = client.get(f"/reports/{report_id}/pdf", headers=doctor_headers)
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert response.content.startswith(b"%PDF")

    patient_headers = signup_and_login(client, NEW_PATIENT["email"], user_type="patient")
    assert client.get(f"/reports/{report_id}/pdf", headers=patient_headers).status_code == 200
