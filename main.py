from fastapi import FastAPI, Depends, HTTPException, status, UploadFile, File, Form, Query
from fastapi.security import OAuth2PasswordRequestForm
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from fastapi.staticfiles import StaticFiles

from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional

from config import (
    STORAGE_DIR, PUBLIC_STORAGE_PREFIX, SCAN_LINK_MODE, ROLLBACK_ON_FAILURE,
    DEFAULT_PAGE_SIZE, PAGE_SIZE_OPTIONS, SPECIALIZATIONS,
)
from database import engine, get_db, Base
from models import Profile
from auth import (
    verify_password, get_password_hash, create_session_token,
    get_current_session, require_doctor, require_patient, CurrentSession,
)
from record_store import RecordStore, BlobStore, RecordNotFound
from inference import InferenceClient, InferenceAPIError
from list_pipeline import (
    ListViewState, ListPage, SortField, SortDirection, ItemFields,
    SCAN_FIELDS, REPORT_FIELDS, ALL_CATEGORIES, run_pipeline,
)
from formatting import (
    file_name_from_url, first_name, format_date, format_doctor_name, format_long_date,
)
from schemas import (
    InferenceResult, PatientForm, PatientRecord, PatientSelfUpdate,
)
from report_generator import generate_report_text
from pdf_generator import generate_report_pdf
from workflow import (
    ScanReportWorkflow, ScanReportRequest, ScanLinkMode, WorkflowValidationError,
)

# ------------------------
# Database setup
# ------------------------
Base.metadata.create_all(bind=engine)

# ------------------------
# FastAPI app
# ------------------------
app = FastAPI(title="Alzheimer's MRI Screening Portal API")

# ------------------------
# CORS
# ------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ------------------------
# Stored scans and reports
# ------------------------
app.mount(PUBLIC_STORAGE_PREFIX, StaticFiles(directory=STORAGE_DIR), name="storage")


@app.on_event("startup")
async def startup_event():
    print(f"✅ Database ready, storage at {STORAGE_DIR}")


# ------------------------
# Collaborators (overridable in tests)
# ------------------------
def get_records(db: Session = Depends(get_db)) -> RecordStore:
    return RecordStore(db)


def get_blob_store() -> BlobStore:
    return BlobStore(STORAGE_DIR, PUBLIC_STORAGE_PREFIX)


def get_inference_client() -> InferenceClient:
    return InferenceClient()


# ------------------------
# Helpers
# ------------------------
def own_patient(records: RecordStore, session: CurrentSession, patient_id: int) -> PatientRecord:
    """The patient, provided it belongs to the signed-in doctor."""
    patients = records.select(
        "Patients", {"patient_id": patient_id, "doctor_id": session.provider.provider_id}, limit=1
    )
    if not patients:
        raise HTTPException(status_code=404, detail="Patient not found")
    return patients[0]


def build_view_state(search, image_type, sort_field, sort_direction, page_size, page) -> ListViewState:
    try:
        return ListViewState(
            search_term=search or "",
            category_filter=image_type or ALL_CATEGORIES,
            sort_field=SortField(sort_field) if sort_field else None,
            sort_direction=SortDirection(sort_direction),
            page_size=page_size,
            page_number=page,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def run_list(items, state: ListViewState, fields: ItemFields) -> ListPage:
    try:
        return run_pipeline(items, state, fields)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def page_response(page: ListPage, serialize) -> dict:
    return {
        "items": [serialize(item) for item in page.items],
        "total_items": page.total_items,
        "total_filtered": page.total_filtered,
        "total_pages": page.total_pages,
        "page": page.page_number,
        "page_size": page.page_size,
        "page_size_options": list(PAGE_SIZE_OPTIONS),
        "categories": page.categories,
        "no_results": page.no_results,
    }


def serialize_scan(scan) -> dict:
    data = scan.model_dump(mode="json")
    data["file_name"] = file_name_from_url(scan.image_url)
    data["display_date"] = format_date(scan.date)
    return data


def serialize_report(report) -> dict:
    data = report.model_dump(mode="json")
    data["file_name"] = file_name_from_url(report.report_url)
    data["display_date"] = format_date(report.scan_date)
    data["doctor_display_name"] = format_doctor_name(report.doctor_name)
    data["pdf_url"] = f"/reports/{report.report_id}/pdf"
    return data


# ============================================================
# AUTH ENDPOINTS
# ============================================================
@app.post("/signup")
async def signup(
    email: str = Form(...),
    password: str = Form(...),
    confirm_password: str = Form(...),
    user_type: str = Form("doctor"),
    db: Session = Depends(get_db)
):
    if password != confirm_password:
        raise HTTPException(status_code=400, detail="Passwords do not match")
    if user_type not in ("doctor", "patient"):
        raise HTTPException(status_code=400, detail="Unknown user type")

    records = RecordStore(db)
    if user_type == "patient" and not records.select("Patients", {"email": email}, limit=1):
        raise HTTPException(status_code=400, detail="Patients must be added by their doctor before signing up.")

    existing_profile = db.query(Profile).filter(Profile.email == email).first()
    if existing_profile:
        raise HTTPException(status_code=400, detail="Email already registered")

    new_profile = Profile(
        email=email,
        hashed_password=get_password_hash(password),
        user_type=user_type,
        # doctors still have to fill in their provider details
        first_login=(user_type == "doctor"),
    )
    db.add(new_profile)
    db.commit()
    db.refresh(new_profile)

    return {"message": "Signup successful", "profile_id": new_profile.id}


@app.post("/login")
async def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db)
):
    profile = db.query(Profile).filter(Profile.email == form_data.username).first()

    if not profile or not verify_password(form_data.password, profile.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return {
        "access_token": create_session_token(profile),
        "token_type": "bearer",
        "user_type": profile.user_type,
        "first_login": profile.first_login,
    }


@app.post("/logout")
async def logout(
    session: CurrentSession = Depends(get_current_session),
    db: Session = Depends(get_db)
):
    profile = db.query(Profile).filter(Profile.id == session.profile.id).first()
    profile.session_version += 1
    db.commit()
    return {"message": "Signed out"}


@app.get("/me")
async def get_current_user(session: CurrentSession = Depends(get_current_session)):
    return {
        "id": session.profile.id,
        "email": session.email,
        "user_type": session.user_type,
        "first_login": session.profile.first_login,
        "provider": session.provider.model_dump() if session.provider else None,
        "patient": session.patient.model_dump() if session.patient else None,
    }


@app.get("/specializations")
async def list_specializations():
    return SPECIALIZATIONS


@app.post("/fill-info/doctor")
async def fill_doctor_info(
    name: str = Form(...),
    specialization: str = Form(...),
    session: CurrentSession = Depends(get_current_session),
    records: RecordStore = Depends(get_records)
):
    if session.user_type != "doctor":
        raise HTTPException(status_code=403, detail="Doctor access required")
    if not session.profile.first_login:
        raise HTTPException(status_code=400, detail="Profile setup already completed")
    if not name.strip():
        raise HTTPException(status_code=400, detail="Name is required")
    if specialization not in SPECIALIZATIONS:
        raise HTTPException(status_code=400, detail="Unknown specialization")
    if records.select("HealthcareProviders", {"email": session.email}, limit=1):
        raise HTTPException(status_code=400, detail="Doctor with this email already exists")

    provider = records.insert("HealthcareProviders", {
        "name": name.strip(),
        "specialization": specialization,
        "email": session.email,
    })
    records.update("profiles", {"first_login": False}, {"id": session.profile.id})
    return {"message": "Profile completed", "provider_id": provider.provider_id}


# ============================================================
# DOCTOR ENDPOINTS
# ============================================================
@app.get("/doctor/dashboard")
async def doctor_dashboard(session: CurrentSession = Depends(require_doctor)):
    name = session.provider.name or "Doctor"
    return {
        "doctor_name": name,
        "greeting": f"Welcome, Dr. {first_name(name, name)}",
        "current_date": format_long_date(datetime.now()),
    }


@app.get("/doctor/patients")
async def list_patients(
    search: str = "",
    session: CurrentSession = Depends(require_doctor),
    records: RecordStore = Depends(get_records)
):
    patients = records.select("Patients", {"doctor_id": session.provider.provider_id}, order_by="patient_id")
    term = search.strip().lower()
    if term:
        patients = [
            p for p in patients
            if term in (p.name or "").lower()
            or term in (p.email or "").lower()
            or search.strip() in (p.phone or "")
        ]
    return [p.model_dump() for p in patients]


@app.post("/doctor/patients", status_code=201)
async def create_patient(
    form: PatientForm,
    session: CurrentSession = Depends(require_doctor),
    records: RecordStore = Depends(get_records)
):
    problem = form.validation_error()
    if problem:
        raise HTTPException(status_code=400, detail=problem)
    patient = records.insert("Patients", form.to_row(session.provider.provider_id))
    return patient.model_dump()


@app.get("/doctor/patients/{patient_id}")
async def get_patient(
    patient_id: int,
    session: CurrentSession = Depends(require_doctor),
    records: RecordStore = Depends(get_records)
):
    return own_patient(records, session, patient_id).model_dump()


@app.put("/doctor/patients/{patient_id}")
async def update_patient(
    patient_id: int,
    form: PatientForm,
    session: CurrentSession = Depends(require_doctor),
    records: RecordStore = Depends(get_records)
):
    own_patient(records, session, patient_id)
    problem = form.validation_error()
    if problem:
        raise HTTPException(status_code=400, detail=problem)
    records.update("Patients", form.to_row(session.provider.provider_id), {"patient_id": patient_id})
    return records.select_one("Patients", {"patient_id": patient_id}).model_dump()


@app.delete("/doctor/patients/{patient_id}")
async def delete_patient(
    patient_id: int,
    session: CurrentSession = Depends(require_doctor),
    records: RecordStore = Depends(get_records)
):
    own_patient(records, session, patient_id)
    records.delete("Patients", {"patient_id": patient_id})
    return {"message": "Patient deleted"}


@app.get("/doctor/patients/{patient_id}/scans")
async def list_patient_scans(
    patient_id: int,
    search: str = "",
    image_type: str = ALL_CATEGORIES,
    sort_field: Optional[str] = SortField.DATE.value,
    sort_direction: str = SortDirection.DESC.value,
    page_size: int = Query(DEFAULT_PAGE_SIZE),
    page: int = Query(1),
    session: CurrentSession = Depends(require_doctor),
    records: RecordStore = Depends(get_records)
):
    patient = own_patient(records, session, patient_id)
    state = build_view_state(search, image_type, sort_field, sort_direction, page_size, page)
    scans = records.select("BrainScans", {"patient_id": patient_id}, order_by="date", descending=True)
    result = page_response(run_list(scans, state, SCAN_FIELDS), serialize_scan)
    result["patient"] = patient.model_dump()
    return result


@app.delete("/doctor/scans/{image_id}")
async def delete_scan(
    image_id: int,
    session: CurrentSession = Depends(require_doctor),
    records: RecordStore = Depends(get_records)
):
    scans = records.select("BrainScans", {"image_id": image_id}, limit=1)
    if not scans:
        raise HTTPException(status_code=404, detail="Scan not found")
    own_patient(records, session, scans[0].patient_id)
    records.delete("BrainScans", {"image_id": image_id})
    return {"message": "Scan deleted"}


@app.get("/doctor/patients/{patient_id}/reports")
async def list_patient_reports(
    patient_id: int,
    search: str = "",
    sort_field: Optional[str] = SortField.DATE.value,
    sort_direction: str = SortDirection.DESC.value,
    page_size: int = Query(DEFAULT_PAGE_SIZE),
    page: int = Query(1),
    session: CurrentSession = Depends(require_doctor),
    records: RecordStore = Depends(get_records)
):
    patient = own_patient(records, session, patient_id)
    state = build_view_state(search, None, sort_field, sort_direction, page_size, page)
    reports = records.reports_with_details(patient_id)
    result = page_response(run_list(reports, state, REPORT_FIELDS), serialize_report)
    result["patient"] = patient.model_dump()
    return result


# ============================================================
# ANALYSIS AND SAVE
# ============================================================
@app.post("/doctor/patients/{patient_id}/analyze")
async def analyze_scan(
    patient_id: int,
    file: UploadFile = File(...),
    notes: Optional[str] = Form(None),
    session: CurrentSession = Depends(require_doctor),
    records: RecordStore = Depends(get_records),
    client: InferenceClient = Depends(get_inference_client)
):
    patient = own_patient(records, session, patient_id)
    file_bytes = await file.read()
    if not file_bytes:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")

    try:
        analysis = client.analyze(file.filename, file_bytes)
    except InferenceAPIError as e:
        raise HTTPException(status_code=502, detail=f"Prediction failed: {str(e)}")

    report_text = generate_report_text(
        patient=patient,
        doctor=session.provider,
        result=analysis.result,
        scan_file_name=file.filename,
        notes=notes,
    )

    return {
        "predicted_class": analysis.result.predicted_class,
        "probability": analysis.result.probability,
        "features": analysis.result.features,
        "preview_image": analysis.preprocess.preview_image,
        "heatmap_image": analysis.gradcam.heatmap_image if analysis.gradcam else None,
        "report_text": report_text,
    }


@app.post("/doctor/patients/{patient_id}/reports")
async def save_scan_and_report(
    patient_id: int,
    file: UploadFile = File(...),
    report_text: str = Form(...),
    predicted_class: str = Form(...),
    probability: float = Form(...),
    session: CurrentSession = Depends(require_doctor),
    records: RecordStore = Depends(get_records),
    blobs: BlobStore = Depends(get_blob_store)
):
    own_patient(records, session, patient_id)
    try:
        result = InferenceResult(predicted_class=predicted_class, probability=probability)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid inference result: {e}")

    workflow = ScanReportWorkflow(
        records,
        blobs,
        link_mode=ScanLinkMode(SCAN_LINK_MODE),
        rollback_on_failure=ROLLBACK_ON_FAILURE,
    )
    request = ScanReportRequest(
        patient_id=patient_id,
        file_name=file.filename or "",
        file_bytes=await file.read(),
        report_text=report_text,
        result=result,
    )
    try:
        outcome = workflow.run(request)
    except WorkflowValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RecordNotFound:
        raise HTTPException(status_code=404, detail="Patient not found")

    return {
        "status": outcome.status.value,
        "image_id": outcome.scan.image_id if outcome.scan else None,
        "report_id": outcome.report.report_id if outcome.report else None,
        "failed_step": outcome.failed_step,
    }


# ============================================================
# PATIENT ENDPOINTS
# ============================================================
@app.get("/patient/me")
async def patient_profile(session: CurrentSession = Depends(require_patient)):
    return session.patient.model_dump()


@app.patch("/patient/me")
async def update_patient_profile(
    update: PatientSelfUpdate,
    session: CurrentSession = Depends(require_patient),
    records: RecordStore = Depends(get_records)
):
    if not update.name.strip():
        raise HTTPException(status_code=400, detail="Name cannot be empty")
    patient_id = session.patient.patient_id
    records.update("Patients", {"name": update.name, "phone": update.phone}, {"patient_id": patient_id})
    return records.select_one("Patients", {"patient_id": patient_id}).model_dump()


@app.get("/patient/reports")
async def list_my_reports(
    search: str = "",
    sort_field: Optional[str] = SortField.DATE.value,
    sort_direction: str = SortDirection.DESC.value,
    page_size: int = Query(DEFAULT_PAGE_SIZE),
    page: int = Query(1),
    session: CurrentSession = Depends(require_patient),
    records: RecordStore = Depends(get_records)
):
    state = build_view_state(search, None, sort_field, sort_direction, page_size, page)
    reports = records.reports_with_details(session.patient.patient_id)
    return page_response(run_list(reports, state, REPORT_FIELDS), serialize_report)


# ============================================================
# DOWNLOAD REPORT ENDPOINT
# ============================================================
@app.get("/reports/{report_id}/pdf")
async def download_report(
    report_id: int,
    session: CurrentSession = Depends(get_current_session),
    records: RecordStore = Depends(get_records),
    blobs: BlobStore = Depends(get_blob_store)
):
    reports = records.select("Reports", {"report_id": report_id}, limit=1)
    if not reports:
        raise HTTPException(status_code=404, detail="Report not found")
    report = reports[0]
    patient = records.select_one("Patients", {"patient_id": report.patient_id})

    if session.user_type == "doctor":
        allowed = session.provider is not None and patient.doctor_id == session.provider.provider_id
    else:
        allowed = session.patient is not None and session.patient.patient_id == patient.patient_id
    if not allowed:
        raise HTTPException(status_code=404, detail="Report not found")

    try:
        bucket, path = blobs.locate(report.report_url)
        report_text = blobs.read_blob(bucket, path).decode("utf-8")
    except (ValueError, RecordNotFound):
        raise HTTPException(status_code=404, detail="Report file not found")

    details = next(
        (item for item in records.reports_with_details(patient.patient_id) if item.report_id == report_id),
        None,
    )
    pdf = generate_report_pdf({
        "report_id": report_id,
        "patient_name": patient.name,
        "doctor_name": details.doctor_name if details and details.doctor_name else "N/A",
        "scan_date": format_date(details.scan_date if details else None),
        "report_text": report_text,
    })
    return StreamingResponse(
        pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="Report_{report_id}.pdf"'},
    )


# ============================================================
# RUN
# ============================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
