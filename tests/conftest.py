import os
import tempfile

# point the app at throwaway storage before config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STORAGE_DIR", tempfile.mkdtemp(prefix="portal-storage-"))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db
from inference import InferenceClient
from main import app, get_blob_store, get_inference_client
from record_store import BlobStore, RecordStore
from schemas import GradcamResult, InferenceResult, PreprocessResult


class FakeInferenceClient(InferenceClient):
    """Answers like the inference service without any network traffic."""

    def __init__(self, predicted_class="AD", probability=0.87, gradcam_fails=False):
        super().__init__(base_url="http://inference.test")
        self.predicted_class = predicted_class
        self.probability = probability
        self.gradcam_fails = gradcam_fails
        self.calls = []

    def preprocess(self, file_name, file_bytes):
        self.calls.append("preprocess")
        return PreprocessResult(preview_image="data:image/png;base64,AAAA", file_handle=f"handle-{file_name}")

    def predict(self, file_handle):
        self.calls.append("predict")
        return InferenceResult(
            predicted_class=self.predicted_class,
            probability=self.probability,
            features={"hippocampal_volume": "reduced"},
        )

    def gradcam(self, file_handle):
        self.calls.append("gradcam")
        if self.gradcam_fails:
            from inference import InferenceAPIError
            raise InferenceAPIError("gradcam returned 500")
        return GradcamResult(heatmap_image="data:image/png;base64,BBBB")


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def records(db_session):
    return RecordStore(db_session)


@pytest.fixture
def blobs(tmp_path):
    return BlobStore(str(tmp_path / "storage"), "/storage")


@pytest.fixture
def doctor(records):
    return records.insert("HealthcareProviders", {
        "name": "Jane Alice Smith",
        "specialization": "Neurology",
        "email": "jane.smith@clinic.test",
    })


@pytest.fixture
def patient(records, doctor):
    return records.insert("Patients", {
        "name": "Robert Johnson",
        "age": 71,
        "gender": "Male",
        "email": "robert.j@example.com",
        "phone": "555-0101",
        "doctor_id": doctor.provider_id,
    })


@pytest.fixture
def inference_client():
    return FakeInferenceClient()


@pytest.fixture
def client(db_session, blobs, inference_client):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_blob_store] = lambda: blobs
    app.dependency_overrides[get_inference_client] = lambda: inference_client
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def signup_and_login(client, email, password="s3cret-pass", user_type="doctor"):
    response = client.post("/signup", data={
        "email": email,
        "password": password,
        "confirm_password": password,
        "user_type": user_type,
    })
    assert response.status_code == 200, response.text
    response = client.post("/login", data={"username": email, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


@pytest.fixture
def doctor_headers(client):
    headers = signup_and_login(client, "house@clinic.test")
    response = client.post(
        "/fill-info/doctor",
        data={"name": "Gregory House", "specialization": "Neurology"},
        headers=headers,
    )
    assert response.status_code == 200, response.text
    return headers
