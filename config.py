# config.py
import os

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# Paths
STORAGE_DIR = os.getenv("STORAGE_DIR", os.path.join(BASE_DIR, "storage"))
DB_DIR = os.path.join(BASE_DIR, "database")
DB_PATH = os.path.join(DB_DIR, "app_data.db")
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DB_PATH}")

# Create folders
os.makedirs(STORAGE_DIR, exist_ok=True)
os.makedirs(DB_DIR, exist_ok=True)

# Storage buckets (sub-directories of STORAGE_DIR, served under /storage)
SCAN_BUCKET = os.getenv("SCAN_BUCKET", "brain-scans")
REPORT_BUCKET = os.getenv("REPORT_BUCKET", "reports")
PUBLIC_STORAGE_PREFIX = "/storage"

# Inference service
INFERENCE_URL = os.getenv("INFERENCE_URL", "http://localhost:5000")
INFERENCE_TIMEOUT = float(os.getenv("INFERENCE_TIMEOUT", "60"))

# Auth
SECRET_KEY = os.getenv("SECRET_KEY", "your-secret-key-change-in-production-09876543210")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "1440"))  # 24 hours

# Scan+report workflow
# "returned": link the report to the id returned by the scan insert
# "latest": look up the newest scan for the patient (racy under concurrent uploads)
SCAN_LINK_MODE = os.getenv("SCAN_LINK_MODE", "returned")
ROLLBACK_ON_FAILURE = os.getenv("ROLLBACK_ON_FAILURE", "false").lower() in ("1", "true", "yes")

# List views
DEFAULT_PAGE_SIZE = 10
PAGE_SIZE_OPTIONS = (5, 10, 20, 50)

# Inference classes
CLASS_LABELS = {
    "AD": "Alzheimer's Disease",
    "CN": "Cognitively Normal",
    "MCI": "Mild Cognitive Impairment",
}

SPECIALIZATIONS = [
    "Cardiology",
    "Dermatology",
    "Endocrinology",
    "Gastroenterology",
    "Neurology",
    "Obstetrics & Gynecology",
    "Oncology",
    "Ophthalmology",
    "Orthopedics",
    "Pediatrics",
    "Psychiatry",
    "Radiology",
    "Urology",
    "General Practice",
    "Other",
]
