"""Typed records exchanged with the record store and the inference service.

Every row leaving the record store is converted into one of these models, so
the rest of the service never handles raw ORM objects or untyped dicts.
"""

import re
from datetime import datetime
from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class Record(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class ProfileRecord(Record):
    id: int
    email: str
    user_type: Literal["doctor", "patient"]
    first_login: bool = True
    session_version: int = 0


class ProviderRecord(Record):
    provider_id: int
    name: str
    specialization: Optional[str] = None
    email: str


class PatientRecord(Record):
    patient_id: int
    name: str
    age: Optional[int] = None
    gender: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    doctor_id: Optional[int] = None


class BrainScanRecord(Record):
    image_id: int
    patient_id: int
    image_type: Optional[str] = None
    date: Optional[datetime] = None
    image_url: str


class ReportRecord(Record):
    report_id: int
    patient_id: int
    image_id: int
    report_url: str
    created_at: Optional[datetime] = None


class ReportListItem(ReportRecord):
    """A report joined with the date of its scan and the treating doctor."""
    scan_date: Optional[datetime] = None
    doctor_name: Optional[str] = None


# ------------------------
# Inference service payloads
# ------------------------
class PreprocessResult(BaseModel):
    preview_image: Optional[str] = None
    file_handle: str


class InferenceResult(BaseModel):
    predicted_class: Literal["AD", "CN", "MCI"]
    probability: float = Field(ge=0.0, le=1.0)
    features: Dict[str, str] = Field(default_factory=dict)


class GradcamResult(BaseModel):
    heatmap_image: Optional[str] = None


# ------------------------
# Forms
# ------------------------
EMAIL_PATTERN = re.compile(r"^\S+@\S+\.\S+$")


class PatientForm(BaseModel):
    name: str = ""
    age: Optional[int] = None
    gender: Literal["Male", "Female"] = "Male"
    email: str = ""
    phone: str = ""

    def validation_error(self) -> Optional[str]:
        """Return the first problem with the form, or None when it can be saved."""
        if not self.name.strip():
            return "Patient name is required"
        if self.age is None:
            return "Patient age is required"
        if self.age <= 0 or self.age > 120:
            return "Please enter a valid age between 1 and 120"
        if self.email and not EMAIL_PATTERN.match(self.email):
            return "Please enter a valid email address"
        return None

    def to_row(self, doctor_id: int) -> dict:
        return {
            "name": self.name,
            "age": self.age,
            "gender": self.gender,
            "email": self.email,
            "phone": self.phone,
            "doctor_id": doctor_id,
        }


class PatientSelfUpdate(BaseModel):
    name: str
    phone: str = ""

