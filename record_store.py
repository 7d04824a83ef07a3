"""Record store: relational tables plus blob storage.

`RecordStore` exposes the handful of table operations the portal needs
(filtered select, insert, update, delete) on top of a SQLAlchemy session and
returns typed records from `schemas`. `BlobStore` keeps uploaded files in
bucket directories under the storage root and hands out public URLs served by
the `/storage` static mount.
"""

import os
from typing import Dict, List, Optional, Tuple, Type
from urllib.parse import quote, unquote

from sqlalchemy.orm import Session

from models import BrainScan, HealthcareProvider, Patient, Profile, Report
from schemas import (
    BrainScanRecord,
    PatientRecord,
    ProfileRecord,
    ProviderRecord,
    Record,
    ReportListItem,
    ReportRecord,
)

TABLES: Dict[str, Tuple[type, Type[Record]]] = {
    "profiles": (Profile, ProfileRecord),
    "HealthcareProviders": (HealthcareProvider, ProviderRecord),
    "Patients": (Patient, PatientRecord),
    "BrainScans": (BrainScan, BrainScanRecord),
    "Reports": (Report, ReportRecord),
}


class RecordNotFound(Exception):
    """Raised when a lookup that expects exactly one row finds none."""
    pass


class RecordStore:
    def __init__(self, db: Session):
        self.db = db

    def _table(self, table: str):
        if table not in TABLES:
            raise ValueError(f"Unknown table: {table}")
        return TABLES[table]

    def _query(self, model, filter: Optional[dict]):
        query = self.db.query(model)
        for column, value in (filter or {}).items():
            if not hasattr(model, column):
                raise ValueError(f"Unknown column {column!r} on {model.__tablename__}")
            query = query.filter(getattr(model, column) == value)
        return query

    def select(
        self,
        table: str,
        filter: Optional[dict] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Record]:
        model, schema = self._table(table)
        query = self._query(model, filter)
        if order_by is not None:
            column = getattr(model, order_by)
            query = query.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            query = query.limit(limit)
        return [schema.model_validate(row) for row in query.all()]

    def select_one(self, table: str, filter: dict) -> Record:
        rows = self.select(table, filter, limit=1)
        if not rows:
            raise RecordNotFound(f"No row in {table} matching {filter}")
        return rows[0]

    def insert(self, table: str, row: dict) -> Record:
        model, schema = self._table(table)
        obj = model(**row)
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return schema.model_validate(obj)

    def update(self, table: str, patch: dict, filter: dict) -> int:
        model, _ = self._table(table)
        rows = self._query(model, filter).all()
        for obj in rows:
            for column, value in patch.items():
                setattr(obj, column, value)
        self.db.commit()
        return len(rows)

    def delete(self, table: str, filter: dict) -> int:
        model, _ = self._table(table)
        # session.delete honours ORM cascades, bulk query.delete() would not
        rows = self._query(model, filter).all()
        for obj in rows:
            self.db.delete(obj)
        self.db.commit()
        return len(rows)

    def rollback(self) -> None:
        self.db.rollback()

    def latest_scan_for_patient(self, patient_id: int) -> Optional[BrainScanRecord]:
        """Most recent scan by date; ties on date fall back to the newest id."""
        row = (
            self.db.query(BrainScan)
            .filter(BrainScan.patient_id == patient_id)
            .order_by(BrainScan.date.desc(), BrainScan.image_id.desc())
            .first()
        )
        return BrainScanRecord.model_validate(row) if row else None

    def reports_with_details(self, patient_id: int) -> List[ReportListItem]:
        """Reports for a patient joined with scan date and doctor name."""
        rows = (
            self.db.query(Report, BrainScan.date, HealthcareProvider.name)
            .outerjoin(BrainScan, Report.image_id == BrainScan.image_id)
            .outerjoin(Patient, Report.patient_id == Patient.patient_id)
            .outerjoin(HealthcareProvider, Patient.doctor_id == HealthcareProvider.provider_id)
            .filter(Report.patient_id == patient_id)
            .order_by(Report.report_id)
            .all()
        )
        items = []
        for report, scan_date, doctor_name in rows:
            item = ReportListItem.model_validate(report)
            item.scan_date = scan_date
            item.doctor_name = doctor_name
            items.append(item)
        return items


class BlobStore:
    """Bucketed file storage on the local filesystem."""

    def __init__(self, root: str, public_prefix: str = "/storage"):
        self.root = root
        self.public_prefix = public_prefix.rstrip("/")

    def _full_path(self, bucket: str, path: str) -> str:
        parts = [bucket] + path.split("/")
        if any(part in ("", ".", "..") for part in parts):
            raise ValueError(f"Invalid storage path: {bucket}/{path}")
        return os.path.join(self.root, *parts)

    def upload_blob(self, bucket: str, path: str, data: bytes) -> str:
        full_path = self._full_path(bucket, path)
        if os.path.exists(full_path):
            raise FileExistsError(f"Object already exists: {bucket}/{path}")
        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        with open(full_path, "wb") as f:
            f.write(data)
        return f"{bucket}/{path}"

    def public_url(self, bucket: str, path: str) -> str:
        self._full_path(bucket, path)
        return f"{self.public_prefix}/{quote(bucket)}/{quote(path)}"

    def read_blob(self, bucket: str, path: str) -> bytes:
        full_path = self._full_path(bucket, path)
        if not os.path.exists(full_path):
            raise RecordNotFound(f"Object not found: {bucket}/{path}")
        with open(full_path, "rb") as f:
            return f.read()

    def remove_blob(self, bucket: str, path: str) -> bool:
        full_path = self._full_path(bucket, path)
        if not os.path.exists(full_path):
            return False
        os.remove(full_path)
        return True

    def locate(self, url: str) -> Tuple[str, str]:
        """Split a public URL produced by `public_url` back into (bucket, path)."""
        prefix = self.public_prefix + "/"
        if not url.startswith(prefix):
            raise ValueError(f"Not a storage URL: {url}")
        bucket, _, path = url[len(prefix):].partition("/")
        return unquote(bucket), unquote(path)
