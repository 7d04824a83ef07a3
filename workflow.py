"""Save an analysed scan and its report as one linked pair of records.

The save runs as a fixed chain of steps, each depending on the one before:

    upload_scan    store the scan file under <patient>/<timestamp>_<file name>
    scan_url       public URL of the stored scan
    insert_scan    BrainScans row (image type from the file extension)
    resolve_scan   id of the scan the report must point at
    upload_report  store the report text under <patient>/<timestamp>_report.txt
    report_url     public URL of the stored report
    insert_report  Reports row linking patient, scan and report URL

Every step yields a `StepResult`. The first failed step stops the chain and the
run ends with a single `error` status. Nothing created by earlier steps is
undone unless the workflow was built with `rollback_on_failure=True`.

`ScanLinkMode.LATEST` resolves the scan by looking up the newest scan for the
patient instead of using the id returned by the insert. Two uploads for the
same patient racing each other can link a report to the wrong scan in that
mode, so `RETURNED` is the default.
"""

import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional

from config import REPORT_BUCKET, SCAN_BUCKET
from record_store import BlobStore, RecordNotFound, RecordStore
from schemas import BrainScanRecord, InferenceResult, ReportRecord


class SaveStatus(str, Enum):
    IDLE = "idle"
    SAVING = "saving"
    SUCCESS = "success"
    ERROR = "error"


class ScanLinkMode(str, Enum):
    RETURNED = "returned"
    LATEST = "latest"


class WorkflowValidationError(Exception):
    """Raised before any remote call when the save cannot start."""
    pass


@dataclass
class StepResult:
    step: str
    ok: bool
    value: Any = None
    error: Optional[str] = None


@dataclass
class ScanReportRequest:
    patient_id: int
    file_name: str
    file_bytes: bytes
    report_text: str
    result: Optional[InferenceResult] = None


@dataclass
class WorkflowOutcome:
    status: SaveStatus
    steps: List[StepResult] = field(default_factory=list)
    scan: Optional[BrainScanRecord] = None
    report: Optional[ReportRecord] = None

    @property
    def failed_step(self) -> Optional[str]:
        for step in self.steps:
            if not step.ok:
                return step.step
        return None

    @property
    def error(self) -> Optional[str]:
        for step in self.steps:
            if not step.ok:
                return step.error
        return None


def image_type_for(file_name: str) -> str:
    return "NIfTI-GZ" if file_name.lower().endswith(".nii.gz") else "NIfTI"


class ScanReportWorkflow:
    def __init__(
        self,
        records: RecordStore,
        blobs: BlobStore,
        scan_bucket: str = SCAN_BUCKET,
        report_bucket: str = REPORT_BUCKET,
        link_mode: ScanLinkMode = ScanLinkMode.RETURNED,
        rollback_on_failure: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.records = records
        self.blobs = blobs
        self.scan_bucket = scan_bucket
        self.report_bucket = report_bucket
        self.link_mode = ScanLinkMode(link_mode)
        self.rollback_on_failure = rollback_on_failure
        self.clock = clock

    # ------------------------
    # Preconditions
    # ------------------------
    def validate(self, request: ScanReportRequest) -> None:
        if not request.report_text or not request.report_text.strip():
            raise WorkflowValidationError("Report text is empty")
        if not request.file_name or not request.file_bytes:
            raise WorkflowValidationError("No scan file provided")
        if request.result is None:
            raise WorkflowValidationError("No inference result for this scan")
        # RecordNotFound propagates: an unknown patient is terminal, not a step failure
        self.records.select_one("Patients", {"patient_id": request.patient_id})

    # ------------------------
    # Steps
    # ------------------------
    def _timestamped(self, patient_id: int, name: str) -> str:
        return f"{patient_id}/{int(self.clock() * 1000)}_{name}"

    def upload_scan(self, request: ScanReportRequest, done: dict) -> str:
        path = self._timestamped(request.patient_id, os.path.basename(request.file_name))
        self.blobs.upload_blob(self.scan_bucket, path, request.file_bytes)
        return path

    def scan_url(self, request: ScanReportRequest, done: dict) -> str:
        return self.blobs.public_url(self.scan_bucket, done["upload_scan"])

    def insert_scan(self, request: ScanReportRequest, done: dict) -> BrainScanRecord:
        return self.records.insert("BrainScans", {
            "patient_id": request.patient_id,
            "image_type": image_type_for(request.file_name),
            "image_url": done["scan_url"],
        })

    def resolve_scan(self, request: ScanReportRequest, done: dict) -> int:
        if self.link_mode is ScanLinkMode.RETURNED:
            return done["insert_scan"].image_id
        latest = self.records.latest_scan_for_patient(request.patient_id)
        if latest is None:
            raise RecordNotFound(f"No scans found for patient {request.patient_id}")
        return latest.image_id

    def upload_report(self, request: ScanReportRequest, done: dict) -> str:
        path = self._timestamped(request.patient_id, "report.txt")
        self.blobs.upload_blob(self.report_bucket, path, request.report_text.encode("utf-8"))
        return path

    def report_url(self, request: ScanReportRequest, done: dict) -> str:
        return self.blobs.public_url(self.report_bucket, done["upload_report"])

    def insert_report(self, request: ScanReportRequest, done: dict) -> ReportRecord:
        return self.records.insert("Reports", {
            "patient_id": request.patient_id,
            "image_id": done["resolve_scan"],
            "report_url": done["report_url"],
        })

    def steps(self):
        return [
            ("upload_scan", self.upload_scan),
            ("scan_url", self.scan_url),
            ("insert_scan", self.insert_scan),
            ("resolve_scan", self.resolve_scan),
            ("upload_report", self.upload_report),
            ("report_url", self.report_url),
            ("insert_report", self.insert_report),
        ]

    # ------------------------
    # Run
    # ------------------------
    def run(self, request: ScanReportRequest) -> WorkflowOutcome:
        self.validate(request)

        done = {}
        results = []
        for name, step in self.steps():
            try:
                result = StepResult(step=name, ok=True, value=step(request, done))
            except Exception as e:
                result = StepResult(step=name, ok=False, error=str(e) or e.__class__.__name__)
            results.append(result)

            if not result.ok:
                # clear a failed transaction; rows committed by earlier steps stay
                self.records.rollback()
                print(f"❌ Save failed at {name} for patient {request.patient_id}: {result.error}")
                if self.rollback_on_failure:
                    self._compensate(done)
                return WorkflowOutcome(
                    status=SaveStatus.ERROR,
                    steps=results,
                    scan=done.get("insert_scan"),
                )
            done[name] = result.value

        return WorkflowOutcome(
            status=SaveStatus.SUCCESS,
            steps=results,
            scan=done["insert_scan"],
            report=done["insert_report"],
        )

    def _compensate(self, done: dict) -> None:
        """Undo whatever the failed run already created, newest first.

        A cleanup action that fails is reported and skipped; the others still run.
        """
        undo = []
        if "upload_report" in done:
            undo.append(("report file", lambda: self.blobs.remove_blob(self.report_bucket, done["upload_report"])))
        if "insert_scan" in done:
            undo.append(("scan row", lambda: self.records.delete("BrainScans", {"image_id": done["insert_scan"].image_id})))
        if "upload_scan" in done:
            undo.append(("scan file", lambda: self.blobs.remove_blob(self.scan_bucket, done["upload_scan"])))

        clean = True
        for label, action in undo:
            try:
                action()
            except Exception as e:
                clean = False
                print(f"⚠️ Could not remove {label} during rollback: {e}")
                if label == "scan row":
                    self.records.rollback()
                continue
            if label == "scan row":
                done.pop("insert_scan")
        if clean:
            print("↩️ Rolled back partial scan/report save")
