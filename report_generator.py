# report_generator.py
from datetime import datetime
from typing import Optional

from config import CLASS_LABELS
from formatting import format_date
from schemas import InferenceResult, PatientRecord, ProviderRecord

RULE = "=" * 60

RECOMMENDATIONS = {
    "AD": "Findings are consistent with Alzheimer's Disease. Referral for comprehensive "
          "neurological and neuropsychological evaluation is recommended.",
    "MCI": "Findings suggest Mild Cognitive Impairment. Follow-up cognitive assessment and "
           "repeat imaging in 6-12 months are recommended.",
    "CN": "No imaging evidence of cognitive impairment. Routine follow-up as clinically indicated.",
}


def generate_report_text(
    patient: PatientRecord,
    doctor: ProviderRecord,
    result: InferenceResult,
    scan_file_name: str,
    scan_date: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> str:
    """
    Fill the MRI screening report template with patient, doctor and model output.
    The template wording is fixed; only the bracketed values vary.
    """
    scan_date = scan_date or datetime.now()
    label = CLASS_LABELS.get(result.predicted_class, result.predicted_class)

    lines = [
        RULE,
        "ALZHEIMER'S MRI SCREENING REPORT",
        RULE,
        "",
        "Patient Information",
        f"  Patient Name:   {patient.name}",
        f"  Patient ID:     {patient.patient_id}",
        f"  Age:            {patient.age if patient.age is not None else 'N/A'}",
        f"  Gender:         {patient.gender or 'N/A'}",
        f"  Scan File:      {scan_file_name}",
        f"  Scan Date:      {format_date(scan_date)}",
        f"  Doctor:         Dr. {doctor.name}",
        "",
        "Diagnosis Results",
        f"  Predicted Class: {result.predicted_class} ({label})",
        f"  Confidence:      {result.probability * 100:.2f}%",
        "",
    ]

    if result.features:
        lines.append("Extracted Features")
        for name, value in result.features.items():
            lines.append(f"  {name}: {value}")
        lines.append("")

    lines.append("Recommendation")
    lines.append(f"  {RECOMMENDATIONS.get(result.predicted_class, '')}")
    lines.append("")

    if notes:
        lines.append("Clinical Notes")
        lines.append(f"  {notes}")
        lines.append("")

    lines.append(RULE)
    lines.append("This report was generated with AI assistance and must be reviewed by a "
                 "qualified clinician.")
    lines.append(f"Generated on {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    return "\n".join(lines)
