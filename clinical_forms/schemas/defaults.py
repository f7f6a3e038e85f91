"""
Built-in baseline assessment configurations.

Specialty defaults (oncology, cardiology) are what a team gets after
"reset to default"; the system default is the last resolution layer for
teams with no assignment and no specialty. All of them are plain
configuration documents and go through validate_configuration() like any
team-authored document before they are stored.
"""

from __future__ import annotations

from copy import deepcopy
from typing import Any

BASELINE_FORM_KIND = "baseline_assessment"

SEVERITY_SCALE = {"min": 1, "max": 4, "labels": ["Mild", "Moderate", "Severe", "Very Severe"]}

ECOG_OPTIONS = [
    {"value": "0", "label": "0 - Fully active, no restriction"},
    {"value": "1", "label": "1 - Restricted in strenuous activity, ambulatory"},
    {"value": "2", "label": "2 - Ambulatory, capable of self-care, unable to work"},
    {"value": "3", "label": "3 - Limited self-care, confined to bed or chair over half of waking hours"},
    {"value": "4", "label": "4 - Completely disabled"},
]

NYHA_OPTIONS = [
    {"value": "1", "label": "Class I - No limitation of physical activity"},
    {"value": "2", "label": "Class II - Slight limitation, comfortable at rest"},
    {"value": "3", "label": "Class III - Marked limitation, comfortable only at rest"},
    {"value": "4", "label": "Class IV - Symptoms at rest"},
]


def _symptom(value: str, label: str) -> dict[str, Any]:
    return {"value": value, "label": label, "has_severity": True}


def _measurement(field_id: str, label: str, unit: str, lo: float, hi: float, required: bool) -> dict[str, Any]:
    return {"id": field_id, "type": "number", "label": label, "unit": unit, "min": lo, "max": hi, "required": required}


def _treatment_steps(categories: list[tuple[str, str, list[tuple[str, str]]]]) -> list[dict[str, Any]]:
    return [
        {
            "id": "category",
            "label": "Treatment category",
            "options": [{"value": value, "label": label} for value, label, _ in categories],
        },
        {
            "id": "regimen",
            "label": "Line of treatment",
            "depends_on_step": "category",
            "options_by_parent": {
                value: [{"value": v, "label": l} for v, l in children] for value, _, children in categories
            },
        },
    ]


def _baseline(
    specialty: str | None,
    description: str,
    symptoms: list[dict[str, Any]],
    treatments: list[tuple[str, str, list[tuple[str, str]]]],
    measurements: list[dict[str, Any]],
    performance_label: str,
    performance_options: list[dict[str, str]],
    extra_assessment_fields: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    return {
        "form_kind": BASELINE_FORM_KIND,
        "metadata": {"specialty": specialty, "description": description},
        "sections": [
            {
                "id": "assessment",
                "title": "Assessment",
                "fields": [
                    {"id": "assessment_date", "type": "date", "label": "Assessment date", "required": True},
                    {"id": "age", "type": "number", "label": "Age", "integer": True, "min": 0, "max": 120},
                    {"id": "diagnosis_date", "type": "date", "label": "Diagnosis date"},
                    *(extra_assessment_fields or []),
                ],
            },
            {
                "id": "symptoms",
                "title": "Symptoms",
                "fields": [
                    {
                        "id": "symptoms",
                        "type": "checkbox_group_severity",
                        "label": "Current symptoms",
                        "options": [
                            *symptoms,
                            {"value": "none", "label": "No symptoms", "exclusive": True},
                        ],
                        "severity_scale": SEVERITY_SCALE,
                    },
                ],
            },
            {
                "id": "treatments",
                "title": "Treatments",
                "fields": [
                    {
                        "id": "treatment_line",
                        "type": "cascading_select",
                        "label": "Treatment",
                        "steps": _treatment_steps(treatments),
                    },
                    {"id": "treatment_details", "type": "free_text", "label": "Treatment details"},
                ],
            },
            {
                "id": "clinical_measurements",
                "title": "Clinical measurements",
                "fields": measurements,
            },
            {
                "id": "performance_status",
                "title": "Performance status",
                "fields": [
                    {
                        "id": "performance_status",
                        "type": "radio",
                        "label": performance_label,
                        "required": True,
                        "options": performance_options,
                    },
                    {"id": "performance_status_notes", "type": "free_text", "label": "Performance status notes"},
                ],
            },
            {
                "id": "notes",
                "title": "Notes",
                "fields": [
                    {"id": "assessor_notes", "type": "free_text", "label": "Assessor notes", "max_length": 2000},
                ],
            },
        ],
    }


ONCOLOGY_BASELINE = _baseline(
    "oncology",
    "Standard oncology baseline assessment form",
    symptoms=[
        _symptom("fatigue", "Fatigue"),
        _symptom("nausea", "Nausea"),
        _symptom("pain", "Pain"),
        _symptom("appetite_loss", "Loss of Appetite"),
        _symptom("sleep_disturbance", "Sleep Disturbance"),
    ],
    treatments=[
        ("chemotherapy", "Chemotherapy", [
            ("induction", "Induction Therapy"),
            ("maintenance", "Maintenance Therapy"),
            ("salvage", "Salvage Therapy"),
        ]),
        ("radiation", "Radiation Therapy", [
            ("external_beam", "External Beam Radiation"),
            ("brachytherapy", "Brachytherapy"),
        ]),
        ("surgery", "Surgery", [
            ("resection", "Tumor Resection"),
            ("biopsy", "Biopsy"),
        ]),
    ],
    measurements=[
        _measurement("height", "Height", "cm", 50, 250, True),
        _measurement("weight", "Weight", "kg", 20, 300, True),
        _measurement("bmi", "BMI", "kg/m2", 10, 60, False),
    ],
    performance_label="ECOG performance status",
    performance_options=ECOG_OPTIONS,
    extra_assessment_fields=[
        {
            "id": "disease_stage",
            "type": "single_select",
            "label": "Disease stage",
            "options": [
                {"value": "localized", "label": "Localized"},
                {"value": "locally_advanced", "label": "Locally advanced"},
                {"value": "metastatic", "label": "Metastatic"},
            ],
        },
        {
            "id": "metastatic_sites",
            "type": "text",
            "label": "Metastatic sites",
            "max_length": 500,
            "visible_when": {"field": "disease_stage", "equals": "metastatic"},
        },
    ],
)

CARDIOLOGY_BASELINE = _baseline(
    "cardiology",
    "Standard cardiology baseline assessment form",
    symptoms=[
        _symptom("chest_pain", "Chest Pain"),
        _symptom("shortness_of_breath", "Shortness of Breath"),
        _symptom("palpitations", "Palpitations"),
        _symptom("fatigue", "Fatigue"),
        _symptom("edema", "Swelling/Edema"),
    ],
    treatments=[
        ("medication", "Cardiac Medications", [
            ("ace_inhibitors", "ACE Inhibitors"),
            ("beta_blockers", "Beta Blockers"),
            ("diuretics", "Diuretics"),
            ("antiarrhythmics", "Antiarrhythmic Drugs"),
        ]),
        ("procedure", "Cardiac Procedures", [
            ("catheterization", "Cardiac Catheterization"),
            ("angioplasty", "Angioplasty"),
            ("stent", "Stent Placement"),
            ("bypass", "Bypass Surgery"),
        ]),
        ("device", "Cardiac Devices", [
            ("pacemaker", "Pacemaker"),
            ("icd", "Implantable Cardioverter Defibrillator"),
            ("crt", "Cardiac Resynchronization Therapy"),
        ]),
    ],
    measurements=[
        _measurement("blood_pressure_systolic", "Systolic BP", "mmHg", 60, 300, True),
        _measurement("blood_pressure_diastolic", "Diastolic BP", "mmHg", 30, 200, True),
        _measurement("heart_rate", "Heart Rate", "bpm", 30, 200, True),
        _measurement("ejection_fraction", "Ejection Fraction", "%", 10, 80, False),
    ],
    performance_label="NYHA functional class",
    performance_options=NYHA_OPTIONS,
)

SYSTEM_BASELINE = _baseline(
    None,
    "Generic baseline assessment form",
    symptoms=[
        _symptom("fatigue", "Fatigue"),
        _symptom("pain", "Pain"),
        _symptom("nausea", "Nausea"),
    ],
    treatments=[
        ("medication", "Medication", [("ongoing", "Ongoing"), ("completed", "Completed")]),
        ("procedure", "Procedure", [("planned", "Planned"), ("completed", "Completed")]),
    ],
    measurements=[
        _measurement("height", "Height", "cm", 50, 250, False),
        _measurement("weight", "Weight", "kg", 20, 300, False),
    ],
    performance_label="ECOG performance status",
    performance_options=ECOG_OPTIONS,
)

# specialty -> form kind -> document
SPECIALTY_DEFAULTS: dict[str, dict[str, dict[str, Any]]] = {
    "oncology": {BASELINE_FORM_KIND: ONCOLOGY_BASELINE},
    "cardiology": {BASELINE_FORM_KIND: CARDIOLOGY_BASELINE},
}

SYSTEM_DEFAULTS: dict[str, dict[str, Any]] = {
    BASELINE_FORM_KIND: SYSTEM_BASELINE,
}


def specialty_default(specialty: str, form_kind: str) -> dict[str, Any] | None:
    document = SPECIALTY_DEFAULTS.get(specialty, {}).get(form_kind)
    return deepcopy(document) if document is not None else None


def system_default(form_kind: str) -> dict[str, Any] | None:
    document = SYSTEM_DEFAULTS.get(form_kind)
    return deepcopy(document) if document is not None else None
