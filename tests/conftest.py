"""Shared fixtures – an in-memory SQLite database and a small form covering every field type."""

import os
from copy import deepcopy

from cryptography.fernet import Fernet

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("PHI_ENCRYPTION_KEY", Fernet.generate_key().decode())

import pytest  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import clinical_forms.models.forms  # noqa: E402,F401
from clinical_forms.engine.config_validator import validate_configuration  # noqa: E402
from clinical_forms.engine.resolver import resolution_cache  # noqa: E402
from clinical_forms.models.database import Base  # noqa: E402

INTAKE_DOCUMENT = {
    "form_kind": "intake",
    "metadata": {"description": "Test intake form"},
    "sections": [
        {
            "id": "general",
            "title": "General",
            "fields": [
                {"id": "visit_date", "type": "date", "label": "Visit date", "required": True},
                {"id": "weight", "type": "number", "label": "Weight", "unit": "kg", "min": 20, "max": 300},
                {"id": "age", "type": "number", "label": "Age", "integer": True, "min": 0, "max": 120},
                {"id": "initials", "type": "text", "label": "Initials", "max_length": 3, "pattern": "^[A-Z]+$"},
                {
                    "id": "stage",
                    "type": "single_select",
                    "label": "Stage",
                    "options": [{"value": "early", "label": "Early"}, {"value": "advanced", "label": "Advanced"}],
                },
                {
                    "id": "advanced_details",
                    "type": "text",
                    "label": "Advanced details",
                    "required": True,
                    "visible_when": {"field": "stage", "equals": "advanced"},
                },
                {
                    "id": "ecog",
                    "type": "radio",
                    "label": "ECOG",
                    "options": [
                        {"value": "0", "label": "Fully active"},
                        {"value": "1", "label": "Restricted"},
                        {"value": "2", "label": "Ambulatory"},
                    ],
                },
            ],
        },
        {
            "id": "symptoms",
            "title": "Symptoms",
            "fields": [
                {
                    "id": "symptoms",
                    "type": "checkbox_group_severity",
                    "label": "Symptoms",
                    "options": [
                        {"value": "fatigue", "label": "Fatigue", "has_severity": True},
                        {"value": "pain", "label": "Pain", "has_severity": True},
                        {"value": "rash", "label": "Rash"},
                        {"value": "none", "label": "No symptoms", "exclusive": True},
                    ],
                    "severity_scale": {"min": 1, "max": 4, "labels": ["Mild", "Moderate", "Severe", "Very Severe"]},
                },
                {
                    "id": "conditions",
                    "type": "checkbox_group",
                    "label": "Known conditions",
                    "options": [
                        {"value": "diabetes", "label": "Diabetes"},
                        {"value": "hypertension", "label": "Hypertension"},
                        {"value": "none_known", "label": "None known", "exclusive": True},
                    ],
                },
            ],
        },
        {
            "id": "treatment",
            "title": "Treatment",
            "fields": [
                {
                    "id": "treatment_line",
                    "type": "cascading_select",
                    "label": "Treatment",
                    "steps": [
                        {
                            "id": "category",
                            "label": "Category",
                            "options": [
                                {"value": "chemotherapy", "label": "Chemotherapy"},
                                {"value": "radiation", "label": "Radiation"},
                            ],
                        },
                        {
                            "id": "regimen",
                            "label": "Regimen",
                            "depends_on_step": "category",
                            "options_by_parent": {
                                "chemotherapy": [
                                    {"value": "induction", "label": "Induction"},
                                    {"value": "maintenance", "label": "Maintenance"},
                                ],
                                "radiation": [{"value": "external_beam", "label": "External beam"}],
                            },
                        },
                    ],
                },
                {"id": "treatment_details", "type": "free_text", "label": "Treatment details"},
            ],
        },
        {
            "id": "retired",
            "title": "Retired",
            "enabled": False,
            "fields": [
                {"id": "old_score", "type": "number", "label": "Old score", "required": True},
            ],
        },
    ],
}


@pytest.fixture
def intake_document():
    return deepcopy(INTAKE_DOCUMENT)


@pytest.fixture
def intake(intake_document):
    """The intake document, certified."""
    result = validate_configuration(intake_document)
    assert result.ok, result.errors
    return result.configuration


@pytest.fixture
def db():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)

    # pysqlite only issues SAVEPOINT correctly when SQLAlchemy emits BEGIN itself.
    @event.listens_for(engine, "connect")
    def _autocommit_driver(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture(autouse=True)
def _clear_resolution_cache():
    resolution_cache.invalidate()
    yield
    resolution_cache.invalidate()
