"""
FastAPI application entrypoint.

Run locally:  uvicorn clinical_forms.main:app --reload
"""

import logging

from fastapi import FastAPI

from clinical_forms.api.routes import router
from clinical_forms.config import settings
from clinical_forms.models.database import Base, engine

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(levelname)s | %(name)s | %(message)s",
)

app = FastAPI(
    title="Clinical Forms API",
    description=(
        "Per-team dynamic clinical form configurations: certification, "
        "versioned activation, server-side answer validation and storage."
    ),
    version="1.0.0",
)

app.include_router(router, prefix="/api/v1")


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
