"""
Answer submission pipeline: resolve -> validate -> normalize -> store.

The configuration is resolved once and pinned in the pipeline context, so
every later step (and the stored record) sees the same version even if the
team activates another one mid-request. Persistence is injected as a
callable, which keeps this module free of database code.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

from clinical_forms.engine.generator import compile_validator
from clinical_forms.engine.resolver import ConfigurationResolver
from clinical_forms.engine.transformer import normalize
from clinical_forms.schemas.form_config import FormConfiguration
from clinical_forms.submission.dag import DAG, RunSummary

logger = logging.getLogger(__name__)

# (pinned configuration, canonical values) -> stored record
PersistFn = Callable[[FormConfiguration, dict[str, Any]], Any]


# ---------------------------------------------------------------------------
# Individual pipeline steps (each receives and returns a context dict)
# ---------------------------------------------------------------------------


def resolve_configuration(context: dict[str, Any]) -> dict[str, Any]:
    """Pin the configuration, unless the caller already pinned one (updates)."""
    if context.get("configuration") is not None:
        return {}
    resolver: ConfigurationResolver = context["resolver"]
    configuration = resolver.resolve(context["team_id"], context["form_kind"])
    return {"configuration": configuration}


def validate_answers(context: dict[str, Any]) -> dict[str, Any]:
    configuration: FormConfiguration = context["configuration"]
    result = compile_validator(configuration).check(context["raw_answers"])
    if not result.ok:
        logger.info(
            "Submission for %s/%s rejected against v%s: %d field error(s)",
            context.get("team_id"),
            configuration.form_kind,
            configuration.version,
            len(result.errors),
        )
        return {"field_errors": result.errors}
    return {"accepted": result.values}


def normalize_answers(context: dict[str, Any]) -> dict[str, Any]:
    return {"values": normalize(context["accepted"], context["configuration"])}


def store_answers(context: dict[str, Any]) -> dict[str, Any]:
    persist: PersistFn = context["persist"]
    return {"record": persist(context["configuration"], context["values"])}


def build_submission_pipeline() -> DAG:
    dag = DAG("answer_submission")
    dag.add_step("resolve_configuration", resolve_configuration)
    dag.add_step("validate_answers", validate_answers, depends_on=["resolve_configuration"])
    dag.add_step("normalize_answers", normalize_answers, depends_on=["validate_answers"])
    dag.add_step("store_answers", store_answers, depends_on=["normalize_answers"])
    return dag


def run_submission(
    raw_answers: Mapping[str, Any],
    *,
    persist: PersistFn,
    team_id: str,
    form_kind: str,
    resolver: ConfigurationResolver | None = None,
    configuration: FormConfiguration | None = None,
) -> RunSummary:
    """Run one submission; pass ``configuration`` to validate against a pinned version."""
    if resolver is None and configuration is None:
        raise ValueError("run_submission needs a resolver or a pinned configuration")
    return build_submission_pipeline().run(
        initial_context={
            "raw_answers": raw_answers,
            "persist": persist,
            "team_id": team_id,
            "form_kind": form_kind,
            "resolver": resolver,
            "configuration": configuration,
        }
    )
