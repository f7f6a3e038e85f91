"""
Lightweight step graph for the submission pipeline.

Steps run in dependency order (Kahn's algorithm via DependencyGraph). Each
step receives the shared context merged with its upstream results and
returns a dict of new context. Two ways a step can stop its dependents:

- returning a non-empty ``field_errors`` list marks it REJECTED (the input
  was bad, nothing went wrong),
- raising marks it FAILED; the exception is kept for raise_for_failure().
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from clinical_forms.engine.graph import DependencyGraph

logger = logging.getLogger(__name__)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    REJECTED = "rejected"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StepNode:
    name: str
    execute_fn: Callable[[dict[str, Any]], dict[str, Any] | None]
    depends_on: list[str] = field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    exception: BaseException | None = None
    duration_ms: float = 0.0


@dataclass
class RunSummary:
    pipeline: str
    status: str
    steps: dict[str, dict[str, Any]]
    context: dict[str, Any]
    exception: BaseException | None = None

    @property
    def field_errors(self) -> list[Any]:
        return self.context.get("field_errors", [])

    def raise_for_failure(self) -> None:
        if self.exception is not None:
            raise self.exception

    def to_dict(self) -> dict[str, Any]:
        return {"pipeline": self.pipeline, "status": self.status, "steps": self.steps}


class DAG:
    """
    A directed acyclic graph of StepNodes.

    Usage:
        dag = DAG("submission")
        dag.add_step("resolve", resolve_fn)
        dag.add_step("validate", validate_fn, depends_on=["resolve"])
        summary = dag.run(initial_context={"raw_answers": {...}})
    """

    def __init__(self, name: str):
        self.name = name
        self.steps: dict[str, StepNode] = {}

    def add_step(
        self,
        name: str,
        execute_fn: Callable[[dict[str, Any]], dict[str, Any] | None],
        depends_on: list[str] | None = None,
    ) -> DAG:
        if name in self.steps:
            raise ValueError(f"Duplicate step name: {name}")
        self.steps[name] = StepNode(name=name, execute_fn=execute_fn, depends_on=depends_on or [])
        return self

    def execution_order(self) -> list[str]:
        graph = DependencyGraph()
        for step in self.steps.values():
            graph.add_node(step.name, step.depends_on)
        return graph.topological_order()

    def run(self, initial_context: dict[str, Any] | None = None) -> RunSummary:
        order = self.execution_order()
        context = dict(initial_context or {})
        steps: dict[str, dict[str, Any]] = {}
        first_exception: BaseException | None = None

        logger.debug("Starting pipeline '%s' with %d steps", self.name, len(self.steps))

        for step_name in order:
            step = self.steps[step_name]

            blocked = [
                dep for dep in step.depends_on
                if self.steps[dep].status in (StepStatus.FAILED, StepStatus.REJECTED, StepStatus.SKIPPED)
            ]
            if blocked:
                step.status = StepStatus.SKIPPED
                logger.debug("Skipping '%s' – upstream %s did not succeed", step_name, ", ".join(blocked))
                steps[step_name] = {"status": step.status.value}
                continue

            for dep in step.depends_on:
                context.update(self.steps[dep].result)

            step.status = StepStatus.RUNNING
            start = time.perf_counter()
            try:
                step.result = step.execute_fn(context) or {}
                step.status = StepStatus.REJECTED if step.result.get("field_errors") else StepStatus.SUCCESS
            except Exception as exc:
                step.status = StepStatus.FAILED
                step.error = str(exc)
                step.exception = exc
                first_exception = first_exception or exc
                logger.error("Step '%s' of '%s' failed: %s", step_name, self.name, exc)
            finally:
                step.duration_ms = (time.perf_counter() - start) * 1000

            if step.status == StepStatus.REJECTED:
                context.update(step.result)

            steps[step_name] = {
                "status": step.status.value,
                "duration_ms": round(step.duration_ms, 2),
                "error": step.error,
            }

        statuses = {s.status for s in self.steps.values()}
        if StepStatus.FAILED in statuses:
            status = "failed"
        elif StepStatus.REJECTED in statuses:
            status = "rejected"
        else:
            status = "completed"
        for step in self.steps.values():
            context.update(step.result)

        logger.info("Pipeline '%s' finished – %s", self.name, status)
        return RunSummary(self.name, status, steps, context, first_exception)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "steps": {name: {"depends_on": step.depends_on} for name, step in self.steps.items()},
        }
