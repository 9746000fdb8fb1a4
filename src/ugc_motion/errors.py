"""Exception taxonomy for the generation pipeline.

Every error raised by the orchestrator or one of its stages derives from
:class:`PipelineError` so callers can catch the family in one place.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional


class PipelineError(RuntimeError):
    """Base error for pipeline orchestration issues."""

    code = "pipeline_error"

    def __init__(self, message: str, *, details: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.details = dict(details or {})


class JobNotFoundError(PipelineError):
    code = "job_not_found"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}", details={"job_id": job_id})
        self.job_id = job_id


class ItemNotFoundError(PipelineError):
    """A composite, synthesis call or clip URL that the job does not know about."""

    code = "item_not_found"

    def __init__(self, job_id: str, item: str) -> None:
        super().__init__(f"Job {job_id} has no item {item}", details={"job_id": job_id, "item": item})
        self.item = item


class PlanningError(PipelineError):
    """Planner unreachable or returned output that cannot be parsed into a plan."""

    code = "planning_failed"


class PlanValidationError(PipelineError):
    """A plan failed validation; ``errors`` lists every violated check."""

    code = "plan_invalid"

    def __init__(self, errors: Iterable[str], warnings: Iterable[str] = ()) -> None:
        self.errors = list(errors)
        self.warnings = list(warnings)
        super().__init__(
            "Plan validation failed: " + "; ".join(self.errors),
            details={"errors": self.errors, "warnings": self.warnings},
        )


class GenerationError(PipelineError):
    """A composite or synthesis item failed after exhausting its retries."""

    code = "generation_failed"

    def __init__(self, message: str, *, stage: str, item_ids: Iterable[str] = ()) -> None:
        self.stage = stage
        self.item_ids = list(item_ids)
        super().__init__(message, details={"stage": stage, "item_ids": self.item_ids})


class DependencyTimeoutError(PipelineError):
    """Composites needed by synthesis calls did not complete in time."""

    code = "dependency_timeout"


class AssemblyError(PipelineError):
    """A referenced clip source could not be resolved or extracted."""

    code = "assembly_failed"


class StorageError(PipelineError):
    code = "storage_failed"


__all__ = [
    "PipelineError",
    "JobNotFoundError",
    "ItemNotFoundError",
    "PlanningError",
    "PlanValidationError",
    "GenerationError",
    "DependencyTimeoutError",
    "AssemblyError",
    "StorageError",
]
