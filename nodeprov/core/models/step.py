"""
Step and StepResult models — the pipeline's execution contract.

Steps describe requested work. StepResults describe what happened.
The pipeline creates a fresh StepResult for every step it reaches in
a run; nothing here is persisted between runs.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from nodeprov.core.models.actions import Action

StepStatus = Literal["skipped", "applied", "failed"]


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class Step(BaseModel):
    """One node in the provisioning graph.

    Attributes:
        name:       Unique identity.
        action:     What the step does.
        depends_on: Steps that must complete (applied or skipped) first.
        requires:   Output names this step reads from the build context.
        exports:    Outputs this step makes available to later steps.
    """

    name: str
    action: Action
    depends_on: list[str] = Field(default_factory=list)
    requires: list[str] = Field(default_factory=list)
    exports: dict[str, str] = Field(default_factory=dict)
    description: str = ""

    @property
    def idempotency_key(self) -> str:
        """The live-system check that decides whether this step is done."""
        return self.action.idempotency_key


class StepResult(BaseModel):
    """Outcome of one step in one run."""

    step: str
    status: StepStatus
    error_kind: str | None = None
    error: str | None = None
    detail: str = ""
    changed: list[str] = Field(default_factory=list)      # files written
    restarted: list[str] = Field(default_factory=list)    # services restarted
    started_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0

    @property
    def applied(self) -> bool:
        return self.status == "applied"

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    @classmethod
    def skip(cls, step: str, reason: str = "", **kwargs: Any) -> StepResult:
        """Create a skipped result (idempotency check satisfied)."""
        return cls(step=step, status="skipped", detail=reason, **kwargs)

    @classmethod
    def success(cls, step: str, detail: str = "", **kwargs: Any) -> StepResult:
        """Create an applied result."""
        return cls(step=step, status="applied", detail=detail, **kwargs)

    @classmethod
    def failure(cls, step: str, error_kind: str, error: str, **kwargs: Any) -> StepResult:
        """Create a failed result."""
        return cls(
            step=step,
            status="failed",
            error_kind=error_kind,
            error=error,
            **kwargs,
        )


class PipelineState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


class PipelineResult(BaseModel):
    """Result of one pipeline run."""

    status: Literal["completed", "aborted"]
    steps: list[StepResult] = Field(default_factory=list)
    failed_step: str | None = None
    error_kind: str | None = None
    error: str | None = None
    exit_code: int = 0

    @property
    def completed(self) -> bool:
        return self.status == "completed"

    @property
    def applied(self) -> list[str]:
        return [r.step for r in self.steps if r.applied]

    @property
    def skipped(self) -> list[str]:
        return [r.step for r in self.steps if r.skipped]

    @property
    def restarts(self) -> list[str]:
        """Every service restarted during the run, in order."""
        return [svc for r in self.steps for svc in r.restarted]

    def result_for(self, step: str) -> StepResult | None:
        for r in self.steps:
            if r.step == step:
                return r
        return None

    def diagnostic(self) -> str:
        """Single-line description of the outcome."""
        if self.completed:
            return (
                f"provisioning completed: {len(self.applied)} applied, "
                f"{len(self.skipped)} skipped"
            )
        return f"step '{self.failed_step}' failed ({self.error_kind}): {self.error}"

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "failed_step": self.failed_step,
            "error_kind": self.error_kind,
            "error": self.error,
            "exit_code": self.exit_code,
            "steps": [r.model_dump(mode="json") for r in self.steps],
        }
