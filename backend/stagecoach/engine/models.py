"""Pydantic models shared by the execution engine and its collaborators."""

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator

SKIPPED_MESSAGE = "Skipped due to previous stage failure"
BUSY_MESSAGE = "Another script is being executed"

EventType = Literal["stdout", "stderr", "close", "error", "ping"]
ExecutionStatus = Literal["running", "success", "failed"]

# Ordered name -> value associations carried between the stages of one run.
VariableMap = dict[str, str]


# ============================================================================
# Stored configuration (read-only for the engine)
# ============================================================================


class Stage(BaseModel):
    """One script unit of a pipeline."""

    id: int
    stage_id: str
    script: str
    order: int = 0


class Pipeline(BaseModel):
    """Ordered stages bound to a project and a trigger route."""

    id: int
    project_id: int | None = None
    trigger_route: str
    args: list[str] = Field(default_factory=list)
    stages: list[Stage] = Field(default_factory=list)

    @field_validator("stages", mode="after")
    @classmethod
    def sort_by_creation(cls, v: list[Stage]) -> list[Stage]:
        """Keep stages in creation order regardless of storage order."""
        return sorted(v, key=lambda stage: (stage.order, stage.id))


class Project(BaseModel):
    """A deployable project owning exactly one pipeline."""

    id: int
    title: str
    working_directory: str | None = None
    pipeline: Pipeline
    cron_expression: str | None = None

    @field_validator("cron_expression", mode="before")
    @classmethod
    def blank_cron_is_none(cls, v: str | None) -> str | None:
        if isinstance(v, str) and not v.strip():
            return None
        return v


# ============================================================================
# Per-run values
# ============================================================================


class ExecutionContext(BaseModel):
    """Who and what a run is for; user_id is None for scheduled runs."""

    user_id: int | None = None
    project_id: int | None = None
    stage_id: int | None = None
    working_directory: str | None = None


class ExecutionResult(BaseModel):
    """Outcome of one shell process."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None


class StageResult(BaseModel):
    """Outcome of one stage; exit_code None means the stage was skipped."""

    stage_id: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None

    @property
    def skipped(self) -> bool:
        return self.exit_code is None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class PipelineResult(BaseModel):
    """Aggregate outcome of a pipeline run."""

    success: bool
    results: list[StageResult] = Field(default_factory=list)
    busy: bool = False
    message: str | None = None

    @classmethod
    def busy_response(cls) -> "PipelineResult":
        return cls(success=False, busy=True, message=BUSY_MESSAGE)

    @property
    def failed_stage(self) -> StageResult | None:
        """First stage that ran and did not exit cleanly."""
        for result in self.results:
            if result.exit_code not in (0, None):
                return result
        return None


class ExecutionEvent(BaseModel):
    """One message on an execution's broadcast channel."""

    type: EventType
    execution_id: str
    stage_id: str | None = None
    data: str | None = None
    stdout: str | None = None
    stderr: str | None = None
    exit_code: int | None = None
    message: str | None = None
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def is_terminal(self) -> bool:
        return self.type in ("close", "error")


# ============================================================================
# History records
# ============================================================================


class ExecutionUpdate(BaseModel):
    """Fields written back to a history record when a stage finishes."""

    status: ExecutionStatus
    output: str = ""
    error_output: str = ""
    exit_code: int | None = None
    duration_ms: int = 0


class ExecutionRecord(BaseModel):
    """One row of execution history."""

    id: str
    user_id: int | None = None
    project_id: int | None = None
    stage_id: int | None = None
    command: str
    working_directory: str | None = None
    status: ExecutionStatus = "running"
    output: str | None = None
    error_output: str | None = None
    exit_code: int | None = None
    duration_ms: int | None = None
    executed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    finished_at: datetime | None = None

    def apply(self, update: ExecutionUpdate) -> "ExecutionRecord":
        """Return a copy with the update applied."""
        record = self.model_copy(update=update.model_dump())
        if update.status != "running":
            record.finished_at = datetime.now(timezone.utc)
        return record
