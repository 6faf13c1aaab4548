"""
Pipeline data models.

Templates and stage definitions describe the DAG; runs and run stages track
one execution of it.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field, field_serializer

from shared.models.common import new_id, utc_now
from shared.models.project import Project

ExecutionMode = Literal["sequential", "parallel-per-scene"]
CompletionStrategy = Literal["all-scenes-done", "threshold"]
BackoffType = Literal["exponential", "fixed"]
RunStatus = Literal["pending", "running", "completed", "failed", "cancelled"]
RunStageStatus = Literal["running", "completed", "failed", "skipped"]

TERMINAL_RUN_STATUSES = ("completed", "failed", "cancelled")
SATISFIED_STAGE_STATUSES = ("completed", "skipped")


class StageQueueConfig(BaseModel):
    """Queue settings for a stage's jobs."""

    concurrency: int = Field(default=1, ge=1)
    retries: int = Field(default=3, ge=1, description="Total attempts per job")
    backoff_type: BackoffType = "exponential"
    backoff_delay: int = Field(default=5000, ge=0, description="Backoff delay in milliseconds")


class PipelineStageDefinition(BaseModel):
    """One node of a pipeline template."""

    stage_id: str
    label: str
    execution_mode: ExecutionMode = "sequential"
    completion_strategy: CompletionStrategy = "all-scenes-done"
    completion_threshold: float = Field(default=1.0, gt=0, le=1)
    depends_on: List[str] = Field(default_factory=list)
    queue_name: str
    job_name: str
    queue_config: StageQueueConfig = Field(default_factory=StageQueueConfig)
    progress_percent: int = Field(default=0, ge=0, le=100)
    project_status: Optional[str] = None
    scene_status_on_complete: Optional[str] = None
    can_be_disabled: bool = False
    config_key: Optional[str] = None


class PipelineTemplate(BaseModel):
    """An immutable, versioned DAG of stages."""

    id: str
    name: str
    slug: str
    description: Optional[str] = None
    version: int = 1
    output_type: str = "video"
    stages: List[PipelineStageDefinition]
    default_config: Dict[str, Any] = Field(default_factory=dict)
    is_built_in: bool = False

    def get_stage(self, stage_id: str) -> Optional[PipelineStageDefinition]:
        """Find a stage definition by id."""
        for stage in self.stages:
            if stage.stage_id == stage_id:
                return stage
        return None


class PipelineRun(BaseModel):
    """One execution of a template for a project."""

    id: str = Field(default_factory=new_id)
    project_id: str
    user_id: str
    template_id: str
    template_version: int = 1
    status: RunStatus = "pending"
    frozen_config: Dict[str, Any] = Field(default_factory=dict)
    current_stage_id: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_serializer("started_at", "completed_at", "created_at", "updated_at")
    def serialize_datetime(self, value: Optional[datetime]) -> Optional[str]:
        """Serialize datetime to ISO format string."""
        return value.isoformat() if value else None


class PipelineRunStage(BaseModel):
    """Per-run state of one stage. Counters only move by atomic increments."""

    id: str = Field(default_factory=new_id)
    run_id: str
    stage_id: str
    status: RunStageStatus = "running"
    attempt: int = Field(default=1, ge=1, description="Incremented by each operator retry")
    job_count: Optional[int] = Field(default=None, ge=0, description="None until the handler has prepared jobs")
    completed_jobs: int = Field(default=0, ge=0)
    failed_jobs: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @property
    def finished_jobs(self) -> int:
        return self.completed_jobs + self.failed_jobs


class PreparedJob(BaseModel):
    """A job a stage handler wants enqueued."""

    payload: Dict[str, Any]
    priority: Optional[int] = None
    unit_id: Optional[str] = Field(default=None, description="Scene id for per-scene jobs")


class CompletionCheckResult(BaseModel):
    """Outcome of evaluating a stage's completion."""

    is_complete: bool
    is_failed: bool = False
    completed_jobs: int
    total_jobs: int
    failed_jobs: int = 0
    skipped_units: List[str] = Field(default_factory=list)
    reason: Optional[str] = None


class StageHandlerContext(BaseModel):
    """Everything a stage handler needs to prepare or judge a stage."""

    run: PipelineRun
    stage: PipelineStageDefinition
    project: Project
    run_stage: Optional[PipelineRunStage] = None

    @property
    def stage_config(self) -> Dict[str, Any]:
        """Frozen per-stage config (keyed by config_key, falling back to stage_id)."""
        key = self.stage.config_key or self.stage.stage_id
        value = self.run.frozen_config.get("stages", {}).get(key, {})
        return value if isinstance(value, dict) else {}
