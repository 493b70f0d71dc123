"""Core data models for Waypoint."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, Field, field_validator, model_validator


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(UTC)


class TaskSource(str, Enum):
    """Where a candidate task came from."""

    EMBEDDING = "embedding"
    STRUCTURED_OUTPUT = "structured_output"


class RelationshipType(str, Enum):
    """Kind of edge between two tasks."""

    PREREQUISITE = "prerequisite"
    BLOCKS = "blocks"
    RELATED = "related"


class DetectionMethod(str, Enum):
    """How a dependency edge was found."""

    AI_INFERENCE = "ai_inference"
    STORED_RELATIONSHIP = "stored_relationship"


class AnnotationState(str, Enum):
    """Lifecycle state of a task inside a plan."""

    ACTIVE = "active"
    COMPLETED = "completed"
    DISCARDED = "discarded"
    MANUAL_OVERRIDE = "manual_override"
    REINTRODUCED = "reintroduced"


class RunStatus(str, Enum):
    """Terminal status of an engine run or session."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    """Outcome of a single reasoning step."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class ProgressStage(str, Enum):
    """Coarse stage labels pushed to live-status consumers."""

    STARTED = "started"
    SCORING = "scoring"
    REFINING = "refining"
    ORDERING = "ordering"
    COMPLETED = "completed"
    FAILED = "failed"


# ----------------------------------------------------------------------------
# Inputs
# ----------------------------------------------------------------------------


class Outcome(BaseModel):
    """Long-term goal the plan is aligned to."""

    id: str
    user_id: str
    direction: str
    object_text: str
    metric_text: str
    clarifier: str = ""
    assembled_text: str
    state_preference: str | None = None
    daily_capacity_hours: float | None = None


class Reflection(BaseModel):
    """Short, recency-weighted situational note."""

    id: str
    text: str
    created_at: datetime
    weight: float = Field(default=1.0, ge=0.0, le=1.0)
    relative_time: str | None = None


class TaskSummary(BaseModel):
    """Candidate action item plus provenance from the previous plan."""

    task_id: str = Field(..., min_length=1)
    task_text: str
    document_id: str | None = None
    source: TaskSource = TaskSource.EMBEDDING

    # Provenance (derived from the previous plan)
    previous_rank: int | None = Field(default=None, ge=1)
    previous_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    previous_state: AnnotationState | None = None
    removal_reason: str | None = None
    manual_override: bool = False


# ----------------------------------------------------------------------------
# Plan
# ----------------------------------------------------------------------------


class DependencyKey(NamedTuple):
    """Structural identity of a dependency edge."""

    source_task_id: str
    target_task_id: str


class ExecutionWave(BaseModel):
    """Batch of tasks considered at the same priority tier."""

    wave_number: int = Field(..., ge=1)
    task_ids: list[str] = Field(..., min_length=1)
    parallel_execution: bool
    estimated_duration_hours: float | None = Field(default=None, ge=0.0, le=200.0)


class TaskDependency(BaseModel):
    """Directed edge between two tasks."""

    source_task_id: str = Field(..., min_length=1)
    target_task_id: str = Field(..., min_length=1)
    relationship_type: RelationshipType = RelationshipType.PREREQUISITE
    confidence: float = Field(..., ge=0.0, le=1.0)
    detection_method: DetectionMethod = DetectionMethod.AI_INFERENCE

    @model_validator(mode="after")
    def _no_self_edges(self) -> "TaskDependency":
        if self.source_task_id == self.target_task_id:
            raise ValueError(f"task {self.source_task_id} cannot depend on itself")
        return self

    @property
    def key(self) -> DependencyKey:
        return DependencyKey(self.source_task_id, self.target_task_id)


class TaskAnnotation(BaseModel):
    """Per-task rationale attached to a plan."""

    task_id: str = Field(..., min_length=1)
    state: AnnotationState = AnnotationState.ACTIVE
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    reasoning: str | None = None
    dependency_notes: str | None = None
    removal_reason: str | None = None
    previous_rank: int | None = Field(default=None, ge=1)
    manual_override: bool = False

    @field_validator("reasoning", "dependency_notes", "removal_reason")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None


class TaskRemoval(BaseModel):
    """A task that was considered and left out."""

    task_id: str = Field(..., min_length=1)
    removal_reason: str | None = None
    previous_rank: int | None = Field(default=None, ge=1)
    previous_confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class ExcludedTask(BaseModel):
    """Engine-level exclusion record persisted with the session."""

    task_id: str = Field(..., min_length=1)
    task_text: str | None = None
    exclusion_reason: str = "Excluded during prioritization"
    alignment_score: float | None = Field(default=None, ge=0.0, le=10.0)


class Plan(BaseModel):
    """Validated output of one orchestration run."""

    ordered_task_ids: list[str] = Field(..., min_length=1)
    execution_waves: list[ExecutionWave] = Field(default_factory=list)
    dependencies: list[TaskDependency] = Field(default_factory=list)
    confidence_scores: dict[str, float] = Field(default_factory=dict)
    synthesis_summary: str = Field(..., min_length=1)
    task_annotations: list[TaskAnnotation] = Field(default_factory=list)
    removed_tasks: list[TaskRemoval] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("confidence_scores")
    @classmethod
    def _scores_in_range(cls, value: dict[str, float]) -> dict[str, float]:
        for task_id, score in value.items():
            if not 0.0 <= score <= 1.0:
                raise ValueError(f"confidence for {task_id} out of range: {score}")
        return value


# ----------------------------------------------------------------------------
# Incremental context
# ----------------------------------------------------------------------------


class BaselineSummary(BaseModel):
    """Compact description of what the last committed plan already covered."""

    document_ids: list[str] = Field(default_factory=list)
    document_count: int = 0
    task_count: int = 0
    top_task_ids: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    age_hours: float | None = None


class IncrementalContext(BaseModel):
    """Baseline-vs-new partition of the current task pool."""

    baseline: BaselineSummary | None = None
    new_tasks: list[TaskSummary] = Field(default_factory=list)
    total_task_count: int = 0
    is_first_run: bool = True
    token_savings_estimate: int = 0
    savings_ratio: float = 0.0
    baseline_document_ids: list[str] = Field(default_factory=list)
    baseline_created_at: datetime | None = None

    @property
    def new_task_count(self) -> int:
        return len(self.new_tasks)


class ContextCounts(BaseModel):
    """Sizes of the assembled context."""

    task_count: int = 0
    document_count: int = 0
    reflection_count: int = 0


class RuntimeContext(BaseModel):
    """Everything an engine needs for one run."""

    user_id: str
    outcome: Outcome
    reflections: list[Reflection] = Field(default_factory=list)
    tasks: list[TaskSummary] = Field(default_factory=list)
    previous_plan: Plan | None = None
    incremental: IncrementalContext = Field(default_factory=IncrementalContext)
    counts: ContextCounts = Field(default_factory=ContextCounts)

    @property
    def document_ids(self) -> list[str]:
        """Sorted document ids of the task pool actually considered."""
        return sorted({task.document_id for task in self.tasks if task.document_id})


# ----------------------------------------------------------------------------
# Engine results
# ----------------------------------------------------------------------------


class ReasoningStep(BaseModel):
    """One condensed step of how a plan was produced."""

    step_number: int = Field(..., ge=1)
    timestamp: datetime = Field(default_factory=utc_now)
    thought: str | None = None
    tool_name: str | None = None
    tool_input: Any = None
    tool_output: Any = None
    duration_ms: int = Field(default=0, ge=0)
    status: StepStatus = StepStatus.SUCCESS


class ReasoningTrace(BaseModel):
    """Capped, normalized step-by-step record of a run."""

    steps: list[ReasoningStep] = Field(default_factory=list, max_length=10)
    total_duration_ms: int = Field(default=0, ge=0)
    total_steps: int = Field(default=0, ge=0)
    tools_used_count: dict[str, int] = Field(default_factory=dict)


class ExecutionMetadata(BaseModel):
    """Timing, error and tool-usage summary of one engine run."""

    steps_taken: int = Field(default=0, ge=0)
    tool_call_count: dict[str, int] = Field(default_factory=dict)
    thinking_time_ms: int = Field(default=0, ge=0)
    tool_execution_time_ms: int = Field(default=0, ge=0)
    total_time_ms: int = Field(default=0, ge=0)
    error_count: int = Field(default=0, ge=0)
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    status_note: str | None = None
    failed_tools: list[str] = Field(default_factory=list)

    @classmethod
    def zeroed(cls, status_note: str | None = None) -> "ExecutionMetadata":
        """Stub used when a run fails before any engine executes."""
        return cls(error_count=1, success_rate=0.0, status_note=status_note)


class ChainOfThoughtStep(BaseModel):
    """Summary of one generator/evaluator round."""

    iteration: int = Field(..., ge=1, le=3)
    confidence: float = Field(..., ge=0.0, le=1.0)
    corrections: str = Field(default="", max_length=500)
    evaluator_feedback: str | None = Field(default=None, max_length=1000)
    timestamp: datetime = Field(default_factory=utc_now)


class LoopMetadata(BaseModel):
    """What the hybrid loop did to reach its plan."""

    iterations: int = Field(..., ge=1, le=3)
    duration_ms: int = Field(default=0, ge=0)
    evaluation_triggered: bool = False
    converged: bool = False
    final_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    chain_of_thought: list[ChainOfThoughtStep] = Field(default_factory=list, max_length=3)


class EngineRunResult(BaseModel):
    """Uniform outcome of a plan engine, successful or not."""

    engine: str
    status: RunStatus
    plan: Plan | None = None
    metadata: ExecutionMetadata = Field(default_factory=ExecutionMetadata)
    trace: ReasoningTrace | None = None
    loop_metadata: LoopMetadata | None = None
    excluded_tasks: list[ExcludedTask] = Field(default_factory=list)
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.COMPLETED and self.plan is not None


class ProgressEvent(BaseModel):
    """Live-status update pushed while the hybrid loop runs."""

    stage: ProgressStage
    session_id: str | None = None
    progress_pct: float = Field(default=0.0, ge=0.0, le=1.0)
    iteration: int = 0
    total_iterations: int = 0
    scored_tasks: int = 0
    total_tasks: int = 0
    ordered_count: int = 0
    note: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)
