"""Shared builders for unit tests."""

from waypoint.core.models import (
    EngineRunResult,
    ExecutionMetadata,
    Plan,
    RunStatus,
    TaskSummary,
)
from waypoint.generation.client import GenerationResponse
from waypoint.parsing.result_parser import (
    build_confidence_scores,
    build_default_waves,
    ensure_plan_consistency,
)


def make_task(task_id: str, document_id: str | None = "doc-1", **overrides) -> TaskSummary:
    """Helper to create a task summary with default values."""
    return TaskSummary(
        task_id=task_id, task_text=f"Task {task_id}", document_id=document_id, **overrides
    )


def make_response(text: str) -> GenerationResponse:
    """Helper to wrap model text in a generation response."""
    return GenerationResponse(text=text, input_tokens=10, output_tokens=20, model="test-model")


def make_plan(task_ids: list[str], summary: str = "Plan summary") -> Plan:
    """Helper to create a consistent plan keeping the given order."""
    return ensure_plan_consistency(
        Plan(
            ordered_task_ids=task_ids,
            execution_waves=build_default_waves(task_ids),
            confidence_scores=build_confidence_scores(task_ids),
            synthesis_summary=summary,
        )
    )


def completed_result(engine: str, task_ids: list[str], **overrides) -> EngineRunResult:
    """Helper to create a completed engine result."""
    return EngineRunResult(
        engine=engine,
        status=RunStatus.COMPLETED,
        plan=make_plan(task_ids, f"{engine} plan"),
        metadata=ExecutionMetadata(steps_taken=2, total_time_ms=120, success_rate=1.0),
        **overrides,
    )


def failed_result(engine: str, note: str = "Engine failed.", **overrides) -> EngineRunResult:
    """Helper to create a failed engine result."""
    return EngineRunResult(
        engine=engine,
        status=RunStatus.FAILED,
        metadata=ExecutionMetadata(error_count=1, success_rate=0.0, status_note=note),
        error="boom",
        **overrides,
    )
