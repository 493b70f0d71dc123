"""Scored prioritization payload: lenient schema, backfill and plan conversion.

Both engines ask the model for the same JSON shape (thoughts, included and
excluded tasks, ordering, per-task scores). This module validates that shape
after repairing the most common omission, a missing score for an included
task, and converts it into a raw plan mapping for the result parser.
"""

import json
from collections.abc import Mapping
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from waypoint.core.exceptions import ParseFailure, ValidationFailure
from waypoint.core.models import (
    AnnotationState,
    DetectionMethod,
    ExcludedTask,
    RelationshipType,
)
from waypoint.parsing.result_parser import strip_code_fences

logger = structlog.get_logger(__name__)

BACKFILL_EFFORT_HOURS = 8.0
FALLBACK_REASONING = "Auto-generated fallback score based on inclusion reasoning."


class Thoughts(BaseModel):
    """Model's stated reasoning for the draft."""

    model_config = ConfigDict(extra="ignore")

    outcome_analysis: str = ""
    filtering_rationale: str = ""
    prioritization_strategy: str = ""
    self_check_notes: str = ""


class IncludedTask(BaseModel):
    model_config = ConfigDict(extra="ignore")

    task_id: str = Field(..., min_length=1)
    inclusion_reason: str = ""
    alignment_score: float | None = Field(default=None, ge=0.0, le=10.0)


class TaskScore(BaseModel):
    """Per-task impact/effort estimate."""

    model_config = ConfigDict(extra="ignore")

    task_id: str = Field(..., min_length=1)
    impact: float = Field(..., ge=0.0, le=10.0)
    effort: float = Field(..., ge=0.5, le=160.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str | dict[str, Any] | None = None
    brief_reasoning: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    reflection_influence: str | None = None


class ScoredResult(BaseModel):
    """Lenient version of the generator's output contract."""

    model_config = ConfigDict(extra="ignore")

    thoughts: Thoughts = Field(default_factory=Thoughts)
    included_tasks: list[IncludedTask] = Field(..., min_length=1)
    excluded_tasks: list[ExcludedTask] = Field(default_factory=list)
    ordered_task_ids: list[str] = Field(..., min_length=1)
    per_task_scores: dict[str, TaskScore] = Field(default_factory=dict)
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    critical_path_reasoning: str = ""
    corrections_made: str = ""

    @model_validator(mode="after")
    def _scores_match_included(self) -> "ScoredResult":
        included = {task.task_id for task in self.included_tasks}
        missing = included - self.per_task_scores.keys()
        if missing:
            raise ValueError(f"Missing per_task_scores entry for included tasks: {sorted(missing)}")
        extra = self.per_task_scores.keys() - included
        if extra:
            raise ValueError(f"per_task_scores entry found for non-included tasks: {sorted(extra)}")
        return self

    @property
    def scored_count(self) -> int:
        return len(self.included_tasks) + len(self.excluded_tasks)


def normalize_per_task_scores(
    raw: Any,
    backfill_confidence: float = 0.5,
    alignment_proxy: float = 5.0,
    prefer_result_confidence: bool = False,
) -> Any:
    """Make ``per_task_scores`` line up with ``included_tasks``.

    Score entries for tasks that are not included are dropped. Every included
    task without a usable entry gets a synthesized one: impact from its
    alignment score (or ``alignment_proxy``), a fixed effort, ``backfill_confidence``
    and its inclusion reason as reasoning. Non-mapping input is returned as is.

    Args:
        raw: Decoded payload
        backfill_confidence: Confidence for synthesized scores
        alignment_proxy: Impact used when an included task has no alignment score
        prefer_result_confidence: Use the payload's overall confidence for
            synthesized scores when it is a number in [0, 1]

    Returns:
        A shallow copy of the payload with repaired scores
    """
    if not isinstance(raw, Mapping):
        return raw

    result = dict(raw)
    overall = result.get("confidence")
    if (
        prefer_result_confidence
        and isinstance(overall, int | float)
        and not isinstance(overall, bool)
        and 0.0 <= overall <= 1.0
    ):
        backfill_confidence = float(overall)

    included = [
        task
        for task in result.get("included_tasks") or []
        if isinstance(task, Mapping) and isinstance(task.get("task_id"), str) and task["task_id"]
    ]
    included_ids = {task["task_id"] for task in included}

    source = result.get("per_task_scores")
    scores = {
        task_id: dict(score, task_id=score.get("task_id") or task_id)
        for task_id, score in (source.items() if isinstance(source, Mapping) else [])
        if task_id in included_ids and isinstance(score, Mapping)
    }

    backfilled = []
    for task in included:
        task_id = task["task_id"]
        if task_id in scores:
            continue
        alignment = task.get("alignment_score")
        reason = task.get("inclusion_reason")
        scores[task_id] = {
            "task_id": task_id,
            "impact": alignment
            if isinstance(alignment, int | float) and not isinstance(alignment, bool)
            else alignment_proxy,
            "effort": BACKFILL_EFFORT_HOURS,
            "confidence": backfill_confidence,
            "reasoning": reason[:300] if isinstance(reason, str) and reason.strip() else FALLBACK_REASONING,
        }
        backfilled.append(task_id)

    if backfilled:
        logger.info("per_task_scores_backfilled", task_ids=backfilled)

    result["per_task_scores"] = scores
    return result


def parse_scored_payload(
    payload: Any,
    backfill_confidence: float = 0.5,
    alignment_proxy: float = 5.0,
    prefer_result_confidence: bool = False,
) -> ScoredResult:
    """Decode, backfill and validate a scored payload.

    Args:
        payload: Model text (optionally fenced) or an already-decoded mapping
        backfill_confidence: Confidence for synthesized scores
        alignment_proxy: Impact used when an included task has no alignment score
        prefer_result_confidence: See normalize_per_task_scores

    Returns:
        Validated ScoredResult

    Raises:
        ParseFailure: If the text is not JSON
        ValidationFailure: If the repaired object does not match the schema
    """
    if isinstance(payload, str):
        body = strip_code_fences(payload)
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as e:
            raise ParseFailure(f"Generator returned invalid JSON: {e.msg}", narrative=body[:500]) from e

    prepared = normalize_per_task_scores(
        payload, backfill_confidence, alignment_proxy, prefer_result_confidence
    )
    try:
        return ScoredResult.model_validate(prepared)
    except ValidationError as e:
        raise ValidationFailure(
            f"Generator output failed validation ({e.error_count()} errors)"
        ) from e


def result_to_plan_payload(result: ScoredResult) -> dict[str, Any]:
    """Map a scored result onto the raw plan shape the result parser accepts.

    All ordered ids go into a single sequential wave; score dependencies
    become prerequisite edges pointing at the scored task.
    """
    confidence_scores = {score.task_id: score.confidence for score in result.per_task_scores.values()}

    dependencies = []
    for score in result.per_task_scores.values():
        for prerequisite in score.dependencies:
            if prerequisite == score.task_id:
                continue
            dependencies.append(
                {
                    "source_task_id": prerequisite,
                    "target_task_id": score.task_id,
                    "relationship_type": RelationshipType.PREREQUISITE.value,
                    "confidence": 1.0,
                    "detection_method": DetectionMethod.AI_INFERENCE.value,
                }
            )

    return {
        "ordered_task_ids": list(result.ordered_task_ids),
        "execution_waves": [
            {
                "wave_number": 1,
                "task_ids": list(result.ordered_task_ids),
                "parallel_execution": False,
            }
        ],
        "dependencies": dependencies,
        "confidence_scores": confidence_scores,
        "synthesis_summary": result.thoughts.prioritization_strategy,
        "task_annotations": [
            {
                "task_id": task.task_id,
                "state": AnnotationState.ACTIVE.value,
                "reasoning": task.inclusion_reason,
                "confidence": confidence_scores.get(task.task_id),
            }
            for task in result.included_tasks
        ],
        "removed_tasks": [
            {"task_id": task.task_id, "removal_reason": task.exclusion_reason}
            for task in result.excluded_tasks
        ],
    }
