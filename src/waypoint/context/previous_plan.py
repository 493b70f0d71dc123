"""Load a stored plan written by any historical version of the engine.

Three shapes have been persisted over time. Each is a model with one
explicit conversion into the canonical ``Plan``; they are tried left to right.
"""

import json
from datetime import datetime
from typing import Annotated, Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from waypoint.core.exceptions import ParseFailure, ValidationFailure
from waypoint.core.models import Plan
from waypoint.engines.scoring import parse_scored_payload, result_to_plan_payload
from waypoint.parsing.result_parser import PlanDefaults, coerce_plan, ensure_plan_consistency

logger = structlog.get_logger(__name__)


class CurrentPlan(BaseModel):
    """Canonical plan shape."""

    model_config = ConfigDict(extra="allow")

    ordered_task_ids: list[str] = Field(..., min_length=1)
    execution_waves: list[Any]
    synthesis_summary: str = Field(..., min_length=1)
    created_at: datetime | None = None

    def to_plan(self, defaults: PlanDefaults, **_: Any) -> Plan:
        plan = coerce_plan(self.model_dump(mode="json", exclude={"created_at"}), defaults=defaults)
        if self.created_at is not None:
            plan = plan.model_copy(update={"created_at": self.created_at})
        return plan


class IntermediateResult(BaseModel):
    """Scored engine output stored before plans were normalized."""

    model_config = ConfigDict(extra="allow")

    ordered_task_ids: list[str] = Field(..., min_length=1)
    per_task_scores: dict[str, Any]
    included_tasks: list[Any] = Field(default_factory=list)
    excluded_tasks: list[Any] = Field(default_factory=list)
    thoughts: dict[str, Any] | None = None
    confidence: float | None = None

    def to_plan(
        self, defaults: PlanDefaults, backfill_confidence: float = 0.5, alignment_proxy: float = 5.0
    ) -> Plan:
        payload = self.model_dump(mode="json", exclude_none=True)
        if not payload.get("included_tasks"):
            payload["included_tasks"] = [
                {"task_id": task_id} for task_id in (self.per_task_scores or self.ordered_task_ids)
            ]
        result = parse_scored_payload(payload, backfill_confidence, alignment_proxy)
        return coerce_plan(result_to_plan_payload(result), defaults=defaults)


class LegacyEntry(BaseModel):
    task_id: str = Field(..., min_length=1)
    confidence: float | None = None
    reasoning: str | None = None


class LegacyPlan(BaseModel):
    """Flat ranked list from the first release."""

    prioritized_tasks: list[LegacyEntry] = Field(..., min_length=1)
    summary: str | None = None

    def to_plan(self, defaults: PlanDefaults, **_: Any) -> Plan:
        entries = self.prioritized_tasks
        return coerce_plan(
            {
                "ordered_task_ids": [entry.task_id for entry in entries],
                "confidence_scores": {
                    entry.task_id: entry.confidence for entry in entries if entry.confidence is not None
                },
                "synthesis_summary": self.summary or "",
                "task_annotations": [
                    {"task_id": entry.task_id, "reasoning": entry.reasoning}
                    for entry in entries
                    if entry.reasoning
                ],
            },
            defaults=defaults,
        )


StoredPlan = Annotated[
    CurrentPlan | IntermediateResult | LegacyPlan, Field(union_mode="left_to_right")
]
_stored_plan_adapter: TypeAdapter[StoredPlan] = TypeAdapter(StoredPlan)


def load_previous_plan(
    stored: Any,
    defaults: PlanDefaults = PlanDefaults(),
    backfill_confidence: float = 0.5,
    alignment_proxy: float = 5.0,
) -> Plan | None:
    """Convert a stored plan (object or JSON string) into a consistent Plan.

    Returns:
        Plan, or None if the value matches none of the known shapes
    """
    if stored is None:
        return None

    if isinstance(stored, str):
        try:
            stored = json.loads(stored)
        except json.JSONDecodeError:
            logger.warning("previous_plan_not_json")
            return None

    try:
        variant = _stored_plan_adapter.validate_python(stored)
    except ValidationError:
        logger.warning("previous_plan_unrecognized_shape")
        return None

    try:
        plan = variant.to_plan(
            defaults, backfill_confidence=backfill_confidence, alignment_proxy=alignment_proxy
        )
    except (ParseFailure, ValidationFailure) as e:
        logger.warning(
            "previous_plan_conversion_failed", variant=type(variant).__name__, error=str(e)
        )
        return None

    logger.debug("previous_plan_loaded", variant=type(variant).__name__)
    return ensure_plan_consistency(plan, defaults.wave_chunk_size)
