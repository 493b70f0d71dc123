"""Pure policies applied after the engines have run."""

from collections.abc import Sequence
from typing import Any, NamedTuple

from waypoint.core.models import (
    DependencyKey,
    EngineRunResult,
    ExecutionMetadata,
    Plan,
    RunStatus,
    TaskDependency,
)
from waypoint.parsing.result_parser import ensure_plan_consistency

POST_FALLBACK_NOTE = "Hybrid loop failed; using legacy plan."


class Selection(NamedTuple):
    """Which engine result is committed and which is only logged."""

    primary: EngineRunResult
    shadow: EngineRunResult | None
    used_fallback: bool = False


def _with_fallback_note(result: EngineRunResult, hybrid: EngineRunResult) -> EngineRunResult:
    hybrid_note = hybrid.metadata.status_note if hybrid.metadata else None
    note = POST_FALLBACK_NOTE if not hybrid_note else f"{POST_FALLBACK_NOTE} {hybrid_note}"
    metadata = (result.metadata or ExecutionMetadata()).model_copy(update={"status_note": note})
    return result.model_copy(update={"metadata": metadata})


def select_primary(
    legacy: EngineRunResult,
    hybrid: EngineRunResult | None,
    hybrid_enabled: bool,
) -> Selection:
    """Pick the primary result.

    - flag off (or no hybrid run): legacy is primary, no shadow
    - hybrid completed: hybrid primary, legacy shadow
    - hybrid failed, legacy completed: legacy primary with a fallback note, hybrid shadow
    - both failed: hybrid primary, legacy shadow
    """
    if not hybrid_enabled or hybrid is None:
        return Selection(primary=legacy, shadow=None)

    if hybrid.status == RunStatus.COMPLETED:
        return Selection(primary=hybrid, shadow=legacy)

    if legacy.status == RunStatus.COMPLETED:
        return Selection(
            primary=_with_fallback_note(legacy, hybrid), shadow=hybrid, used_fallback=True
        )

    return Selection(primary=hybrid, shadow=legacy)


def merge_dependency_overrides(plan: Plan, overrides: Sequence[TaskDependency]) -> Plan:
    """Merge caller edges into the plan by (source, target); overrides win."""
    if not overrides:
        return plan

    merged: dict[DependencyKey, TaskDependency] = {dep.key: dep for dep in plan.dependencies}
    for override in overrides:
        merged[override.key] = override

    return ensure_plan_consistency(plan.model_copy(update={"dependencies": list(merged.values())}))


def summarize_shadow(shadow: EngineRunResult) -> dict[str, Any]:
    """Counts and note describing a result that was not committed."""
    plan = shadow.plan
    return {
        "engine": shadow.engine,
        "status": shadow.status.value,
        "ordered_count": len(plan.ordered_task_ids) if plan else 0,
        "excluded_count": len(shadow.excluded_tasks),
        "dependency_count": len(plan.dependencies) if plan else 0,
        "status_note": shadow.metadata.status_note if shadow.metadata else None,
    }
