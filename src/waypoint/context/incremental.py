"""Incremental context: send the model only what changed since the baseline.

The baseline is the document-id set of the last committed plan. Tasks from
those documents are summarized in a few lines; tasks from any other document
are sent literally. Pure data shaping, no generation calls.
"""

import json
from collections.abc import Sequence
from datetime import UTC, datetime

import structlog
from pydantic import BaseModel

from waypoint.core.models import BaselineSummary, IncrementalContext, TaskSummary

logger = structlog.get_logger(__name__)

TOKENS_PER_TASK = 50
SUMMARY_TOKENS = 100
TOP_TASK_LIMIT = 10
DOCUMENT_ID_DISPLAY_LIMIT = 10

NO_BASELINE = "No previous baseline."
NO_NEW_TASKS = "No new tasks to analyze."


class IncrementalPromptContext(BaseModel):
    """Rendered incremental sections ready for a prompt."""

    baseline_summary: str
    new_tasks_text: str
    task_count: int
    new_task_count: int


def _age_hours(created_at: datetime | None, now: datetime) -> float | None:
    if created_at is None:
        return None
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=UTC)
    return max(0.0, (now - created_at).total_seconds() / 3600)


def _summarize_baseline(
    baseline_tasks: Sequence[TaskSummary],
    baseline_document_ids: Sequence[str],
    baseline_created_at: datetime | None,
    now: datetime,
) -> BaselineSummary:
    seen_ids = list(dict.fromkeys(task.document_id for task in baseline_tasks if task.document_id))
    document_ids = seen_ids or list(baseline_document_ids)
    return BaselineSummary(
        document_ids=document_ids,
        document_count=len(document_ids),
        task_count=len(baseline_tasks),
        top_task_ids=[task.task_id for task in baseline_tasks[:TOP_TASK_LIMIT]],
        created_at=baseline_created_at,
        age_hours=_age_hours(baseline_created_at, now),
    )


def build_incremental_context(
    tasks: Sequence[TaskSummary],
    baseline_document_ids: Sequence[str] = (),
    baseline_created_at: datetime | None = None,
    now: datetime | None = None,
) -> IncrementalContext:
    """Partition tasks into baseline and new, and estimate the tokens saved.

    A run is a first run when there is no baseline or when every current task
    is new; the prompt then carries every task and savings are zero.

    Args:
        tasks: Current task pool
        baseline_document_ids: Documents covered by the last committed plan
        baseline_created_at: When that plan was committed
        now: Reference time for the baseline age (default: current time)

    Returns:
        IncrementalContext
    """
    now = now or datetime.now(UTC)
    baseline_set = set(baseline_document_ids)

    baseline_tasks = [task for task in tasks if task.document_id and task.document_id in baseline_set]
    new_tasks = [task for task in tasks if not (task.document_id and task.document_id in baseline_set)]

    is_first_run = not baseline_set or not baseline_tasks
    total = len(tasks)

    if is_first_run:
        context = IncrementalContext(
            baseline=None,
            new_tasks=list(tasks),
            total_task_count=total,
            is_first_run=True,
            baseline_document_ids=sorted(baseline_set),
            baseline_created_at=baseline_created_at,
        )
    else:
        savings = max(0, len(baseline_tasks) * TOKENS_PER_TASK - SUMMARY_TOKENS)
        context = IncrementalContext(
            baseline=_summarize_baseline(
                baseline_tasks, list(baseline_document_ids), baseline_created_at, now
            ),
            new_tasks=new_tasks,
            total_task_count=total,
            is_first_run=False,
            token_savings_estimate=savings,
            savings_ratio=round(savings / (TOKENS_PER_TASK * total), 4) if total else 0.0,
            baseline_document_ids=sorted(baseline_set),
            baseline_created_at=baseline_created_at,
        )

    logger.debug(
        "incremental_context_built",
        is_first_run=context.is_first_run,
        total_tasks=total,
        new_tasks=context.new_task_count,
        token_savings_estimate=context.token_savings_estimate,
    )
    return context


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'' if count == 1 else 's'}"


def format_baseline_summary(baseline: BaselineSummary | None) -> str:
    """Render the baseline as a compact prompt block."""
    if baseline is None:
        return NO_BASELINE

    age_text = ""
    if baseline.age_hours is not None:
        age = "less than 1 hour" if baseline.age_hours < 1 else f"{round(baseline.age_hours)} hours"
        age_text = f" ({age} ago)"

    lines = [
        f"BASELINE CONTEXT (previously analyzed{age_text}):",
        f"- {_plural(baseline.document_count, 'document')} with {_plural(baseline.task_count, 'task')}",
    ]

    doc_ids = baseline.document_ids
    if 0 < len(doc_ids) <= DOCUMENT_ID_DISPLAY_LIMIT:
        lines.append(f"- Document IDs: {', '.join(doc_ids)}")
    elif len(doc_ids) > DOCUMENT_ID_DISPLAY_LIMIT:
        shown = ", ".join(doc_ids[:DOCUMENT_ID_DISPLAY_LIMIT])
        lines.append(f"- Document IDs: {shown}, ... ({len(doc_ids) - DOCUMENT_ID_DISPLAY_LIMIT} more)")

    if baseline.top_task_ids:
        lines.append(f"- Top task IDs from baseline: {', '.join(baseline.top_task_ids)}")

    lines.append("")
    lines.append(
        "NOTE: Baseline tasks have already been analyzed and prioritized. "
        "Focus on integrating NEW tasks below with the existing baseline."
    )
    return "\n".join(lines)


def format_task_line(task: TaskSummary) -> str:
    """One compact JSON line describing a task."""
    return json.dumps(
        {
            "id": task.task_id,
            "text": task.task_text,
            "document_id": task.document_id,
            "source": task.source.value,
            "is_manual": task.manual_override,
        },
        separators=(",", ":"),
        ensure_ascii=False,
    )


def format_new_tasks(new_tasks: Sequence[TaskSummary]) -> str:
    if not new_tasks:
        return NO_NEW_TASKS
    return "\n".join(format_task_line(task) for task in new_tasks)


def build_incremental_prompt_context(context: IncrementalContext) -> IncrementalPromptContext:
    return IncrementalPromptContext(
        baseline_summary=format_baseline_summary(context.baseline),
        new_tasks_text=format_new_tasks(context.new_tasks),
        task_count=context.total_task_count,
        new_task_count=context.new_task_count,
    )
