"""Runtime context assembly.

Loads the outcome, reflections, candidate tasks and the previous plan from
the relational store, then derives task provenance and the incremental
(baseline vs new) view the engines prompt with.
"""

import hashlib
from collections.abc import Sequence
from datetime import UTC, datetime

import structlog
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from waypoint.config import Settings, get_settings
from waypoint.context.incremental import build_incremental_context
from waypoint.context.pipeline import EmbeddingPipeline
from waypoint.context.previous_plan import load_previous_plan
from waypoint.core.exceptions import ContextBuildFailure
from waypoint.core.models import (
    AnnotationState,
    ContextCounts,
    Outcome,
    Plan,
    Reflection,
    RuntimeContext,
    TaskSource,
    TaskSummary,
)
from waypoint.database import crud
from waypoint.database.models import ProcessedDocument
from waypoint.database.session import session_scope
from waypoint.parsing.result_parser import PlanDefaults

logger = structlog.get_logger(__name__)


def generate_task_id(task_text: str, document_id: str) -> str:
    """Deterministic id for a task derived from a document."""
    return hashlib.sha256(f"{task_text}||{document_id}".encode()).hexdigest()


def derive_tasks_from_documents(documents: Sequence[ProcessedDocument]) -> list[TaskSummary]:
    """Turn ``structured_output.actions`` of each document into task summaries.

    Actions may be plain strings or objects with a ``text`` field.
    """
    tasks = []
    for document in documents:
        output = document.structured_output if isinstance(document.structured_output, dict) else {}
        actions = output.get("actions") or []
        for index, action in enumerate(actions):
            text = action if isinstance(action, str) else (action or {}).get("text")
            if not isinstance(text, str) or not text.strip():
                continue
            try:
                task = TaskSummary(
                    task_id=generate_task_id(f"{text}:{index}", document.id),
                    task_text=text,
                    document_id=document.id,
                    source=TaskSource.STRUCTURED_OUTPUT,
                )
            except ValidationError as e:
                logger.warning(
                    "invalid_document_action_skipped",
                    document_id=document.id,
                    index=index,
                    errors=e.error_count(),
                )
                continue
            tasks.append(task)
    return tasks


def dedupe_tasks(tasks: Sequence[TaskSummary]) -> list[TaskSummary]:
    """Drop repeated task ids, keeping the first occurrence."""
    unique: dict[str, TaskSummary] = {}
    for task in tasks:
        if task.task_id in unique:
            logger.warning(
                "duplicate_task_dropped", task_id=task.task_id, document_id=task.document_id
            )
            continue
        unique[task.task_id] = task
    return list(unique.values())


def apply_provenance(tasks: Sequence[TaskSummary], previous_plan: Plan | None) -> list[TaskSummary]:
    """Copy each task's rank, confidence, state and removal reason from the previous plan."""
    if previous_plan is None:
        return list(tasks)

    ranks = {task_id: index + 1 for index, task_id in enumerate(previous_plan.ordered_task_ids)}
    annotations = {annotation.task_id: annotation for annotation in previous_plan.task_annotations}
    removals = {removal.task_id: removal for removal in previous_plan.removed_tasks}

    augmented = []
    for task in tasks:
        annotation = annotations.get(task.task_id)
        removal = removals.get(task.task_id)

        state = annotation.state if annotation else None
        if state is None and removal is not None:
            state = AnnotationState.DISCARDED

        removal_reason = (removal.removal_reason if removal else None) or (
            annotation.removal_reason if annotation else None
        )

        augmented.append(
            task.model_copy(
                update={
                    "previous_rank": ranks.get(task.task_id),
                    "previous_confidence": previous_plan.confidence_scores.get(task.task_id),
                    "previous_state": state,
                    "removal_reason": removal_reason,
                    "manual_override": bool(
                        annotation
                        and (annotation.manual_override or state == AnnotationState.MANUAL_OVERRIDE)
                    ),
                }
            )
        )
    return augmented


class ContextBuilder:
    """Assembles a RuntimeContext for one orchestration run."""

    def __init__(
        self,
        session_factory: sessionmaker,
        embedding_pipeline: EmbeddingPipeline | None = None,
        settings: Settings | None = None,
    ):
        """Initialize the builder.

        Args:
            session_factory: Session factory for the relational store
            embedding_pipeline: Hydrates fallback-derived tasks (optional)
            settings: Settings configuration (defaults to get_settings())
        """
        self.session_factory = session_factory
        self.embedding_pipeline = embedding_pipeline
        self.settings = settings or get_settings()

    async def build(
        self,
        user_id: str,
        outcome_id: str,
        active_reflection_ids: Sequence[str] | None = None,
        excluded_document_ids: Sequence[str] | None = None,
    ) -> RuntimeContext:
        """Build the runtime context.

        Args:
            user_id: Owner of the outcome
            outcome_id: Outcome to prioritize against
            active_reflection_ids: Explicit reflections; None loads the recent ones
            excluded_document_ids: Documents whose tasks must not be considered

        Returns:
            RuntimeContext

        Raises:
            ContextBuildFailure: If the outcome is missing, the store fails, or
                assembly stops on any other error
        """
        try:
            return await self._build(
                user_id, outcome_id, active_reflection_ids, excluded_document_ids
            )
        except ContextBuildFailure:
            raise
        except Exception as e:
            logger.error(
                "context_build_error",
                outcome_id=outcome_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            raise ContextBuildFailure(f"Unexpected error while building context: {e}") from e

    async def _build(
        self,
        user_id: str,
        outcome_id: str,
        active_reflection_ids: Sequence[str] | None,
        excluded_document_ids: Sequence[str] | None,
    ) -> RuntimeContext:
        excluded = list(excluded_document_ids or [])

        outcome = self._load_outcome(user_id, outcome_id)
        reflections = self._load_reflections(user_id, active_reflection_ids)

        try:
            tasks = await self._load_tasks(user_id, excluded)
        except SQLAlchemyError as e:
            logger.error("task_pool_load_failed", user_id=user_id, error=str(e))
            raise ContextBuildFailure(f"Failed to load candidate tasks: {e}") from e

        tasks = dedupe_tasks(tasks)

        previous_plan, baseline_ids, baseline_created_at = self._load_previous_plan(
            user_id, outcome_id
        )
        tasks = apply_provenance(tasks, previous_plan)
        incremental = build_incremental_context(tasks, baseline_ids, baseline_created_at)

        context = RuntimeContext(
            user_id=user_id,
            outcome=outcome,
            reflections=reflections,
            tasks=tasks,
            previous_plan=previous_plan,
            incremental=incremental,
            counts=ContextCounts(
                task_count=len(tasks),
                document_count=len({task.document_id for task in tasks if task.document_id}),
                reflection_count=len(reflections),
            ),
        )

        logger.info(
            "context_built",
            outcome_id=outcome_id,
            task_count=context.counts.task_count,
            document_count=context.counts.document_count,
            reflection_count=context.counts.reflection_count,
            has_previous_plan=previous_plan is not None,
            is_first_run=incremental.is_first_run,
        )
        return context

    def _load_outcome(self, user_id: str, outcome_id: str) -> Outcome:
        try:
            with session_scope(self.session_factory) as session:
                record = crud.get_outcome(session, outcome_id)
                if record is None or record.user_id != user_id:
                    raise ContextBuildFailure(f"Outcome {outcome_id} not found for prioritization")
                return Outcome(
                    id=record.id,
                    user_id=record.user_id,
                    direction=record.direction,
                    object_text=record.object_text,
                    metric_text=record.metric_text,
                    clarifier=record.clarifier or "",
                    assembled_text=record.assembled_text,
                    state_preference=record.state_preference,
                    daily_capacity_hours=record.daily_capacity_hours,
                )
        except SQLAlchemyError as e:
            raise ContextBuildFailure(f"Failed to load outcome: {e}") from e

    def _load_reflections(
        self, user_id: str, active_reflection_ids: Sequence[str] | None
    ) -> list[Reflection]:
        try:
            with session_scope(self.session_factory) as session:
                if active_reflection_ids is not None:
                    return crud.get_reflections_by_ids(session, user_id, active_reflection_ids)
                return crud.get_recent_reflections(
                    session,
                    user_id,
                    limit=self.settings.reflection_limit,
                    within_days=self.settings.reflection_window_days,
                    active_only=True,
                )
        except Exception as e:
            logger.warning("reflections_unavailable", user_id=user_id, error=str(e))
            return []

    def _fetch_primary(self, user_id: str, excluded: list[str]) -> list[TaskSummary]:
        with session_scope(self.session_factory) as session:
            rows = crud.get_completed_tasks(
                session, user_id, excluded, limit=self.settings.task_pool_limit
            )
            tasks = []
            for row in rows:
                try:
                    tasks.append(
                        TaskSummary(
                            task_id=row.task_id,
                            task_text=row.task_text,
                            document_id=row.document_id,
                            source=TaskSource.EMBEDDING,
                        )
                    )
                except ValidationError as e:
                    logger.warning(
                        "invalid_task_row_skipped", row_id=row.id, errors=e.error_count()
                    )
            return tasks

    async def _load_tasks(self, user_id: str, excluded: list[str]) -> list[TaskSummary]:
        tasks = self._fetch_primary(user_id, excluded)
        if tasks:
            return tasks

        with session_scope(self.session_factory) as session:
            documents = crud.get_structured_documents(
                session, user_id, excluded, limit=self.settings.fallback_document_limit
            )
            derived = derive_tasks_from_documents(documents)[: self.settings.task_pool_limit]

        logger.info("task_pool_empty_using_documents", derived_count=len(derived))
        if not derived or self.embedding_pipeline is None:
            return derived

        try:
            await self.embedding_pipeline.hydrate(derived)
        except Exception as e:
            logger.error("task_hydration_failed", error=str(e), exc_info=True)
            return derived

        return self._fetch_primary(user_id, excluded) or derived

    def _load_previous_plan(
        self, user_id: str, outcome_id: str
    ) -> tuple[Plan | None, list[str], datetime | None]:
        try:
            with session_scope(self.session_factory) as session:
                latest = crud.get_latest_completed_session(session, user_id, outcome_id)
                if latest is None:
                    return None, [], None
                stored_plan = latest.prioritized_plan
                baseline_ids = list(latest.baseline_document_ids or [])
                created_at = latest.updated_at or latest.created_at

            plan = load_previous_plan(
                stored_plan,
                PlanDefaults.from_settings(self.settings),
                backfill_confidence=self.settings.backfill_confidence,
                alignment_proxy=self.settings.backfill_alignment_score,
            )
        except Exception as e:
            logger.warning("previous_plan_unavailable", outcome_id=outcome_id, error=str(e))
            return None, [], None

        if plan is None:
            return None, [], None
        if created_at is not None and created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=UTC)
        return plan, baseline_ids, created_at
