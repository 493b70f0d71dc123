"""Orchestrator for prioritization runs.

The orchestrator is responsible for:
1. Building the runtime context for a session
2. Running the legacy engine, and the hybrid engine when the feature flag is on
3. Selecting the primary result and merging dependency overrides into its plan
4. Persisting the session, its reasoning trace and audit records in one transaction
"""

import asyncio
import time
import uuid
from collections.abc import Sequence

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from waypoint.config import Settings, get_settings
from waypoint.context.builder import ContextBuilder
from waypoint.core.exceptions import ContextBuildFailure, PersistenceFailure
from waypoint.core.models import (
    EngineRunResult,
    ExcludedTask,
    ExecutionMetadata,
    LoopMetadata,
    Plan,
    ProgressEvent,
    ProgressStage,
    ReasoningStep,
    ReasoningTrace,
    RunStatus,
    RuntimeContext,
    StepStatus,
    TaskDependency,
)
from waypoint.database import crud
from waypoint.database.session import session_scope
from waypoint.engines.hybrid import HybridEngine
from waypoint.engines.legacy import LegacyEngine
from waypoint.orchestrator.progress import ProgressChannel
from waypoint.orchestrator.selection import (
    merge_dependency_overrides,
    select_primary,
    summarize_shadow,
)
from waypoint.parsing.result_parser import condense_thought_text

logger = structlog.get_logger(__name__)

SHADOW_RUN_EVENT = "shadow_run"
RUN_PERFORMANCE_EVENT = "run_performance"


class OrchestrationRequest(BaseModel):
    """Input of one orchestration run."""

    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    outcome_id: str
    active_reflection_ids: list[str] | None = None
    excluded_document_ids: list[str] = Field(default_factory=list)
    dependency_overrides: list[TaskDependency] = Field(default_factory=list)


class OrchestrationOutcome(BaseModel):
    """Terminal state of a run as written to the session store."""

    session_id: str
    status: RunStatus
    plan: Plan | None = None
    excluded_tasks: list[ExcludedTask] = Field(default_factory=list)
    baseline_document_ids: list[str] = Field(default_factory=list)
    execution_metadata: ExecutionMetadata
    loop_metadata: LoopMetadata | None = None
    trace: ReasoningTrace | None = None
    status_note: str | None = None
    primary_engine: str | None = None
    used_fallback: bool = False
    persisted: bool = False
    persistence_error: str | None = None


def minimal_trace(
    engine: str | None, status: RunStatus, note: str | None, duration_ms: int
) -> ReasoningTrace:
    """Single-entry trace for runs whose engine produced none."""
    thought = condense_thought_text(note) or f"{engine or 'Orchestrator'} run {status.value}."
    step = ReasoningStep(
        step_number=1,
        thought=thought,
        duration_ms=max(0, duration_ms),
        status=StepStatus.SUCCESS if status == RunStatus.COMPLETED else StepStatus.FAILED,
    )
    return ReasoningTrace(steps=[step], total_duration_ms=max(0, duration_ms), total_steps=1)


class Orchestrator:
    """Runs the plan engines for a session and commits the chosen plan."""

    def __init__(
        self,
        session_factory: sessionmaker,
        context_builder: ContextBuilder,
        legacy_engine: LegacyEngine,
        hybrid_engine: HybridEngine | None = None,
        progress: ProgressChannel | None = None,
        settings: Settings | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            session_factory: Session factory for the relational store
            context_builder: Builds the runtime context
            legacy_engine: Single-shot engine (always run)
            hybrid_engine: Iterative engine, run only when the feature flag is on
            progress: Channel receiving live hybrid progress (optional)
            settings: Settings configuration (defaults to get_settings())
        """
        self.session_factory = session_factory
        self.context_builder = context_builder
        self.legacy_engine = legacy_engine
        self.hybrid_engine = hybrid_engine
        self.progress = progress
        self.settings = settings or get_settings()

    @property
    def hybrid_enabled(self) -> bool:
        return self.settings.enable_hybrid_loop and self.hybrid_engine is not None

    async def orchestrate(self, request: OrchestrationRequest) -> OrchestrationOutcome:
        """Run one prioritization session end to end.

        Never raises for engine or store failures: every run ends with a
        terminal session status, and a failed final write is reported in
        ``persistence_error``.

        Args:
            request: Session, outcome and caller overrides

        Returns:
            OrchestrationOutcome
        """
        structlog.contextvars.bind_contextvars(session_id=request.session_id)
        try:
            return await self._orchestrate(request)
        finally:
            structlog.contextvars.unbind_contextvars("session_id")

    async def _orchestrate(self, request: OrchestrationRequest) -> OrchestrationOutcome:
        started = time.monotonic()
        logger.info(
            "orchestration_started",
            outcome_id=request.outcome_id,
            hybrid_enabled=self.hybrid_enabled,
        )

        try:
            context = await self.context_builder.build(
                request.user_id,
                request.outcome_id,
                active_reflection_ids=request.active_reflection_ids,
                excluded_document_ids=request.excluded_document_ids,
            )
        except ContextBuildFailure as e:
            logger.error("context_build_failed", error=str(e))
            return self._fail_before_engines(request, f"Context build failed: {e}", started)

        legacy, hybrid = await self._run_engines(request, context)
        selection = select_primary(legacy, hybrid, self.hybrid_enabled)
        primary = selection.primary

        plan = primary.plan
        if plan is not None:
            plan = merge_dependency_overrides(plan, request.dependency_overrides)

        duration_ms = int((time.monotonic() - started) * 1000)
        note = primary.metadata.status_note
        status = RunStatus.COMPLETED if primary.succeeded else RunStatus.FAILED

        outcome = OrchestrationOutcome(
            session_id=request.session_id,
            status=status,
            plan=plan,
            excluded_tasks=primary.excluded_tasks,
            baseline_document_ids=context.document_ids,
            execution_metadata=primary.metadata,
            loop_metadata=primary.loop_metadata,
            trace=primary.trace or minimal_trace(primary.engine, status, note, duration_ms),
            status_note=note,
            primary_engine=primary.engine,
            used_fallback=selection.used_fallback,
        )

        audit_events = []
        if selection.shadow is not None:
            shadow_summary = summarize_shadow(selection.shadow)
            logger.info("shadow_run_summary", **shadow_summary)
            audit_events.append((SHADOW_RUN_EVENT, shadow_summary))

        audit_events.append(
            (
                RUN_PERFORMANCE_EVENT,
                {
                    "engine": primary.engine,
                    "status": status.value,
                    "duration_ms": duration_ms,
                    "hybrid_enabled": self.hybrid_enabled,
                    "used_fallback": selection.used_fallback,
                    "evaluation_triggered": bool(
                        primary.loop_metadata and primary.loop_metadata.evaluation_triggered
                    ),
                },
            )
        )

        outcome = self._persist(request, outcome, audit_events)
        logger.info(
            "orchestration_finished",
            status=status.value,
            primary_engine=primary.engine,
            used_fallback=selection.used_fallback,
            duration_ms=duration_ms,
            persisted=outcome.persisted,
        )
        return outcome

    async def _run_engines(
        self, request: OrchestrationRequest, context: RuntimeContext
    ) -> tuple[EngineRunResult, EngineRunResult | None]:
        overrides = request.dependency_overrides

        if not self.hybrid_enabled:
            legacy = await self.legacy_engine.run(context, overrides)
            return legacy, None

        on_progress = self.progress.publisher(request.session_id) if self.progress else None
        legacy, hybrid = await asyncio.gather(
            self.legacy_engine.run(context, overrides),
            self.hybrid_engine.run(context, overrides, on_progress=on_progress),
            return_exceptions=True,
        )
        return (
            self._absorb(self.legacy_engine.name, legacy),
            self._absorb(self.hybrid_engine.name, hybrid),
        )

    def _absorb(self, engine: str, result: EngineRunResult | BaseException) -> EngineRunResult:
        """Turn an exception that escaped an engine into a failed result."""
        if isinstance(result, EngineRunResult):
            return result
        if not isinstance(result, Exception):
            raise result

        logger.error(
            "engine_raised", engine=engine, error=str(result), error_type=type(result).__name__
        )
        return EngineRunResult(
            engine=engine,
            status=RunStatus.FAILED,
            metadata=ExecutionMetadata.zeroed(f"{engine.capitalize()} engine stopped unexpectedly."),
            error=str(result) or type(result).__name__,
        )

    def _fail_before_engines(
        self, request: OrchestrationRequest, note: str, started: float
    ) -> OrchestrationOutcome:
        if self.progress is not None:
            self.progress.publish(
                request.session_id, ProgressEvent(stage=ProgressStage.FAILED, note=note)
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        outcome = OrchestrationOutcome(
            session_id=request.session_id,
            status=RunStatus.FAILED,
            execution_metadata=ExecutionMetadata.zeroed(note),
            trace=minimal_trace(None, RunStatus.FAILED, note, duration_ms),
            status_note=note,
        )
        return self._persist(request, outcome, [])

    def _persist(
        self,
        request: OrchestrationRequest,
        outcome: OrchestrationOutcome,
        audit_events: Sequence[tuple[str, dict]],
    ) -> OrchestrationOutcome:
        try:
            self._write_session(request, outcome, audit_events)
        except PersistenceFailure as e:
            logger.error("session_persist_failed", error=str(e), exc_info=True)
            return outcome.model_copy(update={"persisted": False, "persistence_error": str(e)})
        return outcome.model_copy(update={"persisted": True})

    def _write_session(
        self,
        request: OrchestrationRequest,
        outcome: OrchestrationOutcome,
        audit_events: Sequence[tuple[str, dict]],
    ) -> None:
        """Write the session, its trace and audit records in one transaction.

        Raises:
            PersistenceFailure: If the store rejects the write
        """
        try:
            with session_scope(self.session_factory) as session:
                crud.save_session_result(
                    session,
                    session_id=outcome.session_id,
                    user_id=request.user_id,
                    outcome_id=request.outcome_id,
                    status=outcome.status.value,
                    prioritized_plan=outcome.plan.model_dump(mode="json") if outcome.plan else None,
                    excluded_tasks=[task.model_dump(mode="json") for task in outcome.excluded_tasks],
                    baseline_document_ids=outcome.baseline_document_ids,
                    execution_metadata=outcome.execution_metadata.model_dump(mode="json"),
                    loop_metadata=(
                        outcome.loop_metadata.model_dump(mode="json") if outcome.loop_metadata else None
                    ),
                    status_note=outcome.status_note,
                    trace=outcome.trace.model_dump(mode="json") if outcome.trace else None,
                )
                for event_type, details in audit_events:
                    crud.append_audit_event(session, event_type, details, session_id=outcome.session_id)
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to persist session {outcome.session_id}: {e}") from e
