"""Base contract for plan engines."""

import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

import structlog

from waypoint.config import Settings, get_settings
from waypoint.core.exceptions import ParseFailure, ValidationFailure
from waypoint.core.models import (
    EngineRunResult,
    ExcludedTask,
    LoopMetadata,
    Plan,
    ReasoningTrace,
    RunStatus,
    RuntimeContext,
    StepStatus,
    TaskDependency,
)
from waypoint.engines.scoring import ScoredResult, parse_scored_payload, result_to_plan_payload
from waypoint.generation.client import GenerationClient
from waypoint.parsing.result_parser import (
    PlanDefaults,
    build_execution_metadata,
    build_failure_note,
    extract_failed_tools,
    normalize_reasoning_steps,
    parse_plan,
    summarise_tool_usage,
)
from waypoint.tools.registry import PARSER_TOOL, ToolRegistry


class StepLog:
    """Raw step records collected while an engine runs."""

    def __init__(self):
        self.started = time.monotonic()
        self.records: list[dict[str, Any]] = []

    def add(
        self,
        thought: str,
        tool_name: str | None = None,
        duration_ms: int = 0,
        status: StepStatus = StepStatus.SUCCESS,
        tool_output: Any = None,
    ) -> None:
        self.records.append(
            {
                "thought": thought,
                "tool_name": tool_name,
                "duration_ms": max(0, duration_ms),
                "status": status.value,
                "tool_output": tool_output,
            }
        )

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


def elapsed_since(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class PlanEngine(ABC):
    """Base class for the plan engines.

    All engines must implement:
    - name: Engine label stored with results
    - run(): Produce an EngineRunResult; failures are returned, never raised
    """

    def __init__(
        self,
        client: GenerationClient,
        registry: ToolRegistry,
        settings: Settings | None = None,
    ):
        """Initialize the engine.

        Args:
            client: Generation client used for model calls
            registry: Tool registry the engine reports invocations against
            settings: Settings configuration (defaults to get_settings())
        """
        self.client = client
        self.registry = registry
        self.settings = settings or get_settings()
        self.defaults = PlanDefaults.from_settings(self.settings)
        self.logger = structlog.get_logger(self.__module__)

    @property
    @abstractmethod
    def name(self) -> str:
        """Engine label (e.g. "legacy")."""
        pass

    @abstractmethod
    async def run(
        self, context: RuntimeContext, dependency_overrides: Sequence[TaskDependency] = ()
    ) -> EngineRunResult:
        """Produce a plan for the given context.

        Args:
            context: Runtime context for the run
            dependency_overrides: Caller-supplied edges the ordering must respect

        Returns:
            EngineRunResult with status completed or failed
        """
        pass

    def parse_scored(self, text: str, prefer_result_confidence: bool = False) -> ScoredResult:
        """Decode and validate a generator reply against the scored schema."""
        return parse_scored_payload(
            text,
            backfill_confidence=self.settings.backfill_confidence,
            alignment_proxy=self.settings.backfill_alignment_score,
            prefer_result_confidence=prefer_result_confidence,
        )

    def assemble_plan(self, result: ScoredResult, steps: StepLog) -> Plan:
        """Run a scored result through the result parser.

        Raises:
            ValidationFailure: If the parser cannot produce a plan
        """
        started = time.monotonic()
        with self.registry.timed(PARSER_TOOL):
            outcome = parse_plan(result_to_plan_payload(result), self.defaults)
        duration = elapsed_since(started)

        if not outcome.success or outcome.plan is None:
            steps.add(
                f"Result parser rejected the draft: {outcome.error}",
                tool_name=PARSER_TOOL,
                duration_ms=duration,
                status=StepStatus.FAILED,
            )
            raise ValidationFailure(outcome.error or "Result parser returned no plan")

        steps.add(
            f"Parsed plan with {len(outcome.plan.ordered_task_ids)} ordered tasks.",
            tool_name=PARSER_TOOL,
            duration_ms=duration,
        )
        return outcome.plan

    def build_trace(self, steps: StepLog) -> ReasoningTrace:
        normalized = normalize_reasoning_steps(steps.records)
        return ReasoningTrace(
            steps=normalized,
            total_duration_ms=steps.elapsed_ms,
            total_steps=len(normalized),
            tools_used_count=summarise_tool_usage(normalized),
        )

    def completed_result(
        self,
        plan: Plan,
        excluded: Sequence[ExcludedTask],
        steps: StepLog,
        trace: ReasoningTrace | None,
        loop_metadata: LoopMetadata | None = None,
    ) -> EngineRunResult:
        normalized = normalize_reasoning_steps(steps.records)
        return EngineRunResult(
            engine=self.name,
            status=RunStatus.COMPLETED,
            plan=plan,
            metadata=build_execution_metadata(
                normalized, steps.elapsed_ms, registry=self.registry
            ),
            trace=trace,
            loop_metadata=loop_metadata,
            excluded_tasks=list(excluded),
        )

    def failed_result(
        self,
        reason: str,
        error: BaseException,
        context: RuntimeContext,
        steps: StepLog,
        trace: ReasoningTrace | None = None,
        loop_metadata: LoopMetadata | None = None,
    ) -> EngineRunResult:
        """Best-effort failure snapshot with a human-readable note.

        ``reason`` is a fixed sentence; the raw exception only lands in ``error``.
        """
        normalized = normalize_reasoning_steps(steps.records)
        narrative = error.narrative if isinstance(error, ParseFailure) else None
        previous_summary = (
            context.previous_plan.synthesis_summary if context.previous_plan else None
        )
        failed_tools = extract_failed_tools(normalized, registry=self.registry)
        note = build_failure_note(reason, narrative, previous_summary, failed_tools)

        return EngineRunResult(
            engine=self.name,
            status=RunStatus.FAILED,
            plan=None,
            metadata=build_execution_metadata(
                normalized,
                steps.elapsed_ms,
                errors=max(1, sum(1 for step in normalized if step.status == StepStatus.FAILED)),
                status_note=note,
                failed_tools=failed_tools,
            ),
            trace=trace,
            loop_metadata=loop_metadata,
            error=str(error) or type(error).__name__,
        )
