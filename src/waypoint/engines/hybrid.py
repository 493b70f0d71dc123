"""Hybrid iterative engine: generator drafts, evaluator reviews, generator refines.

The loop stops as soon as a draft is confident enough to skip review, the
evaluator passes it, the evaluator reply cannot be parsed, or the iteration
budget (at most three rounds) is spent. Progress is reported to an optional
callback after every draft.
"""

import asyncio
import json
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, Field, ValidationError

from waypoint.core.exceptions import EngineExecutionFailure, ParseFailure, ValidationFailure
from waypoint.core.models import (
    ChainOfThoughtStep,
    EngineRunResult,
    LoopMetadata,
    Plan,
    ProgressEvent,
    ProgressStage,
    RuntimeContext,
    StepStatus,
    TaskDependency,
)
from waypoint.engines.base import PlanEngine, StepLog, elapsed_since
from waypoint.engines.prompts import (
    EVALUATOR_SYSTEM,
    GENERATOR_SYSTEM,
    render_evaluator_prompt,
    render_generator_prompt,
)
from waypoint.engines.scoring import ScoredResult
from waypoint.parsing.result_parser import strip_code_fences
from waypoint.tools.registry import EVALUATOR_TOOL, GENERATOR_TOOL

MIN_ITERATIONS = 1
MAX_ITERATIONS = 3

# Evaluation trigger thresholds
SKIP_EVALUATION_CONFIDENCE = 0.85
LOW_CONFIDENCE = 0.7
MIN_INCLUDED_TASKS = 10
MAX_CORRECTIONS_CHARS = 100
MAJOR_MOVE_POSITIONS = 5
MAJOR_MOVE_RATIO = 0.3

INITIAL_DRAFT_NOTE = "Initial draft - awaiting evaluator feedback."
REFINEMENT_NOTE = "Refinement iteration completed."

FAILURE_REASONS = {
    asyncio.TimeoutError: "Hybrid loop timed out before producing a plan.",
    ParseFailure: "Hybrid loop generator returned output that was not valid JSON.",
    ValidationFailure: "Hybrid loop output failed plan validation.",
}
GENERIC_FAILURE = "Hybrid loop failed while generating a plan."

ProgressCallback = Callable[[ProgressEvent], None]


class EvaluationStatus(str, Enum):
    """Evaluator verdict."""

    PASS = "PASS"
    NEEDS_IMPROVEMENT = "NEEDS_IMPROVEMENT"
    FAIL = "FAIL"


class CriterionScore(BaseModel):
    score: float = Field(..., ge=0.0, le=10.0)
    notes: str | None = Field(default=None, max_length=500)


class Evaluation(BaseModel):
    """Evaluator reply."""

    status: EvaluationStatus
    feedback: str = Field(..., min_length=1, max_length=2000)
    criteria_scores: dict[str, CriterionScore] = Field(default_factory=dict)


def parse_evaluation(text: str) -> Evaluation | None:
    """Decode an evaluator reply; None when it is not a valid evaluation."""
    try:
        return Evaluation.model_validate(json.loads(strip_code_fences(text)))
    except (json.JSONDecodeError, ValidationError):
        return None


def clamp_iterations(value: int) -> int:
    return min(MAX_ITERATIONS, max(MIN_ITERATIONS, int(value)))


def has_major_movement(ordered_task_ids: Sequence[str], previous_plan: Plan | None) -> bool:
    """True when more than 30% of the ordered tasks moved more than five positions."""
    if previous_plan is None or not previous_plan.ordered_task_ids or not ordered_task_ids:
        return False

    previous_positions = {
        task_id: index + 1 for index, task_id in enumerate(previous_plan.ordered_task_ids)
    }
    major_moves = sum(
        1
        for index, task_id in enumerate(ordered_task_ids)
        if task_id in previous_positions
        and abs(previous_positions[task_id] - (index + 1)) > MAJOR_MOVE_POSITIONS
    )
    return major_moves / len(ordered_task_ids) > MAJOR_MOVE_RATIO


def needs_evaluation(result: ScoredResult, confidence: float, previous_plan: Plan | None) -> bool:
    """Decide whether a draft goes to the evaluator.

    Args:
        result: Generator draft
        confidence: Draft confidence (backfilled when the model omitted it)
        previous_plan: Last committed plan, if any

    Returns:
        True if the draft should be reviewed
    """
    if confidence >= SKIP_EVALUATION_CONFIDENCE:
        return False
    if confidence < LOW_CONFIDENCE:
        return True
    if len(result.included_tasks) < MIN_INCLUDED_TASKS:
        return True
    if len(result.corrections_made or "") > MAX_CORRECTIONS_CHARS:
        return True
    return has_major_movement(result.ordered_task_ids, previous_plan)


def compute_progress_pct(
    stage: ProgressStage,
    scored_tasks: int,
    total_tasks: int,
    iteration: int,
    total_iterations: int,
) -> float:
    """Blend task coverage (35%) and iteration ratio (25%), capped at 0.95 until completion."""
    if stage == ProgressStage.COMPLETED:
        return 1.0
    coverage = min(scored_tasks / total_tasks, 1.0) if total_tasks > 0 else 0.0
    iteration_ratio = min(iteration / total_iterations, 1.0) if total_iterations > 0 else 0.0
    blended = max(0.0, min(0.95, 0.35 * coverage + 0.25 * iteration_ratio))
    return max(0.0 if scored_tasks == 0 else 0.05, blended)


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[: limit - 3]}..."


@dataclass
class LoopState:
    """Mutable progress of one hybrid run, kept for failure snapshots."""

    total_iterations: int
    total_tasks: int
    backfill_confidence: float
    started: float = field(default_factory=time.monotonic)
    iteration: int = 0
    result: ScoredResult | None = None
    chain: list[ChainOfThoughtStep] = field(default_factory=list)
    evaluation_triggered: bool = False
    converged: bool = False

    @property
    def confidence(self) -> float:
        if self.result is None or self.result.confidence is None:
            return self.backfill_confidence
        return self.result.confidence

    def record_draft(self, result: ScoredResult) -> None:
        self.result = result
        fallback = INITIAL_DRAFT_NOTE if self.iteration == 1 else REFINEMENT_NOTE
        self.chain.append(
            ChainOfThoughtStep(
                iteration=self.iteration,
                confidence=self.confidence,
                corrections=_truncate(result.corrections_made or fallback, 500),
            )
        )

    def record_feedback(self, feedback: str) -> None:
        if self.chain:
            self.chain[-1] = self.chain[-1].model_copy(
                update={"evaluator_feedback": _truncate(feedback, 1000)}
            )

    def loop_metadata(self) -> LoopMetadata | None:
        if not self.chain:
            return None
        return LoopMetadata(
            iterations=len(self.chain),
            duration_ms=elapsed_since(self.started),
            evaluation_triggered=self.evaluation_triggered,
            converged=self.converged,
            final_confidence=self.confidence,
            chain_of_thought=list(self.chain),
        )


class HybridEngine(PlanEngine):
    """Generator/evaluator refinement loop with live progress."""

    @property
    def name(self) -> str:
        return "hybrid"

    async def run(
        self,
        context: RuntimeContext,
        dependency_overrides: Sequence[TaskDependency] = (),
        on_progress: ProgressCallback | None = None,
    ) -> EngineRunResult:
        steps = StepLog()
        state = LoopState(
            total_iterations=clamp_iterations(self.settings.hybrid_max_iterations),
            total_tasks=len(context.tasks),
            backfill_confidence=self.settings.backfill_confidence,
        )
        self.logger.info(
            "hybrid_loop_started",
            task_count=state.total_tasks,
            max_iterations=state.total_iterations,
        )

        try:
            result = await asyncio.wait_for(
                self._execute(context, dependency_overrides, steps, state, on_progress),
                timeout=self.settings.engine_timeout_seconds,
            )
        except Exception as e:
            reason = next(
                (text for exc_type, text in FAILURE_REASONS.items() if isinstance(e, exc_type)),
                GENERIC_FAILURE,
            )
            self.logger.error(
                "hybrid_loop_failed",
                error=str(e),
                error_type=type(e).__name__,
                iteration=state.iteration,
                exc_info=True,
            )
            self._emit(on_progress, ProgressStage.FAILED, state, note=reason)
            return self.failed_result(
                reason,
                e,
                context,
                steps,
                trace=self.build_trace(steps),
                loop_metadata=state.loop_metadata(),
            )

        self.logger.info(
            "hybrid_loop_completed",
            iterations=result.loop_metadata.iterations,
            converged=result.loop_metadata.converged,
            evaluation_triggered=result.loop_metadata.evaluation_triggered,
            duration_ms=result.loop_metadata.duration_ms,
        )
        return result

    async def _execute(
        self,
        context: RuntimeContext,
        dependency_overrides: Sequence[TaskDependency],
        steps: StepLog,
        state: LoopState,
        on_progress: ProgressCallback | None,
    ) -> EngineRunResult:
        self._emit(on_progress, ProgressStage.STARTED, state)
        steps.add(
            f"Assembled context with {len(context.tasks)} tasks "
            f"({context.incremental.new_task_count} new) and {len(context.reflections)} reflections."
        )

        state.iteration = 1
        state.record_draft(await self._draft(context, dependency_overrides, steps, state))
        self._emit(on_progress, ProgressStage.SCORING, state)

        state.evaluation_triggered = needs_evaluation(
            state.result, state.confidence, context.previous_plan
        )
        if not state.evaluation_triggered:
            state.converged = True

        while state.evaluation_triggered:
            evaluation = await self._evaluate(context, state.result, steps)
            if evaluation is None:
                state.converged = False
                break

            state.record_feedback(evaluation.feedback)
            if evaluation.status == EvaluationStatus.PASS:
                state.converged = True
                break
            if state.iteration >= state.total_iterations:
                state.converged = False
                break

            state.iteration += 1
            state.record_draft(
                await self._draft(
                    context, dependency_overrides, steps, state, feedback=evaluation.feedback
                )
            )
            self._emit(on_progress, ProgressStage.REFINING, state)

        plan = self.assemble_plan(state.result, steps)
        self._emit(on_progress, ProgressStage.ORDERING, state)

        result = self.completed_result(
            plan,
            state.result.excluded_tasks,
            steps,
            self.build_trace(steps),
            loop_metadata=state.loop_metadata(),
        )
        self._emit(on_progress, ProgressStage.COMPLETED, state)
        return result

    async def _draft(
        self,
        context: RuntimeContext,
        dependency_overrides: Sequence[TaskDependency],
        steps: StepLog,
        state: LoopState,
        feedback: str | None = None,
    ) -> ScoredResult:
        """Ask the generator for a draft, retrying unusable payloads.

        Raises:
            EngineExecutionFailure: If the generation call itself fails
            ParseFailure, ValidationFailure: If every attempt is unusable
        """
        attempts = max(1, self.settings.generator_attempts)
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            prompt = render_generator_prompt(
                context,
                dependency_overrides,
                iteration=state.iteration,
                max_iterations=state.total_iterations,
                chain_of_thought=state.chain,
                evaluation_feedback=feedback,
                retry_attempt=attempt,
            )

            started = time.monotonic()
            try:
                with self.registry.timed(GENERATOR_TOOL):
                    response = await self.client.generate(prompt, system=GENERATOR_SYSTEM)
            except Exception as e:
                steps.add(
                    f"Generation call failed in iteration {state.iteration}.",
                    tool_name=GENERATOR_TOOL,
                    duration_ms=elapsed_since(started),
                    status=StepStatus.FAILED,
                )
                raise EngineExecutionFailure(f"Generation failed: {e}") from e

            try:
                draft = self.parse_scored(response.text, prefer_result_confidence=True)
            except (ParseFailure, ValidationFailure) as e:
                self.logger.warning(
                    "generator_draft_invalid",
                    iteration=state.iteration,
                    attempt=attempt,
                    error=str(e),
                )
                steps.add(
                    f"Draft attempt {attempt} of iteration {state.iteration} was unusable.",
                    tool_name=GENERATOR_TOOL,
                    duration_ms=elapsed_since(started),
                    status=StepStatus.FAILED,
                )
                last_error = e
                continue

            steps.add(
                f"Iteration {state.iteration} draft ordered {len(draft.ordered_task_ids)} tasks.",
                tool_name=GENERATOR_TOOL,
                duration_ms=elapsed_since(started),
            )
            return draft

        raise last_error

    async def _evaluate(
        self, context: RuntimeContext, result: ScoredResult, steps: StepLog
    ) -> Evaluation | None:
        prompt = render_evaluator_prompt(result.model_dump_json(indent=2), context)

        started = time.monotonic()
        try:
            with self.registry.timed(EVALUATOR_TOOL):
                response = await self.client.generate(prompt, system=EVALUATOR_SYSTEM)
        except Exception as e:
            steps.add(
                "Evaluator call failed.",
                tool_name=EVALUATOR_TOOL,
                duration_ms=elapsed_since(started),
                status=StepStatus.FAILED,
            )
            raise EngineExecutionFailure(f"Evaluation failed: {e}") from e

        evaluation = parse_evaluation(response.text)
        if evaluation is None:
            self.logger.warning("evaluator_output_invalid", response_length=len(response.text))
            steps.add(
                "Evaluator reply could not be parsed; keeping the current draft.",
                tool_name=EVALUATOR_TOOL,
                duration_ms=elapsed_since(started),
                status=StepStatus.SKIPPED,
            )
            return None

        steps.add(
            f"Evaluator returned {evaluation.status.value}.",
            tool_name=EVALUATOR_TOOL,
            duration_ms=elapsed_since(started),
        )
        return evaluation

    def _emit(
        self,
        on_progress: ProgressCallback | None,
        stage: ProgressStage,
        state: LoopState,
        note: str | None = None,
    ) -> None:
        if on_progress is None:
            return

        result = state.result
        scored = result.scored_count if result else 0
        event = ProgressEvent(
            stage=stage,
            progress_pct=compute_progress_pct(
                stage, scored, state.total_tasks, state.iteration, state.total_iterations
            ),
            iteration=state.iteration,
            total_iterations=state.total_iterations,
            scored_tasks=scored,
            total_tasks=state.total_tasks,
            ordered_count=len(result.ordered_task_ids) if result else 0,
            note=note,
        )
        try:
            on_progress(event)
        except Exception as e:
            self.logger.warning("progress_callback_failed", stage=stage.value, error=str(e))
