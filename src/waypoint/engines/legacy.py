"""Single-shot plan engine: one generation call, one parse."""

import asyncio
import time
from collections.abc import Sequence

from waypoint.core.exceptions import EngineExecutionFailure, ParseFailure, ValidationFailure
from waypoint.core.models import (
    EngineRunResult,
    RuntimeContext,
    StepStatus,
    TaskDependency,
)
from waypoint.engines.base import PlanEngine, StepLog, elapsed_since
from waypoint.engines.prompts import GENERATOR_SYSTEM, render_generator_prompt
from waypoint.tools.registry import GENERATOR_TOOL

FAILURE_REASONS = {
    asyncio.TimeoutError: "Legacy engine timed out before producing a plan.",
    ParseFailure: "Legacy engine returned output that was not valid JSON.",
    ValidationFailure: "Legacy engine output failed plan validation.",
}
GENERIC_FAILURE = "Legacy engine failed while generating a plan."


class LegacyEngine(PlanEngine):
    """Asks the model once for a complete scored prioritization."""

    @property
    def name(self) -> str:
        return "legacy"

    async def run(
        self, context: RuntimeContext, dependency_overrides: Sequence[TaskDependency] = ()
    ) -> EngineRunResult:
        steps = StepLog()
        self.logger.info(
            "legacy_engine_started",
            task_count=len(context.tasks),
            is_first_run=context.incremental.is_first_run,
        )

        try:
            result = await asyncio.wait_for(
                self._execute(context, dependency_overrides, steps),
                timeout=self.settings.engine_timeout_seconds,
            )
        except Exception as e:
            reason = next(
                (text for exc_type, text in FAILURE_REASONS.items() if isinstance(e, exc_type)),
                GENERIC_FAILURE,
            )
            self.logger.error(
                "legacy_engine_failed", error=str(e), error_type=type(e).__name__, exc_info=True
            )
            return self.failed_result(reason, e, context, steps, trace=self.build_trace(steps))

        self.logger.info(
            "legacy_engine_completed",
            ordered_count=len(result.plan.ordered_task_ids),
            duration_ms=result.metadata.total_time_ms,
        )
        return result

    async def _execute(
        self,
        context: RuntimeContext,
        dependency_overrides: Sequence[TaskDependency],
        steps: StepLog,
    ) -> EngineRunResult:
        prompt = render_generator_prompt(context, dependency_overrides)
        steps.add(
            f"Assembled context with {len(context.tasks)} tasks "
            f"({context.incremental.new_task_count} new) and {len(context.reflections)} reflections."
        )

        started = time.monotonic()
        try:
            with self.registry.timed(GENERATOR_TOOL):
                response = await self.client.generate(prompt, system=GENERATOR_SYSTEM)
        except Exception as e:
            steps.add(
                "Generation call failed.",
                tool_name=GENERATOR_TOOL,
                duration_ms=elapsed_since(started),
                status=StepStatus.FAILED,
            )
            raise EngineExecutionFailure(f"Generation failed: {e}") from e

        steps.add(
            f"Received {len(response.text)} characters from the generator.",
            tool_name=GENERATOR_TOOL,
            duration_ms=elapsed_since(started),
        )
        if not response.text.strip():
            raise ParseFailure("Empty response from agent")

        scored = self.parse_scored(response.text)
        plan = self.assemble_plan(scored, steps)
        return self.completed_result(plan, scored.excluded_tasks, steps, self.build_trace(steps))
