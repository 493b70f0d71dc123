"""Prompt rendering for the plan engines."""

import json
from collections.abc import Sequence

from waypoint.context.incremental import (
    build_incremental_prompt_context,
    format_task_line,
)
from waypoint.core.models import (
    ChainOfThoughtStep,
    Plan,
    Reflection,
    RuntimeContext,
    TaskDependency,
)

NO_REFLECTIONS = "No active reflections."
NO_PREVIOUS_PLAN = "No previous plan available."
NO_OVERRIDES = "No manual dependency overrides."
NO_BASELINE_PROMPT = "No baseline available. This is the first prioritization."

GENERATOR_SYSTEM = (
    "You are a task prioritization expert. Filter and order tasks by how well they "
    "advance the user's outcome. Respond with a single JSON object and nothing else."
)

EVALUATOR_SYSTEM = (
    "You are a prioritization quality evaluator. Decide whether a completed "
    "prioritization meets the outcome and the user's reflections. Respond with a "
    "single JSON object and nothing else."
)

OUTPUT_CONTRACT = """{
  "thoughts": {
    "outcome_analysis": "...",
    "filtering_rationale": "...",
    "prioritization_strategy": "...",
    "self_check_notes": "..."
  },
  "included_tasks": [{"task_id": "...", "inclusion_reason": "...", "alignment_score": 8}],
  "excluded_tasks": [{"task_id": "...", "task_text": "...", "exclusion_reason": "...", "alignment_score": 3}],
  "ordered_task_ids": ["..."],
  "per_task_scores": {
    "<task_id>": {"task_id": "...", "impact": 8, "effort": 12, "confidence": 0.85,
                  "reasoning": "...", "dependencies": ["<prerequisite task_id>"]}
  },
  "confidence": 0.85,
  "critical_path_reasoning": "...",
  "corrections_made": "..."
}"""

PROCESS = """## PROCESS
1. Apply negative constraints from the reflections first ("ignore", "skip", "avoid"); exclude matching tasks and say which reflection excluded them.
2. Include only tasks that clearly advance the outcome metric; exclude blocked work and overhead.
3. Order included tasks by impact, then effort, then dependencies, then reflections. Respect the dependency constraints below.
4. Give every included task a per_task_scores entry. Keep manual tasks unless a reflection rules them out.
5. Re-check your work, note corrections in corrections_made, and rate your confidence from 0 to 1."""

EVALUATOR_CONTRACT = """{
  "status": "PASS | NEEDS_IMPROVEMENT | FAIL",
  "feedback": "Specific, actionable feedback referencing task ids.",
  "criteria_scores": {
    "outcome_alignment": {"score": 0, "notes": "..."},
    "strategic_coherence": {"score": 0, "notes": "..."},
    "reflection_integration": {"score": 0, "notes": "..."},
    "continuity": {"score": 0, "notes": "..."}
  }
}"""

RETRY_HINT = (
    "Your previous answer could not be used. Return exactly one JSON object matching the "
    "output format, with a per_task_scores entry for every included task and no other text."
)


def format_reflections(reflections: Sequence[Reflection]) -> str:
    if not reflections:
        return NO_REFLECTIONS
    lines = []
    for reflection in reflections:
        when = f", {reflection.relative_time}" if reflection.relative_time else ""
        lines.append(f"- {reflection.text} (weight: {reflection.weight:.2f}{when})")
    return "\n".join(lines)


def format_previous_plan(plan: Plan | None) -> str:
    if plan is None:
        return NO_PREVIOUS_PLAN
    return json.dumps(plan.model_dump(mode="json"), indent=2)


def format_dependency_overrides(overrides: Sequence[TaskDependency]) -> str:
    if not overrides:
        return NO_OVERRIDES
    return "\n".join(
        f"- {dep.source_task_id} {dep.relationship_type.value} {dep.target_task_id} "
        f"(Confidence: {dep.confidence})"
        for dep in overrides
    )


def format_chain_of_thought(steps: Sequence[ChainOfThoughtStep]) -> str:
    lines = []
    for step in steps:
        line = (
            f"Iteration {step.iteration}: confidence {step.confidence:.2f}. "
            f"Corrections: {step.corrections or 'N/A'}."
        )
        if step.evaluator_feedback:
            line += f" Evaluator feedback: {step.evaluator_feedback}"
        lines.append(line)
    return "\n".join(lines)


def render_task_sections(context: RuntimeContext) -> str:
    """Full task list on a first run, otherwise baseline summary plus new tasks."""
    incremental = context.incremental
    if incremental.is_first_run:
        tasks_text = "\n".join(format_task_line(task) for task in context.tasks)
        return (
            f"## BASELINE CONTEXT\n{NO_BASELINE_PROMPT}\n\n"
            f"## TASKS TO EVALUATE ({len(context.tasks)} total)\n{tasks_text}"
        )

    sections = build_incremental_prompt_context(incremental)
    return (
        f"## BASELINE CONTEXT\n{sections.baseline_summary}\n\n"
        f"## NEW TASKS TO EVALUATE ({sections.new_task_count} new, {sections.task_count} total)\n"
        f"{sections.new_tasks_text}"
    )


def render_generator_prompt(
    context: RuntimeContext,
    dependency_overrides: Sequence[TaskDependency] = (),
    iteration: int | None = None,
    max_iterations: int | None = None,
    chain_of_thought: Sequence[ChainOfThoughtStep] = (),
    evaluation_feedback: str | None = None,
    retry_attempt: int | None = None,
) -> str:
    """Render the prioritization request.

    Args:
        context: Runtime context for the run
        dependency_overrides: Caller-supplied edges the ordering must respect
        iteration: Current loop iteration (hybrid engine only)
        max_iterations: Iteration budget (hybrid engine only)
        chain_of_thought: Summaries of earlier iterations
        evaluation_feedback: Evaluator feedback to address in this round
        retry_attempt: Attempt number when re-asking after an unusable answer

    Returns:
        Prompt text
    """
    parts = [
        f"## OUTCOME\n{context.outcome.assembled_text}",
        f"## USER REFLECTIONS (recent context)\n{format_reflections(context.reflections)}",
        render_task_sections(context),
        f"## PREVIOUS PLAN (context)\n{format_previous_plan(context.previous_plan)}",
        f"## DEPENDENCY CONSTRAINTS (overrides)\n{format_dependency_overrides(dependency_overrides)}",
        PROCESS,
        f"## OUTPUT FORMAT\n{OUTPUT_CONTRACT}",
    ]

    if iteration is not None and max_iterations is not None:
        parts.append(f"## ITERATION CONTEXT\nYou are running iteration {iteration} of {max_iterations}.")
    if chain_of_thought:
        parts.append(f"## PRIOR ITERATION SUMMARY\n{format_chain_of_thought(chain_of_thought)}")
    if evaluation_feedback:
        parts.append(f"## EVALUATION FEEDBACK TO ADDRESS\n{evaluation_feedback}")
    if retry_attempt is not None and retry_attempt > 1:
        parts.append(f"## RETRY HINT {retry_attempt}\n{RETRY_HINT}")

    return "\n\n".join(parts)


def render_evaluator_prompt(result_json: str, context: RuntimeContext) -> str:
    return "\n\n".join(
        [
            "Evaluate whether the prioritization below meets the outcome and reflections.",
            f"## OUTCOME\n{context.outcome.assembled_text}",
            f"## REFLECTIONS\n{format_reflections(context.reflections)}",
            f"## PREVIOUS PLAN\n{format_previous_plan(context.previous_plan)}",
            f"## PRIORITIZATION RESULT (JSON)\n{result_json}",
            "PASS when every criterion scores 7 or more. NEEDS_IMPROVEMENT when any is below 7 "
            "but none of outcome alignment or strategic coherence is below 5. FAIL otherwise.",
            f"## OUTPUT FORMAT\n{EVALUATOR_CONTRACT}",
        ]
    )
