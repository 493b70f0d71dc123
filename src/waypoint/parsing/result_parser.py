"""Result parser and repairer for model-generated plans.

Raw engine output may be a mapping, strict JSON, prose-wrapped JSON or a
structurally incomplete object. This module turns any of those into a
validated ``Plan`` or a failure carrying whatever narrative could be
recovered. It never raises on bad input.

Extraction from text runs through small tiers tried in a fixed order:

1. the whole trimmed string as JSON, if it starts with ``{``
2. the first fenced code block (optionally tagged ``json``)
3. the substring between the first ``{`` and the last ``}``

Tiers 2 and 3 keep the text before the JSON as a narrative.
"""

import json
import math
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, NamedTuple

import structlog
from pydantic import BaseModel, ValidationError

from waypoint.config import Settings
from waypoint.core.exceptions import ParseFailure, ValidationFailure
from waypoint.core.models import (
    AnnotationState,
    DependencyKey,
    DetectionMethod,
    ExecutionMetadata,
    ExecutionWave,
    Plan,
    ReasoningStep,
    RelationshipType,
    StepStatus,
    TaskAnnotation,
    TaskDependency,
    TaskRemoval,
)
from waypoint.tools.registry import ToolRegistry

logger = structlog.get_logger(__name__)

DEFAULT_SUMMARY = "Prioritization completed with limited data."
EMPTY_RESPONSE_ERROR = "Empty response from agent"
NO_JSON_ERROR = "No valid JSON found in agent output."

MAX_NARRATIVE_CHARS = 500
MAX_THOUGHT_CHARS = 160
MAX_TRACE_STEPS = 10

_FENCE_RE = re.compile(r"```(?:json)?[ \t]*\n?([\s\S]*?)```", re.IGNORECASE)
_CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")
_MARKDOWN_RE = re.compile(r"[#*_`]+")
_WHITESPACE_RE = re.compile(r"\s+")
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")


@dataclass(frozen=True)
class PlanDefaults:
    """Repair constants. Heuristic placeholders, not a calibrated model."""

    confidence_high: float = 0.90
    confidence_low: float = 0.55
    dependency_confidence: float = 0.55
    wave_chunk_size: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> "PlanDefaults":
        return cls(
            confidence_high=settings.confidence_high,
            confidence_low=settings.confidence_low,
            dependency_confidence=settings.confidence_low,
            wave_chunk_size=settings.wave_chunk_size,
        )


class ParseOutcome(BaseModel):
    """Result of ``parse_plan``: a plan, or an error plus any narrative."""

    success: bool
    plan: Plan | None = None
    error: str | None = None
    narrative: str | None = None


class Candidate(NamedTuple):
    """A decoded JSON value and the prose that preceded it."""

    payload: Any
    narrative: str | None = None


# ============================================================================
# Text helpers
# ============================================================================


def _clip_narrative(text: str) -> str | None:
    cleaned = text.strip()
    if not cleaned:
        return None
    if len(cleaned) > MAX_NARRATIVE_CHARS:
        return f"{cleaned[: MAX_NARRATIVE_CHARS - 3]}..."
    return cleaned


def condense_thought_text(value: str | None) -> str | None:
    """Reduce free text to its first sentence, markdown stripped, at most 160 chars."""
    if not value or not value.strip():
        return None

    cleaned = _CODE_BLOCK_RE.sub(" ", value)
    cleaned = _MARKDOWN_RE.sub(" ", cleaned)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    if not cleaned:
        return None

    sentences = [s for s in _SENTENCE_RE.split(cleaned) if s]
    if not sentences:
        return cleaned[:MAX_THOUGHT_CHARS].rstrip()

    first = sentences[0].strip()
    if len(first) <= MAX_THOUGHT_CHARS:
        return first
    return f"{first[: MAX_THOUGHT_CHARS - 3].rstrip()}…"


def strip_code_fences(text: str) -> str:
    """Return the body of a fenced block if the text is wrapped in one."""
    trimmed = text.strip()
    match = _FENCE_RE.search(trimmed)
    if match and trimmed.startswith("```"):
        return match.group(1).strip()
    return trimmed


# ============================================================================
# Extraction tiers
# ============================================================================


def _load_json(text: str, tier: str, narrative: str | None) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseFailure(f"Failed to parse {tier}: {e.msg}", narrative=narrative) from e


def extract_direct_json(text: str) -> Candidate | None:
    if not text.startswith("{"):
        return None
    return Candidate(_load_json(text, "direct JSON", None))


def extract_fenced_json(text: str) -> Candidate | None:
    match = _FENCE_RE.search(text)
    if not match or not match.group(1).strip():
        return None
    narrative = _clip_narrative(text[: match.start()])
    return Candidate(_load_json(match.group(1).strip(), "JSON from code block", narrative), narrative)


def extract_braced_json(text: str) -> Candidate | None:
    first, last = text.find("{"), text.rfind("}")
    if first == -1 or last <= first:
        return None
    narrative = _clip_narrative(text[:first])
    return Candidate(_load_json(text[first : last + 1], "sliced JSON", narrative), narrative)


EXTRACTION_TIERS: tuple[Callable[[str], Candidate | None], ...] = (
    extract_direct_json,
    extract_fenced_json,
    extract_braced_json,
)


def extract_candidate(text: str) -> Candidate:
    """Run the extraction tiers in order and return the first decoded candidate.

    Raises:
        ParseFailure: If no tier yields JSON; carries the best narrative found
    """
    trimmed = text.strip()
    if not trimmed:
        raise ParseFailure("Agent response string is empty")

    narrative: str | None = None
    for tier in EXTRACTION_TIERS:
        try:
            candidate = tier(trimmed)
        except ParseFailure as e:
            logger.debug("extraction_tier_failed", tier=tier.__name__, error=str(e))
            narrative = narrative or e.narrative
            continue
        if candidate is not None:
            return candidate

    raise ParseFailure(NO_JSON_ERROR, narrative=narrative or _clip_narrative(trimmed))


# ============================================================================
# Coercion
# ============================================================================


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool) and math.isfinite(value)


def _to_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def clamp_confidence(value: float, fallback: float = 0.55) -> float:
    """Clamp to [0, 1] and round to 2 decimals; non-finite values become ``fallback``."""
    if not math.isfinite(value):
        return fallback
    if value < 0:
        return 0.0
    if value > 1:
        return 1.0
    return round(value, 2)


def sanitize_task_ids(value: Any) -> list[str]:
    """Coerce a list of ids, primitives or ``{"task_id": ...}`` objects to strings."""
    if not isinstance(value, list):
        return []

    ids = []
    for entry in value:
        if isinstance(entry, str):
            text = entry
        elif isinstance(entry, bool):
            text = "true" if entry else "false"
        elif isinstance(entry, int | float):
            text = str(entry)
        elif isinstance(entry, Mapping) and isinstance(entry.get("task_id"), str):
            text = entry["task_id"]
        else:
            continue
        text = text.strip()
        if text:
            ids.append(text)
    return ids


def build_confidence_scores(
    task_ids: Sequence[str], defaults: PlanDefaults = PlanDefaults()
) -> dict[str, float]:
    """Positional confidence decaying linearly from high (first) to low (last)."""
    if not task_ids:
        return {}

    max_index = max(1, len(task_ids) - 1)
    span = defaults.confidence_high - defaults.confidence_low
    scores = {}
    for index, task_id in enumerate(task_ids):
        weight = 1 - index / max_index
        scores[task_id] = clamp_confidence(defaults.confidence_low + span * weight)
    return scores


def build_default_waves(
    task_ids: Sequence[str], chunk_size: int = 5
) -> list[ExecutionWave]:
    """Chunk ids into consecutive waves; a chunk is parallel when it has more than one task."""
    waves = []
    for start in range(0, len(task_ids), chunk_size):
        chunk = list(task_ids[start : start + chunk_size])
        waves.append(
            ExecutionWave(
                wave_number=len(waves) + 1,
                task_ids=chunk,
                parallel_execution=len(chunk) > 1,
            )
        )
    return waves


def _coerce_waves(raw: Any, ordered_ids: list[str], defaults: PlanDefaults) -> list[ExecutionWave]:
    waves: list[ExecutionWave] = []
    for candidate in raw if isinstance(raw, list) else []:
        if not isinstance(candidate, Mapping):
            continue

        task_ids = sanitize_task_ids(candidate.get("task_ids"))
        if not task_ids:
            continue

        wave_number = candidate.get("wave_number")
        if not (isinstance(wave_number, int) and not isinstance(wave_number, bool) and wave_number > 0):
            wave_number = len(waves) + 1

        parallel = candidate.get("parallel_execution")
        if not isinstance(parallel, bool):
            parallel = len(task_ids) > 1

        duration = candidate.get("estimated_duration_hours")
        duration = max(0.0, min(200.0, float(duration))) if _is_number(duration) else None

        try:
            wave = ExecutionWave(
                wave_number=wave_number,
                task_ids=task_ids,
                parallel_execution=parallel,
                estimated_duration_hours=duration,
            )
        except ValidationError:
            wave = ExecutionWave(
                wave_number=len(waves) + 1,
                task_ids=task_ids,
                parallel_execution=len(task_ids) > 1,
            )
        waves.append(wave)

    return waves or build_default_waves(ordered_ids, defaults.wave_chunk_size)


def _coerce_dependencies(raw: Any, defaults: PlanDefaults) -> list[TaskDependency]:
    relationships = {member.value for member in RelationshipType}
    dependencies = []
    for candidate in raw if isinstance(raw, list) else []:
        if not isinstance(candidate, Mapping):
            continue

        relationship = candidate.get("relationship_type")
        confidence = candidate.get("confidence")
        source = candidate.get("source_task_id")
        target = candidate.get("target_task_id")
        try:
            dependencies.append(
                TaskDependency(
                    source_task_id=source.strip() if isinstance(source, str) else "",
                    target_task_id=target.strip() if isinstance(target, str) else "",
                    relationship_type=relationship
                    if relationship in relationships
                    else RelationshipType.PREREQUISITE,
                    confidence=min(1.0, max(0.0, float(confidence)))
                    if _is_number(confidence)
                    else defaults.dependency_confidence,
                    detection_method=DetectionMethod.STORED_RELATIONSHIP
                    if candidate.get("detection_method") == DetectionMethod.STORED_RELATIONSHIP.value
                    else DetectionMethod.AI_INFERENCE,
                )
            )
        except ValidationError:
            continue
    return dependencies


def _strip_fields(candidate: Mapping[str, Any], fields: Iterable[str]) -> dict[str, Any]:
    sanitized = dict(candidate)
    for name in fields:
        if isinstance(sanitized.get(name), str):
            sanitized[name] = sanitized[name].strip()
    return sanitized


def _coerce_annotations(raw: Any, ordered_ids: list[str]) -> list[TaskAnnotation]:
    allowed = set(ordered_ids)
    annotations = []
    for candidate in raw if isinstance(raw, list) else []:
        if not isinstance(candidate, Mapping):
            continue
        sanitized = _strip_fields(
            candidate, ("task_id", "reasoning", "dependency_notes", "removal_reason")
        )
        try:
            annotation = TaskAnnotation.model_validate(sanitized)
        except ValidationError:
            continue
        if annotation.task_id in allowed or annotation.state == AnnotationState.MANUAL_OVERRIDE:
            annotations.append(annotation)
    return annotations


def _coerce_removals(raw: Any) -> list[TaskRemoval]:
    removals = []
    for candidate in raw if isinstance(raw, list) else []:
        if not isinstance(candidate, Mapping):
            continue
        try:
            removals.append(
                TaskRemoval.model_validate(_strip_fields(candidate, ("task_id", "removal_reason")))
            )
        except ValidationError:
            continue
    return removals


def coerce_plan(
    raw: Any, narrative: str | None = None, defaults: PlanDefaults = PlanDefaults()
) -> Plan:
    """Coerce a decoded object into a Plan, repairing what can be repaired.

    Args:
        raw: Decoded JSON value
        narrative: Prose captured alongside the JSON, used for the summary fallback
        defaults: Repair constants

    Returns:
        Plan built from the candidate (consistency not yet enforced)

    Raises:
        ValidationFailure: If the candidate is not an object, has no ordered ids,
            or cannot be assembled into a Plan
    """
    if not isinstance(raw, Mapping):
        raise ValidationFailure("Agent response was not a JSON object.")

    ordered_ids = sanitize_task_ids(raw.get("ordered_task_ids"))
    if not ordered_ids:
        raise ValidationFailure("Agent response missing ordered_task_ids.")

    confidence_scores = build_confidence_scores(ordered_ids, defaults)
    explicit_scores = raw.get("confidence_scores")
    if isinstance(explicit_scores, Mapping):
        for task_id, value in explicit_scores.items():
            task_id = str(task_id).strip()
            number = _to_float(value)
            if task_id and number is not None:
                confidence_scores[task_id] = clamp_confidence(number, defaults.confidence_low)

    summary = raw.get("synthesis_summary")
    summary = summary.strip() if isinstance(summary, str) else ""
    if not summary and narrative:
        summary = condense_thought_text(narrative) or narrative.strip()

    try:
        return Plan(
            ordered_task_ids=ordered_ids,
            execution_waves=_coerce_waves(raw.get("execution_waves"), ordered_ids, defaults),
            dependencies=_coerce_dependencies(raw.get("dependencies"), defaults),
            confidence_scores=confidence_scores,
            synthesis_summary=summary or DEFAULT_SUMMARY,
            task_annotations=_coerce_annotations(raw.get("task_annotations"), ordered_ids),
            removed_tasks=_coerce_removals(raw.get("removed_tasks")),
        )
    except ValidationError as e:
        logger.error("plan_validation_failed", errors=e.error_count())
        raise ValidationFailure("Plan did not match the plan schema") from e


# ============================================================================
# Consistency
# ============================================================================


def ensure_plan_consistency(plan: Plan, wave_chunk_size: int = 5) -> Plan:
    """Enforce cross-field invariants on a plan.

    - ordered ids deduplicated, first occurrence kept
    - wave ids restricted to surviving ids, emptied waves dropped, waves renumbered;
      default waves rebuilt when none survive
    - dependencies restricted to surviving ids and deduplicated by (source, target)
    - one annotation per id (last wins); manual overrides survive even when unordered
    - every surviving id without an annotation gets an ``active`` one

    Idempotent.
    """
    ordered_ids = list(dict.fromkeys(plan.ordered_task_ids))
    surviving = set(ordered_ids)

    waves = []
    for wave in plan.execution_waves:
        task_ids = [task_id for task_id in wave.task_ids if task_id in surviving]
        if task_ids:
            waves.append(wave.model_copy(update={"wave_number": len(waves) + 1, "task_ids": task_ids}))
    if not waves:
        waves = build_default_waves(ordered_ids, wave_chunk_size)

    dependencies: dict[DependencyKey, TaskDependency] = {}
    for dependency in plan.dependencies:
        if dependency.source_task_id in surviving and dependency.target_task_id in surviving:
            dependencies.setdefault(dependency.key, dependency)

    annotations: dict[str, TaskAnnotation] = {}
    for annotation in plan.task_annotations:
        if annotation.task_id in surviving or annotation.state == AnnotationState.MANUAL_OVERRIDE:
            annotations[annotation.task_id] = annotation

    for task_id in ordered_ids:
        if task_id in annotations:
            continue
        confidence = plan.confidence_scores.get(task_id)
        annotations[task_id] = TaskAnnotation(
            task_id=task_id,
            state=AnnotationState.ACTIVE,
            confidence=clamp_confidence(confidence) if confidence is not None else None,
        )

    return Plan(
        ordered_task_ids=ordered_ids,
        execution_waves=waves,
        dependencies=list(dependencies.values()),
        confidence_scores=plan.confidence_scores,
        synthesis_summary=plan.synthesis_summary,
        task_annotations=list(annotations.values()),
        removed_tasks=plan.removed_tasks,
        created_at=plan.created_at,
    )


# ============================================================================
# Entry point
# ============================================================================


def parse_plan(raw: Any, defaults: PlanDefaults = PlanDefaults()) -> ParseOutcome:
    """Turn raw engine output into a consistent Plan.

    Args:
        raw: None, a mapping, or model text
        defaults: Repair constants

    Returns:
        ParseOutcome; on failure ``error`` is a short message and ``narrative``
        holds any prose recovered from the text
    """
    if raw is None:
        return ParseOutcome(success=False, error=EMPTY_RESPONSE_ERROR)

    narrative: str | None = None
    try:
        if isinstance(raw, str):
            candidate = extract_candidate(raw)
            payload, narrative = candidate.payload, candidate.narrative
        elif isinstance(raw, Mapping):
            payload = raw
        else:
            raise ValidationFailure("Unsupported agent response format")

        plan = ensure_plan_consistency(
            coerce_plan(payload, narrative, defaults), defaults.wave_chunk_size
        )
    except ParseFailure as e:
        logger.warning("plan_parse_failed", error=str(e))
        return ParseOutcome(
            success=False,
            error=f"Failed to parse agent output: {e}",
            narrative=e.narrative or narrative,
        )
    except ValidationFailure as e:
        logger.warning("plan_validation_failed", error=str(e))
        return ParseOutcome(
            success=False, error=f"Failed to parse agent output: {e}", narrative=narrative
        )

    return ParseOutcome(success=True, plan=plan, narrative=narrative)


# ============================================================================
# Reasoning steps and execution metadata
# ============================================================================


def _coerce_thought(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = [text for text in (_coerce_thought(item) for item in value) if text and text.strip()]
        return "\n".join(parts) or None
    if isinstance(value, Mapping):
        for key in ("text", "message", "reasoning"):
            if isinstance(value.get(key), str):
                return value[key]
    return None


def normalize_reasoning_steps(raw_steps: Sequence[Any]) -> list[ReasoningStep]:
    """Fill defaults on raw step records and cap them at ten.

    A step that still fails validation is replaced with a ``failed`` placeholder.
    """
    steps = []
    for index, raw in enumerate(list(raw_steps)[:MAX_TRACE_STEPS]):
        base = dict(raw) if isinstance(raw, Mapping) else {}
        base.setdefault("step_number", index + 1)
        base.setdefault("timestamp", datetime.now(UTC))
        if not _is_number(base.get("duration_ms")):
            base["duration_ms"] = 0
        if not isinstance(base.get("status"), str):
            base["status"] = StepStatus.SUCCESS

        if not isinstance(base.get("thought"), str):
            for key in ("thought", "content", "reasoning", "observation", "summary"):
                thought = _coerce_thought(base.get(key))
                if thought and thought.strip():
                    base["thought"] = thought.strip()
                    break
            else:
                base["thought"] = None

        try:
            step = ReasoningStep.model_validate(base)
        except ValidationError:
            logger.error("reasoning_step_invalid", step_index=index)
            step = ReasoningStep(
                step_number=index + 1,
                thought="Unable to parse reasoning step",
                status=StepStatus.FAILED,
            )
        else:
            step = step.model_copy(update={"thought": condense_thought_text(step.thought)})
        steps.append(step)
    return steps


def summarise_tool_usage(steps: Iterable[ReasoningStep]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for step in steps:
        if step.tool_name:
            counts[step.tool_name] = counts.get(step.tool_name, 0) + 1
    return counts


def extract_failed_tools(
    steps: Iterable[ReasoningStep],
    status_note: str | None = None,
    registry: ToolRegistry | None = None,
) -> list[str]:
    """Tools of failed steps plus registered tool names mentioned in the note."""
    failed = [step.tool_name for step in steps if step.status == StepStatus.FAILED and step.tool_name]
    if registry is not None:
        failed.extend(registry.mentioned_in(status_note))
    return list(dict.fromkeys(failed))


def build_execution_metadata(
    steps: Sequence[ReasoningStep],
    total_time_ms: int,
    tool_execution_time_ms: int | None = None,
    errors: int | None = None,
    status_note: str | None = None,
    failed_tools: Iterable[str] | None = None,
    registry: ToolRegistry | None = None,
) -> ExecutionMetadata:
    """Summarize a run's steps into execution metadata.

    Args:
        steps: Normalized reasoning steps
        total_time_ms: Wall-clock duration of the run
        tool_execution_time_ms: Time spent in tools (default: sum of step durations)
        errors: Error count (default: number of failed steps)
        status_note: Human-readable note; blank becomes None
        failed_tools: Explicit failed tool names (default: inferred)
        registry: Used to infer failed tools from the note

    Returns:
        ExecutionMetadata with thinking time = total minus tool time
    """
    total = max(0, int(total_time_ms))
    tool_time = (
        tool_execution_time_ms
        if tool_execution_time_ms is not None
        else sum(step.duration_ms for step in steps)
    )
    error_count = errors if errors is not None else sum(
        1 for step in steps if step.status == StepStatus.FAILED
    )
    if steps:
        success_rate = (len(steps) - error_count) / len(steps)
    else:
        success_rate = 0.0 if error_count else 1.0
    note = status_note.strip() if status_note and status_note.strip() else None

    if failed_tools is None:
        failed_tools = extract_failed_tools(steps, note, registry)
    failed = list(dict.fromkeys(tool for tool in failed_tools if tool and tool.strip()))

    return ExecutionMetadata(
        steps_taken=len(steps),
        tool_call_count=summarise_tool_usage(steps),
        thinking_time_ms=max(0, total - tool_time),
        tool_execution_time_ms=max(0, tool_time),
        total_time_ms=total,
        error_count=max(0, error_count),
        success_rate=round(max(0.0, min(1.0, success_rate)), 2),
        status_note=note,
        failed_tools=failed,
    )


def build_failure_note(
    reason: str,
    narrative: str | None = None,
    previous_summary: str | None = None,
    failed_tools: Sequence[str] = (),
) -> str:
    """Human-readable status note for a failed run.

    The condensed narrative is preferred over the previous plan's summary.
    Callers pass a fixed ``reason`` sentence, not an exception message.
    """
    parts = [reason.strip()]
    detail = condense_thought_text(narrative) or (previous_summary or "").strip()
    if detail:
        parts.append(detail)
    if failed_tools:
        parts.append(f"Failed tools: {', '.join(failed_tools)}.")
    return " ".join(part for part in parts if part)
