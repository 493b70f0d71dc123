"""Unit tests for scored payload normalization and conversion."""

import json

import pytest

from waypoint.core.exceptions import ParseFailure, ValidationFailure
from waypoint.engines.scoring import (
    BACKFILL_EFFORT_HOURS,
    FALLBACK_REASONING,
    normalize_per_task_scores,
    parse_scored_payload,
    result_to_plan_payload,
)
from waypoint.parsing.result_parser import parse_plan


class TestNormalizePerTaskScores:
    """Tests for score backfill."""

    def test_missing_score_is_backfilled(self):
        raw = {
            "included_tasks": [
                {"task_id": "a", "inclusion_reason": "Core revenue work", "alignment_score": 9},
                {"task_id": "b"},
            ],
            "per_task_scores": {},
        }

        scores = normalize_per_task_scores(raw)["per_task_scores"]

        assert scores["a"]["impact"] == 9
        assert scores["a"]["effort"] == BACKFILL_EFFORT_HOURS
        assert scores["a"]["confidence"] == 0.5
        assert scores["a"]["reasoning"] == "Core revenue work"
        assert scores["b"]["impact"] == 5.0
        assert scores["b"]["reasoning"] == FALLBACK_REASONING

    def test_scores_for_non_included_tasks_dropped(self):
        raw = {
            "included_tasks": [{"task_id": "a"}],
            "per_task_scores": {
                "a": {"impact": 7, "effort": 2, "confidence": 0.9},
                "ghost": {"impact": 1, "effort": 1, "confidence": 0.1},
            },
        }

        scores = normalize_per_task_scores(raw)["per_task_scores"]

        assert set(scores) == {"a"}
        assert scores["a"]["task_id"] == "a"
        assert scores["a"]["confidence"] == 0.9

    def test_prefer_result_confidence(self):
        raw = {"included_tasks": [{"task_id": "a"}], "confidence": 0.72}

        preferred = normalize_per_task_scores(raw, prefer_result_confidence=True)
        default = normalize_per_task_scores(raw)

        assert preferred["per_task_scores"]["a"]["confidence"] == 0.72
        assert default["per_task_scores"]["a"]["confidence"] == 0.5

    def test_out_of_range_result_confidence_ignored(self):
        raw = {"included_tasks": [{"task_id": "a"}], "confidence": 3}

        scores = normalize_per_task_scores(raw, prefer_result_confidence=True)["per_task_scores"]

        assert scores["a"]["confidence"] == 0.5

    def test_input_not_mutated(self):
        raw = {"included_tasks": [{"task_id": "a"}]}
        normalize_per_task_scores(raw)
        assert "per_task_scores" not in raw

    def test_non_mapping_passthrough(self):
        assert normalize_per_task_scores(["a"]) == ["a"]


class TestParseScoredPayload:
    """Tests for parse_scored_payload."""

    def test_fenced_text_accepted(self, scored_payload):
        text = f"```json\n{scored_payload(['a', 'b'])}\n```"

        result = parse_scored_payload(text)

        assert result.ordered_task_ids == ["a", "b"]
        assert result.confidence == 0.9
        assert result.scored_count == 2

    def test_invalid_json_raises_parse_failure(self):
        with pytest.raises(ParseFailure) as exc_info:
            parse_scored_payload("The best order is a then b.")

        assert exc_info.value.narrative == "The best order is a then b."

    def test_schema_violation_raises_validation_failure(self):
        with pytest.raises(ValidationFailure):
            parse_scored_payload(json.dumps({"included_tasks": [], "ordered_task_ids": []}))

    def test_backfill_satisfies_score_validator(self, scored_payload):
        result = parse_scored_payload(scored_payload(["a", "b"], scored=["a"]))

        assert set(result.per_task_scores) == {"a", "b"}
        assert result.per_task_scores["b"].confidence == 0.5


class TestResultToPlanPayload:
    """Tests for result_to_plan_payload."""

    def test_plan_shape(self, scored_payload):
        result = parse_scored_payload(
            scored_payload(["a", "b"], excluded=["c"], strategy="Ship billing first")
        )

        payload = result_to_plan_payload(result)

        assert payload["ordered_task_ids"] == ["a", "b"]
        assert payload["execution_waves"] == [
            {"wave_number": 1, "task_ids": ["a", "b"], "parallel_execution": False}
        ]
        assert payload["confidence_scores"] == {"a": 0.8, "b": 0.8}
        assert payload["synthesis_summary"] == "Ship billing first"
        assert payload["removed_tasks"] == [{"task_id": "c", "removal_reason": "Not tied to revenue"}]
        assert [annotation["task_id"] for annotation in payload["task_annotations"]] == ["a", "b"]

    def test_score_dependencies_become_prerequisites(self):
        result = parse_scored_payload(
            {
                "included_tasks": [{"task_id": "a"}, {"task_id": "b"}],
                "ordered_task_ids": ["a", "b"],
                "per_task_scores": {
                    "a": {"impact": 5, "effort": 1, "confidence": 0.6},
                    "b": {"impact": 5, "effort": 1, "confidence": 0.6, "dependencies": ["a", "b"]},
                },
            }
        )

        dependencies = result_to_plan_payload(result)["dependencies"]

        assert len(dependencies) == 1
        assert dependencies[0]["source_task_id"] == "a"
        assert dependencies[0]["target_task_id"] == "b"
        assert dependencies[0]["relationship_type"] == "prerequisite"

    def test_payload_parses_into_consistent_plan(self, scored_payload):
        result = parse_scored_payload(scored_payload(["t1", "t2", "t3"], scored=["t1"]))

        outcome = parse_plan(result_to_plan_payload(result))

        assert outcome.success is True
        assert outcome.plan.confidence_scores["t2"] == 0.5
        assert len(outcome.plan.execution_waves) == 1
