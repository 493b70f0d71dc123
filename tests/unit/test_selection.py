"""Unit tests for primary selection and override merging."""

from waypoint.core.models import RelationshipType, TaskDependency
from waypoint.orchestrator.selection import (
    POST_FALLBACK_NOTE,
    merge_dependency_overrides,
    select_primary,
    summarize_shadow,
)
from tests.unit.utils import completed_result, failed_result, make_plan


class TestSelectPrimary:
    """Tests for select_primary."""

    def test_flag_off_uses_legacy_without_shadow(self):
        legacy = completed_result("legacy", ["a"])
        hybrid = completed_result("hybrid", ["b"])

        selection = select_primary(legacy, hybrid, hybrid_enabled=False)

        assert selection.primary is legacy
        assert selection.shadow is None
        assert selection.used_fallback is False

    def test_flag_off_keeps_failed_legacy(self):
        legacy = failed_result("legacy")

        selection = select_primary(legacy, None, hybrid_enabled=False)

        assert selection.primary is legacy

    def test_hybrid_success_is_primary(self):
        legacy = completed_result("legacy", ["a"])
        hybrid = completed_result("hybrid", ["b"])

        selection = select_primary(legacy, hybrid, hybrid_enabled=True)

        assert selection.primary is hybrid
        assert selection.shadow is legacy

    def test_hybrid_failure_falls_back_to_legacy(self):
        legacy = completed_result("legacy", ["a"])
        hybrid = failed_result("hybrid", "Hybrid loop timed out before producing a plan.")

        selection = select_primary(legacy, hybrid, hybrid_enabled=True)

        assert selection.used_fallback is True
        assert selection.primary.engine == "legacy"
        assert selection.primary.plan == legacy.plan
        assert selection.primary.metadata.status_note == (
            f"{POST_FALLBACK_NOTE} Hybrid loop timed out before producing a plan."
        )
        assert selection.shadow is hybrid
        assert legacy.metadata.status_note is None

    def test_fallback_note_without_hybrid_note(self):
        legacy = completed_result("legacy", ["a"])
        hybrid = failed_result("hybrid", note=None)

        selection = select_primary(legacy, hybrid, hybrid_enabled=True)

        assert selection.primary.metadata.status_note == POST_FALLBACK_NOTE

    def test_both_failed_keeps_hybrid_failure(self):
        legacy = failed_result("legacy")
        hybrid = failed_result("hybrid")

        selection = select_primary(legacy, hybrid, hybrid_enabled=True)

        assert selection.primary is hybrid
        assert selection.shadow is legacy
        assert selection.used_fallback is False


class TestMergeDependencyOverrides:
    """Tests for merge_dependency_overrides."""

    def test_no_overrides_returns_plan(self):
        plan = make_plan(["a", "b"])
        assert merge_dependency_overrides(plan, []) is plan

    def test_override_wins_on_same_edge(self):
        plan = make_plan(["a", "b", "c"]).model_copy(
            update={
                "dependencies": [
                    TaskDependency(source_task_id="a", target_task_id="b", confidence=0.4)
                ]
            }
        )
        overrides = [
            TaskDependency(
                source_task_id="a",
                target_task_id="b",
                relationship_type=RelationshipType.BLOCKS,
                confidence=1.0,
            ),
            TaskDependency(source_task_id="b", target_task_id="c", confidence=1.0),
        ]

        merged = merge_dependency_overrides(plan, overrides)
        by_key = {dep.key: dep for dep in merged.dependencies}

        assert len(merged.dependencies) == 2
        assert by_key[("a", "b")].relationship_type == RelationshipType.BLOCKS
        assert by_key[("a", "b")].confidence == 1.0

    def test_override_on_unknown_task_dropped(self):
        plan = make_plan(["a", "b"])
        overrides = [TaskDependency(source_task_id="a", target_task_id="zzz", confidence=1.0)]

        merged = merge_dependency_overrides(plan, overrides)

        assert merged.dependencies == []


class TestSummarizeShadow:
    def test_completed_shadow(self):
        summary = summarize_shadow(completed_result("legacy", ["a", "b"]))

        assert summary == {
            "engine": "legacy",
            "status": "completed",
            "ordered_count": 2,
            "excluded_count": 0,
            "dependency_count": 0,
            "status_note": None,
        }

    def test_failed_shadow(self):
        summary = summarize_shadow(failed_result("hybrid", "Timed out."))

        assert summary["ordered_count"] == 0
        assert summary["status"] == "failed"
        assert summary["status_note"] == "Timed out."
