"""Unit tests for the tool registry."""

import pytest

from waypoint.tools.registry import (
    EVALUATOR_TOOL,
    GENERATOR_TOOL,
    PARSER_TOOL,
    ToolRegistry,
)


class TestToolRegistry:
    """Tests for ToolRegistry."""

    def test_default_registry_names(self, registry):
        assert registry.names == [GENERATOR_TOOL, EVALUATOR_TOOL, PARSER_TOOL]

    def test_duplicate_registration_rejected(self):
        registry = ToolRegistry()
        registry.register("lookup")

        with pytest.raises(ValueError, match="already registered"):
            registry.register("lookup")

    def test_timed_records_success(self, registry):
        with registry.timed(GENERATOR_TOOL):
            pass

        stats = registry.snapshot()[GENERATOR_TOOL]
        assert stats["invocations"] == 1
        assert stats["failures"] == 0

    def test_timed_records_failure_and_reraises(self, registry):
        with pytest.raises(RuntimeError):
            with registry.timed(EVALUATOR_TOOL):
                raise RuntimeError("model unavailable")

        stats = registry.snapshot()[EVALUATOR_TOOL]
        assert stats["invocations"] == 1
        assert stats["failures"] == 1

    def test_unknown_invocation_ignored(self, registry):
        registry.record_invocation("missing-tool", 10)

        assert "missing-tool" not in registry.snapshot()

    def test_negative_duration_clamped(self, registry):
        registry.record_invocation(PARSER_TOOL, -5)
        assert registry.snapshot()[PARSER_TOOL]["total_duration_ms"] == 0

    def test_mentioned_in(self, registry):
        text = "Called PRIORITIZATION-GENERATOR then result-parser."

        assert registry.mentioned_in(text) == [GENERATOR_TOOL, PARSER_TOOL]
        assert registry.mentioned_in(None) == []
