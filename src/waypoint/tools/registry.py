"""Tool registry and invocation telemetry."""

import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)

GENERATOR_TOOL = "prioritization-generator"
EVALUATOR_TOOL = "prioritization-evaluator"
PARSER_TOOL = "result-parser"

# Invocations slower than this are logged as a performance warning
SLOW_INVOCATION_MS = 5000


@dataclass
class ToolStats:
    """Running counters for one registered tool."""

    name: str
    description: str = ""
    invocations: int = 0
    failures: int = 0
    total_duration_ms: int = 0


@dataclass
class ToolRegistry:
    """Named tools the engines report against.

    Built once at start-up and handed to each engine; nothing registers on import.
    """

    tools: dict[str, ToolStats] = field(default_factory=dict)

    def register(self, name: str, description: str = "") -> None:
        if name in self.tools:
            raise ValueError(f"Tool already registered: {name}")
        self.tools[name] = ToolStats(name=name, description=description)

    @property
    def names(self) -> list[str]:
        return list(self.tools)

    def record_invocation(self, name: str, duration_ms: int, succeeded: bool = True) -> None:
        """Record one call of a registered tool.

        Unknown tool names are logged and ignored.
        """
        stats = self.tools.get(name)
        if stats is None:
            logger.warning("unknown_tool_invocation", tool=name)
            return

        stats.invocations += 1
        stats.total_duration_ms += max(0, duration_ms)
        if not succeeded:
            stats.failures += 1

        if duration_ms > SLOW_INVOCATION_MS:
            logger.warning("tool_slow_invocation", tool=name, duration_ms=duration_ms)

    @contextmanager
    def timed(self, name: str) -> Iterator[None]:
        """Time a block and record it against ``name``; failures are re-raised."""
        started = time.monotonic()
        succeeded = False
        try:
            yield
            succeeded = True
        finally:
            duration_ms = int((time.monotonic() - started) * 1000)
            self.record_invocation(name, duration_ms, succeeded=succeeded)

    def mentioned_in(self, text: str | None) -> list[str]:
        """Registered tool names that appear in free text (case-insensitive)."""
        if not text:
            return []
        lowered = text.lower()
        return [name for name in self.tools if name in lowered]

    def snapshot(self) -> dict[str, dict[str, int]]:
        return {
            name: {
                "invocations": stats.invocations,
                "failures": stats.failures,
                "total_duration_ms": stats.total_duration_ms,
            }
            for name, stats in self.tools.items()
        }


def build_default_registry() -> ToolRegistry:
    """Registry with the tools the plan engines use."""
    registry = ToolRegistry()
    registry.register(GENERATOR_TOOL, "Drafts or refines a scored prioritization")
    registry.register(EVALUATOR_TOOL, "Reviews a draft and returns PASS, NEEDS_IMPROVEMENT or FAIL")
    registry.register(PARSER_TOOL, "Turns raw model output into a validated plan")
    return registry
