"""Tool registry."""

from waypoint.tools.registry import ToolRegistry, build_default_registry

__all__ = ["ToolRegistry", "build_default_registry"]
