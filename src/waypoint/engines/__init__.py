"""Plan engines."""

from waypoint.engines.base import PlanEngine
from waypoint.engines.hybrid import HybridEngine
from waypoint.engines.legacy import LegacyEngine

__all__ = ["PlanEngine", "LegacyEngine", "HybridEngine"]
