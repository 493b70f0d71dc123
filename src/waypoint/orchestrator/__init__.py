"""Session orchestration: engine selection, override merge and persistence."""

from waypoint.orchestrator.main import OrchestrationOutcome, OrchestrationRequest, Orchestrator
from waypoint.orchestrator.progress import ProgressChannel

__all__ = ["Orchestrator", "OrchestrationRequest", "OrchestrationOutcome", "ProgressChannel"]
