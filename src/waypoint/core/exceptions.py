"""Error taxonomy for Waypoint."""


class WaypointError(Exception):
    """Base class for all Waypoint errors."""

    pass


class ContextBuildFailure(WaypointError):
    """Raised when the runtime context cannot be assembled (outcome missing, store down)."""

    pass


class EngineExecutionFailure(WaypointError):
    """Raised inside an engine when generation errors, times out or the loop breaks."""

    pass


class ParseFailure(WaypointError):
    """Raised when no JSON candidate can be extracted from a model response."""

    def __init__(self, message: str, narrative: str | None = None):
        super().__init__(message)
        self.narrative = narrative


class ValidationFailure(WaypointError):
    """Raised when a candidate object cannot be coerced into a valid plan."""

    pass


class PersistenceFailure(WaypointError):
    """Raised when the final session write fails."""

    pass
