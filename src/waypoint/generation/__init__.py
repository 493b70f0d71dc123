"""Model generation client."""

from waypoint.generation.client import GenerationClient, GenerationResponse

__all__ = ["GenerationClient", "GenerationResponse"]
