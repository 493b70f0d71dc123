"""Runtime context assembly for prioritization runs."""

from waypoint.context.builder import ContextBuilder
from waypoint.context.pipeline import EmbeddingPipeline, SqlEmbeddingPipeline

__all__ = ["ContextBuilder", "EmbeddingPipeline", "SqlEmbeddingPipeline"]
