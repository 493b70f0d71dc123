"""Embedding pipeline contract used to hydrate fallback-derived tasks."""

from abc import ABC, abstractmethod
from collections.abc import Sequence

import structlog
from sqlalchemy.orm import sessionmaker

from waypoint.core.models import TaskSummary
from waypoint.database import crud
from waypoint.database.session import session_scope

logger = structlog.get_logger(__name__)


class EmbeddingPipeline(ABC):
    """Turns derived tasks into rows of the primary task pool."""

    @abstractmethod
    async def hydrate(self, tasks: Sequence[TaskSummary]) -> int:
        """Make ``tasks`` visible to the primary task source.

        Args:
            tasks: Tasks derived from structured document output

        Returns:
            Number of tasks written
        """
        pass


class SqlEmbeddingPipeline(EmbeddingPipeline):
    """Writes derived tasks straight into ``task_embeddings`` as completed rows.

    Vector generation is out of scope; the rows only make the tasks
    selectable by the primary source.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def hydrate(self, tasks: Sequence[TaskSummary]) -> int:
        rows = [
            {"task_id": task.task_id, "task_text": task.task_text, "document_id": task.document_id}
            for task in tasks
        ]
        with session_scope(self.session_factory) as session:
            inserted = crud.insert_task_embeddings(session, rows, status="completed")
        logger.info("embedding_pipeline_hydrated", requested=len(rows), inserted=inserted)
        return inserted
