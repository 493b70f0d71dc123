"""Pytest configuration and shared fixtures."""

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from waypoint.config import Settings
from waypoint.core.models import (
    IncrementalContext,
    Outcome,
    RuntimeContext,
)
from waypoint.database.models import Base, OutcomeRecord, ProcessedDocument, TaskEmbedding
from waypoint.tools.registry import build_default_registry
from tests.unit.utils import make_task


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment file."""
    return Settings(anthropic_api_key="test-key", engine_timeout_seconds=5.0, _env_file=None)


@pytest.fixture
def registry():
    """Fresh tool registry."""
    return build_default_registry()


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def db_engine():
    """Create an in-memory SQLite database shared across connections."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory bound to the in-memory database."""
    return sessionmaker(bind=db_engine, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    """Create a database session for testing."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seed_outcome(db_session):
    """Insert an outcome row and return its id."""

    def _seed(outcome_id: str = "outcome-1", user_id: str = "user-1") -> str:
        db_session.add(
            OutcomeRecord(
                id=outcome_id,
                user_id=user_id,
                direction="increase",
                object_text="monthly recurring revenue",
                metric_text="by 20% this quarter",
                assembled_text="Increase monthly recurring revenue by 20% this quarter",
            )
        )
        db_session.commit()
        return outcome_id

    return _seed


@pytest.fixture
def seed_tasks(db_session):
    """Insert a document with completed task rows."""

    def _seed(
        document_id: str,
        task_ids: list[str],
        user_id: str = "user-1",
        structured_output: dict | None = None,
    ) -> None:
        db_session.add(
            ProcessedDocument(
                id=document_id,
                user_id=user_id,
                filename=f"{document_id}.md",
                structured_output=structured_output,
            )
        )
        db_session.flush()
        for task_id in task_ids:
            db_session.add(
                TaskEmbedding(
                    task_id=task_id,
                    task_text=f"Task {task_id}",
                    document_id=document_id,
                    status="completed",
                )
            )
        db_session.commit()

    return _seed


# ============================================================================
# Engine inputs
# ============================================================================


@pytest.fixture
def outcome() -> Outcome:
    return Outcome(
        id="outcome-1",
        user_id="user-1",
        direction="increase",
        object_text="monthly recurring revenue",
        metric_text="by 20% this quarter",
        assembled_text="Increase monthly recurring revenue by 20% this quarter",
    )


@pytest.fixture
def runtime_context(outcome) -> RuntimeContext:
    """First-run context with three tasks and no previous plan."""
    tasks = [make_task("t1"), make_task("t2"), make_task("t3")]
    return RuntimeContext(
        user_id="user-1",
        outcome=outcome,
        tasks=tasks,
        incremental=IncrementalContext(
            new_tasks=tasks, total_task_count=len(tasks), is_first_run=True
        ),
    )


@pytest.fixture
def scored_payload():
    """Build generator output in the scored JSON shape."""

    def _build(
        ordered: list[str],
        included: list[str] | None = None,
        scored: list[str] | None = None,
        confidence: float | None = 0.9,
        corrections: str = "",
        strategy: str = "Revenue work first",
        excluded: list[str] | None = None,
    ) -> str:
        included = ordered if included is None else included
        scored = included if scored is None else scored
        payload = {
            "thoughts": {"prioritization_strategy": strategy},
            "included_tasks": [
                {"task_id": task_id, "inclusion_reason": f"{task_id} moves revenue", "alignment_score": 8}
                for task_id in included
            ],
            "excluded_tasks": [
                {"task_id": task_id, "exclusion_reason": "Not tied to revenue"}
                for task_id in excluded or []
            ],
            "ordered_task_ids": ordered,
            "per_task_scores": {
                task_id: {
                    "task_id": task_id,
                    "impact": 8,
                    "effort": 4,
                    "confidence": 0.8,
                    "reasoning": "Direct revenue impact",
                }
                for task_id in scored
            },
            "corrections_made": corrections,
        }
        if confidence is not None:
            payload["confidence"] = confidence
        return json.dumps(payload)

    return _build


@pytest.fixture
def mock_client():
    """Generation client whose ``generate`` is an AsyncMock."""
    client = Mock()
    client.generate = AsyncMock()
    return client


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2025, 6, 1, 12, 0, 0, tzinfo=UTC)
