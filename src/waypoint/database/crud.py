"""Store adapters for Waypoint.

Each function takes an open SQLAlchemy session and either returns rows or
domain models. Callers own the transaction (see ``session_scope``). Errors are
logged and re-raised.
"""

from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.orm import Session

from waypoint.core.models import Reflection
from waypoint.database.models import (
    AgentSession,
    AuditLog,
    OutcomeRecord,
    ProcessedDocument,
    ReasoningTraceRecord,
    ReflectionRecord,
    TaskEmbedding,
)

logger = structlog.get_logger(__name__)


def _as_utc(value: datetime) -> datetime:
    """sqlite returns naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ============================================================================
# Outcomes
# ============================================================================


def get_outcome(session: Session, outcome_id: str) -> OutcomeRecord | None:
    """Get an outcome by id.

    Args:
        session: Database session
        outcome_id: Outcome id

    Returns:
        OutcomeRecord instance or None if not found
    """
    try:
        outcome = session.query(OutcomeRecord).filter_by(id=outcome_id).first()
        if outcome is None:
            logger.debug("outcome_not_found", outcome_id=outcome_id)
        return outcome
    except Exception as e:
        logger.error("outcome_fetch_failed", outcome_id=outcome_id, error=str(e))
        raise


# ============================================================================
# Reflections
# ============================================================================


def recency_weight(created_at: datetime, now: datetime | None = None) -> float:
    """Step-function weight: up to 7 days 1.0, up to 14 days 0.5, older 0.25."""
    now = now or datetime.now(UTC)
    age_days = (now - _as_utc(created_at)).days
    if age_days <= 7:
        return 1.0
    if age_days <= 14:
        return 0.5
    return 0.25


def relative_time_label(created_at: datetime, now: datetime | None = None) -> str:
    """Human-readable age, capped at "7+ days ago"."""
    now = now or datetime.now(UTC)
    age = now - _as_utc(created_at)
    if age > timedelta(days=7):
        return "7+ days ago"
    if age < timedelta(minutes=1):
        return "just now"
    if age < timedelta(hours=1):
        minutes = int(age.total_seconds() // 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    if age < timedelta(days=1):
        hours = int(age.total_seconds() // 3600)
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    return f"{age.days} day{'s' if age.days != 1 else ''} ago"


def _enrich_reflection(record: ReflectionRecord, now: datetime) -> Reflection:
    created_at = _as_utc(record.created_at)
    return Reflection(
        id=record.id,
        text=record.text,
        created_at=created_at,
        weight=recency_weight(created_at, now),
        relative_time=relative_time_label(created_at, now),
    )


def get_reflections_by_ids(
    session: Session, user_id: str, reflection_ids: Sequence[str]
) -> list[Reflection]:
    """Get specific reflections, newest first, with recency weights.

    Args:
        session: Database session
        user_id: Owner of the reflections
        reflection_ids: Ids to load; unknown ids are ignored

    Returns:
        List of weighted Reflection models
    """
    if not reflection_ids:
        return []

    records = (
        session.query(ReflectionRecord)
        .filter(ReflectionRecord.user_id == user_id)
        .filter(ReflectionRecord.id.in_(list(reflection_ids)))
        .order_by(ReflectionRecord.created_at.desc())
        .all()
    )
    now = datetime.now(UTC)
    return [_enrich_reflection(record, now) for record in records]


def get_recent_reflections(
    session: Session,
    user_id: str,
    limit: int = 5,
    within_days: int = 30,
    active_only: bool = True,
) -> list[Reflection]:
    """Get the most recent reflections for a user, newest first.

    Args:
        session: Database session
        user_id: Owner of the reflections
        limit: Maximum number of reflections
        within_days: Ignore reflections older than this (0 disables the cutoff)
        active_only: Only reflections flagged active for prioritization

    Returns:
        List of weighted Reflection models
    """
    now = datetime.now(UTC)
    query = session.query(ReflectionRecord).filter(ReflectionRecord.user_id == user_id)

    if within_days > 0:
        cutoff = (now - timedelta(days=within_days)).replace(tzinfo=None)
        query = query.filter(ReflectionRecord.created_at >= cutoff)

    if active_only:
        query = query.filter(ReflectionRecord.is_active_for_prioritization.is_(True))

    records = query.order_by(ReflectionRecord.created_at.desc()).limit(limit).all()
    logger.debug("reflections_fetched", user_id=user_id, count=len(records))
    return [_enrich_reflection(record, now) for record in records]


# ============================================================================
# Task pool
# ============================================================================


def get_completed_tasks(
    session: Session,
    user_id: str,
    excluded_document_ids: Iterable[str] = (),
    limit: int = 200,
) -> list[TaskEmbedding]:
    """Get completed task rows for a user's documents.

    Args:
        session: Database session
        user_id: Owner of the source documents
        excluded_document_ids: Documents whose tasks must be skipped
        limit: Maximum number of rows

    Returns:
        List of TaskEmbedding rows in insertion order
    """
    excluded = list(excluded_document_ids)
    query = (
        session.query(TaskEmbedding)
        .join(ProcessedDocument, TaskEmbedding.document_id == ProcessedDocument.id)
        .filter(ProcessedDocument.user_id == user_id)
        .filter(TaskEmbedding.status == "completed")
    )
    if excluded:
        query = query.filter(TaskEmbedding.document_id.notin_(excluded))

    rows = query.order_by(TaskEmbedding.id).limit(limit).all()
    logger.debug("task_pool_fetched", user_id=user_id, count=len(rows), excluded=len(excluded))
    return rows


def get_structured_documents(
    session: Session,
    user_id: str,
    excluded_document_ids: Iterable[str] = (),
    limit: int = 50,
) -> list[ProcessedDocument]:
    """Get the newest documents that carry structured extraction output."""
    excluded = list(excluded_document_ids)
    query = (
        session.query(ProcessedDocument)
        .filter(ProcessedDocument.user_id == user_id)
        .filter(ProcessedDocument.structured_output.isnot(None))
    )
    if excluded:
        query = query.filter(ProcessedDocument.id.notin_(excluded))

    return query.order_by(ProcessedDocument.created_at.desc()).limit(limit).all()


def insert_task_embeddings(
    session: Session, rows: Iterable[dict[str, Any]], status: str = "completed"
) -> int:
    """Insert task rows, skipping (task_id, document_id) pairs already present.

    Returns:
        Number of rows inserted
    """
    inserted = 0
    for row in rows:
        exists = (
            session.query(TaskEmbedding.id)
            .filter_by(task_id=row["task_id"], document_id=row.get("document_id"))
            .first()
        )
        if exists:
            continue
        session.add(
            TaskEmbedding(
                task_id=row["task_id"],
                task_text=row["task_text"],
                document_id=row.get("document_id"),
                status=status,
            )
        )
        inserted += 1

    session.flush()
    logger.info("task_embeddings_inserted", count=inserted)
    return inserted


# ============================================================================
# Sessions
# ============================================================================


def create_agent_session(
    session: Session, session_id: str, user_id: str, outcome_id: str
) -> AgentSession:
    """Create a running session record."""
    record = AgentSession(
        id=session_id, user_id=user_id, outcome_id=outcome_id, status="running"
    )
    session.add(record)
    session.flush()
    logger.info("agent_session_created", session_id=session_id, outcome_id=outcome_id)
    return record


def get_agent_session(session: Session, session_id: str) -> AgentSession | None:
    """Get a session record by id."""
    return session.query(AgentSession).filter_by(id=session_id).first()


def get_latest_completed_session(
    session: Session, user_id: str, outcome_id: str
) -> AgentSession | None:
    """Get the newest completed session for a user/outcome pair."""
    return (
        session.query(AgentSession)
        .filter_by(user_id=user_id, outcome_id=outcome_id, status="completed")
        .filter(AgentSession.prioritized_plan.isnot(None))
        .order_by(AgentSession.updated_at.desc(), AgentSession.created_at.desc())
        .first()
    )


def save_session_result(
    session: Session,
    session_id: str,
    user_id: str,
    outcome_id: str,
    status: str,
    prioritized_plan: dict[str, Any] | None,
    excluded_tasks: list[dict[str, Any]],
    baseline_document_ids: list[str],
    execution_metadata: dict[str, Any],
    loop_metadata: dict[str, Any] | None,
    status_note: str | None,
    trace: dict[str, Any] | None,
) -> AgentSession:
    """Write the final state of a run in the caller's transaction.

    Creates the session row if it does not exist yet. The trace, when given,
    is inserted alongside so both land in the same commit.

    Returns:
        The updated AgentSession
    """
    record = session.query(AgentSession).filter_by(id=session_id).first()
    if record is None:
        record = AgentSession(id=session_id, user_id=user_id, outcome_id=outcome_id)
        session.add(record)

    record.status = status
    record.prioritized_plan = prioritized_plan
    record.excluded_tasks = excluded_tasks
    record.baseline_document_ids = baseline_document_ids
    record.execution_metadata = execution_metadata
    record.loop_metadata = loop_metadata
    record.status_note = status_note
    record.updated_at = datetime.now(UTC).replace(tzinfo=None)

    if trace is not None:
        session.add(
            ReasoningTraceRecord(
                session_id=session_id,
                steps=trace.get("steps", []),
                total_duration_ms=trace.get("total_duration_ms", 0),
                total_steps=trace.get("total_steps", 0),
                tools_used_count=trace.get("tools_used_count", {}),
            )
        )

    session.flush()
    logger.info("agent_session_saved", session_id=session_id, status=status)
    return record


def get_latest_trace(session: Session, session_id: str) -> ReasoningTraceRecord | None:
    """Get the most recent trace stored for a session."""
    return (
        session.query(ReasoningTraceRecord)
        .filter_by(session_id=session_id)
        .order_by(ReasoningTraceRecord.id.desc())
        .first()
    )


# ============================================================================
# Audit log
# ============================================================================


def append_audit_event(
    session: Session, event_type: str, details: dict[str, Any], session_id: str | None = None
) -> AuditLog:
    """Append one audit record."""
    entry = AuditLog(event_type=event_type, session_id=session_id, details=details)
    session.add(entry)
    session.flush()
    return entry


def get_audit_events(
    session: Session, session_id: str, event_type: str | None = None
) -> list[AuditLog]:
    """Get audit records for a session in insertion order."""
    query = session.query(AuditLog).filter_by(session_id=session_id)
    if event_type:
        query = query.filter_by(event_type=event_type)
    return query.order_by(AuditLog.id).all()
