"""Database models and persistence."""

from waypoint.database.models import (
    AgentSession,
    AuditLog,
    Base,
    OutcomeRecord,
    ProcessedDocument,
    ReasoningTraceRecord,
    ReflectionRecord,
    TaskEmbedding,
)
from waypoint.database.session import get_session_factory, init_db, session_scope

__all__ = [
    "Base",
    "OutcomeRecord",
    "ReflectionRecord",
    "ProcessedDocument",
    "TaskEmbedding",
    "AgentSession",
    "ReasoningTraceRecord",
    "AuditLog",
    "init_db",
    "get_session_factory",
    "session_scope",
]
