"""SQLAlchemy database models for Waypoint."""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

Base = declarative_base()


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps."""

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())


class OutcomeRecord(Base, TimestampMixin):
    """A user's long-term outcome statement."""

    __tablename__ = "outcomes"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    direction = Column(String(50), nullable=False)
    object_text = Column(Text, nullable=False)
    metric_text = Column(Text, nullable=False)
    clarifier = Column(Text, default="")
    assembled_text = Column(Text, nullable=False)
    state_preference = Column(String(50))
    daily_capacity_hours = Column(Float)
    is_active = Column(Boolean, default=True)


class ReflectionRecord(Base):
    """Short situational note written by the user."""

    __tablename__ = "reflections"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False)
    text = Column(Text, nullable=False)
    is_active_for_prioritization = Column(Boolean, default=True)
    created_at = Column(DateTime, nullable=False, default=func.now())

    __table_args__ = (Index("idx_reflections_user_created", "user_id", "created_at"),)


class ProcessedDocument(Base, TimestampMixin):
    """A document whose structured extraction is available."""

    __tablename__ = "processed_documents"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), index=True)
    filename = Column(String(500))
    status = Column(String(50), default="completed")
    structured_output = Column(JSON(none_as_null=True))

    embeddings = relationship(
        "TaskEmbedding", back_populates="document", cascade="all, delete-orphan"
    )


class TaskEmbedding(Base, TimestampMixin):
    """Candidate task extracted from a document."""

    __tablename__ = "task_embeddings"

    id = Column(Integer, primary_key=True)
    task_id = Column(String(64), nullable=False, index=True)
    task_text = Column(Text, nullable=False)
    document_id = Column(String(64), ForeignKey("processed_documents.id", ondelete="CASCADE"))
    status = Column(String(50), default="pending", index=True)

    document = relationship("ProcessedDocument", back_populates="embeddings")


class AgentSession(Base, TimestampMixin):
    """One orchestration run and its canonical result."""

    __tablename__ = "agent_sessions"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False)
    outcome_id = Column(String(64), nullable=False)
    status = Column(String(50), nullable=False, default="running", index=True)

    prioritized_plan = Column(JSON(none_as_null=True))
    excluded_tasks = Column(JSON, default=list)
    baseline_document_ids = Column(JSON, default=list)
    execution_metadata = Column(JSON, default=dict)
    loop_metadata = Column(JSON(none_as_null=True))
    status_note = Column(Text)

    traces = relationship(
        "ReasoningTraceRecord", back_populates="session", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_sessions_user_outcome", "user_id", "outcome_id", "status"),
    )


class ReasoningTraceRecord(Base):
    """Normalized reasoning trace for a session."""

    __tablename__ = "reasoning_traces"

    id = Column(Integer, primary_key=True)
    session_id = Column(String(64), ForeignKey("agent_sessions.id", ondelete="CASCADE"))
    steps = Column(JSON, default=list)
    total_duration_ms = Column(Integer, default=0)
    total_steps = Column(Integer, default=0)
    tools_used_count = Column(JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=func.now())

    session = relationship("AgentSession", back_populates="traces")


class AuditLog(Base):
    """Append-only audit trail for shadow runs and run performance."""

    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True)
    event_type = Column(String(100), nullable=False, index=True)
    session_id = Column(String(64), index=True)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=func.now())
