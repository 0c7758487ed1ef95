from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional, Any

from sqlalchemy import (
    DateTime,
    Float,
    Integer,
    String,
    Text,
    ForeignKey,
    JSON,
    Index,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column
from sqlalchemy.types import TypeDecorator, CHAR

try:
    from sqlalchemy.dialects.postgresql import UUID as PGUUID
except ImportError:
    PGUUID = None


class GUID(TypeDecorator):
    """Platform-independent GUID/UUID type."""
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql" and PGUUID is not None:
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value if dialect.name == "postgresql" else str(value)
        str_value = str(value).strip()
        if not str_value:
            return None
        try:
            return str(uuid.UUID(str_value)) if dialect.name != "postgresql" else uuid.UUID(str_value)
        except (ValueError, AttributeError):
            return None

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


Base = declarative_base()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class BasicDataEntry(Base):
    __tablename__ = "entries"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    entry_type: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __mapper_args__ = {
        "polymorphic_on": entry_type,
        "polymorphic_identity": "entry",
    }


class Page(BasicDataEntry):
    """A captured browsing page plus everything the pipeline learns about it.

    Nested structures (interactions, semantic features, assignments) are kept
    as JSON documents; ``primary_intent_id`` mirrors the primary assignment so
    pages can be queried by intent.
    """
    __tablename__ = "pages"

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("entries.id", ondelete="CASCADE"), primary_key=True
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    domain: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    timestamp: Mapped[float] = mapped_column(Float, nullable=False, index=True)
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    content_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    content_size: Mapped[int] = mapped_column(Integer, default=0)

    metadata_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    interactions_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    semantic_features_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    embedding_json: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    behavioral_class_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    intent_assignments_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    primary_intent_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    processed_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    __mapper_args__ = {
        "polymorphic_identity": "page",
        "inherit_condition": id == BasicDataEntry.id,
    }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "url": self.url,
            "title": self.title or "",
            "timestamp": self.timestamp,
            "content": self.content,
            "content_summary": self.content_summary,
            "content_size": self.content_size or 0,
            "metadata": dict(self.metadata_json or {}),
            "interactions": dict(self.interactions_json or {}),
            "semantic_features": self.semantic_features_json,
            "embedding": self.embedding_json,
            "behavioral_class": self.behavioral_class_json,
            "intent_assignments": self.intent_assignments_json
            or {"primary": None, "secondary": []},
            "processed_at": self.processed_at,
        }


class Intent(BasicDataEntry):
    """A clustered thread of browsing activity.

    Intents are never deleted; terminal statuses keep them for history.
    """
    __tablename__ = "intents"

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("entries.id", ondelete="CASCADE"), primary_key=True
    )
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    label_confidence: Mapped[float] = mapped_column(Float, default=0.0)
    previous_label: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    label_updated_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="emerging", index=True)
    first_seen: Mapped[float] = mapped_column(Float, nullable=False)
    last_updated: Mapped[float] = mapped_column(Float, nullable=False, index=True)
    reactivated_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    completed_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    page_count: Mapped[int] = mapped_column(Integer, default=0)

    page_ids_json: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    aggregated_signals_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    timeline_json: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    metadata_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    user_feedback_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    related_intents_json: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    ai_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    goal: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    goal_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    goal_updated_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    insights_json: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    next_steps_json: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_intent_status_updated", "status", "last_updated"),
    )

    __mapper_args__ = {
        "polymorphic_identity": "intent",
        "inherit_condition": id == BasicDataEntry.id,
    }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "label": self.label,
            "label_confidence": self.label_confidence,
            "previous_label": self.previous_label,
            "label_updated_at": self.label_updated_at,
            "confidence": self.confidence,
            "status": self.status,
            "first_seen": self.first_seen,
            "last_updated": self.last_updated,
            "reactivated_at": self.reactivated_at,
            "completed_at": self.completed_at,
            "page_count": self.page_count or 0,
            "page_ids": list(self.page_ids_json or []),
            "aggregated_signals": dict(self.aggregated_signals_json or {}),
            "timeline": list(self.timeline_json or []),
            "metadata": dict(self.metadata_json or {}),
            "user_feedback": dict(self.user_feedback_json or {"discarded": False}),
            "related_intents": list(self.related_intents_json or []),
            "ai_summary": self.ai_summary,
            "goal": self.goal,
            "goal_confidence": self.goal_confidence,
            "goal_updated_at": self.goal_updated_at,
            "insights": list(self.insights_json or []),
            "next_steps": list(self.next_steps_json or []),
        }


class Task(BasicDataEntry):
    """Persistent scheduler entry.

    Status moves queued -> processing -> completed|failed. Tasks found in
    ``processing`` at startup are reset to ``queued``.
    """
    __tablename__ = "tasks"

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("entries.id", ondelete="CASCADE"), primary_key=True
    )
    task_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    target_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="queued", index=True
    )  # queued, processing, completed, failed
    priority: Mapped[int] = mapped_column(Integer, default=10)  # lower = more urgent
    dependencies_json: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    params_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    result_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    attempts_json: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    requeue_count: Mapped[int] = mapped_column(Integer, default=0)

    queued_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    __table_args__ = (
        Index("ix_task_status_priority", "status", "priority"),
        Index("ix_task_type_target", "task_type", "target_id"),
    )

    __mapper_args__ = {
        "polymorphic_identity": "task",
        "inherit_condition": id == BasicDataEntry.id,
    }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": str(self.id),
            "task_type": self.task_type,
            "target_id": self.target_id,
            "status": self.status,
            "priority": self.priority,
            "dependencies": list(self.dependencies_json or []),
            "params": self.params_json or {},
            "result": self.result_json,
            "error": self.error,
            "error_type": self.error_type,
            "attempts": list(self.attempts_json or []),
            "retry_count": self.retry_count or 0,
            "requeue_count": self.requeue_count or 0,
            "duration_ms": self.duration_ms,
            "created_at": _iso(self.created_at),
            "queued_at": _iso(self.queued_at),
            "next_attempt_at": _iso(self.next_attempt_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }


class AppSetting(Base):
    """Key/value settings document (duration statistics, activity recaps)."""
    __tablename__ = "app_settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value_json: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
