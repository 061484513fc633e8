"""
SQLAlchemy models for the SQL-backed stores.

- ActivityRecordRow: one row per recorded activity (append-only)
- DocumentRow: JSON documents keyed by (kind, key) with a version column used
  for conditional mastery-model writes
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Float, Index, Integer, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ActivityRecordRow(Base):
    """Immutable activity measurement."""

    __tablename__ = "activity_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    activity_id: Mapped[str] = mapped_column(Text, nullable=False)
    activity_type: Mapped[str] = mapped_column(Text, nullable=False)
    topic: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Metrics
    speed: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy: Mapped[float] = mapped_column(Float, nullable=False)
    completion_rate: Mapped[float] = mapped_column(Float, nullable=False)
    difficulty: Mapped[int | None] = mapped_column(Integer)

    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "activity_id", name="uq_user_activity"),
        Index("idx_activity_user_topic_ts", "user_id", "topic", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<ActivityRecordRow user={self.user_id} topic={self.topic} ts={self.timestamp}>"


class DocumentRow(Base):
    """Versioned JSON document (mastery models, sprints, schedule entries, rankings)."""

    __tablename__ = "documents"

    kind: Mapped[str] = mapped_column(Text, primary_key=True)  # 'model', 'sprint', 'schedule', 'ranking'
    key: Mapped[str] = mapped_column(Text, primary_key=True)
    user_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<DocumentRow kind={self.kind} key={self.key} version={self.version}>"
