"""SQLAlchemy ORM models for learning persistence."""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class RunCounter(Base):
    """Durable run counter - one row per plan identity."""

    __tablename__ = "run_counters"

    plan_identity: Mapped[str] = mapped_column(String(1024), primary_key=True)
    last_run: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"RunCounter(plan={self.plan_identity}, last_run={self.last_run})"


class LearningSessionRow(Base):
    """Learning session - one execution run of a plan."""

    __tablename__ = "learning_sessions"
    __table_args__ = (
        Index("ix_sessions_plan_run", "plan_identity", "run_number"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    plan_identity: Mapped[str] = mapped_column(String(1024), nullable=False)
    run_number: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
    )

    # Relationships
    records: Mapped[list["ExecutionRecordRow"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="ExecutionRecordRow.id",
    )

    def __repr__(self) -> str:
        return (
            f"LearningSessionRow(id={self.id}, plan={self.plan_identity}, "
            f"run={self.run_number})"
        )


class ExecutionRecordRow(Base):
    """Execution record - one attempt of one task."""

    __tablename__ = "execution_records"
    __table_args__ = (
        Index("ix_records_plan_task", "plan_identity", "task_key"),
        Index("ix_records_agent_success", "agent", "success"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("learning_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    plan_identity: Mapped[str] = mapped_column(String(1024), nullable=False)
    task_key: Mapped[str] = mapped_column(String(512), nullable=False)
    task_name: Mapped[str] = mapped_column(String(255), default="")
    agent: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    duration_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    qc_verdict: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    qc_feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    patterns: Mapped[list] = mapped_column(JSON, default=list)
    pattern_keywords: Mapped[dict] = mapped_column(JSON, default=dict)
    extra: Mapped[dict] = mapped_column(JSON, default=dict)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
    )

    # Relationships
    session: Mapped["LearningSessionRow"] = relationship(back_populates="records")

    def __repr__(self) -> str:
        return (
            f"ExecutionRecordRow(id={self.id}, task={self.task_key}, "
            f"outcome={self.outcome})"
        )
