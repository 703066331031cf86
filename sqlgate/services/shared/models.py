"""
SQLGate SQLAlchemy ORM models - all gateway-owned tables in one file.
Uses SQLAlchemy 2.0 Mapped + mapped_column for full type-checker support.

  DatabaseTask   tracked (and possibly human-approved) unit of database work
  TaskProgress   one row per task transition / progress report
  AuditEvent     append-only audit trail

Timestamps are stored as naive UTC.

Audit immutability invariant:
  AuditEvent rows are never updated and never deleted one by one.
  The only removal path is the bulk retention cleanup in audit/trail.py.
"""

import enum
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import (
    Boolean, DateTime, Enum as SAEnum, ForeignKey,
    Index, Integer, JSON, String, Text, event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sqlgate.services.shared.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ── Enumerations ──────────────────────────────────────────────────────────────

class TaskType(str, enum.Enum):
    query         = "query"
    command       = "command"
    schema_change = "schema_change"
    backup        = "backup"
    maintenance   = "maintenance"


class TaskStatus(str, enum.Enum):
    created          = "created"
    pending_approval = "pending_approval"
    approved         = "approved"
    rejected         = "rejected"
    running          = "running"
    completed        = "completed"
    failed           = "failed"
    cancelled        = "cancelled"


class AuditSeverity(str, enum.Enum):
    debug    = "debug"
    info     = "info"
    warning  = "warning"
    error    = "error"
    critical = "critical"


# ── Tasks ─────────────────────────────────────────────────────────────────────

class DatabaseTask(Base):
    """
    Owned exclusively by the task workflow (workflow/tasks.py).
    Audit events reference a task by entity_id, never by foreign key.

    version_id backs optimistic locking: two sessions racing on one task
    cannot both commit a transition.
    """
    __tablename__ = "database_tasks"

    id:                Mapped[str]                = mapped_column(String(32), primary_key=True)
    type:              Mapped[TaskType]           = mapped_column(SAEnum(TaskType), nullable=False)
    status:            Mapped[TaskStatus]         = mapped_column(SAEnum(TaskStatus), nullable=False, index=True)
    database_name:     Mapped[str]                = mapped_column(String(255), nullable=False, index=True)
    created_by:        Mapped[str]                = mapped_column(String(255), nullable=False, index=True)
    requires_approval: Mapped[bool]               = mapped_column(Boolean, default=False)
    tool_name:         Mapped[str]                = mapped_column(String(64), nullable=False)
    statement:         Mapped[str]                = mapped_column(Text, nullable=False)
    parameters:        Mapped[dict[str, Any]]     = mapped_column(JSON, default=dict)
    reason:            Mapped[Optional[str]]      = mapped_column(Text, nullable=True)
    attempts:          Mapped[int]                = mapped_column(Integer, default=0)
    reviewed_by:       Mapped[Optional[str]]      = mapped_column(String(255), nullable=True)
    reviewed_at:       Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error_message:     Mapped[Optional[str]]      = mapped_column(Text, nullable=True)
    results:           Mapped[list[Any]]          = mapped_column(JSON, default=list)
    created_at:        Mapped[datetime]           = mapped_column(DateTime, default=utcnow, index=True)
    updated_at:        Mapped[datetime]           = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    version_id:        Mapped[int]                = mapped_column(Integer, nullable=False)

    progress: Mapped[List["TaskProgress"]] = relationship(
        "TaskProgress", back_populates="task",
        cascade="all, delete-orphan", order_by="TaskProgress.id",
    )

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        Index("ix_database_tasks_status_created", "status", "created_at"),
    )


class TaskProgress(Base):
    __tablename__ = "task_progress"

    id:               Mapped[int]                  = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id:          Mapped[str]                  = mapped_column(String(32), ForeignKey("database_tasks.id"), nullable=False, index=True)
    timestamp:        Mapped[datetime]             = mapped_column(DateTime, default=utcnow)
    status:           Mapped[TaskStatus]           = mapped_column(SAEnum(TaskStatus), nullable=False)
    message:          Mapped[str]                  = mapped_column(Text, nullable=False)
    percent_complete: Mapped[int]                  = mapped_column(Integer, default=0)

    task: Mapped["DatabaseTask"] = relationship("DatabaseTask", back_populates="progress")


# ── Audit trail ───────────────────────────────────────────────────────────────

class AuditEvent(Base):
    """
    One validation decision, execution outcome or task transition.
    id is autoincrement, so events for one entity sort in completion order.
    entity_type: "statement" | "procedure" | "task" | "tool" | "circuit" | "audit"
    """
    __tablename__ = "audit_events"

    id:             Mapped[int]             = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp:      Mapped[datetime]        = mapped_column(DateTime, default=utcnow, index=True)
    user_id:        Mapped[str]             = mapped_column(String(255), nullable=False, index=True)
    entity_type:    Mapped[str]             = mapped_column(String(64), nullable=False)
    entity_id:      Mapped[Optional[str]]   = mapped_column(String(255), nullable=True)
    action:         Mapped[str]             = mapped_column(String(128), nullable=False, index=True)
    success:        Mapped[bool]            = mapped_column(Boolean, nullable=False)
    severity:       Mapped[AuditSeverity]   = mapped_column(SAEnum(AuditSeverity), default=AuditSeverity.info)
    detail:         Mapped[str]             = mapped_column(Text, default="")
    data:           Mapped[dict[str, Any]]  = mapped_column(JSON, default=dict)
    correlation_id: Mapped[Optional[str]]   = mapped_column(String(64), nullable=True, index=True)

    __table_args__ = (
        Index("ix_audit_events_entity", "entity_type", "entity_id"),
    )


@event.listens_for(AuditEvent, "before_update")
def _audit_events_are_immutable(mapper, connection, target):
    raise ValueError(f"AuditEvent {target.id} is immutable")


@event.listens_for(AuditEvent, "before_delete")
def _audit_events_are_append_only(mapper, connection, target):
    raise ValueError(f"AuditEvent {target.id} can only be removed by retention cleanup")
