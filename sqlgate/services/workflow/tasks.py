"""
Task workflow: tracked, possibly human-approved units of database work.

Lifecycle:
  created → pending_approval → approved → running → completed
                             ↘ rejected            ↘ failed → running (while attempts < max_retry_attempts)
  any non-terminal → cancelled                      ↘ cancelled

  Allowed operations are submitted straight into `running`.
  rejected / cancelled / completed are terminal; failed is terminal once the
  retry budget is spent.

Every transition appends a TaskProgress row and an AuditEvent in the same
commit. Concurrent transitions on one task are serialized by the
version_id_col optimistic lock: the loser gets StaleTaskState, as does any
transition whose expected source state no longer holds.

Pending approvals older than APPROVAL_TTL_MINUTES are cancelled lazily
(on list and on approve), the same way approval requests expire elsewhere.

Sensitive bind values are never persisted. They are held in process memory
until the task reaches a terminal state or fails with its retry budget spent; a task whose held values were lost
(restart) fails on run and must be resubmitted.
"""

import asyncio
import os
import uuid
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

import structlog
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from sqlgate.services.audit.trail import AuditTrail
from sqlgate.services.resilience.executor import ResilientExecutor
from sqlgate.services.safety.sanitizer import REDACTED
from sqlgate.services.shared.backend import Backend, QueryResult, to_json_value
from sqlgate.services.shared.config import ResiliencePolicy
from sqlgate.services.shared.errors import GatewayError, StaleTaskState, TaskNotFound
from sqlgate.services.shared.models import (
    AuditSeverity, DatabaseTask, TaskProgress, TaskStatus, TaskType, utcnow,
)

logger = structlog.get_logger()

APPROVAL_TTL_MINUTES: int = int(os.getenv("APPROVAL_TTL_MINUTES", "120"))

TERMINAL_STATES = frozenset({TaskStatus.rejected, TaskStatus.cancelled, TaskStatus.completed})
CANCELLABLE     = frozenset({TaskStatus.created, TaskStatus.pending_approval, TaskStatus.approved, TaskStatus.running})

_SCHEMA_VERBS      = frozenset({"CREATE", "ALTER", "DROP", "TRUNCATE"})
_BACKUP_VERBS      = frozenset({"BACKUP", "RESTORE"})
_MAINTENANCE_VERBS = frozenset({"REINDEX", "VACUUM", "DBCC", "ANALYZE"})
_QUERY_VERBS       = frozenset({"SELECT", "WITH", "EXPLAIN"})


def task_type_for(verb: Optional[str]) -> TaskType:
    verb = (verb or "").upper()
    if verb in _SCHEMA_VERBS:
        return TaskType.schema_change
    if verb in _BACKUP_VERBS:
        return TaskType.backup
    if verb in _MAINTENANCE_VERBS:
        return TaskType.maintenance
    if verb in _QUERY_VERBS:
        return TaskType.query
    return TaskType.command


class TaskWorkflow:
    def __init__(
        self,
        audit: AuditTrail,
        executor: ResilientExecutor,
        backend: Backend,
        resilience: Optional[ResiliencePolicy] = None,
        approval_ttl_minutes: int = APPROVAL_TTL_MINUTES,
    ):
        self.audit = audit
        self.executor = executor
        self.backend = backend
        self.resilience = resilience or executor.policy
        self.approval_ttl = timedelta(minutes=approval_ttl_minutes)
        self._held_binds: dict[str, dict[str, Any]] = {}

    # ── Helpers ────────────────────────────────────────────────────────────────

    def _load(self, db: Session, task_id: str) -> DatabaseTask:
        task = db.get(DatabaseTask, task_id)
        if task is None:
            raise TaskNotFound(f"Task '{task_id}' not found", data={"taskId": task_id})
        return task

    def _transition(
        self,
        db: Session,
        task: DatabaseTask,
        expected: Iterable[TaskStatus],
        target: TaskStatus,
        *,
        actor: str,
        message: str,
        action: str,
        percent: int = 0,
        success: bool = True,
        severity: AuditSeverity = AuditSeverity.info,
        correlation_id: Optional[str] = None,
        **changes: Any,
    ) -> DatabaseTask:
        expected = frozenset(expected)
        if task.status not in expected:
            raise StaleTaskState(
                f"Task '{task.id}' is '{task.status.value}', cannot move to '{target.value}'",
                data={"taskId": task.id, "status": task.status.value, "target": target.value},
            )

        previous = task.status
        try:
            task.status = target
            for key, value in changes.items():
                setattr(task, key, value)
            task.updated_at = utcnow()
            task.progress.append(TaskProgress(status=target, message=message, percent_complete=percent))
            self.audit.emit(
                db,
                user_id=actor,
                entity_type="task",
                entity_id=task.id,
                action=action,
                success=success,
                severity=severity,
                detail=message,
                data={"from": previous.value, "to": target.value, "database": task.database_name},
                correlation_id=correlation_id,
            )
            db.commit()
            db.refresh(task)
        except StaleDataError as exc:
            db.rollback()
            logger.warning("task_transition_lost_race", task_id=task.id, target=target.value)
            raise StaleTaskState(
                f"Task '{task.id}' was modified concurrently",
                data={"taskId": task.id, "target": target.value},
            ) from exc

        if self._is_final(task):
            self._held_binds.pop(task.id, None)
        logger.info("task_transition", task_id=task.id, previous=previous.value, status=target.value, actor=actor)
        return task

    def _is_final(self, task: DatabaseTask) -> bool:
        if task.status in TERMINAL_STATES:
            return True
        return task.status == TaskStatus.failed and task.attempts >= self.resilience.max_retry_attempts

    def _is_expired(self, task: DatabaseTask, now: datetime) -> bool:
        return task.status == TaskStatus.pending_approval and task.created_at <= now - self.approval_ttl

    # ── Submission ─────────────────────────────────────────────────────────────

    def submit(
        self,
        db: Session,
        *,
        task_type: TaskType,
        database: str,
        created_by: str,
        tool_name: str,
        statement: str,
        binds: Optional[dict[str, Any]] = None,
        sensitive: Iterable[str] = (),
        requires_approval: bool = False,
        reason: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> DatabaseTask:
        binds = dict(binds or {})
        sensitive = sorted(set(sensitive) & set(binds))
        persisted = {k: (REDACTED if k in sensitive else to_json_value(v)) for k, v in binds.items()}

        status = TaskStatus.pending_approval if requires_approval else TaskStatus.running
        task = DatabaseTask(
            id=uuid.uuid4().hex,
            type=task_type,
            status=status,
            database_name=database,
            created_by=created_by,
            requires_approval=requires_approval,
            tool_name=tool_name,
            statement=statement,
            parameters={"binds": persisted, "sensitive": sensitive},
            reason=reason,
            attempts=0 if requires_approval else 1,
            results=[],
        )
        message = "Awaiting approval" if requires_approval else "Execution started"
        if requires_approval:
            task.progress.append(TaskProgress(status=TaskStatus.created, message="Task created", percent_complete=0))
        task.progress.append(TaskProgress(status=status, message=message, percent_complete=0))
        db.add(task)
        self.audit.emit(
            db,
            user_id=created_by,
            entity_type="task",
            entity_id=task.id,
            action="task_submitted",
            success=True,
            detail=f"{task_type.value} task submitted via {tool_name}: {message.lower()}",
            data={"to": status.value, "database": database, "requiresApproval": requires_approval, "reason": reason},
            correlation_id=correlation_id,
        )
        db.commit()
        db.refresh(task)

        if sensitive:
            self._held_binds[task.id] = {k: binds[k] for k in sensitive}
        logger.info(
            "task_submitted",
            task_id=task.id,
            type=task_type.value,
            status=status.value,
            database=database,
            created_by=created_by,
        )
        return task

    # ── Review ─────────────────────────────────────────────────────────────────

    def approve(
        self, db: Session, task_id: str, reviewed_by: str, comment: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> DatabaseTask:
        task = self._load(db, task_id)
        now = utcnow()
        if self._is_expired(task, now):
            self._expire(db, task)
            raise StaleTaskState(
                f"Approval window for task '{task_id}' has expired",
                data={"taskId": task_id, "status": task.status.value},
            )
        return self._transition(
            db, task, {TaskStatus.pending_approval}, TaskStatus.approved,
            actor=reviewed_by,
            message=f"Approved by {reviewed_by}" + (f": {comment}" if comment else ""),
            action="task_approved",
            correlation_id=correlation_id,
            reviewed_by=reviewed_by,
            reviewed_at=now,
        )

    def reject(
        self, db: Session, task_id: str, reviewed_by: str, comment: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> DatabaseTask:
        task = self._load(db, task_id)
        return self._transition(
            db, task, {TaskStatus.pending_approval}, TaskStatus.rejected,
            actor=reviewed_by,
            message=f"Rejected by {reviewed_by}" + (f": {comment}" if comment else ""),
            action="task_rejected",
            correlation_id=correlation_id,
            reviewed_by=reviewed_by,
            reviewed_at=utcnow(),
        )

    def cancel(
        self, db: Session, task_id: str, actor: str, reason: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> DatabaseTask:
        task = self._load(db, task_id)
        return self._transition(
            db, task, CANCELLABLE, TaskStatus.cancelled,
            actor=actor,
            message=f"Cancelled by {actor}" + (f": {reason}" if reason else ""),
            action="task_cancelled",
            severity=AuditSeverity.warning,
            correlation_id=correlation_id,
        )

    def _expire(self, db: Session, task: DatabaseTask) -> DatabaseTask:
        return self._transition(
            db, task, {TaskStatus.pending_approval}, TaskStatus.cancelled,
            actor="system",
            message=f"Approval expired after {int(self.approval_ttl.total_seconds() // 60)} minutes",
            action="task_expired",
            severity=AuditSeverity.warning,
        )

    def expire_stale(self, db: Session, now: Optional[datetime] = None) -> int:
        """Cancel pending approvals older than the approval TTL (lazy expiry)."""
        cutoff = (now or utcnow()) - self.approval_ttl
        stale = (
            db.query(DatabaseTask)
            .filter(DatabaseTask.status == TaskStatus.pending_approval, DatabaseTask.created_at <= cutoff)
            .all()
        )
        expired = 0
        for task in stale:
            try:
                self._expire(db, task)
                expired += 1
            except StaleTaskState:
                logger.info("task_expiry_skipped", task_id=task.id)
        return expired

    # ── Execution ──────────────────────────────────────────────────────────────

    def _binds_for(self, task: DatabaseTask) -> Optional[dict[str, Any]]:
        stored = dict((task.parameters or {}).get("binds", {}))
        sensitive = (task.parameters or {}).get("sensitive", [])
        if not sensitive:
            return stored
        held = self._held_binds.get(task.id)
        if held is None or any(k not in held for k in sensitive):
            return None
        stored.update(held)
        return stored

    async def run(
        self, db: Session, task_id: str, actor: str, correlation_id: Optional[str] = None,
    ) -> QueryResult:
        """Execute an approved task, or retry a failed one while the budget lasts."""
        task = await asyncio.to_thread(self._load, db, task_id)
        if task.status == TaskStatus.failed and task.attempts >= self.resilience.max_retry_attempts:
            raise StaleTaskState(
                f"Task '{task_id}' has exhausted its retry budget",
                data={"taskId": task_id, "attempts": task.attempts},
            )
        await asyncio.to_thread(
            self._transition, db, task, {TaskStatus.approved, TaskStatus.failed}, TaskStatus.running,
            actor=actor,
            message="Execution started" if task.status == TaskStatus.approved else f"Retry {task.attempts} started",
            action="task_started",
            percent=10,
            correlation_id=correlation_id,
            attempts=task.attempts + 1,
        )
        return await self.execute(db, task, actor, correlation_id=correlation_id)

    async def execute(
        self, db: Session, task: DatabaseTask, actor: str, correlation_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> QueryResult:
        """Drive a task that is already `running` through the resilience wrapper."""
        if task.status != TaskStatus.running:
            raise StaleTaskState(
                f"Task '{task.id}' is '{task.status.value}', not running",
                data={"taskId": task.id, "status": task.status.value},
            )

        binds = self._binds_for(task)
        if binds is None:
            await asyncio.to_thread(
                self._transition, db, task, {TaskStatus.running}, TaskStatus.failed,
                actor=actor,
                message="Sensitive parameters are no longer available; resubmit the request",
                action="task_failed",
                success=False,
                severity=AuditSeverity.error,
                correlation_id=correlation_id,
                error_message="sensitive parameters unavailable",
                attempts=self.resilience.max_retry_attempts,
            )
            raise StaleTaskState(
                f"Task '{task.id}' cannot run without its sensitive parameters",
                data={"taskId": task.id},
            )

        database, statement = task.database_name, task.statement
        policy = self.resilience
        if timeout:
            policy = policy.model_copy(update={"timeout": timeout})
        try:
            result = await self.executor.execute(
                database,
                lambda: self.backend.execute(database, statement, binds, policy.timeout),
                policy,
            )
        except asyncio.CancelledError:
            await asyncio.to_thread(
                self._record_outcome, db, task, TaskStatus.cancelled, actor, correlation_id,
                message="Execution cancelled by the caller",
                action="task_cancelled",
                severity=AuditSeverity.warning,
            )
            raise
        except Exception as exc:
            safe = exc.safe_message if isinstance(exc, GatewayError) else "Internal error"
            await asyncio.to_thread(
                self._record_outcome, db, task, TaskStatus.failed, actor, correlation_id,
                message=f"Execution failed: {safe}",
                action="task_failed",
                severity=AuditSeverity.error,
                error_message=str(exc)[:2000],
            )
            raise

        entry = {
            "success":           True,
            "rows_affected":     result.rows_affected,
            "row_count":         result.row_count,
            "execution_time_ms": round(result.execution_time_ms, 3),
            "message":           f"{result.row_count} rows returned, {result.rows_affected} rows affected",
        }
        await asyncio.to_thread(
            self._transition, db, task, {TaskStatus.running}, TaskStatus.completed,
            actor=actor,
            message=entry["message"],
            action="task_completed",
            percent=100,
            correlation_id=correlation_id,
            results=[*(task.results or []), entry],
            error_message=None,
        )
        return result

    def _record_outcome(
        self, db: Session, task: DatabaseTask, target: TaskStatus, actor: str,
        correlation_id: Optional[str], *, message: str, action: str,
        severity: AuditSeverity, error_message: Optional[str] = None,
    ) -> None:
        changes: dict[str, Any] = {}
        if error_message is not None:
            changes["error_message"] = error_message
            changes["results"] = [*(task.results or []), {"success": False, "message": message}]
        try:
            self._transition(
                db, task, {TaskStatus.running}, target,
                actor=actor,
                message=message,
                action=action,
                success=False,
                severity=severity,
                correlation_id=correlation_id,
                **changes,
            )
        except StaleTaskState:
            # someone else already moved the task (e.g. cancelled while running)
            logger.warning("task_outcome_not_recorded", task_id=task.id, target=target.value)

    # ── Queries ────────────────────────────────────────────────────────────────

    def get(self, db: Session, task_id: str) -> DatabaseTask:
        return self._load(db, task_id)

    def list_tasks(
        self,
        db: Session,
        *,
        status: Optional[TaskStatus] = None,
        database: Optional[str] = None,
        created_by: Optional[str] = None,
        limit: int = 100,
    ) -> list[DatabaseTask]:
        self.expire_stale(db)
        q = db.query(DatabaseTask)
        if status:
            q = q.filter(DatabaseTask.status == status)
        if database:
            q = q.filter(DatabaseTask.database_name == database)
        if created_by:
            q = q.filter(DatabaseTask.created_by == created_by)
        return q.order_by(DatabaseTask.created_at.desc()).limit(max(1, min(limit, 500))).all()
