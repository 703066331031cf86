"""
Append-only audit trail.

Every validation rejection, resilience exhaustion, task transition and
successful execution produces exactly one AuditEvent row.

  emit()       add an event to the caller's session (same transaction as the
               change it describes, e.g. a task transition)
  record()     emit + commit before the request is acknowledged
  search()     criteria + pagination, newest first, page_size clamped 1..1000
  summarize()  totals / success rate / counts by action and severity
  cleanup()    retention: bulk-delete events older than a cutoff

Rows are never updated; the ORM listeners in models.py reject it. cleanup()
issues a bulk DELETE, which is the only removal path.
"""

from datetime import datetime
from typing import Any, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from sqlgate.services.shared.models import AuditEvent, AuditSeverity, utcnow
from sqlgate.services.shared.schemas import AuditEventOut, AuditPage, AuditSearchCriteria, AuditSummary

logger = structlog.get_logger()

MAX_PAGE_SIZE = 1000
DEFAULT_PAGE_SIZE = 50


def clamp_page(page: int, page_size: int) -> tuple[int, int]:
    return max(1, page), max(1, min(page_size, MAX_PAGE_SIZE))


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class AuditTrail:
    def emit(
        self,
        db: Session,
        *,
        user_id: str,
        entity_type: str,
        action: str,
        success: bool,
        entity_id: Optional[str] = None,
        severity: AuditSeverity = AuditSeverity.info,
        detail: str = "",
        data: Optional[dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            timestamp=utcnow(),
            user_id=user_id or "anonymous",
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            success=success,
            severity=severity,
            detail=detail or "",
            data=data or {},
            correlation_id=correlation_id,
        )
        db.add(event)
        db.flush()
        return event

    def record(self, db: Session, **kwargs) -> AuditEvent:
        event = self.emit(db, **kwargs)
        db.commit()
        logger.debug(
            "audit_event_recorded",
            event_id=event.id,
            action=event.action,
            entity_type=event.entity_type,
            success=event.success,
        )
        return event

    # ── Queries ────────────────────────────────────────────────────────────────

    def search(
        self,
        db: Session,
        criteria: Optional[AuditSearchCriteria] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> AuditPage:
        criteria = criteria or AuditSearchCriteria()
        page, page_size = clamp_page(page, page_size)

        q = db.query(AuditEvent)
        if criteria.user_id:
            q = q.filter(AuditEvent.user_id == criteria.user_id)
        if criteria.entity_type:
            q = q.filter(AuditEvent.entity_type == criteria.entity_type)
        if criteria.entity_id:
            q = q.filter(AuditEvent.entity_id == criteria.entity_id)
        if criteria.action:
            q = q.filter(AuditEvent.action == criteria.action)
        if criteria.start:
            q = q.filter(AuditEvent.timestamp >= criteria.start)
        if criteria.end:
            q = q.filter(AuditEvent.timestamp <= criteria.end)
        if criteria.severity:
            q = q.filter(AuditEvent.severity == criteria.severity)
        if criteria.success is not None:
            q = q.filter(AuditEvent.success == criteria.success)
        if criteria.text:
            q = q.filter(AuditEvent.detail.ilike(f"%{_escape_like(criteria.text)}%", escape="\\"))

        total = q.count()
        rows = (
            q.order_by(AuditEvent.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return AuditPage(
            items=[AuditEventOut.model_validate(r) for r in rows],
            total=total,
            page=page,
            page_size=page_size,
        )

    def summarize(self, db: Session, start: datetime, end: datetime) -> AuditSummary:
        window = (AuditEvent.timestamp >= start, AuditEvent.timestamp <= end)

        total = db.query(func.count(AuditEvent.id)).filter(*window).scalar() or 0
        successes = (
            db.query(func.count(AuditEvent.id))
            .filter(*window, AuditEvent.success.is_(True))
            .scalar()
        ) or 0
        by_action = dict(
            db.query(AuditEvent.action, func.count(AuditEvent.id))
            .filter(*window)
            .group_by(AuditEvent.action)
            .all()
        )
        by_severity = {
            (sev.value if isinstance(sev, AuditSeverity) else str(sev)): n
            for sev, n in (
                db.query(AuditEvent.severity, func.count(AuditEvent.id))
                .filter(*window)
                .group_by(AuditEvent.severity)
                .all()
            )
        }
        return AuditSummary(
            start=start,
            end=end,
            total_events=total,
            success_count=successes,
            failure_count=total - successes,
            success_rate=round(successes / total * 100, 2) if total else 0.0,
            by_action=by_action,
            by_severity=by_severity,
        )

    # ── Retention ──────────────────────────────────────────────────────────────

    def cleanup(self, db: Session, older_than: datetime, user_id: str = "system") -> int:
        deleted = (
            db.query(AuditEvent)
            .filter(AuditEvent.timestamp < older_than)
            .delete(synchronize_session=False)
        )
        self.emit(
            db,
            user_id=user_id,
            entity_type="audit",
            action="audit_cleanup",
            success=True,
            detail=f"Removed {deleted} audit events older than {older_than.isoformat()}",
            data={"deleted": deleted, "olderThan": older_than.isoformat()},
        )
        db.commit()
        logger.info("audit_cleanup", deleted=deleted, older_than=older_than.isoformat(), user_id=user_id)
        return deleted
