"""
Audit trail query routes.
Read access to the immutable trail plus the retention cleanup.

  GET    /api/audit                  criteria + page/page_size, newest first
  GET    /api/audit/summary          totals for a window (default: last 24h)
  DELETE /api/audit?older_than=...   retention cleanup, returns {"deleted": n}
"""

from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query

from sqlgate.services.gateway.components import Components
from sqlgate.services.gateway.routes_tasks import get_components
from sqlgate.services.shared.auth import get_caller
from sqlgate.services.shared.database import get_db
from sqlgate.services.shared.models import AuditSeverity, utcnow
from sqlgate.services.shared.schemas import AuditPage, AuditSearchCriteria, AuditSummary

router = APIRouter()


@router.get("/audit", response_model=AuditPage)
def search_audit(
    user_id:     Optional[str]           = None,
    entity_type: Optional[str]           = None,
    entity_id:   Optional[str]           = None,
    action:      Optional[str]           = None,
    start:       Optional[datetime]      = None,
    end:         Optional[datetime]      = None,
    severity:    Optional[AuditSeverity] = None,
    success:     Optional[bool]          = None,
    text:        Optional[str]           = None,
    page:        int                     = Query(default=1, ge=1),
    page_size:   int                     = Query(default=50),
    components: Components = Depends(get_components),
    db=Depends(get_db),
):
    """
    Query the audit trail.
    page_size is clamped to 1..1000; text matches inside the event detail.
    """
    criteria = AuditSearchCriteria(
        user_id=user_id, entity_type=entity_type, entity_id=entity_id, action=action,
        start=start, end=end, severity=severity, success=success, text=text,
    )
    return components.audit.search(db, criteria, page=page, page_size=page_size)


@router.get("/audit/summary", response_model=AuditSummary)
def audit_summary(
    start: Optional[datetime] = None,
    end:   Optional[datetime] = None,
    components: Components = Depends(get_components),
    db=Depends(get_db),
):
    end = end or utcnow()
    start = start or end - timedelta(days=1)
    return components.audit.summarize(db, start, end)


@router.delete("/audit")
def cleanup_audit(
    older_than: datetime,
    caller: str = Depends(get_caller),
    components: Components = Depends(get_components),
    db=Depends(get_db),
):
    deleted = components.audit.cleanup(db, older_than, user_id=caller)
    return {"deleted": deleted}
