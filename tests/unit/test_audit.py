"""
Unit tests for the append-only audit trail.
"""

from datetime import timedelta

import pytest

from sqlgate.services.audit.trail import MAX_PAGE_SIZE, AuditTrail, clamp_page
from sqlgate.services.shared.models import AuditEvent, AuditSeverity, utcnow
from sqlgate.services.shared.schemas import AuditSearchCriteria


# ── Helpers ───────────────────────────────────────────────────────────────────

def _record(trail, db, i=0, **kw):
    defaults = dict(
        user_id="agent-7",
        entity_type="statement",
        entity_id="sales",
        action="query_executed",
        success=True,
        detail=f"event {i}",
    )
    defaults.update(kw)
    return trail.record(db, **defaults)


# ── Search ────────────────────────────────────────────────────────────────────

def test_pagination_reports_full_total(db):
    trail = AuditTrail()
    for i in range(25):
        _record(trail, db, i)

    page = trail.search(db, page=2, page_size=10)
    assert page.total == 25
    assert len(page.items) == 10
    assert page.page == 2
    ids = [e.id for e in page.items]
    assert ids == sorted(ids, reverse=True)

    last = trail.search(db, page=3, page_size=10)
    assert len(last.items) == 5


@pytest.mark.parametrize("requested,effective", [(5000, MAX_PAGE_SIZE), (0, 1), (-3, 1), (50, 50)])
def test_page_size_is_clamped(requested, effective):
    assert clamp_page(1, requested)[1] == effective


def test_page_number_floor():
    assert clamp_page(0, 10) == (1, 10)


def test_search_filters(db):
    trail = AuditTrail()
    _record(trail, db, 1)
    _record(trail, db, 2, action="request_rejected", success=False, severity=AuditSeverity.warning,
            detail="DELETE without a WHERE clause")
    _record(trail, db, 3, user_id="agent-9")

    assert trail.search(db, AuditSearchCriteria(success=False)).total == 1
    assert trail.search(db, AuditSearchCriteria(action="query_executed")).total == 2
    assert trail.search(db, AuditSearchCriteria(user_id="agent-9")).total == 1
    assert trail.search(db, AuditSearchCriteria(severity=AuditSeverity.warning)).total == 1
    assert trail.search(db, AuditSearchCriteria(text="where clause")).total == 1


def test_text_search_treats_wildcards_literally(db):
    trail = AuditTrail()
    _record(trail, db, 1, detail="100% of rows scanned")
    _record(trail, db, 2, detail="table sales_2024 rebuilt")
    _record(trail, db, 3, detail="salesX2024 untouched")

    assert trail.search(db, AuditSearchCriteria(text="%")).total == 1
    assert trail.search(db, AuditSearchCriteria(text="sales_2024")).total == 1
    assert trail.search(db, AuditSearchCriteria(text="_")).total == 1


def test_time_window_filter(db):
    trail = AuditTrail()
    _record(trail, db)
    now = utcnow()
    assert trail.search(db, AuditSearchCriteria(start=now + timedelta(minutes=1))).total == 0
    assert trail.search(db, AuditSearchCriteria(end=now + timedelta(minutes=1))).total == 1


# ── Summary ───────────────────────────────────────────────────────────────────

def test_summary_counts(db):
    trail = AuditTrail()
    for i in range(3):
        _record(trail, db, i)
    _record(trail, db, action="request_rejected", success=False, severity=AuditSeverity.warning)

    now = utcnow()
    summary = trail.summarize(db, now - timedelta(hours=1), now + timedelta(hours=1))
    assert summary.total_events == 4
    assert summary.success_count == 3
    assert summary.failure_count == 1
    assert summary.success_rate == 75.0
    assert summary.by_action == {"query_executed": 3, "request_rejected": 1}
    assert summary.by_severity == {"info": 3, "warning": 1}


def test_summary_of_empty_window(db):
    now = utcnow()
    summary = AuditTrail().summarize(db, now - timedelta(hours=1), now)
    assert summary.total_events == 0
    assert summary.success_rate == 0.0


# ── Immutability / retention ──────────────────────────────────────────────────

def test_events_cannot_be_updated(db):
    event = _record(AuditTrail(), db)
    event.detail = "rewritten"
    with pytest.raises(ValueError):
        db.commit()
    db.rollback()


def test_events_cannot_be_deleted_one_by_one(db):
    event = _record(AuditTrail(), db)
    db.delete(event)
    with pytest.raises(ValueError):
        db.commit()
    db.rollback()


def test_cleanup_removes_only_old_events_and_audits_itself(db):
    trail = AuditTrail()
    db.add(AuditEvent(
        timestamp=utcnow() - timedelta(days=120), user_id="agent-7", entity_type="statement",
        action="query_executed", success=True,
    ))
    db.commit()
    _record(trail, db)

    deleted = trail.cleanup(db, utcnow() - timedelta(days=90), user_id="dba-1")
    assert deleted == 1

    remaining = [e.action for e in db.query(AuditEvent).order_by(AuditEvent.id).all()]
    assert remaining == ["query_executed", "audit_cleanup"]
