from datetime import datetime, timedelta

import httpx
import pytest

from services import config
from services.audit_lifecycle import (
    STUCK_STOP_MESSAGE, TIMEOUT_MESSAGE, can_resume, claim_continuation, fail_stale_audits,
    find_active_audits, request_continuation, stop_audit,
)
from services.database import (
    AUDIT_BATCH_COMPLETE, AUDIT_CHECKING, AUDIT_COMPLETED, AUDIT_CRAWLING, AUDIT_FAILED, AUDIT_PENDING,
    AUDIT_STOPPED, GEO_FAILED, GEO_RUNNING, PERF_FAILED, PERF_PENDING, PERF_RUNNING, GeoAudit, PerformanceAudit,
    SiteAudit,
)

NOW = datetime(2026, 3, 10, 12, 0, 0)


def make_audit(db, organization_id=None, status=AUDIT_CRAWLING, minutes_idle=0, **fields):
    audit = SiteAudit(
        organization_id=organization_id,
        url="https://example.com",
        status=status,
        created_at=NOW - timedelta(minutes=minutes_idle),
        updated_at=NOW - timedelta(minutes=minutes_idle),
        **fields,
    )
    db.add(audit)
    db.commit()
    db.refresh(audit)
    return audit


def test_claim_continuation_only_from_batch_complete(db):
    resting = make_audit(db, status=AUDIT_BATCH_COMPLETE)
    running = make_audit(db, status=AUDIT_CRAWLING)

    claimed = claim_continuation(db, resting.id)
    assert claimed.id == resting.id
    assert claimed.status == AUDIT_CRAWLING

    assert claim_continuation(db, resting.id) is None
    assert claim_continuation(db, running.id) is None
    assert claim_continuation(db, 999) is None


def test_request_continuation_skipped_without_base_url(monkeypatch):
    monkeypatch.setattr(config, "APP_BASE_URL", "")
    assert request_continuation(1) is False


def test_request_continuation_posts_with_cron_secret(monkeypatch):
    monkeypatch.setattr(config, "APP_BASE_URL", "https://app.test")
    seen = []

    def handler(request):
        seen.append((str(request.url), request.headers.get("x-cron-secret")))
        return httpx.Response(200, json={"success": True})

    with httpx.Client(transport=httpx.MockTransport(handler)) as client:
        assert request_continuation(42, client=client) is True

    assert seen == [("https://app.test/api/audit/42/continue", "test-cron-secret")]


def test_request_continuation_reports_rejected_claim(monkeypatch):
    monkeypatch.setattr(config, "APP_BASE_URL", "https://app.test")
    transport = httpx.MockTransport(lambda request: httpx.Response(409, json={"error": "taken"}))

    with httpx.Client(transport=transport) as client:
        assert request_continuation(42, client=client) is False


def test_find_active_audits_reports_latest_running_audit(db, organization):
    make_audit(db, organization.id, status=AUDIT_COMPLETED)
    running = make_audit(db, organization.id, status=AUDIT_CHECKING, minutes_idle=2)

    result = find_active_audits(db, organization.id, now=NOW)

    assert result["has_site_audit"] is True
    assert result["site_audit_id"] == running.id
    assert result["has_geo_audit"] is False


def test_find_active_audits_fails_stale_audits(db, organization):
    stale = make_audit(db, organization.id, status=AUDIT_CRAWLING, minutes_idle=20)
    geo = GeoAudit(
        organization_id=organization.id, url="https://example.com", status=GEO_RUNNING,
        created_at=NOW - timedelta(minutes=10), updated_at=NOW - timedelta(minutes=10),
    )
    db.add(geo)
    db.commit()

    result = find_active_audits(db, organization.id, now=NOW)

    assert result == {
        "has_site_audit": False, "has_performance_audit": False, "has_geo_audit": False,
        "site_audit_id": None, "performance_audit_id": None, "geo_audit_id": None,
    }
    db.refresh(stale)
    db.refresh(geo)
    assert stale.status == AUDIT_FAILED
    assert stale.error_message == TIMEOUT_MESSAGE
    assert stale.completed_at == NOW
    assert geo.status == GEO_FAILED


def test_pending_audits_are_never_stale(db, organization):
    pending = make_audit(db, organization.id, status=AUDIT_PENDING, minutes_idle=60)

    result = find_active_audits(db, organization.id, now=NOW)

    assert result["site_audit_id"] == pending.id


def test_find_active_audits_without_organization():
    assert find_active_audits(None, None)["has_site_audit"] is False


def test_fail_stale_audits_sweeps_every_tenant(db):
    stale = make_audit(db, status=AUDIT_CHECKING, minutes_idle=16)
    fresh = make_audit(db, status=AUDIT_CRAWLING, minutes_idle=14)
    resting = make_audit(db, status=AUDIT_BATCH_COMPLETE, minutes_idle=60)

    assert fail_stale_audits(db, now=NOW) == 1

    for audit in (stale, fresh, resting):
        db.refresh(audit)
    assert stale.status == AUDIT_FAILED
    assert fresh.status == AUDIT_CRAWLING
    assert resting.status == AUDIT_BATCH_COMPLETE


def test_stop_running_audit(db):
    audit = make_audit(db, status=AUDIT_CRAWLING, minutes_idle=1)

    outcome = stop_audit(db, audit, now=NOW)

    assert outcome.status == AUDIT_STOPPED
    assert not outcome.needs_completion
    assert audit.status == AUDIT_STOPPED


def test_stop_unresponsive_audit_fails_it(db):
    audit = make_audit(db, status=AUDIT_CRAWLING, minutes_idle=6)

    outcome = stop_audit(db, audit, now=NOW)

    assert outcome.status == AUDIT_FAILED
    assert audit.error_message == STUCK_STOP_MESSAGE
    assert audit.completed_at == NOW


def test_stop_resting_audit_needs_completion(db):
    audit = make_audit(db, status=AUDIT_BATCH_COMPLETE, minutes_idle=30)

    outcome = stop_audit(db, audit, now=NOW)

    assert outcome.status == AUDIT_STOPPED
    assert outcome.needs_completion


def test_stop_finished_audit_is_rejected(db):
    audit = make_audit(db, status=AUDIT_COMPLETED)
    with pytest.raises(ValueError):
        stop_audit(db, audit, now=NOW)


def test_can_resume():
    assert can_resume(SiteAudit(status=AUDIT_FAILED, pages_crawled=3))
    assert can_resume(SiteAudit(status=AUDIT_STOPPED, pages_crawled=1))
    assert not can_resume(SiteAudit(status=AUDIT_FAILED, pages_crawled=0))
    assert not can_resume(SiteAudit(status=AUDIT_COMPLETED, pages_crawled=10))


def make_performance_audit(db, organization_id, status, minutes_idle):
    audit = PerformanceAudit(
        organization_id=organization_id, status=status, urls_json='["https://example.com"]',
        current_url="https://example.com", current_device="mobile",
        created_at=NOW - timedelta(minutes=minutes_idle), updated_at=NOW - timedelta(minutes=minutes_idle),
    )
    db.add(audit)
    db.commit()
    db.refresh(audit)
    return audit


def test_find_active_audits_reports_and_times_out_performance_audits(db, organization):
    pending = make_performance_audit(db, organization.id, PERF_PENDING, minutes_idle=60)
    assert find_active_audits(db, organization.id, now=NOW)["performance_audit_id"] == pending.id

    pending.status = PERF_RUNNING
    pending.updated_at = NOW - timedelta(minutes=60)
    db.commit()
    result = find_active_audits(db, organization.id, now=NOW)

    assert result["has_performance_audit"] is False
    db.refresh(pending)
    assert pending.status == PERF_FAILED
    assert pending.error_message == TIMEOUT_MESSAGE
    assert pending.current_url is None


def test_fail_stale_audits_includes_performance_audits(db, organization):
    stale = make_performance_audit(db, organization.id, PERF_RUNNING, minutes_idle=16)
    fresh = make_performance_audit(db, organization.id, PERF_RUNNING, minutes_idle=5)

    assert fail_stale_audits(db, now=NOW) == 1

    db.refresh(stale)
    db.refresh(fresh)
    assert stale.status == PERF_FAILED
    assert fresh.status == PERF_RUNNING
