import asyncio
from datetime import datetime, timedelta

from services import audit_scheduler
from services.audit_scheduler import claim_waiting_audits, get_sites_due_for_audit, run_weekly_audits
from services.database import (
    AUDIT_BATCH_COMPLETE, AUDIT_COMPLETED, AUDIT_CRAWLING, AUDIT_PENDING, PERF_PENDING, MonitoredPage, MonitoredSite,
    PerformanceAudit, SiteAudit,
)

NOW = datetime(2026, 3, 10, 12, 0)


def monitored(db, organization, url="https://example.com", last_audit=None, enabled=True, performance=False):
    site = MonitoredSite(
        organization_id=organization.id, url=url, run_site_audit=enabled, last_site_audit_at=last_audit,
        run_performance_audit=performance,
    )
    db.add(site)
    db.commit()
    return site


def test_sites_due_for_audit(db, organization):
    never = monitored(db, organization, "https://never.test")
    stale = monitored(db, organization, "https://stale.test", last_audit=NOW - timedelta(days=8))
    monitored(db, organization, "https://fresh.test", last_audit=NOW - timedelta(days=2))
    monitored(db, organization, "https://disabled.test", enabled=False)

    due = get_sites_due_for_audit(db, NOW)

    assert {site.id for site in due} == {never.id, stale.id}


def test_run_weekly_audits_creates_pending_audits(db, organization):
    site = monitored(db, organization)
    monitored(db, organization, "ftp://example.com/files")

    results = run_weekly_audits(db, NOW)

    assert results["site_audits_started"] == 1
    assert len(results["errors"]) == 1
    audit_id, url = results["audits"][0]
    assert url == "https://example.com"
    audit = db.query(SiteAudit).filter(SiteAudit.id == audit_id).one()
    assert audit.status == AUDIT_PENDING
    assert audit.organization_id == organization.id
    db.refresh(site)
    assert site.last_site_audit_at == NOW
    assert run_weekly_audits(db, NOW + timedelta(days=1))["site_audits_started"] == 0


def test_claim_waiting_audits(db, organization):
    waiting = SiteAudit(organization_id=organization.id, url="https://example.com", status=AUDIT_BATCH_COMPLETE)
    running = SiteAudit(organization_id=organization.id, url="https://example.com", status=AUDIT_CRAWLING)
    done = SiteAudit(organization_id=organization.id, url="https://example.com", status=AUDIT_COMPLETED)
    db.add_all([waiting, running, done])
    db.commit()

    assert claim_waiting_audits(db) == [(waiting.id, "https://example.com")]
    db.expire_all()
    assert db.query(SiteAudit).filter(SiteAudit.id == waiting.id).one().status == AUDIT_CRAWLING
    assert claim_waiting_audits(db) == []


def test_run_scheduler_cycle_runs_claimed_batches(db, organization, monkeypatch):
    waiting = SiteAudit(organization_id=organization.id, url="https://example.com", status=AUDIT_BATCH_COMPLETE)
    db.add(waiting)
    db.commit()
    monitored(db, organization, "https://weekly.test")
    ran = []
    monkeypatch.setattr(audit_scheduler, "run_audit_batch", lambda audit_id, url: ran.append((audit_id, url)))

    summary = asyncio.run(audit_scheduler.run_scheduler_cycle())

    assert summary == {"stale_failed": 0, "continued": 1, "weekly_started": 1, "weekly_performance_started": 0}
    assert ran[0] == (waiting.id, "https://example.com")
    assert ran[1][1] == "https://weekly.test"


def test_run_weekly_audits_starts_performance_audits(db, organization):
    site = monitored(db, organization, enabled=False, performance=True)
    monitored(db, organization, "https://recent.test", performance=True, enabled=False)
    db.query(MonitoredSite).filter(MonitoredSite.url == "https://recent.test").update(
        {"last_performance_audit_at": NOW - timedelta(days=1)}
    )
    db.add(MonitoredPage(organization_id=organization.id, url="https://example.com/pricing"))
    db.commit()

    results = run_weekly_audits(db, NOW)

    assert results["site_audits_started"] == 0
    assert results["performance_audits_started"] == 1
    audit = db.query(PerformanceAudit).filter(PerformanceAudit.id == results["performance_audits"][0]).one()
    assert audit.status == PERF_PENDING
    assert audit.get_urls() == ["https://example.com", "https://example.com/pricing"]
    db.refresh(site)
    assert site.last_performance_audit_at == NOW


def test_run_scheduler_cycle_runs_weekly_performance_audits(db, organization, monkeypatch):
    monitored(db, organization, enabled=False, performance=True)
    ran = []
    monkeypatch.setattr(audit_scheduler, "run_audit_batch", lambda audit_id, url: ran.append(("site", audit_id)))
    monkeypatch.setattr(audit_scheduler, "run_performance_audit", lambda audit_id: ran.append(("performance", audit_id)))

    summary = asyncio.run(audit_scheduler.run_scheduler_cycle())

    assert summary["weekly_performance_started"] == 1
    assert [kind for kind, _ in ran] == ["performance"]
