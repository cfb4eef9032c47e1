from datetime import datetime, timedelta

from services.audit_cleanup import (
    _months_before, cleanup_crawl_queue, cleanup_older_audit_details, run_periodic_cleanup,
)
from services.database import (
    AUDIT_COMPLETED, AUDIT_CRAWLING, AUDIT_FAILED, CrawlQueueItem, ShareLink, SiteAudit, SiteAuditCheck,
    SiteAuditPage,
)

NOW = datetime(2026, 8, 31, 12, 0)


def make_audit(db, organization_id=None, url="https://example.com", status=AUDIT_COMPLETED, completed_days_ago=1):
    audit = SiteAudit(
        organization_id=organization_id, url=url, status=status,
        completed_at=NOW - timedelta(days=completed_days_ago), overall_score=70,
    )
    db.add(audit)
    db.flush()
    page = SiteAuditPage(audit_id=audit.id, url=url, status_code=200)
    db.add(page)
    db.flush()
    db.add(SiteAuditCheck(
        audit_id=audit.id, page_id=page.id, check_type="seo", check_name="missing_title",
        priority="critical", status="passed",
    ))
    db.add(CrawlQueueItem(audit_id=audit.id, url=url, depth=0, discovered_at=NOW - timedelta(days=1)))
    db.commit()
    return audit


def detail_counts(db, audit_id):
    return (
        db.query(SiteAuditCheck).filter(SiteAuditCheck.audit_id == audit_id).count(),
        db.query(SiteAuditPage).filter(SiteAuditPage.audit_id == audit_id).count(),
    )


def test_months_before_clamps_day():
    assert _months_before(NOW, 6) == datetime(2026, 2, 28, 12, 0)
    assert _months_before(datetime(2026, 3, 15), 6) == datetime(2025, 9, 15)


def test_cleanup_older_audit_details_per_organization(db, organization):
    older = make_audit(db, organization.id)
    running = make_audit(db, organization.id, status=AUDIT_CRAWLING)
    current = make_audit(db, organization.id)

    counts = cleanup_older_audit_details(db, current.id, organization.id, current.url)

    assert counts == {"deleted_checks": 1, "deleted_pages": 1}
    assert detail_counts(db, older.id) == (0, 0)
    assert detail_counts(db, running.id) == (1, 1)
    assert detail_counts(db, current.id) == (1, 1)


def test_cleanup_older_audit_details_for_one_time_audits_matches_origin(db):
    same_site = make_audit(db, url="https://example.com/landing")
    other_site = make_audit(db, url="https://other.com")
    current = make_audit(db, url="https://example.com")

    cleanup_older_audit_details(db, current.id, None, current.url)

    assert detail_counts(db, same_site.id) == (0, 0)
    assert detail_counts(db, other_site.id) == (1, 1)


def test_cleanup_crawl_queue(db):
    audit = make_audit(db)
    assert cleanup_crawl_queue(db, audit.id) == 1
    assert db.query(CrawlQueueItem).count() == 0


def test_run_periodic_cleanup(db, organization):
    ancient = make_audit(db, organization.id, completed_days_ago=200)
    recent = make_audit(db, organization.id, completed_days_ago=10)
    one_time_old = make_audit(db, url="https://old.test", status=AUDIT_FAILED, completed_days_ago=45)
    one_time_new = make_audit(db, url="https://new.test", completed_days_ago=5)
    db.add(ShareLink(token="t", audit_id=one_time_old.id, expires_at=NOW))
    db.add(CrawlQueueItem(audit_id=recent.id, url="https://example.com/stale", discovered_at=NOW - timedelta(days=40)))
    db.commit()

    results = run_periodic_cleanup(db, now=NOW)

    assert results == {
        "deleted_checks": 1,
        "deleted_pages": 1,
        "deleted_audits": 1,
        "deleted_queue_entries": 1,
    }
    assert db.query(SiteAudit).filter(SiteAudit.id == ancient.id).one().overall_score == 70
    assert detail_counts(db, ancient.id) == (0, 0)
    assert detail_counts(db, recent.id) == (1, 1)
    assert db.query(SiteAudit).filter(SiteAudit.id == one_time_old.id).count() == 0
    assert db.query(ShareLink).count() == 0
    assert detail_counts(db, one_time_new.id) == (1, 1)
