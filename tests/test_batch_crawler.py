from services import config
from services.batch_crawler import crawl_batch, enqueue_links, initialize_crawl_queue
from services.database import AUDIT_CRAWLING, AUDIT_STOPPED, CrawlQueueItem, SiteAudit, SiteAuditCheck, SiteAuditPage

HOME = """
<html><head><title>Acme Web Design</title></head>
<body>
  <a href="/about">About</a>
  <a href="/guide.pdf">Guide</a>
  <a href="https://elsewhere.com/">Partner</a>
</body></html>
"""


def make_audit(db, url="https://example.com"):
    audit = SiteAudit(url=url, status=AUDIT_CRAWLING, current_batch=1)
    db.add(audit)
    db.commit()
    db.refresh(audit)
    initialize_crawl_queue(db, audit.id, url)
    return audit


def test_initialize_crawl_queue_seeds_start_url(db):
    audit = make_audit(db, "https://example.com/")
    items = db.query(CrawlQueueItem).filter(CrawlQueueItem.audit_id == audit.id).all()

    assert [(i.url, i.depth) for i in items] == [("https://example.com", 0)]
    db.refresh(audit)
    assert audit.urls_discovered == 1


def test_enqueue_links_ignores_known_urls(db):
    audit = make_audit(db)
    added = enqueue_links(db, audit.id, ["https://example.com", "https://example.com/a", "https://example.com/a/"], 1)
    db.commit()

    assert added == 1
    assert db.query(CrawlQueueItem).filter(CrawlQueueItem.audit_id == audit.id).count() == 2


def test_crawl_batch_crawls_breadth_first_and_runs_page_checks(db, site_client):
    audit = make_audit(db)
    client = site_client({
        "https://example.com": HOME,
        "https://example.com/about": "<title>About Acme</title>",
        "https://example.com/guide.pdf": (200, "%PDF-1.4"),
    })

    result = crawl_batch(db, audit.id, [], client=client, batch_size=10, delay=0)

    assert result.pages_processed == 3
    assert not result.has_more_pages
    assert not result.stopped

    pages = db.query(SiteAuditPage).filter(SiteAuditPage.audit_id == audit.id).order_by(SiteAuditPage.id).all()
    assert [p.url for p in pages] == [
        "https://example.com", "https://example.com/about", "https://example.com/guide.pdf",
    ]
    pdf = pages[2]
    assert pdf.is_resource and pdf.resource_type == "pdf"
    assert pdf.title == "guide.pdf"

    checked_pages = {c.page_id for c in db.query(SiteAuditCheck).filter(SiteAuditCheck.audit_id == audit.id)}
    assert checked_pages == {pages[0].id, pages[1].id}

    db.refresh(audit)
    assert audit.pages_crawled == 3
    assert audit.urls_discovered == 3


def test_crawl_batch_respects_batch_size(db, site_client):
    audit = make_audit(db)
    client = site_client({"https://example.com": HOME})

    result = crawl_batch(db, audit.id, [], client=client, batch_size=1, delay=0)

    assert result.pages_processed == 1
    assert result.has_more_pages


def test_crawl_batch_reads_limits_from_config_at_call_time(db, site_client, monkeypatch):
    audit = make_audit(db)
    client = site_client({"https://example.com": HOME, "https://example.com/about": "<title>About</title>"})
    monkeypatch.setattr(config, "AUDIT_BATCH_SIZE", 1)

    result = crawl_batch(db, audit.id, [], client=client, delay=0)

    assert result.pages_processed == 1


def test_crawl_batch_with_zero_batch_size_crawls_nothing(db, site_client):
    audit = make_audit(db)
    client = site_client({"https://example.com": HOME})

    result = crawl_batch(db, audit.id, [], client=client, batch_size=0, delay=0)

    assert result.pages_processed == 0
    assert result.has_more_pages


def test_crawl_batch_stops_when_time_limit_is_reached(db, site_client):
    audit = make_audit(db)
    client = site_client({"https://example.com": HOME})
    ticks = iter([0.0, 0.0, 500.0])

    result = crawl_batch(
        db, audit.id, [], client=client, batch_size=10, max_duration=60, clock=lambda: next(ticks), delay=0,
    )

    assert result.pages_processed == 1
    assert result.has_more_pages


def test_crawl_batch_observes_stop(db, site_client):
    audit = make_audit(db)
    audit.status = AUDIT_STOPPED
    db.commit()

    result = crawl_batch(db, audit.id, [], client=site_client({"https://example.com": HOME}), delay=0)

    assert result.stopped
    assert result.pages_processed == 0


def test_crawl_batch_skips_unreachable_pages(db, site_client):
    import httpx

    audit = make_audit(db)
    client = site_client({"https://example.com": httpx.ConnectError("connection refused")})

    result = crawl_batch(db, audit.id, [], client=client, batch_size=10, delay=0)

    assert result.pages_processed == 0
    assert not result.has_more_pages
    assert db.query(SiteAuditPage).count() == 0


def test_crawl_batch_skips_dismissed_page_checks(db, site_client, organization):
    from services.database import DismissedCheck

    audit = make_audit(db)
    dismissed = [DismissedCheck(organization_id=organization.id, check_name="missing_title", url="https://example.com")]
    client = site_client({"https://example.com": "<p>no title</p>"})

    crawl_batch(db, audit.id, dismissed, client=client, delay=0)

    names = {c.check_name for c in db.query(SiteAuditCheck).filter(SiteAuditCheck.audit_id == audit.id)}
    assert "missing_title" not in names
    assert "missing_meta_description" in names
