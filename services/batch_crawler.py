"""
Batch crawler for site audits.

Each call crawls a bounded slice of the persistent crawl queue so a single
invocation finishes inside the host's execution deadline. The queue lives in
the database, which lets the next batch pick up where this one stopped.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

import httpx
from sqlalchemy.orm import Session

from services import config
from services.audit_checks import (
    PAGE_SPECIFIC_CHECKS, CheckContext, build_check_row, run_check,
)
from services.database import (
    AUDIT_STOPPED, CrawlQueueItem, DismissedCheck, SiteAudit, SiteAuditPage,
)
from services.dismissed_checks import is_dismissed
from services.fetcher import (
    build_client, extract_links, extract_page_metadata, fetch_page, get_resource_type,
    normalize_url, resource_title,
)

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    pages_processed: int
    has_more_pages: bool
    stopped: bool


def initialize_crawl_queue(db: Session, audit_id: int, start_url: str):
    """Seed the queue with the start URL at depth 0 (first batch only)."""
    normalized = normalize_url(start_url)
    existing = db.query(CrawlQueueItem).filter(
        CrawlQueueItem.audit_id == audit_id,
        CrawlQueueItem.url == normalized,
    ).first()
    if existing:
        existing.depth = 0
        existing.discovered_at = datetime.utcnow()
    else:
        db.add(CrawlQueueItem(audit_id=audit_id, url=normalized, depth=0, discovered_at=datetime.utcnow()))

    db.query(SiteAudit).filter(SiteAudit.id == audit_id).update(
        {"urls_discovered": 1}, synchronize_session=False
    )
    db.commit()


def _next_queue_item(db: Session, audit_id: int) -> Optional[CrawlQueueItem]:
    return (
        db.query(CrawlQueueItem)
        .filter(CrawlQueueItem.audit_id == audit_id, CrawlQueueItem.crawled_at.is_(None))
        .order_by(CrawlQueueItem.depth.asc(), CrawlQueueItem.discovered_at.asc(), CrawlQueueItem.id.asc())
        .first()
    )


def _remaining_count(db: Session, audit_id: int) -> int:
    return db.query(CrawlQueueItem).filter(
        CrawlQueueItem.audit_id == audit_id,
        CrawlQueueItem.crawled_at.is_(None),
    ).count()


def enqueue_links(db: Session, audit_id: int, links: List[str], depth: int) -> int:
    """Add newly discovered URLs to the queue. Known URLs are ignored. Returns how many were added."""
    candidates = []
    for link in links:
        normalized = normalize_url(link)
        if normalized not in candidates:
            candidates.append(normalized)
    if not candidates:
        return 0

    known = {
        row.url for row in db.query(CrawlQueueItem.url).filter(
            CrawlQueueItem.audit_id == audit_id,
            CrawlQueueItem.url.in_(candidates),
        )
    }
    added = 0
    now = datetime.utcnow()
    for url in candidates:
        if url in known:
            continue
        db.add(CrawlQueueItem(audit_id=audit_id, url=url, depth=depth, discovered_at=now))
        added += 1
    return added


def crawl_batch(
    db: Session,
    audit_id: int,
    dismissed_checks: List[DismissedCheck],
    client: Optional[httpx.Client] = None,
    batch_size: Optional[int] = None,
    max_duration: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
    delay: Optional[float] = None,
) -> BatchResult:
    """
    Crawl up to ``batch_size`` pages from the queue, or until ``max_duration``
    seconds have passed, whichever comes first.

    The audit status is re-read before every page so a user stop is observed
    between pages.
    """
    batch_size = config.AUDIT_BATCH_SIZE if batch_size is None else batch_size
    max_duration = config.AUDIT_MAX_BATCH_SECONDS if max_duration is None else max_duration
    delay = config.CRAWL_DELAY_SECONDS if delay is None else delay

    owns_client = client is None
    if owns_client:
        client = build_client()

    start = clock()
    pages_processed = 0
    stopped = False

    try:
        audit = db.query(SiteAudit).filter(SiteAudit.id == audit_id).first()
        if not audit:
            raise ValueError("Audit not found")
        force_relaxed_ssl = bool(audit.use_relaxed_ssl)

        while pages_processed < batch_size:
            if clock() - start > max_duration:
                logger.info("[Batch Crawler] Time limit reached after %d pages", pages_processed)
                break

            status = db.query(SiteAudit.status).filter(SiteAudit.id == audit_id).scalar()
            if status == AUDIT_STOPPED:
                stopped = True
                break

            item = _next_queue_item(db, audit_id)
            if not item:
                break

            url = item.url
            depth = item.depth or 0
            item.crawled_at = datetime.utcnow()
            db.commit()

            result = fetch_page(url, client=client, force_relaxed_ssl=force_relaxed_ssl)

            if result.used_relaxed_ssl and not force_relaxed_ssl:
                logger.info("[Batch Crawler] SSL certificate issue detected, persisting relaxed SSL mode")
                force_relaxed_ssl = True
                db.query(SiteAudit).filter(SiteAudit.id == audit_id).update(
                    {"use_relaxed_ssl": True}, synchronize_session=False
                )
                db.commit()

            if result.error:
                logger.warning("[Batch Crawler] Failed to fetch %s: %s", url, result.error)
                continue

            resource_type = get_resource_type(url)
            if resource_type:
                title, meta_description = resource_title(url), None
            else:
                title, meta_description = extract_page_metadata(result.html)

            page = SiteAuditPage(
                audit_id=audit_id,
                url=url,
                title=title,
                meta_description=meta_description,
                status_code=result.status_code,
                last_modified=result.last_modified,
                is_resource=bool(resource_type),
                resource_type=resource_type,
                crawled_at=datetime.utcnow(),
            )
            db.add(page)
            db.flush()
            pages_processed += 1

            pages_crawled = db.query(SiteAuditPage).filter(SiteAuditPage.audit_id == audit_id).count()
            db.query(SiteAudit).filter(SiteAudit.id == audit_id).update(
                {"pages_crawled": pages_crawled, "updated_at": datetime.utcnow()},
                synchronize_session=False,
            )

            if not resource_type:
                context = CheckContext(
                    url=url,
                    html=result.html,
                    title=title,
                    status_code=result.status_code or 200,
                    client=client,
                )
                for check in PAGE_SPECIFIC_CHECKS:
                    if is_dismissed(dismissed_checks, check.name, url):
                        continue
                    outcome = run_check(check, context)
                    if outcome is not None:
                        db.add(build_check_row(audit_id, check, outcome, page_id=page.id))

                if result.status_code == 200:
                    links = extract_links(result.html, url, result.final_url)
                    if enqueue_links(db, audit_id, links, depth + 1):
                        db.flush()
                        discovered = db.query(CrawlQueueItem).filter(CrawlQueueItem.audit_id == audit_id).count()
                        db.query(SiteAudit).filter(SiteAudit.id == audit_id).update(
                            {"urls_discovered": discovered}, synchronize_session=False
                        )

            db.commit()

            if delay:
                time.sleep(delay)

        has_more = _remaining_count(db, audit_id) > 0
    finally:
        if owns_client:
            client.close()

    return BatchResult(pages_processed=pages_processed, has_more_pages=has_more, stopped=stopped)
