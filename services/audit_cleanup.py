"""
Retention for site audit data.

Score history is kept on the SiteAudit rows; checks, pages and crawl queue
entries are only kept for the most recent audit of a site.
"""

import calendar
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from services.database import (
    AUDIT_COMPLETED, AUDIT_FAILED, AUDIT_FINISHED_STATUSES, AUDIT_STOPPED,
    CrawlQueueItem, ShareLink, SiteAudit, SiteAuditCheck, SiteAuditPage,
)
from services.dismissed_checks import site_origin

logger = logging.getLogger(__name__)


DETAIL_RETENTION_MONTHS = 6
ONE_TIME_AUDIT_RETENTION_DAYS = 30
QUEUE_RETENTION_DAYS = 30


def _months_before(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 - months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _delete_details(db: Session, audit_ids: List[int]) -> Dict[str, int]:
    if not audit_ids:
        return {"deleted_checks": 0, "deleted_pages": 0}

    deleted_checks = db.query(SiteAuditCheck).filter(
        SiteAuditCheck.audit_id.in_(audit_ids)
    ).delete(synchronize_session=False)
    deleted_pages = db.query(SiteAuditPage).filter(
        SiteAuditPage.audit_id.in_(audit_ids)
    ).delete(synchronize_session=False)
    db.query(CrawlQueueItem).filter(
        CrawlQueueItem.audit_id.in_(audit_ids)
    ).delete(synchronize_session=False)
    return {"deleted_checks": deleted_checks, "deleted_pages": deleted_pages}


def cleanup_older_audit_details(
    db: Session,
    current_audit_id: int,
    organization_id: Optional[int],
    url: str,
) -> Dict[str, int]:
    """
    Delete checks, pages and queue entries of older finished audits.

    Organization audits keep only the latest audit's details per organization;
    one-time audits keep only the latest per site origin.
    """
    query = db.query(SiteAudit.id, SiteAudit.url).filter(
        SiteAudit.id != current_audit_id,
        SiteAudit.status.in_(AUDIT_FINISHED_STATUSES),
    )
    if organization_id:
        older_ids = [row.id for row in query.filter(SiteAudit.organization_id == organization_id)]
    else:
        origin = site_origin(url)
        older_ids = [
            row.id for row in query.filter(SiteAudit.organization_id.is_(None))
            if site_origin(row.url) == origin
        ]

    if not older_ids:
        return {"deleted_checks": 0, "deleted_pages": 0}

    logger.info(
        "[Audit Cleanup] Cleaning up %d older audits for %s",
        len(older_ids), f"org {organization_id}" if organization_id else f"URL {url}",
    )
    counts = _delete_details(db, older_ids)
    db.commit()
    logger.info(
        "[Audit Cleanup] Deleted %d checks and %d pages from older audits",
        counts["deleted_checks"], counts["deleted_pages"],
    )
    return counts


def cleanup_crawl_queue(db: Session, audit_id: int) -> int:
    """The queue is no longer needed once an audit finishes."""
    count = db.query(CrawlQueueItem).filter(
        CrawlQueueItem.audit_id == audit_id
    ).delete(synchronize_session=False)
    db.commit()
    if count:
        logger.info("[Audit Cleanup] Deleted %d crawl queue entries for audit %s", count, audit_id)
    return count


def run_periodic_cleanup(db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Periodic retention job:
    - checks and pages of audits completed more than 6 months ago (audit row kept)
    - one-time audits completed more than 30 days ago, entirely
    - crawl queue entries discovered more than 30 days ago
    """
    now = now or datetime.utcnow()
    six_months_ago = _months_before(now, DETAIL_RETENTION_MONTHS)
    thirty_days_ago = now - timedelta(days=ONE_TIME_AUDIT_RETENTION_DAYS)

    logger.info("[Audit Cleanup] Starting periodic cleanup...")

    old_ids = [
        row.id for row in db.query(SiteAudit.id).filter(
            SiteAudit.completed_at < six_months_ago,
            SiteAudit.status.in_(AUDIT_FINISHED_STATUSES),
        )
    ]
    counts = _delete_details(db, old_ids)

    one_time_ids = [
        row.id for row in db.query(SiteAudit.id).filter(
            SiteAudit.organization_id.is_(None),
            SiteAudit.completed_at < thirty_days_ago,
            SiteAudit.status.in_((AUDIT_COMPLETED, AUDIT_STOPPED, AUDIT_FAILED)),
        )
    ]
    deleted_audits = 0
    if one_time_ids:
        _delete_details(db, one_time_ids)
        db.query(ShareLink).filter(ShareLink.audit_id.in_(one_time_ids)).delete(synchronize_session=False)
        deleted_audits = db.query(SiteAudit).filter(
            SiteAudit.id.in_(one_time_ids)
        ).delete(synchronize_session=False)

    deleted_queue_entries = db.query(CrawlQueueItem).filter(
        CrawlQueueItem.discovered_at < now - timedelta(days=QUEUE_RETENTION_DAYS)
    ).delete(synchronize_session=False)

    db.commit()

    results = {
        "deleted_checks": counts["deleted_checks"],
        "deleted_pages": counts["deleted_pages"],
        "deleted_audits": deleted_audits,
        "deleted_queue_entries": deleted_queue_entries,
    }
    logger.info(
        "[Audit Cleanup] Periodic cleanup complete: %d checks, %d pages, %d one-time audits, %d queue entries",
        results["deleted_checks"], results["deleted_pages"], deleted_audits, deleted_queue_entries,
    )
    return results
