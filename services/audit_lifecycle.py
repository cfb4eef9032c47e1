"""
Audit lifecycle rules: continuation claims, staleness, stop and resume.

A site audit runs as a chain of short batches. Between batches it rests in
``batch_complete`` and any of three triggers may continue it: the
self-continuation request, client polling, or the scheduler sweep. The claim
is a single conditional UPDATE so exactly one of them wins.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

import httpx
from sqlalchemy.orm import Session

from services import config
from services.database import (
    AUDIT_ACTIVE_STATUSES, AUDIT_BATCH_COMPLETE, AUDIT_CRAWLING, AUDIT_FAILED,
    AUDIT_RUNNER_STATUSES, AUDIT_STOPPABLE_STATUSES, AUDIT_STOPPED,
    GEO_FAILED, GEO_PENDING, GEO_RUNNING, PERF_ACTIVE_STATUSES, PERF_FAILED, PERF_RUNNING,
    GeoAudit, PerformanceAudit, SiteAudit,
)

AnyAudit = Union[SiteAudit, GeoAudit, PerformanceAudit]

logger = logging.getLogger(__name__)


TIMEOUT_MESSAGE = "Audit timed out - the server function was terminated before completion. Please try again."
STUCK_STOP_MESSAGE = "Audit was stopped - the crawl did not complete."

CONTINUATION_TIMEOUT_SECONDS = 10.0


@dataclass
class StopOutcome:
    status: str
    message: str
    needs_completion: bool = False


def claim_continuation(db: Session, audit_id: int) -> Optional[SiteAudit]:
    """
    Move an audit from batch_complete to crawling.

    Returns the claimed audit, or None when the audit is missing or another
    caller already claimed it.
    """
    claimed = db.query(SiteAudit).filter(
        SiteAudit.id == audit_id,
        SiteAudit.status == AUDIT_BATCH_COMPLETE,
    ).update(
        {"status": AUDIT_CRAWLING, "updated_at": datetime.utcnow()},
        synchronize_session=False,
    )
    db.commit()

    if claimed != 1:
        return None
    return db.query(SiteAudit).filter(SiteAudit.id == audit_id).first()


def request_continuation(audit_id: int, client: Optional[httpx.Client] = None) -> bool:
    """
    Re-arm the next batch by calling this app's continue endpoint.

    When self-continuation is not configured, or the call fails, the audit
    stays in batch_complete and is picked up by the scheduler sweep or by
    client polling.
    """
    if not config.is_self_continuation_enabled():
        logger.info("[Audit Continuation] Self-continuation not configured; audit %s waits for the sweep", audit_id)
        return False

    url = f"{config.APP_BASE_URL}/api/audit/{audit_id}/continue"
    headers = {"x-cron-secret": config.CRON_SECRET}
    try:
        if client is not None:
            response = client.post(url, headers=headers, timeout=CONTINUATION_TIMEOUT_SECONDS)
        else:
            with httpx.Client(timeout=CONTINUATION_TIMEOUT_SECONDS) as own_client:
                response = own_client.post(url, headers=headers)
    except httpx.HTTPError as e:
        logger.warning("[Audit Continuation] Failed to trigger next batch for audit %s: %s", audit_id, e)
        return False

    if response.status_code >= 400:
        logger.warning(
            "[Audit Continuation] Continue endpoint returned %d for audit %s",
            response.status_code, audit_id,
        )
        return False
    return True


def is_stale(audit: AnyAudit, threshold: timedelta, now: Optional[datetime] = None) -> bool:
    """True when the audit has not been updated within ``threshold``."""
    now = now or datetime.utcnow()
    last_update = audit.updated_at or audit.created_at
    if last_update is None:
        return False
    return now - last_update > threshold


def _mark_timed_out(audit: AnyAudit, now: datetime):
    if isinstance(audit, SiteAudit):
        audit.status = AUDIT_FAILED
    elif isinstance(audit, PerformanceAudit):
        audit.status = PERF_FAILED
        audit.current_url = None
        audit.current_device = None
    else:
        audit.status = GEO_FAILED
    audit.error_message = TIMEOUT_MESSAGE
    audit.completed_at = now


def find_active_audits(db: Session, organization_id: Optional[int], now: Optional[datetime] = None) -> dict:
    """
    Latest in-progress site, performance and GEO audit for a tenant.

    Stale audits found here are failed with the timeout message and reported
    as not active.
    """
    now = now or datetime.utcnow()
    result = {
        "has_site_audit": False,
        "has_performance_audit": False,
        "has_geo_audit": False,
        "site_audit_id": None,
        "performance_audit_id": None,
        "geo_audit_id": None,
    }
    if not organization_id:
        return result

    site_audit = (
        db.query(SiteAudit)
        .filter(SiteAudit.organization_id == organization_id, SiteAudit.status.in_(AUDIT_ACTIVE_STATUSES))
        .order_by(SiteAudit.created_at.desc(), SiteAudit.id.desc())
        .first()
    )
    if site_audit:
        stale_after = timedelta(minutes=config.STALE_AUDIT_MINUTES)
        if site_audit.status in AUDIT_RUNNER_STATUSES and is_stale(site_audit, stale_after, now):
            logger.info(
                "[Audit Active Check] Marked stale audit %s as failed (status=%s, updated_at=%s)",
                site_audit.id, site_audit.status, site_audit.updated_at,
            )
            _mark_timed_out(site_audit, now)
            db.commit()
        else:
            result["has_site_audit"] = True
            result["site_audit_id"] = site_audit.id

    performance_audit = (
        db.query(PerformanceAudit)
        .filter(PerformanceAudit.organization_id == organization_id, PerformanceAudit.status.in_(PERF_ACTIVE_STATUSES))
        .order_by(PerformanceAudit.created_at.desc(), PerformanceAudit.id.desc())
        .first()
    )
    if performance_audit:
        stale_after = timedelta(minutes=config.STALE_PERFORMANCE_AUDIT_MINUTES)
        if performance_audit.status == PERF_RUNNING and is_stale(performance_audit, stale_after, now):
            logger.info("[Performance Audit Active Check] Marked stale audit %s as failed", performance_audit.id)
            _mark_timed_out(performance_audit, now)
            db.commit()
        else:
            result["has_performance_audit"] = True
            result["performance_audit_id"] = performance_audit.id

    geo_audit = (
        db.query(GeoAudit)
        .filter(GeoAudit.organization_id == organization_id, GeoAudit.status.in_((GEO_PENDING, GEO_RUNNING)))
        .order_by(GeoAudit.created_at.desc(), GeoAudit.id.desc())
        .first()
    )
    if geo_audit:
        stale_after = timedelta(minutes=config.STALE_GEO_AUDIT_MINUTES)
        if geo_audit.status == GEO_RUNNING and is_stale(geo_audit, stale_after, now):
            logger.info("[GEO Audit Active Check] Marked stale audit %s as failed", geo_audit.id)
            _mark_timed_out(geo_audit, now)
            db.commit()
        else:
            result["has_geo_audit"] = True
            result["geo_audit_id"] = geo_audit.id

    return result


def fail_stale_audits(db: Session, now: Optional[datetime] = None) -> int:
    """Apply the staleness policy to every tenant. Returns the number of audits failed."""
    now = now or datetime.utcnow()
    site_threshold = timedelta(minutes=config.STALE_AUDIT_MINUTES)
    geo_threshold = timedelta(minutes=config.STALE_GEO_AUDIT_MINUTES)
    performance_threshold = timedelta(minutes=config.STALE_PERFORMANCE_AUDIT_MINUTES)

    failed = 0
    for audit in db.query(SiteAudit).filter(SiteAudit.status.in_(AUDIT_RUNNER_STATUSES)).all():
        if is_stale(audit, site_threshold, now):
            _mark_timed_out(audit, now)
            failed += 1

    for geo_audit in db.query(GeoAudit).filter(GeoAudit.status == GEO_RUNNING).all():
        if is_stale(geo_audit, geo_threshold, now):
            _mark_timed_out(geo_audit, now)
            failed += 1

    for performance_audit in db.query(PerformanceAudit).filter(PerformanceAudit.status == PERF_RUNNING).all():
        if is_stale(performance_audit, performance_threshold, now):
            _mark_timed_out(performance_audit, now)
            failed += 1

    if failed:
        db.commit()
        logger.info("[Audit Lifecycle] Failed %d stale audits", failed)
    return failed


def stop_audit(db: Session, audit: SiteAudit, now: Optional[datetime] = None) -> StopOutcome:
    """
    Stop an in-progress audit.

    An audit resting between batches has no runner, so it is marked stopped
    and must be completed from its existing checks by the caller. A running
    audit that has not been updated for a while is presumed dead and failed
    outright; otherwise the running batch observes the stopped status.

    Raises ValueError when the audit is not in progress.
    """
    now = now or datetime.utcnow()
    if audit.status not in AUDIT_STOPPABLE_STATUSES:
        raise ValueError("Audit is not in progress and cannot be stopped")

    if audit.status == AUDIT_BATCH_COMPLETE:
        stopped = db.query(SiteAudit).filter(
            SiteAudit.id == audit.id,
            SiteAudit.status == AUDIT_BATCH_COMPLETE,
        ).update({"status": AUDIT_STOPPED}, synchronize_session=False)
        if stopped == 1:
            db.commit()
            db.refresh(audit)
            return StopOutcome(AUDIT_STOPPED, "Audit stopped", needs_completion=True)
        # a batch claimed the audit in the meantime; stop it like a running one
        db.refresh(audit)

    if is_stale(audit, timedelta(minutes=config.STUCK_STOP_MINUTES), now):
        audit.status = AUDIT_FAILED
        audit.error_message = STUCK_STOP_MESSAGE
        audit.completed_at = now
        db.commit()
        return StopOutcome(AUDIT_FAILED, "Audit marked as failed (runner was not responding)")

    audit.status = AUDIT_STOPPED
    db.commit()
    return StopOutcome(AUDIT_STOPPED, "Audit stop requested")


def can_resume(audit: SiteAudit) -> bool:
    """Only failed or stopped audits with crawled pages can have their checks resumed."""
    return audit.status in (AUDIT_FAILED, AUDIT_STOPPED) and (audit.pages_crawled or 0) > 0
