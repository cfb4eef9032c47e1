"""
Background scheduler for site audits.

Each cycle fails stale audits, continues audits resting between batches and
starts the weekly site and performance audits of monitored sites.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from services import config
from services.audit_lifecycle import claim_continuation, fail_stale_audits
from services.audit_runner import run_audit_batch, start_site_audit
from services.database import AUDIT_BATCH_COMPLETE, MonitoredSite, SiteAudit, get_db_session
from services.monitoring import performance_urls_for_site
from services.performance import run_performance_audit, start_performance_audit

logger = logging.getLogger(__name__)


def _sites_due(db: Session, enabled_column, last_run_column, now: datetime) -> List[MonitoredSite]:
    cutoff = now - timedelta(days=config.WEEKLY_AUDIT_INTERVAL_DAYS)
    return db.query(MonitoredSite).filter(
        enabled_column == True,
        or_(last_run_column.is_(None), last_run_column < cutoff),
    ).all()


def get_sites_due_for_audit(db: Session, now: Optional[datetime] = None) -> List[MonitoredSite]:
    """Monitored sites whose last site audit is older than the weekly interval."""
    now = now or datetime.utcnow()
    return _sites_due(db, MonitoredSite.run_site_audit, MonitoredSite.last_site_audit_at, now)


def get_sites_due_for_performance_audit(db: Session, now: Optional[datetime] = None) -> List[MonitoredSite]:
    now = now or datetime.utcnow()
    return _sites_due(db, MonitoredSite.run_performance_audit, MonitoredSite.last_performance_audit_at, now)


def run_weekly_audits(db: Session, now: Optional[datetime] = None) -> dict:
    """
    Create pending site and performance audits for monitored sites that are due.

    Returns the started (audit_id, url) site audits and the started
    performance audit ids; the caller runs them.
    """
    now = now or datetime.utcnow()
    results = {
        "site_audits_started": 0,
        "performance_audits_started": 0,
        "audits": [],
        "performance_audits": [],
        "errors": [],
    }

    for site in get_sites_due_for_audit(db, now):
        try:
            audit = start_site_audit(db, site.organization_id, site.url)
        except ValueError as e:
            db.rollback()
            results["errors"].append(f"Site audit for {site.url}: {e}")
            continue

        site.last_site_audit_at = now
        db.commit()
        results["site_audits_started"] += 1
        results["audits"].append((audit.id, site.url))

    for site in get_sites_due_for_performance_audit(db, now):
        try:
            audit = start_performance_audit(db, site.organization_id, performance_urls_for_site(db, site))
        except ValueError as e:
            db.rollback()
            results["errors"].append(f"Performance audit for {site.url}: {e}")
            continue

        site.last_performance_audit_at = now
        db.commit()
        results["performance_audits_started"] += 1
        results["performance_audits"].append(audit.id)

    logger.info(
        "[SCHEDULER] Weekly audits: %d site, %d performance started, %d errors",
        results["site_audits_started"], results["performance_audits_started"], len(results["errors"]),
    )
    return results


def claim_waiting_audits(db: Session) -> List[Tuple[int, str]]:
    """Claim every audit resting in batch_complete. Audits claimed elsewhere are skipped."""
    claimed = []
    waiting_ids = [row.id for row in db.query(SiteAudit.id).filter(SiteAudit.status == AUDIT_BATCH_COMPLETE)]
    for audit_id in waiting_ids:
        audit = claim_continuation(db, audit_id)
        if audit:
            claimed.append((audit.id, audit.url))
    return claimed


async def run_scheduler_cycle() -> dict:
    """
    Run one cycle of the scheduler:
    1. fail stale audits
    2. continue audits resting between batches
    3. start due weekly audits
    """
    db = get_db_session()
    try:
        failed = fail_stale_audits(db)
        continued = claim_waiting_audits(db)
        weekly = run_weekly_audits(db)
    finally:
        db.close()

    for audit_id, url in continued + weekly["audits"]:
        try:
            logger.info("[SCHEDULER] Running batch for audit %s", audit_id)
            await asyncio.to_thread(run_audit_batch, audit_id, url)
        except Exception as e:
            logger.error("[SCHEDULER] Error running batch for audit %s: %s", audit_id, e)

    for audit_id in weekly["performance_audits"]:
        try:
            logger.info("[SCHEDULER] Running performance audit %s", audit_id)
            await asyncio.to_thread(run_performance_audit, audit_id)
        except Exception as e:
            logger.error("[SCHEDULER] Error running performance audit %s: %s", audit_id, e)

    return {
        "stale_failed": failed,
        "continued": len(continued),
        "weekly_started": weekly["site_audits_started"],
        "weekly_performance_started": weekly["performance_audits_started"],
    }


async def scheduler_loop(interval_seconds: int = 60):
    """
    Main scheduler loop. Runs continuously.
    """
    logger.info("[SCHEDULER] Starting audit scheduler, checking every %d seconds", interval_seconds)

    while True:
        try:
            summary = await run_scheduler_cycle()
            if any(summary.values()):
                logger.info("[SCHEDULER] Cycle summary: %s", summary)
        except Exception as e:
            logger.error("[SCHEDULER] Error in scheduler cycle: %s", e)

        await asyncio.sleep(interval_seconds)
