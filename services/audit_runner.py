"""
Audit Runner Service.
Drives a site audit through its batches: crawl a slice, then either re-arm
the next batch or run the site-wide checks, score and summarize.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlparse

import httpx
from sqlalchemy.orm import Session

from services import config
from services.audit_checks import (
    CHECK_TYPES, PAGE_SPECIFIC_CHECKS, PRIORITY_WEIGHTS, SITE_WIDE_CHECKS,
    CheckContext, build_check_row, run_check,
)
from services.audit_cleanup import cleanup_crawl_queue, cleanup_older_audit_details
from services.audit_lifecycle import request_continuation
from services.batch_crawler import crawl_batch, initialize_crawl_queue
from services.database import (
    AUDIT_BATCH_COMPLETE, AUDIT_CHECKING, AUDIT_COMPLETED, AUDIT_CRAWLING, AUDIT_FAILED,
    AUDIT_PENDING, AUDIT_STOPPED, DismissedCheck, SiteAudit, SiteAuditCheck, SiteAuditPage, get_db_session,
)
from services.dismissed_checks import is_dismissed, load_dismissed_checks, site_origin
from services.fetcher import build_client, fetch_page
from services.summary import generate_executive_summary

logger = logging.getLogger(__name__)

# statuses a runner may complete from
COMPLETABLE_STATUSES = (AUDIT_CHECKING, AUDIT_STOPPED)


def start_site_audit(db: Session, organization_id: Optional[int], url: str) -> SiteAudit:
    """Create a pending audit row. The first batch is started by the caller."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("Please enter a valid URL starting with http:// or https://")

    audit = SiteAudit(organization_id=organization_id, url=url, status=AUDIT_PENDING)
    db.add(audit)
    db.commit()
    db.refresh(audit)
    return audit


def calculate_scores(checks: Iterable[SiteAuditCheck]) -> Dict[str, int]:
    """
    Weighted pass rate per check type plus overall score and status counts.

    Critical checks weigh 3, recommended 2, optional 1. A warning earns half
    its weight. A type without checks scores 100.
    """
    checks = list(checks)

    def score_for(check_type: str) -> int:
        typed = [c for c in checks if c.check_type == check_type]
        if not typed:
            return 100
        total = 0.0
        earned = 0.0
        for check in typed:
            weight = PRIORITY_WEIGHTS.get(check.priority, 1)
            total += weight
            if check.status == "passed":
                earned += weight
            elif check.status == "warning":
                earned += weight * 0.5
        return int(round(earned / total * 100))

    seo_score, ai_readiness_score, technical_score = (score_for(t) for t in CHECK_TYPES)
    return {
        "overall_score": int(round((seo_score + ai_readiness_score + technical_score) / 3)),
        "seo_score": seo_score,
        "ai_readiness_score": ai_readiness_score,
        "technical_score": technical_score,
        "failed_count": len([c for c in checks if c.status == "failed"]),
        "warning_count": len([c for c in checks if c.status == "warning"]),
        "passed_count": len([c for c in checks if c.status == "passed"]),
    }


def _find_homepage(pages: List[SiteAuditPage]) -> SiteAuditPage:
    for page in pages:
        if urlparse(page.url).path in ("", "/"):
            return page
    return pages[0]


def _run_site_wide_checks(
    db: Session,
    audit: SiteAudit,
    pages: List[SiteAuditPage],
    dismissed_checks: List[DismissedCheck],
    client: httpx.Client,
):
    homepage = _find_homepage(pages)
    fetched = fetch_page(homepage.url, client=client, force_relaxed_ssl=bool(audit.use_relaxed_ssl))
    context = CheckContext(
        url=homepage.url,
        html=fetched.html,
        title=homepage.title,
        status_code=homepage.status_code or 200,
        all_pages=pages,
        client=client,
    )

    origin = site_origin(audit.url)
    for check in SITE_WIDE_CHECKS:
        if is_dismissed(dismissed_checks, check.name, origin):
            continue
        outcome = run_check(check, context)
        if outcome is not None:
            db.add(build_check_row(audit.id, check, outcome))
    db.commit()


def _summarize(audit: SiteAudit, pages_crawled: int, scores: Dict[str, int], checks: List[SiteAuditCheck]) -> Optional[str]:
    if not config.is_openai_enabled():
        logger.info("Skipping executive summary for audit %s: OpenAI not configured", audit.id)
        return None
    try:
        return generate_executive_summary(audit.url, pages_crawled, scores, checks)
    except Exception as e:
        logger.warning("Executive summary failed for audit %s (non-fatal): %s", audit.id, e)
        return None


def _complete(db: Session, audit: SiteAudit, pages_crawled: int) -> bool:
    """
    Score, summarize and mark the audit completed.

    The final write only applies while the audit is still checking or
    stopped. Returns False when it was failed elsewhere in the meantime, for
    example by the stale-audit sweep.
    """
    checks = db.query(SiteAuditCheck).filter(SiteAuditCheck.audit_id == audit.id).all()
    scores = calculate_scores(checks)
    summary = _summarize(audit, pages_crawled, scores, checks)

    now = datetime.utcnow()
    values = dict(scores)
    values.update({
        "executive_summary": summary,
        "status": AUDIT_COMPLETED,
        "completed_at": now,
        "updated_at": now,
    })
    completed = db.query(SiteAudit).filter(
        SiteAudit.id == audit.id,
        SiteAudit.status.in_(COMPLETABLE_STATUSES),
    ).update(values, synchronize_session=False)
    db.commit()

    if not completed:
        logger.warning("[Audit Finish] Audit %s is no longer in progress, results discarded", audit.id)
        return False

    db.refresh(audit)
    cleanup_crawl_queue(db, audit.id)
    cleanup_older_audit_details(db, audit.id, audit.organization_id, audit.url)
    return True


def _mark_failed(db: Session, audit_id: int, message: str):
    db.rollback()
    audit = db.query(SiteAudit).filter(SiteAudit.id == audit_id).first()
    if audit:
        audit.status = AUDIT_FAILED
        audit.error_message = message[:1000]
        audit.completed_at = datetime.utcnow()
        db.commit()


def finish_audit(
    db: Session,
    audit: SiteAudit,
    dismissed_checks: List[DismissedCheck],
    client: httpx.Client,
):
    """Run site-wide checks after the last batch, then score, summarize and complete."""
    checking = db.query(SiteAudit).filter(
        SiteAudit.id == audit.id,
        SiteAudit.status == AUDIT_CRAWLING,
    ).update({"status": AUDIT_CHECKING, "updated_at": datetime.utcnow()}, synchronize_session=False)
    db.commit()
    db.refresh(audit)
    if not checking and audit.status != AUDIT_STOPPED:
        logger.warning("[Audit Finish] Audit %s is %s, not finishing", audit.id, audit.status)
        return

    pages = db.query(SiteAuditPage).filter(SiteAuditPage.audit_id == audit.id).order_by(SiteAuditPage.id).all()
    if not pages:
        audit.status = AUDIT_FAILED
        audit.error_message = "No pages were crawled"
        audit.completed_at = datetime.utcnow()
        db.commit()
        return

    _run_site_wide_checks(db, audit, pages, dismissed_checks, client)
    if _complete(db, audit, len(pages)):
        logger.info("[Audit Finish] Audit %s completed successfully", audit.id)


def run_audit_batch(audit_id: int, url: str, client: Optional[httpx.Client] = None):
    """
    Run one batch of a site audit. Background entry point: never raises.

    The first batch seeds the crawl queue; later batches pick up from it.
    """
    db = get_db_session()
    owns_client = client is None
    if owns_client:
        client = build_client()

    try:
        audit = db.query(SiteAudit).filter(SiteAudit.id == audit_id).first()
        if not audit:
            raise ValueError("Audit not found")

        if audit.status == AUDIT_STOPPED:
            db.commit()
            complete_audit_with_existing_checks(audit_id, url, client=client)
            return

        current_batch = audit.current_batch or 0
        now = datetime.utcnow()
        if current_batch == 0:
            values = {"status": AUDIT_CRAWLING, "started_at": now, "current_batch": 1, "updated_at": now}
            runnable = (AUDIT_PENDING,)
        else:
            # the claim already moved the audit to crawling; a stop that landed
            # since then is left for crawl_batch to observe
            values = {"current_batch": current_batch + 1, "updated_at": now}
            runnable = (AUDIT_CRAWLING, AUDIT_STOPPED)
        started = db.query(SiteAudit).filter(
            SiteAudit.id == audit_id,
            SiteAudit.status.in_(runnable),
        ).update(values, synchronize_session=False)
        db.commit()
        db.refresh(audit)

        if not started:
            if audit.status == AUDIT_STOPPED:
                complete_audit_with_existing_checks(audit_id, url, client=client)
            else:
                logger.info("[Audit Batch] Audit %s is %s, skipping batch", audit_id, audit.status)
            return
        if current_batch == 0:
            initialize_crawl_queue(db, audit_id, url)

        dismissed_checks = load_dismissed_checks(db, audit.organization_id)
        result = crawl_batch(db, audit_id, dismissed_checks, client=client)

        logger.info(
            "[Audit Batch] Batch %d complete for audit %s: %d pages, has_more=%s, stopped=%s",
            current_batch + 1, audit_id, result.pages_processed, result.has_more_pages, result.stopped,
        )

        db.refresh(audit)
        db.commit()
        if result.stopped:
            complete_audit_with_existing_checks(audit_id, url, client=client)
        elif result.has_more_pages:
            rested = db.query(SiteAudit).filter(
                SiteAudit.id == audit_id,
                SiteAudit.status == AUDIT_CRAWLING,
            ).update({"status": AUDIT_BATCH_COMPLETE}, synchronize_session=False)
            db.commit()
            if rested:
                request_continuation(audit_id)
            elif db.query(SiteAudit.status).filter(SiteAudit.id == audit_id).scalar() == AUDIT_STOPPED:
                complete_audit_with_existing_checks(audit_id, url, client=client)
        else:
            finish_audit(db, audit, dismissed_checks, client)

    except Exception as e:
        logger.exception("[Audit Batch Error] Batch failed for audit %s (%s)", audit_id, url)
        _mark_failed(db, audit_id, str(e) or "An unknown error occurred")
    finally:
        db.close()
        if owns_client:
            client.close()


def complete_audit_with_existing_checks(audit_id: int, url: str, client: Optional[httpx.Client] = None):
    """
    Complete a stopped audit from the checks recorded so far.
    Site-wide checks run only if none exist yet.
    """
    db = get_db_session()
    owns_client = client is None
    if owns_client:
        client = build_client()

    try:
        audit = db.query(SiteAudit).filter(SiteAudit.id == audit_id).first()
        if not audit:
            raise ValueError("Audit not found")

        logger.info("[Audit Complete] Starting completion for audit %s with existing checks", audit_id)
        has_site_wide = db.query(SiteAuditCheck).filter(
            SiteAuditCheck.audit_id == audit_id,
            SiteAuditCheck.is_site_wide == True,
        ).count() > 0

        pages = db.query(SiteAuditPage).filter(SiteAuditPage.audit_id == audit_id).order_by(SiteAuditPage.id).all()
        if not has_site_wide and pages:
            dismissed_checks = load_dismissed_checks(db, audit.organization_id)
            _run_site_wide_checks(db, audit, pages, dismissed_checks, client)

        if _complete(db, audit, len(pages)):
            logger.info("[Audit Complete] Audit %s completed successfully", audit_id)

    except Exception as e:
        logger.exception("[Audit Complete Error] Completion failed for audit %s (%s)", audit_id, url)
        _mark_failed(db, audit_id, f"Failed to complete audit: {e}")
    finally:
        db.close()
        if owns_client:
            client.close()


def resume_audit_checks(audit_id: int, url: str, client: Optional[httpx.Client] = None):
    """
    Re-run every check on the pages a failed or stopped audit already crawled,
    without crawling again, and complete the audit.
    """
    db = get_db_session()
    owns_client = client is None
    if owns_client:
        client = build_client()

    try:
        audit = db.query(SiteAudit).filter(SiteAudit.id == audit_id).first()
        if not audit:
            raise ValueError("Audit not found")

        pages = db.query(SiteAuditPage).filter(
            SiteAuditPage.audit_id == audit_id
        ).order_by(SiteAuditPage.crawled_at.asc(), SiteAuditPage.id.asc()).all()
        if not pages:
            raise ValueError("No pages found for this audit")

        audit.status = AUDIT_CHECKING
        audit.error_message = None
        audit.completed_at = None
        db.query(SiteAuditCheck).filter(SiteAuditCheck.audit_id == audit_id).delete(synchronize_session=False)
        db.commit()

        logger.info("[Audit Resume] Starting checks for %d existing pages", len(pages))
        dismissed_checks = load_dismissed_checks(db, audit.organization_id)
        _run_site_wide_checks(db, audit, pages, dismissed_checks, client)

        html_pages = [p for p in pages if not p.is_resource]
        for index, page in enumerate(html_pages):
            fetched = fetch_page(page.url, client=client, force_relaxed_ssl=bool(audit.use_relaxed_ssl))
            context = CheckContext(
                url=page.url,
                html=fetched.html,
                title=page.title,
                status_code=page.status_code or 200,
                all_pages=pages,
                client=client,
            )
            for check in PAGE_SPECIFIC_CHECKS:
                if is_dismissed(dismissed_checks, check.name, page.url):
                    continue
                outcome = run_check(check, context)
                if outcome is not None:
                    db.add(build_check_row(audit_id, check, outcome, page_id=page.id))
            audit.updated_at = datetime.utcnow()
            db.commit()

            if index > 0 and index % 10 == 0:
                logger.info("[Audit Resume] Processed %d/%d pages", index, len(html_pages))

        if _complete(db, audit, len(pages)):
            logger.info("[Audit Resume] Audit %s completed successfully", audit_id)

    except Exception as e:
        logger.exception("[Audit Resume Error] Resume failed for audit %s (%s)", audit_id, url)
        _mark_failed(db, audit_id, f"Failed to resume checks: {e}")
    finally:
        db.close()
        if owns_client:
            client.close()
