"""
Performance audits backed by the PageSpeed Insights API.

Every URL is tested once per device. Each result keeps the Lighthouse category
scores and the Core Web Vitals, preferring CrUX field data and falling back to
lab data when the site has no field data.
"""

import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

import httpx
from sqlalchemy.orm import Session

from services import config
from services.database import (
    PERF_ACTIVE_STATUSES, PERF_COMPLETED, PERF_FAILED, PERF_PENDING, PERF_RUNNING, PERF_STOPPED,
    PerformanceAudit, PerformanceAuditResult, User, get_db_session,
)
from services.permissions import require_permission

logger = logging.getLogger(__name__)


class PageSpeedError(Exception):
    """Raised when the PageSpeed Insights API cannot produce a result"""
    pass


PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
CATEGORIES = ("performance", "accessibility", "best-practices", "seo")
DEVICES = ("mobile", "desktop")

FIELD_CATEGORY_RATINGS = {
    "FAST": "good",
    "AVERAGE": "needs_improvement",
    "SLOW": "poor",
}

# (good up to, needs improvement up to)
LCP_THRESHOLDS_MS = (2500, 4000)
INP_THRESHOLDS_MS = (200, 500)
CLS_THRESHOLDS = (0.1, 0.25)

DIAGNOSTIC_IDS = (
    "dom-size",
    "total-byte-weight",
    "mainthread-work-breakdown",
    "bootup-time",
    "network-requests",
    "largest-contentful-paint-element",
    "layout-shift-elements",
    "long-tasks",
)

STOPPED_MESSAGE = "Audit is not in progress and cannot be stopped"


def fetch_pagespeed(url: str, device: str, client: Optional[httpx.Client] = None) -> Dict[str, Any]:
    """
    Run PageSpeed Insights for one URL and device strategy.

    Args:
        url: Page to test
        device: ``mobile`` or ``desktop``
        client: Optional httpx client (tests inject one backed by MockTransport)
    """
    if not config.PAGESPEED_API_KEY:
        raise PageSpeedError("PAGESPEED_API_KEY is not configured")

    params = [("url", url), ("key", config.PAGESPEED_API_KEY), ("strategy", device)]
    params += [("category", category) for category in CATEGORIES]

    owns_client = client is None
    if owns_client:
        client = httpx.Client(timeout=config.PAGESPEED_TIMEOUT_SECONDS)
    try:
        response = client.get(PAGESPEED_API_URL, params=params, headers={"Accept": "application/json"})
    finally:
        if owns_client:
            client.close()

    if response.status_code != 200:
        raise PageSpeedError(f"PageSpeed API error ({response.status_code}): {response.text[:500]}")

    data = response.json()
    if not isinstance(data, dict) or not isinstance(data.get("lighthouseResult"), dict):
        raise PageSpeedError("PageSpeed API response has no Lighthouse result")
    return data


def _rate(value: Optional[float], thresholds: tuple) -> Optional[str]:
    if value is None:
        return None
    good, needs_improvement = thresholds
    if value <= good:
        return "good"
    if value <= needs_improvement:
        return "needs_improvement"
    return "poor"


def rate_lcp(lcp_ms: Optional[float]) -> Optional[str]:
    return _rate(lcp_ms, LCP_THRESHOLDS_MS)


def rate_inp(inp_ms: Optional[float]) -> Optional[str]:
    return _rate(inp_ms, INP_THRESHOLDS_MS)


def rate_cls(cls_score: Optional[float]) -> Optional[str]:
    return _rate(cls_score, CLS_THRESHOLDS)


def _category_score(categories: Dict[str, Any], key: str) -> Optional[int]:
    score = (categories.get(key) or {}).get("score")
    if score is None:
        return None
    return int(round(score * 100))


def _audit_value(audits: Dict[str, Any], audit_id: str) -> Optional[float]:
    audit = audits.get(audit_id)
    if not isinstance(audit, dict):
        return None
    return audit.get("numericValue")


def extract_metrics(result: Dict[str, Any]) -> Dict[str, Any]:
    """
    Lighthouse scores (0-100) and Core Web Vitals with their ratings.

    CrUX reports CLS multiplied by 100; lab CLS is already a decimal. INP has
    no lab equivalent outside the experimental audit.
    """
    lighthouse = result.get("lighthouseResult") or {}
    categories = lighthouse.get("categories") or {}
    audits = lighthouse.get("audits") or {}
    field = (result.get("loadingExperience") or {}).get("metrics") or {}

    lcp_field = field.get("LARGEST_CONTENTFUL_PAINT_MS") or {}
    inp_field = field.get("INTERACTION_TO_NEXT_PAINT") or {}
    cls_field = field.get("CUMULATIVE_LAYOUT_SHIFT_SCORE") or {}

    lcp_ms = lcp_field.get("percentile")
    if lcp_ms is None:
        lcp_ms = _audit_value(audits, "largest-contentful-paint")
    inp_ms = inp_field.get("percentile")
    if inp_ms is None:
        inp_ms = _audit_value(audits, "experimental-interaction-to-next-paint")
    if cls_field.get("percentile") is not None:
        cls_score = cls_field["percentile"] / 100
    else:
        cls_score = _audit_value(audits, "cumulative-layout-shift")

    return {
        "performance_score": _category_score(categories, "performance"),
        "accessibility_score": _category_score(categories, "accessibility"),
        "best_practices_score": _category_score(categories, "best-practices"),
        "seo_score": _category_score(categories, "seo"),
        "lcp_ms": int(round(lcp_ms)) if lcp_ms is not None else None,
        "lcp_rating": FIELD_CATEGORY_RATINGS.get(lcp_field.get("category")) or rate_lcp(lcp_ms),
        "inp_ms": int(round(inp_ms)) if inp_ms is not None else None,
        "inp_rating": FIELD_CATEGORY_RATINGS.get(inp_field.get("category")) or rate_inp(inp_ms),
        "cls_score": round(cls_score, 3) if cls_score is not None else None,
        "cls_rating": FIELD_CATEGORY_RATINGS.get(cls_field.get("category")) or rate_cls(cls_score),
    }


def extract_opportunities(result: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Lighthouse audits that did not pass and carry a measurable cost, biggest first."""
    audits = (result.get("lighthouseResult") or {}).get("audits") or {}
    opportunities = []
    for audit in audits.values():
        if not isinstance(audit, dict):
            continue
        score = audit.get("score")
        numeric_value = audit.get("numericValue")
        if score is None or score >= 1 or not isinstance(numeric_value, (int, float)) or numeric_value <= 0:
            continue
        opportunities.append({
            "id": audit.get("id"),
            "title": audit.get("title"),
            "description": audit.get("description"),
            "score": score,
            "numeric_value": numeric_value,
            "display_value": audit.get("displayValue") or "",
        })
    opportunities.sort(key=lambda o: o["numeric_value"], reverse=True)
    return opportunities


def extract_diagnostics(result: Dict[str, Any]) -> List[Dict[str, Any]]:
    audits = (result.get("lighthouseResult") or {}).get("audits") or {}
    diagnostics = []
    for audit_id in DIAGNOSTIC_IDS:
        audit = audits.get(audit_id)
        if not isinstance(audit, dict) or not audit.get("displayValue"):
            continue
        diagnostics.append({
            "id": audit.get("id", audit_id),
            "title": audit.get("title"),
            "description": audit.get("description"),
            "display_value": audit["displayValue"],
        })
    return diagnostics


def build_result_row(audit_id: int, url: str, device: str, result: Dict[str, Any]) -> PerformanceAuditResult:
    return PerformanceAuditResult(
        audit_id=audit_id,
        url=url,
        device=device,
        opportunities_json=json.dumps(extract_opportunities(result)),
        diagnostics_json=json.dumps(extract_diagnostics(result)),
        **extract_metrics(result),
    )


def _validate_urls(urls: Optional[Iterable[str]]) -> List[str]:
    cleaned = []
    for url in urls or []:
        url = (url or "").strip()
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Invalid URL: {url}")
        if url not in cleaned:
            cleaned.append(url)
    if not cleaned:
        raise ValueError("URLs are required")
    return cleaned


def start_performance_audit(
    db: Session,
    organization_id: Optional[int],
    urls: Iterable[str],
    created_by_id: Optional[int] = None
) -> PerformanceAudit:
    """Create a pending performance audit. ``organization_id`` is None for one-time audits."""
    cleaned = _validate_urls(urls)
    audit = PerformanceAudit(
        organization_id=organization_id,
        created_by_id=created_by_id,
        status=PERF_PENDING,
        urls_json=json.dumps(cleaned),
        total_urls=len(cleaned) * len(DEVICES),
        completed_count=0,
    )
    db.add(audit)
    db.commit()
    db.refresh(audit)
    logger.info("[Performance] Created audit %s for %d URLs", audit.id, len(cleaned))
    return audit


def can_access_performance_audit(user: Optional[User], audit: PerformanceAudit) -> bool:
    """Same organization, or the creator of a one-time audit. Internal staff see all."""
    if user is None:
        return False
    if user.is_internal:
        return True
    if audit.organization_id is None:
        return audit.created_by_id == user.id
    return audit.organization_id == user.organization_id


def _transition(db: Session, audit_id: int, from_statuses: tuple, values: Dict[str, Any]) -> bool:
    """Apply ``values`` only while the audit is in one of ``from_statuses``."""
    values = dict(values, updated_at=datetime.utcnow())
    updated = db.query(PerformanceAudit).filter(
        PerformanceAudit.id == audit_id,
        PerformanceAudit.status.in_(from_statuses),
    ).update(values, synchronize_session=False)
    db.commit()
    return bool(updated)


def run_performance_audit(audit_id: int, client: Optional[httpx.Client] = None):
    """
    Background task: test every URL of the audit on each device.

    A failed request is logged and skipped. Each step bumps ``updated_at``
    and only applies while the audit is running, so a stop or a stale
    timeout ends the run at the next step. The audit fails when no request
    produced a result.
    """
    db = get_db_session()
    try:
        audit = db.query(PerformanceAudit).filter(PerformanceAudit.id == audit_id).first()
        if not audit:
            raise ValueError("Audit not found")
        urls = audit.get_urls()

        started = _transition(db, audit_id, (PERF_PENDING,), {
            "status": PERF_RUNNING,
            "started_at": datetime.utcnow(),
            "total_urls": len(urls) * len(DEVICES),
            "completed_count": 0,
        })
        if not started:
            logger.info("[Performance] Audit %s is no longer pending, not starting", audit_id)
            return

        stored = completed = 0
        last_error = None
        for url in urls:
            for device in DEVICES:
                if not _transition(db, audit_id, (PERF_RUNNING,), {"current_url": url, "current_device": device}):
                    logger.info("[Performance] Audit %s is no longer running, stopping", audit_id)
                    return

                logger.info("[Performance] Auditing %s (%s)", url, device)
                try:
                    result = fetch_pagespeed(url, device, client=client)
                    db.add(build_result_row(audit_id, url, device, result))
                    db.commit()
                    stored += 1
                except (PageSpeedError, httpx.HTTPError, ValueError) as e:
                    db.rollback()
                    last_error = str(e)
                    logger.warning("[Performance] Failed to audit %s (%s): %s", url, device, e)

                completed += 1
                _transition(db, audit_id, (PERF_RUNNING,), {"completed_count": completed})
                if config.PAGESPEED_DELAY_SECONDS:
                    time.sleep(config.PAGESPEED_DELAY_SECONDS)

        if not stored:
            raise PageSpeedError(last_error or "No URLs could be audited")

        finished = _transition(db, audit_id, (PERF_RUNNING,), {
            "status": PERF_COMPLETED,
            "current_url": None,
            "current_device": None,
            "completed_at": datetime.utcnow(),
        })
        if not finished:
            logger.warning("[Performance] Audit %s is no longer running, not completing", audit_id)
            return
        logger.info("[Performance] Audit %s completed: %d/%d results", audit_id, stored, completed)

    except Exception as e:
        logger.exception("[Performance Runner Error] Audit %s failed", audit_id)
        db.rollback()
        _transition(db, audit_id, PERF_ACTIVE_STATUSES, {
            "status": PERF_FAILED,
            "error_message": str(e)[:1000],
            "current_url": None,
            "current_device": None,
            "completed_at": datetime.utcnow(),
        })
    finally:
        db.close()


def stop_performance_audit(db: Session, user: User, audit: PerformanceAudit) -> PerformanceAudit:
    """Stop a pending or running audit. Results collected so far are kept."""
    require_permission(user, "org:update")
    stopped = _transition(db, audit.id, PERF_ACTIVE_STATUSES, {
        "status": PERF_STOPPED,
        "current_url": None,
        "current_device": None,
        "completed_at": datetime.utcnow(),
    })
    if not stopped:
        raise ValueError(STOPPED_MESSAGE)

    db.refresh(audit)
    logger.info("[Performance] Audit %s stopped by %s", audit.id, user.email)
    return audit


def get_performance_progress(db: Session, audit: PerformanceAudit) -> dict:
    progress = audit.to_dict()
    progress["results_count"] = db.query(PerformanceAuditResult).filter(
        PerformanceAuditResult.audit_id == audit.id
    ).count()
    return progress


def _average(values: List[Optional[int]]) -> Optional[int]:
    present = [v for v in values if v is not None]
    if not present:
        return None
    return int(round(sum(present) / len(present)))


def get_performance_report(audit: PerformanceAudit) -> dict:
    """The audit with its results and the average score per device."""
    results = list(audit.results)
    averages = {
        device: _average([r.performance_score for r in results if r.device == device])
        for device in DEVICES
    }
    return {
        "audit": audit.to_dict(),
        "results": [r.to_dict() for r in results],
        "average_performance_score": _average([r.performance_score for r in results]),
        "device_averages": averages,
    }
