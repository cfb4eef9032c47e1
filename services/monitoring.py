"""
Monitored sites and pages: what the weekly scheduler audits for each organization.
"""

import logging
from typing import List, Optional
from urllib.parse import urlparse

from sqlalchemy.orm import Session

from services.auth import can_access_organization
from services.database import MonitoredPage, MonitoredSite, User
from services.permissions import PermissionDeniedError, require_permission

logger = logging.getLogger(__name__)

SITE_UPDATABLE_FIELDS = ("url", "run_site_audit", "run_performance_audit")


class AlreadyMonitoredError(ValueError):
    """Raised when a site or page is already monitored by the organization"""
    pass


def _validate_url(url: Optional[str]) -> str:
    url = (url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or "." not in (parsed.hostname or ""):
        raise ValueError("URL must be a valid URL (e.g., https://example.com)")
    return url


def _target_organization(user: User, organization_id: Optional[int]) -> int:
    if organization_id and user.is_internal:
        return organization_id
    if organization_id and organization_id != user.organization_id:
        raise PermissionDeniedError("You can only manage your own organization")
    if not user.organization_id:
        raise PermissionDeniedError("You must belong to an organization to monitor sites")
    return user.organization_id


def list_monitored_sites(db: Session, organization_id: int) -> List[MonitoredSite]:
    return (
        db.query(MonitoredSite)
        .filter(MonitoredSite.organization_id == organization_id)
        .order_by(MonitoredSite.created_at.asc(), MonitoredSite.id.asc())
        .all()
    )


def _ensure_unique_site(db: Session, organization_id: int, url: str, exclude_id: Optional[int] = None):
    query = db.query(MonitoredSite).filter(
        MonitoredSite.organization_id == organization_id,
        MonitoredSite.url == url,
    )
    if exclude_id is not None:
        query = query.filter(MonitoredSite.id != exclude_id)
    if query.first():
        raise AlreadyMonitoredError("Site is already monitored")


def create_monitored_site(
    db: Session,
    user: User,
    url: str,
    organization_id: Optional[int] = None,
    run_site_audit: bool = True,
    run_performance_audit: bool = True
) -> MonitoredSite:
    require_permission(user, "org:update")
    org_id = _target_organization(user, organization_id)
    url = _validate_url(url)
    _ensure_unique_site(db, org_id, url)

    site = MonitoredSite(
        organization_id=org_id,
        url=url,
        run_site_audit=run_site_audit,
        run_performance_audit=run_performance_audit,
    )
    db.add(site)
    db.commit()
    db.refresh(site)
    logger.info("[Monitoring] %s now monitors %s for organization %s", user.email, url, org_id)
    return site


def update_monitored_site(db: Session, user: User, site_id: int, **fields) -> MonitoredSite:
    """Change the URL or the weekly audit toggles. Fields left as None are unchanged."""
    require_permission(user, "org:update")
    site = db.query(MonitoredSite).filter(MonitoredSite.id == site_id).first()
    if not site or not can_access_organization(user, site.organization_id):
        raise ValueError("Monitored site not found")

    for key, value in fields.items():
        if key not in SITE_UPDATABLE_FIELDS or value is None:
            continue
        if key == "url":
            value = _validate_url(value)
            _ensure_unique_site(db, site.organization_id, value, exclude_id=site.id)
        else:
            value = bool(value)
        setattr(site, key, value)

    db.commit()
    db.refresh(site)
    return site


def list_monitored_pages(db: Session, organization_id: int) -> List[MonitoredPage]:
    return (
        db.query(MonitoredPage)
        .filter(MonitoredPage.organization_id == organization_id)
        .order_by(MonitoredPage.created_at.desc(), MonitoredPage.id.desc())
        .all()
    )


def add_monitored_page(db: Session, user: User, url: str) -> MonitoredPage:
    """Add a page to the organization's weekly performance audit."""
    org_id = _target_organization(user, None)
    url = _validate_url(url)
    existing = db.query(MonitoredPage).filter(
        MonitoredPage.organization_id == org_id,
        MonitoredPage.url == url,
    ).first()
    if existing:
        raise AlreadyMonitoredError("Page already monitored")

    page = MonitoredPage(organization_id=org_id, url=url, added_by_id=user.id)
    db.add(page)
    db.commit()
    db.refresh(page)
    return page


def remove_monitored_page(db: Session, user: User, page_id: int) -> bool:
    org_id = _target_organization(user, None)
    removed = db.query(MonitoredPage).filter(
        MonitoredPage.id == page_id,
        MonitoredPage.organization_id == org_id,
    ).delete(synchronize_session=False)
    db.commit()
    return bool(removed)


def performance_urls_for_site(db: Session, site: MonitoredSite) -> List[str]:
    """The site URL followed by the organization's monitored pages."""
    urls = [site.url]
    for page in list_monitored_pages(db, site.organization_id):
        if page.url not in urls:
            urls.append(page.url)
    return urls
