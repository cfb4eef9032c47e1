"""
Public share links for completed site audit reports.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from services import config
from services.auth import can_access_organization
from services.database import AUDIT_FINISHED_STATUSES, ShareLink, SiteAudit, User
from services.permissions import PermissionDeniedError

logger = logging.getLogger(__name__)


def share_url(link: ShareLink) -> str:
    return f"{config.APP_BASE_URL}/s/{link.token}"


def create_share_link(db: Session, user: User, audit_id: int, now: Optional[datetime] = None) -> ShareLink:
    """Create a link to an audit's report that works without logging in."""
    audit = db.query(SiteAudit).filter(SiteAudit.id == audit_id).first()
    if not audit:
        raise ValueError("Audit not found")
    if not can_access_organization(user, audit.organization_id):
        raise PermissionDeniedError("You do not have access to this audit")
    if audit.status not in AUDIT_FINISHED_STATUSES:
        raise ValueError("Only finished audits can be shared")

    now = now or datetime.utcnow()
    link = ShareLink(
        token=ShareLink.generate_token(),
        audit_id=audit.id,
        organization_id=audit.organization_id,
        created_by_id=user.id,
        expires_at=now + timedelta(days=config.SHARE_LINK_EXPIRY_DAYS),
    )
    db.add(link)
    db.commit()
    db.refresh(link)

    logger.info("Share link created for audit %s by %s", audit.id, user.email)
    return link


def resolve_share_link(db: Session, token: str, now: Optional[datetime] = None) -> Optional[ShareLink]:
    """Look up a share link and count the view. Returns None when missing or expired."""
    link = db.query(ShareLink).filter(ShareLink.token == token).first()
    if not link:
        return None
    if (now or datetime.utcnow()) > link.expires_at:
        return None

    link.view_count = (link.view_count or 0) + 1
    db.commit()
    return link
