"""
Dismissed checks: per-organization suppression of a check on a URL.
Site-wide checks are dismissed against the audit origin.
"""

from typing import Iterable, List, Optional
from urllib.parse import urlparse

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from services.database import DismissedCheck, User
from services.permissions import PermissionDeniedError


def site_origin(url: str) -> str:
    """Scheme and host of a URL, used as the key for site-wide dismissals."""
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def is_dismissed(dismissed: Iterable[DismissedCheck], check_name: str, url: str) -> bool:
    return any(d.check_name == check_name and d.url == url for d in dismissed)


def load_dismissed_checks(db: Session, organization_id: Optional[int]) -> List[DismissedCheck]:
    """Dismissals for a tenant. One-time audits have none."""
    if not organization_id:
        return []
    return db.query(DismissedCheck).filter(DismissedCheck.organization_id == organization_id).all()


def list_dismissed_checks(db: Session, organization_id: int) -> List[DismissedCheck]:
    return (
        db.query(DismissedCheck)
        .filter(DismissedCheck.organization_id == organization_id)
        .order_by(DismissedCheck.created_at.desc())
        .all()
    )


def dismiss_check(db: Session, user: User, check_name: str, url: str) -> DismissedCheck:
    """Dismiss a check for the user's organization. Dismissing twice is a no-op."""
    if not user.organization_id:
        raise PermissionDeniedError("You must belong to an organization to dismiss checks")

    existing = db.query(DismissedCheck).filter(
        DismissedCheck.organization_id == user.organization_id,
        DismissedCheck.check_name == check_name,
        DismissedCheck.url == url,
    ).first()
    if existing:
        return existing

    dismissed = DismissedCheck(
        organization_id=user.organization_id,
        check_name=check_name,
        url=url,
        dismissed_by_id=user.id,
    )
    db.add(dismissed)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return db.query(DismissedCheck).filter(
            DismissedCheck.organization_id == user.organization_id,
            DismissedCheck.check_name == check_name,
            DismissedCheck.url == url,
        ).one()
    db.refresh(dismissed)
    return dismissed


def restore_check(db: Session, user: User, check_name: str, url: str) -> bool:
    """Remove a dismissal. Returns False when nothing was dismissed."""
    if not user.organization_id:
        raise PermissionDeniedError("You must belong to an organization to restore checks")

    deleted = db.query(DismissedCheck).filter(
        DismissedCheck.organization_id == user.organization_id,
        DismissedCheck.check_name == check_name,
        DismissedCheck.url == url,
    ).delete(synchronize_session=False)
    db.commit()
    return deleted > 0
