"""
Organization (tenant) management: onboarding, settings, team members and invites.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlparse

from sqlalchemy.orm import Session

from services import config
from services.database import INVITABLE_ROLES, ROLES, Invite, Organization, User
from services.email_service import send_invite_email
from services.permissions import PermissionDeniedError, require_permission

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

ORGANIZATION_STATUSES = ("prospect", "customer", "inactive")
UPDATABLE_FIELDS = ("name", "website_url", "status", "industry", "contact_email", "logo_url")


class OrganizationError(Exception):
    """Raised when an organization operation is rejected"""
    pass


class InviteError(Exception):
    """Raised when an invite cannot be sent, resent or accepted"""
    pass


def _validate_name(name: Optional[str]) -> str:
    if not name or not name.strip():
        raise OrganizationError("Organization name is required")
    if len(name.strip()) > 100:
        raise OrganizationError("Organization name must be less than 100 characters")
    return name.strip()


def _validate_website(website_url: Optional[str]) -> Optional[str]:
    if not website_url or not website_url.strip():
        return None
    parsed = urlparse(website_url.strip())
    if parsed.scheme not in ("http", "https") or "." not in (parsed.hostname or ""):
        raise OrganizationError("Website URL must be a valid URL (e.g., https://example.com)")
    return website_url.strip()


def invite_link(invite: Invite) -> str:
    return f"{config.APP_BASE_URL}/accept-invite/{invite.token}"


def _get_organization(db: Session, org_id: int) -> Organization:
    org = db.query(Organization).filter(Organization.id == org_id).first()
    if not org:
        raise OrganizationError("Organization not found")
    return org


def create_organization(
    db: Session,
    user: User,
    name: str,
    website_url: Optional[str] = None,
    industry: Optional[str] = None,
    contact_email: Optional[str] = None
) -> Organization:
    """
    Onboarding: create an organization and make the creator its admin.

    The creator must not already belong to an organization.
    """
    if user.organization_id:
        raise OrganizationError("You already belong to an organization")

    org = Organization(
        name=_validate_name(name),
        website_url=_validate_website(website_url),
        industry=industry,
        contact_email=contact_email or user.email,
        status="customer",
    )
    db.add(org)
    db.flush()

    user.organization_id = org.id
    user.role = "admin"
    db.commit()
    db.refresh(org)

    logger.info("Organization %s created by %s", org.id, user.email)
    return org


def update_organization(db: Session, user: User, org_id: int, **fields) -> Organization:
    require_permission(user, "org:update")
    if user.organization_id != org_id and not user.is_internal:
        raise PermissionDeniedError("You can only update your own organization")

    org = _get_organization(db, org_id)
    for key, value in fields.items():
        if key not in UPDATABLE_FIELDS or value is None:
            continue
        if key == "name":
            value = _validate_name(value)
        elif key == "website_url":
            value = _validate_website(value)
        elif key == "status" and value not in ORGANIZATION_STATUSES:
            raise OrganizationError("Invalid organization status")
        setattr(org, key, value)

    db.commit()
    db.refresh(org)
    return org


def archive_organization(db: Session, user: User, org_id: int, now: Optional[datetime] = None) -> Organization:
    """Soft delete. Internal staff only."""
    if not user.is_internal:
        raise PermissionDeniedError("Only internal users can archive organizations")

    org = _get_organization(db, org_id)
    if org.is_archived:
        raise OrganizationError("Organization is already archived")

    org.archived_at = now or datetime.utcnow()
    org.status = "inactive"
    db.commit()
    logger.info("Organization %s archived by %s", org.id, user.email)
    return org


def restore_organization(db: Session, user: User, org_id: int) -> Organization:
    if not user.is_internal:
        raise PermissionDeniedError("Only internal users can restore organizations")

    org = _get_organization(db, org_id)
    if not org.is_archived:
        raise OrganizationError("Organization is not archived")

    org.archived_at = None
    org.status = "customer"
    db.commit()
    logger.info("Organization %s restored by %s", org.id, user.email)
    return org


def list_team(db: Session, user: User, now: Optional[datetime] = None) -> dict:
    """Members and pending (unaccepted, unexpired) invites of the user's organization."""
    require_permission(user, "team:view")
    now = now or datetime.utcnow()

    members = (
        db.query(User)
        .filter(User.organization_id == user.organization_id)
        .order_by(User.created_at)
        .all()
    )
    invites = (
        db.query(Invite)
        .filter(
            Invite.organization_id == user.organization_id,
            Invite.accepted_at.is_(None),
            Invite.expires_at > now,
        )
        .order_by(Invite.created_at.desc())
        .all()
    )

    return {
        "members": [
            {
                "id": m.id,
                "email": m.email,
                "name": m.full_name,
                "role": m.role,
                "last_login_at": m.last_login_at.isoformat() if m.last_login_at else None,
            }
            for m in members
        ],
        "invites": [
            {
                "id": i.id,
                "email": i.email,
                "role": i.role,
                "expires_at": i.expires_at.isoformat(),
            }
            for i in invites
        ],
    }


async def send_invite(db: Session, user: User, email: str, role: str, now: Optional[datetime] = None) -> dict:
    """
    Create an invite and e-mail the link.

    E-mail delivery failure is not fatal: the result carries a warning with
    the link so the admin can share it manually.
    """
    email = (email or "").strip().lower()
    if not email:
        raise InviteError("Email address is required")
    if not EMAIL_PATTERN.match(email):
        raise InviteError("Invalid email address format")
    if role not in INVITABLE_ROLES:
        logger.error("[Send Invite Error] invalid role %s", role)
        raise InviteError("Invalid role selected")

    require_permission(user, "team:invite")
    now = now or datetime.utcnow()

    if db.query(User).filter(User.email == email, User.organization_id == user.organization_id).first():
        raise InviteError("This user is already a member of your organization")

    pending = db.query(Invite).filter(
        Invite.email == email,
        Invite.organization_id == user.organization_id,
        Invite.accepted_at.is_(None),
        Invite.expires_at > now,
    ).first()
    if pending:
        raise InviteError("An invite has already been sent to this email")

    invite = Invite(
        token=Invite.generate_token(),
        email=email,
        organization_id=user.organization_id,
        role=role,
        invited_by_id=user.id,
        expires_at=now + timedelta(days=config.INVITE_EXPIRY_DAYS),
    )
    db.add(invite)
    db.commit()
    db.refresh(invite)

    link = invite_link(invite)
    org_name = invite.organization.name if invite.organization else "the organization"

    try:
        await send_invite_email(email, link, org_name, user.email, role)
    except Exception as e:
        logger.warning("Failed to send invite email to %s: %s", email, e)
        return {
            "success": True,
            "invite_id": invite.id,
            "invite_link": link,
            "warning": f"Invite created but email failed to send: {e}. Share this link manually: {link}",
        }

    return {
        "success": True,
        "invite_id": invite.id,
        "invite_link": link,
        "message": f"Invite sent to {email}!",
    }


def _get_org_invite(db: Session, user: User, invite_id: int) -> Invite:
    invite = db.query(Invite).filter(
        Invite.id == invite_id,
        Invite.organization_id == user.organization_id,
    ).first()
    if not invite:
        raise InviteError("Invite not found")
    return invite


async def resend_invite(db: Session, user: User, invite_id: int, now: Optional[datetime] = None) -> dict:
    require_permission(user, "team:invite")
    invite = _get_org_invite(db, user, invite_id)
    if invite.accepted_at:
        raise InviteError("This invite has already been used")

    invite.expires_at = (now or datetime.utcnow()) + timedelta(days=config.INVITE_EXPIRY_DAYS)
    db.commit()

    link = invite_link(invite)
    try:
        await send_invite_email(
            invite.email, link, invite.organization.name, user.email, invite.role, reminder=True
        )
    except Exception as e:
        logger.warning("Failed to resend invite email to %s: %s", invite.email, e)
        raise InviteError("Failed to send invite email")

    return {"success": True, "message": f"Invite resent to {invite.email}!"}


def revoke_invite(db: Session, user: User, invite_id: int):
    require_permission(user, "team:invite")
    invite = _get_org_invite(db, user, invite_id)
    if invite.accepted_at:
        raise InviteError("This invite has already been used")
    db.delete(invite)
    db.commit()


def accept_invite(db: Session, user: User, invite_id: int, now: Optional[datetime] = None) -> Organization:
    """Join the inviting organization with the invited role."""
    now = now or datetime.utcnow()
    invite = db.query(Invite).filter(Invite.id == invite_id).first()

    if not invite:
        raise InviteError("Invite not found")
    if invite.accepted_at:
        raise InviteError("This invite has already been used")
    if invite.is_expired(now):
        raise InviteError("This invite has expired")
    if user.email.lower() != invite.email.lower():
        raise InviteError("This invite was sent to a different email address")
    if user.organization_id:
        raise InviteError("You are already part of an organization")

    user.organization_id = invite.organization_id
    user.role = invite.role
    invite.accepted_at = now
    db.commit()

    logger.info("User %s joined organization %s as %s", user.email, invite.organization_id, invite.role)
    return invite.organization


def get_invite_by_token(db: Session, token: str) -> Optional[Invite]:
    return db.query(Invite).filter(Invite.token == token).first()


def _get_member(db: Session, admin: User, member_id: int) -> User:
    if admin.role != "admin":
        raise PermissionDeniedError("Only admins can manage team members")
    member = db.query(User).filter(
        User.id == member_id,
        User.organization_id == admin.organization_id,
    ).first()
    if not member:
        raise OrganizationError("Team member not found")
    return member


def update_member_role(db: Session, admin: User, member_id: int, role: str) -> User:
    if role not in ROLES:
        raise OrganizationError("Invalid role selected")
    member = _get_member(db, admin, member_id)
    if member.id == admin.id and role != "admin":
        raise OrganizationError("You cannot change your own admin role")

    member.role = role
    db.commit()
    return member


def remove_member(db: Session, admin: User, member_id: int):
    member = _get_member(db, admin, member_id)
    if member.id == admin.id:
        raise OrganizationError("You cannot remove yourself from the organization")

    member.organization_id = None
    member.role = None
    db.commit()
    logger.info("User %s removed from organization %s", member.email, admin.organization_id)
