"""
Authentication service.
Handles user registration, login, and session management.
"""

from datetime import datetime
from typing import Optional
from fastapi import Request
from sqlalchemy.orm import Session

from services import config
from services.database import Organization, User


def is_internal_email(email: str) -> bool:
    """Agency staff are recognized by their e-mail domain."""
    domain = email.rsplit("@", 1)[-1].lower() if "@" in email else ""
    return bool(domain) and domain in config.INTERNAL_EMAIL_DOMAINS


def get_current_user(request: Request, db: Session) -> Optional[User]:
    """Get the currently logged-in user from session."""
    user_id = request.session.get("user_id")
    if not user_id:
        return None

    return db.query(User).filter(User.id == user_id).first()


def get_current_organization(db: Session, user: Optional[User]) -> Optional[Organization]:
    """The user's tenant. Archived organizations are not returned."""
    if not user or not user.organization_id:
        return None

    return db.query(Organization).filter(
        Organization.id == user.organization_id,
        Organization.archived_at.is_(None)
    ).first()


def login_user(request: Request, user: User):
    """Log in a user by setting session data."""
    request.session["user_id"] = user.id
    request.session["user_email"] = user.email


def logout_user(request: Request):
    """Log out the current user."""
    request.session.pop("user_id", None)
    request.session.pop("user_email", None)


def create_user(
    db: Session,
    email: str,
    password: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None
) -> User:
    """Create a new user account."""
    normalized = email.lower().strip()
    if not normalized or "@" not in normalized:
        raise ValueError("Please enter a valid email address")
    if not password or len(password) < 8:
        raise ValueError("Password must be at least 8 characters")

    existing = db.query(User).filter(User.email == normalized).first()
    if existing:
        raise ValueError("An account with this email already exists")

    user = User(
        email=normalized,
        first_name=first_name,
        last_name=last_name,
        is_internal=is_internal_email(normalized)
    )
    user.set_password(password)

    db.add(user)
    db.commit()
    db.refresh(user)

    return user


def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
    """Authenticate a user with email and password."""
    user = db.query(User).filter(User.email == email.lower().strip()).first()
    if not user:
        return None
    if not user.verify_password(password):
        return None

    user.last_login_at = datetime.utcnow()
    db.commit()

    return user


def can_access_organization(user: Optional[User], organization_id: Optional[int]) -> bool:
    """Rows belong to the caller's organization unless the caller is internal staff."""
    if user is None:
        return False
    if user.is_internal:
        return True
    return organization_id is not None and user.organization_id == organization_id
