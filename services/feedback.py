"""
User feedback: anyone signed in can report a bug or request a feature,
developers triage it.
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from services.database import FEEDBACK_CATEGORIES, FEEDBACK_PRIORITIES, FEEDBACK_STATUSES, Feedback, User
from services.permissions import can_manage_feedback, require_permission

logger = logging.getLogger(__name__)

MIN_TITLE_LENGTH = 3
MIN_DESCRIPTION_LENGTH = 10


def submit_feedback(
    db: Session,
    user: User,
    title: Optional[str],
    description: Optional[str],
    category: Optional[str],
    page_url: Optional[str] = None,
    user_agent: Optional[str] = None
) -> Feedback:
    title = (title or "").strip()
    description = (description or "").strip()
    if len(title) < MIN_TITLE_LENGTH:
        raise ValueError(f"Title must be at least {MIN_TITLE_LENGTH} characters")
    if len(description) < MIN_DESCRIPTION_LENGTH:
        raise ValueError(f"Description must be at least {MIN_DESCRIPTION_LENGTH} characters")
    if category not in FEEDBACK_CATEGORIES:
        logger.warning("[Feedback] Rejected invalid category %r from %s", category, user.email)
        raise ValueError("Invalid category selected")

    feedback = Feedback(
        user_id=user.id,
        organization_id=user.organization_id,
        title=title,
        description=description,
        category=category,
        status="new",
        page_url=page_url or None,
        user_agent=(user_agent or "")[:500] or None,
    )
    db.add(feedback)
    db.commit()
    db.refresh(feedback)
    logger.info("[Feedback] %s submitted %s feedback %s: %s", user.email, category, feedback.id, title)
    return feedback


def list_feedback(
    db: Session,
    user: User,
    status: Optional[str] = None,
    category: Optional[str] = None
) -> List[Feedback]:
    """Developers see every submission; everyone else sees their own."""
    query = db.query(Feedback)
    if not can_manage_feedback(user):
        query = query.filter(Feedback.user_id == user.id)
    if status:
        query = query.filter(Feedback.status == status)
    if category:
        query = query.filter(Feedback.category == category)
    return query.order_by(Feedback.created_at.desc(), Feedback.id.desc()).all()


def update_feedback(
    db: Session,
    user: User,
    feedback_id: int,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    note: Optional[str] = None
) -> Feedback:
    require_permission(user, "feedback:manage")

    feedback = db.query(Feedback).filter(Feedback.id == feedback_id).first()
    if not feedback:
        raise ValueError("Feedback not found")
    if status is not None and status not in FEEDBACK_STATUSES:
        raise ValueError("Invalid feedback status")
    if priority is not None and priority not in FEEDBACK_PRIORITIES:
        raise ValueError("Invalid feedback priority")

    previous_status = feedback.status
    if status is not None:
        feedback.status = status
    if priority is not None:
        feedback.priority = priority
    if note is not None:
        feedback.status_note = note.strip() or None

    db.commit()
    db.refresh(feedback)
    if feedback.status != previous_status:
        logger.info(
            "[Feedback] %s moved feedback %s from %s to %s",
            user.email, feedback.id, previous_status, feedback.status,
        )
    return feedback
