"""
Role-based permissions for organization members.
"""

from typing import List, Optional

from services.database import User


class PermissionDeniedError(Exception):
    """Raised when a user lacks the permission an operation requires"""
    pass


ROLE_PERMISSIONS = {
    "admin": [
        "org:update",
        "org:view",
        "team:invite",
        "team:view",
        "integrations:manage",
        "campaigns:create",
        "campaigns:update",
        "campaigns:delete",
    ],
    "developer": [
        "org:update",
        "org:view",
        "team:view",
        "feedback:manage",
    ],
    "team_member": [
        "org:view",
        "team:view",
        "campaigns:create",
        "campaigns:update",
        "campaigns:delete",
    ],
    "client_viewer": [
        "org:view",
        "team:view",
    ],
}


def get_permissions(role: Optional[str]) -> List[str]:
    """Permissions granted to a role. Unknown or missing roles get none."""
    if not role:
        return []
    return list(ROLE_PERMISSIONS.get(role, []))


def has_permission(user: Optional[User], permission: str) -> bool:
    if user is None:
        return False
    return permission in ROLE_PERMISSIONS.get(user.role or "", [])


def require_permission(user: Optional[User], permission: str):
    if not has_permission(user, permission):
        raise PermissionDeniedError(f"Permission denied: {permission}")


def can_manage_org(user: Optional[User]) -> bool:
    return has_permission(user, "org:update")


def can_manage_team(user: Optional[User]) -> bool:
    return has_permission(user, "team:invite")


def can_manage_integrations(user: Optional[User]) -> bool:
    return has_permission(user, "integrations:manage")


def can_manage_campaigns(user: Optional[User]) -> bool:
    return (
        has_permission(user, "campaigns:create")
        or has_permission(user, "campaigns:update")
        or has_permission(user, "campaigns:delete")
    )


def can_manage_feedback(user: Optional[User]) -> bool:
    return has_permission(user, "feedback:manage")
