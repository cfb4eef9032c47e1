from types import SimpleNamespace

import pytest

from services.auth import authenticate_user, can_access_organization, create_user, get_current_organization
from services.permissions import (
    PermissionDeniedError, can_manage_campaigns, can_manage_team, get_permissions, has_permission,
    require_permission,
)


def test_create_user_normalizes_email_and_flags_internal_staff(db):
    user = create_user(db, "  Jane@Agency.TEST ", "long-enough", "Jane", "Doe")

    assert user.email == "jane@agency.test"
    assert user.is_internal
    assert user.full_name == "Jane Doe"
    assert user.password_hash != "long-enough"


@pytest.mark.parametrize("email,password,message", [
    ("not-an-email", "long-enough", "Please enter a valid email address"),
    ("a@b.test", "short", "Password must be at least 8 characters"),
])
def test_create_user_validation(db, email, password, message):
    with pytest.raises(ValueError, match=message):
        create_user(db, email, password)


def test_create_user_rejects_duplicate_email(db):
    create_user(db, "a@b.test", "long-enough")
    with pytest.raises(ValueError, match="already exists"):
        create_user(db, "A@B.test", "long-enough")


def test_authenticate_user(db):
    create_user(db, "a@b.test", "long-enough")

    user = authenticate_user(db, "A@b.test", "long-enough")
    assert user is not None
    assert user.last_login_at is not None
    assert authenticate_user(db, "a@b.test", "wrong-password") is None
    assert authenticate_user(db, "nobody@b.test", "long-enough") is None


def test_get_current_organization_hides_archived(db, admin, organization):
    assert get_current_organization(db, admin).id == organization.id

    from datetime import datetime
    organization.archived_at = datetime.utcnow()
    db.commit()
    assert get_current_organization(db, admin) is None


def test_can_access_organization():
    member = SimpleNamespace(is_internal=False, organization_id=1)
    staff = SimpleNamespace(is_internal=True, organization_id=None)

    assert can_access_organization(member, 1)
    assert not can_access_organization(member, 2)
    assert not can_access_organization(member, None)
    assert can_access_organization(staff, 2)
    assert not can_access_organization(None, 1)


def test_role_permissions():
    admin = SimpleNamespace(role="admin")
    viewer = SimpleNamespace(role="client_viewer")
    developer = SimpleNamespace(role="developer")

    assert has_permission(admin, "team:invite")
    assert can_manage_team(admin)
    assert not can_manage_team(viewer)
    assert can_manage_campaigns(SimpleNamespace(role="team_member"))
    assert not can_manage_campaigns(developer)
    assert has_permission(developer, "feedback:manage")
    assert get_permissions(None) == []
    assert get_permissions("unknown") == []
    assert not has_permission(None, "org:view")


def test_require_permission_raises():
    with pytest.raises(PermissionDeniedError, match="team:invite"):
        require_permission(SimpleNamespace(role="client_viewer"), "team:invite")
