import pytest

from services.database import DismissedCheck
from services.dismissed_checks import (
    dismiss_check, is_dismissed, list_dismissed_checks, load_dismissed_checks, restore_check, site_origin,
)
from services.permissions import PermissionDeniedError


def test_site_origin():
    assert site_origin("https://example.com/about?x=1") == "https://example.com"
    assert site_origin("http://example.com:8080/") == "http://example.com:8080"


def test_dismiss_is_idempotent(db, team_member, organization):
    first = dismiss_check(db, team_member, "missing_meta_description", "https://example.com/about")
    second = dismiss_check(db, team_member, "missing_meta_description", "https://example.com/about")

    assert first.id == second.id
    assert db.query(DismissedCheck).count() == 1
    assert first.dismissed_by_id == team_member.id
    assert [d.id for d in list_dismissed_checks(db, organization.id)] == [first.id]


def test_is_dismissed_matches_name_and_url(db, team_member, organization):
    dismiss_check(db, team_member, "missing_sitemap", "https://example.com")
    dismissed = load_dismissed_checks(db, organization.id)

    assert is_dismissed(dismissed, "missing_sitemap", "https://example.com")
    assert not is_dismissed(dismissed, "missing_sitemap", "https://other.com")
    assert not is_dismissed(dismissed, "missing_robots_txt", "https://example.com")
    assert load_dismissed_checks(db, None) == []


def test_restore_check(db, team_member):
    dismiss_check(db, team_member, "missing_sitemap", "https://example.com")

    assert restore_check(db, team_member, "missing_sitemap", "https://example.com") is True
    assert restore_check(db, team_member, "missing_sitemap", "https://example.com") is False


def test_dismissals_require_an_organization(db, staff):
    with pytest.raises(PermissionDeniedError):
        dismiss_check(db, staff, "missing_sitemap", "https://example.com")
    with pytest.raises(PermissionDeniedError):
        restore_check(db, staff, "missing_sitemap", "https://example.com")
