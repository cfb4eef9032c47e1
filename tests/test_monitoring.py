import pytest

from services.database import MonitoredSite, Organization
from services.monitoring import (
    AlreadyMonitoredError, add_monitored_page, create_monitored_site, list_monitored_pages,
    list_monitored_sites, performance_urls_for_site, remove_monitored_page, update_monitored_site,
)
from services.permissions import PermissionDeniedError


@pytest.fixture
def other_org(db):
    org = Organization(name="Other", website_url="https://other.test")
    db.add(org)
    db.commit()
    db.refresh(org)
    return org


def test_admin_creates_monitored_site_for_own_organization(db, admin, organization):
    site = create_monitored_site(db, admin, " https://example.com ", run_performance_audit=False)

    assert site.organization_id == organization.id
    assert site.url == "https://example.com"
    assert site.run_site_audit is True
    assert site.run_performance_audit is False
    assert [s.id for s in list_monitored_sites(db, organization.id)] == [site.id]


def test_create_monitored_site_requires_org_update(db, team_member, viewer):
    with pytest.raises(PermissionDeniedError):
        create_monitored_site(db, viewer, "https://example.com")
    with pytest.raises(PermissionDeniedError):
        create_monitored_site(db, team_member, "https://example.com")
    assert db.query(MonitoredSite).count() == 0


def test_create_monitored_site_is_scoped_to_the_users_organization(db, admin, make_member, other_org):
    agency_admin = make_member("admin@agency.test", None, "admin")

    with pytest.raises(PermissionDeniedError):
        create_monitored_site(db, admin, "https://other.test", organization_id=other_org.id)

    site = create_monitored_site(db, agency_admin, "https://other.test", organization_id=other_org.id)
    assert site.organization_id == other_org.id


def test_create_monitored_site_rejects_duplicates_and_bad_urls(db, admin):
    create_monitored_site(db, admin, "https://example.com")

    with pytest.raises(AlreadyMonitoredError, match="already monitored"):
        create_monitored_site(db, admin, "https://example.com")
    with pytest.raises(ValueError, match="valid URL"):
        create_monitored_site(db, admin, "example")


def test_update_monitored_site_changes_only_given_fields(db, admin):
    site = create_monitored_site(db, admin, "https://example.com")

    updated = update_monitored_site(db, admin, site.id, run_site_audit=False, url=None)

    assert updated.run_site_audit is False
    assert updated.run_performance_audit is True
    assert updated.url == "https://example.com"

    updated = update_monitored_site(db, admin, site.id, url="https://www.example.com")
    assert updated.url == "https://www.example.com"


def test_update_monitored_site_of_another_organization_is_not_found(db, admin, make_member, other_org):
    outsider = make_member("outsider@other.test", other_org, "admin")
    site = create_monitored_site(db, outsider, "https://other.test")

    with pytest.raises(ValueError, match="Monitored site not found"):
        update_monitored_site(db, admin, site.id, run_site_audit=False)
    db.refresh(site)
    assert site.run_site_audit is True


def test_update_monitored_site_to_an_existing_url_is_rejected(db, admin):
    create_monitored_site(db, admin, "https://example.com")
    blog = create_monitored_site(db, admin, "https://blog.example.com")

    with pytest.raises(AlreadyMonitoredError):
        update_monitored_site(db, admin, blog.id, url="https://example.com")


def test_monitored_pages(db, admin, organization, team_member):
    site = create_monitored_site(db, admin, "https://example.com")
    pricing = add_monitored_page(db, team_member, "https://example.com/pricing")
    add_monitored_page(db, admin, "https://example.com")

    with pytest.raises(AlreadyMonitoredError, match="Page already monitored"):
        add_monitored_page(db, admin, "https://example.com/pricing")

    assert len(list_monitored_pages(db, organization.id)) == 2
    assert performance_urls_for_site(db, site) == ["https://example.com", "https://example.com/pricing"]

    assert remove_monitored_page(db, admin, pricing.id) is True
    assert remove_monitored_page(db, admin, pricing.id) is False
    assert performance_urls_for_site(db, site) == ["https://example.com"]


def test_pages_of_another_organization_cannot_be_removed(db, admin, make_member, other_org):
    outsider = make_member("outsider@other.test", other_org, "admin")
    page = add_monitored_page(db, outsider, "https://other.test/pricing")

    assert remove_monitored_page(db, admin, page.id) is False
    assert len(list_monitored_pages(db, other_org.id)) == 1


def test_users_without_organization_cannot_add_pages(db, staff):
    with pytest.raises(PermissionDeniedError):
        add_monitored_page(db, staff, "https://example.com")
