from datetime import datetime, timedelta

import pytest

from services.database import AUDIT_COMPLETED, AUDIT_CRAWLING, SiteAudit, SiteAuditCheck
from services.reporting import build_audit_pdf, group_issues, sanitize_text, score_color
from services.share_links import create_share_link, resolve_share_link, share_url
from services.permissions import PermissionDeniedError


def finished_audit(db, organization, status=AUDIT_COMPLETED):
    audit = SiteAudit(
        organization_id=organization.id, url="https://example.com", status=status,
        overall_score=72, seo_score=80, ai_readiness_score=55, technical_score=81,
        passed_count=10, warning_count=3, failed_count=2, pages_crawled=12,
        executive_summary="The site is in good shape — mostly.\n\nFix the sitemap first.",
        completed_at=datetime(2026, 3, 1),
    )
    db.add(audit)
    db.commit()
    db.refresh(audit)
    return audit


def check(check_type, name, status, priority="recommended"):
    return SiteAuditCheck(
        audit_id=1, check_type=check_type, check_name=name, priority=priority, status=status,
        display_name=name.replace("_", " ").title(), fix_guidance="Do the thing → now",
    )


def test_sanitize_text():
    assert sanitize_text("“Quoted” — café …") == '"Quoted" - caf? ...'
    assert sanitize_text(None) == ""


def test_score_color_bands():
    assert score_color(90) != score_color(60) != score_color(10)
    assert score_color(None) == score_color(None)


def test_group_issues_orders_failed_then_priority():
    checks = [
        check("seo", "missing_sitemap", "warning", "critical"),
        check("seo", "missing_title", "failed", "recommended"),
        check("seo", "duplicate_titles", "failed", "critical"),
        check("technical", "missing_viewport", "passed"),
        check("ai_readiness", "missing_llms_txt", "failed", "critical"),
    ]

    grouped = group_issues(checks)

    assert set(grouped) == {"seo", "ai_readiness"}
    assert [c.check_name for c in grouped["seo"]] == ["duplicate_titles", "missing_title", "missing_sitemap"]


def test_build_audit_pdf(db, organization):
    audit = finished_audit(db, organization)
    checks = [
        check("seo", "missing_title", "failed", "critical"),
        check("technical", "mixed_content", "warning"),
        check("ai_readiness", "missing_llms_txt", "passed"),
    ]

    pdf = build_audit_pdf(audit, checks)

    assert isinstance(pdf, bytes)
    assert pdf.startswith(b"%PDF")


def test_build_audit_pdf_without_issues(db, organization):
    audit = finished_audit(db, organization)
    audit.executive_summary = None

    assert build_audit_pdf(audit, []).startswith(b"%PDF")


def test_share_link_lifecycle(db, admin, organization):
    audit = finished_audit(db, organization)
    now = datetime(2026, 3, 2)

    link = create_share_link(db, admin, audit.id, now=now)

    assert link.expires_at == now + timedelta(days=30)
    assert share_url(link).endswith(f"/s/{link.token}")

    resolved = resolve_share_link(db, link.token, now=now + timedelta(days=1))
    assert resolved.audit_id == audit.id
    assert resolved.view_count == 1
    assert resolve_share_link(db, link.token, now=now + timedelta(days=31)) is None
    assert resolve_share_link(db, "unknown-token") is None


def test_share_link_rules(db, admin, organization, make_member):
    from services.database import Organization

    running = finished_audit(db, organization, status=AUDIT_CRAWLING)
    with pytest.raises(ValueError, match="Only finished audits"):
        create_share_link(db, admin, running.id)
    with pytest.raises(ValueError, match="Audit not found"):
        create_share_link(db, admin, 999)

    other = Organization(name="Other")
    db.add(other)
    db.commit()
    outsider = make_member("outsider@other.test", other, "admin")
    audit = finished_audit(db, organization)
    with pytest.raises(PermissionDeniedError):
        create_share_link(db, outsider, audit.id)
