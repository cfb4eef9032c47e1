from datetime import datetime

import pytest
from fastapi.testclient import TestClient

import main
from services.database import (
    AUDIT_BATCH_COMPLETE, AUDIT_COMPLETED, AUDIT_CRAWLING, AUDIT_STOPPED, PERF_STOPPED, Organization,
    PerformanceAudit, SiteAudit, SiteAuditCheck,
)

CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def background_calls(monkeypatch):
    calls = []
    for name in ("run_audit_batch", "complete_audit_with_existing_checks", "resume_audit_checks", "run_geo_audit",
                 "run_performance_audit"):
        monkeypatch.setattr(main, name, lambda *args, _name=name: calls.append((_name,) + args))
    return calls


def login(client, user):
    response = client.post("/auth/login", data={"email": user.email, "password": "correct-horse"})
    assert response.status_code == 200
    return response


def make_audit(db, organization, status=AUDIT_COMPLETED, **fields):
    audit = SiteAudit(organization_id=organization.id, url="https://example.com", status=status, **fields)
    db.add(audit)
    db.commit()
    db.refresh(audit)
    return audit


def test_signup_me_and_logout(client):
    response = client.post("/auth/signup", data={
        "email": "New@Client.test", "password": "long-enough", "first_name": "Ada",
    })
    assert response.status_code == 200
    assert response.json()["user"]["email"] == "new@client.test"

    me = client.get("/api/me").json()
    assert me["user"]["name"] == "Ada"
    assert me["organization"] is None
    assert me["permissions"] == []

    client.get("/auth/logout")
    assert client.get("/api/me").status_code == 401


def test_signup_validation_and_bad_login(client, admin):
    response = client.post("/auth/signup", data={"email": "a@b.test", "password": "short"})
    assert response.status_code == 400
    assert "8 characters" in response.json()["error"]

    response = client.post("/auth/login", data={"email": admin.email, "password": "wrong-password"})
    assert response.status_code == 401
    assert response.json() == {"error": "Invalid email or password"}


def test_me_reports_organization_and_permissions(client, admin, organization):
    login(client, admin)

    me = client.get("/api/me").json()

    assert me["organization"]["name"] == "Acme Co"
    assert "team:invite" in me["permissions"]


def test_start_audit_uses_organization_website(client, db, admin, organization, background_calls):
    login(client, admin)

    response = client.post("/api/audit/start")

    assert response.status_code == 200
    audit_id = response.json()["audit_id"]
    assert background_calls == [("run_audit_batch", audit_id, "https://example.com")]

    active = client.get("/api/audit/active").json()
    assert active["has_site_audit"]
    assert active["site_audit_id"] == audit_id

    again = client.post("/api/audit/start", data={"url": "https://example.com/blog"})
    assert again.status_code == 409
    assert again.json()["audit_id"] == audit_id


def test_start_audit_requirements(client, db, admin, organization, make_member, background_calls):
    assert client.post("/api/audit/start").status_code == 401

    login(client, admin)
    response = client.post("/api/audit/start", data={"url": "not a url"})
    assert response.status_code == 400

    organization.website_url = None
    db.commit()
    response = client.post("/api/audit/start")
    assert response.json() == {"error": "No website URL configured"}

    loner = make_member("loner@example.test", None, None)
    other = TestClient(main.app)
    login(other, loner)
    assert other.post("/api/audit/start", data={"url": "https://example.com"}).status_code == 404
    assert background_calls == []


def test_get_audit_is_scoped_to_organization(client, db, admin, organization, make_member):
    audit = make_audit(db, organization)
    db.add(SiteAuditCheck(
        audit_id=audit.id, check_type="seo", check_name="missing_title", priority="critical", status="failed",
    ))
    db.commit()

    login(client, admin)
    body = client.get(f"/api/audit/{audit.id}").json()
    assert body["audit"]["id"] == audit.id
    assert [c["check_name"] for c in body["checks"]] == ["missing_title"]

    other_org = Organization(name="Other")
    db.add(other_org)
    db.commit()
    outsider = make_member("outsider@other.test", other_org, "admin")
    other = TestClient(main.app)
    login(other, outsider)
    assert other.get(f"/api/audit/{audit.id}").status_code == 404


def test_continue_with_cron_secret_claims_once(client, db, organization, background_calls):
    audit = make_audit(db, organization, status=AUDIT_BATCH_COMPLETE, current_batch=1)
    headers = {"x-cron-secret": "test-cron-secret"}

    response = client.post(f"/api/audit/{audit.id}/continue", headers=headers)

    assert response.json() == {"success": True, "batch": 2}
    assert background_calls == [("run_audit_batch", audit.id, "https://example.com")]

    again = client.post(f"/api/audit/{audit.id}/continue", headers=headers)
    assert again.status_code == 409
    assert len(background_calls) == 1


def test_continue_requires_secret_or_session(client, db, organization, background_calls):
    audit = make_audit(db, organization, status=AUDIT_BATCH_COMPLETE)

    assert client.post(f"/api/audit/{audit.id}/continue").status_code == 401
    response = client.post(f"/api/audit/{audit.id}/continue", headers={"x-cron-secret": "wrong"})
    assert response.status_code == 401
    assert background_calls == []


def test_stop_audit_between_batches_completes_it(client, db, admin, organization, background_calls):
    audit = make_audit(db, organization, status=AUDIT_BATCH_COMPLETE)
    login(client, admin)

    response = client.post(f"/api/audit/{audit.id}/stop")

    assert response.json()["status"] == AUDIT_STOPPED
    assert background_calls == [("complete_audit_with_existing_checks", audit.id, "https://example.com")]


def test_stop_finished_audit_is_rejected(client, db, admin, organization, background_calls):
    audit = make_audit(db, organization)
    login(client, admin)

    response = client.post(f"/api/audit/{audit.id}/stop")

    assert response.status_code == 400
    assert background_calls == []


def test_resume_audit(client, db, admin, organization, background_calls):
    stopped = make_audit(db, organization, status=AUDIT_STOPPED, pages_crawled=4)
    empty = make_audit(db, organization, status=AUDIT_STOPPED, pages_crawled=0)
    login(client, admin)

    assert client.post(f"/api/audit/{stopped.id}/resume").json()["success"]
    assert client.post(f"/api/audit/{empty.id}/resume").status_code == 400
    assert background_calls == [("resume_audit_checks", stopped.id, "https://example.com")]


def test_export_pdf(client, db, admin, organization):
    finished = make_audit(db, organization, overall_score=80, completed_at=datetime(2026, 3, 1))
    running = make_audit(db, organization, status=AUDIT_CRAWLING)
    login(client, admin)

    response = client.get(f"/api/audit/{finished.id}/export")
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert f"site-audit-{finished.id}.pdf" in response.headers["content-disposition"]
    assert response.content.startswith(b"%PDF")

    assert client.get(f"/api/audit/{running.id}/export").status_code == 400


def test_share_link_is_public(client, db, admin, organization):
    audit = make_audit(db, organization, overall_score=80, completed_at=datetime(2026, 3, 1))
    login(client, admin)

    shared = client.post(f"/api/audit/{audit.id}/share").json()
    assert shared["url"].endswith(f"/s/{shared['token']}")

    public = TestClient(main.app)
    body = public.get(f"/s/{shared['token']}").json()
    assert body["audit"]["id"] == audit.id
    assert body["view_count"] == 1
    assert public.get("/s/not-a-token").status_code == 404


def test_dismiss_and_restore_routes(client, admin):
    login(client, admin)
    form = {"check_name": "missing_sitemap", "url": "https://example.com"}

    assert client.post("/api/audit/dismiss", data=form).json()["success"]
    assert [d["check_name"] for d in client.get("/api/audit/dismissed").json()["dismissed"]] == ["missing_sitemap"]
    assert client.post("/api/audit/dismiss/remove", data=form).json() == {"success": True}
    assert client.post("/api/audit/dismiss/remove", data=form).status_code == 404


def test_team_routes(client, admin, team_member, viewer):
    login(client, viewer)
    assert client.post("/api/team/invites", data={"email": "new@example.com"}).status_code == 403

    login(client, admin)
    team = client.get("/api/team").json()
    assert len(team["members"]) == 3

    response = client.post(f"/api/team/members/{viewer.id}/role", data={"role": "team_member"})
    assert response.json()["member"]["role"] == "team_member"


def test_cron_endpoints_require_bearer_secret(client, db, organization, background_calls):
    assert client.post("/api/cron/weekly-audits").status_code == 401
    assert client.post("/api/cron/audit-cleanup", headers={"Authorization": "Bearer nope"}).status_code == 401

    weekly = client.post("/api/cron/weekly-audits", headers=CRON_HEADERS).json()
    assert weekly == {"success": True, "site_audits_started": 0, "performance_audits_started": 0, "errors": []}

    cleanup = client.post("/api/cron/audit-cleanup", headers=CRON_HEADERS).json()
    assert cleanup["success"]
    assert cleanup["deleted_audits"] == 0


def test_metrics_ingest_and_summary(client, admin, viewer, organization):
    payload = {
        "platform": "google_analytics",
        "organization_id": organization.id,
        "records": [{"date": "2026-03-10", "metric_type": "ga_sessions", "value": 120}],
    }

    assert client.post("/api/metrics/ingest", json=payload).status_code == 401
    response = client.post("/api/metrics/ingest", json=payload, headers=CRON_HEADERS)
    assert response.json() == {"success": True, "inserted": 1, "updated": 0}

    login(client, viewer)
    assert client.post("/api/metrics/ingest", json=payload).status_code == 403

    login(client, admin)
    bad = dict(payload, records=[{"date": "soon", "metric_type": "ga_sessions", "value": 1}])
    assert client.post("/api/metrics/ingest", json=bad).status_code == 400
    assert client.get("/api/metrics/summary", params={"period": "decade"}).status_code == 400
    assert "metrics" in client.get("/api/metrics/summary").json()


def test_campaign_routes(client, team_member):
    login(client, team_member)

    created = client.post("/api/campaigns", data={"name": "Spring Launch"}).json()["campaign"]
    assert created["status"] == "draft"

    updated = client.post(f"/api/campaigns/{created['id']}", data={"status": "active"}).json()["campaign"]
    assert updated["status"] == "active"
    assert [c["id"] for c in client.get("/api/campaigns").json()["campaigns"]] == [created["id"]]

    assert client.post(f"/api/campaigns/{created['id']}/delete").json() == {"success": True}
    assert client.post("/api/campaigns/999/delete").status_code == 404


def test_performance_audit_routes(client, db, admin, organization, background_calls):
    login(client, admin)

    assert client.post("/api/performance/start", json={"urls": []}).status_code == 400
    response = client.post("/api/performance/start", json={"urls": ["https://example.com"]})
    audit_id = response.json()["audit_id"]
    assert background_calls == [("run_performance_audit", audit_id)]

    again = client.post("/api/performance/start", json={"urls": ["https://example.com/pricing"]})
    assert again.status_code == 409
    assert again.json()["audit_id"] == audit_id
    assert client.get("/api/audit/active").json()["performance_audit_id"] == audit_id

    progress = client.get(f"/api/performance/{audit_id}/progress").json()
    assert progress["status"] == "pending"
    assert progress["results_count"] == 0
    assert client.get(f"/api/performance/{audit_id}").json()["audit"]["urls"] == ["https://example.com"]
    assert client.get(f"/api/performance/{audit_id}/export").status_code == 400

    assert client.post(f"/api/performance/{audit_id}/stop").json()["status"] == PERF_STOPPED
    assert client.post(f"/api/performance/{audit_id}/stop").status_code == 400

    export = client.get(f"/api/performance/{audit_id}/export")
    assert export.status_code == 200
    assert f"performance-audit-{audit_id}.pdf" in export.headers["content-disposition"]
    assert export.content.startswith(b"%PDF")


def test_performance_audit_routes_are_scoped(client, db, admin, viewer, organization, make_member, background_calls):
    other_org = Organization(name="Other")
    db.add(other_org)
    db.commit()
    audit = PerformanceAudit(organization_id=organization.id, urls_json='["https://example.com"]')
    db.add(audit)
    db.commit()

    outsider = make_member("outsider@other.test", other_org, "admin")
    other = TestClient(main.app)
    login(other, outsider)
    assert other.get(f"/api/performance/{audit.id}").status_code == 404
    assert other.post(f"/api/performance/{audit.id}/stop").status_code == 404
    response = other.post("/api/performance/start", json={"urls": ["https://x.test"], "organization_id": organization.id})
    assert response.status_code == 403

    login(client, viewer)
    assert client.post(f"/api/performance/{audit.id}/stop").status_code == 403
    assert background_calls == []


def test_one_time_performance_audit_for_staff(client, db, staff, background_calls):
    login(client, staff)

    response = client.post("/api/performance/start", json={"urls": ["https://prospect.test"]})

    audit = db.query(PerformanceAudit).filter(PerformanceAudit.id == response.json()["audit_id"]).first()
    assert audit.organization_id is None
    assert audit.created_by_id == staff.id


def test_monitored_page_routes(client, admin):
    login(client, admin)

    page = client.post("/api/performance/pages", data={"url": "https://example.com/pricing"}).json()["page"]
    assert client.post("/api/performance/pages", data={"url": "https://example.com/pricing"}).status_code == 409
    assert [p["id"] for p in client.get("/api/performance/pages").json()["pages"]] == [page["id"]]

    assert client.post(f"/api/performance/pages/{page['id']}/delete").json() == {"success": True}
    assert client.post(f"/api/performance/pages/{page['id']}/delete").status_code == 404


def test_monitored_site_routes(client, db, admin, viewer, organization, make_member):
    login(client, viewer)
    assert client.post("/api/settings/monitored-sites", data={"url": "https://example.com"}).status_code == 403

    login(client, admin)
    created = client.post("/api/settings/monitored-sites", data={
        "url": "https://example.com", "run_performance_audit": "false",
    }).json()["site"]
    assert created["run_site_audit"] is True
    assert created["run_performance_audit"] is False
    assert client.post("/api/settings/monitored-sites", data={"url": "https://example.com"}).status_code == 409

    updated = client.post(f"/api/settings/monitored-sites/{created['id']}", data={"run_performance_audit": "true"})
    assert updated.json()["site"]["run_performance_audit"] is True
    assert updated.json()["site"]["run_site_audit"] is True
    assert [s["id"] for s in client.get("/api/settings/monitored-sites").json()["sites"]] == [created["id"]]

    other_org = Organization(name="Other")
    db.add(other_org)
    db.commit()
    outsider = make_member("outsider@other.test", other_org, "admin")
    other = TestClient(main.app)
    login(other, outsider)
    response = other.post(f"/api/settings/monitored-sites/{created['id']}", data={"run_site_audit": "false"})
    assert response.status_code == 404
    response = other.post("/api/settings/monitored-sites", data={
        "url": "https://example.org", "organization_id": organization.id,
    })
    assert response.status_code == 403
    assert other.get("/api/settings/monitored-sites").json()["sites"] == []


def test_feedback_routes(client, viewer, make_member, organization):
    login(client, viewer)
    response = client.post("/api/feedback", data={
        "title": "Export broken", "description": "Export does nothing on Safari.", "category": "bug",
    }, headers={"User-Agent": "Safari/17"})
    feedback_id = response.json()["feedback_id"]
    assert client.post("/api/feedback", data={"title": "Hi", "description": "x", "category": "bug"}).status_code == 400
    assert client.post(f"/api/feedback/{feedback_id}", data={"status": "resolved"}).status_code == 403

    developer = make_member("dev@acme.test", organization, "developer")
    login(client, developer)
    listed = client.get("/api/feedback").json()["feedback"]
    assert [f["id"] for f in listed] == [feedback_id]

    updated = client.post(f"/api/feedback/{feedback_id}", data={"status": "resolved", "note": "Fixed"})
    assert updated.json()["feedback"]["status"] == "resolved"
    assert client.post("/api/feedback/999", data={"status": "closed"}).status_code == 404
