"""
Agency audit platform.
FastAPI application: auth, organizations and teams, batched site audits,
GEO and performance audits, monitoring settings, platform metrics, feedback
and cron endpoints.
"""

import asyncio
import logging
import secrets
from typing import Optional

from fastapi import FastAPI, Request, Form, Depends, BackgroundTasks
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

from services import config
from services.audit_cleanup import run_periodic_cleanup
from services.audit_lifecycle import can_resume, claim_continuation, find_active_audits, stop_audit
from services.audit_runner import (
    complete_audit_with_existing_checks, resume_audit_checks, run_audit_batch, start_site_audit,
)
from services.audit_scheduler import run_weekly_audits, scheduler_loop
from services.auth import (
    authenticate_user, can_access_organization, create_user, get_current_organization,
    get_current_user, login_user, logout_user,
)
from services.database import (
    AUDIT_FINISHED_STATUSES, PERF_COMPLETED, PERF_STOPPED, GeoAudit, Organization, PerformanceAudit, SiteAudit,
    SiteAuditCheck, User, get_db, init_db,
)
from services.dismissed_checks import dismiss_check, list_dismissed_checks, restore_check
from services.feedback import list_feedback, submit_feedback, update_feedback
from services.geo_auditor import get_geo_audit_report, run_geo_audit, start_geo_audit
from services.metrics import (
    create_campaign, delete_campaign, get_metrics_summary, ingest_metrics, list_campaigns, update_campaign,
)
from services.monitoring import (
    AlreadyMonitoredError, add_monitored_page, create_monitored_site, list_monitored_pages, list_monitored_sites,
    remove_monitored_page, update_monitored_site,
)
from services.organizations import (
    InviteError, OrganizationError, accept_invite, archive_organization, create_organization,
    get_invite_by_token, list_team, remove_member, resend_invite, restore_organization, revoke_invite,
    send_invite, update_member_role, update_organization,
)
from services.permissions import PermissionDeniedError, get_permissions, has_permission
from services.performance import (
    can_access_performance_audit, get_performance_progress, get_performance_report, run_performance_audit,
    start_performance_audit, stop_performance_audit,
)
from services.reporting import build_audit_pdf, build_performance_pdf
from services.share_links import create_share_link, resolve_share_link, share_url

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Agency Audit Platform")

SESSION_SECRET = config.SESSION_SECRET or secrets.token_hex(32)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)


@app.on_event("startup")
async def startup():
    init_db()
    logger.info("[STARTUP] OpenAI enabled: %s", config.is_openai_enabled())
    logger.info("[STARTUP] Email enabled: %s", config.is_email_enabled())
    logger.info("[STARTUP] Self-continuation enabled: %s", config.is_self_continuation_enabled())

    asyncio.create_task(scheduler_loop(config.SCHEDULER_INTERVAL_SECONDS))
    logger.info("[STARTUP] Audit scheduler started (every %d seconds)", config.SCHEDULER_INTERVAL_SECONDS)


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _unauthorized() -> JSONResponse:
    return _error("Unauthorized", 401)


def _service_error(e: Exception) -> JSONResponse:
    """Translate a service exception into an error response."""
    if isinstance(e, PermissionDeniedError):
        return _error(str(e), 403)
    message = str(e)
    if message.endswith("not found"):
        return _error(message, 404)
    return _error(message, 400)


def _is_cron_request(request: Request) -> bool:
    """Cron jobs authenticate with ``Authorization: Bearer <CRON_SECRET>``."""
    if not config.CRON_SECRET:
        return False
    expected = f"Bearer {config.CRON_SECRET}"
    return secrets.compare_digest(request.headers.get("authorization", ""), expected)


def _has_cron_secret_header(request: Request) -> bool:
    provided = request.headers.get("x-cron-secret")
    return bool(config.CRON_SECRET and provided) and secrets.compare_digest(provided, config.CRON_SECRET)


def _resolve_org_id(user: User, requested: Optional[int]) -> Optional[int]:
    """Internal staff may act on any organization; everyone else on their own."""
    if requested and user.is_internal:
        return requested
    return user.organization_id


def _user_dict(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.full_name,
        "role": user.role,
        "organization_id": user.organization_id,
        "is_internal": bool(user.is_internal),
    }


def _organization_dict(org: Optional[Organization]) -> Optional[dict]:
    if not org:
        return None
    return {
        "id": org.id,
        "name": org.name,
        "website_url": org.website_url,
        "status": org.status,
        "industry": org.industry,
        "contact_email": org.contact_email,
        "logo_url": org.logo_url,
        "archived_at": org.archived_at.isoformat() if org.archived_at else None,
    }


def _get_accessible_audit(db: Session, user: Optional[User], audit_id: int):
    """The audit and None, or None and the error response."""
    audit = db.query(SiteAudit).filter(SiteAudit.id == audit_id).first()
    if not audit:
        return None, _error("Audit not found", 404)
    if not can_access_organization(user, audit.organization_id):
        return None, _error("Audit not found", 404)
    return audit, None


# Auth

@app.post("/auth/signup")
async def auth_signup(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    first_name: Optional[str] = Form(None),
    last_name: Optional[str] = Form(None),
    db: Session = Depends(get_db)
):
    try:
        user = create_user(db, email, password, first_name, last_name)
    except ValueError as e:
        return _error(str(e), 400)

    login_user(request, user)
    logger.info("New user signed up: %s", user.email)
    return JSONResponse({"success": True, "user": _user_dict(user)})


@app.post("/auth/login")
async def auth_login(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    db: Session = Depends(get_db)
):
    user = authenticate_user(db, email, password)
    if not user:
        return _error("Invalid email or password", 401)

    login_user(request, user)
    return JSONResponse({"success": True, "user": _user_dict(user)})


@app.get("/auth/logout")
async def auth_logout(request: Request):
    logout_user(request)
    return JSONResponse({"success": True})


@app.get("/api/me")
async def api_me(request: Request, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    return JSONResponse({
        "user": _user_dict(user),
        "organization": _organization_dict(get_current_organization(db, user)),
        "permissions": get_permissions(user.role),
    })


# Organizations

@app.post("/api/organizations")
async def api_create_organization(
    request: Request,
    name: str = Form(...),
    website_url: Optional[str] = Form(None),
    industry: Optional[str] = Form(None),
    contact_email: Optional[str] = Form(None),
    db: Session = Depends(get_db)
):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        org = create_organization(db, user, name, website_url, industry, contact_email)
    except OrganizationError as e:
        return _service_error(e)
    return JSONResponse({"success": True, "organization": _organization_dict(org)})


@app.post("/api/organizations/{org_id}")
async def api_update_organization(
    request: Request,
    org_id: int,
    name: Optional[str] = Form(None),
    website_url: Optional[str] = Form(None),
    status: Optional[str] = Form(None),
    industry: Optional[str] = Form(None),
    contact_email: Optional[str] = Form(None),
    logo_url: Optional[str] = Form(None),
    db: Session = Depends(get_db)
):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        org = update_organization(
            db, user, org_id,
            name=name, website_url=website_url, status=status,
            industry=industry, contact_email=contact_email, logo_url=logo_url,
        )
    except (OrganizationError, PermissionDeniedError) as e:
        return _service_error(e)
    return JSONResponse({"success": True, "organization": _organization_dict(org)})


@app.post("/api/organizations/{org_id}/archive")
async def api_archive_organization(request: Request, org_id: int, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        org = archive_organization(db, user, org_id)
    except (OrganizationError, PermissionDeniedError) as e:
        return _service_error(e)
    return JSONResponse({"success": True, "organization": _organization_dict(org)})


@app.post("/api/organizations/{org_id}/restore")
async def api_restore_organization(request: Request, org_id: int, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        org = restore_organization(db, user, org_id)
    except (OrganizationError, PermissionDeniedError) as e:
        return _service_error(e)
    return JSONResponse({"success": True, "organization": _organization_dict(org)})


# Team

@app.get("/api/team")
async def api_team(request: Request, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        return JSONResponse(list_team(db, user))
    except PermissionDeniedError as e:
        return _service_error(e)


@app.post("/api/team/invites")
async def api_send_invite(
    request: Request,
    email: str = Form(""),
    role: str = Form("team_member"),
    db: Session = Depends(get_db)
):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        result = await send_invite(db, user, email, role)
    except (InviteError, PermissionDeniedError) as e:
        return _service_error(e)
    return JSONResponse(result)


@app.post("/api/team/invites/{invite_id}/resend")
async def api_resend_invite(request: Request, invite_id: int, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        result = await resend_invite(db, user, invite_id)
    except (InviteError, PermissionDeniedError) as e:
        return _service_error(e)
    return JSONResponse(result)


@app.post("/api/team/invites/{invite_id}/revoke")
async def api_revoke_invite(request: Request, invite_id: int, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        revoke_invite(db, user, invite_id)
    except (InviteError, PermissionDeniedError) as e:
        return _service_error(e)
    return JSONResponse({"success": True})


@app.post("/api/invites/{token}/accept")
async def api_accept_invite(request: Request, token: str, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    invite = get_invite_by_token(db, token)
    if not invite:
        return _error("Invite not found", 404)

    try:
        org = accept_invite(db, user, invite.id)
    except InviteError as e:
        return _service_error(e)
    return JSONResponse({"success": True, "organization": _organization_dict(org)})


@app.post("/api/team/members/{member_id}/role")
async def api_update_member_role(
    request: Request,
    member_id: int,
    role: str = Form(...),
    db: Session = Depends(get_db)
):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        member = update_member_role(db, user, member_id, role)
    except (OrganizationError, PermissionDeniedError) as e:
        return _service_error(e)
    return JSONResponse({"success": True, "member": _user_dict(member)})


@app.post("/api/team/members/{member_id}/remove")
async def api_remove_member(request: Request, member_id: int, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        remove_member(db, user, member_id)
    except (OrganizationError, PermissionDeniedError) as e:
        return _service_error(e)
    return JSONResponse({"success": True})


# Site audits

@app.post("/api/audit/start")
async def api_start_audit(
    request: Request,
    background_tasks: BackgroundTasks,
    url: Optional[str] = Form(None),
    organization_id: Optional[int] = Form(None),
    db: Session = Depends(get_db)
):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    org_id = _resolve_org_id(user, organization_id)
    org = db.query(Organization).filter(Organization.id == org_id).first() if org_id else None
    if not org or org.is_archived:
        return _error("Organization not found", 404)

    target_url = (url or org.website_url or "").strip()
    if not target_url:
        return _error("No website URL configured", 400)

    active = find_active_audits(db, org.id)
    if active["has_site_audit"]:
        return JSONResponse(
            {"error": "An audit is already in progress", "audit_id": active["site_audit_id"]},
            status_code=409,
        )

    try:
        audit = start_site_audit(db, org.id, target_url)
    except ValueError as e:
        return _error(str(e), 400)

    background_tasks.add_task(run_audit_batch, audit.id, audit.url)
    logger.info("[Audit API] Audit %s started for %s by %s", audit.id, audit.url, user.email)
    return JSONResponse({"audit_id": audit.id})


@app.get("/api/audit/active")
async def api_active_audits(
    request: Request,
    organization_id: Optional[int] = None,
    db: Session = Depends(get_db)
):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    return JSONResponse(find_active_audits(db, _resolve_org_id(user, organization_id)))


@app.get("/api/audit/dismissed")
async def api_list_dismissed(request: Request, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()
    if not user.organization_id:
        return JSONResponse({"dismissed": []})

    dismissed = list_dismissed_checks(db, user.organization_id)
    return JSONResponse({
        "dismissed": [{"id": d.id, "check_name": d.check_name, "url": d.url} for d in dismissed],
    })


@app.post("/api/audit/dismiss")
async def api_dismiss_check(
    request: Request,
    check_name: str = Form(...),
    url: str = Form(...),
    db: Session = Depends(get_db)
):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        dismissed = dismiss_check(db, user, check_name, url)
    except PermissionDeniedError as e:
        return _service_error(e)
    return JSONResponse({"success": True, "id": dismissed.id})


@app.post("/api/audit/dismiss/remove")
async def api_restore_check(
    request: Request,
    check_name: str = Form(...),
    url: str = Form(...),
    db: Session = Depends(get_db)
):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        removed = restore_check(db, user, check_name, url)
    except PermissionDeniedError as e:
        return _service_error(e)
    if not removed:
        return _error("Dismissed check not found", 404)
    return JSONResponse({"success": True})


@app.get("/api/audit/{audit_id}")
async def api_get_audit(request: Request, audit_id: int, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    audit, error = _get_accessible_audit(db, user, audit_id)
    if error:
        return error

    checks = db.query(SiteAuditCheck).filter(SiteAuditCheck.audit_id == audit.id).order_by(SiteAuditCheck.id).all()
    return JSONResponse({"audit": audit.to_dict(), "checks": [c.to_dict() for c in checks]})


@app.post("/api/audit/{audit_id}/continue")
async def api_continue_audit(
    request: Request,
    audit_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db)
):
    """
    Run the next batch of an audit resting in batch_complete.

    Called by the batch runner itself (x-cron-secret) and by polling clients;
    the conditional claim lets exactly one caller through.
    """
    if not _has_cron_secret_header(request):
        user = get_current_user(request, db)
        if not user:
            return _unauthorized()
        _, error = _get_accessible_audit(db, user, audit_id)
        if error:
            return error

    claimed = claim_continuation(db, audit_id)
    if not claimed:
        return _error("Audit not available for continuation", 409)

    background_tasks.add_task(run_audit_batch, claimed.id, claimed.url)
    return JSONResponse({"success": True, "batch": (claimed.current_batch or 0) + 1})


@app.post("/api/audit/{audit_id}/stop")
async def api_stop_audit(
    request: Request,
    audit_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db)
):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    audit, error = _get_accessible_audit(db, user, audit_id)
    if error:
        return error

    try:
        outcome = stop_audit(db, audit)
    except ValueError as e:
        return _error(str(e), 400)

    if outcome.needs_completion:
        background_tasks.add_task(complete_audit_with_existing_checks, audit.id, audit.url)
    logger.info("[Audit API] Audit %s stop requested by %s: %s", audit.id, user.email, outcome.status)
    return JSONResponse({"success": True, "status": outcome.status, "message": outcome.message})


@app.post("/api/audit/{audit_id}/resume")
async def api_resume_audit(
    request: Request,
    audit_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db)
):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    audit, error = _get_accessible_audit(db, user, audit_id)
    if error:
        return error
    if not can_resume(audit):
        return _error("Only failed or stopped audits with crawled pages can be resumed", 400)

    background_tasks.add_task(resume_audit_checks, audit.id, audit.url)
    return JSONResponse({"success": True, "message": "Resuming checks on crawled pages"})


@app.get("/api/audit/{audit_id}/export")
async def api_export_audit(request: Request, audit_id: int, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    audit, error = _get_accessible_audit(db, user, audit_id)
    if error:
        return error
    if audit.status not in AUDIT_FINISHED_STATUSES:
        return _error("Audit is not finished yet", 400)

    checks = db.query(SiteAuditCheck).filter(SiteAuditCheck.audit_id == audit.id).all()
    pdf_bytes = build_audit_pdf(audit, checks)
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="site-audit-{audit.id}.pdf"'},
    )


@app.post("/api/audit/{audit_id}/share")
async def api_share_audit(request: Request, audit_id: int, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        link = create_share_link(db, user, audit_id)
    except (ValueError, PermissionDeniedError) as e:
        return _service_error(e)

    return JSONResponse({
        "success": True,
        "token": link.token,
        "url": share_url(link),
        "expires_at": link.expires_at.isoformat(),
    })


@app.get("/s/{token}")
async def shared_audit(token: str, db: Session = Depends(get_db)):
    link = resolve_share_link(db, token)
    if not link:
        return _error("This link has expired or does not exist", 404)

    audit = link.audit
    checks = db.query(SiteAuditCheck).filter(SiteAuditCheck.audit_id == audit.id).order_by(SiteAuditCheck.id).all()
    return JSONResponse({
        "audit": audit.to_dict(),
        "checks": [c.to_dict() for c in checks],
        "view_count": link.view_count,
    })


# GEO audits

@app.post("/api/geo/audit/start")
async def api_start_geo_audit(
    request: Request,
    background_tasks: BackgroundTasks,
    url: Optional[str] = Form(None),
    sample_size: int = Form(5),
    organization_id: Optional[int] = Form(None),
    db: Session = Depends(get_db)
):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    org_id = _resolve_org_id(user, organization_id)
    org = db.query(Organization).filter(Organization.id == org_id).first() if org_id else None
    if not org or org.is_archived:
        return _error("Organization not found", 404)

    target_url = (url or org.website_url or "").strip()
    if not target_url:
        return _error("No website URL configured", 400)

    active = find_active_audits(db, org.id)
    if active["has_geo_audit"]:
        return JSONResponse(
            {"error": "A GEO audit is already in progress", "audit_id": active["geo_audit_id"]},
            status_code=409,
        )

    try:
        audit = start_geo_audit(db, org.id, target_url, created_by_id=user.id, sample_size=sample_size)
    except ValueError as e:
        return _error(str(e), 400)

    background_tasks.add_task(run_geo_audit, audit.id, audit.url)
    return JSONResponse({"audit_id": audit.id})


@app.get("/api/geo/audit/{audit_id}")
async def api_get_geo_audit(request: Request, audit_id: int, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    audit = db.query(GeoAudit).filter(GeoAudit.id == audit_id).first()
    if not audit or not can_access_organization(user, audit.organization_id):
        return _error("Audit not found", 404)

    return JSONResponse(get_geo_audit_report(db, audit))


# Performance audits

def _get_accessible_performance_audit(db: Session, user: User, audit_id: int):
    """The audit and None, or None and the error response."""
    audit = db.query(PerformanceAudit).filter(PerformanceAudit.id == audit_id).first()
    if not audit or not can_access_performance_audit(user, audit):
        return None, _error("Audit not found", 404)
    return audit, None


@app.post("/api/performance/start")
async def api_start_performance_audit(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db)
):
    """
    Start a performance audit.

    Body: ``{"urls": [...], "organization_id": ...}``. Internal staff may omit
    the organization for a one-time audit.
    """
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        payload = await request.json()
    except ValueError:
        return _error("Request body must be JSON", 400)
    if not isinstance(payload, dict):
        return _error("Request body must be a JSON object", 400)

    urls = payload.get("urls")
    if not isinstance(urls, list) or not urls:
        return _error("URLs are required", 400)

    requested = payload.get("organization_id")
    if requested and user.is_internal:
        if not db.query(Organization).filter(Organization.id == requested).first():
            return _error("Organization not found", 404)
        org_id = requested
    elif requested and requested != user.organization_id:
        return _error("Access denied", 403)
    elif user.is_internal:
        org_id = None
    else:
        org_id = user.organization_id

    active = find_active_audits(db, org_id)
    if active["has_performance_audit"]:
        return JSONResponse(
            {"error": "A performance audit is already in progress", "audit_id": active["performance_audit_id"]},
            status_code=409,
        )

    try:
        audit = start_performance_audit(db, org_id, urls, created_by_id=user.id)
    except ValueError as e:
        return _error(str(e), 400)

    background_tasks.add_task(run_performance_audit, audit.id)
    return JSONResponse({"audit_id": audit.id})


@app.get("/api/performance/pages")
async def api_list_monitored_pages(request: Request, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()
    if not user.organization_id:
        return JSONResponse({"pages": []})

    return JSONResponse({"pages": [p.to_dict() for p in list_monitored_pages(db, user.organization_id)]})


@app.post("/api/performance/pages")
async def api_add_monitored_page(request: Request, url: str = Form(""), db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        page = add_monitored_page(db, user, url)
    except AlreadyMonitoredError as e:
        return _error(str(e), 409)
    except (ValueError, PermissionDeniedError) as e:
        return _service_error(e)
    return JSONResponse({"success": True, "page": page.to_dict()})


@app.post("/api/performance/pages/{page_id}/delete")
async def api_remove_monitored_page(request: Request, page_id: int, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        removed = remove_monitored_page(db, user, page_id)
    except PermissionDeniedError as e:
        return _service_error(e)
    if not removed:
        return _error("Page not found", 404)
    return JSONResponse({"success": True})


@app.get("/api/performance/{audit_id}")
async def api_get_performance_audit(request: Request, audit_id: int, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    audit, error = _get_accessible_performance_audit(db, user, audit_id)
    if error:
        return error
    return JSONResponse(get_performance_report(audit))


@app.get("/api/performance/{audit_id}/progress")
async def api_performance_progress(request: Request, audit_id: int, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    audit, error = _get_accessible_performance_audit(db, user, audit_id)
    if error:
        return error
    return JSONResponse(get_performance_progress(db, audit))


@app.post("/api/performance/{audit_id}/stop")
async def api_stop_performance_audit(request: Request, audit_id: int, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    audit, error = _get_accessible_performance_audit(db, user, audit_id)
    if error:
        return error

    try:
        audit = stop_performance_audit(db, user, audit)
    except (ValueError, PermissionDeniedError) as e:
        return _service_error(e)
    return JSONResponse({"success": True, "status": audit.status})


@app.get("/api/performance/{audit_id}/export")
async def api_export_performance_audit(request: Request, audit_id: int, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    audit, error = _get_accessible_performance_audit(db, user, audit_id)
    if error:
        return error
    if audit.status not in (PERF_COMPLETED, PERF_STOPPED):
        return _error("Audit is not finished yet", 400)

    pdf_bytes = build_performance_pdf(audit, list(audit.results))
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="performance-audit-{audit.id}.pdf"'},
    )


# Monitoring settings

@app.get("/api/settings/monitored-sites")
async def api_list_monitored_sites(
    request: Request,
    organization_id: Optional[int] = None,
    db: Session = Depends(get_db)
):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    org_id = _resolve_org_id(user, organization_id)
    if not org_id:
        return JSONResponse({"sites": []})
    return JSONResponse({"sites": [s.to_dict() for s in list_monitored_sites(db, org_id)]})


@app.post("/api/settings/monitored-sites")
async def api_create_monitored_site(
    request: Request,
    url: str = Form(""),
    organization_id: Optional[int] = Form(None),
    run_site_audit: bool = Form(True),
    run_performance: bool = Form(True, alias="run_performance_audit"),
    db: Session = Depends(get_db)
):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        site = create_monitored_site(
            db, user, url,
            organization_id=organization_id,
            run_site_audit=run_site_audit,
            run_performance_audit=run_performance,
        )
    except AlreadyMonitoredError as e:
        return _error(str(e), 409)
    except (ValueError, PermissionDeniedError) as e:
        return _service_error(e)
    return JSONResponse({"success": True, "site": site.to_dict()})


@app.post("/api/settings/monitored-sites/{site_id}")
async def api_update_monitored_site(
    request: Request,
    site_id: int,
    url: Optional[str] = Form(None),
    run_site_audit: Optional[bool] = Form(None),
    run_performance: Optional[bool] = Form(None, alias="run_performance_audit"),
    db: Session = Depends(get_db)
):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        site = update_monitored_site(
            db, user, site_id,
            url=url, run_site_audit=run_site_audit, run_performance_audit=run_performance,
        )
    except AlreadyMonitoredError as e:
        return _error(str(e), 409)
    except (ValueError, PermissionDeniedError) as e:
        return _service_error(e)
    return JSONResponse({"success": True, "site": site.to_dict()})


# Metrics and campaigns

@app.post("/api/metrics/ingest")
async def api_ingest_metrics(request: Request, db: Session = Depends(get_db)):
    """
    Ingest normalized platform metrics.

    Body: ``{"platform": ..., "organization_id": ..., "records": [...]}``.
    Accepted from cron jobs or from users who manage integrations.
    """
    try:
        payload = await request.json()
    except ValueError:
        return _error("Request body must be JSON", 400)
    if not isinstance(payload, dict):
        return _error("Request body must be a JSON object", 400)

    if _is_cron_request(request):
        org_id = payload.get("organization_id")
    else:
        user = get_current_user(request, db)
        if not user:
            return _unauthorized()
        if not has_permission(user, "integrations:manage") and not user.is_internal:
            return _error("Permission denied: integrations:manage", 403)
        org_id = _resolve_org_id(user, payload.get("organization_id"))

    if not org_id:
        return _error("organization_id is required", 400)

    try:
        result = ingest_metrics(db, org_id, payload.get("platform"), payload.get("records") or [])
    except ValueError as e:
        db.rollback()
        return _error(str(e), 400)
    return JSONResponse({"success": True, **result})


@app.get("/api/metrics/summary")
async def api_metrics_summary(
    request: Request,
    period: str = "30d",
    platform: Optional[str] = None,
    organization_id: Optional[int] = None,
    db: Session = Depends(get_db)
):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    org_id = _resolve_org_id(user, organization_id)
    if not org_id:
        return _error("Organization not found", 404)

    try:
        return JSONResponse(get_metrics_summary(db, org_id, period, platform))
    except ValueError as e:
        return _error(str(e), 400)


@app.get("/api/campaigns")
async def api_list_campaigns(request: Request, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()
    if not user.organization_id:
        return JSONResponse({"campaigns": []})

    return JSONResponse({"campaigns": [c.to_dict() for c in list_campaigns(db, user.organization_id)]})


@app.post("/api/campaigns")
async def api_create_campaign(
    request: Request,
    name: str = Form(""),
    description: Optional[str] = Form(None),
    status: Optional[str] = Form(None),
    start_date: Optional[str] = Form(None),
    end_date: Optional[str] = Form(None),
    db: Session = Depends(get_db)
):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        campaign = create_campaign(
            db, user, name,
            description=description, status=status, start_date=start_date, end_date=end_date,
        )
    except (ValueError, PermissionDeniedError) as e:
        return _service_error(e)
    return JSONResponse({"success": True, "campaign": campaign.to_dict()})


@app.post("/api/campaigns/{campaign_id}")
async def api_update_campaign(
    request: Request,
    campaign_id: int,
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    status: Optional[str] = Form(None),
    start_date: Optional[str] = Form(None),
    end_date: Optional[str] = Form(None),
    db: Session = Depends(get_db)
):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        campaign = update_campaign(
            db, user, campaign_id,
            name=name, description=description, status=status, start_date=start_date, end_date=end_date,
        )
    except (ValueError, PermissionDeniedError) as e:
        return _service_error(e)
    return JSONResponse({"success": True, "campaign": campaign.to_dict()})


@app.post("/api/campaigns/{campaign_id}/delete")
async def api_delete_campaign(request: Request, campaign_id: int, db: Session = Depends(get_db)):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        delete_campaign(db, user, campaign_id)
    except (ValueError, PermissionDeniedError) as e:
        return _service_error(e)
    return JSONResponse({"success": True})


# Feedback

@app.post("/api/feedback")
async def api_submit_feedback(
    request: Request,
    title: str = Form(""),
    description: str = Form(""),
    category: str = Form(""),
    page_url: Optional[str] = Form(None),
    db: Session = Depends(get_db)
):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        feedback = submit_feedback(
            db, user, title, description, category,
            page_url=page_url, user_agent=request.headers.get("user-agent"),
        )
    except ValueError as e:
        return _error(str(e), 400)
    return JSONResponse({"success": True, "feedback_id": feedback.id})


@app.get("/api/feedback")
async def api_list_feedback(
    request: Request,
    status: Optional[str] = None,
    category: Optional[str] = None,
    db: Session = Depends(get_db)
):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    items = list_feedback(db, user, status=status, category=category)
    return JSONResponse({"feedback": [f.to_dict() for f in items]})


@app.post("/api/feedback/{feedback_id}")
async def api_update_feedback(
    request: Request,
    feedback_id: int,
    status: Optional[str] = Form(None),
    priority: Optional[str] = Form(None),
    note: Optional[str] = Form(None),
    db: Session = Depends(get_db)
):
    user = get_current_user(request, db)
    if not user:
        return _unauthorized()

    try:
        feedback = update_feedback(db, user, feedback_id, status=status, priority=priority, note=note)
    except (ValueError, PermissionDeniedError) as e:
        return _service_error(e)
    return JSONResponse({"success": True, "feedback": feedback.to_dict()})


# Cron

@app.post("/api/cron/weekly-audits")
async def cron_weekly_audits(request: Request, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    if not _is_cron_request(request):
        return _unauthorized()

    results = run_weekly_audits(db)
    for audit_id, url in results["audits"]:
        background_tasks.add_task(run_audit_batch, audit_id, url)
    for audit_id in results["performance_audits"]:
        background_tasks.add_task(run_performance_audit, audit_id)

    return JSONResponse({
        "success": True,
        "site_audits_started": results["site_audits_started"],
        "performance_audits_started": results["performance_audits_started"],
        "errors": results["errors"],
    })


@app.post("/api/cron/audit-cleanup")
async def cron_audit_cleanup(request: Request, db: Session = Depends(get_db)):
    if not _is_cron_request(request):
        return _unauthorized()

    results = run_periodic_cleanup(db)
    logger.info("[Cron] Audit cleanup: %s", results)
    return JSONResponse({"success": True, **results})
