"""
Database configuration and models for the agency audit platform.
Uses SQLAlchemy for persistence; SQLite by default.
"""

import json
import secrets
from datetime import datetime
from typing import Optional, List

from sqlalchemy import (
    create_engine, Column, Integer, String, Boolean, DateTime, Text, Float, Date,
    ForeignKey, UniqueConstraint,
)
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker, relationship, Session
import bcrypt

from services.config import DATABASE_URL

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=connect_args)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


# Site audit statuses
AUDIT_PENDING = "pending"
AUDIT_CRAWLING = "crawling"
AUDIT_BATCH_COMPLETE = "batch_complete"
AUDIT_CHECKING = "checking"
AUDIT_COMPLETED = "completed"
AUDIT_FAILED = "failed"
AUDIT_STOPPED = "stopped"

AUDIT_ACTIVE_STATUSES = (AUDIT_PENDING, AUDIT_CRAWLING, AUDIT_CHECKING)
AUDIT_STOPPABLE_STATUSES = (AUDIT_PENDING, AUDIT_CRAWLING, AUDIT_CHECKING, AUDIT_BATCH_COMPLETE)
AUDIT_RUNNER_STATUSES = (AUDIT_CRAWLING, AUDIT_CHECKING)
AUDIT_FINISHED_STATUSES = (AUDIT_COMPLETED, AUDIT_STOPPED)

# GEO audit statuses
GEO_PENDING = "pending"
GEO_RUNNING = "running"
GEO_COMPLETED = "completed"
GEO_FAILED = "failed"

# Performance audit statuses
PERF_PENDING = "pending"
PERF_RUNNING = "running"
PERF_COMPLETED = "completed"
PERF_FAILED = "failed"
PERF_STOPPED = "stopped"

PERF_ACTIVE_STATUSES = (PERF_PENDING, PERF_RUNNING)

FEEDBACK_CATEGORIES = ("bug", "feature_request", "performance", "usability", "other")
FEEDBACK_STATUSES = ("new", "under_review", "in_progress", "resolved", "closed")
FEEDBACK_PRIORITIES = ("critical", "high", "medium", "low")

ROLES = ("admin", "developer", "team_member", "client_viewer")
INVITABLE_ROLES = ("admin", "team_member", "client_viewer")


def _load_json(raw: Optional[str], default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


class Organization(Base):
    """A client organization (tenant). Audits, team members and metrics hang off it."""
    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    website_url = Column(String(500), nullable=True)
    status = Column(String(20), default="prospect")
    industry = Column(String(100), nullable=True)
    contact_email = Column(String(255), nullable=True)
    logo_url = Column(String(500), nullable=True)
    archived_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    members = relationship("User", back_populates="organization")
    invites = relationship("Invite", back_populates="organization", cascade="all, delete-orphan")

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None


class User(Base):
    """User accounts for authentication and tenant membership."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=True, index=True)
    role = Column(String(20), nullable=True)
    is_internal = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_login_at = Column(DateTime, nullable=True)

    organization = relationship("Organization", back_populates="members")

    def set_password(self, password: str):
        """Hash and store password. Truncates to 72 bytes for bcrypt compatibility."""
        password_bytes = password.encode('utf-8')[:72]
        salt = bcrypt.gensalt()
        self.password_hash = bcrypt.hashpw(password_bytes, salt).decode('utf-8')

    def verify_password(self, password: str) -> bool:
        """Verify password against stored hash."""
        password_bytes = password.encode('utf-8')[:72]
        stored_hash = self.password_hash.encode('utf-8')
        return bcrypt.checkpw(password_bytes, stored_hash)

    @property
    def full_name(self) -> str:
        """Return user's full name or email."""
        if self.first_name or self.last_name:
            return f"{self.first_name or ''} {self.last_name or ''}".strip()
        return self.email.split('@')[0]


class Invite(Base):
    """Pending team invitations; the token doubles as the public invite id."""
    __tablename__ = "invites"

    id = Column(Integer, primary_key=True, index=True)
    token = Column(String(64), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=False, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    role = Column(String(20), nullable=False)
    invited_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    expires_at = Column(DateTime, nullable=False)
    accepted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    organization = relationship("Organization", back_populates="invites")
    invited_by = relationship("User")

    @classmethod
    def generate_token(cls) -> str:
        return secrets.token_urlsafe(24)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.utcnow()) > self.expires_at


class SiteAudit(Base):
    """A crawl-and-score run against a site. The status column drives the batch state machine."""
    __tablename__ = "site_audits"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=True, index=True)
    url = Column(String(500), nullable=False)
    status = Column(String(20), default=AUDIT_PENDING, index=True)

    current_batch = Column(Integer, default=0)
    pages_crawled = Column(Integer, default=0)
    urls_discovered = Column(Integer, default=0)
    use_relaxed_ssl = Column(Boolean, default=False)

    overall_score = Column(Integer, nullable=True)
    seo_score = Column(Integer, nullable=True)
    ai_readiness_score = Column(Integer, nullable=True)
    technical_score = Column(Integer, nullable=True)
    passed_count = Column(Integer, default=0)
    warning_count = Column(Integer, default=0)
    failed_count = Column(Integer, default=0)

    executive_summary = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    organization = relationship("Organization")
    pages = relationship("SiteAuditPage", back_populates="audit", cascade="all, delete-orphan")
    checks = relationship("SiteAuditCheck", back_populates="audit", cascade="all, delete-orphan")
    queue_items = relationship("CrawlQueueItem", back_populates="audit", cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "url": self.url,
            "status": self.status,
            "current_batch": self.current_batch,
            "pages_crawled": self.pages_crawled,
            "urls_discovered": self.urls_discovered,
            "overall_score": self.overall_score,
            "seo_score": self.seo_score,
            "ai_readiness_score": self.ai_readiness_score,
            "technical_score": self.technical_score,
            "passed_count": self.passed_count,
            "warning_count": self.warning_count,
            "failed_count": self.failed_count,
            "executive_summary": self.executive_summary,
            "error_message": self.error_message,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class SiteAuditPage(Base):
    __tablename__ = "site_audit_pages"

    id = Column(Integer, primary_key=True, index=True)
    audit_id = Column(Integer, ForeignKey("site_audits.id"), nullable=False, index=True)
    url = Column(String(1000), nullable=False)
    title = Column(String(500), nullable=True)
    meta_description = Column(Text, nullable=True)
    status_code = Column(Integer, nullable=True)
    last_modified = Column(String(40), nullable=True)
    is_resource = Column(Boolean, default=False)
    resource_type = Column(String(20), nullable=True)
    crawled_at = Column(DateTime, default=datetime.utcnow)

    audit = relationship("SiteAudit", back_populates="pages")


class SiteAuditCheck(Base):
    __tablename__ = "site_audit_checks"

    id = Column(Integer, primary_key=True, index=True)
    audit_id = Column(Integer, ForeignKey("site_audits.id"), nullable=False, index=True)
    page_id = Column(Integer, ForeignKey("site_audit_pages.id"), nullable=True)
    check_type = Column(String(20), nullable=False, index=True)
    check_name = Column(String(100), nullable=False)
    priority = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False)
    details_json = Column(Text, nullable=True)
    display_name = Column(String(255), nullable=True)
    display_name_passed = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    fix_guidance = Column(Text, nullable=True)
    learn_more_url = Column(String(500), nullable=True)
    is_site_wide = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    audit = relationship("SiteAudit", back_populates="checks")
    page = relationship("SiteAuditPage")

    def get_details(self) -> Optional[dict]:
        return _load_json(self.details_json, None)

    def set_details(self, data: Optional[dict]):
        self.details_json = json.dumps(data, default=str) if data is not None else None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "page_id": self.page_id,
            "check_type": self.check_type,
            "check_name": self.check_name,
            "priority": self.priority,
            "status": self.status,
            "details": self.get_details(),
            "display_name": self.display_name,
            "display_name_passed": self.display_name_passed,
            "description": self.description,
            "fix_guidance": self.fix_guidance,
            "learn_more_url": self.learn_more_url,
            "is_site_wide": self.is_site_wide,
        }


class CrawlQueueItem(Base):
    """Persistent crawl frontier; survives across batch invocations."""
    __tablename__ = "site_audit_crawl_queue"
    __table_args__ = (UniqueConstraint("audit_id", "url", name="uq_crawl_queue_audit_url"),)

    id = Column(Integer, primary_key=True, index=True)
    audit_id = Column(Integer, ForeignKey("site_audits.id"), nullable=False, index=True)
    url = Column(String(1000), nullable=False)
    depth = Column(Integer, default=0)
    discovered_at = Column(DateTime, default=datetime.utcnow)
    crawled_at = Column(DateTime, nullable=True)

    audit = relationship("SiteAudit", back_populates="queue_items")


class DismissedCheck(Base):
    __tablename__ = "dismissed_checks"
    __table_args__ = (
        UniqueConstraint("organization_id", "check_name", "url", name="uq_dismissed_check"),
    )

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    check_name = Column(String(100), nullable=False)
    url = Column(String(1000), nullable=False)
    dismissed_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class MonitoredSite(Base):
    """Sites that get an automatic weekly site and performance audit."""
    __tablename__ = "monitored_sites"
    __table_args__ = (
        UniqueConstraint("organization_id", "url", name="uq_monitored_site"),
    )

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    url = Column(String(500), nullable=False)
    run_site_audit = Column(Boolean, default=True)
    run_performance_audit = Column(Boolean, default=True)
    last_site_audit_at = Column(DateTime, nullable=True)
    last_performance_audit_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "url": self.url,
            "run_site_audit": bool(self.run_site_audit),
            "run_performance_audit": bool(self.run_performance_audit),
            "last_site_audit_at": _iso(self.last_site_audit_at),
            "last_performance_audit_at": _iso(self.last_performance_audit_at),
            "created_at": _iso(self.created_at),
        }


class MonitoredPage(Base):
    """Extra pages included in an organization's weekly performance audit."""
    __tablename__ = "monitored_pages"
    __table_args__ = (
        UniqueConstraint("organization_id", "url", name="uq_monitored_page"),
    )

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    url = Column(String(1000), nullable=False)
    added_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "url": self.url,
            "created_at": _iso(self.created_at),
        }


class PerformanceAudit(Base):
    """PageSpeed Insights run over a list of URLs, once per device."""
    __tablename__ = "performance_audits"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=True, index=True)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    status = Column(String(20), default=PERF_PENDING, index=True)
    urls_json = Column(Text, nullable=False, default="[]")

    current_url = Column(String(1000), nullable=True)
    current_device = Column(String(10), nullable=True)
    total_urls = Column(Integer, default=0)
    completed_count = Column(Integer, default=0)

    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    results = relationship(
        "PerformanceAuditResult", back_populates="audit", cascade="all, delete-orphan",
        order_by="PerformanceAuditResult.id",
    )

    def get_urls(self) -> List[str]:
        return _load_json(self.urls_json, [])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "status": self.status,
            "urls": self.get_urls(),
            "current_url": self.current_url,
            "current_device": self.current_device,
            "total_urls": self.total_urls,
            "completed_count": self.completed_count,
            "error_message": self.error_message,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
        }


class PerformanceAuditResult(Base):
    """Lighthouse scores and Core Web Vitals for one URL on one device."""
    __tablename__ = "performance_audit_results"

    id = Column(Integer, primary_key=True, index=True)
    audit_id = Column(Integer, ForeignKey("performance_audits.id"), nullable=False, index=True)
    url = Column(String(1000), nullable=False)
    device = Column(String(10), nullable=False)

    lcp_ms = Column(Integer, nullable=True)
    lcp_rating = Column(String(20), nullable=True)
    inp_ms = Column(Integer, nullable=True)
    inp_rating = Column(String(20), nullable=True)
    cls_score = Column(Float, nullable=True)
    cls_rating = Column(String(20), nullable=True)

    performance_score = Column(Integer, nullable=True)
    accessibility_score = Column(Integer, nullable=True)
    best_practices_score = Column(Integer, nullable=True)
    seo_score = Column(Integer, nullable=True)

    opportunities_json = Column(Text, nullable=True)
    diagnostics_json = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    audit = relationship("PerformanceAudit", back_populates="results")

    def get_opportunities(self) -> List[dict]:
        return _load_json(self.opportunities_json, [])

    def get_diagnostics(self) -> List[dict]:
        return _load_json(self.diagnostics_json, [])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "url": self.url,
            "device": self.device,
            "lcp_ms": self.lcp_ms,
            "lcp_rating": self.lcp_rating,
            "inp_ms": self.inp_ms,
            "inp_rating": self.inp_rating,
            "cls_score": self.cls_score,
            "cls_rating": self.cls_rating,
            "performance_score": self.performance_score,
            "accessibility_score": self.accessibility_score,
            "best_practices_score": self.best_practices_score,
            "seo_score": self.seo_score,
            "opportunities": self.get_opportunities(),
            "diagnostics": self.get_diagnostics(),
        }


class Feedback(Base):
    """Bug reports and feature requests from users, triaged by developers."""
    __tablename__ = "feedback"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=True, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String(30), nullable=False)
    status = Column(String(20), default="new", index=True)
    priority = Column(String(20), nullable=True)
    status_note = Column(Text, nullable=True)
    page_url = Column(String(1000), nullable=True)
    user_agent = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_email": self.user.email if self.user else None,
            "organization_id": self.organization_id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "status": self.status,
            "priority": self.priority,
            "status_note": self.status_note,
            "page_url": self.page_url,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class GeoAudit(Base):
    """AI-readiness (GEO) audit: programmatic checks plus LLM quality scoring."""
    __tablename__ = "geo_audits"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=True, index=True)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    url = Column(String(500), nullable=False)
    status = Column(String(20), default=GEO_PENDING, index=True)

    technical_score = Column(Integer, nullable=True)
    strategic_score = Column(Integer, nullable=True)
    overall_geo_score = Column(Integer, nullable=True)

    pages_analyzed = Column(Integer, default=0)
    sample_size = Column(Integer, default=5)
    ai_analysis_enabled = Column(Boolean, default=True)
    total_input_tokens = Column(Integer, default=0)
    total_output_tokens = Column(Integer, default=0)
    total_cost = Column(Float, default=0.0)
    model_used = Column(String(100), nullable=True)
    execution_time_ms = Column(Integer, nullable=True)

    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    checks = relationship("GeoCheck", back_populates="audit", cascade="all, delete-orphan")
    analyses = relationship("GeoAIAnalysis", back_populates="audit", cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "url": self.url,
            "status": self.status,
            "technical_score": self.technical_score,
            "strategic_score": self.strategic_score,
            "overall_geo_score": self.overall_geo_score,
            "pages_analyzed": self.pages_analyzed,
            "sample_size": self.sample_size,
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "total_cost": self.total_cost,
            "error_message": self.error_message,
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
        }


class GeoCheck(Base):
    __tablename__ = "geo_checks"

    id = Column(Integer, primary_key=True, index=True)
    audit_id = Column(Integer, ForeignKey("geo_audits.id"), nullable=False, index=True)
    category = Column(String(40), nullable=False)
    check_name = Column(String(100), nullable=False)
    priority = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False)
    details_json = Column(Text, nullable=True)
    display_name = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    audit = relationship("GeoAudit", back_populates="checks")

    def get_details(self) -> Optional[dict]:
        return _load_json(self.details_json, None)

    def set_details(self, data: Optional[dict]):
        self.details_json = json.dumps(data, default=str) if data is not None else None


class GeoAIAnalysis(Base):
    __tablename__ = "geo_ai_analyses"

    id = Column(Integer, primary_key=True, index=True)
    audit_id = Column(Integer, ForeignKey("geo_audits.id"), nullable=False, index=True)
    page_url = Column(String(1000), nullable=False)
    model_used = Column(String(100), nullable=True)
    prompt_tokens = Column(Integer, default=0)
    completion_tokens = Column(Integer, default=0)
    cost = Column(Float, default=0.0)

    score_data_quality = Column(Integer)
    score_expert_credibility = Column(Integer)
    score_comprehensiveness = Column(Integer)
    score_citability = Column(Integer)
    score_authority = Column(Integer)
    score_overall = Column(Integer)

    findings_json = Column(Text, nullable=True)
    recommendations_json = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    audit = relationship("GeoAudit", back_populates="analyses")

    def get_findings(self) -> List[str]:
        return _load_json(self.findings_json, [])

    def get_recommendations(self) -> List[str]:
        return _load_json(self.recommendations_json, [])


class Campaign(Base):
    __tablename__ = "campaigns"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(20), default="draft")
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
        }


class CampaignMetric(Base):
    """Normalized time series of third-party platform metrics."""
    __tablename__ = "campaign_metrics"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "platform", "metric_type", "date", "campaign_id",
            name="uq_campaign_metric_point",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), nullable=True, index=True)
    platform = Column(String(40), nullable=False, index=True)
    metric_type = Column(String(60), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    value = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, default=datetime.utcnow)


class ShareLink(Base):
    """Public, time-limited links to a completed audit report."""
    __tablename__ = "share_links"

    id = Column(Integer, primary_key=True, index=True)
    token = Column(String(64), unique=True, nullable=False, index=True)
    audit_id = Column(Integer, ForeignKey("site_audits.id"), nullable=False, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=True)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    expires_at = Column(DateTime, nullable=False)
    view_count = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    audit = relationship("SiteAudit")

    @classmethod
    def generate_token(cls) -> str:
        """Generate a secure random token."""
        return secrets.token_urlsafe(32)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def init_db():
    """Create all tables if they don't exist."""
    Base.metadata.create_all(bind=engine)


def get_db():
    """Get database session - use as dependency or context manager."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_db_session() -> Session:
    """Get a new database session directly."""
    return SessionLocal()
