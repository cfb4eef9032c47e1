"""
Configuration module for the agency audit platform.
Centralizes environment variable access and feature flags.
"""

import os


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./agency_audits.db")

SESSION_SECRET = os.getenv("SESSION_SECRET")
CRON_SECRET = os.getenv("CRON_SECRET")
APP_BASE_URL = (os.getenv("APP_BASE_URL") or "").rstrip("/")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_ENABLED = bool(OPENAI_API_KEY)

RESEND_API_KEY = os.getenv("RESEND_API_KEY")
EMAIL_FROM = os.getenv("EMAIL_FROM", "Audits <noreply@example.com>")
EMAIL_ENABLED = bool(RESEND_API_KEY)

PAGESPEED_API_KEY = os.getenv("PAGESPEED_API_KEY")
PAGESPEED_TIMEOUT_SECONDS = float(os.getenv("PAGESPEED_TIMEOUT_SECONDS", "120"))
# pause between PageSpeed requests to stay under the API rate limit
PAGESPEED_DELAY_SECONDS = float(os.getenv("PAGESPEED_DELAY_SECONDS", "1.0"))

# Batch runner limits. One batch must finish well inside the host's
# function timeout so the continuation can be re-armed.
AUDIT_BATCH_SIZE = int(os.getenv("AUDIT_BATCH_SIZE", "50"))
AUDIT_MAX_BATCH_SECONDS = float(os.getenv("AUDIT_MAX_BATCH_SECONDS", "240"))
CRAWL_DELAY_SECONDS = float(os.getenv("CRAWL_DELAY_SECONDS", "0.1"))
CRAWLER_USER_AGENT = os.getenv("CRAWLER_USER_AGENT", "AuditBot/1.0 (Site Audit)")
FETCH_TIMEOUT_SECONDS = float(os.getenv("FETCH_TIMEOUT_SECONDS", "30"))

STALE_AUDIT_MINUTES = int(os.getenv("STALE_AUDIT_MINUTES", "15"))
STALE_GEO_AUDIT_MINUTES = int(os.getenv("STALE_GEO_AUDIT_MINUTES", "5"))
STALE_PERFORMANCE_AUDIT_MINUTES = int(os.getenv("STALE_PERFORMANCE_AUDIT_MINUTES", "15"))
STUCK_STOP_MINUTES = int(os.getenv("STUCK_STOP_MINUTES", "5"))

SCHEDULER_INTERVAL_SECONDS = int(os.getenv("SCHEDULER_INTERVAL_SECONDS", "60"))
WEEKLY_AUDIT_INTERVAL_DAYS = int(os.getenv("WEEKLY_AUDIT_INTERVAL_DAYS", "7"))

INVITE_EXPIRY_DAYS = int(os.getenv("INVITE_EXPIRY_DAYS", "7"))
SHARE_LINK_EXPIRY_DAYS = int(os.getenv("SHARE_LINK_EXPIRY_DAYS", "30"))

INTERNAL_EMAIL_DOMAINS = [
    d.strip().lower() for d in os.getenv("INTERNAL_EMAIL_DOMAINS", "").split(",") if d.strip()
]


def is_openai_enabled() -> bool:
    """Check if OpenAI API is configured."""
    return OPENAI_ENABLED


def is_email_enabled() -> bool:
    """Check if transactional e-mail is configured."""
    return EMAIL_ENABLED


def is_pagespeed_enabled() -> bool:
    """Check if the PageSpeed Insights API key is configured."""
    return bool(PAGESPEED_API_KEY)


def is_self_continuation_enabled() -> bool:
    """Batch runs can re-arm themselves only when the app knows its own URL and secret."""
    return bool(APP_BASE_URL and CRON_SECRET)
