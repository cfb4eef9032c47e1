"""
Platform metrics and campaigns.

Metrics from LinkedIn, Google Analytics and HubSpot arrive already fetched and
are normalized into one time-series table, one row per organization, platform,
metric type, date and campaign.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from services.database import Campaign, CampaignMetric, User
from services.permissions import PermissionDeniedError, require_permission

logger = logging.getLogger(__name__)


LINKEDIN_METRICS = [
    ("linkedin_follower_growth", "New Followers"),
    ("linkedin_impressions", "Impressions"),
    ("linkedin_reactions", "Reactions"),
    ("linkedin_page_views", "Page Views"),
    ("linkedin_unique_visitors", "Unique Visitors"),
]

GA_METRICS = [
    ("ga_active_users", "Active Users"),
    ("ga_new_users", "New Users"),
    ("ga_sessions", "Sessions"),
    ("ga_traffic_direct", "Direct Traffic"),
    ("ga_traffic_organic_search", "Organic Search"),
    ("ga_traffic_email", "Email Traffic"),
    ("ga_traffic_organic_social", "Organic Social"),
    ("ga_traffic_referral", "Referral Traffic"),
]

HUBSPOT_METRICS = [
    ("hubspot_total_contacts", "Total Contacts"),
    ("hubspot_total_deals", "Total Deals"),
    ("hubspot_new_deals", "New Deals"),
    ("hubspot_total_pipeline_value", "Pipeline Value"),
    ("hubspot_deals_won", "Deals Won"),
    ("hubspot_deals_lost", "Deals Lost"),
    ("hubspot_form_submissions", "Form Submissions"),
]

PLATFORM_METRICS = {
    "linkedin": LINKEDIN_METRICS,
    "google_analytics": GA_METRICS,
    "hubspot": HUBSPOT_METRICS,
}

# Running totals: the latest value counts, not the sum over the period.
CUMULATIVE_METRICS = {"hubspot_total_contacts", "hubspot_total_deals", "hubspot_total_pipeline_value"}

PERIOD_DAYS = {"7d": 7, "30d": 30, "quarter": 90}

CAMPAIGN_STATUSES = ("draft", "active", "completed", "disabled")


def _parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValueError(f"Invalid metric date: {value}")


def _metric_types(platform: str) -> Dict[str, str]:
    if platform not in PLATFORM_METRICS:
        raise ValueError(f"Unknown platform: {platform}")
    return dict(PLATFORM_METRICS[platform])


def ingest_metrics(
    db: Session,
    organization_id: int,
    platform: str,
    records: Iterable[Dict[str, Any]]
) -> dict:
    """
    Upsert normalized metric records.

    Each record is ``{date, metric_type, value, campaign_id?}``. A record for
    an existing (metric_type, date, campaign) point replaces its value. A
    campaign_id must name one of the organization's own campaigns.
    """
    known_types = _metric_types(platform)
    inserted = updated = 0
    records = list(records)
    campaign_ids = {r.get("campaign_id") for r in records if r.get("campaign_id") is not None}
    if campaign_ids:
        owned = {
            row.id for row in db.query(Campaign.id).filter(
                Campaign.id.in_(campaign_ids),
                Campaign.organization_id == organization_id,
            )
        }
        unknown = campaign_ids - owned
        if unknown:
            raise ValueError(f"Unknown campaign for this organization: {sorted(unknown, key=str)[0]}")

    for record in records:
        metric_type = record.get("metric_type")
        if metric_type not in known_types:
            raise ValueError(f"Unknown metric type for {platform}: {metric_type}")
        try:
            value = float(record.get("value", 0) or 0)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid value for {metric_type}: {record.get('value')}")
        metric_date = _parse_date(record.get("date"))
        campaign_id = record.get("campaign_id")

        query = db.query(CampaignMetric).filter(
            CampaignMetric.organization_id == organization_id,
            CampaignMetric.platform == platform,
            CampaignMetric.metric_type == metric_type,
            CampaignMetric.date == metric_date,
        )
        if campaign_id is None:
            query = query.filter(CampaignMetric.campaign_id.is_(None))
        else:
            query = query.filter(CampaignMetric.campaign_id == campaign_id)

        existing = query.first()
        if existing:
            existing.value = value
            updated += 1
        else:
            db.add(CampaignMetric(
                organization_id=organization_id,
                campaign_id=campaign_id,
                platform=platform,
                metric_type=metric_type,
                date=metric_date,
                value=value,
            ))
            inserted += 1

    db.commit()
    logger.info(
        "[Metrics] Ingested %s metrics for organization %s: %d new, %d updated",
        platform, organization_id, inserted, updated,
    )
    return {"inserted": inserted, "updated": updated}


def get_date_ranges(period: str, today: date) -> Dict[str, date]:
    """Current period ending today and the previous period of the same length before it."""
    if period not in PERIOD_DAYS:
        raise ValueError("Period must be one of 7d, 30d, quarter")
    days = PERIOD_DAYS[period]

    current_start = today - timedelta(days=days)
    previous_end = current_start - timedelta(days=1)
    previous_start = previous_end - timedelta(days=days - 1)
    return {
        "current_start": current_start,
        "current_end": today,
        "previous_start": previous_start,
        "previous_end": previous_end,
    }


def calculate_change(current: float, previous: float) -> Optional[float]:
    """Percent change; None when there is no baseline to compare against."""
    if previous == 0:
        return 100.0 if current > 0 else None
    return (current - previous) / previous * 100


def _sum_in_range(rows: List[CampaignMetric], start: date, end: date):
    in_range = [r for r in rows if start <= r.date <= end]
    return sum(r.value for r in in_range), bool(in_range)


def _latest_value(rows: List[CampaignMetric], end: date) -> float:
    candidates = [r for r in rows if r.date <= end]
    if not candidates:
        return 0.0
    return max(candidates, key=lambda r: r.date).value


def get_metrics_summary(
    db: Session,
    organization_id: int,
    period: str = "30d",
    platform: Optional[str] = None,
    now: Optional[datetime] = None
) -> dict:
    """
    Totals per metric type for the current and previous period with the
    percent change, plus the daily series for the current period.
    """
    today = (now or datetime.utcnow()).date()
    ranges = get_date_ranges(period, today)

    query = db.query(CampaignMetric).filter(
        CampaignMetric.organization_id == organization_id,
        CampaignMetric.date >= ranges["previous_start"],
        CampaignMetric.date <= ranges["current_end"],
    )
    if platform:
        _metric_types(platform)
        query = query.filter(CampaignMetric.platform == platform)

    by_type: Dict[str, List[CampaignMetric]] = {}
    for row in query.order_by(CampaignMetric.date).all():
        by_type.setdefault(row.metric_type, []).append(row)

    labels = {}
    for platform_name, metrics in PLATFORM_METRICS.items():
        for metric_type, label in metrics:
            labels[metric_type] = (platform_name, label)

    summary = []
    for metric_type, rows in sorted(by_type.items()):
        if metric_type in CUMULATIVE_METRICS:
            current = _latest_value(rows, ranges["current_end"])
            previous = _latest_value(rows, ranges["previous_end"])
            _, has_previous = _sum_in_range(rows, ranges["previous_start"], ranges["previous_end"])
            has_previous = has_previous or previous > 0
        else:
            current, _ = _sum_in_range(rows, ranges["current_start"], ranges["current_end"])
            previous, has_previous = _sum_in_range(rows, ranges["previous_start"], ranges["previous_end"])

        daily: Dict[date, float] = {}
        for row in rows:
            if ranges["current_start"] <= row.date <= ranges["current_end"]:
                daily[row.date] = daily.get(row.date, 0.0) + row.value

        platform_name, label = labels.get(metric_type, (rows[0].platform, metric_type))
        summary.append({
            "metric_type": metric_type,
            "platform": platform_name,
            "label": label,
            "current": current,
            "previous": previous if has_previous else None,
            "change": calculate_change(current, previous) if has_previous else None,
            "series": [{"date": d.isoformat(), "value": v} for d, v in sorted(daily.items())],
        })

    return {
        "period": period,
        "current_start": ranges["current_start"].isoformat(),
        "current_end": ranges["current_end"].isoformat(),
        "previous_start": ranges["previous_start"].isoformat(),
        "previous_end": ranges["previous_end"].isoformat(),
        "metrics": summary,
    }


def _validate_campaign_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = {}
    if "name" in fields and fields["name"] is not None:
        name = fields["name"].strip()
        if not name:
            raise ValueError("Campaign name is required")
        cleaned["name"] = name
    if "description" in fields and fields["description"] is not None:
        cleaned["description"] = fields["description"]
    if "status" in fields and fields["status"] is not None:
        if fields["status"] not in CAMPAIGN_STATUSES:
            raise ValueError("Invalid campaign status")
        cleaned["status"] = fields["status"]
    for key in ("start_date", "end_date"):
        if fields.get(key):
            cleaned[key] = _parse_date(fields[key])
    return cleaned


def _check_dates(campaign: Campaign):
    if campaign.start_date and campaign.end_date and campaign.end_date < campaign.start_date:
        raise ValueError("End date must be on or after the start date")


def _get_campaign(db: Session, user: User, campaign_id: int) -> Campaign:
    campaign = db.query(Campaign).filter(Campaign.id == campaign_id).first()
    if not campaign:
        raise ValueError("Campaign not found")
    if campaign.organization_id != user.organization_id and not user.is_internal:
        raise PermissionDeniedError("Campaign belongs to another organization")
    return campaign


def list_campaigns(db: Session, organization_id: int) -> List[Campaign]:
    return (
        db.query(Campaign)
        .filter(Campaign.organization_id == organization_id)
        .order_by(Campaign.created_at.desc())
        .all()
    )


def create_campaign(db: Session, user: User, name: str, **fields) -> Campaign:
    require_permission(user, "campaigns:create")
    if not user.organization_id:
        raise PermissionDeniedError("You must belong to an organization to create campaigns")

    cleaned = _validate_campaign_fields({"name": name or "", **fields})
    cleaned.setdefault("status", "draft")
    campaign = Campaign(organization_id=user.organization_id, **cleaned)
    _check_dates(campaign)

    db.add(campaign)
    db.commit()
    db.refresh(campaign)
    return campaign


def update_campaign(db: Session, user: User, campaign_id: int, **fields) -> Campaign:
    require_permission(user, "campaigns:update")
    campaign = _get_campaign(db, user, campaign_id)

    for key, value in _validate_campaign_fields(fields).items():
        setattr(campaign, key, value)
    _check_dates(campaign)

    db.commit()
    db.refresh(campaign)
    return campaign


def delete_campaign(db: Session, user: User, campaign_id: int):
    require_permission(user, "campaigns:delete")
    campaign = _get_campaign(db, user, campaign_id)

    db.query(CampaignMetric).filter(CampaignMetric.campaign_id == campaign.id).delete(synchronize_session=False)
    db.delete(campaign)
    db.commit()
