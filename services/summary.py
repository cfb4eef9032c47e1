"""
Executive summary generation for completed site audits.
"""

import logging
from typing import Dict, List, Optional

from openai import OpenAI

from services import config
from services.database import SiteAuditCheck
from services.llm import get_openai_client

logger = logging.getLogger(__name__)


def get_score_interpretation(score: int) -> str:
    if score >= 85:
        return "Excellent"
    if score >= 70:
        return "Good"
    if score >= 50:
        return "Needs Work"
    return "Poor"


def _format_check(check: SiteAuditCheck) -> str:
    name = check.display_name or check.check_name.replace("_", " ")
    details = check.get_details() or {}
    return f"- {name}: {details.get('message', '')}"


def _format_list(checks: List[SiteAuditCheck], limit: int) -> str:
    if not checks:
        return "None"
    return "\n".join(_format_check(c) for c in checks[:limit])


def build_summary_prompt(url: str, pages_crawled: int, scores: Dict[str, int], checks: List[SiteAuditCheck]) -> str:
    critical_fails = [c for c in checks if c.priority == "critical" and c.status == "failed"]
    recommended_fails = [c for c in checks if c.priority == "recommended" and c.status == "failed"]
    warnings = [c for c in checks if c.status == "warning"]
    passed = [c for c in checks if c.status == "passed"]

    def passed_of(check_type: str) -> int:
        return len([c for c in passed if c.check_type == check_type])

    overall = scores["overall_score"]
    return f"""You are writing an executive summary for a website SEO and AI-readiness audit report.

## Site Information
- URL: {url}
- Pages Analyzed: {pages_crawled}
- Overall Score: {overall}/100 ({get_score_interpretation(overall)})

## Category Scores
- SEO Score: {scores['seo_score']}/100 ({get_score_interpretation(scores['seo_score'])})
- AI-Readiness Score: {scores['ai_readiness_score']}/100 ({get_score_interpretation(scores['ai_readiness_score'])})
- Technical Score: {scores['technical_score']}/100 ({get_score_interpretation(scores['technical_score'])})

## Critical Issues ({len(critical_fails)} found)
{_format_list(critical_fails, 5)}

## Recommended Fixes ({len(recommended_fails)} found)
{_format_list(recommended_fails, 5)}

## Warnings ({len(warnings)} found)
{_format_list(warnings, 3)}

## Passed Checks
- SEO: {passed_of('seo')} passed
- AI-Readiness: {passed_of('ai_readiness')} passed
- Technical: {passed_of('technical')} passed

---

Write a 3-4 paragraph executive summary:
1. Overall assessment: interpret the score (Poor: <50, Needs Work: 50-70, Good: 70-85, Excellent: 85+), mention pages analyzed and the site's strengths.
2. Priority issues: the top 3 critical issues and their business impact.
3. Quick wins: 2-3 low-effort fixes from the recommended and warning lists, with effort estimates.
4. Next steps: the order of fixes, balanced with positive findings.

Tone: professional but accessible, no jargon. Length: 200-300 words. Format: plain text only, no markdown."""


def generate_executive_summary(
    url: str,
    pages_crawled: int,
    scores: Dict[str, int],
    checks: List[SiteAuditCheck],
    client: Optional[OpenAI] = None,
) -> str:
    """
    Ask the model for a plain-text executive summary of an audit.

    Raises MissingAPIKeyError when OpenAI is not configured; callers treat any
    failure as non-fatal.
    """
    client = client or get_openai_client()
    prompt = build_summary_prompt(url, pages_crawled, scores, checks)

    response = client.chat.completions.create(
        model=config.OPENAI_MODEL,
        messages=[
            {"role": "system", "content": "You write concise, plain-text audit summaries for marketing agencies."},
            {"role": "user", "content": prompt},
        ],
        temperature=0.4,
        max_tokens=800,
    )
    text = (response.choices[0].message.content or "").strip()
    logger.info("Executive summary generated for %s (%d chars)", url, len(text))
    return text
