"""
Programmatic GEO (generative engine optimization) checks.

Each check inspects the homepage of a site and reports whether AI engines can
reach, parse and quote its content. The weighted results form the technical
half of the GEO score.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from services.audit_checks import FAILED, PASSED, PRIORITY_WEIGHTS, WARNING, CheckResult, find_blocked_ai_crawlers
from services.fetcher import build_client

logger = logging.getLogger(__name__)


TECHNICAL_FOUNDATION = "technical_foundation"
CONTENT_STRUCTURE = "content_structure"
CONTENT_QUALITY = "content_quality"
GEO_CATEGORIES = (TECHNICAL_FOUNDATION, CONTENT_STRUCTURE, CONTENT_QUALITY)

STATUS_POINTS = {PASSED: 100, WARNING: 50, FAILED: 0}

GEO_AI_CRAWLERS = [
    "GPTBot",
    "ChatGPT-User",
    "ClaudeBot",
    "Claude-Web",
    "anthropic-ai",
    "PerplexityBot",
    "Google-Extended",
    "Applebot-Extended",
]

CONTENT_DEPTH_PASSED_WORDS = 1000
CONTENT_DEPTH_WARNING_WORDS = 300
MAX_CONTENT_WORDS = 8000
NON_CONTENT_TAGS = ["nav", "header", "footer", "aside", "script", "style", "noscript", "iframe"]


@dataclass
class GeoCheckContext:
    url: str
    html: str
    client: Optional[httpx.Client] = None


@dataclass
class GeoCheckDefinition:
    name: str
    category: str
    priority: str
    description: str
    run: Callable[[GeoCheckContext], CheckResult]
    display_name: str
    display_name_passed: Optional[str] = None
    learn_more_url: Optional[str] = None
    fix_guidance: Optional[str] = None


def _soup(context: GeoCheckContext) -> BeautifulSoup:
    return BeautifulSoup(context.html or "", "html.parser")


def extract_content_text(html: str) -> str:
    """
    Main-content text of a page for AI analysis.

    Navigation, scripts and other chrome are removed, whitespace is collapsed
    and the result is capped at MAX_CONTENT_WORDS words.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup.find_all(NON_CONTENT_TAGS):
        tag.decompose()

    main = soup.select_one("main") or soup.select_one("article") or soup.select_one('[role="main"]') or soup.body or soup
    words = main.get_text(" ").split()
    if len(words) > MAX_CONTENT_WORDS:
        return " ".join(words[:MAX_CONTENT_WORDS]) + "...[content truncated]"
    return " ".join(words)


def _json_ld_types(soup: BeautifulSoup) -> List[str]:
    """@type values declared in JSON-LD blocks, including @graph members."""
    types = []
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            data = json.loads(script.string or "")
        except (TypeError, ValueError):
            continue

        items = data if isinstance(data, list) else [data]
        for item in items:
            if not isinstance(item, dict):
                continue
            members = item.get("@graph", [item])
            for member in members if isinstance(members, list) else [members]:
                if not isinstance(member, dict):
                    continue
                declared = member.get("@type")
                if isinstance(declared, list):
                    types.extend(str(t) for t in declared)
                elif declared:
                    types.append(str(declared))
    return types


def check_ai_crawler_access(context: GeoCheckContext) -> CheckResult:
    parsed = urlparse(context.url)
    robots_url = f"{parsed.scheme}://{parsed.netloc}/robots.txt"
    try:
        if context.client is not None:
            response = context.client.get(robots_url, timeout=5.0)
        else:
            with build_client() as client:
                response = client.get(robots_url, timeout=5.0)
    except httpx.HTTPError as e:
        return CheckResult(WARNING, {"message": f"Could not verify robots.txt: {e}"})

    if not response.is_success:
        return CheckResult(PASSED, {"message": "No robots.txt found (AI crawlers allowed by default)"})

    blocked = find_blocked_ai_crawlers(response.text, GEO_AI_CRAWLERS)
    if blocked:
        return CheckResult(FAILED, {
            "message": (
                f"Your robots.txt blocks these AI crawlers: {', '.join(blocked)}. "
                "This prevents AI engines from indexing and citing your content."
            ),
            "blocked": blocked,
        })
    return CheckResult(PASSED, {
        "message": f"AI crawlers can access your site ({len(GEO_AI_CRAWLERS)} crawlers checked)",
    })


def check_schema_markup(context: GeoCheckContext) -> CheckResult:
    soup = _soup(context)
    types = _json_ld_types(soup)
    if types:
        return CheckResult(PASSED, {"message": f"Found structured data: {', '.join(sorted(set(types)))}", "types": types})
    if soup.find(attrs={"itemtype": True}):
        return CheckResult(WARNING, {
            "message": "Only microdata found. JSON-LD is easier for AI engines to parse.",
        })
    return CheckResult(FAILED, {"message": "No schema.org structured data found on the page"})


def check_ssl_certificate(context: GeoCheckContext) -> CheckResult:
    if urlparse(context.url).scheme == "https":
        return CheckResult(PASSED, {"message": "Site is served over HTTPS"})
    return CheckResult(FAILED, {"message": "Site is not served over HTTPS. AI engines favor secure sources."})


FAQ_HEADING = re.compile(r"\bfaqs?\b|frequently asked", re.IGNORECASE)


def check_faq_section(context: GeoCheckContext) -> CheckResult:
    soup = _soup(context)
    if "FAQPage" in _json_ld_types(soup):
        return CheckResult(PASSED, {"message": "FAQPage schema found"})

    for heading in soup.find_all(["h1", "h2", "h3", "h4"]):
        if FAQ_HEADING.search(heading.get_text(" ", strip=True)):
            return CheckResult(PASSED, {
                "message": "FAQ section found. Add FAQPage schema to make it machine-readable.",
            })

    if len(soup.find_all("details")) >= 2:
        return CheckResult(PASSED, {"message": "Question and answer blocks found"})

    return CheckResult(WARNING, {
        "message": "No FAQ section found. Question-and-answer content is frequently quoted by AI engines.",
    })


def check_content_depth(context: GeoCheckContext) -> CheckResult:
    word_count = len(extract_content_text(context.html or "").split())
    details = {"word_count": word_count}
    if word_count >= CONTENT_DEPTH_PASSED_WORDS:
        details["message"] = f"Page has {word_count} words of main content"
        return CheckResult(PASSED, details)
    if word_count >= CONTENT_DEPTH_WARNING_WORDS:
        details["message"] = f"Page has {word_count} words; aim for {CONTENT_DEPTH_PASSED_WORDS}+ for in-depth coverage"
        return CheckResult(WARNING, details)
    details["message"] = f"Thin content: only {word_count} words of main content"
    return CheckResult(FAILED, details)


def check_list_usage(context: GeoCheckContext) -> CheckResult:
    soup = _soup(context)
    lists = [
        lst for lst in soup.find_all(["ul", "ol"])
        if len(lst.find_all("li", recursive=False)) >= 2 and not lst.find_parent("nav")
    ]
    if lists:
        return CheckResult(PASSED, {"message": f"Found {len(lists)} content lists", "count": len(lists)})
    return CheckResult(WARNING, {
        "message": "No bulleted or numbered lists found. Lists make content easier to extract and quote.",
        "count": 0,
    })


GEO_CHECKS = [
    GeoCheckDefinition(
        name="ai_crawler_access", category=TECHNICAL_FOUNDATION, priority="critical",
        description="Ensure AI crawlers like GPTBot and ClaudeBot can access your site",
        run=check_ai_crawler_access,
        display_name="AI Crawlers Blocked", display_name_passed="AI Crawlers Allowed",
        learn_more_url="https://platform.openai.com/docs/gptbot",
        fix_guidance="Remove or comment out Disallow rules for AI crawlers in your robots.txt file.",
    ),
    GeoCheckDefinition(
        name="schema_markup", category=TECHNICAL_FOUNDATION, priority="recommended",
        description="Structured data helps AI engines understand what a page is about",
        run=check_schema_markup,
        display_name="Missing Schema Markup", display_name_passed="Schema Markup Present",
        learn_more_url="https://schema.org/docs/gs.html",
        fix_guidance="Add JSON-LD structured data (Organization, Article, FAQPage) to key pages.",
    ),
    GeoCheckDefinition(
        name="ssl_certificate", category=TECHNICAL_FOUNDATION, priority="critical",
        description="Secure sites are treated as more trustworthy sources",
        run=check_ssl_certificate,
        display_name="No HTTPS", display_name_passed="HTTPS Enabled",
        fix_guidance="Install a TLS certificate and redirect all HTTP traffic to HTTPS.",
    ),
    GeoCheckDefinition(
        name="faq_section", category=CONTENT_STRUCTURE, priority="recommended",
        description="FAQ content maps directly onto the questions users ask AI assistants",
        run=check_faq_section,
        display_name="No FAQ Section", display_name_passed="FAQ Section Present",
        learn_more_url="https://developers.google.com/search/docs/appearance/structured-data/faqpage",
    ),
    GeoCheckDefinition(
        name="content_depth", category=CONTENT_QUALITY, priority="recommended",
        description="In-depth pages are more likely to be cited as a source",
        run=check_content_depth,
        display_name="Thin Content", display_name_passed="Sufficient Content Depth",
    ),
    GeoCheckDefinition(
        name="list_usage", category=CONTENT_STRUCTURE, priority="optional",
        description="Lists break content into facts that AI engines can quote",
        run=check_list_usage,
        display_name="No Lists Used", display_name_passed="Lists Used",
    ),
]


def run_geo_check(definition: GeoCheckDefinition, context: GeoCheckContext) -> Optional[CheckResult]:
    try:
        return definition.run(context)
    except Exception as e:
        logger.warning("[GEO Runner] Check %s failed on %s: %s", definition.name, context.url, e)
        return None


def calculate_technical_score(checks: List[Any]) -> int:
    """
    Weighted mean of check outcomes, 0-100.

    Critical checks weigh 3, recommended 2, optional 1; passed scores 100,
    warning 50 and failed 0. Checks without a status are ignored.
    """
    total_weight = 0
    weighted_score = 0
    for check in checks:
        if not check.status:
            continue
        weight = PRIORITY_WEIGHTS.get(check.priority, 1)
        total_weight += weight
        weighted_score += STATUS_POINTS.get(check.status, 0) * weight

    if total_weight == 0:
        return 0
    return round(weighted_score / total_weight)


def get_category_scores(checks: List[Any]) -> Dict[str, int]:
    return {
        category: calculate_technical_score([c for c in checks if c.category == category])
        for category in GEO_CATEGORIES
    }
