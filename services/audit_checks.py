"""
Site audit check definitions.

Page-specific checks run against each crawled HTML page while the crawl is in
progress. Site-wide checks run once, after crawling, against the homepage
and the full list of crawled pages.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from services.database import SiteAuditCheck
from services.fetcher import build_client, normalize_url

logger = logging.getLogger(__name__)


CHECK_TYPES = ("seo", "ai_readiness", "technical")
PRIORITY_WEIGHTS = {"critical": 3, "recommended": 2, "optional": 1}

PASSED = "passed"
WARNING = "warning"
FAILED = "failed"

SIDE_REQUEST_TIMEOUT = 5.0
STALE_CONTENT_DAYS = 90

AI_CRAWLERS = ["GPTBot", "PerplexityBot", "ClaudeBot", "ChatGPT-User", "Anthropic-AI"]


@dataclass
class CheckContext:
    url: str
    html: str
    title: Optional[str]
    status_code: int
    all_pages: List[Any] = field(default_factory=list)
    client: Optional[httpx.Client] = None
    now: Optional[datetime] = None


@dataclass
class CheckResult:
    status: str
    details: Optional[Dict[str, Any]] = None


@dataclass
class AuditCheck:
    name: str
    type: str
    priority: str
    description: str
    run: Callable[[CheckContext], CheckResult]
    display_name: Optional[str] = None
    display_name_passed: Optional[str] = None
    learn_more_url: Optional[str] = None
    is_site_wide: bool = False
    fix_guidance: Optional[str] = None


def _soup(context: CheckContext) -> BeautifulSoup:
    return BeautifulSoup(context.html or "", "html.parser")


def _request(context: CheckContext, method: str, url: str, follow_redirects: bool = True) -> httpx.Response:
    """Side request for a check. Raises httpx.HTTPError on network failure."""
    if context.client is not None:
        return context.client.request(
            method, url, timeout=SIDE_REQUEST_TIMEOUT, follow_redirects=follow_redirects
        )
    with build_client() as client:
        return client.request(method, url, timeout=SIDE_REQUEST_TIMEOUT, follow_redirects=follow_redirects)


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def _meta_content(soup: BeautifulSoup, name: str) -> Optional[str]:
    tag = soup.find("meta", attrs={"name": name})
    if not tag:
        return None
    return str(tag.get("content", "") or "")


def _now(context: CheckContext) -> datetime:
    return context.now or datetime.now(timezone.utc)


def _parse_date(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# Page-specific checks

def check_missing_title(context: CheckContext) -> CheckResult:
    title_tag = _soup(context).find("title")
    title = title_tag.get_text(strip=True) if title_tag else ""
    if not title:
        return CheckResult(FAILED, {
            "message": "Page has no <title> tag. Add a unique, descriptive title of 50-60 characters.",
        })
    return CheckResult(PASSED, {"message": title})


def check_missing_meta_description(context: CheckContext) -> CheckResult:
    description = (_meta_content(_soup(context), "description") or "").strip()
    if not description:
        return CheckResult(FAILED, {
            "message": "Page has no meta description. Add a 150-160 character summary to improve search result snippets.",
        })
    return CheckResult(PASSED, {"message": description})


def check_meta_description_length(context: CheckContext) -> CheckResult:
    description = (_meta_content(_soup(context), "description") or "").strip()
    if not description:
        # reported by missing_meta_description
        return CheckResult(PASSED)

    length = len(description)
    if length < 150 or length > 160:
        return CheckResult(WARNING, {
            "message": f"Meta description is {length} characters (recommended: 150-160)",
            "length": length,
        })
    return CheckResult(PASSED)


def check_heading_hierarchy(context: CheckContext) -> CheckResult:
    levels = [int(tag.name[1]) for tag in _soup(context).find_all(["h1", "h2", "h3", "h4", "h5", "h6"])]
    if not levels:
        return CheckResult(PASSED)

    skipped = []
    previous = 0
    for level in levels:
        if previous > 0 and level > previous + 1:
            skipped.append(f"H{previous} -> H{level}")
        previous = level

    if skipped:
        return CheckResult(WARNING, {
            "message": (
                "Headings should follow a logical order (H1 -> H2 -> H3). "
                f"Skipped: {', '.join(skipped)}."
            ),
            "skippedLevels": skipped,
        })
    return CheckResult(PASSED, {"message": "Headings follow correct hierarchy"})


def check_missing_viewport(context: CheckContext) -> CheckResult:
    viewport = _meta_content(_soup(context), "viewport")
    if not viewport:
        return CheckResult(WARNING, {
            "message": (
                'Add <meta name="viewport" content="width=device-width, initial-scale=1"> '
                "to the <head> for proper mobile display."
            ),
        })
    return CheckResult(PASSED, {"message": viewport})


def check_noindex_on_important_pages(context: CheckContext) -> CheckResult:
    soup = _soup(context)
    robots = (_meta_content(soup, "robots") or "").lower()
    googlebot = (_meta_content(soup, "googlebot") or "").lower()

    if "noindex" not in robots and "noindex" not in googlebot:
        return CheckResult(PASSED, {"message": "No noindex directives found on this page"})

    directive = robots or googlebot
    path = urlparse(context.url).path
    is_important = path in ("", "/") or len([s for s in path.split("/") if s]) <= 1

    if is_important:
        return CheckResult(FAILED, {
            "message": (
                f"This important page has a noindex directive ({directive}), preventing search "
                "engines from indexing it. Remove the noindex tag unless this is intentional."
            ),
            "metaContent": directive,
            "path": path,
        })
    return CheckResult(WARNING, {
        "message": f"Page has noindex directive ({directive}). Verify this is intentional.",
        "metaContent": directive,
    })


MIXED_CONTENT_SOURCES = [
    ("img", "src", "image"),
    ("script", "src", "script"),
    ("link", "href", "stylesheet"),
    ("iframe", "src", "iframe"),
    ("video", "src", "video"),
    ("audio", "src", "audio"),
    ("source", "src", "media source"),
    ("object", "data", "object"),
    ("embed", "src", "embed"),
]

INLINE_HTTP_URL = re.compile(r"url\s*\(\s*['\"]?(http://[^'\")]+)['\"]?\s*\)", re.IGNORECASE)


def check_mixed_content(context: CheckContext) -> CheckResult:
    if urlparse(context.url).scheme != "https":
        return CheckResult(PASSED, {
            "message": "Page is served over HTTP (mixed content check not applicable)",
        })

    soup = _soup(context)
    insecure = []
    for tag_name, attr, resource_type in MIXED_CONTENT_SOURCES:
        for tag in soup.find_all(tag_name, attrs={attr: True}):
            value = str(tag.get(attr) or "")
            if value.startswith("http://"):
                insecure.append({"type": resource_type, "url": value})

    for tag in soup.find_all(style=True):
        for match in INLINE_HTTP_URL.findall(str(tag.get("style") or "")):
            insecure.append({"type": "inline style", "url": match})

    if not insecure:
        return CheckResult(PASSED, {"message": "All resources loaded securely over HTTPS"})

    counts: Dict[str, int] = {}
    for resource in insecure:
        counts[resource["type"]] = counts.get(resource["type"], 0) + 1
    summary = ", ".join(f"{count} {kind}{'s' if count != 1 else ''}" for kind, count in counts.items())
    plural = "" if len(insecure) == 1 else "s"

    return CheckResult(FAILED, {
        "message": (
            f"{len(insecure)} insecure HTTP resource{plural} on HTTPS page ({summary}). "
            "Update URLs to HTTPS to prevent browser warnings and blocked content."
        ),
        "count": len(insecure),
        "resources": insecure[:5],
    })


def _canonical_key(url: str) -> str:
    return normalize_url(url)


def check_canonical_validation(context: CheckContext) -> CheckResult:
    tag = _soup(context).find("link", rel="canonical")
    canonical = str(tag.get("href", "") or "").strip() if tag else ""
    if not canonical:
        return CheckResult(PASSED, {"message": "No canonical tag"})

    canonical_url = urljoin(context.url, canonical)
    if urlparse(canonical_url).scheme not in ("http", "https"):
        return CheckResult(FAILED, {
            "message": f'Canonical URL is malformed: "{canonical}". Use absolute URLs for canonical tags.',
            "canonical": canonical,
        })

    issues = []
    if _canonical_key(context.url) != _canonical_key(canonical_url):
        issues.append(
            f"Canonical points to different URL: {canonical_url} (current: {context.url}). "
            "Ensure this is intentional for duplicate content."
        )

    try:
        head = _request(context, "HEAD", canonical_url, follow_redirects=False)
        if head.status_code >= 400:
            return CheckResult(FAILED, {
                "message": (
                    f"Canonical URL returns {head.status_code} error. "
                    "Canonical must point to an accessible page."
                ),
                "canonical": canonical_url,
                "status": head.status_code,
            })
        if 300 <= head.status_code < 400:
            return CheckResult(WARNING, {
                "message": (
                    f"Canonical URL redirects ({head.status_code}). Canonical should point "
                    "directly to the final URL, not a redirect."
                ),
                "canonical": canonical_url,
                "status": head.status_code,
            })

        if _canonical_key(context.url) != _canonical_key(canonical_url):
            target = BeautifulSoup(_request(context, "GET", canonical_url).text, "html.parser")
            target_tag = target.find("link", rel="canonical")
            target_href = str(target_tag.get("href", "") or "").strip() if target_tag else ""
            if target_href:
                target_canonical = urljoin(canonical_url, target_href)
                if _canonical_key(target_canonical) != _canonical_key(canonical_url):
                    return CheckResult(FAILED, {
                        "message": (
                            f"Canonical chain detected: Page points to {canonical_url}, which points "
                            f"to {target_canonical}. Canonical should point directly to the final URL."
                        ),
                        "canonical": canonical_url,
                        "targetCanonical": target_canonical,
                    })
    except httpx.HTTPError as e:
        return CheckResult(FAILED, {
            "message": f"Could not verify canonical URL ({canonical_url}). Ensure it is accessible.",
            "canonical": canonical_url,
            "error": str(e),
        })

    if issues:
        return CheckResult(WARNING, {"message": " ".join(issues), "canonical": canonical_url})
    return CheckResult(PASSED, {
        "message": f"Canonical URL is valid and accessible: {canonical_url}",
        "canonical": canonical_url,
    })


def check_missing_structured_data(context: CheckContext) -> CheckResult:
    scripts = _soup(context).find_all("script", attrs={"type": "application/ld+json"})
    if not scripts:
        return CheckResult(FAILED, {
            "message": (
                "Add JSON-LD structured data to help search engines and AI understand your content. "
                "Common types include Organization, Article, Product, and FAQ."
            ),
        })

    types = []
    for script in scripts:
        try:
            data = json.loads(script.get_text() or "")
        except ValueError:
            continue
        if isinstance(data, dict) and data.get("@type"):
            schema_type = data["@type"]
            types.append(", ".join(schema_type) if isinstance(schema_type, list) else str(schema_type))

    message = f"Found: {', '.join(types)}" if types else "JSON-LD structured data found"
    return CheckResult(PASSED, {"message": message})


STOP_WORDS = {
    "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
    "is", "are", "was", "were", "be", "been", "being", "have", "has", "had", "do", "does",
    "did", "will", "would", "could", "should", "may", "might", "must", "can", "this", "that",
    "these", "those", "i", "you", "he", "she", "it", "we", "they", "what", "which", "who",
    "when", "where", "why", "how", "all", "each", "every", "both", "few", "more", "most",
    "other", "some", "such", "no", "not", "only", "own", "same", "so", "than", "too", "very",
    "just", "also",
}

ID_PATTERNS = [
    re.compile(r"^[0-9]+$"),
    re.compile(r"^[a-f0-9]{8,}$", re.IGNORECASE),
    re.compile(r"^[a-z0-9]{20,}$", re.IGNORECASE),
    re.compile(r"^\d{4}-\d{2}-\d{2}$"),
]


def _words(text: str) -> List[str]:
    cleaned = re.sub(r"[^a-z0-9\s-]", " ", text.lower())
    return [w for w in re.split(r"[\s-]+", cleaned) if len(w) > 2 and w not in STOP_WORDS]


def check_non_descriptive_url(context: CheckContext) -> CheckResult:
    segments = [re.sub(r"\.[^.]+$", "", s) for s in urlparse(context.url).path.split("/") if s]
    if not segments:
        return CheckResult(PASSED, {"message": "Homepage - no URL slug to check"})

    slug = segments[-1]
    if any(pattern.match(slug) for pattern in ID_PATTERNS):
        return CheckResult(FAILED, {
            "message": (
                f'URL contains ID-like slug "{slug}" instead of descriptive words. Use keyword-rich '
                "URLs like /services/web-design instead of /page/12345"
            ),
            "slug": slug,
        })

    issues = []
    slug_words = _words(slug.replace("-", " "))
    if not slug_words:
        issues.append(f'Slug "{slug}" contains no meaningful keywords')
    if "_" in slug:
        issues.append("URL uses underscores instead of hyphens. Search engines prefer hyphens as word separators")
    if slug != slug.lower():
        issues.append("URL contains uppercase characters. Use lowercase for consistency")

    full_path = "/" + "/".join(segments)
    if len(full_path) > 75:
        issues.append(f"URL path is {len(full_path)} characters. Consider shortening for better usability")

    if context.title and len(slug_words) >= 2:
        title_words = _words(context.title)
        if title_words and not any(word in title_words for word in slug_words):
            issues.append(
                "URL slug words don't appear in page title. Consider aligning URL with page content for better SEO"
            )

    if issues:
        return CheckResult(WARNING, {"message": ". ".join(issues), "slug": slug, "path": full_path})
    return CheckResult(PASSED, {"message": f'URL "{slug}" is descriptive and well-formatted'})


# Site-wide checks

def _html_pages(pages: List[Any]) -> List[Any]:
    return [p for p in pages if not getattr(p, "is_resource", False)]


def _find_duplicates(pages: List[Any], attribute: str) -> List[Dict[str, Any]]:
    grouped: Dict[str, List[str]] = {}
    for page in _html_pages(pages):
        value = (getattr(page, attribute, None) or "").strip()
        if value:
            grouped.setdefault(value, []).append(page.url)

    duplicates = [
        {"value": value, "urls": urls, "count": len(urls)}
        for value, urls in grouped.items()
        if len(urls) > 1
    ]
    duplicates.sort(key=lambda d: d["count"], reverse=True)
    return duplicates


def check_duplicate_titles(context: CheckContext) -> CheckResult:
    duplicates = _find_duplicates(context.all_pages, "title")
    if not duplicates:
        return CheckResult(PASSED, {"message": "All page titles are unique"})

    affected = sum(d["count"] for d in duplicates)
    examples = ", ".join(f'"{d["value"][:40]}" ({d["count"]} pages)' for d in duplicates[:3])
    return CheckResult(FAILED, {
        "message": (
            f"Found {len(duplicates)} duplicate title{'s' if len(duplicates) > 1 else ''} affecting "
            f"{affected} pages. Examples: {examples}. Each page should have a unique, descriptive title."
        ),
        "duplicateCount": len(duplicates),
        "affectedPages": affected,
        "duplicates": [
            {"title": d["value"], "urls": d["urls"][:5], "count": d["count"]} for d in duplicates[:10]
        ],
    })


def check_duplicate_meta_descriptions(context: CheckContext) -> CheckResult:
    duplicates = _find_duplicates(context.all_pages, "meta_description")
    if not duplicates:
        return CheckResult(PASSED, {"message": "All meta descriptions are unique"})

    affected = sum(d["count"] for d in duplicates)
    return CheckResult(WARNING, {
        "message": (
            f"Found {len(duplicates)} duplicate meta description{'s' if len(duplicates) > 1 else ''} "
            f"affecting {affected} pages. Write a unique description for each page."
        ),
        "duplicateCount": len(duplicates),
        "affectedPages": affected,
        "duplicates": [
            {"description": d["value"], "urls": d["urls"][:5], "count": d["count"]} for d in duplicates[:10]
        ],
    })


def check_broken_internal_links(context: CheckContext) -> CheckResult:
    broken = [p for p in context.all_pages if (p.status_code if p.status_code is not None else 200) >= 400]
    if not broken:
        return CheckResult(PASSED, {
            "message": f"All {len(context.all_pages)} internal pages returned successful status codes",
            "totalPages": len(context.all_pages),
        })

    by_status: Dict[int, List[str]] = {}
    for page in broken:
        by_status.setdefault(page.status_code or 0, []).append(page.url)
    status_summary = ", ".join(
        f"{status}: {len(urls)} page{'s' if len(urls) > 1 else ''}" for status, urls in by_status.items()
    )

    return CheckResult(FAILED, {
        "message": (
            f"Found {len(broken)} broken internal link{'s' if len(broken) > 1 else ''} ({status_summary}). "
            "Fix or remove these links to improve SEO and user experience."
        ),
        "brokenCount": len(broken),
        "brokenUrls": [{"url": p.url, "status": p.status_code} for p in broken[:10]],
        "byStatus": {str(k): v for k, v in by_status.items()},
    })


def check_missing_robots_txt(context: CheckContext) -> CheckResult:
    robots_url = f"{_origin(context.url)}/robots.txt"
    try:
        response = _request(context, "GET", robots_url)
    except httpx.HTTPError:
        return CheckResult(FAILED, {
            "message": "Could not access robots.txt (connection error). Ensure the file exists and is accessible.",
        })

    if not response.is_success:
        return CheckResult(FAILED, {
            "message": (
                f"No robots.txt found (HTTP {response.status_code}). Create a robots.txt file to control "
                "search engine crawling behavior and point to your sitemap."
            ),
            "statusCode": response.status_code,
        })

    content = response.text
    has_user_agent = re.search(r"^User-agent:", content, re.IGNORECASE | re.MULTILINE)
    has_sitemap = bool(re.search(r"^Sitemap:", content, re.IGNORECASE | re.MULTILINE))
    has_rules = bool(re.search(r"^(Dis)?allow:", content, re.IGNORECASE | re.MULTILINE))

    if not has_user_agent:
        return CheckResult(WARNING, {
            "message": (
                "robots.txt exists but appears to be empty or malformed. Add User-agent directives "
                "to properly configure crawler behavior."
            ),
            "url": robots_url,
        })

    features = []
    if has_rules:
        features.append("crawl rules")
    if has_sitemap:
        features.append("sitemap reference")
    suffix = f" with {' and '.join(features)}" if features else ""
    return CheckResult(PASSED, {
        "message": f"robots.txt is properly configured{suffix}",
        "url": robots_url,
        "hasSitemap": has_sitemap,
        "hasCrawlRules": has_rules,
    })


def check_missing_sitemap(context: CheckContext) -> CheckResult:
    origin = _origin(context.url)
    for candidate in (f"{origin}/sitemap.xml", f"{origin}/sitemap_index.xml", f"{origin}/sitemap/sitemap.xml"):
        try:
            if _request(context, "HEAD", candidate).is_success:
                return CheckResult(PASSED, {
                    "message": f"XML sitemap found at {candidate}",
                    "sitemap_url": candidate,
                })
        except httpx.HTTPError:
            continue

    try:
        robots = _request(context, "GET", f"{origin}/robots.txt")
    except httpx.HTTPError:
        robots = None

    if robots is not None and robots.is_success:
        match = re.search(r"^Sitemap:\s*(.+)$", robots.text, re.IGNORECASE | re.MULTILINE)
        if match:
            declared = match.group(1).strip()
            try:
                if _request(context, "HEAD", declared).is_success:
                    return CheckResult(PASSED, {
                        "message": f"XML sitemap found at {declared}",
                        "sitemap_url": declared,
                    })
            except httpx.HTTPError:
                return CheckResult(WARNING, {
                    "message": f"Sitemap declared in robots.txt ({declared}) but not accessible",
                })

    return CheckResult(FAILED, {
        "message": (
            "No XML sitemap found. Create a sitemap.xml file listing all important pages to help "
            "search engines discover your content."
        ),
    })


def check_missing_llms_txt(context: CheckContext) -> CheckResult:
    missing = CheckResult(FAILED, {
        "message": (
            "Create a /llms.txt file to help AI assistants understand your site. This file describes "
            "your content in a format optimized for language models."
        ),
    })
    try:
        response = _request(context, "HEAD", f"{_origin(context.url)}/llms.txt")
    except httpx.HTTPError:
        return missing
    if response.is_success:
        return CheckResult(PASSED, {"message": "Found at /llms.txt"})
    return missing


def find_blocked_ai_crawlers(robots_txt: str, crawlers: Optional[List[str]] = None) -> List[str]:
    """Names of AI crawlers with a ``Disallow: /`` rule in a robots.txt body."""
    blocked = []
    for bot in crawlers or AI_CRAWLERS:
        pattern = re.compile(rf"User-agent:\s*{re.escape(bot)}[\s\S]*?Disallow:\s*/", re.IGNORECASE)
        if pattern.search(robots_txt):
            blocked.append(bot)
    return blocked


def check_ai_crawlers_blocked(context: CheckContext) -> CheckResult:
    try:
        response = _request(context, "GET", f"{_origin(context.url)}/robots.txt")
    except httpx.HTTPError:
        return CheckResult(PASSED)
    if not response.is_success:
        # no robots.txt means nothing is blocked
        return CheckResult(PASSED)

    blocked = find_blocked_ai_crawlers(response.text)
    if blocked:
        return CheckResult(FAILED, {"message": f"AI crawlers blocked: {', '.join(blocked)}", "blocked": blocked})
    return CheckResult(PASSED)


def check_no_recent_updates(context: CheckContext) -> CheckResult:
    now = _now(context)
    dates = []
    for page in context.all_pages:
        if page.last_modified:
            parsed = _parse_date(page.last_modified)
            if parsed:
                dates.append(parsed)

    try:
        sitemap = _request(context, "GET", f"{_origin(context.url)}/sitemap.xml")
        if sitemap.is_success:
            for raw in re.findall(r"<lastmod>([^<]+)</lastmod>", sitemap.text, re.IGNORECASE):
                parsed = _parse_date(raw)
                if parsed:
                    dates.append(parsed)
    except httpx.HTTPError as e:
        logger.debug("Sitemap unavailable for freshness check: %s", e)

    if not dates:
        return CheckResult(WARNING, {
            "message": (
                "Unable to determine content freshness. No Last-Modified headers or sitemap lastmod "
                "dates found. Consider adding timestamps to help search engines assess content relevance."
            ),
        })

    most_recent = max(dates)
    days_since = (now - most_recent).days
    if most_recent < now - timedelta(days=STALE_CONTENT_DAYS):
        return CheckResult(FAILED, {
            "message": (
                f"No content updates in {days_since} days (threshold: {STALE_CONTENT_DAYS} days). "
                "Fresh content signals relevance to search engines and AI systems."
            ),
            "daysSinceUpdate": days_since,
            "lastUpdate": most_recent.isoformat(),
        })
    return CheckResult(PASSED, {
        "message": f"Content updated {days_since} day{'' if days_since == 1 else 's'} ago",
        "daysSinceUpdate": days_since,
        "lastUpdate": most_recent.isoformat(),
    })


PAGE_SPECIFIC_CHECKS: List[AuditCheck] = [
    AuditCheck(
        name="missing_title", type="seo", priority="critical",
        description="Every page needs a <title> tag for search results and browser tabs",
        run=check_missing_title,
        display_name="Missing Page Title", display_name_passed="Page Title",
        learn_more_url="https://developers.google.com/search/docs/appearance/title-link",
    ),
    AuditCheck(
        name="missing_meta_description", type="seo", priority="recommended",
        description="Meta descriptions control the snippet shown in search results",
        run=check_missing_meta_description,
        display_name="Missing Meta Description", display_name_passed="Meta Description",
        learn_more_url="https://developers.google.com/search/docs/appearance/snippet",
    ),
    AuditCheck(
        name="meta_description_length", type="seo", priority="optional",
        description="Meta description should be between 150-160 characters",
        run=check_meta_description_length,
        display_name="Meta Description Length", display_name_passed="Meta Description Length",
        learn_more_url="https://developers.google.com/search/docs/appearance/snippet",
    ),
    AuditCheck(
        name="heading_hierarchy", type="seo", priority="recommended",
        description="Heading levels should not be skipped",
        run=check_heading_hierarchy,
        display_name="Skipped Heading Levels", display_name_passed="Heading Hierarchy",
        learn_more_url="https://developer.mozilla.org/en-US/docs/Web/HTML/Element/Heading_Elements#usage_notes",
    ),
    AuditCheck(
        name="missing_viewport", type="technical", priority="recommended",
        description="Pages without viewport meta tag for mobile-friendliness",
        run=check_missing_viewport,
        display_name="Missing Viewport Meta Tag", display_name_passed="Viewport Meta Tag",
        learn_more_url="https://developers.google.com/search/docs/crawling-indexing/mobile/mobile-sites-mobile-first-indexing",
    ),
    AuditCheck(
        name="noindex_on_important_pages", type="seo", priority="critical",
        description="Noindex meta tags prevent search engines from indexing pages",
        run=check_noindex_on_important_pages,
        display_name="Noindex Tag on Important Pages", display_name_passed="No Noindex Issues",
        learn_more_url="https://developers.google.com/search/docs/crawling-indexing/block-indexing",
    ),
    AuditCheck(
        name="mixed_content", type="technical", priority="recommended",
        description="HTTP resources on HTTPS pages cause security warnings",
        run=check_mixed_content,
        display_name="Mixed Content", display_name_passed="Secure Resources",
        learn_more_url="https://web.dev/articles/what-is-mixed-content",
    ),
    AuditCheck(
        name="canonical_validation", type="seo", priority="recommended",
        description="Canonical URLs should be valid, accessible, and self-referencing on unique pages",
        run=check_canonical_validation,
        display_name="Invalid Canonical URL", display_name_passed="Valid Canonical URLs",
        learn_more_url="https://developers.google.com/search/docs/crawling-indexing/consolidate-duplicate-urls",
    ),
    AuditCheck(
        name="missing_structured_data", type="ai_readiness", priority="critical",
        description="Check for JSON-LD structured data",
        run=check_missing_structured_data,
        display_name="Missing Structured Data", display_name_passed="Structured Data (JSON-LD)",
        learn_more_url="https://developers.google.com/search/docs/appearance/structured-data/intro-structured-data",
    ),
    AuditCheck(
        name="non_descriptive_url", type="seo", priority="recommended",
        description="URL slugs should be descriptive and relate to page content",
        run=check_non_descriptive_url,
        display_name="Non-Descriptive URL", display_name_passed="Descriptive URL",
        learn_more_url="https://developers.google.com/search/docs/crawling-indexing/url-structure",
    ),
]

SITE_WIDE_CHECKS: List[AuditCheck] = [
    AuditCheck(
        name="duplicate_titles", type="seo", priority="critical",
        description="Duplicate page titles confuse search engines and reduce click-through rates",
        run=check_duplicate_titles, is_site_wide=True,
        display_name="Duplicate Page Titles", display_name_passed="Unique Page Titles",
        learn_more_url="https://developers.google.com/search/docs/appearance/title-link",
    ),
    AuditCheck(
        name="duplicate_meta_descriptions", type="seo", priority="recommended",
        description="Duplicate meta descriptions make pages harder to tell apart in search results",
        run=check_duplicate_meta_descriptions, is_site_wide=True,
        display_name="Duplicate Meta Descriptions", display_name_passed="Unique Meta Descriptions",
        learn_more_url="https://developers.google.com/search/docs/appearance/snippet",
    ),
    AuditCheck(
        name="broken_internal_links", type="seo", priority="critical",
        description="Internal links returning 4xx/5xx errors hurt SEO and user experience",
        run=check_broken_internal_links, is_site_wide=True,
        display_name="Broken Internal Links", display_name_passed="Internal Links",
        learn_more_url="https://developers.google.com/search/docs/crawling-indexing/http-network-errors",
    ),
    AuditCheck(
        name="missing_robots_txt", type="seo", priority="critical",
        description="robots.txt helps control how search engines crawl your site",
        run=check_missing_robots_txt, is_site_wide=True,
        display_name="Missing robots.txt", display_name_passed="robots.txt",
        learn_more_url="https://developers.google.com/search/docs/crawling-indexing/robots/intro",
    ),
    AuditCheck(
        name="missing_sitemap", type="seo", priority="critical",
        description="XML sitemap helps search engines discover and index pages",
        run=check_missing_sitemap, is_site_wide=True,
        display_name="Missing XML Sitemap", display_name_passed="XML Sitemap",
        learn_more_url="https://developers.google.com/search/docs/crawling-indexing/sitemaps/overview",
    ),
    AuditCheck(
        name="missing_llms_txt", type="ai_readiness", priority="critical",
        description="Check if /llms.txt exists for AI crawlers",
        run=check_missing_llms_txt, is_site_wide=True,
        display_name="Missing llms.txt File", display_name_passed="llms.txt File",
        learn_more_url="https://llmstxt.org/",
    ),
    AuditCheck(
        name="ai_crawlers_blocked", type="ai_readiness", priority="critical",
        description="Check if robots.txt blocks AI crawlers like GPTBot, ClaudeBot",
        run=check_ai_crawlers_blocked, is_site_wide=True,
        display_name="AI Crawlers Blocked", display_name_passed="AI Crawler Access",
    ),
    AuditCheck(
        name="no_recent_updates", type="ai_readiness", priority="recommended",
        description="Sites without recent updates may be deprioritized in search",
        run=check_no_recent_updates, is_site_wide=True,
        display_name="No Recent Updates", display_name_passed="Content Freshness",
        learn_more_url="https://developers.google.com/search/docs/fundamentals/creating-helpful-content",
    ),
]

ALL_CHECKS = {check.name: check for check in PAGE_SPECIFIC_CHECKS + SITE_WIDE_CHECKS}


def run_check(check: AuditCheck, context: CheckContext) -> Optional[CheckResult]:
    """Run a single check. A crashing check is logged and skipped."""
    try:
        return check.run(context)
    except Exception as e:
        logger.warning("[Audit Checks] Check %s failed on %s: %s", check.name, context.url, e)
        return None


def build_check_row(
    audit_id: int,
    check: AuditCheck,
    result: CheckResult,
    page_id: Optional[int] = None,
) -> SiteAuditCheck:
    """Turn a check outcome into a SiteAuditCheck row (not yet added to a session)."""
    details = result.details or {}
    row = SiteAuditCheck(
        audit_id=audit_id,
        page_id=page_id,
        check_type=check.type,
        check_name=check.name,
        priority=check.priority,
        status=result.status,
        display_name=check.display_name,
        display_name_passed=check.display_name_passed,
        description=check.description,
        fix_guidance=check.fix_guidance or details.get("message"),
        learn_more_url=check.learn_more_url,
        is_site_wide=check.is_site_wide,
    )
    row.set_details(result.details)
    return row
