"""
Page fetcher for the site audit crawler.
Fetches pages with TLS error recovery and extracts internal links.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, List, Tuple
from urllib.parse import urljoin, urldefrag, urlparse, unquote

import httpx
from bs4 import BeautifulSoup

from services.config import CRAWLER_USER_AGENT, FETCH_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


RESOURCE_EXTENSIONS = {
    "pdf": [".pdf"],
    "document": [".doc", ".docx", ".odt", ".rtf", ".txt"],
    "spreadsheet": [".xls", ".xlsx", ".csv", ".ods"],
    "presentation": [".ppt", ".pptx", ".odp"],
    "archive": [".zip", ".rar", ".7z", ".tar", ".gz"],
    "image": [".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico"],
}

SSL_ERROR_MARKERS = ("certificate", "ssl", "tls", "unable_to_verify_leaf_signature")


@dataclass
class FetchResult:
    html: str
    status_code: int
    last_modified: Optional[str] = None
    final_url: Optional[str] = None
    error: Optional[str] = None
    used_relaxed_ssl: bool = False


def build_client(verify: bool = True) -> httpx.Client:
    """HTTP client used by the crawler. Follows redirects."""
    return httpx.Client(
        timeout=FETCH_TIMEOUT_SECONDS,
        follow_redirects=True,
        verify=verify,
        headers={"User-Agent": CRAWLER_USER_AGENT},
    )


def fetch_page(
    url: str,
    client: Optional[httpx.Client] = None,
    force_relaxed_ssl: bool = False,
) -> FetchResult:
    """
    Fetch a page, falling back to relaxed TLS verification on certificate errors.

    Never raises for network problems: failures come back as status_code 0
    with ``error`` set.

    Args:
        url: Page to fetch
        client: Optional httpx client (tests inject one backed by MockTransport)
        force_relaxed_ssl: Skip straight to the relaxed fetch, used once a site
            is known to have certificate problems
    """
    if force_relaxed_ssl:
        return _fetch_relaxed(url, client)

    try:
        response = _get(url, client, verify=True)
        return _to_result(response)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        if _is_ssl_error(e):
            logger.info("[Audit Fetcher] SSL error for %s, retrying with relaxed verification", url)
            return _fetch_relaxed(url, client)
        return FetchResult(html="", status_code=0, error=_error_message(e))


def _fetch_relaxed(url: str, client: Optional[httpx.Client]) -> FetchResult:
    try:
        response = _get(url, client, verify=False)
        result = _to_result(response)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        result = FetchResult(html="", status_code=0, error=_error_message(e))
    result.used_relaxed_ssl = True
    return result


def _get(url: str, client: Optional[httpx.Client], verify: bool) -> httpx.Response:
    if client is not None:
        return client.get(url, headers={"User-Agent": CRAWLER_USER_AGENT})
    with build_client(verify=verify) as own_client:
        return own_client.get(url)


def _to_result(response: httpx.Response) -> FetchResult:
    return FetchResult(
        html=response.text,
        status_code=response.status_code,
        last_modified=parse_last_modified(response.headers.get("last-modified")),
        final_url=str(response.url),
    )


def _is_ssl_error(error: Exception) -> bool:
    current = error
    while current is not None:
        message = str(current).lower()
        if any(marker in message for marker in SSL_ERROR_MARKERS):
            return True
        current = current.__cause__ or current.__context__
    return False


def _error_message(error: Exception) -> str:
    return str(error) or error.__class__.__name__


def parse_last_modified(header: Optional[str]) -> Optional[str]:
    """Convert a Last-Modified header to an ISO-8601 UTC timestamp, or None if unparseable."""
    if not header:
        return None
    try:
        parsed = parsedate_to_datetime(header)
    except (TypeError, ValueError, IndexError):
        try:
            parsed = datetime.fromisoformat(header.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def normalize_url(url: str) -> str:
    """Drop the fragment and a trailing slash."""
    without_fragment, _ = urldefrag(url)
    if without_fragment.endswith("/"):
        without_fragment = without_fragment[:-1]
    return without_fragment


def _host_variants(hostname: Optional[str]) -> set:
    if not hostname:
        return set()
    if hostname.startswith("www."):
        return {hostname, hostname[4:]}
    return {hostname, f"www.{hostname}"}


def extract_links(html: str, base_url: str, final_url: Optional[str] = None) -> List[str]:
    """
    Extract internal links from HTML.

    Relative links resolve against the final (post-redirect) URL. A link is
    internal when its host matches the base or final host, including the
    www / non-www variant of either.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    resolve_base = final_url or base_url

    valid_hosts = _host_variants(urlparse(base_url).hostname)
    valid_hosts |= _host_variants(urlparse(resolve_base).hostname)

    links = []
    seen = set()
    for anchor in soup.find_all("a", href=True):
        href = anchor.get("href", "").strip()
        if not href:
            continue
        try:
            absolute = urljoin(resolve_base, href)
            parsed = urlparse(absolute)
            hostname = parsed.hostname
        except ValueError:
            continue
        if parsed.scheme not in ("http", "https") or hostname not in valid_hosts:
            continue

        normalized = normalize_url(absolute)
        if normalized not in seen:
            seen.add(normalized)
            links.append(normalized)

    return links


def get_resource_type(url: str) -> Optional[str]:
    """Return the resource category for non-HTML files, or None for regular pages."""
    try:
        path = urlparse(url).path.lower()
    except ValueError:
        return None
    for resource_type, extensions in RESOURCE_EXTENSIONS.items():
        if any(path.endswith(ext) for ext in extensions):
            return resource_type
    return None


def extract_page_metadata(html: str) -> Tuple[Optional[str], Optional[str]]:
    """Return (title, meta description) from an HTML document."""
    soup = BeautifulSoup(html or "", "html.parser")

    title = None
    title_tag = soup.find("title")
    if title_tag:
        title = title_tag.get_text(strip=True) or None

    meta_description = None
    meta_tag = soup.find("meta", attrs={"name": "description"})
    if meta_tag:
        meta_description = str(meta_tag.get("content", "") or "").strip() or None

    return title, meta_description


def resource_title(url: str) -> Optional[str]:
    """File name of a resource URL, used in place of a page title."""
    path = urlparse(url).path
    filename = path.rsplit("/", 1)[-1]
    return unquote(filename) if filename else None
