"""
GEO (AI readiness) audit.

Runs the programmatic GEO checks against the homepage, then sends a sample of
the site's most important pages to the LLM in small batches for qualitative
scoring. The technical and strategic scores combine into the overall GEO
score.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import httpx
from openai import OpenAI
from sqlalchemy.orm import Session

from services import config
from services.database import (
    GEO_COMPLETED, GEO_FAILED, GEO_PENDING, GEO_RUNNING,
    GeoAIAnalysis, GeoAudit, GeoCheck, get_db_session,
)
from services.fetcher import extract_links, fetch_page, get_resource_type, normalize_url
from services.geo_checks import (
    GEO_CHECKS, GeoCheckContext, calculate_technical_score, extract_content_text, get_category_scores,
    run_geo_check,
)
from services.llm import get_openai_client, strip_code_fences

logger = logging.getLogger(__name__)


class AIAnalysisError(Exception):
    """Raised when the LLM response cannot be parsed or validated"""
    pass


AI_BATCH_SIZE = 3
MAX_SAMPLE_CRAWL = 50
PAGE_PROMPT_CHARS = 6000

# gpt-4o-mini list prices per token
INPUT_TOKEN_COST = 0.15 / 1_000_000
OUTPUT_TOKEN_COST = 0.60 / 1_000_000

DIMENSION_WEIGHTS = {
    "data_quality": 0.25,
    "expert_credibility": 0.20,
    "comprehensiveness": 0.20,
    "citability": 0.25,
    "authority": 0.10,
}

TECHNICAL_WEIGHT = 0.4
STRATEGIC_WEIGHT = 0.6

GEO_QUALITY_GUIDE = """You are an expert in generative engine optimization (GEO): how likely AI answer engines
such as ChatGPT, Perplexity and Google AI Overviews are to cite a page as a source.

Score every page from 0 to 100 on five dimensions:
- data_quality: are statistics and claims specific, meaningful and sourced?
- expert_credibility: are there named experts, credentials or first-hand experience?
- comprehensiveness: does the page cover the topic fully, or leave obvious gaps?
- citability: are there crisp, self-contained statements an AI engine would quote?
- authority: E-E-A-T signals such as author bios, references and trust markers.

Also give an overall score, up to five short findings and up to five concrete recommendations."""


@dataclass
class SamplePage:
    url: str
    html: str
    status_code: int = 200
    depth: int = 0
    is_resource: bool = False


@dataclass
class AIAnalysisResult:
    analyses: List[Dict[str, Any]] = field(default_factory=list)
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost: float = 0.0


def start_geo_audit(
    db: Session,
    organization_id: Optional[int],
    url: str,
    created_by_id: Optional[int] = None,
    sample_size: int = 5,
    ai_analysis_enabled: bool = True
) -> GeoAudit:
    """Create a pending GEO audit. The caller schedules run_geo_audit."""
    parsed = urlparse(url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("Please enter a valid URL starting with http:// or https://")
    if sample_size < 0 or sample_size > 20:
        raise ValueError("Sample size must be between 0 and 20")

    audit = GeoAudit(
        organization_id=organization_id,
        created_by_id=created_by_id,
        url=url,
        status=GEO_PENDING,
        sample_size=sample_size,
        ai_analysis_enabled=ai_analysis_enabled,
    )
    db.add(audit)
    db.commit()
    db.refresh(audit)
    return audit


def chunk_pages(pages: List[Any], size: int = AI_BATCH_SIZE) -> List[List[Any]]:
    return [pages[i:i + size] for i in range(0, len(pages), size)]


def crawl_sample(
    url: str,
    max_pages: int,
    client: Optional[httpx.Client] = None,
    on_page: Optional[Callable[[SamplePage], None]] = None
) -> List[SamplePage]:
    """
    Breadth-first crawl of up to ``max_pages`` pages, homepage first.

    ``on_page`` is called with each page as soon as it is fetched.
    """
    pages = []
    seen = {normalize_url(url)}
    queue = [(url, 0)]

    while queue and len(pages) < max_pages:
        current, depth = queue.pop(0)
        if get_resource_type(current):
            continue

        result = fetch_page(current, client=client)
        if result.error:
            logger.info("[GEO Crawl] Skipping %s: %s", current, result.error)
            continue

        page = SamplePage(url=current, html=result.html, status_code=result.status_code, depth=depth)
        pages.append(page)
        if on_page:
            on_page(page)
        if result.status_code != 200:
            continue

        for link in extract_links(result.html, url, result.final_url):
            key = normalize_url(link)
            if key not in seen:
                seen.add(key)
                queue.append((link, depth + 1))

    return pages


def _path_depth(url: str) -> int:
    return len([segment for segment in urlparse(url).path.split("/") if segment])


def select_top_pages(pages: List[Any], base_url: str, n: int) -> List[Any]:
    """
    Pick the ``n`` pages most worth analyzing: the homepage first, then
    successful, non-resource pages ordered by how shallow their path is.
    """
    if n <= 0:
        return []

    base_host = urlparse(base_url).netloc.lower().removeprefix("www.")
    candidates = []
    homepage = None
    for page in pages:
        parsed = urlparse(page.url)
        if getattr(page, "is_resource", False) or get_resource_type(page.url):
            continue
        if getattr(page, "status_code", 200) != 200:
            continue
        if parsed.netloc.lower().removeprefix("www.") != base_host:
            continue
        if homepage is None and parsed.path in ("", "/"):
            homepage = page
            continue
        candidates.append(page)

    candidates.sort(key=lambda p: (_path_depth(p.url), len(p.url)))
    selected = ([homepage] if homepage else []) + candidates
    return selected[:n]


def _build_prompt(batch: List[Any]) -> str:
    sections = []
    for i, page in enumerate(batch, start=1):
        content = extract_content_text(page.html)
        truncated = content[:PAGE_PROMPT_CHARS]
        if len(content) > PAGE_PROMPT_CHARS:
            truncated += "\n...[truncated for brevity]"
        sections.append(f"### Page {i}: {page.url}\n\n{truncated}")

    return f"""{GEO_QUALITY_GUIDE}

## Pages to Analyze

{chr(10).join(sections)}

Return ONLY a JSON object with this exact structure, no markdown and no explanation:
{{
  "analyses": [
    {{
      "url": "<page url>",
      "scores": {{
        "data_quality": 0, "expert_credibility": 0, "comprehensiveness": 0,
        "citability": 0, "authority": 0, "overall": 0
      }},
      "findings": ["..."],
      "recommendations": ["..."]
    }}
  ]
}}"""


def _validate_score(value: Any, name: str, url: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise AIAnalysisError(f"Score {name} for {url} is not a number")
    if value < 0 or value > 100:
        raise AIAnalysisError(f"Score {name} for {url} is out of range: {value}")
    return round(value)


def parse_analysis_response(text: str) -> List[Dict[str, Any]]:
    """Parse and validate the model's ``{"analyses": [...]}`` payload."""
    try:
        data = json.loads(strip_code_fences(text))
    except ValueError as e:
        logger.error("[AI Auditor] Failed to parse JSON response: %s", (text or "")[:500])
        raise AIAnalysisError(f"Failed to parse AI response as JSON: {e}")

    if not isinstance(data, dict) or not isinstance(data.get("analyses"), list):
        raise AIAnalysisError("AI response is missing the analyses array")

    analyses = []
    for item in data["analyses"]:
        if not isinstance(item, dict) or not item.get("url"):
            raise AIAnalysisError("AI analysis is missing the page url")
        url = item["url"]
        raw_scores = item.get("scores")
        if not isinstance(raw_scores, dict):
            raise AIAnalysisError(f"AI analysis for {url} is missing scores")

        scores = {name: _validate_score(raw_scores.get(name), name, url) for name in DIMENSION_WEIGHTS}
        if raw_scores.get("overall") is not None:
            scores["overall"] = _validate_score(raw_scores["overall"], "overall", url)
        else:
            scores["overall"] = round(sum(scores[k] * w for k, w in DIMENSION_WEIGHTS.items()))

        analyses.append({
            "url": url,
            "scores": scores,
            "findings": [str(f) for f in item.get("findings") or []],
            "recommendations": [str(r) for r in item.get("recommendations") or []],
        })
    return analyses


def _analyze_batch(batch: List[Any], client: OpenAI):
    response = client.chat.completions.create(
        model=config.OPENAI_MODEL,
        messages=[{"role": "user", "content": _build_prompt(batch)}],
        temperature=0.3,
        response_format={"type": "json_object"},
    )

    usage = getattr(response, "usage", None)
    input_tokens = (getattr(usage, "prompt_tokens", 0) or 0) if usage else 0
    output_tokens = (getattr(usage, "completion_tokens", 0) or 0) if usage else 0
    logger.info("[AI Auditor] Analyzed %d pages, tokens: %d/%d", len(batch), input_tokens, output_tokens)

    analyses = parse_analysis_response(response.choices[0].message.content or "")
    return analyses, input_tokens, output_tokens


def run_ai_analysis(
    pages: List[Any],
    on_batch_complete: Optional[Callable[[List[Dict[str, Any]], Dict[str, int], float], None]] = None,
    client: Optional[OpenAI] = None
) -> AIAnalysisResult:
    """
    Score pages with the LLM, ``AI_BATCH_SIZE`` pages per request.

    ``on_batch_complete(analyses, tokens, cost)`` is called after every batch
    so results can be persisted as they arrive.
    """
    result = AIAnalysisResult()
    if not pages:
        return result

    client = client or get_openai_client()
    logger.info("[AI Auditor] Starting analysis of %d pages", len(pages))

    for batch in chunk_pages(pages, AI_BATCH_SIZE):
        analyses, input_tokens, output_tokens = _analyze_batch(batch, client)
        batch_cost = input_tokens * INPUT_TOKEN_COST + output_tokens * OUTPUT_TOKEN_COST

        result.analyses.extend(analyses)
        result.total_input_tokens += input_tokens
        result.total_output_tokens += output_tokens
        result.total_cost += batch_cost

        if on_batch_complete:
            on_batch_complete(analyses, {"prompt_tokens": input_tokens, "completion_tokens": output_tokens}, batch_cost)

    logger.info(
        "[AI Auditor] Completed analysis: %d pages, %d/%d tokens, $%.4f",
        len(result.analyses), result.total_input_tokens, result.total_output_tokens, result.total_cost,
    )
    return result


def calculate_strategic_score(analyses: List[Dict[str, Any]]) -> int:
    """Weighted average of the five quality dimensions, averaged across pages."""
    if not analyses:
        return 0

    total = 0.0
    for analysis in analyses:
        scores = analysis["scores"]
        total += sum(scores[name] * weight for name, weight in DIMENSION_WEIGHTS.items())
    return round(total / len(analyses))


def calculate_overall_score(technical_score: int, strategic_score: Optional[int]) -> int:
    if strategic_score is None:
        return technical_score
    return round(technical_score * TECHNICAL_WEIGHT + strategic_score * STRATEGIC_WEIGHT)


def _save_analyses(db: Session, audit_id: int, analyses: List[Dict[str, Any]], tokens: Dict[str, int], cost: float):
    for analysis in analyses:
        scores = analysis["scores"]
        db.add(GeoAIAnalysis(
            audit_id=audit_id,
            page_url=analysis["url"],
            model_used=config.OPENAI_MODEL,
            prompt_tokens=tokens["prompt_tokens"],
            completion_tokens=tokens["completion_tokens"],
            cost=cost,
            score_data_quality=scores["data_quality"],
            score_expert_credibility=scores["expert_credibility"],
            score_comprehensiveness=scores["comprehensiveness"],
            score_citability=scores["citability"],
            score_authority=scores["authority"],
            score_overall=scores["overall"],
            findings_json=json.dumps(analysis["findings"]),
            recommendations_json=json.dumps(analysis["recommendations"]),
        ))
    _touch_audit(db, audit_id)
    logger.info(
        "[GEO Background] AI batch complete: %d pages, %d/%d tokens, $%.4f",
        len(analyses), tokens["prompt_tokens"], tokens["completion_tokens"], cost,
    )


def run_geo_checks(db: Session, audit: GeoAudit, homepage: SamplePage, client: Optional[httpx.Client] = None) -> List[GeoCheck]:
    context = GeoCheckContext(url=homepage.url, html=homepage.html, client=client)
    rows = []
    for definition in GEO_CHECKS:
        result = run_geo_check(definition, context)
        if result is None:
            continue
        details = result.details or {}
        row = GeoCheck(
            audit_id=audit.id,
            category=definition.category,
            check_name=definition.name,
            priority=definition.priority,
            status=result.status,
            display_name=definition.display_name,
        )
        row.set_details({**details, "fix_guidance": definition.fix_guidance} if definition.fix_guidance else details)
        db.add(row)
        rows.append(row)
        logger.info("[GEO Runner] %s: %s (%s)", definition.name, result.status, definition.category)

    db.commit()
    return rows


def _touch_audit(db: Session, audit_id: int):
    """Record progress so the stale-audit sweep leaves a live run alone."""
    db.query(GeoAudit).filter(
        GeoAudit.id == audit_id,
        GeoAudit.status == GEO_RUNNING,
    ).update({"updated_at": datetime.utcnow()}, synchronize_session=False)
    db.commit()


def run_geo_audit(
    audit_id: int,
    url: str,
    client: Optional[httpx.Client] = None,
    llm: Optional[OpenAI] = None
):
    """
    Background task: run a complete GEO audit.

    Progress bumps ``updated_at``. The final write only applies while the
    audit is still running, so an audit failed by the stale sweep stays
    failed. Any failure marks the audit failed with the error message.
    """
    db = get_db_session()
    try:
        audit = db.query(GeoAudit).filter(GeoAudit.id == audit_id).first()
        if not audit:
            raise ValueError("Audit not found")

        now = datetime.utcnow()
        started_run = db.query(GeoAudit).filter(
            GeoAudit.id == audit_id,
            GeoAudit.status == GEO_PENDING,
        ).update({"status": GEO_RUNNING, "started_at": now, "updated_at": now}, synchronize_session=False)
        db.commit()
        if not started_run:
            logger.info("[GEO Background] Audit %s is %s, not starting", audit_id, audit.status)
            return

        logger.info("[GEO Background] Starting audit %s for %s", audit_id, url)
        started = time.monotonic()
        sample_size = audit.sample_size or 0
        ai_enabled = bool(audit.ai_analysis_enabled)

        max_pages = max(min(sample_size * 3, MAX_SAMPLE_CRAWL), 1)
        pages = crawl_sample(url, max_pages, client=client, on_page=lambda page: _touch_audit(db, audit_id))
        if not pages or pages[0].status_code >= 400:
            raise ValueError(f"Could not fetch {url}")

        checks = run_geo_checks(db, audit, pages[0], client=client)
        technical_score = calculate_technical_score(checks)
        logger.info("[GEO Background] Programmatic checks complete: %d/100", technical_score)

        values = {}
        strategic_score = None
        pages_analyzed = 1
        ai_available = llm is not None or config.is_openai_enabled()
        if ai_enabled and sample_size > 0 and not ai_available:
            logger.warning("[GEO Background] OpenAI is not configured; skipping AI analysis for audit %s", audit_id)
        elif ai_enabled and sample_size > 0:
            selected = select_top_pages(pages, url, sample_size)
            logger.info("[GEO Background] Selected %d pages for AI analysis", len(selected))
            if selected:
                ai_result = run_ai_analysis(
                    selected,
                    on_batch_complete=lambda analyses, tokens, cost: _save_analyses(db, audit_id, analyses, tokens, cost),
                    client=llm,
                )
                strategic_score = calculate_strategic_score(ai_result.analyses)
                pages_analyzed = len(selected)
                values.update({
                    "total_input_tokens": ai_result.total_input_tokens,
                    "total_output_tokens": ai_result.total_output_tokens,
                    "total_cost": ai_result.total_cost,
                    "model_used": config.OPENAI_MODEL,
                })

        overall = calculate_overall_score(technical_score, strategic_score)
        now = datetime.utcnow()
        values.update({
            "technical_score": technical_score,
            "strategic_score": strategic_score,
            "overall_geo_score": overall,
            "pages_analyzed": pages_analyzed,
            "execution_time_ms": int((time.monotonic() - started) * 1000),
            "status": GEO_COMPLETED,
            "completed_at": now,
            "updated_at": now,
        })
        completed = db.query(GeoAudit).filter(
            GeoAudit.id == audit_id,
            GeoAudit.status == GEO_RUNNING,
        ).update(values, synchronize_session=False)
        db.commit()

        if not completed:
            logger.warning("[GEO Background] Audit %s is no longer running, results discarded", audit_id)
            return
        logger.info(
            "[GEO Background] Audit %s completed: technical=%s strategic=%s overall=%s",
            audit_id, technical_score, strategic_score, overall,
        )

    except Exception as e:
        logger.exception("[GEO Background] Audit %s failed", audit_id)
        db.rollback()
        db.query(GeoAudit).filter(
            GeoAudit.id == audit_id,
            GeoAudit.status.in_((GEO_PENDING, GEO_RUNNING)),
        ).update(
            {"status": GEO_FAILED, "error_message": str(e)[:1000], "completed_at": datetime.utcnow()},
            synchronize_session=False,
        )
        db.commit()
    finally:
        db.close()


def get_geo_audit_report(db: Session, audit: GeoAudit) -> dict:
    """Audit row plus its checks, category scores and AI analyses."""
    checks = db.query(GeoCheck).filter(GeoCheck.audit_id == audit.id).order_by(GeoCheck.id).all()
    analyses = db.query(GeoAIAnalysis).filter(GeoAIAnalysis.audit_id == audit.id).order_by(GeoAIAnalysis.id).all()

    return {
        "audit": audit.to_dict(),
        "category_scores": get_category_scores(checks),
        "checks": [
            {
                "category": c.category,
                "check_name": c.check_name,
                "priority": c.priority,
                "status": c.status,
                "display_name": c.display_name,
                "details": c.get_details(),
            }
            for c in checks
        ],
        "analyses": [
            {
                "page_url": a.page_url,
                "scores": {
                    "data_quality": a.score_data_quality,
                    "expert_credibility": a.score_expert_credibility,
                    "comprehensiveness": a.score_comprehensiveness,
                    "citability": a.score_citability,
                    "authority": a.score_authority,
                    "overall": a.score_overall,
                },
                "findings": a.get_findings(),
                "recommendations": a.get_recommendations(),
            }
            for a in analyses
        ],
    }
