"""
PDF export of site audit and performance audit reports.
Site audits: cover with scores, executive summary, then failed and warning
checks grouped by type. Performance audits: average score, then per page
scores, Core Web Vitals and the top optimization opportunities.
"""

from datetime import datetime
from typing import Dict, List, Optional

from fpdf import FPDF

from services.database import PerformanceAudit, PerformanceAuditResult, SiteAudit, SiteAuditCheck

BRAND_BLUE = (30, 64, 175)
DARK_TEXT = (30, 30, 40)
MEDIUM_TEXT = (90, 90, 100)
LIGHT_TEXT = (150, 150, 160)
RULE_GRAY = (210, 210, 220)
SUCCESS_GREEN = (22, 163, 74)
WARNING_YELLOW = (202, 138, 4)
ERROR_RED = (220, 38, 38)

CHECK_TYPE_LABELS = {
    "seo": "SEO",
    "ai_readiness": "AI Readiness",
    "technical": "Technical",
}

PRIORITY_ORDER = {"critical": 0, "recommended": 1, "optional": 2}


def sanitize_text(text: Optional[str]) -> str:
    """
    Replace Unicode characters not supported by the core PDF fonts with ASCII
    equivalents. Anything else outside ASCII becomes '?'.
    """
    if not text:
        return ""

    replacements = {
        "\u201c": '"',
        "\u201d": '"',
        "\u2018": "'",
        "\u2019": "'",
        "\u2013": "-",
        "\u2014": "-",
        "\u2026": "...",
        "\u2022": "*",
        "\u00b7": "*",
        "\u00d7": "x",
        "\u2192": "->",
        "\u2190": "<-",
        "\u2264": "<=",
        "\u2265": ">=",
        "\u2122": "(TM)",
        "\u00ae": "(R)",
        "\u00a9": "(C)",
        "\u00a0": " ",
        "\u2009": " ",
        "\u200b": "",
        "\ufeff": "",
    }
    for unicode_char, ascii_char in replacements.items():
        text = text.replace(unicode_char, ascii_char)

    return "".join(char if ord(char) < 128 else "?" for char in text)


def score_color(score: Optional[int]) -> tuple:
    if score is None:
        return LIGHT_TEXT
    if score >= 85:
        return SUCCESS_GREEN
    if score >= 50:
        return WARNING_YELLOW
    return ERROR_RED


class AuditReportPDF(FPDF):
    """Audit report with a running header and numbered footer."""

    def __init__(self, site_url: str, report_title: str = "Site Audit Report"):
        super().__init__()
        self.site_url = sanitize_text(site_url)
        self.report_title = report_title
        self.set_margins(left=15, top=18, right=15)
        self.set_auto_page_break(auto=True, margin=25)

    def header(self):
        if self.page_no() > 1:
            self.set_font("Helvetica", "", 9)
            self.set_text_color(*MEDIUM_TEXT)
            self.set_xy(15, 10)
            self.cell(0, 8, f"{self.report_title} - {self.site_url}", align="L")
            self.set_draw_color(*RULE_GRAY)
            self.set_line_width(0.3)
            self.line(15, 19, 195, 19)
            self.ln(14)

    def footer(self):
        self.set_y(-15)
        self.set_font("Helvetica", "", 8)
        self.set_text_color(*LIGHT_TEXT)
        self.cell(90, 10, "Generated by the agency audit platform", align="L")
        self.cell(90, 10, f"Page {self.page_no()} of {{nb}}", align="R")

    def section_header(self, title: str, subtitle: str = ""):
        self.set_font("Helvetica", "B", 18)
        self.set_text_color(*BRAND_BLUE)
        self.cell(0, 12, title, align="L")
        self.ln(10)

        if subtitle:
            self.set_font("Helvetica", "", 10)
            self.set_text_color(*MEDIUM_TEXT)
            self.multi_cell(0, 5, subtitle)
            self.ln(4)


def _add_cover_page(pdf: AuditReportPDF, audit: SiteAudit):
    pdf.add_page()
    pdf.ln(30)

    pdf.set_font("Helvetica", "B", 28)
    pdf.set_text_color(*BRAND_BLUE)
    pdf.cell(0, 14, "Site Audit Report", align="C")
    pdf.ln(16)

    pdf.set_font("Helvetica", "", 13)
    pdf.set_text_color(*DARK_TEXT)
    pdf.cell(0, 8, pdf.site_url, align="C")
    pdf.ln(8)

    finished = audit.completed_at or audit.created_at or datetime.utcnow()
    pdf.set_font("Helvetica", "", 10)
    pdf.set_text_color(*MEDIUM_TEXT)
    pdf.cell(0, 6, f"{finished.strftime('%B %d, %Y')} | {audit.pages_crawled or 0} pages crawled", align="C")
    pdf.ln(24)

    pdf.set_font("Helvetica", "B", 48)
    pdf.set_text_color(*score_color(audit.overall_score))
    overall = audit.overall_score if audit.overall_score is not None else "-"
    pdf.cell(0, 22, str(overall), align="C")
    pdf.ln(22)
    pdf.set_font("Helvetica", "", 11)
    pdf.set_text_color(*MEDIUM_TEXT)
    pdf.cell(0, 6, "Overall Score", align="C")
    pdf.ln(20)

    sub_scores = [
        ("SEO", audit.seo_score),
        ("AI Readiness", audit.ai_readiness_score),
        ("Technical", audit.technical_score),
    ]
    pdf.set_x(15)
    for label, score in sub_scores:
        pdf.set_font("Helvetica", "B", 20)
        pdf.set_text_color(*score_color(score))
        pdf.cell(60, 10, str(score) if score is not None else "-", align="C")
    pdf.ln(10)
    pdf.set_x(15)
    for label, _ in sub_scores:
        pdf.set_font("Helvetica", "", 10)
        pdf.set_text_color(*MEDIUM_TEXT)
        pdf.cell(60, 6, label, align="C")
    pdf.ln(16)

    pdf.set_font("Helvetica", "", 10)
    pdf.set_text_color(*DARK_TEXT)
    pdf.cell(
        0, 6,
        f"{audit.passed_count or 0} passed | {audit.warning_count or 0} warnings | {audit.failed_count or 0} failed",
        align="C",
    )


def _add_executive_summary(pdf: AuditReportPDF, audit: SiteAudit):
    if not audit.executive_summary:
        return

    pdf.add_page()
    pdf.section_header("Executive Summary")
    pdf.set_font("Helvetica", "", 10)
    pdf.set_text_color(*DARK_TEXT)
    for paragraph in sanitize_text(audit.executive_summary).split("\n\n"):
        pdf.multi_cell(0, 5, paragraph.strip())
        pdf.ln(3)


def group_issues(checks: List[SiteAuditCheck]) -> Dict[str, List[SiteAuditCheck]]:
    """Failed and warning checks by check type, most severe first."""
    grouped: Dict[str, List[SiteAuditCheck]] = {}
    for check in checks:
        if check.status not in ("failed", "warning"):
            continue
        grouped.setdefault(check.check_type, []).append(check)

    for items in grouped.values():
        items.sort(key=lambda c: (c.status != "failed", PRIORITY_ORDER.get(c.priority, 3), c.check_name))
    return grouped


def _add_issues(pdf: AuditReportPDF, checks: List[SiteAuditCheck]):
    grouped = group_issues(checks)
    pdf.add_page()
    pdf.section_header("Issues Found", "Failed checks and warnings, grouped by category")

    if not grouped:
        pdf.set_font("Helvetica", "", 11)
        pdf.set_text_color(*SUCCESS_GREEN)
        pdf.cell(0, 8, "No issues found. Every check passed.", align="L")
        return

    for check_type in ("seo", "ai_readiness", "technical"):
        items = grouped.get(check_type)
        if not items:
            continue

        if pdf.get_y() > 230:
            pdf.add_page()
        pdf.set_font("Helvetica", "B", 14)
        pdf.set_text_color(*DARK_TEXT)
        pdf.cell(0, 9, f"{CHECK_TYPE_LABELS[check_type]} ({len(items)})", align="L")
        pdf.ln(10)

        for check in items:
            if pdf.get_y() > 250:
                pdf.add_page()

            color = ERROR_RED if check.status == "failed" else WARNING_YELLOW
            pdf.set_font("Helvetica", "B", 10)
            pdf.set_text_color(*color)
            pdf.cell(22, 6, check.status.upper(), align="L")
            pdf.set_text_color(*DARK_TEXT)
            name = sanitize_text(check.display_name or check.check_name)
            page = check.page.url if check.page is not None else None
            pdf.multi_cell(0, 6, f"{name} ({check.priority})")

            if page:
                pdf.set_font("Helvetica", "", 8)
                pdf.set_text_color(*LIGHT_TEXT)
                pdf.set_x(37)
                pdf.multi_cell(0, 4, sanitize_text(page))
            if check.fix_guidance:
                pdf.set_font("Helvetica", "", 9)
                pdf.set_text_color(*MEDIUM_TEXT)
                pdf.set_x(37)
                pdf.multi_cell(0, 4.5, sanitize_text(check.fix_guidance))
            pdf.ln(3)

        pdf.ln(4)


def build_audit_pdf(audit: SiteAudit, checks: List[SiteAuditCheck]) -> bytes:
    """Render a finished audit as a PDF document."""
    pdf = AuditReportPDF(audit.url)
    pdf.alias_nb_pages()

    _add_cover_page(pdf, audit)
    _add_executive_summary(pdf, audit)
    _add_issues(pdf, checks)

    return bytes(pdf.output())


RATING_COLORS = {
    "good": SUCCESS_GREEN,
    "needs_improvement": WARNING_YELLOW,
    "poor": ERROR_RED,
}

OPPORTUNITIES_PER_PAGE = 5


def _format_vital(name: str, result: PerformanceAuditResult) -> str:
    if name == "LCP":
        return f"{result.lcp_ms / 1000:.1f}s" if result.lcp_ms is not None else "-"
    if name == "INP":
        return f"{result.inp_ms}ms" if result.inp_ms is not None else "-"
    return f"{result.cls_score:.3f}" if result.cls_score is not None else "-"


def _add_performance_cover(pdf: AuditReportPDF, audit: PerformanceAudit, results: List[PerformanceAuditResult]):
    pdf.add_page()
    pdf.ln(30)

    pdf.set_font("Helvetica", "B", 28)
    pdf.set_text_color(*BRAND_BLUE)
    pdf.cell(0, 14, "Performance Report", align="C")
    pdf.ln(16)

    pages = sorted({r.url for r in results})
    finished = audit.completed_at or audit.created_at or datetime.utcnow()
    pdf.set_font("Helvetica", "", 10)
    pdf.set_text_color(*MEDIUM_TEXT)
    pdf.cell(0, 6, f"{finished.strftime('%B %d, %Y')} | {len(pages)} pages tested", align="C")
    pdf.ln(24)

    scores = [r.performance_score for r in results if r.performance_score is not None]
    average = int(round(sum(scores) / len(scores))) if scores else None
    pdf.set_font("Helvetica", "B", 48)
    pdf.set_text_color(*score_color(average))
    pdf.cell(0, 22, str(average) if average is not None else "-", align="C")
    pdf.ln(22)
    pdf.set_font("Helvetica", "", 11)
    pdf.set_text_color(*MEDIUM_TEXT)
    pdf.cell(0, 6, "Average Performance Score", align="C")


def _add_performance_page(pdf: AuditReportPDF, url: str, results: List[PerformanceAuditResult]):
    if pdf.get_y() > 200:
        pdf.add_page()
    pdf.set_font("Helvetica", "B", 13)
    pdf.set_text_color(*DARK_TEXT)
    pdf.multi_cell(0, 7, sanitize_text(url))
    pdf.ln(2)

    pdf.set_font("Helvetica", "B", 9)
    pdf.set_text_color(*MEDIUM_TEXT)
    for header in ("Device", "Performance", "Accessibility", "Best Practices", "SEO", "LCP", "INP", "CLS"):
        pdf.cell(22.5, 6, header, align="C")
    pdf.ln(6)

    for result in sorted(results, key=lambda r: r.device != "mobile"):
        pdf.set_font("Helvetica", "", 9)
        pdf.set_text_color(*DARK_TEXT)
        pdf.cell(22.5, 6, result.device.capitalize(), align="C")
        for score in (result.performance_score, result.accessibility_score, result.best_practices_score, result.seo_score):
            pdf.set_text_color(*score_color(score))
            pdf.cell(22.5, 6, str(score) if score is not None else "-", align="C")
        for name, rating in (("LCP", result.lcp_rating), ("INP", result.inp_rating), ("CLS", result.cls_rating)):
            pdf.set_text_color(*RATING_COLORS.get(rating, LIGHT_TEXT))
            pdf.cell(22.5, 6, _format_vital(name, result), align="C")
        pdf.ln(6)
    pdf.ln(3)

    mobile = next((r for r in results if r.device == "mobile"), results[0])
    opportunities = mobile.get_opportunities()[:OPPORTUNITIES_PER_PAGE]
    if opportunities:
        pdf.set_font("Helvetica", "B", 10)
        pdf.set_text_color(*DARK_TEXT)
        pdf.cell(0, 6, "Optimization Opportunities", align="L")
        pdf.ln(6)
        for opportunity in opportunities:
            if pdf.get_y() > 255:
                pdf.add_page()
            pdf.set_font("Helvetica", "", 9)
            pdf.set_text_color(*DARK_TEXT)
            line = sanitize_text(opportunity.get("title") or opportunity.get("id") or "")
            if opportunity.get("display_value"):
                line += f" ({sanitize_text(opportunity['display_value'])})"
            pdf.multi_cell(0, 5, f"* {line}")
            pdf.ln(1)
    pdf.ln(6)


def build_performance_pdf(audit: PerformanceAudit, results: List[PerformanceAuditResult]) -> bytes:
    """Render a performance audit as a PDF document."""
    urls = audit.get_urls()
    pdf = AuditReportPDF(urls[0] if urls else "", report_title="Performance Report")
    pdf.alias_nb_pages()

    _add_performance_cover(pdf, audit, results)
    pdf.add_page()
    pdf.section_header("Results by Page", "Lab scores from Lighthouse, Core Web Vitals from field data where available")

    by_url: Dict[str, List[PerformanceAuditResult]] = {}
    for result in results:
        by_url.setdefault(result.url, []).append(result)
    if not by_url:
        pdf.set_font("Helvetica", "", 11)
        pdf.set_text_color(*MEDIUM_TEXT)
        pdf.cell(0, 8, "No results were collected for this audit.", align="L")
    for url in urls:
        if url in by_url:
            _add_performance_page(pdf, url, by_url[url])

    return bytes(pdf.output())
