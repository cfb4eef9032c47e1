import asyncio
import json

import httpx
import pytest

from services import config
from services.database import SiteAuditCheck
from services.email_service import RESEND_API_URL, send_email, send_invite_email
from services.llm import MissingAPIKeyError, get_openai_client, strip_code_fences
from services.summary import build_summary_prompt, generate_executive_summary, get_score_interpretation

SCORES = {"overall_score": 64, "seo_score": 72, "ai_readiness_score": 40, "technical_score": 88}


@pytest.fixture
def email_enabled(monkeypatch):
    monkeypatch.setattr(config, "EMAIL_ENABLED", True)
    monkeypatch.setattr(config, "RESEND_API_KEY", "re_test")


def resend_client(sent, status=200, body=None):
    def handler(request):
        sent.append((str(request.url), request.headers["Authorization"], json.loads(request.content)))
        return httpx.Response(status, json=body if body is not None else {"id": "email-1"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_send_email_requires_configuration():
    with pytest.raises(Exception, match="not configured"):
        asyncio.run(send_email("a@b.test", "Hello", text="Hi"))


def test_send_invite_email(email_enabled):
    sent = []

    async def run():
        async with resend_client(sent) as client:
            return await send_invite_email(
                "new@example.com", "https://app.test/accept-invite/abc", "Acme Co", "admin@acme.test",
                "client_viewer", reminder=True, client=client,
            )

    assert asyncio.run(run()) == {"id": "email-1"}
    url, authorization, payload = sent[0]
    assert url == RESEND_API_URL
    assert authorization == "Bearer re_test"
    assert payload["to"] == ["new@example.com"]
    assert payload["subject"] == "Reminder: You've been invited to join Acme Co"
    assert "as a Client Viewer" in payload["text"]
    assert "https://app.test/accept-invite/abc" in payload["text"]


def test_send_email_raises_provider_error(email_enabled):
    async def run():
        async with resend_client([], status=422, body={"message": "Invalid `to` field"}) as client:
            await send_email("bad", "Hello", text="Hi", client=client)

    with pytest.raises(Exception, match="Invalid `to` field"):
        asyncio.run(run())


@pytest.mark.parametrize("score,label", [(92, "Excellent"), (85, "Excellent"), (70, "Good"), (55, "Needs Work"), (12, "Poor")])
def test_score_interpretation(score, label):
    assert get_score_interpretation(score) == label


def summary_checks():
    failing = SiteAuditCheck(
        check_type="seo", check_name="missing_title", display_name="Missing Title", priority="critical",
        status="failed",
    )
    failing.set_details({"message": "3 pages have no title"})
    passing = SiteAuditCheck(check_type="technical", check_name="https", priority="critical", status="passed")
    return [failing, passing]


def test_build_summary_prompt():
    prompt = build_summary_prompt("https://example.com", 12, SCORES, summary_checks())

    assert "Overall Score: 64/100 (Needs Work)" in prompt
    assert "AI-Readiness Score: 40/100 (Poor)" in prompt
    assert "- Missing Title: 3 pages have no title" in prompt
    assert "- Technical: 1 passed" in prompt


def test_generate_executive_summary(fake_llm):
    llm = fake_llm(["  The site performs reasonably well.  "])

    text = generate_executive_summary("https://example.com", 12, SCORES, summary_checks(), client=llm)

    assert text == "The site performs reasonably well."
    assert llm.calls[0]["model"] == config.OPENAI_MODEL
    assert "Pages Analyzed: 12" in llm.calls[0]["messages"][1]["content"]


def test_openai_client_requires_key():
    with pytest.raises(MissingAPIKeyError):
        get_openai_client()


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences(None) == ""
