import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="audit-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["CRAWL_DELAY_SECONDS"] = "0"
os.environ["PAGESPEED_DELAY_SECONDS"] = "0"
os.environ["INTERNAL_EMAIL_DOMAINS"] = "agency.test"
for _name in ("OPENAI_API_KEY", "RESEND_API_KEY", "PAGESPEED_API_KEY", "APP_BASE_URL", "SESSION_SECRET"):
    os.environ.pop(_name, None)

from types import SimpleNamespace

import httpx
import pytest

from services.auth import create_user
from services.database import Base, Organization, SessionLocal, engine


@pytest.fixture(autouse=True)
def db_tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def build_site_client(routes, requests=None):
    """
    httpx client serving a fake site.

    ``routes`` maps URLs (without trailing slash) to an HTML string, a
    ``(status, body)`` tuple, a ``(status, body, headers)`` tuple or an
    exception instance to raise. Unknown URLs return 404.
    """
    def handler(request):
        key = str(request.url).rstrip("/")
        if requests is not None:
            requests.append((request.method, key))
        route = routes.get(key)
        if route is None:
            return httpx.Response(404, text="Not Found")
        if isinstance(route, Exception):
            raise route
        if isinstance(route, str):
            return httpx.Response(200, text=route, headers={"content-type": "text/html"})
        status, body, *rest = route
        headers = rest[0] if rest else {}
        return httpx.Response(status, text=body, headers=headers)

    return httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=True)


@pytest.fixture
def site_client():
    clients = []

    def factory(routes, requests=None):
        client = build_site_client(routes, requests)
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.close()


class FakeLLM:
    """Stands in for the OpenAI client: returns canned chat completion contents in order."""

    def __init__(self, contents, prompt_tokens=1000, completion_tokens=200):
        self.contents = list(contents)
        self.calls = []
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        self.calls.append(kwargs)
        content = self.contents.pop(0)
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
            usage=SimpleNamespace(prompt_tokens=self.prompt_tokens, completion_tokens=self.completion_tokens),
        )


@pytest.fixture
def fake_llm():
    return FakeLLM


@pytest.fixture
def organization(db):
    org = Organization(name="Acme Co", website_url="https://example.com", status="customer")
    db.add(org)
    db.commit()
    db.refresh(org)
    return org


def _member(db, email, organization, role):
    user = create_user(db, email, "correct-horse")
    user.organization_id = organization.id if organization else None
    user.role = role
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def admin(db, organization):
    return _member(db, "admin@acme.test", organization, "admin")


@pytest.fixture
def team_member(db, organization):
    return _member(db, "member@acme.test", organization, "team_member")


@pytest.fixture
def viewer(db, organization):
    return _member(db, "viewer@acme.test", organization, "client_viewer")


@pytest.fixture
def staff(db):
    return _member(db, "ops@agency.test", None, None)


@pytest.fixture
def make_member(db):
    def factory(email, organization, role):
        return _member(db, email, organization, role)
    return factory
