"""
Shared fixtures: in-memory database, stubbed carrier APIs, test client.
"""

import itertools

import pytest
import httpx
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from quotedesk.cache import ConfigCache
from quotedesk.db import configure_sqlite, get_session
from quotedesk.deps import get_automation_client, get_registry
from quotedesk.main import app
from quotedesk.models import Account, Opportunity, Quote
from quotedesk.services.registry import build_registry

BTIS_URL = "https://btis.test"
COTERIE_URL = "https://coterie.test"


class CarrierStub:
    """httpx.MockTransport handler serving queued responses per (method, url)."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, method, url, *responses):
        self.routes.setdefault((method, url), []).extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        queue = self.routes.get((request.method, str(request.url)))
        if not queue:
            return httpx.Response(404, json={"error": "not found"})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_sqlite(engine)
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def read(engine):
    """Run a query in a short-lived session so no transaction stays open between requests."""
    def _read(fn):
        with Session(engine) as s:
            return fn(s)
    return _read


@pytest.fixture
def config(monkeypatch):
    monkeypatch.setenv("BTIS_API_URL", BTIS_URL)
    monkeypatch.setenv("BTIS_API_KEY", "btis-key")
    monkeypatch.setenv("BTIS_PARTNER_ID", "ptnr_test")
    monkeypatch.setenv("COTERIE_API_URL", COTERIE_URL)
    monkeypatch.setenv("COTERIE_API_KEY", "coterie-key")
    monkeypatch.delenv("QUOTE_STAGE_POLICY", raising=False)
    monkeypatch.delenv("BROWSERBASE_API_KEY", raising=False)
    return ConfigCache()


@pytest.fixture
def carrier_stub():
    return CarrierStub()


@pytest.fixture
def sleeps():
    """Backoff delays requested by retry loops (nothing actually sleeps)."""
    return []


@pytest.fixture
def registry(config, engine, carrier_stub, sleeps):
    registry = build_registry(
        config,
        session_factory=lambda: Session(engine),
        transport=httpx.MockTransport(carrier_stub),
        sleep=sleeps.append,
    )
    yield registry
    registry.close()


@pytest.fixture
def client(engine, registry):
    def override_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_automation_client] = lambda: None
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_opportunity(engine):
    """Create account -> opportunity and return the opportunity id."""
    counter = itertools.count(1)

    def _make_opportunity(product_line="GL", stage="quote"):
        with Session(engine) as s:
            account = Account(name=f"Account {next(counter)}")
            s.add(account)
            s.flush()
            opportunity = Opportunity(account_id=account.id, name=f"{account.name} - {product_line}", stage=stage)
            s.add(opportunity)
            s.commit()
            return opportunity.id
    return _make_opportunity


@pytest.fixture
def make_quote(engine, make_opportunity):
    """Create account -> opportunity -> agent-submitted quote and return the quote id."""
    def _make_quote(carrier_name="Markel", product_line="GL", stage="quote", carrier_quote_id=None):
        opportunity_id = make_opportunity(product_line=product_line, stage=stage)
        with Session(engine) as s:
            quote = Quote(
                opportunity_id=opportunity_id,
                carrier_name=carrier_name,
                product_line=product_line,
                status="submitted_agent",
                submission_method="agent",
                carrier_quote_id=carrier_quote_id,
            )
            s.add(quote)
            s.commit()
            return quote.id
    return _make_quote
