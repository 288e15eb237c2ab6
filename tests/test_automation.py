"""
Browser automation tests: run lifecycle, provider client, result mapping and
the session endpoints.
"""

import json

import httpx
import pytest

from quotedesk.errors import (
    NotFoundError, PersistenceConflictError, SessionAlreadyCompletedError, TransientUpstreamError,
    ValidationError,
)
from quotedesk.deps import get_automation_client
from quotedesk.main import app
from quotedesk.models import AutomationRun, Opportunity, Quote
from quotedesk.schemas import AutomationResult, PortalCredentials
from quotedesk.services.automation import AutomationSessionManager, BrowserbaseClient
from quotedesk.services.carriers.portal import response_from_run
from quotedesk.services.ingestion import QuoteIngestionGateway

BB_URL = "https://bb.test/v1"
PORTAL_URL = "https://agents.markel.com/quote"
CREDENTIALS = PortalCredentials(username="agent@broker.test", password="s3cret-pw")


class ProviderStub:
    """MockTransport handler for the automation provider."""

    def __init__(self, create=None, sessions=None):
        self.create = create or httpx.Response(200, json={"id": "sess_remote_1", "status": "RUNNING"})
        self.sessions = sessions or {}
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if request.method == "POST" and request.url.path == "/v1/sessions":
            return self.create
        session_id = request.url.path.rsplit("/", 1)[-1]
        if request.method == "GET" and session_id in self.sessions:
            return httpx.Response(200, json=self.sessions[session_id])
        return httpx.Response(404, json={"error": "unknown session"})


def provider_client(stub, sleeps):
    return BrowserbaseClient(
        api_url=BB_URL,
        api_key="bb-key",
        project_id="proj_1",
        transport=httpx.MockTransport(stub),
        sleep=sleeps.append,
    )


def start(manager, quote_id, **kwargs):
    kwargs.setdefault("carrier_name", "Markel")
    kwargs.setdefault("portal_url", PORTAL_URL)
    kwargs.setdefault("form_data", {"business_name": "Acme Roofing", "class_code": "91580"})
    return manager.start(quote_id=quote_id, **kwargs)


# ============================================================================
# 1. RUN LIFECYCLE
# ============================================================================

class TestSessionLifecycle:

    def test_start_records_running_run(self, make_quote, session):
        quote_id = make_quote()
        run = start(AutomationSessionManager(session), quote_id, credentials=CREDENTIALS)

        assert run.status == "running"
        assert run.session_id.startswith("bb_")
        assert run.retry_count == 0
        assert run.parent_run_id is None
        assert run.completed_at is None

        input_data = json.loads(run.input_data_json)
        assert input_data["portal_url"] == PORTAL_URL
        assert input_data["has_credentials"] is True
        assert input_data["form_fields"] == ["business_name", "class_code"]
        assert "s3cret-pw" not in run.input_data_json
        assert "agent@broker.test" not in run.input_data_json

    def test_session_ids_are_unique(self, make_quote, session):
        quote_id = make_quote()
        manager = AutomationSessionManager(session)
        assert start(manager, quote_id).session_id != start(manager, quote_id).session_id

    def test_portal_url_required(self, make_quote, session):
        quote_id = make_quote()
        with pytest.raises(ValidationError):
            start(AutomationSessionManager(session), quote_id, portal_url="")
        assert session.query(AutomationRun).count() == 0

    def test_unknown_quote(self, session):
        with pytest.raises(NotFoundError):
            start(AutomationSessionManager(session), 999)

    def test_complete_success(self, make_quote, session):
        quote_id = make_quote()
        manager = AutomationSessionManager(session)
        run = start(manager, quote_id)

        completed = manager.complete(run.session_id, AutomationResult(
            status="success",
            output_data={"quote_number": "MK-100", "premium": 1800},
            screenshot_urls=["https://shots.test/1.png"],
            logs="filled 12 fields",
            error_message="ignored on success",
        ))

        assert completed.status == "success"
        assert completed.completed_at is not None
        assert completed.error_message is None
        assert json.loads(completed.output_data_json)["quote_number"] == "MK-100"
        assert json.loads(completed.screenshot_urls_json) == ["https://shots.test/1.png"]
        assert completed.logs == "filled 12 fields"

    def test_complete_twice_is_rejected(self, make_quote, session):
        quote_id = make_quote()
        manager = AutomationSessionManager(session)
        run = start(manager, quote_id)
        manager.complete(run.session_id, AutomationResult(status="error", error_message="Login failed"))

        with pytest.raises(SessionAlreadyCompletedError):
            manager.complete(run.session_id, AutomationResult(status="success", output_data={"premium": 1}))

        stored = manager.get_run(run.session_id)
        assert stored.status == "error"
        assert stored.error_message == "Login failed"
        assert stored.output_data_json is None

    def test_complete_unknown_session(self, session):
        with pytest.raises(NotFoundError):
            AutomationSessionManager(session).complete("bb_missing", AutomationResult(status="success"))

    def test_staged_completion_can_be_rolled_back(self, make_quote, session):
        quote_id = make_quote()
        manager = AutomationSessionManager(session)
        run = start(manager, quote_id)

        manager.complete(run.session_id, AutomationResult(status="success"), commit=False)
        session.rollback()

        assert manager.get_run(run.session_id).status == "running"

    def test_retry_creates_linked_run(self, make_quote, session):
        quote_id = make_quote()
        manager = AutomationSessionManager(session)
        original = start(manager, quote_id)
        manager.complete(original.session_id, AutomationResult(status="error", error_message="Captcha"))

        retried = manager.retry(original.id)

        assert retried.id != original.id
        assert retried.session_id != original.session_id
        assert retried.status == "running"
        assert retried.retry_count == 1
        assert retried.parent_run_id == original.id
        assert json.loads(retried.input_data_json)["form_data"] == json.loads(original.input_data_json)["form_data"]

        session.refresh(original)
        assert original.status == "error"
        assert original.error_message == "Captcha"

        assert manager.retry(retried.id).retry_count == 2

    def test_retry_unknown_run(self, session):
        with pytest.raises(NotFoundError):
            AutomationSessionManager(session).retry(404)

    def test_runs_newest_first(self, make_quote, session):
        quote_id = make_quote()
        other_quote_id = make_quote(product_line="PL")
        manager = AutomationSessionManager(session)
        first = start(manager, quote_id)
        second = manager.retry(first.id)
        start(manager, other_quote_id)

        runs = manager.runs_for_quote(quote_id)

        assert [run.id for run in runs] == [second.id, first.id]


# ============================================================================
# 2. AUTOMATION PROVIDER
# ============================================================================

class TestProvider:

    def test_from_settings_without_key(self):
        assert BrowserbaseClient.from_settings({"browserbase_api_key": None}) is None

    def test_start_uses_provider_session_id(self, make_quote, session, sleeps):
        quote_id = make_quote()
        stub = ProviderStub()
        run = start(AutomationSessionManager(session, provider_client(stub, sleeps)), quote_id,
                    credentials=CREDENTIALS)

        assert run.session_id == "sess_remote_1"
        sent = stub.calls[0]
        assert sent.headers["X-BB-API-Key"] == "bb-key"
        body = json.loads(sent.content)
        assert body["projectId"] == "proj_1"
        assert body["automation"]["url"] == PORTAL_URL
        assert body["automation"]["credentials"] == {"username": "agent@broker.test", "password": "s3cret-pw"}
        assert body["userMetadata"] == {"carrier_name": "Markel", "quote_id": str(quote_id)}
        assert "s3cret-pw" not in run.input_data_json

    def test_provider_failure_marks_run_error(self, make_quote, session, sleeps):
        quote_id = make_quote()
        stub = ProviderStub(create=httpx.Response(503))
        manager = AutomationSessionManager(session, provider_client(stub, sleeps))

        with pytest.raises(TransientUpstreamError):
            start(manager, quote_id)

        run = session.query(AutomationRun).one()
        assert run.status == "error"
        assert run.session_id is None
        assert run.completed_at is not None
        assert "503" in run.error_message
        assert len(stub.calls) == 3

    def test_refresh_records_terminal_state(self, make_quote, session, sleeps):
        quote_id = make_quote()
        stub = ProviderStub()
        manager = AutomationSessionManager(session, provider_client(stub, sleeps))
        run = start(manager, quote_id)

        stub.sessions["sess_remote_1"] = {"status": "RUNNING"}
        assert manager.check_status(run.session_id, refresh=True).status == "running"

        stub.sessions["sess_remote_1"] = {
            "status": "COMPLETED",
            "output": {"quote_number": "MK-7", "premium": 2100},
            "screenshots": ["https://shots.test/7.png"],
        }
        refreshed = manager.check_status(run.session_id, refresh=True)
        assert refreshed.status == "success"
        assert json.loads(refreshed.output_data_json)["premium"] == 2100

    def test_refresh_timeout_is_error(self, make_quote, session, sleeps):
        quote_id = make_quote()
        stub = ProviderStub()
        manager = AutomationSessionManager(session, provider_client(stub, sleeps))
        run = start(manager, quote_id)

        stub.sessions["sess_remote_1"] = {"status": "TIMED_OUT"}
        refreshed = manager.check_status(run.session_id, refresh=True)

        assert refreshed.status == "error"
        assert refreshed.error_message == "Session ended with provider status TIMED_OUT"

    def test_check_without_refresh_does_not_poll(self, make_quote, session, sleeps):
        quote_id = make_quote()
        stub = ProviderStub()
        manager = AutomationSessionManager(session, provider_client(stub, sleeps))
        run = start(manager, quote_id)

        assert manager.check_status(run.session_id).status == "running"
        assert len(stub.calls) == 1


# ============================================================================
# 3. RUN -> CARRIER DECISION
# ============================================================================

class TestResponseFromRun:

    def run(self, status, output=None, error_message=None):
        return AutomationRun(
            quote_id=1,
            carrier_name="Markel",
            session_id="bb_1",
            status=status,
            output_data_json=json.dumps(output) if output is not None else None,
            error_message=error_message,
        )

    def test_running_is_pending(self):
        assert response_from_run(self.run("running"), "GL").status == "pending"

    def test_success_with_result(self):
        response = response_from_run(self.run("success", {"quote_number": "MK-1", "premium": 950.0}), "GL")
        assert response.status == "quoted"
        assert response.quote_id == "bb_1"
        assert response.quote_number == "MK-1"
        assert response.product_line == "GL"

    def test_success_with_explicit_decline(self):
        response = response_from_run(self.run("success", {
            "outcome": "declined", "decline_reason": "Out of appetite",
        }))
        assert response.status == "declined"
        assert response.decline_reason == "Out of appetite"

    def test_success_without_result_is_no_offer(self):
        assert response_from_run(self.run("success", {"page": "confirmation"})).status == "no_offer"

    def test_error_carries_message(self):
        response = response_from_run(self.run("error", error_message="Login failed"))
        assert response.status == "error"
        assert response.error_message == "Login failed"


# ============================================================================
# 4. HTTP ENDPOINTS
# ============================================================================

class TestAutomationEndpoints:

    def start_session(self, client, quote_id, **overrides):
        body = {
            "carrier_name": "markel",
            "quote_id": quote_id,
            "credentials": {"username": "agent@broker.test", "password": "s3cret-pw"},
            "form_data": {"business_name": "Acme Roofing"},
        }
        body.update(overrides)
        return client.post("/v1/automation/sessions", json=body)

    def test_start_session(self, client, make_quote, read):
        quote_id = make_quote()

        response = self.start_session(client, quote_id)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "running"
        assert data["carrier_name"] == "Markel"
        assert data["quote_id"] == quote_id
        assert data["retry_count"] == 0
        assert data["session_id"].startswith("bb_")

        run = read(lambda s: s.query(AutomationRun).one())
        input_data = json.loads(run.input_data_json)
        assert input_data["portal_url"] == PORTAL_URL
        assert input_data["has_credentials"] is True
        assert "s3cret-pw" not in run.input_data_json

    def test_start_unknown_carrier(self, client, make_quote):
        response = self.start_session(client, make_quote(), carrier_name="acme")
        assert response.status_code == 400

    def test_start_unknown_quote(self, client):
        assert self.start_session(client, 999).status_code == 404

    def test_check_session(self, client, make_quote):
        session_id = self.start_session(client, make_quote()).json()["session_id"]

        response = client.get(f"/v1/automation/sessions/{session_id}")

        assert response.status_code == 200
        assert response.json()["status"] == "running"
        assert client.get("/v1/automation/sessions/bb_missing").status_code == 404

    def test_completion_webhook_ingests_quote(self, client, make_quote, read):
        quote_id = make_quote(stage="quote")
        session_id = self.start_session(client, quote_id).json()["session_id"]

        response = client.post(f"/v1/automation/sessions/{session_id}/complete", json={
            "status": "success",
            "output_data": {
                "quote_number": "MK-2001",
                "premium": 1875.5,
                "coverage_details": {"each_occurrence": 1000000},
            },
            "screenshot_urls": ["https://shots.test/final.png"],
        })

        assert response.status_code == 200
        assert response.json()["status"] == "success"
        assert response.json()["completed_at"] is not None

        quote = read(lambda s: s.get(Quote, quote_id))
        assert quote.outcome == "quoted"
        assert quote.status == "quoted"
        assert quote.quote_number == "MK-2001"
        assert quote.premium == 1875.5
        assert quote.quoted_at is not None
        assert read(lambda s: s.get(Opportunity, quote.opportunity_id).stage) == "uw_review"

    def test_completion_webhook_error(self, client, make_quote, read):
        quote_id = make_quote()
        session_id = self.start_session(client, quote_id).json()["session_id"]

        response = client.post(f"/v1/automation/sessions/{session_id}/complete", json={
            "status": "error",
            "error_message": "Portal login failed",
        })

        assert response.status_code == 200
        assert response.json()["error_message"] == "Portal login failed"
        quote = read(lambda s: s.get(Quote, quote_id))
        assert quote.outcome == "error"
        assert quote.error_message == "Portal login failed"

    def test_completion_without_result_leaves_quote(self, client, make_quote, read):
        quote_id = make_quote()
        session_id = self.start_session(client, quote_id).json()["session_id"]

        client.post(f"/v1/automation/sessions/{session_id}/complete", json={
            "status": "success",
            "logs": "navigated to dashboard",
        })

        quote = read(lambda s: s.get(Quote, quote_id))
        assert quote.outcome is None
        assert quote.status == "submitted_agent"

    def test_second_completion_is_conflict(self, client, make_quote):
        session_id = self.start_session(client, make_quote()).json()["session_id"]
        complete_url = f"/v1/automation/sessions/{session_id}/complete"

        assert client.post(complete_url, json={"status": "success"}).status_code == 200
        response = client.post(complete_url, json={"status": "error", "error_message": "late"})

        assert response.status_code == 409
        assert "already completed" in response.json()["detail"]

    def test_retry_and_history(self, client, make_quote):
        quote_id = make_quote()
        original = self.start_session(client, quote_id).json()
        client.post(f"/v1/automation/sessions/{original['session_id']}/complete",
                    json={"status": "error", "error_message": "Captcha"})

        response = client.post(f"/v1/automation/runs/{original['run_id']}/retry", json={
            "credentials": {"username": "agent@broker.test", "password": "new-pw"},
        })

        assert response.status_code == 200
        retried = response.json()
        assert retried["retry_count"] == 1
        assert retried["status"] == "running"
        assert retried["session_id"] != original["session_id"]

        history = client.get(f"/v1/quotes/{quote_id}/automation-runs").json()
        assert [run["run_id"] for run in history] == [retried["run_id"], original["run_id"]]
        assert history[0]["parent_run_id"] == original["run_id"]
        assert history[0]["input_data"]["has_credentials"] is True
        assert history[1]["status"] == "error"
        assert history[1]["error_message"] == "Captcha"

    def test_retry_without_body(self, client, make_quote):
        original = self.start_session(client, make_quote()).json()
        response = client.post(f"/v1/automation/runs/{original['run_id']}/retry")
        assert response.status_code == 200
        assert response.json()["retry_count"] == 1

    def test_retry_unknown_run(self, client):
        assert client.post("/v1/automation/runs/999/retry").status_code == 404

    def test_portal_quote_refresh_after_completion(self, client, make_opportunity, read):
        opportunity_id = make_opportunity()
        quote = client.post("/v1/carriers/markel/quotes", json={
            "opportunity_id": opportunity_id,
            "product_line": "GL",
            "effective_date": "2025-01-01",
            "expiration_date": "2026-01-01",
        }).json()["quote"]

        client.post(f"/v1/automation/sessions/{quote['carrier_quote_id']}/complete", json={
            "status": "success",
            "output_data": {"quote_number": "MK-9", "premium": 990.0},
        })
        response = client.post(f"/v1/quotes/{quote['id']}/refresh")

        assert response.status_code == 200
        refreshed = response.json()["quote"]
        assert refreshed["outcome"] == "quoted"
        assert refreshed["quote_number"] == "MK-9"
        assert read(lambda s: s.query(Quote).count()) == 1

    def test_start_links_session_to_quote(self, client, make_quote, read):
        quote_id = make_quote()
        session_id = self.start_session(client, quote_id).json()["session_id"]
        assert read(lambda s: s.get(Quote, quote_id).carrier_quote_id) == session_id

    def test_polled_completion_ingests_quote(self, client, make_quote, read, sleeps):
        stub = ProviderStub(sessions={"sess_remote_1": {"status": "RUNNING"}})
        app.dependency_overrides[get_automation_client] = lambda: provider_client(stub, sleeps)
        quote_id = make_quote(stage="quote")

        started = self.start_session(client, quote_id).json()
        assert started["session_id"] == "sess_remote_1"
        assert read(lambda s: s.get(Quote, quote_id).carrier_quote_id) == "sess_remote_1"

        still_running = client.get("/v1/automation/sessions/sess_remote_1?refresh=true")
        assert still_running.json()["status"] == "running"
        assert read(lambda s: s.get(Quote, quote_id).outcome) is None

        stub.sessions["sess_remote_1"] = {
            "status": "COMPLETED",
            "output": {"quote_number": "MK-1", "premium": 5100},
        }
        response = client.get("/v1/automation/sessions/sess_remote_1?refresh=true")

        assert response.status_code == 200
        assert response.json()["status"] == "success"
        quote = read(lambda s: s.get(Quote, quote_id))
        assert quote.outcome == "quoted"
        assert quote.status == "quoted"
        assert quote.quote_number == "MK-1"
        assert quote.premium == 5100
        assert read(lambda s: s.get(Opportunity, quote.opportunity_id).stage) == "uw_review"

        refreshed = client.post(f"/v1/quotes/{quote_id}/refresh")
        assert refreshed.status_code == 200
        assert refreshed.json()["quote"]["outcome"] == "quoted"
        assert refreshed.json()["quote"]["premium"] == 5100

        # A finished run is not polled again
        polls = len(stub.calls)
        assert client.get("/v1/automation/sessions/sess_remote_1?refresh=true").json()["status"] == "success"
        assert len(stub.calls) == polls

    def test_polled_provider_error_marks_quote(self, client, make_quote, read, sleeps):
        stub = ProviderStub(sessions={"sess_remote_1": {"status": "TIMED_OUT"}})
        app.dependency_overrides[get_automation_client] = lambda: provider_client(stub, sleeps)
        quote_id = make_quote()
        self.start_session(client, quote_id)

        response = client.get("/v1/automation/sessions/sess_remote_1?refresh=true")

        assert response.json()["status"] == "error"
        quote = read(lambda s: s.get(Quote, quote_id))
        assert quote.outcome == "error"
        assert "TIMED_OUT" in quote.error_message

    def test_retry_without_body_keeps_portal_credentials(self, client, make_opportunity, read, monkeypatch):
        monkeypatch.setenv("MARKEL_PORTAL_USERNAME", "agent@broker.test")
        monkeypatch.setenv("MARKEL_PORTAL_PASSWORD", "s3cret-pw")
        quote = client.post("/v1/carriers/markel/quotes", json={
            "opportunity_id": make_opportunity(),
            "product_line": "GL",
            "effective_date": "2025-01-01",
            "expiration_date": "2026-01-01",
        }).json()["quote"]
        client.post(f"/v1/automation/sessions/{quote['carrier_quote_id']}/complete",
                    json={"status": "error", "error_message": "Captcha"})
        original = client.get(f"/v1/quotes/{quote['id']}/automation-runs").json()[0]

        retried = client.post(f"/v1/automation/runs/{original['run_id']}/retry").json()

        history = client.get(f"/v1/quotes/{quote['id']}/automation-runs").json()
        assert [run["retry_count"] for run in history] == [1, 0]
        assert [run["input_data"]["has_credentials"] for run in history] == [True, True]
        assert read(lambda s: s.get(Quote, quote["id"]).carrier_quote_id) == retried["session_id"]

    def test_failed_ingestion_leaves_run_open(self, client, make_quote, read, monkeypatch):
        quote_id = make_quote()
        session_id = self.start_session(client, quote_id).json()["session_id"]
        complete_url = f"/v1/automation/sessions/{session_id}/complete"
        body = {"status": "success", "output_data": {"quote_number": "MK-77", "premium": 2400}}

        update_quote = QuoteIngestionGateway.update_quote
        failures = [PersistenceConflictError("quote_number MK-77 written concurrently")]

        def flaky_update(gateway, quote, payload, commit=True):
            if failures:
                raise failures.pop()
            return update_quote(gateway, quote, payload, commit=commit)

        monkeypatch.setattr(QuoteIngestionGateway, "update_quote", flaky_update)

        assert client.post(complete_url, json=body).status_code == 500
        run = read(lambda s: s.query(AutomationRun).filter(AutomationRun.session_id == session_id).one())
        assert run.status == "running"
        assert run.completed_at is None
        assert read(lambda s: s.get(Quote, quote_id).outcome) is None

        response = client.post(complete_url, json=body)

        assert response.status_code == 200
        assert response.json()["status"] == "success"
        quote = read(lambda s: s.get(Quote, quote_id))
        assert quote.outcome == "quoted"
        assert quote.quote_number == "MK-77"
