"""
Browser automation for carriers without a direct API.

AutomationSessionManager owns the run lifecycle (running -> success | error,
retries as new runs). BrowserbaseClient is the optional remote provider; with
no provider configured, sessions get a locally generated id and completion is
delivered through the webhook only.
"""

from typing import Any, Callable, Dict, List, Optional
import json
import logging
import time
import uuid

import httpx
from sqlmodel import Session

from quotedesk.errors import (
    NotFoundError, QuoteDeskError, SessionAlreadyCompletedError, ValidationError,
)
from quotedesk.models import AutomationRun, Quote, RunStatus, utcnow
from quotedesk.schemas import AutomationResult, PortalCredentials
from quotedesk.services.retry import call_with_retry

logger = logging.getLogger("quotedesk")

# Provider session states -> run status. Anything else is still running.
PROVIDER_TERMINAL_STATES = {
    "COMPLETED": RunStatus.SUCCESS.value,
    "ERROR": RunStatus.ERROR.value,
    "TIMED_OUT": RunStatus.ERROR.value,
}


class BrowserbaseClient:
    """Minimal client for a Browserbase-style remote browser API."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        project_id: Optional[str] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 8.0,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.project_id = project_id
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=api_url,
            headers={"X-BB-API-Key": api_key, "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Dict[str, Any], **kwargs) -> Optional["BrowserbaseClient"]:
        """Build a client when BROWSERBASE_API_KEY is set, otherwise None."""
        if not settings.get("browserbase_api_key"):
            return None
        return cls(
            api_url=settings["browserbase_api_url"],
            api_key=settings["browserbase_api_key"],
            project_id=settings.get("browserbase_project_id"),
            timeout=settings.get("timeout", 30.0),
            max_retries=settings.get("max_retries", 3),
            retry_base_delay=settings.get("retry_base_delay", 0.5),
            retry_max_delay=settings.get("retry_max_delay", 8.0),
            **kwargs
        )

    def _send(self, method: str, path: str, operation: str, **kwargs) -> Dict[str, Any]:
        response = call_with_retry(
            lambda: self._client.request(method, path, **kwargs),
            operation=f"browserbase {operation}",
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            sleep=self._sleep,
        )
        return response.json()

    def create_session(
        self,
        carrier_name: str,
        quote_id: int,
        portal_url: str,
        form_data: Dict[str, Any],
        credentials: Optional[PortalCredentials] = None,
    ) -> str:
        """Request a remote session and return its id."""
        body = {
            "projectId": self.project_id,
            "userMetadata": {"carrier_name": carrier_name, "quote_id": str(quote_id)},
            "automation": {
                "url": portal_url,
                "form_data": form_data,
                "credentials": credentials.model_dump() if credentials else None,
            },
        }
        data = self._send("POST", "/sessions", "create session", json=body)
        return data["id"]

    def get_session(self, session_id: str) -> Dict[str, Any]:
        return self._send("GET", f"/sessions/{session_id}", "get session")

    def close(self) -> None:
        self._client.close()


class AutomationSessionManager:
    """
    Run lifecycle for browser-automation sessions.

    A run is persisted as `running` before the provider is contacted and moves
    exactly once to `success` or `error`. Completing a terminal run raises
    SessionAlreadyCompletedError. Retries never touch the original run.
    """

    def __init__(self, session: Session, client: Optional[BrowserbaseClient] = None):
        self.session = session
        self.client = client

    def start(
        self,
        carrier_name: str,
        quote_id: int,
        portal_url: str,
        form_data: Optional[Dict[str, Any]] = None,
        credentials: Optional[PortalCredentials] = None,
        retry_count: int = 0,
        parent_run_id: Optional[int] = None,
    ) -> AutomationRun:
        """
        Start an automation session for a quote.

        Args:
            carrier_name: Carrier display name
            quote_id: Quote the run belongs to
            portal_url: Carrier portal entry point
            form_data: Values the automation fills in
            credentials: Portal login, passed to the provider only
            retry_count: Position in the retry lineage
            parent_run_id: Run this one retries

        Returns:
            The persisted run, with session_id assigned
        """
        if not portal_url:
            raise ValidationError("portal_url is required to start an automation session")
        if self.session.get(Quote, quote_id) is None:
            raise NotFoundError(f"Quote {quote_id} not found")

        form_data = form_data or {}
        run = AutomationRun(
            quote_id=quote_id,
            carrier_name=carrier_name,
            status=RunStatus.RUNNING.value,
            input_data_json=json.dumps({
                "portal_url": portal_url,
                "has_credentials": credentials is not None,
                "form_fields": list(form_data.keys()),
                "form_data": form_data,
            }),
            retry_count=retry_count,
            parent_run_id=parent_run_id,
        )
        self.session.add(run)
        self.session.commit()
        self.session.refresh(run)

        if self.client is None:
            session_id = f"bb_{uuid.uuid4().hex}"
        else:
            try:
                session_id = self.client.create_session(
                    carrier_name, quote_id, portal_url, form_data, credentials
                )
            except QuoteDeskError as e:
                run.status = RunStatus.ERROR.value
                run.error_message = str(e)
                run.completed_at = utcnow()
                self.session.add(run)
                self.session.commit()
                logger.error(
                    f"Automation session failed to start | run_id={run.id} | "
                    f"carrier={carrier_name} | quote_id={quote_id} | error={e}"
                )
                raise

        run.session_id = session_id
        self.session.add(run)
        self.session.commit()
        self.session.refresh(run)

        logger.info(
            f"Automation session started | run_id={run.id} | session_id={session_id} | "
            f"carrier={carrier_name} | quote_id={quote_id} | retry_count={retry_count}"
        )
        return run

    def get_run(self, session_id: str) -> AutomationRun:
        run = self.session.query(AutomationRun).filter(
            AutomationRun.session_id == session_id
        ).first()
        if run is None:
            raise NotFoundError(f"Automation session {session_id} not found")
        return run

    def check_status(self, session_id: str, refresh: bool = False, commit: bool = True) -> AutomationRun:
        """
        Current state of a session as persisted.

        With refresh=True and a provider configured, a running session is
        polled first and a terminal provider state is recorded via complete().
        `commit` is passed through to complete().
        """
        run = self.get_run(session_id)
        if not refresh or self.client is None or run.status != RunStatus.RUNNING.value:
            return run

        remote = self.client.get_session(session_id)
        status = PROVIDER_TERMINAL_STATES.get(str(remote.get("status", "")).upper())
        if status is None:
            return run

        result = AutomationResult(
            status=status,
            output_data=remote.get("output"),
            screenshot_urls=remote.get("screenshots"),
            logs=remote.get("logs"),
            error_message=remote.get("error") or (
                f"Session ended with provider status {remote.get('status')}"
                if status == RunStatus.ERROR.value else None
            ),
        )
        return self.complete(session_id, result, commit=commit)

    def complete(self, session_id: str, result: AutomationResult, commit: bool = True) -> AutomationRun:
        """
        Record the terminal outcome of a session.

        With commit=False the transition is only staged on the session, so the
        caller can commit it together with the quote result it carries.
        """
        run = self.get_run(session_id)
        if run.status != RunStatus.RUNNING.value:
            raise SessionAlreadyCompletedError(
                f"Automation session {session_id} already completed with status {run.status}"
            )

        run.status = result.status
        run.output_data_json = json.dumps(result.output_data) if result.output_data is not None else None
        run.screenshot_urls_json = json.dumps(result.screenshot_urls) if result.screenshot_urls is not None else None
        run.logs = result.logs
        run.error_message = result.error_message if result.status == RunStatus.ERROR.value else None
        run.completed_at = utcnow()
        self.session.add(run)
        if commit:
            self.session.commit()
            self.session.refresh(run)

        log = logger.info if result.status == RunStatus.SUCCESS.value else logger.warning
        log(
            f"Automation session completed | run_id={run.id} | session_id={session_id} | "
            f"status={run.status} | error={run.error_message}"
        )
        return run

    def retry(self, run_id: int, credentials: Optional[PortalCredentials] = None) -> AutomationRun:
        """Start a new run with the original run's parameters and retry_count + 1."""
        original = self.session.get(AutomationRun, run_id)
        if original is None:
            raise NotFoundError(f"Automation run {run_id} not found")

        input_data = json.loads(original.input_data_json or "{}")
        return self.start(
            carrier_name=original.carrier_name,
            quote_id=original.quote_id,
            portal_url=input_data.get("portal_url"),
            form_data=input_data.get("form_data", {}),
            credentials=credentials,
            retry_count=original.retry_count + 1,
            parent_run_id=original.id,
        )

    def runs_for_quote(self, quote_id: int) -> List[AutomationRun]:
        """All runs for a quote, newest first."""
        return self.session.query(AutomationRun).filter(
            AutomationRun.quote_id == quote_id
        ).order_by(AutomationRun.started_at.desc(), AutomationRun.id.desc()).all()
