"""
Automation router: browser-automation sessions for portal-only carriers.
"""

from fastapi import APIRouter, Depends
from typing import List, Optional

from quotedesk.cache import config_cache
from quotedesk.deps import get_automation_manager, get_registry, get_submission_service
from quotedesk.schemas import (
    AutomationResult, AutomationRetryRequest, AutomationRunRecord,
    AutomationStartRequest, SessionResponse,
)
from quotedesk.services.automation import AutomationSessionManager
from quotedesk.services.registry import CarrierRegistry
from quotedesk.services.submission import QuoteSubmissionService

router = APIRouter()


@router.post("/automation/sessions", response_model=SessionResponse)
def start_session(
    request: AutomationStartRequest,
    service: QuoteSubmissionService = Depends(get_submission_service),
    registry: CarrierRegistry = Depends(get_registry)
):
    """
    Start an automation session for a quote.

    Returns as soon as the run is recorded and the remote session requested;
    completion arrives later through the completion webhook or a refresh.
    The quote's carrier_quote_id is set to the new session id.
    """
    adapter = registry.resolve(request.carrier_name)
    portal_url = request.portal_url or config_cache.get_carrier(adapter.identifier).get("portal_url")
    run = service.start_automation(
        carrier_name=adapter.name,
        quote_id=request.quote_id,
        portal_url=portal_url,
        form_data=request.form_data,
        credentials=request.credentials,
    )
    return SessionResponse.from_run(run)


@router.get("/automation/sessions/{session_id}", response_model=SessionResponse)
def check_session(
    session_id: str,
    refresh: bool = False,
    manager: AutomationSessionManager = Depends(get_automation_manager),
    service: QuoteSubmissionService = Depends(get_submission_service)
):
    """Persisted session state; refresh=true polls the provider and records a finished run."""
    if refresh:
        return SessionResponse.from_run(service.poll_automation(session_id))
    return SessionResponse.from_run(manager.check_status(session_id))


@router.post("/automation/sessions/{session_id}/complete", response_model=SessionResponse)
def complete_session(
    session_id: str,
    result: AutomationResult,
    service: QuoteSubmissionService = Depends(get_submission_service)
):
    """
    Completion webhook.

    A successful run whose output carries a quote result, and any failed run,
    is recorded on the run's quote in the same commit as the run itself.
    """
    return SessionResponse.from_run(service.complete_automation(session_id, result))


@router.post("/automation/runs/{run_id}/retry", response_model=SessionResponse)
def retry_run(
    run_id: int,
    request: Optional[AutomationRetryRequest] = None,
    service: QuoteSubmissionService = Depends(get_submission_service)
):
    """
    Start a new run with the same parameters; the original run is left as is.

    Without credentials in the body the carrier's configured portal login is used.
    """
    credentials = request.credentials if request else None
    return SessionResponse.from_run(service.retry_automation(run_id, credentials=credentials))


@router.get("/quotes/{quote_id}/automation-runs", response_model=List[AutomationRunRecord])
def list_runs(
    quote_id: int,
    manager: AutomationSessionManager = Depends(get_automation_manager)
):
    """Automation attempt history for a quote, newest first."""
    return [AutomationRunRecord.from_run(run) for run in manager.runs_for_quote(quote_id)]
