"""
Submission service: runs carrier adapters and feeds their responses to the
ingestion gateway. The gateway itself never calls an adapter.

Automation sessions started, polled, completed or retried over HTTP also go
through here, so a finished run always reaches its quote.
"""

from typing import Any, Dict, Optional, Tuple
import json
import logging

from sqlmodel import Session

from quotedesk.errors import ConfigurationError, NotFoundError, QuoteDeskError, ValidationError
from quotedesk.models import (
    AutomationRun, Opportunity, Quote, QuoteOutcome, QuoteStatus, RunStatus, SubmissionMethod,
)
from quotedesk.schemas import (
    AutomationResult, CarrierQuoteRequest, CarrierQuoteResponse, CarrierSubmitRequest,
    PortalCredentials, QuoteIngestRequest,
)
from quotedesk.services.automation import AutomationSessionManager
from quotedesk.services.carriers.portal import response_from_run
from quotedesk.services.ingestion import QuoteIngestionGateway, CREATED
from quotedesk.services.registry import CarrierRegistry

logger = logging.getLogger("quotedesk")

TERMINAL_OUTCOMES = {outcome.value for outcome in QuoteOutcome}

# Run output keys that mean the automation scraped a quote result
RESULT_KEYS = {"quote_number", "premium", "outcome"}


def ingest_payload_from_response(
    response: CarrierQuoteResponse,
    submission_method: str,
) -> QuoteIngestRequest:
    """Map a carrier decision onto ingestion fields."""
    submitted = (
        QuoteStatus.SUBMITTED_API.value
        if submission_method == SubmissionMethod.API.value
        else QuoteStatus.SUBMITTED_AGENT.value
    )
    if response.status == "quoted":
        status = QuoteStatus.QUOTED.value
    elif response.status == "declined":
        status = QuoteStatus.REJECTED.value
    elif response.status == "pending" and submission_method == SubmissionMethod.API.value:
        status = QuoteStatus.AWAITING_UW.value
    else:
        status = submitted

    return QuoteIngestRequest(
        carrier_name=response.carrier_name,
        product_line=response.product_line or None,
        status=status,
        quote_number=response.quote_number,
        carrier_quote_id=response.quote_id,
        premium=response.premium,
        effective_date=response.effective_date,
        expiration_date=response.expiration_date,
        coverage_details=response.coverage_details,
        submission_method=submission_method,
        outcome=None if response.status == "pending" else response.status,
        decline_reason=response.decline_reason,
        error_message=response.error_message,
        quote_document_url=response.quote_document_url,
    )


class QuoteSubmissionService:
    """Submit, poll and fetch documents through carrier adapters."""

    def __init__(
        self,
        session: Session,
        registry: CarrierRegistry,
        gateway: QuoteIngestionGateway,
        automation: Optional[AutomationSessionManager] = None,
    ):
        self.session = session
        self.registry = registry
        self.gateway = gateway
        # Must share `session`; completions commit together with the quote update
        self.automation = automation

    def _release(self) -> None:
        # Portal adapters write through their own session; this one must not
        # hold an open transaction while they do.
        self.session.close()

    def submit(self, carrier: str, request: CarrierSubmitRequest) -> Tuple[Quote, str]:
        """
        Submit a quote to a carrier and ingest the result.

        Direct-API carriers answer synchronously and the decision is ingested.
        Portal carriers get a draft quote first (automation runs hang off a
        quote), then the session is started and its id recorded on the quote.
        """
        adapter = self.registry.resolve(carrier)
        opportunity = self.session.get(Opportunity, request.opportunity_id)
        if opportunity is None:
            raise NotFoundError(f"Opportunity {request.opportunity_id} not found")

        carrier_request = CarrierQuoteRequest(
            account_id=opportunity.account_id,
            opportunity_id=opportunity.id,
            product_line=request.product_line,
            effective_date=request.effective_date,
            expiration_date=request.expiration_date,
            coverage_requirements=request.coverage_requirements,
            applicant_data=request.applicant_data,
        )
        ownership = {"account_id": opportunity.account_id, "opportunity_id": opportunity.id}

        if adapter.supports_api:
            self._release()
            response = adapter.submit_quote(carrier_request)
            payload = ingest_payload_from_response(response, adapter.submission_method)
            payload = payload.model_copy(update={
                **ownership,
                "product_line": payload.product_line or request.product_line,
            })
            return self.gateway.ingest(payload)

        quote, _ = self.gateway.ingest(QuoteIngestRequest(
            **ownership,
            carrier_name=adapter.name,
            product_line=request.product_line,
            status=QuoteStatus.SUBMITTED_AGENT.value,
            submission_method=adapter.submission_method,
            effective_date=request.effective_date,
            expiration_date=request.expiration_date,
        ))
        carrier_request.quote_ref = quote.id
        self._release()

        try:
            response = adapter.submit_quote(carrier_request)
        except QuoteDeskError as e:
            self.gateway.update_quote(quote, QuoteIngestRequest(outcome="error", error_message=str(e)))
            raise

        quote = self.gateway.update_quote(quote, QuoteIngestRequest(carrier_quote_id=response.quote_id))
        return quote, CREATED

    def _get_quote(self, quote_id: int) -> Quote:
        quote = self.session.get(Quote, quote_id)
        if quote is None:
            raise NotFoundError(f"Quote {quote_id} not found")
        if not quote.carrier_quote_id:
            raise ValidationError(f"Quote {quote_id} has not been submitted to a carrier")
        return quote

    def apply_response(self, quote: Quote, response: CarrierQuoteResponse) -> Quote:
        """
        Record a carrier decision on a known quote.

        A pending answer never overwrites a quote that already has an outcome.
        """
        if quote.outcome in TERMINAL_OUTCOMES and response.status == "pending":
            logger.info(
                f"Pending carrier status ignored | quote_id={quote.id} | outcome={quote.outcome}"
            )
            return quote
        method = quote.submission_method or SubmissionMethod.API.value
        payload = ingest_payload_from_response(response, method)
        return self.gateway.update_quote(quote, payload)

    def refresh(self, quote_id: int) -> Quote:
        """Poll the carrier for a submitted quote and record the latest decision."""
        quote = self._get_quote(quote_id)
        if quote.outcome in TERMINAL_OUTCOMES:
            logger.info(f"Refresh skipped, quote is final | quote_id={quote_id} | outcome={quote.outcome}")
            return quote

        adapter = self.registry.resolve(quote.carrier_name)
        self._release()

        response = adapter.check_quote_status(quote.carrier_quote_id)
        logger.info(
            f"Quote status polled | quote_id={quote_id} | carrier={quote.carrier_name} | "
            f"status={response.status}"
        )
        return self.apply_response(quote, response)

    def attach_document(self, quote_id: int) -> Quote:
        """Fetch the carrier's quote document and store its URL. None is a valid result."""
        quote = self._get_quote(quote_id)
        adapter = self.registry.resolve(quote.carrier_name)
        self._release()

        url = adapter.retrieve_quote_document(quote.carrier_quote_id)
        if url is None:
            return quote
        return self.gateway.update_quote(quote, QuoteIngestRequest(quote_document_url=url))

    # Automation sessions
    def _manager(self) -> AutomationSessionManager:
        if self.automation is None:
            raise ConfigurationError("Automation session manager is not configured")
        return self.automation

    def _link_session(self, run: AutomationRun) -> None:
        """Point the run's quote at the latest session so it can be refreshed."""
        quote = self.session.get(Quote, run.quote_id)
        self.gateway.update_quote(quote, QuoteIngestRequest(carrier_quote_id=run.session_id))

    def start_automation(
        self,
        carrier_name: str,
        quote_id: int,
        portal_url: Optional[str],
        form_data: Optional[Dict[str, Any]] = None,
        credentials: Optional[PortalCredentials] = None,
    ) -> AutomationRun:
        run = self._manager().start(
            carrier_name=carrier_name,
            quote_id=quote_id,
            portal_url=portal_url,
            form_data=form_data,
            credentials=credentials,
        )
        self._link_session(run)
        return run

    def retry_automation(self, run_id: int, credentials: Optional[PortalCredentials] = None) -> AutomationRun:
        """
        Retry a run. Without explicit credentials the carrier's configured
        portal login is used, as it was for the original submission.
        """
        original = self.session.get(AutomationRun, run_id)
        if original is None:
            raise NotFoundError(f"Automation run {run_id} not found")
        if credentials is None and original.carrier_name in self.registry:
            credentials = self.registry.resolve(original.carrier_name).portal_credentials()

        run = self._manager().retry(run_id, credentials=credentials)
        self._link_session(run)
        return run

    def complete_automation(self, session_id: str, result: AutomationResult) -> AutomationRun:
        """Completion webhook: record the run and its quote result in one commit."""
        run = self._manager().complete(session_id, result, commit=False)
        return self._record_run(run)

    def poll_automation(self, session_id: str) -> AutomationRun:
        """Poll the provider; a session found finished is recorded like a webhook completion."""
        manager = self._manager()
        run = manager.get_run(session_id)
        if run.status != RunStatus.RUNNING.value:
            return run

        run = manager.check_status(session_id, refresh=True, commit=False)
        if run.status == RunStatus.RUNNING.value:
            return run
        return self._record_run(run)

    def _record_run(self, run: AutomationRun) -> AutomationRun:
        """
        Commit a completed run together with the quote result it carries.

        A failed run, or a successful one whose output has a quote result, is
        applied to the run's quote. If that fails nothing is committed, so the
        completion can be delivered again.
        """
        try:
            output = json.loads(run.output_data_json) if run.output_data_json else {}
            if run.status == RunStatus.ERROR.value or RESULT_KEYS & output.keys():
                quote = self.session.get(Quote, run.quote_id)
                if quote is None:
                    raise NotFoundError(f"Quote {run.quote_id} not found")
                response = response_from_run(run, quote.product_line)
                self.apply_response(quote, response)
                logger.info(
                    f"Automation result ingested | session_id={run.session_id} | "
                    f"quote_id={quote.id} | status={response.status}"
                )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        self.session.refresh(run)
        return run
