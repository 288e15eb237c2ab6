"""
Adapter for carriers reachable only through their agent portal.

Submissions start an automation session and come back `pending`; the carrier
quote id is the automation session id. Once the session completes, its output
data carries the carrier's decision using the ingestion field names
(quote_number, premium, outcome, coverage_details, decline_reason, ...).

Environment:
- <ID>_PORTAL_URL (overrides the catalogue portal_url)
- <ID>_PORTAL_USERNAME / <ID>_PORTAL_PASSWORD
"""

from typing import Any, Callable, ContextManager, Dict, Optional
import json
import os

from sqlmodel import Session

from quotedesk.errors import ValidationError
from quotedesk.models import AutomationRun, RunStatus
from quotedesk.schemas import CarrierQuoteRequest, CarrierQuoteResponse, PortalCredentials
from quotedesk.services.automation import AutomationSessionManager, BrowserbaseClient
from quotedesk.services.carriers.base import BaseCarrierAdapter

OUTCOMES = {"quoted", "declined", "error", "no_offer"}


def response_from_run(run: AutomationRun, product_line: str = "") -> CarrierQuoteResponse:
    """Translate an automation run into a carrier decision."""
    output = json.loads(run.output_data_json) if run.output_data_json else {}

    if run.status == RunStatus.RUNNING.value:
        status = "pending"
    elif run.status == RunStatus.ERROR.value:
        status = "error"
    else:
        status = output.get("outcome") if output.get("outcome") in OUTCOMES else "quoted"
        if status == "quoted" and output.get("premium") is None and not output.get("quote_number"):
            # The run finished but scraped nothing usable from the portal
            status = "no_offer"

    return CarrierQuoteResponse(
        quote_id=run.session_id,
        carrier_name=run.carrier_name,
        product_line=output.get("product_line") or product_line,
        status=status,
        quote_number=output.get("quote_number"),
        premium=output.get("premium"),
        effective_date=output.get("effective_date"),
        expiration_date=output.get("expiration_date"),
        coverage_details=output.get("coverage_details"),
        decline_reason=output.get("decline_reason") if status == "declined" else None,
        error_message=(run.error_message or output.get("error_message")) if status == "error" else None,
        quote_document_url=output.get("quote_document_url"),
    )


class PortalCarrierAdapter(BaseCarrierAdapter):
    supports_api = False

    def __init__(
        self,
        config: Dict[str, Any],
        session_factory: Callable[[], ContextManager[Session]],
        automation_client: Optional[BrowserbaseClient] = None,
    ):
        super().__init__(config)
        self._session_factory = session_factory
        self._automation_client = automation_client

    def portal_credentials(self) -> Optional[PortalCredentials]:
        prefix = self.identifier.upper()
        username = self.config.get("portal_username") or os.getenv(f"{prefix}_PORTAL_USERNAME")
        password = self.config.get("portal_password") or os.getenv(f"{prefix}_PORTAL_PASSWORD")
        if username and password:
            return PortalCredentials(username=username, password=password)
        return None

    def submit_quote(self, request: CarrierQuoteRequest) -> CarrierQuoteResponse:
        if request.quote_ref is None:
            raise ValidationError(f"{self.name} submissions need a quote record to attach the automation run to")

        form_data = {
            "product_line": request.product_line,
            "effective_date": request.effective_date,
            "expiration_date": request.expiration_date,
            "coverage": request.coverage_requirements,
            **request.applicant_data,
        }
        with self._session_factory() as session:
            manager = AutomationSessionManager(session, self._automation_client)
            run = manager.start(
                carrier_name=self.name,
                quote_id=request.quote_ref,
                portal_url=self.config.get("portal_url"),
                form_data=form_data,
                credentials=self.portal_credentials(),
            )
            return response_from_run(run, request.product_line)

    def check_quote_status(self, quote_id: str) -> CarrierQuoteResponse:
        with self._session_factory() as session:
            manager = AutomationSessionManager(session, self._automation_client)
            run = manager.check_status(quote_id, refresh=True)
            return response_from_run(run)

    def retrieve_quote_document(self, quote_id: str) -> Optional[str]:
        return self.check_quote_status(quote_id).quote_document_url
