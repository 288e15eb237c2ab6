"""
Coterie carrier adapter.

Environment:
- COTERIE_API_URL
- COTERIE_API_KEY
- COTERIE_PARTNER_ID
"""

from typing import Any, Dict, Optional

from quotedesk.schemas import CarrierQuoteRequest, CarrierQuoteResponse
from quotedesk.services.carriers.http import ApiCarrierAdapter

STATUSES = {
    "quoted": "quoted",
    "declined": "declined",
    "ineligible": "no_offer",
    "failed": "error",
    "pending": "pending",
}


class CoterieAdapter(ApiCarrierAdapter):
    identifier = "coterie"
    name = "Coterie"
    submit_path = "/v1/commercial/quotes"

    def build_submission(self, request: CarrierQuoteRequest) -> Dict[str, Any]:
        return {
            "partnerId": self.config.get("partner_id"),
            "policyType": request.product_line,
            "policyStartDate": request.effective_date,
            "policyEndDate": request.expiration_date,
            "coverages": request.coverage_requirements,
            "applicant": request.applicant_data,
        }

    def parse_decision(self, payload: Dict[str, Any], product_line: Optional[str] = None) -> CarrierQuoteResponse:
        quote_id = payload.get("quoteId")
        status = STATUSES.get(str(payload.get("status", "")).lower())
        if not quote_id or status is None:
            raise self._unexpected(f"status={payload.get('status')!r} quoteId={quote_id!r}")

        errors = payload.get("errors") or []
        reasons = payload.get("declineReasons") or []
        return CarrierQuoteResponse(
            quote_id=str(quote_id),
            carrier_name=self.name,
            product_line=payload.get("policyType") or product_line or "",
            status=status,
            quote_number=payload.get("quoteNumber"),
            premium=payload.get("premium"),
            effective_date=payload.get("policyStartDate"),
            expiration_date=payload.get("policyEndDate"),
            coverage_details=payload.get("coverageDetails"),
            decline_reason="; ".join(reasons) if status == "declined" and reasons else None,
            error_message="; ".join(str(e) for e in errors) if status == "error" and errors else None,
            quote_document_url=payload.get("quoteProposalUrl"),
        )

    def retrieve_quote_document(self, quote_id: str) -> Optional[str]:
        # Coterie exposes the proposal link on the quote itself
        return self.check_quote_status(quote_id).quote_document_url
