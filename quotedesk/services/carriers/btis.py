"""
BTIS carrier adapter.

Environment:
- BTIS_API_URL
- BTIS_API_KEY
- BTIS_PARTNER_ID
"""

from typing import Any, Dict, Optional

from quotedesk.schemas import CarrierQuoteRequest, CarrierQuoteResponse
from quotedesk.services.carriers.http import ApiCarrierAdapter

# BTIS decision codes -> normalized status
DECISIONS = {
    "QUOTED": "quoted",
    "DECLINED": "declined",
    "NO_MARKET": "no_offer",
    "ERROR": "error",
    "REFERRED": "pending",
    "IN_REVIEW": "pending",
}


class BTISAdapter(ApiCarrierAdapter):
    identifier = "btis"
    name = "BTIS"
    submit_path = "/quotes"

    def auth_headers(self) -> Dict[str, str]:
        return {"X-Api-Key": self.config["api_key"]}

    def build_submission(self, request: CarrierQuoteRequest) -> Dict[str, Any]:
        return {
            "partner_id": self.config.get("partner_id"),
            "line_of_business": request.product_line,
            "effective_date": request.effective_date,
            "expiration_date": request.expiration_date,
            "coverages": request.coverage_requirements,
            "applicant": request.applicant_data,
            "reference": {
                "account_id": request.account_id,
                "opportunity_id": request.opportunity_id,
            },
        }

    def parse_decision(self, payload: Dict[str, Any], product_line: Optional[str] = None) -> CarrierQuoteResponse:
        submission_id = payload.get("submission_id")
        decision = DECISIONS.get(str(payload.get("decision", "")).upper())
        if not submission_id or decision is None:
            raise self._unexpected(f"decision={payload.get('decision')!r} submission_id={submission_id!r}")

        reasons = payload.get("decline_reasons") or []
        return CarrierQuoteResponse(
            quote_id=str(submission_id),
            carrier_name=self.name,
            product_line=payload.get("line_of_business") or product_line or "",
            status=decision,
            quote_number=payload.get("quote_number"),
            premium=payload.get("total_premium"),
            effective_date=payload.get("effective_date"),
            expiration_date=payload.get("expiration_date"),
            coverage_details=payload.get("coverage"),
            decline_reason="; ".join(reasons) if decision == "declined" and reasons else None,
            error_message=payload.get("message") if decision == "error" else None,
            quote_document_url=payload.get("document_url"),
        )

    def retrieve_quote_document(self, quote_id: str) -> Optional[str]:
        payload = self.request("GET", f"{self.status_path(quote_id)}/document", "retrieve quote document")
        return payload.get("document_url")
