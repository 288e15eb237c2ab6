"""
Carriers router: supported carriers, submission, status polling and documents.
"""

from fastapi import APIRouter, Depends
from typing import List
import logging

from quotedesk.deps import get_registry, get_submission_service
from quotedesk.schemas import (
    CarrierInfo, CarrierQuoteResponse, CarrierSubmitRequest,
    QuoteDocumentResponse, QuoteIngestResponse, QuoteRecord,
)
from quotedesk.services.registry import CarrierRegistry
from quotedesk.services.submission import QuoteSubmissionService

logger = logging.getLogger("quotedesk")

router = APIRouter()


@router.get("/carriers", response_model=List[CarrierInfo])
async def list_carriers(registry: CarrierRegistry = Depends(get_registry)):
    """Carriers with an integration, in display order."""
    return registry.describe()


@router.post("/carriers/{carrier}/quotes", response_model=QuoteIngestResponse)
def submit_quote(
    carrier: str,
    request: CarrierSubmitRequest,
    service: QuoteSubmissionService = Depends(get_submission_service)
):
    """Submit a quote to a carrier for an existing opportunity and record the result."""
    quote, action = service.submit(carrier, request)
    return QuoteIngestResponse(quote=QuoteRecord.from_model(quote), action=action)


@router.get("/carriers/{carrier}/quotes/{carrier_quote_id}", response_model=CarrierQuoteResponse)
def check_quote_status(
    carrier: str,
    carrier_quote_id: str,
    registry: CarrierRegistry = Depends(get_registry)
):
    """Poll the carrier directly. Nothing is persisted."""
    return registry.resolve(carrier).check_quote_status(carrier_quote_id)


@router.post("/quotes/{quote_id}/refresh", response_model=QuoteIngestResponse)
def refresh_quote(
    quote_id: int,
    service: QuoteSubmissionService = Depends(get_submission_service)
):
    """Poll the carrier for a submitted quote and record the latest decision."""
    quote = service.refresh(quote_id)
    return QuoteIngestResponse(quote=QuoteRecord.from_model(quote), action="updated")


@router.post("/quotes/{quote_id}/document", response_model=QuoteDocumentResponse)
def attach_quote_document(
    quote_id: int,
    service: QuoteSubmissionService = Depends(get_submission_service)
):
    """Retrieve the carrier's quote document and attach its URL to the quote."""
    quote = service.attach_document(quote_id)
    return QuoteDocumentResponse(quote_id=quote.id, quote_document_url=quote.quote_document_url)
