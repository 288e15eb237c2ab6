"""
Quote ingestion endpoint.

External systems, carrier webhooks and automation completion handlers push
finished quote results here. Responses use a flat `{error: ...}` body rather
than FastAPI's `detail` so existing producers keep working.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
import logging

from quotedesk.deps import get_ingestion_gateway
from quotedesk.errors import NotFoundError, ValidationError
from quotedesk.schemas import QuoteIngestRequest, QuoteIngestResponse, QuoteRecord
from quotedesk.services.ingestion import QuoteIngestionGateway

logger = logging.getLogger("quotedesk")

router = APIRouter()

INGEST_PATH = "/quotes/ingest"


@router.post(INGEST_PATH, response_model=QuoteIngestResponse)
async def ingest_quote(
    request: QuoteIngestRequest,
    request_obj: Request,
    gateway: QuoteIngestionGateway = Depends(get_ingestion_gateway)
):
    """
    Ingest a quote result.

    This endpoint:
    1. Validates carrier_name and product_line
    2. Finds or creates the account (by name) and opportunity
    3. Creates the quote, or updates it when quote_number is already known
    4. Moves the opportunity to uw_review on a quoted outcome
    """
    request_id = getattr(request_obj.state, "request_id", "unknown")
    logger.info(
        f"Processing quote ingestion | request_id={request_id} | "
        f"carrier={request.carrier_name} | quote_number={request.quote_number}"
    )

    try:
        quote, action = gateway.ingest(request)
    except ValidationError as e:
        logger.warning(f"Quote ingestion rejected | request_id={request_id} | error={e}")
        return JSONResponse(status_code=400, content={"error": str(e)})
    except NotFoundError as e:
        logger.warning(f"Quote ingestion rejected | request_id={request_id} | error={e}")
        return JSONResponse(status_code=404, content={"error": str(e)})
    except Exception as e:
        logger.exception(f"Error ingesting quote | request_id={request_id}")
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "details": str(e)}
        )

    return QuoteIngestResponse(quote=QuoteRecord.from_model(quote), action=action)


@router.get(INGEST_PATH)
async def ingest_health():
    """Static description of the ingestion endpoint."""
    return {
        "status": "ok",
        "endpoint": f"/api{INGEST_PATH}",
        "methods": ["POST"],
    }
