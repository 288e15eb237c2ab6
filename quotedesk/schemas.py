"""
Pydantic schemas for request/response validation.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime
import json

from quotedesk.models import (
    Quote, Opportunity, AutomationRun,
    QuoteStatus, QuoteOutcome, SubmissionMethod,
)


def _load_json(value: Optional[str], default=None):
    return json.loads(value) if value else default


# Adapter boundary
class CarrierQuoteRequest(BaseModel):
    """Neutral quote request handed to a carrier adapter."""
    account_id: Optional[int] = None
    opportunity_id: Optional[int] = None
    product_line: str
    effective_date: str
    expiration_date: str
    coverage_requirements: Dict[str, Any] = Field(default_factory=dict)
    applicant_data: Dict[str, Any] = Field(default_factory=dict)
    quote_ref: Optional[int] = Field(None, description="Local quote id (portal carriers attach runs to it)")


class CarrierQuoteResponse(BaseModel):
    """Carrier decision, normalized across adapters."""
    quote_id: str = Field(description="Carrier-side identifier for this submission")
    carrier_name: str
    product_line: str
    status: Literal["quoted", "declined", "error", "no_offer", "pending"]
    quote_number: Optional[str] = None
    premium: Optional[float] = None
    effective_date: Optional[str] = None
    expiration_date: Optional[str] = None
    coverage_details: Optional[Dict[str, Any]] = None
    decline_reason: Optional[str] = None
    error_message: Optional[str] = None
    quote_document_url: Optional[str] = None


# Ingestion boundary - flat structure, everything optional so that the gateway
# owns the mandatory-field check and its error message
class QuoteIngestRequest(BaseModel):
    """Inbound quote result from an adapter, external system or manual entry."""
    account_name: Optional[str] = None
    account_id: Optional[int] = None
    opportunity_name: Optional[str] = None
    opportunity_id: Optional[int] = None
    carrier_name: Optional[str] = None
    product_line: Optional[str] = None
    status: Optional[QuoteStatus] = None
    quote_number: Optional[str] = None
    premium: Optional[float] = None
    effective_date: Optional[str] = None
    expiration_date: Optional[str] = None
    coverage_details: Optional[Dict[str, Any]] = None
    submission_method: Optional[SubmissionMethod] = None
    outcome: Optional[QuoteOutcome] = None
    decline_reason: Optional[str] = None
    error_message: Optional[str] = None
    carrier_quote_id: Optional[str] = None
    quote_document_url: Optional[str] = None


class QuoteRecord(BaseModel):
    """Persisted quote as returned to callers."""
    id: int
    opportunity_id: int
    carrier_name: str
    product_line: str
    status: str
    outcome: Optional[str]
    quote_number: Optional[str]
    carrier_quote_id: Optional[str]
    premium: Optional[float]
    effective_date: Optional[str]
    expiration_date: Optional[str]
    coverage_details: Optional[Dict[str, Any]]
    decline_reason: Optional[str]
    error_message: Optional[str]
    submission_method: Optional[str]
    quote_document_url: Optional[str]
    submitted_at: Optional[datetime]
    quoted_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, quote: Quote) -> "QuoteRecord":
        data = quote.model_dump(exclude={"coverage_details_json"})
        return cls(**data, coverage_details=_load_json(quote.coverage_details_json))


class OpportunityRecord(BaseModel):
    id: int
    account_id: int
    name: str
    stage: str
    product_lines: List[str]

    @classmethod
    def from_model(cls, opportunity: Opportunity) -> "OpportunityRecord":
        return cls(
            id=opportunity.id,
            account_id=opportunity.account_id,
            name=opportunity.name,
            stage=opportunity.stage,
            product_lines=_load_json(opportunity.product_lines_json, []),
        )


class QuoteIngestResponse(BaseModel):
    """Ingestion result."""
    success: bool = True
    quote: QuoteRecord
    action: Literal["created", "updated"]


# Carrier endpoints
class CarrierInfo(BaseModel):
    id: str
    name: str
    supports_api: bool


class CarrierSubmitRequest(BaseModel):
    """Submit a quote to a carrier on behalf of an existing opportunity."""
    opportunity_id: int
    product_line: str
    effective_date: str
    expiration_date: str
    coverage_requirements: Dict[str, Any] = Field(default_factory=dict)
    applicant_data: Dict[str, Any] = Field(default_factory=dict)


class QuoteDocumentResponse(BaseModel):
    quote_id: int
    quote_document_url: Optional[str]


# Automation boundary
class PortalCredentials(BaseModel):
    """Carrier portal login. Used for the session request only, never persisted."""
    username: str
    password: str


class AutomationStartRequest(BaseModel):
    carrier_name: str
    quote_id: int
    portal_url: Optional[str] = Field(None, description="Defaults to the carrier's catalogue portal")
    credentials: Optional[PortalCredentials] = None
    form_data: Dict[str, Any] = Field(default_factory=dict)


class AutomationRetryRequest(BaseModel):
    credentials: Optional[PortalCredentials] = None


class AutomationResult(BaseModel):
    """Completion payload delivered by webhook or polling."""
    status: Literal["success", "error"]
    output_data: Optional[Dict[str, Any]] = None
    screenshot_urls: Optional[List[str]] = None
    logs: Optional[str] = None
    error_message: Optional[str] = None


class SessionResponse(BaseModel):
    """Automation session handle."""
    session_id: str
    run_id: int
    carrier_name: str
    quote_id: int
    status: Literal["running", "success", "error"]
    retry_count: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    screenshot_urls: Optional[List[str]] = None
    logs: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_run(cls, run: AutomationRun) -> "SessionResponse":
        return cls(
            session_id=run.session_id,
            run_id=run.id,
            carrier_name=run.carrier_name,
            quote_id=run.quote_id,
            status=run.status,
            retry_count=run.retry_count,
            started_at=run.started_at,
            completed_at=run.completed_at,
            screenshot_urls=_load_json(run.screenshot_urls_json),
            logs=run.logs,
            error_message=run.error_message,
        )


class AutomationRunRecord(SessionResponse):
    """Full run history entry."""
    parent_run_id: Optional[int] = None
    input_data: Dict[str, Any]
    output_data: Optional[Dict[str, Any]] = None

    @classmethod
    def from_run(cls, run: AutomationRun) -> "AutomationRunRecord":
        session = SessionResponse.from_run(run)
        return cls(
            **session.model_dump(),
            parent_run_id=run.parent_run_id,
            input_data=_load_json(run.input_data_json, {}),
            output_data=_load_json(run.output_data_json),
        )
