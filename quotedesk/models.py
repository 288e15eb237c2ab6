"""
SQLModel database models for the quote submission core.
"""

from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint
from typing import Optional
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OpportunityStage(str, Enum):
    INTAKE = "intake"
    QUOTE = "quote"
    UW_REVIEW = "uw_review"
    BIND = "bind"
    LOST = "lost"


class QuoteStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED_API = "submitted_api"
    SUBMITTED_AGENT = "submitted_agent"
    AWAITING_UW = "awaiting_uw"
    QUOTED = "quoted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class QuoteOutcome(str, Enum):
    QUOTED = "quoted"
    DECLINED = "declined"
    ERROR = "error"
    NO_OFFER = "no_offer"


class SubmissionMethod(str, Enum):
    API = "api"
    AGENT = "agent"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class Account(SQLModel, table=True):
    """Brokerage client company. Name is the natural dedupe key."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)
    industry: Optional[str] = None
    address: Optional[str] = None
    annual_revenue: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Opportunity(SQLModel, table=True):
    """Sales pursuit tied to exactly one account."""
    __table_args__ = (UniqueConstraint("account_id", "name", name="uq_opportunity_account_name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: int = Field(foreign_key="account.id", index=True)
    name: str
    stage: str = Field(default=OpportunityStage.INTAKE.value)
    product_lines_json: str = "[]"  # JSON string
    expected_premium: Optional[float] = None
    probability: Optional[int] = None
    close_date: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Quote(SQLModel, table=True):
    """One carrier submission attempt for one opportunity."""
    id: Optional[int] = Field(default=None, primary_key=True)
    opportunity_id: int = Field(foreign_key="opportunity.id", index=True)
    carrier_name: str
    product_line: str
    status: str = Field(default=QuoteStatus.DRAFT.value)
    outcome: Optional[str] = None
    quote_number: Optional[str] = Field(default=None, unique=True, index=True)
    carrier_quote_id: Optional[str] = Field(default=None, index=True)
    premium: Optional[float] = None
    effective_date: Optional[str] = None
    expiration_date: Optional[str] = None
    coverage_details_json: Optional[str] = None  # JSON string
    decline_reason: Optional[str] = None
    error_message: Optional[str] = None
    submission_method: Optional[str] = None
    quote_document_url: Optional[str] = None
    submitted_at: Optional[datetime] = None
    quoted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class AutomationRun(SQLModel, table=True):
    """One browser-automation session for one quote. Retries are new rows."""
    id: Optional[int] = Field(default=None, primary_key=True)
    quote_id: int = Field(foreign_key="quote.id", index=True)
    carrier_name: str
    session_id: Optional[str] = Field(default=None, unique=True, index=True)
    status: str = Field(default=RunStatus.RUNNING.value)
    input_data_json: str = "{}"  # JSON string, never holds credentials
    output_data_json: Optional[str] = None  # JSON string
    screenshot_urls_json: Optional[str] = None  # JSON string
    logs: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    parent_run_id: Optional[int] = Field(default=None, foreign_key="automationrun.id")
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
