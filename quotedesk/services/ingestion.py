"""
Quote ingestion gateway.

The single write path for quote outcomes. Producers (carrier adapters,
automation completion, external systems, manual imports) send a flat payload;
the gateway resolves or creates the Account and Opportunity and upserts the
Quote using quote_number as the idempotency key.

Natural keys (account name, opportunity name per account, quote_number) are
unique in storage. Inserts run in a savepoint so a concurrent writer winning
the race surfaces as PersistenceConflictError, which is recovered by reading
the winner's row (and, for quotes, updating it).
"""

from typing import Optional, Tuple
import json
import logging

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from quotedesk.errors import NotFoundError, PersistenceConflictError, ValidationError
from quotedesk.models import (
    Account, Opportunity, Quote,
    OpportunityStage, QuoteOutcome, QuoteStatus, utcnow,
)
from quotedesk.schemas import QuoteIngestRequest
from quotedesk.services.pipeline import advance_on_quoted

logger = logging.getLogger("quotedesk")

CREATED = "created"
UPDATED = "updated"

# Plain columns copied from the payload when present
QUOTE_FIELDS = (
    "premium",
    "effective_date",
    "expiration_date",
    "carrier_quote_id",
    "quote_document_url",
)


class QuoteIngestionGateway:
    """Find-or-create Account and Opportunity, then upsert Quote by quote_number."""

    def __init__(self, session: Session, stage_policy: str = "always"):
        self.session = session
        self.stage_policy = stage_policy

    def ingest(self, payload: QuoteIngestRequest) -> Tuple[Quote, str]:
        """
        Ingest one quote result.

        Args:
            payload: Inbound quote data

        Returns:
            Tuple of (persisted quote, "created" | "updated")

        Raises:
            ValidationError: carrier_name/product_line missing or account unresolvable
            NotFoundError: opportunity_id does not exist
        """
        if not payload.carrier_name or not payload.product_line:
            raise ValidationError("carrier_name and product_line are required")

        try:
            account = self._resolve_account(payload)
            opportunity = self._resolve_opportunity(payload, account)

            quote = self._find_quote(payload.quote_number) if payload.quote_number else None
            if quote is not None:
                action = UPDATED
                self.update_quote(quote, payload, commit=False)
            else:
                try:
                    quote = self._insert_quote(opportunity, payload)
                    action = CREATED
                except PersistenceConflictError:
                    quote = self._find_quote(payload.quote_number)
                    if quote is None:
                        raise
                    logger.info(
                        f"Concurrent quote insert, retrying as update | quote_number={payload.quote_number}"
                    )
                    action = UPDATED
                    self.update_quote(quote, payload, commit=False)

            self._advance_stage(quote)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        self.session.refresh(quote)
        logger.info(
            f"Quote ingested | action={action} | quote_id={quote.id} | "
            f"quote_number={quote.quote_number} | carrier={quote.carrier_name} | "
            f"product_line={quote.product_line} | outcome={quote.outcome} | "
            f"opportunity_id={quote.opportunity_id}"
        )
        return quote, action

    def update_quote(self, quote: Quote, payload: QuoteIngestRequest, commit: bool = True) -> Quote:
        """
        Apply inbound data to an existing quote.

        Fields absent from the payload keep their stored values; outcome-derived
        fields (quoted_at, decline_reason, error_message) are recomputed.
        """
        if payload.status is not None:
            quote.status = payload.status.value
        if payload.coverage_details is not None:
            quote.coverage_details_json = json.dumps(payload.coverage_details)
        if payload.submission_method is not None:
            quote.submission_method = payload.submission_method.value
            quote.submitted_at = quote.submitted_at or utcnow()
        if payload.quote_number and not quote.quote_number:
            quote.quote_number = payload.quote_number
        for field in QUOTE_FIELDS:
            value = getattr(payload, field)
            if value is not None:
                setattr(quote, field, value)

        self._apply_outcome(quote, payload)
        quote.updated_at = utcnow()
        self.session.add(quote)

        if commit:
            try:
                self._advance_stage(quote)
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise
            self.session.refresh(quote)
        return quote

    # Account / Opportunity resolution
    def _find_account(self, name: str) -> Optional[Account]:
        return self.session.query(Account).filter(Account.name == name).first()

    def _resolve_account(self, payload: QuoteIngestRequest) -> Account:
        if payload.account_id is not None:
            account = self.session.get(Account, payload.account_id)
            if account is None:
                raise ValidationError(f"Account {payload.account_id} not found")
            return account

        if not payload.account_name:
            raise ValidationError("account_id or account_name is required")

        account = self._find_account(payload.account_name)
        if account is not None:
            return account

        try:
            account = self._insert(Account(name=payload.account_name))
            logger.info(f"Account created | account_id={account.id} | name={account.name}")
            return account
        except PersistenceConflictError:
            account = self._find_account(payload.account_name)
            if account is None:
                raise
            return account

    def _find_opportunity(self, account_id: int, name: str) -> Optional[Opportunity]:
        return self.session.query(Opportunity).filter(
            Opportunity.account_id == account_id,
            Opportunity.name == name
        ).first()

    def _resolve_opportunity(self, payload: QuoteIngestRequest, account: Account) -> Opportunity:
        if payload.opportunity_id is not None:
            opportunity = self.session.get(Opportunity, payload.opportunity_id)
            if opportunity is None:
                raise NotFoundError(f"Opportunity {payload.opportunity_id} not found")
            if opportunity.account_id != account.id:
                raise ValidationError(
                    f"Opportunity {opportunity.id} does not belong to account {account.id}"
                )
            return opportunity

        name = payload.opportunity_name or f"{account.name} - {payload.product_line}"
        opportunity = self._find_opportunity(account.id, name)
        if opportunity is not None:
            return opportunity

        try:
            opportunity = self._insert(Opportunity(
                account_id=account.id,
                name=name,
                stage=OpportunityStage.QUOTE.value,
                product_lines_json=json.dumps([payload.product_line]),
            ))
            logger.info(
                f"Opportunity created | opportunity_id={opportunity.id} | "
                f"account_id={account.id} | name={name}"
            )
            return opportunity
        except PersistenceConflictError:
            opportunity = self._find_opportunity(account.id, name)
            if opportunity is None:
                raise
            return opportunity

    # Quote
    def _find_quote(self, quote_number: str) -> Optional[Quote]:
        return self.session.query(Quote).filter(Quote.quote_number == quote_number).first()

    def _insert_quote(self, opportunity: Opportunity, payload: QuoteIngestRequest) -> Quote:
        now = utcnow()
        quote = Quote(
            opportunity_id=opportunity.id,
            carrier_name=payload.carrier_name,
            product_line=payload.product_line,
            status=payload.status.value if payload.status else QuoteStatus.DRAFT.value,
            quote_number=payload.quote_number,
            carrier_quote_id=payload.carrier_quote_id,
            premium=payload.premium,
            effective_date=payload.effective_date,
            expiration_date=payload.expiration_date,
            coverage_details_json=json.dumps(payload.coverage_details) if payload.coverage_details is not None else None,
            submission_method=payload.submission_method.value if payload.submission_method else None,
            quote_document_url=payload.quote_document_url,
            submitted_at=now if payload.submission_method else None,
            created_at=now,
            updated_at=now,
        )
        self._apply_outcome(quote, payload)
        return self._insert(quote)

    def _apply_outcome(self, quote: Quote, payload: QuoteIngestRequest) -> None:
        """Keep outcome-derived fields coherent with the outcome."""
        if payload.outcome is not None:
            quote.outcome = payload.outcome.value

        if quote.outcome == QuoteOutcome.DECLINED.value:
            quote.decline_reason = payload.decline_reason or quote.decline_reason
        else:
            quote.decline_reason = None

        if quote.outcome == QuoteOutcome.ERROR.value:
            quote.error_message = payload.error_message or quote.error_message
        else:
            quote.error_message = None

        if quote.outcome == QuoteOutcome.QUOTED.value:
            quote.quoted_at = quote.quoted_at or utcnow()
        else:
            quote.quoted_at = None

    def _advance_stage(self, quote: Quote) -> None:
        if quote.outcome != QuoteOutcome.QUOTED.value:
            return
        opportunity = self.session.get(Opportunity, quote.opportunity_id)
        previous = opportunity.stage
        if advance_on_quoted(opportunity, self.stage_policy):
            self.session.add(opportunity)
            logger.info(
                f"Opportunity stage advanced | opportunity_id={opportunity.id} | "
                f"from={previous} | to={opportunity.stage} | policy={self.stage_policy}"
            )

    def _insert(self, instance):
        """Insert inside a savepoint; unique-key violations become PersistenceConflictError."""
        try:
            with self.session.begin_nested():
                self.session.add(instance)
                self.session.flush()
        except IntegrityError as e:
            logger.warning(
                f"Natural key conflict | table={instance.__tablename__} | error={e.orig}"
            )
            raise PersistenceConflictError(str(e.orig)) from e
        self.session.refresh(instance)
        return instance
