"""
Dependencies wiring services into the routers.
"""

from fastapi import Depends
from sqlmodel import Session
from threading import Lock
from typing import Optional

from quotedesk.cache import config_cache
from quotedesk.db import get_session, session_scope
from quotedesk.services.automation import AutomationSessionManager, BrowserbaseClient
from quotedesk.services.ingestion import QuoteIngestionGateway
from quotedesk.services.registry import CarrierRegistry, build_registry
from quotedesk.services.submission import QuoteSubmissionService

_registry: Optional[CarrierRegistry] = None
_automation_client: Optional[BrowserbaseClient] = None
_automation_client_loaded = False
_lock = Lock()


def get_automation_client() -> Optional[BrowserbaseClient]:
    """Process-wide automation provider client, or None when not configured."""
    global _automation_client, _automation_client_loaded
    if not _automation_client_loaded:
        with _lock:
            if not _automation_client_loaded:
                _automation_client = BrowserbaseClient.from_settings(config_cache.get_settings())
                _automation_client_loaded = True
    return _automation_client


def get_registry() -> CarrierRegistry:
    """Process-wide carrier registry, built on first use."""
    global _registry
    if _registry is None:
        automation_client = get_automation_client()
        with _lock:
            if _registry is None:
                _registry = build_registry(
                    config_cache,
                    session_factory=session_scope,
                    automation_client=automation_client,
                )
    return _registry


def get_ingestion_gateway(session: Session = Depends(get_session)) -> QuoteIngestionGateway:
    return QuoteIngestionGateway(session, stage_policy=config_cache.get_settings()["stage_policy"])


def get_automation_manager(
    session: Session = Depends(get_session),
    client: Optional[BrowserbaseClient] = Depends(get_automation_client),
) -> AutomationSessionManager:
    return AutomationSessionManager(session, client)


def get_submission_service(
    session: Session = Depends(get_session),
    registry: CarrierRegistry = Depends(get_registry),
    gateway: QuoteIngestionGateway = Depends(get_ingestion_gateway),
    automation: AutomationSessionManager = Depends(get_automation_manager),
) -> QuoteSubmissionService:
    return QuoteSubmissionService(session, registry, gateway, automation)
