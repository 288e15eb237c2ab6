"""Carrier adapter contract.

Every carrier integration implements this interface, whether it talks to the
carrier's API directly (supports_api = True) or drives the carrier's agent
portal through browser automation (supports_api = False). The flag only
changes the transport used internally and how submissions are labelled.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from quotedesk.models import SubmissionMethod
from quotedesk.schemas import CarrierQuoteRequest, CarrierQuoteResponse, PortalCredentials


class BaseCarrierAdapter(ABC):
    """Abstract base class for carrier adapters.

    Attributes:
        identifier: Lower-case registry key ("btis")
        name: Display name, stored on quotes as carrier_name ("BTIS")
        supports_api: Whether submissions go over a direct API
    """

    identifier: str = ""
    name: str = ""
    supports_api: bool = True

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.identifier = config.get("id", self.identifier)
        self.name = config.get("name", self.name)

    @property
    def submission_method(self) -> str:
        return SubmissionMethod.API.value if self.supports_api else SubmissionMethod.AGENT.value

    @abstractmethod
    def submit_quote(self, request: CarrierQuoteRequest) -> CarrierQuoteResponse:
        """Submit a quote request to the carrier.

        Not deduplicated here; callers rely on the ingestion gateway's
        quote_number handling for idempotency.

        Args:
            request: Neutral quote request

        Returns:
            The carrier's decision (or a pending response for asynchronous submissions)
        """
        ...

    @abstractmethod
    def check_quote_status(self, quote_id: str) -> CarrierQuoteResponse:
        """Poll a previously submitted quote.

        Raises:
            NotFoundError: The carrier has no record of quote_id
        """
        ...

    @abstractmethod
    def retrieve_quote_document(self, quote_id: str) -> Optional[str]:
        """URL of the issued quote document, or None if not available yet."""
        ...

    def portal_credentials(self) -> Optional[PortalCredentials]:
        """Configured portal login, for adapters that drive an agent portal."""
        return None

    def close(self) -> None:
        """Release transport resources. Adapters without any can ignore this."""
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(identifier={self.identifier!r}, supports_api={self.supports_api})"
