"""Direct-API carrier adapter base.

Concrete carriers only describe their payload shapes and paths; the HTTP
client, authentication, retry/backoff and failure classification live here.
The httpx transport is injectable so tests (and sandboxes) share the real
request path.
"""

from abc import abstractmethod
from typing import Any, Callable, Dict, Optional
import logging
import time

import httpx

from quotedesk.errors import ConfigurationError, CarrierRequestError
from quotedesk.schemas import CarrierQuoteRequest, CarrierQuoteResponse
from quotedesk.services.carriers.base import BaseCarrierAdapter
from quotedesk.services.retry import call_with_retry

logger = logging.getLogger("quotedesk")


class ApiCarrierAdapter(BaseCarrierAdapter):
    """Carrier reachable over a JSON HTTP API."""

    supports_api = True
    submit_path = "/quotes"

    def __init__(
        self,
        config: Dict[str, Any],
        settings: Dict[str, Any],
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(config)
        self.settings = settings
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.Client] = None

    # Carrier-specific hooks
    @abstractmethod
    def build_submission(self, request: CarrierQuoteRequest) -> Dict[str, Any]:
        """Translate the neutral request into the carrier's payload."""
        ...

    @abstractmethod
    def parse_decision(self, payload: Dict[str, Any], product_line: Optional[str] = None) -> CarrierQuoteResponse:
        """Translate the carrier's quote payload into a CarrierQuoteResponse."""
        ...

    def status_path(self, quote_id: str) -> str:
        return f"{self.submit_path}/{quote_id}"

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.config['api_key']}"}

    # Transport
    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            if not self.config.get("api_url") or not self.config.get("api_key"):
                prefix = self.identifier.upper()
                raise ConfigurationError(
                    f"{self.name} is not configured: set {prefix}_API_URL and {prefix}_API_KEY"
                )
            self._client = httpx.Client(
                base_url=self.config["api_url"],
                headers={**self.auth_headers(), "Accept": "application/json"},
                timeout=self.settings.get("timeout", 30.0),
                transport=self._transport,
            )
        return self._client

    def request(self, method: str, path: str, operation: str, **kwargs) -> Dict[str, Any]:
        """Issue a request with retry and return the decoded JSON body ({} for empty bodies)."""
        response = call_with_retry(
            lambda: self.client.request(method, path, **kwargs),
            operation=f"{self.name} {operation}",
            max_retries=self.settings.get("max_retries", 3),
            base_delay=self.settings.get("retry_base_delay", 0.5),
            max_delay=self.settings.get("retry_max_delay", 8.0),
            sleep=self._sleep,
        )
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise CarrierRequestError(
                f"{self.name} {operation}: response is not JSON",
                status_code=response.status_code
            ) from e

    # Contract
    def submit_quote(self, request: CarrierQuoteRequest) -> CarrierQuoteResponse:
        logger.info(
            f"Submitting quote | carrier={self.name} | product_line={request.product_line} | "
            f"opportunity_id={request.opportunity_id}"
        )
        payload = self.request("POST", self.submit_path, "submit quote", json=self.build_submission(request))
        response = self.parse_decision(payload, product_line=request.product_line)
        logger.info(
            f"Carrier decision | carrier={self.name} | quote_id={response.quote_id} | "
            f"status={response.status} | quote_number={response.quote_number}"
        )
        return response

    def check_quote_status(self, quote_id: str) -> CarrierQuoteResponse:
        payload = self.request("GET", self.status_path(quote_id), "check quote status")
        return self.parse_decision(payload)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _unexpected(self, what: str) -> CarrierRequestError:
        return CarrierRequestError(f"{self.name} returned an unexpected response: {what}")
