"""
Carrier registry: which carriers are integrated, and with which adapter.
"""

from collections import OrderedDict
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Optional, Type
import logging
import time

import httpx

from quotedesk.cache import ConfigCache
from quotedesk.errors import ConfigurationError, UnsupportedCarrierError
from quotedesk.services.automation import BrowserbaseClient
from quotedesk.services.carriers.base import BaseCarrierAdapter
from quotedesk.services.carriers.btis import BTISAdapter
from quotedesk.services.carriers.coterie import CoterieAdapter
from quotedesk.services.carriers.http import ApiCarrierAdapter
from quotedesk.services.carriers.portal import PortalCarrierAdapter

logger = logging.getLogger("quotedesk")

# Static registration table. A carrier is supported only if it is listed here
# and in config/carriers.yaml.
ADAPTERS: Dict[str, Type[BaseCarrierAdapter]] = {
    "btis": BTISAdapter,
    "coterie": CoterieAdapter,
    "markel": PortalCarrierAdapter,
}


class CarrierRegistry:
    """Read-only, case-insensitive map of carrier identifier to adapter."""

    def __init__(self, adapters: "OrderedDict[str, BaseCarrierAdapter]"):
        self._adapters = MappingProxyType(OrderedDict(
            (identifier.lower(), adapter) for identifier, adapter in adapters.items()
        ))
        self._by_name = {adapter.name.lower(): adapter for adapter in self._adapters.values()}

    def _lookup(self, carrier: str) -> Optional[BaseCarrierAdapter]:
        key = (carrier or "").strip().lower()
        return self._adapters.get(key) or self._by_name.get(key)

    def resolve(self, carrier: str) -> BaseCarrierAdapter:
        """
        Get the adapter for a carrier.

        Args:
            carrier: Carrier identifier or display name, any case

        Raises:
            UnsupportedCarrierError: Carrier is not registered
        """
        adapter = self._lookup(carrier)
        if adapter is None:
            raise UnsupportedCarrierError(carrier)
        return adapter

    def list_supported(self) -> List[str]:
        """Carrier identifiers in catalogue order."""
        return list(self._adapters.keys())

    def describe(self) -> List[Dict[str, Any]]:
        return [
            {"id": identifier, "name": adapter.name, "supports_api": adapter.supports_api}
            for identifier, adapter in self._adapters.items()
        ]

    def __contains__(self, carrier: str) -> bool:
        return self._lookup(carrier) is not None

    def close(self) -> None:
        for adapter in self._adapters.values():
            adapter.close()


def build_registry(
    config: ConfigCache,
    session_factory: Callable,
    transport: Optional[httpx.BaseTransport] = None,
    automation_client: Optional[BrowserbaseClient] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> CarrierRegistry:
    """
    Build the registry from the carrier catalogue.

    Args:
        config: Config cache holding the catalogue and settings
        session_factory: Context manager factory yielding a DB session (portal carriers)
        transport: Optional httpx transport for direct-API carriers
        automation_client: Automation provider client for portal carriers
        sleep: Sleep function used between retries

    Returns:
        CarrierRegistry
    """
    settings = config.get_settings()
    adapters: "OrderedDict[str, BaseCarrierAdapter]" = OrderedDict()

    for entry in config.get_carriers():
        identifier = entry["id"].lower()
        adapter_cls = ADAPTERS.get(identifier)
        if adapter_cls is None:
            raise ConfigurationError(f"Carrier {identifier} is in the catalogue but has no adapter")

        carrier_config = config.get_carrier(identifier)
        if issubclass(adapter_cls, ApiCarrierAdapter):
            adapter = adapter_cls(carrier_config, settings, transport=transport, sleep=sleep)
        else:
            adapter = adapter_cls(
                carrier_config,
                session_factory=session_factory,
                automation_client=automation_client,
            )

        if adapter.supports_api != bool(entry.get("supports_api", True)):
            raise ConfigurationError(
                f"Carrier {identifier}: catalogue supports_api does not match {adapter_cls.__name__}"
            )
        adapters[identifier] = adapter

    logger.info(f"Carrier registry built | carriers={', '.join(adapters.keys())}")
    return CarrierRegistry(adapters)
