"""
Config cache module.

Holds the carrier catalogue (loaded once from config/carriers.yaml) and the
runtime settings read from the environment, so neither is re-read per request.
"""

import os
from typing import Dict, Any, Optional, List
from threading import Lock

import yaml

from quotedesk.errors import ConfigurationError

STAGE_POLICIES = ("always", "forward_only")


class ConfigCache:
    """Thread-safe configuration cache."""

    def __init__(self, catalogue_path: Optional[str] = None):
        self._catalogue_path = catalogue_path or os.path.join(
            os.path.dirname(__file__),
            "config",
            "carriers.yaml"
        )
        self._catalogue: Optional[Dict[str, Any]] = None
        self._settings: Optional[Dict[str, Any]] = None
        self._lock = Lock()

    def get_catalogue(self) -> Dict[str, Any]:
        """Get cached carrier catalogue, loading from disk if not cached."""
        if self._catalogue is None:
            with self._lock:
                if self._catalogue is None:  # Double-check locking
                    with open(self._catalogue_path, 'r') as f:
                        self._catalogue = yaml.safe_load(f) or {}
        return self._catalogue

    def get_carriers(self) -> List[Dict[str, Any]]:
        """Get carrier entries in catalogue order."""
        return self.get_catalogue().get("carriers", [])

    def get_carrier(self, carrier_id: str) -> Dict[str, Any]:
        """
        Get catalogue entry for a carrier merged with its environment settings.

        Args:
            carrier_id: Lower-case carrier identifier

        Returns:
            Carrier configuration
        """
        entry = next((c for c in self.get_carriers() if c["id"] == carrier_id), None)
        if entry is None:
            raise ConfigurationError(f"Carrier {carrier_id} not in catalogue")

        prefix = carrier_id.upper()
        return {
            **entry,
            "api_url": os.getenv(f"{prefix}_API_URL", entry.get("api_url")),
            "api_key": os.getenv(f"{prefix}_API_KEY"),
            "partner_id": os.getenv(f"{prefix}_PARTNER_ID"),
            "portal_url": os.getenv(f"{prefix}_PORTAL_URL", entry.get("portal_url")),
        }

    def get_settings(self) -> Dict[str, Any]:
        """Get runtime settings from the environment."""
        if self._settings is None:
            with self._lock:
                if self._settings is None:
                    stage_policy = os.getenv("QUOTE_STAGE_POLICY", "always")
                    if stage_policy not in STAGE_POLICIES:
                        raise ConfigurationError(
                            f"QUOTE_STAGE_POLICY must be one of {', '.join(STAGE_POLICIES)}"
                        )
                    self._settings = {
                        "stage_policy": stage_policy,
                        "max_retries": int(os.getenv("CARRIER_MAX_RETRIES", "3")),
                        "retry_base_delay": float(os.getenv("CARRIER_RETRY_BASE_DELAY", "0.5")),
                        "retry_max_delay": float(os.getenv("CARRIER_RETRY_MAX_DELAY", "8")),
                        "timeout": float(os.getenv("CARRIER_TIMEOUT", "30")),
                        "browserbase_api_url": os.getenv(
                            "BROWSERBASE_API_URL", "https://api.browserbase.com/v1"
                        ),
                        "browserbase_api_key": os.getenv("BROWSERBASE_API_KEY"),
                        "browserbase_project_id": os.getenv("BROWSERBASE_PROJECT_ID"),
                    }
        return self._settings

    def clear_cache(self):
        """Clear all cached data (useful for testing)."""
        with self._lock:
            self._catalogue = None
            self._settings = None


# Global cache instance
config_cache = ConfigCache()
