"""
Exception taxonomy for the quote submission core.
"""


class QuoteDeskError(Exception):
    """Base exception for all application errors."""

    pass


class ValidationError(QuoteDeskError):
    """Missing or unresolvable required input (carrier, product line, account)."""

    pass


class NotFoundError(QuoteDeskError):
    """A referenced carrier quote, run, session or record does not exist."""

    pass


class UnsupportedCarrierError(QuoteDeskError):
    """Carrier identifier is not in the registry."""

    def __init__(self, carrier: str):
        self.carrier = carrier
        super().__init__(f"No adapter found for carrier: {carrier}")


class TransientUpstreamError(QuoteDeskError):
    """Carrier or automation provider failed in a way that may succeed on retry."""

    def __init__(self, message: str, attempts: int = 1):
        self.attempts = attempts
        super().__init__(message)


class CarrierRequestError(QuoteDeskError):
    """Carrier rejected the request outright (4xx other than 404/429)."""

    def __init__(self, message: str, status_code: int = None):
        self.status_code = status_code
        super().__init__(message)


class PersistenceConflictError(QuoteDeskError):
    """A natural key (account name, quote_number) was written concurrently."""

    pass


class SessionAlreadyCompletedError(QuoteDeskError):
    """Completion was delivered for an automation run that is already terminal."""

    pass


class ConfigurationError(QuoteDeskError):
    """Configuration is invalid or missing (API URL, credentials)."""

    pass
