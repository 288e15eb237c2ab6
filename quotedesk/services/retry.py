"""
Retry with exponential backoff for carrier and automation-provider HTTP calls.
"""

from typing import Callable, Optional
import logging
import random
import time

import httpx

from quotedesk.errors import NotFoundError, TransientUpstreamError, CarrierRequestError

logger = logging.getLogger("quotedesk")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before the retry that follows `attempt` (0-based): base * 2^attempt, capped, plus jitter."""
    delay = min(max_delay, base_delay * (2 ** attempt))
    return delay + random.uniform(0, base_delay)


def _retry_after(response: httpx.Response, max_delay: float) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return min(max_delay, float(value))
    except ValueError:
        return None


def is_transient_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def call_with_retry(
    send: Callable[[], httpx.Response],
    operation: str,
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    sleep: Callable[[float], None] = time.sleep,
) -> httpx.Response:
    """
    Run an HTTP call, retrying transient failures with exponential backoff.

    Args:
        send: Zero-argument callable issuing the request
        operation: Label used in logs and error messages
        max_retries: Total number of attempts
        base_delay: First backoff delay in seconds
        max_delay: Upper bound for a single delay
        sleep: Sleep function (replaced in tests)

    Returns:
        The successful (2xx/3xx) response

    Raises:
        NotFoundError: Upstream answered 404
        CarrierRequestError: Upstream rejected the request (other 4xx)
        TransientUpstreamError: Every attempt failed transiently
    """
    last_error = "no attempts made"

    for attempt in range(max_retries):
        delay = None
        try:
            response = send()
        except httpx.TransportError as e:
            last_error = f"{type(e).__name__}: {e}"
        else:
            if response.status_code == 404:
                raise NotFoundError(f"{operation}: upstream has no such record")
            if not is_transient_status(response.status_code):
                if response.status_code >= 400:
                    raise CarrierRequestError(
                        f"{operation}: rejected with HTTP {response.status_code}: {response.text[:200]}",
                        status_code=response.status_code
                    )
                return response
            last_error = f"HTTP {response.status_code}"
            delay = _retry_after(response, max_delay)

        if attempt < max_retries - 1:
            if delay is None:
                delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"Upstream call failed, retrying | operation={operation} | "
                f"attempt={attempt + 1}/{max_retries} | error={last_error} | "
                f"retry_in_s={delay:.2f}"
            )
            sleep(delay)

    logger.error(
        f"Upstream call exhausted retries | operation={operation} | "
        f"attempts={max_retries} | error={last_error}"
    )
    raise TransientUpstreamError(
        f"{operation} failed after {max_retries} attempts: {last_error}",
        attempts=max_retries
    )
