"""
Shared data structures, exceptions, and utilities for exchange collaborators.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Tuple, Type, Union

from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from helpers.unified_logger import get_core_logger

logger = get_core_logger("exchange_retry")


class ExchangeConnectionError(Exception):
    """Raised by a collaborator when the venue (or its price source) cannot be reached."""
    pass


def query_retry(
    default_return: Any = None,
    exception_type: Union[Type[Exception], Tuple[Type[Exception], ...]] = (ExchangeConnectionError,),
    max_attempts: int = 3,
    min_wait: float = 0.1,
    max_wait: float = 1,
    reraise: bool = False,
):
    """
    Retry decorator for collaborator-side query operations with exponential backoff.

    The grid core never retries on its own; collaborators may wrap their read-only
    queries with this decorator.

    Args:
        default_return: Value to return if all retries fail
        exception_type: Exception types to retry on
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time between retries
        max_wait: Maximum wait time between retries
        reraise: Whether to reraise the exception after retries
    """

    def retry_error_callback(retry_state: RetryCallState):
        logger.log(
            f"Operation [{retry_state.fn.__name__}] failed after {retry_state.attempt_number} attempts: "
            f"{retry_state.outcome.exception()}",
            "WARNING",
        )
        return default_return

    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(exception_type),
        retry_error_callback=None if reraise else retry_error_callback,
        reraise=reraise,
    )


@dataclass
class OrderResult:
    """Standardized order result returned by order placement methods."""

    success: bool
    order_id: Optional[str] = None
    side: Optional[str] = None
    size: Optional[Decimal] = None
    price: Optional[Decimal] = None
    status: Optional[str] = None
    error_message: Optional[str] = None
    filled_size: Optional[Decimal] = None

    @property
    def filled_price(self) -> Optional[Decimal]:
        """Confirmed fill price, or ``None`` when the order did not fill."""
        if not self.success or self.status not in ("FILLED", "PARTIALLY_FILLED"):
            return None
        return self.price
