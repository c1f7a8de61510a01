"""
Exchange Clients Library

Abstract execution capability consumed by the virtual grid engine, plus an
in-memory paper implementation.

Modules:
    - base_client: Execution capability interface (BaseExchangeClient)
    - base_models: Shared dataclasses/utilities
    - paper: Deterministic paper client
"""

from .base_client import BaseExchangeClient
from .base_models import (
    ExchangeConnectionError,
    OrderResult,
    query_retry,
)

__all__ = [
    "BaseExchangeClient",
    "ExchangeConnectionError",
    "OrderResult",
    "query_retry",
]

__version__ = "1.0.0"
