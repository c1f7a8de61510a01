"""Base interface for the exchange capabilities the grid engine consumes."""

from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Optional

from .base_models import OrderResult


class BaseExchangeClient(ABC):
    """
    Opaque execution capability used by the virtual grid owners.

    The engine only needs a price feed and four order capabilities. Each call
    is treated as at-most-once: the core never retries, it simply reports the
    failure and waits for its next tick.

    Implementation Pattern:
        ```python
        class PaperExchangeClient(BaseExchangeClient):
            async def latest_price(self, symbol: str) -> Optional[Decimal]:
                return self._prices.get(symbol)
        ```
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize the exchange client with configuration.

        Args:
            config: Configuration dictionary containing client parameters
        """
        self.config = config or {}
        self._validate_config()

    def _validate_config(self) -> None:
        """Validate client configuration. Subclasses override when they need credentials."""
        return None

    async def connect(self) -> None:
        """Open any underlying connections. No-op by default."""
        return None

    async def disconnect(self) -> None:
        """Release any underlying connections. No-op by default."""
        return None

    @abstractmethod
    def get_exchange_name(self) -> str:
        """Return the venue name (used for fee schedules and logging)."""
        pass

    # ========================================================================
    # PRICE FEED
    # ========================================================================

    @abstractmethod
    async def latest_price(self, symbol: str) -> Optional[Decimal]:
        """
        Latest mark price for ``symbol``.

        Returns:
            Price, or ``None`` when the feed is unavailable. Callers skip the
            tick for that symbol on ``None``.
        """
        pass

    # ========================================================================
    # ORDER PLACEMENT
    # ========================================================================

    @abstractmethod
    async def place_order(
        self,
        symbol: str,
        side: str,
        size: Decimal,
        order_type: str,
        leverage: int,
        reduce_only: bool = False,
    ) -> OrderResult:
        """
        Place an order.

        Args:
            symbol: Trading symbol
            side: 'buy' or 'sell'
            size: Order size in base units
            order_type: 'market' or 'limit'
            leverage: Leverage applied to the position
            reduce_only: Whether the order may only shrink an existing position

        Returns:
            OrderResult; ``filled_price`` is set only for confirmed fills
        """
        pass

    @abstractmethod
    async def set_stop_loss(self, symbol: str, price: Decimal) -> bool:
        """Attach a stop-loss trigger for ``symbol``. Returns ``True`` on success."""
        pass

    @abstractmethod
    async def set_take_profit(self, symbol: str, price: Decimal) -> bool:
        """Attach a take-profit trigger for ``symbol``. Returns ``True`` on success."""
        pass

    @abstractmethod
    async def close_position(self, symbol: str) -> OrderResult:
        """Close the whole venue-side position for ``symbol``."""
        pass
