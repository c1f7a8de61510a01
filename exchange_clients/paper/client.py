"""
Paper exchange client implementation.

Fills every market order at the last known price for the symbol. Prices come
either from explicit ``set_price`` calls or from a replayed price path.
"""

import asyncio
from collections import deque
from decimal import Decimal
from typing import Any, Deque, Dict, Iterable, List, Optional

from exchange_clients.base_client import BaseExchangeClient
from exchange_clients.base_models import ExchangeConnectionError, OrderResult, query_retry
from helpers.unified_logger import get_exchange_logger


class PaperExchangeClient(BaseExchangeClient):
    """In-memory exchange with price replay and failure injection."""

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        prices: Optional[Dict[str, Decimal]] = None,
        order_delay: float = 0.0,
    ):
        """
        Args:
            config: Optional configuration (``venue`` is reported as the exchange name)
            prices: Initial prices by symbol
            order_delay: Artificial latency (seconds) added to order placement
        """
        super().__init__(config)
        self.logger = get_exchange_logger("paper")
        self.venue = self.config.get("venue", "paper")
        self.order_delay = order_delay

        self._prices: Dict[str, Decimal] = {s: Decimal(str(p)) for s, p in (prices or {}).items()}
        self._price_paths: Dict[str, Deque[Decimal]] = {}
        self._unavailable: set = set()
        self._failures_remaining = 0
        self._failure_message = "Injected order failure"
        self._partial_fill_ratio: Optional[Decimal] = None
        self._order_seq = 0

        self.orders: List[Dict[str, Any]] = []
        self.stop_losses: Dict[str, Decimal] = {}
        self.take_profits: Dict[str, Decimal] = {}
        self.net_positions: Dict[str, Decimal] = {}

    def get_exchange_name(self) -> str:
        return self.venue

    # ------------------------------------------------------------------
    # Price feed
    # ------------------------------------------------------------------

    def set_price(self, symbol: str, price: Decimal) -> None:
        self._prices[symbol] = Decimal(str(price))

    def load_price_path(self, symbol: str, prices: Iterable[Decimal]) -> None:
        """Queue a deterministic sequence of prices to replay with :meth:`advance`."""
        self._price_paths[symbol] = deque(Decimal(str(p)) for p in prices)

    def advance(self, symbol: str) -> Optional[Decimal]:
        """Move ``symbol`` to the next replayed price. Returns ``None`` once exhausted."""
        path = self._price_paths.get(symbol)
        if not path:
            return None
        price = path.popleft()
        self._prices[symbol] = price
        return price

    def remaining_prices(self, symbol: str) -> int:
        return len(self._price_paths.get(symbol, ()))

    def set_unavailable(self, symbol: str, unavailable: bool = True) -> None:
        """Simulate a price feed outage for ``symbol``."""
        if unavailable:
            self._unavailable.add(symbol)
        else:
            self._unavailable.discard(symbol)

    @query_retry(default_return=None, max_attempts=2, min_wait=0.01, max_wait=0.02)
    async def latest_price(self, symbol: str) -> Optional[Decimal]:
        if symbol in self._unavailable:
            raise ExchangeConnectionError(f"Price feed unavailable for {symbol}")
        return self._prices.get(symbol)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def fail_next_order(self, count: int = 1, message: str = "Injected order failure") -> None:
        """Make the next ``count`` order placements fail."""
        self._failures_remaining = count
        self._failure_message = message

    def partially_fill_next_order(self, ratio: Decimal) -> None:
        """Fill only ``ratio`` of the next order and report it as partially filled."""
        self._partial_fill_ratio = Decimal(str(ratio))

    async def place_order(
        self,
        symbol: str,
        side: str,
        size: Decimal,
        order_type: str,
        leverage: int,
        reduce_only: bool = False,
    ) -> OrderResult:
        if self.order_delay:
            await asyncio.sleep(self.order_delay)

        if self._failures_remaining > 0:
            self._failures_remaining -= 1
            self.logger.log(f"Rejecting {side} {size} {symbol}: {self._failure_message}", "WARNING")
            return OrderResult(success=False, side=side, size=size, error_message=self._failure_message)

        price = self._prices.get(symbol)
        if price is None:
            return OrderResult(
                success=False, side=side, size=size, error_message=f"No price available for {symbol}"
            )
        if size <= 0:
            return OrderResult(success=False, side=side, size=size, error_message="Order size must be positive")

        requested = size
        status = "FILLED"
        if self._partial_fill_ratio is not None:
            size = requested * self._partial_fill_ratio
            self._partial_fill_ratio = None
            status = "PARTIALLY_FILLED"

        self._order_seq += 1
        order_id = f"paper-{self._order_seq}"
        signed = size if side == "buy" else -size
        self.net_positions[symbol] = self.net_positions.get(symbol, Decimal("0")) + signed
        self.orders.append(
            {
                "order_id": order_id,
                "symbol": symbol,
                "side": side,
                "size": size,
                "price": price,
                "order_type": order_type,
                "leverage": leverage,
                "reduce_only": reduce_only,
            }
        )
        self.logger.log(f"Filled {order_type} {side} {size} {symbol} @ {price} ({leverage}x)", "DEBUG")
        return OrderResult(
            success=True,
            order_id=order_id,
            side=side,
            size=requested,
            price=price,
            status=status,
            filled_size=size,
        )

    async def set_stop_loss(self, symbol: str, price: Decimal) -> bool:
        self.stop_losses[symbol] = price
        return True

    async def set_take_profit(self, symbol: str, price: Decimal) -> bool:
        self.take_profits[symbol] = price
        return True

    async def close_position(self, symbol: str) -> OrderResult:
        if self._failures_remaining > 0:
            self._failures_remaining -= 1
            return OrderResult(success=False, error_message=self._failure_message)

        price = self._prices.get(symbol)
        if price is None:
            return OrderResult(success=False, error_message=f"No price available for {symbol}")

        net = self.net_positions.pop(symbol, Decimal("0"))
        self.stop_losses.pop(symbol, None)
        self.take_profits.pop(symbol, None)
        self._order_seq += 1
        return OrderResult(
            success=True,
            order_id=f"paper-{self._order_seq}",
            side="sell" if net > 0 else "buy",
            size=abs(net),
            price=price,
            status="FILLED",
            filled_size=abs(net),
        )
