"""
Risk and capital management helpers for the virtual grid strategy.

Encapsulates the per-symbol leverage caps, the capital ledger that backs real
positions, and the pre-open limit checks used by the position materializer.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple

from .config import GridConfig
from .errors import InvariantViolation
from .models import OpenRejection


LogEventFn = Callable[..., None]

# Venue leverage caps by symbol; unknown symbols fall back to DEFAULT_SYMBOL_LEVERAGE.
SYMBOL_LEVERAGE_LIMITS: Dict[str, int] = {
    'BTC': 40, 'ETH': 40, 'SOL': 40, 'XRP': 40,
    'DOGE': 20, 'SUI': 20, 'WLD': 20, 'LTC': 20,
    'LINK': 20, 'AVAX': 20, 'HYPE': 20, 'TIA': 20,
    'APT': 20, 'NEAR': 20,
    'OP': 10, 'ARB': 10, 'LDO': 10, 'TON': 10,
    'JUP': 10, 'SEI': 10, 'BNB': 10, 'DOT': 10,
    'USDC': 3, 'USDT': 3,
}
DEFAULT_SYMBOL_LEVERAGE = 3

# Fraction of margin lost at which the position is treated as liquidated.
LIQUIDATION_MARGIN_FRACTION = Decimal("0.9")


def symbol_leverage_limit(symbol: str, overrides: Optional[Dict[str, int]] = None) -> int:
    """Maximum leverage allowed for ``symbol``."""
    symbol = symbol.upper()
    if overrides and symbol in overrides:
        return overrides[symbol]
    return SYMBOL_LEVERAGE_LIMITS.get(symbol, DEFAULT_SYMBOL_LEVERAGE)


def liquidation_price(entry_price: Decimal, side: str, leverage: int) -> Decimal:
    """Price at which 90% of the margin is lost."""
    move = LIQUIDATION_MARGIN_FRACTION / Decimal(leverage)
    if side == "long":
        return entry_price * (Decimal("1") - move)
    return entry_price * (Decimal("1") + move)


class CapitalLedger:
    """
    Capital accounting for one symbol.

    ``capital`` starts at the active (non-reserved) capital and moves only by
    realized P&L, fees and funding. Open positions lock ``committed_margin``,
    which never exceeds ``capital``. Entry fees are carried by the position and
    booked together with the exit fee when it closes.
    """

    def __init__(self, active_capital: Decimal) -> None:
        if active_capital < 0:
            raise InvariantViolation(f"Active capital cannot be negative: {active_capital}")
        self.initial_capital = active_capital
        self.capital = active_capital
        self.committed_margin = Decimal("0")
        self.realized_pnl = Decimal("0")
        self.total_fees = Decimal("0")
        self.total_funding = Decimal("0")

    @property
    def available(self) -> Decimal:
        return self.capital - self.committed_margin

    def can_reserve(self, margin: Decimal) -> bool:
        return margin <= self.available

    def reserve(self, margin: Decimal) -> None:
        """Lock margin for a new position."""
        if margin < 0:
            raise InvariantViolation(f"Cannot reserve negative margin: {margin}")
        if not self.can_reserve(margin):
            raise InvariantViolation(
                f"Over-commitment: margin {margin} exceeds available {self.available}"
            )
        self.committed_margin += margin

    def release(self, margin: Decimal, pnl: Decimal = Decimal("0"), fee: Decimal = Decimal("0")) -> Decimal:
        """
        Unlock margin after a (partial) close and book its P&L and fees.

        Returns:
            Capital returned to the available pool (margin + pnl - fee)
        """
        if margin < 0 or fee < 0:
            raise InvariantViolation(f"Cannot release negative amounts (margin={margin}, fee={fee})")
        if margin > self.committed_margin:
            raise InvariantViolation(
                f"Releasing {margin} but only {self.committed_margin} margin is committed"
            )
        self.committed_margin -= margin
        self.capital += pnl - fee
        self.realized_pnl += pnl
        self.total_fees += fee
        return margin + pnl - fee

    def adjust(self, amount: Decimal) -> None:
        """Book a funding payment (negative = paid)."""
        self.capital += amount
        self.total_funding += amount

    def equity(self, unrealized_pnl: Decimal = Decimal("0")) -> Decimal:
        return self.capital + unrealized_pnl

    def to_dict(self) -> dict:
        return {
            'initial_capital': str(self.initial_capital),
            'capital': str(self.capital),
            'available': str(self.available),
            'committed_margin': str(self.committed_margin),
            'realized_pnl': str(self.realized_pnl),
            'total_fees': str(self.total_fees),
            'total_funding': str(self.total_funding),
        }


class GridRiskController:
    """Collection of pre-open checks used by ``PositionMaterializer``."""

    def __init__(
        self,
        config: GridConfig,
        ledger: CapitalLedger,
        logger,
        log_event: LogEventFn,
    ) -> None:
        self.config = config
        self.ledger = ledger
        self.logger = logger
        self._log_event = log_event
        self.max_symbol_leverage = symbol_leverage_limit(config.symbol, config.leverage_limits)

    # ------------------------------------------------------------------ #
    # Public helpers
    # ------------------------------------------------------------------ #
    def resolve_leverage(self, requested: Optional[int]) -> Tuple[Optional[int], str]:
        """
        Clamp requested leverage to the configured and per-symbol limits.

        Returns:
            (leverage, message); leverage is ``None`` when strict mode rejects it.
        """
        requested = requested if requested is not None else self.config.leverage
        cap = min(self.config.leverage, self.max_symbol_leverage)
        if requested <= cap:
            return max(int(requested), 1), "OK"

        message = (
            f"Requested leverage {requested}x exceeds limit {cap}x for {self.config.symbol} "
            f"(configured {self.config.leverage}x, symbol max {self.max_symbol_leverage}x)"
        )
        if self.config.strict_leverage:
            self._log_event("leverage_rejected", message, level="WARNING", requested=requested, limit=cap)
            return None, message

        self.logger.log(f"{message}. Using {cap}x instead.", "DEBUG")
        return cap, message

    def check_open_limits(
        self,
        open_count: int,
        margin: Decimal,
        notional: Decimal,
        enforce_minimum: bool = True,
    ) -> Tuple[bool, Optional[OpenRejection], str]:
        """
        Ensure the next open stays within position count and capital limits.

        The venue minimum applies to the order value (notional); only margin is
        committed against available capital.
        """
        if open_count >= self.config.max_positions:
            message = f"max positions reached ({open_count}/{self.config.max_positions})"
            return False, OpenRejection.MAX_POSITIONS_REACHED, message

        if enforce_minimum and notional < self.config.min_order_value_usd:
            message = (
                f"order value ${notional:.2f} below minimum order value "
                f"${self.config.min_order_value_usd:.2f}"
            )
            return False, OpenRejection.BELOW_MINIMUM_ORDER_VALUE, message

        if not self.ledger.can_reserve(margin):
            message = f"margin ${margin:.2f} exceeds available capital ${self.ledger.available:.2f}"
            self._log_event(
                "capital_cap_hit",
                message,
                level="WARNING",
                required_margin=margin,
                available=self.ledger.available,
                committed_margin=self.ledger.committed_margin,
            )
            return False, OpenRejection.INSUFFICIENT_CAPITAL, message

        return True, None, "OK"
