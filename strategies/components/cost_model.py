"""
Cost Model - Trading Fee, Slippage and Funding Calculations

Answers one question for the grid: does a given spacing pay for itself after
the round trip (entry + exit) costs?

All rates in this module are expressed in PERCENT (0.05 = 0.05%).
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_FLOOR
from enum import Enum
from typing import Dict, Optional

from helpers.unified_logger import get_core_logger


# ============================================================================
# Enums
# ============================================================================

class SpacingStatus(Enum):
    """Profitability classification of a grid spacing."""
    SAFE = "safe"
    MARGINAL = "marginal"
    UNPROFITABLE = "unprofitable"


# ============================================================================
# Fee Schedules
# ============================================================================

# Fee schedules by venue (maker/taker, percent of notional)
FEE_SCHEDULES: Dict[str, Dict[str, Decimal]] = {
    'hyperliquid': {
        'maker': Decimal('0.02'),     # 0.02% maker
        'taker': Decimal('0.05'),     # 0.05% taker
    },
    'lighter': {
        'maker': Decimal('0'),
        'taker': Decimal('0'),
    },
    'backpack': {
        'maker': Decimal('0.02'),
        'taker': Decimal('0.05'),
    },
    'grvt': {
        'maker': Decimal('-0.01'),    # rebate
        'taker': Decimal('0.055'),
    },
    'paradex': {
        'maker': Decimal('0.003'),
        'taker': Decimal('0.02'),
    },
    'aster': {
        'maker': Decimal('0.005'),
        'taker': Decimal('0.04'),
    },
    'edgex': {
        'maker': Decimal('0.015'),
        'taker': Decimal('0.038'),
    },
}

DEFAULT_FEE_SCHEDULE = {'maker': Decimal('0.1'), 'taker': Decimal('0.1')}

HUNDRED = Decimal("100")


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class SlippageSettings:
    """Market-order slippage parameters (percent)."""
    base_pct: Decimal = Decimal("0.01")            # 0.01% base
    size_impact_pct: Decimal = Decimal("0.001")    # per $1000 of order value
    volatility_multiplier: Decimal = Decimal("2")
    max_pct: Decimal = Decimal("1")


@dataclass(frozen=True)
class CostQuote:
    """
    Costs of a single fill. Recomputed per decision, never persisted.

    ``trading_fee``, ``slippage_cost``, ``funding_cost`` and ``total_cost`` are
    in USD; ``price_impact_pct`` is the slippage percent applied to
    ``effective_price``.
    """
    trading_fee: Decimal
    slippage_cost: Decimal
    funding_cost: Decimal
    total_cost: Decimal
    effective_price: Decimal
    price_impact_pct: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {
            "trading_fee": str(self.trading_fee),
            "slippage_cost": str(self.slippage_cost),
            "funding_cost": str(self.funding_cost),
            "total_cost": str(self.total_cost),
            "effective_price": str(self.effective_price),
            "price_impact_pct": str(self.price_impact_pct),
        }


@dataclass
class FundingTrack:
    last_funding: float = 0.0
    total_paid: Decimal = field(default_factory=lambda: Decimal("0"))


# ============================================================================
# Cost Model
# ============================================================================

class CostModel:
    """
    Fee, slippage and funding calculator for one venue.

    Usage:
        model = CostModel(venue="hyperliquid")
        quote = model.quote(Decimal("300"), "long", True, Decimal("101"))
        status = model.classify_spacing(Decimal("1"), Decimal("300"), Decimal("0.1"))
    """

    def __init__(
        self,
        venue: str = "hyperliquid",
        fee_schedules: Optional[Dict[str, Dict[str, Decimal]]] = None,
        slippage: Optional[SlippageSettings] = None,
        funding_interval_hours: int = 8,
        logger=None,
    ):
        """
        Args:
            venue: Venue whose fee schedule applies
            fee_schedules: Override default fee schedules (for testing or custom rates)
            slippage: Slippage parameters
            funding_interval_hours: Hours between funding settlements
            logger: Optional logger (defaults to the core cost_model logger)
        """
        self.venue = venue
        self.fee_schedules = dict(FEE_SCHEDULES)
        if fee_schedules:
            self.fee_schedules.update(fee_schedules)
        self.slippage = slippage or SlippageSettings()
        self.funding_interval_hours = funding_interval_hours
        self.logger = logger or get_core_logger("cost_model", venue=venue)
        self._funding_tracker: Dict[str, FundingTrack] = {}

    # ========================================================================
    # Fees
    # ========================================================================

    def get_fee_schedule(self) -> Dict[str, Decimal]:
        return self.fee_schedules.get(self.venue, DEFAULT_FEE_SCHEDULE)

    def fee_rate_pct(self, is_market_order: bool) -> Decimal:
        """Taker rate for market orders, maker rate otherwise."""
        schedule = self.get_fee_schedule()
        return schedule['taker'] if is_market_order else schedule['maker']

    def trading_fee(self, order_value_usd: Decimal, is_market_order: bool = True) -> Decimal:
        return order_value_usd * self.fee_rate_pct(is_market_order) / HUNDRED

    # ========================================================================
    # Slippage
    # ========================================================================

    def slippage_pct(self, order_value_usd: Decimal, volatility_factor: Decimal = Decimal("1")) -> Decimal:
        """
        Slippage percent for a market order.

        (base + order_value/1000 * size_impact) * (multiplier * (volatility - 0.5)),
        clamped to [0, max_pct].
        """
        pct = self.slippage.base_pct + (order_value_usd / Decimal("1000")) * self.slippage.size_impact_pct
        pct *= self.slippage.volatility_multiplier * (Decimal(volatility_factor) - Decimal("0.5"))
        return max(Decimal("0"), min(pct, self.slippage.max_pct))

    # ========================================================================
    # Quote
    # ========================================================================

    def quote(
        self,
        order_value_usd: Decimal,
        side: str,
        is_market_order: bool,
        current_price: Decimal,
        volatility_factor: Decimal = Decimal("1"),
    ) -> CostQuote:
        """
        Compute all costs for a single fill.

        Args:
            order_value_usd: Notional of the order in USD
            side: 'long' (buy) or 'short' (sell)
            is_market_order: Taker fee and slippage apply when True
            current_price: Reference price
            volatility_factor: 1 = normal, 2 = high volatility

        Raises:
            ValueError: negative order value, non-positive price or negative volatility
        """
        order_value_usd = Decimal(order_value_usd)
        current_price = Decimal(current_price)
        volatility_factor = Decimal(volatility_factor)

        if order_value_usd < 0:
            raise ValueError(f"order value must be non-negative, got {order_value_usd}")
        if current_price <= 0:
            raise ValueError(f"current price must be positive, got {current_price}")
        if volatility_factor < 0:
            raise ValueError(f"volatility factor must be non-negative, got {volatility_factor}")
        if side not in ("long", "short"):
            raise ValueError(f"side must be 'long' or 'short', got {side!r}")

        fee = self.trading_fee(order_value_usd, is_market_order)
        slip_pct = self.slippage_pct(order_value_usd, volatility_factor) if is_market_order else Decimal("0")
        slippage_cost = order_value_usd * slip_pct / HUNDRED

        if side == "long":
            effective_price = current_price * (1 + slip_pct / HUNDRED)
        else:
            effective_price = current_price * (1 - slip_pct / HUNDRED)

        return CostQuote(
            trading_fee=fee,
            slippage_cost=slippage_cost,
            funding_cost=Decimal("0"),
            total_cost=fee + slippage_cost,
            effective_price=effective_price,
            price_impact_pct=slip_pct,
        )

    # ========================================================================
    # Funding
    # ========================================================================

    def funding_periods(self, hours_held: Decimal) -> int:
        """Whole funding periods elapsed in ``hours_held``."""
        if hours_held <= 0:
            return 0
        periods = Decimal(hours_held) / Decimal(self.funding_interval_hours)
        return int(periods.to_integral_value(rounding=ROUND_FLOOR))

    def funding_accrual(
        self,
        position_value: Decimal,
        side: str,
        funding_rate_pct: Decimal,
        periods_held: Decimal,
    ) -> Decimal:
        """
        Signed funding amount for a position (negative = paid).

        Positive funding: longs pay, shorts receive. Negative funding inverts.
        Only whole periods accrue; zero while ``periods_held < 1``.
        """
        periods = int(Decimal(periods_held).to_integral_value(rounding=ROUND_FLOOR))
        if periods < 1 or funding_rate_pct == 0:
            return Decimal("0")

        payment = abs(Decimal(position_value) * Decimal(funding_rate_pct) / HUNDRED * periods)
        longs_pay = funding_rate_pct > 0
        if side == "long":
            return -payment if longs_pay else payment
        return payment if longs_pay else -payment

    def record_funding(self, symbol: str, payment: Decimal, now: float) -> None:
        track = self._funding_tracker.setdefault(symbol, FundingTrack())
        track.last_funding = now
        track.total_paid += payment

    def total_funding(self, symbol: str) -> Decimal:
        track = self._funding_tracker.get(symbol)
        return track.total_paid if track else Decimal("0")

    # ========================================================================
    # Spacing Profitability
    # ========================================================================

    def min_profitable_spacing(self, order_value_usd: Decimal) -> Decimal:
        """
        Break-even grid spacing (percent) for ``order_value_usd``.

        Round trip = entry + exit taker fee and slippage at normal volatility.
        Slippage grows with order value, so the result is non-decreasing in it.
        """
        order_value_usd = Decimal(order_value_usd)
        if order_value_usd < 0:
            raise ValueError(f"order value must be non-negative, got {order_value_usd}")
        one_way_pct = self.fee_rate_pct(True) + self.slippage_pct(order_value_usd, Decimal("1"))
        return 2 * one_way_pct

    def classify_spacing(
        self,
        spacing_pct: Decimal,
        order_value_usd: Decimal,
        buffer_pct: Decimal = Decimal("0"),
    ) -> SpacingStatus:
        """Classify a spacing as safe, marginal or unprofitable."""
        minimum = self.min_profitable_spacing(order_value_usd)
        spacing_pct = Decimal(spacing_pct)
        if spacing_pct < minimum:
            return SpacingStatus.UNPROFITABLE
        if spacing_pct < minimum + Decimal(buffer_pct):
            return SpacingStatus.MARGINAL
        return SpacingStatus.SAFE
