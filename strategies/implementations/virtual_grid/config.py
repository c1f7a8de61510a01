"""
Virtual Grid Strategy Configuration

Pydantic models for grid, signal gate, cost and safety configuration.
All models are immutable once built; invalid values raise ``ConfigurationError``
through :func:`build_config`.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError


DEFAULT_CLOSE_CONFIRMATION_STRENGTH = Decimal("70")

ModelT = TypeVar("ModelT", bound=BaseModel)


class GridConfig(BaseModel):
    """Configuration for one symbol's virtual grid."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Required parameters
    symbol: str = Field(
        ...,
        description="Trading symbol (e.g. BTC)",
        min_length=1
    )
    grid_spacing_pct: Decimal = Field(
        ...,
        description="Distance between virtual levels as percentage",
        gt=0,
        lt=100
    )
    total_investment_usd: Decimal = Field(
        ...,
        description="Total capital allocated to this grid (USD)",
        gt=0
    )
    leverage: int = Field(
        ...,
        description="Requested leverage for grid positions",
        ge=1,
        le=100
    )
    max_positions: int = Field(
        4,
        description="Maximum number of concurrent real positions",
        gt=0
    )

    # Sizing and profitability
    center_price: Optional[Decimal] = Field(
        None,
        description="Grid center; defaults to the first observed price",
        gt=0
    )
    capital_reserve_ratio: Decimal = Field(
        Decimal("0.5"),
        description="Fraction of total investment that is never committed",
        ge=0,
        lt=1
    )
    min_profit_after_fees_pct: Decimal = Field(
        Decimal("0.1"),
        description="Buffer above break-even spacing before a spacing counts as safe",
        ge=0
    )
    rebalance_threshold_pct: Decimal = Field(
        Decimal("10"),
        description="Price move from the grid center (%) that triggers a rebalance",
        gt=0
    )
    fixed_position_size_usd: Optional[Decimal] = Field(
        None,
        description="Optional: fixed margin (USD) per grid position",
        gt=0
    )
    min_order_value_usd: Decimal = Field(
        Decimal("10"),
        description="Venue minimum order value (USD)",
        ge=0
    )
    dust_threshold: Decimal = Field(
        Decimal("0.0001"),
        description="Remaining size (base units) below which a reduced position is fully closed",
        ge=0
    )

    # Ladder behaviour
    watch_depth: int = Field(
        50,
        description="Virtual levels generated on each side of the center",
        ge=1,
        le=1000
    )
    level_cooldown_seconds: float = Field(
        300.0,
        description="Seconds a level stays in cooldown after its position closes",
        ge=0
    )
    max_active_positions: Optional[int] = Field(
        None,
        description="Optional: cap on positions a crossing may activate (defaults to max_positions)",
        gt=0
    )
    use_reactive_mode: bool = Field(
        False,
        description="Only honour crossings that agree with the latest tick-to-tick price reaction"
    )
    reaction_threshold_pct: Decimal = Field(
        Decimal("0.1"),
        description="Tick-to-tick move (%) that flips the reactive bias",
        gt=0
    )
    adaptive_spacing: bool = Field(
        False,
        description="Scale spacing by reported volatility (clamped to 0.5x - 2x)"
    )

    # Protective orders
    stop_loss_pct: Decimal = Field(
        Decimal("5"),
        description="Stop loss distance from the fill price (%)",
        gt=0,
        lt=100
    )
    take_profit_pct: Decimal = Field(
        Decimal("10"),
        description="Take profit distance from the fill price (%)",
        gt=0
    )
    use_trailing_stop: bool = Field(
        False,
        description="Trail the stop loss behind the best price seen"
    )
    use_break_even_stop: bool = Field(
        False,
        description="Move the stop loss to the entry price once the position is in profit"
    )
    break_even_threshold_pct: Decimal = Field(
        Decimal("50"),
        description="Share of the take-profit distance (%) reached before the stop moves to entry",
        gt=0,
        le=100
    )

    # Execution
    venue: str = Field(
        "hyperliquid",
        description="Venue whose fee schedule applies"
    )
    order_timeout_seconds: float = Field(
        5.0,
        description="Timeout for each external order call",
        gt=0
    )
    strict_leverage: bool = Field(
        False,
        description="Reject instead of clamp when leverage exceeds the symbol limit"
    )
    leverage_limits: Optional[Dict[str, int]] = Field(
        None,
        description="Optional: per-symbol max leverage overrides"
    )
    open_initial_positions: bool = Field(
        False,
        description="Open one short above and one long below the center at start"
    )
    auto_rebalance: bool = Field(
        True,
        description="Recenter the ladder when the rebalance threshold is exceeded"
    )

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("venue")
    @classmethod
    def normalize_venue(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("leverage_limits")
    @classmethod
    def validate_leverage_limits(cls, v):
        if v is None:
            return v
        normalized = {}
        for symbol, limit in v.items():
            if int(limit) < 1:
                raise ValueError(f"Leverage limit for {symbol} must be at least 1")
            normalized[symbol.upper()] = int(limit)
        return normalized

    @model_validator(mode="after")
    def validate_capital(self):
        """Active capital must fund at least one position at the venue minimum."""
        if self.active_capital_usd < self.min_order_value_usd:
            raise ValueError(
                f"Active capital ${self.active_capital_usd} (after {self.capital_reserve_ratio} reserve) "
                f"is below the minimum order value ${self.min_order_value_usd}"
            )
        if self.fixed_position_size_usd is not None and self.fixed_position_size_usd > self.active_capital_usd:
            raise ValueError(
                f"fixed_position_size_usd ${self.fixed_position_size_usd} exceeds active capital "
                f"${self.active_capital_usd}"
            )
        if self.max_active_positions is not None and self.max_active_positions > self.max_positions:
            raise ValueError(
                f"max_active_positions {self.max_active_positions} exceeds max_positions {self.max_positions}"
            )
        return self

    @property
    def active_capital_usd(self) -> Decimal:
        return self.total_investment_usd * (Decimal("1") - self.capital_reserve_ratio)

    @property
    def per_level_margin_usd(self) -> Decimal:
        """Margin committed per grid position, floored at the venue minimum."""
        if self.fixed_position_size_usd is not None:
            size = self.fixed_position_size_usd
        else:
            size = self.active_capital_usd / Decimal(self.max_positions)
        return max(size, self.min_order_value_usd)

    @property
    def spacing_fraction(self) -> Decimal:
        return self.grid_spacing_pct / Decimal("100")


class SignalGateConfig(BaseModel):
    """Thresholds for turning signals into position decisions."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    min_signal_strength: Decimal = Field(Decimal("60"), ge=0, le=100)
    min_urgency: int = Field(2, description="1=LOW, 2=MEDIUM, 3=HIGH, 4=CRITICAL", ge=1, le=4)
    max_position_pct: Decimal = Field(
        Decimal("10"),
        description="Max share of available balance (%) committed per signal",
        gt=0,
        le=100
    )
    default_leverage: int = Field(3, ge=1, le=100)
    cooldown_ms: int = Field(30000, description="Per-symbol cooldown after a successful execution", ge=0)
    close_confirmation_strength: Decimal = Field(
        DEFAULT_CLOSE_CONFIRMATION_STRENGTH,
        description="Minimum strength for a conflicting signal to close a position",
        ge=0,
        le=100
    )
    history_size: int = Field(100, gt=0)
    dedupe_window: int = Field(1000, description="Recently seen signal ids kept for duplicate detection", gt=0)


class CostConfig(BaseModel):
    """Fee, slippage and funding parameters."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    maker_fee_pct: Optional[Decimal] = Field(None, description="Override venue maker fee (%)")
    taker_fee_pct: Optional[Decimal] = Field(None, description="Override venue taker fee (%)")
    slippage_base_pct: Decimal = Field(Decimal("0.01"), ge=0)
    slippage_size_impact_pct: Decimal = Field(Decimal("0.001"), ge=0)
    slippage_volatility_multiplier: Decimal = Field(Decimal("2"), ge=0)
    max_slippage_pct: Decimal = Field(Decimal("1"), ge=0)
    volatility_factor: Decimal = Field(Decimal("1"), ge=0)
    funding_interval_hours: int = Field(8, gt=0)

    @model_validator(mode="after")
    def validate_fee_override(self):
        if (self.maker_fee_pct is None) != (self.taker_fee_pct is None):
            raise ValueError("maker_fee_pct and taker_fee_pct must be overridden together")
        return self


class SafetyConfig(BaseModel):
    """Default safety collaborator settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    global_stop_loss_pct: Decimal = Field(Decimal("25"), gt=0, le=100)
    window_hours: Decimal = Field(Decimal("24"), gt=0)


class BotConfig(BaseModel):
    """Top-level configuration for the multi-symbol bot."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    grids: List[GridConfig] = Field(..., min_length=1)
    signal_gate: SignalGateConfig = Field(default_factory=SignalGateConfig)
    cost: CostConfig = Field(default_factory=CostConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    poll_interval_seconds: float = Field(1.0, gt=0)
    queue_size: int = Field(1000, description="Per-symbol event queue bound", gt=0)

    @field_validator("grids")
    @classmethod
    def validate_unique_symbols(cls, v: List[GridConfig]) -> List[GridConfig]:
        symbols = [grid.symbol for grid in v]
        duplicates = sorted({s for s in symbols if symbols.count(s) > 1})
        if duplicates:
            raise ValueError(f"Each symbol may have only one grid; duplicated: {', '.join(duplicates)}")
        return v

    def grid_for(self, symbol: str) -> Optional[GridConfig]:
        symbol = symbol.upper()
        for grid in self.grids:
            if grid.symbol == symbol:
                return grid
        return None


def build_config(model_cls: Type[ModelT], data: Dict[str, Any]) -> ModelT:
    """Validate ``data`` into ``model_cls``, raising ``ConfigurationError`` on failure."""
    try:
        return model_cls.model_validate(data)
    except ValidationError as exc:
        messages = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ())) or model_cls.__name__
            messages.append(f"{location}: {error.get('msg')}")
        raise ConfigurationError(f"Invalid {model_cls.__name__}: " + "; ".join(messages)) from exc
