"""
Virtual Grid Data Models

Levels, real positions, signals and the events drained by each symbol owner.
"""

import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Union


# ============================================================================
# Enums
# ============================================================================

class LevelStatus(Enum):
    """Virtual level lifecycle."""
    PENDING = "pending"    # Watching for a crossing
    FILLED = "filled"      # Crossed; a real position may be attached
    COOLDOWN = "cooldown"  # Position closed; waiting for the cooldown window


class PositionSide(Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def order_side(self) -> str:
        """Exchange side that opens this position."""
        return "buy" if self is PositionSide.LONG else "sell"

    @property
    def opposite(self) -> "PositionSide":
        return PositionSide.SHORT if self is PositionSide.LONG else PositionSide.LONG


class PositionOrigin(Enum):
    GRID = "grid"
    SIGNAL = "signal"
    INITIAL = "initial"
    MANUAL = "manual"


class OpenRejection(Enum):
    """Reasons a materialization was refused. Values are display strings."""
    MAX_POSITIONS_REACHED = "max positions reached"
    BELOW_MINIMUM_ORDER_VALUE = "below minimum order value"
    LEVERAGE_EXCEEDS_SYMBOL_LIMIT = "leverage exceeds symbol limit"
    INSUFFICIENT_CAPITAL = "insufficient capital"
    ORDER_PLACEMENT_FAILED = "order placement failed"


class GridStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    HALTED = "halted"


class SignalType(Enum):
    PRICE_BREAKOUT = "PRICE_BREAKOUT"
    PRICE_BREAKDOWN = "PRICE_BREAKDOWN"
    VOLUME_SPIKE = "VOLUME_SPIKE"
    RSI_OVERSOLD = "RSI_OVERSOLD"
    RSI_OVERBOUGHT = "RSI_OVERBOUGHT"
    MACD_BULLISH_CROSS = "MACD_BULLISH_CROSS"
    MACD_BEARISH_CROSS = "MACD_BEARISH_CROSS"
    BB_LOWER_TOUCH = "BB_LOWER_TOUCH"
    BB_UPPER_TOUCH = "BB_UPPER_TOUCH"
    TREND_REVERSAL = "TREND_REVERSAL"
    MOMENTUM_SURGE = "MOMENTUM_SURGE"
    STOP_LOSS_HIT = "STOP_LOSS_HIT"
    TAKE_PROFIT_HIT = "TAKE_PROFIT_HIT"
    LIQUIDATION_RISK = "LIQUIDATION_RISK"


class SignalDirection(Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    NEUTRAL = "NEUTRAL"
    EXIT = "EXIT"


class SignalUrgency(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class GateAction(Enum):
    OPEN_LONG = "open_long"
    OPEN_SHORT = "open_short"
    CLOSE = "close"
    SKIP = "skip"
    ERROR = "error"


def _dec(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


# ============================================================================
# Grid State
# ============================================================================

@dataclass
class VirtualLevel:
    """A watched, unfunded price trigger."""
    level_id: str
    price: Decimal
    side: PositionSide
    rank: int  # +i for shorts above center, -i for longs below
    status: LevelStatus = LevelStatus.PENDING
    created_at: float = 0.0
    last_closed_at: Optional[float] = None
    position_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'id': self.level_id,
            'price': str(self.price),
            'side': self.side.value,
            'rank': self.rank,
            'status': self.status.value,
            'created_at': self.created_at,
            'last_closed_at': self.last_closed_at,
            'position_id': self.position_id,
        }


@dataclass
class RealPosition:
    """A capital-backed position confirmed by a fill."""
    position_id: str
    symbol: str
    side: PositionSide
    size: Decimal
    size_usd: Decimal
    entry_price: Decimal
    current_price: Decimal
    leverage: int
    margin_used: Decimal
    stop_loss: Decimal
    take_profit: Decimal
    entry_time: float
    unrealized_pnl: Decimal = Decimal("0")
    unrealized_pnl_pct: Decimal = Decimal("0")
    liquidation_price: Decimal = Decimal("0")
    level_id: Optional[str] = None
    origin: PositionOrigin = PositionOrigin.GRID
    entry_fee: Decimal = Decimal("0")
    funding_accrued: Decimal = Decimal("0")
    highest_price: Optional[Decimal] = None
    lowest_price: Optional[Decimal] = None
    break_even_armed: bool = False  # stop moved to entry

    def gross_pnl(self, price: Decimal, size: Optional[Decimal] = None) -> Decimal:
        size = self.size if size is None else size
        if self.side is PositionSide.LONG:
            return (price - self.entry_price) * size
        return (self.entry_price - price) * size

    def mark(self, price: Decimal) -> None:
        """Refresh current price and unrealized P&L."""
        self.current_price = price
        self.unrealized_pnl = self.gross_pnl(price)
        move = price - self.entry_price if self.side is PositionSide.LONG else self.entry_price - price
        self.unrealized_pnl_pct = move / self.entry_price * Decimal("100")

    def to_dict(self) -> dict:
        return {
            'id': self.position_id,
            'symbol': self.symbol,
            'side': self.side.value,
            'size': str(self.size),
            'size_usd': str(self.size_usd),
            'entry_price': str(self.entry_price),
            'current_price': str(self.current_price),
            'leverage': self.leverage,
            'margin_used': str(self.margin_used),
            'stop_loss': str(self.stop_loss),
            'take_profit': str(self.take_profit),
            'entry_time': self.entry_time,
            'unrealized_pnl': str(self.unrealized_pnl),
            'unrealized_pnl_pct': str(self.unrealized_pnl_pct),
            'liquidation_price': str(self.liquidation_price),
            'level_id': self.level_id,
            'origin': self.origin.value,
            'entry_fee': str(self.entry_fee),
            'funding_accrued': str(self.funding_accrued),
        }


@dataclass
class RealizedTrade:
    """Outcome of a full or partial close."""
    position_id: str
    symbol: str
    side: PositionSide
    size: Decimal
    entry_price: Decimal
    exit_price: Decimal
    gross_pnl: Decimal
    exit_fee: Decimal
    entry_fee: Decimal
    net_pnl: Decimal
    capital_released: Decimal
    reason: str
    fully_closed: bool
    level_id: Optional[str] = None
    closed_at: float = 0.0

    @property
    def fees(self) -> Decimal:
        return self.entry_fee + self.exit_fee

    def to_dict(self) -> dict:
        return {
            'position_id': self.position_id,
            'symbol': self.symbol,
            'side': self.side.value,
            'size': str(self.size),
            'entry_price': str(self.entry_price),
            'exit_price': str(self.exit_price),
            'gross_pnl': str(self.gross_pnl),
            'fees': str(self.fees),
            'net_pnl': str(self.net_pnl),
            'capital_released': str(self.capital_released),
            'reason': self.reason,
            'fully_closed': self.fully_closed,
            'level_id': self.level_id,
        }


@dataclass
class OpenResult:
    """Result of ``try_open``: a position or a rejection with a display reason."""
    position: Optional[RealPosition] = None
    rejection: Optional[OpenRejection] = None
    reason: Optional[str] = None
    fee: Decimal = Decimal("0")

    @property
    def success(self) -> bool:
        return self.position is not None

    @classmethod
    def rejected(cls, rejection: OpenRejection, detail: Optional[str] = None) -> "OpenResult":
        reason = rejection.value if not detail else f"{rejection.value}: {detail}"
        return cls(rejection=rejection, reason=reason)


@dataclass
class GridPerformance:
    """Running trade statistics for one symbol."""
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    total_pnl: Decimal = Decimal("0")
    total_fees: Decimal = Decimal("0")
    total_funding: Decimal = Decimal("0")

    @property
    def win_rate(self) -> Decimal:
        if self.total_trades == 0:
            return Decimal("0")
        return Decimal(self.winning_trades) / Decimal(self.total_trades) * Decimal("100")

    def record(self, trade: RealizedTrade) -> None:
        self.total_fees += trade.exit_fee + trade.entry_fee
        self.total_pnl += trade.net_pnl
        if not trade.fully_closed:
            return
        self.total_trades += 1
        if trade.net_pnl > 0:
            self.winning_trades += 1
        else:
            self.losing_trades += 1

    def to_dict(self) -> dict:
        return {
            'total_trades': self.total_trades,
            'winning_trades': self.winning_trades,
            'losing_trades': self.losing_trades,
            'win_rate': str(self.win_rate),
            'total_pnl': str(self.total_pnl),
            'total_fees': str(self.total_fees),
            'total_funding': str(self.total_funding),
        }


# ============================================================================
# Signals
# ============================================================================

@dataclass
class TradingSignal:
    """A directional market signal from an external source."""
    signal_id: str
    symbol: str
    type: SignalType
    direction: SignalDirection
    urgency: SignalUrgency
    strength: Decimal
    price: Decimal
    timestamp: float
    expiry: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        return self.expiry is not None and now >= self.expiry

    def to_dict(self) -> dict:
        return {
            'id': self.signal_id,
            'symbol': self.symbol,
            'type': self.type.value,
            'direction': self.direction.value,
            'urgency': int(self.urgency),
            'strength': str(self.strength),
            'price': str(self.price),
            'timestamp': self.timestamp,
            'expiry': self.expiry,
            'metadata': dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'TradingSignal':
        """Create from dictionary (as read from a signals file)."""
        urgency = data.get('urgency', SignalUrgency.MEDIUM)
        if isinstance(urgency, str):
            urgency = SignalUrgency[urgency.upper()]
        return cls(
            signal_id=str(data['id']),
            symbol=str(data['symbol']).upper(),
            type=SignalType(str(data.get('type', 'MOMENTUM_SURGE')).upper()),
            direction=SignalDirection(str(data['direction']).upper()),
            urgency=SignalUrgency(int(urgency)),
            strength=Decimal(str(data['strength'])),
            price=Decimal(str(data['price'])),
            timestamp=float(data.get('timestamp', 0.0)),
            expiry=float(data['expiry']) if data.get('expiry') is not None else None,
            metadata=dict(data.get('metadata') or {}),
        )


@dataclass
class ExecutionRecord:
    """Outcome of one signal gate decision (statistics only)."""
    signal: TradingSignal
    action: GateAction
    reason: str
    success: bool = False
    trade_id: Optional[str] = None
    executed_price: Optional[Decimal] = None
    size: Optional[Decimal] = None
    fees: Optional[Decimal] = None
    timestamp: float = 0.0

    def to_dict(self) -> dict:
        return {
            'signal_id': self.signal.signal_id,
            'symbol': self.signal.symbol,
            'action': self.action.value,
            'reason': self.reason,
            'success': self.success,
            'trade_id': self.trade_id,
            'executed_price': _dec(self.executed_price),
            'size': _dec(self.size),
            'fees': _dec(self.fees),
            'timestamp': self.timestamp,
        }


# ============================================================================
# Owner Events
# ============================================================================

@dataclass
class PriceTick:
    price: Optional[Decimal]  # None = feed unavailable, tick skipped
    timestamp: Optional[float] = None


@dataclass
class SignalEvent:
    signal: TradingSignal


@dataclass
class FundingEvent:
    funding_rate_pct: Decimal


@dataclass
class VolatilityUpdate:
    """Volatility multiplier (1 = normal) used to rescale the ladder spacing."""
    volatility: Decimal


@dataclass
class CloseRequest:
    """Manual close. ``position_id=None`` closes every position for the symbol."""
    position_id: Optional[str] = None
    price: Optional[Decimal] = None
    reason: str = "manual"


GridEvent = Union[PriceTick, SignalEvent, FundingEvent, VolatilityUpdate, CloseRequest]


@dataclass
class QueuedEvent:
    event: GridEvent
    future: "asyncio.Future"
