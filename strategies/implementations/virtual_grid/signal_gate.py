"""
Signal-to-action gate for the virtual grid strategy.

Idle -> SafetyCheck -> CooldownCheck -> Evaluate -> {Open, Close, Skip, Error}

The gate only manages positions it opened itself; grid positions are left to
the ladder. Every outcome is recorded in a bounded, most-recent-first history.
"""

from __future__ import annotations

import time
from collections import OrderedDict, deque
from decimal import Decimal
from typing import Callable, Deque, Dict, List, Optional

from strategies.components.cost_model import CostModel

from .config import SignalGateConfig
from .errors import InvariantViolation
from .models import (
    ExecutionRecord,
    GateAction,
    OpenRejection,
    PositionOrigin,
    PositionSide,
    RealPosition,
    SignalDirection,
    SignalType,
    TradingSignal,
)
from .position_materializer import PositionMaterializer
from .risk_controller import CapitalLedger


EXIT_SIGNAL_TYPES = {SignalType.STOP_LOSS_HIT, SignalType.TAKE_PROFIT_HIT}


class SignalGate:
    """Turn trading signals for one symbol into open / close / skip decisions."""

    def __init__(
        self,
        config: SignalGateConfig,
        symbol: str,
        materializer: PositionMaterializer,
        cost_model: CostModel,
        ledger: CapitalLedger,
        safety,
        logger,
        clock: Callable[[], float] = time.time,
        volatility_factor: Decimal = Decimal("1"),
    ) -> None:
        """
        Args:
            config: Gate thresholds
            symbol: Symbol this gate serves
            materializer: Position authority for the symbol
            cost_model: Used to cost an open before committing
            ledger: Source of available balance and portfolio value
            safety: Collaborator exposing ``check_safety(portfolio_value)``
            logger: Strategy logger
            clock: Wall-clock source (seconds)
        """
        self.config = config
        self.symbol = symbol
        self.materializer = materializer
        self.cost_model = cost_model
        self.ledger = ledger
        self.safety = safety
        self.logger = logger
        self.clock = clock
        self.volatility_factor = volatility_factor

        self.last_execution: Optional[float] = None
        self.history: Deque[ExecutionRecord] = deque(maxlen=config.history_size)
        self._seen_ids: "OrderedDict[str, None]" = OrderedDict()

    # ------------------------------------------------------------------ #
    # Entry point
    # ------------------------------------------------------------------ #
    async def handle(self, signal: TradingSignal) -> ExecutionRecord:
        """Run one signal through the gate and record the outcome."""
        now = self.clock()
        record = await self._decide(signal, now)
        record.timestamp = now
        if record.success:
            self.last_execution = now
            self.logger.log(
                f"Executed: {signal.symbol} {record.action.value} "
                f"(strength: {signal.strength}%, type: {signal.type.value})",
                "INFO",
            )
        self.history.appendleft(record)
        return record

    async def _decide(self, signal: TradingSignal, now: float) -> ExecutionRecord:
        if not self.config.enabled:
            return self._skip(signal, "Signal gate disabled")
        if signal.symbol != self.symbol:
            return self._skip(signal, f"Signal for {signal.symbol} routed to {self.symbol}")
        if signal.is_expired(now):
            return self._skip(signal, "Signal expired")
        if signal.signal_id in self._seen_ids:
            return self._skip(signal, "Duplicate signal")
        self._remember(signal.signal_id)

        safety = self.safety.check_safety(self.portfolio_value()) if self.safety is not None else None
        if safety is not None and not safety.safe:
            self.logger.log(f"Safety check failed: {safety.reason}", "WARNING")
            return self._skip(signal, f"Safety check failed: {safety.reason}")

        if self.last_execution is not None and (now - self.last_execution) * 1000 < self.config.cooldown_ms:
            return self._skip(signal, "Symbol in cooldown")

        try:
            return await self._evaluate(signal)
        except InvariantViolation:
            raise
        except Exception as exc:
            self.logger.log(f"Signal {signal.signal_id} execution error: {exc}", "ERROR")
            return ExecutionRecord(signal=signal, action=GateAction.ERROR, reason=f"Execution error: {exc}")

    def _remember(self, signal_id: str) -> None:
        self._seen_ids[signal_id] = None
        while len(self._seen_ids) > self.config.dedupe_window:
            self._seen_ids.popitem(last=False)

    # ------------------------------------------------------------------ #
    # Evaluation
    # ------------------------------------------------------------------ #
    def current_position(self) -> Optional[RealPosition]:
        positions = self.materializer.all(origin=PositionOrigin.SIGNAL)
        return positions[0] if positions else None

    def portfolio_value(self) -> Decimal:
        return self.ledger.equity(self.materializer.unrealized_pnl())

    async def _evaluate(self, signal: TradingSignal) -> ExecutionRecord:
        if signal.strength < self.config.min_signal_strength:
            return self._skip(signal, "Signal strength too low")
        if int(signal.urgency) < self.config.min_urgency:
            return self._skip(signal, "Signal urgency too low")
        if signal.direction is SignalDirection.NEUTRAL:
            return self._skip(signal, "Neutral signal")

        position = self.current_position()

        if signal.type in EXIT_SIGNAL_TYPES:
            if position is not None:
                return await self._close(signal, position)
            return self._skip(signal, "No position to close")

        if position is not None:
            held = SignalDirection.LONG if position.side is PositionSide.LONG else SignalDirection.SHORT
            if signal.direction is not held and signal.strength >= self.config.close_confirmation_strength:
                return await self._close(signal, position)
            if signal.direction is held:
                return self._skip(signal, "Already in position with same direction")
            return self._skip(signal, "Already in position (conflicting signal below close confirmation)")

        if signal.direction is SignalDirection.LONG:
            return await self._open(signal, PositionSide.LONG)
        if signal.direction is SignalDirection.SHORT:
            return await self._open(signal, PositionSide.SHORT)
        return self._skip(signal, "No action determined")

    async def _open(self, signal: TradingSignal, side: PositionSide) -> ExecutionRecord:
        strength_multiplier = signal.strength / Decimal("100")
        max_position = self.ledger.available * (self.config.max_position_pct / Decimal("100"))
        position_value = max_position * strength_multiplier

        # Budget is order value (notional), not margin
        costs = self.cost_model.quote(position_value, side.value, True, signal.price, self.volatility_factor)
        notional = position_value - costs.total_cost
        if notional <= 0:
            return self._skip(signal, "Position size too small after costs")

        leverage, message = self.materializer.risk_controller.resolve_leverage(self.config.default_leverage)
        if leverage is None:
            return self._skip(signal, message)

        result = await self.materializer.try_open(
            side,
            signal.price,
            notional / Decimal(leverage),
            leverage,
            origin=PositionOrigin.SIGNAL,
        )
        if not result.success:
            action = GateAction.ERROR if result.rejection is OpenRejection.ORDER_PLACEMENT_FAILED else GateAction.SKIP
            return ExecutionRecord(signal=signal, action=action, reason=result.reason)

        position = result.position
        return ExecutionRecord(
            signal=signal,
            action=GateAction.OPEN_LONG if side is PositionSide.LONG else GateAction.OPEN_SHORT,
            reason=f"Opened {side.value} position on {signal.type.value}",
            success=True,
            trade_id=position.position_id,
            executed_price=position.entry_price,
            size=position.size,
            fees=result.fee,
        )

    async def _close(self, signal: TradingSignal, position: RealPosition) -> ExecutionRecord:
        trade = await self.materializer.close(position.position_id, signal.price, reason=signal.type.value.lower())
        if trade is None:
            return ExecutionRecord(
                signal=signal,
                action=GateAction.ERROR,
                reason=f"Close error: {position.position_id} was not filled",
            )
        return ExecutionRecord(
            signal=signal,
            action=GateAction.CLOSE,
            reason=f"Closed position on {signal.type.value}",
            success=True,
            trade_id=position.position_id,
            executed_price=trade.exit_price,
            size=trade.size,
            fees=trade.exit_fee,
        )

    def _skip(self, signal: TradingSignal, reason: str) -> ExecutionRecord:
        return ExecutionRecord(signal=signal, action=GateAction.SKIP, reason=reason)

    # ------------------------------------------------------------------ #
    # Statistics
    # ------------------------------------------------------------------ #
    def get_history(self, limit: int = 20) -> List[ExecutionRecord]:
        return list(self.history)[:limit]

    def get_stats(self) -> Dict[str, object]:
        by_action: Dict[str, int] = {action.value: 0 for action in GateAction}
        successful = 0
        total_fees = Decimal("0")
        for record in self.history:
            by_action[record.action.value] += 1
            if record.success:
                successful += 1
            if record.fees:
                total_fees += record.fees
        return {
            "total_executions": len(self.history),
            "successful_executions": successful,
            "skipped_executions": by_action[GateAction.SKIP.value],
            "error_executions": by_action[GateAction.ERROR.value],
            "by_action": by_action,
            "total_fees": total_fees,
        }
