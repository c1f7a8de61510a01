"""
Virtual Grid Strategy

Per-symbol owner of the virtual grid. Price ticks, signals, funding
settlements and manual close requests are queued and drained in arrival order
by a single worker task, so crossing detection and signal decisions for one
symbol never race.
"""

import asyncio
import time
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from strategies.base_strategy import BaseStrategy
from strategies.components.cost_model import CostModel, SlippageSettings, SpacingStatus
from strategies.components.safety_monitor import SafetyMonitor
from helpers.unified_logger import log_stage

from .config import CostConfig, GridConfig, SafetyConfig, SignalGateConfig
from .errors import ConfigurationError, InvariantViolation
from .models import (
    CloseRequest,
    FundingEvent,
    GridEvent,
    GridPerformance,
    GridStatus,
    PositionOrigin,
    PositionSide,
    PriceTick,
    QueuedEvent,
    RealizedTrade,
    SignalEvent,
    VirtualLevel,
    VolatilityUpdate,
)
from .position_materializer import PositionMaterializer
from .risk_controller import CapitalLedger, GridRiskController
from .signal_gate import SignalGate
from .virtual_grid import VirtualGridEngine


_STOP = object()


def build_cost_model(venue: str, cost_config: CostConfig, logger=None) -> CostModel:
    """Create the venue cost model, applying any fee override."""
    fee_overrides = None
    if cost_config.maker_fee_pct is not None:
        fee_overrides = {venue: {'maker': cost_config.maker_fee_pct, 'taker': cost_config.taker_fee_pct}}
    return CostModel(
        venue=venue,
        fee_schedules=fee_overrides,
        slippage=SlippageSettings(
            base_pct=cost_config.slippage_base_pct,
            size_impact_pct=cost_config.slippage_size_impact_pct,
            volatility_multiplier=cost_config.slippage_volatility_multiplier,
            max_pct=cost_config.max_slippage_pct,
        ),
        funding_interval_hours=cost_config.funding_interval_hours,
        logger=logger,
    )


class VirtualGridStrategy(BaseStrategy):
    """
    Virtual grid strategy for one symbol.

    This strategy:
    1. Watches a geometric ladder of virtual levels around a center price
    2. Opens a real position only when price crosses a level and the spacing pays for its costs
    3. Caps concurrent positions and committed capital (reserve is never touched)
    4. Puts a level into cooldown when its position closes
    5. Routes external signals through a cooldown / safety gate
    """

    def __init__(
        self,
        config: GridConfig,
        exchange_client,
        gate_config: Optional[SignalGateConfig] = None,
        cost_config: Optional[CostConfig] = None,
        safety_config: Optional[SafetyConfig] = None,
        safety=None,
        clock: Callable[[], float] = time.time,
        queue_size: int = 1000,
    ):
        """
        Initialize the virtual grid strategy.

        Args:
            config: GridConfig for the symbol
            exchange_client: Execution capability (price feed and orders)
            gate_config: Signal gate thresholds
            cost_config: Fee / slippage / funding parameters
            safety_config: Settings for the default safety monitor
            safety: Optional safety collaborator overriding the default monitor
            clock: Wall-clock source (seconds); injected for deterministic tests
            queue_size: Bound of the per-symbol event queue
        """
        super().__init__(config=config, exchange_client=exchange_client)

        self.symbol = config.symbol
        self.clock = clock
        self.gate_config = gate_config or SignalGateConfig()
        self.cost_config = cost_config or CostConfig()
        self.safety_config = safety_config or SafetyConfig()
        self.queue_size = queue_size

        if safety is None and self.safety_config.enabled:
            safety = SafetyMonitor(
                global_stop_loss_pct=self.safety_config.global_stop_loss_pct,
                window_hours=self.safety_config.window_hours,
                clock=clock,
                logger=self.logger,
            )
        self.safety = safety

        # Compose helper components
        self.cost_model = build_cost_model(config.venue, self.cost_config, self.logger)
        self.ledger = CapitalLedger(config.active_capital_usd)
        self.grid = VirtualGridEngine(
            spacing_pct=config.grid_spacing_pct,
            watch_depth=config.watch_depth,
            cooldown_seconds=config.level_cooldown_seconds,
            clock=clock,
            logger=self.logger,
        )
        self.risk_controller = GridRiskController(
            config=config,
            ledger=self.ledger,
            logger=self.logger,
            log_event=self._log_event,
        )
        self.materializer = PositionMaterializer(
            config=config,
            exchange_client=exchange_client,
            cost_model=self.cost_model,
            ledger=self.ledger,
            risk_controller=self.risk_controller,
            logger=self.logger,
            log_event=self._log_event,
            clock=clock,
            volatility_factor=self.cost_config.volatility_factor,
            on_close=self._on_trade_closed,
        )
        self.gate = SignalGate(
            config=self.gate_config,
            symbol=self.symbol,
            materializer=self.materializer,
            cost_model=self.cost_model,
            ledger=self.ledger,
            safety=self.safety,
            logger=self.logger,
            clock=clock,
            volatility_factor=self.cost_config.volatility_factor,
        )

        self.performance = GridPerformance()
        self.status = GridStatus.IDLE
        self.current_price: Optional[Decimal] = None
        self.halt_reason: Optional[str] = None
        self.reactive_bias = "neutral"

        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._accepting = False

        leverage, _ = self.risk_controller.resolve_leverage(None)
        if leverage is None:
            raise ConfigurationError(
                f"Leverage {config.leverage}x exceeds the {self.risk_controller.max_symbol_leverage}x limit "
                f"for {self.symbol} and strict_leverage is enabled"
            )
        self.grid_notional_usd = config.per_level_margin_usd * leverage
        self.min_profitable_spacing_pct = self.cost_model.min_profitable_spacing(self.grid_notional_usd)
        self.spacing_status = self.cost_model.classify_spacing(
            config.grid_spacing_pct,
            self.grid_notional_usd,
            config.min_profit_after_fees_pct,
        )

        self.logger.log("Virtual grid strategy initialized with parameters:", "INFO")
        self.logger.log(f"  - Grid Spacing: {config.grid_spacing_pct}%", "INFO")
        self.logger.log(f"  - Total Investment: ${config.total_investment_usd}", "INFO")
        self.logger.log(
            f"  - Active Capital: ${config.active_capital_usd} (reserve {config.capital_reserve_ratio})",
            "INFO",
        )
        self.logger.log(f"  - Max Positions: {config.max_positions}", "INFO")
        self.logger.log(f"  - Leverage: {leverage}x (requested {config.leverage}x)", "INFO")
        self.logger.log(f"  - Margin Per Level: ${config.per_level_margin_usd}", "INFO")
        self.logger.log(
            f"  - Break-even Spacing: {self.min_profitable_spacing_pct:.4f}% ({self.spacing_status.value})",
            "WARNING" if self.spacing_status is SpacingStatus.UNPROFITABLE else "INFO",
        )

    def get_strategy_name(self) -> str:
        return "Virtual Grid"

    def _serialize_value(self, value: Any) -> Any:
        """Serialize payload values for structured logging."""
        if isinstance(value, Decimal):
            return float(value)
        if isinstance(value, (list, tuple)):
            return [self._serialize_value(item) for item in value]
        if isinstance(value, dict):
            return {key: self._serialize_value(val) for key, val in value.items()}
        return value

    def _log_event(self, event_type: str, message: str, level: str = "INFO", **context: Any) -> None:
        """Emit structured virtual grid event."""
        payload = {
            "event_type": event_type,
            "symbol": self.symbol,
            **context,
        }
        serialized_payload = {key: self._serialize_value(val) for key, val in payload.items()}
        self.logger.log(message, level.upper(), **serialized_payload)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    async def _initialize_strategy(self, price: Optional[Decimal] = None):
        """Generate the ladder around the configured center or the first observed price."""
        center = self.config.center_price or price
        if center is None:
            try:
                center = await asyncio.wait_for(
                    self.exchange_client.latest_price(self.symbol),
                    timeout=self.config.order_timeout_seconds,
                )
            except Exception as exc:
                self.logger.log(f"Price feed failed during initialization: {exc!r}", "WARNING")
                center = None
        if center is None or center <= 0:
            raise ConfigurationError(f"No usable center price for {self.symbol}")

        log_stage(self.logger, f"Initializing virtual grid for {self.symbol}", icon="📐", stage_id="1")
        self.grid.generate(Decimal(center))
        self.current_price = Decimal(center)

        if self.config.open_initial_positions:
            await self._open_initial_positions(Decimal(center))

    async def _open_initial_positions(self, center: Decimal) -> None:
        """
        One short a spacing above and one long a spacing below the center.

        Neither is tied to a ladder level. Each protective pair is measured
        from its reference price, not from the fill.
        """
        spacing = self.config.spacing_fraction
        for side, reference in (
            (PositionSide.SHORT, center * (1 + spacing)),
            (PositionSide.LONG, center * (1 - spacing)),
        ):
            result = await self.materializer.try_open(
                side, reference, origin=PositionOrigin.INITIAL, protect_from=reference
            )
            if result.success:
                self._log_event(
                    "initial_position",
                    f"Initial {side.value} position opened @ {result.position.entry_price}",
                    position_id=result.position.position_id,
                )
            else:
                self.logger.log(f"Initial {side.value} position not opened: {result.reason}", "WARNING")

    async def start(self, price: Optional[Decimal] = None):
        """Initialize if needed and start the event worker."""
        if self.status is GridStatus.RUNNING:
            self.logger.log(f"Virtual grid for {self.symbol} is already running", "WARNING")
            return
        await self.initialize(price)
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._accepting = True
        self.status = GridStatus.RUNNING
        self._worker = asyncio.create_task(self._run_worker(), name=f"virtual-grid-{self.symbol}")
        self.logger.info(f"Strategy '{self.get_strategy_name()}' started for {self.symbol}")

    async def stop(self, close_positions: bool = False):
        """
        Refuse new events, let queued and in-flight events finish, then stop the worker.

        Args:
            close_positions: Flatten every position once the queue is drained
        """
        if self._worker is None:
            return
        self._accepting = False
        if self.status is GridStatus.RUNNING:
            self.status = GridStatus.STOPPING
        await self._queue.put(_STOP)
        await self._worker
        self._worker = None

        if close_positions and self.materializer.open_count and self.current_price is not None:
            await self.materializer.close_all(self.current_price, reason="shutdown")

        if self.status is not GridStatus.HALTED:
            self.status = GridStatus.STOPPED
        self.logger.info(f"Strategy '{self.get_strategy_name()}' stopped for {self.symbol}")

    async def drain(self):
        """Wait until every queued event has been processed."""
        if self._queue is not None:
            await self._queue.join()

    # ------------------------------------------------------------------ #
    # Event intake
    # ------------------------------------------------------------------ #
    async def submit(self, event: GridEvent) -> "asyncio.Future":
        """
        Queue an event for the worker.

        Returns:
            Future resolved with the event outcome. Events submitted while the
            owner is not accepting resolve immediately with a ``refused`` outcome.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        if not self._accepting or self._queue is None:
            future.set_result({
                "action": "refused",
                "message": f"{self.symbol} owner is {self.status.value}; event refused",
            })
            return future
        await self._queue.put(QueuedEvent(event=event, future=future))
        return future

    async def process(self, event: GridEvent) -> Any:
        """Submit an event and wait for its outcome."""
        future = await self.submit(event)
        return await future

    async def _run_worker(self):
        while True:
            item = await self._queue.get()
            try:
                if item is _STOP:
                    return
                outcome = await self._handle(item.event)
                if not item.future.done():
                    item.future.set_result(outcome)
            finally:
                self._queue.task_done()

    async def _handle(self, event: GridEvent) -> Any:
        if self.status is GridStatus.HALTED:
            return {"action": "halted", "message": self.halt_reason}
        try:
            return await self._dispatch(event)
        except InvariantViolation as exc:
            self.halt_reason = str(exc)
            self.status = GridStatus.HALTED
            self._accepting = False
            self._log_event(
                "invariant_violation",
                f"🚨 {self.symbol} HALTED: {exc}",
                level="CRITICAL",
                error=str(exc),
            )
            return {"action": "halted", "message": self.halt_reason}
        except Exception as exc:
            self._log_event(
                "event_error",
                f"Error handling {type(event).__name__} for {self.symbol}: {exc}",
                level="ERROR",
                error=str(exc),
            )
            return {"action": "error", "message": str(exc)}

    async def _dispatch(self, event: GridEvent) -> Any:
        if isinstance(event, PriceTick):
            return await self._on_price(event.price)
        if isinstance(event, SignalEvent):
            return await self.gate.handle(event.signal)
        if isinstance(event, FundingEvent):
            return self._on_funding(event.funding_rate_pct)
        if isinstance(event, VolatilityUpdate):
            return self._on_volatility(event.volatility)
        if isinstance(event, CloseRequest):
            return await self._on_close_request(event)
        raise InvariantViolation(f"Unknown event type {type(event).__name__}")

    # ------------------------------------------------------------------ #
    # Event handlers
    # ------------------------------------------------------------------ #
    def _admit_level(self, level: VirtualLevel) -> bool:
        """Cost gate plus, in reactive mode, agreement with the current price reaction."""
        if self.spacing_status is SpacingStatus.UNPROFITABLE:
            self.logger.log(
                f"Crossing of {level.level_id} ignored: spacing below break-even "
                f"({self.grid.spacing * 100}% < {self.min_profitable_spacing_pct:.4f}%)",
                "DEBUG",
            )
            return False
        if self.config.use_reactive_mode and self.reactive_bias != level.side.value:
            self.logger.log(
                f"Crossing of {level.level_id} ignored: reactive bias is {self.reactive_bias}", "DEBUG"
            )
            return False
        return True

    def _update_reactive_bias(self, price: Decimal) -> None:
        """Flip the bias when the tick-to-tick move reaches the reaction threshold."""
        previous = self.current_price
        if previous is None or previous <= 0:
            return
        change_pct = (price - previous) / previous * Decimal("100")
        if change_pct >= self.config.reaction_threshold_pct:
            bias = PositionSide.LONG.value
        elif change_pct <= -self.config.reaction_threshold_pct:
            bias = PositionSide.SHORT.value
        else:
            return
        if bias != self.reactive_bias:
            self.logger.log(f"Reactive bias flipped to {bias.upper()} (price change {change_pct:.2f}%)", "INFO")
            self.reactive_bias = bias

    async def _on_price(self, price: Optional[Decimal]) -> Dict[str, Any]:
        if price is None:
            self.logger.log(f"Price unavailable for {self.symbol}; tick skipped", "DEBUG")
            return {"action": "skipped", "message": "price unavailable"}
        price = Decimal(price)
        if price <= 0:
            self.logger.log(f"Ignoring non-positive price {price} for {self.symbol}", "WARNING")
            return {"action": "skipped", "message": "non-positive price"}

        if self.config.use_reactive_mode:
            self._update_reactive_bias(price)
        self.current_price = price
        opened: List[str] = []
        rejected: List[Dict[str, str]] = []
        closed: List[RealizedTrade] = []

        # 1. Crossings -> real positions, nearest the center first
        crossed = self.grid.detect_crossings(price, admit=self._admit_level)
        crossed.sort(key=lambda level: abs(level.price - self.grid.center_price))
        max_active = self.config.max_active_positions
        for level in crossed:
            if max_active is not None and self.materializer.open_count >= max_active:
                self.grid.release(level.level_id)
                reason = f"max active positions reached ({self.materializer.open_count}/{max_active})"
                rejected.append({"level_id": level.level_id, "reason": reason})
                self.logger.log(f"Activation of {level.level_id} skipped: {reason}", "WARNING")
                continue

            result = await self.materializer.try_open(
                level.side,
                price,
                level_id=level.level_id,
                origin=PositionOrigin.GRID,
            )
            if result.success:
                self.grid.attach_position(level.level_id, result.position.position_id)
                opened.append(result.position.position_id)
            else:
                self.grid.release(level.level_id)
                rejected.append({"level_id": level.level_id, "reason": result.reason})
                self.logger.log(f"Crossing of {level.level_id} not materialized: {result.reason}", "INFO")

        # 2. Keep the ladder ahead of price
        self.grid.extend(price)

        # 3. Rebalance when price has drifted far from the center
        rebalanced = False
        if self._should_rebalance(price):
            self._log_event(
                "rebalance_triggered",
                f"Price {price} moved more than {self.config.rebalance_threshold_pct}% "
                f"from center {self.grid.center_price}",
                level="INFO",
                auto=self.config.auto_rebalance,
            )
            if self.config.auto_rebalance:
                self.grid.recenter(price)
                rebalanced = True

        # 4. Mark positions and act on exits
        for position, reason in self.materializer.refresh(price):
            trade = await self.materializer.close(position.position_id, price, reason=reason)
            if trade is not None:
                closed.append(trade)

        return {
            "action": "tick",
            "price": price,
            "opened": opened,
            "rejected": rejected,
            "closed": closed,
            "rebalanced": rebalanced,
        }

    def _should_rebalance(self, price: Decimal) -> bool:
        center = self.grid.center_price
        if center is None or center <= 0:
            return False
        move_pct = abs(price - center) / center * Decimal("100")
        return move_pct > self.config.rebalance_threshold_pct

    def _on_funding(self, funding_rate_pct: Decimal) -> Dict[str, Any]:
        amount = self.materializer.settle_funding(Decimal(funding_rate_pct))
        self.performance.total_funding += amount
        if amount:
            self.logger.log(f"Funding settled for {self.symbol}: {amount:+.6f} USD", "INFO")
        return {"action": "funding", "amount": amount}

    def _on_volatility(self, volatility: Decimal) -> Dict[str, Any]:
        """Rescale spacing for future levels and re-run the cost gate against it."""
        if not self.config.adaptive_spacing:
            return {"action": "skipped", "message": "adaptive spacing disabled"}
        spacing_pct = self.grid.update_spacing(Decimal(volatility))
        self.spacing_status = self.cost_model.classify_spacing(
            spacing_pct,
            self.grid_notional_usd,
            self.config.min_profit_after_fees_pct,
        )
        self._log_event(
            "spacing_updated",
            f"Spacing for {self.symbol} now {spacing_pct:.4f}% (volatility {volatility}, {self.spacing_status.value})",
            level="INFO",
            spacing_pct=spacing_pct,
        )
        return {"action": "spacing", "spacing_pct": spacing_pct, "spacing_status": self.spacing_status}

    async def _on_close_request(self, request: CloseRequest) -> Dict[str, Any]:
        price = request.price if request.price is not None else self.current_price
        if price is None:
            return {"action": "skipped", "message": "no price to close at"}
        if request.position_id is None:
            trades = await self.materializer.close_all(price, reason=request.reason)
        else:
            trade = await self.materializer.close(request.position_id, price, reason=request.reason)
            trades = [trade] if trade is not None else []
        return {"action": "close", "trades": trades}

    def _on_trade_closed(self, trade: RealizedTrade) -> None:
        """Book performance and start the level cooldown once a grid position is gone."""
        self.performance.record(trade)
        if trade.fully_closed and trade.level_id is not None:
            self.grid.mark_cooldown(trade.level_id, trade.closed_at)
            self.logger.log(f"Level {trade.level_id} in cooldown after {trade.reason}", "DEBUG")

    # ------------------------------------------------------------------ #
    # Status
    # ------------------------------------------------------------------ #
    def get_status(self) -> Dict[str, Any]:
        price = self.current_price
        outer = self.materializer.outer_positions()
        outer_far = False
        if price:
            limit = self.config.grid_spacing_pct * 3
            outer_far = any(
                abs(position.entry_price - price) / price * Decimal("100") > limit for position in outer
            )
        return {
            "symbol": self.symbol,
            "status": self.status.value,
            "halt_reason": self.halt_reason,
            "current_price": price,
            "center_price": self.grid.center_price,
            "spacing_pct": self.grid.spacing * Decimal("100"),
            "spacing_status": self.spacing_status.value,
            "reactive_bias": self.reactive_bias,
            "min_profitable_spacing_pct": self.min_profitable_spacing_pct,
            "positions": [position.to_dict() for position in self.materializer.all()],
            "exposure": self.materializer.exposure_bias(),
            "outer_positions_far": outer_far,
            "ledger": self.ledger.to_dict(),
            "equity": self.ledger.equity(self.materializer.unrealized_pnl()),
            "grid": self.grid.health(price) if price else self.grid.stats(),
            "performance": self.performance.to_dict(),
            "signals": self.gate.get_stats(),
        }
