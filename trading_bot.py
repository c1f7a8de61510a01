"""
Virtual Grid Trading Bot - one independent owner per symbol
"""

import asyncio
import time
import traceback
from decimal import Decimal
from typing import Any, AsyncIterable, Callable, Dict, List, Optional

from helpers.unified_logger import get_logger
from strategies.implementations.virtual_grid import (
    BotConfig,
    CloseRequest,
    ConfigurationError,
    FundingEvent,
    GridConfig,
    GridStatus,
    PriceTick,
    SignalEvent,
    TradingSignal,
    VirtualGridStrategy,
    VolatilityUpdate,
)


class GridTradingBot:
    """Multi-symbol coordinator: polls prices, routes signals, owns shutdown."""

    def __init__(
        self,
        config: BotConfig,
        exchange_client,
        safety=None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the bot.

        Args:
            config: Validated BotConfig
            exchange_client: Price feed and execution capability shared by all symbols
            safety: Optional safety collaborator shared by every signal gate
            clock: Wall-clock source (seconds)
        """
        self.config = config
        self.exchange_client = exchange_client
        self.safety = safety
        self.clock = clock
        self.logger = get_logger(
            "bot",
            "virtual_grid",
            context={"exchange": exchange_client.get_exchange_name()},
            log_to_console=True,
        )

        self.strategies: Dict[str, VirtualGridStrategy] = {}
        self.shutdown_requested = False
        self.ticks = 0

        for grid_config in config.grids:
            self.add_symbol(grid_config)

    # ------------------------------------------------------------------ #
    # Setup
    # ------------------------------------------------------------------ #
    def add_symbol(self, grid_config: GridConfig) -> VirtualGridStrategy:
        """Create the owner for one symbol. A symbol may have only one grid."""
        if grid_config.symbol in self.strategies:
            raise ConfigurationError(f"A grid for {grid_config.symbol} already exists")
        strategy = VirtualGridStrategy(
            config=grid_config,
            exchange_client=self.exchange_client,
            gate_config=self.config.signal_gate,
            cost_config=self.config.cost,
            safety_config=self.config.safety,
            safety=self.safety,
            clock=self.clock,
            queue_size=self.config.queue_size,
        )
        self.strategies[grid_config.symbol] = strategy
        return strategy

    def _log_configuration(self):
        self.logger.info("=== Virtual Grid Configuration ===")
        self.logger.info(f"Exchange: {self.exchange_client.get_exchange_name()}")
        self.logger.info(f"Symbols: {', '.join(self.strategies)}")
        self.logger.info(f"Poll Interval: {self.config.poll_interval_seconds}s")
        self.logger.info(
            f"Signal Gate: {'enabled' if self.config.signal_gate.enabled else 'disabled'} "
            f"(min strength {self.config.signal_gate.min_signal_strength}, "
            f"cooldown {self.config.signal_gate.cooldown_ms}ms)"
        )
        self.logger.info("==================================")

    async def _fetch_price(self, symbol: str) -> Optional[Decimal]:
        """Latest price for ``symbol``; ``None`` when the feed is down or slow."""
        timeout = self.strategies[symbol].config.order_timeout_seconds
        try:
            return await asyncio.wait_for(self.exchange_client.latest_price(symbol), timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"Price request for {symbol} timed out after {timeout}s")
        except Exception as exc:
            self.logger.warning(f"Price request for {symbol} failed: {exc}")
        return None

    async def start(self):
        """Connect and start every symbol owner. A symbol that cannot start is left idle."""
        await self.exchange_client.connect()
        for symbol, strategy in self.strategies.items():
            price = await self._fetch_price(symbol)
            try:
                await strategy.start(price)
            except ConfigurationError as exc:
                self.logger.error(f"Cannot start {symbol}: {exc}")

    def running_symbols(self) -> List[str]:
        return [s for s, strategy in self.strategies.items() if strategy.status is GridStatus.RUNNING]

    # ------------------------------------------------------------------ #
    # Event routing
    # ------------------------------------------------------------------ #
    async def poll_once(self) -> Dict[str, Any]:
        """Fetch one price per running symbol and process it. Symbols run concurrently."""
        symbols = self.running_symbols()

        async def _tick(symbol: str):
            price = await self._fetch_price(symbol)
            return await self.strategies[symbol].process(PriceTick(price=price, timestamp=self.clock()))

        outcomes = await asyncio.gather(*(_tick(symbol) for symbol in symbols))
        self.ticks += 1
        return dict(zip(symbols, outcomes))

    async def submit_signal(self, signal: TradingSignal) -> Optional[Any]:
        """Route a signal to its symbol owner and wait for the gate decision."""
        strategy = self.strategies.get(signal.symbol)
        if strategy is None:
            self.logger.warning(f"Dropping signal {signal.signal_id}: no grid for {signal.symbol}")
            return None
        return await strategy.process(SignalEvent(signal=signal))

    async def consume_signals(self, source: AsyncIterable[TradingSignal]) -> int:
        """Drain an async signal source until it ends or shutdown is requested."""
        handled = 0
        async for signal in source:
            if self.shutdown_requested:
                break
            try:
                await self.submit_signal(signal)
                handled += 1
            except Exception as exc:
                self.logger.error(f"Signal {getattr(signal, 'signal_id', '?')} failed: {exc}")
        return handled

    async def settle_funding(self, symbol: str, funding_rate_pct: Decimal) -> Optional[Any]:
        strategy = self.strategies.get(symbol)
        if strategy is None:
            return None
        return await strategy.process(FundingEvent(funding_rate_pct=Decimal(funding_rate_pct)))

    async def update_volatility(self, symbol: str, volatility: Decimal) -> Optional[Any]:
        strategy = self.strategies.get(symbol)
        if strategy is None:
            return None
        return await strategy.process(VolatilityUpdate(volatility=Decimal(volatility)))

    async def close_positions(self, symbol: str, position_id: Optional[str] = None, reason: str = "manual"):
        strategy = self.strategies.get(symbol)
        if strategy is None:
            return None
        return await strategy.process(CloseRequest(position_id=position_id, reason=reason))

    # ------------------------------------------------------------------ #
    # Main loop
    # ------------------------------------------------------------------ #
    async def _run_poll_loop(self, max_ticks: Optional[int] = None):
        """Execute the price polling loop."""
        while not self.shutdown_requested:
            if max_ticks is not None and self.ticks >= max_ticks:
                break
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Poll loop error: {e}")
            if not self.running_symbols():
                self.logger.warning("No running symbols left; stopping poll loop")
                break
            await asyncio.sleep(self.config.poll_interval_seconds)

    async def run(
        self,
        signals: Optional[AsyncIterable[TradingSignal]] = None,
        max_ticks: Optional[int] = None,
        close_on_exit: bool = False,
    ):
        """Main trading loop."""
        signal_task: Optional[asyncio.Task] = None
        try:
            await self.start()
            self._log_configuration()

            if signals is not None:
                signal_task = asyncio.create_task(self.consume_signals(signals))

            await self._run_poll_loop(max_ticks)

            if signal_task is not None:
                await signal_task
                signal_task = None

            await self.graceful_shutdown("Run complete", close_positions=close_on_exit)

        except (KeyboardInterrupt, asyncio.CancelledError):
            await self.graceful_shutdown("User interruption (Ctrl+C)", close_positions=close_on_exit)
        except Exception as e:
            self.logger.error(f"Critical error: {e}")
            self.logger.error(f"Traceback: {traceback.format_exc()}")
            await self.graceful_shutdown(f"Critical error: {e}", close_positions=close_on_exit)
            raise
        finally:
            if signal_task is not None and not signal_task.done():
                signal_task.cancel()

    async def graceful_shutdown(self, reason: str = "Unknown", close_positions: bool = False):
        """Stop every symbol owner after its in-flight events finish."""
        self.logger.info(f"🛑 Graceful shutdown initiated: {reason}")
        self.shutdown_requested = True

        for symbol, strategy in self.strategies.items():
            try:
                await asyncio.wait_for(strategy.stop(close_positions=close_positions), timeout=30.0)
            except asyncio.TimeoutError:
                self.logger.warning(f"⚠️ Stopping {symbol} timed out")
            except Exception as e:
                self.logger.error(f"❌ Error stopping {symbol}: {e}")
            try:
                await strategy.cleanup()
            except Exception as e:
                self.logger.error(f"❌ Strategy cleanup error for {symbol}: {e}")

        try:
            await asyncio.wait_for(self.exchange_client.disconnect(), timeout=10.0)
        except Exception as e:
            self.logger.warning(f"Exchange disconnect failed: {e}")
        self.logger.info("✅ Shutdown complete")

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        return {symbol: strategy.get_status() for symbol, strategy in self.strategies.items()}
