"""
Position materialization for the virtual grid strategy.

Single authority over real positions for one symbol: turns crossed levels and
signal decisions into exchange orders, books them in the capital ledger, and
realizes P&L on close. Every open / close / reduce runs under one lock so the
capacity check and the order never interleave with another mutation.
"""

from __future__ import annotations

import asyncio
import time
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple, Union

from exchange_clients.base_models import OrderResult
from strategies.components.cost_model import CostModel

from .config import GridConfig
from .models import (
    OpenRejection,
    OpenResult,
    PositionOrigin,
    PositionSide,
    RealizedTrade,
    RealPosition,
)
from .risk_controller import CapitalLedger, GridRiskController, liquidation_price


HUNDRED = Decimal("100")


def confirmed_fill(result: Optional[OrderResult], requested: Decimal) -> Optional[Tuple[Decimal, Decimal]]:
    """
    (fill price, filled size) confirmed by an order result, or ``None``.

    A ``FILLED`` order without a reported size counts as fully filled; a
    partial fill must report its size.
    """
    if result is None or result.filled_price is None:
        return None
    filled = result.filled_size
    if filled is None and result.status == "FILLED":
        filled = requested
    if filled is None or filled <= 0:
        return None
    return result.filled_price, min(filled, requested)


class PositionMaterializer:
    """Open, reduce and close real positions for one symbol."""

    def __init__(
        self,
        config: GridConfig,
        exchange_client,
        cost_model: CostModel,
        ledger: CapitalLedger,
        risk_controller: GridRiskController,
        logger,
        log_event: Callable[..., None],
        clock: Callable[[], float] = time.time,
        volatility_factor: Decimal = Decimal("1"),
        on_close: Optional[Callable[[RealizedTrade], None]] = None,
    ) -> None:
        """
        Args:
            on_close: Called with every realized trade (partial or full), while
                the lock is still held
        """
        self.config = config
        self.symbol = config.symbol
        self.exchange_client = exchange_client
        self.cost_model = cost_model
        self.ledger = ledger
        self.risk_controller = risk_controller
        self.logger = logger
        self._log_event = log_event
        self.clock = clock
        self.volatility_factor = volatility_factor
        self.on_close = on_close

        self.positions: Dict[str, RealPosition] = {}
        self.lock = asyncio.Lock()
        self._position_seq = 0

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    @property
    def open_count(self) -> int:
        return len(self.positions)

    def get(self, position_id: str) -> Optional[RealPosition]:
        return self.positions.get(position_id)

    def all(self, origin: Optional[PositionOrigin] = None) -> List[RealPosition]:
        if origin is None:
            return list(self.positions.values())
        return [position for position in self.positions.values() if position.origin is origin]

    def _next_position_id(self) -> str:
        self._position_seq += 1
        return f"pos_{self.symbol.lower()}_{self._position_seq}"

    def _protective_prices(self, side: PositionSide, fill_price: Decimal) -> Tuple[Decimal, Decimal]:
        stop = self.config.stop_loss_pct / HUNDRED
        take = self.config.take_profit_pct / HUNDRED
        if side is PositionSide.LONG:
            return fill_price * (1 - stop), fill_price * (1 + take)
        return fill_price * (1 + stop), fill_price * (1 - take)

    async def _call_exchange(self, coro, action: str) -> Optional[OrderResult]:
        """Await an order call with the configured timeout. Returns ``None`` on failure."""
        timeout = self.config.order_timeout_seconds
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            self._log_event(
                "order_timeout",
                f"{action} timed out after {timeout}s",
                level="ERROR",
                action=action,
            )
        except Exception as exc:
            self._log_event(
                "order_error",
                f"{action} failed: {exc}",
                level="ERROR",
                action=action,
                error=str(exc),
            )
        return None

    async def _attach_protection(self, position: RealPosition) -> None:
        """Best-effort stop loss / take profit placement. Failures never drop the position."""
        timeout = self.config.order_timeout_seconds
        for label, call, price in (
            ("stop loss", self.exchange_client.set_stop_loss, position.stop_loss),
            ("take profit", self.exchange_client.set_take_profit, position.take_profit),
        ):
            try:
                accepted = await asyncio.wait_for(call(self.symbol, price), timeout=timeout)
            except Exception as exc:
                accepted = False
                self.logger.log(f"Failed to set {label} for {position.position_id}: {exc!r}", "WARNING")
            if not accepted:
                self.logger.log(
                    f"{label.title()} at {price} not confirmed for {position.position_id}",
                    "WARNING",
                )

    # ------------------------------------------------------------------ #
    # Open
    # ------------------------------------------------------------------ #
    async def try_open(
        self,
        side: Union[PositionSide, str],
        price: Decimal,
        desired_size_usd: Optional[Decimal] = None,
        leverage: Optional[int] = None,
        *,
        level_id: Optional[str] = None,
        origin: PositionOrigin = PositionOrigin.GRID,
        protect_from: Optional[Decimal] = None,
    ) -> OpenResult:
        """
        Open a real position, or explain why not.

        Args:
            side: long or short
            price: Reference price used for sizing and cost estimation
            desired_size_usd: Margin (USD) to commit; defaults to the per-level size
            leverage: Requested leverage; defaults to the configured leverage
            level_id: Virtual level this position materializes, if any
            origin: Who asked for the position
            protect_from: Price the stop loss and take profit are measured
                from; defaults to the fill price
        """
        side = PositionSide(side) if isinstance(side, str) else side
        if price <= 0:
            raise ValueError(f"price must be positive, got {price}")

        async with self.lock:
            return await self._open_locked(side, price, desired_size_usd, leverage, level_id, origin, protect_from)

    async def _open_locked(
        self,
        side: PositionSide,
        price: Decimal,
        desired_size_usd: Optional[Decimal],
        leverage: Optional[int],
        level_id: Optional[str],
        origin: PositionOrigin,
        protect_from: Optional[Decimal],
    ) -> OpenResult:
        margin = self.config.per_level_margin_usd if desired_size_usd is None else Decimal(desired_size_usd)

        applied_leverage, leverage_message = self.risk_controller.resolve_leverage(leverage)
        if applied_leverage is None:
            return OpenResult.rejected(OpenRejection.LEVERAGE_EXCEEDS_SYMBOL_LIMIT, leverage_message)

        notional = margin * applied_leverage
        quote = self.cost_model.quote(notional, side.value, True, price, self.volatility_factor)
        entry_fee = quote.trading_fee

        allowed, rejection, message = self.risk_controller.check_open_limits(self.open_count, margin, notional)
        if not allowed:
            self.logger.log(f"Open {side.value} rejected: {message}", "INFO")
            return OpenResult.rejected(rejection, message)

        size = notional / quote.effective_price
        result = await self._call_exchange(
            self.exchange_client.place_order(self.symbol, side.order_side, size, "market", applied_leverage),
            f"Open {side.value} {size} {self.symbol}",
        )
        fill = confirmed_fill(result, size)
        if fill is None:
            detail = result.error_message if result is not None and result.error_message else "no fill"
            self._log_event(
                "open_failed",
                f"Open {side.value} on {self.symbol} not filled: {detail}",
                level="WARNING",
                side=side.value,
                level_id=level_id,
            )
            return OpenResult.rejected(OpenRejection.ORDER_PLACEMENT_FAILED, detail)

        fill_price, filled_size = fill
        if filled_size < size:
            # Book only what the venue confirmed
            ratio = filled_size / size
            self._log_event(
                "partial_fill",
                f"Open {side.value} on {self.symbol} partially filled: {filled_size} of {size}",
                level="WARNING",
                level_id=level_id,
                ratio=ratio,
            )
            margin *= ratio
            notional *= ratio
            entry_fee *= ratio
            size = filled_size

        self.ledger.reserve(margin)

        stop_loss, take_profit = self._protective_prices(side, protect_from or fill_price)
        position = RealPosition(
            position_id=self._next_position_id(),
            symbol=self.symbol,
            side=side,
            size=size,
            size_usd=notional,
            entry_price=fill_price,
            current_price=fill_price,
            leverage=applied_leverage,
            margin_used=margin,
            stop_loss=stop_loss,
            take_profit=take_profit,
            entry_time=self.clock(),
            liquidation_price=liquidation_price(fill_price, side.value, applied_leverage),
            level_id=level_id,
            origin=origin,
            entry_fee=entry_fee,
            highest_price=fill_price,
            lowest_price=fill_price,
        )
        self.positions[position.position_id] = position

        self._log_event(
            "position_opened",
            f"Opened {side.value} {size:.6f} {self.symbol} @ {fill_price} "
            f"(margin ${margin:.2f}, {applied_leverage}x, {origin.value})",
            level="INFO",
            position_id=position.position_id,
            level_id=level_id,
            margin=margin,
            fee=entry_fee,
        )

        await self._attach_protection(position)
        return OpenResult(position=position, fee=entry_fee)

    # ------------------------------------------------------------------ #
    # Close / reduce
    # ------------------------------------------------------------------ #
    def _realize(
        self,
        position: RealPosition,
        close_size: Decimal,
        exit_price: Decimal,
        reason: str,
    ) -> RealizedTrade:
        """Book a (partial) close in the ledger and shrink or drop the position."""
        fully_closed = close_size >= position.size
        fraction = Decimal("1") if fully_closed else close_size / position.size
        close_size = position.size if fully_closed else close_size

        margin_released = position.margin_used if fully_closed else position.margin_used * fraction
        entry_fee_share = position.entry_fee if fully_closed else position.entry_fee * fraction
        funding_share = position.funding_accrued if fully_closed else position.funding_accrued * fraction
        gross = position.gross_pnl(exit_price, close_size)
        exit_fee = self.cost_model.trading_fee(close_size * exit_price, True)

        capital_released = self.ledger.release(margin_released, gross, exit_fee + entry_fee_share)
        net_pnl = gross - exit_fee - entry_fee_share + funding_share

        if fully_closed:
            self.positions.pop(position.position_id, None)
        else:
            position.size -= close_size
            position.size_usd -= position.size_usd * fraction
            position.margin_used -= margin_released
            position.entry_fee -= entry_fee_share
            position.funding_accrued -= funding_share
            position.mark(exit_price)

        trade = RealizedTrade(
            position_id=position.position_id,
            symbol=self.symbol,
            side=position.side,
            size=close_size,
            entry_price=position.entry_price,
            exit_price=exit_price,
            gross_pnl=gross,
            exit_fee=exit_fee,
            entry_fee=entry_fee_share,
            net_pnl=net_pnl,
            capital_released=capital_released,
            reason=reason,
            fully_closed=fully_closed,
            level_id=position.level_id,
            closed_at=self.clock(),
        )
        if self.on_close is not None:
            self.on_close(trade)
        return trade

    async def reduce(
        self,
        position_id: str,
        pct: Decimal,
        exit_price: Decimal,
        reason: str = "reduce",
    ) -> Optional[RealizedTrade]:
        """
        Close ``pct`` percent of a position.

        Size and margin shrink proportionally. A remainder below the dust
        threshold closes the position fully instead. ``exit_price`` is the
        reference price; the confirmed fill price is what gets booked.
        """
        pct = Decimal(pct)
        if pct <= 0 or pct > HUNDRED:
            raise ValueError(f"reduce percentage must be within (0, 100], got {pct}")

        async with self.lock:
            position = self.positions.get(position_id)
            if position is None:
                self.logger.log(f"Reduce skipped: unknown position {position_id}", "WARNING")
                return None

            close_size = position.size * pct / HUNDRED
            if position.size - close_size < self.config.dust_threshold:
                close_size = position.size

            result = await self._call_exchange(
                self.exchange_client.place_order(
                    self.symbol,
                    position.side.opposite.order_side,
                    close_size,
                    "market",
                    position.leverage,
                    reduce_only=True,
                ),
                f"Close {close_size} of {position_id}",
            )
            fill = confirmed_fill(result, close_size)
            if fill is None:
                detail = result.error_message if result is not None and result.error_message else "no fill"
                self._log_event(
                    "close_failed",
                    f"Close of {position_id} not filled: {detail}; position kept",
                    level="WARNING",
                    position_id=position_id,
                )
                return None

            fill_price, filled_size = fill
            if filled_size < close_size:
                self._log_event(
                    "partial_fill",
                    f"Close of {position_id} partially filled: {filled_size} of {close_size}",
                    level="WARNING",
                    position_id=position_id,
                )
            trade = self._realize(position, filled_size, fill_price, reason)

        self._log_event(
            "position_closed" if trade.fully_closed else "position_reduced",
            f"{'Closed' if trade.fully_closed else 'Reduced'} {trade.side.value} {position_id} "
            f"@ {trade.exit_price} (ref {exit_price}, {reason}): net P&L ${trade.net_pnl:.4f}",
            level="INFO",
            position_id=position_id,
            gross_pnl=trade.gross_pnl,
            fees=trade.fees,
        )
        return trade

    async def close(
        self,
        position_id: str,
        exit_price: Decimal,
        reason: str = "manual",
    ) -> Optional[RealizedTrade]:
        """Fully close one position."""
        return await self.reduce(position_id, HUNDRED, exit_price, reason)

    async def close_all(self, price: Decimal, reason: str = "close_all") -> List[RealizedTrade]:
        """Flatten the symbol with the venue's close-position capability."""
        async with self.lock:
            if not self.positions:
                return []

            result = await self._call_exchange(
                self.exchange_client.close_position(self.symbol),
                f"Close all {self.symbol}",
            )
            if result is None or not result.success or result.status == "PARTIALLY_FILLED":
                detail = result.error_message if result is not None and result.error_message else "not fully filled"
                self._log_event(
                    "close_all_failed",
                    f"Close all for {self.symbol} failed: {detail}; positions kept",
                    level="ERROR",
                )
                return []

            fill_price = result.filled_price or price
            trades = [
                self._realize(position, position.size, fill_price, reason)
                for position in list(self.positions.values())
            ]

        self._log_event(
            "positions_flattened",
            f"Closed {len(trades)} {self.symbol} positions @ {fill_price} ({reason})",
            level="INFO",
            count=len(trades),
        )
        return trades

    # ------------------------------------------------------------------ #
    # Price refresh and funding
    # ------------------------------------------------------------------ #
    def refresh(self, price: Decimal) -> List[Tuple[RealPosition, str]]:
        """
        Recompute unrealized P&L and collect positions that must exit.

        Returns:
            (position, reason) pairs for stop loss (plain, trailing or break-even),
            take profit or local liquidation
        """
        exits: List[Tuple[RealPosition, str]] = []
        stop_fraction = self.config.stop_loss_pct / HUNDRED

        for position in list(self.positions.values()):
            position.mark(price)
            if self.config.use_break_even_stop and not position.break_even_armed:
                self._arm_break_even(position)

            if position.side is PositionSide.LONG:
                if position.highest_price is None or price > position.highest_price:
                    position.highest_price = price
                    if self.config.use_trailing_stop:
                        trailing = price * (1 - stop_fraction)
                        if trailing > position.stop_loss:
                            position.stop_loss = trailing
                            self.logger.log(
                                f"Trailing stop updated for {position.position_id}: {trailing:.2f}", "DEBUG"
                            )
                stop_hit = price <= position.stop_loss
                take_hit = price >= position.take_profit
            else:
                if position.lowest_price is None or price < position.lowest_price:
                    position.lowest_price = price
                    if self.config.use_trailing_stop:
                        trailing = price * (1 + stop_fraction)
                        if trailing < position.stop_loss:
                            position.stop_loss = trailing
                            self.logger.log(
                                f"Trailing stop updated for {position.position_id}: {trailing:.2f}", "DEBUG"
                            )
                stop_hit = price >= position.stop_loss
                take_hit = price <= position.take_profit

            if stop_hit:
                if self.config.use_trailing_stop:
                    reason = "trailing_stop"
                elif position.break_even_armed:
                    reason = "break_even_stop"
                else:
                    reason = "stop_loss"
                exits.append((position, reason))
            elif take_hit:
                exits.append((position, "take_profit"))
            elif position.unrealized_pnl_pct <= -(Decimal("90") / Decimal(position.leverage)):
                exits.append((position, "liquidation_risk"))

        return exits

    def _arm_break_even(self, position: RealPosition) -> None:
        """Move the stop to entry once price covers the configured share of the take-profit distance."""
        threshold_pct = self.config.take_profit_pct * self.config.break_even_threshold_pct / HUNDRED
        if position.unrealized_pnl_pct < threshold_pct:
            return
        if position.side is PositionSide.LONG:
            position.stop_loss = max(position.stop_loss, position.entry_price)
        else:
            position.stop_loss = min(position.stop_loss, position.entry_price)
        position.break_even_armed = True
        self.logger.log(
            f"Break-even stop armed for {position.position_id} at {position.stop_loss}", "DEBUG"
        )

    def settle_funding(self, funding_rate_pct: Decimal) -> Decimal:
        """Apply one funding settlement to every open position. Returns the net amount."""
        total = Decimal("0")
        now = self.clock()
        for position in self.positions.values():
            amount = self.cost_model.funding_accrual(position.size_usd, position.side.value, funding_rate_pct, 1)
            if amount == 0:
                continue
            position.funding_accrued += amount
            self.ledger.adjust(amount)
            self.cost_model.record_funding(self.symbol, amount, now)
            total += amount
        return total

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #
    def unrealized_pnl(self) -> Decimal:
        return sum((position.unrealized_pnl for position in self.positions.values()), Decimal("0"))

    def top_position(self, positions: Optional[List[RealPosition]] = None) -> Optional[RealPosition]:
        positions = self.all() if positions is None else positions
        return max(positions, key=lambda position: position.entry_price, default=None)

    def bottom_position(self, positions: Optional[List[RealPosition]] = None) -> Optional[RealPosition]:
        positions = self.all() if positions is None else positions
        return min(positions, key=lambda position: position.entry_price, default=None)

    def outer_positions(self, positions: Optional[List[RealPosition]] = None) -> List[RealPosition]:
        """Lowest and highest entry positions (one entry when they coincide)."""
        positions = self.all() if positions is None else positions
        if not positions:
            return []
        ordered = sorted(positions, key=lambda position: position.entry_price)
        outer = [ordered[0]]
        if ordered[-1] is not ordered[0]:
            outer.append(ordered[-1])
        return outer

    def exposure_bias(self, positions: Optional[List[RealPosition]] = None) -> Dict[str, Decimal]:
        """Long / short notional exposure and imbalance percentage."""
        positions = self.all() if positions is None else positions
        long_exposure = sum(
            (p.size_usd for p in positions if p.side is PositionSide.LONG), Decimal("0")
        )
        short_exposure = sum(
            (p.size_usd for p in positions if p.side is PositionSide.SHORT), Decimal("0")
        )
        total = long_exposure + short_exposure
        bias_pct = abs(long_exposure - short_exposure) / total * HUNDRED if total > 0 else Decimal("0")
        return {
            "long_exposure": long_exposure,
            "short_exposure": short_exposure,
            "bias_pct": bias_pct,
        }
