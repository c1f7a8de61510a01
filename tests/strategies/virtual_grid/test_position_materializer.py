import asyncio
from decimal import Decimal

import pytest

from exchange_clients.paper import PaperExchangeClient
from strategies.implementations.virtual_grid.errors import InvariantViolation
from strategies.implementations.virtual_grid.models import OpenRejection, PositionOrigin, PositionSide
from strategies.implementations.virtual_grid.risk_controller import CapitalLedger
from strategies.implementations.virtual_grid.strategy import VirtualGridStrategy


TOLERANCE = Decimal("1e-12")


def build(make_config, client, clock, **overrides):
    strategy = VirtualGridStrategy(make_config(**overrides), client, clock=clock)
    return strategy, strategy.materializer, strategy.ledger


@pytest.mark.asyncio
async def test_open_short_uses_per_level_margin(make_config, paper_client, clock):
    paper_client.set_price("BTC", Decimal("101"))
    _, materializer, ledger = build(make_config, paper_client, clock)

    result = await materializer.try_open(PositionSide.SHORT, Decimal("101"), level_id="virtual_short_1")

    assert result.success
    position = result.position
    assert position.margin_used == Decimal("125")
    assert position.size_usd == Decimal("1250")
    assert position.entry_price == Decimal("101")
    assert position.leverage == 10
    assert position.stop_loss == Decimal("101") * Decimal("1.05")
    assert position.take_profit == Decimal("101") * Decimal("0.90")
    assert position.liquidation_price == Decimal("101") * (1 + Decimal("0.9") / 10)
    assert result.fee == Decimal("0.625")
    assert ledger.committed_margin == Decimal("125")
    # entry fee is carried by the position until it closes
    assert ledger.available == Decimal("375")
    assert ledger.capital == Decimal("500")

    order = paper_client.orders[-1]
    assert order["side"] == "sell"
    assert order["leverage"] == 10
    assert paper_client.stop_losses["BTC"] == position.stop_loss
    assert paper_client.take_profits["BTC"] == position.take_profit


@pytest.mark.asyncio
async def test_try_open_rejects_non_positive_price(make_config, paper_client, clock):
    _, materializer, _ = build(make_config, paper_client, clock)
    with pytest.raises(ValueError):
        await materializer.try_open(PositionSide.LONG, Decimal("0"))


@pytest.mark.asyncio
async def test_max_positions_enforced(make_config, paper_client, clock):
    _, materializer, _ = build(
        make_config, paper_client, clock, max_positions=2, fixed_position_size_usd=Decimal("100")
    )

    assert (await materializer.try_open(PositionSide.LONG, Decimal("100"))).success
    assert (await materializer.try_open(PositionSide.LONG, Decimal("100"))).success
    third = await materializer.try_open(PositionSide.LONG, Decimal("100"))

    assert not third.success
    assert third.rejection is OpenRejection.MAX_POSITIONS_REACHED
    assert third.reason.startswith("max positions reached")


@pytest.mark.asyncio
async def test_below_minimum_order_value_rejected(make_config, paper_client, clock):
    _, materializer, _ = build(make_config, paper_client, clock)

    # $0.50 margin at 10x is a $5 order
    result = await materializer.try_open(PositionSide.LONG, Decimal("100"), Decimal("0.5"))

    assert result.rejection is OpenRejection.BELOW_MINIMUM_ORDER_VALUE
    assert paper_client.orders == []


@pytest.mark.asyncio
async def test_strict_leverage_rejects_above_symbol_limit(make_config, paper_client, clock):
    _, materializer, _ = build(make_config, paper_client, clock, strict_leverage=True)

    result = await materializer.try_open(PositionSide.LONG, Decimal("100"), leverage=50)

    assert result.rejection is OpenRejection.LEVERAGE_EXCEEDS_SYMBOL_LIMIT


@pytest.mark.asyncio
async def test_leverage_clamped_to_symbol_limit(make_config, paper_client, clock):
    paper_client.set_price("DOGE", Decimal("100"))
    _, materializer, _ = build(make_config, paper_client, clock, symbol="DOGE", leverage=50)

    result = await materializer.try_open(PositionSide.LONG, Decimal("100"))

    assert result.success
    assert result.position.leverage == 20


@pytest.mark.asyncio
async def test_order_failure_leaves_no_position(make_config, paper_client, clock):
    _, materializer, ledger = build(make_config, paper_client, clock)
    paper_client.fail_next_order()

    result = await materializer.try_open(PositionSide.LONG, Decimal("100"))

    assert result.rejection is OpenRejection.ORDER_PLACEMENT_FAILED
    assert "Injected order failure" in result.reason
    assert materializer.open_count == 0
    assert ledger.committed_margin == Decimal("0")
    assert ledger.capital == Decimal("500")


@pytest.mark.asyncio
async def test_order_timeout_is_treated_as_failure(make_config, clock):
    client = PaperExchangeClient(prices={"BTC": Decimal("100")}, order_delay=0.2)
    _, materializer, _ = build(make_config, client, clock, order_timeout_seconds=0.05)

    result = await materializer.try_open(PositionSide.LONG, Decimal("100"))

    assert result.rejection is OpenRejection.ORDER_PLACEMENT_FAILED
    assert materializer.open_count == 0


@pytest.mark.asyncio
async def test_concurrent_opens_respect_max_positions(make_config, clock):
    client = PaperExchangeClient(prices={"BTC": Decimal("100")}, order_delay=0.01)
    _, materializer, ledger = build(
        make_config, client, clock, max_positions=3, fixed_position_size_usd=Decimal("100")
    )

    results = await asyncio.gather(
        *(materializer.try_open(PositionSide.LONG, Decimal("100")) for _ in range(8))
    )

    opened = [r for r in results if r.success]
    rejected = [r for r in results if not r.success]
    assert len(opened) == 3
    assert all(r.rejection is OpenRejection.MAX_POSITIONS_REACHED for r in rejected)
    assert materializer.open_count == 3
    assert ledger.committed_margin <= ledger.capital


@pytest.mark.asyncio
async def test_concurrent_opens_never_exceed_capital(make_config, clock):
    client = PaperExchangeClient(prices={"BTC": Decimal("100")}, order_delay=0.01)
    # $500 active capital, $200 margin per position: only two fit
    _, materializer, ledger = build(make_config, client, clock, fixed_position_size_usd=Decimal("200"))

    results = await asyncio.gather(
        *(materializer.try_open(PositionSide.SHORT, Decimal("100")) for _ in range(4))
    )

    assert sum(1 for r in results if r.success) == 2
    assert {r.rejection for r in results if not r.success} == {OpenRejection.INSUFFICIENT_CAPITAL}
    assert ledger.committed_margin == Decimal("400")
    assert ledger.available >= 0


@pytest.mark.asyncio
async def test_round_trip_capital_change_equals_pnl_minus_fees(make_config, paper_client, clock):
    paper_client.set_price("BTC", Decimal("101"))
    _, materializer, ledger = build(make_config, paper_client, clock)

    opened = await materializer.try_open(PositionSide.SHORT, Decimal("101"))
    paper_client.set_price("BTC", Decimal("100"))
    trade = await materializer.close(opened.position.position_id, Decimal("100"), reason="take_profit")

    assert trade.fully_closed
    assert trade.gross_pnl > 0
    assert trade.entry_fee == opened.fee
    expected = trade.gross_pnl - trade.entry_fee - trade.exit_fee
    assert abs(trade.net_pnl - expected) < TOLERANCE
    assert abs((ledger.capital - Decimal("500")) - trade.net_pnl) < TOLERANCE
    assert ledger.committed_margin == Decimal("0")
    assert materializer.open_count == 0
    assert paper_client.orders[-1]["reduce_only"] is True
    assert paper_client.orders[-1]["side"] == "buy"


@pytest.mark.asyncio
async def test_reduce_shrinks_size_and_margin_proportionally(make_config, paper_client, clock):
    _, materializer, ledger = build(make_config, paper_client, clock)
    position = (await materializer.try_open(PositionSide.LONG, Decimal("100"))).position
    original_size = position.size

    trade = await materializer.reduce(position.position_id, Decimal("25"), Decimal("100"))

    assert not trade.fully_closed
    assert trade.size == original_size * Decimal("25") / Decimal("100")
    assert position.size == original_size - trade.size
    assert abs(position.margin_used - Decimal("93.75")) < TOLERANCE
    assert ledger.committed_margin == position.margin_used
    assert materializer.open_count == 1


@pytest.mark.asyncio
async def test_reduce_below_dust_closes_fully(make_config, paper_client, clock):
    _, materializer, _ = build(make_config, paper_client, clock, dust_threshold=Decimal("100"))
    position = (await materializer.try_open(PositionSide.LONG, Decimal("100"))).position

    trade = await materializer.reduce(position.position_id, Decimal("10"), Decimal("100"))

    assert trade.fully_closed
    assert materializer.open_count == 0


@pytest.mark.asyncio
async def test_reduce_rejects_out_of_range_percentage(make_config, paper_client, clock):
    _, materializer, _ = build(make_config, paper_client, clock)
    with pytest.raises(ValueError):
        await materializer.reduce("pos_btc_1", Decimal("0"), Decimal("100"))
    with pytest.raises(ValueError):
        await materializer.reduce("pos_btc_1", Decimal("101"), Decimal("100"))


@pytest.mark.asyncio
async def test_failed_close_keeps_position(make_config, paper_client, clock):
    _, materializer, ledger = build(make_config, paper_client, clock)
    position = (await materializer.try_open(PositionSide.LONG, Decimal("100"))).position

    paper_client.fail_next_order()
    assert await materializer.close(position.position_id, Decimal("100")) is None
    assert materializer.get(position.position_id) is position
    assert ledger.committed_margin == Decimal("125")


@pytest.mark.asyncio
async def test_close_unknown_position_returns_none(make_config, paper_client, clock):
    _, materializer, _ = build(make_config, paper_client, clock)
    assert await materializer.close("pos_btc_99", Decimal("100")) is None


@pytest.mark.asyncio
async def test_close_all_flattens_symbol(make_config, paper_client, clock):
    _, materializer, ledger = build(make_config, paper_client, clock)
    await materializer.try_open(PositionSide.LONG, Decimal("100"))
    await materializer.try_open(PositionSide.SHORT, Decimal("100"))

    trades = await materializer.close_all(Decimal("100"), reason="shutdown")

    assert len(trades) == 2
    assert all(trade.reason == "shutdown" for trade in trades)
    assert materializer.open_count == 0
    assert ledger.committed_margin == Decimal("0")
    assert "BTC" not in paper_client.net_positions


@pytest.mark.asyncio
async def test_refresh_reports_stop_loss_and_take_profit(make_config, paper_client, clock):
    _, materializer, _ = build(make_config, paper_client, clock)
    long_position = (await materializer.try_open(PositionSide.LONG, Decimal("100"))).position
    short_position = (await materializer.try_open(PositionSide.SHORT, Decimal("100"))).position

    exits = dict((p.position_id, reason) for p, reason in materializer.refresh(Decimal("89")))
    assert exits[long_position.position_id] == "stop_loss"
    assert exits[short_position.position_id] == "take_profit"
    assert long_position.unrealized_pnl < 0
    assert short_position.unrealized_pnl > 0


@pytest.mark.asyncio
async def test_trailing_stop_follows_best_price(make_config, paper_client, clock):
    _, materializer, _ = build(make_config, paper_client, clock, use_trailing_stop=True)
    position = (await materializer.try_open(PositionSide.LONG, Decimal("100"))).position

    assert materializer.refresh(Decimal("108")) == []
    assert position.stop_loss == Decimal("108") * Decimal("0.95")

    exits = materializer.refresh(Decimal("102"))
    assert [(p.position_id, reason) for p, reason in exits] == [(position.position_id, "trailing_stop")]


@pytest.mark.asyncio
async def test_settle_funding_moves_capital(make_config, paper_client, clock):
    _, materializer, ledger = build(make_config, paper_client, clock)
    position = (await materializer.try_open(PositionSide.LONG, Decimal("100"))).position
    capital_before = ledger.capital

    amount = materializer.settle_funding(Decimal("0.01"))

    assert amount == -(position.size_usd * Decimal("0.01") / Decimal("100"))
    assert ledger.capital == capital_before + amount
    assert position.funding_accrued == amount


@pytest.mark.asyncio
async def test_exposure_and_outer_positions(make_config, paper_client, clock):
    _, materializer, _ = build(make_config, paper_client, clock)
    low = (await materializer.try_open(PositionSide.LONG, Decimal("100"))).position
    paper_client.set_price("BTC", Decimal("102"))
    high = (await materializer.try_open(PositionSide.SHORT, Decimal("102"))).position
    paper_client.set_price("BTC", Decimal("101"))
    await materializer.try_open(PositionSide.SHORT, Decimal("101"))

    assert materializer.bottom_position() is low
    assert materializer.top_position() is high
    assert materializer.outer_positions() == [low, high]

    exposure = materializer.exposure_bias()
    assert exposure["long_exposure"] == Decimal("1250")
    assert exposure["short_exposure"] == Decimal("2500")
    assert exposure["bias_pct"] == Decimal("1250") / Decimal("3750") * Decimal("100")
    assert len(materializer.all(origin=PositionOrigin.GRID)) == 3


def test_ledger_rejects_over_commitment():
    ledger = CapitalLedger(Decimal("100"))
    ledger.reserve(Decimal("90"))
    with pytest.raises(InvariantViolation):
        ledger.reserve(Decimal("20"))
    with pytest.raises(InvariantViolation):
        ledger.release(Decimal("91"))
    assert ledger.release(Decimal("90"), Decimal("5"), Decimal("1")) == Decimal("94")
    assert ledger.capital == Decimal("104")


@pytest.mark.asyncio
async def test_default_sizing_fills_every_slot(make_config, paper_client, clock):
    # $1000, 50% reserve, 4 positions: $125 margin each uses all $500 of active capital
    _, materializer, ledger = build(make_config, paper_client, clock)

    results = [await materializer.try_open(PositionSide.SHORT, Decimal("100")) for _ in range(4)]

    assert all(result.success for result in results)
    assert materializer.open_count == 4
    assert ledger.committed_margin == Decimal("500")
    assert ledger.available == Decimal("0")

    fifth = await materializer.try_open(PositionSide.SHORT, Decimal("100"))
    assert fifth.rejection is OpenRejection.MAX_POSITIONS_REACHED


@pytest.mark.asyncio
async def test_entry_and_exit_fees_are_booked_at_close(make_config, paper_client, clock):
    _, materializer, ledger = build(make_config, paper_client, clock)
    opened = await materializer.try_open(PositionSide.LONG, Decimal("100"))

    trade = await materializer.close(opened.position.position_id, Decimal("100"))

    assert trade.gross_pnl == 0
    assert ledger.total_fees == opened.fee + trade.exit_fee
    assert ledger.capital == Decimal("500") - trade.fees


@pytest.mark.asyncio
async def test_partial_open_books_only_filled_size(make_config, paper_client, clock):
    _, materializer, ledger = build(make_config, paper_client, clock)
    paper_client.partially_fill_next_order(Decimal("0.5"))

    result = await materializer.try_open(PositionSide.SHORT, Decimal("100"))

    assert result.success
    position = result.position
    assert position.size == paper_client.orders[-1]["size"]
    assert -paper_client.net_positions["BTC"] == position.size
    assert abs(position.margin_used - Decimal("62.5")) < TOLERANCE
    assert abs(position.size_usd - Decimal("625")) < TOLERANCE
    assert ledger.committed_margin == position.margin_used
    assert abs(result.fee - Decimal("0.3125")) < TOLERANCE


@pytest.mark.asyncio
async def test_partial_close_keeps_unfilled_remainder(make_config, paper_client, clock):
    _, materializer, ledger = build(make_config, paper_client, clock)
    position = (await materializer.try_open(PositionSide.LONG, Decimal("100"))).position
    original_size = position.size
    paper_client.partially_fill_next_order(Decimal("0.25"))

    trade = await materializer.close(position.position_id, Decimal("100"))

    assert not trade.fully_closed
    assert trade.size == original_size * Decimal("0.25")
    assert materializer.get(position.position_id) is position
    assert position.size == original_size - trade.size
    assert paper_client.net_positions["BTC"] == position.size
    assert abs(ledger.committed_margin - Decimal("93.75")) < TOLERANCE


@pytest.mark.asyncio
async def test_break_even_stop_moves_to_entry(make_config, paper_client, clock):
    # take profit 10%, threshold 50%: armed once price is 5% in favour
    _, materializer, _ = build(make_config, paper_client, clock, use_break_even_stop=True)
    position = (await materializer.try_open(PositionSide.LONG, Decimal("100"))).position

    assert materializer.refresh(Decimal("104")) == []
    assert not position.break_even_armed

    assert materializer.refresh(Decimal("105")) == []
    assert position.break_even_armed
    assert position.stop_loss == Decimal("100")

    exits = materializer.refresh(Decimal("99.9"))
    assert [(p.position_id, reason) for p, reason in exits] == [(position.position_id, "break_even_stop")]
