"""
Tests for trading bot orchestration.

Tests symbol setup, price polling, signal routing and lifecycle management
against the paper exchange.
"""

import itertools
from decimal import Decimal

import pytest

from exchange_clients.paper import PaperExchangeClient
from strategies.implementations.virtual_grid import (
    BotConfig,
    ConfigurationError,
    ExecutionRecord,
    GridStatus,
    PriceTick,
    SignalDirection,
    SignalType,
    SignalUrgency,
    TradingSignal,
)
from trading_bot import GridTradingBot


def bot_config(**overrides):
    data = {
        "grids": [
            {
                "symbol": "BTC",
                "grid_spacing_pct": "1",
                "total_investment_usd": "1000",
                "leverage": 10,
                "watch_depth": 10,
            },
            {
                "symbol": "ETH",
                "grid_spacing_pct": "1",
                "total_investment_usd": "400",
                "leverage": 5,
                "watch_depth": 10,
            },
        ],
        "poll_interval_seconds": 0.01,
    }
    data.update(overrides)
    return BotConfig.model_validate(data)


@pytest.fixture
def client():
    return PaperExchangeClient(prices={"BTC": Decimal("100"), "ETH": Decimal("2000")})


@pytest.fixture
def bot(client, clock):
    return GridTradingBot(bot_config(), client, clock=clock)


_ids = itertools.count(1)


def signal(clock, symbol="BTC", strength="80"):
    return TradingSignal(
        signal_id=f"{symbol}-{next(_ids)}",
        symbol=symbol,
        type=SignalType.MOMENTUM_SURGE,
        direction=SignalDirection.LONG,
        urgency=SignalUrgency.HIGH,
        strength=Decimal(strength),
        price=Decimal("100"),
        timestamp=clock(),
    )


class TestSetup:

    def test_one_owner_per_symbol(self, bot):
        assert sorted(bot.strategies) == ["BTC", "ETH"]
        assert all(s.status is GridStatus.IDLE for s in bot.strategies.values())

    def test_duplicate_symbol_rejected(self, bot):
        with pytest.raises(ConfigurationError):
            bot.add_symbol(bot.config.grids[0])

    @pytest.mark.asyncio
    async def test_start_centers_each_grid_on_its_price(self, bot):
        await bot.start()
        try:
            assert bot.running_symbols() == ["BTC", "ETH"]
            assert bot.strategies["BTC"].grid.center_price == Decimal("100")
            assert bot.strategies["ETH"].grid.center_price == Decimal("2000")
        finally:
            await bot.graceful_shutdown("test")

    @pytest.mark.asyncio
    async def test_symbol_without_price_stays_idle(self, clock):
        client = PaperExchangeClient(prices={"BTC": Decimal("100")})
        bot = GridTradingBot(bot_config(), client, clock=clock)

        await bot.start()
        try:
            assert bot.running_symbols() == ["BTC"]
            assert bot.strategies["ETH"].status is GridStatus.IDLE
        finally:
            await bot.graceful_shutdown("test")


class TestRouting:

    @pytest.mark.asyncio
    async def test_poll_once_ticks_every_running_symbol(self, bot, client):
        await bot.start()
        try:
            client.set_price("BTC", Decimal("101"))
            client.set_price("ETH", Decimal("1960"))

            outcomes = await bot.poll_once()

            assert set(outcomes) == {"BTC", "ETH"}
            assert len(outcomes["BTC"]["opened"]) == 1
            assert len(outcomes["ETH"]["opened"]) == 2
            assert bot.ticks == 1
        finally:
            await bot.graceful_shutdown("test")

    @pytest.mark.asyncio
    async def test_feed_outage_skips_only_that_symbol(self, bot, client):
        await bot.start()
        try:
            client.set_unavailable("ETH")
            client.set_price("BTC", Decimal("101"))

            outcomes = await bot.poll_once()

            assert outcomes["ETH"]["action"] == "skipped"
            assert outcomes["BTC"]["action"] == "tick"
        finally:
            await bot.graceful_shutdown("test")

    @pytest.mark.asyncio
    async def test_signal_routing(self, bot, clock):
        await bot.start()
        try:
            record = await bot.submit_signal(signal(clock))
            assert isinstance(record, ExecutionRecord)
            assert record.success

            assert await bot.submit_signal(signal(clock, symbol="SOL")) is None
        finally:
            await bot.graceful_shutdown("test")

    @pytest.mark.asyncio
    async def test_consume_signals_from_async_source(self, bot, clock):
        async def source():
            yield signal(clock, strength="10")
            yield signal(clock, symbol="ETH", strength="20")
            yield signal(clock, symbol="DOGE")

        await bot.start()
        try:
            handled = await bot.consume_signals(source())
            assert handled == 3
            assert bot.strategies["BTC"].gate.get_stats()["total_executions"] == 1
        finally:
            await bot.graceful_shutdown("test")

    @pytest.mark.asyncio
    async def test_funding_and_manual_close(self, bot, client):
        await bot.start()
        try:
            client.set_price("BTC", Decimal("101"))
            await bot.poll_once()

            funding = await bot.settle_funding("BTC", Decimal("0.01"))
            assert funding["amount"] == Decimal("0.125")

            closed = await bot.close_positions("BTC")
            assert len(closed["trades"]) == 1
            assert await bot.close_positions("SOL") is None
        finally:
            await bot.graceful_shutdown("test")

    @pytest.mark.asyncio
    async def test_volatility_routed_to_symbol(self, client, clock):
        config = bot_config()
        grids = [config.grids[0].model_copy(update={"adaptive_spacing": True}), config.grids[1]]
        bot = GridTradingBot(config.model_copy(update={"grids": grids}), client, clock=clock)
        await bot.start()
        try:
            updated = await bot.update_volatility("BTC", Decimal("1.5"))
            assert updated["spacing_pct"] == Decimal("1.5")
            assert bot.strategies["BTC"].grid.spacing == Decimal("0.015")

            skipped = await bot.update_volatility("ETH", Decimal("1.5"))
            assert skipped["action"] == "skipped"
            assert await bot.update_volatility("SOL", Decimal("1.5")) is None
        finally:
            await bot.graceful_shutdown("test")


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_run_stops_after_max_ticks(self, bot, client):
        client.load_price_path("BTC", ["100.5", "101.2", "100.8"])

        async def advancing_source():
            for _ in range(3):
                client.advance("BTC")
                yield signal(bot.clock, strength="5")

        await bot.run(signals=advancing_source(), max_ticks=3)

        assert bot.ticks == 3
        assert bot.shutdown_requested
        assert all(s.status is GridStatus.STOPPED for s in bot.strategies.values())

    @pytest.mark.asyncio
    async def test_graceful_shutdown_can_flatten(self, bot, client):
        await bot.start()
        client.set_price("BTC", Decimal("101"))
        await bot.poll_once()

        await bot.graceful_shutdown("test", close_positions=True)

        btc = bot.strategies["BTC"]
        assert btc.status is GridStatus.STOPPED
        assert btc.materializer.open_count == 0
        refused = await btc.process(PriceTick(price=Decimal("101")))
        assert refused["action"] == "refused"

    @pytest.mark.asyncio
    async def test_status_snapshot(self, bot):
        await bot.start()
        try:
            status = bot.get_status()
            assert status["BTC"]["status"] == "running"
            assert status["ETH"]["center_price"] == Decimal("2000")
        finally:
            await bot.graceful_shutdown("test")
