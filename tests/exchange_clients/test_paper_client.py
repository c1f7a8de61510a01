"""
Tests for the paper exchange client.

Covers price replay, feed outages, order fills and failure injection.
"""

from decimal import Decimal

import pytest

from exchange_clients import BaseExchangeClient
from exchange_clients.paper import PaperExchangeClient


@pytest.fixture
def client():
    return PaperExchangeClient(config={"venue": "Lighter"}, prices={"BTC": "100"})


def test_is_an_execution_capability(client):
    assert isinstance(client, BaseExchangeClient)
    assert client.get_exchange_name() == "Lighter"
    assert PaperExchangeClient().get_exchange_name() == "paper"


@pytest.mark.asyncio
async def test_latest_price(client):
    assert await client.latest_price("BTC") == Decimal("100")
    assert await client.latest_price("ETH") is None


@pytest.mark.asyncio
async def test_price_path_replay(client):
    client.load_price_path("BTC", ["101", "102.5"])
    assert client.remaining_prices("BTC") == 2

    assert client.advance("BTC") == Decimal("101")
    assert await client.latest_price("BTC") == Decimal("101")
    assert client.advance("BTC") == Decimal("102.5")
    assert client.advance("BTC") is None
    # exhausted path keeps the last price
    assert await client.latest_price("BTC") == Decimal("102.5")
    assert client.remaining_prices("BTC") == 0


@pytest.mark.asyncio
async def test_unavailable_feed_returns_none_after_retries(client):
    client.set_unavailable("BTC")
    assert await client.latest_price("BTC") is None

    client.set_unavailable("BTC", False)
    assert await client.latest_price("BTC") == Decimal("100")


@pytest.mark.asyncio
async def test_market_order_fills_at_current_price(client):
    result = await client.place_order("BTC", "sell", Decimal("2"), "market", 10)

    assert result.success
    assert result.filled_price == Decimal("100")
    assert result.filled_size == Decimal("2")
    assert client.net_positions["BTC"] == Decimal("-2")
    assert client.orders[0]["leverage"] == 10


@pytest.mark.asyncio
async def test_order_rejections(client):
    client.fail_next_order(message="venue offline")
    failed = await client.place_order("BTC", "buy", Decimal("1"), "market", 5)
    assert not failed.success
    assert failed.error_message == "venue offline"
    assert failed.filled_price is None

    # only the next order fails
    assert (await client.place_order("BTC", "buy", Decimal("1"), "market", 5)).success

    no_price = await client.place_order("ETH", "buy", Decimal("1"), "market", 5)
    assert not no_price.success

    zero = await client.place_order("BTC", "buy", Decimal("0"), "market", 5)
    assert not zero.success


@pytest.mark.asyncio
async def test_protective_orders_and_close(client):
    await client.place_order("BTC", "buy", Decimal("3"), "market", 5)
    assert await client.set_stop_loss("BTC", Decimal("95"))
    assert await client.set_take_profit("BTC", Decimal("110"))

    client.set_price("BTC", Decimal("104"))
    result = await client.close_position("BTC")

    assert result.success
    assert result.side == "sell"
    assert result.size == Decimal("3")
    assert result.price == Decimal("104")
    assert "BTC" not in client.stop_losses
    assert "BTC" not in client.net_positions


@pytest.mark.asyncio
async def test_close_failure_injection(client):
    client.fail_next_order()
    result = await client.close_position("BTC")
    assert not result.success


@pytest.mark.asyncio
async def test_partial_fill_injection(client):
    client.partially_fill_next_order(Decimal("0.5"))
    partial = await client.place_order("BTC", "buy", Decimal("2"), "market", 5)

    assert partial.success
    assert partial.status == "PARTIALLY_FILLED"
    assert partial.size == Decimal("2")
    assert partial.filled_size == Decimal("1")
    assert partial.filled_price == Decimal("100")
    assert client.net_positions["BTC"] == Decimal("1")

    # only the next order is cut short
    full = await client.place_order("BTC", "buy", Decimal("2"), "market", 5)
    assert full.status == "FILLED"
    assert full.filled_size == Decimal("2")
