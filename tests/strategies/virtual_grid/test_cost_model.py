from decimal import Decimal

import pytest

from strategies.components.cost_model import CostModel, SlippageSettings, SpacingStatus


@pytest.fixture
def model():
    return CostModel(venue="hyperliquid")


def test_min_profitable_spacing_matches_round_trip_costs(model):
    # 2 * (0.05% taker + (0.01% + 1 * 0.001%) slippage)
    assert model.min_profitable_spacing(Decimal("1000")) == Decimal("0.122")


def test_min_profitable_spacing_is_non_decreasing_in_order_value(model):
    values = [Decimal(v) for v in ("0", "10", "100", "1000", "5000", "50000", "1000000", "10000000")]
    spacings = [model.min_profitable_spacing(v) for v in values]
    assert spacings == sorted(spacings)


@pytest.mark.parametrize(
    "spacing, expected",
    [
        (Decimal("0.1"), SpacingStatus.UNPROFITABLE),
        (Decimal("0.15"), SpacingStatus.MARGINAL),
        (Decimal("1"), SpacingStatus.SAFE),
    ],
)
def test_classify_spacing(model, spacing, expected):
    assert model.classify_spacing(spacing, Decimal("1000"), Decimal("0.1")) is expected


def test_spacing_below_break_even_is_always_unprofitable(model):
    for value in (Decimal("50"), Decimal("1250"), Decimal("250000")):
        minimum = model.min_profitable_spacing(value)
        below = minimum - Decimal("0.0001")
        assert model.classify_spacing(below, value) is SpacingStatus.UNPROFITABLE


def test_quote_market_long_pays_fee_and_slippage(model):
    quote = model.quote(Decimal("1000"), "long", True, Decimal("100"))

    assert quote.trading_fee == Decimal("0.5")
    assert quote.price_impact_pct == Decimal("0.011")
    assert quote.slippage_cost == Decimal("0.11")
    assert quote.total_cost == Decimal("0.61")
    assert quote.effective_price > Decimal("100")
    assert quote.funding_cost == Decimal("0")


def test_quote_limit_order_uses_maker_fee_without_slippage(model):
    quote = model.quote(Decimal("1000"), "short", False, Decimal("100"))

    assert quote.trading_fee == Decimal("0.2")
    assert quote.slippage_cost == Decimal("0")
    assert quote.effective_price == Decimal("100")


def test_quote_short_effective_price_is_below_reference(model):
    quote = model.quote(Decimal("1000"), "short", True, Decimal("100"))
    assert quote.effective_price < Decimal("100")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"order_value_usd": Decimal("-1"), "current_price": Decimal("100")},
        {"order_value_usd": Decimal("10"), "current_price": Decimal("0")},
        {"order_value_usd": Decimal("10"), "current_price": Decimal("100"), "volatility_factor": Decimal("-1")},
    ],
)
def test_quote_rejects_invalid_inputs(model, kwargs):
    with pytest.raises(ValueError):
        model.quote(side="long", is_market_order=True, **kwargs)


def test_slippage_is_capped():
    model = CostModel(venue="hyperliquid", slippage=SlippageSettings(max_pct=Decimal("0.05")))
    assert model.slippage_pct(Decimal("10000000"), Decimal("3")) == Decimal("0.05")


def test_unknown_venue_falls_back_to_default_schedule():
    model = CostModel(venue="somewhere")
    assert model.fee_rate_pct(True) == Decimal("0.1")


def test_fee_override_applies_to_venue():
    model = CostModel(
        venue="hyperliquid",
        fee_schedules={"hyperliquid": {"maker": Decimal("0"), "taker": Decimal("0.01")}},
    )
    assert model.trading_fee(Decimal("1000")) == Decimal("0.1")


def test_funding_accrual_sign_and_whole_periods(model):
    value = Decimal("1000")
    rate = Decimal("0.01")

    assert model.funding_accrual(value, "long", rate, Decimal("0.9")) == Decimal("0")
    assert model.funding_accrual(value, "long", rate, Decimal("1")) == Decimal("-0.1")
    assert model.funding_accrual(value, "short", rate, Decimal("2.5")) == Decimal("0.2")
    assert model.funding_accrual(value, "long", -rate, Decimal("1")) == Decimal("0.1")


def test_funding_periods_floor(model):
    assert model.funding_periods(Decimal("7.9")) == 0
    assert model.funding_periods(Decimal("17")) == 2


def test_record_funding_accumulates(model):
    model.record_funding("BTC", Decimal("-0.1"), 1.0)
    model.record_funding("BTC", Decimal("0.3"), 2.0)
    assert model.total_funding("BTC") == Decimal("0.2")
    assert model.total_funding("ETH") == Decimal("0")
