"""Pytest configuration for virtual grid tests."""

import sys
from decimal import Decimal
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

pytest_plugins = ["pytest_asyncio"]


class FakeClock:
    """Manually advanced wall clock (seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def paper_client():
    from exchange_clients.paper import PaperExchangeClient

    return PaperExchangeClient(config={"venue": "hyperliquid"}, prices={"BTC": Decimal("100")})


def make_grid_config(**overrides):
    """GridConfig with the 100 / 1% reference grid: $1000 total, 50% reserve, 4 positions, 10x."""
    from strategies.implementations.virtual_grid.config import GridConfig

    params = {
        "symbol": "BTC",
        "grid_spacing_pct": Decimal("1"),
        "total_investment_usd": Decimal("1000"),
        "leverage": 10,
        "max_positions": 4,
        "center_price": Decimal("100"),
        "watch_depth": 10,
    }
    params.update(overrides)
    return GridConfig(**params)


@pytest.fixture
def grid_config():
    return make_grid_config()


@pytest.fixture
def make_config():
    return make_grid_config
