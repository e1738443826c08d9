"""
Shared fixtures for arena_trader tests.
"""
import random
from datetime import datetime

import pytest

from arena_trader.config import TradingConfig
from arena_trader.brokers.simulation import ExecutionSimulator
from arena_trader.schemas import Agent
from arena_trader.tracking import ApiCallTracker

pytest_plugins = ('pytest_asyncio',)

# Wednesday 10:00 America/New_York
MARKET_OPEN_NOW = datetime(2024, 1, 10, 15, 0, 0)
# Wednesday 03:00 America/New_York
MARKET_CLOSED_NOW = datetime(2024, 1, 10, 8, 0, 0)


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def no_sleep():
    return _no_sleep


@pytest.fixture
def config(tmp_path):
    return TradingConfig(log_dir=str(tmp_path / "logs"), poll_interval_sec=0, poll_max_attempts=3)


@pytest.fixture
def tracker():
    return ApiCallTracker()


@pytest.fixture
def open_clock():
    return lambda: MARKET_OPEN_NOW


@pytest.fixture
def closed_clock():
    return lambda: MARKET_CLOSED_NOW


@pytest.fixture
def simulator(config, open_clock):
    return ExecutionSimulator(config, rng=random.Random(42), sleep=_no_sleep, clock=open_clock)


@pytest.fixture
def agent():
    return Agent(
        id="agent-1",
        name="GPT-4o Mini",
        model="gpt-4o-mini",
        cash_balance=10000.0,
        account_value=10000.0,
    )
