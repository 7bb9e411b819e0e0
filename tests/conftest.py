"""Pytest fixtures and utilities for the signal engine test suite."""
import math
import time
import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from signal_engine.core.config import RiskConfig, WorkerConfig
from signal_engine.core.models import (
    Candle, Decision, MarketSnapshot, ModelSource, OpenPosition, OrderBookSnapshot,
    PositionSide, RiskProfile, Strategy, StrategyStatus, TradeAction, TradeRecord
)
from signal_engine.market.indicators import calculate_indicators
from signal_engine.storage.database import Database


# =============================================================================
# Factories
# =============================================================================

def make_candles(
    count: int = 100,
    start_price: float = 50000.0,
    step: float = 10.0,
    end_time: Optional[float] = None,
    wiggle: float = 0.0,
) -> List[Candle]:
    """Fresh one-minute candles ending now, trending by ``step`` per bar."""
    end_time = time.time() if end_time is None else end_time
    first_ms = int((end_time - (count - 1) * 60) * 1000)
    candles = []
    for i in range(count):
        close = start_price + i * step + wiggle * math.sin(i)
        candles.append(Candle(
            time=first_ms + i * 60_000,
            open=close - step / 2,
            high=close + 5,
            low=close - 5 - abs(step),
            close=close,
            volume=10.0 + (i % 5),
        ))
    return candles


def make_snapshot(symbol: str = "BTCUSDT", **kwargs) -> MarketSnapshot:
    candles = make_candles(**kwargs)
    return MarketSnapshot(symbol=symbol, candles=candles, indicators=calculate_indicators(candles))


def make_strategy(**overrides) -> Strategy:
    values = dict(
        id="strategy-1",
        user_id="user-1",
        name="Test Strategy",
        status=StrategyStatus.RUNNING,
        risk_profile=RiskProfile.BALANCED,
        target_assets=["BTCUSDT"],
        exchange="binance",
    )
    values.update(overrides)
    return Strategy(**values)


def make_decision(
    action: TradeAction = TradeAction.LONG,
    size: str = "1000",
    symbol: str = "BTCUSDT",
    confidence: float = 0.8,
    **kwargs,
) -> Decision:
    return Decision(
        action=action,
        symbol=symbol,
        size_usd=Decimal(size),
        confidence=confidence,
        rationale=kwargs.pop("rationale", "Test decision"),
        source=kwargs.pop("source", ModelSource.LLM),
        **kwargs,
    )


def make_trade(pnl: str, minutes_ago: int = 60, strategy_id: str = "strategy-1", **kwargs) -> TradeRecord:
    exit_time = datetime.utcnow() - timedelta(minutes=minutes_ago)
    return TradeRecord(
        user_id=kwargs.pop("user_id", "user-1"),
        strategy_id=strategy_id,
        symbol=kwargs.pop("symbol", "BTCUSDT"),
        size_usd=Decimal("100"),
        pnl_usd=Decimal(pnl),
        entry_time=exit_time - timedelta(minutes=5),
        exit_time=exit_time,
        **kwargs,
    )


def make_position(symbol: str = "ETHUSDT", size: str = "1000", **kwargs) -> OpenPosition:
    return OpenPosition(
        user_id=kwargs.pop("user_id", "user-1"),
        symbol=symbol,
        side=kwargs.pop("side", PositionSide.LONG),
        quantity=kwargs.pop("quantity", Decimal("1")),
        entry_price=kwargs.pop("entry_price", Decimal(size)),
        size_usd=Decimal(size),
        **kwargs,
    )


def make_order_book(symbol: str = "BTCUSDT", mid: float = 50000.0, qty: float = 1.0) -> OrderBookSnapshot:
    bids = [[mid - 5 - i * 10, qty] for i in range(10)]
    asks = [[mid + 5 + i * 10, qty] for i in range(10)]
    return OrderBookSnapshot.from_levels(symbol, bids, asks, depth=10)


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def risk_settings():
    """Risk limits with the documented defaults."""
    return RiskConfig()


@pytest.fixture
def worker_settings():
    """Worker settings without pacing delays."""
    return WorkerConfig(strategy_pause_seconds=0, cycle_interval_seconds=0.05)


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def database():
    """Fresh in-memory database per test."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.initialize()
    yield db
    await db.close()


# =============================================================================
# Model Fixtures
# =============================================================================

@pytest.fixture
def strategy():
    return make_strategy()


@pytest.fixture
def snapshot():
    return make_snapshot()


@pytest.fixture
def long_decision():
    return make_decision()
