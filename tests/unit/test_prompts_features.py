"""Unit tests for prompt construction, feature preparation and trade ideas."""
import json
import pytest
from datetime import datetime
from decimal import Decimal

from signal_engine.ai.features import INDICATOR_FEATURES, prepare_features
from signal_engine.ai.ideas import build_trade_idea
from signal_engine.ai.prompts import build_prompt, summarize_positions
from signal_engine.core.models import PositionSide, TradeAction
from signal_engine.core.strategy_config import normalize_config

from conftest import make_decision, make_order_book, make_position, make_snapshot, make_strategy


# =============================================================================
# Prompt Tests
# =============================================================================

class TestBuildPrompt:
    """Test the reasoning prompt."""

    def test_contains_strategy_and_market(self):
        strategy = make_strategy(max_drawdown_percent=Decimal("15"), leverage_max=3)
        snapshot = make_snapshot()

        prompt = build_prompt(strategy, normalize_config(strategy), snapshot, [])

        assert "Risk profile: balanced (50/100)" in prompt
        assert "Max drawdown: 15%" in prompt
        assert "Max leverage: 3x" in prompt
        assert "Target assets: BTCUSDT" in prompt
        assert "No open positions" in prompt
        assert f"Current price: ${snapshot.current_price:.2f}" in prompt
        assert "Respond with JSON only:" in prompt

    def test_defaults_when_limits_unset(self):
        strategy = make_strategy()

        prompt = build_prompt(strategy, normalize_config(strategy), make_snapshot(), [])

        assert "Max drawdown: 20%" in prompt
        assert "Max leverage: 10x" in prompt

    def test_last_ten_candles_embedded(self):
        strategy = make_strategy()
        snapshot = make_snapshot()

        prompt = build_prompt(strategy, normalize_config(strategy), snapshot, [])
        candle_line = prompt.split("LAST 10 CANDLES (1m):\n", 1)[1].split("\n", 1)[0]

        candles = json.loads(candle_line)
        assert len(candles) == 10
        assert candles[-1]["c"] == snapshot.candles[-1].close

    def test_missing_indicator_rendered_as_na(self):
        strategy = make_strategy()
        snapshot = make_snapshot(count=30)

        prompt = build_prompt(strategy, normalize_config(strategy), snapshot, [])

        assert "SMA50: N/A" in prompt

    def test_custom_instructions_block(self):
        strategy = make_strategy(config={"custom_prompt": "  Only trade breakouts.  "})

        prompt = build_prompt(strategy, normalize_config(strategy), make_snapshot(), [])

        assert "--- CUSTOM TRADING INSTRUCTIONS ---\nOnly trade breakouts.\n--- END CUSTOM INSTRUCTIONS ---" in prompt

    def test_positions_summary(self):
        position = make_position(
            "ETHUSDT", side=PositionSide.SHORT, quantity=Decimal("2"),
            entry_price=Decimal("3000"), unrealized_pnl_usd=Decimal("-15"),
        )

        assert summarize_positions([position]) == "ETHUSDT: short 2 @ $3000 (P&L: $-15)"


# =============================================================================
# Feature Tests
# =============================================================================

class TestPrepareFeatures:
    """Test the prediction-service feature vector."""

    def test_indicator_and_flag_features(self):
        snapshot = make_snapshot()

        features = prepare_features(snapshot, [], now=datetime(2024, 1, 3, 12, 0))

        for name in INDICATOR_FEATURES:
            assert name in features
        assert features["price_above_sma20"] == 1
        assert features["current_price"] == snapshot.current_price
        assert features["llm_action_encoded"] == 0

    def test_order_book_features(self):
        snapshot = make_snapshot().model_copy(update={"order_book": make_order_book()})

        features = prepare_features(snapshot, [])

        assert features["mid_price"] == 50000.0
        assert features["spread_bps"] == pytest.approx(2.0, rel=1e-3)
        assert features["imbalance_ratio"] == pytest.approx(1.0)

    def test_without_order_book(self):
        features = prepare_features(make_snapshot(), [])

        assert features["spread_bps"] is None
        assert features["mid_price"] is None

    def test_portfolio_features(self):
        positions = [
            make_position("ETHUSDT", unrealized_pnl_usd=Decimal("10.5")),
            make_position("SOLUSDT", unrealized_pnl_usd=Decimal("-4")),
        ]

        features = prepare_features(make_snapshot(), positions)

        assert features["position_count"] == 2
        assert features["total_unrealized_pnl"] == pytest.approx(6.5)

    @pytest.mark.parametrize("now,day,weekend,market_hours", [
        (datetime(2024, 1, 7, 10, 0), 0, 1, 1),   # Sunday
        (datetime(2024, 1, 6, 20, 0), 6, 1, 0),   # Saturday
        (datetime(2024, 1, 3, 8, 59), 3, 0, 0),   # Wednesday
        (datetime(2024, 1, 3, 16, 0), 3, 0, 1),
    ])
    def test_time_features(self, now, day, weekend, market_hours):
        features = prepare_features(make_snapshot(), [], now=now)

        assert features["day_of_week"] == day
        assert features["is_weekend"] == weekend
        assert features["is_market_hours"] == market_hours
        assert features["hour_of_day"] == now.hour


# =============================================================================
# Trade Idea Tests
# =============================================================================

class TestBuildTradeIdea:
    """Test idea publication rules."""

    def test_long_idea_levels(self):
        strategy = make_strategy()
        snapshot = make_snapshot()
        decision = make_decision(confidence=0.82)

        idea = build_trade_idea(strategy, normalize_config(strategy), decision, snapshot, 0.70)

        entry = Decimal(str(snapshot.current_price))
        assert idea.action == TradeAction.LONG
        assert idea.confidence_pct == 82.0
        assert idea.entry_price == entry
        assert idea.stop_loss == entry * Decimal("0.975")
        assert idea.take_profit == entry * Decimal("1.05")
        assert idea.exchange == "binance"
        assert idea.trade_size_usd == Decimal("10")
        assert idea.expires_at > datetime.utcnow()

    def test_short_idea_levels_mirror(self):
        strategy = make_strategy()
        snapshot = make_snapshot()
        decision = make_decision(TradeAction.SHORT, confidence=0.9)

        idea = build_trade_idea(strategy, normalize_config(strategy), decision, snapshot, 0.70)

        assert idea.stop_loss > idea.entry_price > idea.take_profit

    def test_low_confidence_skipped(self):
        strategy = make_strategy()

        idea = build_trade_idea(
            strategy, normalize_config(strategy), make_decision(confidence=0.69), make_snapshot(), 0.70
        )

        assert idea is None

    @pytest.mark.parametrize("action", [TradeAction.HOLD, TradeAction.CLOSE])
    def test_non_directional_skipped(self, action):
        strategy = make_strategy()
        decision = make_decision(action, size="0", confidence=0.95)

        assert build_trade_idea(strategy, normalize_config(strategy), decision, make_snapshot(), 0.70) is None
