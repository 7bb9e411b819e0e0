"""Unit tests for per-strategy config normalization."""
import pytest
from decimal import Decimal

from signal_engine.core.models import RiskProfile, UsageMode
from signal_engine.core.strategy_config import normalize_config, normalize_symbol

from conftest import make_strategy


class TestNormalizeSymbol:
    @pytest.mark.parametrize("raw,expected", [
        ("BTC/USDT", "BTCUSDT"),
        ("btcusdt", "BTCUSDT"),
        ("ETH/USDT:PERP", "ETHUSDT"),
        (" sol-perp ", "SOL"),
    ])
    def test_variants(self, raw, expected):
        assert normalize_symbol(raw) == expected


class TestNormalizeConfig:
    """Test override precedence and defaults."""

    def test_defaults(self):
        config = normalize_config(make_strategy(exchange=None))

        assert config.target_assets == ("BTCUSDT",)
        assert config.exchange == "binance"
        assert config.usage_mode == UsageMode.HYBRID
        assert config.confidence_threshold == 0.70
        assert config.llm_percent == 20.0
        assert config.kelly_fraction == 0.25
        assert config.twap_slices == 5
        assert config.daily_trade_limit is None
        assert config.drawdown_limit == 0.20

    @pytest.mark.parametrize("profile,threshold", [
        (RiskProfile.CONSERVATIVE, 0.80),
        (RiskProfile.BALANCED, 0.70),
        (RiskProfile.AGGRESSIVE, 0.60),
    ])
    def test_threshold_follows_risk_profile(self, profile, threshold):
        assert normalize_config(make_strategy(risk_profile=profile)).confidence_threshold == threshold

    def test_override_beats_column_beats_default(self):
        strategy = make_strategy(
            ml_confidence_threshold=0.65,
            max_cost_bps=40,
            use_volatility_sizing=True,
            config={"confidence_threshold": 0.9, "max_cost_bps": 25},
        )

        config = normalize_config(strategy)

        assert config.confidence_threshold == 0.9
        assert config.max_cost_bps == 25.0
        assert config.use_volatility_sizing is True

    def test_explicit_false_override_is_honoured(self):
        strategy = make_strategy(
            include_slippage_estimate=True,
            config={"include_slippage_estimate": False},
        )

        assert normalize_config(strategy).include_slippage_estimate is False

    @pytest.mark.parametrize("raw,expected", [
        ("false", False),
        ("0", False),
        ("off", False),
        ("true", True),
        ("yes", True),
        (1, True),
    ])
    def test_string_flags_are_parsed(self, raw, expected):
        strategy = make_strategy(config={"use_smart_routing": raw, "include_slippage_estimate": raw})

        config = normalize_config(strategy)

        assert config.use_smart_routing is expected
        assert config.include_slippage_estimate is expected

    def test_unparseable_flag_uses_default(self):
        config = normalize_config(make_strategy(config={"include_slippage_estimate": "sometimes"}))

        assert config.include_slippage_estimate is True

    def test_usage_mode_resolution(self):
        from_override = make_strategy(llm_usage_mode="ml_only", config={"hybrid_mode": {"type": "smart", "llm_percent": 35}})
        from_column = make_strategy(llm_usage_mode="llm_only")

        assert normalize_config(from_override).usage_mode == UsageMode.SMART
        assert normalize_config(from_override).llm_percent == 35.0
        assert normalize_config(from_column).usage_mode == UsageMode.LLM_ONLY

    def test_unknown_usage_mode_falls_back_to_hybrid(self):
        strategy = make_strategy(llm_usage_mode="quantum")

        assert normalize_config(strategy).usage_mode == UsageMode.HYBRID

    def test_non_positive_daily_limit_means_unlimited(self):
        assert normalize_config(make_strategy(config={"daily_trade_limit": 0})).daily_trade_limit is None
        assert normalize_config(make_strategy(config={"daily_trade_limit": 3})).daily_trade_limit == 3

    def test_filtered_assets(self):
        strategy = make_strategy(
            target_assets=["BTC/USDT", "ETHUSDT", "SOLUSDT"],
            config={"blacklist": ["SOLUSDT"], "whitelist": ["BTCUSDT", "SOLUSDT"]},
        )

        assert normalize_config(strategy).filtered_assets == ["BTCUSDT"]

    def test_override_targets_replace_column(self):
        strategy = make_strategy(target_assets=["BTCUSDT"], config={"target_assets": ["eth/usdt"]})

        assert normalize_config(strategy).target_assets == ("ETHUSDT",)

    def test_twap_threshold_is_decimal(self):
        strategy = make_strategy(twap_threshold_usd=Decimal("2500"), twap_slices=0)
        config = normalize_config(strategy)

        assert config.twap_threshold_usd == Decimal("2500")
        assert config.twap_slices == 1
