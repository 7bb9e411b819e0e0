"""Unit tests for the Risk Manager."""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

from signal_engine.core.config import RiskConfig
from signal_engine.core.models import (
    DecisionRecord, GateVerdict, StrategyStatus, TradeAction, to_usd
)
from signal_engine.core.strategy_config import normalize_config
from signal_engine.risk.risk_manager import (
    FailureMode, GateContext, RiskCheckResult, RiskManager, RiskRule
)

from conftest import (
    make_decision, make_order_book, make_position, make_snapshot, make_strategy, make_trade
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def risk_manager(database):
    """Create a fresh risk manager for each test."""
    return RiskManager(database, RiskConfig())


@pytest_asyncio.fixture
async def saved_strategy(database):
    strategy = make_strategy()
    await database.save_strategy(strategy)
    return strategy


def context(strategy, snapshot=None, price_history=None, **config_overrides):
    if config_overrides:
        strategy = strategy.model_copy(update={"config": {**strategy.config, **config_overrides}})
    return GateContext(
        strategy=strategy,
        config=normalize_config(strategy),
        snapshot=snapshot or make_snapshot(),
        price_history=price_history or {},
    )


def gates(decision):
    return [a.gate for a in decision.annotations]


# =============================================================================
# Rule Registration
# =============================================================================

class TestRiskManagerInitialization:
    """Test Risk Manager initialization."""

    def test_default_portfolio_rules_in_priority_order(self, risk_manager):
        names = [r.name for r in risk_manager.portfolio_rules]

        assert names == ["max_positions", "symbol_concentration", "correlated_group", "daily_trade_limit"]

    def test_builtin_rules_fail_open(self, risk_manager):
        rules = risk_manager.portfolio_rules + [risk_manager.drawdown_breaker, risk_manager.generic_check]

        assert all(r.failure_mode == FailureMode.OPEN_ON_ERROR for r in rules)

    def test_register_rule_respects_priority(self, risk_manager):
        async def check(decision, ctx):
            return RiskCheckResult.approved()

        risk_manager.register_rule(RiskRule("first", check, priority=1))

        assert risk_manager.portfolio_rules[0].name == "first"


# =============================================================================
# Sizing Cascade
# =============================================================================

class TestSizingCascade:
    """Test the ordered sizing transforms."""

    @pytest.mark.asyncio
    async def test_hold_passes_untouched(self, risk_manager, strategy):
        hold = make_decision(action=TradeAction.HOLD)

        result = await risk_manager.apply_sizing_cascade(hold, context(strategy))

        assert result == hold

    @pytest.mark.asyncio
    async def test_default_cascade_without_history(self, risk_manager, strategy):
        decision = make_decision(size="1000")

        result = await risk_manager.apply_sizing_cascade(decision, context(strategy))

        assert result.size_usd == Decimal("1000.00")
        assert gates(result) == ["risk_profile", "kelly"]
        assert result.annotations[1].verdict == GateVerdict.SKIP

    @pytest.mark.asyncio
    async def test_aggressive_profile_scales_up(self, risk_manager, strategy):
        result = await risk_manager.apply_sizing_cascade(
            make_decision(size="1000"), context(strategy, risk_profile_value=100)
        )

        assert result.size_usd == Decimal("3000.00")

    @pytest.mark.asyncio
    async def test_kelly_resizes_with_history(self, risk_manager, database, strategy):
        for _ in range(24):
            await database.save_trade(make_trade("200"))
        for _ in range(16):
            await database.save_trade(make_trade("-100"))

        result = await risk_manager.apply_sizing_cascade(make_decision(size="1000"), context(strategy))

        kelly = result.annotations[1]
        assert kelly.verdict == GateVerdict.RESIZE
        assert kelly.metrics["trade_count"] == 40
        # 0.4 raw * 0.25 fraction = 10% -> 10x the neutral 1%
        assert result.size_usd == Decimal("10000.00")

    @pytest.mark.asyncio
    async def test_volatility_sizing_uses_account_balance(self, risk_manager, strategy):
        snapshot = make_snapshot()
        atr = snapshot.indicators["atr"]
        price = snapshot.current_price

        result = await risk_manager.apply_sizing_cascade(
            make_decision(size="1000"),
            context(strategy, snapshot=snapshot, use_volatility_sizing=True, risk_per_trade=0.01),
        )

        expected = to_usd(Decimal("10000") * Decimal("0.01") / Decimal(str(atr * 2.0 / price)))
        assert result.size_usd == expected
        assert "volatility_sizing" in gates(result)

    @pytest.mark.asyncio
    async def test_cost_screen_forces_hold(self, risk_manager, strategy):
        result = await risk_manager.apply_sizing_cascade(
            make_decision(size="1000", rationale="Breakout"),
            context(strategy, skip_high_cost_trades=True, include_slippage_estimate=False,
                    max_cost_bps=10, exchange="coinbase"),
        )

        assert result.action == TradeAction.HOLD
        assert result.size_usd == Decimal("0")
        assert result.rationale == "Breakout [COSTS: 66.0bps > 10bps limit]"

    @pytest.mark.asyncio
    async def test_cost_screen_allows_cheap_trade(self, risk_manager, strategy):
        snapshot = make_snapshot().model_copy(update={"order_book": make_order_book(qty=100)})

        result = await risk_manager.apply_sizing_cascade(
            make_decision(size="1000"),
            context(strategy, snapshot=snapshot, skip_high_cost_trades=True),
        )

        assert result.action == TradeAction.LONG
        assert result.annotations[-1].gate == "transaction_cost"
        assert result.annotations[-1].verdict == GateVerdict.ALLOW

    @pytest.mark.asyncio
    async def test_correlation_screen_group_fallback(self, risk_manager, database, strategy):
        await database.save_position(make_position("ETHUSDT", "800"))
        await database.save_position(make_position("SOLUSDT", "200"))

        result = await risk_manager.apply_sizing_cascade(
            make_decision(size="100"),
            context(strategy, enforce_correlation_limits=True, max_correlated_exposure=0.5),
        )

        assert result.action == TradeAction.HOLD
        assert "[CORRELATION: Correlation risk: 80.0% already in correlated crypto (BTC/ETH/BNB)]" in result.rationale

    @pytest.mark.asyncio
    async def test_correlation_screen_with_price_history(self, risk_manager, database, strategy):
        await database.save_position(make_position("SOLUSDT", "1000"))
        snapshot = make_snapshot(wiggle=30)
        history = {"BTCUSDT": snapshot.closes, "SOLUSDT": [p / 100 for p in snapshot.closes]}

        result = await risk_manager.apply_sizing_cascade(
            make_decision(size="100"),
            context(strategy, snapshot=snapshot, price_history=history,
                    enforce_correlation_limits=True),
        )

        assert result.action == TradeAction.HOLD
        assert "100.0% of portfolio in correlated assets" in result.rationale

    @pytest.mark.asyncio
    async def test_sizing_step_error_fails_open(self, risk_manager, strategy):
        risk_manager.database.get_closed_trades = AsyncMock(side_effect=RuntimeError("db down"))

        result = await risk_manager.apply_sizing_cascade(make_decision(size="1000"), context(strategy))

        assert result.action == TradeAction.LONG
        kelly = [a for a in result.annotations if a.gate == "kelly"][0]
        assert kelly.verdict == GateVerdict.WARN
        assert "db down" in kelly.reason


# =============================================================================
# Portfolio Gates
# =============================================================================

class TestPortfolioGates:
    """Test portfolio limits."""

    @pytest.mark.asyncio
    async def test_all_pass(self, risk_manager, saved_strategy):
        result = await risk_manager.run_portfolio_gates(make_decision(size="500"), context(saved_strategy))

        assert result.action == TradeAction.LONG
        assert all(a.verdict == GateVerdict.ALLOW for a in result.annotations)
        assert len(result.annotations) == 4

    @pytest.mark.asyncio
    async def test_max_positions(self, risk_manager, database, saved_strategy):
        for i in range(10):
            await database.save_position(make_position(f"COIN{i}USDT", "10"))

        result = await risk_manager.run_portfolio_gates(make_decision(size="10"), context(saved_strategy))

        assert result.action == TradeAction.HOLD
        assert "Portfolio limit: Max 10 open positions (currently 10)" in result.rationale

    @pytest.mark.asyncio
    async def test_every_violation_recorded(self, risk_manager, database, saved_strategy):
        for i in range(10):
            await database.save_position(make_position(f"COIN{i}USDT", "10"))

        result = await risk_manager.run_portfolio_gates(make_decision(size="6000"), context(saved_strategy))

        denied = [a.gate for a in result.annotations if a.verdict == GateVerdict.DENY]
        assert denied == ["max_positions", "symbol_concentration", "correlated_group"]
        assert "Symbol concentration" in result.rationale
        assert "Correlated exposure" in result.rationale

    @pytest.mark.asyncio
    async def test_symbol_concentration_includes_existing(self, risk_manager, database, saved_strategy):
        await database.save_position(make_position("BTCUSDT", "1500"))

        result = await risk_manager.run_portfolio_gates(make_decision(size="600"), context(saved_strategy))

        assert result.action == TradeAction.HOLD
        assert "Max 20% in BTCUSDT (would be 21.0%)" in result.rationale

    @pytest.mark.asyncio
    async def test_correlated_group_only_for_group_symbols(self, risk_manager, database, saved_strategy):
        await database.save_position(make_position("ETHUSDT", "1900"))
        await database.save_position(make_position("BNBUSDT", "1900"))
        await database.save_position(make_position("BTCUSDT", "1000"))

        sol = await risk_manager.run_portfolio_gates(
            make_decision(size="500", symbol="SOLUSDT"), context(saved_strategy)
        )
        btc = await risk_manager.run_portfolio_gates(
            make_decision(size="500"), context(saved_strategy)
        )

        assert sol.action == TradeAction.LONG
        assert btc.action == TradeAction.HOLD
        assert "Correlated exposure: Max 50% in BTC/ETH/BNB (would be 53.0%)" in btc.rationale

    @pytest.mark.asyncio
    async def test_daily_trade_limit(self, risk_manager, database, saved_strategy):
        for _ in range(2):
            await database.insert_decision(DecisionRecord(
                user_id=saved_strategy.user_id,
                strategy_id=saved_strategy.id,
                raw_decision=make_decision(),
                final_decision=make_decision(),
                signal_sent=True,
            ))
        await database.insert_decision(DecisionRecord(
            user_id=saved_strategy.user_id,
            strategy_id=saved_strategy.id,
            decided_at=datetime.utcnow() - timedelta(days=2),
            raw_decision=make_decision(),
            final_decision=make_decision(),
            signal_sent=True,
        ))

        limited = await risk_manager.run_portfolio_gates(
            make_decision(size="100"), context(saved_strategy, daily_trade_limit=2)
        )
        roomy = await risk_manager.run_portfolio_gates(
            make_decision(size="100"), context(saved_strategy, daily_trade_limit=3)
        )

        assert limited.action == TradeAction.HOLD
        assert "[LIMIT: Daily trade limit reached (2/2)]" in limited.rationale
        assert roomy.action == TradeAction.LONG

    @pytest.mark.asyncio
    async def test_closed_on_error_rule_denies(self, risk_manager, saved_strategy):
        async def broken(decision, ctx):
            raise RuntimeError("exposure service down")

        risk_manager.register_rule(
            RiskRule("exposure_feed", broken, failure_mode=FailureMode.CLOSED_ON_ERROR, priority=50)
        )

        result = await risk_manager.run_portfolio_gates(make_decision(size="100"), context(saved_strategy))

        assert result.action == TradeAction.HOLD
        assert "exposure_feed check failed: exposure service down" in result.rationale

    @pytest.mark.asyncio
    async def test_open_on_error_rule_warns(self, risk_manager, saved_strategy):
        async def broken(decision, ctx):
            raise RuntimeError("flaky")

        risk_manager.register_rule(RiskRule("flaky_rule", broken, priority=50))

        result = await risk_manager.run_portfolio_gates(make_decision(size="100"), context(saved_strategy))

        assert result.action == TradeAction.LONG
        assert result.annotations[-1].verdict == GateVerdict.WARN


# =============================================================================
# Drawdown Circuit Breaker
# =============================================================================

class TestDrawdownBreaker:
    """Test the drawdown circuit breaker."""

    @pytest.mark.asyncio
    async def test_no_history_passes(self, risk_manager, saved_strategy):
        result = await risk_manager.check_drawdown_breaker(make_decision(), context(saved_strategy))

        assert result.passed
        assert not result.should_pause

    @pytest.mark.asyncio
    async def test_trip_pauses_strategy(self, risk_manager, database, saved_strategy):
        await database.save_trade(make_trade("1000", minutes_ago=30))
        await database.save_trade(make_trade("-300", minutes_ago=20))

        result = await risk_manager.check_drawdown_breaker(make_decision(), context(saved_strategy))

        assert not result.passed
        assert result.should_pause
        assert result.reason == "Drawdown limit exceeded: 30.0% (limit: 20.0%)"
        stored = await database.get_strategy(saved_strategy.id)
        assert stored.status == StrategyStatus.PAUSED

    @pytest.mark.asyncio
    async def test_trip_holds_when_pause_write_fails(self, risk_manager, database, saved_strategy):
        await database.save_trade(make_trade("1000", minutes_ago=30))
        await database.save_trade(make_trade("-300", minutes_ago=20))
        database.update_strategy_status = AsyncMock(side_effect=RuntimeError("store down"))
        decision = make_decision()

        result = await risk_manager.check_drawdown_breaker(decision, context(saved_strategy))
        recorded = risk_manager.record_result(decision, risk_manager.drawdown_breaker, result)

        assert not result.passed
        assert result.should_pause
        assert recorded.is_hold
        assert recorded.annotations[-1].verdict == GateVerdict.PAUSE
        database.update_strategy_status.assert_awaited_once_with(saved_strategy.id, StrategyStatus.PAUSED)

    @pytest.mark.asyncio
    async def test_breaker_applies_to_hold(self, risk_manager, database, saved_strategy):
        await database.save_trade(make_trade("1000", minutes_ago=30))
        await database.save_trade(make_trade("-500", minutes_ago=20))
        hold = make_decision(action=TradeAction.HOLD)

        result = await risk_manager.check_drawdown_breaker(hold, context(saved_strategy))
        recorded = risk_manager.record_result(hold, risk_manager.drawdown_breaker, result)

        assert result.should_pause
        assert recorded.annotations[-1].verdict == GateVerdict.PAUSE
        assert "[CIRCUIT_BREAKER: Drawdown limit exceeded" in recorded.rationale

    @pytest.mark.asyncio
    async def test_near_limit_warns(self, risk_manager, database, saved_strategy):
        await database.save_trade(make_trade("1000", minutes_ago=30))
        await database.save_trade(make_trade("-160", minutes_ago=20))

        result = await risk_manager.check_drawdown_breaker(make_decision(), context(saved_strategy))

        assert result.passed
        assert result.risk_level == "warning"


# =============================================================================
# Generic Risk Check
# =============================================================================

class TestGenericRiskCheck:
    """Test the generic risk check."""

    @pytest.mark.asyncio
    async def test_paper_trading_skipped(self, risk_manager, database):
        strategy = make_strategy(is_paper_trading=True)
        for _ in range(5):
            await database.save_trade(make_trade("-600", minutes_ago=10))

        result = await risk_manager.run_generic_checks(make_decision(), context(strategy))

        assert result.passed

    @pytest.mark.asyncio
    async def test_large_losses(self, risk_manager, database, strategy):
        for minutes in (30, 20, 10):
            await database.save_trade(make_trade("-600", minutes_ago=minutes))

        result = await risk_manager.run_generic_checks(make_decision(), context(strategy))

        assert not result.passed
        assert result.reason.startswith("3+ large losses in 24h")

    @pytest.mark.asyncio
    async def test_consecutive_losses(self, risk_manager, database, strategy):
        for minutes in (50, 40, 30, 20, 10):
            await database.save_trade(make_trade("-10", minutes_ago=minutes))

        result = await risk_manager.run_generic_checks(make_decision(), context(strategy))

        assert not result.passed
        assert result.reason == "5 consecutive losing trades"

    @pytest.mark.asyncio
    async def test_daily_loss(self, risk_manager, database, strategy):
        await database.save_trade(make_trade("-450", minutes_ago=30))
        await database.save_trade(make_trade("-450", minutes_ago=20))
        await database.save_trade(make_trade("50", minutes_ago=15))
        await database.save_trade(make_trade("-200", minutes_ago=10))

        result = await risk_manager.run_generic_checks(make_decision(), context(strategy))

        assert not result.passed
        assert result.reason == "Daily loss exceeded: $-1100.00"

    @pytest.mark.asyncio
    async def test_old_losses_ignored(self, risk_manager, database, strategy):
        for _ in range(3):
            await database.save_trade(make_trade("-600", minutes_ago=60 * 30))
        await database.save_trade(make_trade("5000", minutes_ago=60 * 40))

        result = await risk_manager.run_generic_checks(make_decision(), context(strategy))

        assert result.passed

    @pytest.mark.asyncio
    async def test_leverage_limit(self, risk_manager, strategy):
        decision = make_decision(leverage=Decimal("20"))

        result = await risk_manager.run_generic_checks(decision, context(strategy))

        assert not result.passed
        assert result.reason == "Leverage 20x exceeds max 10x"

    @pytest.mark.asyncio
    async def test_account_drawdown(self, risk_manager, database):
        strategy = make_strategy(max_drawdown_percent=Decimal("10"))
        await database.save_trade(make_trade("-1500", minutes_ago=60 * 30))

        result = await risk_manager.run_generic_checks(make_decision(), context(strategy))

        assert not result.passed
        assert result.reason == "Drawdown limit exceeded: 15.0% >= 10.0%"

    @pytest.mark.asyncio
    async def test_other_strategy_losses_do_not_count_toward_drawdown(self, risk_manager, database, strategy):
        await database.save_position(make_position(
            "ETHUSDT", "3000", strategy_id="other-strategy", unrealized_pnl_usd=Decimal("-2500")
        ))

        result = await risk_manager.run_generic_checks(make_decision(), context(strategy))

        assert result.passed

    @pytest.mark.asyncio
    async def test_own_unrealized_loss_counts_toward_drawdown(self, risk_manager, database, strategy):
        await database.save_position(make_position(
            "ETHUSDT", "3000", strategy_id=strategy.id, unrealized_pnl_usd=Decimal("-2500")
        ))

        result = await risk_manager.run_generic_checks(make_decision(), context(strategy))

        assert not result.passed
        assert result.reason == "Drawdown limit exceeded: 25.0% >= 20.0%"

    @pytest.mark.asyncio
    async def test_large_exposure_only_warns(self, risk_manager, strategy):
        result = await risk_manager.run_generic_checks(make_decision(size="150000"), context(strategy))

        assert result.passed
        assert result.risk_level == "warning"

    @pytest.mark.asyncio
    async def test_check_error_fails_open(self, risk_manager, strategy):
        risk_manager.database.get_open_positions = AsyncMock(side_effect=RuntimeError("timeout"))

        result = await risk_manager.run_generic_checks(make_decision(), context(strategy))

        assert result.passed
        assert result.risk_level == "warning"
