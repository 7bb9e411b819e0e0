"""Risk management for AI-generated decisions.

Every non-HOLD decision passes through four layers, in order:

1. Sizing cascade: risk-profile multiplier, fractional Kelly, optional
   volatility sizing, optional transaction-cost screen and optional
   correlation screen. Each step returns a new Decision.
2. Portfolio gates: open-position count, symbol concentration, correlated
   group exposure and the daily trade limit. All gates run and every
   violation is recorded before the decision is forced to HOLD.
3. Drawdown circuit breaker: evaluated for every decision, HOLD included.
   A trip pauses the strategy.
4. Generic risk check: independent drawdown, leverage and 24h loss checks.

Each rule declares a FailureMode. If a rule raises, the evaluator either
lets the decision through with a warning (OPEN_ON_ERROR) or denies it
(CLOSED_ON_ERROR).
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from signal_engine.core.config import RiskConfig, risk_config
from signal_engine.core.models import (
    Decision, GateVerdict, MarketSnapshot, Strategy, StrategyStatus, to_usd
)
from signal_engine.core.strategy_config import StrategyConfig
from signal_engine.risk.correlation import correlated_exposure, group_exposure, in_group
from signal_engine.risk.sizing import (
    estimate_slippage_bps, estimate_trade_costs, kelly_estimate, kelly_size,
    risk_profile_multiplier, volatility_size
)
from signal_engine.storage.database import Database

logger = structlog.get_logger(__name__)


class RiskLevel(Enum):
    """Risk severity levels."""
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


class FailureMode(str, Enum):
    """What a rule's outcome is when the rule itself fails."""
    OPEN_ON_ERROR = "open_on_error"
    CLOSED_ON_ERROR = "closed_on_error"


@dataclass
class RiskCheckResult:
    """Result of a risk validation check.

    Attributes:
        passed: Whether the decision passed the check
        reason: Human-readable explanation
        risk_level: Severity level of the assessment
        rule_triggered: Name of the rule that produced this result
        should_pause: The strategy must be paused (drawdown breaker)
        metadata: Additional diagnostic information
    """
    passed: bool
    reason: str = ""
    risk_level: str = RiskLevel.NORMAL.value
    rule_triggered: Optional[str] = None
    should_pause: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def approved(cls, reason: str = "", **kwargs) -> "RiskCheckResult":
        return cls(passed=True, reason=reason, **kwargs)

    @classmethod
    def rejected(cls, reason: str, **kwargs) -> "RiskCheckResult":
        return cls(passed=False, reason=reason, **kwargs)


@dataclass
class GateContext:
    """Everything a rule may need for one strategy pass."""
    strategy: Strategy
    config: StrategyConfig
    snapshot: MarketSnapshot
    price_history: Dict[str, List[float]] = field(default_factory=dict)
    now: datetime = field(default_factory=datetime.utcnow)


@dataclass
class RiskRule:
    """Individual pass/fail rule.

    Attributes:
        name: Unique identifier for the rule
        check_fn: Coroutine performing the validation
        failure_mode: Outcome when ``check_fn`` raises
        priority: Lower numbers run first
        tag: Prefix used when the rule's denial is appended to a rationale
    """
    name: str
    check_fn: Callable[[Decision, GateContext], Awaitable[RiskCheckResult]]
    failure_mode: FailureMode = FailureMode.OPEN_ON_ERROR
    priority: int = 100
    tag: str = "RISK"


@dataclass
class SizingStep:
    """One step of the sizing cascade."""
    name: str
    apply_fn: Callable[[Decision, GateContext], Awaitable[Decision]]
    failure_mode: FailureMode = FailureMode.OPEN_ON_ERROR


class RiskManager:
    """
    Applies sizing, portfolio limits, the drawdown breaker and the generic
    risk check to decisions.

    Built-in rules all use OPEN_ON_ERROR: a failing data source degrades to
    allow-with-warning. Rules registered with CLOSED_ON_ERROR deny instead.
    """

    def __init__(self, database: Database, settings: RiskConfig = risk_config):
        self.database = database
        self.settings = settings

        self._sizing_steps: List[SizingStep] = []
        self._portfolio_rules: List[RiskRule] = []
        self._register_default_rules()

        self.drawdown_breaker = RiskRule(
            name="drawdown_circuit_breaker",
            check_fn=self._check_drawdown_breaker,
            failure_mode=FailureMode.OPEN_ON_ERROR,
            tag="CIRCUIT_BREAKER",
        )
        self.generic_check = RiskRule(
            name="generic_risk_check",
            check_fn=self._check_generic,
            failure_mode=FailureMode.OPEN_ON_ERROR,
            tag="RISK",
        )

    def _register_default_rules(self):
        self._sizing_steps = [
            SizingStep("risk_profile", self._apply_risk_profile),
            SizingStep("kelly", self._apply_kelly),
            SizingStep("volatility_sizing", self._apply_volatility_sizing),
            SizingStep("transaction_cost", self._apply_cost_screen),
            SizingStep("correlation", self._apply_correlation_screen),
        ]
        for rule in (
            RiskRule("max_positions", self._check_max_positions, priority=10, tag="PORTFOLIO"),
            RiskRule("symbol_concentration", self._check_symbol_concentration, priority=20, tag="PORTFOLIO"),
            RiskRule("correlated_group", self._check_correlated_group, priority=30, tag="PORTFOLIO"),
            RiskRule("daily_trade_limit", self._check_daily_trade_limit, priority=40, tag="LIMIT"),
        ):
            self.register_rule(rule)

    def register_rule(self, rule: RiskRule):
        """Add a portfolio rule. Rules run in priority order."""
        self._portfolio_rules.append(rule)
        self._portfolio_rules.sort(key=lambda r: r.priority)

    @property
    def portfolio_rules(self) -> List[RiskRule]:
        return list(self._portfolio_rules)

    # =========================================================================
    # Evaluation
    # =========================================================================

    async def _evaluate(self, rule: RiskRule, decision: Decision, ctx: GateContext) -> RiskCheckResult:
        try:
            result = await rule.check_fn(decision, ctx)
        except Exception as e:
            logger.error(
                "risk_manager.rule_error",
                rule=rule.name,
                strategy_id=ctx.strategy.id,
                failure_mode=rule.failure_mode.value,
                error=str(e),
            )
            if rule.failure_mode == FailureMode.CLOSED_ON_ERROR:
                return RiskCheckResult.rejected(
                    f"{rule.name} check failed: {e}",
                    risk_level=RiskLevel.CRITICAL.value,
                    rule_triggered=rule.name,
                    metadata={"error": str(e)},
                )
            return RiskCheckResult.approved(
                f"{rule.name} check unavailable: {e}",
                risk_level=RiskLevel.WARNING.value,
                rule_triggered=rule.name,
                metadata={"error": str(e)},
            )
        result.rule_triggered = result.rule_triggered or rule.name
        return result

    @staticmethod
    def _record(decision: Decision, rule: RiskRule, result: RiskCheckResult) -> Decision:
        """Fold a rule result into the decision."""
        if result.passed:
            verdict = (
                GateVerdict.WARN if result.risk_level == RiskLevel.WARNING.value else GateVerdict.ALLOW
            )
            return decision.annotate(rule.name, verdict, result.reason, **result.metadata)
        verdict = GateVerdict.PAUSE if result.should_pause else GateVerdict.DENY
        return decision.forced_hold(
            rule.name, result.reason, tag=rule.tag, verdict=verdict, **result.metadata
        )

    async def apply_sizing_cascade(self, decision: Decision, ctx: GateContext) -> Decision:
        """Run the sizing steps in order. HOLD decisions pass untouched."""
        for step in self._sizing_steps:
            if decision.is_hold:
                break
            try:
                decision = await step.apply_fn(decision, ctx)
            except Exception as e:
                logger.error(
                    "risk_manager.sizing_error",
                    step=step.name,
                    strategy_id=ctx.strategy.id,
                    failure_mode=step.failure_mode.value,
                    error=str(e),
                )
                if step.failure_mode == FailureMode.CLOSED_ON_ERROR:
                    decision = decision.forced_hold(
                        step.name, f"{step.name} check failed: {e}", tag="RISK", error=str(e)
                    )
                else:
                    decision = decision.annotate(
                        step.name, GateVerdict.WARN, f"{step.name} unavailable: {e}", error=str(e)
                    )
        return decision

    async def run_portfolio_gates(self, decision: Decision, ctx: GateContext) -> Decision:
        """Evaluate every portfolio rule against the proposed decision.

        All rules see the same proposal; every violation is recorded and any
        violation forces HOLD.
        """
        if decision.is_hold:
            return decision

        proposed = decision
        for rule in self._portfolio_rules:
            result = await self._evaluate(rule, proposed, ctx)
            if not result.passed:
                logger.warning(
                    "risk.gate_failed",
                    rule=rule.name,
                    strategy_id=ctx.strategy.id,
                    symbol=proposed.symbol,
                    reason=result.reason,
                )
            decision = self._record(decision, rule, result)
        return decision

    async def check_drawdown_breaker(self, decision: Decision, ctx: GateContext) -> RiskCheckResult:
        return await self._evaluate(self.drawdown_breaker, decision, ctx)

    async def run_generic_checks(self, decision: Decision, ctx: GateContext) -> RiskCheckResult:
        return await self._evaluate(self.generic_check, decision, ctx)

    def record_result(self, decision: Decision, rule: RiskRule, result: RiskCheckResult) -> Decision:
        return self._record(decision, rule, result)

    # =========================================================================
    # Sizing cascade
    # =========================================================================

    async def _apply_risk_profile(self, decision: Decision, ctx: GateContext) -> Decision:
        value = ctx.config.risk_profile_value
        multiplier = risk_profile_multiplier(value)
        return decision.resize(
            decision.size_usd * Decimal(str(multiplier)),
            "risk_profile",
            f"Risk profile {value:.0f}/100 -> {multiplier:.2f}x",
            multiplier=multiplier,
        )

    async def _apply_kelly(self, decision: Decision, ctx: GateContext) -> Decision:
        trades = await self.database.get_closed_trades(
            strategy_id=ctx.strategy.id,
            limit=self.settings.kelly_lookback,
            newest_first=True,
        )
        estimate = kelly_estimate(
            trades,
            kelly_fraction=ctx.config.kelly_fraction,
            min_trades=self.settings.kelly_min_trades,
            min_pct=self.settings.kelly_min_pct,
            max_pct=self.settings.kelly_max_pct,
        )
        if estimate is None:
            return decision.annotate(
                "kelly",
                GateVerdict.SKIP,
                f"Insufficient history ({len(trades)} closed trades, need "
                f"{self.settings.kelly_min_trades} with wins and losses)",
                trade_count=len(trades),
            )
        return decision.resize(
            kelly_size(decision.size_usd, estimate.fraction),
            "kelly",
            f"Kelly {estimate.fraction * 100:.2f}% (win rate {estimate.win_rate * 100:.1f}%, "
            f"payoff {estimate.payoff_ratio:.2f})",
            win_rate=round(estimate.win_rate, 4),
            payoff_ratio=round(estimate.payoff_ratio, 4),
            kelly_pct=round(estimate.fraction, 6),
            trade_count=estimate.trade_count,
        )

    async def _apply_volatility_sizing(self, decision: Decision, ctx: GateContext) -> Decision:
        config = ctx.config
        if not config.use_volatility_sizing:
            return decision
        atr = ctx.snapshot.indicators.get("atr")
        size = volatility_size(
            self.settings.account_balance_usd,
            config.risk_per_trade,
            atr,
            ctx.snapshot.current_price,
            config.atr_multiplier,
        )
        if size is None:
            return decision.annotate(
                "volatility_sizing", GateVerdict.WARN, "ATR unavailable - size unchanged"
            )
        return decision.resize(
            size,
            "volatility_sizing",
            f"ATR {atr:.4f} x {config.atr_multiplier} stop, {config.risk_per_trade * 100:.2f}% risk",
            atr=atr,
        )

    async def _apply_cost_screen(self, decision: Decision, ctx: GateContext) -> Decision:
        config = ctx.config
        if not config.skip_high_cost_trades:
            return decision

        if config.include_slippage_estimate:
            slippage_bps = estimate_slippage_bps(
                ctx.snapshot.order_book,
                decision.action,
                decision.size_usd,
                self.settings.default_slippage_bps,
            )
        else:
            slippage_bps = self.settings.default_slippage_bps
        costs = estimate_trade_costs(
            decision.size_usd, config.exchange, slippage_bps, self.settings.opportunity_cost_bps
        )
        metrics = {
            "fee_usd": str(to_usd(costs.fee_usd)),
            "slippage_bps": round(slippage_bps, 2),
            "total_cost_bps": round(costs.total_bps, 2),
        }
        if costs.total_bps > config.max_cost_bps:
            logger.info(
                "risk.cost_screen_hold",
                strategy_id=ctx.strategy.id,
                total_bps=round(costs.total_bps, 1),
                limit_bps=config.max_cost_bps,
            )
            return decision.forced_hold(
                "transaction_cost",
                f"{costs.total_bps:.1f}bps > {config.max_cost_bps:.0f}bps limit",
                tag="COSTS",
                **metrics,
            )
        return decision.annotate(
            "transaction_cost", GateVerdict.ALLOW, f"Estimated cost {costs.total_bps:.1f}bps", **metrics
        )

    async def _apply_correlation_screen(self, decision: Decision, ctx: GateContext) -> Decision:
        config = ctx.config
        if not config.enforce_correlation_limits:
            return decision

        positions = await self.database.get_open_positions(ctx.strategy.user_id)
        if not positions:
            return decision.annotate("correlation", GateVerdict.ALLOW, "No open positions")

        primary = ctx.price_history.get(decision.symbol) or ctx.snapshot.closes
        has_history = any(ctx.price_history.get(p.symbol) for p in positions)

        if primary and has_history:
            exposure = correlated_exposure(
                primary, positions, ctx.price_history, config.max_correlation
            )
            reason = f"Correlation risk: {exposure.share * 100:.1f}% of portfolio in correlated assets"
        elif in_group(decision.symbol, self.settings.correlated_group):
            exposure = group_exposure(positions, self.settings.correlated_group)
            reason = (
                f"Correlation risk: {exposure.share * 100:.1f}% already in correlated crypto "
                f"({'/'.join(self.settings.correlated_group)})"
            )
        else:
            return decision.annotate(
                "correlation", GateVerdict.ALLOW, "No price history; symbol outside correlated group"
            )

        metrics = {
            "correlated_share": round(exposure.share, 4),
            "correlations": exposure.correlations,
        }
        if exposure.share > config.max_correlated_exposure:
            return decision.forced_hold("correlation", reason, tag="CORRELATION", **metrics)
        return decision.annotate("correlation", GateVerdict.ALLOW, reason, **metrics)

    # =========================================================================
    # Portfolio rules
    # =========================================================================

    async def _portfolio_value(self, user_id: str):
        """Open positions and the equity base used for portfolio shares.

        The base is the larger of configured account equity and current open
        exposure. The proposed trade is not part of the base.
        """
        positions = await self.database.get_open_positions(user_id)
        exposure = sum((p.size_usd for p in positions), Decimal("0"))
        return positions, max(self.settings.account_balance_usd, exposure)

    async def _check_max_positions(self, decision: Decision, ctx: GateContext) -> RiskCheckResult:
        positions = await self.database.get_open_positions(ctx.strategy.user_id)
        limit = self.settings.max_open_positions
        if len(positions) >= limit:
            return RiskCheckResult.rejected(
                f"Portfolio limit: Max {limit} open positions (currently {len(positions)})",
                metadata={"open_positions": len(positions)},
            )
        return RiskCheckResult.approved(
            f"{len(positions)}/{limit} positions open", metadata={"open_positions": len(positions)}
        )

    async def _check_symbol_concentration(self, decision: Decision, ctx: GateContext) -> RiskCheckResult:
        positions, portfolio_value = await self._portfolio_value(ctx.strategy.user_id)
        existing = sum((p.size_usd for p in positions if p.symbol == decision.symbol), Decimal("0"))
        share = float((existing + decision.size_usd) / portfolio_value)
        limit = self.settings.max_symbol_pct
        metadata = {"symbol_share": round(share, 4), "portfolio_value_usd": str(portfolio_value)}
        if share > limit:
            return RiskCheckResult.rejected(
                f"Symbol concentration: Max {limit * 100:.0f}% in {decision.symbol} "
                f"(would be {share * 100:.1f}%)",
                metadata=metadata,
            )
        return RiskCheckResult.approved(metadata=metadata)

    async def _check_correlated_group(self, decision: Decision, ctx: GateContext) -> RiskCheckResult:
        group = self.settings.correlated_group
        if not in_group(decision.symbol, group):
            return RiskCheckResult.approved(f"{decision.symbol} outside correlated group")

        positions, portfolio_value = await self._portfolio_value(ctx.strategy.user_id)
        existing = sum((p.size_usd for p in positions if in_group(p.symbol, group)), Decimal("0"))
        share = float((existing + decision.size_usd) / portfolio_value)
        limit = self.settings.max_correlated_pct
        metadata = {"group_share": round(share, 4)}
        if share > limit:
            return RiskCheckResult.rejected(
                f"Correlated exposure: Max {limit * 100:.0f}% in {'/'.join(group)} "
                f"(would be {share * 100:.1f}%)",
                metadata=metadata,
            )
        return RiskCheckResult.approved(metadata=metadata)

    async def _check_daily_trade_limit(self, decision: Decision, ctx: GateContext) -> RiskCheckResult:
        limit = ctx.config.daily_trade_limit
        if not limit:
            return RiskCheckResult.approved("No daily trade limit")
        midnight = datetime(ctx.now.year, ctx.now.month, ctx.now.day)
        count = await self.database.count_signals_since(ctx.strategy.id, midnight)
        metadata = {"trades_today": count, "daily_limit": limit}
        if count >= limit:
            return RiskCheckResult.rejected(
                f"Daily trade limit reached ({count}/{limit})", metadata=metadata
            )
        return RiskCheckResult.approved(f"{count}/{limit} trades today", metadata=metadata)

    # =========================================================================
    # Drawdown circuit breaker
    # =========================================================================

    async def _check_drawdown_breaker(self, decision: Decision, ctx: GateContext) -> RiskCheckResult:
        trades = await self.database.get_closed_trades(strategy_id=ctx.strategy.id)

        equity = Decimal("0")
        peak = Decimal("0")
        for trade in trades:
            equity += trade.pnl_usd
            peak = max(peak, equity)
        drawdown = float((peak - equity) / peak) if peak > 0 else 0.0

        limit = ctx.config.drawdown_limit
        metadata = {"drawdown": round(drawdown, 4), "limit": limit, "trade_count": len(trades)}

        if drawdown >= limit:
            logger.critical(
                "risk.drawdown_breaker_tripped",
                strategy_id=ctx.strategy.id,
                user_id=ctx.strategy.user_id,
                drawdown=round(drawdown, 4),
                limit=limit,
            )
            await self._pause_strategy(ctx.strategy)
            return RiskCheckResult.rejected(
                f"Drawdown limit exceeded: {drawdown * 100:.1f}% (limit: {limit * 100:.1f}%)",
                risk_level=RiskLevel.CRITICAL.value,
                should_pause=True,
                metadata=metadata,
            )

        if drawdown >= limit - self.settings.drawdown_warning_band:
            logger.warning(
                "risk.drawdown_near_limit",
                strategy_id=ctx.strategy.id,
                drawdown=round(drawdown, 4),
                limit=limit,
            )
            return RiskCheckResult.approved(
                f"Drawdown {drawdown * 100:.1f}% near limit {limit * 100:.1f}%",
                risk_level=RiskLevel.WARNING.value,
                metadata=metadata,
            )

        return RiskCheckResult.approved(f"Drawdown {drawdown * 100:.1f}%", metadata=metadata)

    async def _pause_strategy(self, strategy: Strategy):
        """Persist the auto-pause. A failed write never lifts the trip."""
        try:
            await self.database.update_strategy_status(strategy.id, StrategyStatus.PAUSED)
        except Exception as e:
            logger.error(
                "risk.drawdown_pause_write_failed",
                strategy_id=strategy.id,
                error=str(e),
            )

    # =========================================================================
    # Generic risk check
    # =========================================================================

    async def _check_generic(self, decision: Decision, ctx: GateContext) -> RiskCheckResult:
        strategy = ctx.strategy
        if decision.is_hold:
            return RiskCheckResult.approved("HOLD - nothing to check")
        if strategy.is_paper_trading:
            return RiskCheckResult.approved("Paper trading - risk checks skipped")

        positions = await self.database.get_open_positions(strategy.user_id)
        trades = await self.database.get_closed_trades(
            strategy_id=strategy.id, user_id=strategy.user_id
        )

        # Drawdown from an account-equity curve including unrealized P&L
        balance = self.settings.account_balance_usd
        equity = balance
        peak = balance
        for trade in trades:
            equity += trade.pnl_usd
            peak = max(peak, equity)
        current = equity + sum(
            (p.unrealized_pnl_usd for p in positions if p.strategy_id == strategy.id), Decimal("0")
        )
        drawdown_pct = float((peak - current) / peak * 100) if peak > 0 and current < peak else 0.0
        max_drawdown = float(
            strategy.max_drawdown_percent
            if strategy.max_drawdown_percent is not None
            else self.settings.default_max_drawdown_percent
        )
        metadata: Dict[str, Any] = {"drawdown_pct": round(drawdown_pct, 2)}
        if drawdown_pct >= max_drawdown:
            return RiskCheckResult.rejected(
                f"Drawdown limit exceeded: {drawdown_pct:.1f}% >= {max_drawdown:.1f}%",
                metadata=metadata,
            )

        # Position size sanity, warning only
        total_exposure = sum((p.size_usd for p in positions), Decimal("0")) + decision.size_usd
        risk_level = RiskLevel.NORMAL.value
        reason = ""
        if total_exposure > self.settings.large_position_warning_usd:
            risk_level = RiskLevel.WARNING.value
            reason = f"Total exposure ${total_exposure:,.0f} above ${self.settings.large_position_warning_usd:,.0f}"
            logger.warning("risk.large_exposure", strategy_id=strategy.id, exposure=str(total_exposure))

        # Leverage
        leverage_max = (
            strategy.leverage_max if strategy.leverage_max is not None else self.settings.default_leverage_max
        )
        if decision.leverage is not None and decision.leverage > leverage_max:
            return RiskCheckResult.rejected(
                f"Leverage {decision.leverage}x exceeds max {leverage_max}x", metadata=metadata
            )

        # 24h circuit breaker
        since = ctx.now - timedelta(hours=24)
        recent = [t for t in trades if (t.exit_time or t.created_at) >= since]
        large_losses = [t for t in recent if t.pnl_usd < self.settings.large_loss_threshold_usd]
        if len(large_losses) >= self.settings.large_loss_count:
            return RiskCheckResult.rejected(
                f"{self.settings.large_loss_count}+ large losses in 24h "
                f"({len(large_losses)} losses > ${abs(self.settings.large_loss_threshold_usd):.0f})",
                metadata=metadata,
            )

        streak = self.settings.consecutive_loss_count
        last = recent[-streak:]
        if len(last) == streak and all(t.pnl_usd < 0 for t in last):
            return RiskCheckResult.rejected(f"{streak} consecutive losing trades", metadata=metadata)

        daily_loss = sum((t.pnl_usd for t in recent if t.pnl_usd < 0), Decimal("0"))
        if daily_loss < self.settings.max_daily_loss_usd:
            return RiskCheckResult.rejected(f"Daily loss exceeded: ${daily_loss:.2f}", metadata=metadata)

        return RiskCheckResult(passed=True, reason=reason, risk_level=risk_level, metadata=metadata)
