"""Decision pipeline - one full pass for one strategy."""
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple, Union

import structlog

from signal_engine.ai.arbitrator import ModelArbitrator
from signal_engine.ai.ideas import build_trade_idea
from signal_engine.core.config import WorkerConfig, llm_config, worker_config
from signal_engine.core.exceptions import NoValidMarketDataError
from signal_engine.core.metrics import CycleMetrics
from signal_engine.core.models import (
    ArbitrationOutcome, Decision, DecisionRecord, DispatchResult,
    MarketSnapshot, ModelSource, OpenPosition, Strategy, TWAPResult
)
from signal_engine.core.strategy_config import StrategyConfig, normalize_config
from signal_engine.execution.dispatcher import Dispatcher
from signal_engine.market.data import MarketDataClient
from signal_engine.risk.risk_manager import GateContext, RiskManager
from signal_engine.storage.database import Database

logger = structlog.get_logger(__name__)


@dataclass
class PipelineOutcome:
    """What happened to one strategy in one pass."""
    strategy_id: str
    raw_decision: Decision
    decision: Decision
    source: ModelSource
    source_reason: str
    paused: bool = False
    dispatched: bool = False
    dispatch_result: Optional[Union[DispatchResult, TWAPResult]] = None
    audit_id: Optional[int] = None
    idea_id: Optional[int] = None
    elapsed_ms: float = 0.0


class DecisionPipeline:
    """
    Runs data acquisition, arbitration, risk gating, persistence and
    dispatch for a single strategy.

    Stages:
        1. Load and validate market data for the filtered target assets
        2. Ask the arbitrator for a raw decision
        3. Sizing cascade (non-HOLD only)
        4. Portfolio gates (non-HOLD only, all evaluated)
        5. Drawdown circuit breaker (always)
        6. Generic risk check (non-HOLD only)
        7. Persist the audit record (failures are logged, never fatal)
        8. Dispatch non-HOLD decisions

    A stage that forces HOLD only prevents dispatch; later stages still run
    and the audit record is always written once a decision exists.
    """

    def __init__(
        self,
        database: Database,
        market_data: MarketDataClient,
        arbitrator: ModelArbitrator,
        risk_manager: RiskManager,
        dispatcher: Dispatcher,
        settings: WorkerConfig = worker_config,
    ):
        self.database = database
        self.market_data = market_data
        self.arbitrator = arbitrator
        self.risk_manager = risk_manager
        self.dispatcher = dispatcher
        self.settings = settings

    async def process_strategy(
        self, strategy: Strategy, metrics: CycleMetrics
    ) -> Optional[PipelineOutcome]:
        """Process one strategy. Returns None when the pass was aborted."""
        started = time.monotonic()
        log = logger.bind(strategy_id=strategy.id, user_id=strategy.user_id)

        try:
            outcome = await self._run(strategy, metrics, log)
        except Exception as e:
            metrics.errors += 1
            log.error("pipeline.strategy_failed", error=str(e), error_type=type(e).__name__)
            return None

        outcome.elapsed_ms = (time.monotonic() - started) * 1000
        metrics.strategies_processed += 1
        log.info(
            "pipeline.strategy_processed",
            action=outcome.decision.action.value,
            size_usd=str(outcome.decision.size_usd),
            source=outcome.source.value,
            dispatched=outcome.dispatched,
            elapsed_ms=round(outcome.elapsed_ms, 1),
        )
        return outcome

    async def _run(self, strategy: Strategy, metrics: CycleMetrics, log) -> PipelineOutcome:
        config = normalize_config(strategy)

        # 1. Market data
        snapshots = await self.market_data.load_snapshots(config.filtered_assets, config.exchange)
        if not snapshots:
            raise NoValidMarketDataError(strategy.id, config.filtered_assets)
        primary = snapshots[0]
        order_book = await self.market_data.fetch_order_book(primary.symbol, config.exchange)
        if order_book is not None:
            primary = primary.model_copy(update={"order_book": order_book})
        positions = await self._load_positions(strategy, log)

        # 2. Arbitration
        arbitration = await self.arbitrator.decide(strategy, config, primary, positions)
        self._record_model_metrics(metrics, arbitration)
        raw = arbitration.decision
        log.info(
            "pipeline.decision_made",
            action=raw.action.value,
            symbol=raw.symbol,
            size_usd=str(raw.size_usd),
            confidence=raw.confidence,
            source=arbitration.source.value,
            reason=arbitration.reason,
        )

        decision, subject = await self._resolve_subject(raw, snapshots, primary, config, log)

        price_history = {s.symbol: s.closes for s in snapshots}
        if config.enforce_correlation_limits and not decision.is_hold:
            await self._extend_price_history(price_history, positions, config)
        ctx = GateContext(
            strategy=strategy, config=config, snapshot=subject, price_history=price_history
        )

        # 3-4. Sizing and portfolio limits
        decision = await self.risk_manager.apply_sizing_cascade(decision, ctx)
        decision = await self.risk_manager.run_portfolio_gates(decision, ctx)

        # 5. Drawdown breaker, unconditional
        breaker = await self.risk_manager.check_drawdown_breaker(decision, ctx)
        decision = self.risk_manager.record_result(decision, self.risk_manager.drawdown_breaker, breaker)
        paused = breaker.should_pause

        # 6. Generic risk check
        if not decision.is_hold:
            generic = await self.risk_manager.run_generic_checks(decision, ctx)
            if not generic.passed:
                log.warning("pipeline.risk_check_failed", reason=generic.reason)
            decision = self.risk_manager.record_result(decision, self.risk_manager.generic_check, generic)

        outcome = PipelineOutcome(
            strategy_id=strategy.id,
            raw_decision=raw,
            decision=decision,
            source=arbitration.source,
            source_reason=arbitration.reason,
            paused=paused,
        )

        # 7. Audit record and trade idea
        record = self._build_record(strategy, snapshots, primary, positions, arbitration, decision)
        outcome.audit_id = await self._persist(record, log)
        outcome.idea_id = await self._publish_idea(strategy, config, decision, subject, log)

        # 8. Dispatch
        if decision.is_hold:
            metrics.holds += 1
            return outcome

        result = await self.dispatcher.dispatch(strategy, config, decision)
        outcome.dispatch_result = result
        outcome.dispatched = result.success
        if result.success:
            metrics.signals_sent += 1
        else:
            metrics.errors += 1
            log.error("pipeline.dispatch_failed", symbol=decision.symbol)
        return outcome

    async def _resolve_subject(
        self,
        raw: Decision,
        snapshots: List[MarketSnapshot],
        primary: MarketSnapshot,
        config: StrategyConfig,
        log,
    ) -> Tuple[Decision, MarketSnapshot]:
        """Pick the scanned snapshot for the symbol the decision trades."""
        if raw.is_hold or raw.symbol == primary.symbol:
            return raw, primary

        for snapshot in snapshots:
            if snapshot.symbol == raw.symbol:
                order_book = await self.market_data.fetch_order_book(snapshot.symbol, config.exchange)
                if order_book is not None:
                    snapshot = snapshot.model_copy(update={"order_book": order_book})
                return raw, snapshot

        log.warning("pipeline.symbol_not_scanned", symbol=raw.symbol, primary=primary.symbol)
        held = raw.forced_hold(
            "symbol_scope", f"{raw.symbol} was not scanned this pass", tag="SYMBOL"
        )
        return held, primary

    async def _load_positions(self, strategy: Strategy, log) -> List[OpenPosition]:
        try:
            return await self.database.get_open_positions(strategy.user_id)
        except Exception as e:
            log.warning("pipeline.positions_unavailable", error=str(e))
            return []

    async def _extend_price_history(
        self,
        price_history: Dict[str, List[float]],
        positions: List[OpenPosition],
        config: StrategyConfig,
    ):
        """Fetch closes for held symbols that were not scanned this pass."""
        for symbol in {p.symbol for p in positions} - set(price_history):
            closes = await self.market_data.fetch_closes(symbol, config.exchange)
            if closes:
                price_history[symbol] = closes

    def _record_model_metrics(self, metrics: CycleMetrics, arbitration: ArbitrationOutcome):
        prediction = arbitration.ml_prediction
        if prediction is not None:
            metrics.record_ml_call(prediction.latency_ms)
        if arbitration.llm_called:
            metrics.record_llm_call(arbitration.llm_latency_ms or 0.0)
        if arbitration.source == ModelSource.ML:
            metrics.record_ml_decision(llm_config.llm_call_cost_usd)
        else:
            metrics.record_llm_decision()

    def _build_record(
        self,
        strategy: Strategy,
        snapshots: List[MarketSnapshot],
        primary: MarketSnapshot,
        positions: List[OpenPosition],
        arbitration: ArbitrationOutcome,
        decision: Decision,
    ) -> DecisionRecord:
        prediction = arbitration.ml_prediction
        return DecisionRecord(
            user_id=strategy.user_id,
            strategy_id=strategy.id,
            decided_at=datetime.utcnow(),
            market_snapshot={
                "symbol": primary.symbol,
                "candles": [c.model_dump() for c in primary.candles[-self.settings.candle_limit:]],
                "current_price": primary.current_price,
                "price_change_24h": primary.price_change_24h,
                "all_assets": [s.symbol for s in snapshots],
            },
            orderbook_snapshot=primary.order_book.model_dump(mode="json") if primary.order_book else None,
            technical_indicators=primary.indicators,
            portfolio_state={
                "open_positions": [p.model_dump(mode="json") for p in positions],
                "total_unrealized_pnl": str(sum((p.unrealized_pnl_usd for p in positions), Decimal("0"))),
                "position_count": len(positions),
            },
            model_versions=arbitration.model_versions,
            raw_responses=arbitration.raw_responses,
            raw_decision=arbitration.decision,
            final_decision=decision,
            confidence_final=decision.confidence,
            model_decision_metadata={
                "used_ml": arbitration.source == ModelSource.ML,
                "ml_confidence": prediction.confidence if prediction else None,
                "ml_prediction_success": prediction.success if prediction else False,
                "decision_reason": arbitration.reason,
            },
            signal_sent=not decision.is_hold,
        )

    async def _persist(self, record: DecisionRecord, log) -> Optional[int]:
        try:
            return await self.database.insert_decision(record)
        except Exception as e:
            log.error("pipeline.audit_write_failed", error=str(e))
            return None

    async def _publish_idea(
        self,
        strategy: Strategy,
        config: StrategyConfig,
        decision: Decision,
        snapshot: MarketSnapshot,
        log,
    ) -> Optional[int]:
        idea = build_trade_idea(strategy, config, decision, snapshot, self.settings.idea_min_confidence)
        if idea is None:
            return None
        try:
            idea_id = await self.database.insert_idea(idea)
        except Exception as e:
            log.warning("pipeline.idea_write_failed", error=str(e))
            return None
        log.info("pipeline.idea_published", idea_id=idea_id, symbol=idea.symbol, action=idea.action.value)
        return idea_id
