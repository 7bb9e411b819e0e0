"""Model arbitration between the statistical service and the reasoning model."""
import asyncio
import random
from decimal import Decimal
from typing import Callable, List, Optional, Set

import structlog

from signal_engine.ai.features import prepare_features
from signal_engine.ai.llm_client import ReasoningClient
from signal_engine.ai.ml_client import MLServiceClient
from signal_engine.ai.parser import parse_decision
from signal_engine.ai.prompts import build_prompt
from signal_engine.core.config import LLMConfig, llm_config
from signal_engine.core.models import (
    ArbitrationOutcome, Decision, MLPrediction, ModelChoice, ModelSource,
    MarketSnapshot, OpenPosition, Strategy, TradeAction, UsageMode
)
from signal_engine.core.strategy_config import StrategyConfig
from signal_engine.storage.database import Database

logger = structlog.get_logger(__name__)


def choose_model(
    config: StrategyConfig,
    prediction: Optional[MLPrediction],
    budget_exceeded: bool = False,
    rng: Callable[[], float] = random.random,
) -> ModelChoice:
    """Pick the model for this pass and say why.

    A spent reasoning budget overrides every mode. ``hybrid`` compares the ML
    confidence against the strategy threshold; ``smart`` samples against the
    configured reasoning percentage. Both fall back to the reasoning model
    when the statistical service is unavailable.
    """
    ml_available = prediction is not None and prediction.success

    if budget_exceeded:
        return ModelChoice(use_ml=True, reason="LLM budget exceeded - using ML only")

    mode = config.usage_mode
    if mode == UsageMode.ML_ONLY:
        return ModelChoice(use_ml=True, reason="Strategy set to ML-only mode")
    if mode == UsageMode.LLM_ONLY:
        return ModelChoice(use_ml=False, reason="Strategy set to LLM-only mode")

    if mode == UsageMode.HYBRID:
        if not ml_available:
            return ModelChoice(use_ml=False, reason="ML service unavailable - using LLM")
        threshold = config.confidence_threshold
        if prediction.confidence >= threshold:
            return ModelChoice(
                use_ml=True,
                reason=f"ML confidence {prediction.confidence * 100:.1f}% >= threshold {threshold * 100:.1f}%",
            )
        return ModelChoice(
            use_ml=False,
            reason=f"ML confidence {prediction.confidence * 100:.1f}% < threshold {threshold * 100:.1f}%",
        )

    if mode == UsageMode.SMART:
        llm_percent = config.llm_percent
        if rng() * 100 < llm_percent:
            return ModelChoice(use_ml=False, reason=f"Smart mode: {llm_percent:.0f}% LLM usage target")
        if not ml_available:
            return ModelChoice(use_ml=False, reason="ML service unavailable - using LLM")
        return ModelChoice(use_ml=True, reason=f"Smart mode: {100 - llm_percent:.0f}% ML usage target")

    return ModelChoice(use_ml=False, reason="Default: using LLM")


class ModelArbitrator:
    """
    Produces the raw Decision for a strategy pass.

    Consults the usage budget, queries the statistical service when the mode
    can use it, picks a model with ``choose_model`` and records usage in the
    ledger as a background task.
    """

    def __init__(
        self,
        database: Database,
        ml_client: MLServiceClient,
        llm_client: ReasoningClient,
        settings: LLMConfig = llm_config,
        rng: Callable[[], float] = random.random,
    ):
        self.database = database
        self.ml_client = ml_client
        self.llm_client = llm_client
        self.settings = settings
        self.rng = rng
        self._pending: Set[asyncio.Task] = set()

    async def _budget_exceeded(self, strategy_id: str) -> bool:
        try:
            return await self.database.is_llm_budget_exceeded(strategy_id)
        except Exception as e:
            logger.warning("arbitrator.budget_check_failed", strategy_id=strategy_id, error=str(e))
            return False

    async def decide(
        self,
        strategy: Strategy,
        config: StrategyConfig,
        snapshot: MarketSnapshot,
        positions: List[OpenPosition],
    ) -> ArbitrationOutcome:
        """Raw decision plus which model produced it and why.

        Raises DecisionParseError or ReasoningServiceError when the reasoning
        model was chosen and did not produce a usable answer.
        """
        budget_exceeded = await self._budget_exceeded(strategy.id)

        prediction: Optional[MLPrediction] = None
        if budget_exceeded or config.usage_mode != UsageMode.LLM_ONLY:
            features = prepare_features(snapshot, positions)
            prediction = await self.ml_client.predict(features, strategy_id=strategy.id)

        choice = choose_model(config, prediction, budget_exceeded, self.rng)
        model_versions: List[str] = []
        raw_responses = {}
        if prediction is not None:
            raw_responses["ml"] = prediction.model_dump(mode="json", exclude={"raw"}) | {
                "response": prediction.raw
            }
            if prediction.model_version:
                model_versions.append(f"ml:{prediction.model_version}")

        if choice.use_ml:
            if prediction is not None and prediction.success:
                decision = self.ml_client.to_decision(prediction, snapshot.symbol)
                reason = choice.reason
            else:
                # ML was mandated but is down; do not spend on reasoning
                decision = Decision(
                    action=TradeAction.HOLD,
                    symbol=snapshot.symbol,
                    rationale="ML service unavailable - holding",
                    source=ModelSource.ML,
                )
                reason = f"{choice.reason}; ML service unavailable - holding"
            self._record_usage(strategy, used_llm=False)
            logger.info(
                "arbitrator.ml_decision",
                strategy_id=strategy.id,
                action=decision.action.value,
                reason=reason,
            )
            return ArbitrationOutcome(
                decision=decision,
                source=ModelSource.ML,
                reason=reason,
                ml_prediction=prediction,
                model_versions=model_versions,
                raw_responses=raw_responses,
            )

        prompt = build_prompt(strategy, config, snapshot, positions)
        response = await self.llm_client.complete(prompt)
        raw_responses["llm"] = response.content
        model_versions.append(f"llm:{response.model}")
        decision = parse_decision(response.content, snapshot.symbol)
        self._record_usage(strategy, used_llm=True)

        logger.info(
            "arbitrator.llm_decision",
            strategy_id=strategy.id,
            action=decision.action.value,
            reason=choice.reason,
            latency_ms=round(response.latency_ms, 1),
        )
        return ArbitrationOutcome(
            decision=decision,
            source=ModelSource.LLM,
            reason=choice.reason,
            ml_prediction=prediction,
            llm_latency_ms=response.latency_ms,
            llm_called=True,
            model_versions=model_versions,
            raw_responses=raw_responses,
        )

    def _record_usage(self, strategy: Strategy, used_llm: bool):
        cost = self.settings.llm_call_cost_usd if used_llm else Decimal("0")
        task = asyncio.create_task(self._write_usage(strategy, used_llm, cost))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write_usage(self, strategy: Strategy, used_llm: bool, cost: Decimal):
        try:
            await self.database.record_llm_usage(strategy.id, strategy.user_id, used_llm, cost)
        except Exception as e:
            logger.warning("arbitrator.usage_record_failed", strategy_id=strategy.id, error=str(e))

    async def wait_pending(self):
        """Wait for outstanding ledger writes."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
