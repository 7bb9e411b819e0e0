"""Client for the statistical prediction service."""
import asyncio
import time
from typing import Any, Dict, Optional

import aiohttp
import structlog

from signal_engine.core.config import MLServiceConfig, ml_config
from signal_engine.core.models import Decision, MLPrediction, ModelSource, TradeAction, to_usd
from signal_engine.utils.retry import RetryConfig, with_retry

logger = structlog.get_logger(__name__)

ACTION_ALIASES = {"BUY": "LONG", "SELL": "SHORT"}


class MLServiceClient:
    """
    HTTP client for the prediction service.

    ``predict`` never raises: any failure is reported as an unsuccessful
    MLPrediction so the arbitrator can fall back to the reasoning model.
    """

    def __init__(
        self,
        settings: MLServiceConfig = ml_config,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.settings = settings
        self.base_url = settings.ml_service_url.rstrip("/")
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def _post_json(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=self.settings.ml_timeout_seconds)
        async with session.post(url, json=body, timeout=timeout) as response:
            if response.status >= 400:
                raise aiohttp.ClientResponseError(
                    response.request_info,
                    response.history,
                    status=response.status,
                    message=await response.text(),
                )
            return await response.json()

    async def predict(
        self, features: Dict[str, Any], strategy_id: Optional[str] = None
    ) -> MLPrediction:
        """Request a prediction, strategy-specific when a strategy id is given."""
        if strategy_id:
            url = f"{self.base_url}/predict-strategy"
            body = {"strategy_id": strategy_id, "market_data": features}
        else:
            url = f"{self.base_url}/predict"
            body = features

        post = with_retry(
            max_retries=self.settings.ml_max_attempts - 1,
            base_delay=self.settings.ml_retry_delay,
            retryable_exceptions=RetryConfig.HTTP_ERRORS,
        )(self._post_json)

        started = time.monotonic()
        try:
            data = await post(url, body)
        except Exception as e:
            latency_ms = (time.monotonic() - started) * 1000
            logger.warning("ml_client.prediction_failed", strategy_id=strategy_id, error=str(e))
            return MLPrediction.unavailable(str(e), latency_ms)
        latency_ms = (time.monotonic() - started) * 1000

        raw_action = str(data.get("action") or "HOLD").upper()
        try:
            action = TradeAction(ACTION_ALIASES.get(raw_action, raw_action))
        except ValueError:
            logger.warning("ml_client.unknown_action", action=data.get("action"))
            return MLPrediction.unavailable(f"Unknown action {data.get('action')!r}", latency_ms)

        return MLPrediction(
            success=True,
            action=action,
            confidence=max(0.0, min(1.0, float(data.get("confidence") or 0.0))),
            probability=data.get("probability"),
            should_execute=bool(data.get("should_execute", False)),
            model_version=data.get("model_version"),
            model_type=data.get("model_type") or "global",
            latency_ms=latency_ms,
            raw=data,
        )

    async def check_health(self) -> bool:
        try:
            session = await self._get_session()
            timeout = aiohttp.ClientTimeout(total=self.settings.ml_health_timeout_seconds)
            async with session.get(f"{self.base_url}/health", timeout=timeout) as response:
                return 200 <= response.status < 300
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("ml_client.health_check_failed", error=str(e))
            return False

    def to_decision(self, prediction: MLPrediction, symbol: str) -> Decision:
        """Convert a successful prediction to a raw Decision."""
        size = to_usd(0)
        if prediction.action != TradeAction.HOLD:
            size = to_usd(round(float(self.settings.ml_base_size_usd) * prediction.confidence))
        kind = "strategy-specific" if prediction.model_type == "strategy" else "global"
        return Decision(
            action=prediction.action,
            symbol=symbol,
            size_usd=size,
            confidence=prediction.confidence,
            rationale=(
                f"ML prediction ({kind}): {prediction.confidence * 100:.1f}% confidence "
                f"({prediction.model_version or 'unknown'})"
            ),
            source=ModelSource.ML,
        )
