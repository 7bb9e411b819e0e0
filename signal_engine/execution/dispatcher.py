"""Signal dispatch to the execution gateway webhook."""
import asyncio
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp
import structlog

from signal_engine.core.config import WebhookConfig, webhook_config
from signal_engine.core.exceptions import DispatchRejectedError
from signal_engine.core.models import (
    Decision, DispatchResult, Strategy, TWAPResult, TradeAction, to_usd
)
from signal_engine.core.strategy_config import StrategyConfig
from signal_engine.storage.database import Database
from signal_engine.utils.retry import RetryConfig, with_retry

logger = structlog.get_logger(__name__)

GATEWAY_ACTIONS = {
    TradeAction.LONG: "BUY",
    TradeAction.SHORT: "SELL",
    TradeAction.CLOSE: "CLOSE",
}


class Dispatcher:
    """
    Sends final decisions to the execution gateway.

    Large orders on strategies with smart routing enabled are split into
    equal TWAP slices sent at a fixed interval. Transport failures on a
    single signal are retried with backoff; gateway rejections are not.
    """

    def __init__(
        self,
        database: Database,
        settings: WebhookConfig = webhook_config,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.database = database
        self.settings = settings
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    def build_payload(
        self,
        strategy: Strategy,
        config: StrategyConfig,
        decision: Decision,
        secret: str,
        size_usd: Optional[Decimal] = None,
        source: Optional[str] = None,
    ) -> Dict[str, Any]:
        return {
            "user_id": strategy.user_id,
            "userId": strategy.user_id,
            "secret": secret,
            "exchange": config.exchange,
            "symbol": decision.symbol,
            "action": GATEWAY_ACTIONS[decision.action],
            "position_size_usd": float(size_usd if size_usd is not None else decision.size_usd),
            "strategy_id": strategy.id,
            "source": source or self.settings.webhook_source,
            "ai_confidence": decision.confidence,
            "ai_reasoning": decision.rationale,
        }

    async def _send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST one signal. Raises DispatchRejectedError on a gateway rejection."""
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=self.settings.webhook_timeout_seconds)
        async with session.post(self.settings.webhook_url, json=payload, timeout=timeout) as response:
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = {"raw": await response.text()}
            if not isinstance(body, dict):
                body = {"raw": body}
            if response.status < 200 or response.status >= 300:
                raise DispatchRejectedError(
                    f"Gateway returned HTTP {response.status}", response.status, body
                )
            if body.get("success") is False:
                raise DispatchRejectedError(
                    f"Gateway rejected signal: {body.get('error') or body.get('message') or 'unknown'}",
                    response.status,
                    body,
                )
            return body

    async def send_signal(self, payload: Dict[str, Any], retries: Optional[int] = None) -> DispatchResult:
        """Send with retry on transport errors; never raises."""
        attempts = 0

        async def post_signal():
            nonlocal attempts
            attempts += 1
            return await self._send(payload)

        send = with_retry(
            max_retries=self.settings.webhook_max_retries if retries is None else retries,
            base_delay=self.settings.webhook_base_delay,
            retryable_exceptions=RetryConfig.HTTP_ERRORS,
        )(post_signal)

        try:
            body = await send()
        except DispatchRejectedError as e:
            logger.error(
                "dispatcher.signal_rejected",
                symbol=payload.get("symbol"),
                status=e.status_code,
                error=str(e),
            )
            return DispatchResult(
                success=False, status_code=e.status_code, response=e.body, error=str(e), attempts=attempts
            )
        except RetryConfig.HTTP_ERRORS as e:
            logger.error("dispatcher.signal_failed", symbol=payload.get("symbol"), error=str(e))
            return DispatchResult(success=False, error=str(e) or type(e).__name__, attempts=attempts)

        return DispatchResult(success=True, status_code=200, response=body, attempts=attempts)

    async def dispatch(self, strategy: Strategy, config: StrategyConfig, decision: Decision):
        """Send a non-HOLD decision, as TWAP slices when smart routing applies.

        Returns a DispatchResult or TWAPResult.
        """
        if decision.is_hold:
            raise ValueError("HOLD decisions are never dispatched")

        secret = await self.database.get_webhook_secret(strategy.user_id)
        if not secret:
            logger.error("dispatcher.missing_webhook_secret", user_id=strategy.user_id)
            return DispatchResult(success=False, error="No webhook secret configured")

        if config.use_smart_routing and decision.size_usd > config.twap_threshold_usd:
            return await self.execute_twap(strategy, config, decision, secret)

        payload = self.build_payload(strategy, config, decision, secret)
        result = await self.send_signal(payload)
        if result.success:
            logger.info(
                "dispatcher.signal_sent",
                strategy_id=strategy.id,
                symbol=decision.symbol,
                action=payload["action"],
                size_usd=str(decision.size_usd),
            )
        return result

    async def execute_twap(
        self,
        strategy: Strategy,
        config: StrategyConfig,
        decision: Decision,
        secret: str,
    ) -> TWAPResult:
        """Split the order into equal slices spaced over the TWAP duration.

        Slice failures are logged and do not stop later slices. There is no
        wait after the last slice.
        """
        slices = config.twap_slices
        slice_size = to_usd(decision.size_usd / slices)
        interval = config.twap_duration_min * 60 / slices

        logger.info(
            "dispatcher.twap_started",
            strategy_id=strategy.id,
            symbol=decision.symbol,
            total_usd=str(decision.size_usd),
            slices=slices,
            interval_seconds=interval,
        )

        results = []
        prices = []
        for i in range(slices):
            payload = self.build_payload(
                strategy, config, decision, secret,
                size_usd=slice_size, source=self.settings.twap_source,
            )
            payload["slice"] = f"{i + 1}/{slices}"
            result = await self.send_signal(payload, retries=0)
            results.append(result)
            if result.success:
                price = self._fill_price(result, payload["slice"])
                if price is not None:
                    prices.append(price)
            else:
                logger.warning(
                    "dispatcher.twap_slice_failed",
                    strategy_id=strategy.id,
                    slice=payload["slice"],
                    error=result.error,
                )
            if i < slices - 1:
                await asyncio.sleep(interval)

        executed = sum(1 for r in results if r.success)
        avg_price = sum(prices) / len(prices) if prices else None
        logger.info(
            "dispatcher.twap_complete",
            strategy_id=strategy.id,
            executed=executed,
            slices=slices,
            avg_price=avg_price,
        )
        return TWAPResult(
            success=executed > 0,
            slices_total=slices,
            slices_executed=executed,
            avg_price=avg_price,
            results=results,
        )

    @staticmethod
    def _fill_price(result: DispatchResult, slice_label: str) -> Optional[float]:
        """Fill price reported by the gateway, or None if absent or unreadable."""
        response = result.response
        if not isinstance(response, dict) or response.get("price") is None:
            return None
        try:
            return float(response["price"])
        except (TypeError, ValueError):
            logger.warning(
                "dispatcher.twap_price_unreadable",
                slice=slice_label,
                price=response["price"],
            )
            return None
