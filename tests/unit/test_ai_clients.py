"""Unit tests for the prediction service and reasoning model clients."""
import pytest
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import httpx
import openai

from signal_engine.ai.llm_client import ReasoningClient
from signal_engine.ai.ml_client import MLServiceClient
from signal_engine.core.config import LLMConfig, MLServiceConfig
from signal_engine.core.exceptions import ReasoningServiceError
from signal_engine.core.models import MLPrediction, ModelSource, TradeAction


def _mock_post(**kwargs) -> AsyncMock:
    post = AsyncMock(**kwargs)
    post.__name__ = "_post_json"
    return post


# =============================================================================
# Prediction Service Client
# =============================================================================

class TestMLServiceClient:
    """Test prediction requests and response mapping."""

    @pytest.fixture
    def client(self):
        return MLServiceClient(MLServiceConfig(ml_service_url="http://ml:8001/", ml_retry_delay=0))

    @pytest.mark.asyncio
    async def test_strategy_specific_request(self, client):
        client._post_json = _mock_post(return_value={
            "action": "BUY", "confidence": 0.83, "model_version": "v7", "model_type": "strategy",
        })

        prediction = await client.predict({"rsi": 40}, strategy_id="strategy-1")

        client._post_json.assert_awaited_once_with(
            "http://ml:8001/predict-strategy",
            {"strategy_id": "strategy-1", "market_data": {"rsi": 40}},
        )
        assert prediction.success
        assert prediction.action == TradeAction.LONG
        assert prediction.confidence == pytest.approx(0.83)
        assert prediction.model_type == "strategy"

    @pytest.mark.asyncio
    async def test_global_request(self, client):
        client._post_json = _mock_post(return_value={"action": "SELL", "confidence": 0.6})

        prediction = await client.predict({"rsi": 80})

        client._post_json.assert_awaited_once_with("http://ml:8001/predict", {"rsi": 80})
        assert prediction.action == TradeAction.SHORT
        assert prediction.model_type == "global"

    @pytest.mark.asyncio
    async def test_confidence_clamped(self, client):
        client._post_json = _mock_post(return_value={"action": "HOLD", "confidence": 3})

        prediction = await client.predict({})

        assert prediction.confidence == 1.0

    @pytest.mark.asyncio
    async def test_transport_failure_retried_then_unavailable(self, client):
        client._post_json = _mock_post(side_effect=aiohttp.ClientConnectionError("refused"))

        with patch("signal_engine.utils.retry.asyncio.sleep", new=AsyncMock()):
            prediction = await client.predict({})

        assert client._post_json.await_count == 2
        assert not prediction.success
        assert "refused" in prediction.error

    @pytest.mark.asyncio
    async def test_unexpected_error_not_retried(self, client):
        client._post_json = _mock_post(side_effect=ValueError("bad json"))

        prediction = await client.predict({})

        assert client._post_json.await_count == 1
        assert not prediction.success

    @pytest.mark.asyncio
    async def test_unknown_action_is_unavailable(self, client):
        client._post_json = _mock_post(return_value={"action": "MOON", "confidence": 0.9})

        prediction = await client.predict({})

        assert not prediction.success

    def test_to_decision_scales_base_size(self, client):
        prediction = MLPrediction(success=True, action=TradeAction.LONG, confidence=0.75, model_version="v7")

        decision = client.to_decision(prediction, "BTCUSDT")

        assert decision.size_usd == Decimal("750.00")
        assert decision.source == ModelSource.ML
        assert decision.rationale == "ML prediction (global): 75.0% confidence (v7)"

    def test_to_decision_hold(self, client):
        prediction = MLPrediction(success=True, action=TradeAction.HOLD, confidence=0.9)

        decision = client.to_decision(prediction, "BTCUSDT")

        assert decision.is_hold
        assert decision.size_usd == Decimal("0")


# =============================================================================
# Reasoning Model Client
# =============================================================================

def _completion(content, model="llama-test"):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        model=model,
    )


def _fake_openai(**create_kwargs):
    fake = MagicMock()
    fake.chat.completions.create = AsyncMock(**create_kwargs)
    fake.close = AsyncMock()
    return fake


class TestReasoningClient:
    """Test completion calls against a fake OpenAI client."""

    @pytest.fixture
    def settings(self):
        return LLMConfig(llm_model="llama-test", llm_base_delay=0)

    @pytest.mark.asyncio
    async def test_complete(self, settings):
        fake = _fake_openai(return_value=_completion('  {"action": "HOLD"}  '))
        client = ReasoningClient(settings, client=fake)

        response = await client.complete("prompt text")

        assert response.content == '{"action": "HOLD"}'
        assert response.model == "llama-test"
        kwargs = fake.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "llama-test"
        assert kwargs["messages"][1] == {"role": "user", "content": "prompt text"}
        assert kwargs["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_empty_response_raises(self, settings):
        client = ReasoningClient(settings, client=_fake_openai(return_value=_completion("   ")))

        with pytest.raises(ReasoningServiceError):
            await client.complete("prompt")

    @pytest.mark.asyncio
    async def test_no_choices_raises(self, settings):
        client = ReasoningClient(
            settings, client=_fake_openai(return_value=SimpleNamespace(choices=[], model="m"))
        )

        with pytest.raises(ReasoningServiceError):
            await client.complete("prompt")

    @pytest.mark.asyncio
    async def test_transient_error_retried(self, settings):
        request = httpx.Request("POST", "https://api.test/v1/chat/completions")
        fake = _fake_openai(side_effect=[
            openai.APIConnectionError(request=request),
            _completion('{"action": "LONG"}'),
        ])
        client = ReasoningClient(settings, client=fake)

        with patch("signal_engine.utils.retry.asyncio.sleep", new=AsyncMock()):
            response = await client.complete("prompt")

        assert response.content == '{"action": "LONG"}'
        assert fake.chat.completions.create.await_count == 2

    @pytest.mark.asyncio
    async def test_close(self, settings):
        fake = _fake_openai(return_value=_completion("x"))
        client = ReasoningClient(settings, client=fake)

        await client.close()

        fake.close.assert_awaited_once()
