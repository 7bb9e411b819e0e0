"""Client for the reasoning model (OpenAI-compatible chat completions)."""
import time
from dataclasses import dataclass
from typing import Optional

import openai
import structlog
from openai import AsyncOpenAI

from signal_engine.ai.prompts import SYSTEM_PROMPT
from signal_engine.core.config import LLMConfig, llm_config
from signal_engine.core.exceptions import ReasoningServiceError
from signal_engine.utils.retry import with_retry

logger = structlog.get_logger(__name__)

TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)


@dataclass
class LLMResponse:
    content: str
    model: str
    latency_ms: float


class ReasoningClient:
    """Sends prompts to the reasoning model and returns the raw text answer."""

    def __init__(self, settings: LLMConfig = llm_config, client: Optional[AsyncOpenAI] = None):
        self.settings = settings
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.settings.groq_api_key or "missing",
                base_url=self.settings.llm_base_url,
            )
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.close()

    async def _create_completion(self, user_prompt: str):
        return await self.client.chat.completions.create(
            model=self.settings.llm_model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
            temperature=self.settings.llm_temperature,
            max_tokens=self.settings.llm_max_tokens,
            response_format={"type": "json_object"},
        )

    async def complete(self, user_prompt: str) -> LLMResponse:
        """Return the completion text. Raises ReasoningServiceError if it is empty."""
        create = with_retry(
            max_retries=self.settings.llm_max_retries,
            base_delay=self.settings.llm_base_delay,
            retryable_exceptions=TRANSIENT_ERRORS,
        )(self._create_completion)

        started = time.monotonic()
        completion = await create(user_prompt)
        latency_ms = (time.monotonic() - started) * 1000

        content = ""
        if completion.choices:
            content = (completion.choices[0].message.content or "").strip()
        if not content:
            logger.error("llm_client.empty_response", model=self.settings.llm_model)
            raise ReasoningServiceError("Empty response from reasoning model")

        return LLMResponse(
            content=content,
            model=getattr(completion, "model", None) or self.settings.llm_model,
            latency_ms=latency_ms,
        )
