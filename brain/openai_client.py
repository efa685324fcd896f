"""
brain/openai_client.py — OpenAI LanguageModel Adapter

Works with the official OpenAI endpoint and any OpenAI-compatible one
(OpenRouter, a local Ollama /v1 endpoint, LiteLLM proxy, vLLM ...).
Streams the reply as text fragments and normalises provider exceptions
into ModelTransportError with the status code the ErrorClassifier keys on.
"""

from __future__ import annotations

from typing import AsyncIterator, Optional

import openai
from openai import AsyncOpenAI

from brain.llm_client import BaseLanguageModel, ModelReply
from brain.types import Message, ModelOptions
from exceptions import ModelTransportError
from observability.logger import get_logger

log = get_logger(__name__)


class OpenAIClient(BaseLanguageModel):
    """Chat-completions adapter returning streamed or whole text."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: Optional[str] = None,     # None = official OpenAI endpoint
        provider: str = "openai",
    ):
        super().__init__(model=model)
        self._provider = provider
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    # ── Public API ────────────────────────────────────────────────────────────

    async def send_request(self, messages: list[Message], options: ModelOptions) -> ModelReply:
        model = options.model or self.model
        payload = [{"role": m.role.value, "content": m.content} for m in messages]

        log.debug(
            "openai.request.start",
            model=model,
            message_count=len(messages),
            stream=options.stream,
        )

        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=payload,
                temperature=options.temperature,
                max_tokens=options.max_tokens,
                stream=options.stream,
            )
        except openai.APIError as e:
            raise self._normalise(e) from e

        if options.stream:
            return self._iter_stream(response)

        text = response.choices[0].message.content or ""
        if response.choices[0].finish_reason == "length":
            log.warning("openai.request.truncated", model=model)
            raise ModelTransportError("Response too long", provider=self._provider)
        return text

    async def health_check(self) -> bool:
        try:
            await self._client.models.list()
            return True
        except openai.APIError as e:
            log.warning("openai.health_check.failed", error=str(e), error_type=type(e).__name__)
            return False

    # ── Private helpers ───────────────────────────────────────────────────────

    async def _iter_stream(self, stream) -> AsyncIterator[str]:
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.delta and choice.delta.content:
                    yield choice.delta.content
                if choice.finish_reason == "length":
                    raise ModelTransportError("Response too long", provider=self._provider)
        except openai.APIError as e:
            raise self._normalise(e) from e

    def _normalise(self, e: openai.APIError) -> ModelTransportError:
        """Map an OpenAI SDK error onto the classifier's vocabulary."""
        if isinstance(e, openai.APITimeoutError):
            return ModelTransportError(f"network request timed out: {e}", provider=self._provider)
        if isinstance(e, openai.APIConnectionError):
            return ModelTransportError(f"network connection refused: {e}", provider=self._provider)
        status = getattr(e, "status_code", None)
        return ModelTransportError(
            str(e),
            code=str(status) if status is not None else None,
            provider=self._provider,
        )
