"""OpenAI provider using openai SDK with native async."""

import asyncio
import logging
import time
from typing import Any

import openai
from openai import AsyncOpenAI

from tension.models import Choice, LLMMultiResponse, LLMRequest, ProviderConfig, Usage
from tension.providers.base import DEFAULT_TEMPERATURE, Completion, LLMProvider, ProviderError

logger = logging.getLogger(__name__)


def _finish_reason(raw: str | None) -> str:
    return "length" if raw == "length" else "stop"


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions via openai SDK."""

    provider_id = "openai"
    key_prefix = "sk-"

    def _client_headers(self) -> dict[str, str] | None:
        return None

    def _build_client(self, config: ProviderConfig) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=config.api_key.strip(),
            base_url=self.base_url,
            default_headers=self._client_headers(),
        )

    def _create_kwargs(self, request: LLMRequest, n: int) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": [{"role": m.role, "content": m.content} for m in request.messages],
            "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
            "n": n,
        }
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens
        return kwargs

    async def _create(self, kwargs: dict[str, Any]) -> Any:
        try:
            return await self._client.chat.completions.create(**kwargs)
        except openai.APIStatusError as exc:
            raise ProviderError(self.display_name, f"API error: {exc.status_code} - {exc.message}") from exc
        except openai.APIError as exc:
            raise ProviderError(self.display_name, f"API call failed: {exc}") from exc

    async def _complete(self, request: LLMRequest) -> Completion:
        response = await self._create(self._create_kwargs(request, n=1))

        choice = response.choices[0] if response.choices else None
        if choice is None:
            raise ProviderError(self.display_name, "Empty response choices")

        input_tokens = response.usage.prompt_tokens if response.usage else 0
        output_tokens = response.usage.completion_tokens if response.usage else 0
        return Completion(
            content=choice.message.content or "",
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            finish_reason=_finish_reason(choice.finish_reason),
            response_id=getattr(response, "id", None),
        )

    async def query_multiple(self, request: LLMRequest) -> LLMMultiResponse:
        """Native multi-completion through the ``n`` parameter. Raises on failure."""
        if not self.is_configured():
            raise ProviderError(self.display_name, "Provider is not configured")
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._create(self._create_kwargs(request, n=request.n or 1)),
                timeout=self.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(self.display_name, f"Request timed out after {self.timeout_sec:g}s") from exc
        latency_ms = (time.monotonic() - start) * 1000

        input_tokens = response.usage.prompt_tokens if response.usage else 0
        output_tokens = response.usage.completion_tokens if response.usage else 0
        return LLMMultiResponse(
            model=request.model,
            provider=self.provider_id,
            choices=[
                Choice(index=c.index, content=c.message.content or "", finish_reason=_finish_reason(c.finish_reason))
                for c in response.choices
            ],
            usage=Usage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
                cost=self._cost(request.model, input_tokens, output_tokens),
            ),
            latency_ms=latency_ms,
        )

    async def test_connection(self) -> bool:
        if not self.is_configured():
            return False
        try:
            await self._client.models.list()
        except openai.APIError as exc:
            logger.info("%s connection test failed: %s", self.display_name, exc)
            return False
        return True
