"""Anthropic Claude provider using anthropic SDK with native async."""

import logging
from typing import Any

import anthropic as anthropic_sdk

from tension.models import LLMRequest, ProviderConfig
from tension.providers.base import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    Completion,
    LLMProvider,
    ProviderError,
)

logger = logging.getLogger(__name__)


class AnthropicProvider(LLMProvider):
    """Anthropic Claude provider via anthropic SDK."""

    provider_id = "anthropic"
    key_prefix = "sk-ant-"

    def _build_client(self, config: ProviderConfig) -> anthropic_sdk.AsyncAnthropic:
        return anthropic_sdk.AsyncAnthropic(api_key=config.api_key.strip(), base_url=self.base_url)

    async def _complete(self, request: LLMRequest) -> Completion:
        # System prompt is a top-level parameter, not a message
        system = "\n\n".join(m.content for m in request.messages if m.role == "system")
        kwargs: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
            "messages": [{"role": m.role, "content": m.content} for m in request.messages if m.role != "system"],
        }
        if system:
            kwargs["system"] = system

        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic_sdk.APIStatusError as exc:
            raise ProviderError(self.display_name, f"API error: {exc.status_code} - {exc.message}") from exc
        except anthropic_sdk.APIError as exc:
            raise ProviderError(self.display_name, f"API call failed: {exc}") from exc

        text_blocks = [b.text for b in response.content if b.type == "text"]
        if not text_blocks:
            raise ProviderError(self.display_name, "No text blocks in response")

        return Completion(
            content="\n".join(text_blocks),
            input_tokens=response.usage.input_tokens if response.usage else 0,
            output_tokens=response.usage.output_tokens if response.usage else 0,
            finish_reason="stop" if response.stop_reason == "end_turn" else "length",
            response_id=response.id,
        )

    async def test_connection(self) -> bool:
        if not self.is_configured():
            return False
        try:
            await self._client.models.list(limit=1)
        except anthropic_sdk.APIError as exc:
            logger.info("Anthropic connection test failed: %s", exc)
            return False
        return True
