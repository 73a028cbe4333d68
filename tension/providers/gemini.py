"""Gemini provider using google-genai SDK with native async."""

import logging

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from tension.models import LLMRequest, ProviderConfig
from tension.providers.base import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    Completion,
    LLMProvider,
    ProviderError,
)

logger = logging.getLogger(__name__)


class GeminiProvider(LLMProvider):
    """Google Gemini provider via google-genai SDK. Any non-empty key counts."""

    provider_id = "google"

    def _build_client(self, config: ProviderConfig) -> genai.Client:
        http_options = genai_types.HttpOptions(base_url=config.base_url) if config.base_url else None
        return genai.Client(api_key=config.api_key.strip(), http_options=http_options)

    async def _complete(self, request: LLMRequest) -> Completion:
        system = "\n\n".join(m.content for m in request.messages if m.role == "system")
        contents = [
            genai_types.Content(
                role="model" if m.role == "assistant" else "user",
                parts=[genai_types.Part(text=m.content)],
            )
            for m in request.messages
            if m.role != "system"
        ]
        config = genai_types.GenerateContentConfig(
            temperature=request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
            max_output_tokens=request.max_tokens or DEFAULT_MAX_TOKENS,
            candidate_count=1,
            system_instruction=system or None,
        )

        try:
            response = await self._client.aio.models.generate_content(
                model=request.model,
                contents=contents,
                config=config,
            )
        except genai_errors.APIError as exc:
            raise ProviderError(self.display_name, f"API error: {exc.code} - {exc.message}") from exc

        candidate = response.candidates[0] if response.candidates else None
        finish = candidate.finish_reason if candidate else None
        usage = response.usage_metadata

        return Completion(
            content=response.text or "",
            input_tokens=(usage.prompt_token_count or 0) if usage else 0,
            output_tokens=(usage.candidates_token_count or 0) if usage else 0,
            finish_reason="stop" if finish == genai_types.FinishReason.STOP else "length",
        )

    async def test_connection(self) -> bool:
        if not self.is_configured():
            return False
        try:
            await self._client.aio.models.list()
        except genai_errors.APIError as exc:
            logger.info("Gemini connection test failed: %s", exc)
            return False
        return True
