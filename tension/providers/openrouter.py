"""OpenRouter provider using openai SDK (OpenAI-compatible API)."""

from dataclasses import replace

from tension.models import ModelInfo
from tension.providers.base import LLMProvider
from tension.providers.openai_provider import OpenAIProvider
from tension.registry import OPENROUTER_VENDORS, compute_cost, get_all_models


def to_openrouter_id(model: ModelInfo) -> str:
    return f"{OPENROUTER_VENDORS.get(model.provider, model.provider)}/{model.id}"


class OpenRouterProvider(OpenAIProvider):
    """Every registry model, addressed as ``vendor/model``."""

    provider_id = "openrouter"
    key_prefix = "sk-or-"

    query_multiple = LLMProvider.query_multiple

    def _client_headers(self) -> dict[str, str]:
        return {"HTTP-Referer": "https://tension.app", "X-Title": "Tension"}

    def get_available_models(self) -> list[ModelInfo]:
        return [
            replace(m, id=to_openrouter_id(m), provider="openrouter")
            for m in get_all_models()
            if m.provider in OPENROUTER_VENDORS
        ]

    def _cost(self, model_id: str, input_tokens: int, output_tokens: int) -> float:
        # Price by the upstream model id
        return compute_cost(model_id.split("/", 1)[-1], input_tokens, output_tokens)
