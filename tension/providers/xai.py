"""xAI Grok provider using openai SDK (OpenAI-compatible API)."""

from tension.providers.base import LLMProvider
from tension.providers.openai_provider import OpenAIProvider


class XAIProvider(OpenAIProvider):
    """xAI Grok provider via OpenAI-compatible API."""

    provider_id = "xai"
    key_prefix = "xai-"

    # Grok has no ``n`` support; use the parallel fan-out.
    query_multiple = LLMProvider.query_multiple
