"""Unified query interface over all provider adapters."""

import asyncio
import logging
import time

from tension.models import (
    LLMMultiResponse,
    LLMRequest,
    LLMResponse,
    Message,
    ModelInfo,
    ParallelQueryResult,
    ProviderConfig,
    ProviderId,
    ProviderStatus,
    QueryError,
)
from tension.providers.anthropic import AnthropicProvider
from tension.providers.base import LLMProvider, ProviderError, error_response
from tension.providers.gemini import GeminiProvider
from tension.providers.ollama import OllamaProvider
from tension.providers.openai_provider import OpenAIProvider
from tension.providers.openrouter import OpenRouterProvider
from tension.providers.xai import XAIProvider
from tension.registry import PROVIDER_INFO, resolve_provider

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[ProviderId, type[LLMProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "google": GeminiProvider,
    "xai": XAIProvider,
    "openrouter": OpenRouterProvider,
    "ollama": OllamaProvider,
}


class LLMGateway:
    """Routes requests to the adapter that owns the model.

    Construct one per application and pass it to the engines; tests build
    their own with scripted providers.
    """

    def __init__(self, providers: dict[ProviderId, LLMProvider] | None = None) -> None:
        if providers is None:
            providers = {pid: cls() for pid, cls in PROVIDER_CLASSES.items()}
        self._providers = dict(providers)
        self._configs: dict[ProviderId, ProviderConfig] = {}

    def configure_provider(self, config: ProviderConfig) -> None:
        provider = self._providers.get(config.id)
        if provider is None:
            logger.warning("No adapter for provider '%s', skipping", config.id)
            return
        provider.configure(config)
        self._configs[config.id] = config

    def configure_providers(self, configs: list[ProviderConfig]) -> None:
        for config in configs:
            self.configure_provider(config)

    def get_provider(self, provider_id: ProviderId) -> LLMProvider | None:
        return self._providers.get(provider_id)

    def get_provider_status(self, provider_id: ProviderId) -> ProviderStatus:
        provider = self._providers.get(provider_id)
        config = self._configs.get(provider_id)
        return ProviderStatus(
            id=provider_id,
            is_configured=provider.is_configured() if provider else False,
            is_connected=config.is_enabled if config else False,
            available_models=provider.get_available_models() if provider else [],
        )

    def get_all_provider_statuses(self) -> list[ProviderStatus]:
        return [self.get_provider_status(pid) for pid in self._providers]

    def get_available_models(self) -> list[ModelInfo]:
        """Models of configured providers only."""
        models: list[ModelInfo] = []
        for provider in self._providers.values():
            if provider.is_configured():
                models.extend(provider.get_available_models())
        return models

    def _resolve(self, model_id: str) -> tuple[ProviderId, LLMProvider | None]:
        provider_id = resolve_provider(model_id)
        return provider_id, self._providers.get(provider_id)

    async def query(self, request: LLMRequest) -> LLMResponse:
        """Query one model. Never raises; failures come back as error responses."""
        provider_id, provider = self._resolve(request.model)

        if provider is None:
            return error_response(request.model, provider_id, f"No adapter found for provider: {provider_id}")

        if not provider.is_configured():
            name = PROVIDER_INFO[provider_id]["name"]
            return error_response(
                request.model,
                provider_id,
                f"Provider {name} is not configured. Please add an API key in settings.",
            )

        try:
            return await provider.query(request)
        except Exception as exc:
            logger.warning("Provider %s raised out of query: %s", provider_id, exc)
            return error_response(request.model, provider_id, str(exc) or type(exc).__name__)

    async def query_multiple(self, request: LLMRequest) -> LLMMultiResponse:
        """N completions from one model.

        Raises:
            ProviderError: If the provider is unknown or not configured, or the
                native multi-completion call fails.
        """
        provider_id, provider = self._resolve(request.model)
        if provider is None or not provider.is_configured():
            raise ProviderError(provider_id, f"Provider {provider_id} is not configured")
        return await provider.query_multiple(request)

    async def query_parallel(
        self,
        models: list[str],
        prompt: str,
        system_prompt: str | None = None,
    ) -> ParallelQueryResult:
        """Fan one prompt out to several models and wait for every answer."""
        messages: list[Message] = []
        if system_prompt:
            messages.append(Message(role="system", content=system_prompt))
        messages.append(Message(role="user", content=prompt))

        start = time.monotonic()
        responses = await asyncio.gather(
            *(self.query(LLMRequest(model=model, messages=list(messages))) for model in models)
        )
        total_latency_ms = (time.monotonic() - start) * 1000

        errors = [
            QueryError(model=r.model, error=r.error or "Unknown error")
            for r in responses
            if r.finish_reason == "error"
        ]
        if errors:
            logger.info("Parallel query: %d/%d models failed", len(errors), len(models))

        return ParallelQueryResult(
            responses=list(responses),
            total_latency_ms=total_latency_ms,
            total_cost=sum(r.usage.cost for r in responses),
            errors=errors,
        )

    async def test_provider(self, provider_id: ProviderId) -> bool:
        provider = self._providers.get(provider_id)
        if provider is None:
            return False
        return await provider.test_connection()
