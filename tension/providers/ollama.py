"""Ollama provider for local models over its HTTP API. No API key."""

import logging

import httpx

from tension.models import LLMRequest, ModelInfo, ProviderConfig
from tension.providers.base import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    Completion,
    LLMProvider,
    ProviderError,
)

logger = logging.getLogger(__name__)


class OllamaProvider(LLMProvider):
    """Local Ollama server. Always configured; reachability is checked by test_connection.

    Each call opens and closes its own ``httpx.AsyncClient``; the provider holds
    no connection between calls.
    """

    provider_id = "ollama"
    requires_api_key = False

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        super().__init__()
        self._transport = transport
        self._installed: list[ModelInfo] = []

    def _build_client(self, config: ProviderConfig) -> None:
        return None

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url.rstrip("/"),
            timeout=self.timeout_sec,
            transport=self._transport,
        )

    def get_available_models(self) -> list[ModelInfo]:
        return self._installed or super().get_available_models()

    async def test_connection(self) -> bool:
        try:
            async with self._http() as client:
                resp = await client.get("/api/tags")
                resp.raise_for_status()
            models = resp.json().get("models", [])
        except (httpx.HTTPError, ValueError) as exc:
            logger.info("Ollama not reachable at %s: %s", self.base_url, exc)
            return False

        self._installed = [
            ModelInfo(
                id=m["name"],
                name=m["name"],
                provider="ollama",
                context_window=128000,
                max_output_tokens=4096,
                cost_per_1k_input=0.0,
                cost_per_1k_output=0.0,
                capabilities=("text", "code"),
            )
            for m in models
        ]
        return True

    async def _complete(self, request: LLMRequest) -> Completion:
        payload = {
            "model": request.model,
            "messages": [{"role": m.role, "content": m.content} for m in request.messages],
            "stream": False,
            "options": {
                "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
                "num_predict": request.max_tokens or DEFAULT_MAX_TOKENS,
            },
        }
        try:
            async with self._http() as client:
                resp = await client.post("/api/chat", json=payload)
        except httpx.HTTPError as exc:
            raise ProviderError(self.display_name, f"Ollama not reachable: {exc}") from exc

        if resp.is_error:
            raise ProviderError(self.display_name, f"Ollama error: {resp.status_code} - {resp.text}")

        data = resp.json()
        return Completion(
            content=(data.get("message") or {}).get("content", ""),
            input_tokens=data.get("prompt_eval_count", 0),
            output_tokens=data.get("eval_count", 0),
            finish_reason="stop" if data.get("done") else "length",
        )
