"""Abstract base for all LLM provider adapters."""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from tension.models import (
    Choice,
    FinishReason,
    LLMMultiResponse,
    LLMRequest,
    LLMResponse,
    ModelInfo,
    ProviderConfig,
    ProviderId,
    Usage,
)
from tension.registry import PROVIDER_INFO, compute_cost, get_models_by_provider

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 4096


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str) -> None:
        self.provider_name = provider_name
        super().__init__(f"[{provider_name}] {message}")


@dataclass
class Completion:
    """Raw completion pulled out of a provider SDK response."""

    content: str
    input_tokens: int
    output_tokens: int
    finish_reason: FinishReason
    response_id: str | None = None


def error_response(
    model: str,
    provider: ProviderId,
    message: str,
    latency_ms: float = 0.0,
) -> LLMResponse:
    """Normalized error shape shared by adapters and the gateway."""
    return LLMResponse(
        model=model,
        provider=provider,
        content="",
        usage=Usage(),
        latency_ms=latency_ms,
        finish_reason="error",
        error=message,
    )


class LLMProvider(ABC):
    """One adapter per backend.

    Subclasses implement ``_build_client``, ``_complete`` and
    ``test_connection``. ``query`` never raises: SDK failures, HTTP errors and
    timeouts come back as ``finish_reason="error"`` responses.
    """

    provider_id: ProviderId
    key_prefix: str = ""
    requires_api_key: bool = True

    def __init__(self) -> None:
        self._config: ProviderConfig | None = None
        self._client: Any = None

    @property
    def display_name(self) -> str:
        return PROVIDER_INFO[self.provider_id]["name"]

    @property
    def base_url(self) -> str:
        if self._config and self._config.base_url:
            return self._config.base_url
        return PROVIDER_INFO[self.provider_id]["base_url"]

    @property
    def timeout_sec(self) -> float:
        return float(self._config.timeout_sec) if self._config else 120.0

    def configure(self, config: ProviderConfig) -> None:
        self._config = config
        self._client = self._build_client(config) if self.is_configured() else None

    def is_configured(self) -> bool:
        if not self.requires_api_key:
            return True
        if self._config is None:
            return False
        api_key = self._config.api_key.strip()
        return bool(api_key) and api_key.startswith(self.key_prefix)

    def get_available_models(self) -> list[ModelInfo]:
        return get_models_by_provider(self.provider_id)

    @abstractmethod
    def _build_client(self, config: ProviderConfig) -> Any:
        """Create the SDK/HTTP client for a configured provider."""
        ...

    @abstractmethod
    async def _complete(self, request: LLMRequest) -> Completion:
        """Send one completion request.

        Raises:
            ProviderError: On API failure or an unusable response.
        """
        ...

    @abstractmethod
    async def test_connection(self) -> bool:
        """Cheap authenticated call; True when the backend answers."""
        ...

    def _cost(self, model_id: str, input_tokens: int, output_tokens: int) -> float:
        return compute_cost(model_id, input_tokens, output_tokens)

    async def query(self, request: LLMRequest) -> LLMResponse:
        start = time.monotonic()
        try:
            completion = await asyncio.wait_for(self._complete(request), timeout=self.timeout_sec)
        except TimeoutError:
            message = f"[{self.display_name}] Request timed out after {self.timeout_sec:g}s"
            logger.warning("%s %s: %s", self.provider_id, request.model, message)
            return error_response(request.model, self.provider_id, message, (time.monotonic() - start) * 1000)
        except ProviderError as exc:
            logger.warning("%s %s failed: %s", self.provider_id, request.model, exc)
            return error_response(request.model, self.provider_id, str(exc), (time.monotonic() - start) * 1000)
        except Exception as exc:
            message = f"[{self.display_name}] API call failed: {exc}"
            logger.warning("%s %s unexpected failure: %s", self.provider_id, request.model, exc)
            return error_response(request.model, self.provider_id, message, (time.monotonic() - start) * 1000)

        latency_ms = (time.monotonic() - start) * 1000
        logger.info(
            "%s %s: %.2fs, %d tokens",
            self.display_name,
            request.model,
            latency_ms / 1000,
            completion.input_tokens + completion.output_tokens,
        )

        kwargs = {"id": completion.response_id} if completion.response_id else {}
        return LLMResponse(
            model=request.model,
            provider=self.provider_id,
            content=completion.content,
            usage=Usage(
                input_tokens=completion.input_tokens,
                output_tokens=completion.output_tokens,
                total_tokens=completion.input_tokens + completion.output_tokens,
                cost=self._cost(request.model, completion.input_tokens, completion.output_tokens),
            ),
            latency_ms=latency_ms,
            finish_reason=completion.finish_reason,
            **kwargs,
        )

    async def query_multiple(self, request: LLMRequest) -> LLMMultiResponse:
        """N completions for one request.

        Providers without a native ``n`` parameter fan out N parallel single
        queries; usage is summed and latency is the span of the batch.
        """
        n = request.n or 1
        start = time.monotonic()
        responses = await asyncio.gather(*(self.query(request) for _ in range(n)))
        latency_ms = (time.monotonic() - start) * 1000

        usage = Usage()
        for r in responses:
            usage.input_tokens += r.usage.input_tokens
            usage.output_tokens += r.usage.output_tokens
            usage.total_tokens += r.usage.total_tokens
            usage.cost += r.usage.cost

        return LLMMultiResponse(
            model=request.model,
            provider=self.provider_id,
            choices=[Choice(index=i, content=r.content, finish_reason=r.finish_reason)
                     for i, r in enumerate(responses)],
            usage=usage,
            latency_ms=latency_ms,
        )
