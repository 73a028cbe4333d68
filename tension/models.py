"""Pure dataclasses for the LLM gateway. No logic, no deps."""

import uuid
from dataclasses import dataclass, field
from typing import Literal

ProviderId = Literal["openai", "anthropic", "google", "xai", "openrouter", "ollama"]
FinishReason = Literal["stop", "length", "error"]
Role = Literal["system", "user", "assistant"]

PROVIDER_IDS: tuple[ProviderId, ...] = ("openai", "anthropic", "google", "xai", "openrouter", "ollama")


@dataclass
class ProviderConfig:
    id: ProviderId
    name: str
    api_key: str = ""
    base_url: str | None = None
    is_enabled: bool = True
    timeout_sec: int = 120


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    provider: ProviderId
    context_window: int
    max_output_tokens: int
    cost_per_1k_input: float   # USD
    cost_per_1k_output: float  # USD
    capabilities: tuple[str, ...] = ()
    is_default: bool = False


@dataclass(frozen=True)
class Message:
    role: Role
    content: str


@dataclass
class LLMRequest:
    model: str
    messages: list[Message]
    temperature: float | None = None
    max_tokens: int | None = None
    n: int | None = None  # completions for query_multiple


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0


@dataclass
class LLMResponse:
    model: str
    provider: ProviderId
    content: str
    usage: Usage
    latency_ms: float
    finish_reason: FinishReason
    error: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class Choice:
    index: int
    content: str
    finish_reason: FinishReason


@dataclass
class LLMMultiResponse:
    model: str
    provider: ProviderId
    choices: list[Choice]
    usage: Usage
    latency_ms: float
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class QueryError:
    model: str
    error: str


@dataclass
class ParallelQueryResult:
    responses: list[LLMResponse]
    total_latency_ms: float  # wall-clock span of the batch
    total_cost: float
    errors: list[QueryError] = field(default_factory=list)


@dataclass
class ProviderStatus:
    id: ProviderId
    is_configured: bool
    is_connected: bool
    available_models: list[ModelInfo] = field(default_factory=list)
    last_error: str | None = None
