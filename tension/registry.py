"""Static model registry: pricing, context sizes, provider resolution."""

from tension.models import ModelInfo, ProviderId

_TEXT_CODE = ("text", "code")

MODELS: tuple[ModelInfo, ...] = (
    # OpenAI
    ModelInfo("gpt-4o", "GPT-4o", "openai", 128000, 16384, 0.0025, 0.01,
              ("text", "code", "vision", "reasoning"), is_default=True),
    ModelInfo("gpt-4o-mini", "GPT-4o Mini", "openai", 128000, 16384, 0.00015, 0.0006,
              ("text", "code", "vision")),
    ModelInfo("gpt-4-turbo", "GPT-4 Turbo", "openai", 128000, 4096, 0.01, 0.03,
              ("text", "code", "vision", "reasoning")),
    ModelInfo("gpt-4.1", "GPT-4.1", "openai", 1000000, 32768, 0.002, 0.008,
              ("text", "code", "reasoning", "long-context")),
    ModelInfo("o1", "o1 (Reasoning)", "openai", 200000, 100000, 0.015, 0.06,
              ("text", "code", "reasoning")),
    ModelInfo("o1-mini", "o1 Mini", "openai", 128000, 65536, 0.003, 0.012,
              ("text", "code", "reasoning")),
    # Anthropic
    ModelInfo("claude-sonnet-4-20250514", "Claude Sonnet 4", "anthropic", 200000, 64000, 0.003, 0.015,
              ("text", "code", "vision", "reasoning", "long-context"), is_default=True),
    ModelInfo("claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet", "anthropic", 200000, 8192, 0.003, 0.015,
              ("text", "code", "vision", "reasoning", "long-context")),
    ModelInfo("claude-3-5-haiku-20241022", "Claude 3.5 Haiku", "anthropic", 200000, 8192, 0.0008, 0.004,
              ("text", "code", "vision")),
    ModelInfo("claude-3-opus-20240229", "Claude 3 Opus", "anthropic", 200000, 4096, 0.015, 0.075,
              ("text", "code", "vision", "reasoning", "long-context")),
    # Google
    ModelInfo("gemini-2.0-flash", "Gemini 2.0 Flash", "google", 1000000, 8192, 0.0, 0.0,
              ("text", "code", "vision", "long-context"), is_default=True),
    ModelInfo("gemini-2.0-pro", "Gemini 2.0 Pro", "google", 2000000, 8192, 0.00125, 0.005,
              ("text", "code", "vision", "reasoning", "long-context")),
    ModelInfo("gemini-1.5-pro", "Gemini 1.5 Pro", "google", 2000000, 8192, 0.00125, 0.005,
              ("text", "code", "vision", "reasoning", "long-context")),
    # xAI
    ModelInfo("grok-3", "Grok 3", "xai", 131072, 131072, 0.003, 0.015,
              ("text", "code", "reasoning"), is_default=True),
    ModelInfo("grok-3-fast", "Grok 3 Fast", "xai", 131072, 131072, 0.0005, 0.0025, _TEXT_CODE),
    # Ollama (local, free)
    ModelInfo("llama3.3:70b", "Llama 3.3 70B", "ollama", 128000, 4096, 0.0, 0.0,
              ("text", "code", "reasoning")),
    ModelInfo("llama3.2:latest", "Llama 3.2", "ollama", 128000, 4096, 0.0, 0.0, _TEXT_CODE),
    ModelInfo("mistral:latest", "Mistral", "ollama", 32000, 4096, 0.0, 0.0, _TEXT_CODE),
    ModelInfo("codellama:latest", "CodeLlama", "ollama", 16000, 4096, 0.0, 0.0, ("code",)),
)

PROVIDER_INFO: dict[ProviderId, dict[str, str]] = {
    "openai": {"name": "OpenAI", "base_url": "https://api.openai.com/v1"},
    "anthropic": {"name": "Anthropic", "base_url": "https://api.anthropic.com"},
    "google": {"name": "Google AI", "base_url": "https://generativelanguage.googleapis.com"},
    "xai": {"name": "xAI", "base_url": "https://api.x.ai/v1"},
    "openrouter": {"name": "OpenRouter", "base_url": "https://openrouter.ai/api/v1"},
    "ollama": {"name": "Ollama (Local)", "base_url": "http://localhost:11434"},
}

# OpenRouter vendor prefixes for registry providers
OPENROUTER_VENDORS: dict[str, str] = {
    "openai": "openai",
    "anthropic": "anthropic",
    "google": "google",
    "xai": "x-ai",
}


def get_all_models() -> list[ModelInfo]:
    return list(MODELS)


def get_models_by_provider(provider_id: ProviderId) -> list[ModelInfo]:
    return [m for m in MODELS if m.provider == provider_id]


def find_model(model_id: str) -> ModelInfo | None:
    return next((m for m in MODELS if m.id == model_id), None)


def get_default_model(provider_id: ProviderId) -> ModelInfo | None:
    models = get_models_by_provider(provider_id)
    return next((m for m in models if m.is_default), models[0] if models else None)


def detect_provider(model_id: str) -> ProviderId:
    """Guess the provider from naming conventions when the registry has no entry."""
    if model_id.startswith(("gpt-", "o1")):
        return "openai"
    if model_id.startswith("claude-"):
        return "anthropic"
    if model_id.startswith("gemini-"):
        return "google"
    if model_id.startswith("grok-"):
        return "xai"
    if "/" in model_id:
        return "openrouter"
    return "ollama"


def resolve_provider(model_id: str) -> ProviderId:
    model = find_model(model_id)
    return model.provider if model else detect_provider(model_id)


def compute_cost(model_id: str, input_tokens: int, output_tokens: int) -> float:
    """USD cost from the per-1k price table. Unknown models cost 0."""
    model = find_model(model_id)
    if model is None:
        return 0.0
    return (input_tokens / 1000) * model.cost_per_1k_input + (output_tokens / 1000) * model.cost_per_1k_output
