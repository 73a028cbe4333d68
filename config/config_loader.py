"""Load settings.yaml into typed dataclasses. Resolves API keys from the environment."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from tension.council import SAME_AS_MEMBERS, CouncilDefinition, CouncilMember
from tension.models import ProviderConfig
from tension.registry import PROVIDER_INFO, resolve_provider

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"


@dataclass
class PromptsConfig:
    evaluation: str
    synthesis: str
    planner_system: str
    planner_user: str
    merge: str
    branch_angle: str = "Answer with a different angle: {question}"
    strategies: dict[str, str] = field(default_factory=dict)
    roles: dict[str, str] = field(default_factory=dict)


@dataclass
class DefaultsConfig:
    council: str
    depth: int
    planner_model: str
    output_dir: Path


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    providers: dict[str, ProviderConfig]
    prompts: PromptsConfig
    councils: dict[str, CouncilDefinition] = field(default_factory=dict)
    available_providers: set[str] = field(default_factory=set)


def _parse_member(raw: dict) -> CouncilMember:
    model_id = str(raw["model"])
    return CouncilMember(
        model_id=model_id,
        provider=raw.get("provider") or resolve_provider(model_id),
        role=raw.get("role"),
    )


def _parse_council(council_id: str, raw: dict) -> CouncilDefinition:
    evaluators_raw = raw.get("evaluators", SAME_AS_MEMBERS)
    if evaluators_raw == SAME_AS_MEMBERS:
        evaluators: tuple[CouncilMember, ...] | str = SAME_AS_MEMBERS
    else:
        evaluators = tuple(_parse_member(m) for m in evaluators_raw)

    temperature = raw.get("temperature")
    max_tokens = raw.get("max_tokens")
    return CouncilDefinition(
        id=council_id,
        name=raw.get("name", council_id),
        description=raw.get("description", ""),
        members=tuple(_parse_member(m) for m in raw["members"]),
        chairman=_parse_member(raw["chairman"]),
        evaluators=evaluators,
        evaluation_strategy=raw.get("evaluation_strategy", "peer-review"),
        synthesis_strategy=raw.get("synthesis_strategy", "merge-best"),
        temperature=float(temperature) if temperature is not None else None,
        max_tokens=int(max_tokens) if max_tokens is not None else None,
        anonymize_responses=bool(raw.get("anonymize_responses", True)),
    )


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing.
    Missing API keys are logged, not raised. Callers check
    available_providers.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(
        council=str(defaults_raw["council"]),
        depth=int(defaults_raw["depth"]),
        planner_model=str(defaults_raw["planner_model"]),
        output_dir=Path(defaults_raw["output_dir"]),
    )

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        evaluation=prompts_raw["evaluation"],
        synthesis=prompts_raw["synthesis"],
        planner_system=prompts_raw["planner_system"],
        planner_user=prompts_raw["planner_user"],
        merge=prompts_raw["merge"],
        branch_angle=prompts_raw.get("branch_angle", "Answer with a different angle: {question}"),
        strategies={k: str(v) for k, v in raw.get("strategies", {}).items()},
        roles={k: str(v) for k, v in raw.get("roles", {}).items()},
    )

    providers: dict[str, ProviderConfig] = {}
    available_providers: set[str] = set()

    for provider_id, provider_raw in raw["providers"].items():
        provider_raw = provider_raw or {}
        key_env = provider_raw.get("api_key_env")
        api_key = os.environ.get(key_env, "").strip() if key_env else ""
        cfg = ProviderConfig(
            id=provider_id,
            name=provider_raw.get("name", PROVIDER_INFO.get(provider_id, {}).get("name", provider_id)),
            api_key=api_key,
            base_url=provider_raw.get("base_url"),
            is_enabled=bool(provider_raw.get("enabled", True)),
            timeout_sec=int(provider_raw.get("timeout_sec", 120)),
        )
        providers[provider_id] = cfg

        if not cfg.is_enabled:
            logger.info("Provider disabled in settings: %s", provider_id)
        elif api_key or not key_env:
            available_providers.add(provider_id)
            logger.info("Provider available: %s", provider_id)
        else:
            logger.info("Provider skipped (no API key): %s, set %s in .env", provider_id, key_env)

    councils = {cid: _parse_council(cid, c) for cid, c in raw.get("councils", {}).items()}

    return AppConfig(
        defaults=defaults,
        providers=providers,
        prompts=prompts,
        councils=councils,
        available_providers=available_providers,
    )
