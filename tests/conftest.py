"""Shared pytest fixtures."""

import asyncio
import inspect
from pathlib import Path

import pytest

from config.config_loader import AppConfig, DefaultsConfig, PromptsConfig
from tension.council import CouncilDefinition, CouncilMember
from tension.engine import EVALUATION_TEMPERATURE, SYNTHESIS_TEMPERATURE
from tension.gateway import LLMGateway
from tension.graph import Graph, GraphStore, Node
from tension.models import LLMRequest, ProviderConfig
from tension.providers.base import Completion, LLMProvider

CLEAN_EVALUATION = """RANKING:
1. Response A - most complete
2. Response B - solid
3. Response C - thin

SCORES:
A: 90
B: 70
C: 50
"""


class MockProvider(LLMProvider):
    """Scripted LLMProvider test double.

    ``responses`` maps model id to a reply: a string, an exception to raise,
    or a (sync or async) callable taking the LLMRequest. Every request is
    recorded in ``requests``.
    """

    def __init__(
        self,
        provider_id: str = "openai",
        responses: dict | None = None,
        default="Mock response",
        configured: bool = True,
        tokens: tuple[int, int] = (10, 20),
    ) -> None:
        super().__init__()
        self.provider_id = provider_id
        self.responses = dict(responses or {})
        self.default = default
        self.configured = configured
        self.tokens = tokens
        self.requests: list[LLMRequest] = []

    def is_configured(self) -> bool:
        return self.configured

    def _build_client(self, config: ProviderConfig) -> None:
        return None

    async def _complete(self, request: LLMRequest) -> Completion:
        self.requests.append(request)
        reply = self.responses.get(request.model, self.default)
        if callable(reply):
            reply = reply(request)
            if inspect.isawaitable(reply):
                reply = await reply
        if isinstance(reply, Exception):
            raise reply
        return Completion(
            content=reply,
            input_tokens=self.tokens[0],
            output_tokens=self.tokens[1],
            finish_reason="stop",
        )

    async def test_connection(self) -> bool:
        return self.configured


def staged(answer: str, evaluation: str = CLEAN_EVALUATION, synthesis: str = "Final answer."):
    """Reply by council stage, told apart by the request temperature."""

    def reply(request: LLMRequest) -> str:
        if request.temperature == EVALUATION_TEMPERATURE:
            return evaluation
        if request.temperature == SYNTHESIS_TEMPERATURE:
            return synthesis
        return answer

    return reply


def rendezvous(count: int, reply="Together"):
    """Async reply that returns only once ``count`` calls have started.

    A batch that awaits its calls one by one never gets there, so callers wrap
    the batch in ``asyncio.wait_for``.
    """
    arrived = 0
    gate = asyncio.Event()

    async def wait(request: LLMRequest) -> str:
        nonlocal arrived
        arrived += 1
        if arrived >= count:
            gate.set()
        await gate.wait()
        return reply(request) if callable(reply) else reply

    return wait


def delayed(seconds: float, reply="Slow answer"):
    async def wait(request: LLMRequest) -> str:
        await asyncio.sleep(seconds)
        return reply(request) if callable(reply) else reply

    return wait


def user_text(request: LLMRequest) -> str:
    return next(m.content for m in request.messages if m.role == "user")


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        evaluation="Question: {question}\n\n{responses}\n\nRank them.",
        synthesis=(
            "Question: {question}\n\n{ranked_responses}\n\n"
            "Agreement: {agreement}%\n\nTask: {instructions}"
        ),
        planner_system="PLANNER providers={providers} models={models}",
        planner_user="Question: {question}\nDepth: {depth}",
        merge="MERGE {question}\n\nSources:\n{sources}",
        branch_angle="Answer with a different angle: {question}",
        strategies={
            "merge-best": "Merge the best insights.",
            "debate-resolve": "Resolve the debate.",
            "weighted-average": "Weight by score.",
        },
        roles={"pro": "Argue for it.", "contra": "Argue against it."},
    )


@pytest.fixture
def sample_defaults_config(tmp_path: Path) -> DefaultsConfig:
    return DefaultsConfig(
        council="trio",
        depth=2,
        planner_model="gpt-4o",
        output_dir=tmp_path / "output",
    )


@pytest.fixture
def sample_council() -> CouncilDefinition:
    return CouncilDefinition(
        id="trio",
        name="Trio Council",
        members=(
            CouncilMember("gpt-4o", "openai"),
            CouncilMember("claude-sonnet-4-20250514", "anthropic"),
            CouncilMember("gemini-2.0-flash", "google"),
        ),
        chairman=CouncilMember("gpt-4o", "openai"),
    )


@pytest.fixture
def sample_app_config(
    sample_defaults_config: DefaultsConfig,
    sample_prompts_config: PromptsConfig,
    sample_council: CouncilDefinition,
) -> AppConfig:
    return AppConfig(
        defaults=sample_defaults_config,
        providers={
            "openai": ProviderConfig(id="openai", name="OpenAI", api_key="sk-test"),
            "anthropic": ProviderConfig(id="anthropic", name="Anthropic", api_key="sk-ant-test"),
        },
        prompts=sample_prompts_config,
        councils={"trio": sample_council},
        available_providers={"openai", "anthropic"},
    )


@pytest.fixture
def provider_configs() -> list[ProviderConfig]:
    return [
        ProviderConfig(id="openai", name="OpenAI", api_key="sk-test"),
        ProviderConfig(id="anthropic", name="Anthropic", api_key="sk-ant-test"),
        ProviderConfig(id="google", name="Google AI", api_key="g-test"),
    ]


@pytest.fixture
def three_mock_providers() -> dict[str, MockProvider]:
    return {
        "openai": MockProvider("openai"),
        "anthropic": MockProvider("anthropic"),
        "google": MockProvider("google"),
    }


@pytest.fixture
def mock_gateway(three_mock_providers: dict[str, MockProvider]) -> LLMGateway:
    return LLMGateway(three_mock_providers)


@pytest.fixture
def root_node() -> Node:
    return Node(id="root", x=100.0, y=300.0, prompt="How should we cache LLM responses?", is_root=True)


@pytest.fixture
def graph_store(root_node: Node) -> GraphStore:
    return GraphStore(present=Graph(nodes=(root_node,)))
