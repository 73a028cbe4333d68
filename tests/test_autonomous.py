"""Tests for tension/autonomous.py: scripted planner, branches and merges, no real API calls."""

import asyncio
import inspect
import json
import math

import pytest

from tension.autonomous import (
    ERROR_MARKER,
    AutonomousCouncil,
    branch_positions,
    extract_json_object,
    has_credential,
    merge_position,
    parse_planner_output,
)
from tension.council import ModelReference
from tension.gateway import LLMGateway
from tension.graph import Graph, GraphStore, Node
from tension.models import ProviderConfig
from tension.plan import CouncilAbortedError
from tension.providers.base import ProviderError
from tests.conftest import MockProvider, user_text

QUESTION = "How should we cache LLM responses?"

THREE_WAY = [
    ("openai", "gpt-4o"),
    ("anthropic", "claude-sonnet-4-20250514"),
    ("google", "gemini-2.0-flash"),
]


def _plan(branches=THREE_WAY, merge=("anthropic", "claude-sonnet-4-20250514"), cont=None) -> str:
    data = {
        "branches": [
            {"providerId": pid, "modelId": mid, "prompt": f"Angle {i + 1}: {mid}"}
            for i, (pid, mid) in enumerate(branches)
        ],
    }
    if merge:
        data["mergeModel"] = {"providerId": merge[0], "modelId": merge[1]}
    if cont is not None:
        data["continue"] = cont
    return f"Here is the plan:\n```json\n{json.dumps(data)}\n```"


class Script:
    """Replies for every provider: planner JSON, branch answers, merge output."""

    def __init__(self, plan, merge="Merged answer", branch_errors=None):
        self.plan = plan
        self.merge = merge
        self.branch_errors = branch_errors or {}
        self.planner_calls = []
        self.branch_calls = []
        self.merge_calls = []

    async def __call__(self, request):
        first = request.messages[0]
        if first.role == "system" and first.content.startswith("PLANNER"):
            self.planner_calls.append(request)
            return await self._resolve(self.plan, len(self.planner_calls) - 1)
        if user_text(request).startswith("MERGE"):
            self.merge_calls.append(request)
            return await self._resolve(self.merge, request)
        self.branch_calls.append(request)
        return self.branch_errors.get(request.model, f"{request.model} answer")

    @staticmethod
    async def _resolve(reply, arg):
        if callable(reply):
            reply = reply(arg)
            if inspect.isawaitable(reply):
                reply = await reply
        return reply


def _make(script, graph_store, prompts, configs=None, **kwargs):
    mocks = {pid: MockProvider(pid, default=script) for pid in ("openai", "anthropic", "google")}
    configs = configs if configs is not None else [
        ProviderConfig(id="openai", name="OpenAI", api_key="sk-test"),
        ProviderConfig(id="anthropic", name="Anthropic", api_key="sk-ant-test"),
        ProviderConfig(id="google", name="Google AI", api_key="g-test"),
    ]
    notes = []
    council = AutonomousCouncil(
        gateway=LLMGateway(mocks),
        graph_store=graph_store,
        providers=configs,
        prompts=prompts,
        notify=lambda message, kind: notes.append((message, kind)),
        **kwargs,
    )
    return council, notes, mocks


def _wave_nodes(graph: Graph, plan, wave: int) -> list[Node]:
    return [graph.find_node(b.node_id) for b in plan.wave_branches(wave)]


# --- full runs ---


async def test_single_wave_builds_branches_and_merge(graph_store, sample_prompts_config):
    script = Script(_plan(cont=False))
    council, notes, _ = _make(script, graph_store, sample_prompts_config)

    await council.start_autonomous_council("root", max_depth=1)

    graph = graph_store.graph
    plan = council.council_plan
    assert len(graph.nodes) == 5
    assert len(graph.connections) == 6
    assert plan.wave_count == 1
    assert [b.status for b in plan.branches] == ["done", "done", "done"]
    assert [m.status for m in plan.merges] == ["done"]
    assert notes == [("Autonomous council: done", "success")]
    assert not council.is_running

    branch_nodes = _wave_nodes(graph, plan, 0)
    assert [n.model_response for n in branch_nodes] == [
        "gpt-4o answer", "claude-sonnet-4-20250514 answer", "gemini-2.0-flash answer",
    ]
    assert all(not n.is_playing for n in branch_nodes)
    assert all(n.context == QUESTION for n in branch_nodes)
    assert [n.prompt for n in branch_nodes] == [
        "Angle 1: gpt-4o", "Angle 2: claude-sonnet-4-20250514", "Angle 3: gemini-2.0-flash",
    ]

    merge = plan.merges[0]
    merge_node = graph.find_node(merge.output_node_id)
    assert merge_node.type == "synthesis"
    assert merge_node.model_id == "claude-sonnet-4-20250514"
    assert merge_node.model_response == "Merged answer"
    assert merge.input_node_ids == tuple(n.id for n in branch_nodes)
    into_merge = [c for c in graph.connections if c.to_node_id == merge_node.id]
    assert {c.from_node_id for c in into_merge} == {n.id for n in branch_nodes}


async def test_branch_and_merge_positions(graph_store, sample_prompts_config):
    council, _, _ = _make(Script(_plan(cont=False)), graph_store, sample_prompts_config)

    await council.start_autonomous_council("root", max_depth=1)

    graph = graph_store.graph
    plan = council.council_plan
    nodes = _wave_nodes(graph, plan, 0)
    # Half circle of radius 620 to the right of the root at (100, 300)
    assert (nodes[0].x, nodes[0].y) == pytest.approx((410.0, 300 - 620 * math.sin(math.pi / 3)))
    assert (nodes[1].x, nodes[1].y) == pytest.approx((720.0, 300.0))
    assert (nodes[2].x, nodes[2].y) == pytest.approx((410.0, 300 + 620 * math.sin(math.pi / 3)))

    merge_node = graph.find_node(plan.merges[0].output_node_id)
    assert (merge_node.x, merge_node.y) == pytest.approx((1340.0, 300.0))


async def test_explicit_question_overrides_root_prompt(graph_store, sample_prompts_config):
    script = Script(_plan(cont=False))
    council, _, _ = _make(script, graph_store, sample_prompts_config)

    await council.start_autonomous_council("root", question="  Redis or Memcached?  ", max_depth=1)

    assert graph_store.graph.find_node("root").prompt == "Redis or Memcached?"
    assert user_text(script.planner_calls[0]).startswith("Question: Redis or Memcached?")


async def test_planner_prompt_lists_providers_and_models(graph_store, sample_prompts_config):
    script = Script(_plan(cont=False))
    council, _, mocks = _make(script, graph_store, sample_prompts_config)

    await council.start_autonomous_council("root", max_depth=3)

    planner = script.planner_calls[0]
    assert planner.model == "gpt-4o"
    assert planner in mocks["openai"].requests
    system = planner.messages[0].content
    assert "providers=openai, anthropic, google" in system
    assert "openai:gpt-4o" in system
    assert user_text(planner) == f"Question: {QUESTION}\nDepth: 0"


async def test_continue_false_stops_after_first_wave(graph_store, sample_prompts_config):
    script = Script(_plan(cont=False))
    council, _, _ = _make(script, graph_store, sample_prompts_config)

    await council.start_autonomous_council("root", max_depth=4)

    assert council.council_plan.wave_count == 1
    assert len(script.planner_calls) == 1


async def test_waves_chain_from_previous_merge(graph_store, sample_prompts_config):
    script = Script(_plan())  # no "continue" field: run every wave
    council, _, _ = _make(script, graph_store, sample_prompts_config)

    await council.start_autonomous_council("root", max_depth=2)

    graph = graph_store.graph
    plan = council.council_plan
    assert plan.wave_count == 2
    assert len(plan.merges) == 2
    first_merge = plan.merges[0].output_node_id
    assert all(b.source_node_id == first_merge for b in plan.wave_branches(1))
    wave2_ids = {b.node_id for b in plan.wave_branches(1)}
    assert {c.from_node_id for c in graph.connections if c.to_node_id in wave2_ids} == {first_merge}
    assert [user_text(r) for r in script.planner_calls][1].endswith("Depth: 1")
    # Wave-2 nodes take the previous merge prompt as context
    merge_prompt = graph.find_node(first_merge).prompt
    assert all(graph.find_node(i).context == merge_prompt for i in wave2_ids)


async def test_depth_is_clamped_to_six(graph_store, sample_prompts_config):
    script = Script(_plan(cont=True))
    council, _, _ = _make(script, graph_store, sample_prompts_config)

    await council.start_autonomous_council("root", max_depth=10)

    plan = council.council_plan
    assert plan.max_depth == 6
    assert plan.wave_count == 6
    assert len(plan.merges) == 6
    assert len(script.planner_calls) == 6


async def test_depth_below_one_runs_one_wave(graph_store, sample_prompts_config):
    script = Script(_plan(cont=True))
    council, _, _ = _make(script, graph_store, sample_prompts_config)

    await council.start_autonomous_council("root", max_depth=0)

    assert council.council_plan.wave_count == 1


async def test_branches_capped_at_five(graph_store, sample_prompts_config):
    seven = [("openai", "gpt-4o")] * 4 + [("anthropic", "claude-sonnet-4-20250514")] * 3
    script = Script(_plan(branches=seven, cont=False))
    council, _, _ = _make(script, graph_store, sample_prompts_config)

    await council.start_autonomous_council("root", max_depth=1)

    assert len(council.council_plan.branches) == 5
    assert len(script.branch_calls) == 5


async def test_thinking_steps_reported(graph_store, sample_prompts_config):
    council, _, _ = _make(Script(_plan(cont=False)), graph_store, sample_prompts_config)
    steps = []

    await council.start_autonomous_council("root", max_depth=1, on_thinking_step=steps.append)

    assert [s.stage for s in steps].count("divergence") == 3
    synthesis = [s for s in steps if s.stage == "synthesis"]
    assert len(synthesis) == 1
    assert synthesis[0].agent_id == "chairman"
    assert synthesis[0].output == "Merged answer"
    assert synthesis[0].node_id == council.council_plan.merges[0].output_node_id


# --- failures ---


async def test_branch_failure_does_not_stop_siblings(graph_store, sample_prompts_config):
    script = Script(
        _plan(cont=False),
        branch_errors={"gemini-2.0-flash": ProviderError("Google AI", "503 unavailable")},
    )
    council, notes, _ = _make(script, graph_store, sample_prompts_config)

    await council.start_autonomous_council("root", max_depth=1)

    plan = council.council_plan
    assert [b.status for b in plan.branches] == ["done", "done", "error"]
    failed = plan.branches[2]
    assert failed.error == "[Google AI] 503 unavailable"
    assert failed.finished_at is not None

    node = graph_store.graph.find_node(failed.node_id)
    assert node.model_response == f"{ERROR_MARKER} [Google AI] 503 unavailable"
    assert node.error == "[Google AI] 503 unavailable"
    assert not node.is_playing

    assert plan.merges[0].status == "done"
    merge_prompt = user_text(script.merge_calls[0])
    assert f"### Source 3 (google/gemini-2.0-flash)\n{ERROR_MARKER} [Google AI] 503 unavailable" in merge_prompt
    assert "### Source 1 (openai/gpt-4o)\ngpt-4o answer" in merge_prompt
    assert notes == [("Autonomous council: done", "success")]


async def test_merge_falls_back_to_first_successful_branch(graph_store, sample_prompts_config):
    script = Script(
        _plan(merge=("xai", "grok-3"), cont=False),
        branch_errors={"gpt-4o": ProviderError("OpenAI", "rate limited")},
    )
    council, _, _ = _make(script, graph_store, sample_prompts_config)

    await council.start_autonomous_council("root", max_depth=1)

    merge = council.council_plan.merges[0]
    assert merge.provider_id == "anthropic"
    assert graph_store.graph.find_node(merge.output_node_id).model_id == "claude-sonnet-4-20250514"
    assert script.merge_calls[0].model == "claude-sonnet-4-20250514"


async def test_merge_without_planned_model_uses_first_branch(graph_store, sample_prompts_config):
    council, _, _ = _make(Script(_plan(merge=None, cont=False)), graph_store, sample_prompts_config)

    await council.start_autonomous_council("root", max_depth=1)

    assert council.council_plan.merges[0].provider_id == "openai"


async def test_merge_error_is_shown_on_node(graph_store, sample_prompts_config):
    script = Script(_plan(cont=False), merge=ProviderError("Anthropic", "overloaded"))
    council, notes, _ = _make(script, graph_store, sample_prompts_config)

    await council.start_autonomous_council("root", max_depth=1)

    merge = council.council_plan.merges[0]
    assert merge.status == "error"
    assert merge.error == "[Anthropic] overloaded"
    node = graph_store.graph.find_node(merge.output_node_id)
    assert node.model_response.startswith(ERROR_MARKER)
    assert notes[-1] == ("Autonomous council: done", "success")


async def test_invalid_planner_json_falls_back_to_credentialed_models(graph_store, sample_prompts_config):
    script = Script("Sure! Here's my plan: {branches: [oops}")
    configs = [
        ProviderConfig(id="openai", name="OpenAI", api_key=""),
        ProviderConfig(id="anthropic", name="Anthropic", api_key="sk-ant-test"),
        ProviderConfig(id="google", name="Google AI", api_key="g-test", is_enabled=False),
    ]
    council, notes, mocks = _make(script, graph_store, sample_prompts_config, configs=configs)

    await council.start_autonomous_council("root", max_depth=3)

    plan = council.council_plan
    # Fallback continues only after the first wave
    assert plan.wave_count == 2
    assert {b.provider_id for b in plan.branches} == {"anthropic"}
    assert len(plan.wave_branches(0)) == 3
    assert mocks["openai"].requests == []
    assert mocks["google"].requests == []
    assert script.planner_calls[0].model == "claude-sonnet-4-20250514"

    prompts = [graph_store.graph.find_node(b.node_id).prompt for b in plan.wave_branches(0)]
    assert prompts[0] == QUESTION
    assert prompts[1:] == [f"Answer with a different angle: {QUESTION}"] * 2
    assert notes == [("Autonomous council: done", "success")]


async def test_planner_failure_uses_fallback(graph_store, sample_prompts_config):
    script = Script(ProviderError("OpenAI", "invalid key"))
    council, _, _ = _make(script, graph_store, sample_prompts_config)

    await council.start_autonomous_council("root", max_depth=1)

    plan = council.council_plan
    assert len(plan.branches) == 3
    assert plan.merges[0].status == "done"


async def test_no_credentials_reports_and_leaves_graph_alone(graph_store, sample_prompts_config):
    configs = [
        ProviderConfig(id="openai", name="OpenAI", api_key=""),
        ProviderConfig(id="anthropic", name="Anthropic", api_key="   "),
    ]
    script = Script("not json at all")
    council, notes, mocks = _make(script, graph_store, sample_prompts_config, configs=configs)
    before = graph_store.graph

    await council.start_autonomous_council("root", max_depth=2)

    assert notes == [("Configure at least one provider in settings", "error")]
    assert graph_store.graph is before
    assert not graph_store.can_undo
    assert council.council_plan is None
    assert all(m.requests == [] for m in mocks.values())


async def test_zero_viable_branches_halts_run(graph_store, sample_prompts_config):
    configs = [ProviderConfig(id="anthropic", name="Anthropic", api_key="sk-ant-test")]
    script = Script(_plan(branches=[("openai", "gpt-4o"), ("google", "gemini-2.0-flash")]))
    council, notes, _ = _make(script, graph_store, sample_prompts_config, configs=configs)
    before = graph_store.graph

    await council.start_autonomous_council("root", max_depth=2)

    assert notes == [("No models available, check API keys", "error")]
    assert graph_store.graph is before
    assert council.council_plan.wave_count == 0
    assert script.branch_calls == []
    assert not council.is_running


async def test_allowed_providers_restrict_branches(graph_store, sample_prompts_config):
    script = Script(_plan(cont=False))
    council, _, _ = _make(script, graph_store, sample_prompts_config, allowed_providers=["anthropic"])

    await council.start_autonomous_council("root", max_depth=1)

    assert [b.provider_id for b in council.council_plan.branches] == ["anthropic"]
    assert script.planner_calls[0].model == "claude-sonnet-4-20250514"
    assert "providers=anthropic " in script.planner_calls[0].messages[0].content


async def test_unknown_root_reports_error(graph_store, sample_prompts_config):
    council, notes, _ = _make(Script(_plan()), graph_store, sample_prompts_config)

    await council.start_autonomous_council("missing", max_depth=1)

    assert notes == [("Root node not found", "error")]
    assert council.council_plan is None


async def test_empty_question_reports_error(sample_prompts_config):
    store = GraphStore(present=Graph(nodes=(Node(id="root", prompt="   ", is_root=True),)))
    council, notes, _ = _make(Script(_plan()), store, sample_prompts_config)

    await council.start_autonomous_council("root", max_depth=1)

    assert notes == [("Enter a question first", "error")]


async def test_root_context_used_when_prompt_empty(sample_prompts_config):
    store = GraphStore(present=Graph(nodes=(Node(id="root", context="Context question", is_root=True),)))
    script = Script(_plan(cont=False))
    council, _, _ = _make(script, store, sample_prompts_config)

    await council.start_autonomous_council("root", max_depth=1)

    assert store.graph.find_node("root").prompt == "Context question"


async def test_unexpected_error_is_reported_and_raised(graph_store, sample_prompts_config):
    sample_prompts_config.merge = "MERGE {question} {missing_placeholder}"
    council, notes, _ = _make(Script(_plan(cont=False)), graph_store, sample_prompts_config)

    with pytest.raises(KeyError):
        await council.start_autonomous_council("root", max_depth=1)

    assert notes == [("Autonomous council: error", "error")]
    assert not council.is_running


# --- cancellation ---


async def test_abort_during_merge_keeps_last_observed_state(graph_store, sample_prompts_config):
    holder = {}

    def merge_then_abort(request):
        holder["council"].abort_autonomous_council("user_stop")
        return "Merged answer"

    script = Script(_plan(cont=True), merge=merge_then_abort)
    council, notes, _ = _make(script, graph_store, sample_prompts_config)
    holder["council"] = council

    with pytest.raises(CouncilAbortedError) as excinfo:
        await council.start_autonomous_council("root", max_depth=3)

    assert excinfo.value.reason == "user_stop"
    plan = council.council_plan
    assert plan.wave_count == 1
    assert [b.status for b in plan.branches] == ["done", "done", "done"]
    assert plan.merges[0].status == "running"
    merge_node = graph_store.graph.find_node(plan.merges[0].output_node_id)
    assert merge_node.model_response is None
    assert merge_node.is_playing
    assert len(script.planner_calls) == 1
    assert not any(kind == "error" for _, kind in notes)
    assert not council.is_running


async def test_abort_during_planning_creates_no_nodes(graph_store, sample_prompts_config):
    holder = {}

    def plan_then_abort(depth):
        holder["council"].abort_autonomous_council("user_stop")
        return _plan()

    council, notes, _ = _make(Script(plan_then_abort), graph_store, sample_prompts_config)
    holder["council"] = council
    before = graph_store.graph

    with pytest.raises(CouncilAbortedError):
        await council.start_autonomous_council("root", max_depth=2)

    assert graph_store.graph is before
    assert council.council_plan.wave_count == 0
    assert notes == []


async def test_switch_chat_aborts_and_keeps_plans_per_chat(graph_store, sample_prompts_config):
    holder = {}

    def merge_then_switch(request):
        holder["council"].switch_chat("chat-b")
        return "Merged answer"

    script = Script(_plan(cont=True), merge=merge_then_switch)
    council, _, _ = _make(script, graph_store, sample_prompts_config, chat_id="chat-a")
    holder["council"] = council

    with pytest.raises(CouncilAbortedError) as excinfo:
        await council.start_autonomous_council("root", max_depth=2)

    assert excinfo.value.reason == "chat_switch"
    assert council.chat_id == "chat-b"
    assert council.council_plan is None

    council.switch_chat("chat-a")
    plan = council.council_plan
    assert plan.wave_count == 1
    assert plan.merges[0].status == "running"


async def test_restart_aborts_run_in_flight(graph_store, sample_prompts_config):
    planner_started = asyncio.Event()
    release = asyncio.Event()

    async def plan(depth):
        if not planner_started.is_set():
            planner_started.set()
            await release.wait()
        return _plan(cont=False)

    council, notes, _ = _make(Script(plan), graph_store, sample_prompts_config)

    first = asyncio.create_task(council.start_autonomous_council("root", max_depth=1))
    await planner_started.wait()
    await council.start_autonomous_council("root", max_depth=1)
    release.set()

    with pytest.raises(CouncilAbortedError) as excinfo:
        await first
    assert excinfo.value.reason == "restart"
    assert council.council_plan.wave_count == 1
    assert notes == [("Autonomous council: done", "success")]


async def test_reset_clears_current_plan(graph_store, sample_prompts_config):
    council, _, _ = _make(Script(_plan(cont=False)), graph_store, sample_prompts_config)
    await council.start_autonomous_council("root", max_depth=1)
    assert council.council_plan is not None

    council.reset_autonomous_council()

    assert council.council_plan is None


def test_abort_without_run_is_noop(graph_store, sample_prompts_config):
    council, _, _ = _make(Script(_plan()), graph_store, sample_prompts_config)
    council.abort_autonomous_council("user_stop")
    assert not council.is_running


# --- planner output parsing ---


def test_extract_json_object_skips_prose_and_string_braces():
    text = 'Plan: {"a": "x}y", "b": {"c": 1}} and later {"z": 2}'
    assert extract_json_object(text) == '{"a": "x}y", "b": {"c": 1}}'


def test_extract_json_object_handles_escaped_quotes():
    text = r'{"a": "say \"}\" twice"} tail'
    assert extract_json_object(text) == r'{"a": "say \"}\" twice"}'


def test_extract_json_object_unbalanced():
    assert extract_json_object("{ never closed") is None
    assert extract_json_object("no braces") is None


def test_parse_planner_output_full():
    result = parse_planner_output(_plan(cont=False))

    assert [b.model_id for b in result.branches] == [m for _, m in THREE_WAY]
    assert result.merge_model == ModelReference(provider="anthropic", model_id="claude-sonnet-4-20250514")
    assert result.continue_ is False


def test_parse_planner_output_resolves_missing_provider():
    text = json.dumps({"branches": [
        {"modelId": "claude-3-5-haiku-20241022", "prompt": "a"},
        {"providerId": "bogus", "modelId": "meta-llama/llama-3-70b", "prompt": "b"},
    ]})
    result = parse_planner_output(text)

    assert [b.provider_id for b in result.branches] == ["anthropic", "openrouter"]
    assert result.merge_model is None
    assert result.continue_ is None


def test_parse_planner_output_skips_incomplete_branches():
    text = json.dumps({
        "branches": [
            {"providerId": "openai", "modelId": "gpt-4o"},
            {"providerId": "openai", "modelId": "", "prompt": "x"},
            {"providerId": "openai", "modelId": "gpt-4o", "prompt": "   "},
            "garbage",
            {"providerId": "openai", "modelId": "gpt-4o-mini", "prompt": "keep me"},
        ],
        "continue": "yes",
    })
    result = parse_planner_output(text)

    assert [b.model_id for b in result.branches] == ["gpt-4o-mini"]
    assert result.continue_ is None


@pytest.mark.parametrize(
    "text",
    [
        "no json here",
        "{branches: [oops}",
        '{"branches": []}',
        '{"branches": "gpt-4o"}',
        '{"branches": [{"modelId": "gpt-4o"}]}',
    ],
)
def test_parse_planner_output_unusable(text):
    assert parse_planner_output(text) is None


# --- helpers ---


def test_has_credential():
    providers = {
        "openai": ProviderConfig(id="openai", name="OpenAI", api_key="sk-1"),
        "anthropic": ProviderConfig(id="anthropic", name="Anthropic", api_key="sk-2", is_enabled=False),
        "google": ProviderConfig(id="google", name="Google AI", api_key="  "),
        "ollama": ProviderConfig(id="ollama", name="Ollama"),
    }
    assert has_credential(providers, "openai")
    assert not has_credential(providers, "anthropic")
    assert not has_credential(providers, "google")
    assert has_credential(providers, "ollama")
    assert not has_credential(providers, "xai")


def test_single_branch_sits_straight_right():
    parent = Node(id="p", x=0.0, y=0.0)
    [(x, y)] = branch_positions(parent, 1)
    assert x == pytest.approx(620.0)
    assert y == pytest.approx(0.0)


def test_branch_positions_are_symmetric():
    parent = Node(id="p", x=50.0, y=100.0)
    positions = branch_positions(parent, 4)
    ys = [y - 100.0 for _, y in positions]
    assert ys[0] == pytest.approx(-ys[3])
    assert ys[1] == pytest.approx(-ys[2])
    assert all(x > 50.0 for x, _ in positions)


def test_merge_position_without_branches():
    parent = Node(id="p", x=10.0, y=20.0)
    assert merge_position(parent, []) == (1250.0, 720.0)
