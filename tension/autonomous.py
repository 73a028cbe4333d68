"""Autonomous multi-wave council.

Each wave asks a planner model for a set of branch prompts, materializes
one graph node per branch around the current entry node, queries every
branch in parallel, then merges the answers on a chairman node that becomes
the entry point of the next wave.
"""

import asyncio
import json
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any, Literal

from config.config_loader import PromptsConfig
from tension.council import CouncilThinkingStep, ModelReference
from tension.gateway import LLMGateway
from tension.graph import NODE_GAP_X, NODE_HEIGHT, NODE_WIDTH, Connection, GraphStore, Node, new_id
from tension.models import PROVIDER_IDS, LLMRequest, Message, ModelInfo, ProviderConfig, ProviderId, Usage
from tension.plan import (
    MAX_BRANCHES,
    AbortController,
    AbortReason,
    CouncilAbortedError,
    CouncilBranch,
    CouncilMerge,
    WavePlan,
    clamp_depth,
    with_branch_status,
    with_merge_status,
)
from tension.registry import resolve_provider

logger = logging.getLogger(__name__)

ToastType = Literal["success", "error", "info", "warning"]
Notify = Callable[[str, ToastType], None]
ThinkingStepCallback = Callable[[CouncilThinkingStep], None]

DEFAULT_PLANNER_MODEL = "gpt-4o"
_FALLBACK_MERGE = ModelReference(provider="openai", model_id=DEFAULT_PLANNER_MODEL)
_PLANNER_SAMPLE_SIZE = 24
_FALLBACK_BRANCHES = 3
ERROR_MARKER = "⚠️"


@dataclass(frozen=True)
class PlannedBranch:
    provider_id: ProviderId
    model_id: str
    prompt: str


@dataclass
class PlannerResult:
    branches: list[PlannedBranch]
    merge_model: ModelReference | None = None
    continue_: bool | None = None


@dataclass
class PhaseMetric:
    kind: Literal["planner", "branch", "merge"]
    wave: int
    provider_id: ProviderId | None = None
    model_id: str | None = None
    node_id: str | None = None
    latency_ms: float = 0.0
    usage: Usage = field(default_factory=Usage)
    error: str | None = None


@dataclass(frozen=True)
class _BranchOutcome:
    provider_id: ProviderId
    model_id: str
    content: str
    ok: bool


def extract_json_object(text: str) -> str | None:
    """First balanced ``{...}`` substring, skipping braces inside JSON strings.

    Best-effort: planner output is free text and carries no format guarantee.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
            elif ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        start = text.find("{", start + 1)
    return None


def _model_ref(raw: Any) -> ModelReference | None:
    if not isinstance(raw, dict) or not isinstance(raw.get("modelId"), str) or not raw["modelId"]:
        return None
    provider = raw.get("providerId")
    if provider not in PROVIDER_IDS:
        provider = resolve_provider(raw["modelId"])
    return ModelReference(provider=provider, model_id=raw["modelId"])


def parse_planner_output(text: str) -> PlannerResult | None:
    """Planner JSON to a PlannerResult, or None when unusable (no JSON, bad JSON, no branches)."""
    candidate = extract_json_object(text)
    if candidate is None:
        return None
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or not isinstance(data.get("branches"), list):
        return None

    branches: list[PlannedBranch] = []
    for raw in data["branches"]:
        ref = _model_ref(raw)
        if ref is None or not isinstance(raw.get("prompt"), str) or not raw["prompt"].strip():
            continue
        branches.append(PlannedBranch(provider_id=ref.provider, model_id=ref.model_id, prompt=raw["prompt"]))
    if not branches:
        return None

    cont = data.get("continue")
    return PlannerResult(
        branches=branches,
        merge_model=_model_ref(data.get("mergeModel")),
        continue_=cont if isinstance(cont, bool) else None,
    )


def has_credential(providers: dict[str, ProviderConfig], provider_id: str) -> bool:
    """Enabled and keyed. The local Ollama provider needs no key."""
    cfg = providers.get(provider_id)
    if cfg is None or not cfg.is_enabled:
        return False
    return provider_id == "ollama" or bool(cfg.api_key.strip())


def branch_positions(parent: Node, count: int) -> list[tuple[float, float]]:
    """Evenly spread ``count`` points on a half circle to the right of ``parent``."""
    radius = NODE_WIDTH + NODE_GAP_X
    positions = []
    for i in range(count):
        angle = -math.pi / 2 + math.pi * (i + 0.5) / count
        positions.append((parent.x + radius * math.cos(angle), parent.y + radius * math.sin(angle)))
    return positions


def merge_position(parent: Node, branch_nodes: list[Node]) -> tuple[float, float]:
    x = parent.x + 2 * (NODE_WIDTH + NODE_GAP_X)
    if not branch_nodes:
        return x, parent.y + NODE_HEIGHT + 200
    return x, sum(n.y for n in branch_nodes) / len(branch_nodes)


class AutonomousCouncil:
    """Planner-driven wave orchestrator bound to one graph store.

    Plans are kept per chat; ``switch_chat`` cancels the active run and
    exposes the target chat's last plan through ``council_plan``.
    """

    def __init__(
        self,
        gateway: LLMGateway,
        graph_store: GraphStore,
        providers: list[ProviderConfig],
        prompts: PromptsConfig,
        notify: Notify,
        planner_model: str = DEFAULT_PLANNER_MODEL,
        allowed_providers: list[ProviderId] | None = None,
        chat_id: str | None = None,
    ) -> None:
        self._gateway = gateway
        self._graph = graph_store
        self._providers = {p.id: p for p in providers}
        self._prompts = prompts
        self._notify = notify
        self._planner_model = planner_model
        self._allowed = list(allowed_providers or [])
        self._chat_id = chat_id
        self._plans: dict[str | None, WavePlan | None] = {}
        self._controller: AbortController | None = None

    @property
    def chat_id(self) -> str | None:
        return self._chat_id

    @property
    def council_plan(self) -> WavePlan | None:
        return self._plans.get(self._chat_id)

    @property
    def is_running(self) -> bool:
        return self._controller is not None

    def switch_chat(self, chat_id: str | None) -> None:
        if chat_id == self._chat_id:
            return
        self.abort_autonomous_council("chat_switch")
        self._chat_id = chat_id

    def abort_autonomous_council(self, reason: AbortReason = "unknown") -> None:
        if self._controller is not None:
            logger.info("Aborting autonomous council (%s)", reason)
            self._controller.abort(reason)

    def reset_autonomous_council(self) -> None:
        self.abort_autonomous_council("reset")
        self._plans[self._chat_id] = None

    def _allowed_provider(self, provider_id: str) -> bool:
        return not self._allowed or provider_id in self._allowed

    def _usable(self, provider_id: str) -> bool:
        return self._allowed_provider(provider_id) and has_credential(self._providers, provider_id)

    def _usable_models(self) -> list[ModelInfo]:
        return [m for m in self._gateway.get_available_models() if self._usable(m.provider)]

    def _select_planner_model(self) -> str:
        usable = self._usable_models()
        if self._usable(resolve_provider(self._planner_model)):
            return self._planner_model
        openai = next((m for m in usable if m.provider == "openai"), None)
        if openai:
            return openai.id
        return usable[0].id if usable else self._planner_model

    def _fallback_plan(self, question: str, depth: int) -> PlannerResult:
        models = self._usable_models()[:_FALLBACK_BRANCHES]
        branches = [
            PlannedBranch(
                provider_id=m.provider,
                model_id=m.id,
                prompt=question if i == 0 else self._prompts.branch_angle.format(question=question),
            )
            for i, m in enumerate(models)
        ]
        merge = ModelReference(provider=models[0].provider, model_id=models[0].id) if models else _FALLBACK_MERGE
        return PlannerResult(branches=branches, merge_model=merge, continue_=depth < 1)

    async def _plan_wave(self, question: str, depth: int, metrics: list[PhaseMetric]) -> PlannerResult:
        planner_model = self._select_planner_model()
        sample = ", ".join(f"{m.provider}:{m.id}" for m in self._gateway.get_available_models()[:_PLANNER_SAMPLE_SIZE])
        providers = self._allowed or [pid for pid in self._providers if has_credential(self._providers, pid)]
        system = self._prompts.planner_system.format(providers=", ".join(providers) or "(empty)", models=sample)
        user = self._prompts.planner_user.format(question=question, depth=depth)

        logger.debug("Planner request (depth=%d) to %s", depth, planner_model)
        response = await self._gateway.query(
            LLMRequest(
                model=planner_model,
                messages=[Message(role="system", content=system), Message(role="user", content=user)],
            )
        )
        metrics.append(
            PhaseMetric(
                kind="planner",
                wave=depth,
                provider_id=response.provider,
                model_id=response.model,
                latency_ms=response.latency_ms,
                usage=response.usage,
                error=response.error,
            )
        )
        if response.error:
            logger.warning("Planner %s failed: %s", planner_model, response.error)
        logger.debug("Planner raw output (depth=%d): %s", depth, response.content)

        parsed = parse_planner_output("" if response.error else response.content)
        if parsed is not None:
            logger.debug("Planner parsed %d branches", len(parsed.branches))
            return parsed

        logger.info("Planner output unusable at depth %d, using fallback branches", depth)
        return self._fallback_plan(question, depth)

    async def start_autonomous_council(
        self,
        root_node_id: str,
        question: str | None = None,
        max_depth: int = 2,
        on_thinking_step: ThinkingStepCallback | None = None,
    ) -> None:
        """Run up to ``max_depth`` (clamped to 1-6) waves from ``root_node_id``.

        Structural problems (missing root, empty question, no usable provider,
        no viable branches) are reported through ``notify`` and end the run.

        Raises:
            CouncilAbortedError: When the run is cancelled. Not a failure.
        """
        root = self._graph.graph.find_node(root_node_id)
        if root is None:
            self._notify("Root node not found", "error")
            return

        resolved_question = (question or root.prompt or root.context).strip()
        if not resolved_question:
            self._notify("Enter a question first", "error")
            return

        if not any(self._usable(pid) for pid in self._providers):
            self._notify("Configure at least one provider in settings", "error")
            return

        if self._controller is not None:
            self._controller.abort("restart")
        controller = AbortController()
        self._controller = controller

        run_chat = self._chat_id
        depth_limit = clamp_depth(max_depth)
        metrics: list[PhaseMetric] = []
        started = time.monotonic()

        def persist(update: Callable[[WavePlan], WavePlan]) -> None:
            plan = self._plans.get(run_chat)
            if plan is not None:
                self._plans[run_chat] = update(plan)

        self._plans[run_chat] = WavePlan(max_depth=depth_limit)
        logger.info("Autonomous council started: max_depth=%d, question=%r", depth_limit, resolved_question[:80])

        entry_id = root_node_id
        try:
            for depth in range(depth_limit):
                controller.raise_if_aborted()
                entry = self._graph.graph.find_node(entry_id) or root
                logger.info("Wave %d/%d: planning from %s", depth + 1, depth_limit, entry.id)

                planned = await self._plan_wave(resolved_question, depth, metrics)
                controller.raise_if_aborted()

                dropped = [b for b in planned.branches if not self._usable(b.provider_id)]
                if dropped:
                    logger.info(
                        "Wave %d: filtered out %d branches: %s",
                        depth + 1,
                        len(dropped),
                        ", ".join(f"{b.provider_id}/{b.model_id}" for b in dropped),
                    )
                branches = [b for b in planned.branches if self._usable(b.provider_id)][:MAX_BRANCHES]
                if not branches:
                    self._notify("No models available, check API keys", "error")
                    self._log_summary("failed", metrics, started, error="no viable branches")
                    return

                outcomes, branch_nodes = await self._run_branches(
                    controller, entry, root_node_id, resolved_question, branches, depth, persist, metrics,
                    on_thinking_step,
                )

                controller.raise_if_aborted()
                merge_node = await self._run_merge(
                    controller, entry, resolved_question, planned, outcomes, branch_nodes, depth, persist, metrics,
                    on_thinking_step,
                )
                entry_id = merge_node.id

                if planned.continue_ is False:
                    logger.info("Wave %d: planner asked to stop", depth + 1)
                    break

            self._log_summary("completed", metrics, started)
            self._notify("Autonomous council: done", "success")
        except CouncilAbortedError as exc:
            logger.warning("Autonomous council aborted (%s)", exc.reason)
            self._log_summary("aborted", metrics, started, error=exc.reason)
            raise
        except Exception as exc:
            logger.error("Autonomous council failed: %s", exc)
            self._log_summary("failed", metrics, started, error=str(exc))
            self._notify("Autonomous council: error", "error")
            raise
        finally:
            if self._controller is controller:
                self._controller = None

    async def _run_branches(
        self,
        controller: AbortController,
        entry: Node,
        root_node_id: str,
        question: str,
        branches: list[PlannedBranch],
        depth: int,
        persist: Callable[[Callable[[WavePlan], WavePlan]], None],
        metrics: list[PhaseMetric],
        on_thinking_step: ThinkingStepCallback | None,
    ) -> tuple[list[_BranchOutcome], list[Node]]:
        nodes = [
            Node(
                id=new_id(),
                x=x,
                y=y,
                context=entry.prompt or entry.context,
                prompt=branch.prompt,
                is_playing=True,
                provider_id=branch.provider_id,
                model_id=branch.model_id,
            )
            for branch, (x, y) in zip(branches, branch_positions(entry, len(branches)))
        ]
        connections = [
            Connection(id=new_id(), from_node_id=entry.id, to_node_id=n.id, provider_id=n.provider_id)
            for n in nodes
        ]
        items = [
            CouncilBranch(
                id=new_id(),
                wave=depth,
                model_id=n.model_id,
                provider_id=n.provider_id,
                source_node_id=entry.id,
                node_id=n.id,
            )
            for n in nodes
        ]

        def materialize(graph):
            if depth == 0:
                graph = graph.update_node(root_node_id, prompt=question)
            return graph.add(nodes, connections)

        persist(lambda p: replace(p, wave_count=p.wave_count + 1, branches=p.branches + tuple(items)))
        self._graph.set(materialize)
        logger.info(
            "Wave %d: %d branches: %s",
            depth + 1,
            len(nodes),
            ", ".join(f"{n.provider_id}/{n.model_id}" for n in nodes),
        )
        persist(lambda p: with_branch_status(p, {i.id for i in items}, "running"))

        async def run_one(node: Node, item: CouncilBranch) -> _BranchOutcome:
            try:
                controller.raise_if_aborted()
                response = await self._gateway.query(
                    LLMRequest(model=node.model_id, messages=[Message(role="user", content=node.prompt or question)])
                )
                controller.raise_if_aborted()
            except CouncilAbortedError:
                raise
            except Exception as exc:
                message = str(exc) or "Branch error"
                logger.error("Wave %d: branch %s failed: %s", depth + 1, node.model_id, message)
                metrics.append(PhaseMetric("branch", depth, node.provider_id, node.model_id, node.id, error=message))
                self._graph.set(lambda g: g.update_node(
                    node.id, is_playing=False, model_response=f"{ERROR_MARKER} {message}", error=message,
                ))
                persist(lambda p: with_branch_status(p, {item.id}, "error", message))
                return _BranchOutcome(node.provider_id, node.model_id, f"{ERROR_MARKER} {message}", ok=False)

            metrics.append(PhaseMetric(
                "branch", depth, node.provider_id, node.model_id, node.id,
                response.latency_ms, response.usage, response.error,
            ))
            output = f"{ERROR_MARKER} {response.error}" if response.error else response.content
            self._graph.set(lambda g: g.update_node(
                node.id, is_playing=False, model_response=output, error=response.error,
            ))
            persist(lambda p: with_branch_status(p, {item.id}, "error" if response.error else "done", response.error))
            if response.error:
                logger.warning("Wave %d: branch %s returned error: %s", depth + 1, node.model_id, response.error)

            if on_thinking_step:
                on_thinking_step(CouncilThinkingStep(
                    stage="divergence",
                    agent_id=node.model_id,
                    agent_name=node.model_id,
                    provider_id=node.provider_id,
                    model_id=node.model_id,
                    input=question,
                    output=output,
                    duration_ms=response.latency_ms,
                    node_id=node.id,
                ))
            return _BranchOutcome(node.provider_id, node.model_id, output, ok=not response.error)

        results = await asyncio.gather(*(run_one(n, i) for n, i in zip(nodes, items)), return_exceptions=True)
        controller.raise_if_aborted()
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results), nodes

    def _merge_model(self, planned: PlannerResult, outcomes: list[_BranchOutcome]) -> ModelReference:
        if planned.merge_model and self._usable(planned.merge_model.provider):
            return planned.merge_model
        source = next((o for o in outcomes if o.ok), outcomes[0])
        return ModelReference(provider=source.provider_id, model_id=source.model_id)

    async def _run_merge(
        self,
        controller: AbortController,
        entry: Node,
        question: str,
        planned: PlannerResult,
        outcomes: list[_BranchOutcome],
        branch_nodes: list[Node],
        depth: int,
        persist: Callable[[Callable[[WavePlan], WavePlan]], None],
        metrics: list[PhaseMetric],
        on_thinking_step: ThinkingStepCallback | None,
    ) -> Node:
        merge_model = self._merge_model(planned, outcomes)
        sources = "\n\n---\n\n".join(
            f"### Source {i + 1} ({o.provider_id}/{o.model_id})\n{o.content}" for i, o in enumerate(outcomes)
        )
        merge_prompt = self._prompts.merge.format(question=question, sources=sources)

        x, y = merge_position(entry, branch_nodes)
        merge_node = Node(
            id=new_id(),
            x=x,
            y=y,
            context=entry.prompt or entry.context,
            prompt=merge_prompt,
            is_playing=True,
            type="synthesis",
            provider_id=merge_model.provider,
            model_id=merge_model.model_id,
        )
        connections = [
            Connection(id=new_id(), from_node_id=n.id, to_node_id=merge_node.id, provider_id=merge_model.provider)
            for n in branch_nodes
        ]
        item = CouncilMerge(
            id=new_id(),
            wave=depth,
            input_node_ids=tuple(n.id for n in branch_nodes),
            output_node_id=merge_node.id,
            provider_id=merge_model.provider,
        )

        logger.info("Wave %d: merge on %s/%s", depth + 1, merge_model.provider, merge_model.model_id)
        persist(lambda p: replace(p, merges=p.merges + (item,)))
        self._graph.set(lambda g: g.add([merge_node], connections))
        persist(lambda p: with_merge_status(p, item.id, "running"))

        response = await self._gateway.query(
            LLMRequest(model=merge_model.model_id, messages=[Message(role="user", content=merge_prompt)])
        )
        controller.raise_if_aborted()

        metrics.append(PhaseMetric(
            "merge", depth, merge_model.provider, merge_model.model_id, merge_node.id,
            response.latency_ms, response.usage, response.error,
        ))
        output = f"{ERROR_MARKER} {response.error}" if response.error else response.content
        self._graph.set(lambda g: g.update_node(
            merge_node.id, is_playing=False, model_response=output, error=response.error,
        ))
        persist(lambda p: with_merge_status(p, item.id, "error" if response.error else "done", response.error))
        if response.error:
            logger.warning("Wave %d: merge failed: %s", depth + 1, response.error)

        if on_thinking_step:
            on_thinking_step(CouncilThinkingStep(
                stage="synthesis",
                agent_id="chairman",
                agent_name="Chairman",
                provider_id=merge_model.provider,
                model_id=merge_model.model_id,
                input=merge_prompt,
                output=output,
                duration_ms=response.latency_ms,
                node_id=merge_node.id,
            ))
        return merge_node

    def _log_summary(self, status: str, metrics: list[PhaseMetric], started: float, error: str | None = None) -> None:
        counts = {kind: sum(1 for m in metrics if m.kind == kind) for kind in ("planner", "branch", "merge")}
        tokens = sum(m.usage.total_tokens for m in metrics)
        cost = sum(m.usage.cost for m in metrics)
        failures = [f"{m.kind}:{m.model_id}" for m in metrics if m.error and m.kind != "planner"]
        logger.info(
            "Council run %s in %.1fs: %d planner, %d branch, %d merge calls, %d tokens, $%.4f%s%s",
            status,
            time.monotonic() - started,
            counts["planner"],
            counts["branch"],
            counts["merge"],
            tokens,
            cost,
            f", errors: {', '.join(failures)}" if failures else "",
            f" ({error})" if error else "",
        )
