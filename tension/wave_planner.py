"""Deterministic wave plan over an existing graph.

Waves are BFS layers from a root node along ``from -> to`` connections. Each
node in a wave is handed to a "play council on this node" collaborator; this
module only tracks statuses and cancellation.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from tension.autonomous import ERROR_MARKER, Notify
from tension.council import CouncilDefinition
from tension.engine import CouncilEngine
from tension.graph import Graph, GraphStore, new_id
from tension.plan import (
    AbortController,
    CouncilAbortedError,
    CouncilBranch,
    WavePlan,
    clamp_depth,
    with_branch_status,
)

logger = logging.getLogger(__name__)

PlayCouncil = Callable[[str, str], Awaitable[None]]

DEFAULT_PROVIDER = "openai"
DEFAULT_MODEL = "gpt-4o"


def build_wave_plan(graph: Graph, root_id: str, max_depth: int) -> WavePlan:
    """Layer the graph into at most ``clamp_depth(max_depth)`` BFS waves from ``root_id``.

    An unknown root gives an empty plan.
    """
    depth_limit = clamp_depth(max_depth)
    adjacency: dict[str, list[str]] = {}
    for conn in graph.connections:
        children = adjacency.setdefault(conn.from_node_id, [])
        if conn.to_node_id not in children:
            children.append(conn.to_node_id)

    waves: list[list[str]] = []
    visited: set[str] = set()
    level = [root_id] if graph.find_node(root_id) else []
    while level and len(waves) < depth_limit:
        waves.append(level)
        visited.update(level)
        next_level: list[str] = []
        for node_id in level:
            for child in adjacency.get(node_id, []):
                if child not in visited and child not in next_level:
                    next_level.append(child)
        level = next_level

    branches = []
    for wave, node_ids in enumerate(waves):
        for node_id in node_ids:
            node = graph.find_node(node_id)
            parent = next((c for c in graph.connections if c.to_node_id == node_id), None)
            branches.append(
                CouncilBranch(
                    id=new_id(),
                    wave=wave,
                    model_id=(node.model_id if node else None) or DEFAULT_MODEL,
                    provider_id=(node.provider_id if node else None) or DEFAULT_PROVIDER,
                    source_node_id=parent.from_node_id if parent else node_id,
                    node_id=node_id,
                )
            )

    return WavePlan(max_depth=depth_limit, wave_count=len(waves), branches=tuple(branches))


class CouncilPlanRunner:
    """Runs a BFS wave plan by playing the selected council on every planned node."""

    def __init__(
        self,
        graph_store: GraphStore,
        play_council: PlayCouncil,
        notify: Notify,
        selected_council_id: str | None = None,
    ) -> None:
        self._graph = graph_store
        self._play = play_council
        self._notify = notify
        self.selected_council_id = selected_council_id
        self.council_plan: WavePlan | None = None
        self._controller: AbortController | None = None

    def abort_council_plan(self) -> None:
        if self._controller is not None:
            self._controller.abort("user_stop")

    def _set_status(self, ids: set[str], status, error: str | None = None) -> None:
        if self.council_plan is not None:
            self.council_plan = with_branch_status(self.council_plan, ids, status, error)

    async def start_council_plan(self, root_node_id: str, max_depth: int) -> None:
        """Build and execute the plan. Branch failures and cancellation never raise."""
        council_id = self.selected_council_id
        if not council_id:
            self._notify("Select a council before running a plan", "error")
            return

        plan = build_wave_plan(self._graph.graph, root_node_id, max_depth)
        if not plan.branches:
            self.council_plan = plan
            self._notify("Could not build a plan: no reachable nodes", "error")
            return

        if self._controller is not None:
            self._controller.abort("restart")
        controller = AbortController()
        self._controller = controller
        self.council_plan = plan
        logger.info("Council plan: %d waves, %d branches", plan.wave_count, len(plan.branches))

        try:
            await self._run(plan, council_id, controller)
            self._notify("Council plan complete", "success")
        except CouncilAbortedError as exc:
            logger.warning("Council plan aborted (%s)", exc.reason)
        except Exception as exc:
            logger.error("Council plan failed: %s", exc)
            self._notify(str(exc) or "Council plan failed", "error")
        finally:
            if self._controller is controller:
                self._controller = None

    async def _run(self, plan: WavePlan, council_id: str, controller: AbortController) -> None:
        for wave in range(plan.wave_count):
            controller.raise_if_aborted()
            branches = plan.wave_branches(wave)
            if not branches:
                continue
            self._set_status({b.id for b in branches}, "running")

            async def run_one(branch: CouncilBranch) -> None:
                controller.raise_if_aborted()
                try:
                    await self._play(branch.node_id, council_id)
                except CouncilAbortedError:
                    raise
                except Exception as exc:
                    controller.raise_if_aborted()
                    message = str(exc) or "Branch error"
                    logger.warning("Council plan: node %s failed: %s", branch.node_id, message)
                    self._set_status({branch.id}, "error", message)
                    return
                controller.raise_if_aborted()
                self._set_status({branch.id}, "done")

            results = await asyncio.gather(*(run_one(b) for b in branches), return_exceptions=True)
            controller.raise_if_aborted()
            for result in results:
                if isinstance(result, BaseException):
                    raise result


def make_node_council_player(
    engine: CouncilEngine,
    graph_store: GraphStore,
    councils: dict[str, CouncilDefinition],
) -> PlayCouncil:
    """Collaborator that runs a full council on one existing node and writes the answer back."""

    async def play(node_id: str, council_id: str) -> None:
        council = councils.get(council_id)
        if council is None:
            raise ValueError(f"Unknown council: {council_id}")
        node = graph_store.graph.find_node(node_id)
        if node is None:
            raise ValueError(f"Node not found: {node_id}")
        prompt = (node.prompt or node.context).strip()
        if not prompt:
            raise ValueError(f"Node {node_id} has no prompt")

        graph_store.set(lambda g: g.update_node(node_id, is_playing=True, error=None))
        try:
            result = await engine.execute(council, prompt)
        except Exception as exc:
            graph_store.set(lambda g: g.update_node(
                node_id, is_playing=False, model_response=f"{ERROR_MARKER} {exc}", error=str(exc),
            ))
            raise

        stage3 = result.stage3
        graph_store.set(lambda g: g.update_node(
            node_id,
            is_playing=False,
            type="council",
            council_id=council_id,
            model_response=f"{ERROR_MARKER} {stage3.error}" if stage3.error else stage3.final_response,
            confidence=stage3.confidence / 100,
            error=stage3.error,
        ))
        if stage3.error:
            raise RuntimeError(stage3.error)

    return play
