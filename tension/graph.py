"""In-memory node graph with undo/redo history.

Every mutation produces a new ``Graph``; nodes and connections are frozen so
snapshots kept in history never change under the caller.
"""

import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from typing import Literal

from tension.models import ProviderId

logger = logging.getLogger(__name__)

NODE_WIDTH = 420
NODE_HEIGHT = 500
NODE_GAP_X = 200
NODE_GAP_Y = 120

NodeType = Literal["standard", "council", "evaluation", "synthesis"]


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Node:
    id: str
    x: float = 0.0
    y: float = 0.0
    context: str = ""
    prompt: str = ""
    model_response: str | None = None
    is_root: bool = False
    is_playing: bool = False
    error: str | None = None
    type: NodeType = "standard"
    provider_id: ProviderId | None = None
    model_id: str | None = None
    confidence: float | None = None  # 0-1, council nodes only
    council_id: str | None = None


@dataclass(frozen=True)
class Connection:
    id: str
    from_node_id: str
    to_node_id: str
    from_port_index: int = 0
    to_port_index: int = 0
    provider_id: ProviderId | None = None


@dataclass(frozen=True)
class Graph:
    nodes: tuple[Node, ...] = ()
    connections: tuple[Connection, ...] = ()

    def find_node(self, node_id: str) -> Node | None:
        return next((n for n in self.nodes if n.id == node_id), None)

    def add(self, nodes: Iterable[Node] = (), connections: Iterable[Connection] = ()) -> "Graph":
        return Graph(nodes=self.nodes + tuple(nodes), connections=self.connections + tuple(connections))

    def update_node(self, node_id: str, **changes) -> "Graph":
        return replace(self, nodes=tuple(replace(n, **changes) if n.id == node_id else n for n in self.nodes))


GraphUpdate = Graph | Callable[[Graph], Graph]


@dataclass
class GraphStore:
    """Past/present/future history over immutable graph snapshots."""

    present: Graph = field(default_factory=Graph)
    past: list[Graph] = field(default_factory=list)
    future: list[Graph] = field(default_factory=list)

    @property
    def graph(self) -> Graph:
        return self.present

    @property
    def can_undo(self) -> bool:
        return bool(self.past)

    @property
    def can_redo(self) -> bool:
        return bool(self.future)

    def _resolve(self, update: GraphUpdate) -> Graph:
        return update(self.present) if callable(update) else update

    def set(self, update: GraphUpdate) -> None:
        """Apply a replacement or updater and record the previous state."""
        next_graph = self._resolve(update)
        if next_graph is self.present:
            return
        self.past.append(self.present)
        self.present = next_graph
        self.future.clear()

    def set_transient(self, update: GraphUpdate) -> None:
        """Replace the present without touching history."""
        self.present = self._resolve(update)

    def undo(self) -> None:
        if not self.past:
            return
        self.future.insert(0, self.present)
        self.present = self.past.pop()

    def redo(self) -> None:
        if not self.future:
            return
        self.past.append(self.present)
        self.present = self.future.pop(0)

    def clear_history(self) -> None:
        self.past.clear()
        self.future.clear()

    def reset(self, graph: Graph) -> None:
        self.present = graph
        self.clear_history()
        logger.debug("Graph reset: %d nodes, %d connections", len(graph.nodes), len(graph.connections))
