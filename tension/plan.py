"""Wave plan state shared by the autonomous and graph-BFS orchestrators."""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Literal

from tension.models import ProviderId

logger = logging.getLogger(__name__)

MIN_DEPTH = 1
MAX_DEPTH = 6
MAX_BRANCHES = 5

BranchStatus = Literal["queued", "running", "done", "error"]
AbortReason = Literal["user_stop", "chat_switch", "restart", "reset", "unknown"]

_ORDER: dict[str, int] = {"queued": 0, "running": 1, "done": 2, "error": 2}
TERMINAL: frozenset[str] = frozenset({"done", "error"})


class CouncilAbortedError(Exception):
    """Raised when a run is cancelled. Not a failure; callers swallow it."""

    def __init__(self, reason: AbortReason = "unknown") -> None:
        self.reason = reason
        super().__init__(f"Council run aborted ({reason})")


class AbortController:
    """Cooperative cancellation flag, polled at wave and branch checkpoints."""

    def __init__(self) -> None:
        self.aborted = False
        self.reason: AbortReason = "unknown"

    def abort(self, reason: AbortReason = "unknown") -> None:
        if not self.aborted:
            self.aborted = True
            self.reason = reason

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise CouncilAbortedError(self.reason)


@dataclass(frozen=True)
class CouncilBranch:
    id: str
    wave: int
    model_id: str
    provider_id: ProviderId
    source_node_id: str
    node_id: str
    status: BranchStatus = "queued"
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass(frozen=True)
class CouncilMerge:
    id: str
    wave: int
    input_node_ids: tuple[str, ...]
    output_node_id: str
    provider_id: ProviderId
    status: BranchStatus = "queued"
    error: str | None = None


@dataclass(frozen=True)
class WavePlan:
    max_depth: int
    wave_count: int = 0
    branches: tuple[CouncilBranch, ...] = ()
    merges: tuple[CouncilMerge, ...] = ()

    def wave_branches(self, wave: int) -> tuple[CouncilBranch, ...]:
        return tuple(b for b in self.branches if b.wave == wave)


def clamp_depth(max_depth: int) -> int:
    return max(MIN_DEPTH, min(int(max_depth), MAX_DEPTH))


def can_advance(current: BranchStatus, target: BranchStatus) -> bool:
    """queued -> running -> done|error, never backwards or out of a terminal state."""
    if current in TERMINAL:
        return False
    return _ORDER[target] > _ORDER[current]


def advance(item, status: BranchStatus, error: str | None = None):
    """Copy of a branch or merge moved to ``status``; unchanged if the move is illegal."""
    if not can_advance(item.status, status):
        logger.debug("Ignoring status change %s -> %s for %s", item.status, status, item.id)
        return item

    changes: dict = {"status": status, "error": error if status == "error" else None}
    if isinstance(item, CouncilBranch):
        now = datetime.now()
        if status == "running":
            changes["started_at"] = now
        elif status in TERMINAL:
            changes["finished_at"] = now
    return replace(item, **changes)


def with_branch_status(
    plan: WavePlan,
    branch_ids: set[str] | frozenset[str],
    status: BranchStatus,
    error: str | None = None,
) -> WavePlan:
    if not branch_ids:
        return plan
    return replace(
        plan,
        branches=tuple(advance(b, status, error) if b.id in branch_ids else b for b in plan.branches),
    )


def with_merge_status(plan: WavePlan, merge_id: str, status: BranchStatus, error: str | None = None) -> WavePlan:
    return replace(
        plan,
        merges=tuple(advance(m, status, error) if m.id == merge_id else m for m in plan.merges),
    )
