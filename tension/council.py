"""Dataclasses for council definitions and the three stage results."""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from tension.models import ProviderId

EvaluationStrategy = Literal["peer-review", "self-consistency", "voting", "judge"]
SynthesisStrategy = Literal["merge-best", "debate-resolve", "weighted-average"]
StageName = Literal["divergence", "convergence", "synthesis"]

SAME_AS_MEMBERS = "same-as-members"


@dataclass(frozen=True)
class ModelReference:
    provider: ProviderId
    model_id: str


@dataclass(frozen=True)
class CouncilMember:
    model_id: str
    provider: ProviderId
    role: str | None = None  # "pro" / "contra" / "neutral", prompt-only


@dataclass(frozen=True)
class CouncilDefinition:
    id: str
    name: str
    members: tuple[CouncilMember, ...]
    chairman: CouncilMember
    evaluators: tuple[CouncilMember, ...] | str = SAME_AS_MEMBERS
    evaluation_strategy: EvaluationStrategy = "peer-review"
    synthesis_strategy: SynthesisStrategy = "merge-best"
    description: str = ""
    temperature: float | None = None
    max_tokens: int | None = None
    anonymize_responses: bool = True

    def resolve_evaluators(self) -> tuple[CouncilMember, ...]:
        if self.evaluators == SAME_AS_MEMBERS:
            return self.members
        return tuple(self.evaluators)


@dataclass(frozen=True)
class Stage1Response:
    model_id: str
    provider: ProviderId
    content: str
    latency_ms: float
    cost: float
    error: str | None = None


@dataclass(frozen=True)
class Stage1Result:
    responses: tuple[Stage1Response, ...]
    total_latency_ms: float
    total_cost: float


@dataclass(frozen=True)
class ResponseEvaluation:
    response_index: int
    rank: int      # 1 = best
    score: float   # 0-100
    critique: str


@dataclass(frozen=True)
class EvaluatorResult:
    evaluator_model_id: str
    rankings: tuple[ResponseEvaluation, ...]
    latency_ms: float
    cost: float
    error: str | None = None


@dataclass(frozen=True)
class Stage2Result:
    evaluations: tuple[EvaluatorResult, ...]
    aggregated_ranking: tuple[int, ...]  # response indices, best first
    scores: tuple[int, ...]              # averaged score per response index
    agreement_score: int                 # 0-100
    total_latency_ms: float
    total_cost: float


@dataclass(frozen=True)
class Stage3Result:
    final_response: str
    confidence: int  # 0-100
    reasoning: str
    latency_ms: float
    cost: float
    error: str | None = None


@dataclass(frozen=True)
class CouncilResult:
    council_id: str
    original_prompt: str
    stage1: Stage1Result
    stage2: Stage2Result
    stage3: Stage3Result
    total_latency_ms: float
    total_cost: float
    started_at: datetime
    completed_at: datetime
    id: str = ""


@dataclass(frozen=True)
class CouncilProgress:
    stage: int
    stage_name: StageName
    progress: int  # 0-100
    message: str


CouncilProgressCallback = Callable[[CouncilProgress], None]


@dataclass
class CouncilThinkingStep:
    """One model contribution reported live by the autonomous orchestrator."""

    stage: StageName
    agent_id: str
    agent_name: str
    provider_id: ProviderId
    model_id: str
    input: str
    output: str
    duration_ms: float
    node_id: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)
