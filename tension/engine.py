"""Three-stage council protocol: divergence, convergence, synthesis."""

import asyncio
import logging
import re
import time
import uuid
from datetime import datetime

from config.config_loader import PromptsConfig
from tension.council import (
    CouncilDefinition,
    CouncilMember,
    CouncilProgress,
    CouncilProgressCallback,
    CouncilResult,
    EvaluatorResult,
    Stage1Response,
    Stage1Result,
    Stage2Result,
    Stage3Result,
    StageName,
)
from tension.gateway import LLMGateway
from tension.models import LLMRequest, Message
from tension.ranking import aggregate_rankings, anonymize_responses, parse_rankings, round_half_up

logger = logging.getLogger(__name__)

DIVERGENCE_TEMPERATURE = 0.7
EVALUATION_TEMPERATURE = 0.3
SYNTHESIS_TEMPERATURE = 0.5

_CONFIDENCE_RE = re.compile(r"confidence[:\s]+(\d+)", re.IGNORECASE)


def extract_confidence(text: str, agreement_score: int) -> int:
    """Explicit "confidence: NN" in the text, else derived from agreement (10-100)."""
    match = _CONFIDENCE_RE.search(text)
    if match:
        return max(0, min(100, int(match.group(1))))
    return round_half_up(agreement_score * 0.9 + 10)


class CouncilEngine:
    """Runs one council definition against one prompt.

    Holds no per-run state, so one engine can serve concurrent executions.
    """

    def __init__(self, gateway: LLMGateway, prompts: PromptsConfig) -> None:
        self._gateway = gateway
        self._prompts = prompts

    async def execute(
        self,
        council: CouncilDefinition,
        prompt: str,
        on_progress: CouncilProgressCallback | None = None,
    ) -> CouncilResult:
        """Run all three stages.

        Member, evaluator and chairman failures are carried in the stage
        results; they never abort the run.

        Raises:
            ValueError: If the council has no members.
        """
        if not council.members:
            raise ValueError(f"Council '{council.id}' has no members")

        started_at = datetime.now()
        start = time.monotonic()

        def report(stage: int, name: StageName, progress: int, message: str) -> None:
            if on_progress:
                on_progress(CouncilProgress(stage=stage, stage_name=name, progress=progress, message=message))

        logger.info("Council '%s': stage 1 with %d members", council.id, len(council.members))
        report(1, "divergence", 0, "Querying council members...")
        stage1 = await self._divergence(council, prompt, report)
        report(1, "divergence", 100, "All responses received")

        evaluators = council.resolve_evaluators()
        logger.info("Council '%s': stage 2 with %d evaluators", council.id, len(evaluators))
        report(2, "convergence", 0, "Members are evaluating responses...")
        stage2 = await self._convergence(council, evaluators, stage1, prompt, report)
        report(2, "convergence", 100, "Evaluation complete")

        logger.info("Council '%s': stage 3, chairman %s", council.id, council.chairman.model_id)
        report(3, "synthesis", 0, "Chairman is synthesizing the final answer...")
        stage3 = await self._synthesis(council, stage1, stage2, prompt)
        report(3, "synthesis", 100, "Done")

        total_latency_ms = (time.monotonic() - start) * 1000
        total_cost = stage1.total_cost + stage2.total_cost + stage3.cost
        logger.info(
            "Council '%s' complete: %.2fs, $%.4f, agreement %d%%",
            council.id,
            total_latency_ms / 1000,
            total_cost,
            stage2.agreement_score,
        )
        return CouncilResult(
            id=str(uuid.uuid4()),
            council_id=council.id,
            original_prompt=prompt,
            stage1=stage1,
            stage2=stage2,
            stage3=stage3,
            total_latency_ms=total_latency_ms,
            total_cost=total_cost,
            started_at=started_at,
            completed_at=datetime.now(),
        )

    def _member_messages(self, member: CouncilMember, prompt: str) -> list[Message]:
        messages: list[Message] = []
        role_text = self._prompts.roles.get(member.role, "") if member.role else ""
        if role_text:
            messages.append(Message(role="system", content=role_text))
        messages.append(Message(role="user", content=prompt))
        return messages

    async def _divergence(self, council: CouncilDefinition, prompt: str, report) -> Stage1Result:
        start = time.monotonic()
        total = len(council.members)
        completed = 0

        async def ask(member: CouncilMember) -> Stage1Response:
            nonlocal completed
            response = await self._gateway.query(
                LLMRequest(
                    model=member.model_id,
                    messages=self._member_messages(member, prompt),
                    temperature=council.temperature if council.temperature is not None else DIVERGENCE_TEMPERATURE,
                    max_tokens=council.max_tokens,
                )
            )
            completed += 1
            report(1, "divergence", round_half_up(completed / total * 100), f"Response from {member.model_id}")
            return Stage1Response(
                model_id=member.model_id,
                provider=member.provider,
                content=response.content,
                latency_ms=response.latency_ms,
                cost=response.usage.cost,
                error=response.error,
            )

        responses = await asyncio.gather(*(ask(m) for m in council.members))
        failed = sum(1 for r in responses if r.error)
        if failed:
            logger.warning("Stage 1: %d/%d members failed", failed, total)

        return Stage1Result(
            responses=tuple(responses),
            total_latency_ms=(time.monotonic() - start) * 1000,
            total_cost=sum(r.cost for r in responses),
        )

    async def _convergence(
        self,
        council: CouncilDefinition,
        evaluators: tuple[CouncilMember, ...],
        stage1: Stage1Result,
        prompt: str,
        report,
    ) -> Stage2Result:
        start = time.monotonic()
        num_responses = len(stage1.responses)
        # Failed members stay in the prompt with empty content so indices line up.
        eval_prompt = self._prompts.evaluation.format(
            question=prompt,
            responses=anonymize_responses(stage1.responses, council.anonymize_responses),
        )
        total = len(evaluators)
        completed = 0

        async def evaluate(evaluator: CouncilMember) -> EvaluatorResult:
            nonlocal completed
            response = await self._gateway.query(
                LLMRequest(
                    model=evaluator.model_id,
                    messages=[Message(role="user", content=eval_prompt)],
                    temperature=EVALUATION_TEMPERATURE,
                )
            )
            rankings = parse_rankings(response.content, num_responses)
            logger.debug("Evaluator %s rankings: %s", evaluator.model_id, [r.response_index for r in rankings])
            completed += 1
            report(2, "convergence", round_half_up(completed / total * 100), f"Evaluation from {evaluator.model_id}")
            return EvaluatorResult(
                evaluator_model_id=evaluator.model_id,
                rankings=tuple(rankings),
                latency_ms=response.latency_ms,
                cost=response.usage.cost,
                error=response.error,
            )

        evaluations = await asyncio.gather(*(evaluate(e) for e in evaluators))
        aggregated, scores, agreement = aggregate_rankings(evaluations, num_responses)

        return Stage2Result(
            evaluations=tuple(evaluations),
            aggregated_ranking=tuple(aggregated),
            scores=tuple(scores),
            agreement_score=agreement,
            total_latency_ms=(time.monotonic() - start) * 1000,
            total_cost=sum(e.cost for e in evaluations),
        )

    def _build_synthesis_prompt(
        self,
        council: CouncilDefinition,
        stage1: Stage1Result,
        stage2: Stage2Result,
        prompt: str,
    ) -> str:
        ranked = []
        for rank, index in enumerate(stage2.aggregated_ranking):
            response = stage1.responses[index]
            ranked.append(
                f"### Rank {rank + 1} (Score: {stage2.scores[index]}/100) - {response.model_id}\n{response.content}"
            )
        return self._prompts.synthesis.format(
            question=prompt,
            ranked_responses="\n\n---\n\n".join(ranked),
            agreement=stage2.agreement_score,
            instructions=self._prompts.strategies.get(council.synthesis_strategy, ""),
        )

    async def _synthesis(
        self,
        council: CouncilDefinition,
        stage1: Stage1Result,
        stage2: Stage2Result,
        prompt: str,
    ) -> Stage3Result:
        response = await self._gateway.query(
            LLMRequest(
                model=council.chairman.model_id,
                messages=[Message(role="user", content=self._build_synthesis_prompt(council, stage1, stage2, prompt))],
                temperature=SYNTHESIS_TEMPERATURE,
                max_tokens=council.max_tokens,
            )
        )
        if response.error:
            logger.warning("Chairman %s failed: %s", council.chairman.model_id, response.error)

        return Stage3Result(
            final_response=response.content,
            confidence=extract_confidence(response.content, stage2.agreement_score),
            reasoning=(
                f"Based on {len(stage1.responses)} expert opinions "
                f"with {stage2.agreement_score}% agreement"
            ),
            latency_ms=response.latency_ms,
            cost=response.usage.cost,
            error=response.error,
        )
