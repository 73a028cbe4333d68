"""Evaluator output parsing and rank aggregation.

Pure functions, no I/O. The council engine feeds raw evaluator text into
``parse_rankings`` and the per-evaluator results into ``aggregate_rankings``.
"""

import math
import re
from dataclasses import dataclass
from itertools import combinations

from tension.council import EvaluatorResult, ResponseEvaluation, Stage1Response

NO_RANKING_CRITIQUE = "No explicit ranking provided"
DEFAULT_SCORE = 50

_RANKING_BLOCK_RE = re.compile(r"RANKING:\s*(.*?)(?=SCORES:|\Z)", re.IGNORECASE | re.DOTALL)
_SCORES_BLOCK_RE = re.compile(r"SCORES:\s*(.*)\Z", re.IGNORECASE | re.DOTALL)
_RESPONSE_LETTER_RE = re.compile(r"Response\s*([A-Z]{1,3})\b", re.IGNORECASE)
_NUMBERED_LETTER_RE = re.compile(r"^\d+\.\s*([A-Z]{1,3})\b", re.IGNORECASE)
_SCORE_LINE_RE = re.compile(r"\b([A-Z]{1,3}):\s*(\d+)", re.IGNORECASE)


def response_label(index: int) -> str:
    """Spreadsheet-style label: 0 -> A, 25 -> Z, 26 -> AA, 27 -> AB."""
    label = ""
    n = index + 1
    while n > 0:
        n, rem = divmod(n - 1, 26)
        label = chr(ord("A") + rem) + label
    return label


def label_to_index(label: str) -> int:
    """Inverse of ``response_label``. Case-insensitive."""
    n = 0
    for ch in label.upper():
        n = n * 26 + (ord(ch) - ord("A") + 1)
    return n - 1


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def anonymize_responses(
    responses: list[Stage1Response] | tuple[Stage1Response, ...],
    anonymize: bool = True,
) -> str:
    """Render stage-1 responses as labelled blocks for the evaluation prompt.

    With ``anonymize`` off the model id is appended to each label so evaluators
    can see who argued what.
    """
    blocks = []
    for i, r in enumerate(responses):
        label = f"Response {response_label(i)}"
        if not anonymize:
            label = f"{label} ({r.model_id})"
        blocks.append(f"### {label}\n{r.content}")
    return "\n\n---\n\n".join(blocks)


@dataclass
class _Entry:
    response_index: int
    rank: int
    score: float
    critique: str


def parse_rankings(text: str, num_responses: int) -> list[ResponseEvaluation]:
    """Parse an evaluator's RANKING/SCORES text into one entry per response.

    Never fails: missing sections, unknown letters and duplicates are
    tolerated, and responses the evaluator did not rank get a trailing
    default entry with score 50.
    """
    entries: list[_Entry] = []
    seen: set[int] = set()

    ranking_match = _RANKING_BLOCK_RE.search(text)
    if ranking_match:
        lines = [line for line in ranking_match.group(1).splitlines() if line.strip()]
        for position, line in enumerate(lines):
            stripped = line.strip()
            letter_match = _RESPONSE_LETTER_RE.search(stripped) or _NUMBERED_LETTER_RE.search(stripped)
            if not letter_match:
                continue
            index = label_to_index(letter_match.group(1))
            if not 0 <= index < num_responses or index in seen:
                continue
            seen.add(index)
            entries.append(
                _Entry(
                    response_index=index,
                    rank=position + 1,
                    score=100 - position * (100 / num_responses),
                    critique=stripped,
                )
            )

    scores_match = _SCORES_BLOCK_RE.search(text)
    if scores_match:
        by_index = {e.response_index: e for e in entries}
        for line in scores_match.group(1).splitlines():
            score_match = _SCORE_LINE_RE.search(line)
            if not score_match:
                continue
            entry = by_index.get(label_to_index(score_match.group(1)))
            if entry is not None:
                entry.score = max(0, min(100, int(score_match.group(2))))

    for index in range(num_responses):
        if index not in seen:
            entries.append(
                _Entry(
                    response_index=index,
                    rank=len(entries) + 1,
                    score=DEFAULT_SCORE,
                    critique=NO_RANKING_CRITIQUE,
                )
            )

    entries.sort(key=lambda e: e.rank)
    return [
        ResponseEvaluation(
            response_index=e.response_index,
            rank=e.rank,
            score=e.score,
            critique=e.critique,
        )
        for e in entries
    ]


def positional_agreement(first: list[int], second: list[int]) -> float:
    """Percentage of rank positions where both orderings hold the same response."""
    positions = len(first)
    if positions == 0:
        return 100.0
    agreements = sum(1 for k in range(positions) if k < len(second) and first[k] == second[k])
    return agreements / positions * 100


def aggregate_rankings(
    evaluations: list[EvaluatorResult] | tuple[EvaluatorResult, ...],
    num_responses: int,
) -> tuple[list[int], list[int], int]:
    """Combine evaluator rankings.

    Returns:
        (aggregated_ranking, scores, agreement_score): response indices best
        first, the rounded average score per response index, and the mean
        pairwise positional agreement (100 with fewer than two evaluators).
    """
    totals = [0.0] * num_responses
    counts = [0] * num_responses
    for evaluation in evaluations:
        for ranking in evaluation.rankings:
            if 0 <= ranking.response_index < num_responses:
                totals[ranking.response_index] += ranking.score
                counts[ranking.response_index] += 1

    scores = [
        round_half_up(totals[i] / counts[i]) if counts[i] else DEFAULT_SCORE
        for i in range(num_responses)
    ]
    aggregated = sorted(range(num_responses), key=lambda i: -scores[i])

    orderings = [[r.response_index for r in e.rankings] for e in evaluations]
    pairs = [positional_agreement(a, b) for a, b in combinations(orderings, 2)]
    agreement = round_half_up(sum(pairs) / len(pairs)) if pairs else 100

    return aggregated, scores, agreement
