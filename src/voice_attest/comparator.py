from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, replace
from functools import partial
from typing import Callable, Protocol, Sequence

from .domain_types import AttestationComparison, CompiledContext, CompileRequest, TurnAttestation
from .guard import AI_SELF_REFERENCE_RE, BACKEND_MENTION_RE, split_sentences
from .model_client import ModelCall
from .rule_set import RuleSet, extract_rule_set
from .store import AttestationStore

logger = logging.getLogger(__name__)

Evaluator = Callable[[str], float]


class Compiler(Protocol):
    store: AttestationStore

    async def compile(self, request: CompileRequest) -> CompiledContext: ...


@dataclass(frozen=True)
class RubricCriteria:
    one_question: bool = True
    brief: bool = True
    no_ai_self_ref: bool = True
    no_backend_mention: bool = True
    max_sentences: int = 2
    max_words: int | None = None

    @classmethod
    def from_rule_set(cls, rule_set: RuleSet) -> RubricCriteria:
        if not rule_set.in_force:
            return cls()
        return cls(
            one_question=rule_set.one_question_per_turn,
            max_sentences=rule_set.max_sentences,
            max_words=rule_set.max_words_per_turn,
        )


def score_response(response: str, criteria: RubricCriteria = RubricCriteria()) -> float:
    """Rubric score 0-100 for one reply. Brevity costs 20 once, for too many sentences or words."""
    score = 100.0
    if criteria.one_question and response.count("?") > 1:
        score -= 25
    too_long = len(split_sentences(response)) > criteria.max_sentences or (
        criteria.max_words is not None and len(response.split()) > criteria.max_words
    )
    if criteria.brief and too_long:
        score -= 20
    if criteria.no_ai_self_ref and AI_SELF_REFERENCE_RE.search(response):
        score -= 50
    if criteria.no_backend_mention and BACKEND_MENTION_RE.search(response):
        score -= 50
    return max(0.0, score)


@dataclass(frozen=True)
class ArmResult:
    attestation: TurnAttestation
    response: str
    score: float


@dataclass(frozen=True)
class ComparisonDeltas:
    snippet_count: int
    token_delta: int
    diagnostic_delta: int
    score_delta: float


@dataclass(frozen=True)
class ABTestResult:
    with_snippets: ArmResult
    without_snippets: ArmResult
    deltas: ComparisonDeltas
    comparison: AttestationComparison
    improved: bool
    timestamp: int


async def _run_arm(
    compiler: Compiler, request: CompileRequest, model_call: ModelCall, evaluate: Evaluator
) -> ArmResult:
    compiled = await compiler.compile(request)
    response = await model_call(compiled.message_dicts())
    return ArmResult(attestation=compiled.attestation, response=response, score=float(evaluate(response)))


async def run_comparison(
    compiler: Compiler,
    request: CompileRequest,
    model_call: ModelCall,
    evaluate: Evaluator | None = None,
) -> ABTestResult:
    """
    Compile the same turn with and without learned snippets and ask the model both ways.

    A positive ``score_delta`` means the snippets improved the reply.
    """
    if evaluate is None:
        criteria = RubricCriteria.from_rule_set(extract_rule_set(request.system_prompt))
        evaluate = partial(score_response, criteria=criteria)
    base_turn = request.turn_id or f"ab-{uuid.uuid4().hex}"

    with_arm = await _run_arm(
        compiler, replace(request, snippets_enabled=True, turn_id=f"{base_turn}-with-snippets"), model_call, evaluate
    )
    without_arm = await _run_arm(
        compiler, replace(request, snippets_enabled=False, turn_id=f"{base_turn}-without-snippets"), model_call, evaluate
    )

    a, b = with_arm.attestation, without_arm.attestation
    deltas = ComparisonDeltas(
        snippet_count=len(a.snippets_applied),
        token_delta=a.token_budget.total - b.token_budget.total,
        diagnostic_delta=len(a.diagnostics) - len(b.diagnostics),
        score_delta=with_arm.score - without_arm.score,
    )
    timestamp = int(time.time() * 1000)
    comparison = AttestationComparison(
        with_snippets=a,
        without_snippets=b,
        snippet_count=deltas.snippet_count,
        token_delta=deltas.token_delta,
        diagnostic_delta=deltas.diagnostic_delta,
        compared_at=timestamp,
    )
    compiler.store.save_comparison(comparison)

    improved = deltas.score_delta > 0
    logger.info(
        "A/B %s: score %+.1f, tokens %+d, snippets %d",
        base_turn, deltas.score_delta, deltas.token_delta, deltas.snippet_count,
    )
    if not improved:
        logger.warning("snippets did not improve the reply for %s", base_turn)

    return ABTestResult(
        with_snippets=with_arm,
        without_snippets=without_arm,
        deltas=deltas,
        comparison=comparison,
        improved=improved,
        timestamp=timestamp,
    )


@dataclass(frozen=True)
class SessionComparisonSummary:
    total_tests: int
    improved: int
    regressed: int
    neutral: int
    avg_score_delta: float


async def run_session_comparison(
    compiler: Compiler,
    base_request: CompileRequest,
    user_turns: Sequence[tuple[str, str]],
    model_call: ModelCall,
    evaluate: Evaluator | None = None,
) -> tuple[list[ABTestResult], SessionComparisonSummary]:
    """Run ``run_comparison`` once per ``(turn_id, user_message)``."""
    results = []
    for turn_id, message in user_turns:
        request = replace(base_request, turn_id=turn_id, last_turns=(*base_request.last_turns, message))
        results.append(await run_comparison(compiler, request, model_call, evaluate))

    deltas = [r.deltas.score_delta for r in results]
    summary = SessionComparisonSummary(
        total_tests=len(results),
        improved=sum(1 for d in deltas if d > 0),
        regressed=sum(1 for d in deltas if d < 0),
        neutral=sum(1 for d in deltas if d == 0),
        avg_score_delta=round(sum(deltas) / len(deltas), 2) if deltas else 0.0,
    )
    return results, summary
