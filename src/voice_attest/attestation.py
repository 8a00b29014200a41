from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from .assembler import MAX_SNIPPET_CHARS, MAX_SNIPPETS, TurnIdentity, derive_turn_identity
from .budget import compute_budget
from .domain_types import AssembledContext, Diagnostic, TokenBudget, TurnAttestation
from .identity import HASH_LENGTH
from .rule_set import SpecSource


@dataclass(frozen=True)
class AttestationConfig:
    location_id: str
    agent_id: str
    system_prompt: str
    model: str
    temperature: float
    max_tokens: int
    snippets_enabled: bool
    guard_enabled: bool
    snippet_scope_hash: str | None = None


@dataclass(frozen=True)
class RuleInput:
    """What each diagnostic rule gets to look at. Rules must not look anywhere else."""

    config: AttestationConfig
    identity: TurnIdentity
    assembled: AssembledContext
    budget: TokenBudget


DiagnosticRule = Callable[[RuleInput], Optional[Diagnostic]]


def check_token_budget(inp: RuleInput) -> Diagnostic | None:
    budget = inp.budget
    if not budget.exceeded:
        return None
    return Diagnostic(
        level="error",
        code="TOKEN_BUDGET_EXCEEDED",
        message=f"Token budget exceeded: {budget.total} / {budget.max_tokens}",
        suggestion="Reduce context size or increase max_tokens. Consider truncating conversation history.",
        context={"total": budget.total, "max_tokens": budget.max_tokens, "overflow": budget.total - budget.max_tokens},
    )


def check_no_snippets(inp: RuleInput) -> Diagnostic | None:
    if not inp.config.snippets_enabled or inp.assembled.snippets:
        return None
    context: dict[str, object] = {"scope_id": inp.identity.snippet_scope_id, "snippets_count": 0}
    if inp.assembled.snippet_error:
        context["retrieval_error"] = inp.assembled.snippet_error
    return Diagnostic(
        level="warning",
        code="NO_SNIPPETS_APPLIED",
        message="Learned snippets are enabled but none were applied",
        suggestion="Check if snippets exist for this scope id. Pending corrections may need approval.",
        context=context,
    )


def check_too_many_snippets(inp: RuleInput) -> Diagnostic | None:
    count = max(inp.assembled.snippets_retrieved, len(inp.assembled.snippets))
    if count <= MAX_SNIPPETS:
        return None
    return Diagnostic(
        level="warning",
        code="TOO_MANY_SNIPPETS",
        message=f"{count} snippets retrieved (max applied: {MAX_SNIPPETS})",
        suggestion=f"Limit snippets to the {MAX_SNIPPETS} most useful corrections for this scope.",
        context={"snippets_count": count, "applied": len(inp.assembled.snippets), "recommended_max": MAX_SNIPPETS},
    )


def check_snippet_length(inp: RuleInput) -> Diagnostic | None:
    long_ids = [s.id for s in inp.assembled.snippets if s.char_length > MAX_SNIPPET_CHARS]
    if not long_ids:
        return None
    return Diagnostic(
        level="warning",
        code="SNIPPETS_TOO_LONG",
        message=f"{len(long_ids)} snippets exceed {MAX_SNIPPET_CHARS} chars and were trimmed",
        suggestion=f"Compress snippets to <= {MAX_SNIPPET_CHARS} chars each.",
        context={"long_snippets_count": len(long_ids), "snippet_ids": long_ids},
    )


def check_guard_disabled(inp: RuleInput) -> Diagnostic | None:
    if inp.config.guard_enabled:
        return None
    return Diagnostic(
        level="info",
        code="GUARD_DISABLED",
        message="Response guard is disabled",
        suggestion="Enable the guard to enforce one-question cadence and booking rules.",
    )


def check_prompt_hash_strength(inp: RuleInput) -> Diagnostic | None:
    length = len(inp.identity.prompt_hash)
    if length >= HASH_LENGTH:
        return None
    return Diagnostic(
        level="warning",
        code="WEAK_PROMPT_HASH",
        message="Prompt hash is too short, may cause collisions",
        suggestion=f"Use at least {HASH_LENGTH} characters of SHA-256.",
        context={"hash_length": length, "recommended_length": HASH_LENGTH},
    )


def check_spec_source(inp: RuleInput) -> Diagnostic | None:
    rule_set = inp.identity.rule_set
    if rule_set.source is SpecSource.PARSE_ERROR:
        return Diagnostic(
            level="warning",
            code="SPEC_PARSE_FAILURE",
            message="Embedded spec could not be used; default rules were substituted",
            suggestion="Fix the JSON between the SPEC_JSON markers in the system prompt.",
            context={"error": rule_set.parse_error},
        )
    if rule_set.source is SpecSource.NO_SPEC_FOUND:
        return Diagnostic(
            level="info",
            code="NO_SPEC_FOUND",
            message="No embedded spec found; no behavioral contract is in force",
            suggestion="Embed a spec so the guard and grader share the same rules.",
        )
    return None


DIAGNOSTIC_RULES: Sequence[DiagnosticRule] = (
    check_token_budget,
    check_no_snippets,
    check_too_many_snippets,
    check_snippet_length,
    check_guard_disabled,
    check_prompt_hash_strength,
    check_spec_source,
)


def budget_for(assembled: AssembledContext, max_tokens: int) -> TokenBudget:
    return compute_budget(
        {
            "system_prompt": assembled.system_prompt,
            "spec": assembled.spec_json,
            "snippets": [s.content for s in assembled.snippets],
            "context": assembled.context_json,
            "summary": assembled.summary,
            "last_turns": assembled.last_turns,
        },
        max_tokens,
    )


def generate_attestation(
    turn_id: str,
    config: AttestationConfig,
    assembled: AssembledContext,
    *,
    identity: TurnIdentity | None = None,
    now: int | None = None,
) -> TurnAttestation:
    """
    Build the receipt for one compiled turn.

    Deterministic given its inputs; ``now`` defaults to the wall clock and is
    only used for the timestamp.
    """
    if identity is None:
        identity = derive_turn_identity(
            config.location_id, config.agent_id, config.system_prompt, config.snippet_scope_hash
        )
    budget = budget_for(assembled, config.max_tokens)
    inp = RuleInput(config=config, identity=identity, assembled=assembled, budget=budget)
    diagnostics = tuple(d for d in (rule(inp) for rule in DIAGNOSTIC_RULES) if d is not None)

    return TurnAttestation(
        turn_id=turn_id,
        timestamp=int(time.time() * 1000) if now is None else now,
        scope_id=identity.scope_id,
        location_id=config.location_id,
        agent_id=config.agent_id,
        prompt_hash=identity.prompt_hash,
        spec_hash=identity.spec_hash,
        snippet_scope_id=identity.snippet_scope_id,
        snippets_applied=tuple(assembled.snippets),
        last_turns_used=len(assembled.last_turns),
        summary_included=bool(assembled.summary),
        token_budget=budget,
        model=config.model,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
        diagnostics=diagnostics,
        snippets_enabled=config.snippets_enabled,
        guard_enabled=config.guard_enabled,
        spec_source=identity.rule_set.source.value,
        memory_source=assembled.memory_source,
    )
