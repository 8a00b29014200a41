from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import NamedTuple

from .domain_types import (
    Diagnostic,
    DiagnosticReport,
    TurnAttestation,
    VerificationFailure,
    VerificationResult,
    worst_level,
)
from .identity import is_valid_scope_key, parse_scope_key
from .store import SCOPE_INDEX_LIMIT, AttestationStore

logger = logging.getLogger(__name__)

BUDGET_OVERFLOW_LIMIT = 0.2
GUARD_ACTIVE_MIN = 0.5
SNIPPET_MISS_WARN = 0.5
TOKEN_DELTA_NOISE = 10

HEALTH_BY_LEVEL = {"error": "critical", "warning": "warning"}


def _ratio(count: int, total: int) -> float:
    return count / total if total else 0.0


def run_scope_diagnostics(
    store: AttestationStore,
    scope_id: str,
    expected_prompt_hash: str | None = None,
    expected_spec_hash: str | None = None,
    *,
    now: int | None = None,
) -> DiagnosticReport:
    """
    Look across the stored receipts of one scope for systemic problems.

    Overall health is the worst issue level: any error is critical, any
    warning is a warning, otherwise healthy.
    """
    attestations = store.list_by_scope(scope_id, limit=SCOPE_INDEX_LIMIT)
    total = len(attestations)
    issues: list[Diagnostic] = []
    recommendations: list[str] = []

    scope_id_valid = is_valid_scope_key(scope_id)
    if not scope_id_valid:
        issues.append(Diagnostic(
            level="error",
            code="INVALID_SCOPE_ID",
            message=f"scope id format invalid: {scope_id}",
            suggestion="scope id must look like scope:<locationId>:<agentId>:<promptHash>",
        ))
        recommendations.append("Fix scope id derivation before compiling turns")

    prompt_hash_match = True
    if expected_prompt_hash:
        parts = parse_scope_key(scope_id)
        prompt_hash_match = parts is not None and parts.prompt_hash == expected_prompt_hash
        if not prompt_hash_match:
            issues.append(Diagnostic(
                level="error",
                code="PROMPT_HASH_MISMATCH_WITH_EXPECTED",
                message=f"Prompt hash mismatch: scope has {parts.prompt_hash if parts else None}, expected {expected_prompt_hash}",
                suggestion="The prompt being compiled is not the prompt you think it is.",
            ))
            recommendations.append("Re-hash the deployed system prompt and compare with the editor copy")

    if total == 0:
        issues.append(Diagnostic(
            level="warning",
            code="NO_ATTESTATIONS",
            message=f"No attestations stored for {scope_id}",
            suggestion="Compile at least one turn for this scope before diagnosing it.",
        ))

    spec_hashes = list(dict.fromkeys(a.spec_hash for a in attestations))
    spec_hash_consistent = len(spec_hashes) <= 1
    if not spec_hash_consistent:
        issues.append(Diagnostic(
            level="warning",
            code="SPEC_HASH_MISMATCH",
            message=f"Multiple spec hashes detected: {', '.join(spec_hashes)}",
            suggestion="Spec may have changed mid-session. Ensure the grader uses the same spec as runtime.",
            context={"unique_hashes": spec_hashes, "count": len(spec_hashes)},
        ))
        recommendations.append("Verify the spec JSON is embedded consistently in the system prompt")

    if expected_spec_hash and any(h != expected_spec_hash for h in spec_hashes):
        issues.append(Diagnostic(
            level="error",
            code="SPEC_HASH_MISMATCH_WITH_EXPECTED",
            message=f"Spec hash mismatch: got {', '.join(spec_hashes)}, expected {expected_spec_hash}",
            suggestion="Runtime and grader are using different specs.",
        ))
        recommendations.append("Regenerate the spec hash and ensure runtime and grader agree")

    enabled = [a for a in attestations if a.snippets_enabled]
    missed = [a for a in enabled if not a.snippets_applied]
    snippets_being_applied = not enabled or len(missed) < len(enabled)
    if enabled and not snippets_being_applied:
        issues.append(Diagnostic(
            level="error",
            code="SNIPPETS_NOT_APPLIED",
            message=f"Snippets enabled but never applied ({len(enabled)} turns)",
            suggestion="Check if snippets exist in storage for this scope id. Corrections may need approval.",
            context={"snippets_enabled_count": len(enabled), "snippets_applied_count": 0},
        ))
        recommendations.append("Check the snippet source returns corrections for this exact scope key")
    elif _ratio(len(missed), len(enabled)) > SNIPPET_MISS_WARN:
        issues.append(Diagnostic(
            level="warning",
            code="SNIPPETS_RARELY_APPLIED",
            message=f"Snippets missing in {len(missed)}/{len(enabled)} snippet-enabled turns",
            suggestion="Snippet retrieval is failing intermittently or timing out.",
            context={"missed": len(missed), "enabled": len(enabled)},
        ))

    overflow = sum(1 for a in attestations if a.token_budget.exceeded)
    overflow_ratio = _ratio(overflow, total)
    token_budget_healthy = overflow_ratio <= BUDGET_OVERFLOW_LIMIT
    if not token_budget_healthy:
        issues.append(Diagnostic(
            level="error",
            code="TOKEN_BUDGET_FREQUENTLY_EXCEEDED",
            message=f"Token budget exceeded in {overflow}/{total} turns ({round(overflow_ratio * 100)}%)",
            suggestion="Reduce context size or increase max_tokens.",
            context={"exceeded_count": overflow, "total_turns": total, "ratio": overflow_ratio},
        ))
        recommendations.append("Increase max_tokens or include fewer recent turns")

    avg_snippet_tokens = _ratio(sum(a.token_budget.snippets for a in enabled), len(enabled))
    zero_cost_turns = [a.turn_id for a in enabled if a.snippets_applied and a.token_budget.snippets == 0]
    injection_order_correct = not enabled or (avg_snippet_tokens > 0 and not zero_cost_turns)
    if not injection_order_correct:
        issues.append(Diagnostic(
            level="error",
            code="SNIPPET_INJECTION_FAILED",
            message="Snippets enabled but consuming 0 tokens - injection may be failing",
            suggestion="Check that snippet messages are assembled before the recent turns.",
            context={"avg_snippet_tokens": avg_snippet_tokens, "zero_cost_turns": zero_cost_turns},
        ))
        recommendations.append("Verify snippets are added to the message list before recent turns")

    guard_on = sum(1 for a in attestations if a.guard_enabled)
    guard_active = total == 0 or _ratio(guard_on, total) > GUARD_ACTIVE_MIN
    if not guard_active:
        issues.append(Diagnostic(
            level="warning",
            code="GUARD_MOSTLY_DISABLED",
            message=f"Guard enabled in only {guard_on}/{total} turns",
            suggestion="Enable the guard to enforce spec rules (one question, no early booking).",
        ))
        recommendations.append("Set guard_enabled=True on compile requests")

    overall = HEALTH_BY_LEVEL.get(worst_level(issues) or "", "healthy")
    logger.info("diagnostics for %s: %s (%d issues over %d turns)", scope_id, overall, len(issues), total)

    return DiagnosticReport(
        scope_id=scope_id,
        timestamp=int(time.time() * 1000) if now is None else now,
        checks={
            "scope_id_valid": scope_id_valid,
            "prompt_hash_match": prompt_hash_match,
            "spec_hash_consistent": spec_hash_consistent,
            "snippets_being_applied": snippets_being_applied,
            "token_budget_healthy": token_budget_healthy,
            "injection_order_correct": injection_order_correct,
            "guard_active": guard_active,
        },
        issues=tuple(issues),
        recommendations=tuple(dict.fromkeys(recommendations)),
        overall_health=overall,
        turns_analyzed=total,
    )


@dataclass(frozen=True)
class ExpectedAttestation:
    scope_id: str | None = None
    spec_hash: str | None = None
    snippets_expected: bool = False
    budget_ok: bool = True
    guard_enabled: bool = True


def verify_attestation(
    attestation: TurnAttestation, expected: ExpectedAttestation, *, now: int | None = None
) -> VerificationResult:
    """Check that what was assembled is what the caller meant to send."""
    checks = {
        "scope_id_valid": expected.scope_id is None or attestation.scope_id == expected.scope_id,
        "spec_hash_match": expected.spec_hash is None or attestation.spec_hash == expected.spec_hash,
        "snippets_applied": not expected.snippets_expected or len(attestation.snippets_applied) > 0,
        "token_budget_ok": not expected.budget_ok or not attestation.token_budget.exceeded,
        "guard_active": not expected.guard_enabled or attestation.guard_enabled,
    }

    failures: list[VerificationFailure] = []
    if not checks["scope_id_valid"]:
        failures.append(VerificationFailure(
            check="scope_id",
            reason=f"Expected {expected.scope_id}, got {attestation.scope_id}",
            fix="Verify location id, agent id and prompt hash are correct",
        ))
    if not checks["spec_hash_match"]:
        failures.append(VerificationFailure(
            check="spec_hash",
            reason=f"Expected {expected.spec_hash}, got {attestation.spec_hash}",
            fix="Ensure the spec JSON is identical between runtime and grader",
        ))
    if not checks["snippets_applied"]:
        failures.append(VerificationFailure(
            check="snippets_applied",
            reason="Expected snippets but none were applied",
            fix="Check snippets exist for the scope and snippets_enabled=True",
        ))
    if not checks["token_budget_ok"]:
        budget = attestation.token_budget
        failures.append(VerificationFailure(
            check="token_budget",
            reason=f"Token budget exceeded: {budget.total} / {budget.max_tokens}",
            fix="Increase max_tokens or reduce context size",
        ))
    if not checks["guard_active"]:
        failures.append(VerificationFailure(
            check="guard",
            reason="Response guard is disabled",
            fix="Enable the guard to enforce spec rules",
        ))

    passed = not failures
    return VerificationResult(
        passed=passed,
        timestamp=int(time.time() * 1000) if now is None else now,
        checks=checks,
        message="Attestation verification passed" if passed
        else f"Attestation verification failed: {len(failures)} issue(s)",
        failures=tuple(failures),
    )


class AttestationDiff(NamedTuple):
    scope_id_match: bool
    spec_hash_match: bool
    snippet_delta: int
    token_delta: int
    differences: list[str]


def compare_attestations(a: TurnAttestation, b: TurnAttestation) -> AttestationDiff:
    differences = []
    scope_id_match = a.scope_id == b.scope_id
    if not scope_id_match:
        differences.append(f"scope_id mismatch: {a.scope_id} vs {b.scope_id}")

    spec_hash_match = a.spec_hash == b.spec_hash
    if not spec_hash_match:
        differences.append(f"spec_hash mismatch: {a.spec_hash} vs {b.spec_hash}")

    snippet_delta = len(a.snippets_applied) - len(b.snippets_applied)
    if snippet_delta:
        differences.append(f"Snippet count delta: {snippet_delta:+d}")

    token_delta = a.token_budget.total - b.token_budget.total
    if abs(token_delta) > TOKEN_DELTA_NOISE:
        differences.append(f"Token delta: {token_delta:+d}")

    return AttestationDiff(scope_id_match, spec_hash_match, snippet_delta, token_delta, differences)
