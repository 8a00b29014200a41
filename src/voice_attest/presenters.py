from __future__ import annotations

from datetime import datetime, timezone

from .domain_types import DiagnosticReport, GuardDecision, TurnAttestation, VerificationResult

LEVEL_MARKS = {"info": "i", "warning": "!", "error": "x"}


def render_attestation(att: TurnAttestation) -> str:
    budget = att.token_budget
    lines = [
        f"Turn: {att.turn_id}",
        f"Scope: {att.scope_id}",
        f"Snippet scope: {att.snippet_scope_id}",
        f"Prompt hash: {att.prompt_hash}  Spec hash: {att.spec_hash} ({att.spec_source})",
        f"Model: {att.model} temperature={att.temperature} max_tokens={att.max_tokens}",
        f"Snippets: enabled={att.snippets_enabled} applied={len(att.snippets_applied)} source={att.memory_source}",
        f"Turns used: {att.last_turns_used}  Summary included: {att.summary_included}",
        f"Guard enabled: {att.guard_enabled}",
        (
            f"Tokens: system={budget.system_prompt} spec={budget.spec} snippets={budget.snippets} "
            f"context={budget.context} summary={budget.summary} turns={budget.last_turns} "
            f"total={budget.total}/{budget.max_tokens}{' EXCEEDED' if budget.exceeded else ''}"
        ),
    ]
    for snippet in att.snippets_applied:
        lines.append(f"- snippet {snippet.id} ({snippet.char_length} chars): {snippet.trigger}")
    for diag in att.diagnostics:
        lines.append(f"[{LEVEL_MARKS.get(diag.level, '?')}] {diag.code}: {diag.message}")
    return "\n".join(lines)


def render_guard_decision(decision: GuardDecision) -> str:
    lines = [f"Outcome: {decision.outcome}"]
    if decision.blocked_violation:
        lines.append(f"Violation: {decision.blocked_violation}")
    if decision.reason:
        lines.append(f"Reason: {decision.reason}")
    if decision.modified_response is not None:
        lines.append(f"Rewritten: {decision.modified_response}")
    return "\n".join(lines)


def render_diagnostic_report(report: DiagnosticReport) -> str:
    """Markdown rendering of a scope report."""
    ts = datetime.fromtimestamp(report.timestamp / 1000, tz=timezone.utc).isoformat()
    lines = [
        "# Diagnostic Report",
        "",
        f"**Scope:** `{report.scope_id}`",
        f"**Status:** {report.overall_health.upper()}",
        f"**Turns analyzed:** {report.turns_analyzed}",
        f"**Timestamp:** {ts}",
        "",
        "## Checks",
        "",
    ]
    for check, passed in report.checks.items():
        lines.append(f"- [{'x' if passed else ' '}] {check}")

    if report.issues:
        lines.extend(["", "## Issues", ""])
        for issue in report.issues:
            lines.append(f"### [{issue.level}] {issue.code}")
            lines.append(f"**Message:** {issue.message}")
            if issue.suggestion:
                lines.append(f"**Suggestion:** {issue.suggestion}")
            lines.append("")

    if report.recommendations:
        lines.extend(["## Recommendations", ""])
        for i, rec in enumerate(report.recommendations, start=1):
            lines.append(f"{i}. {rec}")

    return "\n".join(lines)


def render_verification(result: VerificationResult) -> str:
    lines = [result.message]
    for check, passed in result.checks.items():
        lines.append(f"  {'PASS' if passed else 'FAIL'} {check}")
    for failure in result.failures:
        lines.append(f"- {failure.check}: {failure.reason} (fix: {failure.fix})")
    return "\n".join(lines)
