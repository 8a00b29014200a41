from typing import Iterable

from ..domain_types import Diagnostic, SessionAttestation, TurnAttestation
from .base import Projection


class SessionProjection(Projection):
    def __init__(self, conversation_id: str, scope_id: str = ""):
        self.conversation_id = conversation_id
        self.scope_id = scope_id
        self.turns: list[TurnAttestation] = []
        self.spec_hashes: list[str] = []

    def feed(self, attestation: TurnAttestation) -> None:
        self.turns.append(attestation)
        if not self.scope_id:
            self.scope_id = attestation.scope_id
        if attestation.spec_hash not in self.spec_hashes:
            self.spec_hashes.append(attestation.spec_hash)

    def diagnostics(self) -> list[Diagnostic]:
        found = []
        overflows = sum(1 for t in self.turns if t.token_budget.exceeded)
        applied = sum(len(t.snippets_applied) for t in self.turns)

        if overflows > 0:
            found.append(Diagnostic(
                level="error",
                code="MULTIPLE_BUDGET_OVERFLOWS",
                message=f"Token budget exceeded on {overflows} turns",
                suggestion="Review token budget settings and context size.",
                context={"overflow_count": overflows, "total_turns": len(self.turns)},
            ))

        if applied == 0 and any(t.snippets_enabled for t in self.turns):
            found.append(Diagnostic(
                level="warning",
                code="NO_SNIPPETS_USED_IN_SESSION",
                message="No snippets were applied during the entire session",
                suggestion="Check if snippets exist for this scope id or if they were disabled.",
            ))

        if len(self.spec_hashes) > 1:
            found.append(Diagnostic(
                level="warning",
                code="SPEC_HASH_CHANGED",
                message=f"Spec hash changed mid-session: {' -> '.join(self.spec_hashes)}",
                suggestion="The prompt's embedded spec was edited during the conversation.",
                context={"spec_hashes": list(self.spec_hashes)},
            ))
        return found

    def build(self, started_at: int | None = None, ended_at: int | None = None) -> SessionAttestation:
        total_tokens = sum(t.token_budget.total for t in self.turns)
        if started_at is None:
            started_at = min((t.timestamp for t in self.turns), default=0)
        return SessionAttestation(
            conversation_id=self.conversation_id,
            scope_id=self.scope_id,
            started_at=started_at,
            ended_at=ended_at,
            turns=tuple(self.turns),
            session_diagnostics=tuple(self.diagnostics()),
            total_snippets_applied=sum(len(t.snippets_applied) for t in self.turns),
            avg_tokens_per_turn=round(total_tokens / len(self.turns)) if self.turns else 0,
            budget_overflow_count=sum(1 for t in self.turns if t.token_budget.exceeded),
        )

    def render(self) -> str:
        session = self.build()
        lines = []
        lines.append(f"Session {session.conversation_id}")
        lines.append("=" * (8 + len(session.conversation_id)))
        lines.append(f"Scope:              {session.scope_id}")
        lines.append(f"Turns:              {len(session.turns)}")
        lines.append(f"Snippets applied:   {session.total_snippets_applied}")
        lines.append(f"Avg tokens / turn:  {session.avg_tokens_per_turn}")
        lines.append(f"Budget overflows:   {session.budget_overflow_count}")
        for diag in session.session_diagnostics:
            lines.append(f"  [{diag.level.upper()}] {diag.code}: {diag.message}")
        return "\n".join(lines)


def aggregate_session(
    conversation_id: str,
    scope_id: str,
    turns: Iterable[TurnAttestation],
    started_at: int | None = None,
    ended_at: int | None = None,
) -> SessionAttestation:
    projection = SessionProjection(conversation_id, scope_id)
    for turn in sorted(turns, key=lambda t: t.timestamp):
        projection.feed(turn)
    return projection.build(started_at=started_at, ended_at=ended_at)
