from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence

DiagnosticLevel = Literal["info", "warning", "error"]
LEVEL_RANK: Mapping[str, int] = {"info": 0, "warning": 1, "error": 2}

MemorySource = Literal["memory", "remote", "hybrid", "none"]


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class CollectedField:
    key: str
    value: str = ""
    valid: bool = True


@dataclass(frozen=True)
class AppliedSnippet:
    id: str
    trigger: str
    content: str
    source: str = "voice-agent"
    char_length: int = 0
    applied_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "trigger": self.trigger,
            "content": self.content,
            "source": self.source,
            "char_length": self.char_length,
            "applied_at": self.applied_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AppliedSnippet:
        content = str(data.get("content", ""))
        return cls(
            id=str(data.get("id", "")),
            trigger=str(data.get("trigger", "")),
            content=content,
            source=str(data.get("source", "voice-agent")),
            char_length=int(data.get("char_length", len(content))),
            applied_at=int(data.get("applied_at", 0)),
        )


@dataclass(frozen=True)
class TokenBudget:
    system_prompt: int
    spec: int
    snippets: int
    context: int
    summary: int
    last_turns: int
    max_tokens: int

    @property
    def total(self) -> int:
        return (
            self.system_prompt
            + self.spec
            + self.snippets
            + self.context
            + self.summary
            + self.last_turns
        )

    @property
    def exceeded(self) -> bool:
        return self.total > self.max_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "system_prompt": self.system_prompt,
            "spec": self.spec,
            "snippets": self.snippets,
            "context": self.context,
            "summary": self.summary,
            "last_turns": self.last_turns,
            "total": self.total,
            "max_tokens": self.max_tokens,
            "exceeded": self.exceeded,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TokenBudget:
        return cls(
            system_prompt=int(data.get("system_prompt", 0)),
            spec=int(data.get("spec", 0)),
            snippets=int(data.get("snippets", 0)),
            context=int(data.get("context", 0)),
            summary=int(data.get("summary", 0)),
            last_turns=int(data.get("last_turns", 0)),
            max_tokens=int(data.get("max_tokens", 0)),
        )


@dataclass(frozen=True)
class Diagnostic:
    level: DiagnosticLevel
    code: str
    message: str
    suggestion: str | None = None
    context: Mapping[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"level": self.level, "code": self.code, "message": self.message}
        if self.suggestion is not None:
            data["suggestion"] = self.suggestion
        if self.context is not None:
            data["context"] = dict(self.context)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Diagnostic:
        return cls(
            level=data.get("level", "info"),
            code=str(data.get("code", "")),
            message=str(data.get("message", "")),
            suggestion=data.get("suggestion"),
            context=data.get("context"),
        )


def worst_level(diagnostics: Sequence[Diagnostic]) -> DiagnosticLevel | None:
    if not diagnostics:
        return None
    return max(diagnostics, key=lambda d: LEVEL_RANK.get(d.level, 0)).level


@dataclass(frozen=True)
class TurnAttestation:
    turn_id: str
    timestamp: int
    scope_id: str
    location_id: str
    agent_id: str
    prompt_hash: str
    spec_hash: str
    snippets_applied: Sequence[AppliedSnippet]
    last_turns_used: int
    summary_included: bool
    token_budget: TokenBudget
    model: str
    temperature: float
    max_tokens: int
    diagnostics: Sequence[Diagnostic]
    snippets_enabled: bool
    guard_enabled: bool
    snippet_scope_id: str | None = None
    spec_source: str = "explicit_spec"
    memory_source: MemorySource = "none"

    def codes(self) -> list[str]:
        return [d.code for d in self.diagnostics]

    def to_dict(self) -> dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "timestamp": self.timestamp,
            "scope_id": self.scope_id,
            "location_id": self.location_id,
            "agent_id": self.agent_id,
            "prompt_hash": self.prompt_hash,
            "spec_hash": self.spec_hash,
            "snippet_scope_id": self.snippet_scope_id,
            "snippets_applied": [s.to_dict() for s in self.snippets_applied],
            "last_turns_used": self.last_turns_used,
            "summary_included": self.summary_included,
            "token_budget": self.token_budget.to_dict(),
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "snippets_enabled": self.snippets_enabled,
            "guard_enabled": self.guard_enabled,
            "spec_source": self.spec_source,
            "memory_source": self.memory_source,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TurnAttestation:
        return cls(
            turn_id=str(data["turn_id"]),
            timestamp=int(data.get("timestamp", 0)),
            scope_id=str(data["scope_id"]),
            location_id=str(data.get("location_id", "")),
            agent_id=str(data.get("agent_id", "")),
            prompt_hash=str(data.get("prompt_hash", "")),
            spec_hash=str(data.get("spec_hash", "")),
            snippet_scope_id=data.get("snippet_scope_id"),
            snippets_applied=tuple(AppliedSnippet.from_dict(s) for s in data.get("snippets_applied", [])),
            last_turns_used=int(data.get("last_turns_used", 0)),
            summary_included=bool(data.get("summary_included", False)),
            token_budget=TokenBudget.from_dict(data.get("token_budget", {})),
            model=str(data.get("model", "")),
            temperature=float(data.get("temperature", 0.0)),
            max_tokens=int(data.get("max_tokens", 0)),
            diagnostics=tuple(Diagnostic.from_dict(d) for d in data.get("diagnostics", [])),
            snippets_enabled=bool(data.get("snippets_enabled", False)),
            guard_enabled=bool(data.get("guard_enabled", False)),
            spec_source=str(data.get("spec_source", "explicit_spec")),
            memory_source=data.get("memory_source", "none"),
        )


@dataclass(frozen=True)
class SessionAttestation:
    conversation_id: str
    scope_id: str
    started_at: int
    ended_at: int | None
    turns: Sequence[TurnAttestation]
    session_diagnostics: Sequence[Diagnostic]
    total_snippets_applied: int
    avg_tokens_per_turn: int
    budget_overflow_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "scope_id": self.scope_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "turns": [t.to_dict() for t in self.turns],
            "session_diagnostics": [d.to_dict() for d in self.session_diagnostics],
            "total_snippets_applied": self.total_snippets_applied,
            "avg_tokens_per_turn": self.avg_tokens_per_turn,
            "budget_overflow_count": self.budget_overflow_count,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SessionAttestation:
        return cls(
            conversation_id=str(data["conversation_id"]),
            scope_id=str(data.get("scope_id", "")),
            started_at=int(data.get("started_at", 0)),
            ended_at=data.get("ended_at"),
            turns=tuple(TurnAttestation.from_dict(t) for t in data.get("turns", [])),
            session_diagnostics=tuple(Diagnostic.from_dict(d) for d in data.get("session_diagnostics", [])),
            total_snippets_applied=int(data.get("total_snippets_applied", 0)),
            avg_tokens_per_turn=int(data.get("avg_tokens_per_turn", 0)),
            budget_overflow_count=int(data.get("budget_overflow_count", 0)),
        )


@dataclass(frozen=True)
class AttestationComparison:
    with_snippets: TurnAttestation
    without_snippets: TurnAttestation
    snippet_count: int
    token_delta: int
    diagnostic_delta: int
    compared_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "with_snippets": self.with_snippets.to_dict(),
            "without_snippets": self.without_snippets.to_dict(),
            "snippet_count": self.snippet_count,
            "token_delta": self.token_delta,
            "diagnostic_delta": self.diagnostic_delta,
            "compared_at": self.compared_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AttestationComparison:
        return cls(
            with_snippets=TurnAttestation.from_dict(data["with_snippets"]),
            without_snippets=TurnAttestation.from_dict(data["without_snippets"]),
            snippet_count=int(data.get("snippet_count", 0)),
            token_delta=int(data.get("token_delta", 0)),
            diagnostic_delta=int(data.get("diagnostic_delta", 0)),
            compared_at=int(data.get("compared_at", 0)),
        )


@dataclass(frozen=True)
class CompileRequest:
    location_id: str
    agent_id: str
    system_prompt: str
    context_json: str = ""
    conversation_summary: str = ""
    last_turns: Sequence[str] = ()
    snippets_enabled: bool = True
    guard_enabled: bool = True
    max_turns_to_include: int = 8
    model: str | None = None
    temperature: float = 0.7
    max_tokens: int | None = None
    turn_id: str | None = None
    snippet_scope_hash: str | None = None


@dataclass(frozen=True)
class AssembledContext:
    """Everything that went into one turn's message list, before attestation."""

    system_prompt: str
    spec_json: str
    snippets: Sequence[AppliedSnippet]
    context_json: str
    summary: str
    last_turns: Sequence[str]
    messages: Sequence[ChatMessage]
    snippets_retrieved: int = 0
    snippet_error: str | None = None
    memory_source: MemorySource = "none"


@dataclass(frozen=True)
class CompiledContext:
    messages: Sequence[ChatMessage]
    attestation: TurnAttestation
    scope_id: str
    snippet_scope_id: str
    prompt_hash: str
    spec_hash: str
    effective_prompt: str = ""
    system_prompt_for_model: str = ""

    def message_dicts(self) -> list[dict[str, str]]:
        return [m.to_dict() for m in self.messages]


@dataclass(frozen=True)
class GuardDecision:
    approved: bool
    modified_response: str | None = None
    blocked_violation: str | None = None
    reason: str | None = None

    @property
    def outcome(self) -> Literal["approved", "modified", "blocked"]:
        if not self.approved:
            return "blocked"
        if self.modified_response is not None:
            return "modified"
        return "approved"

    def resolve(self, candidate: str, fallback: str) -> str:
        """Text the caller should actually speak for this decision."""
        if not self.approved:
            return fallback
        if self.modified_response is not None:
            return self.modified_response
        return candidate


@dataclass(frozen=True)
class DiagnosticReport:
    scope_id: str
    timestamp: int
    checks: Mapping[str, bool]
    issues: Sequence[Diagnostic]
    recommendations: Sequence[str]
    overall_health: Literal["healthy", "warning", "critical"]
    turns_analyzed: int = 0


@dataclass(frozen=True)
class VerificationFailure:
    check: str
    reason: str
    fix: str


@dataclass(frozen=True)
class VerificationResult:
    passed: bool
    timestamp: int
    checks: Mapping[str, bool]
    message: str
    failures: Sequence[VerificationFailure] = field(default_factory=tuple)
