from __future__ import annotations

import logging
import uuid
from typing import Iterable

from .assembler import ContextAssembler, derive_turn_identity
from .attestation import AttestationConfig, generate_attestation
from .comparator import ABTestResult, Evaluator, run_comparison
from .diagnostics import run_scope_diagnostics
from .domain_types import (
    ChatMessage,
    CollectedField,
    CompiledContext,
    CompileRequest,
    DiagnosticReport,
    GuardDecision,
)
from .guard import guard_response
from .model_client import ModelCall
from .rule_set import RuleSet
from .settings import EngineSettings
from .snippet_client import FakeSnippetSource, SnippetSource
from .store import AttestationStore

logger = logging.getLogger(__name__)


def render_effective_prompt(messages: Iterable[ChatMessage]) -> str:
    return "\n\n---\n\n".join(f"[{m.role.upper()}]\n{m.content}" for m in messages)


class AttestationEngine:
    """
    Entry point for callers: compile a turn, guard a reply, diagnose a scope,
    compare with and without snippets.

    The snippet source and store are handed in, never looked up globally.
    """

    def __init__(
        self,
        snippet_source: SnippetSource | None = None,
        store: AttestationStore | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.snippet_source: SnippetSource = snippet_source if snippet_source is not None else FakeSnippetSource()
        self.store = store if store is not None else AttestationStore()
        self.assembler = ContextAssembler(self.snippet_source, self.settings.snippet_timeout_secs)

    async def compile(self, request: CompileRequest) -> CompiledContext:
        identity = derive_turn_identity(
            request.location_id, request.agent_id, request.system_prompt, request.snippet_scope_hash
        )
        assembled = await self.assembler.assemble(request, identity)

        config = AttestationConfig(
            location_id=request.location_id,
            agent_id=request.agent_id,
            system_prompt=request.system_prompt,
            model=request.model or self.settings.model,
            temperature=request.temperature,
            max_tokens=request.max_tokens if request.max_tokens is not None else self.settings.max_tokens,
            snippets_enabled=request.snippets_enabled,
            guard_enabled=request.guard_enabled,
            snippet_scope_hash=request.snippet_scope_hash,
        )
        turn_id = request.turn_id or f"turn-{uuid.uuid4().hex}"
        attestation = generate_attestation(turn_id, config, assembled, identity=identity)
        self.store.save(attestation)

        logger.debug(
            "compiled %s: %d snippets, %d/%d tokens, %d diagnostics",
            turn_id,
            len(attestation.snippets_applied),
            attestation.token_budget.total,
            attestation.token_budget.max_tokens,
            len(attestation.diagnostics),
        )
        return CompiledContext(
            messages=assembled.messages,
            attestation=attestation,
            scope_id=identity.scope_id,
            snippet_scope_id=identity.snippet_scope_id,
            prompt_hash=identity.prompt_hash,
            spec_hash=identity.spec_hash,
            effective_prompt=render_effective_prompt(assembled.messages),
            system_prompt_for_model=identity.system_prompt_for_model,
        )

    def guard(self, rule_set: RuleSet, fields_collected: Iterable[CollectedField], candidate: str) -> GuardDecision:
        return guard_response(rule_set, fields_collected, candidate)

    def diagnose(
        self,
        scope_id: str,
        expected_prompt_hash: str | None = None,
        expected_spec_hash: str | None = None,
    ) -> DiagnosticReport:
        return run_scope_diagnostics(self.store, scope_id, expected_prompt_hash, expected_spec_hash)

    async def compare(
        self, request: CompileRequest, model_call: ModelCall, evaluate: Evaluator | None = None
    ) -> ABTestResult:
        return await run_comparison(self, request, model_call, evaluate)
