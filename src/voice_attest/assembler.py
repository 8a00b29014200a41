from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

from .domain_types import AppliedSnippet, AssembledContext, ChatMessage, CompileRequest, MemorySource
from .identity import derive_scope_key, hash_text
from .rule_set import RuleSet, extract_rule_set, strip_rule_set
from .snippet_client import SnippetFetch, SnippetSource

logger = logging.getLogger(__name__)

MAX_SNIPPETS = 5
MAX_SNIPPET_CHARS = 200
DEFAULT_MAX_TURNS = 8

SPEC_HEADER = "<!-- SPEC FOR EVALUATION -->"
SNIPPETS_HEADER = "<!-- LEARNED IMPROVEMENTS -->"
CONTEXT_HEADER = "<!-- CONTEXT DATA -->"
SUMMARY_HEADER = "<!-- CONVERSATION SUMMARY -->"


@dataclass(frozen=True)
class TurnIdentity:
    prompt_hash: str
    spec_hash: str
    scope_id: str
    snippet_scope_id: str
    rule_set: RuleSet
    spec_json: str
    system_prompt_for_model: str


def derive_turn_identity(
    location_id: str,
    agent_id: str,
    system_prompt: str,
    snippet_scope_hash: str | None = None,
) -> TurnIdentity:
    if not isinstance(system_prompt, str):
        raise TypeError(f"system_prompt must be str, got {type(system_prompt).__name__}")

    prompt_hash = hash_text(system_prompt)
    scope_id = derive_scope_key(location_id, agent_id, prompt_hash)
    snippet_scope_id = derive_scope_key(location_id, agent_id, snippet_scope_hash or prompt_hash)
    rule_set = extract_rule_set(system_prompt)
    spec_json = rule_set.canonical_json()
    return TurnIdentity(
        prompt_hash=prompt_hash,
        spec_hash=hash_text(spec_json),
        scope_id=scope_id,
        snippet_scope_id=snippet_scope_id,
        rule_set=rule_set,
        spec_json=spec_json,
        system_prompt_for_model=strip_rule_set(system_prompt),
    )


def select_recent_turns(turns: Sequence[str], max_turns: int) -> list[str]:
    if max_turns <= 0:
        return []
    return list(turns)[-max_turns:]


def cap_snippets(snippets: Sequence[AppliedSnippet]) -> list[AppliedSnippet]:
    """Keep the first MAX_SNIPPETS in source order, each cut to MAX_SNIPPET_CHARS.

    ``char_length`` keeps the retrieved length so oversize snippets stay visible.
    """
    capped = []
    for snippet in list(snippets)[:MAX_SNIPPETS]:
        original_length = max(snippet.char_length, len(snippet.content))
        capped.append(
            AppliedSnippet(
                id=snippet.id,
                trigger=snippet.trigger,
                content=snippet.content[:MAX_SNIPPET_CHARS],
                source=snippet.source,
                char_length=original_length,
                applied_at=snippet.applied_at,
            )
        )
    return capped


def turn_messages(turn: str) -> list[ChatMessage]:
    if "USER:" in turn and "ASSISTANT:" in turn:
        user_part, _, assistant_part = turn.partition("ASSISTANT:")
        return [
            ChatMessage(role="user", content=user_part.replace("USER:", "", 1).strip()),
            ChatMessage(role="assistant", content=assistant_part.strip()),
        ]
    return [ChatMessage(role="user", content=turn)]


def render_snippets(snippets: Sequence[AppliedSnippet]) -> str:
    blocks = [
        f"LEARNED CORRECTION {idx}:\nQ: {s.trigger}\nA: {s.content}"
        for idx, s in enumerate(snippets, start=1)
    ]
    return "\n\n".join(blocks)


def build_messages(
    *,
    system_prompt: str,
    spec_json: str,
    snippets: Sequence[AppliedSnippet],
    context_json: str,
    summary: str,
    last_turns: Sequence[str],
) -> list[ChatMessage]:
    # Order is fixed: snippets placed after the dialogue window get ignored.
    messages: list[ChatMessage] = []
    if system_prompt:
        messages.append(ChatMessage(role="system", content=system_prompt))
    if spec_json:
        messages.append(ChatMessage(role="system", content=f"{SPEC_HEADER}\n{spec_json}"))
    if snippets:
        messages.append(ChatMessage(role="system", content=f"{SNIPPETS_HEADER}\n{render_snippets(snippets)}"))
    if context_json:
        messages.append(ChatMessage(role="system", content=f"{CONTEXT_HEADER}\n{context_json}"))
    if summary:
        messages.append(ChatMessage(role="system", content=f"{SUMMARY_HEADER}\n{summary}"))
    for turn in last_turns:
        messages.extend(turn_messages(turn))
    return messages


class ContextAssembler:
    """Pulls learned snippets for a scope and lays out one turn's message list."""

    def __init__(self, snippet_source: SnippetSource, snippet_timeout_secs: float = 5.0) -> None:
        self.snippet_source = snippet_source
        self.snippet_timeout = snippet_timeout_secs

    async def fetch_snippets(self, scope_key: str) -> tuple[SnippetFetch, str | None]:
        """Snippets for the scope plus the error text when retrieval failed open."""
        try:
            fetched = await asyncio.wait_for(
                self.snippet_source.get_snippets(scope_key), timeout=self.snippet_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("snippet fetch for %s timed out after %.1fs", scope_key, self.snippet_timeout)
            return SnippetFetch((), "none"), f"timed out after {self.snippet_timeout}s"
        except Exception as exc:
            # Memory outages must not block the conversation; the receipt records it.
            logger.warning("snippet fetch for %s failed, continuing without snippets: %s", scope_key, exc)
            return SnippetFetch((), "none"), str(exc) or type(exc).__name__
        return SnippetFetch(tuple(fetched.snippets or ()), fetched.memory_source), None

    async def assemble(self, request: CompileRequest, identity: TurnIdentity) -> AssembledContext:
        retrieved: Sequence[AppliedSnippet] = ()
        snippet_error = None
        memory_source: MemorySource = "none"
        if request.snippets_enabled:
            fetched, snippet_error = await self.fetch_snippets(identity.snippet_scope_id)
            retrieved, memory_source = fetched.snippets, fetched.memory_source
        snippets = cap_snippets(retrieved)
        if len(retrieved) > len(snippets):
            logger.info(
                "capped %d retrieved snippets to %d for %s", len(retrieved), len(snippets), identity.snippet_scope_id
            )

        last_turns = select_recent_turns(request.last_turns, request.max_turns_to_include)
        messages = build_messages(
            system_prompt=identity.system_prompt_for_model,
            spec_json=identity.spec_json,
            snippets=snippets,
            context_json=request.context_json,
            summary=request.conversation_summary,
            last_turns=last_turns,
        )
        logger.debug(
            "assembled %d messages for %s (%d snippets, %d turns)",
            len(messages), identity.scope_id, len(snippets), len(last_turns),
        )
        return AssembledContext(
            system_prompt=identity.system_prompt_for_model,
            spec_json=identity.spec_json,
            snippets=tuple(snippets),
            context_json=request.context_json,
            summary=request.conversation_summary,
            last_turns=tuple(last_turns),
            messages=tuple(messages),
            snippets_retrieved=len(retrieved),
            snippet_error=snippet_error,
            memory_source=memory_source,
        )
