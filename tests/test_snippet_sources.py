from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
from voice_attest.assembler import derive_turn_identity
from voice_attest.domain_types import AppliedSnippet, CompileRequest
from voice_attest.engine import AttestationEngine
from voice_attest.errors import SnippetRetrievalFailure
from voice_attest.http_snippet_client import HttpSnippetSource
from voice_attest.snippet_client import (
    FallbackSnippetSource,
    InMemorySnippetSource,
    SnippetFetch,
    SnippetWrite,
)

SCOPE = "scope:LOC1:AGT1:0123456789abcdef"


def _snippet(i: int) -> AppliedSnippet:
    content = f"Correction number {i}."
    return AppliedSnippet(id=f"s{i}", trigger=f"question {i}", content=content, char_length=len(content))


class DownRemote:
    async def get_snippets(self, scope_key: str) -> SnippetFetch:
        raise SnippetRetrievalFailure("memory service returned 503")

    async def save_snippet(self, scope_key: str, snippet: AppliedSnippet) -> SnippetWrite:
        raise SnippetRetrievalFailure("memory service returned 503")


class StaticRemote:
    def __init__(self, snippets=()) -> None:
        self.snippets = tuple(snippets)
        self.saved: list[AppliedSnippet] = []

    async def get_snippets(self, scope_key: str) -> SnippetFetch:
        return SnippetFetch(self.snippets, "remote")

    async def save_snippet(self, scope_key: str, snippet: AppliedSnippet) -> SnippetWrite:
        self.saved.append(snippet)
        return SnippetWrite(snippet, "remote")


class SlowRemote(StaticRemote):
    async def get_snippets(self, scope_key: str) -> SnippetFetch:
        await asyncio.sleep(5)
        return SnippetFetch(self.snippets, "remote")


def test_remote_answer_is_used_when_it_has_snippets() -> None:
    local = InMemorySnippetSource(snippets={SCOPE: [_snippet(9)]})
    source = FallbackSnippetSource(StaticRemote([_snippet(1)]), local)

    fetched = asyncio.run(source.get_snippets(SCOPE))
    assert fetched.memory_source == "remote"
    assert [s.id for s in fetched.snippets] == ["s1"]


def test_remote_failure_falls_back_to_local() -> None:
    local = InMemorySnippetSource(snippets={SCOPE: [_snippet(9)]})
    source = FallbackSnippetSource(DownRemote(), local)

    fetched = asyncio.run(source.get_snippets(SCOPE))
    assert fetched.memory_source == "memory"
    assert [s.id for s in fetched.snippets] == ["s9"]


def test_empty_remote_falls_back_to_local() -> None:
    local = InMemorySnippetSource(snippets={SCOPE: [_snippet(9)]})
    source = FallbackSnippetSource(StaticRemote(), local)

    fetched = asyncio.run(source.get_snippets(SCOPE))
    assert fetched.memory_source == "memory"
    assert len(fetched.snippets) == 1


def test_slow_remote_falls_back_within_its_own_timeout() -> None:
    local = InMemorySnippetSource(snippets={SCOPE: [_snippet(9)]})
    source = FallbackSnippetSource(SlowRemote([_snippet(1)]), local, remote_timeout_secs=0.01)

    fetched = asyncio.run(source.get_snippets(SCOPE))
    assert fetched.memory_source == "memory"
    assert [s.id for s in fetched.snippets] == ["s9"]


def test_save_reaches_both_stores() -> None:
    remote = StaticRemote()
    source = FallbackSnippetSource(remote)

    snippet = AppliedSnippet(id="", trigger=" Open Sunday? ", content="Yes.")
    written = asyncio.run(source.save_snippet(SCOPE, snippet))
    assert written.memory_source == "hybrid"
    assert written.snippet.trigger == "open sunday?"
    assert remote.saved == [written.snippet]
    assert asyncio.run(source.local.get_snippets(SCOPE)).snippets == (written.snippet,)


def test_save_keeps_local_copy_when_remote_is_down() -> None:
    source = FallbackSnippetSource(DownRemote())

    written = asyncio.run(source.save_snippet(SCOPE, _snippet(1)))
    assert written.memory_source == "memory"

    # A later read while the remote is still down sees the local copy.
    fetched = asyncio.run(source.get_snippets(SCOPE))
    assert fetched.memory_source == "memory"
    assert fetched.snippets == (written.snippet,)


def test_in_memory_source_keeps_one_copy_per_correction() -> None:
    source = InMemorySnippetSource()
    first = asyncio.run(source.save_snippet(SCOPE, AppliedSnippet(id="", trigger="Price?", content="Twenty.")))
    second = asyncio.run(source.save_snippet(SCOPE, AppliedSnippet(id="", trigger=" price? ", content="Twenty. ")))

    assert first.snippet.id == second.snippet.id
    assert len(source.snippets[SCOPE]) == 1


def test_receipt_names_the_store_that_answered() -> None:
    identity = derive_turn_identity("LOC1", "AGT1", "Hello")
    local = InMemorySnippetSource(snippets={identity.snippet_scope_id: [_snippet(1)]})
    engine = AttestationEngine(snippet_source=FallbackSnippetSource(DownRemote(), local))
    request = CompileRequest(location_id="LOC1", agent_id="AGT1", system_prompt="Hello")

    att = asyncio.run(engine.compile(request)).attestation
    assert att.memory_source == "memory"
    assert [s.id for s in att.snippets_applied] == ["s1"]
    assert "NO_SNIPPETS_APPLIED" not in att.codes()


def test_http_outage_falls_back_to_local_store() -> None:
    remote = HttpSnippetSource(base_url="http://memory.local")
    local = InMemorySnippetSource(snippets={SCOPE: [_snippet(9)]})
    source = FallbackSnippetSource(remote, local)

    with patch.object(httpx.AsyncClient, "post", new_callable=AsyncMock) as mock_post:
        mock_post.side_effect = httpx.ConnectError("refused")
        fetched = asyncio.run(source.get_snippets(SCOPE))

    assert fetched.memory_source == "memory"
    assert [s.id for s in fetched.snippets] == ["s9"]
