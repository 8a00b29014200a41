from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import NamedTuple, Optional, Protocol, Sequence

from .domain_types import AppliedSnippet, MemorySource
from .errors import SnippetRetrievalFailure
from .identity import fnv1a_32

logger = logging.getLogger(__name__)


class SnippetFetch(NamedTuple):
    snippets: tuple[AppliedSnippet, ...]
    memory_source: MemorySource


class SnippetWrite(NamedTuple):
    snippet: AppliedSnippet
    memory_source: MemorySource


class SnippetSource(Protocol):
    """Where previously-learned corrections live, keyed by exact scope key.

    Both calls report which store actually answered.
    """

    async def get_snippets(self, scope_key: str) -> SnippetFetch: ...

    async def save_snippet(self, scope_key: str, snippet: AppliedSnippet) -> SnippetWrite: ...


def normalize_snippet(snippet: AppliedSnippet) -> AppliedSnippet:
    """Trim and lower-case the trigger and key the snippet by its content hash."""
    trigger = snippet.trigger.strip().lower()
    content = snippet.content.strip()
    return AppliedSnippet(
        id=fnv1a_32(f"{trigger}:{content}"),
        trigger=trigger,
        content=content,
        source=snippet.source,
        char_length=len(content),
        applied_at=snippet.applied_at or int(time.time() * 1000),
    )


@dataclass
class InMemorySnippetSource:
    """Process-local snippet store. Saving the same correction twice keeps one copy."""

    snippets: dict[str, list[AppliedSnippet]] = field(default_factory=dict)

    async def get_snippets(self, scope_key: str) -> SnippetFetch:
        return SnippetFetch(tuple(self.snippets.get(scope_key, ())), "memory")

    async def save_snippet(self, scope_key: str, snippet: AppliedSnippet) -> SnippetWrite:
        normalized = normalize_snippet(snippet)
        bucket = self.snippets.setdefault(scope_key, [])
        if all(existing.id != normalized.id for existing in bucket):
            bucket.append(normalized)
        return SnippetWrite(normalized, "memory")


@dataclass
class FakeSnippetSource:
    async def get_snippets(self, scope_key: str) -> SnippetFetch:
        return SnippetFetch((), "none")

    async def save_snippet(self, scope_key: str, snippet: AppliedSnippet) -> SnippetWrite:
        return SnippetWrite(snippet, "none")


class FallbackSnippetSource:
    """
    Remote memory service first, local store when the remote fails or has nothing.

    Saves always land locally; the remote copy is best effort and the write
    reports ``hybrid`` only when both succeeded.
    """

    def __init__(
        self,
        remote: SnippetSource,
        local: SnippetSource | None = None,
        remote_timeout_secs: Optional[float] = None,
    ) -> None:
        self.remote = remote
        self.local: SnippetSource = local if local is not None else InMemorySnippetSource()
        self.remote_timeout = remote_timeout_secs

    async def _remote_fetch(self, scope_key: str) -> SnippetFetch:
        if self.remote_timeout is None:
            return await self.remote.get_snippets(scope_key)
        return await asyncio.wait_for(self.remote.get_snippets(scope_key), timeout=self.remote_timeout)

    async def get_snippets(self, scope_key: str) -> SnippetFetch:
        try:
            fetched = await self._remote_fetch(scope_key)
        except (SnippetRetrievalFailure, asyncio.TimeoutError) as exc:
            logger.warning("remote snippets for %s unavailable, using local store: %s", scope_key, exc)
        else:
            if fetched.snippets:
                return fetched
        return await self.local.get_snippets(scope_key)

    async def save_snippet(self, scope_key: str, snippet: AppliedSnippet) -> SnippetWrite:
        written = await self.local.save_snippet(scope_key, snippet)
        try:
            await self.remote.save_snippet(scope_key, written.snippet)
        except SnippetRetrievalFailure as exc:
            logger.warning("remote save for %s failed, kept local copy only: %s", scope_key, exc)
            return written
        return SnippetWrite(written.snippet, "hybrid")
