from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import httpx

from .domain_types import AppliedSnippet
from .errors import SnippetRetrievalFailure
from .snippet_client import SnippetFetch, SnippetSource, SnippetWrite, normalize_snippet

logger = logging.getLogger(__name__)


def snippet_from_payload(item: Mapping[str, Any], index: int) -> AppliedSnippet:
    # The memory service speaks question/response; older records use trigger/content.
    trigger = str(item.get("originalQuestion") or item.get("trigger") or item.get("question") or "")
    content = str(item.get("correctedResponse") or item.get("content") or item.get("response") or "")
    applied_at = int(item.get("appliedAt") or item.get("timestamp") or 0)
    return AppliedSnippet(
        id=str(item.get("id") or f"snippet-{applied_at}-{index}"),
        trigger=trigger,
        content=content,
        source=str(item.get("source") or "voice-agent"),
        char_length=len(content),
        applied_at=applied_at,
    )


class HttpSnippetSource(SnippetSource):
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout_secs: float = 15.0,
        fetch_limit: int = 20,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout_secs
        self.fetch_limit = fetch_limit
        self.headers = {"Content-Type": "application/json"}
        if self.token:
            self.headers["Authorization"] = f"Bearer {self.token}"

    async def get_snippets(self, scope_key: str) -> SnippetFetch:
        url = f"{self.base_url}/api/memory/snippets"
        payload = {"scopeId": scope_key, "limit": self.fetch_limit}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, json=payload, headers=self.headers)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise SnippetRetrievalFailure(f"Snippet fetch for {scope_key} failed: {exc}") from exc

        items = data.get("snippets") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise SnippetRetrievalFailure(f"Memory service returned no snippet list for {scope_key}")
        snippets = tuple(snippet_from_payload(item, i) for i, item in enumerate(items) if isinstance(item, dict))
        return SnippetFetch(snippets, "remote")

    async def save_snippet(self, scope_key: str, snippet: AppliedSnippet) -> SnippetWrite:
        normalized = normalize_snippet(snippet)
        url = f"{self.base_url}/api/memory/snippets"
        payload = {
            "scopeId": scope_key,
            "snippet": {
                "id": normalized.id,
                "scopeId": scope_key,
                "trigger": normalized.trigger,
                "content": normalized.content,
                "appliedAt": normalized.applied_at,
                "source": normalized.source,
                "charLength": normalized.char_length,
                "contentHash": normalized.id,
            },
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.put(url, json=payload, headers=self.headers)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise SnippetRetrievalFailure(f"Snippet save for {scope_key} failed: {exc}") from exc
        logger.info("saved snippet %s to %s", normalized.id, scope_key)
        return SnippetWrite(normalized, "remote")

    async def health_check(self) -> bool:
        url = f"{self.base_url}/api/memory/health"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(url, headers=self.headers)
        except httpx.HTTPError as exc:
            logger.warning("memory service health check failed: %s", exc)
            return False
        return resp.is_success
