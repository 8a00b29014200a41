from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from voice_attest.domain_types import AppliedSnippet
from voice_attest.errors import SnippetRetrievalFailure, UnrecognizedModelReply
from voice_attest.http_snippet_client import HttpSnippetSource
from voice_attest.model_client import (
    ChatCompletionReply,
    CompletionReply,
    HttpModelClient,
    OutputTextReply,
    PlainTextReply,
    parse_model_reply,
)

SCOPE = "scope:LOC1:AGT1:0123456789abcdef"


def _response(method: str, url: str, status: int = 200, **kwargs) -> httpx.Response:
    return httpx.Response(status, request=httpx.Request(method, url), **kwargs)


def test_snippet_source_headers() -> None:
    source = HttpSnippetSource(base_url="http://memory.local/", token="secret-token", timeout_secs=3.0)
    assert source.base_url == "http://memory.local"
    assert source.headers["Authorization"] == "Bearer secret-token"
    assert source.timeout == 3.0
    assert "Authorization" not in HttpSnippetSource(base_url="http://memory.local").headers


def test_get_snippets_maps_payload() -> None:
    source = HttpSnippetSource(base_url="http://memory.local")
    body = {
        "snippets": [
            {"id": "a1", "originalQuestion": "open sunday?", "correctedResponse": "Yes, 8 to 4.", "appliedAt": 7},
            {"trigger": "price?", "content": "Twenty dollars."},
            "garbage",
        ]
    }
    with patch.object(httpx.AsyncClient, "post", new_callable=AsyncMock) as mock_post:
        mock_post.return_value = _response("POST", "http://memory.local/api/memory/snippets", json=body)
        fetched = asyncio.run(source.get_snippets(SCOPE))

    snippets = fetched.snippets
    assert fetched.memory_source == "remote"
    assert [s.trigger for s in snippets] == ["open sunday?", "price?"]
    assert snippets[0].id == "a1"
    assert snippets[0].char_length == len("Yes, 8 to 4.")
    assert snippets[1].id == "snippet-0-1"
    args, kwargs = mock_post.call_args
    assert args[0] == "http://memory.local/api/memory/snippets"
    assert kwargs["json"] == {"scopeId": SCOPE, "limit": 20}


def test_get_snippets_http_error() -> None:
    source = HttpSnippetSource(base_url="http://memory.local")
    with patch.object(httpx.AsyncClient, "post", new_callable=AsyncMock) as mock_post:
        mock_post.return_value = _response("POST", "http://memory.local/api/memory/snippets", status=503)
        with pytest.raises(SnippetRetrievalFailure):
            asyncio.run(source.get_snippets(SCOPE))


def test_get_snippets_connection_error() -> None:
    source = HttpSnippetSource(base_url="http://memory.local")
    with patch.object(httpx.AsyncClient, "post", new_callable=AsyncMock) as mock_post:
        mock_post.side_effect = httpx.ConnectError("refused")
        with pytest.raises(SnippetRetrievalFailure):
            asyncio.run(source.get_snippets(SCOPE))


def test_get_snippets_missing_list() -> None:
    source = HttpSnippetSource(base_url="http://memory.local")
    with patch.object(httpx.AsyncClient, "post", new_callable=AsyncMock) as mock_post:
        mock_post.return_value = _response("POST", "http://memory.local/api/memory/snippets", json={"ok": True})
        with pytest.raises(SnippetRetrievalFailure):
            asyncio.run(source.get_snippets(SCOPE))


def test_save_snippet_normalizes() -> None:
    source = HttpSnippetSource(base_url="http://memory.local")
    with patch.object(httpx.AsyncClient, "put", new_callable=AsyncMock) as mock_put:
        mock_put.return_value = _response("PUT", "http://memory.local/api/memory/snippets")
        written = asyncio.run(source.save_snippet(
            SCOPE, AppliedSnippet(id="", trigger="  Open Sunday? ", content=" Yes. ", applied_at=5)
        ))

    saved = written.snippet
    assert written.memory_source == "remote"
    assert saved.trigger == "open sunday?"
    assert saved.content == "Yes."
    sent = mock_put.call_args.kwargs["json"]
    assert sent["scopeId"] == SCOPE
    assert sent["snippet"]["id"] == saved.id
    assert sent["snippet"]["charLength"] == 4


def test_health_check() -> None:
    source = HttpSnippetSource(base_url="http://memory.local")
    with patch.object(httpx.AsyncClient, "get", new_callable=AsyncMock) as mock_get:
        mock_get.return_value = _response("GET", "http://memory.local/api/memory/health")
        assert asyncio.run(source.health_check()) is True
        mock_get.side_effect = httpx.ConnectError("refused")
        assert asyncio.run(source.health_check()) is False


@pytest.mark.integration
def test_snippet_source_against_unreachable_host() -> None:
    source = HttpSnippetSource(base_url="http://invalid.local", timeout_secs=0.5)
    with pytest.raises(SnippetRetrievalFailure):
        asyncio.run(source.get_snippets(SCOPE))


@pytest.mark.parametrize(
    ("raw", "kind", "text"),
    [
        ("plain", PlainTextReply, "plain"),
        ({"choices": [{"message": {"content": "hi"}, "finish_reason": "stop"}], "model": "m"}, ChatCompletionReply, "hi"),
        ({"choices": [{"text": "legacy"}]}, CompletionReply, "legacy"),
        ({"output_text": "resp"}, OutputTextReply, "resp"),
    ],
)
def test_parse_model_reply_known_shapes(raw, kind, text) -> None:
    reply = parse_model_reply(raw)
    assert isinstance(reply, kind)
    assert reply.text == text


@pytest.mark.parametrize("raw", [None, 42, {}, {"choices": []}, {"choices": [{"message": {}}]}])
def test_parse_model_reply_unknown_shapes(raw) -> None:
    with pytest.raises(UnrecognizedModelReply):
        parse_model_reply(raw)


def test_http_model_client_posts_chat_completion() -> None:
    client = HttpModelClient(base_url="http://llm.local/v1", model="m", token="k", max_tokens=64)
    body = {"choices": [{"message": {"content": "What is your name?"}}]}
    with patch.object(httpx.AsyncClient, "post", new_callable=AsyncMock) as mock_post:
        mock_post.return_value = _response("POST", "http://llm.local/v1/chat/completions", json=body)
        text = asyncio.run(client([{"role": "user", "content": "hi"}]))

    assert text == "What is your name?"
    args, kwargs = mock_post.call_args
    assert args[0] == "http://llm.local/v1/chat/completions"
    assert kwargs["json"]["max_tokens"] == 64
    assert kwargs["headers"]["Authorization"] == "Bearer k"
