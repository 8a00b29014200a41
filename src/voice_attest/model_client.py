from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol, Sequence, Union

import httpx

from .errors import UnrecognizedModelReply

Messages = Sequence[Mapping[str, str]]


class ModelCall(Protocol):
    async def __call__(self, messages: Messages) -> str: ...


@dataclass(frozen=True)
class PlainTextReply:
    text: str


@dataclass(frozen=True)
class ChatCompletionReply:
    text: str
    model: str | None = None
    finish_reason: str | None = None


@dataclass(frozen=True)
class CompletionReply:
    text: str


@dataclass(frozen=True)
class OutputTextReply:
    text: str


ModelReply = Union[PlainTextReply, ChatCompletionReply, CompletionReply, OutputTextReply]


def parse_model_reply(raw: Any) -> ModelReply:
    """Map a raw model reply onto one of the known envelopes, or fail loudly."""
    if isinstance(raw, str):
        return PlainTextReply(text=raw)
    if not isinstance(raw, Mapping):
        raise UnrecognizedModelReply(f"Unsupported reply type: {type(raw).__name__}")

    choices = raw.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], Mapping):
        first = choices[0]
        message = first.get("message")
        if isinstance(message, Mapping) and isinstance(message.get("content"), str):
            return ChatCompletionReply(
                text=message["content"],
                model=raw.get("model"),
                finish_reason=first.get("finish_reason"),
            )
        if isinstance(first.get("text"), str):
            return CompletionReply(text=first["text"])

    if isinstance(raw.get("output_text"), str):
        return OutputTextReply(text=raw["output_text"])

    raise UnrecognizedModelReply(f"Unrecognized reply envelope with keys {sorted(raw)}")


class HttpModelClient:
    """OpenAI-compatible chat completions endpoint, usable as a ModelCall."""

    def __init__(
        self,
        base_url: str,
        model: str,
        token: Optional[str] = None,
        timeout_secs: float = 30.0,
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.token = token
        self.timeout = timeout_secs
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.headers = {"Content-Type": "application/json"}
        if self.token:
            self.headers["Authorization"] = f"Bearer {self.token}"

    async def __call__(self, messages: Messages) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [dict(m) for m in messages],
            "temperature": self.temperature,
        }
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(f"{self.base_url}/chat/completions", json=payload, headers=self.headers)
            resp.raise_for_status()
            return parse_model_reply(resp.json()).text
