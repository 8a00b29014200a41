from __future__ import annotations

import hashlib
import logging
from typing import NamedTuple

from .errors import InvalidIdentity

logger = logging.getLogger(__name__)

SCOPE_PREFIX = "scope"
HASH_LENGTH = 16
MIN_SCOPE_HASH_LENGTH = 8

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193


class ScopeParts(NamedTuple):
    location_id: str
    agent_id: str
    prompt_hash: str


def fnv1a_32(text: str) -> str:
    """FNV-1a over UTF-8 bytes, rendered as 8 hex characters."""
    value = _FNV_OFFSET
    for byte in text.encode("utf-8"):
        value ^= byte
        value = (value * _FNV_PRIME) & 0xFFFFFFFF
    return f"{value:08x}"


def hash_text(text: str) -> str:
    """
    Stable short identity for a piece of text.

    SHA-256 over the UTF-8 bytes, first 16 hex characters. Interpreters built
    without SHA-256 get the 8 character FNV-1a digest instead; the shorter
    length is what downstream checks use to flag the weaker mode.
    """
    if not isinstance(text, str):
        raise TypeError(f"hash_text expects str, got {type(text).__name__}")
    try:
        digest = hashlib.new("sha256", text.encode("utf-8")).hexdigest()
    except ValueError:
        logger.warning("sha256 unavailable, falling back to 32-bit FNV-1a prompt hash")
        return fnv1a_32(text)
    return digest[:HASH_LENGTH]


def derive_scope_key(location_id: str, agent_id: str, prompt_hash: str) -> str:
    parts = {"location_id": location_id, "agent_id": agent_id, "prompt_hash": prompt_hash}
    for name, value in parts.items():
        if not isinstance(value, str) or not value.strip():
            raise InvalidIdentity(f"{name} must be a non-empty string, got {value!r}")
        if ":" in value:
            raise InvalidIdentity(f"{name} must not contain ':', got {value!r}")
    return f"{SCOPE_PREFIX}:{location_id}:{agent_id}:{prompt_hash}"


def parse_scope_key(key: str) -> ScopeParts | None:
    if not isinstance(key, str):
        return None
    parts = key.split(":")
    if len(parts) != 4 or parts[0] != SCOPE_PREFIX:
        return None
    _, location_id, agent_id, prompt_hash = parts
    if not (location_id and agent_id and prompt_hash):
        return None
    return ScopeParts(location_id=location_id, agent_id=agent_id, prompt_hash=prompt_hash)


def is_valid_scope_key(key: str) -> bool:
    parts = parse_scope_key(key)
    return parts is not None and len(parts.prompt_hash) >= MIN_SCOPE_HASH_LENGTH
