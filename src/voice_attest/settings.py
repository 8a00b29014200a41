from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_MAX_TOKENS = 4096


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class EngineSettings:
    memory_url: str = ""
    memory_token: str | None = None
    timeout_secs: float = 15.0
    snippet_timeout_secs: float = 5.0
    store_dir: str = ""
    model: str = DEFAULT_MODEL
    max_tokens: int = DEFAULT_MAX_TOKENS
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> EngineSettings:
        env = os.environ if env is None else env
        return cls(
            memory_url=env.get("VOICE_ATTEST_MEMORY_URL", "").strip(),
            memory_token=env.get("VOICE_ATTEST_MEMORY_TOKEN", "").strip() or None,
            timeout_secs=_float_env(env, "VOICE_ATTEST_TIMEOUT_SECS", 15.0),
            snippet_timeout_secs=_float_env(env, "VOICE_ATTEST_SNIPPET_TIMEOUT_SECS", 5.0),
            store_dir=env.get("VOICE_ATTEST_STORE_DIR", "").strip(),
            model=env.get("VOICE_ATTEST_MODEL", "").strip() or DEFAULT_MODEL,
            max_tokens=_int_env(env, "VOICE_ATTEST_MAX_TOKENS", DEFAULT_MAX_TOKENS),
            log_level=env.get("VOICE_ATTEST_LOG_LEVEL", "").strip().upper() or "WARNING",
        )
