from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence
from urllib.parse import quote, unquote

from .domain_types import AttestationComparison, SessionAttestation, TurnAttestation
from .errors import AttestationConflict

logger = logging.getLogger(__name__)

ATTESTATION_PREFIX = "attestation:"
SESSION_PREFIX = "session-attestation:"
COMPARISON_PREFIX = "attestation-comparison:"
SCOPE_INDEX_PREFIX = "scope-index:"

SCOPE_INDEX_LIMIT = 100
DEFAULT_LIST_LIMIT = 50


class KeyValueStorage(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> Sequence[str]: ...


class InMemoryStorage:
    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> Sequence[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class JsonFileStorage:
    """One file per key under ``root``; file names are the percent-encoded key."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.root / f"{quote(key, safe='')}.json"

    def get(self, key: str) -> str | None:
        try:
            return self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set(self, key: str, value: str) -> None:
        fd, tmp = tempfile.mkstemp(dir=self.root, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(value)
            os.replace(tmp, self._path(key))
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def keys(self, prefix: str = "") -> Sequence[str]:
        names = (unquote(p.name[: -len(".json")]) for p in self.root.glob("*.json"))
        return sorted(k for k in names if k.startswith(prefix))


@dataclass(frozen=True)
class ScopeStats:
    total_turns: int
    total_snippets_applied: int
    avg_tokens_per_turn: int
    budget_overflow_count: int


class AttestationStore:
    """
    Receipts keyed by turn id, with a per-scope index kept most-recent-first.

    A turn id is written once. Each scope index holds the latest
    SCOPE_INDEX_LIMIT turn ids; older ids drop off the index (their receipts
    stay readable by turn id).
    """

    def __init__(self, storage: KeyValueStorage | None = None) -> None:
        self.storage: KeyValueStorage = storage if storage is not None else InMemoryStorage()
        self._write_lock = threading.Lock()
        self._scope_locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._scope_locks_guard = threading.Lock()

    def _scope_lock(self, scope_id: str) -> threading.Lock:
        with self._scope_locks_guard:
            return self._scope_locks[scope_id]

    def save(self, attestation: TurnAttestation) -> None:
        key = f"{ATTESTATION_PREFIX}{attestation.turn_id}"
        with self._write_lock:
            if self.storage.get(key) is not None:
                raise AttestationConflict(f"Attestation for turn {attestation.turn_id} already stored")
            self.storage.set(key, json.dumps(attestation.to_dict()))
        self._add_to_scope_index(attestation.scope_id, attestation.turn_id)
        logger.info("stored attestation %s under %s", attestation.turn_id, attestation.scope_id)

    def get(self, turn_id: str) -> TurnAttestation | None:
        raw = self.storage.get(f"{ATTESTATION_PREFIX}{turn_id}")
        if raw is None:
            return None
        return TurnAttestation.from_dict(json.loads(raw))

    def list_by_scope(self, scope_id: str, limit: int = DEFAULT_LIST_LIMIT) -> list[TurnAttestation]:
        attestations = []
        for turn_id in self.scope_index(scope_id)[:limit]:
            attestation = self.get(turn_id)
            if attestation is not None:
                attestations.append(attestation)
        return sorted(attestations, key=lambda a: a.timestamp, reverse=True)

    def scope_index(self, scope_id: str) -> list[str]:
        raw = self.storage.get(f"{SCOPE_INDEX_PREFIX}{scope_id}")
        return list(json.loads(raw)) if raw else []

    def scope_ids(self) -> list[str]:
        return [k[len(SCOPE_INDEX_PREFIX):] for k in self.storage.keys(SCOPE_INDEX_PREFIX)]

    def _add_to_scope_index(self, scope_id: str, turn_id: str) -> None:
        key = f"{SCOPE_INDEX_PREFIX}{scope_id}"
        with self._scope_lock(scope_id):
            index = self.scope_index(scope_id)
            if turn_id in index:
                return
            index.insert(0, turn_id)
            self.storage.set(key, json.dumps(index[:SCOPE_INDEX_LIMIT]))

    def save_session(self, session: SessionAttestation) -> None:
        self.storage.set(f"{SESSION_PREFIX}{session.conversation_id}", json.dumps(session.to_dict()))

    def get_session(self, conversation_id: str) -> SessionAttestation | None:
        raw = self.storage.get(f"{SESSION_PREFIX}{conversation_id}")
        return SessionAttestation.from_dict(json.loads(raw)) if raw else None

    def save_comparison(self, comparison: AttestationComparison) -> None:
        self.storage.set(f"{COMPARISON_PREFIX}{comparison.with_snippets.turn_id}", json.dumps(comparison.to_dict()))

    def get_comparison(self, turn_id: str) -> AttestationComparison | None:
        raw = self.storage.get(f"{COMPARISON_PREFIX}{turn_id}")
        return AttestationComparison.from_dict(json.loads(raw)) if raw else None

    def clear(self) -> None:
        for prefix in (ATTESTATION_PREFIX, SESSION_PREFIX, COMPARISON_PREFIX, SCOPE_INDEX_PREFIX):
            for key in self.storage.keys(prefix):
                self.storage.delete(key)

    def stats(self, scope_id: str) -> ScopeStats:
        attestations = self.list_by_scope(scope_id, limit=SCOPE_INDEX_LIMIT)
        total = len(attestations)
        return ScopeStats(
            total_turns=total,
            total_snippets_applied=sum(len(a.snippets_applied) for a in attestations),
            avg_tokens_per_turn=round(sum(a.token_budget.total for a in attestations) / total) if total else 0,
            budget_overflow_count=sum(1 for a in attestations if a.token_budget.exceeded),
        )

    def export(self, scope_id: str) -> str:
        attestations = self.list_by_scope(scope_id, limit=SCOPE_INDEX_LIMIT)
        return json.dumps([a.to_dict() for a in attestations], indent=2)
