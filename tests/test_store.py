from __future__ import annotations

import json
import threading
from dataclasses import replace

import pytest
from voice_attest.domain_types import AppliedSnippet, Diagnostic, TokenBudget, TurnAttestation
from voice_attest.errors import AttestationConflict
from voice_attest.store import (
    SCOPE_INDEX_LIMIT,
    AttestationStore,
    InMemoryStorage,
    JsonFileStorage,
)

SCOPE = "scope:LOC1:AGT1:0123456789abcdef"


def make_attestation(turn_id: str, timestamp: int, scope_id: str = SCOPE, **overrides) -> TurnAttestation:
    att = TurnAttestation(
        turn_id=turn_id,
        timestamp=timestamp,
        scope_id=scope_id,
        location_id="LOC1",
        agent_id="AGT1",
        prompt_hash=scope_id.rsplit(":", 1)[-1],
        spec_hash="fedcba9876543210",
        snippets_applied=(AppliedSnippet(id="s1", trigger="hours?", content="We open at 6.", char_length=13),),
        last_turns_used=2,
        summary_included=False,
        token_budget=TokenBudget(
            system_prompt=100, spec=50, snippets=4, context=0, summary=0, last_turns=10, max_tokens=4096
        ),
        model="gpt-4o-mini",
        temperature=0.7,
        max_tokens=4096,
        diagnostics=(Diagnostic(level="info", code="GUARD_DISABLED", message="Response guard is disabled"),),
        snippets_enabled=True,
        guard_enabled=True,
        snippet_scope_id=scope_id,
    )
    return replace(att, **overrides)


def test_save_and_get_round_trip() -> None:
    store = AttestationStore()
    att = make_attestation("t1", 1000)
    store.save(att)
    assert store.get("t1") == att
    assert store.get("missing") is None


def test_turn_ids_are_write_once() -> None:
    store = AttestationStore()
    store.save(make_attestation("t1", 1000))
    with pytest.raises(AttestationConflict):
        store.save(make_attestation("t1", 2000))
    assert store.get("t1").timestamp == 1000


def test_list_by_scope_most_recent_first() -> None:
    store = AttestationStore()
    store.save(make_attestation("t1", 1000))
    store.save(make_attestation("t3", 3000))
    store.save(make_attestation("t2", 2000))
    store.save(make_attestation("other", 5000, scope_id="scope:LOC2:AGT1:0123456789abcdef"))

    assert [a.turn_id for a in store.list_by_scope(SCOPE)] == ["t3", "t2", "t1"]
    assert [a.turn_id for a in store.list_by_scope(SCOPE, limit=2)] == ["t3", "t2"]
    assert store.list_by_scope("scope:none:none:0123456789abcdef") == []


def test_scope_index_is_bounded() -> None:
    store = AttestationStore()
    for i in range(SCOPE_INDEX_LIMIT + 5):
        store.save(make_attestation(f"t{i}", i))

    index = store.scope_index(SCOPE)
    assert len(index) == SCOPE_INDEX_LIMIT
    assert index[0] == f"t{SCOPE_INDEX_LIMIT + 4}"
    assert "t0" not in index
    # evicted from the index, still readable by turn id
    assert store.get("t0") is not None


def test_stats_and_export() -> None:
    store = AttestationStore()
    store.save(make_attestation("t1", 1000))
    store.save(make_attestation(
        "t2", 2000,
        token_budget=TokenBudget(system_prompt=90, spec=0, snippets=0, context=0, summary=0, last_turns=0, max_tokens=10),
    ))

    stats = store.stats(SCOPE)
    assert stats.total_turns == 2
    assert stats.total_snippets_applied == 2
    assert stats.budget_overflow_count == 1
    assert stats.avg_tokens_per_turn == round((164 + 90) / 2)

    exported = json.loads(store.export(SCOPE))
    assert [item["turn_id"] for item in exported] == ["t2", "t1"]


def test_clear_removes_everything() -> None:
    store = AttestationStore()
    store.save(make_attestation("t1", 1000))
    store.clear()
    assert store.get("t1") is None
    assert store.list_by_scope(SCOPE) == []
    assert store.scope_ids() == []


def test_json_file_storage_persists_across_instances(tmp_path) -> None:
    store = AttestationStore(JsonFileStorage(tmp_path))
    store.save(make_attestation("turn/with:odd chars", 1000))

    reopened = AttestationStore(JsonFileStorage(tmp_path))
    assert reopened.get("turn/with:odd chars") is not None
    assert reopened.scope_ids() == [SCOPE]
    with pytest.raises(AttestationConflict):
        reopened.save(make_attestation("turn/with:odd chars", 2000))

    reopened.clear()
    assert list(tmp_path.glob("*.json")) == []


def test_in_memory_storage_prefix_keys() -> None:
    storage = InMemoryStorage()
    storage.set("a:1", "x")
    storage.set("b:1", "y")
    storage.set("a:2", "z")
    assert storage.keys("a:") == ["a:1", "a:2"]
    storage.delete("a:1")
    storage.delete("a:1")
    assert storage.get("a:1") is None


def test_concurrent_saves_keep_every_turn_in_scope_index() -> None:
    store = AttestationStore()

    def save_turns(worker: int) -> None:
        for i in range(10):
            store.save(make_attestation(f"w{worker}-t{i}", worker * 100 + i))

    threads = [threading.Thread(target=save_turns, args=(worker,)) for worker in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    expected = {f"w{worker}-t{i}" for worker in range(5) for i in range(10)}
    index = store.scope_index(SCOPE)
    assert len(index) == 50
    assert set(index) == expected
    assert all(store.get(turn_id) is not None for turn_id in expected)
