from __future__ import annotations

import asyncio
from dataclasses import replace

from voice_attest.assembler import derive_turn_identity
from voice_attest.comparator import RubricCriteria, run_session_comparison, score_response
from voice_attest.domain_types import AppliedSnippet, CompileRequest
from voice_attest.engine import AttestationEngine
from voice_attest.rule_set import RuleSet, SpecSource, default_rule_set, embed_rule_set
from voice_attest.snippet_client import InMemorySnippetSource

REQUEST = CompileRequest(location_id="LOC1", agent_id="AGT1", system_prompt="Hello", turn_id="ab1")


class ScriptedModel:
    """Answers well when learned corrections are in the prompt, badly otherwise."""

    def __init__(self) -> None:
        self.calls: list[list[dict]] = []

    async def __call__(self, messages) -> str:
        self.calls.append(list(messages))
        if any("LEARNED CORRECTION" in m["content"] for m in messages):
            return "What is your first name?"
        return "As an AI I can help. What is your name? And phone?"


def test_empty_snippet_store_gives_zero_delta() -> None:
    engine = AttestationEngine(snippet_source=InMemorySnippetSource())
    model = ScriptedModel()
    result = asyncio.run(engine.compare(REQUEST, model))

    assert result.deltas.snippet_count == 0
    assert len(result.with_snippets.attestation.snippets_applied) == 0
    assert result.deltas.score_delta == 0
    assert not result.improved
    assert len(model.calls) == 2


def test_comparison_with_snippets_is_stored() -> None:
    scope = derive_turn_identity("LOC1", "AGT1", "Hello").snippet_scope_id
    source = InMemorySnippetSource(snippets={
        scope: [AppliedSnippet(id="s1", trigger="name?", content="Ask only for the first name.")]
    })
    engine = AttestationEngine(snippet_source=source)
    result = asyncio.run(engine.compare(REQUEST, ScriptedModel()))

    assert result.with_snippets.attestation.turn_id == "ab1-with-snippets"
    assert result.without_snippets.attestation.turn_id == "ab1-without-snippets"
    assert result.without_snippets.attestation.snippets_enabled is False
    assert result.deltas.snippet_count == 1
    assert result.deltas.token_delta > 0
    assert result.improved

    stored = engine.store.get_comparison("ab1-with-snippets")
    assert stored == result.comparison
    assert engine.store.get("ab1-without-snippets") is not None


def test_custom_evaluator() -> None:
    engine = AttestationEngine()
    result = asyncio.run(engine.compare(REQUEST, ScriptedModel(), evaluate=lambda text: len(text)))
    assert result.with_snippets.score == float(len(result.with_snippets.response))


def test_rubric_scoring() -> None:
    assert score_response("What is your first name?") == 100
    assert score_response("Name? Phone?") == 75
    assert score_response("One. Two. Three.") == 80
    assert score_response("As an AI, our database says hi.") == 0
    assert score_response("Name? Phone?", RubricCriteria(one_question=False)) == 100


def test_session_comparison_summary() -> None:
    engine = AttestationEngine()
    results, summary = asyncio.run(run_session_comparison(
        engine,
        REQUEST,
        [("turn-1", "hi"), ("turn-2", "can I book?")],
        ScriptedModel(),
    ))
    assert len(results) == 2
    assert summary.total_tests == 2
    assert summary.neutral == 2
    assert summary.avg_score_delta == 0.0
    assert results[1].with_snippets.attestation.last_turns_used == 1


def test_rubric_limits_follow_the_rule_set() -> None:
    criteria = RubricCriteria.from_rule_set(RuleSet(max_sentences=1, max_words_per_turn=5))
    assert criteria.max_sentences == 1
    assert criteria.max_words == 5
    assert score_response("Great. What is your name?", criteria) == 80
    assert score_response("What is your first and last name please?", criteria) == 80
    assert score_response("What is your name?", criteria) == 100

    relaxed = RubricCriteria.from_rule_set(RuleSet(max_sentences=3, one_question_per_turn=False))
    assert score_response("One. Two. Three.", relaxed) == 100
    assert score_response("Name? Phone?", relaxed) == 100


def test_rubric_ignores_limits_without_explicit_spec() -> None:
    for source in (SpecSource.NO_SPEC_FOUND, SpecSource.PARSE_ERROR):
        assert RubricCriteria.from_rule_set(default_rule_set(source)) == RubricCriteria()


def test_default_scoring_reads_limits_from_the_prompt() -> None:
    prompt = embed_rule_set("Hello", RuleSet(max_sentences=1, max_words_per_turn=30))
    request = replace(REQUEST, system_prompt=prompt)

    async def two_sentences(messages) -> str:
        return "Welcome in. What is your first name?"

    result = asyncio.run(AttestationEngine().compare(request, two_sentences))
    assert result.with_snippets.score == 80
    assert asyncio.run(AttestationEngine().compare(REQUEST, two_sentences)).with_snippets.score == 100


def test_generated_turn_ids_do_not_collide() -> None:
    engine = AttestationEngine()
    request = replace(REQUEST, turn_id=None)

    first = asyncio.run(engine.compare(request, ScriptedModel()))
    second = asyncio.run(engine.compare(request, ScriptedModel()))

    first_id = first.with_snippets.attestation.turn_id
    second_id = second.with_snippets.attestation.turn_id
    assert first_id != second_id
    assert first_id.startswith("ab-") and first_id.endswith("-with-snippets")
    assert engine.store.get(second.without_snippets.attestation.turn_id) is not None
