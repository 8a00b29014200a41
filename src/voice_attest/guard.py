from __future__ import annotations

import re
from typing import Iterable

from .domain_types import CollectedField, GuardDecision
from .rule_set import RuleSet

SAFE_FALLBACK = "Sorry, could you say that one more time?"

AI_SELF_REFERENCE_RE = re.compile(r"(i'm an ai|i am an ai|as an ai|as a language model)", re.IGNORECASE)
BACKEND_MENTION_RE = re.compile(r"(\bghl\b|go ?high ?level|crm system|backend|database)", re.IGNORECASE)
BOOKING_RE = re.compile(
    r"\b(booked|scheduled|reserved|confirmed your appointment|book you|booking you)\b", re.IGNORECASE
)
# A sentence ends at punctuation followed by whitespace or end of text, so
# "4.5" and "Mr." stay inside their sentence.
SENTENCE_RE = re.compile(
    r".+?(?:(?<!\bMr)(?<!\bMrs)(?<!\bMs)(?<!\bDr)[.!?]+(?=\s|$)|$)",
    re.IGNORECASE | re.DOTALL,
)


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in SENTENCE_RE.findall(text) if s.strip()]


def first_question(text: str) -> str:
    sentences = split_sentences(text)
    for sentence in sentences:
        if sentence.endswith("?"):
            return sentence
    return sentences[0] if sentences else text.strip()


def missing_fields(rule_set: RuleSet, collected: Iterable[CollectedField]) -> list[str]:
    have = {f.key for f in collected if f.valid}
    return [name for name in rule_set.required_fields if name not in have]


def guard_response(rule_set: RuleSet, collected: Iterable[CollectedField], candidate: str) -> GuardDecision:
    """
    Decide whether a draft reply may be spoken.

    First match wins: AI self-reference, backend mention, early booking,
    multiple questions. The first two always apply; the rest only when the
    rule-set came from an explicit embedded spec.
    """
    if AI_SELF_REFERENCE_RE.search(candidate):
        return GuardDecision(
            approved=False,
            blocked_violation="AI_SELF_REFERENCE",
            reason="AI self-reference detected",
        )

    if BACKEND_MENTION_RE.search(candidate):
        return GuardDecision(
            approved=False,
            blocked_violation="BACKEND_MENTION",
            reason="Backend system mention detected",
        )

    if not rule_set.in_force:
        return GuardDecision(approved=True)

    if rule_set.block_booking_until_fields and BOOKING_RE.search(candidate):
        missing = missing_fields(rule_set, collected)
        if missing:
            return GuardDecision(
                approved=False,
                blocked_violation="EARLY_BOOKING",
                reason=f"Attempted booking with missing fields: {', '.join(missing)}",
            )

    if rule_set.one_question_per_turn and candidate.count("?") > 1:
        return GuardDecision(
            approved=True,
            modified_response=first_question(candidate),
            reason="Multiple questions detected, trimmed to first question",
        )

    return GuardDecision(approved=True)
