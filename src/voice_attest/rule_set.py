from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from .errors import SpecParseFailure

logger = logging.getLogger(__name__)

SPEC_START_MARKER = "<!-- SPEC_JSON_START -->"
SPEC_END_MARKER = "<!-- SPEC_JSON_END -->"

REQUIRED_SPEC_KEYS = ("agent_type", "required_fields", "field_order")

DEFAULT_CONTACT_FIELDS = ("first_name", "last_name", "unique_phone_number", "email", "class_date__time")

DEFAULT_DISALLOWED_PHRASES = (
    "let me book you",
    "i'll book you",
    "i'll get you scheduled",
    "booking you for",
    "scheduling you for",
    "you are booked",
    "you are scheduled",
    "i've booked you",
    "i've scheduled you",
)


class SpecSource(str, enum.Enum):
    NO_SPEC_FOUND = "no_spec_found"
    PARSE_ERROR = "parse_error"
    EXPLICIT_SPEC = "explicit_spec"


@dataclass(frozen=True)
class Confirmations:
    repeat_phone: bool = True
    spell_email: bool = True


@dataclass(frozen=True)
class RuleSet:
    """
    Behavioral contract embedded in a voice agent's system prompt.

    ``source`` and ``parse_error`` describe where the rules came from and are
    not part of the canonical JSON, so they never influence the spec hash.
    """

    agent_type: str = "voice_ai"
    niche: str = "fitness_gym"
    required_fields: Sequence[str] = DEFAULT_CONTACT_FIELDS
    field_order: Sequence[str] = DEFAULT_CONTACT_FIELDS
    one_question_per_turn: bool = True
    max_sentences: int = 2
    max_words_per_turn: int = 30
    block_booking_until_fields: bool = True
    disallowed_phrases: Sequence[str] = DEFAULT_DISALLOWED_PHRASES
    confirmations: Confirmations = field(default_factory=Confirmations)
    tone: str | None = None
    source: SpecSource = SpecSource.EXPLICIT_SPEC
    parse_error: str | None = None

    @property
    def in_force(self) -> bool:
        return self.source is SpecSource.EXPLICIT_SPEC

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_type": self.agent_type,
            "niche": self.niche,
            "required_fields": list(self.required_fields),
            "field_order": list(self.field_order),
            "one_question_per_turn": self.one_question_per_turn,
            "max_sentences": self.max_sentences,
            "max_words_per_turn": self.max_words_per_turn,
            "block_booking_until_fields": self.block_booking_until_fields,
            "disallowed_phrases": list(self.disallowed_phrases),
            "confirmations": {
                "repeat_phone": self.confirmations.repeat_phone,
                "spell_email": self.confirmations.spell_email,
            },
            "tone": self.tone,
        }

    def canonical_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def default_rule_set(source: SpecSource = SpecSource.NO_SPEC_FOUND, parse_error: str | None = None) -> RuleSet:
    return RuleSet(source=source, parse_error=parse_error)


def _string_list(data: Mapping[str, Any], key: str) -> tuple[str, ...]:
    value = data[key]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise SpecParseFailure(f"'{key}' must be a list of strings")
    return tuple(value)


def rule_set_from_dict(data: Mapping[str, Any]) -> RuleSet:
    if not isinstance(data, Mapping):
        raise SpecParseFailure("embedded spec must be a JSON object")
    # Empty field lists are a valid permissive contract; only absence is an error.
    missing = [key for key in REQUIRED_SPEC_KEYS if data.get(key) is None]
    if "agent_type" not in missing and not data["agent_type"]:
        missing.append("agent_type")
    if missing:
        raise SpecParseFailure(f"embedded spec missing required keys: {missing}")

    defaults = RuleSet()
    one_question = data.get("one_question_per_turn")
    if one_question is None:
        cadence = data.get("question_cadence")
        one_question = cadence == "one_at_a_time" if cadence is not None else defaults.one_question_per_turn

    raw_confirmations = data.get("confirmations") or {}
    if not isinstance(raw_confirmations, Mapping):
        raise SpecParseFailure("'confirmations' must be an object")

    try:
        return RuleSet(
            agent_type=str(data["agent_type"]),
            niche=str(data.get("niche", defaults.niche)),
            required_fields=_string_list(data, "required_fields"),
            field_order=_string_list(data, "field_order"),
            one_question_per_turn=bool(one_question),
            max_sentences=int(data.get("max_sentences", defaults.max_sentences)),
            max_words_per_turn=int(data.get("max_words_per_turn", defaults.max_words_per_turn)),
            block_booking_until_fields=bool(
                data.get("block_booking_until_fields", defaults.block_booking_until_fields)
            ),
            disallowed_phrases=_string_list(data, "disallowed_phrases") if "disallowed_phrases" in data else (),
            confirmations=Confirmations(
                repeat_phone=bool(raw_confirmations.get("repeat_phone", True)),
                spell_email=bool(raw_confirmations.get("spell_email", True)),
            ),
            tone=data.get("tone"),
        )
    except SpecParseFailure:
        raise
    except (TypeError, ValueError) as exc:
        raise SpecParseFailure(f"embedded spec has invalid values: {exc}") from exc


def _find_block(prompt_text: str) -> tuple[int, int] | None:
    start = prompt_text.find(SPEC_START_MARKER)
    if start == -1:
        return None
    end = prompt_text.find(SPEC_END_MARKER, start + len(SPEC_START_MARKER))
    if end == -1:
        return None
    return start, end


def parse_rule_set_json(raw: str) -> RuleSet:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise SpecParseFailure(f"embedded spec is not valid JSON: {exc.msg} at line {exc.lineno}") from exc
    return rule_set_from_dict(data)


def extract_rule_set(prompt_text: str) -> RuleSet:
    """
    Parse the rule-set embedded between the spec markers.

    Falls back to the default rule-set when the block is absent or unusable;
    the returned ``source`` tells the two cases apart from an explicit spec.
    """
    if not isinstance(prompt_text, str):
        raise TypeError(f"prompt text must be str, got {type(prompt_text).__name__}")

    block = _find_block(prompt_text)
    if block is None:
        return default_rule_set(SpecSource.NO_SPEC_FOUND)

    start, end = block
    raw = prompt_text[start + len(SPEC_START_MARKER):end].strip()
    try:
        return parse_rule_set_json(raw)
    except SpecParseFailure as exc:
        logger.warning("embedded spec rejected, default rules in force: %s", exc)
        return default_rule_set(SpecSource.PARSE_ERROR, parse_error=str(exc))


def render_rule_set_block(rule_set: RuleSet) -> str:
    body = json.dumps(rule_set.to_dict(), indent=2, ensure_ascii=False)
    return f"{SPEC_START_MARKER}\n{body}\n{SPEC_END_MARKER}"


def embed_rule_set(prompt_text: str, rule_set: RuleSet) -> str:
    block_text = render_rule_set_block(rule_set)
    block = _find_block(prompt_text)
    if block is not None:
        start, end = block
        return prompt_text[:start] + block_text + prompt_text[end + len(SPEC_END_MARKER):]
    separator = "" if not prompt_text or prompt_text.endswith("\n") else "\n"
    return f"{prompt_text}{separator}{block_text}\n"


def strip_rule_set(prompt_text: str) -> str:
    block = _find_block(prompt_text)
    if block is None:
        return prompt_text.strip()
    start, end = block
    return (prompt_text[:start] + prompt_text[end + len(SPEC_END_MARKER):]).strip()


def has_embedded_rule_set(prompt_text: str) -> bool:
    if not isinstance(prompt_text, str):
        return False
    return _find_block(prompt_text) is not None
