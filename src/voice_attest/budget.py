from __future__ import annotations

import math
from typing import Iterable, Mapping, Union

from .domain_types import TokenBudget

CHARS_PER_TOKEN = 4

CONTRIBUTORS = ("system_prompt", "spec", "snippets", "context", "summary", "last_turns")

ContributorText = Union[str, Iterable[str], None]


def estimate_tokens(text: str) -> int:
    """Rough token count: characters / 4, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _estimate_contributor(value: ContributorText) -> int:
    if value is None:
        return 0
    if isinstance(value, str):
        return estimate_tokens(value)
    # Lists (snippets, turns) are estimated per item, as they are sent.
    return sum(estimate_tokens(item) for item in value)


def compute_budget(contributors: Mapping[str, ContributorText], max_tokens: int) -> TokenBudget:
    unknown = sorted(set(contributors) - set(CONTRIBUTORS))
    if unknown:
        raise ValueError(f"Unknown budget contributors: {unknown}")
    if max_tokens < 0:
        raise ValueError(f"max_tokens must be >= 0, got {max_tokens}")

    counts = {name: _estimate_contributor(contributors.get(name)) for name in CONTRIBUTORS}
    return TokenBudget(max_tokens=max_tokens, **counts)
