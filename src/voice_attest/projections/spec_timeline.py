from typing import NamedTuple

from ..domain_types import TurnAttestation
from .base import Projection


class SpecHashSpan(NamedTuple):
    spec_hash: str
    prompt_hash: str
    start_ts: int
    end_ts: int
    turn_count: int
    first_turn: str
    last_turn: str


class SpecHashTimelineProjection(Projection):
    """Contiguous runs of turns that shared one spec hash and prompt hash."""

    def __init__(self):
        self.spans: list[SpecHashSpan] = []
        self.current: dict | None = None

    def feed(self, attestation: TurnAttestation) -> None:
        if not self.current or \
           self.current["spec_hash"] != attestation.spec_hash or \
           self.current["prompt_hash"] != attestation.prompt_hash:

            self._close()
            self.current = {
                "spec_hash": attestation.spec_hash,
                "prompt_hash": attestation.prompt_hash,
                "start_ts": attestation.timestamp,
                "end_ts": attestation.timestamp,
                "turn_count": 0,
                "first_turn": attestation.turn_id,
                "last_turn": attestation.turn_id,
            }

        self.current["end_ts"] = attestation.timestamp
        self.current["last_turn"] = attestation.turn_id
        self.current["turn_count"] += 1

    def _close(self) -> None:
        if self.current:
            self.spans.append(SpecHashSpan(**self.current))
            self.current = None

    def finish(self) -> list[SpecHashSpan]:
        self._close()
        return list(self.spans)

    @property
    def drifted(self) -> bool:
        hashes = {s.spec_hash for s in self.spans}
        if self.current:
            hashes.add(self.current["spec_hash"])
        return len(hashes) > 1

    def render(self) -> str:
        spans = self.finish()

        lines = []
        lines.append("Spec Hash Timeline")
        lines.append("==================")

        header = f"{'Spec Hash':<18} | {'Prompt Hash':<18} | {'Turns':>6} | {'Turn Range'}"
        lines.append(header)
        lines.append("-" * len(header))

        for span in spans:
            turn_range = f"{span.first_turn} .. {span.last_turn}"
            lines.append(f"{span.spec_hash:<18} | {span.prompt_hash:<18} | {span.turn_count:6d} | {turn_range}")

        if len({s.spec_hash for s in spans}) > 1:
            lines.append("")
            lines.append("WARNING: spec hash changed across turns")

        return "\n".join(lines)
