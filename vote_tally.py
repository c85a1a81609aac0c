"""Vote tally: per-round votes -> trade direction.

LONG or SHORT only on a strict plurality over both other choices; every tie,
including no votes at all, resolves to SKIP so ambiguous consensus never
risks capital.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from run_status import DIRECTION_LONG, DIRECTION_SHORT, DIRECTION_SKIP


@dataclass(frozen=True)
class VoteDistribution:
    long: int = 0
    short: int = 0
    skip: int = 0

    @property
    def total(self) -> int:
        return self.long + self.short + self.skip

    def to_dict(self) -> Dict[str, int]:
        return {"long": self.long, "short": self.short, "skip": self.skip}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "VoteDistribution":
        data = data or {}
        return cls(
            long=int(data.get("long", 0) or 0),
            short=int(data.get("short", 0) or 0),
            skip=int(data.get("skip", 0) or 0),
        )


def count_votes(choices: Iterable[str]) -> VoteDistribution:
    long_n = short_n = skip_n = 0
    for choice in choices:
        c = str(choice or "").upper()
        if c == DIRECTION_LONG:
            long_n += 1
        elif c == DIRECTION_SHORT:
            short_n += 1
        elif c == DIRECTION_SKIP:
            skip_n += 1
    return VoteDistribution(long=long_n, short=short_n, skip=skip_n)


def tally_direction(dist: VoteDistribution) -> str:
    if dist.long > dist.short and dist.long > dist.skip:
        return DIRECTION_LONG
    if dist.short > dist.long and dist.short > dist.skip:
        return DIRECTION_SHORT
    return DIRECTION_SKIP
