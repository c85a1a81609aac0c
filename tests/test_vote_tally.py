#!/usr/bin/env python3
"""Vote tally: strict plurality wins, every tie resolves to SKIP."""

import itertools
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from vote_tally import VoteDistribution, count_votes, tally_direction


def test_count_votes_ignores_unknown_choices() -> None:
    dist = count_votes(["LONG", "long", "SHORT", "SKIP", "MOON", None])
    assert dist == VoteDistribution(long=2, short=1, skip=1)
    assert dist.total == 4


def test_majority_and_ties_over_small_grid() -> None:
    for l, s, k in itertools.product(range(5), repeat=3):
        direction = tally_direction(VoteDistribution(l, s, k))
        if l > s and l > k:
            assert direction == "LONG", (l, s, k)
        elif s > l and s > k:
            assert direction == "SHORT", (l, s, k)
        else:
            assert direction == "SKIP", (l, s, k)


def test_no_votes_is_skip() -> None:
    assert tally_direction(VoteDistribution()) == "SKIP"


def test_long_short_tie_is_skip_even_with_fewer_skips() -> None:
    assert tally_direction(VoteDistribution(long=3, short=3, skip=0)) == "SKIP"


def test_skip_plurality_is_skip() -> None:
    assert tally_direction(VoteDistribution(long=1, short=1, skip=2)) == "SKIP"


def test_distribution_dict_round_trip_tolerates_missing_keys() -> None:
    dist = VoteDistribution.from_dict({"long": 2})
    assert dist == VoteDistribution(long=2, short=0, skip=0)
    assert VoteDistribution.from_dict(None) == VoteDistribution()
    assert dist.to_dict() == {"long": 2, "short": 0, "skip": 0}
