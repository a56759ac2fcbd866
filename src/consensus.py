"""Consensus rules: approval rate and the finalize-or-continue decision."""

from collections.abc import Sequence

from src.models import Vote

APPROVAL_THRESHOLD = 0.6
MAX_ROUNDS = 3


def approval_rate(votes: Sequence[Vote]) -> float:
    """Fraction of approving votes, 0.0 when nobody voted."""
    if not votes:
        return 0.0
    return sum(1 for v in votes if v.approved) / len(votes)


def should_finalize(
    rate: float,
    round_number: int,
    threshold: float = APPROVAL_THRESHOLD,
    max_rounds: int = MAX_ROUNDS,
) -> bool:
    """True when the council approved, or the round cap has been reached."""
    return rate >= threshold or round_number >= max_rounds
