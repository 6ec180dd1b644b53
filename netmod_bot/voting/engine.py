from __future__ import annotations

from collections import Counter
from typing import Optional, Sequence

import structlog

from ..models import Outcome, Vote, Voter

logger = structlog.get_logger(__name__)

MIN_COMMITTEE = 3
MAX_COMMITTEE = 9


def majority_for(members: int) -> int:
    """Absolute majority of the committee: 3 -> 2, 4-5 -> 3, 6-7 -> 4, 8-9 -> 5."""
    return members // 2 + 1


def calculate_outcome(voters: Sequence[Voter]) -> Optional[Outcome]:
    """
    Compute the committee outcome from the votes collected so far.

    Only meant for committee votes on network-wide actions. The vote is
    asynchronous, so the quorum is the absolute majority of *votes*; the outcome
    is returned as soon as it can no longer change.

    Example with a committee of 8 (majority 5):
      - 4 in favor, 4 against, chair in favor -> approved
      - 3 in favor, 5 against -> denied, whatever the chair voted
      - 5 in favor, 3 against, chair against -> approved
      - 2 in favor, 2 against, 4 abstained, chair abstained -> tie -> denied

    Returns ``None`` when the committee itself is invalid (size outside 3..9 or
    not exactly one chair). That is a configuration bug, not a voting state.
    """
    members = len(voters)
    if members < MIN_COMMITTEE or members > MAX_COMMITTEE:
        logger.error("vote_invalid_committee_size", size=members)
        return None

    chairs = [voter for voter in voters if voter.is_chair]
    if len(chairs) != 1:
        logger.error("vote_invalid_chair_count", size=members, chairs=len(chairs))
        return None
    chair = chairs[0]

    majority = majority_for(members)
    cast = [voter for voter in voters if voter.vote is not None]
    if len(cast) < majority:
        return Outcome.WAITING

    tally = Counter(voter.vote for voter in cast)
    in_favor = tally[Vote.IN_FAVOR]
    against = tally[Vote.AGAINST]

    if in_favor >= majority:
        return Outcome.APPROVED
    if against >= majority:
        return Outcome.DENIED

    if len(cast) == members:
        if tally[Vote.ABSTAINED] == members:
            return Outcome.DENIED
        if in_favor > against:
            return Outcome.APPROVED
        if against > in_favor:
            return Outcome.DENIED
        # tie: the chair decides, an abstaining chair counts as against
        return Outcome.APPROVED if chair.vote is Vote.IN_FAVOR else Outcome.DENIED

    # one straggler left and the chair already sided with the leading side:
    # the last vote cannot overturn it. No other partial case is decided early.
    if len(cast) == members - 1 and chair.vote is not None and chair.vote is not Vote.ABSTAINED:
        if in_favor > against and chair.vote is Vote.IN_FAVOR:
            return Outcome.APPROVED
        if against > in_favor and chair.vote is Vote.AGAINST:
            return Outcome.DENIED

    return Outcome.WAITING
