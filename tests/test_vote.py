from __future__ import annotations

import random
from typing import Optional

import pytest

from netmod_bot.models import Outcome, Vote, Voter
from netmod_bot.voting.engine import calculate_outcome, majority_for
from tests.factories import make_committee, make_user

IN_FAVOR = Vote.IN_FAVOR
AGAINST = Vote.AGAINST
ABSTAINED = Vote.ABSTAINED

WAITING = Outcome.WAITING
APPROVED = Outcome.APPROVED
DENIED = Outcome.DENIED


def test_majority_thresholds() -> None:
    assert [majority_for(n) for n in range(3, 10)] == [2, 3, 3, 4, 4, 5, 5]


@pytest.mark.parametrize(
    "committee",
    [
        [],
        make_committee(None, 0, 0, 0, 0),
        make_committee(None, 0, 0, 0, 1),
        make_committee(None, 0, 0, 0, 9),
        make_committee(None, 0, 0, 0, 10),
    ],
)
def test_committee_size_outside_limits_is_invalid(committee: list[Voter]) -> None:
    assert calculate_outcome(committee) is None


def test_committee_without_chair_is_invalid() -> None:
    voters = [Voter(user=make_user(i)) for i in range(1, 6)]
    assert calculate_outcome(voters) is None


def test_committee_with_two_chairs_is_invalid() -> None:
    voters = make_committee(IN_FAVOR, 2, 0, 0, 2)
    voters[1].is_chair = True
    assert calculate_outcome(voters) is None


@pytest.mark.parametrize(
    "chair, in_favor, against, abstained, empty, expected",
    [
        # everyone voted the same way
        (ABSTAINED, 0, 0, 6, 0, DENIED),
        (AGAINST, 0, 6, 0, 0, DENIED),
        (IN_FAVOR, 6, 0, 0, 0, APPROVED),
        # not enough votes yet
        (None, 2, 3, 0, 3, WAITING),
        (IN_FAVOR, 0, 1, 0, 5, WAITING),
        (None, 1, 2, 0, 4, WAITING),
        (None, 1, 1, 0, 3, WAITING),
        (ABSTAINED, 0, 0, 3, 5, WAITING),
        # everyone voted
        (ABSTAINED, 4, 2, 0, 0, APPROVED),
        (IN_FAVOR, 3, 3, 0, 0, APPROVED),
        (AGAINST, 4, 2, 0, 0, APPROVED),
        (AGAINST, 2, 4, 0, 0, DENIED),
        (ABSTAINED, 2, 4, 0, 0, DENIED),
        (ABSTAINED, 1, 5, 0, 0, DENIED),
        (ABSTAINED, 0, 6, 0, 0, DENIED),
        (IN_FAVOR, 0, 6, 0, 0, DENIED),
        (IN_FAVOR, 1, 2, 3, 0, APPROVED),
        # majority reached before everyone voted
        (None, 4, 1, 0, 1, APPROVED),
        (None, 5, 0, 0, 1, APPROVED),
        (IN_FAVOR, 4, 1, 0, 1, APPROVED),
        (ABSTAINED, 4, 1, 0, 1, APPROVED),
        (IN_FAVOR, 3, 0, 2, 1, APPROVED),
        (None, 4, 2, 0, 0, APPROVED),
        (IN_FAVOR, 1, 4, 0, 1, DENIED),
        (AGAINST, 1, 4, 0, 1, DENIED),
        # ties resolved by the chair
        (ABSTAINED, 3, 3, 0, 0, DENIED),
        (IN_FAVOR, 3, 4, 0, 0, APPROVED),
        (ABSTAINED, 3, 4, 0, 0, DENIED),
        (AGAINST, 3, 2, 1, 0, DENIED),
        # one vote missing
        (IN_FAVOR, 2, 3, 0, 1, WAITING),
        (ABSTAINED, 2, 3, 0, 1, WAITING),
        (None, 3, 3, 0, 0, WAITING),
        (AGAINST, 3, 2, 0, 1, WAITING),
        (IN_FAVOR, 2, 2, 0, 1, APPROVED),
        (AGAINST, 2, 2, 0, 1, DENIED),
        (IN_FAVOR, 3, 3, 0, 1, APPROVED),
        # smallest committee
        (IN_FAVOR, 0, 2, 0, 0, DENIED),
        (IN_FAVOR, 1, 1, 0, 0, APPROVED),
        (ABSTAINED, 1, 1, 0, 0, DENIED),
    ],
)
def test_calculate_outcome(
    chair: Optional[Vote],
    in_favor: int,
    against: int,
    abstained: int,
    empty: int,
    expected: Outcome,
) -> None:
    assert calculate_outcome(make_committee(chair, in_favor, against, abstained, empty)) is expected


def test_committee_of_eight_tie_goes_to_the_chair() -> None:
    # 4 in favor (chair included) against 4
    assert calculate_outcome(make_committee(IN_FAVOR, 3, 4, 0, 0)) is APPROVED
    assert calculate_outcome(make_committee(AGAINST, 4, 3, 0, 0)) is DENIED


def test_committee_of_eight_majority_against_wins_regardless_of_chair() -> None:
    assert calculate_outcome(make_committee(IN_FAVOR, 2, 5, 0, 0)) is DENIED
    assert calculate_outcome(make_committee(AGAINST, 3, 4, 0, 0)) is DENIED


@pytest.mark.parametrize("size", range(3, 10))
def test_unanimous_votes(size: int) -> None:
    assert calculate_outcome(make_committee(IN_FAVOR, size - 1, 0, 0, 0)) is APPROVED
    assert calculate_outcome(make_committee(AGAINST, 0, size - 1, 0, 0)) is DENIED
    assert calculate_outcome(make_committee(ABSTAINED, 0, 0, size - 1, 0)) is DENIED


def test_outcome_ignores_voter_order() -> None:
    rng = random.Random(1234)
    votes = [IN_FAVOR, AGAINST, ABSTAINED, None]
    for _ in range(300):
        size = rng.randint(3, 9)
        voters = make_committee(rng.choice(votes), 0, 0, 0, size - 1)
        for voter in voters[1:]:
            voter.vote = rng.choice(votes)
        expected = calculate_outcome(voters)
        assert expected is not None
        for _ in range(3):
            shuffled = voters[:]
            rng.shuffle(shuffled)
            assert calculate_outcome(shuffled) is expected


def test_decided_outcome_is_final_once_reached() -> None:
    """Adding the missing votes never flips a decided outcome."""
    rng = random.Random(99)
    for _ in range(200):
        size = rng.randint(3, 9)
        voters = make_committee(None, 0, 0, 0, size - 1)
        order = list(range(size))
        rng.shuffle(order)
        decided: Optional[Outcome] = None
        for index in order:
            voters[index].vote = rng.choice([IN_FAVOR, AGAINST, ABSTAINED])
            outcome = calculate_outcome(voters)
            if decided is None and outcome is not WAITING:
                decided = outcome
            elif decided is not None:
                assert outcome is decided
        assert decided is not None
