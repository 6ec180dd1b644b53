from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from ..errors import (
    ConfigurationError,
    DuplicateVoteError,
    RecordNotFoundError,
    UnauthorizedVoterError,
    VotingClosedError,
)
from ..models import BanAllRecord, Outcome, Vote
from ..storage.base import RecordRepository
from .engine import calculate_outcome

logger = structlog.get_logger(__name__)


class BallotBox:
    """
    Vote intake for BanAll records.

    A vote is accepted once per committee member while the record is waiting;
    the outcome is recomputed and persisted with every accepted vote.
    """

    def __init__(
        self,
        records: RecordRepository,
        *,
        pending_ttl_seconds: Optional[float] = None,
    ) -> None:
        self._records = records
        self._ttl = timedelta(seconds=pending_ttl_seconds) if pending_ttl_seconds else None
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def ttl(self) -> Optional[timedelta]:
        return self._ttl

    async def open(self, record: BanAllRecord) -> BanAllRecord:
        outcome = calculate_outcome(record.voters)
        if outcome is None:
            logger.critical("ballot_invalid_committee", action_id=record.action_id, size=len(record.voters))
            raise ConfigurationError(
                f"committee of {len(record.voters)} with "
                f"{sum(1 for voter in record.voters if voter.is_chair)} chair(s) cannot vote"
            )
        record.outcome = outcome
        await self._records.save_record(record)
        logger.info(
            "ballot_opened",
            action_id=record.action_id,
            kind=record.kind.value,
            target_id=record.target.id,
            committee=len(record.voters),
        )
        return record

    async def cast_vote(self, action_id: str, voter_id: int, vote: Vote) -> BanAllRecord:
        async with self._locks[action_id]:
            record = await self._records.get_record(action_id)
            if record is None:
                raise RecordNotFoundError(f"no BanAll with id {action_id}")
            expired = record.outcome is Outcome.WAITING and self._is_expired(record, datetime.now(timezone.utc))
            if expired:
                await self._expire(record)
            if record.outcome is not Outcome.WAITING:
                raise VotingClosedError(
                    f"BanAll {action_id} is already {record.outcome.value}", expired=expired
                )

            voter = record.find_voter(voter_id)
            if voter is None:
                logger.info("ballot_vote_unauthorized", action_id=action_id, voter_id=voter_id)
                raise UnauthorizedVoterError(f"user {voter_id} is not in the committee")
            if voter.vote is not None:
                logger.info("ballot_vote_duplicate", action_id=action_id, voter_id=voter_id)
                raise DuplicateVoteError(f"user {voter_id} already voted")

            voter.vote = vote
            outcome = calculate_outcome(record.voters)
            if outcome is None:
                logger.critical("ballot_outcome_invalid", action_id=action_id, voters=len(record.voters))
                raise ConfigurationError(f"BanAll {action_id} has an invalid committee")
            record.outcome = outcome
            await self._records.save_record(record)

        logger.info(
            "ballot_vote_cast",
            action_id=action_id,
            voter_id=voter_id,
            vote=vote.value,
            outcome=outcome.value,
        )
        if outcome is not Outcome.WAITING:
            self._locks.pop(action_id, None)
        return record

    async def expire_pending(self, now: Optional[datetime] = None) -> list[BanAllRecord]:
        """Deny every waiting record older than the TTL."""
        if self._ttl is None:
            return []
        now = now or datetime.now(timezone.utc)
        expired: list[BanAllRecord] = []
        for record in await self._records.list_records(outcome=Outcome.WAITING.value):
            if not self._is_expired(record, now):
                continue
            async with self._locks[record.action_id]:
                current = await self._records.get_record(record.action_id)
                if current is None or current.outcome is not Outcome.WAITING:
                    continue
                await self._expire(current)
            self._locks.pop(record.action_id, None)
            expired.append(current)
        return expired

    async def wait_for_outcome(
        self,
        action_id: str,
        *,
        timeout: Optional[float] = None,
        poll_interval: float = 1.0,
    ) -> Outcome:
        """Block until the record leaves ``waiting``; polls the store."""

        async def poll() -> Outcome:
            while True:
                record = await self._records.get_record(action_id)
                if record is None:
                    raise RecordNotFoundError(f"no BanAll with id {action_id}")
                if record.outcome is not Outcome.WAITING:
                    return record.outcome
                await asyncio.sleep(poll_interval)

        return await asyncio.wait_for(poll(), timeout=timeout)

    def _is_expired(self, record: BanAllRecord, now: datetime) -> bool:
        return self._ttl is not None and record.created_at + self._ttl <= now

    async def _expire(self, record: BanAllRecord) -> None:
        record.outcome = Outcome.DENIED
        await self._records.save_record(record)
        logger.warning("ballot_expired", action_id=record.action_id, created_at=record.created_at.isoformat())
