from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

import structlog

from ..config import ProgressSettings, QueueSettings, VotingSettings
from ..errors import EnumerationFailure, InvalidStateError, RecordNotFoundError, VotingClosedError
from ..interfaces import ActionExecutor, Presentation, TargetLister
from ..models import (
    ActionKind,
    BanAllRecord,
    DependencyCounts,
    ExecutionProgress,
    JobRecord,
    JobState,
    Outcome,
    QueueName,
    UserRef,
    Vote,
    Voter,
)
from ..progress.broadcaster import ProgressBroadcaster
from ..queue.executor import ExecutionWorkerPool, RetentionPolicy
from ..queue.orchestrator import OrchestrationWorker
from ..storage.base import JobStore
from ..voting.ballot import BallotBox

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class BanAllHandle:
    action_id: str
    parent_id: str
    total_targets: int


class JobOrchestrator:
    """
    Entry point for network-wide bans.

    ``request`` opens a committee vote, ``cast_vote`` collects it and, once the
    vote is approved, ``initiate`` fans the action out as one parent job with a
    child job per group. Everything is persisted in ``store``, so a restart
    resumes pending work where it stopped.
    """

    def __init__(
        self,
        store: JobStore,
        lister: TargetLister,
        executor: ActionExecutor,
        presentation: Presentation,
        *,
        queue: Optional[QueueSettings] = None,
        progress: Optional[ProgressSettings] = None,
        voting: Optional[VotingSettings] = None,
    ) -> None:
        queue = queue or QueueSettings()
        progress = progress or ProgressSettings()
        voting = voting or VotingSettings()
        self._store = store
        self._lister = lister
        self._presentation = presentation
        self._expiry_interval = voting.expiry_check_seconds
        self._ballot = BallotBox(store, pending_ttl_seconds=voting.pending_ttl_seconds)
        self._pool = ExecutionWorkerPool(
            store,
            executor,
            concurrency=queue.executor_concurrency,
            attempts=queue.attempts,
            backoff_seconds=queue.backoff_seconds,
            max_backoff_seconds=queue.max_backoff_seconds,
            poll_interval=queue.poll_interval_seconds,
            keep_completed=RetentionPolicy(queue.keep_completed_seconds, queue.keep_completed_count),
            keep_failed=RetentionPolicy(queue.keep_failed_seconds, queue.keep_failed_count),
            prune_interval=queue.prune_interval_seconds,
        )
        self._orchestration = OrchestrationWorker(store)
        self._broadcaster = ProgressBroadcaster(store, presentation, interval=progress.throttle_seconds)

        self._pool.add_completion_listener(self._orchestration.handle_child_settled)
        self._orchestration.add_progress_listener(self._broadcaster.publish)
        self._orchestration.add_finished_listener(self._broadcaster.finalize)
        self._expiry_task: Optional[asyncio.Task[None]] = None
        self._initiate_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def ballot(self) -> BallotBox:
        return self._ballot

    @property
    def broadcaster(self) -> ProgressBroadcaster:
        return self._broadcaster

    async def start(self) -> None:
        await self._orchestration.reconcile()
        await self._pool.start()
        if self._ballot.ttl is not None:
            self._expiry_task = asyncio.create_task(self._expire_loop())
        logger.info("ban_all_orchestrator_started")

    async def stop(self) -> None:
        if self._expiry_task:
            self._expiry_task.cancel()
            await asyncio.gather(self._expiry_task, return_exceptions=True)
            self._expiry_task = None
        await self._pool.stop()
        await self._broadcaster.close()
        logger.info("ban_all_orchestrator_stopped")

    async def request(
        self,
        kind: ActionKind,
        target: UserRef,
        requested_by: UserRef,
        voters: list[Voter],
        reason: Optional[str] = None,
    ) -> BanAllRecord:
        """Open a committee vote and post its status message."""
        record = BanAllRecord(
            action_id=uuid4().hex,
            kind=kind,
            target=target,
            requested_by=requested_by,
            voters=[Voter(user=voter.user, is_chair=voter.is_chair) for voter in voters],
            reason=reason,
        )
        await self._ballot.open(record)
        try:
            record.message_handle = await self._presentation.post_status(
                self._presentation.render_status(record),
                self._presentation.vote_keyboard(record),
            )
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("ban_all_status_post_failed", action_id=record.action_id, error=str(exc))
        else:
            await self._store.save_record(record)
        return record

    async def cast_vote(self, action_id: str, voter_id: int, vote: Vote) -> Outcome:
        try:
            record = await self._ballot.cast_vote(action_id, voter_id, vote)
        except VotingClosedError as exc:
            if exc.expired:
                closed = await self._store.get_record(action_id)
                if closed is not None:
                    await self._refresh_status(closed)
            raise
        await self._refresh_status(record)
        if record.outcome is Outcome.APPROVED:
            await self.initiate(record)
        return record.outcome

    async def initiate(self, record: BanAllRecord) -> BanAllHandle:
        if record.outcome is not Outcome.APPROVED:
            raise InvalidStateError(
                f"Cannot initiate ban all for a non-approved BanAll ({record.outcome.value})"
            )
        # the already-initiated check and add_flow must not interleave for one action
        async with self._initiate_locks[record.action_id]:
            return await self._initiate(record)

    async def retry(self, action_id: str) -> BanAllHandle:
        """Start an approved BanAll whose fan-out never got queued (e.g. the group listing failed)."""
        record = await self._store.get_record(action_id)
        if record is None:
            raise RecordNotFoundError(f"no BanAll with id {action_id}")
        logger.info("ban_all_retry", action_id=action_id, outcome=record.outcome.value)
        return await self.initiate(record)

    async def _initiate(self, record: BanAllRecord) -> BanAllHandle:
        if await self._store.parent_for_action(record.action_id) is not None:
            raise InvalidStateError(f"BanAll {record.action_id} was already initiated")

        try:
            targets = list(dict.fromkeys(await self._lister.list_all_targets()))
        except Exception as exc:
            logger.error("ban_all_enumeration_failed", action_id=record.action_id, error=str(exc))
            raise EnumerationFailure(f"could not list the network's groups: {exc}") from exc

        command = record.kind.command
        parent = JobRecord(
            job_id=uuid4().hex,
            queue=QueueName.ORCHESTRATOR,
            name=command.flow_name,
            state=JobState.WAITING_CHILDREN,
            data={"action_id": record.action_id, "target_id": record.target.id},
            action_id=record.action_id,
        )
        children = [
            JobRecord(
                job_id=uuid4().hex,
                queue=QueueName.EXECUTOR,
                name=command.value,
                state=JobState.WAITING,
                data={"chat_id": chat_id, "target_id": record.target.id},
                action_id=record.action_id,
                parent_id=parent.job_id,
                max_attempts=self._pool.attempts,
            )
            for chat_id in targets
        ]
        # saved before the flow exists: workers may finish children before add_flow returns
        record.progress = ExecutionProgress(total_targets=len(children))
        await self._store.save_record(record)
        try:
            await self._store.add_flow(parent, children)
        except Exception:
            record.progress = ExecutionProgress()
            await self._store.save_record(record)
            raise
        logger.info(
            "ban_all_initiated",
            action_id=record.action_id,
            command=command.value,
            target_id=record.target.id,
            targets=len(children),
        )
        if children:
            self._pool.notify()
        else:
            await self._orchestration.refresh(parent.job_id)
        return BanAllHandle(action_id=record.action_id, parent_id=parent.job_id, total_targets=len(children))

    async def query_progress(self, target_user_id: int) -> Optional[DependencyCounts]:
        parent = await self._store.latest_parent_for_target(target_user_id)
        if parent is None:
            return None
        return await self._store.dependency_counts(parent.job_id)

    async def cancel(self, action_id: str) -> int:
        """Drop the children that have not started yet; running ones finish normally."""
        parent = await self._store.parent_for_action(action_id)
        if parent is None:
            raise RecordNotFoundError(f"no ban all job for {action_id}")
        cancelled = await self._store.cancel_pending_children(parent.job_id)
        logger.info("ban_all_cancelled", action_id=action_id, cancelled=cancelled)
        await self._orchestration.refresh(parent.job_id)
        return cancelled

    async def expire_pending(self) -> list[BanAllRecord]:
        expired = await self._ballot.expire_pending()
        for record in expired:
            await self._refresh_status(record)
        return expired

    async def _refresh_status(self, record: BanAllRecord) -> None:
        if record.message_handle is None:
            return
        keyboard = self._presentation.vote_keyboard(record) if record.outcome is Outcome.WAITING else None
        try:
            await self._presentation.update_status(
                record.message_handle,
                self._presentation.render_status(record),
                keyboard,
            )
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("ban_all_status_update_failed", action_id=record.action_id, error=str(exc))

    async def _expire_loop(self) -> None:
        while True:
            await asyncio.sleep(self._expiry_interval)
            try:
                await self.expire_pending()
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("ban_all_expiry_failed", error=str(exc))
