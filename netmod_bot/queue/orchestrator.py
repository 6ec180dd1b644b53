from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Awaitable, Callable, Optional

import structlog

from ..models import DependencyCounts, JobRecord, JobState, QueueName
from ..storage.base import JobRepository

logger = structlog.get_logger(__name__)

ProgressListener = Callable[[JobRecord, DependencyCounts], Awaitable[None]]


class OrchestrationWorker:
    """
    Owns the parent job of every BanAll.

    Counters are never accumulated: on each child completion they are
    recomputed from the child rows in the store, so a crash between a child
    finishing and the parent being updated is repaired by the next recompute
    (or by ``reconcile`` at start-up).
    """

    def __init__(self, store: JobRepository) -> None:
        self._store = store
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._progress_listeners: list[ProgressListener] = []
        self._finished_listeners: list[ProgressListener] = []

    def add_progress_listener(self, listener: ProgressListener) -> None:
        self._progress_listeners.append(listener)

    def add_finished_listener(self, listener: ProgressListener) -> None:
        self._finished_listeners.append(listener)

    async def handle_child_settled(self, child: JobRecord) -> None:
        if not child.parent_id:
            return
        await self.refresh(child.parent_id)

    async def refresh(self, parent_id: str) -> Optional[DependencyCounts]:
        # one recompute at a time per parent keeps the written progress monotonic
        async with self._locks[parent_id]:
            parent = await self._store.get_job(parent_id)
            if parent is None:
                logger.warning("orchestrator_parent_missing", parent_id=parent_id)
                return None
            if parent.state is not JobState.WAITING_CHILDREN:
                return None

            counts = await self._store.dependency_counts(parent_id)
            progress = {
                "processed": counts.processed,
                "failed": counts.failed,
                "ignored": counts.ignored,
                "unprocessed": counts.unprocessed,
                "succeeded": counts.succeeded,
                "total": counts.total,
            }
            await self._store.update_progress(parent_id, progress)
            parent.progress = progress
            logger.debug("orchestrator_progress", parent_id=parent_id, **progress)
            await self._emit(self._progress_listeners, parent, counts)

            if counts.finished:
                await self._complete(parent, counts)
        return counts

    async def reconcile(self) -> int:
        """Recompute every parent still waiting for children; returns how many completed."""
        parents = await self._store.list_jobs(QueueName.ORCHESTRATOR, states=[JobState.WAITING_CHILDREN])
        completed = 0
        for parent in parents:
            counts = await self.refresh(parent.job_id)
            if counts is not None and counts.finished:
                completed += 1
        logger.info("orchestrator_reconciled", parents=len(parents), completed=completed)
        return completed

    async def _complete(self, parent: JobRecord, counts: DependencyCounts) -> None:
        if not await self._store.complete_parent(parent.job_id):
            return
        parent.state = JobState.COMPLETED
        self._locks.pop(parent.job_id, None)
        logger.info(
            "ban_all_finished",
            name=parent.name,
            target_id=parent.data.get("target_id"),
            action_id=parent.action_id,
            processed=counts.processed,
            ignored=counts.ignored,
            failed=counts.failed,
        )
        await self._emit(self._finished_listeners, parent, counts)

    async def _emit(
        self,
        listeners: list[ProgressListener],
        parent: JobRecord,
        counts: DependencyCounts,
    ) -> None:
        for listener in listeners:
            try:
                await listener(parent, counts)
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("orchestrator_listener_failed", parent_id=parent.job_id, error=str(exc))
