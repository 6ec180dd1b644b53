from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import structlog
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from ..errors import NetmodError
from ..models import JobRecord, JobState, QueueName
from ..interfaces import ActionExecutor
from ..storage.base import JobRepository

logger = structlog.get_logger(__name__)

CompletionListener = Callable[[JobRecord], Awaitable[None]]


class ActionFailedError(NetmodError):
    pass


@dataclass(slots=True)
class RetentionPolicy:
    age_seconds: float
    count: int


KEEP_COMPLETED = RetentionPolicy(age_seconds=60 * 60, count=1000)
KEEP_FAILED = RetentionPolicy(age_seconds=24 * 60 * 60, count=1000)


class ExecutionWorkerPool:
    """
    Fixed set of workers draining the executor queue.

    Each job bans or unbans one user in one chat and knows nothing about the
    BanAll it belongs to. A failing job is retried with exponential backoff and,
    once its attempts are spent, marked failed without affecting its siblings.
    """

    def __init__(
        self,
        store: JobRepository,
        executor: ActionExecutor,
        *,
        concurrency: int = 3,
        attempts: int = 3,
        backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
        poll_interval: float = 0.5,
        keep_completed: RetentionPolicy = KEEP_COMPLETED,
        keep_failed: RetentionPolicy = KEEP_FAILED,
        prune_interval: float = 60.0,
    ) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        if attempts <= 0:
            raise ValueError("attempts must be positive")
        self._store = store
        self._executor = executor
        self._concurrency = concurrency
        self.attempts = attempts
        self._backoff = backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._poll_interval = poll_interval
        self._keep_completed = keep_completed
        self._keep_failed = keep_failed
        self._prune_interval = prune_interval
        self._listeners: list[CompletionListener] = []
        self._workers: list[asyncio.Task[None]] = []
        self._maintenance: Optional[asyncio.Task[None]] = None
        self._wakeup = asyncio.Event()
        self._running = False

    def add_completion_listener(self, listener: CompletionListener) -> None:
        self._listeners.append(listener)

    async def start(self) -> None:
        if self._running:
            return
        await self._store.requeue_stalled(QueueName.EXECUTOR)
        self._running = True
        self._workers = [asyncio.create_task(self._work(slot)) for slot in range(self._concurrency)]
        self._maintenance = asyncio.create_task(self._maintain())
        logger.info("executor_pool_started", concurrency=self._concurrency, attempts=self.attempts)

    async def stop(self) -> None:
        self._running = False
        tasks = [*self._workers, *([self._maintenance] if self._maintenance else [])]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._maintenance = None
        logger.info("executor_pool_stopped")

    def notify(self) -> None:
        """Wake idle workers after new jobs were enqueued."""
        self._wakeup.set()

    async def _work(self, slot: int) -> None:
        while self._running:
            try:
                job = await self._store.claim_next(QueueName.EXECUTOR)
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("executor_claim_failed", slot=slot, error=str(exc))
                job = None
            if job is None:
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self._poll_interval)
                except asyncio.TimeoutError:
                    pass
                self._wakeup.clear()
                continue
            await self.process(job)

    async def process(self, job: JobRecord) -> JobRecord:
        """Run ``job`` until it succeeds or its attempts are spent, then notify listeners."""
        remaining = job.max_attempts - job.attempts_made
        if remaining <= 0:
            job.state = JobState.FAILED
            job.error = job.error or "attempts exhausted"
            await self._store.finish_job(job.job_id, JobState.FAILED, error=job.error)
            logger.warning("executor_job_exhausted", job_id=job.job_id, attempts=job.attempts_made)
            await self._notify(job)
            return job

        retry = AsyncRetrying(
            wait=wait_exponential(multiplier=self._backoff, min=self._backoff, max=self._max_backoff),
            stop=stop_after_attempt(remaining),
            reraise=True,
        )
        try:
            async for attempt in retry:
                with attempt:
                    job.attempts_made += 1
                    await self._store.record_attempt(job.job_id, job.attempts_made)
                    await self._execute(job)
        except Exception as exc:  # pylint: disable=broad-except
            job.state = JobState.FAILED
            job.error = str(exc)
            await self._store.finish_job(job.job_id, JobState.FAILED, error=job.error)
            logger.warning(
                "executor_job_failed",
                job_id=job.job_id,
                chat_id=job.data.get("chat_id"),
                attempts=job.attempts_made,
                error=job.error,
            )
        else:
            job.state = JobState.COMPLETED
            await self._store.finish_job(job.job_id, JobState.COMPLETED)
        await self._notify(job)
        return job

    async def _execute(self, job: JobRecord) -> None:
        data = job.ban_data()
        logger.debug(
            "executor_attempt",
            job_id=job.job_id,
            command=data.command.value,
            chat_id=data.chat_id,
            target_id=data.target_id,
            attempt=job.attempts_made,
        )
        success = await self._executor.apply_action(data.chat_id, data.target_id, data.command)
        logger.debug(
            "executor_result",
            command=data.command.value,
            chat_id=data.chat_id,
            target_id=data.target_id,
            success=success,
        )
        if not success:
            raise ActionFailedError(f"Failed to {data.command.value} user")

    async def _notify(self, job: JobRecord) -> None:
        for listener in self._listeners:
            try:
                await listener(job)
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("executor_listener_failed", job_id=job.job_id, error=str(exc))

    async def _maintain(self) -> None:
        while self._running:
            await asyncio.sleep(self._prune_interval)
            try:
                await self.prune()
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("executor_prune_failed", error=str(exc))

    async def prune(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        removed = 0
        for state, policy in ((JobState.COMPLETED, self._keep_completed), (JobState.FAILED, self._keep_failed)):
            removed += await self._store.prune_finished(
                QueueName.EXECUTOR,
                state,
                older_than=now - timedelta(seconds=policy.age_seconds),
                keep_count=policy.count,
            )
        return removed
