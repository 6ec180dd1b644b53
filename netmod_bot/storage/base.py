from __future__ import annotations

import abc
from datetime import datetime
from typing import Iterable, Optional

from ..models import BanAllRecord, DependencyCounts, JobRecord, JobState, QueueName


class RecordRepository(abc.ABC):
    @abc.abstractmethod
    async def save_record(self, record: BanAllRecord) -> None:
        ...

    @abc.abstractmethod
    async def get_record(self, action_id: str) -> Optional[BanAllRecord]:
        ...

    @abc.abstractmethod
    async def list_records(self, *, outcome: Optional[str] = None) -> list[BanAllRecord]:
        ...


class JobRepository(abc.ABC):
    @abc.abstractmethod
    async def add_flow(self, parent: JobRecord, children: Iterable[JobRecord]) -> None:
        """Persist a parent job and all its children atomically."""

    @abc.abstractmethod
    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        ...

    @abc.abstractmethod
    async def list_jobs(
        self,
        queue: QueueName,
        *,
        states: Optional[Iterable[JobState]] = None,
    ) -> list[JobRecord]:
        ...

    @abc.abstractmethod
    async def claim_next(self, queue: QueueName) -> Optional[JobRecord]:
        """Move the oldest runnable job of ``queue`` to ``active`` and return it."""

    @abc.abstractmethod
    async def record_attempt(self, job_id: str, attempts_made: int) -> None:
        ...

    @abc.abstractmethod
    async def finish_job(self, job_id: str, state: JobState, *, error: Optional[str] = None) -> None:
        ...

    @abc.abstractmethod
    async def dependency_counts(self, parent_id: str) -> DependencyCounts:
        ...

    @abc.abstractmethod
    async def update_progress(self, job_id: str, progress: dict) -> None:
        ...

    @abc.abstractmethod
    async def complete_parent(self, parent_id: str) -> bool:
        """Transition a parent out of ``waiting-children``; True only for the caller that did it."""

    @abc.abstractmethod
    async def latest_parent_for_target(self, target_id: int) -> Optional[JobRecord]:
        ...

    @abc.abstractmethod
    async def parent_for_action(self, action_id: str) -> Optional[JobRecord]:
        ...

    @abc.abstractmethod
    async def cancel_pending_children(self, parent_id: str) -> int:
        ...

    @abc.abstractmethod
    async def requeue_stalled(self, queue: QueueName) -> int:
        ...

    @abc.abstractmethod
    async def prune_finished(
        self,
        queue: QueueName,
        state: JobState,
        *,
        older_than: datetime,
        keep_count: int,
    ) -> int:
        ...


class JobStore(RecordRepository, JobRepository, abc.ABC):
    """Combined durable backend for BanAll records and queue jobs."""

    @abc.abstractmethod
    async def connect(self) -> None:
        ...

    @abc.abstractmethod
    async def disconnect(self) -> None:
        ...
