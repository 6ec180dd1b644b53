from __future__ import annotations

import asyncio

import structlog

from ..interfaces import Presentation
from ..models import DependencyCounts, JobRecord
from ..storage.base import RecordRepository
from .throttle import Throttle

logger = structlog.get_logger(__name__)


class ProgressBroadcaster:
    """Mirror parent-job progress into the BanAll status message, at most once per window."""

    def __init__(
        self,
        records: RecordRepository,
        presentation: Presentation,
        *,
        interval: float = 5.0,
    ) -> None:
        self._records = records
        self._presentation = presentation
        self._interval = interval
        self._throttles: dict[str, Throttle[DependencyCounts]] = {}
        self._closing: set[asyncio.Task[None]] = set()

    async def publish(self, parent: JobRecord, counts: DependencyCounts) -> None:
        action_id = parent.action_id
        throttle = self._throttles.get(action_id)
        if throttle is None:
            throttle = Throttle(lambda latest: self._render(action_id, latest), self._interval)
            self._throttles[action_id] = throttle
        throttle(counts)

    async def finalize(self, parent: JobRecord, counts: DependencyCounts) -> None:
        """Forget the action once its last pending render went out."""
        throttle = self._throttles.get(parent.action_id)
        if throttle is None:
            return
        task = asyncio.create_task(self._drop_when_idle(parent.action_id, throttle))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def flush(self) -> None:
        for throttle in list(self._throttles.values()):
            await throttle.flush()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    async def close(self) -> None:
        for throttle in self._throttles.values():
            await throttle.cancel()
        self._throttles.clear()
        for task in list(self._closing):
            task.cancel()
        await asyncio.gather(*self._closing, return_exceptions=True)

    async def _drop_when_idle(self, action_id: str, throttle: Throttle[DependencyCounts]) -> None:
        await throttle.flush()
        if self._throttles.get(action_id) is throttle:
            self._throttles.pop(action_id, None)

    async def _render(self, action_id: str, counts: DependencyCounts) -> None:
        record = await self._records.get_record(action_id)
        if record is None:
            logger.warning("progress_record_missing", action_id=action_id)
            return
        record.progress = counts.as_progress()
        await self._records.save_record(record)
        if record.message_handle is None:
            return
        logger.debug(
            "progress_render",
            action_id=action_id,
            succeeded=record.progress.succeeded,
            failed=record.progress.failed,
            ignored=record.progress.ignored,
            pending=record.progress.pending,
        )
        try:
            await self._presentation.update_status(
                record.message_handle,
                self._presentation.render_status(record),
            )
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("progress_render_failed", action_id=action_id, error=str(exc))
