from __future__ import annotations

import asyncio
import random

import pytest

from netmod_bot.models import DependencyCounts, JobRecord, JobState, QueueName
from netmod_bot.queue.executor import ExecutionWorkerPool
from netmod_bot.queue.orchestrator import OrchestrationWorker
from tests.factories import FakeExecutor, make_flow


class Recorder:
    def __init__(self) -> None:
        self.progress: list[DependencyCounts] = []
        self.finished: list[tuple[str, DependencyCounts]] = []

    async def on_progress(self, parent: JobRecord, counts: DependencyCounts) -> None:
        self.progress.append(counts)

    async def on_finished(self, parent: JobRecord, counts: DependencyCounts) -> None:
        self.finished.append((parent.job_id, counts))


def make_worker(store) -> tuple[OrchestrationWorker, Recorder]:
    worker = OrchestrationWorker(store)
    recorder = Recorder()
    worker.add_progress_listener(recorder.on_progress)
    worker.add_finished_listener(recorder.on_finished)
    return worker, recorder


@pytest.mark.asyncio
async def test_parent_progress_follows_children(store) -> None:
    worker, recorder = make_worker(store)
    parent, children = make_flow([10, 20, 30])
    await store.add_flow(parent, children)

    await store.finish_job(children[0].job_id, JobState.COMPLETED)
    counts = await worker.refresh(parent.job_id)

    assert (counts.processed, counts.failed, counts.unprocessed) == (1, 0, 2)
    stored = await store.get_job(parent.job_id)
    assert stored.state is JobState.WAITING_CHILDREN
    assert stored.progress == {
        "processed": 1,
        "failed": 0,
        "ignored": 0,
        "unprocessed": 2,
        "succeeded": 1,
        "total": 3,
    }
    assert recorder.finished == []


@pytest.mark.asyncio
async def test_parent_completes_exactly_once(store) -> None:
    worker, recorder = make_worker(store)
    parent, children = make_flow([10, 20])
    await store.add_flow(parent, children)
    await store.finish_job(children[0].job_id, JobState.COMPLETED)
    await store.finish_job(children[1].job_id, JobState.FAILED, error="nope")

    await asyncio.gather(*(worker.refresh(parent.job_id) for _ in range(5)))
    await worker.refresh(parent.job_id)

    assert (await store.get_job(parent.job_id)).state is JobState.COMPLETED
    assert len(recorder.finished) == 1
    _, counts = recorder.finished[0]
    assert (counts.succeeded, counts.failed, counts.ignored) == (1, 1, 0)


@pytest.mark.asyncio
async def test_empty_flow_completes_immediately(store) -> None:
    worker, recorder = make_worker(store)
    parent, _ = make_flow([])
    await store.add_flow(parent, [])

    counts = await worker.refresh(parent.job_id)

    assert counts.total == 0
    assert counts.finished
    assert [job_id for job_id, _ in recorder.finished] == [parent.job_id]


@pytest.mark.asyncio
async def test_cancelled_children_are_ignored(store) -> None:
    worker, recorder = make_worker(store)
    parent, children = make_flow([10, 20, 30])
    await store.add_flow(parent, children)
    await store.finish_job(children[0].job_id, JobState.COMPLETED)
    await store.cancel_pending_children(parent.job_id)

    counts = await worker.refresh(parent.job_id)

    assert (counts.succeeded, counts.failed, counts.ignored, counts.unprocessed) == (1, 0, 2, 0)
    assert len(recorder.finished) == 1


@pytest.mark.asyncio
async def test_reconcile_completes_parents_missed_before_a_crash(store) -> None:
    worker, recorder = make_worker(store)
    done_parent, done_children = make_flow([10, 20], action_id="done")
    open_parent, open_children = make_flow([30, 40], action_id="open")
    await store.add_flow(done_parent, done_children)
    await store.add_flow(open_parent, open_children)
    for child in done_children:
        await store.finish_job(child.job_id, JobState.COMPLETED)

    assert await worker.reconcile() == 1

    assert (await store.get_job(done_parent.job_id)).state is JobState.COMPLETED
    assert (await store.get_job(open_parent.job_id)).state is JobState.WAITING_CHILDREN
    assert [job_id for job_id, _ in recorder.finished] == [done_parent.job_id]


@pytest.mark.asyncio
async def test_refresh_of_unknown_parent_is_a_noop(store) -> None:
    worker, recorder = make_worker(store)

    assert await worker.refresh("missing") is None
    assert recorder.progress == []


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", [1, 7, 42])
async def test_counts_stay_consistent_under_random_interleaving(store, seed: int) -> None:
    rng = random.Random(seed)
    chat_ids = list(range(1, 16))
    failing = set(rng.sample(chat_ids, 4))
    flaky = {chat_id: 1 for chat_id in rng.sample([c for c in chat_ids if c not in failing], 3)}

    class JitterExecutor(FakeExecutor):
        async def apply_action(self, chat_id, user_id, command):
            await asyncio.sleep(rng.random() * 0.01)
            return await super().apply_action(chat_id, user_id, command)

    executor = JitterExecutor(failures={**flaky, **{chat_id: 100 for chat_id in failing}})
    pool = ExecutionWorkerPool(store, executor, concurrency=4, backoff_seconds=0, poll_interval=0.01)
    worker, recorder = make_worker(store)
    pool.add_completion_listener(worker.handle_child_settled)
    parent, children = make_flow(chat_ids)
    await store.add_flow(parent, children)

    await pool.start()
    try:
        async def wait_done() -> None:
            while not recorder.finished:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(wait_done(), timeout=10)
    finally:
        await pool.stop()

    processed = [counts.processed for counts in recorder.progress]
    assert processed == sorted(processed)
    for counts in recorder.progress:
        assert counts.succeeded + counts.failed <= counts.total == len(chat_ids)

    _, final = recorder.finished[0]
    assert final.failed == len(failing)
    assert final.succeeded == len(chat_ids) - len(failing)
    assert len(recorder.finished) == 1
    assert all(executor.attempts[chat_id] == 3 for chat_id in failing)
    assert all(executor.attempts[chat_id] == 2 for chat_id in flaky)
    assert await store.list_jobs(QueueName.ORCHESTRATOR, states=[JobState.WAITING_CHILDREN]) == []
