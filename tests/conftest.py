from __future__ import annotations

import pytest_asyncio

from netmod_bot.storage.sqlite import SQLiteJobStore


@pytest_asyncio.fixture
async def store(tmp_path):
    job_store = SQLiteJobStore(tmp_path / "ban_all_queue.db")
    await job_store.connect()
    yield job_store
    await job_store.disconnect()
