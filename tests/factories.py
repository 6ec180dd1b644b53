from __future__ import annotations

import asyncio
from collections import Counter
from typing import Any, Optional
from uuid import uuid4

from netmod_bot.models import (
    ActionKind,
    BanAllRecord,
    BanJobCommand,
    JobRecord,
    JobState,
    Outcome,
    QueueName,
    StatusHandle,
    UserRef,
    Vote,
    Voter,
)


def make_user(user_id: int = 42, *, first_name: Optional[str] = "Mario", username: Optional[str] = None) -> UserRef:
    return UserRef(id=user_id, first_name=first_name, username=username)


def make_committee(
    chair_vote: Optional[Vote],
    in_favor: int,
    against: int,
    abstained: int,
    empty: int,
) -> list[Voter]:
    """Chair first, then the other members grouped by vote."""
    voters = [Voter(user=make_user(1, first_name="Chair"), is_chair=True, vote=chair_vote)]
    groups = ((Vote.IN_FAVOR, in_favor), (Vote.AGAINST, against), (Vote.ABSTAINED, abstained), (None, empty))
    for vote, count in groups:
        for _ in range(count):
            voters.append(Voter(user=make_user(len(voters) + 1, first_name="Member"), vote=vote))
    return voters


def make_record(
    *,
    action_id: Optional[str] = None,
    kind: ActionKind = ActionKind.BAN,
    target_id: int = 4242,
    voters: Optional[list[Voter]] = None,
    outcome: Outcome = Outcome.WAITING,
    reason: Optional[str] = "spam in every group",
    message_handle: Optional[StatusHandle] = None,
) -> BanAllRecord:
    return BanAllRecord(
        action_id=action_id or uuid4().hex,
        kind=kind,
        target=make_user(target_id, first_name="Spammer", username="spam_bot"),
        requested_by=make_user(7, first_name="Reporter"),
        voters=voters if voters is not None else make_committee(None, 0, 0, 0, 2),
        reason=reason,
        outcome=outcome,
        message_handle=message_handle,
    )


def make_flow(
    chat_ids: list[int],
    *,
    action_id: str = "action-1",
    target_id: int = 4242,
    command: BanJobCommand = BanJobCommand.BAN,
    max_attempts: int = 3,
) -> tuple[JobRecord, list[JobRecord]]:
    parent = JobRecord(
        job_id=f"parent-{uuid4().hex}",
        queue=QueueName.ORCHESTRATOR,
        name=command.flow_name,
        state=JobState.WAITING_CHILDREN,
        data={"action_id": action_id, "target_id": target_id},
        action_id=action_id,
    )
    children = [
        JobRecord(
            job_id=f"child-{chat_id}-{uuid4().hex}",
            queue=QueueName.EXECUTOR,
            name=command.value,
            state=JobState.WAITING,
            data={"chat_id": chat_id, "target_id": target_id},
            action_id=action_id,
            parent_id=parent.job_id,
            max_attempts=max_attempts,
        )
        for chat_id in chat_ids
    ]
    return parent, children


class FakeLister:
    def __init__(self, targets: Optional[list[int]] = None, *, error: Optional[Exception] = None) -> None:
        self.targets = targets if targets is not None else []
        self.error = error
        self.calls = 0

    async def list_all_targets(self) -> list[int]:
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.targets)


class FakeExecutor:
    """
    Records every call. ``failures`` maps chat id to how many attempts fail
    before one succeeds; ``raises`` holds chats whose attempts raise instead.
    """

    def __init__(
        self,
        *,
        failures: Optional[dict[int, int]] = None,
        raises: Optional[set[int]] = None,
        delay: float = 0.0,
    ) -> None:
        self.failures = dict(failures or {})
        self.raises = set(raises or ())
        self.delay = delay
        self.calls: list[tuple[int, int, BanJobCommand]] = []
        self.attempts: Counter[int] = Counter()

    async def apply_action(self, chat_id: int, user_id: int, command: BanJobCommand) -> bool:
        self.calls.append((chat_id, user_id, command))
        self.attempts[chat_id] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if chat_id in self.raises:
            raise RuntimeError(f"chat {chat_id} unreachable")
        return self.attempts[chat_id] > self.failures.get(chat_id, 0)


class FakePresentation:
    def __init__(self, *, fail_updates: bool = False) -> None:
        self.fail_updates = fail_updates
        self.posted: list[tuple[str, Any]] = []
        self.updates: list[tuple[StatusHandle, str, Any]] = []
        self._next_message_id = 100

    def render_status(self, record: BanAllRecord) -> str:
        progress = record.progress
        return (
            f"{record.kind.value} {record.target.id} {record.outcome.value} "
            f"{progress.succeeded}/{progress.failed}/{progress.total_targets}"
        )

    def vote_keyboard(self, record: BanAllRecord) -> Any:
        return {"action_id": record.action_id, "votes": [vote.value for vote in Vote]}

    async def post_status(self, text: str, keyboard: Any = None) -> StatusHandle:
        self.posted.append((text, keyboard))
        self._next_message_id += 1
        return StatusHandle(chat_id=-100, message_id=self._next_message_id)

    async def update_status(self, handle: StatusHandle, text: str, keyboard: Optional[Any] = None) -> None:
        if self.fail_updates:
            raise RuntimeError("telegram is down")
        self.updates.append((handle, text, keyboard))
