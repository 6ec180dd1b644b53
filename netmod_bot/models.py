from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class Vote(str, Enum):
    IN_FAVOR = "in_favor"
    AGAINST = "against"
    ABSTAINED = "abstained"


class Outcome(str, Enum):
    WAITING = "waiting"
    APPROVED = "approved"
    DENIED = "denied"


class ActionKind(str, Enum):
    BAN = "BAN"
    UNBAN = "UNBAN"

    @property
    def command(self) -> "BanJobCommand":
        return BanJobCommand.BAN if self is ActionKind.BAN else BanJobCommand.UNBAN


class BanJobCommand(str, Enum):
    BAN = "ban"
    UNBAN = "unban"

    @property
    def flow_name(self) -> str:
        return f"{self.value}_all"


class QueueName(str, Enum):
    ORCHESTRATOR = "ban_all.orchestrator"
    EXECUTOR = "ban_all.exec"


class JobState(str, Enum):
    WAITING_CHILDREN = "waiting-children"
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})


@dataclass(slots=True)
class UserRef:
    id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None

    def display_name(self) -> str:
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        if self.username:
            name = f"{name} @{self.username}" if name else f"@{self.username}"
        return name or str(self.id)


@dataclass(slots=True)
class Voter:
    user: UserRef
    is_chair: bool = False
    vote: Optional[Vote] = None


@dataclass(slots=True)
class ExecutionProgress:
    total_targets: int = 0
    succeeded: int = 0
    failed: int = 0
    ignored: int = 0

    @property
    def done(self) -> int:
        return self.succeeded + self.failed + self.ignored

    @property
    def pending(self) -> int:
        return max(self.total_targets - self.done, 0)

    @property
    def ratio(self) -> float:
        if not self.total_targets:
            return 1.0
        return self.done / self.total_targets


@dataclass(slots=True)
class DependencyCounts:
    processed: int = 0
    failed: int = 0
    ignored: int = 0
    unprocessed: int = 0

    @property
    def succeeded(self) -> int:
        return self.processed - self.failed - self.ignored

    @property
    def total(self) -> int:
        return self.processed + self.unprocessed

    @property
    def finished(self) -> bool:
        return self.unprocessed == 0

    def as_progress(self) -> ExecutionProgress:
        return ExecutionProgress(
            total_targets=self.total,
            succeeded=self.succeeded,
            failed=self.failed,
            ignored=self.ignored,
        )


@dataclass(slots=True)
class StatusHandle:
    chat_id: int
    message_id: int
    thread_id: Optional[int] = None


@dataclass(slots=True)
class BanAllRecord:
    action_id: str
    kind: ActionKind
    target: UserRef
    requested_by: UserRef
    voters: list[Voter]
    reason: Optional[str] = None
    outcome: Outcome = Outcome.WAITING
    progress: ExecutionProgress = field(default_factory=ExecutionProgress)
    message_handle: Optional[StatusHandle] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def find_voter(self, user_id: int) -> Optional[Voter]:
        return next((voter for voter in self.voters if voter.user.id == user_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_id": self.action_id,
            "kind": self.kind.value,
            "target": _user_to_dict(self.target),
            "requested_by": _user_to_dict(self.requested_by),
            "reason": self.reason,
            "outcome": self.outcome.value,
            "voters": [
                {
                    "user": _user_to_dict(voter.user),
                    "is_chair": voter.is_chair,
                    "vote": voter.vote.value if voter.vote else None,
                }
                for voter in self.voters
            ],
            "progress": {
                "total_targets": self.progress.total_targets,
                "succeeded": self.progress.succeeded,
                "failed": self.progress.failed,
                "ignored": self.progress.ignored,
            },
            "message_handle": (
                {
                    "chat_id": self.message_handle.chat_id,
                    "message_id": self.message_handle.message_id,
                    "thread_id": self.message_handle.thread_id,
                }
                if self.message_handle
                else None
            ),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BanAllRecord":
        handle = data.get("message_handle")
        return cls(
            action_id=data["action_id"],
            kind=ActionKind(data["kind"]),
            target=UserRef(**data["target"]),
            requested_by=UserRef(**data["requested_by"]),
            reason=data.get("reason"),
            outcome=Outcome(data["outcome"]),
            voters=[
                Voter(
                    user=UserRef(**item["user"]),
                    is_chair=item["is_chair"],
                    vote=Vote(item["vote"]) if item.get("vote") else None,
                )
                for item in data["voters"]
            ],
            progress=ExecutionProgress(**data.get("progress", {})),
            message_handle=StatusHandle(**handle) if handle else None,
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass(slots=True)
class BanJobData:
    chat_id: int
    target_id: int
    command: BanJobCommand


@dataclass(slots=True)
class JobRecord:
    job_id: str
    queue: QueueName
    name: str
    state: JobState
    data: dict[str, Any]
    action_id: str
    parent_id: Optional[str] = None
    attempts_made: int = 0
    max_attempts: int = 1
    progress: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def ban_data(self) -> BanJobData:
        return BanJobData(
            chat_id=int(self.data["chat_id"]),
            target_id=int(self.data["target_id"]),
            command=BanJobCommand(self.name),
        )


def _user_to_dict(user: UserRef) -> dict[str, Any]:
    return {
        "id": user.id,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "username": user.username,
    }


__all__ = [
    "ActionKind",
    "BanAllRecord",
    "BanJobCommand",
    "BanJobData",
    "DependencyCounts",
    "ExecutionProgress",
    "JobRecord",
    "JobState",
    "Outcome",
    "QueueName",
    "StatusHandle",
    "TERMINAL_STATES",
    "UserRef",
    "Vote",
    "Voter",
]
