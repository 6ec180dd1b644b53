from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from .models import BanAllRecord, BanJobCommand, StatusHandle


@runtime_checkable
class TargetLister(Protocol):
    async def list_all_targets(self) -> list[int]:
        ...


@runtime_checkable
class ActionExecutor(Protocol):
    async def apply_action(self, chat_id: int, user_id: int, command: BanJobCommand) -> bool:
        """Ban or unban ``user_id`` in ``chat_id``. Must be safe to repeat."""


@runtime_checkable
class Presentation(Protocol):
    def render_status(self, record: BanAllRecord) -> str:
        ...

    def vote_keyboard(self, record: BanAllRecord) -> Any:
        ...

    async def post_status(self, text: str, keyboard: Any = None) -> StatusHandle:
        ...

    async def update_status(self, handle: StatusHandle, text: str, keyboard: Optional[Any] = None) -> None:
        ...
