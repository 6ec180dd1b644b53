from __future__ import annotations

from typing import Optional

import structlog
from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest
from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

from ..models import BanAllRecord, BanJobCommand, StatusHandle, Vote
from ..progress import format as status_format

logger = structlog.get_logger(__name__)

CALLBACK_PREFIX = "banall"

VOTE_BUTTONS = (
    (Vote.IN_FAVOR, "✅ In favor"),
    (Vote.AGAINST, "❌ Against"),
    (Vote.ABSTAINED, "🫥 Abstain"),
)


def vote_callback_data(action_id: str, vote: Vote) -> str:
    return f"{CALLBACK_PREFIX}:{action_id}:{vote.value}"


def parse_vote_callback(data: str) -> Optional[tuple[str, Vote]]:
    parts = data.split(":")
    if len(parts) != 3 or parts[0] != CALLBACK_PREFIX:
        return None
    try:
        return parts[1], Vote(parts[2])
    except ValueError:
        return None


class TelegramActionExecutor:
    """Applies a single ban or unban in one group through the Bot API."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def apply_action(self, chat_id: int, user_id: int, command: BanJobCommand) -> bool:
        if command is BanJobCommand.BAN:
            return await self._bot.ban_chat_member(chat_id, user_id, revoke_messages=True)
        return await self._bot.unban_chat_member(chat_id, user_id, only_if_banned=True)


class TelegramPresentation:
    """Posts and edits BanAll status messages in the log chat."""

    def __init__(self, bot: Bot, chat_id: int, thread_id: Optional[int] = None) -> None:
        self._bot = bot
        self._chat_id = chat_id
        self._thread_id = thread_id

    def render_status(self, record: BanAllRecord) -> str:
        return status_format.render_status(record)

    def vote_keyboard(self, record: BanAllRecord) -> InlineKeyboardMarkup:
        buttons = [
            InlineKeyboardButton(text=label, callback_data=vote_callback_data(record.action_id, vote))
            for vote, label in VOTE_BUTTONS
        ]
        return InlineKeyboardMarkup(inline_keyboard=[buttons])

    async def post_status(self, text: str, keyboard: Optional[InlineKeyboardMarkup] = None) -> StatusHandle:
        message = await self._bot.send_message(
            self._chat_id,
            text,
            parse_mode="HTML",
            message_thread_id=self._thread_id,
            reply_markup=keyboard,
        )
        return StatusHandle(chat_id=message.chat.id, message_id=message.message_id, thread_id=self._thread_id)

    async def update_status(
        self,
        handle: StatusHandle,
        text: str,
        keyboard: Optional[InlineKeyboardMarkup] = None,
    ) -> None:
        try:
            await self._bot.edit_message_text(
                text=text,
                chat_id=handle.chat_id,
                message_id=handle.message_id,
                parse_mode="HTML",
                reply_markup=keyboard,
            )
        except TelegramBadRequest as exc:
            if "message is not modified" in str(exc):
                logger.debug("status_not_modified", chat_id=handle.chat_id, message_id=handle.message_id)
                return
            raise
