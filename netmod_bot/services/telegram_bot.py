from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import structlog
from aiogram import Bot, Dispatcher, F
from aiogram.enums import ChatType
from aiogram.filters import Command
from aiogram.types import CallbackQuery, Message
from aiogram.types import User as TelegramUser

from ..adapters.backend import BackendClient
from ..config import BotSettings
from ..errors import (
    ConfigurationError,
    EnumerationFailure,
    InvalidStateError,
    NetmodError,
    RecordNotFoundError,
    VoteRejectedError,
)
from ..logging.events import setup_logging
from ..models import ActionKind, DependencyCounts, Outcome, UserRef, Voter
from ..progress.format import unicode_progress_bar
from ..storage.sqlite import SQLiteJobStore
from .ban_all import JobOrchestrator
from .telegram_actions import CALLBACK_PREFIX, TelegramActionExecutor, TelegramPresentation, parse_vote_callback

logger = structlog.get_logger(__name__)

HELP_TEXT = (
    "Commands (private chat, committee only):\n"
    "/ban_all <user_id|username> <reason> – ban a user from every group of the network\n"
    "/unban_all <user_id|username> – lift a network-wide ban\n"
    "/ban_all_status <user_id> – progress of the latest ban all for a user\n"
    "/ban_all_cancel <action_id> – drop the groups not processed yet\n"
    "/ban_all_retry <action_id> – start an approved ban all that could not reach the groups"
)

BYPASS_ROLES = frozenset({"president", "owner", "direttivo"})


def parse_target_arg(value: str) -> int | str:
    """A numeric argument is a user id; anything else is taken as a username."""
    value = value.strip()
    try:
        return int(value)
    except ValueError:
        return value.replace("@", "")


def is_protected(roles: list[str]) -> bool:
    return any(role in BYPASS_ROLES for role in roles)


def to_user_ref(user: TelegramUser) -> UserRef:
    return UserRef(id=user.id, first_name=user.first_name, last_name=user.last_name, username=user.username)


def format_counts(counts: DependencyCounts) -> str:
    progress = counts.as_progress()
    return (
        f"{unicode_progress_bar(progress.ratio)} {round(progress.ratio * 100)}%\n"
        f"✅ {counts.succeeded}  ❌ {counts.failed}  🚫 {counts.ignored}  ⏳ {counts.unprocessed}"
        f"  (groups: {counts.total})"
    )


class TelegramBanAllApp:
    """
    Aiogram integration wrapper around the ban-all orchestrator.

    - `/ban_all` and `/unban_all` open a committee vote in the log chat.
    - Vote buttons on the status message feed the ballot; an approved vote
      starts the fan-out over every group of the network.
    - `/ban_all_status` and `/ban_all_cancel` inspect and trim running work.
    """

    def __init__(self, settings: BotSettings) -> None:
        self._settings = settings
        setup_logging(
            level=getattr(logging, settings.logging.level.upper(), logging.INFO),
            use_json=settings.logging.use_json,
        )
        self.bot = Bot(token=settings.telegram_token)
        self.dispatcher = Dispatcher()
        self.store = SQLiteJobStore(settings.storage.sqlite_path)
        self.backend = BackendClient(
            settings.backend.base_url,
            token=settings.backend.token,
            timeout=settings.backend.timeout_seconds,
        )
        self.orchestrator = JobOrchestrator(
            self.store,
            self.backend,
            TelegramActionExecutor(self.bot),
            TelegramPresentation(self.bot, settings.log_chat.chat_id, settings.log_chat.thread_id),
            queue=settings.queue,
            progress=settings.progress,
            voting=settings.voting,
        )
        self._register_handlers()

    def _register_handlers(self) -> None:
        self.dispatcher.message(Command(commands=["start", "help"]))(self._handle_help)
        self.dispatcher.message(Command(commands=["ban_all"]))(self._handle_ban_all)
        self.dispatcher.message(Command(commands=["unban_all"]))(self._handle_unban_all)
        self.dispatcher.message(Command(commands=["ban_all_status"]))(self._handle_status)
        self.dispatcher.message(Command(commands=["ban_all_cancel"]))(self._handle_cancel)
        self.dispatcher.message(Command(commands=["ban_all_retry"]))(self._handle_retry)
        self.dispatcher.callback_query(F.data.startswith(f"{CALLBACK_PREFIX}:"))(self._handle_vote)

    async def start(self) -> None:
        await self.store.connect()
        await self.orchestrator.start()

    async def shutdown(self) -> None:
        await self.orchestrator.stop()
        await self.store.disconnect()
        await self.backend.close()
        await self.bot.session.close()

    async def run(self) -> None:
        await self.start()
        try:
            await self.dispatcher.start_polling(self.bot)
        finally:
            await self.shutdown()

    async def _handle_help(self, message: Message) -> None:
        await message.reply(HELP_TEXT)

    async def _handle_ban_all(self, message: Message) -> None:
        await self._open_vote(message, ActionKind.BAN)

    async def _handle_unban_all(self, message: Message) -> None:
        await self._open_vote(message, ActionKind.UNBAN)

    async def _open_vote(self, message: Message, kind: ActionKind) -> None:
        committee = await self._committee_for(message)
        if committee is None:
            return

        args = (message.text or "").split(maxsplit=2)
        usage = (
            "Usage: /ban_all <user_id|username> <reason>"
            if kind is ActionKind.BAN
            else "Usage: /unban_all <user_id|username>"
        )
        if len(args) < 2:
            await message.reply(usage)
            return
        reason = args[2].strip() if len(args) > 2 else None
        if kind is ActionKind.BAN and not reason:
            await message.reply(usage)
            return

        try:
            user_id = await self._resolve_target(args[1])
            if user_id is None:
                await message.reply("Not a valid userId or username not in our cache")
                return
            if kind is ActionKind.BAN and is_protected(await self.backend.get_roles(user_id)):
                logger.info("ban_all_target_protected", user_id=user_id, requested_by=message.from_user.id)
                await message.reply("This user has special roles so cannot be banned.")
                return
            target = await self.backend.get_user(user_id)
        except (NetmodError, httpx.HTTPError) as exc:
            logger.error("ban_all_target_lookup_failed", target=args[1], error=str(exc))
            await message.reply("Could not reach the backend, try again later.")
            return
        if target is None:
            await message.reply("This user is not in our cache, we cannot proceed.")
            return

        try:
            record = await self.orchestrator.request(
                kind,
                target,
                to_user_ref(message.from_user),
                committee,
                reason=reason,
            )
        except ConfigurationError as exc:
            await message.reply(f"Cannot start the vote: {exc}")
            return
        logger.info(
            "ban_all_requested",
            action_id=record.action_id,
            kind=kind.value,
            target_id=target.id,
            requested_by=message.from_user.id,
        )
        await message.reply(f"🗳 Vote opened in the log chat (id <code>{record.action_id}</code>).", parse_mode="HTML")

    async def _handle_vote(self, callback: CallbackQuery) -> None:
        parsed = parse_vote_callback(callback.data or "")
        if parsed is None:
            await callback.answer("Invalid vote")
            return
        action_id, vote = parsed
        try:
            outcome = await self.orchestrator.cast_vote(action_id, callback.from_user.id, vote)
        except VoteRejectedError as exc:
            await callback.answer(exc.feedback, show_alert=True)
            return
        except RecordNotFoundError:
            await callback.answer("This vote no longer exists", show_alert=True)
            return
        except EnumerationFailure as exc:
            logger.error("ban_all_start_failed", action_id=action_id, error=str(exc))
            await callback.answer(
                "Approved, but the group list is unavailable. Use /ban_all_retry later.", show_alert=True
            )
            return
        except InvalidStateError as exc:
            logger.warning("ban_all_start_skipped", action_id=action_id, error=str(exc))
            await callback.answer("✅ Vote registered")
            return

        if outcome is Outcome.WAITING:
            await callback.answer("✅ Vote registered")
        else:
            await callback.answer(f"✅ Vote registered, the vote is {outcome.value}")

    async def _handle_status(self, message: Message) -> None:
        if await self._committee_for(message) is None:
            return
        args = (message.text or "").split(maxsplit=1)
        if len(args) < 2 or not args[1].strip().lstrip("-").isdigit():
            await message.reply("Usage: /ban_all_status <user_id>")
            return
        counts = await self.orchestrator.query_progress(int(args[1]))
        if counts is None:
            await message.reply("No ban all was ever run for this user.")
            return
        await message.reply(format_counts(counts))

    async def _handle_cancel(self, message: Message) -> None:
        if await self._committee_for(message) is None:
            return
        args = (message.text or "").split(maxsplit=1)
        if len(args) < 2:
            await message.reply("Usage: /ban_all_cancel <action_id>")
            return
        action_id = args[1].strip()
        try:
            cancelled = await self.orchestrator.cancel(action_id)
        except RecordNotFoundError:
            await message.reply("No running ban all with this id.")
            return
        await message.reply(f"🛑 {cancelled} pending group(s) dropped.")

    async def _handle_retry(self, message: Message) -> None:
        if await self._committee_for(message) is None:
            return
        args = (message.text or "").split(maxsplit=1)
        if len(args) < 2:
            await message.reply("Usage: /ban_all_retry <action_id>")
            return
        action_id = args[1].strip()
        try:
            handle = await self.orchestrator.retry(action_id)
        except RecordNotFoundError:
            await message.reply("No ban all with this id.")
            return
        except InvalidStateError as exc:
            await message.reply(f"Nothing to retry: {exc}")
            return
        except EnumerationFailure as exc:
            logger.error("ban_all_retry_failed", action_id=action_id, error=str(exc))
            await message.reply("The group list is still unavailable, try again later.")
            return
        await message.reply(f"🚀 Started on {handle.total_targets} group(s).")

    async def _resolve_target(self, raw: str) -> Optional[int]:
        target = parse_target_arg(raw)
        if isinstance(target, int):
            return target
        return await self.backend.resolve_username(target)

    async def _committee_for(self, message: Message) -> Optional[list[Voter]]:
        """Committee members, or None (after replying) when the sender may not run ban-all commands."""
        if message.chat.type != ChatType.PRIVATE:
            await message.reply("Use this command in a private chat with the bot.")
            return None
        try:
            committee = await self.backend.get_committee()
        except ConfigurationError as exc:
            await message.reply(f"❌ {exc}")
            return None
        except (NetmodError, httpx.HTTPError) as exc:
            logger.error("committee_lookup_failed", error=str(exc))
            await message.reply("Could not reach the backend, try again later.")
            return None
        if not any(voter.user.id == message.from_user.id for voter in committee):
            logger.info("ban_all_command_denied", user_id=message.from_user.id)
            await message.reply("You are not allowed to use this command.")
            return None
        return committee


@asynccontextmanager
async def telegram_app(settings: BotSettings):
    app = TelegramBanAllApp(settings)
    await app.start()
    try:
        yield app
    finally:
        await app.shutdown()
