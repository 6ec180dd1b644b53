"""
Netmod bot core package.

Network-wide ban and unban for a group network: a committee votes on the
action, then the action is fanned out to every group through a durable job
queue with retries and a live progress message.
"""

from .services.ban_all import BanAllHandle, JobOrchestrator
from .services.telegram_bot import TelegramBanAllApp, telegram_app

__all__ = ["BanAllHandle", "JobOrchestrator", "TelegramBanAllApp", "telegram_app"]
