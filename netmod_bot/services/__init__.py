from .ban_all import BanAllHandle, JobOrchestrator
from .telegram_bot import TelegramBanAllApp, telegram_app

__all__ = ["BanAllHandle", "JobOrchestrator", "TelegramBanAllApp", "telegram_app"]
