from __future__ import annotations

from html import escape

from ..models import ActionKind, BanAllRecord, Outcome, UserRef, Vote

VOTE_EMOJI = {
    Vote.IN_FAVOR: "✅",
    Vote.AGAINST: "❌",
    Vote.ABSTAINED: "🫥",
}

OUTCOME_LABEL = {
    Outcome.WAITING: "⏳ Waiting for votes",
    Outcome.APPROVED: "✅ APPROVED",
    Outcome.DENIED: "❌ DENIED",
}

BAR_SHADES = ("░", "▒", "▓", "█")


def clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def unicode_progress_bar(progress: float, size: int = 10) -> str:
    """
    Render ``progress`` (0..1) as a bar of ``size`` cells with partial shading.

    >>> unicode_progress_bar(0.5)
    '█████░░░░░'
    >>> unicode_progress_bar(0.75)
    '███████▓░░'
    """
    clamped = clamp(progress, 0, 1)
    filled = int(clamped * size)
    partial = int((clamped * size - filled) * len(BAR_SHADES))
    if filled < size and partial > 0:
        return "█" * filled + BAR_SHADES[partial] + "░" * (size - filled - 1)
    return "█" * filled + "░" * (size - filled)


def format_user(user: UserRef) -> str:
    return f'<a href="tg://user?id={user.id}">{escape(user.display_name())}</a> [<code>{user.id}</code>]'


def render_status(record: BanAllRecord) -> str:
    """HTML text of the BanAll status message for the current vote and execution state."""
    header = "🚨 BAN ALL 🚨" if record.kind is ActionKind.BAN else "🟢 UN-BAN ALL 🟢"
    lines = [
        f"<b>{header}</b>",
        "",
        f"<b>🎯 Target:</b> {format_user(record.target)}",
        f"<b>📣 Reporter:</b> {format_user(record.requested_by)}",
    ]
    if record.reason:
        lines.append(f"<b>📋 Reason:</b> {escape(record.reason)}")
    lines += ["", f"<b>{OUTCOME_LABEL[record.outcome]}</b>", "", "<b>Voters</b>"]

    for voter in record.voters:
        chair = " <b>CHAIR</b>" if voter.is_chair else ""
        if record.outcome is not Outcome.WAITING and voter.vote is None:
            lines.append(f"<s>➖ {format_user(voter.user)}</s>{chair}")
        else:
            emoji = VOTE_EMOJI[voter.vote] if voter.vote else "⏳"
            lines.append(f"{emoji} {format_user(voter.user)}{chair}")

    progress = record.progress
    if record.outcome is Outcome.APPROVED and progress.total_targets:
        lines += [
            "",
            "<b>Progress</b>",
            f"{unicode_progress_bar(progress.ratio)} {round(progress.ratio * 100)}%",
            f"✅ {progress.succeeded}  ❌ {progress.failed}  ⏳ {progress.pending}"
            f"  (groups: {progress.total_targets})",
        ]
        if progress.ignored:
            lines.append(f"🚫 {progress.ignored} group(s) cancelled")
    return "\n".join(lines)
