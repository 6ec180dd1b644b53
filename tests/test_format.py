from __future__ import annotations

import pytest

from netmod_bot.models import ActionKind, ExecutionProgress, Outcome, Vote
from netmod_bot.progress.format import render_status, unicode_progress_bar
from tests.factories import make_committee, make_record


@pytest.mark.parametrize(
    "progress, expected",
    [
        (0, "░░░░░░░░░░"),
        (0.5, "█████░░░░░"),
        (0.75, "███████▓░░"),
        (1, "██████████"),
        (1.7, "██████████"),
        (-0.3, "░░░░░░░░░░"),
    ],
)
def test_unicode_progress_bar(progress: float, expected: str) -> None:
    assert unicode_progress_bar(progress) == expected


def test_progress_bar_size() -> None:
    assert unicode_progress_bar(0.5, size=4) == "██░░"
    assert len(unicode_progress_bar(0.33, size=20)) == 20


def test_waiting_status_lists_voters() -> None:
    record = make_record(voters=make_committee(Vote.IN_FAVOR, 0, 1, 0, 1))

    text = render_status(record)

    assert "BAN ALL" in text
    assert "Spammer @spam_bot" in text
    assert "spam in every group" in text
    assert "Waiting for votes" in text
    assert "✅ <a href=\"tg://user?id=1\">Chair</a> [<code>1</code>] <b>CHAIR</b>" in text
    assert "❌ <a href=\"tg://user?id=2\">" in text
    assert "<s>" not in text
    assert "Progress" not in text


def test_decided_status_strikes_out_missing_voters() -> None:
    record = make_record(
        voters=make_committee(Vote.IN_FAVOR, 1, 0, 0, 1),
        outcome=Outcome.APPROVED,
    )

    text = render_status(record)

    assert "APPROVED" in text
    assert "<s>➖ <a href=\"tg://user?id=3\">" in text


def test_approved_status_shows_progress() -> None:
    record = make_record(outcome=Outcome.APPROVED, kind=ActionKind.UNBAN, reason=None)
    record.progress = ExecutionProgress(total_targets=8, succeeded=5, failed=1)

    text = render_status(record)

    assert "UN-BAN ALL" in text
    assert "Reason" not in text
    assert "███████▓░░ 75%" in text
    assert "✅ 5  ❌ 1  ⏳ 2  (groups: 8)" in text


def test_user_input_is_escaped() -> None:
    record = make_record(reason="<b>injected</b>")

    assert "&lt;b&gt;injected&lt;/b&gt;" in render_status(record)


def test_cancelled_groups_are_not_pending() -> None:
    record = make_record(outcome=Outcome.APPROVED)
    record.progress = ExecutionProgress(total_targets=4, succeeded=1, failed=0, ignored=3)

    text = render_status(record)

    assert record.progress.pending == 0
    assert "██████████ 100%" in text
    assert "⏳ 0  (groups: 4)" in text
    assert "🚫 3 group(s) cancelled" in text
