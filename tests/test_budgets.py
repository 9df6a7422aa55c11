from datetime import datetime, timezone

import pytest

from aharadar.budgets import (
    compute_credits_status,
    log_credits_warning,
    reset_budget,
    tier_for_credits,
)
from aharadar.storage import create_user, init_db, record_provider_call


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def _spend(conn, user_id, credits, when, status="ok"):
    record_provider_call(
        conn,
        user_id=user_id,
        purpose="triage",
        provider="openai",
        model="gpt-5.1",
        status=status,
        cost_estimate_credits=credits,
        started_at=when,
    )


def _setup(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    return conn, create_user(conn)


def test_usage_is_scoped_to_month_and_day(tmp_path):
    conn, user = _setup(tmp_path)
    _spend(conn, user.id, 100, _utc(2024, 12, 31, 23))
    _spend(conn, user.id, 40, _utc(2025, 1, 10))
    _spend(conn, user.id, 25, _utc(2025, 1, 15, 8))
    _spend(conn, user.id, 999, _utc(2025, 1, 15, 9), status="error")

    status = compute_credits_status(conn, user.id, 1000, 30, _utc(2025, 1, 15, 12))

    assert status.monthly_used == 65
    assert status.monthly_remaining == 935
    assert status.daily_used == 25
    assert status.daily_remaining == 5
    assert status.paid_calls_allowed is True
    assert status.warning_level == "approaching"


def test_exhausted_monthly_budget_blocks_paid_calls(tmp_path):
    conn, user = _setup(tmp_path)
    _spend(conn, user.id, 1000, _utc(2025, 1, 2))

    status = compute_credits_status(conn, user.id, 1000, None, _utc(2025, 1, 15))

    assert status.paid_calls_allowed is False
    assert status.warning_level == "critical"
    assert status.daily_limit is None
    assert tier_for_credits(status) == "low"
    assert log_credits_warning(status) is True


def test_quiet_budget_logs_nothing(tmp_path):
    conn, user = _setup(tmp_path)
    status = compute_credits_status(conn, user.id, 1000, None, _utc(2025, 1, 15))

    assert status.warning_level == "none"
    assert log_credits_warning(status) is False
    assert tier_for_credits(status, "high") == "high"


def test_reset_offsets_current_usage(tmp_path):
    conn, user = _setup(tmp_path)
    _spend(conn, user.id, 900, _utc(2025, 1, 15, 6))

    result = reset_budget(conn, user.id, "daily", 10000, 1000, now=_utc(2025, 1, 15, 12))
    assert result.credits_reset == 900

    status = compute_credits_status(conn, user.id, 10000, 1000, _utc(2025, 1, 15, 13))
    assert status.daily_used == 0
    assert status.monthly_used == 900

    tomorrow = compute_credits_status(conn, user.id, 10000, 1000, _utc(2025, 1, 16, 1))
    assert tomorrow.daily_used == 0


def test_reset_rejects_unknown_period(tmp_path):
    conn, user = _setup(tmp_path)
    with pytest.raises(ValueError):
        reset_budget(conn, user.id, "weekly", 1000)
