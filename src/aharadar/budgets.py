from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

from .utils import ensure_utc, isoformat_utc, log_event, utc_now

logger = logging.getLogger("aharadar.budgets")

BUDGET_PERIODS = ("daily", "monthly")

APPROACHING_THRESHOLD = 0.8
CRITICAL_THRESHOLD = 0.95


@dataclass(frozen=True)
class CreditsStatus:
    monthly_used: float
    monthly_limit: float
    monthly_remaining: float
    daily_used: float
    daily_limit: float | None
    daily_remaining: float | None
    paid_calls_allowed: bool
    warning_level: str

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class BudgetResetResult:
    period: str
    credits_reset: float
    reset_at: str


def compute_credits_status(
    conn: Any,
    user_id: str,
    monthly_credits: float,
    daily_throttle_credits: float | None,
    window_end: datetime,
) -> CreditsStatus:
    """Credit usage for the UTC month and day that contain ``window_end``.

    Only successful provider calls count. Budget resets recorded in the same
    period are subtracted from raw usage.
    """
    end = ensure_utc(window_end)
    month_start = isoformat_utc(datetime(end.year, end.month, 1, tzinfo=timezone.utc))
    day_start = isoformat_utc(datetime(end.year, end.month, end.day, tzinfo=timezone.utc))

    monthly_raw = _sum_calls(conn, user_id, month_start)
    daily_raw = _sum_calls(conn, user_id, day_start)
    monthly_offset = _sum_resets(conn, user_id, "monthly", month_start)
    daily_offset = _sum_resets(conn, user_id, "daily", day_start)

    monthly_used = max(0.0, monthly_raw - monthly_offset)
    daily_used = max(0.0, daily_raw - daily_offset)
    monthly_limit = float(monthly_credits)
    monthly_remaining = max(0.0, monthly_limit - monthly_used)
    daily_limit = float(daily_throttle_credits) if daily_throttle_credits is not None else None
    daily_remaining = max(0.0, daily_limit - daily_used) if daily_limit is not None else None

    monthly_exhausted = monthly_remaining <= 0
    daily_exhausted = daily_remaining is not None and daily_remaining <= 0

    monthly_pct = monthly_used / monthly_limit if monthly_limit > 0 else 0.0
    daily_pct = daily_used / daily_limit if daily_limit else 0.0
    if monthly_pct >= CRITICAL_THRESHOLD or daily_pct >= CRITICAL_THRESHOLD:
        warning_level = "critical"
    elif monthly_pct >= APPROACHING_THRESHOLD or daily_pct >= APPROACHING_THRESHOLD:
        warning_level = "approaching"
    else:
        warning_level = "none"

    return CreditsStatus(
        monthly_used=monthly_used,
        monthly_limit=monthly_limit,
        monthly_remaining=monthly_remaining,
        daily_used=daily_used,
        daily_limit=daily_limit,
        daily_remaining=daily_remaining,
        paid_calls_allowed=not monthly_exhausted and not daily_exhausted,
        warning_level=warning_level,
    )


def log_credits_warning(status: CreditsStatus) -> bool:
    if status.warning_level == "none":
        return False
    monthly_pct = round(status.monthly_used / status.monthly_limit * 100) if status.monthly_limit else 0
    daily_pct = (
        round(status.daily_used / status.daily_limit * 100) if status.daily_limit else None
    )
    if status.warning_level == "critical" and not status.paid_calls_allowed:
        event = "credits_exhausted"
    elif status.warning_level == "critical":
        event = "credits_critical"
    else:
        event = "credits_approaching"
    log_event(
        logger,
        logging.WARNING,
        event,
        monthly_used=status.monthly_used,
        monthly_limit=status.monthly_limit,
        monthly_pct=monthly_pct,
        daily_used=status.daily_used,
        daily_limit=status.daily_limit,
        daily_pct=daily_pct,
    )
    return True


def reset_budget(
    conn: Any,
    user_id: str,
    period: str,
    monthly_credits: float,
    daily_throttle_credits: float | None = None,
    now: datetime | None = None,
) -> BudgetResetResult:
    if period not in BUDGET_PERIODS:
        raise ValueError(f"budget period must be one of {', '.join(BUDGET_PERIODS)}")
    now = ensure_utc(now) if now else utc_now()
    status = compute_credits_status(conn, user_id, monthly_credits, daily_throttle_credits, now)
    credits = status.monthly_used if period == "monthly" else status.daily_used
    reset_at = isoformat_utc(now)
    conn.execute(
        """
        INSERT INTO budget_resets (id, user_id, period, credits_at_reset, reset_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (str(uuid.uuid4()), user_id, period, credits, reset_at),
    )
    log_event(logger, logging.INFO, "budget_reset", user_id=user_id, period=period, credits=credits)
    return BudgetResetResult(period=period, credits_reset=credits, reset_at=reset_at)


def tier_for_credits(status: CreditsStatus, default_tier: str = "normal") -> str:
    if status.warning_level == "critical":
        return "low"
    return default_tier


def _sum_calls(conn: Any, user_id: str, since: str) -> float:
    row = conn.execute(
        """
        SELECT COALESCE(SUM(cost_estimate_credits), 0)
        FROM provider_calls
        WHERE user_id = ? AND status = 'ok' AND started_at >= ?
        """,
        (user_id, since),
    ).fetchone()
    return float(row[0] or 0)


def _sum_resets(conn: Any, user_id: str, period: str, since: str) -> float:
    row = conn.execute(
        """
        SELECT COALESCE(SUM(credits_at_reset), 0)
        FROM budget_resets
        WHERE user_id = ? AND period = ? AND reset_at >= ?
        """,
        (user_id, period, since),
    ).fetchone()
    return float(row[0] or 0)
