from __future__ import annotations

from datetime import datetime, timedelta, timezone

from .config import SchedulerConfig
from .models import CATCH_UP_MODE, Topic, Window
from .utils import ensure_utc

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def generate_due_windows(
    topic: Topic, now: datetime, config: SchedulerConfig | None = None
) -> list[Window]:
    """Windows that are due for ``topic`` as of ``now``, oldest first.

    A topic with no cursor bootstraps with one window ending on the latest
    epoch-aligned interval boundary. A topic with a cursor gets back-to-back
    windows starting at the cursor, bounded by ``max_backfill_windows``.
    """
    config = config or SchedulerConfig()
    if not topic.digest_schedule_enabled:
        return []
    interval_seconds = int(topic.digest_interval_minutes) * 60
    if interval_seconds < config.min_window_seconds:
        return []
    interval = timedelta(seconds=interval_seconds)
    due_limit = ensure_utc(now) - timedelta(seconds=config.lag_seconds)

    if topic.digest_cursor_end is None:
        elapsed = int((due_limit - EPOCH).total_seconds())
        window_end = EPOCH + timedelta(seconds=(elapsed // interval_seconds) * interval_seconds)
        return [Window(window_end - interval, window_end, topic.digest_mode)]

    cursor = ensure_utc(topic.digest_cursor_end)
    if due_limit <= cursor:
        return []
    overdue = int((due_limit - cursor).total_seconds()) // interval_seconds
    if overdue <= 0:
        return []

    limit = config.max_backfill_windows
    if overdue > limit:
        if config.window_mode == "adaptive":
            return [Window(cursor, cursor + interval * overdue, CATCH_UP_MODE)]
        overdue = limit
    return [
        Window(cursor + interval * k, cursor + interval * (k + 1), topic.digest_mode)
        for k in range(overdue)
    ]
