from datetime import datetime, timedelta, timezone

from aharadar.config import SchedulerConfig
from aharadar.models import Topic
from aharadar.windows import generate_due_windows


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def _topic(cursor=None, interval=60, mode="normal", enabled=True) -> Topic:
    return Topic(
        id="topic-1",
        user_id="user-1",
        name="AI",
        digest_schedule_enabled=enabled,
        digest_interval_minutes=interval,
        digest_mode=mode,
        digest_depth=50,
        digest_cursor_end=cursor,
    )


def test_bootstrap_emits_one_window_ending_before_now():
    now = _utc(2025, 1, 1, 10, 37, 12)
    windows = generate_due_windows(_topic(interval=60), now, SchedulerConfig())

    assert len(windows) == 1
    window = windows[0]
    assert window.window_end <= now
    assert window.window_end - window.window_start == timedelta(minutes=60)
    assert window.window_end == _utc(2025, 1, 1, 10, 0)
    assert window.mode == "normal"


def test_bootstrap_is_stable_within_one_interval():
    first = generate_due_windows(_topic(interval=60), _utc(2025, 1, 1, 10, 1), SchedulerConfig())
    second = generate_due_windows(_topic(interval=60), _utc(2025, 1, 1, 10, 59), SchedulerConfig())
    assert first == second


def test_daily_bootstrap_aligns_to_utc_midnight():
    windows = generate_due_windows(_topic(interval=1440), _utc(2025, 1, 3, 5, 0), SchedulerConfig())
    assert [(w.window_start, w.window_end) for w in windows] == [
        (_utc(2025, 1, 2), _utc(2025, 1, 3))
    ]


def test_cursor_produces_back_to_back_windows():
    topic = _topic(cursor=_utc(2025, 1, 1), interval=1440)
    windows = generate_due_windows(topic, _utc(2025, 1, 3), SchedulerConfig())

    assert [(w.window_start, w.window_end) for w in windows] == [
        (_utc(2025, 1, 1), _utc(2025, 1, 2)),
        (_utc(2025, 1, 2), _utc(2025, 1, 3)),
    ]


def test_not_due_before_a_full_interval():
    topic = _topic(cursor=_utc(2025, 1, 1), interval=1440)
    assert generate_due_windows(topic, _utc(2025, 1, 1, 23, 59), SchedulerConfig()) == []


def test_due_exactly_on_interval_boundary():
    topic = _topic(cursor=_utc(2025, 1, 1), interval=1440)
    windows = generate_due_windows(topic, _utc(2025, 1, 2), SchedulerConfig())
    assert len(windows) == 1
    assert windows[0].window_end == _utc(2025, 1, 2)


def test_fixed_mode_caps_backfill():
    topic = _topic(cursor=_utc(2025, 1, 1), interval=60)
    config = SchedulerConfig(window_mode="fixed", max_backfill_windows=6)
    windows = generate_due_windows(topic, _utc(2025, 1, 1, 10), config)

    assert len(windows) == 6
    assert windows[0].window_start == _utc(2025, 1, 1)
    assert windows[-1].window_end == _utc(2025, 1, 1, 6)


def test_adaptive_mode_collapses_overdue_windows():
    topic = _topic(cursor=_utc(2025, 1, 1), interval=60, mode="high")
    config = SchedulerConfig(window_mode="adaptive", max_backfill_windows=6)
    windows = generate_due_windows(topic, _utc(2025, 1, 1, 10, 30), config)

    assert len(windows) == 1
    assert windows[0].window_start == _utc(2025, 1, 1)
    assert windows[0].window_end == _utc(2025, 1, 1, 10)
    assert windows[0].mode == "catch_up"


def test_adaptive_mode_keeps_small_backlogs_split():
    topic = _topic(cursor=_utc(2025, 1, 1), interval=60, mode="low")
    config = SchedulerConfig(window_mode="adaptive", max_backfill_windows=6)
    windows = generate_due_windows(topic, _utc(2025, 1, 1, 3), config)

    assert len(windows) == 3
    assert {w.mode for w in windows} == {"low"}


def test_lag_delays_due_windows():
    topic = _topic(cursor=_utc(2025, 1, 1), interval=60)
    config = SchedulerConfig(lag_seconds=300)
    assert generate_due_windows(topic, _utc(2025, 1, 1, 1, 4), config) == []
    assert len(generate_due_windows(topic, _utc(2025, 1, 1, 1, 5), config)) == 1


def test_short_interval_and_disabled_topics_yield_nothing():
    config = SchedulerConfig(min_window_seconds=120)
    now = _utc(2025, 1, 1, 12)
    assert generate_due_windows(_topic(interval=1), now, config) == []
    assert generate_due_windows(_topic(enabled=False), now, SchedulerConfig()) == []


def test_windows_stay_contiguous_as_cursor_advances():
    config = SchedulerConfig(max_backfill_windows=3)
    cursor = _utc(2025, 1, 1)
    now = _utc(2025, 1, 1, 2, 30)
    seen = []
    for _ in range(5):
        windows = generate_due_windows(_topic(cursor=cursor, interval=60), now, config)
        if windows:
            assert windows[0].window_start == cursor
            seen.extend(windows)
            cursor = windows[-1].window_end
        now += timedelta(minutes=75)

    assert seen
    for previous, current in zip(seen, seen[1:]):
        assert previous.window_end == current.window_start
    assert all(w.window_end <= now for w in seen)
