from datetime import datetime, timedelta, timezone

import pytest

from aharadar.jobs import (
    RunCatchupPackPayload,
    RunWindowPayload,
    job_id_for,
    parse_payload,
    payload_to_dict,
    run_window_job_id,
)


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_run_window_job_id_is_deterministic():
    first = run_window_job_id("u1", "t1", _utc(2025, 1, 1), _utc(2025, 1, 2), "normal")
    second = run_window_job_id("u1", "t1", _utc(2025, 1, 1), _utc(2025, 1, 2), "normal")
    other = run_window_job_id("u1", "t1", _utc(2025, 1, 2), _utc(2025, 1, 3), "normal")

    assert first == second
    assert first != other
    assert first.startswith("run_window_")
    assert len(first) == len("run_window_") + 32


def test_job_id_ignores_timezone_representation():
    offset = timezone(timedelta(hours=2))
    local = datetime(2025, 1, 1, 2, 0, tzinfo=offset)
    assert run_window_job_id("u1", "t1", local, _utc(2025, 1, 2), "normal") == run_window_job_id(
        "u1", "t1", _utc(2025, 1, 1), _utc(2025, 1, 2), "normal"
    )


def test_job_id_depends_on_mode():
    assert run_window_job_id("u1", "t1", _utc(2025, 1, 1), _utc(2025, 1, 2), "low") != (
        run_window_job_id("u1", "t1", _utc(2025, 1, 1), _utc(2025, 1, 2), "catch_up")
    )


def test_payload_survives_storage_format():
    payload = RunWindowPayload(
        user_id="u1",
        topic_id="t1",
        window_start=_utc(2025, 1, 1),
        window_end=_utc(2025, 1, 2),
        mode="high",
        trigger="scheduled",
    )
    parsed = parse_payload("run_window", payload_to_dict(payload))

    assert isinstance(parsed, RunWindowPayload)
    assert parsed.window_start == payload.window_start
    assert parsed.trigger == "scheduled"
    assert job_id_for(parsed) == job_id_for(payload)


def test_parse_payload_rejects_unknown_job():
    with pytest.raises(ValueError):
        parse_payload("reindex_everything", {})


def test_run_window_payload_validation():
    with pytest.raises(ValueError):
        RunWindowPayload(
            user_id="u1",
            topic_id="t1",
            window_start=_utc(2025, 1, 2),
            window_end=_utc(2025, 1, 1),
        )
    with pytest.raises(ValueError):
        RunWindowPayload(
            user_id="u1",
            topic_id="t1",
            window_start=_utc(2025, 1, 1),
            window_end=_utc(2025, 1, 2),
            mode="turbo",
        )


def test_catchup_job_id_follows_scope_hash():
    first = RunCatchupPackPayload(user_id="u1", topic_id="t1", scope_hash="abc")
    same = RunCatchupPackPayload(user_id="u1", topic_id="t1", scope_hash="abc", timeframe_days=3)
    other = RunCatchupPackPayload(user_id="u1", topic_id="t1", scope_hash="def")

    assert job_id_for(first) == job_id_for(same)
    assert job_id_for(first) != job_id_for(other)
    assert job_id_for(first).startswith("run_catchup_pack_")
