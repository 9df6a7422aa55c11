from datetime import datetime, timezone

import pytest

from aharadar.storage import (
    create_topic,
    create_user,
    delete_setting,
    get_first_user,
    get_setting,
    get_topic,
    init_db,
    list_schedulable_topics,
    list_topics,
    set_setting,
    set_topic_schedule,
    update_digest_cursor_end,
    upsert_catchup_pack,
    get_catchup_pack,
)


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_settings_round_trip(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    assert get_setting(conn, "queue.pipeline.paused", False) is False
    set_setting(conn, "queue.pipeline.paused", True)
    set_setting(conn, "llm.settings", {"provider": "openai"})
    assert get_setting(conn, "queue.pipeline.paused", False) is True
    assert get_setting(conn, "llm.settings", {}) == {"provider": "openai"}
    delete_setting(conn, "queue.pipeline.paused")
    assert get_setting(conn, "queue.pipeline.paused", None) is None


def test_topics_and_schedulable_listing(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    user = create_user(conn, email="a@example.com")
    active = create_topic(conn, user.id, "AI", interval_minutes=60, mode="high")
    paused = create_topic(conn, user.id, "Crypto", enabled=False)

    assert get_first_user(conn).id == user.id
    assert {topic.id for topic in list_topics(conn, user.id)} == {active.id, paused.id}
    assert [topic.id for topic in list_schedulable_topics(conn)] == [active.id]
    assert active.digest_mode == "high"
    assert active.digest_cursor_end is None

    assert set_topic_schedule(conn, paused.id, enabled=True, mode="low") is True
    assert get_topic(conn, paused.id).digest_mode == "low"
    assert set_topic_schedule(conn, paused.id) is False


def test_topic_validation(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    user = create_user(conn)
    with pytest.raises(ValueError):
        create_topic(conn, user.id, "Bad", mode="catch_up")
    with pytest.raises(ValueError):
        create_topic(conn, user.id, "Bad", depth=101)
    with pytest.raises(ValueError):
        create_topic(conn, user.id, "Bad", interval_minutes=0)


def test_cursor_is_monotonic(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    user = create_user(conn)
    topic = create_topic(conn, user.id, "AI")

    assert update_digest_cursor_end(conn, topic.id, _utc(2025, 1, 2)) is True
    assert update_digest_cursor_end(conn, topic.id, _utc(2025, 1, 1)) is False
    assert update_digest_cursor_end(conn, topic.id, _utc(2025, 1, 2)) is False
    assert get_topic(conn, topic.id).digest_cursor_end == _utc(2025, 1, 2)
    assert update_digest_cursor_end(conn, topic.id, _utc(2025, 1, 3)) is True


def test_catchup_pack_upsert_keeps_id(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    user = create_user(conn)
    first = upsert_catchup_pack(
        conn, user_id=user.id, topic_id="t", scope_hash="s", status="pending"
    )
    second = upsert_catchup_pack(
        conn,
        user_id=user.id,
        topic_id="t",
        scope_hash="s",
        status="complete",
        output={"tiers": {}},
    )

    assert first == second
    pack = get_catchup_pack(conn, user.id, "s")
    assert pack["status"] == "complete"
    assert pack["output"] == {"tiers": {}}
