from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Any

from .db import connect_db
from .models import DIGEST_MODES, Topic, User
from .utils import ensure_utc, isoformat_utc, json_dumps, log_event, parse_iso, utc_now_iso

logger = logging.getLogger("aharadar.storage")


def init_db(path: str | None = None, url: str | None = None):
    return connect_db(path, url)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, json_dumps(value), utc_now_iso()),
    )


def delete_setting(conn: Any, key: str) -> None:
    conn.execute("DELETE FROM settings WHERE key = ?", (key,))


def create_user(conn: Any, email: str | None = None, user_id: str | None = None) -> User:
    user = User(id=user_id or str(uuid.uuid4()), email=email, created_at=utc_now_iso())
    conn.execute(
        "INSERT INTO users (id, email, created_at) VALUES (?, ?, ?)",
        (user.id, user.email, user.created_at),
    )
    return user


def get_user(conn: Any, user_id: str) -> User | None:
    row = conn.execute(
        "SELECT id, email, created_at FROM users WHERE id = ?", (user_id,)
    ).fetchone()
    if not row:
        return None
    return User(id=row[0], email=row[1], created_at=row[2])


def list_users(conn: Any) -> list[User]:
    rows = conn.execute(
        "SELECT id, email, created_at FROM users ORDER BY created_at ASC, id ASC"
    ).fetchall()
    return [User(id=row[0], email=row[1], created_at=row[2]) for row in rows]


def get_first_user(conn: Any) -> User | None:
    users = list_users(conn)
    return users[0] if users else None


def create_topic(
    conn: Any,
    user_id: str,
    name: str,
    *,
    interval_minutes: int = 1440,
    mode: str = "normal",
    depth: int = 50,
    enabled: bool = True,
    cursor_end: datetime | None = None,
    topic_id: str | None = None,
) -> Topic:
    if mode not in DIGEST_MODES:
        raise ValueError(f"digest mode must be one of {', '.join(DIGEST_MODES)}")
    if not 0 <= depth <= 100:
        raise ValueError("digest depth must be between 0 and 100")
    if interval_minutes < 1:
        raise ValueError("digest interval must be at least one minute")
    topic_id = topic_id or str(uuid.uuid4())
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO topics
            (id, user_id, name, digest_schedule_enabled, digest_interval_minutes,
             digest_mode, digest_depth, digest_cursor_end, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            topic_id,
            user_id,
            name,
            1 if enabled else 0,
            interval_minutes,
            mode,
            depth,
            isoformat_utc(cursor_end) if cursor_end else None,
            now,
            now,
        ),
    )
    topic = get_topic(conn, topic_id)
    assert topic is not None
    return topic


_TOPIC_COLUMNS = """
    id, user_id, name, digest_schedule_enabled, digest_interval_minutes,
    digest_mode, digest_depth, digest_cursor_end
"""


def get_topic(conn: Any, topic_id: str) -> Topic | None:
    row = conn.execute(
        f"SELECT {_TOPIC_COLUMNS} FROM topics WHERE id = ?", (topic_id,)
    ).fetchone()
    return _row_to_topic(row) if row else None


def list_topics(conn: Any, user_id: str | None = None) -> list[Topic]:
    if user_id:
        rows = conn.execute(
            f"SELECT {_TOPIC_COLUMNS} FROM topics WHERE user_id = ? ORDER BY created_at, id",
            (user_id,),
        ).fetchall()
    else:
        rows = conn.execute(
            f"SELECT {_TOPIC_COLUMNS} FROM topics ORDER BY created_at, id"
        ).fetchall()
    return [_row_to_topic(row) for row in rows]


def list_schedulable_topics(conn: Any) -> list[Topic]:
    rows = conn.execute(
        f"""
        SELECT {_TOPIC_COLUMNS}
        FROM topics
        WHERE digest_schedule_enabled = 1
        ORDER BY user_id, created_at, id
        """
    ).fetchall()
    return [_row_to_topic(row) for row in rows]


def set_topic_schedule(
    conn: Any,
    topic_id: str,
    *,
    enabled: bool | None = None,
    interval_minutes: int | None = None,
    mode: str | None = None,
) -> bool:
    updates: list[str] = []
    params: list[object] = []
    if enabled is not None:
        updates.append("digest_schedule_enabled = ?")
        params.append(1 if enabled else 0)
    if interval_minutes is not None:
        if interval_minutes < 1:
            raise ValueError("digest interval must be at least one minute")
        updates.append("digest_interval_minutes = ?")
        params.append(interval_minutes)
    if mode is not None:
        if mode not in DIGEST_MODES:
            raise ValueError(f"digest mode must be one of {', '.join(DIGEST_MODES)}")
        updates.append("digest_mode = ?")
        params.append(mode)
    if not updates:
        return False
    updates.append("updated_at = ?")
    params.append(utc_now_iso())
    params.append(topic_id)
    cursor = conn.execute(
        f"UPDATE topics SET {', '.join(updates)} WHERE id = ?", tuple(params)
    )
    return cursor.rowcount == 1


def update_digest_cursor_end(conn: Any, topic_id: str, window_end: datetime) -> bool:
    """Move the topic cursor forward to ``window_end``.

    Returns False when the stored cursor is already at or past ``window_end``;
    the cursor never moves backward.
    """
    value = isoformat_utc(ensure_utc(window_end))
    cursor = conn.execute(
        """
        UPDATE topics
        SET digest_cursor_end = ?, updated_at = ?
        WHERE id = ? AND (digest_cursor_end IS NULL OR digest_cursor_end < ?)
        """,
        (value, utc_now_iso(), topic_id, value),
    )
    moved = cursor.rowcount == 1
    log_event(
        logger,
        logging.DEBUG,
        "cursor_update",
        topic_id=topic_id,
        window_end=value,
        moved=moved,
    )
    return moved


def upsert_catchup_pack(
    conn: Any,
    *,
    user_id: str,
    topic_id: str,
    scope_hash: str,
    status: str,
    meta: dict[str, object] | None = None,
    output: dict[str, object] | None = None,
    error: str | None = None,
) -> str:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO catchup_packs
            (id, user_id, topic_id, scope_hash, status, meta_json, output_json, error,
             created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id, scope_hash) DO UPDATE SET
            status = excluded.status,
            meta_json = excluded.meta_json,
            output_json = excluded.output_json,
            error = excluded.error,
            updated_at = excluded.updated_at
        """,
        (
            str(uuid.uuid4()),
            user_id,
            topic_id,
            scope_hash,
            status,
            json_dumps(meta) if meta is not None else None,
            json_dumps(output) if output is not None else None,
            error,
            now,
            now,
        ),
    )
    row = conn.execute(
        "SELECT id FROM catchup_packs WHERE user_id = ? AND scope_hash = ?",
        (user_id, scope_hash),
    ).fetchone()
    return str(row[0])


def get_catchup_pack(conn: Any, user_id: str, scope_hash: str) -> dict[str, object] | None:
    row = conn.execute(
        """
        SELECT id, user_id, topic_id, scope_hash, status, meta_json, output_json, error
        FROM catchup_packs
        WHERE user_id = ? AND scope_hash = ?
        """,
        (user_id, scope_hash),
    ).fetchone()
    if not row:
        return None
    return {
        "id": row[0],
        "user_id": row[1],
        "topic_id": row[2],
        "scope_hash": row[3],
        "status": row[4],
        "meta": _loads(row[5]),
        "output": _loads(row[6]),
        "error": row[7],
    }


def upsert_aggregate_summary(
    conn: Any,
    *,
    user_id: str,
    scope_type: str,
    scope_hash: str,
    status: str,
    digest_id: str | None = None,
    topic_id: str | None = None,
    summary: dict[str, object] | None = None,
    error: str | None = None,
) -> str:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO aggregate_summaries
            (id, user_id, scope_type, scope_hash, digest_id, topic_id, status,
             summary_json, error, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id, scope_hash) DO UPDATE SET
            status = excluded.status,
            summary_json = excluded.summary_json,
            error = excluded.error,
            updated_at = excluded.updated_at
        """,
        (
            str(uuid.uuid4()),
            user_id,
            scope_type,
            scope_hash,
            digest_id,
            topic_id,
            status,
            json_dumps(summary) if summary is not None else None,
            error,
            now,
            now,
        ),
    )
    row = conn.execute(
        "SELECT id FROM aggregate_summaries WHERE user_id = ? AND scope_hash = ?",
        (user_id, scope_hash),
    ).fetchone()
    return str(row[0])


def get_aggregate_summary(
    conn: Any, user_id: str, scope_hash: str
) -> dict[str, object] | None:
    row = conn.execute(
        """
        SELECT id, scope_type, status, summary_json, error
        FROM aggregate_summaries
        WHERE user_id = ? AND scope_hash = ?
        """,
        (user_id, scope_hash),
    ).fetchone()
    if not row:
        return None
    return {
        "id": row[0],
        "scope_type": row[1],
        "status": row[2],
        "summary": _loads(row[3]),
        "error": row[4],
    }


def create_abtest_run(
    conn: Any,
    *,
    user_id: str,
    topic_id: str,
    window_start: datetime,
    window_end: datetime,
    config: dict[str, object] | None = None,
    run_id: str | None = None,
) -> str:
    run_id = run_id or str(uuid.uuid4())
    conn.execute(
        """
        INSERT OR IGNORE INTO abtest_runs
            (id, user_id, topic_id, window_start, window_end, status, config_json, created_at)
        VALUES (?, ?, ?, ?, ?, 'pending', ?, ?)
        """,
        (
            run_id,
            user_id,
            topic_id,
            isoformat_utc(window_start),
            isoformat_utc(window_end),
            json_dumps(config) if config is not None else None,
            utc_now_iso(),
        ),
    )
    return run_id


def update_abtest_run(
    conn: Any, run_id: str, status: str, error: str | None = None
) -> None:
    now = utc_now_iso()
    if status == "running":
        conn.execute(
            "UPDATE abtest_runs SET status = ?, started_at = ? WHERE id = ?",
            (status, now, run_id),
        )
        return
    conn.execute(
        "UPDATE abtest_runs SET status = ?, error = ?, completed_at = ? WHERE id = ?",
        (status, error, now, run_id),
    )


def get_abtest_run(conn: Any, run_id: str) -> dict[str, object] | None:
    row = conn.execute(
        "SELECT id, user_id, topic_id, status, error FROM abtest_runs WHERE id = ?",
        (run_id,),
    ).fetchone()
    if not row:
        return None
    return {
        "id": row[0],
        "user_id": row[1],
        "topic_id": row[2],
        "status": row[3],
        "error": row[4],
    }


def record_provider_call(
    conn: Any,
    *,
    user_id: str,
    purpose: str,
    provider: str,
    model: str,
    status: str = "ok",
    cost_estimate_credits: float = 0.0,
    started_at: datetime | None = None,
) -> str:
    call_id = str(uuid.uuid4())
    conn.execute(
        """
        INSERT INTO provider_calls
            (id, user_id, purpose, provider, model, status, cost_estimate_credits, started_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            call_id,
            user_id,
            purpose,
            provider,
            model,
            status,
            float(cost_estimate_credits),
            isoformat_utc(started_at) if started_at else utc_now_iso(),
        ),
    )
    return call_id


def _row_to_topic(row: tuple) -> Topic:
    (
        topic_id,
        user_id,
        name,
        enabled,
        interval_minutes,
        mode,
        depth,
        cursor_end,
    ) = row
    return Topic(
        id=topic_id,
        user_id=user_id,
        name=name,
        digest_schedule_enabled=bool(enabled),
        digest_interval_minutes=int(interval_minutes),
        digest_mode=mode,
        digest_depth=int(depth),
        digest_cursor_end=parse_iso(cursor_end) if cursor_end else None,
    )


def _loads(value: str | None) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return None
