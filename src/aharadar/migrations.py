from __future__ import annotations

import logging
from typing import Any, Callable

from .utils import utc_now_iso

Migration = Callable[[Any], None]


def apply_migrations(conn: Any) -> None:
    # DDL below stays within the subset shared by SQLite and Postgres.
    logger = logging.getLogger("aharadar.migrations")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    with conn.transaction():
        applied = {
            row[0]
            for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
        }
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)


def _migration_initial_schema(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            email TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS topics (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL REFERENCES users(id),
            name TEXT NOT NULL,
            digest_schedule_enabled INTEGER NOT NULL DEFAULT 1,
            digest_interval_minutes INTEGER NOT NULL DEFAULT 1440,
            digest_mode TEXT NOT NULL DEFAULT 'normal',
            digest_depth INTEGER NOT NULL DEFAULT 50,
            digest_cursor_end TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_topics_user ON topics(user_id)")


def _migration_jobs_table(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            queue TEXT NOT NULL,
            name TEXT NOT NULL,
            status TEXT NOT NULL,
            job_trigger TEXT NOT NULL DEFAULT 'manual',
            group_key TEXT NULL,
            payload_json TEXT NULL,
            result_json TEXT NULL,
            priority INTEGER NOT NULL DEFAULT 0,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 1,
            backoff_seconds INTEGER NOT NULL DEFAULT 0,
            keep_completed INTEGER NOT NULL DEFAULT -1,
            keep_failed INTEGER NOT NULL DEFAULT -1,
            requested_at TEXT NOT NULL,
            not_before TEXT NULL,
            started_at TEXT NULL,
            finished_at TEXT NULL,
            locked_by TEXT NULL,
            locked_at TEXT NULL,
            error TEXT NULL,
            seq INTEGER NOT NULL DEFAULT 0
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(queue, status, priority, requested_at, seq)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_group ON jobs(queue, group_key, status)")


def _migration_budget_tables(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS provider_calls (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            purpose TEXT NOT NULL,
            provider TEXT NOT NULL,
            model TEXT NOT NULL,
            status TEXT NOT NULL,
            cost_estimate_credits REAL NOT NULL DEFAULT 0,
            started_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_provider_calls_user ON provider_calls(user_id, started_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS budget_resets (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            period TEXT NOT NULL,
            credits_at_reset REAL NOT NULL,
            reset_at TEXT NOT NULL
        )
        """
    )


def _migration_output_records(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS catchup_packs (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            topic_id TEXT NOT NULL,
            scope_hash TEXT NOT NULL,
            status TEXT NOT NULL,
            meta_json TEXT NULL,
            output_json TEXT NULL,
            error TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(user_id, scope_hash)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS aggregate_summaries (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            scope_type TEXT NOT NULL,
            scope_hash TEXT NOT NULL,
            digest_id TEXT NULL,
            topic_id TEXT NULL,
            status TEXT NOT NULL,
            summary_json TEXT NULL,
            error TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(user_id, scope_hash)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS abtest_runs (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            topic_id TEXT NOT NULL,
            window_start TEXT NOT NULL,
            window_end TEXT NOT NULL,
            status TEXT NOT NULL,
            config_json TEXT NULL,
            error TEXT NULL,
            created_at TEXT NOT NULL,
            started_at TEXT NULL,
            completed_at TEXT NULL
        )
        """
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_jobs_table", _migration_jobs_table),
        ("003_budget_tables", _migration_budget_tables),
        ("004_output_records", _migration_output_records),
    ]
