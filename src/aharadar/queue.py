from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from .config import QueueConfig
from .models import (
    JOB_ACTIVE,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_QUEUED,
    TRIGGER_MANUAL,
    TRIGGER_SCHEDULED,
    Job,
)
from .storage import delete_setting, get_setting, set_setting
from .utils import isoformat_utc, json_dumps, log_event, parse_iso, utc_now

EMERGENCY_STOP_KEY = "pipeline.emergency_stop"

RETRYING = "retrying"
FAILED = "failed"

_JOB_COLUMNS = """
    id, queue, name, status, job_trigger, group_key, payload_json, result_json, priority,
    attempts, max_attempts, backoff_seconds, requested_at, not_before, started_at,
    finished_at, locked_by, locked_at, error
"""


def retention_bound(value: bool | int) -> int:
    """Stored retention: -1 keeps everything, 0 removes at once, N keeps the last N."""
    if value is True:
        return 0
    if value is False:
        return -1
    if value < 0:
        raise ValueError("retention must be a non-negative job count")
    return int(value)


class JobQueue:
    def __init__(
        self,
        conn: Any,
        config: QueueConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.conn = conn
        self.config = config or QueueConfig()
        self.name = self.config.name
        self.clock = clock
        self.logger = logging.getLogger("aharadar.queue")

    def add(self, name: str, payload: dict[str, object], *, job_id: str, **options: Any) -> Job:
        job, _ = self.enqueue(name, payload, job_id=job_id, **options)
        return job

    def enqueue(
        self,
        name: str,
        payload: dict[str, object],
        *,
        job_id: str,
        trigger: str = TRIGGER_MANUAL,
        remove_on_complete: bool | int = False,
        remove_on_fail: bool | int = False,
        attempts: int | None = None,
        backoff_seconds: int | None = None,
        priority: int = 0,
        delay_seconds: float = 0,
        group_key: str | None = None,
    ) -> tuple[Job, bool]:
        """Insert a job unless one with ``job_id`` already exists.

        Returns the stored job and whether this call created it.
        """
        now = self.clock()
        attempts = self.config.attempts if attempts is None else attempts
        backoff_seconds = self.config.backoff_seconds if backoff_seconds is None else backoff_seconds
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        not_before = isoformat_utc(now + timedelta(seconds=delay_seconds)) if delay_seconds > 0 else None
        cursor = self.conn.execute(
            """
            INSERT OR IGNORE INTO jobs
                (id, queue, name, status, job_trigger, group_key, payload_json, priority,
                 attempts, max_attempts, backoff_seconds, keep_completed, keep_failed,
                 requested_at, not_before, seq)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?,
                    (SELECT COALESCE(MAX(seq), 0) + 1 FROM jobs))
            """,
            (
                job_id,
                self.name,
                name,
                JOB_QUEUED,
                trigger,
                group_key,
                json_dumps(payload),
                priority,
                attempts,
                backoff_seconds,
                retention_bound(remove_on_complete),
                retention_bound(remove_on_fail),
                isoformat_utc(now),
                not_before,
            ),
        )
        inserted = cursor.rowcount == 1
        job = self.get(job_id)
        if job is None:
            raise RuntimeError(f"job {job_id} missing after insert")
        log_event(
            self.logger,
            logging.INFO if inserted else logging.DEBUG,
            "job_enqueued" if inserted else "job_duplicate",
            job_id=job_id,
            name=name,
            status=job.status,
        )
        return job, inserted

    def get(self, job_id: str) -> Job | None:
        row = self.conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ? AND queue = ?",
            (job_id, self.name),
        ).fetchone()
        return _row_to_job(row) if row else None

    def list_jobs(self, status: str | None = None, limit: int = 50) -> list[Job]:
        if status:
            rows = self.conn.execute(
                f"""
                SELECT {_JOB_COLUMNS} FROM jobs
                WHERE queue = ? AND status = ?
                ORDER BY requested_at DESC, seq DESC
                LIMIT ?
                """,
                (self.name, status, limit),
            ).fetchall()
        else:
            rows = self.conn.execute(
                f"""
                SELECT {_JOB_COLUMNS} FROM jobs
                WHERE queue = ?
                ORDER BY requested_at DESC, seq DESC
                LIMIT ?
                """,
                (self.name, limit),
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    def claim_next(self, worker_id: str) -> Job | None:
        if self.is_paused():
            return None
        now = self.clock()
        now_iso = isoformat_utc(now)
        lock_clause = " FOR UPDATE SKIP LOCKED" if self.conn.backend == "postgres" else ""
        with self.conn.transaction():
            self._requeue_stalled(now)
            row = self.conn.execute(
                f"""
                SELECT id FROM jobs
                WHERE queue = ? AND status = ? AND (not_before IS NULL OR not_before <= ?)
                ORDER BY priority ASC, requested_at ASC, seq ASC
                LIMIT 1{lock_clause}
                """,
                (self.name, JOB_QUEUED, now_iso),
            ).fetchone()
            if not row:
                return None
            job_id = row[0]
            cursor = self.conn.execute(
                """
                UPDATE jobs
                SET status = ?, attempts = attempts + 1, started_at = ?, locked_by = ?,
                    locked_at = ?, not_before = NULL
                WHERE id = ? AND status = ?
                """,
                (JOB_ACTIVE, now_iso, worker_id, now_iso, job_id, JOB_QUEUED),
            )
            if cursor.rowcount != 1:
                return None
        return self.get(job_id)

    def complete(self, job_id: str, result: dict[str, object] | None = None) -> bool:
        now_iso = isoformat_utc(self.clock())
        with self.conn.transaction():
            row = self.conn.execute(
                "SELECT keep_completed FROM jobs WHERE id = ? AND status = ?",
                (job_id, JOB_ACTIVE),
            ).fetchone()
            if not row:
                return False
            self.conn.execute(
                """
                UPDATE jobs
                SET status = ?, finished_at = ?, result_json = ?, error = NULL,
                    locked_by = NULL, locked_at = NULL
                WHERE id = ?
                """,
                (JOB_COMPLETED, now_iso, json_dumps(result) if result is not None else None, job_id),
            )
            self._trim(job_id, JOB_COMPLETED, int(row[0]))
        return True

    def fail(self, job_id: str, error: str) -> str | None:
        """Record a failed attempt.

        Returns ``"retrying"`` when the job was re-queued with backoff,
        ``"failed"`` when it is terminal, or None if the job was not active.
        """
        now = self.clock()
        with self.conn.transaction():
            row = self.conn.execute(
                """
                SELECT attempts, max_attempts, backoff_seconds, keep_failed
                FROM jobs WHERE id = ? AND status = ?
                """,
                (job_id, JOB_ACTIVE),
            ).fetchone()
            if not row:
                return None
            attempts, max_attempts, backoff_seconds, keep_failed = row
            if attempts < max_attempts:
                delay = backoff_delay(int(backoff_seconds), int(attempts))
                self.conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?, not_before = ?, error = ?, started_at = NULL,
                        locked_by = NULL, locked_at = NULL
                    WHERE id = ?
                    """,
                    (
                        JOB_QUEUED,
                        isoformat_utc(now + timedelta(seconds=delay)),
                        error,
                        job_id,
                    ),
                )
                outcome = RETRYING
            else:
                self.conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?, finished_at = ?, error = ?, locked_by = NULL, locked_at = NULL
                    WHERE id = ?
                    """,
                    (JOB_FAILED, isoformat_utc(now), error, job_id),
                )
                self._trim(job_id, JOB_FAILED, int(keep_failed))
                outcome = FAILED
        return outcome

    def counts(self) -> dict[str, int]:
        now_iso = isoformat_utc(self.clock())
        rows = self.conn.execute(
            """
            SELECT status,
                   CASE WHEN not_before IS NOT NULL AND not_before > ? THEN 1 ELSE 0 END AS delayed,
                   COUNT(*)
            FROM jobs
            WHERE queue = ?
            GROUP BY status, delayed
            """,
            (now_iso, self.name),
        ).fetchall()
        counts = {"waiting": 0, "active": 0, "delayed": 0, "completed": 0, "failed": 0}
        for status, delayed, count in rows:
            if status == JOB_QUEUED:
                counts["delayed" if delayed else "waiting"] += int(count)
            elif status in counts:
                counts[status] += int(count)
        return counts

    def depth(self) -> int:
        counts = self.counts()
        return counts["waiting"] + counts["active"] + counts["delayed"]

    def pending_window_end(self, group_key: str) -> datetime | None:
        """Latest window end among queued or active scheduled window jobs for a group."""
        rows = self.conn.execute(
            """
            SELECT payload_json FROM jobs
            WHERE queue = ? AND group_key = ? AND job_trigger = ?
              AND name = 'run_window' AND status IN (?, ?)
            """,
            (self.name, group_key, TRIGGER_SCHEDULED, JOB_QUEUED, JOB_ACTIVE),
        ).fetchall()
        latest: datetime | None = None
        for (payload_json,) in rows:
            payload = _loads(payload_json) or {}
            value = payload.get("window_end")
            if not isinstance(value, str):
                continue
            window_end = parse_iso(value)
            if latest is None or window_end > latest:
                latest = window_end
        return latest

    def pause(self) -> None:
        set_setting(self.conn, self._paused_key, True)
        log_event(self.logger, logging.INFO, "queue_paused", queue=self.name)

    def resume(self) -> None:
        delete_setting(self.conn, self._paused_key)
        log_event(self.logger, logging.INFO, "queue_resumed", queue=self.name)

    def is_paused(self) -> bool:
        return bool(get_setting(self.conn, self._paused_key, False))

    def drain(self) -> int:
        cursor = self.conn.execute(
            "DELETE FROM jobs WHERE queue = ? AND status = ?", (self.name, JOB_QUEUED)
        )
        removed = max(cursor.rowcount, 0)
        log_event(self.logger, logging.INFO, "queue_drained", queue=self.name, removed=removed)
        return removed

    def remove(self, job_id: str) -> bool:
        cursor = self.conn.execute(
            "DELETE FROM jobs WHERE id = ? AND queue = ? AND status <> ?",
            (job_id, self.name, JOB_ACTIVE),
        )
        return cursor.rowcount == 1

    def obliterate(self) -> int:
        cursor = self.conn.execute("DELETE FROM jobs WHERE queue = ?", (self.name,))
        delete_setting(self.conn, self._paused_key)
        removed = max(cursor.rowcount, 0)
        log_event(self.logger, logging.WARNING, "queue_obliterated", queue=self.name, removed=removed)
        return removed

    def set_emergency_stop(self) -> None:
        set_setting(self.conn, EMERGENCY_STOP_KEY, True)
        log_event(self.logger, logging.WARNING, "emergency_stop_set")

    def clear_emergency_stop(self) -> None:
        delete_setting(self.conn, EMERGENCY_STOP_KEY)
        log_event(self.logger, logging.INFO, "emergency_stop_cleared")

    def is_emergency_stop_active(self) -> bool:
        return bool(get_setting(self.conn, EMERGENCY_STOP_KEY, False))

    def close(self) -> None:
        self.conn.close()

    @property
    def _paused_key(self) -> str:
        return f"queue.{self.name}.paused"

    def _requeue_stalled(self, now: datetime) -> None:
        """Recover jobs whose lock expired; a stall counts as a spent attempt."""
        cutoff = isoformat_utc(now - timedelta(seconds=self.config.lock_timeout_seconds))
        rows = self.conn.execute(
            """
            SELECT id, attempts, max_attempts, keep_failed FROM jobs
            WHERE queue = ? AND status = ? AND locked_at IS NOT NULL AND locked_at < ?
            """,
            (self.name, JOB_ACTIVE, cutoff),
        ).fetchall()
        requeued = []
        failed = []
        for job_id, attempts, max_attempts, keep_failed in rows:
            if int(attempts) < int(max_attempts):
                self.conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?, locked_by = NULL, locked_at = NULL, started_at = NULL,
                        error = 'stale_lock_requeued'
                    WHERE id = ?
                    """,
                    (JOB_QUEUED, job_id),
                )
                requeued.append(job_id)
            else:
                self.conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?, finished_at = ?, error = 'stalled',
                        locked_by = NULL, locked_at = NULL
                    WHERE id = ?
                    """,
                    (JOB_FAILED, isoformat_utc(now), job_id),
                )
                self._trim(job_id, JOB_FAILED, int(keep_failed))
                failed.append(job_id)
        if requeued:
            log_event(
                self.logger,
                logging.WARNING,
                "stalled_jobs_requeued",
                queue=self.name,
                count=len(requeued),
            )
        if failed:
            log_event(
                self.logger,
                logging.ERROR,
                "stalled_jobs_failed",
                queue=self.name,
                count=len(failed),
                job_ids=",".join(failed),
            )

    def _trim(self, job_id: str, status: str, keep: int) -> None:
        if keep < 0:
            return
        if keep == 0:
            self.conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            return
        self.conn.execute(
            """
            DELETE FROM jobs
            WHERE queue = ? AND status = ? AND id NOT IN (
                SELECT id FROM jobs
                WHERE queue = ? AND status = ?
                ORDER BY finished_at DESC, seq DESC
                LIMIT ?
            )
            """,
            (self.name, status, self.name, status, keep),
        )


def backoff_delay(backoff_seconds: int, attempt: int) -> int:
    return backoff_seconds * (2 ** max(attempt - 1, 0))


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        queue,
        name,
        status,
        trigger,
        group_key,
        payload_json,
        result_json,
        priority,
        attempts,
        max_attempts,
        backoff_seconds,
        requested_at,
        not_before,
        started_at,
        finished_at,
        locked_by,
        locked_at,
        error,
    ) = row
    return Job(
        id=job_id,
        queue=queue,
        name=name,
        status=status,
        trigger=trigger,
        group_key=group_key,
        payload=_loads(payload_json) or {},
        result=_loads(result_json),
        priority=int(priority),
        attempts=int(attempts),
        max_attempts=int(max_attempts),
        backoff_seconds=int(backoff_seconds),
        requested_at=requested_at,
        not_before=not_before,
        started_at=started_at,
        finished_at=finished_at,
        locked_by=locked_by,
        locked_at=locked_at,
        error=error,
    )


def _loads(value: str | None) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return None
