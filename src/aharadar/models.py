from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

DIGEST_MODES = ("low", "normal", "high")
CATCH_UP_MODE = "catch_up"
RUN_MODES = DIGEST_MODES + (CATCH_UP_MODE,)

TRIGGER_SCHEDULED = "scheduled"
TRIGGER_MANUAL = "manual"
TRIGGERS = (TRIGGER_SCHEDULED, TRIGGER_MANUAL)

JOB_QUEUED = "queued"
JOB_ACTIVE = "active"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_STATUSES = (JOB_QUEUED, JOB_ACTIVE, JOB_COMPLETED, JOB_FAILED)


@dataclass(frozen=True)
class User:
    id: str
    email: str | None
    created_at: str


@dataclass(frozen=True)
class Topic:
    id: str
    user_id: str
    name: str
    digest_schedule_enabled: bool
    digest_interval_minutes: int
    digest_mode: str
    digest_depth: int
    digest_cursor_end: datetime | None


@dataclass(frozen=True)
class Window:
    window_start: datetime
    window_end: datetime
    mode: str

    def __post_init__(self) -> None:
        if self.window_start >= self.window_end:
            raise ValueError("window_start must be before window_end")


@dataclass(frozen=True)
class Job:
    id: str
    queue: str
    name: str
    status: str
    trigger: str
    group_key: str | None
    payload: dict[str, object]
    result: dict[str, object] | None
    priority: int
    attempts: int
    max_attempts: int
    backoff_seconds: int
    requested_at: str
    not_before: str | None
    started_at: str | None
    finished_at: str | None
    locked_by: str | None
    locked_at: str | None
    error: str | None
