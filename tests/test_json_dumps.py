from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from uuid import UUID

import json
from pydantic import BaseModel

from aharadar.budgets import CreditsStatus
from aharadar.config import QueueConfig
from aharadar.queue import JobQueue
from aharadar.storage import init_db
from aharadar.utils import json_dumps


class Color(Enum):
    RED = "red"


@dataclass
class Payload:
    value: str


class PayloadModel(BaseModel):
    name: str


def _credits() -> CreditsStatus:
    return CreditsStatus(
        monthly_used=10.0,
        monthly_limit=100.0,
        monthly_remaining=90.0,
        daily_used=1.0,
        daily_limit=None,
        daily_remaining=None,
        paid_calls_allowed=True,
        warning_level="none",
    )


def test_json_dumps_handles_supported_types():
    payload = {
        "dataclass": Payload(value="ok"),
        "credits": _credits(),
        "enum": Color.RED,
        "datetime": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "date": date(2025, 1, 2),
        "path": Path("/tmp/aharadar"),
        "uuid": UUID("12345678-1234-5678-1234-567812345678"),
        "model": PayloadModel(name="example"),
        "set": {"a", "b"},
        "tuple": ("x", "y"),
    }
    encoded = json_dumps(payload)
    decoded = json.loads(encoded)
    assert decoded["dataclass"]["value"] == "ok"
    assert decoded["credits"]["monthly_remaining"] == 90.0
    assert decoded["enum"] == "red"
    assert decoded["datetime"] == "2025-01-01T00:00:00.000Z"
    assert decoded["date"] == "2025-01-02"
    assert decoded["path"] == "/tmp/aharadar"
    assert decoded["uuid"] == "12345678-1234-5678-1234-567812345678"
    assert decoded["model"]["name"] == "example"
    assert sorted(decoded["set"]) == ["a", "b"]
    assert decoded["tuple"] == ["x", "y"]


def test_job_result_serialization_handles_complex_types(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    queue = JobQueue(conn, QueueConfig())
    queue.add("run_window", {}, job_id="job-1")
    job = queue.claim_next("worker-1")
    assert job is not None
    result = {
        "credits_status": _credits(),
        "status": Color.RED,
        "when": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "path": Path("/tmp/aharadar"),
        "model": PayloadModel(name="example"),
        "tuple": ("x", "y"),
    }
    assert queue.complete(job.id, result) is True
    stored = queue.get(job.id)
    assert stored.result["credits_status"]["warning_level"] == "none"
    assert stored.result["when"] == "2025-01-01T00:00:00.000Z"
