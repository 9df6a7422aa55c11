from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from aharadar.config import ENV_OVERRIDES


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for name in list(ENV_OVERRIDES) + ["AR_CONFIG_FILE", "AR_LOG_FILE", "AR_LOG_LEVELS"]:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock() -> Clock:
    return Clock(datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc))
