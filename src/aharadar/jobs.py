from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator

from .models import RUN_MODES, TRIGGER_MANUAL
from .utils import ensure_utc, isoformat_utc

RUN_WINDOW = "run_window"
RUN_ABTEST = "run_abtest"
RUN_AGGREGATE_SUMMARY = "run_aggregate_summary"
RUN_CATCHUP_PACK = "run_catchup_pack"
JOB_NAMES = (RUN_WINDOW, RUN_ABTEST, RUN_AGGREGATE_SUMMARY, RUN_CATCHUP_PACK)

PROVIDERS = ("openai", "anthropic", "claude-subscription", "codex-subscription")
ProviderName = Literal["openai", "anthropic", "claude-subscription", "codex-subscription"]

JOB_ID_HASH_LENGTH = 32


class ProviderOverride(BaseModel):
    provider: Optional[ProviderName] = None
    model: Optional[str] = None


class _WindowedPayload(BaseModel):
    window_start: datetime
    window_end: datetime

    @field_validator("window_start", "window_end")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_order(self):
        if self.window_start >= self.window_end:
            raise ValueError("window_start must be before window_end")
        return self


class RunWindowPayload(_WindowedPayload):
    name: Literal["run_window"] = RUN_WINDOW
    user_id: str
    topic_id: str
    mode: str = "normal"
    trigger: Literal["scheduled", "manual"] = TRIGGER_MANUAL
    provider_override: Optional[ProviderOverride] = None

    @field_validator("mode")
    @classmethod
    def _check_mode(cls, value: str) -> str:
        if value not in RUN_MODES:
            raise ValueError(f"mode must be one of {', '.join(RUN_MODES)}")
        return value


class AbtestVariant(BaseModel):
    name: str
    provider: ProviderName
    model: str
    reasoning_effort: Optional[Literal["none", "low", "medium", "high"]] = None
    max_output_tokens: Optional[int] = None


class RunAbtestPayload(_WindowedPayload):
    name: Literal["run_abtest"] = RUN_ABTEST
    run_id: str
    user_id: str
    topic_id: str
    variants: list[AbtestVariant] = Field(min_length=1)
    max_items: Optional[int] = None


class RunAggregateSummaryPayload(BaseModel):
    name: Literal["run_aggregate_summary"] = RUN_AGGREGATE_SUMMARY
    scope_type: Literal["digest", "inbox", "range", "custom"]
    scope_hash: str
    user_id: Optional[str] = None
    digest_id: Optional[str] = None
    topic_id: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    view: Optional[str] = None


class RunCatchupPackPayload(BaseModel):
    name: Literal["run_catchup_pack"] = RUN_CATCHUP_PACK
    scope_hash: str
    user_id: Optional[str] = None
    topic_id: Optional[str] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    timeframe_days: int = 7
    time_budget_minutes: int = 45


JobPayload = Annotated[
    Union[
        RunWindowPayload,
        RunAbtestPayload,
        RunAggregateSummaryPayload,
        RunCatchupPackPayload,
    ],
    Field(discriminator="name"),
]

_PAYLOAD_ADAPTER: TypeAdapter = TypeAdapter(JobPayload)


def parse_payload(name: str, data: dict[str, object]) -> JobPayload:
    """Validate a stored payload against the model registered for ``name``.

    Raises ``ValueError`` for job names no handler knows about.
    """
    if name not in JOB_NAMES:
        raise ValueError(f"unsupported job: {name}")
    return _PAYLOAD_ADAPTER.validate_python({**data, "name": name})


def payload_to_dict(payload: BaseModel) -> dict[str, object]:
    return payload.model_dump(mode="json", exclude_none=True)


def compute_job_id(name: str, *parts: object) -> str:
    """Content-addressed job ID: identical inputs always yield the same ID."""
    normalized = [isoformat_utc(part) if isinstance(part, datetime) else part for part in parts]
    material = json.dumps([name, *normalized], separators=(",", ":"), default=str)
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()
    return f"{name}_{digest[:JOB_ID_HASH_LENGTH]}"


def run_window_job_id(
    user_id: str, topic_id: str, window_start: datetime, window_end: datetime, mode: str
) -> str:
    return compute_job_id(RUN_WINDOW, user_id, topic_id, window_start, window_end, mode)


def job_id_for(payload: JobPayload) -> str:
    if isinstance(payload, RunWindowPayload):
        return run_window_job_id(
            payload.user_id,
            payload.topic_id,
            payload.window_start,
            payload.window_end,
            payload.mode,
        )
    if isinstance(payload, RunAbtestPayload):
        return compute_job_id(RUN_ABTEST, payload.run_id)
    if isinstance(payload, RunAggregateSummaryPayload):
        return compute_job_id(RUN_AGGREGATE_SUMMARY, payload.user_id, payload.scope_hash)
    if isinstance(payload, RunCatchupPackPayload):
        return compute_job_id(RUN_CATCHUP_PACK, payload.user_id, payload.scope_hash)
    raise ValueError(f"unsupported job payload: {type(payload).__name__}")


def compute_scope_hash(**scope: object) -> str:
    normalized = {
        key: isoformat_utc(value) if isinstance(value, datetime) else value
        for key, value in scope.items()
    }
    material = json.dumps(normalized, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(material.encode("utf-8")).hexdigest()
