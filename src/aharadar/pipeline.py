from __future__ import annotations

import importlib
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Protocol

from .budgets import CreditsStatus, compute_credits_status, log_credits_warning
from .jobs import AbtestVariant
from .llm.settings import LlmSettings
from .storage import (
    create_abtest_run,
    update_abtest_run,
    upsert_aggregate_summary,
    upsert_catchup_pack,
)
from .utils import log_event

logger = logging.getLogger("aharadar.pipeline")


@dataclass(frozen=True)
class BudgetParams:
    monthly_credits: int
    daily_throttle_credits: int | None = None


@dataclass(frozen=True)
class RunWindowParams:
    user_id: str
    topic_id: str
    window_start: datetime
    window_end: datetime
    mode: str
    budget: BudgetParams
    llm: LlmSettings


@dataclass(frozen=True)
class SourceIngestResult:
    source_id: str
    source_type: str
    status: str
    fetched: int = 0
    upserted: int = 0


@dataclass(frozen=True)
class LlmCallRecord:
    provider: str
    model: str
    purpose: str
    status: str
    duration_seconds: float = 0.0
    credits: float = 0.0


@dataclass(frozen=True)
class PipelineRunResult:
    user_id: str
    topic_id: str
    window_start: datetime
    window_end: datetime
    ingested: int = 0
    upserted: int = 0
    embedded: int = 0
    deduped: int = 0
    clustered: int = 0
    digest_items: int = 0
    per_source: list[SourceIngestResult] = field(default_factory=list)
    llm_calls: list[LlmCallRecord] = field(default_factory=list)
    credits_status: CreditsStatus | None = None

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class AbtestParams:
    run_id: str
    user_id: str
    topic_id: str
    window_start: datetime
    window_end: datetime
    variants: list[AbtestVariant]
    max_items: int | None = None


@dataclass(frozen=True)
class AbtestResult:
    run_id: str
    status: str
    item_count: int = 0
    variant_counts: dict[str, int] = field(default_factory=dict)
    error: str | None = None


@dataclass(frozen=True)
class AggregateSummaryParams:
    user_id: str
    scope_type: str
    scope_hash: str
    llm: LlmSettings
    digest_id: str | None = None
    topic_id: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    view: str | None = None


@dataclass(frozen=True)
class AggregateSummaryResult:
    summary_id: str
    status: str
    item_count: int = 0


@dataclass(frozen=True)
class CatchupPackParams:
    user_id: str
    topic_id: str
    scope_hash: str
    window_start: datetime | None
    window_end: datetime | None
    timeframe_days: int
    time_budget_minutes: int
    tier: str
    llm: LlmSettings


@dataclass(frozen=True)
class CatchupPackResult:
    pack_id: str
    status: str
    item_count: int = 0


class PipelineCapability(Protocol):
    def run_pipeline_once(self, conn: Any, params: RunWindowParams) -> PipelineRunResult:
        ...

    def run_abtest_once(self, conn: Any, params: AbtestParams) -> AbtestResult:
        ...

    def generate_aggregate_summary(
        self, conn: Any, params: AggregateSummaryParams
    ) -> AggregateSummaryResult:
        ...

    def generate_catchup_pack(self, conn: Any, params: CatchupPackParams) -> CatchupPackResult:
        ...


class DryRunPipeline:
    """Pipeline that runs no stages and reports empty results."""

    def run_pipeline_once(self, conn: Any, params: RunWindowParams) -> PipelineRunResult:
        log_event(
            logger,
            logging.INFO,
            "dry_run_window",
            topic_id=params.topic_id,
            mode=params.mode,
            provider=params.llm.provider,
        )
        credits = compute_credits_status(
            conn,
            params.user_id,
            params.budget.monthly_credits,
            params.budget.daily_throttle_credits,
            params.window_end,
        )
        log_credits_warning(credits)
        return PipelineRunResult(
            user_id=params.user_id,
            topic_id=params.topic_id,
            window_start=params.window_start,
            window_end=params.window_end,
            credits_status=credits,
        )

    def run_abtest_once(self, conn: Any, params: AbtestParams) -> AbtestResult:
        create_abtest_run(
            conn,
            user_id=params.user_id,
            topic_id=params.topic_id,
            window_start=params.window_start,
            window_end=params.window_end,
            run_id=params.run_id,
        )
        update_abtest_run(conn, params.run_id, "running")
        update_abtest_run(conn, params.run_id, "completed")
        return AbtestResult(
            run_id=params.run_id,
            status="completed",
            variant_counts={variant.name: 0 for variant in params.variants},
        )

    def generate_aggregate_summary(
        self, conn: Any, params: AggregateSummaryParams
    ) -> AggregateSummaryResult:
        summary_id = upsert_aggregate_summary(
            conn,
            user_id=params.user_id,
            scope_type=params.scope_type,
            scope_hash=params.scope_hash,
            digest_id=params.digest_id,
            topic_id=params.topic_id,
            status="complete",
            summary={"items": []},
        )
        return AggregateSummaryResult(summary_id=summary_id, status="complete")

    def generate_catchup_pack(self, conn: Any, params: CatchupPackParams) -> CatchupPackResult:
        pack_id = upsert_catchup_pack(
            conn,
            user_id=params.user_id,
            topic_id=params.topic_id,
            scope_hash=params.scope_hash,
            status="complete",
            meta={
                "timeframe_days": params.timeframe_days,
                "time_budget_minutes": params.time_budget_minutes,
                "tier": params.tier,
            },
            output={"tiers": {"must_read": [], "worth_scanning": [], "headlines": []}},
        )
        return CatchupPackResult(pack_id=pack_id, status="complete")


def load_pipeline(target: str | None) -> PipelineCapability:
    """Resolve ``dry_run`` or a ``module:attr`` import path to a pipeline."""
    if not target or target == "dry_run":
        return DryRunPipeline()
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"pipeline must be 'dry_run' or 'module:attr', got {target!r}")
    module = importlib.import_module(module_name)
    try:
        obj = getattr(module, attr)
    except AttributeError as exc:
        raise ValueError(f"pipeline {target!r} not found") from exc
    if isinstance(obj, type) or (callable(obj) and not hasattr(obj, "run_pipeline_once")):
        obj = obj()
    for method in (
        "run_pipeline_once",
        "run_abtest_once",
        "generate_aggregate_summary",
        "generate_catchup_pack",
    ):
        if not callable(getattr(obj, method, None)):
            raise ValueError(f"pipeline {target!r} is missing {method}()")
    return obj
