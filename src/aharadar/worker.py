from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
import time
from datetime import datetime
from typing import Any, Callable

from .budgets import compute_credits_status, log_credits_warning, tier_for_credits
from .config import Config, ConfigError, load_config, load_dotenv_files
from .jobs import (
    RunAbtestPayload,
    RunAggregateSummaryPayload,
    RunCatchupPackPayload,
    RunWindowPayload,
    parse_payload,
)
from .llm.settings import apply_provider_override, load_llm_settings
from .metrics import MetricsServer, WorkerMetrics
from .models import TRIGGER_SCHEDULED, Job
from .pipeline import (
    AbtestParams,
    AggregateSummaryParams,
    BudgetParams,
    CatchupPackParams,
    PipelineCapability,
    PipelineRunResult,
    RunWindowParams,
    load_pipeline,
)
from .queue import RETRYING, JobQueue
from .scheduler import Scheduler
from .storage import (
    get_first_user,
    get_topic,
    get_user,
    init_db,
    list_schedulable_topics,
    update_digest_cursor_end,
    upsert_catchup_pack,
)
from .utils import configure_logging, isoformat_utc, log_event, short_id, utc_now


class FeatureDisabledError(RuntimeError):
    pass


class AbtestFailedError(RuntimeError):
    pass


def _setup_logging() -> logging.Logger:
    return configure_logging("aharadar.worker")


class PipelineWorker:
    """Single consumer of the pipeline queue.

    Jobs are claimed one at a time; ``process`` routes each job to its handler
    and raises on failure so the queue can schedule a retry.
    """

    def __init__(
        self,
        conn: Any,
        queue: JobQueue,
        pipeline: PipelineCapability,
        config: Config,
        metrics: WorkerMetrics | None = None,
        worker_id: str = "worker",
        clock: Callable[[], datetime] = utc_now,
        on_emergency_stop: Callable[[], None] | None = None,
    ) -> None:
        self.conn = conn
        self.queue = queue
        self.pipeline = pipeline
        self.config = config
        self.metrics = metrics or WorkerMetrics()
        self.worker_id = worker_id
        self.clock = clock
        self.on_emergency_stop = on_emergency_stop
        self.logger = logging.getLogger("aharadar.worker")
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def process(self, job: Job) -> dict[str, object]:
        payload = parse_payload(job.name, job.payload)
        if isinstance(payload, RunWindowPayload):
            return self._run_window(job, payload)
        if isinstance(payload, RunAbtestPayload):
            return self._run_abtest(job, payload)
        if isinstance(payload, RunAggregateSummaryPayload):
            return self._run_aggregate_summary(job, payload)
        if isinstance(payload, RunCatchupPackPayload):
            return self._run_catchup_pack(job, payload)
        raise ValueError(f"unsupported job {job.name}")

    def run_next(self) -> bool:
        """Claim and process one job. Returns False when nothing was processed."""
        if self.queue.is_emergency_stop_active():
            log_event(self.logger, logging.WARNING, "emergency_stop_active", worker_id=self.worker_id)
            self._stop.set()
            if self.on_emergency_stop:
                self.on_emergency_stop()
            return False
        job = self.queue.claim_next(self.worker_id)
        if not job:
            return False
        log_event(
            self.logger,
            logging.INFO,
            "job_claimed",
            job_id=job.id,
            name=job.name,
            attempt=job.attempts,
            trigger=job.trigger,
        )
        try:
            result = self.process(job)
        except Exception as exc:  # noqa: BLE001
            outcome = self.queue.fail(job.id, str(exc))
            if outcome == RETRYING:
                log_event(
                    self.logger,
                    logging.WARNING,
                    "job_retry_scheduled",
                    job_id=job.id,
                    attempt=job.attempts,
                    max_attempts=job.max_attempts,
                    error=str(exc),
                )
            else:
                log_event(
                    self.logger,
                    logging.ERROR,
                    "job_failed",
                    job_id=job.id,
                    name=job.name,
                    attempt=job.attempts,
                    error=str(exc),
                )
            return True
        if self.queue.complete(job.id, result):
            log_event(
                self.logger,
                logging.INFO,
                "job_completed",
                job_id=job.id,
                name=job.name,
                status=result.get("status"),
            )
        else:
            log_event(self.logger, logging.ERROR, "job_complete_failed", job_id=job.id)
        return True

    def run_until_empty(self) -> int:
        processed = 0
        while not self._stop.is_set() and self.run_next():
            processed += 1
        return processed

    def run_forever(self) -> None:
        poll = self.config.worker.poll_seconds
        while not self._stop.is_set():
            try:
                processed = self.run_next()
            except Exception as exc:  # noqa: BLE001
                log_event(self.logger, logging.ERROR, "worker_loop_error", error=str(exc))
                processed = False
            if not processed:
                self._stop.wait(poll)

    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="worker", daemon=True)
        self._thread.start()
        log_event(self.logger, logging.INFO, "worker_started", worker_id=self.worker_id)

    def close(self, grace_seconds: float | None = None) -> bool:
        """Stop claiming and wait for the in-flight job. Returns False on timeout."""
        self._stop.set()
        grace = self.config.worker.close_grace_seconds if grace_seconds is None else grace_seconds
        finished = True
        if self._thread:
            self._thread.join(grace)
            finished = not self._thread.is_alive()
            if not finished:
                log_event(self.logger, logging.WARNING, "worker_close_timeout", grace_seconds=grace)
            self._thread = None
        log_event(self.logger, logging.INFO, "worker_closed", worker_id=self.worker_id)
        return finished

    def _run_window(self, job: Job, payload: RunWindowPayload) -> dict[str, object]:
        llm = apply_provider_override(load_llm_settings(self.conn), payload.provider_override)
        params = RunWindowParams(
            user_id=payload.user_id,
            topic_id=payload.topic_id,
            window_start=payload.window_start,
            window_end=payload.window_end,
            mode=payload.mode,
            budget=BudgetParams(
                monthly_credits=self.config.budget.monthly_credits,
                daily_throttle_credits=self.config.budget.daily_throttle_credits,
            ),
            llm=llm,
        )
        log_event(
            self.logger,
            logging.INFO,
            "pipeline_run_started",
            job_id=job.id,
            topic_id=short_id(payload.topic_id),
            mode=payload.mode,
        )
        started = time.monotonic()
        try:
            result = self.pipeline.run_pipeline_once(self.conn, params)
        except Exception:
            self.metrics.record_pipeline_stage("full", "error", time.monotonic() - started)
            raise
        duration = time.monotonic() - started
        self._record_run(result, duration)

        cursor_advanced = False
        if payload.trigger == TRIGGER_SCHEDULED:
            cursor_advanced = self._advance_cursor(payload)
        output = result.to_dict()
        output["status"] = "ok"
        output["duration_seconds"] = round(duration, 3)
        output["cursor_advanced"] = cursor_advanced
        return output

    def _advance_cursor(self, payload: RunWindowPayload) -> bool:
        try:
            return update_digest_cursor_end(self.conn, payload.topic_id, payload.window_end)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self.logger,
                logging.WARNING,
                "cursor_update_failed",
                topic_id=short_id(payload.topic_id),
                window_end=isoformat_utc(payload.window_end),
                error=str(exc),
            )
            return False

    def _record_run(self, result: PipelineRunResult, duration: float) -> None:
        log_event(
            self.logger,
            logging.INFO,
            "pipeline_run_completed",
            topic_id=short_id(result.topic_id),
            window=f"{isoformat_utc(result.window_start)}..{isoformat_utc(result.window_end)}",
            ingest=result.upserted,
            embed=result.embedded,
            cluster=result.clustered,
            digest=result.digest_items,
            duration_seconds=round(duration, 3),
        )
        self.metrics.record_pipeline_stage("full", "success", duration)
        for source in result.per_source:
            if source.status == "ok":
                status = "success"
            elif source.status == "skipped":
                status = "skipped"
            else:
                status = "error"
            self.metrics.record_ingest_items(source.source_type, status, source.upserted)
        for call in result.llm_calls:
            self.metrics.record_llm_call(
                provider=call.provider,
                model=call.model,
                purpose=call.purpose,
                status="success" if call.status == "ok" else "error",
                duration_seconds=call.duration_seconds,
                credits=call.credits,
            )

    def _run_abtest(self, job: Job, payload: RunAbtestPayload) -> dict[str, object]:
        if not self.config.features.abtests_enabled:
            raise FeatureDisabledError("A/B tests are disabled; set ENABLE_ABTESTS=true")
        result = self.pipeline.run_abtest_once(
            self.conn,
            AbtestParams(
                run_id=payload.run_id,
                user_id=payload.user_id,
                topic_id=payload.topic_id,
                window_start=payload.window_start,
                window_end=payload.window_end,
                variants=list(payload.variants),
                max_items=payload.max_items,
            ),
        )
        if result.status == "failed":
            raise AbtestFailedError(result.error or f"abtest {payload.run_id} failed")
        log_event(
            self.logger,
            logging.INFO,
            "abtest_completed",
            run_id=short_id(payload.run_id),
            items=result.item_count,
            variants=len(result.variant_counts),
        )
        return {
            "status": result.status,
            "run_id": result.run_id,
            "item_count": result.item_count,
            "variant_counts": dict(result.variant_counts),
        }

    def _run_aggregate_summary(
        self, job: Job, payload: RunAggregateSummaryPayload
    ) -> dict[str, object]:
        user_id = payload.user_id
        if not user_id:
            user = get_first_user(self.conn)
            user_id = user.id if user else None
        if not user_id:
            log_event(self.logger, logging.WARNING, "aggregate_summary_skipped", reason="no_user")
            return {"status": "skipped", "reason": "no_user"}
        result = self.pipeline.generate_aggregate_summary(
            self.conn,
            AggregateSummaryParams(
                user_id=user_id,
                scope_type=payload.scope_type,
                scope_hash=payload.scope_hash,
                llm=load_llm_settings(self.conn),
                digest_id=payload.digest_id,
                topic_id=payload.topic_id,
                since=payload.since,
                until=payload.until,
                view=payload.view,
            ),
        )
        return {
            "status": result.status,
            "summary_id": result.summary_id,
            "scope_hash": payload.scope_hash,
            "item_count": result.item_count,
        }

    def _run_catchup_pack(self, job: Job, payload: RunCatchupPackPayload) -> dict[str, object]:
        user_id = payload.user_id
        if not user_id:
            user = get_first_user(self.conn)
            user_id = user.id if user else None
        if not user_id:
            log_event(self.logger, logging.WARNING, "catchup_pack_skipped", reason="no_user")
            return {"status": "skipped", "reason": "no_user"}
        if payload.user_id and get_user(self.conn, user_id) is None:
            log_event(
                self.logger,
                logging.WARNING,
                "catchup_pack_skipped",
                user_id=short_id(user_id),
                reason="user_not_found",
            )
            return {"status": "skipped", "reason": "user_not_found"}
        topic = get_topic(self.conn, payload.topic_id) if payload.topic_id else None
        if topic is None or topic.user_id != user_id:
            return self._skip_catchup_pack(
                user_id, payload, "topic_not_found", "Topic not found for this user"
            )

        window_end = payload.window_end or self.clock()
        status = compute_credits_status(
            self.conn,
            user_id,
            self.config.budget.monthly_credits,
            self.config.budget.daily_throttle_credits,
            window_end,
        )
        log_credits_warning(status)
        if not status.paid_calls_allowed:
            return self._skip_catchup_pack(
                user_id,
                payload,
                "credits_exhausted",
                "Credits exhausted; catch-up pack will be available after the budget resets",
            )
        tier = tier_for_credits(status, self.config.budget.default_tier)
        result = self.pipeline.generate_catchup_pack(
            self.conn,
            CatchupPackParams(
                user_id=user_id,
                topic_id=topic.id,
                scope_hash=payload.scope_hash,
                window_start=payload.window_start,
                window_end=payload.window_end,
                timeframe_days=payload.timeframe_days,
                time_budget_minutes=payload.time_budget_minutes,
                tier=tier,
                llm=load_llm_settings(self.conn),
            ),
        )
        return {
            "status": result.status,
            "pack_id": result.pack_id,
            "tier": tier,
            "item_count": result.item_count,
        }

    def _skip_catchup_pack(
        self, user_id: str, payload: RunCatchupPackPayload, reason: str, message: str
    ) -> dict[str, object]:
        pack_id = upsert_catchup_pack(
            self.conn,
            user_id=user_id,
            topic_id=payload.topic_id or "",
            scope_hash=payload.scope_hash,
            status="skipped",
            meta={
                "timeframe_days": payload.timeframe_days,
                "time_budget_minutes": payload.time_budget_minutes,
            },
            error=message,
        )
        log_event(
            self.logger,
            logging.INFO,
            "catchup_pack_skipped",
            pack_id=short_id(pack_id),
            reason=reason,
        )
        return {"status": "skipped", "reason": reason, "pack_id": pack_id}


class QueueDepthMonitor:
    def __init__(self, queue: JobQueue, metrics: WorkerMetrics, interval_seconds: float) -> None:
        self.queue = queue
        self.metrics = metrics
        self.interval_seconds = interval_seconds
        self.logger = logging.getLogger("aharadar.worker")
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def refresh(self) -> None:
        try:
            self.metrics.update_queue_depth(self.queue.name, self.queue.depth())
        except Exception as exc:  # noqa: BLE001
            log_event(self.logger, logging.WARNING, "queue_depth_refresh_failed", error=str(exc))

    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="queue-depth", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join()
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.refresh()


def _connect(config: Config):
    return init_db(config.database.state_db, config.database.url)


def run_once(config: Config, worker_id: str) -> int:
    """One scheduler tick, then drain the queue. Intended for cron-style runs."""
    logger = _setup_logging()
    conn = _connect(config)
    try:
        queue = JobQueue(conn, config.queue)
        scheduler = Scheduler(
            discover=lambda: list_schedulable_topics(conn),
            queue=queue,
            config=config.scheduler,
        )
        scheduler.tick()
        worker = PipelineWorker(
            conn, queue, load_pipeline(config.worker.pipeline), config, worker_id=worker_id
        )
        processed = worker.run_until_empty()
        log_event(logger, logging.INFO, "worker_once_completed", processed=processed)
    finally:
        conn.close()
    return 0


def run_service(config: Config, worker_id: str) -> int:
    logger = _setup_logging()
    pipeline = load_pipeline(config.worker.pipeline)
    metrics = WorkerMetrics()
    shutdown = threading.Event()

    scheduler_conn = _connect(config)
    worker_conn = _connect(config)
    depth_conn = _connect(config)
    scheduler_queue = JobQueue(scheduler_conn, config.queue)
    worker_queue = JobQueue(worker_conn, config.queue)
    depth_queue = JobQueue(depth_conn, config.queue)

    metrics_server = MetricsServer(metrics, config.worker.metrics_port)
    depth_monitor = QueueDepthMonitor(
        depth_queue, metrics, config.worker.queue_depth_interval_seconds
    )
    worker = PipelineWorker(
        worker_conn,
        worker_queue,
        pipeline,
        config,
        metrics=metrics,
        worker_id=worker_id,
        on_emergency_stop=shutdown.set,
    )
    scheduler = Scheduler(
        discover=lambda: list_schedulable_topics(scheduler_conn),
        queue=scheduler_queue,
        config=config.scheduler,
        after_tick=lambda: metrics.update_queue_depth(
            scheduler_queue.name, scheduler_queue.depth()
        ),
    )

    def _handle_signal(signum, _frame) -> None:
        log_event(logger, logging.INFO, "shutdown_signal", signal=signal.Signals(signum).name)
        shutdown.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    log_event(
        logger,
        logging.INFO,
        "worker_service_starting",
        worker_id=worker_id,
        window_mode=config.scheduler.window_mode,
        tick_minutes=config.scheduler.tick_minutes,
        metrics_port=config.worker.metrics_port,
    )
    metrics_server.start()
    depth_monitor.start()
    worker.start()
    scheduler.start()

    while not shutdown.wait(1.0):
        pass

    scheduler.stop()
    depth_monitor.stop()
    worker.close()
    metrics_server.close()
    for conn in (scheduler_conn, worker_conn, depth_conn):
        conn.close()
    log_event(logger, logging.INFO, "shutdown_complete")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="aharadar-worker")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one scheduler tick, process queued jobs and exit",
    )
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    parser.add_argument("--config", default=None, help="Optional YAML config file")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    load_dotenv_files()
    logger = _setup_logging()
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    if args.once:
        return run_once(config, args.worker_id)
    return run_service(config, args.worker_id)


if __name__ == "__main__":
    raise SystemExit(main())
