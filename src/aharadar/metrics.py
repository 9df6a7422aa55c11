from __future__ import annotations

import logging
import threading

import uvicorn
from fastapi import FastAPI, Response
from fastapi.responses import PlainTextResponse
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from .utils import log_event

PIPELINE_DURATION_BUCKETS = [0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300]
LLM_DURATION_BUCKETS = [0.5, 1, 2, 5, 10, 20, 30, 60]

_ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


class WorkerMetrics:
    """Prometheus collectors for the worker process, on a private registry."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.pipeline_run_duration = Histogram(
            "pipeline_run_duration_seconds",
            "Duration of pipeline runs in seconds",
            ["stage", "status"],
            buckets=PIPELINE_DURATION_BUCKETS,
            registry=self.registry,
        )
        self.pipeline_runs_total = Counter(
            "pipeline_runs_total",
            "Total number of pipeline runs",
            ["stage", "status"],
            registry=self.registry,
        )
        self.ingest_items_total = Counter(
            "ingest_items_total",
            "Total number of items ingested",
            ["source_type", "status"],
            registry=self.registry,
        )
        self.llm_call_duration = Histogram(
            "llm_call_duration_seconds",
            "Duration of LLM calls in seconds",
            ["provider", "model", "purpose"],
            buckets=LLM_DURATION_BUCKETS,
            registry=self.registry,
        )
        self.llm_calls_total = Counter(
            "llm_calls_total",
            "Total number of LLM calls",
            ["provider", "model", "purpose", "status"],
            registry=self.registry,
        )
        self.credits_consumed_total = Counter(
            "credits_consumed_total",
            "Total credits consumed",
            ["provider", "purpose"],
            registry=self.registry,
        )
        self.queue_depth = Gauge(
            "queue_depth",
            "Current queue depth",
            ["queue_name"],
            registry=self.registry,
        )

    def record_pipeline_stage(self, stage: str, status: str, duration_seconds: float) -> None:
        self.pipeline_run_duration.labels(stage=stage, status=status).observe(duration_seconds)
        self.pipeline_runs_total.labels(stage=stage, status=status).inc()

    def record_ingest_items(self, source_type: str, status: str, count: int) -> None:
        if count < 0:
            return
        self.ingest_items_total.labels(source_type=source_type, status=status).inc(count)

    def record_llm_call(
        self,
        provider: str,
        model: str,
        purpose: str,
        status: str,
        duration_seconds: float,
        credits: float = 0.0,
    ) -> None:
        self.llm_call_duration.labels(provider=provider, model=model, purpose=purpose).observe(
            duration_seconds
        )
        self.llm_calls_total.labels(
            provider=provider, model=model, purpose=purpose, status=status
        ).inc()
        if credits and credits > 0:
            self.credits_consumed_total.labels(provider=provider, purpose=purpose).inc(credits)

    def update_queue_depth(self, queue_name: str, depth: int) -> None:
        self.queue_depth.labels(queue_name=queue_name).set(depth)

    def render(self) -> bytes:
        return generate_latest(self.registry)


def create_metrics_app(metrics: WorkerMetrics) -> FastAPI:
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/metrics")
    def get_metrics() -> Response:
        return Response(content=metrics.render(), media_type=CONTENT_TYPE_LATEST)

    @app.api_route("/{path:path}", methods=_ALL_METHODS)
    def not_found(path: str) -> Response:
        return PlainTextResponse("Not Found", status_code=404)

    return app


class MetricsServer:
    def __init__(self, metrics: WorkerMetrics, port: int, host: str = "0.0.0.0") -> None:
        self.port = port
        self.logger = logging.getLogger("aharadar.metrics")
        config = uvicorn.Config(
            create_metrics_app(metrics),
            host=host,
            port=port,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._server.run, name="metrics", daemon=True)
        self._thread.start()
        log_event(self.logger, logging.INFO, "metrics_server_started", port=self.port)

    def close(self, timeout: float = 5.0) -> None:
        self._server.should_exit = True
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        log_event(self.logger, logging.INFO, "metrics_server_stopped", port=self.port)
