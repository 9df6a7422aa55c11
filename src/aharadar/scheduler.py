from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable

from .config import SchedulerConfig
from .jobs import RUN_WINDOW, RunWindowPayload, payload_to_dict, run_window_job_id
from .models import TRIGGER_SCHEDULED, Topic, Window
from .queue import JobQueue
from .utils import isoformat_utc, log_event, short_id, utc_now
from .windows import generate_due_windows


@dataclass
class TickSummary:
    topics: int = 0
    windows: int = 0
    enqueued: int = 0
    duplicates: int = 0
    errors: int = 0


class Scheduler:
    """Periodic producer of ``run_window`` jobs.

    Each tick discovers schedulable topics, computes their due windows and
    enqueues one job per window. Job IDs are derived from the window, so
    overlapping or repeated ticks never create duplicate work.
    """

    def __init__(
        self,
        discover: Callable[[], list[Topic]],
        queue: JobQueue,
        config: SchedulerConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        generate: Callable[[Topic, datetime, SchedulerConfig], list[Window]] = generate_due_windows,
        after_tick: Callable[[], None] | None = None,
    ) -> None:
        self.discover = discover
        self.queue = queue
        self.config = config or SchedulerConfig()
        self.clock = clock
        self.generate = generate
        self.after_tick = after_tick
        self.logger = logging.getLogger("aharadar.scheduler")
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="scheduler", daemon=True)
        self._thread.start()
        log_event(
            self.logger,
            logging.INFO,
            "scheduler_started",
            tick_minutes=self.config.tick_minutes,
            window_mode=self.config.window_mode,
        )

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        log_event(self.logger, logging.INFO, "scheduler_stopped")

    def tick(self) -> TickSummary:
        summary = TickSummary()
        try:
            topics = self.discover()
        except Exception as exc:  # noqa: BLE001
            summary.errors += 1
            log_event(self.logger, logging.ERROR, "tick_failed", error=str(exc))
            self._after_tick()
            return summary

        if not topics:
            self.logger.debug("event=tick_no_topics")
        now = self.clock()
        for topic in topics:
            summary.topics += 1
            try:
                self._schedule_topic(topic, now, summary)
            except Exception as exc:  # noqa: BLE001
                summary.errors += 1
                log_event(
                    self.logger,
                    logging.ERROR,
                    "topic_schedule_failed",
                    topic_id=short_id(topic.id),
                    error=str(exc),
                )
        log_event(
            self.logger,
            logging.INFO,
            "tick_completed",
            topics=summary.topics,
            windows=summary.windows,
            enqueued=summary.enqueued,
            duplicates=summary.duplicates,
            errors=summary.errors,
        )
        self._after_tick()
        return summary

    def effective_cursor(self, topic: Topic) -> datetime | None:
        pending = self.queue.pending_window_end(topic.id)
        cursor = topic.digest_cursor_end
        if pending is None:
            return cursor
        if cursor is None or pending > cursor:
            return pending
        return cursor

    def _schedule_topic(self, topic: Topic, now: datetime, summary: TickSummary) -> None:
        cursor = self.effective_cursor(topic)
        windows = self.generate(replace(topic, digest_cursor_end=cursor), now, self.config)
        enqueued = 0
        for window in windows:
            summary.windows += 1
            job_id = run_window_job_id(
                topic.user_id, topic.id, window.window_start, window.window_end, window.mode
            )
            payload = RunWindowPayload(
                user_id=topic.user_id,
                topic_id=topic.id,
                window_start=window.window_start,
                window_end=window.window_end,
                mode=window.mode,
                trigger=TRIGGER_SCHEDULED,
            )
            _, created = self.queue.enqueue(
                RUN_WINDOW,
                payload_to_dict(payload),
                job_id=job_id,
                trigger=TRIGGER_SCHEDULED,
                remove_on_complete=self.queue.config.keep_completed,
                remove_on_fail=self.queue.config.keep_failed,
                group_key=topic.id,
            )
            if created:
                enqueued += 1
            else:
                summary.duplicates += 1
        summary.enqueued += enqueued
        if windows:
            log_event(
                self.logger,
                logging.INFO,
                "topic_scheduled",
                topic_id=short_id(topic.id),
                windows=len(windows),
                enqueued=enqueued,
                first_start=isoformat_utc(windows[0].window_start),
                last_end=isoformat_utc(windows[-1].window_end),
            )

    def _after_tick(self) -> None:
        if not self.after_tick:
            return
        try:
            self.after_tick()
        except Exception as exc:  # noqa: BLE001
            log_event(self.logger, logging.WARNING, "queue_depth_refresh_failed", error=str(exc))

    def _run(self) -> None:
        interval = self.config.tick_minutes * 60
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as exc:  # noqa: BLE001
                log_event(self.logger, logging.ERROR, "tick_failed", error=str(exc))
            if self._stop.wait(interval):
                break
