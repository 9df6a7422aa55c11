from __future__ import annotations

import argparse
import json
import logging
from dataclasses import replace
from datetime import timedelta
from typing import Any

from .budgets import compute_credits_status, reset_budget
from .config import Config, ConfigError, load_config, load_dotenv_files
from .jobs import (
    RUN_ABTEST,
    RUN_AGGREGATE_SUMMARY,
    RUN_CATCHUP_PACK,
    RUN_WINDOW,
    AbtestVariant,
    ProviderOverride,
    RunAbtestPayload,
    RunAggregateSummaryPayload,
    RunCatchupPackPayload,
    RunWindowPayload,
    compute_scope_hash,
    job_id_for,
    payload_to_dict,
)
from .llm.settings import load_llm_settings, save_llm_settings
from .models import DIGEST_MODES, JOB_STATUSES, RUN_MODES, TRIGGER_MANUAL
from .queue import JobQueue
from .scheduler import Scheduler
from .storage import (
    create_topic,
    create_user,
    get_topic,
    init_db,
    list_schedulable_topics,
    list_topics,
    list_users,
    set_topic_schedule,
)
from .utils import configure_logging, json_dumps, log_event, parse_iso, utc_now

CATCHUP_TIMEFRAMES = (3, 7, 14)
CATCHUP_BUDGETS = (30, 45, 60, 90)


def _setup_logging() -> logging.Logger:
    return configure_logging("aharadar.cli")


def _open(args: argparse.Namespace, logger: logging.Logger) -> tuple[Config, Any] | None:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None
    return config, init_db(config.database.state_db, config.database.url)


def _print(value: object) -> None:
    print(json.dumps(json.loads(json_dumps(value)), indent=2, sort_keys=True))


def _cmd_init_db(
    args: argparse.Namespace, logger: logging.Logger, config: Config, conn: Any
) -> int:
    log_event(logger, logging.INFO, "db_initialized", backend=conn.backend)
    return 0


def _cmd_users_add(
    args: argparse.Namespace, logger: logging.Logger, config: Config, conn: Any
) -> int:
    user = create_user(conn, email=args.email, user_id=args.id)
    log_event(logger, logging.INFO, "user_created", user_id=user.id, email=user.email)
    return 0


def _cmd_users_list(
    args: argparse.Namespace, logger: logging.Logger, config: Config, conn: Any
) -> int:
    _print(list_users(conn))
    return 0


def _cmd_topics_add(
    args: argparse.Namespace, logger: logging.Logger, config: Config, conn: Any
) -> int:
    try:
        topic = create_topic(
            conn,
            args.user,
            args.name,
            interval_minutes=args.interval_minutes,
            mode=args.mode,
            depth=args.depth,
            enabled=not args.disabled,
            topic_id=args.id,
        )
    except ValueError as exc:
        log_event(logger, logging.ERROR, "topic_invalid", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "topic_created", topic_id=topic.id, user_id=topic.user_id)
    return 0


def _cmd_topics_list(
    args: argparse.Namespace, logger: logging.Logger, config: Config, conn: Any
) -> int:
    _print(list_topics(conn, user_id=args.user))
    return 0


def _cmd_topics_schedule(
    args: argparse.Namespace, logger: logging.Logger, config: Config, conn: Any
) -> int:
    try:
        updated = set_topic_schedule(
            conn,
            args.topic_id,
            enabled=args.enabled,
            interval_minutes=args.interval_minutes,
            mode=args.mode,
        )
    except ValueError as exc:
        log_event(logger, logging.ERROR, "topic_invalid", error=str(exc))
        return 1
    if not updated:
        log_event(logger, logging.ERROR, "topic_not_updated", topic_id=args.topic_id)
        return 1
    log_event(logger, logging.INFO, "topic_updated", topic_id=args.topic_id)
    return 0


def _cmd_tick(
    args: argparse.Namespace, logger: logging.Logger, config: Config, conn: Any
) -> int:
    scheduler = Scheduler(
        discover=lambda: list_schedulable_topics(conn),
        queue=JobQueue(conn, config.queue),
        config=config.scheduler,
    )
    summary = scheduler.tick()
    _print(summary)
    return 1 if summary.errors else 0


def _cmd_run_window(
    args: argparse.Namespace, logger: logging.Logger, config: Config, conn: Any
) -> int:
    topic = get_topic(conn, args.topic)
    if not topic:
        log_event(logger, logging.ERROR, "topic_not_found", topic_id=args.topic)
        return 1
    override = None
    if args.provider or args.model:
        override = ProviderOverride(provider=args.provider, model=args.model)
    try:
        end = parse_iso(args.end) if args.end else utc_now()
        start = (
            parse_iso(args.start)
            if args.start
            else end - timedelta(minutes=topic.digest_interval_minutes)
        )
        payload = RunWindowPayload(
            user_id=topic.user_id,
            topic_id=topic.id,
            window_start=start,
            window_end=end,
            mode=args.mode or topic.digest_mode,
            trigger=TRIGGER_MANUAL,
            provider_override=override,
        )
    except ValueError as exc:
        log_event(logger, logging.ERROR, "run_window_invalid", error=str(exc))
        return 1
    return _enqueue(
        JobQueue(conn, config.queue), RUN_WINDOW, payload, logger, group_key=topic.id
    )


def _cmd_abtest(
    args: argparse.Namespace, logger: logging.Logger, config: Config, conn: Any
) -> int:
    if not config.features.abtests_enabled:
        log_event(logger, logging.ERROR, "abtests_disabled", hint="set ENABLE_ABTESTS=true")
        return 1
    topic = get_topic(conn, args.topic)
    if not topic:
        log_event(logger, logging.ERROR, "topic_not_found", topic_id=args.topic)
        return 1
    try:
        variants = [_parse_variant(value) for value in args.variant]
        payload = RunAbtestPayload(
            run_id=args.run_id or compute_scope_hash(
                topic=topic.id, start=args.start, end=args.end, variants=args.variant
            )[:32],
            user_id=topic.user_id,
            topic_id=topic.id,
            window_start=parse_iso(args.start),
            window_end=parse_iso(args.end),
            variants=variants,
            max_items=args.max_items,
        )
    except ValueError as exc:
        log_event(logger, logging.ERROR, "abtest_invalid", error=str(exc))
        return 1
    return _enqueue(JobQueue(conn, config.queue), RUN_ABTEST, payload, logger, attempts=1)


def _parse_variant(value: str) -> AbtestVariant:
    parts = value.split(":", 2)
    if len(parts) != 3:
        raise ValueError(f"variant must be name:provider:model, got {value!r}")
    return AbtestVariant(name=parts[0], provider=parts[1], model=parts[2])


def _cmd_catchup(
    args: argparse.Namespace, logger: logging.Logger, config: Config, conn: Any
) -> int:
    topic = get_topic(conn, args.topic)
    user_id = args.user or (topic.user_id if topic else None)
    window_end = utc_now()
    window_start = window_end - timedelta(days=args.days)
    payload = RunCatchupPackPayload(
        user_id=user_id,
        topic_id=args.topic,
        scope_hash=compute_scope_hash(
            user=user_id,
            topic=args.topic,
            timeframe_days=args.days,
            time_budget_minutes=args.budget_minutes,
            day=window_end.date().isoformat(),
        ),
        window_start=window_start,
        window_end=window_end,
        timeframe_days=args.days,
        time_budget_minutes=args.budget_minutes,
    )
    return _enqueue(JobQueue(conn, config.queue), RUN_CATCHUP_PACK, payload, logger)


def _cmd_summary(
    args: argparse.Namespace, logger: logging.Logger, config: Config, conn: Any
) -> int:
    try:
        since = parse_iso(args.since) if args.since else None
        until = parse_iso(args.until) if args.until else None
    except ValueError as exc:
        log_event(logger, logging.ERROR, "summary_invalid", error=str(exc))
        return 1
    payload = RunAggregateSummaryPayload(
        scope_type=args.scope_type,
        scope_hash=compute_scope_hash(
            scope_type=args.scope_type,
            digest=args.digest_id,
            topic=args.topic,
            since=since,
            until=until,
            view=args.view,
        ),
        user_id=args.user,
        digest_id=args.digest_id,
        topic_id=args.topic,
        since=since,
        until=until,
        view=args.view,
    )
    return _enqueue(JobQueue(conn, config.queue), RUN_AGGREGATE_SUMMARY, payload, logger)


def _enqueue(queue: JobQueue, name: str, payload, logger: logging.Logger, **options: Any) -> int:
    job, created = queue.enqueue(
        name,
        payload_to_dict(payload),
        job_id=job_id_for(payload),
        trigger=TRIGGER_MANUAL,
        remove_on_complete=queue.config.keep_completed,
        remove_on_fail=queue.config.keep_failed,
        **options,
    )
    log_event(
        logger,
        logging.INFO,
        "job_enqueued" if created else "job_exists",
        job_id=job.id,
        name=name,
        status=job.status,
    )
    return 0


def _cmd_queue_status(
    args: argparse.Namespace, logger: logging.Logger, config: Config, conn: Any
) -> int:
    queue = JobQueue(conn, config.queue)
    _print(
        {
            "queue": queue.name,
            "paused": queue.is_paused(),
            "emergency_stop": queue.is_emergency_stop_active(),
            "counts": queue.counts(),
        }
    )
    return 0


def _cmd_queue_list(
    args: argparse.Namespace, logger: logging.Logger, config: Config, conn: Any
) -> int:
    for job in JobQueue(conn, config.queue).list_jobs(status=args.status, limit=args.limit):
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            name=job.name,
            status=job.status,
            trigger=job.trigger,
            attempts=job.attempts,
            requested_at=job.requested_at,
            finished_at=job.finished_at,
            error=job.error,
        )
    return 0


def _cmd_queue_action(
    args: argparse.Namespace, logger: logging.Logger, config: Config, conn: Any
) -> int:
    queue = JobQueue(conn, config.queue)
    action = args.queue_command
    if action == "pause":
        queue.pause()
    elif action == "resume":
        queue.resume()
    elif action == "drain":
        queue.drain()
    elif action == "remove":
        if not queue.remove(args.job_id):
            log_event(logger, logging.ERROR, "job_not_removed", job_id=args.job_id)
            return 1
        log_event(logger, logging.INFO, "job_removed", job_id=args.job_id)
    elif action == "obliterate":
        if not args.yes:
            log_event(logger, logging.ERROR, "obliterate_requires_confirmation", hint="pass --yes")
            return 1
        queue.obliterate()
    elif action == "emergency-stop":
        queue.set_emergency_stop()
    elif action == "clear-emergency-stop":
        queue.clear_emergency_stop()
    else:
        raise ValueError(f"unsupported queue command {action}")
    return 0


def _cmd_budget_status(
    args: argparse.Namespace, logger: logging.Logger, config: Config, conn: Any
) -> int:
    status = compute_credits_status(
        conn,
        args.user,
        config.budget.monthly_credits,
        config.budget.daily_throttle_credits,
        utc_now(),
    )
    _print(status)
    return 0


def _cmd_budget_reset(
    args: argparse.Namespace, logger: logging.Logger, config: Config, conn: Any
) -> int:
    result = reset_budget(
        conn,
        args.user,
        args.period,
        config.budget.monthly_credits,
        config.budget.daily_throttle_credits,
    )
    _print(result)
    return 0


def _cmd_llm_show(
    args: argparse.Namespace, logger: logging.Logger, config: Config, conn: Any
) -> int:
    _print(load_llm_settings(conn))
    return 0


def _cmd_llm_set(
    args: argparse.Namespace, logger: logging.Logger, config: Config, conn: Any
) -> int:
    settings = load_llm_settings(conn)
    changes = {
        key: value
        for key, value in {
            "provider": args.provider,
            "anthropic_model": args.anthropic_model,
            "openai_model": args.openai_model,
            "reasoning_effort": args.reasoning_effort,
        }.items()
        if value is not None
    }
    try:
        save_llm_settings(conn, replace(settings, **changes))
    except ValueError as exc:
        log_event(logger, logging.ERROR, "llm_settings_invalid", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "llm_settings_updated", **changes)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="aharadar", description="Aha Radar pipeline operator CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to a YAML config file (defaults to AR_CONFIG_FILE)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create or migrate the database")
    init_parser.set_defaults(func=_cmd_init_db)

    users_parser = subparsers.add_parser("users", help="Manage users")
    users_sub = users_parser.add_subparsers(dest="users_command", required=True)
    users_add = users_sub.add_parser("add", help="Create a user")
    users_add.add_argument("--email", default=None)
    users_add.add_argument("--id", default=None)
    users_add.set_defaults(func=_cmd_users_add)
    users_list = users_sub.add_parser("list", help="List users")
    users_list.set_defaults(func=_cmd_users_list)

    topics_parser = subparsers.add_parser("topics", help="Manage topics")
    topics_sub = topics_parser.add_subparsers(dest="topics_command", required=True)
    topics_add = topics_sub.add_parser("add", help="Create a topic")
    topics_add.add_argument("--user", required=True, help="Owning user id")
    topics_add.add_argument("--name", required=True)
    topics_add.add_argument("--id", default=None)
    topics_add.add_argument("--interval-minutes", type=int, default=1440)
    topics_add.add_argument("--mode", choices=DIGEST_MODES, default="normal")
    topics_add.add_argument("--depth", type=int, default=50)
    topics_add.add_argument("--disabled", action="store_true", help="Create with scheduling off")
    topics_add.set_defaults(func=_cmd_topics_add)
    topics_list = topics_sub.add_parser("list", help="List topics")
    topics_list.add_argument("--user", default=None)
    topics_list.set_defaults(func=_cmd_topics_list)
    topics_schedule = topics_sub.add_parser("schedule", help="Change a topic's digest schedule")
    topics_schedule.add_argument("topic_id")
    toggle = topics_schedule.add_mutually_exclusive_group()
    toggle.add_argument("--enable", dest="enabled", action="store_true", default=None)
    toggle.add_argument("--disable", dest="enabled", action="store_false")
    topics_schedule.add_argument("--interval-minutes", type=int, default=None)
    topics_schedule.add_argument("--mode", choices=DIGEST_MODES, default=None)
    topics_schedule.set_defaults(func=_cmd_topics_schedule)

    tick_parser = subparsers.add_parser("tick", help="Run one scheduler tick")
    tick_parser.set_defaults(func=_cmd_tick)

    run_parser = subparsers.add_parser("run-window", help="Enqueue a manual window run")
    run_parser.add_argument("--topic", required=True)
    run_parser.add_argument("--start", default=None, help="ISO-8601 window start")
    run_parser.add_argument("--end", default=None, help="ISO-8601 window end (default now)")
    run_parser.add_argument("--mode", choices=RUN_MODES, default=None)
    run_parser.add_argument(
        "--provider",
        choices=["openai", "anthropic", "claude-subscription", "codex-subscription"],
        default=None,
    )
    run_parser.add_argument("--model", default=None)
    run_parser.set_defaults(func=_cmd_run_window)

    abtest_parser = subparsers.add_parser("abtest", help="Enqueue an A/B test run")
    abtest_parser.add_argument("--topic", required=True)
    abtest_parser.add_argument("--start", required=True)
    abtest_parser.add_argument("--end", required=True)
    abtest_parser.add_argument(
        "--variant",
        action="append",
        required=True,
        help="name:provider:model (repeatable)",
    )
    abtest_parser.add_argument("--max-items", type=int, default=None)
    abtest_parser.add_argument("--run-id", default=None)
    abtest_parser.set_defaults(func=_cmd_abtest)

    catchup_parser = subparsers.add_parser("catchup", help="Enqueue a catch-up pack")
    catchup_parser.add_argument("--topic", required=True)
    catchup_parser.add_argument("--user", default=None)
    catchup_parser.add_argument("--days", type=int, choices=CATCHUP_TIMEFRAMES, default=7)
    catchup_parser.add_argument(
        "--budget-minutes", type=int, choices=CATCHUP_BUDGETS, default=45
    )
    catchup_parser.set_defaults(func=_cmd_catchup)

    summary_parser = subparsers.add_parser("summary", help="Enqueue an aggregate summary")
    summary_parser.add_argument(
        "--scope-type", choices=["digest", "inbox", "range", "custom"], required=True
    )
    summary_parser.add_argument("--user", default=None)
    summary_parser.add_argument("--digest-id", default=None)
    summary_parser.add_argument("--topic", default=None)
    summary_parser.add_argument("--since", default=None)
    summary_parser.add_argument("--until", default=None)
    summary_parser.add_argument("--view", default=None)
    summary_parser.set_defaults(func=_cmd_summary)

    queue_parser = subparsers.add_parser("queue", help="Inspect and operate the job queue")
    queue_sub = queue_parser.add_subparsers(dest="queue_command", required=True)
    queue_status = queue_sub.add_parser("status", help="Show job counts and flags")
    queue_status.set_defaults(func=_cmd_queue_status)
    queue_list = queue_sub.add_parser("list", help="List recent jobs")
    queue_list.add_argument("--status", choices=JOB_STATUSES, default=None)
    queue_list.add_argument("--limit", type=int, default=50)
    queue_list.set_defaults(func=_cmd_queue_list)
    for name, help_text in (
        ("pause", "Stop handing out jobs"),
        ("resume", "Resume handing out jobs"),
        ("drain", "Remove all waiting jobs"),
        ("emergency-stop", "Signal workers to stop"),
        ("clear-emergency-stop", "Clear the emergency stop flag"),
    ):
        action_parser = queue_sub.add_parser(name, help=help_text)
        action_parser.set_defaults(func=_cmd_queue_action)
    queue_remove = queue_sub.add_parser("remove", help="Remove one job")
    queue_remove.add_argument("job_id")
    queue_remove.set_defaults(func=_cmd_queue_action)
    queue_obliterate = queue_sub.add_parser("obliterate", help="Delete every job in the queue")
    queue_obliterate.add_argument("--yes", action="store_true")
    queue_obliterate.set_defaults(func=_cmd_queue_action)

    budget_parser = subparsers.add_parser("budget", help="Credit budgets")
    budget_sub = budget_parser.add_subparsers(dest="budget_command", required=True)
    budget_status = budget_sub.add_parser("status", help="Show credits status for a user")
    budget_status.add_argument("--user", required=True)
    budget_status.set_defaults(func=_cmd_budget_status)
    budget_reset = budget_sub.add_parser("reset", help="Reset a user's budget period")
    budget_reset.add_argument("--user", required=True)
    budget_reset.add_argument("--period", choices=["daily", "monthly"], required=True)
    budget_reset.set_defaults(func=_cmd_budget_reset)

    llm_parser = subparsers.add_parser("llm", help="LLM runtime settings")
    llm_sub = llm_parser.add_subparsers(dest="llm_command", required=True)
    llm_show = llm_sub.add_parser("show", help="Print current LLM settings")
    llm_show.set_defaults(func=_cmd_llm_show)
    llm_set = llm_sub.add_parser("set", help="Update LLM settings")
    llm_set.add_argument("--provider", default=None)
    llm_set.add_argument("--anthropic-model", default=None)
    llm_set.add_argument("--openai-model", default=None)
    llm_set.add_argument("--reasoning-effort", default=None)
    llm_set.set_defaults(func=_cmd_llm_set)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    load_dotenv_files()
    logger = _setup_logging()
    opened = _open(args, logger)
    if not opened:
        return 1
    config, conn = opened
    try:
        return args.func(args, logger, config, conn)
    finally:
        conn.close()


if __name__ == "__main__":
    raise SystemExit(main())
