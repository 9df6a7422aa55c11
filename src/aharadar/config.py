from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Mapping

import yaml
from dotenv import load_dotenv

from .models import DIGEST_MODES


class ConfigError(ValueError):
    pass


WINDOW_MODES = ("fixed", "adaptive")


@dataclass(frozen=True)
class DatabaseConfig:
    url: str | None
    data_dir: str

    @property
    def state_db(self) -> str:
        return os.path.join(self.data_dir, "state.sqlite3")


@dataclass(frozen=True)
class SchedulerConfig:
    tick_minutes: float = 5.0
    window_mode: str = "fixed"
    max_backfill_windows: int = 6
    min_window_seconds: int = 60
    lag_seconds: int = 0


@dataclass(frozen=True)
class QueueConfig:
    name: str = "pipeline"
    keep_completed: int = 100
    keep_failed: int = 50
    attempts: int = 3
    backoff_seconds: int = 30
    lock_timeout_seconds: int = 1800


@dataclass(frozen=True)
class WorkerSettings:
    poll_seconds: float = 5.0
    close_grace_seconds: float = 30.0
    queue_depth_interval_seconds: float = 15.0
    metrics_port: int = 9091
    pipeline: str = "dry_run"


@dataclass(frozen=True)
class BudgetConfig:
    monthly_credits: int = 10000
    daily_throttle_credits: int | None = None
    default_tier: str = "normal"


@dataclass(frozen=True)
class FeatureFlags:
    abtests_enabled: bool = False


@dataclass(frozen=True)
class Config:
    database: DatabaseConfig
    scheduler: SchedulerConfig
    queue: QueueConfig
    worker: WorkerSettings
    budget: BudgetConfig
    features: FeatureFlags


DEFAULT_CONFIG: dict[str, Any] = {
    "database": {
        "url": "",
        "data_dir": "/data",
    },
    "scheduler": {
        "tick_minutes": 5.0,
        "window_mode": "fixed",
        "max_backfill_windows": 6,
        "min_window_seconds": 60,
        "lag_seconds": 0,
    },
    "queue": {
        "name": "pipeline",
        "keep_completed": 100,
        "keep_failed": 50,
        "attempts": 3,
        "backoff_seconds": 30,
        "lock_timeout_seconds": 1800,
    },
    "worker": {
        "poll_seconds": 5.0,
        "close_grace_seconds": 30.0,
        "queue_depth_interval_seconds": 15.0,
        "metrics_port": 9091,
        "pipeline": "dry_run",
    },
    "budget": {
        "monthly_credits": 10000,
        # 0 disables the daily throttle
        "daily_throttle_credits": 0,
        "default_tier": "normal",
    },
    "features": {
        "abtests_enabled": False,
    },
}

# env var -> (section, key, parser)
ENV_OVERRIDES: dict[str, tuple[str, str, str]] = {
    "DATABASE_URL": ("database", "url", "str"),
    "AR_DATA_DIR": ("database", "data_dir", "str"),
    "SCHEDULER_TICK_MINUTES": ("scheduler", "tick_minutes", "float"),
    "SCHEDULER_WINDOW_MODE": ("scheduler", "window_mode", "str"),
    "SCHEDULER_MAX_BACKFILL_WINDOWS": ("scheduler", "max_backfill_windows", "int"),
    "SCHEDULER_MIN_WINDOW_SECONDS": ("scheduler", "min_window_seconds", "int"),
    "SCHEDULER_LAG_SECONDS": ("scheduler", "lag_seconds", "int"),
    "QUEUE_JOB_ATTEMPTS": ("queue", "attempts", "int"),
    "QUEUE_BACKOFF_SECONDS": ("queue", "backoff_seconds", "int"),
    "QUEUE_LOCK_TIMEOUT_SECONDS": ("queue", "lock_timeout_seconds", "int"),
    "WORKER_POLL_SECONDS": ("worker", "poll_seconds", "float"),
    "WORKER_CLOSE_GRACE_SECONDS": ("worker", "close_grace_seconds", "float"),
    "WORKER_METRICS_PORT": ("worker", "metrics_port", "int"),
    "AR_PIPELINE": ("worker", "pipeline", "str"),
    "MONTHLY_CREDITS": ("budget", "monthly_credits", "int"),
    "DAILY_THROTTLE_CREDITS": ("budget", "daily_throttle_credits", "int"),
    "DEFAULT_TIER": ("budget", "default_tier", "str"),
    "ENABLE_ABTESTS": ("features", "abtests_enabled", "bool"),
}


def load_dotenv_files(cwd: str | None = None) -> None:
    base = cwd or os.getcwd()
    for filename in (".env", ".env.local"):
        path = os.path.join(base, filename)
        if os.path.exists(path):
            load_dotenv(path, override=False)


def load_config(path: str | None = None, env: Mapping[str, str] | None = None) -> Config:
    env = os.environ if env is None else env
    cfg = _deep_copy(DEFAULT_CONFIG)
    path = path or env.get("AR_CONFIG_FILE") or None
    if path:
        _merge(cfg, _load_yaml(path))
    errors = validate_config(cfg)
    _apply_env(cfg, env, errors)
    if not errors:
        errors.extend(_validate_semantics(cfg))
    if errors:
        raise ConfigError("Invalid configuration: " + "; ".join(errors))
    return _build_config(cfg)


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    return errors


def _load_yaml(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file is not valid YAML: {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain a mapping: {path}")
    return data


def _merge(base: dict[str, Any], override: dict[str, Any]) -> None:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value


def _apply_env(cfg: dict[str, Any], env: Mapping[str, str], errors: list[str]) -> None:
    for name, (section, key, kind) in ENV_OVERRIDES.items():
        raw = env.get(name)
        if raw is None or raw.strip() == "":
            continue
        raw = raw.strip()
        try:
            value = _parse_env_value(raw, kind)
        except ValueError:
            errors.append(f"{name} must be a valid {kind}, got {raw!r}")
            continue
        section_cfg = cfg.get(section)
        if isinstance(section_cfg, dict):
            section_cfg[key] = value


def _parse_env_value(raw: str, kind: str) -> Any:
    if kind == "int":
        return int(raw)
    if kind == "float":
        return float(raw)
    if kind == "bool":
        lowered = raw.lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
        raise ValueError(raw)
    return raw


def _validate_semantics(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    scheduler = cfg["scheduler"]
    queue = cfg["queue"]
    worker = cfg["worker"]
    budget = cfg["budget"]
    if scheduler["window_mode"] not in WINDOW_MODES:
        errors.append(
            f"scheduler.window_mode must be one of {', '.join(WINDOW_MODES)}"
        )
    if scheduler["tick_minutes"] <= 0:
        errors.append("scheduler.tick_minutes must be positive")
    if scheduler["max_backfill_windows"] < 1:
        errors.append("scheduler.max_backfill_windows must be at least 1")
    if scheduler["min_window_seconds"] < 1:
        errors.append("scheduler.min_window_seconds must be at least 1")
    if scheduler["lag_seconds"] < 0:
        errors.append("scheduler.lag_seconds must not be negative")
    if queue["attempts"] < 1:
        errors.append("queue.attempts must be at least 1")
    if queue["backoff_seconds"] < 0:
        errors.append("queue.backoff_seconds must not be negative")
    if queue["lock_timeout_seconds"] < 1:
        errors.append("queue.lock_timeout_seconds must be at least 1")
    for key in ("keep_completed", "keep_failed"):
        if queue[key] < 0:
            errors.append(f"queue.{key} must not be negative")
    if worker["poll_seconds"] <= 0:
        errors.append("worker.poll_seconds must be positive")
    if budget["monthly_credits"] < 0:
        errors.append("budget.monthly_credits must not be negative")
    if budget["daily_throttle_credits"] < 0:
        errors.append("budget.daily_throttle_credits must not be negative")
    if budget["default_tier"] not in DIGEST_MODES:
        errors.append(f"budget.default_tier must be one of {', '.join(DIGEST_MODES)}")
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            errors.append(f"missing {path}.{key}")
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if value is not None and not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _build_config(cfg: dict[str, Any]) -> Config:
    database_cfg = cfg["database"]
    scheduler_cfg = cfg["scheduler"]
    queue_cfg = cfg["queue"]
    worker_cfg = cfg["worker"]
    budget_cfg = cfg["budget"]
    features_cfg = cfg["features"]

    database = DatabaseConfig(
        url=str(database_cfg.get("url") or "") or None,
        data_dir=str(database_cfg.get("data_dir")),
    )
    scheduler = SchedulerConfig(
        tick_minutes=float(scheduler_cfg.get("tick_minutes")),
        window_mode=str(scheduler_cfg.get("window_mode")),
        max_backfill_windows=int(scheduler_cfg.get("max_backfill_windows")),
        min_window_seconds=int(scheduler_cfg.get("min_window_seconds")),
        lag_seconds=int(scheduler_cfg.get("lag_seconds")),
    )
    queue = QueueConfig(
        name=str(queue_cfg.get("name")),
        keep_completed=int(queue_cfg.get("keep_completed")),
        keep_failed=int(queue_cfg.get("keep_failed")),
        attempts=int(queue_cfg.get("attempts")),
        backoff_seconds=int(queue_cfg.get("backoff_seconds")),
        lock_timeout_seconds=int(queue_cfg.get("lock_timeout_seconds")),
    )
    worker = WorkerSettings(
        poll_seconds=float(worker_cfg.get("poll_seconds")),
        close_grace_seconds=float(worker_cfg.get("close_grace_seconds")),
        queue_depth_interval_seconds=float(worker_cfg.get("queue_depth_interval_seconds")),
        metrics_port=int(worker_cfg.get("metrics_port")),
        pipeline=str(worker_cfg.get("pipeline")),
    )
    daily = int(budget_cfg.get("daily_throttle_credits") or 0)
    budget = BudgetConfig(
        monthly_credits=int(budget_cfg.get("monthly_credits")),
        daily_throttle_credits=daily or None,
        default_tier=str(budget_cfg.get("default_tier")),
    )
    features = FeatureFlags(abtests_enabled=bool(features_cfg.get("abtests_enabled")))
    return Config(
        database=database,
        scheduler=scheduler,
        queue=queue,
        worker=worker,
        budget=budget,
        features=features,
    )


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
