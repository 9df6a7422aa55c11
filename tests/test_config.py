import copy

import pytest

from aharadar.config import DEFAULT_CONFIG, ConfigError, load_config, load_dotenv_files, validate_config


def test_defaults_load_without_file():
    cfg = load_config(env={})
    assert cfg.scheduler.tick_minutes == 5.0
    assert cfg.scheduler.window_mode == "fixed"
    assert cfg.scheduler.lag_seconds == 0
    assert cfg.queue.name == "pipeline"
    assert cfg.queue.attempts == 3
    assert cfg.worker.metrics_port == 9091
    assert cfg.budget.daily_throttle_credits is None
    assert cfg.features.abtests_enabled is False
    assert cfg.database.url is None


def test_yaml_file_overrides_defaults(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(
        "scheduler:\n  window_mode: adaptive\n  max_backfill_windows: 3\nbudget:\n  daily_throttle_credits: 250\n",
        encoding="utf-8",
    )
    cfg = load_config(str(path), env={})
    assert cfg.scheduler.window_mode == "adaptive"
    assert cfg.scheduler.max_backfill_windows == 3
    assert cfg.scheduler.tick_minutes == 5.0
    assert cfg.budget.daily_throttle_credits == 250


def test_config_file_from_environment(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("queue:\n  attempts: 5\n", encoding="utf-8")
    cfg = load_config(env={"AR_CONFIG_FILE": str(path)})
    assert cfg.queue.attempts == 5


def test_environment_wins_over_file(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("scheduler:\n  tick_minutes: 10\n", encoding="utf-8")
    cfg = load_config(
        str(path),
        env={
            "SCHEDULER_TICK_MINUTES": "1.5",
            "ENABLE_ABTESTS": "yes",
            "DATABASE_URL": "postgresql://radar@localhost/radar",
            "AR_DATA_DIR": str(tmp_path),
        },
    )
    assert cfg.scheduler.tick_minutes == 1.5
    assert cfg.features.abtests_enabled is True
    assert cfg.database.url == "postgresql://radar@localhost/radar"
    assert cfg.database.state_db == str(tmp_path / "state.sqlite3")


def test_invalid_env_value_is_reported():
    with pytest.raises(ConfigError) as excinfo:
        load_config(env={"QUEUE_JOB_ATTEMPTS": "many"})
    assert "QUEUE_JOB_ATTEMPTS" in str(excinfo.value)


def test_semantic_errors_are_reported():
    with pytest.raises(ConfigError) as excinfo:
        load_config(env={"SCHEDULER_WINDOW_MODE": "sliding", "QUEUE_JOB_ATTEMPTS": "0"})
    message = str(excinfo.value)
    assert "scheduler.window_mode" in message
    assert "queue.attempts" in message


def test_unknown_and_mistyped_keys_rejected(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("scheduler:\n  tick: 5\nqueue:\n  attempts: three\n", encoding="utf-8")
    with pytest.raises(ConfigError) as excinfo:
        load_config(str(path), env={})
    message = str(excinfo.value)
    assert "unknown config.scheduler.tick" in message
    assert "config.queue.attempts must be an integer" in message


def test_missing_file_and_bad_yaml(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "absent.yml"), env={})
    bad = tmp_path / "bad.yml"
    bad.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(bad), env={})


def test_validate_config_accepts_defaults():
    assert validate_config(copy.deepcopy(DEFAULT_CONFIG)) == []


def test_dotenv_does_not_override_existing(tmp_path, monkeypatch):
    (tmp_path / ".env").write_text("MONTHLY_CREDITS=500\nDEFAULT_TIER=low\n", encoding="utf-8")
    monkeypatch.setenv("DEFAULT_TIER", "high")
    monkeypatch.setenv("MONTHLY_CREDITS", "")
    monkeypatch.delenv("MONTHLY_CREDITS")

    load_dotenv_files(str(tmp_path))
    cfg = load_config()

    assert cfg.budget.monthly_credits == 500
    assert cfg.budget.default_tier == "high"


def test_retention_counts_must_not_be_negative(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("queue:\n  keep_completed: -1\n  keep_failed: 20\n", encoding="utf-8")
    with pytest.raises(ConfigError) as excinfo:
        load_config(str(path), env={})
    assert "queue.keep_completed" in str(excinfo.value)

    path.write_text("queue:\n  keep_completed: 5\n  keep_failed: 20\n", encoding="utf-8")
    cfg = load_config(str(path), env={})
    assert (cfg.queue.keep_completed, cfg.queue.keep_failed) == (5, 20)
