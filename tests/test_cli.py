import json
import sqlite3

import pytest

import aharadar.cli as cli_module
from aharadar.cli import main
from aharadar.config import load_config
from aharadar.queue import JobQueue
from aharadar.storage import create_topic, create_user, get_topic, init_db


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("AR_DATA_DIR", str(tmp_path / "data"))
    config = load_config()
    conn = init_db(config.database.state_db)
    user = create_user(conn, email="reader@example.com", user_id="user-1")
    create_topic(conn, user.id, "AI", topic_id="topic-1")
    return conn, JobQueue(conn, config.queue)


def test_users_list_prints_json(workspace, capsys):
    assert main(["users", "list"]) == 0
    users = json.loads(capsys.readouterr().out)
    assert [user["id"] for user in users] == ["user-1"]


def test_topics_add_and_schedule(workspace):
    conn, _ = workspace
    assert main(["topics", "add", "--user", "user-1", "--name", "Rust", "--id", "topic-2"]) == 0
    assert main(["topics", "schedule", "topic-2", "--disable", "--interval-minutes", "60"]) == 0

    topic = get_topic(conn, "topic-2")
    assert topic.digest_schedule_enabled is False
    assert topic.digest_interval_minutes == 60
    assert main(["topics", "schedule", "missing", "--enable"]) == 1


def test_run_window_enqueues_manual_job(workspace):
    _, queue = workspace
    argv = [
        "run-window",
        "--topic",
        "topic-1",
        "--start",
        "2025-01-01T00:00:00Z",
        "--end",
        "2025-01-02T00:00:00Z",
        "--provider",
        "anthropic",
    ]
    assert main(argv) == 0
    assert main(argv) == 0

    jobs = queue.list_jobs()
    assert len(jobs) == 1
    assert jobs[0].trigger == "manual"
    assert jobs[0].payload["provider_override"] == {"provider": "anthropic"}


def test_run_window_rejects_bad_input(workspace):
    assert main(["run-window", "--topic", "missing"]) == 1
    assert main(["run-window", "--topic", "topic-1", "--start", "yesterday"]) == 1
    assert (
        main(
            [
                "run-window",
                "--topic",
                "topic-1",
                "--start",
                "2025-01-02T00:00:00Z",
                "--end",
                "2025-01-01T00:00:00Z",
            ]
        )
        == 1
    )


def test_tick_prints_summary(workspace, capsys):
    assert main(["tick"]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["topics"] == 1
    assert summary["enqueued"] == 1


def test_abtest_requires_feature_flag(workspace, monkeypatch):
    _, queue = workspace
    argv = [
        "abtest",
        "--topic",
        "topic-1",
        "--start",
        "2025-01-01T00:00:00Z",
        "--end",
        "2025-01-02T00:00:00Z",
        "--variant",
        "a:openai:gpt-5.1",
    ]
    assert main(argv) == 1
    monkeypatch.setenv("ENABLE_ABTESTS", "true")
    assert main(argv) == 0
    assert [job.name for job in queue.list_jobs()] == ["run_abtest"]
    assert main(argv[:-1] + ["broken-variant"]) == 1


def test_catchup_and_summary_enqueue(workspace):
    _, queue = workspace
    assert main(["catchup", "--topic", "topic-1", "--days", "3"]) == 0
    assert main(["summary", "--scope-type", "inbox", "--since", "2025-01-01T00:00:00Z"]) == 0

    names = sorted(job.name for job in queue.list_jobs())
    assert names == ["run_aggregate_summary", "run_catchup_pack"]


def test_queue_admin_commands(workspace, capsys):
    _, queue = workspace
    main(["tick"])
    capsys.readouterr()

    assert main(["queue", "pause"]) == 0
    assert main(["queue", "emergency-stop"]) == 0
    capsys.readouterr()
    assert main(["queue", "status"]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["paused"] is True
    assert status["emergency_stop"] is True
    assert status["counts"]["waiting"] == 1

    assert main(["queue", "obliterate"]) == 1
    assert main(["queue", "obliterate", "--yes"]) == 0
    assert queue.list_jobs() == []
    assert main(["queue", "resume"]) == 0
    assert main(["queue", "clear-emergency-stop"]) == 0
    assert queue.is_emergency_stop_active() is False
    assert main(["queue", "remove", "nope"]) == 1


def test_budget_and_llm_commands(workspace, capsys):
    assert main(["budget", "status", "--user", "user-1"]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["monthly_limit"] == 10000
    assert status["paid_calls_allowed"] is True

    assert main(["budget", "reset", "--user", "user-1", "--period", "monthly"]) == 0
    capsys.readouterr()

    assert main(["llm", "set", "--provider", "anthropic", "--anthropic-model", "claude-x"]) == 0
    assert main(["llm", "set", "--provider", "carrier-pigeon"]) == 1
    capsys.readouterr()
    assert main(["llm", "show"]) == 0
    settings = json.loads(capsys.readouterr().out)
    assert settings["provider"] == "anthropic"
    assert settings["anthropic_model"] == "claude-x"


def test_invalid_config_file_fails(workspace, tmp_path):
    path = tmp_path / "bad.yml"
    path.write_text("scheduler:\n  window_mode: sliding\n", encoding="utf-8")
    assert main(["--config", str(path), "queue", "status"]) == 1


def test_manual_jobs_use_configured_retention(workspace, tmp_path):
    conn, _ = workspace
    path = tmp_path / "retention.yml"
    path.write_text("queue:\n  keep_completed: 5\n  keep_failed: 0\n", encoding="utf-8")

    assert main(["--config", str(path), "catchup", "--topic", "topic-1"]) == 0

    row = conn.execute("SELECT keep_completed, keep_failed FROM jobs").fetchone()
    assert tuple(row) == (5, 0)


def test_commands_close_their_connection(workspace, monkeypatch):
    opened = []

    def recording_init_db(*args, **kwargs):
        conn = init_db(*args, **kwargs)
        opened.append(conn)
        return conn

    monkeypatch.setattr(cli_module, "init_db", recording_init_db)

    assert main(["users", "list"]) == 0
    assert main(["topics", "schedule", "missing", "--enable"]) == 1
    assert main(["queue", "remove", "nope"]) == 1

    assert len(opened) == 3
    for conn in opened:
        with pytest.raises(sqlite3.ProgrammingError):
            conn.execute("SELECT 1")
