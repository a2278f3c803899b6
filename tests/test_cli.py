"""
Tests for jobrunner.cli
"""

import json
import logging

import pytest

from jobrunner.cli import build_parser, main
from jobrunner.store import Database, JobStore, RunStore


@pytest.fixture(autouse=True)
def reset_logging():
    """setup_logging adds root handlers on every command."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
    root.setLevel(level)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "database_url": f"sqlite:///{tmp_path / 'cli.db'}",
        "workspace": {"root": str(tmp_path / "workspaces")},
        "timeouts": {"command_seconds": 10, "kill_grace_seconds": 1},
    }))
    return str(path)


@pytest.fixture
def stores(config_file, tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'cli.db'}")
    db.init_schema()
    yield JobStore(db), RunStore(db)
    db.dispose()


def test_parser_requires_payload():
    parser = build_parser()
    with pytest.raises(SystemExit):
        parser.parse_args(["add-job", "x", "--cron", "* * * * *", "--owner", "1"])


def test_parser_rejects_two_payloads():
    parser = build_parser()
    with pytest.raises(SystemExit):
        parser.parse_args(["add-job", "x", "--cron", "* * * * *", "--owner", "1",
                           "--command", "ls", "--script", "2"])


def test_add_job_run_and_history(config_file, stores, capsys):
    jobs, runs = stores

    main(["-c", config_file, "add-job", "greet", "--cron", "*/5 * * * *",
          "--owner", "5", "--command", "echo hi from cli"])

    [job] = jobs.list_jobs()
    assert job.name == "greet"
    assert job.command == "echo hi from cli"

    main(["-c", config_file, "run", str(job.id)])
    assert "hi from cli" in capsys.readouterr().out

    main(["-c", config_file, "history", str(job.id), "--json"])
    history = json.loads(capsys.readouterr().out)
    assert len(history) == 1
    assert history[0]['status'] == "success"
    assert history[0]['output'] == "hi from cli"


def test_add_forbidden_job_exits(config_file, stores):
    jobs, _ = stores

    with pytest.raises(SystemExit) as exc:
        main(["-c", config_file, "add-job", "bad", "--cron", "* * * * *",
              "--owner", "1", "--command", "sudo rm -rf /"])

    assert exc.value.code == 1
    assert jobs.list_jobs() == []


def test_failed_run_exits_nonzero(config_file, stores, capsys):
    main(["-c", config_file, "add-job", "fails", "--cron", "* * * * *",
          "--owner", "1", "--command", "echo oops; exit 3"])
    [job] = stores[0].list_jobs()

    with pytest.raises(SystemExit) as exc:
        main(["-c", config_file, "run", str(job.id)])

    assert exc.value.code == 1
    assert "oops" in capsys.readouterr().out


def test_pause_resume_delete(config_file, stores):
    jobs, _ = stores
    main(["-c", config_file, "add-job", "toggle", "--cron", "0 * * * *",
          "--owner", "1", "--command", "true"])
    [job] = jobs.list_jobs()

    main(["-c", config_file, "pause", str(job.id)])
    assert jobs.get_job(job.id).is_paused

    main(["-c", config_file, "resume", str(job.id)])
    assert not jobs.get_job(job.id).is_paused

    main(["-c", config_file, "delete", str(job.id)])
    assert jobs.get_job(job.id) is None

    with pytest.raises(SystemExit):
        main(["-c", config_file, "delete", str(job.id)])


def test_history_without_runs(config_file, stores, capsys):
    main(["-c", config_file, "history", "12"])
    assert "No run history found for job #12" in capsys.readouterr().out


def test_list_jobs(config_file, stores, capsys):
    main(["-c", config_file, "add-job", "listed", "--cron", "0 0 * * *",
          "--owner", "2", "--command", "date"])
    capsys.readouterr()

    main(["-c", config_file, "list"])

    out = capsys.readouterr().out
    assert "listed" in out
    assert "Daily at 00:00" in out
