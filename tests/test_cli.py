import json
from unittest.mock import patch

import pytest

from media_jobs.cli import build_parser, main


@pytest.fixture
def cli_args(tmp_path, monkeypatch):
    """Global options pointing every store into tmp_path."""
    monkeypatch.chdir(tmp_path)
    for name in ("MEDIA_JOBS_DB", "MEDIA_JOBS_BLOB_ROOT", "MEDIA_JOBS_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    return ["--db", str(tmp_path / "broker.db"), "--blob-root", str(tmp_path / "blob")]


def run_cli(argv):
    """Run main and return its exit code."""
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


def test_cli_help_displays():
    """Test --help works without errors."""
    assert run_cli(["--help"]) == 0


def test_cli_enqueue_help():
    assert run_cli(["enqueue", "--help"]) == 0


def test_cli_no_command_shows_help(capsys):
    """Test running with no command shows help."""
    main([])
    captured = capsys.readouterr()
    assert "usage:" in captured.out.lower()


def test_parser_rejects_unknown_job_type():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["enqueue", "audio-generation", "--project", "p"])


def test_enqueue_then_status(cli_args, capsys):
    """Test a job enqueued from the CLI is visible through status."""
    code = run_cli(cli_args + [
        "enqueue", "video-generation", "--project", "proj-1", "--input", '{"prompt": "a cat"}',
    ])
    assert code == 0
    job_id = capsys.readouterr().out.strip()

    assert run_cli(cli_args + ["status", job_id]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["job_id"] == job_id
    assert status["status"] == "queued"
    assert status["progress"] == 0


def test_enqueue_explicit_job_id(cli_args, capsys):
    argv = cli_args + ["enqueue", "content-planning", "-p", "proj-1", "-i", '{"prompt": "x"}', "--job-id", "fixed"]

    assert run_cli(argv) == 0
    assert run_cli(argv) == 0

    assert capsys.readouterr().out.split() == ["fixed", "fixed"]


@pytest.mark.parametrize("payload", ["{not json", "[1, 2]"])
def test_enqueue_invalid_input(cli_args, capsys, payload):
    code = run_cli(cli_args + ["enqueue", "video-generation", "-p", "proj-1", "-i", payload])

    assert code == 2
    assert "Error" in capsys.readouterr().err


def test_status_unknown_job(cli_args, capsys):
    assert run_cli(cli_args + ["status", "nope"]) == 1
    assert "Job not found" in capsys.readouterr().err


def test_queue_info(cli_args, capsys):
    run_cli(cli_args + ["enqueue", "image-edit", "-p", "proj-1", "-i", '{"prompt": "x"}'])
    capsys.readouterr()

    assert run_cli(cli_args + ["queue", "info", "image-edit"]) == 0
    out = capsys.readouterr().out
    assert "QUEUE STATUS" in out
    row = [line for line in out.splitlines() if line.startswith("image-edit")][0]
    assert row.split() == ["image-edit", "2", "1", "0", "0", "0", "1"]


def test_queue_info_all_queues(cli_args, capsys):
    assert run_cli(cli_args + ["queue", "info"]) == 0
    out = capsys.readouterr().out
    for name in ("character-image", "video-stitching", "content-planning"):
        assert name in out


def test_queue_cancel(cli_args, capsys):
    run_cli(cli_args + ["enqueue", "video-stitching", "-p", "proj-1", "--job-id", "stitch-1"])
    capsys.readouterr()

    assert run_cli(cli_args + ["queue", "cancel", "stitch-1"]) == 0
    assert "Cancelled stitch-1" in capsys.readouterr().out

    run_cli(cli_args + ["status", "stitch-1"])
    status = json.loads(capsys.readouterr().out)
    assert status["status"] == "failed"
    assert status["error_message"] == "Job cancelled"

    assert run_cli(cli_args + ["queue", "cancel", "stitch-1"]) == 1


def test_cli_check_command_ffmpeg_found(capsys):
    """Test check command when ffmpeg is found."""
    report = {"available": True, "path": "/usr/bin/ffmpeg", "version": "ffmpeg version 6.1"}
    with patch("media_jobs.cli.check_ffmpeg", return_value=report):
        main(["check"])
    assert "ffmpeg found" in capsys.readouterr().out.lower()


def test_cli_check_command_ffmpeg_not_found(capsys):
    """Test check command when ffmpeg is not found."""
    report = {"available": False, "error": "not found"}
    with patch("media_jobs.cli.check_ffmpeg", return_value=report):
        assert run_cli(["check"]) == 1
    assert "not usable" in capsys.readouterr().out.lower()
