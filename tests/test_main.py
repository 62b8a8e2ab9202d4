import json
import logging
import os
from pathlib import Path

import pytest

from hostsetup.logging_utils import configure_logging, reset_logging
from hostsetup.main import main

posix_only = pytest.mark.skipif(os.name == "nt", reason="uses /bin/sh and systemd paths")


@pytest.fixture(autouse=True)
def reset_root_logger():
    level = logging.getLogger().level
    yield
    reset_logging()
    logging.getLogger().setLevel(level)


@pytest.fixture
def args(tmp_path):
    def build(manifest_text, *extra, role="all", config=None, state=None):
        manifest = tmp_path / "steps.yaml"
        manifest.write_text(manifest_text, encoding="utf-8")
        return [
            *(["--role", role] if role else []),
            "--config",
            str(config or tmp_path / "missing-config.yaml"),
            "--state",
            str(state or tmp_path / "state.json"),
            "--log",
            str(tmp_path / "hostsetup.log"),
            "--manifest",
            str(manifest),
            *extra,
        ]

    return build


SIMPLE = """
steps:
  - name: first
    priority: 1
    run: "true"
  - name: second
    priority: 2
    depends_on: [first]
    run: "true"
"""

CYCLE = """
steps:
  - name: a
    depends_on: [b]
    run: "true"
  - name: b
    depends_on: [a]
    run: "true"
"""


def test_validate_only(args, tmp_path):
    assert main(args(SIMPLE, "--validate-only")) == 0
    assert not (tmp_path / "state.json").exists()
    assert "Plan for role all is valid" in (tmp_path / "hostsetup.log").read_text(encoding="utf-8")


def test_cycle_is_a_non_zero_exit(args):
    assert main(args(CYCLE, "--validate-only")) == 1
    assert main(args(CYCLE)) == 1


def test_preview_writes_no_state(args, tmp_path):
    assert main(args(SIMPLE, "--preview")) == 0
    assert not (tmp_path / "state.json").exists()


@posix_only
def test_full_run_completes_and_archives(args, tmp_path):
    assert main(args(SIMPLE, "--reboot-mode", "Never")) == 0

    archived = list(tmp_path.glob("state.*.completed.json"))
    assert len(archived) == 1
    data = json.loads(archived[0].read_text(encoding="utf-8"))
    assert [r["Name"] for r in data["CompletedSteps"]] == ["first", "second"]
    assert data["RebootMode"] == "Never"


@posix_only
def test_critical_failure_exit_code(args):
    failing = """
steps:
  - name: broken
    critical: true
    run: "exit 4"
"""
    assert main(args(failing)) == 1


@posix_only
def test_status_reports_state(args, capsys):
    assert main(args(SIMPLE, "--status")) == 0

    out = json.loads(capsys.readouterr().out)
    assert out["state"] is None
    assert out["resume_trigger_exists"] in (True, False)


def test_logging_falls_back_when_log_dir_is_unusable(tmp_path, monkeypatch):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    monkeypatch.chdir(tmp_path)

    chosen = configure_logging(str(blocker / "hostsetup.log"), also_console=False)

    assert Path(chosen).resolve() == (tmp_path / "hostsetup.log").resolve()
    assert configure_logging(str(tmp_path / "other.log"), also_console=False) == chosen


def test_role_is_required_for_a_run(args, capsys):
    with pytest.raises(SystemExit) as exc:
        main(args(SIMPLE, role=None))

    assert exc.value.code == 2
    assert "--role is required" in capsys.readouterr().err


def test_unexpected_error_is_logged_with_traceback(args, tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")

    assert main(args(SIMPLE, state=blocker / "state.json")) == 1

    log = (tmp_path / "hostsetup.log").read_text(encoding="utf-8")
    assert "hostsetup failed" in log
    assert "Traceback" in log


def test_bad_config_is_logged(args, tmp_path):
    config = tmp_path / "config.txt"
    config.write_text("state_path: x\n", encoding="utf-8")

    assert main(args(SIMPLE, config=config)) == 1

    log = (tmp_path / "hostsetup.log").read_text(encoding="utf-8")
    assert "Cannot load config" in log
    assert "config must be YAML" in log
