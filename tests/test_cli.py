"""Tests for the command-line interface."""

import json
import logging
import os
from unittest.mock import patch

import pytest

from school_mining.cli import build_parser, main
from school_mining.store import SnapshotStore


class TestBuildParser:
    """Tests for CLI argument parser."""

    def test_run_command(self) -> None:
        args = build_parser().parse_args(["run"])
        assert args.cmd == "run"
        assert args.verbose is False

    def test_verbose_flag(self) -> None:
        args = build_parser().parse_args(["-v", "decide"])
        assert args.verbose is True

    def test_show_requires_hash(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["show"])

    def test_verify_repair(self) -> None:
        args = build_parser().parse_args(["verify", "--repair"])
        assert args.repair is True

    def test_no_command_raises(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


@pytest.fixture
def env(tmp_path):
    """Point the CLI at tmp_path and restore root logging afterwards."""
    values = {
        "STORAGE_PATH": str(tmp_path / "data"),
        "LOG_PATH": str(tmp_path / "log"),
        "SECRET": "cli-secret",
    }
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    with patch.dict(os.environ, values):
        yield tmp_path
    for h in root.handlers:
        if h not in handlers:
            h.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestMain:
    """Tests for main() against a temporary storage directory."""

    def test_latest_empty(self, env) -> None:
        assert main(["latest"]) == 1

    def test_latest_and_show(self, env, make_snapshot, capsys) -> None:
        h = SnapshotStore(env / "data").put(make_snapshot())

        assert main(["latest"]) == 0
        assert json.loads(capsys.readouterr().out)["content_hash"] == h

        assert main(["show", h]) == 0
        shown = json.loads(capsys.readouterr().out)
        assert shown["school"] == "example-school"
        assert len(shown["lessons"]) == 2

    def test_show_missing(self, env) -> None:
        assert main(["show", "0" * 64]) == 1

    def test_decide_standalone(self, env, capsys) -> None:
        assert main(["decide"]) == 0
        assert json.loads(capsys.readouterr().out) == {"action": "run", "reason": None}

    def test_verify(self, env, capsys) -> None:
        assert main(["verify"]) == 0
        assert "4/4 checks passed" in capsys.readouterr().out

    def test_log_file_created(self, env) -> None:
        main(["verify"])
        assert (env / "log" / "school-mining.log").exists()
