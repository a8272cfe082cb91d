# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Tests for the provision CLI."""

import json
import os
import socket

import pytest
import typer
from typer.testing import CliRunner

from provision import __version__
from provision.cli import _click_exceptions, app, main
from provision.orchestrator import Orchestrator, lock_path, state_path
from provision.state import StateStore

runner = CliRunner()


@pytest.fixture
def target(tmp_path):
    root = tmp_path / "farscape"
    root.mkdir()
    return root


@pytest.fixture
def env_file(tmp_path):
    path = tmp_path / "farscape.env"
    path.write_text(
        "PROJECT_NAME=farscape\n"
        "DOMAIN=shop.example.com\n"
        "APP_AUTHOR=Farscape\n"
        "JWT_SECRET=jwt-secret-value\n"
    )
    return path


class TestBasics:
    """Tests for informational commands."""

    def test_version(self):
        """version prints the package version."""
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert f"provision version {__version__}" in result.output

    def test_workflows_lists_every_workflow(self):
        """workflows lists every workflow with its steps."""
        result = runner.invoke(app, ["workflows"])

        assert result.exit_code == 0
        for name in ("system-setup", "create-monorepo", "init-git", "publish-github",
                     "integrate-starter", "configure-apps", "install-dependencies"):
            assert f"{name}:" in result.output
        assert "create-root-package-json (after create-root-structure)" in result.output

    def test_unknown_force_step_is_usage_error(self, target):
        """An unknown --force step exits with the usage code."""
        result = runner.invoke(app, ["create-monorepo", "--target", str(target), "--force", "nope"])

        assert result.exit_code == 3
        assert "Unknown step" in result.output

    def test_missing_env_file_is_usage_error(self, target, tmp_path):
        """A missing --env-file exits with the usage code."""
        result = runner.invoke(app, [
            "create-monorepo", "--target", str(target), "--env-file", str(tmp_path / "missing.env"),
        ])

        assert result.exit_code == 3

    def test_bad_settings_file_is_usage_error(self, target, tmp_path):
        """An invalid --config exits with the usage code."""
        config = tmp_path / "config.yaml"
        config.write_text("max_retries: lots\n")

        result = runner.invoke(app, ["--config", str(config), "create-monorepo", "--target", str(target)])

        assert result.exit_code == 3


class TestWorkflowCommand:
    """Tests for running a workflow through the CLI."""

    def test_dry_run(self, target, env_file):
        """--dry-run reports the plan and changes nothing."""
        result = runner.invoke(app, [
            "create-monorepo", "--target", str(target), "--env-file", str(env_file), "--dry-run",
        ])

        assert result.exit_code == 0
        assert "Mode: dry run" in result.output
        assert "would run" in result.output
        assert list(target.iterdir()) == []
        assert not state_path(target, "create-monorepo").exists()

    def test_run_then_rerun(self, target, env_file):
        """A full run completes and a second run skips every step."""
        first = runner.invoke(app, ["create-monorepo", "--target", str(target), "--env-file", str(env_file)])

        assert first.exit_code == 0, first.output
        assert "State: completed" in first.output
        assert (target / "package.json").is_file()
        assert "jwt-secret-value" not in first.output

        second = runner.invoke(app, ["create-monorepo", "--target", str(target), "--env-file", str(env_file)])

        assert second.exit_code == 0
        assert "Ran: 0  Skipped: 10" in second.output

    def test_force_reruns_step(self, target, env_file):
        """--force re-runs the named step."""
        runner.invoke(app, ["create-monorepo", "--target", str(target), "--env-file", str(env_file)])
        (target / "README.md").write_text("edited by hand\n")

        result = runner.invoke(app, [
            "create-monorepo", "--target", str(target), "--env-file", str(env_file), "--force", "create-readme",
        ])

        assert result.exit_code == 0
        assert "[succeeded]" in result.output
        assert "edited by hand" not in (target / "README.md").read_text()

    def test_concurrent_run_exits_1(self, target, env_file):
        """A live lock on the target exits 1 without changes."""
        path = lock_path(target)
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"pid": os.getpid(), "host": socket.gethostname()}))

        result = runner.invoke(app, ["create-monorepo", "--target", str(target), "--env-file", str(env_file)])

        assert result.exit_code == 1
        assert "holds the lock" in result.output
        assert list(target.iterdir()) == []

    def test_precondition_failure_exits_1(self, tmp_path):
        """configure-apps aborts on a target without the backend app."""
        root = tmp_path / "empty"
        root.mkdir()

        result = runner.invoke(app, ["configure-apps", "--target", str(root)])

        assert result.exit_code == 1
        assert "State: aborted" in result.output
        assert "integrate-starter" in result.output


class TestStateCommands:
    """Tests for provision state show/clear."""

    def test_show_and_clear(self, target, env_file):
        """state show lists records and state clear removes them."""
        runner.invoke(app, ["create-monorepo", "--target", str(target), "--env-file", str(env_file)])

        shown = runner.invoke(app, ["state", "show", "create-monorepo", "--target", str(target)])
        assert shown.exit_code == 0
        assert "[done]    create-readme" in shown.output

        cleared = runner.invoke(app, [
            "state", "clear", "create-monorepo", "--target", str(target), "--step", "create-readme",
        ])
        assert cleared.exit_code == 0
        assert "Cleared 1 record(s)" in cleared.output
        store = StateStore(state_path(target, "create-monorepo"))
        assert store.get("create-readme") is None
        assert store.get("create-gitignore") is not None

        everything = runner.invoke(app, ["state", "clear", "create-monorepo", "--target", str(target)])
        assert "Cleared 9 record(s)" in everything.output

    def test_clear_unknown_step(self, target):
        """Clearing a step the workflow does not define is a usage error."""
        result = runner.invoke(app, ["state", "clear", "init-git", "--target", str(target), "--step", "nope"])

        assert result.exit_code == 3

    def test_show_unknown_workflow(self, target):
        """An unknown workflow is a usage error."""
        result = runner.invoke(app, ["state", "show", "nope", "--target", str(target)])

        assert result.exit_code == 3


class TestConfigCommand:
    """Tests for provision config validate."""

    def test_validate_defaults(self):
        """Without a settings file the defaults are shown."""
        result = runner.invoke(app, ["config", "validate"])

        assert result.exit_code == 0
        assert "defaults" in result.output
        assert "Configuration validation complete!" in result.output

    def test_validate_masks_secrets(self, env_file):
        """Env file secrets are masked in the listing."""
        result = runner.invoke(app, ["config", "validate", "--env-file", str(env_file)])

        assert result.exit_code == 0
        assert "JWT_SECRET=***" in result.output
        assert "PROJECT_NAME=farscape" in result.output

    def test_validate_invalid(self, tmp_path):
        """Invalid settings exit with the usage code."""
        config = tmp_path / "config.yaml"
        config.write_text("retry_backoff: [\n")

        result = runner.invoke(app, ["config", "validate", "--config", str(config)])

        assert result.exit_code == 3


class TestMain:
    """Tests for the main() entry point."""

    def test_parse_error_exits_3(self):
        """click parse errors map to the usage exit code."""
        with pytest.raises(SystemExit) as exc:
            main(["create-monorepo"])

        assert exc.value.code == 3

    def test_unknown_command_exits_3(self):
        """An unknown subcommand is a usage error."""
        with pytest.raises(SystemExit) as exc:
            main(["frobnicate"])

        assert exc.value.code == 3

    def test_exit_code_passes_through(self, capsys):
        """Command exit codes reach the process."""
        with pytest.raises(SystemExit) as exc:
            main(["version"])

        assert exc.value.code == 0
        assert __version__ in capsys.readouterr().out

    def test_missing_option_exits_3(self, capsys):
        """A missing required option is reported and exits with the usage code."""
        with pytest.raises(SystemExit) as exc:
            main(["create-monorepo"])

        assert exc.value.code == 3
        assert "--target" in capsys.readouterr().err

    def test_unknown_option_exits_3(self, tmp_path):
        """An unknown option is a usage error."""
        with pytest.raises(SystemExit) as exc:
            main(["create-monorepo", "--target", str(tmp_path), "--frobnicate"])

        assert exc.value.code == 3

    def test_interrupt_exits_130(self, tmp_path, monkeypatch, capsys):
        """Ctrl-C during a workflow exits 130."""
        def interrupted(self, *args, **kwargs):
            raise KeyboardInterrupt

        monkeypatch.setattr(Orchestrator, "run", interrupted)

        with pytest.raises(SystemExit) as exc:
            main(["create-monorepo", "--target", str(tmp_path)])

        assert exc.value.code == 130
        assert "Aborted!" in capsys.readouterr().err

    def test_exceptions_match_the_command(self):
        """Errors raised by the command are caught with its own click's classes."""
        command = typer.main.get_command(app)
        exceptions = _click_exceptions(command)

        with pytest.raises(exceptions.UsageError):
            command.main(args=["create-monorepo"], prog_name="provision", standalone_mode=False)
