"""Test the command line surface."""

import json
import os
from pathlib import Path

import pytest
from click.testing import CliRunner

from esc_deploy import cli as cli_module
from esc_deploy.cli import cli, report_failure, run_install
from esc_deploy.config import ConfigStore
from esc_deploy.errors import StepError
from esc_deploy.prompts import ScriptedInput
from esc_deploy.templates import render_env_file
from esc_deploy.ui import console


@pytest.fixture
def answers_file(tmp_path, scenario_answers):
    path = tmp_path / "answers.json"
    path.write_text(json.dumps(scenario_answers))
    return path


class TestRunInstall:
    def test_full_run(self, host, fresh_runner, scenario_answers):
        source = ScriptedInput(dict(scenario_answers, start_now=False))

        code = run_install(source, Path("/opt/apps/esc"), runner=fresh_runner, paths=host)

        assert code == 0
        saved = ConfigStore.for_app_dir(host.app_dir(Path("/opt/apps/esc"))).load()
        assert saved.domain == "example.com"
        assert not fresh_runner.ran("docker", "pull")

    def test_start_runs_activator(self, host, fresh_runner, scenario_answers):
        source = ScriptedInput(scenario_answers)

        code = run_install(
            source, Path("/opt/apps/esc"), runner=fresh_runner, paths=host,
            start=True, settle_seconds=0,
        )

        assert code == 0
        assert fresh_runner.ran("docker", "compose", "-f", "compose.prod.yaml", "up", "-d")

    def test_cancel_exits_zero(self, host, fresh_runner, scenario_answers):
        source = ScriptedInput(dict(scenario_answers, proceed=False))

        assert run_install(source, Path("/opt/apps/esc"), runner=fresh_runner, paths=host) == 0
        assert fresh_runner.commands == []

    def test_unsupported_os_exits_one(self, host, fresh_runner, scenario_answers):
        host.os_release.write_text("ID=arch\n")
        source = ScriptedInput(scenario_answers)

        assert run_install(source, Path("/opt/apps/esc"), runner=fresh_runner, paths=host) == 1
        assert fresh_runner.commands == []


class TestCommands:
    def test_validate_env_invalid(self, tmp_path, scenario_config):
        env = tmp_path / ".env.docker"
        env.write_text(render_env_file(scenario_config))

        result = CliRunner().invoke(cli, ["validate-env", str(env)])

        assert result.exit_code == 1
        assert "SECRET_KEY" in result.output

    def test_validate_env_valid(self, tmp_path, scenario_config):
        env = tmp_path / ".env.docker"
        env.write_text(render_env_file(scenario_config, secret_key="real-key"))

        result = CliRunner().invoke(cli, ["validate-env", str(env)])

        assert result.exit_code == 0

    def test_validate_env_undecodable(self, tmp_path):
        env = tmp_path / ".env.docker"
        env.write_bytes(b"SECRET_KEY=caf\xe9\n")

        result = CliRunner().invoke(cli, ["validate-env", str(env)])

        assert result.exit_code == 1
        assert "UTF-8" in result.output

    def test_render_prints_artifact(self, answers_file):
        result = CliRunner().invoke(cli, ["render", "sshd_config", "--answers", str(answers_file)])

        assert result.exit_code == 0
        assert result.output.startswith("# ESC Enterprise SSH Configuration")
        assert "Port 2222\n" in result.output

    def test_install_requires_root(self, tmp_path, monkeypatch):
        monkeypatch.setattr(os, "geteuid", lambda: 1000)

        result = CliRunner().invoke(cli, ["install", "--log-file", str(tmp_path / "esc.log")])

        assert result.exit_code == 1

    def test_install_bad_answers_file(self, tmp_path, monkeypatch):
        monkeypatch.setattr(os, "geteuid", lambda: 0)
        bad = tmp_path / "answers.json"
        bad.write_text("[1, 2]")

        result = CliRunner().invoke(
            cli, ["install", "--answers", str(bad), "--log-file", str(tmp_path / "esc.log")]
        )

        assert result.exit_code == 1


def test_module_exposes_main():
    assert callable(cli_module.main)


def test_failure_report_shows_command_output():
    error = StepError("boom", step="nginx", output="emerg: unknown directive", hint="Run nginx -t")
    with console.capture() as capture:
        report_failure(error)

    output = capture.get()
    assert "Step 'nginx' failed: boom" in output
    assert "emerg: unknown directive" in output
    assert "Run nginx -t" in output
