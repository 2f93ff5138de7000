"""Test the step executor."""

import pytest

from esc_deploy.commands import CommandError
from esc_deploy.errors import CredentialError, StepError, UserCancelled
from esc_deploy.pipeline import Pipeline, ProvisioningStep, StepOutcome

from conftest import FakeRunner


class RecordingStep(ProvisioningStep):
    def __init__(self, name, installed=True, fail=None, reversible=False, enabled=True):
        self.name = name
        self.description = name
        self.reversible = reversible
        self._installed = installed
        self._fail = fail
        self._enabled = enabled
        self.calls = []

    def enabled(self, config):
        return self._enabled

    def is_installed(self, ctx):
        self.calls.append("check")
        return self._installed

    def install(self, ctx):
        self.calls.append("install")

    def configure(self, ctx):
        self.calls.append("configure")
        if self._fail is not None:
            raise self._fail

    def rollback(self, ctx):
        self.calls.append("rollback")


class WarningStep(ProvisioningStep):
    name = "best_effort"

    def configure(self, ctx):
        ctx.warn("certificate not issued")


@pytest.fixture
def ctx(make_context, scenario_config):
    return make_context(scenario_config, FakeRunner())


class TestPipeline:
    def test_install_only_when_missing(self, ctx):
        present = RecordingStep("present", installed=True)
        missing = RecordingStep("missing", installed=False)

        result = Pipeline([present, missing]).run(ctx)

        assert present.calls == ["check", "configure"]
        assert missing.calls == ["check", "install", "configure"]
        assert result.already_satisfied == ["present"]
        assert result.completed_steps == ["present", "missing"]
        assert result.succeeded

    def test_disabled_step_skipped(self, ctx):
        off = RecordingStep("off", enabled=False)
        result = Pipeline([off]).run(ctx)

        assert off.calls == []
        assert result.skipped == ["off"]
        assert result.statuses["off"][0] == StepOutcome.SKIPPED.value

    def test_irreversible_failure_aborts(self, ctx):
        failing = RecordingStep("login", fail=CredentialError("Docker Hub login failed"))
        after = RecordingStep("after")

        result = Pipeline([failing, after]).run(ctx)

        assert not result.succeeded
        assert result.failed_step == "login"
        assert isinstance(result.error, CredentialError)
        assert after.calls == []
        assert result.statuses["after"][0] == "pending"

    def test_command_failure_carries_output(self, ctx):
        error = CommandError(["nginx", "-t"], 1, stderr="unexpected '}' in line 12")
        result = Pipeline([RecordingStep("nginx", fail=error)]).run(ctx)

        assert isinstance(result.error, StepError)
        assert result.error.step == "nginx"
        assert "line 12" in result.error.output

    def test_reversible_failure_rolls_back_and_continues(self, ctx):
        ssh = RecordingStep("ssh", fail=StepError("bad config"), reversible=True)
        after = RecordingStep("after")

        result = Pipeline([ssh, after]).run(ctx)

        assert ssh.calls[-1] == "rollback"
        assert result.rolled_back == ["ssh"]
        assert after.calls == ["check", "configure"]
        assert result.succeeded
        assert result.statuses["ssh"][0] == StepOutcome.ROLLED_BACK.value

    def test_warning_marks_step_recovered(self, ctx):
        result = Pipeline([WarningStep()]).run(ctx)

        assert result.statuses["best_effort"] == ("recovered", "certificate not issued")
        assert result.warnings == ["certificate not issued"]
        assert result.succeeded

    def test_cancellation_propagates(self, ctx):
        with pytest.raises(UserCancelled):
            Pipeline([RecordingStep("x", fail=UserCancelled("stop"))]).run(ctx)
