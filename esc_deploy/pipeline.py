"""Sequential step executor with rollback for reversible steps."""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from esc_deploy.commands import CommandError, CommandRunner
from esc_deploy.config import DeploymentConfig, configured_ssh_port
from esc_deploy.errors import DeployError, StepError, UserCancelled, ValidationAbortedError
from esc_deploy.log import get_logger
from esc_deploy.prompts import InputSource
from esc_deploy.settings import STOCK_SSH_PORT, HostPaths
from esc_deploy.ui import print_step, print_success, print_warning


class StepOutcome(Enum):
    OK = "ok"
    SKIPPED = "skipped"
    RECOVERED = "recovered"
    ROLLED_BACK = "rolled_back"
    FATAL = "failed"


@dataclass
class StepContext:
    """Everything a step may read or touch during a run."""

    config: DeploymentConfig
    runner: CommandRunner
    source: InputSource
    paths: HostPaths = field(default_factory=HostPaths)
    editor: Optional[str] = None
    owner: str = "root"
    # SSH port the daemon listens on right now. Read from sshd_config when the
    # pipeline starts and updated by the SSH step.
    effective_ssh_port: int = STOCK_SSH_PORT
    step_warnings: List[str] = field(default_factory=list)

    @property
    def interactive(self) -> bool:
        return self.source.interactive

    @property
    def intended_ssh_port(self) -> int:
        """Port SSH should end up on: the configured one when hardening, else the live one."""
        if self.config.ssh_hardening:
            return self.config.ssh_port
        return self.effective_ssh_port

    @property
    def app_dir(self):
        return self.paths.app_dir(self.config.app_dir)

    def warn(self, message: str) -> None:
        """Record a best-effort failure; the step ends as RECOVERED."""
        get_logger().warning(message)
        print_warning(message)
        self.step_warnings.append(message)

    @classmethod
    def for_host(
        cls,
        config: DeploymentConfig,
        runner: CommandRunner,
        source: InputSource,
        paths: Optional[HostPaths] = None,
    ) -> "StepContext":
        """Context for the real host, with owner and editor from the environment."""
        return cls(
            config=config,
            runner=runner,
            source=source,
            paths=paths or HostPaths(),
            editor=os.environ.get("EDITOR") or "nano",
            owner=os.environ.get("SUDO_USER") or "root",
        )


class ProvisioningStep:
    """One named unit of pipeline work.

    ``install`` runs only when ``is_installed`` says the host lacks what the
    step provides; ``configure`` runs on every pass. Reversible steps undo
    their configuration in ``rollback`` when it fails.
    """

    name: str = ""
    description: str = ""
    reversible: bool = False

    def enabled(self, config: DeploymentConfig) -> bool:
        return True

    def is_installed(self, ctx: StepContext) -> bool:
        return True

    def install(self, ctx: StepContext) -> None:
        pass

    def configure(self, ctx: StepContext) -> None:
        pass

    def rollback(self, ctx: StepContext) -> None:
        raise NotImplementedError(f"{self.name} cannot be rolled back")


@dataclass
class PipelineResult:
    completed_steps: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    rolled_back: List[str] = field(default_factory=list)
    already_satisfied: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[DeployError] = None
    statuses: Dict[str, Tuple[str, str]] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.failed_step is None


def as_step_error(step: ProvisioningStep, exc: Exception) -> DeployError:
    """Normalize a step failure so the report can name the step and output."""
    if isinstance(exc, CommandError):
        return StepError(
            f"{step.description or step.name} failed: {exc}",
            step=step.name,
            output=exc.output,
            hint="Fix the problem above and re-run the installer; finished steps are skipped.",
        )
    if isinstance(exc, StepError):
        exc.step = exc.step or step.name
        return exc
    if isinstance(exc, DeployError):
        return exc
    return StepError(f"{step.description or step.name} failed: {exc}", step=step.name)


class Pipeline:
    """Runs steps in order and accumulates a PipelineResult."""

    def __init__(self, steps: List[ProvisioningStep]):
        self.steps = steps
        self.logger = get_logger()

    def run(self, ctx: StepContext) -> PipelineResult:
        result = PipelineResult()
        ctx.effective_ssh_port = configured_ssh_port(ctx.paths.sshd_config)
        for step in self.steps:
            result.statuses[step.name] = ("pending", "")

        for step in self.steps:
            if not step.enabled(ctx.config):
                self.logger.debug(f"Step {step.name} not enabled, skipping")
                result.skipped.append(step.name)
                result.statuses[step.name] = (StepOutcome.SKIPPED.value, "Not requested")
                continue

            outcome, message = self._run_step(step, ctx, result)
            result.statuses[step.name] = (outcome.value, message)
            if outcome is StepOutcome.FATAL:
                result.failed_step = step.name
                break
        return result

    def _run_step(
        self, step: ProvisioningStep, ctx: StepContext, result: PipelineResult
    ) -> Tuple[StepOutcome, str]:
        print_step(step.description or step.name)
        ctx.step_warnings = []
        satisfied = False
        try:
            if step.is_installed(ctx):
                satisfied = True
                self.logger.info(f"{step.name}: already installed")
                result.already_satisfied.append(step.name)
            else:
                step.install(ctx)
            step.configure(ctx)
        except (UserCancelled, ValidationAbortedError):
            raise
        except (DeployError, CommandError, OSError) as e:
            error = as_step_error(step, e)
            if step.reversible:
                return self._roll_back(step, ctx, result, error)
            self.logger.error(f"{step.name}: {error.message}")
            result.error = error
            return StepOutcome.FATAL, error.message

        if ctx.step_warnings:
            result.warnings.extend(ctx.step_warnings)
            result.completed_steps.append(step.name)
            return StepOutcome.RECOVERED, ctx.step_warnings[-1]

        result.completed_steps.append(step.name)
        print_success(f"{step.description or step.name} complete")
        if satisfied:
            return StepOutcome.OK, "Already installed; configuration re-applied"
        return StepOutcome.OK, "Installed and configured"

    def _roll_back(
        self,
        step: ProvisioningStep,
        ctx: StepContext,
        result: PipelineResult,
        error: DeployError,
    ) -> Tuple[StepOutcome, str]:
        self.logger.warning(f"{step.name} failed, rolling back: {error.message}")
        try:
            step.rollback(ctx)
        except (DeployError, CommandError, OSError) as e:
            rollback_error = as_step_error(step, e)
            rollback_error.message = (
                f"Rollback of {step.name} failed after '{error.message}': "
                f"{rollback_error.message}"
            )
            self.logger.error(rollback_error.message)
            result.error = rollback_error
            return StepOutcome.FATAL, rollback_error.message

        warning = f"{step.description or step.name} rolled back: {error.message}"
        print_warning(warning)
        result.rolled_back.append(step.name)
        result.warnings.append(warning)
        return StepOutcome.ROLLED_BACK, warning
