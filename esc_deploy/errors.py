"""Error taxonomy for the deployment pipeline."""

from typing import Optional


class DeployError(Exception):
    """Base class for every failure the orchestrator reports."""

    exit_code: int = 1

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint


class UserCancelled(DeployError):
    """The operator declined a confirmation."""

    exit_code = 0


class UnsupportedEnvironmentError(DeployError):
    """Host OS, distribution or privileges are not supported."""


class CredentialError(DeployError):
    """Registry authentication failed."""


class ConfigurationError(DeployError):
    """A DeploymentConfig or answers file breaks an invariant."""


class AnswersExhaustedError(ConfigurationError):
    """A batch input source has no answer for a required prompt."""


class ValidationAbortedError(DeployError):
    """Critical validation errors remain and the operator stopped editing."""


class ActivationError(DeployError):
    """Managed services could not be brought up."""


class StepError(DeployError):
    """A provisioning step failed.

    Carries the step name and the last captured command output so the
    failure report can show both.
    """

    def __init__(
        self,
        message: str,
        step: str = "",
        output: str = "",
        hint: Optional[str] = None,
    ):
        super().__init__(message, hint)
        self.step = step
        self.output = output
