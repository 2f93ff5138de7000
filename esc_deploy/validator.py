"""Checks a rendered environment file for values left at their placeholders."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Union

from esc_deploy.config import parse_key_values, read_key_values
from esc_deploy.errors import ConfigurationError
from esc_deploy.renderer import RenderedArtifact, ValidationState
from esc_deploy.templates import (
    ALLOWED_HOSTS_PLACEHOLDER,
    EMAIL_PASSWORD_PLACEHOLDER,
    EMAIL_USER_PLACEHOLDER,
    SECRET_KEY_PLACEHOLDER,
)

# SECRET_KEY values that mean "never generated"
SECRET_KEY_SENTINELS = (SECRET_KEY_PLACEHOLDER, "change-me-generate-a-secret-key")
DATABASE_PLACEHOLDER_PATTERN = "user:password@host"
DATABASE_KEYS = ("DATABASE_URL", "ANALYTICS_DATABASE_URL")


@dataclass
class ValidationResult:
    state: ValidationState
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.state is ValidationState.VALID


def check_env_values(values: Dict[str, str]) -> ValidationResult:
    """Classify parsed env values into critical errors and warnings."""
    errors: List[str] = []
    warnings: List[str] = []

    secret_key = values.get("SECRET_KEY", "")
    if not secret_key:
        errors.append("SECRET_KEY is not set")
    elif secret_key in SECRET_KEY_SENTINELS:
        errors.append("SECRET_KEY must be changed from its placeholder value")

    allowed_hosts = values.get("ALLOWED_HOSTS", "")
    if not allowed_hosts:
        errors.append("ALLOWED_HOSTS is not set")
    elif ALLOWED_HOSTS_PLACEHOLDER in allowed_hosts:
        errors.append(f"ALLOWED_HOSTS still contains '{ALLOWED_HOSTS_PLACEHOLDER}'")

    for key in DATABASE_KEYS:
        if DATABASE_PLACEHOLDER_PATTERN in values.get(key, ""):
            warnings.append(f"{key} still uses placeholder credentials")
    if values.get("EMAIL_HOST_PASSWORD") == EMAIL_PASSWORD_PLACEHOLDER:
        warnings.append("EMAIL_HOST_PASSWORD is not configured; outgoing email will fail")
    if values.get("EMAIL_HOST_USER") == EMAIL_USER_PLACEHOLDER:
        warnings.append("EMAIL_HOST_USER is not configured")

    state = ValidationState.INVALID if errors else ValidationState.VALID
    return ValidationResult(state, errors, warnings)


def validate_env_file(path: Union[str, Path]) -> ValidationResult:
    """Validate the environment file at ``path``.

    A missing file is a critical error. Everything else is decided by
    :func:`check_env_values`.
    """
    path = Path(path)
    if not path.is_file():
        return ValidationResult(
            ValidationState.INVALID, errors=[f"Environment file not found: {path}"]
        )
    try:
        values = read_key_values(path)
    except ConfigurationError as e:
        return ValidationResult(ValidationState.INVALID, errors=[e.message])
    return check_env_values(values)


def validate_artifact(artifact: RenderedArtifact) -> ValidationResult:
    """Validate an environment artifact and record the outcome on it.

    A written artifact is checked as it stands on disk so operator edits
    count; an unwritten one is checked from its rendered content.
    """
    if artifact.path.is_file():
        result = validate_env_file(artifact.path)
    else:
        result = check_env_values(parse_key_values(artifact.content))
    artifact.validation_state = result.state
    return result
