"""Turns templates plus a DeploymentConfig into artifacts on disk."""

import datetime
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional

from esc_deploy.config import DeploymentConfig
from esc_deploy.files import atomic_write, backup_file
from esc_deploy.log import get_logger
from esc_deploy.settings import ENV_FILENAME, HostPaths
from esc_deploy.templates import TEMPLATE_FUNCTIONS, TemplateId


class ValidationState(Enum):
    UNVALIDATED = "unvalidated"
    VALID = "valid"
    INVALID = "invalid"


@dataclass
class RenderedArtifact:
    """Rendered text and where it belongs."""

    template_id: TemplateId
    path: Path
    content: str
    rendered_at: datetime.datetime = field(default_factory=datetime.datetime.now)
    validation_state: ValidationState = ValidationState.UNVALIDATED
    mode: int = 0o644
    backup_path: Optional[Path] = None


EXECUTABLE = 0o755
PRIVATE = 0o600

ARTIFACT_MODES: Dict[TemplateId, int] = {
    TemplateId.ENV_FILE: PRIVATE,
    TemplateId.DEPLOY_SCRIPT: EXECUTABLE,
    TemplateId.START_SCRIPT: EXECUTABLE,
    TemplateId.STOP_SCRIPT: EXECUTABLE,
    TemplateId.STATUS_SCRIPT: EXECUTABLE,
    TemplateId.LOGS_SCRIPT: EXECUTABLE,
    TemplateId.SECURITY_STATUS_SCRIPT: EXECUTABLE,
}

_PATHS: Dict[TemplateId, Callable[[DeploymentConfig, HostPaths], Path]] = {
    TemplateId.ENV_FILE: lambda c, p: p.app_dir(c.app_dir) / ENV_FILENAME,
    TemplateId.NGINX_SITE: lambda c, p: p.nginx_site,
    TemplateId.FAIL2BAN_JAIL: lambda c, p: p.fail2ban_jail,
    TemplateId.SSHD_CONFIG: lambda c, p: p.sshd_config,
    TemplateId.SSH_BANNER: lambda c, p: p.ssh_banner,
    TemplateId.SYSTEMD_UNIT: lambda c, p: p.systemd_unit,
    TemplateId.CERTBOT_CRON: lambda c, p: p.certbot_cron,
    TemplateId.ERROR_PAGE_50X: lambda c, p: p.nginx_error_pages / "50x.html",
    TemplateId.ERROR_PAGE_40X: lambda c, p: p.nginx_error_pages / "40x.html",
    TemplateId.ERROR_PAGE_40X_AUTH: lambda c, p: p.nginx_error_pages / "40x_auth.html",
    TemplateId.DEPLOY_SCRIPT: lambda c, p: p.app_dir(c.app_dir) / "deploy.sh",
    TemplateId.START_SCRIPT: lambda c, p: p.app_dir(c.app_dir) / "start.sh",
    TemplateId.STOP_SCRIPT: lambda c, p: p.app_dir(c.app_dir) / "stop.sh",
    TemplateId.STATUS_SCRIPT: lambda c, p: p.app_dir(c.app_dir) / "status.sh",
    TemplateId.LOGS_SCRIPT: lambda c, p: p.app_dir(c.app_dir) / "logs.sh",
    TemplateId.SECURITY_STATUS_SCRIPT: lambda c, p: p.opt_bin / "security-status.sh",
}


def artifact_path(
    template_id: TemplateId, config: DeploymentConfig, paths: HostPaths
) -> Path:
    return _PATHS[template_id](config, paths)


def render_text(template_id: TemplateId, config: DeploymentConfig, **extra) -> str:
    """Template text only; identical inputs give identical output."""
    return TEMPLATE_FUNCTIONS[template_id](config, **extra)


def render(
    template_id: TemplateId,
    config: DeploymentConfig,
    paths: Optional[HostPaths] = None,
    **extra,
) -> RenderedArtifact:
    """Render a template into an artifact without touching the disk.

    ``extra`` is passed to the template function, e.g. ``secret_key`` for
    the environment file or ``owner`` for the systemd unit.
    """
    paths = paths or HostPaths()
    return RenderedArtifact(
        template_id=template_id,
        path=artifact_path(template_id, config, paths),
        content=render_text(template_id, config, **extra),
        mode=ARTIFACT_MODES.get(template_id, 0o644),
    )


def write_artifact(artifact: RenderedArtifact, backup: bool = False) -> RenderedArtifact:
    """Write an artifact atomically, optionally backing up what it replaces."""
    logger = get_logger()
    if backup:
        artifact.backup_path = backup_file(artifact.path)
    atomic_write(artifact.path, artifact.content, mode=artifact.mode)
    logger.debug(f"Wrote {artifact.template_id.value} to {artifact.path}")
    return artifact


def load_artifact(
    template_id: TemplateId,
    config: DeploymentConfig,
    paths: Optional[HostPaths] = None,
) -> RenderedArtifact:
    """Wrap the file already on disk for ``template_id`` as an artifact."""
    paths = paths or HostPaths()
    path = artifact_path(template_id, config, paths)
    return RenderedArtifact(
        template_id=template_id,
        path=path,
        content=path.read_text(encoding="utf-8", errors="replace"),
        rendered_at=datetime.datetime.fromtimestamp(path.stat().st_mtime),
        mode=ARTIFACT_MODES.get(template_id, 0o644),
    )
