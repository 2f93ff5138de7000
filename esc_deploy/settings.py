"""Static settings for the ESC deployment orchestrator."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

# ----------------------------------------------------------------
# Global Configuration
# ----------------------------------------------------------------
APP_NAME: str = "ESC Deploy"
APP_SUBTITLE: str = "Enterprise Django Deployment"
VERSION: str = "2.1.0"
LOGGER_NAME: str = "esc_deploy"

LOG_FILE: str = "/var/log/esc_deploy.log"
OPERATION_TIMEOUT: int = 600  # 10 minutes for package installs and image pulls
SETTLE_SECONDS: int = 60
EDITOR_TIMEOUT: int = 3600

DEFAULT_APP_DIR: str = "/opt/apps/esc"
DEFAULT_SSH_PORT: int = 2222
STOCK_SSH_PORT: int = 22
APP_PORT: int = 8000

CONFIG_FILENAME: str = ".deployment_config"
ENV_FILENAME: str = ".env.docker"
COMPOSE_FILE: str = "compose.prod.yaml"
DOCKER_IMAGE: str = "andreastuko/esc:latest"
REPOSITORY_URL: str = "https://github.com/andreas-tuko/esc-compose-prod.git"
DOCKER_INSTALL_URL: str = "https://get.docker.com"
SITE_NAME: str = "esc"
SERVICE_NAME: str = "esc"
DEPLOYER_USER: str = "deployer"

SUPPORTED_DISTROS: List[str] = ["ubuntu", "debian"]

BASE_PACKAGES: List[str] = [
    "curl",
    "wget",
    "git",
    "ufw",
    "nano",
    "jq",
    "mailutils",
    "fail2ban",
    "openssl",
    "ca-certificates",
]

# Ports already allowed through the firewall for other purposes. Choosing
# one of these as the SSH port needs explicit confirmation.
RESERVED_PORTS: Dict[int, str] = {
    80: "HTTP",
    443: "HTTPS",
    APP_PORT: "the application upstream",
}


# ----------------------------------------------------------------
# Host Layout
# ----------------------------------------------------------------
@dataclass
class HostPaths:
    """Locations of system files touched by the pipeline.

    Everything hangs off ``root`` so the whole layout can be relocated,
    e.g. under a temporary directory.
    """

    root: Path = field(default_factory=lambda: Path("/"))

    def _at(self, *parts: str) -> Path:
        return self.root.joinpath(*parts)

    @property
    def os_release(self) -> Path:
        return self._at("etc", "os-release")

    @property
    def sshd_config(self) -> Path:
        return self._at("etc", "ssh", "sshd_config")

    @property
    def ssh_banner(self) -> Path:
        return self._at("etc", "ssh", "sshd_banner")

    @property
    def nginx_site(self) -> Path:
        return self._at("etc", "nginx", "sites-available", SITE_NAME)

    @property
    def nginx_enabled_dir(self) -> Path:
        return self._at("etc", "nginx", "sites-enabled")

    @property
    def nginx_error_pages(self) -> Path:
        return self._at("etc", "nginx", "error_pages")

    @property
    def nginx_ssl_dir(self) -> Path:
        return self._at("etc", "nginx", "ssl")

    @property
    def nginx_log_dir(self) -> Path:
        return self._at("var", "log", "nginx")

    @property
    def letsencrypt_live(self) -> Path:
        return self._at("etc", "letsencrypt", "live")

    @property
    def certbot_cron(self) -> Path:
        return self._at("etc", "cron.d", "esc-certbot-renew")

    @property
    def fail2ban_jail(self) -> Path:
        return self._at("etc", "fail2ban", "jail.local")

    @property
    def systemd_unit(self) -> Path:
        return self._at("etc", "systemd", "system", f"{SERVICE_NAME}.service")

    @property
    def opt_bin(self) -> Path:
        return self._at("opt", "bin")

    @property
    def root_authorized_keys(self) -> Path:
        return self._at("root", ".ssh", "authorized_keys")

    def home(self, user: str) -> Path:
        return self._at("home", user)

    def app_dir(self, app_dir: Path) -> Path:
        """Map a configured application directory onto this host root."""
        app_dir = Path(app_dir)
        if app_dir.is_absolute():
            return self.root.joinpath(*app_dir.parts[1:])
        return self.root / app_dir
