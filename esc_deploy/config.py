"""Deployment configuration record and its on-disk store."""

import datetime
import ipaddress
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from esc_deploy.errors import ConfigurationError
from esc_deploy.files import atomic_write
from esc_deploy.log import get_logger
from esc_deploy.settings import (
    CONFIG_FILENAME,
    DEFAULT_APP_DIR,
    DEFAULT_SSH_PORT,
    STOCK_SSH_PORT,
)

TRUE_VALUES = ("true", "yes", "y", "1", "on")


class SslMode(Enum):
    LETSENCRYPT = "letsencrypt"
    SELF_SIGNED = "selfsigned"
    NONE = "none"

    @property
    def label(self) -> str:
        return {
            SslMode.LETSENCRYPT: "Let's Encrypt",
            SslMode.SELF_SIGNED: "Self-signed",
            SslMode.NONE: "None (HTTP only)",
        }[self]


def parse_bool(value: str) -> bool:
    return value.strip().lower() in TRUE_VALUES


def parse_whitelist(raw: str) -> List[str]:
    """Split a space or comma separated list of IPs/CIDRs.

    Raises ValueError naming the first entry that is neither.
    """
    entries: List[str] = []
    for token in raw.replace(",", " ").split():
        try:
            if "/" in token:
                ipaddress.ip_network(token, strict=False)
            else:
                ipaddress.ip_address(token)
        except ValueError:
            raise ValueError(f"'{token}' is not an IP address or CIDR range")
        if token not in entries:
            entries.append(token)
    return entries


@dataclass
class DeploymentConfig:
    """Everything the pipeline needs to provision one host."""

    domain: str = ""
    registry_username: str = ""
    registry_secret: str = field(default="", repr=False)
    app_dir: Path = field(default_factory=lambda: Path(DEFAULT_APP_DIR))
    ssl_mode: SslMode = SslMode.LETSENCRYPT
    ssl_email: str = ""
    security_enabled: bool = True
    admin_email: str = ""
    ssh_hardening: bool = False
    ssh_port: int = STOCK_SSH_PORT
    disable_root_login: str = "no"
    password_auth_enabled: bool = True
    admin_ip_whitelist: List[str] = field(default_factory=list)
    fail2ban_aggressive: bool = False
    enable_2fa_guide: bool = False
    create_deployer_user: bool = False
    configure_firewall: bool = False
    created_sudo_user: str = ""

    @property
    def root_login_disabled(self) -> bool:
        return self.disable_root_login == "yes"

    @property
    def permit_root_login(self) -> str:
        """Value for sshd's PermitRootLogin."""
        return "no" if self.root_login_disabled else "yes"

    @property
    def server_names(self) -> str:
        return f"{self.domain} www.{self.domain}"

    def check(self) -> None:
        """Raise ConfigurationError when an invariant does not hold."""
        if not self.domain:
            raise ConfigurationError("Domain name cannot be empty")
        if self.ssl_mode is SslMode.LETSENCRYPT and not self.ssl_email:
            raise ConfigurationError("Let's Encrypt requires an email address")
        if self.security_enabled and not self.admin_email:
            raise ConfigurationError("Security features require an admin email")
        if not 1 <= self.ssh_port <= 65535:
            raise ConfigurationError(f"SSH port {self.ssh_port} is out of range")
        if self.disable_root_login not in ("yes", "no"):
            raise ConfigurationError("disable_root_login must be 'yes' or 'no'")

    def summary_rows(self) -> List[Tuple[str, str]]:
        """Human readable rows for the confirmation summary."""
        rows = [
            ("Domain", self.domain),
            ("Registry user", self.registry_username),
            ("App directory", str(self.app_dir)),
            ("SSL", self.ssl_mode.label),
        ]
        if self.ssl_mode is SslMode.LETSENCRYPT:
            rows.append(("SSL email", self.ssl_email))
        rows.append(("Security", "enabled" if self.security_enabled else "disabled"))
        if self.security_enabled:
            rows.append(("Admin email", self.admin_email))
        rows.append(("Deployer user", "create" if self.create_deployer_user else "skip"))
        rows.append(("Firewall", "configure" if self.configure_firewall else "skip"))
        rows.append(("SSH hardening", "enabled" if self.ssh_hardening else "disabled"))
        if self.ssh_hardening:
            rows.append(("SSH port", str(self.ssh_port)))
            if self.admin_ip_whitelist:
                rows.append(("Whitelisted IPs", " ".join(self.admin_ip_whitelist)))
            rows.append(("Aggressive Fail2Ban", str(self.fail2ban_aggressive).lower()))
            rows.append(("Root login", "disabled" if self.root_login_disabled else "enabled"))
            rows.append(
                ("Password auth", "enabled" if self.password_auth_enabled else "disabled")
            )
        return rows

    # ----------------------------------------------------------------
    # Record (de)serialization
    # ----------------------------------------------------------------
    def to_record(self) -> Dict[str, str]:
        """Persistable key/value form. The registry secret is left out."""
        return {
            "DOMAIN_NAME": self.domain,
            "DOCKER_USERNAME": self.registry_username,
            "APP_DIR": str(self.app_dir),
            "SETUP_SSL": self.ssl_mode.value,
            "SSL_EMAIL": self.ssl_email,
            "SECURITY_ENABLED": str(self.security_enabled).lower(),
            "ADMIN_EMAIL": self.admin_email,
            "SSH_HARDENING": str(self.ssh_hardening).lower(),
            "SSH_PORT": str(self.ssh_port),
            "FAIL2BAN_AGGRESSIVE": str(self.fail2ban_aggressive).lower(),
            "ENABLE_2FA_SETUP": str(self.enable_2fa_guide).lower(),
            "FIREWALL_WHITELIST": " ".join(self.admin_ip_whitelist),
            "DISABLE_ROOT_LOGIN": self.disable_root_login,
            "PASSWORD_AUTH": "yes" if self.password_auth_enabled else "no",
            "CREATED_SUDO_USER": self.created_sudo_user,
        }

    @classmethod
    def from_record(cls, record: Dict[str, str]) -> "DeploymentConfig":
        """Build a config from a stored record, defaulting missing keys."""
        config = cls()
        config.domain = record.get("DOMAIN_NAME", "")
        config.registry_username = record.get("DOCKER_USERNAME", "")
        config.app_dir = Path(record.get("APP_DIR") or DEFAULT_APP_DIR)
        try:
            config.ssl_mode = SslMode(record.get("SETUP_SSL", SslMode.LETSENCRYPT.value))
        except ValueError:
            raise ConfigurationError(f"Unknown SSL mode '{record.get('SETUP_SSL')}'")
        config.ssl_email = record.get("SSL_EMAIL", "")
        config.security_enabled = parse_bool(record.get("SECURITY_ENABLED", "false"))
        config.admin_email = record.get("ADMIN_EMAIL", "")
        config.ssh_hardening = parse_bool(record.get("SSH_HARDENING", "false"))
        default_port = DEFAULT_SSH_PORT if config.ssh_hardening else STOCK_SSH_PORT
        try:
            config.ssh_port = int(record.get("SSH_PORT") or default_port)
        except ValueError:
            raise ConfigurationError(f"Invalid SSH port '{record.get('SSH_PORT')}'")
        config.fail2ban_aggressive = parse_bool(record.get("FAIL2BAN_AGGRESSIVE", "false"))
        config.enable_2fa_guide = parse_bool(record.get("ENABLE_2FA_SETUP", "false"))
        try:
            config.admin_ip_whitelist = parse_whitelist(record.get("FIREWALL_WHITELIST", ""))
        except ValueError as e:
            raise ConfigurationError(f"Invalid FIREWALL_WHITELIST: {e}")
        config.disable_root_login = "yes" if parse_bool(
            record.get("DISABLE_ROOT_LOGIN", "no")
        ) else "no"
        config.password_auth_enabled = parse_bool(record.get("PASSWORD_AUTH", "yes"))
        config.created_sudo_user = record.get("CREATED_SUDO_USER", "")
        return config


# ----------------------------------------------------------------
# Configuration Store
# ----------------------------------------------------------------
def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        inner = value[1:-1]
        if value[0] == '"':
            inner = inner.replace('\\"', '"').replace("\\\\", "\\")
        return inner
    return value


def parse_key_values(text: str) -> Dict[str, str]:
    """Parse ``KEY=value`` lines, skipping blanks and comments."""
    record: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export "):]
        key, _, value = line.partition("=")
        record[key.strip()] = _unquote(value)
    return record


def read_key_values(path: Path) -> Dict[str, str]:
    """Parse a ``KEY=VALUE`` file; undecodable bytes are a ConfigurationError."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ConfigurationError(
            f"{path} is not valid UTF-8 (byte {e.start})",
            hint=f"Re-save {path} as UTF-8 and re-run.",
        ) from e
    return parse_key_values(text)


PORT_LINE = re.compile(r"^\s*Port\s+(\d+)\s*$", re.IGNORECASE | re.MULTILINE)


def configured_ssh_port(sshd_config: Path) -> int:
    """Port the daemon config currently declares (22 when unset)."""
    if not sshd_config.is_file():
        return STOCK_SSH_PORT
    match = PORT_LINE.search(sshd_config.read_text(encoding="utf-8", errors="replace"))
    return int(match.group(1)) if match else STOCK_SSH_PORT


class ConfigStore:
    """Reads and writes the deployment record kept in the app directory."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.logger = get_logger()

    @classmethod
    def for_app_dir(cls, app_dir: Path) -> "ConfigStore":
        return cls(Path(app_dir) / CONFIG_FILENAME)

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> Optional[DeploymentConfig]:
        """Return the stored config, or None on a first run."""
        if not self.exists():
            return None
        self.logger.info(f"Found existing configuration at {self.path}")
        return DeploymentConfig.from_record(read_key_values(self.path))

    def save(self, config: DeploymentConfig) -> None:
        """Persist the config atomically with owner-only permissions."""
        stamp = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        lines = [
            "# ESC Deployment Configuration",
            f"# Auto-generated - Last updated: {stamp}",
        ]
        lines.extend(f"{key}={_quote(value)}" for key, value in config.to_record().items())
        atomic_write(self.path, "\n".join(lines) + "\n", mode=0o600)
        self.logger.info(f"Configuration saved to {self.path}")
