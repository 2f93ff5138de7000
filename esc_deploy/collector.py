"""Interactive collection of the deployment configuration."""

from pathlib import Path
from typing import List, Optional

from esc_deploy.config import DeploymentConfig, SslMode, parse_whitelist
from esc_deploy.errors import ConfigurationError, UserCancelled
from esc_deploy.log import get_logger
from esc_deploy.prompts import InputSource
from esc_deploy.settings import (
    DEFAULT_APP_DIR,
    DEFAULT_SSH_PORT,
    RESERVED_PORTS,
    STOCK_SSH_PORT,
)
from esc_deploy.ui import (
    console,
    display_key_values,
    print_info,
    print_section,
    print_success,
    print_warning,
)

SSL_OPTIONS = {
    "1": SslMode.LETSENCRYPT,
    "2": SslMode.SELF_SIGNED,
    "3": SslMode.NONE,
}


class ConfigCollector:
    """Gathers a DeploymentConfig from an input source.

    Nothing is written to disk here; persisting is the pipeline's last step.
    """

    def __init__(self, source: InputSource):
        self.source = source
        self.logger = get_logger()

    def collect(
        self, existing: Optional[DeploymentConfig] = None, app_dir: Optional[Path] = None
    ) -> DeploymentConfig:
        print_section("Enterprise Deployment Configuration")

        if existing is not None:
            reused = self._offer_existing(existing)
            if reused is not None:
                return reused

        base = existing or DeploymentConfig()
        config = DeploymentConfig()
        first_run = existing is None

        config.domain = self._ask_required(
            "domain",
            "Enter your domain name (e.g., example.com)",
            default=base.domain,
            label="Domain name",
        )

        print_info("Docker Hub credentials required to pull private image")
        config.registry_username = self._ask_required(
            "registry_username",
            "Docker Hub username",
            default=base.registry_username,
            label="Docker Hub username",
        )
        config.registry_secret = self._ask_secret()

        default_dir = str(existing.app_dir) if existing else str(app_dir or DEFAULT_APP_DIR)
        config.app_dir = Path(
            self._ask_required(
                "app_dir", "Application directory", default=default_dir,
                label="Application directory",
            )
        )

        config.create_deployer_user = self.source.confirm(
            "create_deployer_user",
            "Create dedicated 'deployer' user? (recommended)",
            default=first_run,
        )
        config.configure_firewall = self.source.confirm(
            "configure_firewall",
            "Configure UFW firewall? (recommended)",
            default=first_run,
        )
        config.created_sudo_user = base.created_sudo_user

        self._collect_ssl(config, base)
        self._collect_security(config, base)
        self._collect_ssh(config, base)

        config.check()
        self._confirm(config)
        return config

    # ----------------------------------------------------------------
    # Existing configuration
    # ----------------------------------------------------------------
    def _offer_existing(self, existing: DeploymentConfig) -> Optional[DeploymentConfig]:
        print_success("Existing deployment detected!")
        display_key_values("Previous Configuration", existing.summary_rows())
        if not self.source.confirm(
            "use_existing", "Use existing configuration?", default=True
        ):
            return None

        config = DeploymentConfig.from_record(existing.to_record())
        try:
            config.check()
            if not config.registry_username:
                raise ConfigurationError("Docker Hub username is missing")
        except ConfigurationError as e:
            self.logger.warning(f"Saved configuration is incomplete: {e.message}")
            print_warning(f"Saved configuration is incomplete ({e.message}); collecting it again")
            return None

        print_info("Using saved configuration")
        config.registry_secret = self._ask_secret()
        config.create_deployer_user = False
        config.configure_firewall = False
        return config

    # ----------------------------------------------------------------
    # Sections
    # ----------------------------------------------------------------
    def _collect_ssl(self, config: DeploymentConfig, base: DeploymentConfig) -> None:
        print_section("SSL Certificate Configuration")
        console.print("  1) Let's Encrypt (Free, auto-renewing, requires valid domain)")
        console.print("  2) Self-signed (Works with IP address, not trusted by browsers)")
        console.print("  3) None (Use Cloudflare SSL only)")
        default_option = next(
            key for key, mode in SSL_OPTIONS.items() if mode is base.ssl_mode
        )
        option = self.source.choose(
            "ssl_option", "Select option", list(SSL_OPTIONS), default=default_option
        )
        config.ssl_mode = SSL_OPTIONS[option]

        if config.ssl_mode is SslMode.LETSENCRYPT:
            config.ssl_email = self._ask_required(
                "ssl_email",
                "Email for Let's Encrypt",
                default=base.ssl_email,
                label="Email",
            )
        elif config.ssl_mode is SslMode.SELF_SIGNED:
            print_warning("Self-signed certificates show security warnings")
        else:
            print_info("Using HTTP only (Cloudflare handles SSL)")

    def _collect_security(self, config: DeploymentConfig, base: DeploymentConfig) -> None:
        print_section("Enterprise Security Configuration")
        console.print("  • Fail2Ban intrusion prevention")
        console.print("  • Rate limiting protection")
        console.print("  • Security headers")
        config.security_enabled = self.source.confirm(
            "security_enabled", "Enable security features?", default=True
        )
        if config.security_enabled:
            config.admin_email = self._ask_required(
                "admin_email",
                "Admin email for security alerts",
                default=base.admin_email,
                label="Email",
            )
            print_success("Security features enabled")

    def _collect_ssh(self, config: DeploymentConfig, base: DeploymentConfig) -> None:
        print_section("SSH Hardening Configuration")
        console.print("  ✓ Change SSH port from default 22")
        console.print("  ✓ Add SSH banner warning")
        console.print("  ✓ Option to disable password authentication (key-only)")
        console.print("  ✓ Option to disable root login")
        console.print("  ✓ Restrict SSH to specific IPs (optional)")
        config.ssh_hardening = self.source.confirm(
            "ssh_hardening", "Enable SSH hardening?", default=True
        )
        if not config.ssh_hardening:
            config.ssh_port = STOCK_SSH_PORT
            return

        default_port = base.ssh_port if base.ssh_hardening else DEFAULT_SSH_PORT
        config.ssh_port = self._ask_ssh_port(default_port)
        config.admin_ip_whitelist = self._ask_whitelist(base.admin_ip_whitelist)

        print_info("Aggressive Fail2Ban bans after fewer failures, for longer")
        config.fail2ban_aggressive = self.source.confirm(
            "fail2ban_aggressive", "Enable aggressive Fail2Ban?", default=True
        )

        print_warning("Only disable root login if another sudo user can log in with a key")
        disable_root = self.source.confirm(
            "disable_root_login", "Disable root login?", default=False
        )
        config.disable_root_login = "yes" if disable_root else "no"

        print_warning("Only disable password authentication if SSH keys are tested")
        config.password_auth_enabled = not self.source.confirm(
            "disable_password_auth", "Disable password authentication?", default=False
        )

        config.enable_2fa_guide = self.source.confirm(
            "enable_2fa_guide", "Show SSH 2FA setup guide?", default=True
        )
        print_success("SSH hardening will be applied")

    def _confirm(self, config: DeploymentConfig) -> None:
        display_key_values("Configuration Summary", config.summary_rows())
        if not self.source.confirm("proceed", "Proceed with installation?", default=True):
            raise UserCancelled("Installation cancelled.")

    # ----------------------------------------------------------------
    # Field helpers
    # ----------------------------------------------------------------
    def _ask_required(
        self,
        key: str,
        prompt: str,
        default: str = "",
        label: str = "Value",
        password: bool = False,
    ) -> str:
        """Ask until a non-empty answer is given."""
        while True:
            value = self.source.ask(key, prompt, default=default or None, password=password)
            if value:
                return value
            print_warning(f"{label} cannot be empty")

    def _ask_secret(self) -> str:
        return self._ask_required(
            "registry_secret",
            "Docker Hub password/token",
            label="Docker Hub password",
            password=True,
        )

    def _ask_ssh_port(self, default: int) -> int:
        print_info("Choose SSH port (default 22 is under constant attack)")
        while True:
            raw = self.source.ask("ssh_port", "Enter SSH port", default=str(default))
            try:
                port = int(raw)
            except ValueError:
                print_warning(f"'{raw}' is not a port number")
                continue
            if not 1 <= port <= 65535:
                print_warning("SSH port must be between 1 and 65535")
                continue

            if port == STOCK_SSH_PORT:
                print_warning("Port 22 is constantly attacked by bots.")
                if self.source.confirm(
                    "confirm_ssh_port_22", "Continue with port 22?", default=False
                ):
                    return port
                continue

            if port in RESERVED_PORTS:
                print_warning(f"Port {port} is already allowed for {RESERVED_PORTS[port]}.")
                if self.source.confirm(
                    "confirm_ssh_port_collision",
                    f"Use port {port} for SSH anyway?",
                    default=False,
                ):
                    return port
                continue

            return port

    def _ask_whitelist(self, default: List[str]) -> List[str]:
        print_info("Restrict SSH to specific admin IPs? (e.g. 105.160.123.59 203.0.113.0/24)")
        while True:
            raw = self.source.ask(
                "admin_ips",
                "Admin IPs (space-separated), Enter to skip",
                default=" ".join(default),
            )
            try:
                return parse_whitelist(raw)
            except ValueError as e:
                print_warning(str(e))
