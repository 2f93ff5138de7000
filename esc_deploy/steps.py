"""The provisioning steps, in the order the pipeline runs them."""

import dataclasses
import os
import secrets
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional

from esc_deploy.commands import CommandError
from esc_deploy.config import (
    ConfigStore,
    DeploymentConfig,
    SslMode,
    configured_ssh_port,
    read_key_values,
)
from esc_deploy.errors import (
    ConfigurationError,
    CredentialError,
    StepError,
    UnsupportedEnvironmentError,
    ValidationAbortedError,
)
from esc_deploy.files import backup_file, restore_file
from esc_deploy.log import get_logger
from esc_deploy.pipeline import ProvisioningStep, StepContext
from esc_deploy.renderer import (
    RenderedArtifact,
    ValidationState,
    load_artifact,
    render,
    write_artifact,
)
from esc_deploy.settings import (
    BASE_PACKAGES,
    DEPLOYER_USER,
    DOCKER_INSTALL_URL,
    EDITOR_TIMEOUT,
    ENV_FILENAME,
    REPOSITORY_URL,
    SERVICE_NAME,
    SITE_NAME,
    STOCK_SSH_PORT,
    SUPPORTED_DISTROS,
)
from esc_deploy.templates import TemplateId
from esc_deploy.ui import (
    NordColors,
    display_panel,
    print_error,
    print_info,
    print_success,
    print_warning,
    spinner,
)
from esc_deploy.validator import SECRET_KEY_SENTINELS, validate_artifact

logger = get_logger()

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


def apt_install(ctx: StepContext, packages: List[str]) -> None:
    with spinner(f"Installing {', '.join(packages)}..."):
        ctx.runner.run(["apt-get", "install", "-y"] + packages, env=APT_ENV)
    logger.info(f"Installed packages: {', '.join(packages)}")


def systemctl(ctx: StepContext, *args: str) -> None:
    ctx.runner.run(["systemctl"] + list(args))


# ----------------------------------------------------------------
# Host Baseline
# ----------------------------------------------------------------
class OsCheckStep(ProvisioningStep):
    name = "os_check"
    description = "Checking operating system"

    def configure(self, ctx: StepContext) -> None:
        os_release = ctx.paths.os_release
        if not os_release.is_file():
            raise UnsupportedEnvironmentError(
                f"Cannot determine the distribution: {os_release} is missing",
                hint="Run the installer on Ubuntu or Debian.",
            )
        info = read_key_values(os_release)
        distro = info.get("ID", "").lower()
        family = info.get("ID_LIKE", "").lower().split()
        if distro not in SUPPORTED_DISTROS and not set(family) & set(SUPPORTED_DISTROS):
            raise UnsupportedEnvironmentError(
                f"Unsupported distribution '{distro or 'unknown'}'",
                hint=f"Supported distributions: {', '.join(SUPPORTED_DISTROS)}.",
            )
        print_success(f"Detected {info.get('PRETTY_NAME', distro)}")


class PackagesStep(ProvisioningStep):
    name = "packages"
    description = "Installing base packages"

    def __init__(self, packages: Optional[List[str]] = None):
        self.packages = packages or list(BASE_PACKAGES)

    def _missing(self, ctx: StepContext) -> List[str]:
        return [p for p in self.packages if not ctx.runner.succeeds(["dpkg", "-s", p])]

    def is_installed(self, ctx: StepContext) -> bool:
        return not self._missing(ctx)

    def install(self, ctx: StepContext) -> None:
        missing = self._missing(ctx)
        with spinner("Updating package lists..."):
            ctx.runner.run(["apt-get", "update"], env=APT_ENV)
        apt_install(ctx, missing)


class DockerStep(ProvisioningStep):
    name = "docker"
    description = "Installing Docker"

    def is_installed(self, ctx: StepContext) -> bool:
        return ctx.runner.command_exists("docker") and ctx.runner.succeeds(
            ["docker", "compose", "version"]
        )

    def install(self, ctx: StepContext) -> None:
        if not ctx.runner.command_exists("docker"):
            with tempfile.TemporaryDirectory() as tmp:
                script = os.path.join(tmp, "get-docker.sh")
                with spinner("Installing Docker Engine..."):
                    ctx.runner.run(["curl", "-fsSL", DOCKER_INSTALL_URL, "-o", script])
                    ctx.runner.run(["sh", script])
        if not ctx.runner.succeeds(["docker", "compose", "version"]):
            apt_install(ctx, ["docker-compose-plugin"])

    def configure(self, ctx: StepContext) -> None:
        if ctx.owner != "root":
            ctx.runner.run(["usermod", "-aG", "docker", ctx.owner])
            print_info(f"Added {ctx.owner} to the docker group (log in again to apply)")
        systemctl(ctx, "enable", "--now", "docker")


class DeployerUserStep(ProvisioningStep):
    """Dedicated sudo user with the operator's SSH keys."""

    name = "deployer_user"
    description = f"Creating '{DEPLOYER_USER}' user"

    def enabled(self, config: DeploymentConfig) -> bool:
        return config.create_deployer_user

    def is_installed(self, ctx: StepContext) -> bool:
        return ctx.runner.succeeds(["id", DEPLOYER_USER])

    def install(self, ctx: StepContext) -> None:
        ctx.runner.run(["useradd", "-m", "-s", "/bin/bash", DEPLOYER_USER])
        if ctx.interactive:
            print_info(f"Set a password for {DEPLOYER_USER}")
            try:
                ctx.runner.run(
                    ["passwd", DEPLOYER_USER],
                    capture_output=False,
                    timeout=EDITOR_TIMEOUT,
                )
            except CommandError:
                ctx.warn(f"Password not set; run 'passwd {DEPLOYER_USER}' later")
        else:
            ctx.warn(f"No password set for {DEPLOYER_USER}; key-based login only")

    def configure(self, ctx: StepContext) -> None:
        ctx.runner.run(["usermod", "-aG", "docker,sudo", DEPLOYER_USER])

        ssh_dir = ctx.paths.home(DEPLOYER_USER) / ".ssh"
        ssh_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(ssh_dir, 0o700)
        root_keys = ctx.paths.root_authorized_keys
        if root_keys.is_file():
            target = ssh_dir / "authorized_keys"
            shutil.copyfile(root_keys, target)
            os.chmod(target, 0o600)
            print_success("Copied root's SSH keys")
        else:
            print_warning(f"No root SSH keys found; add keys for {DEPLOYER_USER} manually")
        ctx.runner.run(["chown", "-R", f"{DEPLOYER_USER}:{DEPLOYER_USER}", str(ssh_dir)])
        ctx.config.created_sudo_user = DEPLOYER_USER


# ----------------------------------------------------------------
# Application
# ----------------------------------------------------------------
class AppSourceStep(ProvisioningStep):
    name = "app_source"
    description = "Fetching application source"

    def __init__(self, repository: str = REPOSITORY_URL):
        self.repository = repository
        self._cloned = False

    def is_installed(self, ctx: StepContext) -> bool:
        return (ctx.app_dir / ".git").is_dir()

    def install(self, ctx: StepContext) -> None:
        app_dir = ctx.app_dir
        app_dir.mkdir(parents=True, exist_ok=True)
        # Clone beside the target so existing files (saved config, env) survive.
        tmp = Path(tempfile.mkdtemp(prefix=".clone-", dir=str(app_dir.parent)))
        try:
            with spinner("Cloning repository..."):
                ctx.runner.run(["git", "clone", "--no-checkout", self.repository, str(tmp)])
            shutil.move(str(tmp / ".git"), str(app_dir / ".git"))
        finally:
            shutil.rmtree(tmp, ignore_errors=True)
        ctx.runner.run(["git", "-C", str(app_dir), "reset", "--hard", "HEAD"])
        self._cloned = True
        print_success(f"Repository cloned into {ctx.config.app_dir}")

    def configure(self, ctx: StepContext) -> None:
        if not self._cloned:
            with spinner("Pulling latest changes..."):
                ctx.runner.run(["git", "-C", str(ctx.app_dir), "pull", "--ff-only"])
            print_success("Repository updated")
        if ctx.owner != "root":
            ctx.runner.run(["chown", "-R", f"{ctx.owner}:{ctx.owner}", str(ctx.app_dir)])


class RegistryLoginStep(ProvisioningStep):
    name = "registry_login"
    description = "Logging in to Docker Hub"

    def configure(self, ctx: StepContext) -> None:
        config = ctx.config
        try:
            ctx.runner.run(
                ["docker", "login", "-u", config.registry_username, "--password-stdin"],
                input=config.registry_secret,
            )
        except CommandError as e:
            raise CredentialError(
                f"Docker Hub login failed for '{config.registry_username}'",
                hint="Check the username and access token, then re-run the installer.",
            ) from e


class EnvFileStep(ProvisioningStep):
    """Render the environment file and hold the run until it validates."""

    name = "env_file"
    description = "Configuring environment file"

    def __init__(self):
        self.artifact: Optional[RenderedArtifact] = None

    def configure(self, ctx: StepContext) -> None:
        path = ctx.app_dir / ENV_FILENAME
        if path.exists():
            print_warning("Environment file exists")
            if ctx.source.confirm("reconfigure_env", "Reconfigure it?", default=False):
                self.artifact = self._write(ctx, path)
            else:
                print_info("Keeping existing environment file")
                self.artifact = load_artifact(TemplateId.ENV_FILE, ctx.config, ctx.paths)
        else:
            self.artifact = self._write(ctx, path)
        self._validate(ctx, self.artifact)

    def _write(self, ctx: StepContext, path: Path) -> RenderedArtifact:
        artifact = render(
            TemplateId.ENV_FILE, ctx.config, ctx.paths, secret_key=self._secret_key(path)
        )
        write_artifact(artifact, backup=True)
        if artifact.backup_path:
            print_info(f"Backup created: {artifact.backup_path.name}")
        print_success("Environment file created")
        if ctx.interactive:
            print_info("Opening editor for configuration...")
            self._edit(ctx, path)
        return artifact

    @staticmethod
    def _secret_key(path: Path) -> str:
        """Keep a real SECRET_KEY across regenerations, else make a new one."""
        current = ""
        if path.is_file():
            try:
                current = read_key_values(path).get("SECRET_KEY", "")
            except ConfigurationError as e:
                logger.warning(f"{e.message}; generating a new SECRET_KEY")
        if current and current not in SECRET_KEY_SENTINELS:
            return current
        return secrets.token_urlsafe(50)

    @staticmethod
    def _edit(ctx: StepContext, path: Path) -> None:
        ctx.runner.run(
            [ctx.editor or "nano", str(path)],
            check=False,
            capture_output=False,
            timeout=EDITOR_TIMEOUT,
        )

    def _validate(self, ctx: StepContext, artifact: RenderedArtifact) -> None:
        while True:
            result = validate_artifact(artifact)
            for warning in result.warnings:
                logger.warning(warning)
                print_warning(warning)
            if result.state is ValidationState.VALID:
                print_success("Environment validated")
                return

            for error in result.errors:
                logger.error(error)
                print_error(error)
            if not ctx.interactive or not ctx.source.confirm(
                "edit_env", "Edit configuration?", default=True
            ):
                raise ValidationAbortedError(
                    "Cannot proceed with invalid configuration",
                    hint=(
                        f"Fix {artifact.path} and re-run, or check it with "
                        f"'esc-deploy validate-env {artifact.path}'."
                    ),
                )
            self._edit(ctx, artifact.path)


# ----------------------------------------------------------------
# Reverse Proxy
# ----------------------------------------------------------------
class NginxStep(ProvisioningStep):
    name = "nginx"
    description = "Configuring Nginx"

    def is_installed(self, ctx: StepContext) -> bool:
        if not ctx.runner.command_exists("nginx"):
            return False
        if ctx.config.ssl_mode is SslMode.LETSENCRYPT:
            return ctx.runner.command_exists("certbot")
        return True

    def install(self, ctx: StepContext) -> None:
        packages = ["nginx"]
        if ctx.config.ssl_mode is SslMode.LETSENCRYPT:
            packages += ["certbot", "python3-certbot-nginx"]
        apt_install(ctx, packages)

    def configure(self, ctx: StepContext) -> None:
        config = ctx.config
        for page in (
            TemplateId.ERROR_PAGE_50X,
            TemplateId.ERROR_PAGE_40X,
            TemplateId.ERROR_PAGE_40X_AUTH,
        ):
            write_artifact(render(page, config, ctx.paths))
        log_dir = ctx.paths.nginx_log_dir
        log_dir.mkdir(parents=True, exist_ok=True)
        for log_name in (f"{SITE_NAME}_access.log", f"{SITE_NAME}_error.log"):
            (log_dir / log_name).touch(exist_ok=True)

        site_config = config
        if config.ssl_mode is SslMode.LETSENCRYPT:
            if not self._obtain_letsencrypt(ctx):
                site_config = dataclasses.replace(config, ssl_mode=SslMode.SELF_SIGNED)
                self._self_signed(ctx)
        elif config.ssl_mode is SslMode.SELF_SIGNED:
            self._self_signed(ctx)

        site = write_artifact(render(TemplateId.NGINX_SITE, site_config, ctx.paths), backup=True)
        self._enable_site(ctx, site.path)

        try:
            ctx.runner.run(["nginx", "-t"])
        except CommandError as e:
            raise StepError(
                "Nginx configuration test failed",
                step=self.name,
                output=e.output,
                hint=f"Inspect {site.path}, fix it and run 'nginx -t'.",
            ) from e
        systemctl(ctx, "restart", "nginx")
        systemctl(ctx, "enable", "nginx")
        print_success(f"Nginx serving {config.server_names}")

    @staticmethod
    def _enable_site(ctx: StepContext, site_path: Path) -> None:
        enabled_dir = ctx.paths.nginx_enabled_dir
        enabled_dir.mkdir(parents=True, exist_ok=True)
        link = enabled_dir / SITE_NAME
        if link.is_symlink() or link.exists():
            link.unlink()
        link.symlink_to(site_path)
        default = enabled_dir / "default"
        if default.is_symlink() or default.exists():
            default.unlink()

    def _obtain_letsencrypt(self, ctx: StepContext) -> bool:
        """Issue the certificate unless present. False means issuance failed."""
        config = ctx.config
        write_artifact(render(TemplateId.CERTBOT_CRON, config, ctx.paths))
        live = ctx.paths.letsencrypt_live / config.domain / "fullchain.pem"
        if live.is_file():
            logger.info(f"Certificate for {config.domain} already present")
            return True
        try:
            with spinner("Obtaining SSL certificate..."):
                ctx.runner.run(
                    [
                        "certbot", "certonly", "--nginx", "--non-interactive",
                        "--agree-tos", "--email", config.ssl_email,
                        "-d", config.domain, "-d", f"www.{config.domain}",
                    ]
                )
        except CommandError as e:
            logger.debug(e.output)
            ctx.warn(
                "Certificate obtainment failed; serving a self-signed certificate "
                "until 'certbot certonly --nginx' succeeds"
            )
            return False
        print_success(f"Certificate issued for {config.domain}")
        return True

    @staticmethod
    def _self_signed(ctx: StepContext) -> None:
        ssl_dir = ctx.paths.nginx_ssl_dir
        key = ssl_dir / "selfsigned.key"
        cert = ssl_dir / "selfsigned.crt"
        if key.is_file() and cert.is_file():
            return
        ssl_dir.mkdir(parents=True, exist_ok=True)
        ctx.runner.run(
            [
                "openssl", "req", "-x509", "-nodes", "-days", "365",
                "-newkey", "rsa:2048",
                "-keyout", str(key), "-out", str(cert),
                "-subj", f"/C=US/ST=State/L=City/O=Organization/CN={ctx.config.domain}",
            ]
        )
        if key.exists():
            os.chmod(key, 0o600)
        print_success("Self-signed certificate created")


# ----------------------------------------------------------------
# Security
# ----------------------------------------------------------------
class Fail2BanStep(ProvisioningStep):
    name = "fail2ban"
    description = "Configuring Fail2Ban"

    def enabled(self, config: DeploymentConfig) -> bool:
        return config.security_enabled

    def is_installed(self, ctx: StepContext) -> bool:
        return ctx.runner.command_exists("fail2ban-client")

    def install(self, ctx: StepContext) -> None:
        apt_install(ctx, ["fail2ban"])

    @staticmethod
    def write_jail(ctx: StepContext, ssh_port: int) -> None:
        config = dataclasses.replace(ctx.config, ssh_port=ssh_port)
        write_artifact(render(TemplateId.FAIL2BAN_JAIL, config, ctx.paths), backup=True)

    def configure(self, ctx: StepContext) -> None:
        self.write_jail(ctx, ctx.intended_ssh_port)
        try:
            ctx.runner.run(["fail2ban-client", "--test"])
        except CommandError as e:
            logger.debug(e.output)
            ctx.warn("Fail2Ban configuration test failed; service left unchanged")
            return
        systemctl(ctx, "daemon-reload")
        systemctl(ctx, "enable", "fail2ban")
        systemctl(ctx, "restart", "fail2ban")
        if not ctx.runner.succeeds(["systemctl", "is-active", "--quiet", "fail2ban"]):
            ctx.warn("Fail2Ban did not start; check 'journalctl -u fail2ban'")
            return
        policy = "aggressive" if ctx.config.fail2ban_aggressive else "standard"
        print_success(f"Fail2Ban active ({policy} policy)")


TWO_FACTOR_GUIDE = """\
1. Install libpam-google-authenticator:
   sudo apt install libpam-google-authenticator

2. Generate QR code (as the login user):
   /usr/bin/google-authenticator

3. Edit /etc/pam.d/sshd and add before @include:
   auth required pam_google_authenticator.so noconsecutive window-size=3

4. Edit /etc/ssh/sshd_config and set:
   KbdInteractiveAuthentication yes

5. Restart SSH:
   sudo systemctl restart ssh"""


class SshHardeningStep(ProvisioningStep):
    """Replace sshd_config, syntax-check it, and restart only when it passes."""

    name = "ssh_hardening"
    description = "Hardening SSH"
    reversible = True

    def __init__(self):
        self._backup: Optional[Path] = None
        self._prior_port = STOCK_SSH_PORT

    def enabled(self, config: DeploymentConfig) -> bool:
        return config.ssh_hardening

    def configure(self, ctx: StepContext) -> None:
        sshd_config = ctx.paths.sshd_config
        self._prior_port = configured_ssh_port(sshd_config)
        ctx.effective_ssh_port = self._prior_port
        self._backup = backup_file(sshd_config)

        write_artifact(render(TemplateId.SSH_BANNER, ctx.config, ctx.paths))
        write_artifact(render(TemplateId.SSHD_CONFIG, ctx.config, ctx.paths))

        try:
            ctx.runner.run(["sshd", "-t", "-f", str(sshd_config)])
        except CommandError as e:
            raise StepError(
                "SSH configuration failed the syntax check",
                step=self.name,
                output=e.output,
            ) from e

        systemctl(ctx, "restart", "ssh")
        ctx.effective_ssh_port = ctx.config.ssh_port
        self._report(ctx.config)

    def rollback(self, ctx: StepContext) -> None:
        sshd_config = ctx.paths.sshd_config
        print_error("SSH config invalid, reverting...")
        if self._backup is not None:
            restore_file(self._backup, sshd_config)
        elif sshd_config.exists():
            sshd_config.unlink()
        systemctl(ctx, "restart", "ssh")
        ctx.effective_ssh_port = self._prior_port
        if ctx.config.security_enabled and ctx.paths.fail2ban_jail.is_file():
            Fail2BanStep.write_jail(ctx, self._prior_port)
            if not ctx.runner.succeeds(["systemctl", "restart", "fail2ban"]):
                logger.warning("Fail2Ban restart after SSH rollback failed")
                print_warning("Fail2Ban could not be restarted for the restored SSH port")
        print_warning(f"SSH restored; still listening on port {self._prior_port}")

    @staticmethod
    def _report(config: DeploymentConfig) -> None:
        print_success(f"SSH hardened (Port: {config.ssh_port})")
        if not config.root_login_disabled:
            print_success("Root login: ENABLED")
        if config.password_auth_enabled:
            print_success("Password auth: ENABLED")
        if config.admin_ip_whitelist:
            print_success(f"SSH restricted to {' '.join(config.admin_ip_whitelist)}")
        if config.enable_2fa_guide:
            display_panel(TWO_FACTOR_GUIDE, NordColors.FROST_2, "SSH 2FA Setup Guide")


class FirewallStep(ProvisioningStep):
    name = "firewall"
    description = "Configuring UFW firewall"

    def enabled(self, config: DeploymentConfig) -> bool:
        return config.configure_firewall

    def is_installed(self, ctx: StepContext) -> bool:
        return ctx.runner.command_exists("ufw")

    def install(self, ctx: StepContext) -> None:
        apt_install(ctx, ["ufw"])

    @staticmethod
    def ssh_ports(ctx: StepContext) -> List[int]:
        """Ports that must stay open for SSH, target port first."""
        ports = [ctx.intended_ssh_port]
        if ctx.effective_ssh_port not in ports:
            ports.append(ctx.effective_ssh_port)
        return ports

    def configure(self, ctx: StepContext) -> None:
        ufw = ["ufw"]
        ctx.runner.run(ufw + ["--force", "reset"])
        ctx.runner.run(ufw + ["default", "deny", "incoming"])
        ctx.runner.run(ufw + ["default", "allow", "outgoing"])
        for port in self.ssh_ports(ctx):
            ctx.runner.run(ufw + ["allow", f"{port}/tcp"])
        ctx.runner.run(ufw + ["allow", "80/tcp"])
        ctx.runner.run(ufw + ["allow", "443/tcp"])
        for ip in ctx.config.admin_ip_whitelist:
            ctx.runner.run(
                ufw + ["allow", "from", ip, "to", "any", "port", str(ctx.intended_ssh_port),
                       "proto", "tcp"]
            )
        ctx.runner.run(ufw + ["--force", "enable"])
        opened = ", ".join(str(p) for p in self.ssh_ports(ctx))
        print_success(f"Firewall enabled (SSH {opened}, HTTP, HTTPS)")


# ----------------------------------------------------------------
# Service Management
# ----------------------------------------------------------------
class SystemdStep(ProvisioningStep):
    name = "systemd"
    description = "Installing systemd service"

    def configure(self, ctx: StepContext) -> None:
        write_artifact(
            render(TemplateId.SYSTEMD_UNIT, ctx.config, ctx.paths, owner=ctx.owner)
        )
        systemctl(ctx, "daemon-reload")
        systemctl(ctx, "enable", f"{SERVICE_NAME}.service")


MANAGEMENT_SCRIPTS = (
    TemplateId.DEPLOY_SCRIPT,
    TemplateId.START_SCRIPT,
    TemplateId.STOP_SCRIPT,
    TemplateId.STATUS_SCRIPT,
    TemplateId.LOGS_SCRIPT,
)


class ManagementScriptsStep(ProvisioningStep):
    name = "management_scripts"
    description = "Creating management scripts"

    def configure(self, ctx: StepContext) -> None:
        for template_id in MANAGEMENT_SCRIPTS:
            write_artifact(render(template_id, ctx.config, ctx.paths))
        if ctx.config.security_enabled:
            live = dataclasses.replace(ctx.config, ssh_port=ctx.effective_ssh_port)
            write_artifact(render(TemplateId.SECURITY_STATUS_SCRIPT, live, ctx.paths))


class SaveConfigStep(ProvisioningStep):
    name = "save_config"
    description = "Saving deployment configuration"

    def configure(self, ctx: StepContext) -> None:
        ConfigStore.for_app_dir(ctx.app_dir).save(ctx.config)


def default_steps() -> List[ProvisioningStep]:
    """A fresh list of every step in dependency order."""
    return [
        OsCheckStep(),
        PackagesStep(),
        DockerStep(),
        DeployerUserStep(),
        AppSourceStep(),
        RegistryLoginStep(),
        EnvFileStep(),
        NginxStep(),
        Fail2BanStep(),
        SshHardeningStep(),
        FirewallStep(),
        SystemdStep(),
        ManagementScriptsStep(),
        SaveConfigStep(),
    ]
