"""Pytest configuration and fixtures."""

import subprocess
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import pytest

from esc_deploy.commands import CommandError
from esc_deploy.config import DeploymentConfig, SslMode
from esc_deploy.pipeline import StepContext
from esc_deploy.prompts import ScriptedInput
from esc_deploy.settings import HostPaths

ORIGINAL_SSHD_CONFIG = "# stock config\nPort 22\nPermitRootLogin yes\n"

ALL_TOOLS = (
    "docker",
    "nginx",
    "certbot",
    "fail2ban-client",
    "ufw",
    "git",
)


class FakeRunner:
    """Records commands instead of running them.

    ``failures`` and ``outputs`` are keyed by command prefix. ``hooks`` run
    before the result is decided so a test can emulate side effects on the
    filesystem (e.g. a clone creating ``.git``).
    """

    def __init__(
        self,
        available: Iterable[str] = ALL_TOOLS,
        failures: Optional[Dict[Tuple[str, ...], str]] = None,
        outputs: Optional[Dict[Tuple[str, ...], str]] = None,
        hooks: Optional[Dict[Tuple[str, ...], Callable[[List[str]], None]]] = None,
    ):
        self.available = set(available)
        self.failures = dict(failures or {})
        self.outputs = dict(outputs or {})
        self.hooks = dict(hooks or {})
        self.commands: List[List[str]] = []
        self.inputs: List[Optional[str]] = []

    @staticmethod
    def _match(table: Dict[Tuple[str, ...], object], cmd: List[str]):
        for prefix, value in table.items():
            if tuple(cmd[: len(prefix)]) == prefix:
                return value
        return None

    def run(
        self,
        cmd,
        check=True,
        capture_output=True,
        input=None,
        cwd=None,
        env=None,
        timeout=None,
    ):
        cmd = list(cmd)
        self.commands.append(cmd)
        self.inputs.append(input)
        hook = self._match(self.hooks, cmd)
        if hook is not None:
            hook(cmd)
        failure = self._match(self.failures, cmd)
        if failure is not None:
            if check:
                raise CommandError(cmd, 1, "", failure)
            return subprocess.CompletedProcess(cmd, 1, "", failure)
        return subprocess.CompletedProcess(cmd, 0, self._match(self.outputs, cmd) or "", "")

    def succeeds(self, cmd) -> bool:
        return self.run(cmd, check=False).returncode == 0

    def command_exists(self, name: str) -> bool:
        return name in self.available

    def ran(self, *prefix: str) -> bool:
        return any(tuple(c[: len(prefix)]) == prefix for c in self.commands)

    def index_of(self, *prefix: str) -> int:
        for i, c in enumerate(self.commands):
            if tuple(c[: len(prefix)]) == prefix:
                return i
        raise AssertionError(f"{' '.join(prefix)} never ran")


def create_git_dir(cmd: List[str]) -> None:
    Path(cmd[-1], ".git").mkdir(parents=True, exist_ok=True)


@pytest.fixture
def host(tmp_path) -> HostPaths:
    """A host root with the files a fresh Ubuntu server has."""
    paths = HostPaths(root=tmp_path)
    paths.os_release.parent.mkdir(parents=True, exist_ok=True)
    paths.os_release.write_text(
        'ID=ubuntu\nID_LIKE=debian\nPRETTY_NAME="Ubuntu 24.04 LTS"\n'
    )
    paths.sshd_config.parent.mkdir(parents=True, exist_ok=True)
    paths.sshd_config.write_text(ORIGINAL_SSHD_CONFIG)
    paths.root_authorized_keys.parent.mkdir(parents=True, exist_ok=True)
    paths.root_authorized_keys.write_text("ssh-ed25519 AAAA operator@laptop\n")
    return paths


@pytest.fixture
def fresh_runner() -> FakeRunner:
    """Runner for a host where nothing is installed yet."""
    return FakeRunner(
        available=("git",),
        failures={
            ("dpkg", "-s"): "package is not installed",
            ("id", "deployer"): "no such user",
            ("docker", "compose", "version"): "unknown command",
        },
        hooks={("git", "clone"): create_git_dir},
    )


@pytest.fixture
def scenario_config() -> DeploymentConfig:
    return DeploymentConfig(
        domain="example.com",
        registry_username="esc",
        registry_secret="s3cret",
        ssl_mode=SslMode.LETSENCRYPT,
        ssl_email="ops@example.com",
        security_enabled=True,
        admin_email="admin@example.com",
        ssh_hardening=True,
        ssh_port=2222,
        disable_root_login="yes",
        password_auth_enabled=False,
        fail2ban_aggressive=True,
        create_deployer_user=True,
        configure_firewall=True,
    )


@pytest.fixture
def scenario_answers() -> dict:
    return {
        "domain": "example.com",
        "registry_username": "esc",
        "registry_secret": "s3cret",
        "ssl_option": "1",
        "ssl_email": "ops@example.com",
        "security_enabled": True,
        "admin_email": "admin@example.com",
        "ssh_hardening": True,
        "ssh_port": "2222",
        "admin_ips": "",
        "fail2ban_aggressive": True,
        "disable_root_login": True,
        "disable_password_auth": True,
    }


@pytest.fixture
def make_context(host):
    def _make(config: DeploymentConfig, runner: FakeRunner, source=None) -> StepContext:
        return StepContext(
            config=config,
            runner=runner,
            source=source or ScriptedInput(),
            paths=host,
            editor="true",
        )

    return _make
