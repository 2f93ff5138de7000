"""Starts the managed containers and reports their state."""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from esc_deploy.commands import CommandError, CommandRunner
from esc_deploy.errors import ActivationError
from esc_deploy.log import get_logger
from esc_deploy.settings import COMPOSE_FILE, DOCKER_IMAGE, SETTLE_SECONDS
from esc_deploy.ui import print_info, print_success, print_warning, spinner


@dataclass
class ServiceStatus:
    running: bool = False
    per_container: Dict[str, str] = field(default_factory=dict)

    @property
    def degraded(self) -> List[str]:
        """Containers whose state is not 'Up'."""
        return [name for name, state in self.per_container.items() if not is_up(state)]


def is_up(state: str) -> bool:
    return state.strip().lower().startswith("up")


def parse_compose_ps(output: str) -> Dict[str, str]:
    """Parse ``docker compose ps --format '{{.Name}}\\t{{.Status}}'`` output."""
    containers: Dict[str, str] = {}
    for line in output.splitlines():
        if not line.strip():
            continue
        name, _, state = line.partition("\t")
        containers[name.strip()] = state.strip()
    return containers


class ServiceActivator:
    """Pull, start, settle, then poll once."""

    def __init__(
        self,
        runner: CommandRunner,
        settle_seconds: int = SETTLE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        image: str = DOCKER_IMAGE,
    ):
        self.runner = runner
        self.settle_seconds = settle_seconds
        self.sleep = sleep
        self.image = image
        self.logger = get_logger()

    def _compose(self, *args: str) -> List[str]:
        return ["docker", "compose", "-f", COMPOSE_FILE] + list(args)

    def start(self, app_dir: Path) -> ServiceStatus:
        app_dir = Path(app_dir)
        try:
            with spinner(f"Pulling {self.image}..."):
                self.runner.run(["docker", "pull", self.image], cwd=app_dir)
            print_success("Latest image pulled")
        except CommandError as e:
            self.logger.warning(f"Image pull failed: {e.output}")
            print_warning("Image pull failed; starting with cached images")

        try:
            with spinner("Starting services..."):
                self.runner.run(self._compose("up", "-d"), cwd=app_dir)
        except CommandError as e:
            raise ActivationError(
                f"Could not start services:\n{self._recent_logs(app_dir) or e.output}",
                hint=f"Inspect with 'cd {app_dir} && docker compose -f {COMPOSE_FILE} logs'.",
            ) from e

        if self.settle_seconds > 0:
            print_info(f"Waiting {self.settle_seconds}s for services to initialize...")
            self.sleep(self.settle_seconds)

        status = self.poll(app_dir)
        if status.running:
            print_success("All services are up")
        else:
            print_warning(
                f"Some services are not up: {', '.join(status.degraded) or 'none reported'}"
            )
            print_info(f"Check logs with: {app_dir}/logs.sh [service]")
        return status

    def poll(self, app_dir: Path) -> ServiceStatus:
        result = self.runner.run(
            self._compose("ps", "--all", "--format", "{{.Name}}\t{{.Status}}"),
            check=False,
            cwd=app_dir,
        )
        containers = parse_compose_ps(result.stdout or "")
        running = bool(containers) and all(is_up(s) for s in containers.values())
        return ServiceStatus(running=running, per_container=containers)

    def _recent_logs(self, app_dir: Path) -> Optional[str]:
        try:
            result = self.runner.run(
                self._compose("logs", "--tail=20"), check=False, cwd=app_dir
            )
        except CommandError:
            return None
        return (result.stdout or "").strip() or None
