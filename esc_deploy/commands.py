"""Blocking execution of external commands."""

import os
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Union

from esc_deploy.log import get_logger
from esc_deploy.settings import OPERATION_TIMEOUT


class CommandError(Exception):
    """A command exited non-zero, timed out or could not be started."""

    def __init__(
        self,
        cmd: List[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
    ):
        self.cmd = cmd
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        super().__init__(
            f"Command failed ({returncode}): {' '.join(cmd)}"
        )

    @property
    def output(self) -> str:
        """Combined output, stderr last since that is where failures land."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


class CommandRunner:
    """Runs commands to completion, one at a time.

    Every provisioning step goes through a runner so that tests can swap in a
    double that records commands instead of touching the host.
    """

    def __init__(self, timeout: Optional[int] = OPERATION_TIMEOUT):
        self.timeout = timeout
        self.logger = get_logger()

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = True,
        input: Optional[str] = None,
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
    ) -> subprocess.CompletedProcess:
        """Run a system command and return the completed process."""
        self.logger.debug(f"Running command: {' '.join(cmd)}")
        run_env = None
        if env:
            run_env = os.environ.copy()
            run_env.update(env)

        try:
            result = subprocess.run(
                cmd,
                input=input,
                stdout=subprocess.PIPE if capture_output else None,
                stderr=subprocess.PIPE if capture_output else None,
                text=True,
                cwd=str(cwd) if cwd else None,
                env=run_env,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            self.logger.error(f"Command timed out after {e.timeout} seconds: {' '.join(cmd)}")
            raise CommandError(cmd, -1, stderr=f"timed out after {e.timeout}s")
        except FileNotFoundError:
            raise CommandError(cmd, 127, stderr=f"{cmd[0]}: command not found")

        if check and result.returncode != 0:
            raise CommandError(cmd, result.returncode, result.stdout, result.stderr)
        return result

    def succeeds(self, cmd: List[str]) -> bool:
        """True when the command exits zero."""
        try:
            return self.run(cmd, check=False).returncode == 0
        except CommandError:
            return False

    def command_exists(self, name: str) -> bool:
        """Check if a command exists in the system path."""
        return shutil.which(name) is not None
