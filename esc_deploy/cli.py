"""Command line entry point: ``esc-deploy``."""

import os
import sys
import time
from pathlib import Path
from typing import Optional

import click

from esc_deploy.activator import ServiceActivator
from esc_deploy.collector import ConfigCollector
from esc_deploy.commands import CommandError, CommandRunner
from esc_deploy.config import ConfigStore, DeploymentConfig, SslMode
from esc_deploy.errors import DeployError, StepError, UnsupportedEnvironmentError
from esc_deploy.log import get_logger, setup_logger
from esc_deploy.pipeline import Pipeline, PipelineResult, StepContext
from esc_deploy.prompts import ConsoleInput, InputSource, ScriptedInput, load_answers, read_answers
from esc_deploy.renderer import render_text
from esc_deploy.settings import (
    COMPOSE_FILE,
    DEFAULT_APP_DIR,
    LOG_FILE,
    SETTLE_SECONDS,
    VERSION,
    HostPaths,
)
from esc_deploy.steps import default_steps
from esc_deploy.templates import TemplateId
from esc_deploy.ui import (
    NordColors,
    console,
    create_header,
    display_key_values,
    display_panel,
    print_error,
    print_info,
    print_section,
    print_status_report,
    print_success,
    print_warning,
)
from esc_deploy.validator import validate_env_file

# Lines of failing command output shown in the failure panel
OUTPUT_TAIL = 20


# ----------------------------------------------------------------
# Install Flow
# ----------------------------------------------------------------
def run_install(
    source: InputSource,
    app_dir: Path,
    runner: Optional[CommandRunner] = None,
    paths: Optional[HostPaths] = None,
    start: Optional[bool] = None,
    settle_seconds: int = SETTLE_SECONDS,
    log_file: str = LOG_FILE,
) -> int:
    """Collect, provision, optionally start. Returns the process exit code."""
    runner = runner or CommandRunner()
    paths = paths or HostPaths()
    logger = get_logger()

    try:
        existing = ConfigStore.for_app_dir(paths.app_dir(app_dir)).load()
        config = ConfigCollector(source).collect(existing, app_dir)

        ctx = StepContext.for_host(config, runner, source, paths)
        result = Pipeline(default_steps()).run(ctx)
        print_status_report(result.statuses)
        if not result.succeeded:
            report_failure(result.error, result.failed_step)
            return result.error.exit_code if result.error else 1
        report_warnings(result)

        if start is None:
            start = source.confirm("start_now", "Start the application now?", default=True)
        if start:
            print_section("Starting Application")
            ServiceActivator(runner, settle_seconds=settle_seconds).start(ctx.app_dir)
        else:
            print_info(f"Start later with: {config.app_dir}/start.sh")

        print_completion(ctx, log_file)
        return 0
    except DeployError as e:
        if e.exit_code == 0:
            print_warning(e.message)
            logger.info(e.message)
        else:
            report_failure(e)
        return e.exit_code
    except CommandError as e:
        report_failure(StepError(str(e), output=e.output))
        return 1


def report_failure(error: Optional[DeployError], step: Optional[str] = None) -> None:
    logger = get_logger()
    if error is None:
        print_error(f"Step '{step}' failed")
        return
    step = step or getattr(error, "step", "")
    heading = f"Step '{step}' failed: {error.message}" if step else error.message
    logger.error(heading)
    print_error(heading)
    output = getattr(error, "output", "")
    if output:
        tail = "\n".join(output.strip().splitlines()[-OUTPUT_TAIL:])
        logger.debug(output)
        display_panel(tail, NordColors.RED, "Last command output")
    if error.hint:
        print_info(error.hint)


def report_warnings(result: PipelineResult) -> None:
    if result.rolled_back:
        print_warning(f"Rolled back: {', '.join(result.rolled_back)}")
    for warning in result.warnings:
        print_warning(warning)


def print_completion(ctx: StepContext, log_file: str) -> None:
    config: DeploymentConfig = ctx.config
    scheme = "http" if config.ssl_mode is SslMode.NONE else "https"
    login_user = config.created_sudo_user or "root"
    rows = [
        ("Site", f"{scheme}://{config.domain}"),
        ("App directory", str(config.app_dir)),
        ("SSH", f"ssh -p {ctx.effective_ssh_port} {login_user}@{config.domain}"),
        ("Manage", "deploy.sh, start.sh, stop.sh, status.sh, logs.sh [service]"),
        ("Compose file", COMPOSE_FILE),
        ("Log file", log_file),
    ]
    if config.security_enabled:
        rows.append(("Security status", "/opt/bin/security-status.sh"))
    display_key_values("Deployment Complete", rows)
    if config.ssh_hardening and ctx.effective_ssh_port != 22:
        print_warning(
            f"Test SSH on port {ctx.effective_ssh_port} in a new terminal before closing this session"
        )
    print_success("ESC deployment finished")


# ----------------------------------------------------------------
# Main CLI Entry Point with Click
# ----------------------------------------------------------------
@click.group()
@click.version_option(VERSION, prog_name="esc-deploy")
def cli() -> None:
    """Provision an Ubuntu/Debian host for the ESC Django stack."""


@cli.command()
@click.option(
    "--app-dir",
    type=click.Path(path_type=Path),
    default=DEFAULT_APP_DIR,
    show_default=True,
    help="Application directory",
)
@click.option(
    "--answers",
    type=click.Path(path_type=Path, dir_okay=False),
    help="JSON file of prompt answers (runs without prompts)",
)
@click.option("--non-interactive", is_flag=True, help="Use defaults for every prompt")
@click.option("--start/--no-start", default=None, help="Start the application when done")
@click.option(
    "--settle-seconds", type=int, default=SETTLE_SECONDS, show_default=True,
    help="Seconds to wait after starting services",
)
@click.option("--log-file", default=LOG_FILE, show_default=True, help="Log file path")
@click.option("--debug", is_flag=True, help="Enable debug logging")
def install(
    app_dir: Path,
    answers: Optional[Path],
    non_interactive: bool,
    start: Optional[bool],
    settle_seconds: int,
    log_file: str,
    debug: bool,
) -> None:
    """Run the full deployment."""
    setup_logger(log_file, debug=debug)
    console.print(create_header())
    console.print(
        f"Started at: [bold {NordColors.SNOW_STORM_1}]{time.strftime('%Y-%m-%d %H:%M:%S')}[/]"
    )

    if os.geteuid() != 0:
        report_failure(
            UnsupportedEnvironmentError(
                "This installer requires root privileges.", hint="Re-run it with sudo."
            )
        )
        sys.exit(1)

    try:
        if answers:
            source: InputSource = load_answers(answers)
        elif non_interactive:
            source = ScriptedInput()
        else:
            source = ConsoleInput()
    except DeployError as e:
        report_failure(e)
        sys.exit(e.exit_code)

    sys.exit(
        run_install(
            source,
            app_dir,
            start=start,
            settle_seconds=settle_seconds,
            log_file=log_file,
        )
    )


@cli.command("validate-env")
@click.argument("path", type=click.Path(path_type=Path, dir_okay=False))
def validate_env(path: Path) -> None:
    """Check an environment file for placeholder values."""
    result = validate_env_file(path)
    for error in result.errors:
        print_error(error)
    for warning in result.warnings:
        print_warning(warning)
    if not result.is_valid:
        print_error(f"{path} is not ready for production")
        sys.exit(1)
    print_success(f"{path} is valid")


@cli.command("render")
@click.argument(
    "template", type=click.Choice([t.value for t in TemplateId], case_sensitive=False)
)
@click.option(
    "--answers",
    type=click.Path(path_type=Path, dir_okay=False),
    required=True,
    help="JSON file of prompt answers describing the deployment",
)
def render_cmd(template: str, answers: Path) -> None:
    """Print a rendered artifact for review."""
    try:
        data = read_answers(answers)
        data.setdefault("registry_secret", "unused")
        console.quiet = True
        try:
            config = ConfigCollector(ScriptedInput(data)).collect()
        finally:
            console.quiet = False
    except DeployError as e:
        report_failure(e)
        sys.exit(e.exit_code or 1)
    click.echo(render_text(TemplateId(template.lower()), config), nl=False)


def main() -> None:
    try:
        cli()
    except KeyboardInterrupt:
        print_warning("Operation cancelled by user.")
        sys.exit(130)


if __name__ == "__main__":
    main()
