import functools
import logging
import os
import signal

import click
from rich.logging import RichHandler

from .core import Orchestrator
from .errors import OrchestratorError
from .models import Stage
from .services.config_loader import ConfigLoader


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


def common_options(func):
    @click.option(
        "--config",
        required=False,
        type=click.Path(),
        help="Path to a YAML configuration file. Defaults to .dockstage.yml if present.",
    )
    @click.option(
        "--compose-file",
        required=False,
        type=click.Path(),
        help="Compose file describing the test environment (default: docker-compose.test.yml).",
    )
    @click.option(
        "--branch",
        required=False,
        help="Branch name used to derive the run identity instead of asking git.",
    )
    @click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging and raw test output")
    @click.option("--log-file", type=click.Path(), help="Path to log file")
    @click.option(
        "--start-timeout",
        required=False,
        type=float,
        default=None,
        help="Seconds to wait for containers to become healthy (default: 60).",
    )
    @click.option(
        "--render-interval",
        required=False,
        type=float,
        default=None,
        help="Seconds between progress display refreshes (default: 0.2).",
    )
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return func(*args, **kwargs)

    return wrapper


def _load_config(config):
    config_loader = ConfigLoader()
    resolved_config = config
    if resolved_config is None:
        default_config_path = os.path.join(os.getcwd(), ConfigLoader.DEFAULT_FILE)
        if os.path.exists(default_config_path):
            resolved_config = default_config_path
    return config_loader, config_loader.load(resolved_config)


def _configure_logging(verbose, log_file):
    logger = logging.getLogger("dockstage")
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)


def _build_orchestrator(
    config,
    compose_file,
    branch,
    verbose,
    log_file,
    start_timeout,
    render_interval,
):
    try:
        config_loader, config_values = _load_config(config)
        target_timeout = _resolve_option(None, config_values, "target_timeout")
        targets = config_loader.build_targets(
            config_values,
            default_timeout=float(target_timeout) if target_timeout else None,
        )
    except OrchestratorError as exc:
        raise click.ClickException(str(exc)) from exc

    compose_file = _resolve_option(compose_file, config_values, "compose_file")
    branch = _resolve_option(branch, config_values, "branch")
    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")
    start_timeout = float(_resolve_option(start_timeout, config_values, "start_timeout", default=60.0))
    render_interval = float(
        _resolve_option(render_interval, config_values, "render_interval", default=0.2)
    )

    _configure_logging(verbose, log_file)

    try:
        return Orchestrator(
            targets=targets,
            compose_file=compose_file,
            branch=branch,
            verbose=verbose,
            start_timeout=start_timeout,
            render_interval=render_interval,
        )
    except OrchestratorError as exc:
        raise click.ClickException(str(exc)) from exc


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt


def install_signal_handlers():
    """Handle SIGTERM like Ctrl+C so running children are stopped and environments torn down."""
    signal.signal(signal.SIGTERM, _raise_interrupt)


@click.group()
def main():
    """Run staged Docker Compose test pipelines isolated per branch."""
    install_signal_handlers()


@main.command()
@click.option(
    "--stage",
    "stages",
    multiple=True,
    type=click.Choice([stage.value for stage in Stage.ordered()]),
    help="Stage to run; repeat to select several. Defaults to unit, service and integration.",
)
@common_options
def run(stages, **options):
    """Run unit, service and integration stages with fail-fast between stages."""
    orchestrator = _build_orchestrator(**options)
    selected = [Stage(value) for value in stages] if stages else None
    raise SystemExit(orchestrator.run(selected))


@main.command("test-service")
@click.argument("name")
@common_options
def test_service(name, **options):
    """Bring up one service and run only its service tests."""
    orchestrator = _build_orchestrator(**options)
    raise SystemExit(orchestrator.run_service(name))


@main.command()
@common_options
def cleanup(**options):
    """Remove containers, networks and volumes left by this branch's test runs."""
    orchestrator = _build_orchestrator(**options)
    raise SystemExit(orchestrator.cleanup())


if __name__ == "__main__":
    main()
