"""Command-line interface for purgeman.

Usage:
    purgeman --version
    purgeman --config purgeman.yaml
    purgeman --config purgeman.yaml --foreground --log /var/log/purgeman.log
    cat purgeman.yaml | purgeman --config -
    PURGEMAN_AMQP_HOST=... purgeman

Without --foreground the service is handed off to a background process,
and the command returns once that process has connected to iRODS and the
message queue.
"""

from __future__ import annotations

import logging
import sys

import typer

from purgeman.config import Settings
from purgeman.daemon import run_child, run_parent
from purgeman.errors import ConfigurationError, PurgemanError
from purgeman.observability.logging import configure_logging
from purgeman.version import get_version_json

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="purgeman",
    help="Purge Varnish caches when data objects and collections change in iRODS",
    add_completion=False,
)


def load_settings(config_path: str | None) -> tuple[Settings, bool]:
    """Load settings from the environment, stdin ("-") or a YAML file.

    Returns:
        The settings and whether stdin was consumed.
    """
    if not config_path:
        # read from environmental variables
        return Settings.from_env(), False

    if config_path == "-":
        try:
            yaml_bytes = sys.stdin.buffer.read()
        except OSError as e:
            raise ConfigurationError(f"failed to read STDIN - {e}") from e
        return Settings.from_yaml(yaml_bytes), True

    return Settings.from_yaml_file(config_path), False


def input_missing_params(settings: Settings, stdin_closed: bool) -> None:
    """Prompt for credentials missing from the settings.

    Raises:
        ConfigurationError: If a credential is missing and stdin already
            held the configuration.
    """
    prompts = [
        ("amqp_username", "AMQP Username", "AMQP user is not set", False),
        ("amqp_password", "AMQP Password", "AMQP password is not set", True),
        ("irods_username", "IRODS Username", "IRODS user is not set", False),
        ("irods_password", "IRODS Password", "IRODS password is not set", True),
    ]

    for field_name, prompt, missing_message, hide_input in prompts:
        if getattr(settings, field_name):
            continue
        if stdin_closed:
            raise ConfigurationError(missing_message)

        try:
            value = typer.prompt(prompt, hide_input=hide_input)
        except typer.Abort as e:
            raise ConfigurationError(missing_message) from e
        setattr(settings, field_name, value)


@app.command()
def run(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Print version information",
    ),
    config: str | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Config YAML file, '-' to read it from stdin (default: environment variables)",
    ),
    foreground: bool = typer.Option(
        False,
        "--foreground",
        "-f",
        help="Run in foreground",
    ),
    log: str = typer.Option(
        "",
        "--log",
        help="Log file path ('-' logs to stderr only)",
    ),
    child_process: bool = typer.Option(
        False,
        "--child-process",
        hidden=True,
    ),
) -> None:
    """Run the purgeman service."""
    if version:
        typer.echo(get_version_json())
        raise typer.Exit()

    if child_process:
        configure_logging()
        raise typer.Exit(code=run_child(sys.stdin.buffer, sys.stdout))

    try:
        configure_logging(log_path=log or None)
        logger.info(f"Logging to {log or 'stderr'}")

        settings, stdin_closed = load_settings(config)
        if foreground:
            settings.foreground = True
        if log:
            settings.log_path = log
        configure_logging(
            level=settings.log_level,
            json_format=settings.log_json,
            log_path=settings.log_path or None,
        )

        input_missing_params(settings, stdin_closed)
        run_parent(settings)
    except (PurgemanError, OSError) as e:
        logger.error(f"Error occurred while running purgeman: {e}")
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
