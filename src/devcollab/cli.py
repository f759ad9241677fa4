"""CLI entry point for devcollab."""

from __future__ import annotations

import json

import click
import pydantic
import uvicorn

from devcollab import __version__
from devcollab.config import Settings
from devcollab.logging_setup import configure_logging
from devcollab.server import create_app


def _load_settings(**overrides: object) -> Settings:
    """Read settings from the environment, applying command-line overrides."""
    try:
        return Settings.from_env(**overrides)
    except pydantic.ValidationError as exc:
        raise click.ClickException(f"Invalid configuration:\n{exc}") from exc


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """devcollab - project collaboration hub and repository transactions."""


@main.command("serve")
@click.option("--host", default=None, help="Interface to bind.  [env: DEVCOLLAB_HOST]")
@click.option("--port", default=None, type=int, help="Port to bind.  [env: DEVCOLLAB_PORT]")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level.  [env: DEVCOLLAB_LOG_LEVEL]",
)
def serve_cmd(host: str | None, port: int | None, log_level: str | None) -> None:
    """Run the collaboration hub server."""
    settings = _load_settings(host=host, port=port, log_level=log_level)
    configure_logging(settings.log_level)

    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        log_config=None,
        ws_ping_interval=settings.ping_interval,
        ws_ping_timeout=settings.ping_timeout,
    )


@main.command("config")
def config_cmd() -> None:
    """Print the effective configuration as JSON."""
    settings = _load_settings()
    data = settings.model_dump(mode="json")
    if data.get("gateway_api_key"):
        data["gateway_api_key"] = "***"
    click.echo(json.dumps(data, indent=2))


if __name__ == "__main__":
    main()
