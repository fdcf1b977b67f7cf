from __future__ import annotations

import json
from typing import Optional

import typer
import uvicorn
from dotenv import load_dotenv

app = typer.Typer(add_completion=False)


def _load_env() -> None:
    load_dotenv()


def _setup_logging() -> None:
    """Configure centralized logging to both stdout and log files."""
    from refinery.core.config import Settings
    from refinery.core.logging_config import setup_logging

    settings = Settings.from_env()
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, clear_on_launch=settings.clear_logs_on_launch)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host [default: REFINERY_HOST or 127.0.0.1]"),
    port: Optional[int] = typer.Option(None, help="Bind port [default: REFINERY_PORT or 18800]"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    _load_env()
    _setup_logging()

    from refinery.core.config import Settings

    settings = Settings.from_env()
    host = host or settings.host
    port = port or settings.port
    uvicorn.run("refinery.core.gateway:create_app", host=host, port=port, reload=reload, factory=True)


@app.command()
def version() -> None:
    from refinery import __version__

    typer.echo(__version__)


@app.command("config-show")
def config_show(
    overrides: str = typer.Option("", help="JSON object merged over the stored configuration"),
) -> None:
    """Print the effective orchestration configuration."""
    _load_env()

    from refinery.core.config import Settings
    from refinery.core.errors import InvalidRequest
    from refinery.core.orchestration_config import load_config, validate_config
    from refinery.core.store import JsonFileStore

    try:
        layer = json.loads(overrides) if overrides else None
    except ValueError as exc:
        typer.secho(f"Invalid JSON for --overrides: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    if layer is not None and not isinstance(layer, dict):
        typer.secho("--overrides must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=2)

    settings = Settings.from_env()
    store = JsonFileStore(settings.store_path)
    config = load_config(store, layer)
    try:
        validate_config(config)
    except InvalidRequest as exc:
        typer.secho(f"Invalid configuration: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    typer.echo(json.dumps(config, indent=2))


if __name__ == "__main__":
    app()
