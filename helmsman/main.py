"""Command-line entry point for Helmsman."""

import asyncio
import os
import sys
from pathlib import Path

import typer

from helmsman import __version__
from helmsman.config import Config, set_config
from helmsman.exceptions import ConfigurationError
from helmsman.logging import configure_logging, log

app = typer.Typer(help="Helmsman - an interactive agent shell", no_args_is_help=False)


def load_config(
    config: str = "",
    model: str = "",
    yolo: bool = False,
    max_turns: int | None = None,
) -> Config:
    """Load configuration and apply command-line overrides."""
    if config:
        path = Path(config).expanduser()
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        cfg = Config.from_yaml(path)
    else:
        cfg = Config.load()

    if model:
        cfg.model.model = model
    if yolo:
        cfg.tools.approval_mode = "yolo"
    if max_turns is not None:
        cfg.session.max_turns = max(0, max_turns)
    return cfg


@app.command()
def run(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    prompt: str = typer.Option("", "-p", "--prompt", help="Run one prompt and exit"),
    yolo: bool = typer.Option(False, "--yolo", help="Approve every tool call without asking"),
    max_turns: int | None = typer.Option(None, "--max-turns", help="Model requests allowed per session (0 = unlimited)"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start an interactive session, or run a single prompt."""
    from helmsman.shell import run_shell

    if verbose:
        os.environ["HELMSMAN_LOGGING__LEVEL"] = "DEBUG"

    try:
        cfg = load_config(config, model, yolo, max_turns)
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=2)
    if verbose:
        cfg.logging.level = "DEBUG"
    set_config(cfg)
    configure_logging()

    try:
        code = asyncio.run(run_shell(cfg, prompt=prompt or None))
    except KeyboardInterrupt:
        log.info("Shutting down...")
        code = 130
    except Exception as e:
        log.error("Fatal error", error=str(e))
        code = 1
    raise typer.Exit(code=code)


@app.command()
def version() -> None:
    """Show version information."""
    typer.echo(f"Helmsman v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    sys.exit(main())
