# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Config command for scriptpool.

Validates and displays the host configuration.
"""

from typing import Optional

import typer

from scriptpool.config import AppConfig, get_config_path, load_config
from scriptpool.engine import ConfigError

app = typer.Typer(help="Manage and validate configuration")


def _load_or_exit(config_path: Optional[str]) -> AppConfig:
    try:
        return load_config(config_path)
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    except ConfigError as e:
        typer.echo(f"Validation failed: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def validate(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """
    Validate configuration file.

    Checks that the config file is valid YAML with valid engine settings.
    """
    typer.echo("Validating configuration...")
    typer.echo()

    config = _load_or_exit(config_path)
    if config.source is None:
        typer.echo(f"No config file at {get_config_path(config_path)}; using defaults")
    else:
        typer.echo(f"Configuration file: {config.source}")
    typer.echo()
    typer.echo("Configuration validation complete!")


@app.command()
def show(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Show the effective configuration."""
    config = _load_or_exit(config_path)
    engine = config.engine

    typer.echo(f"Source: {config.source or 'defaults'}")
    typer.echo()
    typer.echo("Engine:")
    typer.echo(f"  min_contexts: {engine.min_contexts}")
    typer.echo(f"  max_contexts: {engine.max_contexts}")
    typer.echo(f"  allow_unrestricted_execution: {engine.allow_unrestricted_execution}")
    typer.echo(f"  python_executable: {engine.python_executable}")
    typer.echo(f"  startup_timeout: {engine.startup_timeout}")
    typer.echo()
    typer.echo(f"Events: {config.events_path}")
    typer.echo(f"Log level: {config.log_level}")
