# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Main CLI entry point for scriptpool.

Thin host around the execution engine: parses args, starts the engine,
runs scripts, stops the engine, renders results.
"""

import asyncio
import json
import logging
from typing import List, Optional

import typer

from scriptpool import __version__
from scriptpool.config import AppConfig, load_config
from scriptpool.engine import ConfigError, OutputLine, PoolInitializationError, RunResult
from scriptpool.event_client import EventClient
from scriptpool.host import run_many, run_once


app = typer.Typer(
    name="scriptpool",
    help="Run script files against a bounded pool of interpreter contexts",
    no_args_is_help=True,
)


def _parse_kv_args(args: Optional[List[str]]) -> dict:
    """Parse key=value arguments into a dict.

    Supports:
    - Booleans: true, false
    - Nulls: null, none
    - Numbers: integers and floats
    - JSON: values starting with { or [ are parsed as JSON
    - Strings: everything else

    Raises:
        typer.BadParameter: For an argument without '='.
    """
    if not args:
        return {}
    result = {}
    for arg in args:
        if "=" not in arg:
            raise typer.BadParameter(f"expected key=value, got: {arg}")
        key, value = arg.split("=", 1)
        if value.lower() == "true":
            result[key] = True
        elif value.lower() == "false":
            result[key] = False
        elif value.lower() in ("null", "none"):
            result[key] = None
        elif value.startswith("{") or value.startswith("["):
            try:
                result[key] = json.loads(value)
            except json.JSONDecodeError:
                result[key] = value
        else:
            try:
                result[key] = int(value)
            except ValueError:
                try:
                    result[key] = float(value)
                except ValueError:
                    result[key] = value
    return result


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(
    config_path: Optional[str],
    min_contexts: Optional[int],
    max_contexts: Optional[int],
    restricted: bool,
    verbose: bool,
) -> AppConfig:
    """Load config and apply command-line overrides, exiting on bad input."""
    try:
        config = load_config(config_path)
        config = config.with_engine(
            min_contexts=min_contexts,
            max_contexts=max_contexts,
            allow_unrestricted_execution=False if restricted else None,
        )
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    except ConfigError as e:
        typer.echo(f"Config error: {e}", err=True)
        raise typer.Exit(1)

    _configure_logging("DEBUG" if verbose else config.log_level)
    return config


def _echo_output(line: OutputLine) -> None:
    typer.echo(line.text, err=line.stream == "stderr")


def _describe(result: RunResult) -> str:
    if result.success:
        return f"OK      {result.script_path} ({result.duration_ms} ms)"
    return f"FAILED  {result.script_path} [{result.failure.value}]"


@app.command()
def run(
    script: str = typer.Argument(..., help="Path to the script file"),
    args: Optional[List[str]] = typer.Argument(None, help="key=value script parameters"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
    min_contexts: Optional[int] = typer.Option(None, "--min-contexts", help="Contexts started eagerly"),
    max_contexts: Optional[int] = typer.Option(None, "--max-contexts", help="Upper bound on contexts"),
    restricted: bool = typer.Option(False, "--restricted", help="Run interpreters in isolated mode"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Do not stream script output"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run one script: start the engine, run it, stop the engine.

    Examples:
        scriptpool run hello.py
        scriptpool run report.py name=weekly count=3 dry_run=true
    """
    parameters = _parse_kv_args(args)
    config = _load(config_path, min_contexts, max_contexts, restricted, verbose)

    try:
        result = asyncio.run(
            run_once(config, script, parameters, on_output=None if quiet else _echo_output)
        )
    except PoolInitializationError as e:
        typer.echo(f"Engine error: {e}", err=True)
        raise typer.Exit(1)
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if not result.success:
        typer.echo(f"Error: {result.message}", err=True)
        raise typer.Exit(1)


@app.command()
def batch(
    scripts: List[str] = typer.Argument(..., help="Script files to run concurrently"),
    param: Optional[List[str]] = typer.Option(None, "--param", "-p", help="key=value parameter for every script"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
    min_contexts: Optional[int] = typer.Option(None, "--min-contexts", help="Contexts started eagerly"),
    max_contexts: Optional[int] = typer.Option(None, "--max-contexts", help="Upper bound on contexts"),
    restricted: bool = typer.Option(False, "--restricted", help="Run interpreters in isolated mode"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run several scripts concurrently through one engine.

    Exits 1 if any script fails.

    Examples:
        scriptpool batch a.py b.py c.py --max-contexts 2
    """
    parameters = _parse_kv_args(param)
    config = _load(config_path, min_contexts, max_contexts, restricted, verbose)

    try:
        results = asyncio.run(run_many(config, scripts, parameters))
    except PoolInitializationError as e:
        typer.echo(f"Engine error: {e}", err=True)
        raise typer.Exit(1)
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    for result in results:
        typer.echo(_describe(result))
        if not result.success:
            for line in (result.message or "").splitlines():
                typer.echo(f"        {line}")

    failed = sum(1 for result in results if not result.success)
    typer.echo(f"\n{len(results) - failed}/{len(results)} succeeded")
    if failed:
        raise typer.Exit(1)


@app.command()
def events(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of recent events to show"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Show recent events from the event log."""
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ConfigError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    recent = EventClient(config.events_path).read_events(limit=limit)
    if not recent:
        typer.echo(f"No events in {config.events_path}")
        return

    for event in recent:
        line = f"{event.get('timestamp', '')}  {event.get('event_type', ''):<18} {event.get('status', '')}"
        script = (event.get("payload") or {}).get("script")
        if script:
            line += f"  {script}"
        typer.echo(line)


@app.command()
def version():
    """Show version information."""
    typer.echo(f"scriptpool version {__version__}")


# Static commands (config)
from scriptpool.commands import config as config_command  # noqa: E402

app.add_typer(config_command.app, name="config")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
