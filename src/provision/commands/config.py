# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Config command for provision.

Validates the engine settings file and optionally an environment file.
"""

from pathlib import Path
from typing import Optional

import typer

from provision.config import is_secret_key, load_env_file, load_settings
from provision.errors import ConfigError, UsageError
from provision.logs import MASK
from provision.orchestrator import EXIT_USAGE

app = typer.Typer(help="Manage and validate configuration")


@app.command()
def validate(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to settings file"),
    env_file: Optional[Path] = typer.Option(None, "--env-file", "-e", help="Environment file to check"),
):
    """
    Validate configuration.

    Checks that the settings file is valid YAML with valid values, and that
    the environment file (if given) parses. Secret values are masked.
    """
    typer.echo("Validating configuration...")
    typer.echo()

    try:
        settings = load_settings(config_path)
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_USAGE)
    except ConfigError as e:
        typer.echo(f"Validation failed: {e}", err=True)
        raise typer.Exit(EXIT_USAGE)

    typer.echo(f"Settings: {settings.source or 'defaults (no settings file)'}")
    typer.echo(f"  max_retries: {settings.max_retries}")
    typer.echo(f"  retry_backoff: {settings.retry_backoff}s")
    for kind, seconds in settings.timeouts.items():
        typer.echo(f"  timeout {kind.value}: {seconds}s")
    typer.echo(f"  redact_patterns: {', '.join(settings.redact_patterns)}")

    if env_file is not None:
        try:
            values = load_env_file(env_file)
        except UsageError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(EXIT_USAGE)
        typer.echo()
        typer.echo(f"Environment file: {env_file} ({len(values)} keys)")
        for key, value in values.items():
            shown = MASK if value and is_secret_key(key, settings.redact_patterns) else value
            typer.echo(f"  {key}={shown}")

    typer.echo()
    typer.echo("Configuration validation complete!")
