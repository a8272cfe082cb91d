# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Main CLI entry point for provision.

Dumb trigger: parses args, hands the workflow to the orchestrator, renders
the run summary. No provisioning logic - all of it lives in the engine and
the workflow step definitions.
"""

import importlib
import sys
from pathlib import Path
from types import ModuleType
from typing import List, Optional

import click
import typer

from provision import __version__
from provision.config import ProvisionSettings, load_settings
from provision.errors import ConcurrentRunError, ConfigError, ProvisionError, UsageError
from provision.logs import configure_logging
from provision.orchestrator import (
    EXIT_FAILED,
    EXIT_INTERRUPTED,
    EXIT_USAGE,
    Orchestrator,
    exit_code_for,
    render_summary,
)
from provision_workflows import WORKFLOWS

app = typer.Typer(
    name="provision",
    help="Idempotent, rollback-capable provisioning of the B2B commerce monorepo",
    no_args_is_help=True,
)


@app.callback()
def callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output"),
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Settings file (default: ~/.provision/config.yaml)"
    ),
):
    """Provision a host and B2B commerce monorepo, one workflow at a time."""
    ctx.obj = {"verbose": verbose, "config": config}


def _load_settings(ctx: typer.Context) -> ProvisionSettings:
    """Load settings and configure logging from the global options."""
    obj = ctx.obj or {}
    try:
        settings = load_settings(obj.get("config"))
    except (FileNotFoundError, ConfigError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_USAGE)
    configure_logging(
        settings.log_level,
        verbose=obj.get("verbose", False),
        redact_patterns=settings.redact_patterns,
    )
    return settings


def _workflow_command(workflow: str):
    """Build the command that runs one workflow."""

    def command(
        ctx: typer.Context,
        target: Path = typer.Option(..., "--target", "-t", help="Target root directory"),
        env_file: Optional[Path] = typer.Option(None, "--env-file", "-e", help="KEY=value configuration file"),
        dry_run: bool = typer.Option(False, "--dry-run", help="Show what would run without changing anything"),
        force: Optional[List[str]] = typer.Option(
            None, "--force", help="Re-run a step even if recorded done (repeatable, 'all' for every step)"
        ),
        force_all: bool = typer.Option(False, "--force-all", help="Re-run every step"),
    ):
        settings = _load_settings(ctx)
        orchestrator = Orchestrator(settings=settings)
        try:
            record = orchestrator.run(
                workflow,
                target,
                env_file=env_file,
                dry_run=dry_run,
                force=force or (),
                force_all=force_all,
            )
        except UsageError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(EXIT_USAGE)
        except ConcurrentRunError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(EXIT_FAILED)
        except ProvisionError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(EXIT_FAILED)

        typer.echo()
        typer.echo(render_summary(record))
        raise typer.Exit(exit_code_for(record.state))

    return command


for _name, _module in WORKFLOWS.items():
    app.command(name=_name, help=_module.DESCRIPTION)(_workflow_command(_name))


@app.command()
def workflows():
    """List available workflows and their steps."""
    orchestrator = Orchestrator()
    for name in orchestrator.workflow_names():
        registry = orchestrator.registry_for(name)
        typer.echo(f"{name}: {WORKFLOWS[name].DESCRIPTION}")
        for step in registry.topological_order():
            requires = f" (after {', '.join(step.requires)})" if step.requires else ""
            typer.echo(f"  - {step.step_id}{requires}: {step.description}")
        typer.echo()


@app.command()
def version():
    """Show version information."""
    typer.echo(f"provision version {__version__}")


# Static commands (state, config)
from provision.commands import config, state  # noqa: E402

app.add_typer(state.app, name="state")
app.add_typer(config.app, name="config")


def _click_exceptions(command: click.Command) -> ModuleType:
    """
    The exceptions module of the click the command was built on.

    Recent typer releases ship their own copy of click, whose exception
    classes are unrelated to the installed click package.
    """
    for cls in type(command).__mro__:
        if cls.__name__ in ("Group", "Command") and cls.__module__.endswith(".core"):
            return importlib.import_module(cls.__module__[: -len(".core")] + ".exceptions")
    return click.exceptions


def main(argv: Optional[List[str]] = None) -> None:
    """
    Entry point for the CLI.

    Runs outside click's standalone mode so argument errors exit with the
    usage code instead of click's default.
    """
    command = typer.main.get_command(app)
    exceptions = _click_exceptions(command)
    try:
        rv = command.main(args=argv, prog_name="provision", standalone_mode=False)
    except exceptions.UsageError as e:
        e.show()
        sys.exit(EXIT_USAGE)
    except exceptions.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except exceptions.Abort:
        typer.echo("Aborted!", err=True)
        sys.exit(EXIT_INTERRUPTED)
    sys.exit(rv if isinstance(rv, int) else 0)


if __name__ == "__main__":
    main()
