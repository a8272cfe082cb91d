# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
State command for provision.

Inspect and clear step completion records of a target. Clearing a record
makes the next run execute that step again.
"""

from pathlib import Path
from typing import Optional

import typer

from provision.errors import ConcurrentRunError, UsageError
from provision.lock import RunLock
from provision.orchestrator import EXIT_FAILED, EXIT_USAGE, Orchestrator, lock_path, state_path
from provision.state import StateStore

app = typer.Typer(help="Inspect and clear step completion state")


def _registry(workflow: str):
    try:
        return Orchestrator().registry_for(workflow)
    except UsageError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_USAGE)


@app.command("show")
def show_command(
    workflow: str = typer.Argument(..., help="Workflow name"),
    target: Path = typer.Option(..., "--target", "-t", help="Target root directory"),
):
    """Show which steps of a workflow are recorded done.

    Examples:
        provision state show create-monorepo --target /root/farscape
    """
    registry = _registry(workflow)
    path = state_path(target, workflow)
    store = StateStore(path)

    typer.echo(f"State file: {path}\n")
    for step in registry.topological_order():
        record = store.get(step.step_id)
        if record is None:
            typer.echo(f"  [pending] {step.step_id}")
        else:
            typer.echo(f"  [done]    {step.step_id} ({record.completed_at}, hash {record.input_hash[:12]})")

    unknown = [r.step_id for r in store.records() if r.step_id not in registry]
    if unknown:
        typer.echo(f"\nRecords for steps no longer defined: {', '.join(unknown)}")


@app.command("clear")
def clear_command(
    workflow: str = typer.Argument(..., help="Workflow name"),
    target: Path = typer.Option(..., "--target", "-t", help="Target root directory"),
    step: Optional[str] = typer.Option(None, "--step", "-s", help="Clear only this step"),
):
    """Clear completion records so steps run again.

    Takes the run lock, so it cannot race a running workflow.

    Examples:
        provision state clear create-monorepo --target /root/farscape
        provision state clear init-git --target /root/farscape --step initial-commit
    """
    registry = _registry(workflow)
    if step is not None and step not in registry:
        typer.echo(f"Error: Unknown step for {workflow}: {step}", err=True)
        raise typer.Exit(EXIT_USAGE)

    store = StateStore(state_path(target, workflow))
    try:
        with RunLock(lock_path(target)):
            if step is not None:
                removed = 1 if store.clear(step) else 0
            else:
                removed = store.clear_all()
    except ConcurrentRunError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_FAILED)

    typer.echo(f"Cleared {removed} record(s) for {workflow}")
