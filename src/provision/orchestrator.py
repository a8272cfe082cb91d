# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Orchestrator - the single entry point behind every workflow command.

Flow:
1. Validate usage (workflow name, --force step ids, env file) before any
   side effect
2. Load configuration and register secret values with the log redactor
3. Take the run lock and open the run log (skipped in dry-run)
4. Check preconditions; abort without mutation if any fail
5. Run the engine, then commit snapshots or roll back
"""

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Union

from provision.backup import BackupManager
from provision.config import ProvisionSettings, load_env_file, target_dir
from provision.engine import EngineOptions, ExecutionEngine
from provision.errors import UsageError
from provision.lock import RunLock
from provision.logs import Redactor, attach_run_log, detach_handler, get_redactor
from provision.registry import StepRegistry
from provision.runner import CommandRunner
from provision.schemas import RunRecord, RunState, StepContext, StepOutcome
from provision.state import StateStore

logger = logging.getLogger(__name__)

FORCE_ALL = "all"

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_DIRTY = 2
EXIT_USAGE = 3
EXIT_INTERRUPTED = 130

_EXIT_CODES: Dict[RunState, int] = {
    RunState.COMPLETED: EXIT_COMPLETED,
    RunState.ROLLED_BACK: EXIT_FAILED,
    RunState.ABORTED: EXIT_FAILED,
    RunState.ABORTED_DIRTY: EXIT_DIRTY,
}


def exit_code_for(state: RunState) -> int:
    """Map a terminal run state to the CLI exit code."""
    return _EXIT_CODES.get(state, EXIT_FAILED)


def state_path(target: Union[str, Path], workflow: str) -> Path:
    """State file for one workflow on one target."""
    return target_dir(target) / "state" / f"{workflow}.state"


def lock_path(target: Union[str, Path]) -> Path:
    return target_dir(target) / "run.lock"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Orchestrator:
    """Runs named workflows against a target root."""

    def __init__(
        self,
        workflows: Optional[Mapping[str, object]] = None,
        settings: Optional[ProvisionSettings] = None,
        runner: Optional[CommandRunner] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            workflows: Mapping of workflow name -> object with a
                ``build_registry()`` callable (defaults to provision_workflows)
            settings: Engine settings (defaults if None)
            runner: CommandRunner handed to step callables
        """
        if workflows is None:
            from provision_workflows import WORKFLOWS

            workflows = WORKFLOWS
        self.workflows = dict(workflows)
        self.settings = settings or ProvisionSettings()
        self.runner = runner or CommandRunner()

    def workflow_names(self) -> List[str]:
        return list(self.workflows)

    def registry_for(self, workflow: str) -> StepRegistry:
        """
        Build the step registry of a workflow.

        Raises:
            UsageError: If the workflow is unknown
        """
        if workflow not in self.workflows:
            raise UsageError(
                f"Unknown workflow: {workflow}. Available: {', '.join(self.workflows)}"
            )
        registry = self.workflows[workflow].build_registry()
        if not registry.name:
            registry.name = workflow
        return registry

    def run(
        self,
        workflow: str,
        target: Union[str, Path],
        env_file: Optional[Union[str, Path]] = None,
        dry_run: bool = False,
        force: Iterable[str] = (),
        force_all: bool = False,
    ) -> RunRecord:
        """
        Run one workflow against a target root.

        Args:
            workflow: Workflow name
            target: Target root directory (created by steps if missing)
            env_file: KEY=value file with configuration for step actions
            dry_run: Report intended actions without mutating anything
            force: Step ids to re-run even if recorded done ("all" = every step)
            force_all: Re-run every step

        Returns:
            RunRecord in a terminal state

        Raises:
            UsageError: Bad workflow, force step id, target or env file
            ConcurrentRunError: Another live run holds the target's lock
        """
        registry = self.registry_for(workflow)
        # Cycles are a definition error; surface them before touching anything
        registry.topological_order()

        force_ids = set(force)
        if FORCE_ALL in force_ids:
            force_all = True
            force_ids.discard(FORCE_ALL)
        unknown = sorted(f for f in force_ids if f not in registry)
        if unknown:
            raise UsageError(
                f"Unknown step(s) for {workflow}: {', '.join(unknown)}. "
                f"Steps: {', '.join(registry.step_ids())}"
            )

        target_path = Path(target).expanduser().absolute()
        if target_path.exists() and not target_path.is_dir():
            raise UsageError(f"Target is not a directory: {target_path}")

        config = load_env_file(env_file)
        redactor = get_redactor()
        redactor.add_secrets(config)
        if config:
            logger.debug(f"Configuration: {redactor.redact_mapping(config)}")

        run_dir = target_dir(target_path)
        record = RunRecord(
            run_id=str(uuid.uuid4()),
            workflow=workflow,
            target=target_path,
            started_at=_utcnow(),
            dry_run=dry_run,
        )
        options = EngineOptions(
            dry_run=dry_run,
            max_retries=self.settings.max_retries,
            retry_backoff=self.settings.retry_backoff,
            force_step_ids=frozenset(force_ids),
            force_all=force_all,
            timeouts=dict(self.settings.timeouts),
        )
        context = StepContext(
            target=target_path,
            config=config,
            runner=self.runner,
            work_dir=run_dir / "work",
            dry_run=dry_run,
        )
        state = StateStore(state_path(target_path, workflow))

        if dry_run:
            return self._execute(registry, state, context, options, record)

        with RunLock(lock_path(target_path)):
            log_file = run_dir / "logs" / f"{workflow}-{record.run_id}.log"
            handler = attach_run_log(log_file)
            record.log_file = str(log_file)
            try:
                return self._execute(registry, state, context, options, record)
            finally:
                detach_handler(handler)

    def _execute(
        self,
        registry: StepRegistry,
        state: StateStore,
        context: StepContext,
        options: EngineOptions,
        record: RunRecord,
    ) -> RunRecord:
        mode = " (dry run)" if options.dry_run else ""
        logger.info(f"Starting {record.workflow} on {record.target}{mode}, run {record.run_id}")

        backups = BackupManager(root=target_dir(record.target) / "snapshots", run_id=record.run_id)
        engine = ExecutionEngine(backups)

        failures = engine.check_preconditions(registry, state, context, options)
        if failures:
            for failure in failures:
                logger.error(f"Precondition failed for {failure.step_id}: {failure.message}")
            record.preconditions = failures
            return self._finish(record, RunState.ABORTED)

        try:
            engine.run(registry, state, context, options, record)
        except KeyboardInterrupt:
            logger.error("Interrupted, rolling back")
            self._rollback(state, backups, record)
            raise

        if record.failed is None:
            backups.commit()
            return self._finish(record, RunState.COMPLETED)

        return self._rollback(state, backups, record)

    def _rollback(
        self,
        state: StateStore,
        backups: BackupManager,
        record: RunRecord,
    ) -> RunRecord:
        if backups.handles:
            logger.info(f"Rolling back {len(backups.handles)} snapshot(s)")
        report = backups.rollback_all()

        # Any step that ran may have written under a restored path; its effect
        # is re-recorded by the idempotency check on the next run if it survived
        for result in record.results:
            if result.outcome != StepOutcome.SUCCEEDED:
                continue
            if state.clear(result.step_id):
                logger.info(f"Cleared state record for rolled-back step {result.step_id}")

        if report.clean:
            return self._finish(record, RunState.ROLLED_BACK)

        record.unrestored = report.unrestored
        record.snapshot_dir = str(report.snapshot_dir) if report.snapshot_dir else None
        return self._finish(record, RunState.ABORTED_DIRTY)

    def _finish(self, record: RunRecord, run_state: RunState) -> RunRecord:
        record.state = run_state
        record.completed_at = _utcnow()
        level = logging.INFO if run_state == RunState.COMPLETED else logging.ERROR
        logger.log(level, f"Run {record.run_id} finished: {run_state.value}")
        return record


# =============================================================================
# Summary rendering
# =============================================================================


def _remediation(record: RunRecord) -> List[str]:
    lines: List[str] = []
    target = record.target

    if record.state == RunState.ABORTED:
        lines.append("Nothing was changed. Fix the following, then re-run:")
        for failure in record.preconditions:
            lines.append(f"  - {failure.step_id}: {failure.message}")
        return lines

    failed = record.failed
    if failed is None:
        return lines

    lines.append(f"Failed step: {failed.step_id}")
    lines.append(f"Error: {failed.error}")
    rerun_hint = f"provision {record.workflow} --target {target}"
    force_hint = f"{rerun_hint} --force {failed.step_id}"

    if record.state == RunState.ABORTED_DIRTY:
        lines.append("MANUAL INTERVENTION REQUIRED: rollback could not restore these paths:")
        for path in record.unrestored:
            lines.append(f"  - {path}")
        if record.snapshot_dir:
            lines.append(f"Pre-run copies are kept in: {record.snapshot_dir}")
        lines.append(f"Restore them by hand, then re-run: {force_hint}")
    elif failed.retryable:
        lines.append("The failure looks transient and all changes were rolled back.")
        lines.append(f"Re-running is sufficient: {rerun_hint}")
    else:
        lines.append("All changes were rolled back. Manual intervention is required:")
        lines.append("fix the cause of the error above, then re-run:")
        lines.append(f"  {force_hint}")
    return lines


def render_summary(record: RunRecord, redactor: Optional[Redactor] = None) -> str:
    """
    Render a human-readable run summary.

    Lists every step outcome, the final state and, for failed runs, what to
    do next. Secret values are masked.
    """
    redactor = redactor or get_redactor()
    lines = [
        f"Workflow: {record.workflow}",
        f"Target: {record.target}",
        f"Run ID: {record.run_id}",
    ]
    if record.dry_run:
        lines.append("Mode: dry run (nothing was changed)")
    lines.append("")

    if record.results:
        width = max(len(r.outcome.value) for r in record.results) + 2
        for result in record.results:
            badge = f"[{result.outcome.value}]".ljust(width)
            note = f" - {result.detail}" if result.detail else ""
            if result.attempts > 1:
                note += f" ({result.attempts} attempts)"
            lines.append(f"  {badge} {result.step_id}{note}")
        lines.append("")

    ran = record.step_ids(StepOutcome.SUCCEEDED)
    skipped = record.step_ids(StepOutcome.SKIPPED_DONE)
    lines.append(f"Ran: {len(ran)}  Skipped: {len(skipped)}")
    lines.append(f"State: {record.state.value}")
    if record.log_file:
        lines.append(f"Log: {record.log_file}")

    remediation = _remediation(record)
    if remediation:
        lines.append("")
        lines.extend(remediation)

    return redactor.redact("\n".join(lines))
