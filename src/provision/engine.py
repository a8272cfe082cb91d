# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Execution engine - run a registry's steps in dependency order.

Per step: skip if recorded done with the same input hash, record without
running if the effect already exists, otherwise snapshot, run the action
with retry on transient failures, validate, and record completion.
The first failure halts the engine; rollback is the orchestrator's call.

Steps run sequentially in one thread. They mutate shared system state
(package managers, filesystem trees) where concurrent mutation is unsafe.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, FrozenSet, List, Mapping, Optional

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from provision.backup import BackupManager
from provision.errors import (
    FatalStepError,
    PreconditionError,
    StepError,
    TransientStepError,
    ValidationFailedError,
)
from provision.registry import StepRegistry
from provision.schemas import (
    DEFAULT_TIMEOUTS,
    PreconditionFailure,
    RunRecord,
    RunState,
    Step,
    StepContext,
    StepOutcome,
    StepResult,
)
from provision.state import StateStore

logger = logging.getLogger(__name__)

# Input declaration meaning "every configuration key"
ALL_INPUTS = "*"


def _utcnow() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


def compute_input_hash(step: Step, config: Mapping[str, Any]) -> str:
    """
    Hash a step's declared inputs.

    Covers the step id, its static params and the current values of the
    config keys it declares. Keys a step does not declare never affect
    its hash, so unrelated config changes do not force a re-run. A step
    declaring ALL_INPUTS depends on the whole configuration.
    """
    if ALL_INPUTS in step.inputs:
        inputs = dict(config)
    else:
        inputs = {key: config.get(key) for key in step.inputs}
    payload = {"step": step.step_id, "params": dict(step.params), "inputs": inputs}
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class EngineOptions:
    """Run policy.

    Attributes:
        dry_run: Report intended actions without mutating anything
        max_retries: Extra attempts after a transient failure
        retry_backoff: Fixed wait between attempts, in seconds
        force_step_ids: Steps to re-run even if recorded done
        force_all: Re-run every step
        timeouts: Default timeout per step kind
    """

    dry_run: bool = False
    max_retries: int = 3
    retry_backoff: float = 2.0
    force_step_ids: FrozenSet[str] = frozenset()
    force_all: bool = False
    timeouts: Mapping[Any, float] = field(default_factory=lambda: dict(DEFAULT_TIMEOUTS))

    def is_forced(self, step_id: str) -> bool:
        return self.force_all or step_id in self.force_step_ids


class ExecutionEngine:
    """Runs steps with skip / retry / dry-run policy."""

    def __init__(self, backups: Optional[BackupManager] = None):
        """
        Initialize the engine.

        Args:
            backups: BackupManager for the run. Steps with backup_paths
                need one; without it those paths are not protected.
        """
        self.backups = backups

    def _timeout(self, step: Step, options: EngineOptions) -> float:
        if step.timeout is not None:
            return step.timeout
        return options.timeouts.get(step.kind, DEFAULT_TIMEOUTS[step.kind])

    def check_preconditions(
        self,
        registry: StepRegistry,
        state: StateStore,
        context: StepContext,
        options: EngineOptions,
    ) -> List[PreconditionFailure]:
        """
        Check required tools and target state for every step that would run.

        Steps already recorded done (and not forced) are not checked.

        Returns:
            One PreconditionFailure per problem, empty if all is well. A problem
            shared by several steps (a missing tool, say) is reported once.
        """
        failures: List[PreconditionFailure] = []
        seen = set()
        for step in registry.topological_order():
            input_hash = compute_input_hash(step, context.config)
            if not options.is_forced(step.step_id) and state.is_done(step.step_id, input_hash):
                continue
            messages = [
                f"required tool not found on PATH: {tool}"
                for tool in step.requires_tools
                if context.runner.which(tool) is None
            ]
            if step.precondition is not None:
                try:
                    step.precondition(context.for_step(step, self._timeout(step, options)))
                except PreconditionError as e:
                    messages.append(str(e))
            for message in messages:
                if message not in seen:
                    seen.add(message)
                    failures.append(PreconditionFailure(step.step_id, message))
        return failures

    def run(
        self,
        registry: StepRegistry,
        state: StateStore,
        context: StepContext,
        options: Optional[EngineOptions] = None,
        record: Optional[RunRecord] = None,
    ) -> RunRecord:
        """
        Run every step of ``registry`` in topological order.

        Args:
            registry: Steps to run
            state: Completion records
            context: Configuration and collaborators for step callables
            options: Run policy
            record: RunRecord to append results to (created if None)

        Returns:
            The RunRecord. Its state is COMPLETED when no step failed and
            stays RUNNING on failure, for the caller to roll back.
        """
        options = options or EngineOptions()
        if record is None:
            record = RunRecord(
                run_id=str(uuid.uuid4()),
                workflow=registry.name,
                target=context.target,
                started_at=_utcnow(),
                dry_run=options.dry_run,
            )

        for step in registry.topological_order():
            step_ctx = context.for_step(step, self._timeout(step, options))
            input_hash = compute_input_hash(step, context.config)

            if options.dry_run:
                result = self._plan_step(step, step_ctx, state, input_hash, options)
            else:
                result = self._run_step(step, step_ctx, state, input_hash, options)
            record.results.append(result)

            if result.outcome == StepOutcome.FAILED:
                logger.error(f"[{step.step_id}] FAILED: {result.error}")
                return record

        if not options.dry_run:
            record.state = RunState.COMPLETED
        return record

    # -------------------------------------------------------------------------
    # Per-step decisions
    # -------------------------------------------------------------------------

    def _probe(self, step: Step, ctx: StepContext) -> Optional[bool]:
        """Evaluate the idempotency predicate; None if there is none."""
        if step.is_applied is None:
            return None
        return bool(step.is_applied(ctx))

    def _plan_step(
        self,
        step: Step,
        ctx: StepContext,
        state: StateStore,
        input_hash: str,
        options: EngineOptions,
    ) -> StepResult:
        started = _utcnow()
        forced = options.is_forced(step.step_id)
        if not forced and state.is_done(step.step_id, input_hash):
            detail = "would skip (already done)"
        else:
            try:
                applied = None if forced else self._probe(step, ctx)
            except Exception as e:
                logger.warning(f"[{step.step_id}] idempotency check failed: {e}")
                applied = None
                detail = f"would run (check failed: {e})"
            else:
                detail = "would record (effect already present)" if applied else "would run"
        logger.info(f"[DRY RUN] [{step.step_id}] {detail}: {step.description}")
        return StepResult(
            step_id=step.step_id,
            outcome=StepOutcome.SKIPPED_DRY_RUN,
            started_at=started,
            completed_at=_utcnow(),
            detail=detail,
        )

    def _run_step(
        self,
        step: Step,
        ctx: StepContext,
        state: StateStore,
        input_hash: str,
        options: EngineOptions,
    ) -> StepResult:
        started = _utcnow()
        forced = options.is_forced(step.step_id)

        if not forced and state.is_done(step.step_id, input_hash):
            logger.info(f"[{step.step_id}] already done, skipping")
            return StepResult(
                step_id=step.step_id,
                outcome=StepOutcome.SKIPPED_DONE,
                started_at=started,
                completed_at=_utcnow(),
                detail="recorded done",
            )

        attempts = 0
        try:
            if not forced and self._probe(step, ctx):
                # State was lost after a successful but unrecorded run
                state.mark_done(step.step_id, input_hash)
                logger.info(f"[{step.step_id}] effect already present, recorded as done")
                return StepResult(
                    step_id=step.step_id,
                    outcome=StepOutcome.SKIPPED_DONE,
                    started_at=started,
                    completed_at=_utcnow(),
                    detail="effect already present",
                )

            logger.info(f"[{step.step_id}] {step.description}")
            self._snapshot(step, ctx)
            attempts = self._execute(step, ctx, options)

            if step.validate is not None and not step.validate(ctx):
                raise ValidationFailedError("validation check failed after action", step_id=step.step_id)

            state.mark_done(step.step_id, input_hash)
        except StepError as e:
            if e.step_id is None:
                e.step_id = step.step_id
            return StepResult(
                step_id=step.step_id,
                outcome=StepOutcome.FAILED,
                started_at=started,
                completed_at=_utcnow(),
                error=str(e),
                attempts=e.attempts or attempts,
                retryable=e.retryable,
            )
        except Exception as e:
            return StepResult(
                step_id=step.step_id,
                outcome=StepOutcome.FAILED,
                started_at=started,
                completed_at=_utcnow(),
                error=f"{type(e).__name__}: {e}",
                attempts=attempts,
            )

        logger.info(f"[{step.step_id}] succeeded")
        return StepResult(
            step_id=step.step_id,
            outcome=StepOutcome.SUCCEEDED,
            started_at=started,
            completed_at=_utcnow(),
            attempts=attempts,
        )

    def _snapshot(self, step: Step, ctx: StepContext) -> None:
        if not step.backup_paths:
            return
        if self.backups is None:
            logger.warning(f"[{step.step_id}] no backup manager, paths not protected: {step.backup_paths}")
            return
        for path in step.backup_paths:
            self.backups.snapshot(ctx.path(path))

    def _execute(self, step: Step, ctx: StepContext, options: EngineOptions) -> int:
        """
        Run the action, retrying transient failures.

        Returns:
            Number of attempts made.

        Raises:
            TransientStepError: When retries are exhausted (retryable stays
                True so the summary can suggest a plain re-run)
            StepError: For fatal failures
        """
        total = options.max_retries + 1

        def _log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                f"[{step.step_id}] transient failure ({exc}), "
                f"retry {retry_state.attempt_number}/{options.max_retries} "
                f"in {options.retry_backoff}s"
            )

        retrying = Retrying(
            stop=stop_after_attempt(total),
            wait=wait_fixed(options.retry_backoff),
            retry=retry_if_exception_type(TransientStepError),
            before_sleep=_log_retry,
            reraise=True,
        )

        attempts = 0
        try:
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    step.action(ctx)
        except StepError as e:
            e.attempts = attempts
            if e.retryable:
                e.message = f"gave up after {attempts} attempt(s): {e.message}"
            raise
        except Exception as e:
            error = FatalStepError(f"action raised {type(e).__name__}", step_id=step.step_id, cause=e)
            error.attempts = attempts
            raise error from e
        return attempts
