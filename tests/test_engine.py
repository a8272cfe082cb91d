# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Tests for the execution engine."""

import pytest

from provision.backup import BackupManager
from provision.engine import ALL_INPUTS, EngineOptions, ExecutionEngine, compute_input_hash
from provision.errors import FatalStepError, PreconditionError, TransientStepError
from provision.registry import StepRegistry
from provision.schemas import RunState, Step, StepOutcome
from provision.state import StateStore


def _recording_step(step_id, calls, requires=(), **kwargs):
    def action(ctx):
        calls.append(step_id)

    return Step(step_id=step_id, description=f"step {step_id}", action=action, requires=requires, **kwargs)


def _outcomes(record):
    return {r.step_id: r.outcome for r in record.results}


@pytest.fixture
def store(tmp_path):
    return StateStore(tmp_path / "state" / "demo.state")


@pytest.fixture
def fast():
    return EngineOptions(retry_backoff=0)


class TestInputHash:
    """Tests for compute_input_hash."""

    def test_only_declared_inputs_matter(self):
        """Undeclared keys never change a step's hash."""
        step = _recording_step("a", [], inputs=("NAME",))

        h1 = compute_input_hash(step, {"NAME": "x", "OTHER": "1"})
        h2 = compute_input_hash(step, {"NAME": "x", "OTHER": "2"})
        h3 = compute_input_hash(step, {"NAME": "y", "OTHER": "1"})

        assert h1 == h2
        assert h1 != h3

    def test_params_change_hash(self):
        """Static params are part of the hash."""
        a = Step(step_id="a", description="", action=lambda ctx: None, params={"dirs": ["x"]})
        b = Step(step_id="a", description="", action=lambda ctx: None, params={"dirs": ["y"]})

        assert compute_input_hash(a, {}) != compute_input_hash(b, {})

    def test_all_inputs_covers_every_key(self):
        """A step declaring ALL_INPUTS depends on the whole config."""
        step = _recording_step("a", [], inputs=(ALL_INPUTS,))

        assert compute_input_hash(step, {"X": "1"}) != compute_input_hash(step, {"X": "1", "Y": "2"})

    def test_hash_is_stable_across_key_order(self):
        """Canonical serialization ignores mapping order."""
        step = _recording_step("a", [], inputs=(ALL_INPUTS,))

        assert compute_input_hash(step, {"A": "1", "B": "2"}) == compute_input_hash(step, {"B": "2", "A": "1"})


class TestRun:
    """Tests for ExecutionEngine.run."""

    def test_runs_in_dependency_order(self, make_context, store, fast):
        """All steps run once, prerequisites first."""
        calls = []
        registry = StepRegistry("demo", [
            _recording_step("c", calls, requires=("b",)),
            _recording_step("b", calls, requires=("a",)),
            _recording_step("a", calls),
        ])

        record = ExecutionEngine().run(registry, store, make_context(), fast)

        assert calls == ["a", "b", "c"]
        assert record.state == RunState.COMPLETED
        assert set(_outcomes(record).values()) == {StepOutcome.SUCCEEDED}

    def test_second_run_skips_everything(self, make_context, store, fast):
        """Idempotence: a repeat run with the same inputs executes nothing."""
        calls = []
        registry = StepRegistry("demo", [_recording_step("a", calls), _recording_step("b", calls, requires=("a",))])
        ctx = make_context()

        ExecutionEngine().run(registry, store, ctx, fast)
        record = ExecutionEngine().run(registry, store, ctx, fast)

        assert calls == ["a", "b"]
        assert _outcomes(record) == {"a": StepOutcome.SKIPPED_DONE, "b": StepOutcome.SKIPPED_DONE}
        assert record.state == RunState.COMPLETED

    def test_changed_input_reruns_only_that_step(self, make_context, store, fast):
        """Changing a declared input re-runs the step that declares it."""
        calls = []
        registry = StepRegistry("demo", [
            _recording_step("a", calls, inputs=("NAME",)),
            _recording_step("b", calls, inputs=("OTHER",)),
        ])

        ExecutionEngine().run(registry, store, make_context({"NAME": "one", "OTHER": "x"}), fast)
        calls.clear()
        record = ExecutionEngine().run(registry, store, make_context({"NAME": "two", "OTHER": "x"}), fast)

        assert calls == ["a"]
        assert _outcomes(record) == {"a": StepOutcome.SUCCEEDED, "b": StepOutcome.SKIPPED_DONE}

    def test_force_reruns_only_the_named_step(self, make_context, store):
        """A, B(A), C(A): --force A re-runs A and leaves B and C skipped."""
        calls = []
        registry = StepRegistry("demo", [
            _recording_step("A", calls),
            _recording_step("B", calls, requires=("A",)),
            _recording_step("C", calls, requires=("A",)),
        ])
        ctx = make_context()

        ExecutionEngine().run(registry, store, ctx, EngineOptions())
        assert calls.index("A") < calls.index("B")
        assert calls.index("A") < calls.index("C")

        calls.clear()
        record = ExecutionEngine().run(registry, store, ctx, EngineOptions(force_step_ids=frozenset({"A"})))

        assert calls == ["A"]
        assert _outcomes(record) == {
            "A": StepOutcome.SUCCEEDED,
            "B": StepOutcome.SKIPPED_DONE,
            "C": StepOutcome.SKIPPED_DONE,
        }

    def test_force_all_reruns_everything(self, make_context, store):
        """force_all ignores every completion record."""
        calls = []
        registry = StepRegistry("demo", [_recording_step("a", calls), _recording_step("b", calls)])
        ctx = make_context()

        ExecutionEngine().run(registry, store, ctx, EngineOptions())
        ExecutionEngine().run(registry, store, ctx, EngineOptions(force_all=True))

        assert calls == ["a", "b", "a", "b"]

    def test_effect_already_present_is_recorded(self, make_context, store, fast):
        """A step whose predicate holds is recorded done without running."""
        calls = []
        registry = StepRegistry("demo", [_recording_step("a", calls, is_applied=lambda ctx: True)])

        record = ExecutionEngine().run(registry, store, make_context(), fast)

        assert calls == []
        assert record.results[0].outcome == StepOutcome.SKIPPED_DONE
        assert record.results[0].detail == "effect already present"
        assert store.get("a") is not None

    def test_failure_halts_run(self, make_context, store, fast):
        """Steps after a failed step do not run and nothing is recorded for it."""
        calls = []

        def boom(ctx):
            raise FatalStepError("disk full")

        registry = StepRegistry("demo", [
            _recording_step("a", calls),
            Step(step_id="b", description="b", action=boom, requires=("a",)),
            _recording_step("c", calls, requires=("b",)),
        ])

        record = ExecutionEngine().run(registry, store, make_context(), fast)

        assert calls == ["a"]
        assert record.state == RunState.RUNNING
        assert record.failed.step_id == "b"
        assert "disk full" in record.failed.error
        assert record.failed.retryable is False
        assert store.get("b") is None
        assert "c" not in _outcomes(record)

    def test_unexpected_exception_is_fatal(self, make_context, store, fast):
        """A non-StepError exception fails the step without retries."""
        attempts = []

        def broken(ctx):
            attempts.append(1)
            raise KeyError("missing")

        registry = StepRegistry("demo", [Step(step_id="a", description="a", action=broken)])

        record = ExecutionEngine().run(registry, store, make_context(), fast)

        assert len(attempts) == 1
        assert record.failed.retryable is False
        assert "KeyError" in record.failed.error

    def test_validation_failure_fails_step(self, make_context, store, fast):
        """validate returning False fails the step and records nothing."""
        calls = []
        registry = StepRegistry("demo", [_recording_step("a", calls, validate=lambda ctx: False)])

        record = ExecutionEngine().run(registry, store, make_context(), fast)

        assert calls == ["a"]
        assert record.failed.step_id == "a"
        assert "validation" in record.failed.error
        assert store.get("a") is None


class TestRetry:
    """Tests for transient failure handling."""

    def test_transient_failure_is_retried(self, make_context, store):
        """A transient failure followed by success completes the step."""
        attempts = []

        def flaky(ctx):
            attempts.append(1)
            if len(attempts) < 3:
                raise TransientStepError("connection reset")

        registry = StepRegistry("demo", [Step(step_id="a", description="a", action=flaky)])

        record = ExecutionEngine().run(registry, store, make_context(), EngineOptions(max_retries=3, retry_backoff=0))

        assert record.state == RunState.COMPLETED
        assert record.results[0].attempts == 3

    def test_retries_exhausted(self, make_context, store):
        """After max_retries extra attempts the step fails, still retryable."""
        attempts = []

        def down(ctx):
            attempts.append(1)
            raise TransientStepError("registry unreachable")

        registry = StepRegistry("demo", [Step(step_id="a", description="a", action=down)])

        record = ExecutionEngine().run(registry, store, make_context(), EngineOptions(max_retries=2, retry_backoff=0))

        assert len(attempts) == 3
        assert record.failed.attempts == 3
        assert record.failed.retryable is True
        assert "gave up after 3 attempt(s)" in record.failed.error

    def test_fatal_failure_is_not_retried(self, make_context, store):
        """Fatal errors stop immediately."""
        attempts = []

        def fatal(ctx):
            attempts.append(1)
            raise FatalStepError("bad config")

        registry = StepRegistry("demo", [Step(step_id="a", description="a", action=fatal)])

        ExecutionEngine().run(registry, store, make_context(), EngineOptions(max_retries=3, retry_backoff=0))

        assert len(attempts) == 1


class TestCrashRecovery:
    """A step killed mid-action is re-run on restart."""

    def test_partial_action_reruns(self, make_context, store, fast):
        """No record is written, so the action runs again against the partial tree."""
        dirs = ["apps", "infra", "scripts"]
        crash = {"armed": True}

        def scaffold(ctx):
            for name in dirs:
                ctx.path(name).mkdir(exist_ok=True)
                if crash["armed"] and name == "infra":
                    raise KeyboardInterrupt

        registry = StepRegistry("demo", [Step(step_id="scaffold", description="dirs", action=scaffold)])
        ctx = make_context()

        with pytest.raises(KeyboardInterrupt):
            ExecutionEngine().run(registry, store, ctx, fast)
        assert store.get("scaffold") is None
        assert not ctx.path("scripts").exists()

        crash["armed"] = False
        record = ExecutionEngine().run(registry, StateStore(store.path), ctx, fast)

        assert record.results[0].outcome == StepOutcome.SUCCEEDED
        assert all(ctx.path(name).is_dir() for name in dirs)


class TestDryRun:
    """Tests for dry-run planning."""

    def test_dry_run_executes_nothing(self, make_context, store):
        """Dry-run reports intent without running actions or writing state."""
        calls = []
        registry = StepRegistry("demo", [
            _recording_step("a", calls),
            _recording_step("b", calls, is_applied=lambda ctx: True),
        ])

        record = ExecutionEngine().run(registry, store, make_context(), EngineOptions(dry_run=True))

        assert calls == []
        assert not store.path.exists()
        assert [r.outcome for r in record.results] == [StepOutcome.SKIPPED_DRY_RUN] * 2
        assert [r.detail for r in record.results] == ["would run", "would record (effect already present)"]

    def test_dry_run_reports_done_steps(self, make_context, store):
        """Steps recorded done are reported as would-skip."""
        calls = []
        registry = StepRegistry("demo", [_recording_step("a", calls)])
        ctx = make_context()
        ExecutionEngine().run(registry, store, ctx, EngineOptions())

        record = ExecutionEngine().run(registry, store, ctx, EngineOptions(dry_run=True))

        assert record.results[0].detail == "would skip (already done)"


class TestPreconditions:
    """Tests for check_preconditions."""

    def test_missing_tool_reported_once(self, make_context, store, fast):
        """A tool missing for several steps is reported once."""
        registry = StepRegistry("demo", [
            Step(step_id="a", description="a", action=lambda ctx: None, requires_tools=("docker",)),
            Step(step_id="b", description="b", action=lambda ctx: None, requires_tools=("docker",)),
        ])

        failures = ExecutionEngine().check_preconditions(registry, store, make_context(), fast)

        assert len(failures) == 1
        assert failures[0].step_id == "a"
        assert "docker" in failures[0].message

    def test_precondition_error_collected(self, make_context, store, fast):
        """PreconditionError from a step's precondition becomes a failure."""
        def needs_repo(ctx):
            raise PreconditionError("not a git repository")

        registry = StepRegistry("demo", [Step(step_id="a", description="a", action=lambda ctx: None, precondition=needs_repo)])

        failures = ExecutionEngine().check_preconditions(registry, store, make_context(), fast)

        assert [f.message for f in failures] == ["not a git repository"]

    def test_done_steps_not_checked(self, make_context, store, fast):
        """Steps already recorded done are skipped by the check."""
        step = Step(step_id="a", description="a", action=lambda ctx: None, requires_tools=("docker",))
        registry = StepRegistry("demo", [step])
        ctx = make_context()
        store.mark_done("a", compute_input_hash(step, ctx.config))

        assert ExecutionEngine().check_preconditions(registry, store, ctx, fast) == []


class TestSnapshots:
    """Steps with backup_paths are snapshotted before they run."""

    def test_backup_paths_snapshotted(self, make_context, store, fast, tmp_path):
        """The engine hands each backup path to the BackupManager."""
        ctx = make_context()
        ctx.path("config.ts").write_text("original")

        def rewrite(c):
            c.path("config.ts").write_text("changed")

        backups = BackupManager(root=tmp_path / "snapshots", run_id="run1")
        registry = StepRegistry("demo", [
            Step(step_id="a", description="a", action=rewrite, backup_paths=("config.ts",)),
        ])

        ExecutionEngine(backups).run(registry, store, ctx, fast)

        assert [h.original for h in backups.handles] == [ctx.path("config.ts").absolute()]
        backups.rollback_all()
        assert ctx.path("config.ts").read_text() == "original"
