# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Error taxonomy for provision.

Usage and precondition errors are raised before anything is mutated.
Step errors carry the step id and whether a retry may help, so the engine
never has to inspect error text to decide what to do next.
"""

from typing import List, Optional


class ProvisionError(Exception):
    """Base class for all provision errors."""

    pass


class UsageError(ProvisionError):
    """Raised for bad flags, unknown workflows or missing required paths."""

    pass


class ConfigError(UsageError):
    """Raised when the settings file cannot be parsed or has invalid values."""

    pass


class PreconditionError(ProvisionError):
    """Raised when a required tool or target state is missing."""

    pass


class ConcurrentRunError(ProvisionError):
    """Raised when another live run already holds the lock for a target."""

    pass


# =============================================================================
# Registry errors
# =============================================================================


class RegistryError(ProvisionError):
    """Base class for step registry errors."""

    pass


class DuplicateStepError(RegistryError):
    """Raised when a step id is registered twice."""

    pass


class UnknownDependencyError(RegistryError):
    """Raised when a step requires a step that is not registered."""

    pass


class CyclicDependencyError(RegistryError):
    """Raised when no topological order exists."""

    def __init__(self, stuck: List[str]):
        self.stuck = stuck
        super().__init__(f"Dependency cycle among steps: {', '.join(stuck)}")


# =============================================================================
# Step errors
# =============================================================================


class StepError(ProvisionError):
    """A step action failed.

    Attributes:
        step_id: Step that failed (may be filled in by the engine)
        cause: Underlying exception, if any
        attempts: Action attempts made before giving up (set by the engine)
        retryable: True if the engine may retry the action
    """

    retryable = False

    def __init__(
        self,
        message: str,
        step_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.step_id = step_id
        self.cause = cause
        self.attempts = 0

    def __str__(self) -> str:
        prefix = f"[{self.step_id}] " if self.step_id else ""
        if self.cause is not None:
            return f"{prefix}{self.message} ({type(self.cause).__name__}: {self.cause})"
        return f"{prefix}{self.message}"


class TransientStepError(StepError):
    """Retry-eligible failure: timeouts, lock contention, network hiccups."""

    retryable = True


class FatalStepError(StepError):
    """Non-retryable failure; stops the run and triggers rollback."""

    pass


class ValidationFailedError(FatalStepError):
    """The action completed but the step's validation check failed."""

    pass


# =============================================================================
# Backup errors
# =============================================================================


class SnapshotError(ProvisionError):
    """Raised when a path cannot be snapshotted before a step runs."""

    pass


class RestoreError(ProvisionError):
    """Raised when a snapshot cannot be restored."""

    pass
