# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Step and run schemas for provision.

- Step (static) → engine → StepResult
- StateRecord written only when a step completes
- RunRecord owns the ordered results of one invocation
"""

from provision.schemas.run_record import (
    DEFAULT_TIMEOUTS,
    PreconditionFailure,
    RunRecord,
    RunState,
    StateRecord,
    Step,
    StepContext,
    StepKind,
    StepOutcome,
    StepResult,
)

__all__ = [
    "DEFAULT_TIMEOUTS",
    "PreconditionFailure",
    "RunRecord",
    "RunState",
    "StateRecord",
    "Step",
    "StepContext",
    "StepKind",
    "StepOutcome",
    "StepResult",
]
