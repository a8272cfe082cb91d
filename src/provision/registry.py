# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Step registry - static, ordered definition of a workflow's steps.

Ordering is a data fact: every step declares its prerequisites and the
registry resolves them with a topological sort. Pure data structure, no
side effects.
"""

import heapq
from typing import Dict, Iterable, Iterator, List, Optional, Set

from provision.errors import CyclicDependencyError, DuplicateStepError, UnknownDependencyError
from provision.schemas import Step


class StepRegistry:
    """Holds the steps of one workflow in registration order."""

    def __init__(self, name: str = "", steps: Optional[Iterable[Step]] = None):
        self.name = name
        self._steps: Dict[str, Step] = {}
        if steps is not None:
            self.register_all(steps)

    def register(self, step: Step) -> Step:
        """
        Register a single step.

        Prerequisites must already be registered, so steps added one at a
        time can never form a cycle.

        Raises:
            DuplicateStepError: If the step id already exists
            UnknownDependencyError: If a prerequisite is not registered
        """
        if step.step_id in self._steps:
            raise DuplicateStepError(f"Step already registered: {step.step_id}")
        for dep in step.requires:
            if dep not in self._steps:
                raise UnknownDependencyError(
                    f"Step '{step.step_id}' requires unknown step '{dep}'. "
                    f"Known steps: {sorted(self._steps)}"
                )
        self._steps[step.step_id] = step
        return step

    def register_all(self, steps: Iterable[Step]) -> None:
        """
        Register a batch of steps, allowing forward references within it.

        The batch is validated as a whole before anything is added.

        Raises:
            DuplicateStepError: If an id repeats, inside the batch or against
                already registered steps
            UnknownDependencyError: If a prerequisite is neither registered
                nor part of the batch
        """
        batch = list(steps)
        names = [s.step_id for s in batch]
        dupes = sorted({n for n in names if names.count(n) > 1 or n in self._steps})
        if dupes:
            raise DuplicateStepError(f"Duplicate step ids: {dupes}")

        known = set(self._steps) | set(names)
        for step in batch:
            for dep in step.requires:
                if dep not in known:
                    raise UnknownDependencyError(
                        f"Step '{step.step_id}' requires unknown step '{dep}'. "
                        f"Known steps: {sorted(known)}"
                    )

        for step in batch:
            self._steps[step.step_id] = step

    def topological_order(self) -> List[Step]:
        """
        Return steps so that every step appears after all its prerequisites.

        Ties are broken by registration order, so the result is stable.

        Raises:
            CyclicDependencyError: If no such order exists
        """
        index = {name: i for i, name in enumerate(self._steps)}
        indeg: Dict[str, int] = {}
        children: Dict[str, List[str]] = {name: [] for name in self._steps}

        for name, step in self._steps.items():
            deps = list(dict.fromkeys(step.requires))
            indeg[name] = len(deps)
            for dep in deps:
                children[dep].append(name)

        ready = [(index[n], n) for n, d in indeg.items() if d == 0]
        heapq.heapify(ready)

        ordered: List[Step] = []
        while ready:
            _, name = heapq.heappop(ready)
            ordered.append(self._steps[name])
            for child in children[name]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    heapq.heappush(ready, (index[child], child))

        if len(ordered) != len(self._steps):
            stuck = [n for n in self._steps if indeg[n] > 0]
            raise CyclicDependencyError(stuck)

        return ordered

    def get(self, step_id: str) -> Step:
        """Get a step by id (KeyError if unknown)."""
        return self._steps[step_id]

    def step_ids(self) -> List[str]:
        return list(self._steps)

    def dependents(self, step_id: str) -> Set[str]:
        """Return the ids of every step that transitively requires ``step_id``."""
        found: Set[str] = set()
        frontier = [step_id]
        while frontier:
            current = frontier.pop()
            for name, step in self._steps.items():
                if current in step.requires and name not in found:
                    found.add(name)
                    frontier.append(name)
        return found

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps

    def __iter__(self) -> Iterator[Step]:
        return iter(self._steps.values())

    def __len__(self) -> int:
        return len(self._steps)
