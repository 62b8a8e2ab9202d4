from __future__ import annotations

import dataclasses
import logging
from typing import Dict, Iterable, Iterator, List, Optional

from .errors import DuplicateStepError
from .model import DEFAULT_PRIORITY, Step

logger = logging.getLogger(__name__)


class StepRegistry:
    """Step definitions keyed by name, in registration order."""

    def __init__(self, steps: Optional[Iterable[Step]] = None) -> None:
        self._steps: Dict[str, Step] = {}
        for step in steps or []:
            self.register(step)

    def register(self, step: Step) -> Step:
        if step.name in self._steps:
            raise DuplicateStepError(step.name)

        normalized = dataclasses.replace(
            step,
            priority=DEFAULT_PRIORITY if step.priority is None else step.priority,
            provides=frozenset(step.provides) | {step.name},
            depends_on=frozenset(step.depends_on),
            tags=frozenset(step.tags),
        )
        self._steps[step.name] = normalized
        logger.debug("Registered step %s (priority=%s)", normalized.name, normalized.priority)
        return normalized

    def get(self, name: str) -> Step:
        return self._steps[name]

    def __contains__(self, name: object) -> bool:
        return name in self._steps

    def __iter__(self) -> Iterator[Step]:
        return iter(self._steps.values())

    def __len__(self) -> int:
        return len(self._steps)

    def steps(self) -> List[Step]:
        return list(self._steps.values())

    def capabilities_of(self, names: Iterable[str]) -> set[str]:
        """Capabilities provided by the named steps (unknown names provide themselves)."""

        caps: set[str] = set()
        for n in names:
            step = self._steps.get(n)
            caps |= set(step.provides) if step else {n}
        return caps
