from __future__ import annotations


class SetupError(Exception):
    """Base class for orchestrator errors."""


class DuplicateStepError(SetupError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Step already registered: {name}")
        self.name = name


class CycleDetectedError(SetupError):
    def __init__(self, name: str, path: list[str] | None = None) -> None:
        chain = " -> ".join([*(path or []), name])
        super().__init__(f"Dependency cycle detected at step {name!r} ({chain})")
        self.name = name
        self.path = list(path or [])


class MissingDependencyWarning(UserWarning):
    """A DependsOn name that no candidate step provides.

    Non-fatal: the capability may come from a prior run's completed steps.
    """

    def __init__(self, step: str, dependency: str) -> None:
        super().__init__(f"Step {step!r} depends on {dependency!r}, which no selected step provides")
        self.step = step
        self.dependency = dependency


class StepFailure(SetupError):
    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"Step {step!r} failed: {message}")
        self.step = step
        self.message = message


class NonCriticalStepFailure(StepFailure):
    pass


class CriticalStepFailure(StepFailure):
    pass


class StepTimeoutError(SetupError):
    def __init__(self, step: str, timeout_s: float) -> None:
        super().__init__(f"Step {step!r} timed out after {timeout_s:g}s")
        self.step = step
        self.timeout_s = timeout_s


class PlanChangedError(SetupError):
    """The re-resolved plan no longer matches the positions a run recorded."""

    def __init__(self, session_id: str, mismatches: list[str]) -> None:
        detail = "; ".join(mismatches)
        super().__init__(f"Cannot resume run {session_id}: the plan changed since it was recorded ({detail})")
        self.session_id = session_id
        self.mismatches = list(mismatches)


class CheckpointPersistenceError(SetupError):
    """Run state could not be saved ahead of a planned restart."""


class ResumeTriggerCreationError(SetupError):
    """The host refused to register the deferred relaunch entry."""


class RebootInitiated(BaseException):
    """Raised once a restart has been requested; the process must exit.

    Derives from BaseException so step failure handling never swallows it.
    """

    def __init__(self, checkpoint: str, next_step: int) -> None:
        super().__init__(f"Restart requested by checkpoint {checkpoint!r}; resuming at step {next_step}")
        self.checkpoint = checkpoint
        self.next_step = next_step
