"""hostsetup: unattended, restart-safe machine setup.

Core design goals:
- Ordered, idempotent steps selected per role
- Dependency-aware, deterministic plans
- Durable run state; survives host restarts
- Automatic relaunch at the right step after a restart
- Centralized logging
"""

from .checkpoint import CheckpointController, checkpoint_step
from .engine import ExecutionEngine, RunOutcome, RunResult
from .errors import (
    CheckpointPersistenceError,
    CriticalStepFailure,
    CycleDetectedError,
    DuplicateStepError,
    MissingDependencyWarning,
    NonCriticalStepFailure,
    PlanChangedError,
    ResumeTriggerCreationError,
)
from .model import Checkpoint, ExecutionPlan, RebootMode, RunState, RunStatus, Step, WorkUnit
from .orchestrator import Orchestrator
from .plan import resolve_plan
from .registry import StepRegistry
from .state_store import StateStore

__all__ = [
    "Checkpoint",
    "CheckpointController",
    "CheckpointPersistenceError",
    "CriticalStepFailure",
    "CycleDetectedError",
    "DuplicateStepError",
    "ExecutionEngine",
    "ExecutionPlan",
    "MissingDependencyWarning",
    "NonCriticalStepFailure",
    "Orchestrator",
    "PlanChangedError",
    "RebootMode",
    "ResumeTriggerCreationError",
    "RunOutcome",
    "RunResult",
    "RunState",
    "RunStatus",
    "StateStore",
    "Step",
    "StepRegistry",
    "WorkUnit",
    "checkpoint_step",
    "resolve_plan",
]
