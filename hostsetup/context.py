from __future__ import annotations

import logging
import signal
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set

from .config import OrchestratorConfig
from .model import ExecutionPlan, RunState
from .secrets import EnvSecretProvider, SecretNotFound, SecretProvider
from .state_store import StateStore

if TYPE_CHECKING:
    from .checkpoint import CheckpointController

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation, checked by the engine between steps."""

    def __init__(self) -> None:
        self.cancelled = False
        self.reason: Optional[str] = None
        self._previous: Dict[int, Any] = {}

    def cancel(self, reason: str = "cancelled") -> None:
        self.cancelled = True
        self.reason = reason

    def _handle(self, signum, frame) -> None:  # noqa: ARG002
        name = signal.Signals(signum).name
        logger.warning("Received %s; stopping after the current step", name)
        self.cancel(name)

    def install(self) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            self._previous[sig] = signal.signal(sig, self._handle)

    def uninstall(self) -> None:
        for sig, handler in self._previous.items():
            signal.signal(sig, handler)
        self._previous.clear()


@dataclass
class RunContext:
    """Everything a step sees about the current run."""

    role: str
    state: RunState
    store: StateStore
    plan: ExecutionPlan
    config: OrchestratorConfig = field(default_factory=lambda: OrchestratorConfig(raw={}))
    checkpoints: Optional["CheckpointController"] = None
    secrets: SecretProvider = field(default_factory=EnvSecretProvider)
    launch_command: List[str] = field(default_factory=list)
    force: bool = False
    cancel: CancelToken = field(default_factory=CancelToken)
    capabilities: Set[str] = field(default_factory=set)
    current_index: int = 0

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    def persist(self) -> None:
        self.store.save(self.state)

    def get_secret(self, role: Optional[str] = None) -> str:
        return self.secrets.get_secret(role or self.role)

    def snapshot(self) -> "StepSnapshot":
        """Picklable view of this run for a work unit running in a child process."""

        try:
            secret: Optional[str] = self.get_secret()
        except SecretNotFound:
            secret = None
        return StepSnapshot(
            role=self.role,
            state=self.state,
            config=self.config,
            force=self.force,
            current_index=self.current_index,
            secret=secret,
        )


@dataclass(frozen=True)
class StepSnapshot:
    """What a timed step sees in its child process.

    Only plain data crosses to the child. The role secret is resolved in the
    parent, and changes made here never reach the parent's RunState.
    """

    role: str
    state: RunState
    config: OrchestratorConfig
    force: bool = False
    current_index: int = 0
    secret: Optional[str] = None

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    def get_secret(self, role: Optional[str] = None) -> str:
        if self.secret is None or (role is not None and role.lower() != self.role.lower()):
            raise SecretNotFound(f"No secret for role {role or self.role!r} in this step")
        return self.secret
