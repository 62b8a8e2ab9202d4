from __future__ import annotations

import logging
import sys
import uuid
from typing import Iterable, List, Optional

from .checkpoint import CheckpointController, Decision
from .config import OrchestratorConfig
from .context import CancelToken, RunContext
from .engine import ExecutionEngine, RunOutcome, RunResult
from .errors import PlanChangedError, RebootInitiated
from .lib.power import HostRestarter
from .model import ExecutionPlan, RunState, RunStatus, Step, utc_now
from .plan import resolve_plan, unsatisfied_dependencies
from .reboot_detect import default_detector
from .registry import StepRegistry
from .resume_trigger import ResumeTriggerManager, RetryPolicy, select_backend
from .secrets import EnvSecretProvider, SecretProvider
from .state_store import StateStore

logger = logging.getLogger(__name__)


def recorded_mismatches(plan: ExecutionPlan, state: RunState) -> List[str]:
    """Recorded step positions that no longer hold the same step in `plan`."""

    out: List[str] = []
    for record in [*state.completed_steps, *state.failed_steps]:
        number = int(record.get("Number", 0))
        name = str(record.get("Name"))
        if not 1 <= number <= len(plan):
            out.append(f"step {number} ({name}) is no longer in the plan")
        elif plan[number - 1].name != name:
            out.append(f"step {number} was {name}, now {plan[number - 1].name}")
    for record in state.reboot_checkpoints:
        if record.get("Outcome") != Decision.REBOOTING.value or "NextStep" not in record:
            continue
        name = str(record.get("Name"))
        if name not in plan.names or plan.index_of(name) >= int(record["NextStep"]):
            out.append(f"checkpoint {name} no longer precedes step {int(record['NextStep']) + 1}")
    return out


def build_controller(config: OrchestratorConfig) -> CheckpointController:
    return CheckpointController(
        detector=default_detector(config.reboot_flag_files),
        triggers=ResumeTriggerManager(
            select_backend(config.resume_backend, dry_run=config.dry_run),
            name=config.resume_task_name,
        ),
        restarter=HostRestarter(dry_run=config.dry_run),
        reboot_delay_s=config.reboot_delay_s,
        retry_policy=RetryPolicy(count=config.resume_retry_count, interval_s=config.resume_retry_interval_s),
    )


def default_launch_command(config: OrchestratorConfig, config_path: Optional[str] = None) -> List[str]:
    """The command a resume trigger re-runs; role and offset are appended later."""

    argv = [sys.executable, "-m", "hostsetup"]
    if config_path:
        argv += ["--config", config_path]
    argv += [
        "--state",
        config.state_path,
        "--log",
        config.log_path,
        "--manifest",
        config.manifest_path,
    ]
    return argv


class Orchestrator:
    """Starts a fresh run or picks up the one in progress on this host."""

    def __init__(
        self,
        steps: Iterable[Step] | StepRegistry,
        config: Optional[OrchestratorConfig] = None,
        *,
        store: Optional[StateStore] = None,
        controller: Optional[CheckpointController] = None,
        secrets: Optional[SecretProvider] = None,
        launch_command: Optional[List[str]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.registry = steps if isinstance(steps, StepRegistry) else StepRegistry(steps)
        self.config = config or OrchestratorConfig(raw={})
        self.store = store or StateStore(self.config.state_path)
        self._controller = controller
        self.secrets = secrets or EnvSecretProvider()
        self.launch_command = launch_command or default_launch_command(self.config)
        self.cancel = cancel or CancelToken()

    @property
    def controller(self) -> CheckpointController:
        if self._controller is None:
            self._controller = build_controller(self.config)
        return self._controller

    def resolve(self, role: str, satisfied: Iterable[str] = ()) -> ExecutionPlan:
        return resolve_plan(self.registry.steps(), role, satisfied=satisfied)

    def validate(self, role: str) -> ExecutionPlan:
        """Resolve the plan and report anything a real run would trip over."""

        plan = self.resolve(role)
        for i, step in enumerate(plan):
            logger.info("  %3d. %s (priority=%s section=%d%s)", i + 1, step.name, step.priority, step.section,
                        ", checkpoint" if step.is_checkpoint else "")
        for name, deps in unsatisfied_dependencies(plan).items():
            logger.warning("Step %s has dependencies not provided earlier in the plan: %s", name, ", ".join(deps))
        logger.info("Plan for role %s is valid (%d steps)", role, len(plan))
        return plan

    def preview(self, role: str, resume_at: Optional[int] = None) -> RunOutcome:
        plan = self.resolve(role)
        return ExecutionEngine().preview(plan, start_offset=resume_at or 0)

    def _load_in_progress(self, role: str) -> Optional[RunState]:
        state = self.store.load()
        if state is None:
            return None
        if state.status is not RunStatus.IN_PROGRESS:
            logger.info("Previous run %s ended %s; starting fresh", state.session_id, state.status.value)
            return None
        if state.role.lower() != role.lower():
            logger.warning("Run %s in progress for role %s; resuming it instead of role %s",
                           state.session_id, state.role, role)
        return state

    def _clear_resume_trigger(self, state: RunState) -> None:
        name = state.resume_task.name if state.resume_task else None
        try:
            self.controller.triggers.remove(name)
        except Exception as e:
            logger.warning("Could not remove resume trigger %s: %s", name or self.controller.triggers.name, e)
        state.resume_task = None

    def run(self, role: str, *, resume_at: Optional[int] = None, force: bool = False) -> RunOutcome:
        state = self._load_in_progress(role)

        if state is None:
            if resume_at:
                logger.info("No run in progress; ignoring resume offset %d and starting fresh", resume_at)
            plan = self.resolve(role)
            state = RunState(
                role=role,
                session_id=uuid.uuid4().hex,
                start_time=utc_now(),
                total_steps=len(plan),
                reboot_mode=self.config.reboot_mode,
            )
            satisfied: set[str] = set()
            offset = 0
            logger.info("Starting run %s for role %s (%d steps, RebootMode=%s)",
                        state.session_id, role, len(plan), state.reboot_mode.value)
        else:
            role = state.role
            satisfied = self.registry.capabilities_of(state.completed_names)
            plan = self.resolve(role, satisfied=satisfied)
            offset = max(state.current_step, resume_at or 0)
            mismatches = recorded_mismatches(plan, state)
            if mismatches:
                raise PlanChangedError(state.session_id, mismatches)
            if len(plan) != state.total_steps:
                logger.warning("Plan now has %d steps; run %s was planned with %d",
                               len(plan), state.session_id, state.total_steps)
                state.total_steps = len(plan)
            logger.info("Resuming run %s for role %s at step %d (reboots so far: %d)",
                        state.session_id, role, offset + 1, state.reboot_count)
            self._clear_resume_trigger(state)

        self.store.save(state)

        ctx = RunContext(
            role=role,
            state=state,
            store=self.store,
            plan=plan,
            config=self.config,
            checkpoints=self.controller,
            secrets=self.secrets,
            launch_command=list(self.launch_command),
            force=force,
            cancel=self.cancel,
            capabilities=set(satisfied),
        )

        if offset >= state.total_steps:
            logger.info("Resume offset %d is past the last step; run %s is complete", offset, state.session_id)
            state.status = RunStatus.COMPLETED
            state.current_step = state.total_steps
            ctx.persist()
            self._finish(state)
            return RunOutcome(result=RunResult.COMPLETED, start_offset=offset)

        self.cancel.install()
        try:
            outcome = ExecutionEngine(ctx).run(plan, offset)
        except RebootInitiated as e:
            logger.info("%s; exiting to allow restart", e)
            return RunOutcome(result=RunResult.RESTARTING, start_offset=offset)
        finally:
            self.cancel.uninstall()

        if outcome.failure is not None:
            logger.error("Run %s failed: %s", state.session_id, outcome.failure)
        for w in outcome.warnings:
            logger.warning("Non-critical failure: %s", w)

        self._finish(state)
        return outcome

    def _finish(self, state: RunState) -> None:
        if state.status is RunStatus.IN_PROGRESS:
            return
        logger.info("Run %s finished: %s (%d completed, %d failed, %d restarts)",
                    state.session_id, state.status.value, len(state.completed_steps),
                    len(state.failed_steps), state.reboot_count)
        if self.config.archive_on_finish:
            self.store.archive(state)
