from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .context import RunContext
from .errors import CheckpointPersistenceError, RebootInitiated, ResumeTriggerCreationError
from .lib.power import HostRestarter
from .model import ALL_TAG, Checkpoint, ExecutionPlan, RebootMode, Step, WorkUnit, utc_now
from .reboot_detect import RebootDetector
from .resume_trigger import ResumeTriggerManager, RetryPolicy

logger = logging.getLogger(__name__)

MANUAL_RESTART_WARNING = "Automatic restart cancelled; manual restart required to finish setup"


class Decision(str, Enum):
    RUNNING = "Running"
    REBOOTING = "Rebooting"
    CANCELLED = "RebootCancelled"


def next_step_for(plan: ExecutionPlan, index: int, checkpoint: Checkpoint) -> int:
    """Resume offset after the checkpoint at `index`. Never the checkpoint itself."""

    if checkpoint.next_step is not None:
        return max(index + 1, checkpoint.next_step)
    section = checkpoint.next_section
    if section is None:
        section = plan[index].section + 1
    return plan.first_index_of_section(section, start=index + 1)


class CheckpointController:
    """Decides at a checkpoint whether to stop the run for a host restart.

    Rebooting is persist -> register resume trigger -> request restart ->
    raise RebootInitiated. If any stage fails the restart is abandoned, the
    in-memory state is rolled back and the run continues.
    """

    def __init__(
        self,
        *,
        detector: RebootDetector,
        triggers: ResumeTriggerManager,
        restarter: HostRestarter,
        reboot_delay_s: int = 10,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.detector = detector
        self.triggers = triggers
        self.restarter = restarter
        self.reboot_delay_s = reboot_delay_s
        self.retry_policy = retry_policy or RetryPolicy()

    def decide(self, mode: RebootMode) -> tuple[Decision, List[str]]:
        if mode is RebootMode.ALWAYS:
            return Decision.REBOOTING, ["mode=Always"]

        required, reasons = self.detector.is_required()
        if mode is RebootMode.CHECK:
            return (Decision.REBOOTING if required else Decision.RUNNING), list(reasons)

        if required:
            logger.warning("Reboot pending but RebootMode=Never: %s", "; ".join(reasons))
        return Decision.RUNNING, list(reasons)

    def evaluate(self, ctx: RunContext, checkpoint: Checkpoint) -> bool:
        index = ctx.current_index
        step = ctx.plan[index]
        mode = checkpoint.mode or ctx.state.reboot_mode

        decision, reasons = self.decide(mode)
        record: Dict[str, Any] = {
            "Name": step.name,
            "Section": step.section,
            "Mode": mode.value,
            "Outcome": decision.value,
            "Reasons": reasons,
            "Timestamp": utc_now(),
        }
        ctx.state.reboot_checkpoints.append(record)

        if decision is Decision.RUNNING:
            logger.info("Checkpoint %s: no restart (mode=%s)", step.name, mode.value)
            return True

        next_step = next_step_for(ctx.plan, index, checkpoint)
        record["NextStep"] = next_step
        self._reboot(ctx, step, checkpoint, record, next_step)
        return True

    def _reboot(
        self,
        ctx: RunContext,
        step: Step,
        checkpoint: Checkpoint,
        record: Dict[str, Any],
        next_step: int,
    ) -> None:
        state = ctx.state
        saved = (state.reboot_count, state.current_step, state.current_section, state.resume_task)

        # Count and offset hit disk before anything else; nothing re-reads the
        # file between here and the restart.
        state.reboot_count += 1
        state.current_step = next_step
        if next_step < len(ctx.plan):
            state.current_section = ctx.plan[next_step].section
        try:
            ctx.persist()
        except Exception as e:
            err = CheckpointPersistenceError(f"Cannot persist run state before restart: {e}")
            self._cancel(ctx, record, saved, err)
            return

        logger.info(
            "Checkpoint %s: restart #%d, resuming at step %d (reasons: %s)",
            step.name,
            state.reboot_count,
            next_step,
            "; ".join(record["Reasons"]) or "none",
        )

        identity = checkpoint.run_as or ctx.config.resume_identity(ctx.role)
        try:
            trigger = self.triggers.create(
                ctx.launch_command,
                ["--role", ctx.role, "--resume-at", str(next_step)],
                identity,
                self.retry_policy,
            )
        except ResumeTriggerCreationError as e:
            self._cancel(ctx, record, saved, e)
            return

        state.resume_task = trigger
        delay = self.reboot_delay_s if checkpoint.delay_s is None else checkpoint.delay_s
        try:
            ctx.persist()
            self.restarter.request(delay, f"Restarting to continue setup ({step.name})")
        except Exception as e:
            self._remove_trigger(trigger.name)
            self._cancel(ctx, record, saved, e)
            return

        raise RebootInitiated(step.name, next_step)

    def _remove_trigger(self, name: str) -> None:
        try:
            self.triggers.remove(name)
        except Exception as e:
            logger.error("Could not remove resume trigger %s: %s", name, e)

    def _cancel(self, ctx: RunContext, record: Dict[str, Any], saved: tuple, error: Exception) -> None:
        state = ctx.state
        state.reboot_count, state.current_step, state.current_section, state.resume_task = saved
        record["Outcome"] = Decision.CANCELLED.value
        record["Reasons"] = [*record["Reasons"], str(error)]
        logger.warning("%s: %s", MANUAL_RESTART_WARNING, error)
        try:
            ctx.persist()
        except Exception as e:
            logger.error("Run state could not be saved after cancelling restart: %s", e)


class _CheckpointWork:
    """Work unit of a checkpoint step; the decision lives on the run's controller."""

    def __init__(self, checkpoint: Checkpoint) -> None:
        self.checkpoint = checkpoint

    def __call__(self, ctx: RunContext) -> bool:
        if ctx.checkpoints is None:
            raise RuntimeError("No checkpoint controller configured for this run")
        return ctx.checkpoints.evaluate(ctx, self.checkpoint)


def checkpoint_step(
    name: str,
    *,
    section: int,
    priority: Optional[int] = None,
    mode: Optional[RebootMode] = None,
    next_section: Optional[int] = None,
    next_step: Optional[int] = None,
    run_as: Optional[str] = None,
    delay_s: Optional[int] = None,
    tags: Iterable[str] = (ALL_TAG,),
    depends_on: Iterable[str] = (),
    critical: bool = False,
) -> Step:
    cp = Checkpoint(mode=mode, next_section=next_section, next_step=next_step, run_as=run_as, delay_s=delay_s)
    return Step(
        name=name,
        work=WorkUnit(work=_CheckpointWork(cp), description="restart checkpoint"),
        tags=frozenset(tags),
        priority=priority,
        depends_on=frozenset(depends_on),
        critical=critical,
        section=section,
        checkpoint=cp,
    )
