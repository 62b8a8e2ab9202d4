from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from .context import RunContext
from .errors import CriticalStepFailure, NonCriticalStepFailure, RebootInitiated
from .lib.isolation import run_isolated
from .model import ExecutionPlan, RunStatus, Step, utc_now

logger = logging.getLogger(__name__)


class StepStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    PREVIEW = "preview"


class RunResult(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PREVIEWED = "previewed"
    RESTARTING = "restarting"


@dataclass(frozen=True)
class StepOutcome:
    index: int
    name: str
    status: StepStatus
    started_at: str
    finished_at: str
    error: Optional[str] = None


@dataclass
class RunOutcome:
    result: RunResult
    start_offset: int
    steps: List[StepOutcome] = field(default_factory=list)
    failure: Optional[CriticalStepFailure] = None
    warnings: List[NonCriticalStepFailure] = field(default_factory=list)

    @property
    def ran_steps(self) -> List[str]:
        return [o.name for o in self.steps if o.status is StepStatus.COMPLETED]

    @property
    def skipped_steps(self) -> List[str]:
        return [o.name for o in self.steps if o.status is StepStatus.SKIPPED]

    @property
    def failed_steps(self) -> List[str]:
        return [o.name for o in self.steps if o.status is StepStatus.FAILED]

    @property
    def exit_code(self) -> int:
        if self.result is RunResult.FAILED:
            return 1
        if self.result is RunResult.CANCELLED:
            return 130
        return 0


class ExecutionEngine:
    """Walks a resolved plan in order, one step at a time.

    The engine owns progress bookkeeping in RunState (CompletedSteps,
    FailedSteps, CurrentStep) and persists after every step.
    """

    def __init__(self, ctx: Optional[RunContext] = None) -> None:
        self.ctx = ctx

    def run(self, plan: ExecutionPlan, start_offset: int = 0) -> RunOutcome:
        ctx = self.ctx
        if ctx is None:
            raise RuntimeError("ExecutionEngine.run needs a RunContext")
        ctx.plan = plan
        state = ctx.state
        outcome = RunOutcome(result=RunResult.COMPLETED, start_offset=start_offset)
        total = len(plan)

        if start_offset:
            logger.info("Resuming at step %d of %d", start_offset + 1, total)

        for index in range(start_offset, total):
            step = plan[index]

            if ctx.cancel.cancelled:
                logger.warning("Run cancelled (%s) before step %s; state kept for resume", ctx.cancel.reason, step.name)
                ctx.persist()
                outcome.result = RunResult.CANCELLED
                return outcome

            ctx.current_index = index
            state.current_step = index
            state.current_section = step.section
            ctx.persist()

            logger.info("Step %d/%d: %s (section %d)", index + 1, total, step.name, step.section)
            started = utc_now()
            try:
                ran = self._invoke(step)
            except RebootInitiated:
                raise
            except Exception as e:
                error = str(e) or type(e).__name__
                state.record_failed(index + 1, step.name, error)
                outcome.steps.append(
                    StepOutcome(index, step.name, StepStatus.FAILED, started, utc_now(), error=error)
                )
                if step.critical:
                    logger.error("Critical step %s failed: %s; aborting run", step.name, error)
                    state.status = RunStatus.FAILED
                    ctx.persist()
                    outcome.result = RunResult.FAILED
                    outcome.failure = CriticalStepFailure(step.name, error)
                    return outcome

                logger.warning("Step %s failed (non-critical): %s; continuing", step.name, error)
                outcome.warnings.append(NonCriticalStepFailure(step.name, error))
                state.current_step = index + 1
                ctx.persist()
                continue

            step.executed = ran
            step.skipped = not ran
            ctx.capabilities |= set(step.provides) | {step.name}
            state.record_completed(index + 1, step.name)
            state.current_step = index + 1
            ctx.persist()
            outcome.steps.append(
                StepOutcome(
                    index,
                    step.name,
                    StepStatus.COMPLETED if ran else StepStatus.SKIPPED,
                    started,
                    utc_now(),
                )
            )

        state.current_step = total
        state.status = RunStatus.COMPLETED
        ctx.persist()
        logger.info(
            "Run complete: %d ran, %d skipped, %d failed (non-critical)",
            len(outcome.ran_steps),
            len(outcome.skipped_steps),
            len(outcome.failed_steps),
        )
        return outcome

    def preview(self, plan: ExecutionPlan, start_offset: int = 0) -> RunOutcome:
        """Log what each step would do; nothing is invoked or persisted."""

        outcome = RunOutcome(result=RunResult.PREVIEWED, start_offset=start_offset)
        total = len(plan)
        logger.info("Preview of %d step(s) for role %s", total - start_offset, plan.role)
        for index in range(start_offset, total):
            step = plan[index]
            now = utc_now()
            logger.info("[preview] %d/%d %s: %s", index + 1, total, step.name, describe_step(step))
            outcome.steps.append(StepOutcome(index, step.name, StepStatus.PREVIEW, now, now))
        return outcome

    def _invoke(self, step: Step) -> bool:
        """detect -> work -> verify. Returns False when detect says it's done."""

        ctx = self.ctx
        assert ctx is not None
        unit = step.work

        if unit.detect is not None and not ctx.force:
            if unit.detect(ctx):
                logger.info("Skipping step %s (already done)", step.name)
                return False

        timeout = step.timeout_s if step.timeout_s is not None else ctx.config.default_timeout_s
        if timeout and not step.is_checkpoint:
            result = run_isolated(unit.work, ctx.snapshot(), timeout_s=timeout, name=step.name)
        else:
            result = unit.work(ctx)

        if result is False:
            raise RuntimeError("work unit reported failure")
        if unit.verify is not None and not unit.verify(ctx):
            raise RuntimeError("verification failed")
        return True


def describe_step(step: Step) -> str:
    parts: List[str] = []
    if step.checkpoint is not None:
        cp = step.checkpoint
        mode = cp.mode.value if cp.mode else "run default"
        target = f"section {cp.next_section}" if cp.next_section is not None else "next step"
        parts.append(f"checkpoint (mode={mode}, resume at {target})")
    else:
        parts.append(step.work.description or "work unit")
    if step.work.detect is not None:
        parts.append("skipped if already done")
    if step.work.verify is not None:
        parts.append("verified afterwards")
    if step.critical:
        parts.append("critical")
    if step.depends_on:
        parts.append("after " + ", ".join(sorted(step.depends_on)))
    return "; ".join(parts)
