from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, FrozenSet, Iterator, List, Optional, Tuple

if TYPE_CHECKING:
    from .context import RunContext
    from .errors import MissingDependencyWarning

ALL_TAG = "all"
DEFAULT_PRIORITY = 50


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class RunStatus(str, Enum):
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"


class RebootMode(str, Enum):
    ALWAYS = "Always"
    CHECK = "Check"
    NEVER = "Never"

    @classmethod
    def parse(cls, value: "str | RebootMode") -> "RebootMode":
        if isinstance(value, RebootMode):
            return value
        for m in cls:
            if m.value.lower() == str(value).strip().lower():
                return m
        raise ValueError(f"Unknown reboot mode {value!r} (expected Always|Check|Never)")


DetectFn = Callable[["RunContext"], bool]
WorkFn = Callable[["RunContext"], Optional[bool]]
VerifyFn = Callable[["RunContext"], bool]


@dataclass(frozen=True)
class WorkUnit:
    """detect -> work -> verify.

    `detect` returning True means the step is already done and is skipped.
    `work` may return False to signal failure; raising also fails the step.
    `verify` returning False turns a finished `work` into a failure.
    """

    work: WorkFn
    detect: Optional[DetectFn] = None
    verify: Optional[VerifyFn] = None
    description: str = ""


@dataclass(frozen=True)
class Checkpoint:
    """Restart decision point declared on a step."""

    mode: Optional[RebootMode] = None
    next_section: Optional[int] = None
    next_step: Optional[int] = None
    run_as: Optional[str] = None
    delay_s: Optional[int] = None


@dataclass
class Step:
    name: str
    work: WorkUnit
    tags: FrozenSet[str] = frozenset({ALL_TAG})
    priority: Optional[int] = None
    depends_on: FrozenSet[str] = frozenset()
    provides: FrozenSet[str] = frozenset()
    critical: bool = False
    section: int = 1
    timeout_s: Optional[float] = None
    checkpoint: Optional[Checkpoint] = None

    # Runtime only; never persisted.
    executed: bool = field(default=False, compare=False)
    skipped: bool = field(default=False, compare=False)

    @property
    def is_checkpoint(self) -> bool:
        return self.checkpoint is not None

    def matches_role(self, role: str) -> bool:
        wanted = role.strip().lower()
        tags = {t.strip().lower() for t in self.tags}
        return ALL_TAG in tags or wanted in tags

    def sort_key(self) -> Tuple[int, str]:
        return (DEFAULT_PRIORITY if self.priority is None else self.priority, self.name)


@dataclass(frozen=True)
class ExecutionPlan:
    role: str
    steps: Tuple[Step, ...]
    warnings: Tuple["MissingDependencyWarning", ...] = ()

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def __getitem__(self, index: int) -> Step:
        return self.steps[index]

    @property
    def names(self) -> List[str]:
        return [s.name for s in self.steps]

    def index_of(self, name: str) -> int:
        for i, s in enumerate(self.steps):
            if s.name == name:
                return i
        raise KeyError(name)

    def first_index_of_section(self, section: int, *, start: int = 0) -> int:
        """Index of the first step at or after `start` whose section >= `section`.

        Returns len(plan) when no such step exists.
        """
        for i in range(start, len(self.steps)):
            if self.steps[i].section >= section:
                return i
        return len(self.steps)


@dataclass
class ResumeTrigger:
    """Descriptor of the host-level deferred relaunch entry."""

    name: str
    command: str
    arguments: List[str]
    identity: str
    condition: str = "AtLogOn"
    retry_count: int = 3
    retry_interval_s: int = 60
    remove_on_success: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Name": self.name,
            "Command": self.command,
            "Arguments": list(self.arguments),
            "Condition": self.condition,
            "Identity": self.identity,
            "RetryCount": self.retry_count,
            "RetryInterval": self.retry_interval_s,
            "RemoveOnSuccess": self.remove_on_success,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResumeTrigger":
        return cls(
            name=str(data["Name"]),
            command=str(data.get("Command") or ""),
            arguments=[str(a) for a in data.get("Arguments") or []],
            identity=str(data.get("Identity") or ""),
            condition=str(data.get("Condition") or "AtLogOn"),
            retry_count=int(data.get("RetryCount", 3)),
            retry_interval_s=int(data.get("RetryInterval", 60)),
            remove_on_success=bool(data.get("RemoveOnSuccess", True)),
        )


@dataclass
class RunState:
    role: str
    session_id: str
    start_time: str
    total_steps: int
    reboot_mode: RebootMode = RebootMode.CHECK
    status: RunStatus = RunStatus.IN_PROGRESS
    current_step: int = 0
    current_section: int = 0
    completed_steps: List[Dict[str, Any]] = field(default_factory=list)
    failed_steps: List[Dict[str, Any]] = field(default_factory=list)
    reboot_count: int = 0
    reboot_checkpoints: List[Dict[str, Any]] = field(default_factory=list)
    resume_task: Optional[ResumeTrigger] = None

    @property
    def completed_names(self) -> List[str]:
        return [str(r.get("Name")) for r in self.completed_steps]

    def record_completed(self, number: int, name: str) -> None:
        self.completed_steps.append({"Number": number, "Name": name, "Timestamp": utc_now()})

    def record_failed(self, number: int, name: str, error: str) -> None:
        self.failed_steps.append({"Number": number, "Name": name, "Timestamp": utc_now(), "ErrorMessage": error})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Role": self.role,
            "SessionId": self.session_id,
            "StartTime": self.start_time,
            "Status": self.status.value,
            "TotalSteps": self.total_steps,
            "CurrentStep": self.current_step,
            "CurrentSection": self.current_section,
            "CompletedSteps": [dict(r) for r in self.completed_steps],
            "FailedSteps": [dict(r) for r in self.failed_steps],
            "RebootCount": self.reboot_count,
            "RebootMode": self.reboot_mode.value,
            "RebootCheckpoints": [dict(r) for r in self.reboot_checkpoints],
            "ResumeTask": self.resume_task.to_dict() if self.resume_task else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunState":
        task = data.get("ResumeTask")
        return cls(
            role=str(data["Role"]),
            session_id=str(data["SessionId"]),
            start_time=str(data.get("StartTime") or ""),
            status=RunStatus(data.get("Status", RunStatus.IN_PROGRESS.value)),
            total_steps=int(data.get("TotalSteps", 0)),
            current_step=int(data.get("CurrentStep", 0)),
            current_section=int(data.get("CurrentSection", 0)),
            completed_steps=list(data.get("CompletedSteps") or []),
            failed_steps=list(data.get("FailedSteps") or []),
            reboot_count=int(data.get("RebootCount", 0)),
            reboot_mode=RebootMode.parse(data.get("RebootMode", RebootMode.CHECK.value)),
            reboot_checkpoints=list(data.get("RebootCheckpoints") or []),
            resume_task=ResumeTrigger.from_dict(task) if isinstance(task, dict) else None,
        )
