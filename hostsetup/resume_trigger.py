from __future__ import annotations

import logging
import math
import os
import shlex
import subprocess
import tempfile
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from .errors import ResumeTriggerCreationError
from .lib.command import run_cmd
from .model import ResumeTrigger

logger = logging.getLogger(__name__)

TASK_NS = "http://schemas.microsoft.com/windows/2004/02/mit/task"
LOCAL_SYSTEM_SID = "S-1-5-18"
SERVICE_PRINCIPALS = {"system", "nt authority\\system", "localsystem", LOCAL_SYSTEM_SID.lower(), "root"}


@dataclass(frozen=True)
class RetryPolicy:
    count: int = 3
    interval_s: int = 60


class TriggerBackend(Protocol):
    def create(self, trigger: ResumeTrigger) -> None:
        ...

    def remove(self, name: str) -> None:
        ...

    def exists(self, name: str) -> bool:
        ...


def is_service_identity(identity: str) -> bool:
    return identity.strip().lower() in SERVICE_PRINCIPALS


def _minutes(seconds: int) -> int:
    return max(1, math.ceil(seconds / 60))


class SchtasksBackend:
    """Windows Task Scheduler entry that fires at the next logon."""

    def __init__(self, *, dry_run: bool = False) -> None:
        self.dry_run = dry_run

    def render_xml(self, trigger: ResumeTrigger) -> str:
        ET.register_namespace("", TASK_NS)

        def sub(parent: ET.Element, tag: str, text: Optional[str] = None) -> ET.Element:
            el = ET.SubElement(parent, f"{{{TASK_NS}}}{tag}")
            if text is not None:
                el.text = text
            return el

        task = ET.Element(f"{{{TASK_NS}}}Task", {"version": "1.2"})
        info = sub(task, "RegistrationInfo")
        sub(info, "Description", f"Resume unattended setup ({' '.join(trigger.arguments)})")

        logon = sub(sub(task, "Triggers"), "LogonTrigger")
        sub(logon, "Enabled", "true")

        principal = sub(sub(task, "Principals"), "Principal")
        principal.set("id", "Author")
        if is_service_identity(trigger.identity):
            sub(principal, "UserId", LOCAL_SYSTEM_SID)
        else:
            sub(logon, "UserId", trigger.identity)
            sub(principal, "UserId", trigger.identity)
            sub(principal, "LogonType", "InteractiveToken")
        sub(principal, "RunLevel", "HighestAvailable")

        settings = sub(task, "Settings")
        sub(settings, "MultipleInstancesPolicy", "IgnoreNew")
        sub(settings, "DisallowStartIfOnBatteries", "false")
        sub(settings, "StopIfGoingOnBatteries", "false")
        sub(settings, "ExecutionTimeLimit", "PT0S")
        if trigger.retry_count > 0:
            restart = sub(settings, "RestartOnFailure")
            sub(restart, "Interval", f"PT{_minutes(trigger.retry_interval_s)}M")
            sub(restart, "Count", str(trigger.retry_count))
        sub(settings, "Enabled", "true")

        actions = sub(task, "Actions")
        actions.set("Context", "Author")
        exe = sub(actions, "Exec")
        sub(exe, "Command", trigger.command)
        sub(exe, "Arguments", subprocess.list2cmdline(trigger.arguments))

        body = ET.tostring(task, encoding="unicode")
        return '<?xml version="1.0" encoding="UTF-16"?>\n' + body

    def create(self, trigger: ResumeTrigger) -> None:
        xml = self.render_xml(trigger)
        fd, path = tempfile.mkstemp(prefix="hostsetup-task-", suffix=".xml")
        os.close(fd)
        try:
            Path(path).write_text(xml, encoding="utf-16")
            run_cmd(["schtasks", "/Create", "/TN", trigger.name, "/XML", path, "/F"], dry_run=self.dry_run)
        finally:
            Path(path).unlink(missing_ok=True)

    def exists(self, name: str) -> bool:
        return run_cmd(["schtasks", "/Query", "/TN", name], check=False, dry_run=self.dry_run).ok

    def remove(self, name: str) -> None:
        if not self.exists(name):
            return
        run_cmd(["schtasks", "/Delete", "/TN", name, "/F"], dry_run=self.dry_run)


class SystemdBackend:
    """systemd oneshot unit enabled for the next boot."""

    def __init__(self, *, unit_dir: str = "/etc/systemd/system", dry_run: bool = False) -> None:
        self.unit_dir = Path(unit_dir)
        self.dry_run = dry_run

    def unit_path(self, name: str) -> Path:
        return self.unit_dir / f"{name}.service"

    def render_unit(self, trigger: ResumeTrigger) -> str:
        argv = [trigger.command, *trigger.arguments]
        burst = trigger.retry_count + 1
        lines = [
            "[Unit]",
            "Description=Resume unattended setup after restart",
            "Wants=network-online.target",
            "After=network-online.target systemd-user-sessions.service",
            f"StartLimitIntervalSec={max(1, trigger.retry_interval_s) * burst + 60}",
            f"StartLimitBurst={burst}",
            "",
            "[Service]",
            "Type=oneshot",
            f"ExecStart={shlex.join(argv)}",
        ]
        if not is_service_identity(trigger.identity):
            lines.append(f"User={trigger.identity}")
            lines.append("PAMName=login")
        if trigger.retry_count > 0:
            lines.append("Restart=on-failure")
            lines.append(f"RestartSec={max(1, trigger.retry_interval_s)}")
        lines += ["", "[Install]", "WantedBy=multi-user.target", ""]
        return "\n".join(lines)

    def create(self, trigger: ResumeTrigger) -> None:
        path = self.unit_path(trigger.name)
        if self.dry_run:
            logger.info("Would write %s", path)
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(self.render_unit(trigger), encoding="utf-8")
        run_cmd(["systemctl", "daemon-reload"], dry_run=self.dry_run)
        run_cmd(["systemctl", "enable", path.name], dry_run=self.dry_run)

    def exists(self, name: str) -> bool:
        return self.unit_path(name).exists()

    def remove(self, name: str) -> None:
        path = self.unit_path(name)
        if not path.exists():
            return
        run_cmd(["systemctl", "disable", path.name], check=False, dry_run=self.dry_run)
        if not self.dry_run:
            path.unlink(missing_ok=True)
        run_cmd(["systemctl", "daemon-reload"], check=False, dry_run=self.dry_run)


def select_backend(kind: str = "auto", *, dry_run: bool = False) -> TriggerBackend:
    kind = (kind or "auto").lower()
    if kind == "auto":
        kind = "schtasks" if os.name == "nt" else "systemd"
    if kind == "schtasks":
        return SchtasksBackend(dry_run=dry_run)
    if kind == "systemd":
        return SystemdBackend(dry_run=dry_run)
    raise ValueError(f"Unknown resume trigger backend: {kind}")


class ResumeTriggerManager:
    """Registers the deferred relaunch of the orchestrator after a restart."""

    def __init__(self, backend: TriggerBackend, *, name: str = "hostsetup-resume") -> None:
        self.backend = backend
        self.name = name

    def create(
        self,
        command: Sequence[str],
        args: Sequence[str],
        identity: str,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> ResumeTrigger:
        if not command:
            raise ResumeTriggerCreationError("No launch command to resume with")
        policy = retry_policy or RetryPolicy()
        arguments: List[str] = [*command[1:], *args]
        trigger = ResumeTrigger(
            name=self.name,
            command=command[0],
            arguments=arguments,
            identity=identity,
            retry_count=policy.count,
            retry_interval_s=policy.interval_s,
        )
        try:
            self.backend.create(trigger)
        except Exception as e:
            raise ResumeTriggerCreationError(f"Could not register resume trigger {self.name}: {e}") from e
        logger.info("Registered resume trigger %s as %s: %s %s", self.name, identity, trigger.command, " ".join(arguments))
        return trigger

    def remove(self, trigger_id: Optional[str] = None) -> None:
        name = trigger_id or self.name
        self.backend.remove(name)
        logger.info("Removed resume trigger %s", name)

    def exists(self) -> bool:
        return self.backend.exists(self.name)
