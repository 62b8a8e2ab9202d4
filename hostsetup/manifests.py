from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .checkpoint import checkpoint_step
from .context import RunContext, StepSnapshot
from .lib.command import run_shell
from .model import ALL_TAG, RebootMode, Step, WorkUnit

logger = logging.getLogger(__name__)

_STEP_KEYS = {
    "name",
    "tags",
    "priority",
    "depends_on",
    "provides",
    "critical",
    "section",
    "timeout",
    "detect",
    "run",
    "verify",
    "env",
    "secret_env",
    "description",
    "checkpoint",
    "mode",
    "next_section",
    "next_step",
    "run_as",
    "delay",
}


class ManifestError(ValueError):
    pass


class ShellCommand:
    """A manifest command bound to its environment."""

    def __init__(
        self,
        command: str,
        *,
        env: Optional[Mapping[str, str]] = None,
        secret_env: Optional[str] = None,
        timeout_s: Optional[float] = None,
        raise_on_error: bool = False,
    ) -> None:
        self.command = command
        self.env = dict(env or {})
        self.secret_env = secret_env
        self.timeout_s = timeout_s
        self.raise_on_error = raise_on_error

    def _env(self, ctx: RunContext | StepSnapshot) -> Dict[str, str]:
        env = {
            "HOSTSETUP_ROLE": ctx.role,
            "HOSTSETUP_SESSION": ctx.state.session_id,
            "HOSTSETUP_STEP": str(ctx.current_index + 1),
            **self.env,
        }
        if self.secret_env:
            env[self.secret_env] = ctx.get_secret()
        return env

    def __call__(self, ctx: RunContext | StepSnapshot) -> bool:
        r = run_shell(self.command, env=self._env(ctx), timeout_s=self.timeout_s, dry_run=ctx.dry_run)
        if r.ok:
            return True
        if self.raise_on_error:
            tail = (r.stderr or r.stdout).strip().splitlines()[-5:]
            raise RuntimeError(f"exit {r.returncode}: {' | '.join(tail) or self.command}")
        return False


def _names(value: Any, *, field: str, step: str) -> frozenset[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        return frozenset({value})
    if not isinstance(value, list):
        raise ManifestError(f"Step {step}: {field} must be a string or list")
    return frozenset(str(v).strip() for v in value if str(v).strip())


def step_from_dict(item: Mapping[str, Any]) -> Step:
    name = str(item.get("name") or "").strip()
    if not name:
        raise ManifestError(f"Step without a name: {dict(item)}")
    unknown = set(item) - _STEP_KEYS
    if unknown:
        raise ManifestError(f"Step {name}: unknown keys {sorted(unknown)}")

    tags = _names(item.get("tags"), field="tags", step=name) or frozenset({ALL_TAG})
    priority = item.get("priority")
    section = int(item.get("section", 1))
    depends_on = _names(item.get("depends_on"), field="depends_on", step=name)

    if item.get("checkpoint"):
        mode = item.get("mode")
        next_section = item.get("next_section")
        next_step = item.get("next_step")
        delay = item.get("delay")
        return checkpoint_step(
            name,
            section=section,
            priority=None if priority is None else int(priority),
            mode=RebootMode.parse(mode) if mode else None,
            next_section=None if next_section is None else int(next_section),
            next_step=None if next_step is None else int(next_step),
            run_as=item.get("run_as"),
            delay_s=None if delay is None else int(delay),
            tags=tags,
            depends_on=depends_on,
            critical=bool(item.get("critical", False)),
        )

    run = item.get("run")
    if not run:
        raise ManifestError(f"Step {name}: 'run' command is required")
    env = item.get("env") or {}
    if not isinstance(env, dict):
        raise ManifestError(f"Step {name}: env must be a mapping")
    env = {str(k): str(v) for k, v in env.items()}
    secret_env = item.get("secret_env")

    detect = item.get("detect")
    verify = item.get("verify")
    timeout = item.get("timeout")
    work = WorkUnit(
        work=ShellCommand(str(run), env=env, secret_env=secret_env, raise_on_error=True),
        detect=ShellCommand(str(detect), env=env) if detect else None,
        verify=ShellCommand(str(verify), env=env) if verify else None,
        description=str(item.get("description") or run),
    )
    return Step(
        name=name,
        work=work,
        tags=tags,
        priority=None if priority is None else int(priority),
        depends_on=depends_on,
        provides=_names(item.get("provides"), field="provides", step=name),
        critical=bool(item.get("critical", False)),
        section=section,
        timeout_s=None if timeout is None else float(timeout),
    )


def steps_from_manifest(data: Mapping[str, Any]) -> List[Step]:
    items = data.get("steps") or []
    if not isinstance(items, list):
        raise ManifestError("manifest: steps must be a list")
    return [step_from_dict(i) for i in items]


def load_manifest(path: str) -> List[Step]:
    """Load step definitions from a YAML manifest."""
    try:
        import yaml  # type: ignore
    except Exception as e:  # pragma: no cover
        raise RuntimeError("PyYAML required to load step manifests") from e

    p = Path(path)
    data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ManifestError(f"Manifest must be a mapping/dict: {p}")
    steps = steps_from_manifest(data)
    logger.info("Loaded %d step(s) from %s", len(steps), p)
    return steps


def load_manifests(paths: Iterable[str]) -> List[Step]:
    out: List[Step] = []
    for p in paths:
        out.extend(load_manifest(p))
    return out
