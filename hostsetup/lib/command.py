from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Mapping, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def fmt_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


def run_cmd(
    argv: Sequence[str],
    *,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    input_text: str | None = None,
    timeout_s: float | None = None,
    dry_run: bool = False,
) -> CmdResult:
    """Run a command with consistent logging.

    - Always logs the command.
    - dry_run logs but does not execute.
    - A missing executable is reported as returncode 127 when check=False.
    """

    argv_list = list(argv)
    logger.info("CMD %s", fmt_argv(argv_list))

    if dry_run:
        return CmdResult(argv=argv_list, returncode=0, stdout="", stderr="")

    try:
        p = subprocess.run(
            argv_list,
            input=input_text,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=dict(os.environ, **(env or {})),
            timeout=timeout_s,
        )
    except FileNotFoundError as e:
        if check:
            raise RuntimeError(f"Command not found: {argv_list[0]}") from e
        return CmdResult(argv=argv_list, returncode=127, stdout="", stderr=str(e))
    except subprocess.TimeoutExpired as e:
        if check:
            raise RuntimeError(f"Command timed out after {timeout_s}s: {fmt_argv(argv_list)}") from e
        return CmdResult(argv=argv_list, returncode=124, stdout="", stderr=f"timed out after {timeout_s}s")

    if p.stdout:
        logger.debug("STDOUT %s", p.stdout.strip())
    if p.stderr:
        logger.debug("STDERR %s", p.stderr.strip())

    if check and p.returncode != 0:
        raise RuntimeError(f"Command failed ({p.returncode}): {fmt_argv(argv_list)}\n{p.stderr}")

    return CmdResult(argv=argv_list, returncode=p.returncode, stdout=p.stdout, stderr=p.stderr)


def run_shell(
    command: str,
    *,
    env: Mapping[str, str] | None = None,
    timeout_s: float | None = None,
    dry_run: bool = False,
) -> CmdResult:
    """Run a manifest command string through the platform shell."""

    if os.name == "nt":
        argv = ["powershell.exe", "-NoProfile", "-NonInteractive", "-Command", command]
    else:
        argv = ["/bin/sh", "-c", command]
    return run_cmd(argv, check=False, env=env, timeout_s=timeout_s, dry_run=dry_run)
