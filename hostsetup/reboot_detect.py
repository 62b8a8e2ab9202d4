from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

from .lib.command import run_cmd

logger = logging.getLogger(__name__)

# A probe returns a human-readable reason when it sees a pending reboot.
Probe = Callable[[], Optional[str]]

_HKLM_CBS = r"SOFTWARE\Microsoft\Windows\CurrentVersion\Component Based Servicing\RebootPending"
_HKLM_WU = r"SOFTWARE\Microsoft\Windows\CurrentVersion\WindowsUpdate\Auto Update\RebootRequired"
_HKLM_SESSION = r"SYSTEM\CurrentControlSet\Control\Session Manager"
_HKLM_ACTIVE_NAME = r"SYSTEM\CurrentControlSet\Control\ComputerName\ActiveComputerName"
_HKLM_PENDING_NAME = r"SYSTEM\CurrentControlSet\Control\ComputerName\ComputerName"
_HKLM_NETLOGON = r"SYSTEM\CurrentControlSet\Services\Netlogon"

LINUX_REBOOT_FLAG = "/var/run/reboot-required"


class RebootDetector(Protocol):
    def is_required(self) -> Tuple[bool, List[str]]:
        ...


class PendingRebootDetector:
    """Aggregates independent reboot-pending signals.

    Probes are best-effort: one that cannot be evaluated on this host is
    logged and ignored.
    """

    def __init__(self, probes: Sequence[Probe]) -> None:
        self.probes = list(probes)

    def is_required(self) -> Tuple[bool, List[str]]:
        reasons: List[str] = []
        for probe in self.probes:
            try:
                reason = probe()
            except Exception as e:
                logger.debug("Reboot probe %s unavailable: %s", getattr(probe, "__name__", probe), e)
                continue
            if reason:
                reasons.append(reason)
        if reasons:
            logger.info("Reboot pending: %s", "; ".join(reasons))
        return bool(reasons), reasons


# --- Windows -------------------------------------------------------------


def _win_key_exists(path: str) -> bool:
    import winreg

    try:
        with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, path):
            return True
    except FileNotFoundError:
        return False


def _win_value(path: str, name: str):
    import winreg

    try:
        with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, path) as key:
            value, _ = winreg.QueryValueEx(key, name)
            return value
    except FileNotFoundError:
        return None


def probe_servicing() -> Optional[str]:
    if _win_key_exists(_HKLM_CBS):
        return "component servicing reboot pending"
    return None


def probe_windows_update() -> Optional[str]:
    if _win_key_exists(_HKLM_WU):
        return "Windows Update reboot required"
    return None


def probe_file_renames() -> Optional[str]:
    if _win_value(_HKLM_SESSION, "PendingFileRenameOperations"):
        return "pending file rename operations"
    return None


def probe_computer_rename() -> Optional[str]:
    active = _win_value(_HKLM_ACTIVE_NAME, "ComputerName")
    pending = _win_value(_HKLM_PENDING_NAME, "ComputerName")
    if active and pending and str(active).lower() != str(pending).lower():
        return f"computer rename pending ({active} -> {pending})"
    return None


def probe_domain_join() -> Optional[str]:
    if _win_value(_HKLM_NETLOGON, "JoinDomain") is not None or _win_value(_HKLM_NETLOGON, "AvoidSpnSet") is not None:
        return "domain join pending"
    return None


# --- Linux ---------------------------------------------------------------


def probe_reboot_required_file(path: str = LINUX_REBOOT_FLAG) -> Optional[str]:
    p = Path(path)
    if not p.exists():
        return None
    pkgs = Path(path + ".pkgs")
    if pkgs.exists():
        names = [ln.strip() for ln in pkgs.read_text(encoding="utf-8", errors="ignore").splitlines() if ln.strip()]
        if names:
            return f"{path} (packages: {', '.join(sorted(set(names)))})"
    return str(path)


def probe_needs_restarting() -> Optional[str]:
    if not shutil.which("needs-restarting"):
        return None
    # Exit code 1 means a reboot is needed.
    r = run_cmd(["needs-restarting", "-r"], check=False, timeout_s=60)
    if r.returncode == 1:
        return "needs-restarting reports reboot required"
    return None


# --- Third-party agents ----------------------------------------------------


def flag_file_probe(path: str) -> Probe:
    def probe() -> Optional[str]:
        if Path(path).exists():
            return f"agent reboot flag {path}"
        return None

    probe.__name__ = f"flag_file({path})"
    return probe


def default_detector(flag_files: Sequence[str] = ()) -> PendingRebootDetector:
    probes: List[Probe] = []
    if os.name == "nt":
        probes += [probe_servicing, probe_windows_update, probe_file_renames, probe_computer_rename, probe_domain_join]
    else:
        probes += [probe_reboot_required_file, probe_needs_restarting]
    probes += [flag_file_probe(p) for p in flag_files]
    return PendingRebootDetector(probes)
