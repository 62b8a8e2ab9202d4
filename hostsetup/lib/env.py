from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Paths:
    state_default: str
    log_default: str
    manifest_default: str
    config_default: str


def _paths_for(os_name: str) -> Paths:
    if os_name == "nt":
        base = os.environ.get("ProgramData", r"C:\ProgramData") + r"\hostsetup"
        return Paths(
            state_default=base + r"\state.json",
            log_default=base + r"\hostsetup.log",
            manifest_default=base + r"\steps.yaml",
            config_default=base + r"\config.yaml",
        )
    return Paths(
        state_default="/var/lib/hostsetup/state.json",
        log_default="/var/log/hostsetup.log",
        manifest_default="/etc/hostsetup/steps.yaml",
        config_default="/etc/hostsetup/config.yaml",
    )


PATHS = _paths_for(os.name)
SERVICE_IDENTITY = "SYSTEM" if os.name == "nt" else "root"
