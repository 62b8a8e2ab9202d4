from __future__ import annotations

import logging
import math
import os

from .command import run_cmd

logger = logging.getLogger(__name__)


class HostRestarter:
    """Asks the OS to restart the machine."""

    def __init__(self, *, dry_run: bool = False) -> None:
        self.dry_run = dry_run

    def command(self, delay_s: int, message: str) -> list[str]:
        delay_s = max(0, int(delay_s))
        if os.name == "nt":
            return ["shutdown", "/r", "/t", str(delay_s), "/c", message]
        # shutdown(8) only takes whole minutes.
        when = "now" if delay_s == 0 else f"+{math.ceil(delay_s / 60)}"
        return ["shutdown", "-r", when, message]

    def request(self, delay_s: int = 0, message: str = "Restarting to continue setup") -> None:
        logger.warning("Requesting host restart in %ss", delay_s)
        run_cmd(self.command(delay_s, message), dry_run=self.dry_run)
