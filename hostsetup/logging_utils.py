from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional

from .lib.env import PATHS

DEFAULT_LOG_PATH = PATHS.log_default
FALLBACK_LOG_NAME = "hostsetup.log"

# pid changes on every restart, which separates boots when reading one log.
LOG_FORMAT = "%(asctime)s [%(process)d] %(levelname)s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"

_MARK = "_hostsetup_handler"


def _candidates(log_path: str) -> List[str]:
    return [
        log_path,
        str(Path.cwd() / FALLBACK_LOG_NAME),
        str(Path(tempfile.gettempdir()) / FALLBACK_LOG_NAME),
    ]


def _open_file_handler(log_path: str) -> tuple[logging.Handler, str]:
    last: Optional[OSError] = None
    for path in _candidates(log_path):
        try:
            Path(os.path.dirname(path) or ".").mkdir(parents=True, exist_ok=True)
            return logging.FileHandler(path, encoding="utf-8"), path
        except OSError as e:
            last = e
    raise OSError(f"No writable log location (tried {log_path})") from last


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    level: int = logging.INFO,
    also_console: bool = True,
) -> str:
    """Attach the run log to the root logger.

    Every invocation appends to the same file, so a setup spanning several
    restarts reads as one log. When the requested path is not writable
    (e.g. a preview by a non-elevated user) the working directory and then
    the temp directory are tried.

    Calling it again only adjusts the level. Returns the file in use.
    """

    root = logging.getLogger()
    root.setLevel(level)

    existing = [h for h in root.handlers if getattr(h, _MARK, False)]
    if existing:
        for h in existing:
            if isinstance(h, logging.FileHandler):
                return h.baseFilename
        return log_path

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
    file_handler, chosen = _open_file_handler(log_path)
    handlers: List[logging.Handler] = [file_handler]
    if also_console:
        handlers.append(logging.StreamHandler())

    for h in handlers:
        h.setFormatter(formatter)
        setattr(h, _MARK, True)
        root.addHandler(h)

    log = logging.getLogger(__name__)
    if chosen != log_path:
        log.warning("Log %s is not writable; logging to %s", log_path, chosen)
    log.info("Logging to %s", chosen)
    return chosen


def reset_logging() -> None:
    """Detach and close the handlers configure_logging() added."""

    root = logging.getLogger()
    for h in [h for h in root.handlers if getattr(h, _MARK, False)]:
        root.removeHandler(h)
        h.close()
