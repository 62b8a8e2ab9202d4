from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from .model import RunState

logger = logging.getLogger(__name__)


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in {"json", "yaml", "yml"}:
        return ext
    # Default to JSON for unknown extensions.
    return "json"


def _yaml():
    try:
        import yaml  # type: ignore
    except Exception as e:  # pragma: no cover
        raise RuntimeError(
            "YAML state requested but PyYAML is not available. "
            "Use JSON state or install PyYAML."
        ) from e
    return yaml


def _dumps(path: Path, data: Dict[str, Any]) -> str:
    if _detect_format(path) in {"yaml", "yml"}:
        return _yaml().safe_dump(data, sort_keys=False)
    return json.dumps(data, indent=2) + "\n"


def read_document(path: str | Path) -> Optional[Dict[str, Any]]:
    """Read a state document; None when missing, empty, or unparsable."""

    p = Path(path)
    if not p.exists():
        return None

    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        logger.warning("Cannot read state file %s (%s); treating as absent", p, e)
        return None
    if not text.strip():
        logger.warning("State file %s is empty; treating as absent", p)
        return None

    try:
        if _detect_format(p) in {"yaml", "yml"}:
            data = _yaml().safe_load(text)
        else:
            data = json.loads(text)
    except Exception as e:
        # json.JSONDecodeError or yaml.YAMLError
        logger.warning("State file %s is not parsable (%s); treating as absent", p, e)
        return None

    if not isinstance(data, dict):
        logger.warning("State file %s must hold an object, got %s; treating as absent", p, type(data).__name__)
        return None
    return data


def write_document(path: str | Path, data: Dict[str, Any]) -> None:
    """Write atomically: temp file in the same directory, fsync, then replace."""

    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    payload = _dumps(p, data)

    fd, tmp = tempfile.mkstemp(prefix=f".{p.name}.", suffix=".tmp", dir=str(p.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, p)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class StateStore:
    """Durable home of the single RunState on this host."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> Optional[RunState]:
        data = read_document(self.path)
        if data is None:
            return None
        try:
            return RunState.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("State file %s has an invalid schema (%s); treating as absent", self.path, e)
            return None

    def save(self, state: RunState) -> None:
        write_document(self.path, state.to_dict())

    def exists(self) -> bool:
        return self.load() is not None

    def archive(self, state: RunState) -> Path:
        """Move the finished run's state aside so the next invocation starts fresh."""

        dest = self.path.with_name(
            f"{self.path.stem}.{state.session_id}.{state.status.value.lower()}{self.path.suffix or '.json'}"
        )
        self.save(state)
        os.replace(self.path, dest)
        logger.info("Archived run state to %s", dest)
        return dest

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
