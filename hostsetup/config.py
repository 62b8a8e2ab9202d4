from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .lib.env import PATHS, SERVICE_IDENTITY
from .model import RebootMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrchestratorConfig:
    raw: Dict[str, Any]

    @property
    def _resume(self) -> Dict[str, Any]:
        return self.raw.get("resume") or {}

    @property
    def state_path(self) -> str:
        return str(self.raw.get("state_path") or PATHS.state_default)

    @property
    def log_path(self) -> str:
        return str(self.raw.get("log_path") or PATHS.log_default)

    @property
    def log_level(self) -> int:
        level = self.raw.get("log_level") or "INFO"
        return logging.getLevelName(str(level).upper()) if isinstance(level, str) else int(level)

    @property
    def manifest_path(self) -> str:
        return str(self.raw.get("manifest_path") or PATHS.manifest_default)

    @property
    def reboot_mode(self) -> RebootMode:
        return RebootMode.parse(self.raw.get("reboot_mode") or RebootMode.CHECK)

    @property
    def reboot_delay_s(self) -> int:
        return int(self.raw.get("reboot_delay_s", 10))

    @property
    def default_timeout_s(self) -> Optional[float]:
        v = self.raw.get("default_timeout_s")
        return float(v) if v else None

    @property
    def reboot_flag_files(self) -> List[str]:
        return [str(p) for p in self.raw.get("reboot_flag_files") or []]

    @property
    def archive_on_finish(self) -> bool:
        return bool(self.raw.get("archive_on_finish", True))

    @property
    def dry_run(self) -> bool:
        return bool(self.raw.get("dry_run", False))

    @property
    def resume_task_name(self) -> str:
        return str(self._resume.get("task_name") or "hostsetup-resume")

    @property
    def resume_backend(self) -> str:
        return str(self._resume.get("backend") or "auto").lower()

    @property
    def resume_retry_count(self) -> int:
        return int(self._resume.get("retry_count", 3))

    @property
    def resume_retry_interval_s(self) -> int:
        return int(self._resume.get("retry_interval_s", 60))

    def resume_identity(self, role: str) -> str:
        """Service principal unless the role must resume inside a user's session."""

        per_role = self._resume.get("role_identities") or {}
        for key, user in per_role.items():
            if str(key).lower() == role.lower() and user:
                return str(user)
        return str(self._resume.get("identity") or SERVICE_IDENTITY)

    def override(self, **values: Any) -> "OrchestratorConfig":
        """Copy with top-level keys replaced; None values are ignored."""

        raw = dict(self.raw)
        raw.update({k: v for k, v in values.items() if v is not None})
        return OrchestratorConfig(raw=raw)


def load_config(path: Optional[str]) -> OrchestratorConfig:
    """Load YAML config; a missing file means all defaults."""

    if not path:
        return OrchestratorConfig(raw={})

    p = Path(path)
    if not p.exists():
        logger.info("Config %s not found; using defaults", p)
        return OrchestratorConfig(raw={})

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ValueError("config must be YAML")

    try:
        import yaml  # type: ignore
    except Exception as e:
        raise RuntimeError("PyYAML is required to read the config file") from e

    raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{p} must contain a mapping/object")

    return OrchestratorConfig(raw=raw)
