from __future__ import annotations

import argparse
import json
import logging
from typing import Any, Dict, Optional

from .config import OrchestratorConfig, load_config
from .errors import CycleDetectedError, DuplicateStepError, PlanChangedError
from .lib.env import PATHS
from .logging_utils import configure_logging
from .manifests import ManifestError, load_manifest
from .model import RebootMode
from .orchestrator import Orchestrator, default_launch_command

logger = logging.getLogger(__name__)


def build_orchestrator(config: OrchestratorConfig, *, config_path: Optional[str] = None) -> Orchestrator:
    steps = load_manifest(config.manifest_path)
    return Orchestrator(steps, config, launch_command=default_launch_command(config, config_path))


def status(config: OrchestratorConfig) -> Dict[str, Any]:
    """Persisted run state plus whether the resume trigger is registered."""

    orch = Orchestrator([], config)
    state = orch.store.load()
    return {
        "state_path": str(orch.store.path),
        "state": state.to_dict() if state else None,
        "resume_trigger_exists": orch.controller.triggers.exists(),
    }


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="hostsetup")
    p.add_argument("--role", default=None, help="Role whose tagged steps run; steps tagged 'all' always run")
    p.add_argument("--resume-at", type=int, default=None, help="Resume offset (0-based step index)")
    p.add_argument("--preview", action="store_true", help="Log what would run; change nothing")
    p.add_argument("--validate-only", action="store_true", help="Resolve the plan and exit")
    p.add_argument("--status", action="store_true", help="Print persisted run state and exit")
    p.add_argument("--force", action="store_true", help="Run steps even when detect says they're done")
    p.add_argument("--config", default=None, help=f"Config YAML (default: {PATHS.config_default} if present)")
    p.add_argument("--state", default=None, help="Path to run state (json|yaml)")
    p.add_argument("--log", default=None, help="Path to log file")
    p.add_argument("--manifest", default=None, help="Step manifest YAML")
    p.add_argument("--reboot-mode", default=None, choices=[m.value for m in RebootMode], help="Checkpoint policy")
    p.add_argument("--dry-run", action="store_true", default=None, help="Log host commands instead of running them")
    return p


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.role and not args.status:
        parser.error("--role is required (use --role all for only the untagged steps)")

    config_path = args.config or PATHS.config_default
    try:
        config = load_config(config_path).override(
            state_path=args.state,
            log_path=args.log,
            manifest_path=args.manifest,
            reboot_mode=args.reboot_mode,
            dry_run=args.dry_run,
        )
    except Exception:
        configure_logging(log_path=args.log or PATHS.log_default)
        logger.exception("Cannot load config %s", config_path)
        return 1

    if args.status:
        print(json.dumps(status(config), indent=2))
        return 0

    actual_log_path = configure_logging(log_path=config.log_path, level=config.log_level)
    logger.info("hostsetup starting (role=%s, log=%s)", args.role, actual_log_path)

    try:
        orch = build_orchestrator(config, config_path=args.config)
        if args.validate_only:
            orch.validate(args.role)
            return 0
        if args.preview:
            orch.preview(args.role, resume_at=args.resume_at)
            return 0
        outcome = orch.run(args.role, resume_at=args.resume_at, force=args.force)
    except (DuplicateStepError, CycleDetectedError, ManifestError, PlanChangedError) as e:
        logger.error("%s", e)
        return 1
    except KeyboardInterrupt:
        return 130
    except Exception:
        logger.exception("hostsetup failed")
        return 1

    return outcome.exit_code
