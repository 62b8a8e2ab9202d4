import os
from pathlib import Path

import pytest

from hostsetup.manifests import ManifestError, ShellCommand, load_manifest, step_from_dict
from hostsetup.model import RebootMode
from hostsetup.plan import resolve_plan
from hostsetup.registry import StepRegistry
from hostsetup.secrets import EnvSecretProvider

EXAMPLE = Path(__file__).resolve().parents[1] / "manifests" / "example-steps.yaml"

posix_only = pytest.mark.skipif(os.name == "nt", reason="uses /bin/sh")


def test_example_manifest_resolves_per_role():
    reg = StepRegistry(load_manifest(str(EXAMPLE)))

    kiosk = resolve_plan(reg.steps(), "kiosk")
    web = resolve_plan(reg.steps(), "web")

    assert kiosk.names == [
        "install-agent",
        "join-directory",
        "reboot-after-join",
        "configure-autologon",
        "restore-autologon",
    ]
    assert web.names == ["install-agent", "reboot-after-join"]
    assert kiosk[4].checkpoint.run_as == "kiosk"
    assert kiosk[2].checkpoint.mode is RebootMode.CHECK


def test_command_step_fields():
    step = step_from_dict(
        {
            "name": "firewall",
            "tags": "server",
            "priority": 30,
            "depends_on": "agent",
            "critical": True,
            "section": 2,
            "timeout": 60,
            "detect": "test -f /etc/fw.done",
            "run": "ufw enable",
        }
    )

    assert step.tags == frozenset({"server"})
    assert step.depends_on == frozenset({"agent"})
    assert step.critical and step.section == 2 and step.timeout_s == 60.0
    assert step.work.detect is not None and step.work.verify is None


@pytest.mark.parametrize(
    "item",
    [
        {"run": "true"},
        {"name": "x"},
        {"name": "x", "run": "true", "retries": 3},
        {"name": "x", "run": "true", "env": ["A=1"]},
    ],
)
def test_invalid_step_definitions(item):
    with pytest.raises(ManifestError):
        step_from_dict(item)


@posix_only
def test_shell_command_exposes_run_env_and_secret(make_ctx):
    ctx = make_ctx(resolve_plan([], "kiosk"), role="kiosk")
    ctx.secrets = EnvSecretProvider({"HOSTSETUP_SECRET_KIOSK": "s3cret"})
    cmd = ShellCommand(
        'test "$HOSTSETUP_ROLE" = kiosk && test "$TOKEN" = s3cret && test "$MODE" = unattended',
        env={"MODE": "unattended"},
        secret_env="TOKEN",
    )

    assert cmd(ctx) is True


@posix_only
def test_failed_run_command_raises_with_output(make_ctx):
    ctx = make_ctx(resolve_plan([], "all"))

    assert ShellCommand("exit 3")(ctx) is False
    with pytest.raises(RuntimeError, match="exit 3: nope"):
        ShellCommand("echo nope >&2; exit 3", raise_on_error=True)(ctx)
