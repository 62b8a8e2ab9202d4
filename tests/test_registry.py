import pytest

from hostsetup.errors import DuplicateStepError
from hostsetup.model import DEFAULT_PRIORITY
from hostsetup.registry import StepRegistry


def test_register_fills_defaults(make_step):
    reg = StepRegistry()
    step = reg.register(make_step("install-agent"))

    assert step.priority == DEFAULT_PRIORITY
    assert step.provides == frozenset({"install-agent"})
    assert reg.get("install-agent") is step
    assert "install-agent" in reg


def test_register_keeps_explicit_values_and_adds_own_name(make_step):
    reg = StepRegistry()
    step = reg.register(make_step("net", priority=5, provides={"network"}))

    assert step.priority == 5
    assert step.provides == frozenset({"network", "net"})


def test_duplicate_name_is_rejected(make_step):
    reg = StepRegistry([make_step("a")])

    with pytest.raises(DuplicateStepError) as exc:
        reg.register(make_step("a", priority=1))

    assert exc.value.name == "a"
    assert len(reg) == 1


def test_capabilities_of_completed_names(make_step):
    reg = StepRegistry([make_step("net", provides={"network"}), make_step("disk")])

    caps = reg.capabilities_of(["net", "removed-step"])

    assert caps == {"net", "network", "removed-step"}
