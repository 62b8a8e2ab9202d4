"""Shared fixtures: temp state, fake host integrations, step factories."""

from __future__ import annotations

import pytest

from hostsetup.checkpoint import CheckpointController
from hostsetup.config import OrchestratorConfig
from hostsetup.context import RunContext
from hostsetup.model import RunState, Step, WorkUnit, utc_now
from hostsetup.orchestrator import Orchestrator
from hostsetup.resume_trigger import ResumeTriggerManager
from hostsetup.state_store import StateStore

LAUNCH = ["/usr/bin/python3", "-m", "hostsetup", "--state", "/tmp/state.json"]


class FakeDetector:
    default_reasons = ["pending file rename operations"]

    def __init__(self, required: bool = False, reasons=None):
        self.required = required
        self.reasons = list(reasons or [])
        self.calls = 0

    def is_required(self):
        self.calls += 1
        if self.required and not self.reasons:
            return True, list(self.default_reasons)
        return self.required, list(self.reasons)


class FakeBackend:
    def __init__(self):
        self.entries = {}
        self.created = []
        self.removed = []
        self.fail = False
        self.on_create = None

    def create(self, trigger):
        if self.on_create:
            self.on_create(trigger)
        if self.fail:
            raise RuntimeError("access denied")
        self.entries[trigger.name] = trigger
        self.created.append(trigger)

    def remove(self, name):
        self.removed.append(name)
        self.entries.pop(name, None)

    def exists(self, name):
        return name in self.entries


class FakeRestarter:
    def __init__(self):
        self.requests = []
        self.fail = False

    def request(self, delay_s=0, message=""):
        if self.fail:
            raise RuntimeError("shutdown refused")
        self.requests.append((delay_s, message))


@pytest.fixture
def config(tmp_path):
    return OrchestratorConfig(
        raw={
            "state_path": str(tmp_path / "state.json"),
            "log_path": str(tmp_path / "hostsetup.log"),
            "archive_on_finish": False,
            "reboot_delay_s": 0,
        }
    )


@pytest.fixture
def store(config):
    return StateStore(config.state_path)


@pytest.fixture
def detector():
    return FakeDetector()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def restarter():
    return FakeRestarter()


@pytest.fixture
def controller(detector, backend, restarter):
    return CheckpointController(
        detector=detector,
        triggers=ResumeTriggerManager(backend, name="hostsetup-resume"),
        restarter=restarter,
        reboot_delay_s=0,
    )


@pytest.fixture
def calls():
    return []


@pytest.fixture
def make_step(calls):
    def factory(name, *, ok=True, raises=None, detect=None, verify=None, **kw):
        def work(ctx):
            calls.append(name)
            if raises is not None:
                raise raises
            return ok

        for key in ("tags", "depends_on", "provides"):
            if key in kw:
                kw[key] = frozenset(kw[key])
        return Step(name=name, work=WorkUnit(work=work, detect=detect, verify=verify), **kw)

    return factory


@pytest.fixture
def make_ctx(store, config, controller):
    def factory(plan, role="all", **kw):
        state = RunState(role=role, session_id="session-1", start_time=utc_now(), total_steps=len(plan))
        return RunContext(
            role=role,
            state=state,
            store=store,
            plan=plan,
            config=kw.pop("config", config),
            checkpoints=controller,
            launch_command=list(LAUNCH),
            **kw,
        )

    return factory


@pytest.fixture
def make_orchestrator(config, store, controller):
    def factory(steps, **kw):
        return Orchestrator(
            steps,
            kw.pop("config", config),
            store=store,
            controller=controller,
            launch_command=list(LAUNCH),
            **kw,
        )

    return factory
