import pytest

from hostsetup.checkpoint import checkpoint_step
from hostsetup.config import OrchestratorConfig
from hostsetup.engine import RunResult
from hostsetup.errors import CycleDetectedError, PlanChangedError
from hostsetup.model import RebootMode, RunState, RunStatus, utc_now


def _example_steps(make_step, *, section_two=()):
    return [
        make_step("A", priority=10, section=1),
        make_step("B", priority=20, section=1, depends_on={"A"}),
        checkpoint_step("checkpoint", section=1, priority=30, mode=RebootMode.CHECK, next_section=2),
        *section_two,
    ]


def test_example_run_without_pending_reboot(make_step, make_orchestrator, store, calls, backend):
    outcome = make_orchestrator(_example_steps(make_step)).run("all")

    assert outcome.result is RunResult.COMPLETED
    assert outcome.exit_code == 0
    assert calls == ["A", "B"]
    saved = store.load()
    assert saved.status is RunStatus.COMPLETED
    assert saved.reboot_count == 0
    assert saved.total_steps == 3
    assert backend.created == []


def test_example_run_with_pending_reboot_then_relaunch(make_step, make_orchestrator, store, detector, backend, calls):
    detector.required = True
    steps = _example_steps(make_step)

    first = make_orchestrator(steps).run("all")

    assert first.result is RunResult.RESTARTING
    assert first.exit_code == 0
    saved = store.load()
    assert saved.status is RunStatus.IN_PROGRESS
    assert saved.reboot_count == 1
    assert saved.current_step == 3
    assert backend.exists("hostsetup-resume")

    # After the restart the trigger relaunches with the baked-in offset.
    calls.clear()
    second = make_orchestrator(steps).run("all", resume_at=3)

    assert second.result is RunResult.COMPLETED
    assert calls == []
    saved = store.load()
    assert saved.status is RunStatus.COMPLETED
    assert saved.reboot_count == 1
    assert saved.resume_task is None
    assert not backend.exists("hostsetup-resume")


def test_multi_section_run_resumes_after_restart(make_step, make_orchestrator, store, detector, calls):
    detector.required = True
    steps = _example_steps(make_step, section_two=[make_step("C", priority=40, section=2)])

    make_orchestrator(steps).run("all")
    assert calls == ["A", "B"]

    detector.required = False
    calls.clear()
    outcome = make_orchestrator(steps).run("all", resume_at=3)

    assert calls == ["C"]
    assert outcome.result is RunResult.COMPLETED
    saved = store.load()
    assert saved.completed_names == ["A", "B", "C"]
    assert [r["Outcome"] for r in saved.reboot_checkpoints] == ["Rebooting"]


def test_second_invocation_resumes_in_progress_run(make_step, make_orchestrator, store, calls):
    steps = [make_step(n, priority=i) for i, n in enumerate("abc")]
    store.save(
        RunState(role="all", session_id="earlier", start_time=utc_now(), total_steps=3, current_step=2)
    )

    outcome = make_orchestrator(steps).run("all")

    assert calls == ["c"]
    assert outcome.start_offset == 2
    assert store.load().session_id == "earlier"


def test_effective_offset_is_the_larger_of_state_and_argument(make_step, make_orchestrator, store, calls):
    steps = [make_step(n, priority=i) for i, n in enumerate("abcd")]
    store.save(RunState(role="all", session_id="s", start_time=utc_now(), total_steps=4, current_step=3))

    make_orchestrator(steps).run("all", resume_at=1)

    assert calls == ["d"]


def test_resume_offset_ignored_without_a_run_in_progress(make_step, make_orchestrator, calls):
    make_orchestrator([make_step("a"), make_step("b")]).run("all", resume_at=5)

    assert calls == ["a", "b"]


def test_finished_previous_run_starts_fresh(make_step, make_orchestrator, store, calls):
    old = RunState(role="all", session_id="old", start_time=utc_now(), total_steps=1, status=RunStatus.COMPLETED)
    store.save(old)

    make_orchestrator([make_step("a")]).run("all")

    assert calls == ["a"]
    assert store.load().session_id != "old"


def test_resume_uses_persisted_role(make_step, make_orchestrator, store, calls):
    steps = [make_step("kiosk-step", tags={"kiosk"}), make_step("server-step", tags={"server"})]
    store.save(RunState(role="kiosk", session_id="s", start_time=utc_now(), total_steps=1))

    make_orchestrator(steps).run("server")

    assert calls == ["kiosk-step"]


def test_resume_continues_after_recorded_steps(make_step, make_orchestrator, store, calls):
    steps = [
        make_step("create-user", tags={"kiosk"}, priority=1),
        make_step("restore-logon", tags={"kiosk"}, priority=2, depends_on={"create-user"}),
    ]
    state = RunState(role="kiosk", session_id="s", start_time=utc_now(), total_steps=2, current_step=1)
    state.record_completed(1, "create-user")
    store.save(state)

    outcome = make_orchestrator(steps).run("kiosk")

    assert calls == ["restore-logon"]
    assert outcome.result is RunResult.COMPLETED


def _recorded_run(store, *names, current_step=None):
    state = RunState(role="all", session_id="s", start_time=utc_now(), total_steps=len(names) + 1,
                     current_step=len(names) if current_step is None else current_step)
    for i, name in enumerate(names):
        state.record_completed(i + 1, name)
    store.save(state)
    return state


def test_resume_refuses_when_a_step_was_inserted_before_the_offset(make_step, make_orchestrator, store, calls):
    _recorded_run(store, "a", "b")
    steps = [make_step(n, priority=i) for i, n in enumerate(["a", "new", "b", "c"])]

    with pytest.raises(PlanChangedError, match="step 2 was b, now new"):
        make_orchestrator(steps).run("all")

    assert calls == []
    assert store.load().current_step == 2


def test_resume_refuses_when_a_recorded_step_was_removed(make_step, make_orchestrator, store, calls):
    _recorded_run(store, "a", "b")
    steps = [make_step(n, priority=i) for i, n in enumerate(["a", "c", "d"])]

    with pytest.raises(PlanChangedError):
        make_orchestrator(steps).run("all")

    assert calls == []


def test_resume_refuses_when_a_step_moved_ahead_of_the_restart_checkpoint(
    make_step, make_orchestrator, store, detector, calls
):
    detector.required = True
    make_orchestrator(_example_steps(make_step)).run("all")
    calls.clear()
    moved = _example_steps(make_step, section_two=[make_step("late", priority=25, section=1)])

    with pytest.raises(PlanChangedError, match="checkpoint checkpoint"):
        make_orchestrator(moved).run("all", resume_at=3)

    assert calls == []


def test_resume_accepts_steps_appended_after_the_offset(make_step, make_orchestrator, store, calls):
    _recorded_run(store, "a", "b")
    steps = [make_step(n, priority=i) for i, n in enumerate(["a", "b", "c", "d"])]

    outcome = make_orchestrator(steps).run("all")

    assert calls == ["c", "d"]
    assert outcome.result is RunResult.COMPLETED
    assert store.load().total_steps == 4


def test_critical_failure_exits_non_zero(make_step, make_orchestrator, store, calls):
    steps = [make_step("a", priority=1, critical=True, ok=False), make_step("b", priority=2)]

    outcome = make_orchestrator(steps).run("all")

    assert outcome.exit_code == 1
    assert calls == ["a"]
    assert store.load().status is RunStatus.FAILED


def test_cycle_fails_before_anything_runs(make_step, make_orchestrator, store, calls):
    steps = [make_step("a", depends_on={"b"}), make_step("b", depends_on={"a"})]

    with pytest.raises(CycleDetectedError):
        make_orchestrator(steps).run("all")

    assert calls == []
    assert not store.path.exists()


def test_finished_run_is_archived(make_step, make_orchestrator, store, tmp_path):
    config = OrchestratorConfig(raw={"state_path": str(store.path), "archive_on_finish": True})

    make_orchestrator([make_step("a")], config=config).run("all")

    assert not store.path.exists()
    archived = list(tmp_path.glob("state.*.completed.json"))
    assert len(archived) == 1


def test_fresh_run_uses_configured_reboot_mode(make_step, make_orchestrator, store, restarter):
    config = OrchestratorConfig(raw={"state_path": str(store.path), "reboot_mode": "always", "archive_on_finish": False})
    steps = [make_step("a", section=1), checkpoint_step("cp", section=1, priority=99)]

    outcome = make_orchestrator(steps, config=config).run("all")

    assert outcome.result is RunResult.RESTARTING
    assert store.load().reboot_mode is RebootMode.ALWAYS
    assert len(restarter.requests) == 1


def test_preview_changes_nothing(make_step, make_orchestrator, store, calls):
    outcome = make_orchestrator([make_step("a"), make_step("b")]).preview("all")

    assert outcome.result is RunResult.PREVIEWED
    assert calls == []
    assert not store.path.exists()
