from pathlib import Path

import pytest

from bootstage.config.models import Config
from bootstage.errors import AlreadyLocked, RebootHookFailure, UnknownStageError
from bootstage.observers.dispatcher import EventBus
from bootstage.observers.events import HookArmed, HookDisarmed, RebootRequested, RunSummary, StageStarted
from bootstage.scheduler import REBOOT_BOOT_FACT, ExitCode, Scheduler
from bootstage.stages.registry import (
    FatalFailure,
    RequiresReboot,
    RetryableFailure,
    Stage,
    StageKind,
    StageRegistry,
    Success,
)
from bootstage.state.lock import LockManager
from bootstage.state.models import ExecutionState, Status
from bootstage.state.store import StateStore


class FakeHost:
    def __init__(self):
        self.boot = "boot-1"
        self.reboots = []
        self.fail_reboot = False

    def boot_id(self):
        return self.boot

    def reboot(self, delay):
        if self.fail_reboot:
            raise OSError("reboot: permission denied")
        self.reboots.append(delay)

    def come_back_up(self):
        self.boot = f"boot-{len(self.reboots) + 1}"


class FakeHook:
    target = "fake-resume-hook"

    def __init__(self, fail=False):
        self.armed = False
        self.fail = fail
        self.commands = []
        self.disarm_calls = 0

    def arm(self, command):
        if self.fail:
            raise RebootHookFailure("systemd is not running on this host")
        self.commands.append(list(command))
        self.armed = True

    def disarm(self):
        self.disarm_calls += 1
        was = self.armed
        self.armed = False
        return was

    def is_armed(self):
        return self.armed


class Recorder:
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)

    def types(self):
        return [type(e) for e in self.events]


def abcd_registry(calls):
    def a(ctx):
        calls.append("A")
        return Success({"a.done": True})

    def b(ctx):
        calls.append("B")
        ctx.record_fact("b.done", True)
        return RequiresReboot()

    def c(ctx):
        calls.append("C")
        return Success()

    def d(ctx):
        calls.append("D")
        return Success()

    return StageRegistry(
        [
            Stage("A", a),
            Stage("B", b, kind=StageKind.REBOOT, completion_fact="b.done"),
            Stage("C", c),
            Stage("D", d, kind=StageKind.TERMINAL),
        ]
    )


def make_scheduler(tmp_path: Path, registry, host=None, hook=None, config=None, bus=None):
    store = StateStore(tmp_path / "state.json", registry)
    sched = Scheduler(
        registry,
        store,
        hook or FakeHook(),
        host or FakeHost(),
        config=config or Config(),
        bus=bus,
        run_id="run-1",
        hostname="test-host",
        resume_command=["bootstage", "run", "--resume-after-reboot"],
    )
    return sched, store


def test_end_to_end_reboot_round_trip(tmp_path: Path):
    calls = []
    registry = abcd_registry(calls)
    host, hook = FakeHost(), FakeHook()

    sched, store = make_scheduler(tmp_path, registry, host, hook)
    first = sched.run()
    assert first.exit_code == ExitCode.OK
    assert first.awaiting_reboot
    state = store.load()
    assert state.status == Status.AWAITING_REBOOT
    assert state.current_stage == "B"
    assert state.facts["b.done"] is True
    assert state.facts[REBOOT_BOOT_FACT] == "boot-1"
    assert calls == ["A", "B"]
    assert hook.armed and hook.commands == [["bootstage", "run", "--resume-after-reboot"]]
    assert host.reboots == [Config().reboot_delay]

    host.come_back_up()
    sched, store = make_scheduler(tmp_path, registry, host, hook)
    second = sched.run()
    assert second.exit_code == ExitCode.OK
    state = store.load()
    assert state.status == Status.COMPLETE
    assert state.current_stage == "D"
    # B's side effects are not repeated after the reboot
    assert calls == ["A", "B", "C", "D"]
    assert not hook.armed

    sched, _ = make_scheduler(tmp_path, registry, host, hook)
    third = sched.run()
    assert third.exit_code == ExitCode.OK
    assert calls == ["A", "B", "C", "D"]


def test_same_boot_does_not_rerun_reboot_stage(tmp_path: Path):
    calls = []
    registry = abcd_registry(calls)
    host, hook = FakeHost(), FakeHook()

    sched, store = make_scheduler(tmp_path, registry, host, hook)
    sched.run()
    # no reboot happened: the stage is not re-run, the reboot is requested again
    sched, store = make_scheduler(tmp_path, registry, host, hook)
    again = sched.run()

    assert again.exit_code == ExitCode.OK
    assert calls == ["A", "B"]
    assert store.load().status == Status.AWAITING_REBOOT
    assert len(host.reboots) == 2


def test_reboot_stage_without_completion_fact_is_rerun(tmp_path: Path):
    runs = []

    def b(ctx):
        runs.append("B")
        if len(runs) > 1:
            ctx.record_fact("b.done", True)
        return RequiresReboot()

    registry = StageRegistry(
        [
            Stage("B", b, kind=StageKind.REBOOT, completion_fact="b.done"),
            Stage("D", lambda ctx: Success(), kind=StageKind.TERMINAL),
        ]
    )
    host = FakeHost()
    sched, store = make_scheduler(tmp_path, registry, host)
    sched.run()
    host.come_back_up()

    sched, store = make_scheduler(tmp_path, registry, host)
    result = sched.run()

    assert runs == ["B", "B"]
    assert result.awaiting_reboot
    assert store.load().history[-2].outcome == "rebooted"


def test_idempotent_resume_skips_recorded_side_effects(tmp_path: Path):
    side_effects = []
    invocations = []

    def install(ctx):
        invocations.append(1)
        if not ctx.done("pkg.installed"):
            side_effects.append("install")
            ctx.record_fact("pkg.installed", True)
        if len(invocations) == 1:
            return RetryableFailure("mirror flapped after install")
        return Success()

    registry = StageRegistry(
        [Stage("install", install), Stage("done", lambda ctx: Success(), kind=StageKind.TERMINAL)]
    )

    sched, store = make_scheduler(tmp_path, registry)
    assert sched.run().exit_code == ExitCode.RETRY
    assert store.load().attempts == {"install": 1}

    sched, store = make_scheduler(tmp_path, registry)
    assert sched.run().exit_code == ExitCode.OK
    assert side_effects == ["install"]
    assert len(invocations) == 2
    assert store.load().status == Status.COMPLETE


def test_retry_ceiling_parks_stage_as_failed(tmp_path: Path):
    invocations = []

    def flaky(ctx):
        invocations.append(1)
        return RetryableFailure("temporary failure resolving mirror")

    registry = StageRegistry(
        [Stage("flaky", flaky), Stage("done", lambda ctx: Success(), kind=StageKind.TERMINAL)]
    )
    config = Config(stage_attempts=3)

    codes = []
    for _ in range(3):
        sched, store = make_scheduler(tmp_path, registry, config=config)
        codes.append(sched.run().exit_code)
    assert codes == [ExitCode.RETRY, ExitCode.RETRY, ExitCode.EXHAUSTED]

    state = store.load()
    assert state.status == Status.FAILED
    assert state.attempts["flaky"] == 3
    assert state.last_error == "temporary failure resolving mirror"

    # a failed record is never retried automatically
    sched, _ = make_scheduler(tmp_path, registry, config=config)
    assert sched.run().exit_code == ExitCode.EXHAUSTED
    assert len(invocations) == 3


def test_fatal_failure_stops_without_retry(tmp_path: Path):
    invocations = []

    def broken(ctx):
        invocations.append(1)
        return FatalFailure("Unsupported OS: gentoo")

    registry = StageRegistry(
        [Stage("init", broken), Stage("done", lambda ctx: Success(), kind=StageKind.TERMINAL)]
    )
    sched, store = make_scheduler(tmp_path, registry)
    result = sched.run()

    assert result.exit_code == ExitCode.FATAL
    assert store.load().status == Status.FAILED

    sched, _ = make_scheduler(tmp_path, registry)
    assert sched.run().exit_code == ExitCode.FATAL
    assert len(invocations) == 1


def test_unexpected_exception_is_retryable(tmp_path: Path):
    def boom(ctx):
        raise ValueError("bad value")

    registry = StageRegistry(
        [Stage("boom", boom), Stage("done", lambda ctx: Success(), kind=StageKind.TERMINAL)]
    )
    sched, store = make_scheduler(tmp_path, registry)
    result = sched.run()

    assert result.exit_code == ExitCode.RETRY
    assert "ValueError" in store.load().last_error


def test_non_outcome_return_is_fatal(tmp_path: Path):
    registry = StageRegistry(
        [Stage("odd", lambda ctx: True), Stage("done", lambda ctx: Success(), kind=StageKind.TERMINAL)]
    )
    sched, _ = make_scheduler(tmp_path, registry)
    assert sched.run().exit_code == ExitCode.FATAL


def test_interrupted_run_counts_as_attempt(tmp_path: Path):
    calls = []
    registry = abcd_registry(calls)
    sched, store = make_scheduler(tmp_path, registry)
    store.save(ExecutionState(current_stage="C", status=Status.RUNNING))

    result = sched.run()

    assert result.exit_code == ExitCode.OK
    assert calls == ["C", "D"]
    state = store.load()
    assert state.attempts["C"] == 1
    assert any(r.outcome == "interrupted" for r in state.history)


def test_interrupted_run_at_ceiling_is_exhausted(tmp_path: Path):
    calls = []
    registry = abcd_registry(calls)
    sched, store = make_scheduler(tmp_path, registry, config=Config(stage_attempts=2))
    store.save(ExecutionState(current_stage="C", status=Status.RUNNING, attempts={"C": 1}))

    assert sched.run().exit_code == ExitCode.EXHAUSTED
    assert calls == []
    assert store.load().status == Status.FAILED


def test_stage_override_resets_attempts_and_keeps_facts(tmp_path: Path):
    calls = []
    registry = abcd_registry(calls)
    sched, store = make_scheduler(tmp_path, registry)
    store.save(
        ExecutionState(
            current_stage="C",
            status=Status.FAILED,
            attempts={"C": 5},
            last_error="boom",
            facts={"a.done": True},
        )
    )

    result = sched.run(start_stage="C")

    assert result.exit_code == ExitCode.OK
    assert calls == ["C", "D"]
    state = store.load()
    assert state.attempts["C"] == 0
    assert state.facts["a.done"] is True
    assert state.last_error is None


def test_unknown_stage_override_raises(tmp_path: Path):
    sched, _ = make_scheduler(tmp_path, abcd_registry([]))
    with pytest.raises(UnknownStageError):
        sched.run(start_stage="nope")


def test_hook_failure_is_fatal_and_no_reboot(tmp_path: Path):
    calls = []
    host = FakeHost()
    sched, store = make_scheduler(tmp_path, abcd_registry(calls), host, FakeHook(fail=True))

    result = sched.run()

    assert result.exit_code == ExitCode.FATAL
    assert host.reboots == []
    state = store.load()
    assert state.status == Status.FAILED
    assert "continuation hook" in state.last_error


def test_reboot_trigger_failure_keeps_awaiting_reboot(tmp_path: Path):
    calls = []
    host, hook = FakeHost(), FakeHook()
    host.fail_reboot = True
    sched, store = make_scheduler(tmp_path, abcd_registry(calls), host, hook)

    result = sched.run()

    assert result.exit_code == ExitCode.FATAL
    state = store.load()
    assert state.status == Status.AWAITING_REBOOT
    assert "reboot trigger failed" in state.last_error
    assert hook.armed

    # a manual reboot resumes the workflow
    host.fail_reboot = False
    host.boot = "boot-manual"
    sched, store = make_scheduler(tmp_path, abcd_registry(calls), host, hook)
    assert sched.run().exit_code == ExitCode.OK
    assert store.load().status == Status.COMPLETE
    assert calls == ["A", "B", "C", "D"]


def test_corrupt_state_is_refused(tmp_path: Path):
    calls = []
    sched, store = make_scheduler(tmp_path, abcd_registry(calls))
    store.path.write_text("{not json")

    result = sched.run()

    assert result.exit_code == ExitCode.STATE_CORRUPT
    assert calls == []
    assert store.path.read_text() == "{not json"


def test_events_are_emitted(tmp_path: Path):
    rec = Recorder()
    host, hook = FakeHost(), FakeHook()
    sched, _ = make_scheduler(tmp_path, abcd_registry([]), host, hook, bus=EventBus([rec]))
    sched.run()
    types = rec.types()

    assert types.count(StageStarted) == 2
    assert HookArmed in types
    assert RebootRequested in types
    assert types[-1] is RunSummary

    host.come_back_up()
    rec2 = Recorder()
    sched, _ = make_scheduler(tmp_path, abcd_registry([]), host, hook, bus=EventBus([rec2]))
    sched.run()
    assert HookDisarmed in rec2.types()
    assert rec2.events[-1].status == "complete"


def test_failing_observer_does_not_break_run(tmp_path: Path):
    class Exploding:
        def notify(self, event):
            raise RuntimeError("disk full")

    sched, store = make_scheduler(tmp_path, abcd_registry([]), bus=EventBus([Exploding()]))
    assert sched.run().exit_code == ExitCode.OK
    assert store.load().status == Status.AWAITING_REBOOT


def test_reboot_pending_lock_is_claimed_after_reboot(tmp_path: Path):
    host, hook = FakeHost(), FakeHook()
    lock_path = tmp_path / "bootstage.lock"

    sched, store = make_scheduler(tmp_path, abcd_registry([]), host, hook)
    with LockManager(lock_path, host.boot_id, pid=111).hold("run-1") as lock:
        sched.run(lock)
    assert LockManager(lock_path, host.boot_id).read()["reboot_pending"] is True

    # same boot: the reboot is still pending
    with pytest.raises(AlreadyLocked):
        LockManager(lock_path, host.boot_id, pid=222).acquire("run-2")

    host.come_back_up()
    sched, store = make_scheduler(tmp_path, abcd_registry([]), host, hook)
    with LockManager(lock_path, host.boot_id, pid=333).hold("run-3") as lock:
        assert sched.run(lock).exit_code == ExitCode.OK
    assert store.load().status == Status.COMPLETE
    assert lock_path.read_text() == ""
