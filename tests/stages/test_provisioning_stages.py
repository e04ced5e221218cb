import subprocess
from pathlib import Path

import pytest

from bootstage.collaborators.interface import OsInfo, Services, TunnelResult
from bootstage.collaborators.tunnel import SshTunnelProvisioner
from bootstage.config.models import Config
from bootstage.errors import PermanentExternalFailure, TransientExternalFailure, TrustedKeyMissing
from bootstage.scheduler import ExitCode, Scheduler
from bootstage.stages.provisioning import (
    UPDATES_DONE,
    build_registry,
    run_agent_configure,
    run_agent_install,
    run_banner,
    run_complete,
    run_init,
    run_tunnel_setup,
    run_updates,
)
from bootstage.stages.registry import (
    FatalFailure,
    RequiresReboot,
    RetryableFailure,
    Stage,
    StageContext,
    Success,
)
from bootstage.state.models import ExecutionState, Status
from bootstage.state.store import StateStore
from bootstage.utils.retry import RetryExecutor


# ------------------ fakes ------------------

class FakeHost:
    def __init__(self, root=True, os_error=None, network_failures=0):
        self.root = root
        self.os_error = os_error
        self.network_failures = network_failures
        self.detect_calls = 0
        self.boot = "boot-1"
        self.reboots = []

    def is_root(self):
        return self.root

    def hostname(self):
        return "vps-1"

    def boot_id(self):
        return self.boot

    def detect_os(self):
        self.detect_calls += 1
        if self.os_error:
            raise self.os_error
        return OsInfo(family="debian", id="ubuntu", version="22.04")

    def wait_for_network(self, timeout):
        if self.network_failures:
            self.network_failures -= 1
            raise TransientExternalFailure("no network connectivity to 8.8.8.8")

    def reboot(self, delay):
        self.reboots.append(delay)


class FakePackages:
    def __init__(self, changed=True, error=None):
        self.changed = changed
        self.error = error
        self.upgrades = 0

    def upgrade_all(self):
        self.upgrades += 1
        if self.error:
            raise self.error
        return self.changed


class FakeAgent:
    def __init__(self, install_error=None, configure_changes=None):
        self.install_error = install_error
        self.configure_changes = configure_changes
        self.repos = []
        self.installs = 0
        self.restarts = 0
        self.configured_with = None

    def add_repository(self, os_info, version):
        self.repos.append((os_info.id, version))

    def install(self):
        self.installs += 1
        if self.install_error:
            raise self.install_error

    def configure(self, server, hostname, debug_level):
        # like the real file writer: changed only when the rendered values differ
        args = (server, hostname, debug_level)
        changed = args != self.configured_with if self.configure_changes is None else self.configure_changes
        self.configured_with = args
        return changed

    def restart(self):
        self.restarts += 1

    def is_running(self):
        return True


class FakeTunnel:
    def __init__(self, error=None, has_key=False):
        self.error = error
        self.has_key = has_key
        self.params = []
        self.keys_generated = 0
        self.service_installs = 0

    def ensure_key_and_service(self, params, *, key_expected=False, service_installed=False):
        self.params.append(params)
        if self.error:
            raise self.error
        generated = not self.has_key
        if generated:
            if key_expected:
                raise TrustedKeyMissing(f"tunnel key {params.key_path} is missing")
            self.has_key = True
            self.keys_generated += 1
        if not service_installed:
            self.service_installs += 1
        return TunnelResult(
            key_generated=generated,
            service_changed=not service_installed,
            public_key="ssh-rsa AAAA zabbix-tunnel@vps-1",
        )

    def is_active(self, service_name):
        return False


class FakeBanner:
    def __init__(self):
        self.writes = []
        self.ssh_enabled = 0

    def write(self, title, message, status_lines):
        self.writes.append((title, status_lines))

    def enable_ssh_banner(self):
        self.ssh_enabled += 1
        return True


class FakeHook:
    target = "fake"

    def __init__(self):
        self.armed = False
        self.disarms = 0

    def arm(self, command):
        self.armed = True

    def disarm(self):
        self.disarms += 1
        was, self.armed = self.armed, False
        return was

    def is_armed(self):
        return self.armed


def services(**overrides):
    parts = dict(
        host=FakeHost(),
        packages=FakePackages(),
        agent=FakeAgent(),
        tunnel=FakeTunnel(),
        banner=FakeBanner(),
        hook=FakeHook(),
    )
    parts.update(overrides)
    return Services(**parts)


def make_ctx(run, svc, facts=None, config=None):
    facts = {} if facts is None else facts
    return StageContext(
        Stage(run.__name__, run),
        config=config or Config(),
        facts=facts,
        record_fact=lambda k, v: facts.__setitem__(k, v),
        record=lambda level, stage, message: None,
        services=svc,
        executor=RetryExecutor(sleep=lambda s: None),
    ), facts


# ------------------ init / banner ------------------

def test_init_requires_root():
    ctx, _ = make_ctx(run_init, services(host=FakeHost(root=False)))
    assert isinstance(run_init(ctx), FatalFailure)


def test_init_records_os_once():
    svc = services()
    ctx, facts = make_ctx(run_init, svc)
    assert isinstance(run_init(ctx), Success)
    assert facts == {"os.family": "debian", "os.id": "ubuntu", "os.version": "22.04"}

    ctx, _ = make_ctx(run_init, svc, facts)
    run_init(ctx)
    assert svc.host.detect_calls == 1


def test_init_unsupported_os_is_fatal():
    svc = services(host=FakeHost(os_error=PermanentExternalFailure("Unsupported OS: arch")))
    ctx, _ = make_ctx(run_init, svc)
    outcome = run_init(ctx)
    assert isinstance(outcome, FatalFailure)
    assert "arch" in outcome.reason


def test_init_network_retries_then_gives_up():
    svc = services(host=FakeHost(network_failures=2))
    ctx, _ = make_ctx(run_init, svc)
    assert isinstance(run_init(ctx), Success)

    svc = services(host=FakeHost(network_failures=100))
    ctx, _ = make_ctx(run_init, svc)
    outcome = run_init(ctx)
    assert isinstance(outcome, RetryableFailure)
    assert "network connectivity" in outcome.reason


def test_banner_stage():
    svc = services()
    ctx, _ = make_ctx(run_banner, svc)
    outcome = run_banner(ctx)
    assert outcome == Success({"banner_set": True})
    assert svc.banner.writes[0][1] == ["Setup Progress: System Updates in Progress"]
    assert svc.banner.ssh_enabled == 1


# ------------------ updates ------------------

def test_updates_with_changes_requires_reboot():
    svc = services(packages=FakePackages(changed=True))
    ctx, facts = make_ctx(run_updates, svc)
    assert isinstance(run_updates(ctx), RequiresReboot)
    # completion fact recorded before signalling the reboot
    assert facts[UPDATES_DONE] is True
    assert facts["updates_installed"] is True
    assert svc.banner.writes[-1][1] == ["Setup Progress: Rebooting after updates..."]


def test_updates_without_changes_continues():
    ctx, _ = make_ctx(run_updates, services(packages=FakePackages(changed=False)))
    outcome = run_updates(ctx)
    assert outcome == Success({UPDATES_DONE: True, "no_updates_needed": True})


def test_updates_mirror_outage_is_retryable_after_policy():
    pk = FakePackages(error=TransientExternalFailure("failed to fetch"))
    config = Config(retry={"package": {"attempts": 3, "base_delay": 0}})
    ctx, _ = make_ctx(run_updates, services(packages=pk), config=config)
    assert isinstance(run_updates(ctx), RetryableFailure)
    assert pk.upgrades == 3


@pytest.mark.parametrize(
    "boot_facts",
    [
        {},  # died before the reboot was requested
        {"updates.boot_id": "boot-1"},
        {"reboot.boot_id": "boot-1"},
    ],
)
def test_updates_already_installed_without_reboot_requires_reboot(boot_facts):
    svc = services(packages=FakePackages(changed=False))
    facts = {"updates_installed": True, UPDATES_DONE: True, **boot_facts}
    ctx, _ = make_ctx(run_updates, svc, facts)

    assert isinstance(run_updates(ctx), RequiresReboot)
    assert svc.packages.upgrades == 0


def test_updates_already_installed_and_rebooted_is_skipped():
    svc = services()
    svc.host.boot = "boot-2"
    facts = {"updates_installed": True, UPDATES_DONE: True, "updates.boot_id": "boot-1", "reboot.boot_id": "boot-1"}
    ctx, _ = make_ctx(run_updates, svc, facts)

    assert run_updates(ctx) == Success()
    assert svc.packages.upgrades == 0
    assert svc.host.reboots == []


def test_updates_done_without_changes_is_skipped():
    svc = services()
    ctx, _ = make_ctx(run_updates, svc, {UPDATES_DONE: True, "no_updates_needed": True})
    assert run_updates(ctx) == Success()
    assert svc.packages.upgrades == 0


# ------------------ agent ------------------

def test_agent_install_skips_recorded_steps():
    agent = FakeAgent(install_error=TransientExternalFailure("could not get lock"))
    svc = services(agent=agent)
    facts = {"os.family": "debian", "os.id": "ubuntu", "os.version": "22.04"}
    ctx, facts = make_ctx(run_agent_install, svc, facts, Config(retry={"package": {"attempts": 1}}))

    assert isinstance(run_agent_install(ctx), RetryableFailure)
    assert facts["agent.repo_added"] is True
    assert "agent.installed" not in facts

    agent.install_error = None
    ctx, facts = make_ctx(run_agent_install, svc, facts)
    assert isinstance(run_agent_install(ctx), Success)
    assert agent.repos == [("ubuntu", "6.4")]
    assert agent.installs == 2
    assert svc.host.detect_calls == 0


def test_agent_configure_restarts_only_when_needed():
    agent = FakeAgent(configure_changes=False)
    svc = services(agent=agent)
    ctx, _ = make_ctx(run_agent_configure, svc, {"agent.configured": True})
    assert run_agent_configure(ctx) == Success({"agent.configured": True})
    assert agent.restarts == 0
    assert agent.configured_with == ("127.0.0.1", "vps-1", 4)

    agent.configure_changes = True
    ctx, _ = make_ctx(run_agent_configure, svc, {"agent.configured": True})
    run_agent_configure(ctx)
    assert agent.restarts == 1


# ------------------ tunnel / complete ------------------

def test_tunnel_failure_is_tolerated_unless_required():
    svc = services(tunnel=FakeTunnel(error=PermanentExternalFailure("systemctl enable failed")))
    ctx, _ = make_ctx(run_tunnel_setup, svc)
    assert run_tunnel_setup(ctx) == Success({"tunnel_failed": True})

    ctx, _ = make_ctx(run_tunnel_setup, svc, config=Config(tunnel={"required": True}))
    assert isinstance(run_tunnel_setup(ctx), FatalFailure)


def test_tunnel_setup_records_key_and_service():
    svc = services(tunnel=FakeTunnel())
    ctx, facts = make_ctx(run_tunnel_setup, svc)
    outcome = run_tunnel_setup(ctx)

    assert facts["tunnel.key_generated"] is True
    assert outcome.facts["tunnel.service_installed"] is True
    params = svc.tunnel.params[0]
    assert params.host == "monitor.cloudgeeks.in"
    assert params.ssh_port == 20202
    assert params.key_comment == "zabbix-tunnel@vps-1"


def test_tunnel_setup_skips_recorded_service():
    svc = services(tunnel=FakeTunnel(has_key=True))
    ctx, _ = make_ctx(run_tunnel_setup, svc, {"tunnel.key_generated": True, "tunnel.service_installed": True})
    assert isinstance(run_tunnel_setup(ctx), Success)
    assert svc.tunnel.keys_generated == 0
    assert svc.tunnel.service_installs == 0


@pytest.mark.parametrize("required", [False, True])
def test_tunnel_setup_refuses_to_replace_deleted_key(tmp_path: Path, monkeypatch, required):
    monkeypatch.setattr(subprocess, "run", lambda argv, **kw: subprocess.CompletedProcess(argv, 0, "", ""))
    key_path = tmp_path / "ssh" / "zabbix_tunnel_key"
    config = Config(tunnel={"key_path": key_path, "key_bits": 1024, "required": required})
    svc = services(tunnel=SshTunnelProvisioner(unit_dir=tmp_path / "units"))

    ctx, facts = make_ctx(run_tunnel_setup, svc, config=config)
    first = run_tunnel_setup(ctx)
    assert facts["tunnel.key_generated"] is True
    facts.update(first.facts)

    key_path.unlink()
    ctx, facts = make_ctx(run_tunnel_setup, svc, facts, config=config)
    outcome = run_tunnel_setup(ctx)

    assert isinstance(outcome, FatalFailure)
    assert "zabbix_tunnel_key" in outcome.reason
    assert not key_path.exists()


def test_complete_writes_ready_banner_and_disarms_hook():
    svc = services()
    svc.hook.armed = True
    ctx, _ = make_ctx(run_complete, svc, {"completed_at": "2026-01-01T00:00:00+00:00"})
    outcome = run_complete(ctx)

    assert outcome == Success({"completed_at": "2026-01-01T00:00:00+00:00"})
    assert svc.banner.writes[-1][0] == Config().banner.ready_text
    assert not svc.hook.armed

    # idempotent when run again
    run_complete(ctx)
    assert svc.hook.disarms == 2


# ------------------ whole workflow ------------------

def make_scheduler(tmp_path: Path, svc: Services) -> Scheduler:
    registry = build_registry()
    return Scheduler(
        registry,
        StateStore(tmp_path / "state.json", registry),
        svc.hook,
        svc.host,
        config=Config(),
        services=svc,
        executor=RetryExecutor(sleep=lambda s: None),
        resume_command=["bootstage", "run"],
    )


def side_effects(svc: Services) -> dict:
    return {
        "upgrades": svc.packages.upgrades,
        "repos": len(svc.agent.repos),
        "installs": svc.agent.installs,
        "restarts": svc.agent.restarts,
        "keys": svc.tunnel.keys_generated,
        "units": svc.tunnel.service_installs,
        "reboots": len(svc.host.reboots),
    }


def test_full_workflow_across_reboot(tmp_path: Path):
    svc = services()

    first = make_scheduler(tmp_path, svc).run()
    assert first.exit_code == ExitCode.OK
    assert first.state.current_stage == "updates"
    assert first.state.status == Status.AWAITING_REBOOT
    assert svc.hook.armed
    assert svc.host.reboots == [10]

    svc.host.boot = "boot-2"
    second = make_scheduler(tmp_path, svc).run()
    assert second.exit_code == ExitCode.OK
    assert second.state.status == Status.COMPLETE
    assert svc.packages.upgrades == 1
    assert svc.agent.installs == 1
    assert not svc.hook.armed
    assert second.state.facts["post_reboot_complete"] is True


def test_crash_after_updates_recorded_still_reboots(tmp_path: Path):
    svc = services(packages=FakePackages(changed=False))
    scheduler = make_scheduler(tmp_path, svc)
    scheduler.store.save(
        ExecutionState(
            current_stage="updates",
            status=Status.RUNNING,
            facts={"updates_installed": True, UPDATES_DONE: True},
        )
    )

    result = scheduler.run()

    assert result.exit_code == ExitCode.OK
    assert result.state.status == Status.AWAITING_REBOOT
    assert svc.packages.upgrades == 0
    assert svc.host.reboots == [10]
    assert svc.hook.armed


@pytest.mark.parametrize("stage", build_registry().names())
def test_rerunning_any_stage_after_completion_repeats_no_side_effects(tmp_path: Path, stage):
    svc = services()
    make_scheduler(tmp_path, svc).run()
    svc.host.boot = "boot-2"
    assert make_scheduler(tmp_path, svc).run().state.status == Status.COMPLETE
    before = side_effects(svc)
    assert before == {"upgrades": 1, "repos": 1, "installs": 1, "restarts": 1, "keys": 1, "units": 1, "reboots": 1}

    result = make_scheduler(tmp_path, svc).run(start_stage=stage)

    assert result.exit_code == ExitCode.OK
    assert result.state.status == Status.COMPLETE
    assert side_effects(svc) == before
