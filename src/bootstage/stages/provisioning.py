# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/stages/provisioning.py
"""
The server bootstrap workflow.

Every run function checks its recorded facts before performing a side
effect and records a fact right after it, so re-running a stage after a
crash or a reboot skips what is already done.
"""
from __future__ import annotations

import logging

from bootstage.collaborators.interface import OsInfo, TunnelParams
from bootstage.errors import BootstageError, ExhaustedFailure, TransientExternalFailure, TrustedKeyMissing
from bootstage.state.models import utcnow
from .registry import (
    REBOOT_BOOT_FACT,
    FatalFailure,
    RequiresReboot,
    RetryableFailure,
    Stage,
    StageContext,
    StageKind,
    StageOutcome,
    StageRegistry,
    Success,
)

log = logging.getLogger("bootstage")

UPDATES_DONE = "updates.done"


# ------------------ helpers ------------------

def failure_from(exc: Exception) -> StageOutcome:
    """Map a collaborator exception onto a stage outcome."""
    if isinstance(exc, (ExhaustedFailure, TransientExternalFailure)):
        return RetryableFailure(str(exc))
    if isinstance(exc, BootstageError):
        return FatalFailure(str(exc))
    return RetryableFailure(f"{type(exc).__name__}: {exc}")


def _progress(ctx: StageContext, progress: str) -> None:
    """Refresh the MOTD progress line. A banner is cosmetic; failures only warn."""
    banner = ctx.config.banner
    try:
        ctx.services.banner.write(banner.text, banner.motd_message, [f"Setup Progress: {progress}"])
    except OSError as exc:
        ctx.warn(f"could not update banner: {exc}")


def _wait_for_network(ctx: StageContext) -> None:
    host = ctx.services.host
    ctx.executor.execute(
        lambda: host.wait_for_network(ctx.config.network_timeout),
        ctx.config.retry.network,
        description="network connectivity",
    )


def _os_info(ctx: StageContext) -> OsInfo:
    if ctx.fact("os.family"):
        return OsInfo(family=str(ctx.fact("os.family")), id=str(ctx.fact("os.id")), version=str(ctx.fact("os.version")))
    info = ctx.services.host.detect_os()
    ctx.record_fact("os.family", info.family)
    ctx.record_fact("os.id", info.id)
    ctx.record_fact("os.version", info.version)
    return info


# ------------------ stages ------------------

def run_init(ctx: StageContext) -> StageOutcome:
    host = ctx.services.host
    if not host.is_root():
        return FatalFailure("bootstage must run as root")
    try:
        info = _os_info(ctx)
        _wait_for_network(ctx)
    except BootstageError as exc:
        return failure_from(exc)
    ctx.info(f"initialized on {info.id} {info.version}")
    return Success()


def run_banner(ctx: StageContext) -> StageOutcome:
    banner = ctx.config.banner
    try:
        ctx.services.banner.write(banner.text, banner.motd_message, ["Setup Progress: System Updates in Progress"])
        ctx.services.banner.enable_ssh_banner()
    except OSError as exc:
        return RetryableFailure(f"banner: {exc}")
    return Success({"banner_set": True})


def _updates_reboot_pending(ctx: StageContext) -> bool:
    """True when updates were installed and the host has not rebooted since."""
    if not ctx.done("updates_installed"):
        return False
    installed_on = ctx.fact("updates.boot_id") or ctx.fact(REBOOT_BOOT_FACT)
    # no boot id recorded: the process died before the reboot was requested
    return not installed_on or installed_on == ctx.services.host.boot_id()


def run_updates(ctx: StageContext) -> StageOutcome:
    if ctx.done(UPDATES_DONE):
        if _updates_reboot_pending(ctx):
            ctx.info("updates already installed; reboot still pending")
            return RequiresReboot()
        ctx.info("updates already installed")
        return Success()

    packages = ctx.services.packages
    try:
        changed = ctx.executor.execute(
            packages.upgrade_all,
            ctx.config.retry.package,
            description="system upgrade",
        )
    except BootstageError as exc:
        return failure_from(exc)

    if not changed:
        ctx.info("no updates required")
        return Success({UPDATES_DONE: True, "no_updates_needed": True})

    ctx.record_fact("updates_installed", True)
    ctx.record_fact("updates.boot_id", ctx.services.host.boot_id())
    ctx.record_fact(UPDATES_DONE, True)
    _progress(ctx, "Rebooting after updates...")
    return RequiresReboot()


def run_post_reboot(ctx: StageContext) -> StageOutcome:
    try:
        _wait_for_network(ctx)
    except BootstageError as exc:
        return failure_from(exc)
    _progress(ctx, "Installing Zabbix Agent...")
    return Success({"post_reboot_complete": True})


def run_agent_install(ctx: StageContext) -> StageOutcome:
    agent = ctx.services.agent
    cfg = ctx.config
    try:
        if not ctx.done("agent.repo_added"):
            os_info = _os_info(ctx)
            ctx.executor.execute(
                lambda: agent.add_repository(os_info, cfg.agent.version),
                cfg.retry.network,
                description=f"zabbix {cfg.agent.version} repository",
            )
            ctx.record_fact("agent.repo_added", True)

        if not ctx.done("agent.installed"):
            ctx.executor.execute(agent.install, cfg.retry.package, description="zabbix agent package")
            ctx.record_fact("agent.installed", True)
    except BootstageError as exc:
        return failure_from(exc)
    return Success()


def run_agent_configure(ctx: StageContext) -> StageOutcome:
    agent = ctx.services.agent
    cfg = ctx.config.agent
    _progress(ctx, "Configuring SSH Tunnel...")
    try:
        changed = agent.configure(cfg.server, ctx.services.host.hostname(), cfg.debug_level)
        # an earlier attempt may have rewritten the file and died before restarting
        if changed or not ctx.done("agent.configured"):
            agent.restart()
    except BootstageError as exc:
        return failure_from(exc)
    except OSError as exc:
        return RetryableFailure(f"agent config: {exc}")

    if not agent.is_running():
        ctx.warn("zabbix agent is not active after restart")
    return Success({"agent.configured": True})


def run_tunnel_setup(ctx: StageContext) -> StageOutcome:
    cfg = ctx.config.tunnel
    hostname = ctx.services.host.hostname()
    params = TunnelParams(
        host=cfg.host,
        ssh_port=cfg.ssh_port,
        user=cfg.user,
        key_path=cfg.key_path,
        key_bits=cfg.key_bits,
        remote_port=cfg.remote_port,
        local_port=cfg.local_port,
        service_name=cfg.service_name,
        key_comment=f"zabbix-tunnel@{hostname}",
    )
    key_expected = ctx.done("tunnel.key_generated") or bool(ctx.fact("tunnel.public_key"))
    try:
        result = ctx.services.tunnel.ensure_key_and_service(
            params,
            key_expected=key_expected,
            service_installed=ctx.done("tunnel.service_installed"),
        )
    except TrustedKeyMissing as exc:
        # a fresh key would silently break the tunnel; needs an operator either way
        return FatalFailure(str(exc))
    except Exception as exc:
        if cfg.required:
            return failure_from(exc)
        log.warning("SSH tunnel setup failed - manual configuration may be required: %s", exc)
        ctx.warn(f"tunnel setup failed: {exc}")
        return Success({"tunnel_failed": True})

    if result.key_generated:
        ctx.record_fact("tunnel.key_generated", True)
    ctx.info(f"authorize this key for {cfg.user}@{cfg.host}: {result.public_key}")
    return Success({"tunnel.service_installed": True, "tunnel.public_key": result.public_key, "tunnel_failed": False})


def run_complete(ctx: StageContext) -> StageOutcome:
    banner = ctx.config.banner
    tunnel_line = "SSH Tunnel: setup failed, see logs" if ctx.done("tunnel_failed") else "SSH Tunnel: Check logs for status"
    try:
        ctx.services.banner.write(
            banner.ready_text,
            banner.motd_message,
            ["Status: Server Ready for Use", "Zabbix Agent: Configured and Running", tunnel_line],
        )
    except OSError as exc:
        ctx.warn(f"could not write final banner: {exc}")

    hook = ctx.services.hook
    if hook is not None:
        try:
            hook.disarm()
        except (BootstageError, OSError) as exc:
            ctx.warn(f"continuation hook not removed: {exc}")

    completed_at = ctx.fact("completed_at") or utcnow().isoformat()
    return Success({"completed_at": completed_at})


# ------------------ registry ------------------

def build_registry() -> StageRegistry:
    return StageRegistry(
        [
            Stage("init", run_init, description="Initial setup and validation"),
            Stage("banner", run_banner, description="Set system banner and MOTD"),
            Stage(
                "updates",
                run_updates,
                kind=StageKind.REBOOT,
                completion_fact=UPDATES_DONE,
                description="Install system updates/upgrades",
            ),
            Stage("post-reboot", run_post_reboot, description="Post-reboot validation"),
            Stage("agent-install", run_agent_install, description="Install Zabbix agent"),
            Stage("agent-configure", run_agent_configure, description="Configure Zabbix agent"),
            Stage("tunnel-setup", run_tunnel_setup, description="Setup SSH tunnel"),
            Stage("complete", run_complete, kind=StageKind.TERMINAL, description="Finalize setup"),
        ]
    )
