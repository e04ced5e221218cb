# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/cli/app.py
from __future__ import annotations

import os
import signal
import sys
from pathlib import Path
from typing import Optional

import typer
import yaml

from bootstage.collaborators.agent import ZabbixAgentInstaller
from bootstage.collaborators.banner import MotdBannerWriter
from bootstage.collaborators.interface import Services
from bootstage.collaborators.packages import SystemPackageInstaller
from bootstage.collaborators.system import LocalHost
from bootstage.collaborators.tunnel import SshTunnelProvisioner
from bootstage.config.loader import resolve
from bootstage.config.models import Config
from bootstage.errors import (
    AlreadyLocked,
    BootstageError,
    ConfigError,
    StateCorrupt,
    UnknownStageError,
)
from bootstage.logging.log import init_logging
from bootstage.observers.dispatcher import EventBus
from bootstage.observers.jsonfile import JsonFileObserver
from bootstage.observers.logger import LoggerObserver
from bootstage.reboot.hook import ContinuationHook, build_hook
from bootstage.scheduler import ExitCode, Scheduler
from bootstage.stages.provisioning import build_registry
from bootstage.state.lock import LockManager
from bootstage.state.store import StateStore
from bootstage.utils.retry import RetryExecutor
from bootstage.utils.runner import CommandRunner, ExecutionContext
from bootstage.utils.templates import TemplateRenderer
from bootstage.validation import run_health_checks


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="bootstage - resumable, reboot-surviving server provisioning")

CONFIG_SNAPSHOT = "config.yaml"


# ------------------------------------------------------------------------------
# Helpers (extracted logic)
# ------------------------------------------------------------------------------

def load_config(config_file: Optional[Path], overrides: Optional[dict] = None, *, expand_env: bool = True) -> Config:
    try:
        return resolve(environ=os.environ, overrides=overrides, config_file=config_file, expand_env=expand_env)
    except ConfigError as exc:
        typer.secho(f"Configuration error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(int(ExitCode.USAGE))


def build_host(config: Config, ctx: ExecutionContext) -> LocalHost:
    return LocalHost(
        CommandRunner(ctx, "host"),
        os_release=config.paths.os_release,
        boot_id_path=config.paths.boot_id,
        probe_host=config.network_probe_host,
    )


def build_services(
    config: Config,
    host: LocalHost,
    ctx: ExecutionContext,
    renderer: TemplateRenderer,
    hook: Optional[ContinuationHook] = None,
) -> Services:
    packages = SystemPackageInstaller(host.detect_os, CommandRunner(ctx, "pkg"), timeout=config.update_timeout)
    return Services(
        host=host,
        packages=packages,
        agent=ZabbixAgentInstaller(
            packages,
            CommandRunner(ctx, "agent"),
            config_path=config.agent.config_path,
            package=config.agent.package,
            service_name=config.agent.service_name,
            repo_base_url=config.agent.repo_base_url,
        ),
        tunnel=SshTunnelProvisioner(CommandRunner(ctx, "tunnel"), renderer, unit_dir=config.paths.unit_dir),
        banner=MotdBannerWriter(
            CommandRunner(ctx, "banner"),
            renderer,
            motd_path=config.banner.motd_path,
            issue_path=config.banner.issue_path,
            sshd_config_path=config.banner.sshd_config_path,
            hostname=host.hostname,
        ),
        hook=hook,
    )


def write_config_snapshot(config: Config) -> Path:
    """
    Flags and the shell environment are gone after a reboot; the
    continuation re-reads the resolved config from next to the state file.
    """
    path = config.paths.state_file.with_name(CONFIG_SNAPSHOT)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        yaml.safe_dump(config.model_dump(mode="json"), f, sort_keys=False)
    return path


def resume_command(config: Config, snapshot: Path) -> list[str]:
    if config.resume_command:
        return list(config.resume_command)
    return [sys.executable, "-m", "bootstage.cli.app", "run", "--resume-after-reboot", "--config-file", str(snapshot)]


def _on_sigterm(signum, frame):
    # unwinds through the lock context manager
    raise SystemExit(128 + signum)


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def run(
    stage: Optional[str] = typer.Option(None, "--stage", help="Start from a specific stage"),
    resume_after_reboot: bool = typer.Option(
        False,
        "--resume-after-reboot",
        help="Set by the continuation hook on boot",
    ),
    test: bool = typer.Option(False, "--test", help="Show what would run, change nothing"),
    config_file: Optional[Path] = typer.Option(None, "--config-file", help="YAML configuration file"),
    ssh_host: Optional[str] = typer.Option(None, "--ssh-host"),
    ssh_port: Optional[int] = typer.Option(None, "--ssh-port"),
    ssh_user: Optional[str] = typer.Option(None, "--ssh-user"),
    ssh_key: Optional[Path] = typer.Option(None, "--ssh-key"),
    agent_version: Optional[str] = typer.Option(None, "--agent-version"),
    agent_server: Optional[str] = typer.Option(None, "--agent-server"),
    banner_text: Optional[str] = typer.Option(None, "--banner-text"),
    state_file: Optional[Path] = typer.Option(None, "--state-file"),
    verbose: bool = typer.Option(False, "--verbose"),
):
    """Run the provisioning workflow from the persisted stage."""
    config = load_config(
        config_file,
        {
            "tunnel.host": ssh_host,
            "tunnel.ssh_port": ssh_port,
            "tunnel.user": ssh_user,
            "tunnel.key_path": ssh_key,
            "agent.version": agent_version,
            "agent.server": agent_server,
            "banner.text": banner_text,
            "paths.state_file": state_file,
        },
        # the snapshot holds resolved values; any $ left in it is literal
        expand_env=not resume_after_reboot,
    )
    registry = build_registry()
    if stage and stage not in registry:
        typer.secho(f"Unknown stage '{stage}'. Valid: {', '.join(registry.names())}", fg=typer.colors.RED, err=True)
        raise typer.Exit(int(ExitCode.USAGE))

    logger, run_id, log_path = init_logging(base_dir=config.paths.log_dir, verbose=verbose)

    typer.echo("")
    typer.secho("bootstage provisioning", bold=True)
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Logs     : {log_path}")
    typer.echo("")

    ctx = ExecutionContext(dry_run=test)
    host = build_host(config, ctx)
    hostname = host.hostname()
    store = StateStore(config.paths.state_file, registry, hostname=hostname)

    if test:
        try:
            state = store.load()
        except StateCorrupt as exc:
            typer.secho(f"State record is corrupt: {exc}", fg=typer.colors.RED, err=True)
            raise typer.Exit(int(ExitCode.STATE_CORRUPT))
        try:
            os_info = host.detect_os()
        except BootstageError as exc:
            typer.secho(str(exc), fg=typer.colors.RED, err=True)
            raise typer.Exit(int(ExitCode.FATAL))
        typer.echo(f"  OS       : {os_info.id} {os_info.version} ({os_info.family})")
        typer.echo(f"  Stage    : {stage or state.current_stage} ({state.status.value})")
        typer.echo(f"  Tunnel   : {config.tunnel.user}@{config.tunnel.host}:{config.tunnel.ssh_port}")
        typer.echo(f"  Agent    : zabbix {config.agent.version} -> {config.agent.server}")
        logger.info("Test mode completed")
        raise typer.Exit(int(ExitCode.OK))

    if resume_after_reboot:
        logger.info("Invoked by the continuation hook")

    renderer = TemplateRenderer()
    hook = build_hook(config, CommandRunner(ctx, "hook"), renderer)
    services = build_services(config, host, ctx, renderer, hook)
    bus = EventBus(
        observers=[
            LoggerObserver(logger),
            JsonFileObserver(config.paths.log_dir / "events.jsonl"),
        ]
    )
    locks = LockManager(config.paths.lock_file, host.boot_id, hostname=hostname)
    signal.signal(signal.SIGTERM, _on_sigterm)

    try:
        with locks.hold(run_id) as lock:
            snapshot = write_config_snapshot(config)
            scheduler = Scheduler(
                registry,
                store,
                hook,
                host,
                config=config,
                services=services,
                executor=RetryExecutor(),
                bus=bus,
                run_id=run_id,
                hostname=hostname,
                resume_command=resume_command(config, snapshot),
            )
            result = scheduler.run(lock, start_stage=stage)
    except AlreadyLocked as exc:
        logger.error("%s", exc)
        typer.secho(f"Locked: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(int(ExitCode.LOCKED))
    except UnknownStageError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(int(ExitCode.USAGE))

    state = result.state
    typer.echo("")
    if state is not None:
        typer.echo(f"  Stage    : {state.current_stage}")
        typer.echo(f"  Status   : {state.status.value}")
        if state.last_error:
            typer.echo(f"  Error    : {state.last_error}")
    typer.echo(f"  Exit     : {result.exit_code.name} ({int(result.exit_code)})")
    raise typer.Exit(int(result.exit_code))


@app.command()
def status(
    config_file: Optional[Path] = typer.Option(None, "--config-file"),
    state_file: Optional[Path] = typer.Option(None, "--state-file"),
):
    """Print the persisted provisioning record. Takes no lock."""
    config = load_config(config_file, {"paths.state_file": state_file})
    store = StateStore(config.paths.state_file, build_registry())

    if not store.exists():
        typer.echo(f"No provisioning record at {config.paths.state_file} (not started)")
        raise typer.Exit(int(ExitCode.OK))
    try:
        state = store.load()
    except StateCorrupt as exc:
        typer.secho(f"State record is corrupt: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(int(ExitCode.STATE_CORRUPT))

    typer.echo(state.model_dump_json(indent=2))

    holder = LockManager(config.paths.lock_file, lambda: "").read()
    if holder:
        pending = " (reboot pending)" if holder.get("reboot_pending") else ""
        typer.echo(f"Lock: pid={holder.get('pid')} run_id={holder.get('run_id')}{pending}")


@app.command()
def stages():
    """List the registered stages in order."""
    for i, s in enumerate(build_registry(), start=1):
        extra = f", completion fact: {s.completion_fact}" if s.completion_fact else ""
        typer.echo(f"{i}. {s.name:<16} [{s.kind.value}{extra}] {s.description}")


@app.command()
def validate(
    config_file: Optional[Path] = typer.Option(None, "--config-file"),
    verbose: bool = typer.Option(False, "--verbose"),
):
    """Check the provisioned host: agent, agent config, tunnel, key permissions."""
    config = load_config(config_file)
    init_logging(base_dir=config.paths.log_dir, verbose=verbose)

    ctx = ExecutionContext()
    host = build_host(config, ctx)
    services = build_services(config, host, ctx, TemplateRenderer())
    store = StateStore(config.paths.state_file, build_registry())
    try:
        state = store.load() if store.exists() else None
    except StateCorrupt as exc:
        typer.secho(f"State record is corrupt: {exc}", fg=typer.colors.RED, err=True)
        state = None

    report = run_health_checks(config, services, state)
    for c in report.checks:
        mark = "OK  " if c.ok else ("FAIL" if c.required else "WARN")
        typer.echo(f"  {mark} {c.name:<14} {c.detail}")
    raise typer.Exit(0 if report.healthy else 1)


@app.command()
def reset(
    config_file: Optional[Path] = typer.Option(None, "--config-file"),
    state_file: Optional[Path] = typer.Option(None, "--state-file"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Disarm the continuation hook and delete the provisioning record."""
    config = load_config(config_file, {"paths.state_file": state_file})
    if not yes:
        typer.confirm(f"Delete {config.paths.state_file} and start over on the next run?", abort=True)

    logger, run_id, _ = init_logging(base_dir=config.paths.log_dir)
    ctx = ExecutionContext()
    host = build_host(config, ctx)
    store = StateStore(config.paths.state_file, build_registry())
    hook = build_hook(config, CommandRunner(ctx, "hook"))
    locks = LockManager(config.paths.lock_file, host.boot_id, hostname=host.hostname())

    try:
        with locks.hold(run_id):
            if hook.disarm():
                typer.echo(f"Removed continuation hook {hook.target}")
            removed = store.clear()
    except AlreadyLocked as exc:
        typer.secho(f"Locked: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(int(ExitCode.LOCKED))

    logger.info("Provisioning record %s", "deleted" if removed else "was already absent")
    typer.echo("State cleared" if removed else "No state to clear")


if __name__ == "__main__":
    app()
