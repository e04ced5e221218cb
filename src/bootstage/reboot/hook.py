# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/reboot/hook.py
from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional, Protocol

from bootstage.errors import CommandError, RebootHookFailure
from bootstage.utils.runner import CommandRunner
from bootstage.utils.templates import TemplateRenderer

log = logging.getLogger("bootstage")

DESCRIPTION = "bootstage - resume provisioning after reboot"


class ContinuationHook(Protocol):
    """
    One-shot init-system registration that re-invokes the orchestrator on
    the next boot. ``disarm`` must be safe to call when nothing is armed.
    """

    target: str

    def arm(self, command: List[str]) -> None: ...

    def disarm(self) -> bool: ...

    def is_armed(self) -> bool: ...


def systemd_available(probe: Path = Path("/run/systemd/system")) -> bool:
    return probe.is_dir() and shutil.which("systemctl") is not None


class SystemdContinuationHook:
    def __init__(
        self,
        unit_dir: Path,
        unit_name: str,
        runner: Optional[CommandRunner] = None,
        renderer: Optional[TemplateRenderer] = None,
        *,
        probe: Path = Path("/run/systemd/system"),
        timeout: int = 1800,
    ):
        self.unit_dir = Path(unit_dir)
        self.unit_name = unit_name
        self.runner = runner or CommandRunner(label="systemd")
        self.renderer = renderer or TemplateRenderer()
        self.probe = probe
        self.timeout = timeout

    @property
    def unit_path(self) -> Path:
        return self.unit_dir / self.unit_name

    @property
    def target(self) -> str:
        return str(self.unit_path)

    def render(self, command: List[str]) -> str:
        return self.renderer.render(
            "resume.service.j2",
            {
                "description": DESCRIPTION,
                "exec_start": shlex.join(command),
                "timeout": self.timeout,
            },
        )

    def arm(self, command: List[str]) -> None:
        if not command:
            raise RebootHookFailure("no resume command to register")
        if not systemd_available(self.probe):
            raise RebootHookFailure("systemd is not running on this host")

        try:
            self.unit_dir.mkdir(parents=True, exist_ok=True)
            self.unit_path.write_text(self.render(command), encoding="utf-8")
            self.unit_path.chmod(0o644)
            self.runner.run(["systemctl", "daemon-reload"])
            self.runner.run(["systemctl", "enable", self.unit_name])
        except (OSError, CommandError, subprocess.TimeoutExpired) as exc:
            raise RebootHookFailure(f"cannot register {self.unit_name}: {exc}") from exc
        log.info("Continuation unit %s enabled", self.unit_name)

    def is_armed(self) -> bool:
        return self.unit_path.exists()

    def disarm(self) -> bool:
        if not self.is_armed():
            return False
        self.runner.run(["systemctl", "disable", self.unit_name], check=False)
        self.unit_path.unlink(missing_ok=True)
        self.runner.run(["systemctl", "daemon-reload"], check=False)
        log.info("Continuation unit %s removed", self.unit_name)
        return True


class CronContinuationHook:
    """``@reboot`` entry in /etc/cron.d for hosts without systemd."""

    def __init__(self, cron_dir: Path, name: str = "bootstage-resume", renderer: Optional[TemplateRenderer] = None):
        self.cron_dir = Path(cron_dir)
        # cron.d ignores file names containing dots
        self.name = name.replace(".", "-")
        self.renderer = renderer or TemplateRenderer()

    @property
    def entry_path(self) -> Path:
        return self.cron_dir / self.name

    @property
    def target(self) -> str:
        return str(self.entry_path)

    def arm(self, command: List[str]) -> None:
        if not command:
            raise RebootHookFailure("no resume command to register")
        if not self.cron_dir.is_dir():
            raise RebootHookFailure(f"{self.cron_dir} does not exist; is cron installed?")
        content = self.renderer.render(
            "resume.cron.j2", {"description": DESCRIPTION, "command": shlex.join(command)}
        )
        try:
            self.entry_path.write_text(content, encoding="utf-8")
            self.entry_path.chmod(0o644)
        except OSError as exc:
            raise RebootHookFailure(f"cannot write {self.entry_path}: {exc}") from exc
        log.info("Continuation cron entry %s written", self.entry_path)

    def is_armed(self) -> bool:
        return self.entry_path.exists()

    def disarm(self) -> bool:
        if not self.is_armed():
            return False
        self.entry_path.unlink(missing_ok=True)
        log.info("Continuation cron entry %s removed", self.entry_path)
        return True


def build_hook(config, runner: Optional[CommandRunner] = None, renderer: Optional[TemplateRenderer] = None) -> ContinuationHook:
    backend = config.hook_backend
    if backend == "auto":
        backend = "systemd" if systemd_available() else "cron"
    if backend == "cron":
        return CronContinuationHook(config.paths.cron_dir, config.hook_unit_name.rsplit(".", 1)[0], renderer)
    return SystemdContinuationHook(
        config.paths.unit_dir,
        config.hook_unit_name,
        runner,
        renderer,
        timeout=config.update_timeout,
    )
