# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/collaborators/system.py
from __future__ import annotations

import logging
import os
import socket
import subprocess
import time
from pathlib import Path
from typing import Callable, Dict

from bootstage.errors import PermanentExternalFailure, TransientExternalFailure
from bootstage.utils.runner import CommandRunner
from .interface import OsInfo

log = logging.getLogger("bootstage")

DEBIAN_IDS = {"ubuntu", "debian"}
RHEL_IDS = {"rhel", "centos", "almalinux", "rocky"}


def parse_os_release(text: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        out[key.strip()] = value.strip().strip('"').strip("'")
    return out


class LocalHost:
    """The machine being provisioned."""

    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        os_release: Path = Path("/etc/os-release"),
        boot_id_path: Path = Path("/proc/sys/kernel/random/boot_id"),
        probe_host: str = "8.8.8.8",
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runner = runner or CommandRunner(label="host")
        self.os_release = os_release
        self.boot_id_path = boot_id_path
        self.probe_host = probe_host
        self.sleep = sleep

    def is_root(self) -> bool:
        return os.geteuid() == 0

    def hostname(self) -> str:
        return socket.gethostname()

    def boot_id(self) -> str:
        try:
            return self.boot_id_path.read_text(encoding="utf-8").strip()
        except OSError:
            log.warning("boot id unavailable at %s", self.boot_id_path)
            return ""

    def detect_os(self) -> OsInfo:
        if not self.os_release.exists():
            raise PermanentExternalFailure(f"{self.os_release} not found - unsupported OS")

        info = parse_os_release(self.os_release.read_text(encoding="utf-8"))
        os_id = info.get("ID", "").lower()
        version = info.get("VERSION_ID", "")

        if os_id in DEBIAN_IDS:
            detected = OsInfo(family="debian", id=os_id, version=version)
        elif os_id in RHEL_IDS:
            detected = OsInfo(family="rhel", id=os_id, version=version.split(".")[0])
        else:
            raise PermanentExternalFailure(f"Unsupported OS: {os_id or 'unknown'}")

        log.info("Detected OS: %s %s (family: %s)", detected.id, detected.version, detected.family)
        return detected

    def _ping(self) -> bool:
        try:
            r = self.runner.run(
                ["ping", "-c", "1", "-W", "2", self.probe_host],
                check=False, timeout=10, mutating=False,
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return r.returncode == 0

    def wait_for_network(self, timeout: int) -> None:
        log.info("Waiting for network connectivity")
        waited = 0
        while True:
            if self._ping():
                log.info("Network connectivity confirmed")
                return
            if waited >= timeout:
                break
            self.sleep(5)
            waited += 5
            if waited % 30 == 0:
                log.info("Still waiting for network... (%ss elapsed)", waited)
        raise TransientExternalFailure(f"no network connectivity to {self.probe_host} after {timeout}s")

    def reboot(self, delay: int) -> None:
        """Detached 'sleep; reboot' so this process can persist state and exit first."""
        if self.runner.ctx.dry_run:
            log.info("dry-run: reboot in %ss skipped", delay)
            return
        subprocess.Popen(
            ["/bin/sh", "-c", f"sleep {int(delay)}; /sbin/reboot"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        log.info("Initiating scheduled reboot in %ss", delay)
