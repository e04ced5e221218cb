# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/collaborators/packages.py
from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Callable, List, Optional, Union

from bootstage.errors import (
    BootstageError,
    CommandError,
    PermanentExternalFailure,
    TransientExternalFailure,
)
from bootstage.utils.runner import CommandRunner
from .interface import OsInfo

log = logging.getLogger("bootstage")

# output fragments that mean "try again later", apt and dnf/yum alike
TRANSIENT_MARKERS = (
    "temporary failure resolving",
    "could not resolve",
    "failed to fetch",
    "connection timed out",
    "connection refused",
    "network is unreachable",
    "could not get lock",
    "unable to acquire the dpkg frontend lock",
    "cannot download",
    "curl error",
    "failed to download metadata",
    "errors during downloading metadata",
    "cannot find a valid baseurl",
    "503 service unavailable",
    "timed out",
)


def classify_command_failure(returncode: int, output: str) -> BootstageError:
    """Map a failed package-manager command to the transient/permanent taxonomy."""
    text = (output or "").lower()
    tail = (output or "").strip().splitlines()[-1:] or [""]
    if any(m in text for m in TRANSIENT_MARKERS):
        return TransientExternalFailure(f"exit {returncode}: {tail[0]}")
    return PermanentExternalFailure(f"exit {returncode}: {tail[0]}")


class SystemPackageInstaller:
    """apt-get on the debian family, dnf (or yum) on the rhel family."""

    def __init__(
        self,
        os_info: Union[OsInfo, Callable[[], OsInfo]],
        runner: Optional[CommandRunner] = None,
        *,
        timeout: int = 1800,
    ):
        # a callable defers OS detection until the first package operation
        self._os_info = os_info
        self.runner = runner or CommandRunner(label="pkg")
        self.timeout = timeout
        self._rhel_pm: Optional[str] = None

    # ------------------ utils ------------------

    @property
    def os_info(self) -> OsInfo:
        if callable(self._os_info):
            self._os_info = self._os_info()
        return self._os_info

    @property
    def debian(self) -> bool:
        return self.os_info.family == "debian"

    def _pm(self) -> str:
        if self._rhel_pm is None:
            for candidate in ("dnf", "yum"):
                if shutil.which(candidate):
                    self._rhel_pm = candidate
                    break
            else:
                raise PermanentExternalFailure("No package manager found (dnf/yum)")
        return self._rhel_pm

    def _run(self, cmd: List[str], *, mutating: bool = True, ok_codes: tuple[int, ...] = (0,)) -> subprocess.CompletedProcess:
        env = None
        if self.debian:
            env = {**os.environ, "DEBIAN_FRONTEND": "noninteractive"}
        try:
            result = self.runner.run(cmd, check=False, timeout=self.timeout, env=env, mutating=mutating)
        except subprocess.TimeoutExpired as exc:
            raise TransientExternalFailure(f"{' '.join(cmd)} timed out after {self.timeout}s") from exc
        if result.returncode not in ok_codes:
            err = CommandError(cmd, result.returncode, result.stdout or "", result.stderr or "")
            raise classify_command_failure(result.returncode, f"{result.stdout}\n{result.stderr}") from err
        return result

    # ------------------ operations ------------------

    def refresh(self) -> None:
        if self.debian:
            self._run(["apt-get", "update", "-qq"])
        else:
            self._run([self._pm(), "makecache", "-q"])

    def upgrade_all(self) -> bool:
        if self.debian:
            self.refresh()
            listing = self._run(["apt", "list", "--upgradable"], mutating=False)
            upgrades = sum(1 for line in listing.stdout.splitlines() if "upgradable" in line)
            if not upgrades:
                log.info("No packages to upgrade")
                return False
            log.info("Found %d packages to upgrade", upgrades)
            self._run(["apt-get", "upgrade", "-y"])
            try:
                self._run(["apt-get", "dist-upgrade", "-y"])
            except BootstageError as exc:
                log.warning("dist-upgrade failed, continuing: %s", exc)
            return True

        pm = self._pm()
        # check-update exits 100 when updates are available
        check = self._run([pm, "check-update", "-q"], mutating=False, ok_codes=(0, 100))
        if check.returncode != 100:
            log.info("No packages to upgrade")
            return False
        log.info("Found updates available")
        self._run([pm, "update", "-y", "-q"])
        return True

    def install(self, name: str, version: Optional[str] = None) -> None:
        if self.debian:
            spec = f"{name}={version}" if version else name
            self._run(["apt-get", "install", "-y", spec])
        else:
            spec = f"{name}-{version}" if version else name
            self._run([self._pm(), "install", "-y", "-q", spec])
        log.info("Installed %s", spec)

    def install_file(self, path: Path) -> None:
        if self.debian:
            self._run(["dpkg", "-i", str(path)])
        else:
            self._run(["rpm", "-Uvh", "--quiet", "--replacepkgs", str(path)])
