# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/collaborators/agent.py
from __future__ import annotations

import logging
import re
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, Optional

import requests

from bootstage.errors import CommandError, PermanentExternalFailure, TransientExternalFailure
from bootstage.utils.runner import CommandRunner
from .interface import OsInfo, PackageInstaller

log = logging.getLogger("bootstage")


def release_package_url(base_url: str, os_info: OsInfo, version: str) -> str:
    base = base_url.rstrip("/")
    if os_info.family == "debian":
        return (
            f"{base}/{version}/{os_info.id}/pool/main/z/zabbix-release/"
            f"zabbix-release_{version}-1+{os_info.id}{os_info.version}_all.deb"
        )
    major = os_info.version.split(".")[0]
    return f"{base}/{version}/rhel/{major}/x86_64/zabbix-release-{version}-1.el{major}.noarch.rpm"


def apply_agent_settings(text: str, settings: Dict[str, str]) -> str:
    """
    Set ``Key=value`` lines in an agent config. An active line is replaced,
    else a commented ``# Key=`` line is uncommented, else the key is
    appended. Other lines are left untouched.
    """
    lines = text.splitlines()
    for key, value in settings.items():
        wanted = f"{key}={value}"
        active = re.compile(rf"^{re.escape(key)}=")
        commented = re.compile(rf"^#\s*{re.escape(key)}=")
        idx = next((i for i, l in enumerate(lines) if active.match(l)), None)
        if idx is None:
            idx = next((i for i, l in enumerate(lines) if commented.match(l)), None)
        if idx is None:
            lines.append(wanted)
        else:
            lines[idx] = wanted
    return "\n".join(lines) + "\n"


class ZabbixAgentInstaller:
    """Monitoring agent: vendor repository, package, config file, service."""

    def __init__(
        self,
        packages: PackageInstaller,
        runner: Optional[CommandRunner] = None,
        *,
        config_path: Path = Path("/etc/zabbix/zabbix_agentd.conf"),
        package: str = "zabbix-agent",
        service_name: str = "zabbix-agent",
        repo_base_url: str = "https://repo.zabbix.com/zabbix",
        http: Optional[requests.Session] = None,
        download_timeout: int = 60,
    ):
        self.packages = packages
        self.runner = runner or CommandRunner(label="agent")
        self.config_path = config_path
        self.package = package
        self.service_name = service_name
        self.repo_base_url = repo_base_url
        self.http = http or requests.Session()
        self.download_timeout = download_timeout

    def _download(self, url: str, dest: Path) -> None:
        log.info("Downloading %s", url)
        resp = self.http.get(url, timeout=self.download_timeout)
        if resp.status_code >= 500:
            raise TransientExternalFailure(f"GET {url}: HTTP {resp.status_code}")
        if resp.status_code != 200:
            raise PermanentExternalFailure(f"GET {url}: HTTP {resp.status_code}")
        dest.write_bytes(resp.content)

    def add_repository(self, os_info: OsInfo, version: str) -> None:
        url = release_package_url(self.repo_base_url, os_info, version)
        suffix = ".deb" if os_info.family == "debian" else ".rpm"
        with tempfile.TemporaryDirectory(prefix="bootstage-") as tmp:
            dest = Path(tmp) / f"zabbix-release{suffix}"
            self._download(url, dest)
            self.packages.install_file(dest)
        if os_info.family == "debian":
            self.packages.refresh()
        log.info("Zabbix %s repository added", version)

    def _systemctl(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        try:
            return self.runner.run(["systemctl", *args], check=check, timeout=120)
        except CommandError as exc:
            raise PermanentExternalFailure(str(exc)) from exc

    def install(self) -> None:
        self.packages.install(self.package)
        self._systemctl("enable", "--now", self.service_name)

    def configure(self, server: str, hostname: str, debug_level: int) -> bool:
        """Point the agent at the tunnel endpoint. Returns True when the file changed."""
        try:
            current = self.config_path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise PermanentExternalFailure(f"{self.config_path} missing; is the agent installed?") from exc

        updated = apply_agent_settings(
            current,
            {
                "Server": server,
                "ServerActive": server,
                "Hostname": hostname,
                "DebugLevel": str(debug_level),
            },
        )
        if updated == current:
            return False
        self.config_path.write_text(updated, encoding="utf-8")
        log.info("Updated %s", self.config_path)
        return True

    def restart(self) -> None:
        self._systemctl("restart", self.service_name)

    def is_running(self) -> bool:
        r = self.runner.run(["systemctl", "is-active", "--quiet", self.service_name], check=False, mutating=False)
        return r.returncode == 0
