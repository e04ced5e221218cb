# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/collaborators/interface.py

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol


@dataclass(frozen=True)
class OsInfo:
    family: str     # "debian" | "rhel"
    id: str         # ubuntu, debian, almalinux, ...
    version: str    # VERSION_ID; major only on rhel


@dataclass(frozen=True)
class TunnelParams:
    host: str
    ssh_port: int
    user: str
    key_path: Path
    key_bits: int
    remote_port: int
    local_port: int
    service_name: str
    key_comment: str


@dataclass(frozen=True)
class TunnelResult:
    key_generated: bool
    service_changed: bool
    public_key: str


class HostSystem(Protocol):
    def is_root(self) -> bool: ...

    def hostname(self) -> str: ...

    def boot_id(self) -> str: ...

    def detect_os(self) -> OsInfo:
        """Raises PermanentExternalFailure for unsupported systems."""
        ...

    def wait_for_network(self, timeout: int) -> None:
        """Raises TransientExternalFailure when the probe host stays unreachable."""
        ...

    def reboot(self, delay: int) -> None: ...


class PackageInstaller(Protocol):
    """
    Contract for the OS package manager. Failures raise
    TransientExternalFailure (mirror/network) or PermanentExternalFailure.
    """

    def refresh(self) -> None: ...

    def upgrade_all(self) -> bool:
        """Upgrade everything; True when any package changed."""
        ...

    def install(self, name: str, version: Optional[str] = None) -> None: ...

    def install_file(self, path: Path) -> None: ...


class AgentInstaller(Protocol):
    def add_repository(self, os_info: OsInfo, version: str) -> None: ...

    def install(self) -> None: ...

    def configure(self, server: str, hostname: str, debug_level: int) -> bool: ...

    def restart(self) -> None: ...

    def is_running(self) -> bool: ...


class TunnelProvisioner(Protocol):
    def ensure_key_and_service(
        self,
        params: TunnelParams,
        *,
        key_expected: bool = False,
        service_installed: bool = False,
    ) -> TunnelResult:
        """
        Must be idempotent: an existing key is reused, never regenerated,
        since the remote side already trusts it.

        key_expected: a key was made earlier; raise TrustedKeyMissing
        instead of generating a replacement when it is gone.
        service_installed: the unit is already in place; leave it alone.
        """
        ...

    def is_active(self, service_name: str) -> bool: ...


class BannerWriter(Protocol):
    def write(self, title: str, message: str, status_lines: list[str]) -> None: ...

    def enable_ssh_banner(self) -> bool: ...


@dataclass
class Services:
    """Collaborators handed to every stage through StageContext.services."""

    host: HostSystem
    packages: PackageInstaller
    agent: AgentInstaller
    tunnel: TunnelProvisioner
    banner: BannerWriter
    hook: object = None
