# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/config/models.py

from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for one category of external operation."""

    attempts: int = Field(5, ge=1)
    base_delay: float = Field(5.0, ge=0)
    multiplier: float = Field(2.0, ge=1)
    max_delay: float = Field(120.0, ge=0)
    jitter: bool = True

    model_config = {"extra": "forbid", "frozen": True}


class RetryPolicies(BaseModel):
    network: RetryPolicy = RetryPolicy(attempts=5, base_delay=5.0, max_delay=60.0)
    package: RetryPolicy = RetryPolicy(attempts=5, base_delay=30.0, max_delay=300.0)

    model_config = {"extra": "forbid", "frozen": True}


class TunnelConfig(BaseModel):
    """Reverse SSH tunnel back to the monitoring server."""

    host: str = "monitor.cloudgeeks.in"
    ssh_port: int = Field(20202, ge=1, le=65535)
    user: str = "zabbixssh"
    key_path: Path = Path("/root/.ssh/zabbix_tunnel_key")
    key_bits: int = 4096
    # remote port on the home server forwarded to the local agent
    remote_port: int = Field(10051, ge=1, le=65535)
    local_port: int = Field(10051, ge=1, le=65535)
    service_name: str = "zabbix-tunnel"
    # tunnel failures are recorded but do not block completion unless required
    required: bool = False

    model_config = {"extra": "forbid", "frozen": True}


class AgentConfig(BaseModel):
    version: str = "6.4"
    server: str = "127.0.0.1"
    config_path: Path = Path("/etc/zabbix/zabbix_agentd.conf")
    package: str = "zabbix-agent"
    service_name: str = "zabbix-agent"
    debug_level: int = Field(4, ge=0, le=5)
    repo_base_url: str = "https://repo.zabbix.com/zabbix"

    model_config = {"extra": "forbid", "frozen": True}


class BannerConfig(BaseModel):
    text: str = "Virtualizor Managed Server - Setup in Progress"
    ready_text: str = "VIRTUALIZOR MANAGED SERVER - READY"
    motd_message: str = (
        "WARNING: Authorized Access Only\n"
        "*   This VPS is the property of Everything Cloud Solutions *\n"
        "*   Unauthorized use is strictly prohibited and monitored. *\n"
        "*   For any issue, report it to support@everythingcloud.ca *"
    )
    motd_path: Path = Path("/etc/motd")
    issue_path: Path = Path("/etc/issue.net")
    sshd_config_path: Path = Path("/etc/ssh/sshd_config")

    model_config = {"extra": "forbid", "frozen": True}


class PathsConfig(BaseModel):
    state_file: Path = Path("/var/lib/bootstage/state.json")
    lock_file: Path = Path("/var/lib/bootstage/bootstage.lock")
    log_dir: Path = Path("/var/log/bootstage")
    unit_dir: Path = Path("/etc/systemd/system")
    cron_dir: Path = Path("/etc/cron.d")
    os_release: Path = Path("/etc/os-release")
    boot_id: Path = Path("/proc/sys/kernel/random/boot_id")

    model_config = {"extra": "forbid", "frozen": True}


class Config(BaseModel):
    """
    Immutable configuration, resolved once at startup and passed to every
    component. Nothing downstream reads the environment.
    """

    tunnel: TunnelConfig = TunnelConfig()
    agent: AgentConfig = AgentConfig()
    banner: BannerConfig = BannerConfig()
    retry: RetryPolicies = RetryPolicies()
    paths: PathsConfig = PathsConfig()

    stage_attempts: int = Field(5, ge=1)
    network_probe_host: str = "8.8.8.8"
    network_timeout: int = Field(300, ge=0)
    update_timeout: int = Field(1800, ge=1)
    reboot_delay: int = Field(10, ge=0)
    hook_backend: Literal["auto", "systemd", "cron"] = "auto"
    hook_unit_name: str = "bootstage-resume.service"
    # command re-invoked by the continuation hook; defaults to this interpreter
    resume_command: Optional[list[str]] = None

    model_config = {"extra": "forbid", "frozen": True}
