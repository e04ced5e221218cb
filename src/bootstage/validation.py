# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/validation.py
from __future__ import annotations

import logging
import re
import stat
from dataclasses import dataclass, field
from typing import List, Optional

from bootstage.config.models import Config
from bootstage.state.models import ExecutionState, Status

log = logging.getLogger("bootstage")


@dataclass
class Check:
    name: str
    ok: bool
    detail: str = ""
    # optional checks are reported but do not make the host unhealthy
    required: bool = True


@dataclass
class HealthReport:
    checks: List[Check] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return all(c.ok for c in self.checks if c.required)

    def add(self, name: str, ok: bool, detail: str = "", *, required: bool = True) -> None:
        self.checks.append(Check(name, ok, detail, required))
        level = logging.INFO if ok else (logging.ERROR if required else logging.WARNING)
        log.log(level, "%s %s: %s", "OK  " if ok else "FAIL", name, detail)


def _config_value(text: str, key: str) -> Optional[str]:
    m = re.search(rf"^{re.escape(key)}=(.*)$", text, re.MULTILINE)
    return m.group(1).strip() if m else None


def run_health_checks(config: Config, services, state: Optional[ExecutionState] = None) -> HealthReport:
    """
    Post-provisioning checks: provisioning record, agent service and
    config, tunnel service and key permissions.
    """
    report = HealthReport()

    if state is not None:
        report.add(
            "provisioning",
            state.status == Status.COMPLETE,
            f"{state.current_stage} ({state.status.value})",
        )

    report.add("zabbix agent", services.agent.is_running(), config.agent.service_name)

    try:
        text = config.agent.config_path.read_text(encoding="utf-8")
    except OSError as exc:
        report.add("agent config", False, str(exc))
    else:
        server = _config_value(text, "Server")
        report.add(
            "agent config",
            server == config.agent.server,
            f"Server={server} (expected {config.agent.server})",
        )

    tunnel_required = config.tunnel.required
    report.add(
        "ssh tunnel",
        services.tunnel.is_active(config.tunnel.service_name),
        config.tunnel.service_name,
        required=tunnel_required,
    )

    key_path = config.tunnel.key_path
    try:
        mode = stat.S_IMODE(key_path.stat().st_mode)
    except OSError:
        report.add("tunnel key", False, f"{key_path} missing", required=tunnel_required)
    else:
        report.add("tunnel key", mode == 0o600, f"{key_path} mode {mode:o}", required=tunnel_required)

    return report
