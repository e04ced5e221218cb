# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/collaborators/banner.py
from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from bootstage.utils.runner import CommandRunner
from bootstage.utils.templates import TemplateRenderer

log = logging.getLogger("bootstage")

_BANNER_RE = re.compile(r"^\s*#?\s*Banner\b.*$", re.MULTILINE)


class MotdBannerWriter:
    """Login banners shown to anyone who logs in while provisioning runs."""

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        renderer: Optional[TemplateRenderer] = None,
        *,
        motd_path: Path = Path("/etc/motd"),
        issue_path: Path = Path("/etc/issue.net"),
        sshd_config_path: Path = Path("/etc/ssh/sshd_config"),
        hostname: Callable[[], str] = lambda: "",
        now: Callable[[], datetime] = datetime.now,
    ):
        self.runner = runner or CommandRunner(label="banner")
        self.renderer = renderer or TemplateRenderer()
        self.motd_path = Path(motd_path)
        self.issue_path = Path(issue_path)
        self.sshd_config_path = Path(sshd_config_path)
        self.hostname = hostname
        self.now = now

    def write(self, title: str, message: str, status_lines: list[str]) -> None:
        motd = self.renderer.render(
            "motd.j2",
            {
                "title": title,
                "hostname": self.hostname(),
                "date": self.now().strftime("%Y-%m-%d %H:%M:%S"),
                "message": message,
                "status_lines": status_lines,
            },
        )
        self.motd_path.write_text(motd, encoding="utf-8")
        self.issue_path.write_text(self.renderer.render("issue.net.j2", {"title": title}), encoding="utf-8")
        log.info("Banner updated: %s", title)

    def enable_ssh_banner(self) -> bool:
        """Point sshd at the issue file. True when sshd_config changed."""
        if not self.sshd_config_path.exists():
            log.warning("%s not found; SSH banner not enabled", self.sshd_config_path)
            return False

        text = self.sshd_config_path.read_text(encoding="utf-8")
        wanted = f"Banner {self.issue_path}"
        if re.search(rf"^\s*{re.escape(wanted)}\s*$", text, re.MULTILINE):
            return False

        if _BANNER_RE.search(text):
            updated = _BANNER_RE.sub(wanted, text, count=1)
        else:
            updated = text.rstrip("\n") + f"\n{wanted}\n"
        self.sshd_config_path.write_text(updated, encoding="utf-8")

        # the unit is "ssh" on debian and "sshd" on rhel
        for unit in ("sshd", "ssh"):
            r = self.runner.run(["systemctl", "restart", unit], check=False, timeout=60)
            if r.returncode == 0:
                break
        else:
            log.warning("Could not restart sshd; banner applies after the next restart")
        return True
