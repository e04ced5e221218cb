# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/utils/runner.py
from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

from bootstage.errors import CommandError

log = logging.getLogger("bootstage")


@dataclass(frozen=True)
class ExecutionContext:
    """
    How host-mutating commands are executed. ``--test`` runs with
    dry_run=True: read-only probes still run, changes are only logged.
    """

    dry_run: bool = False
    # per-command ceiling when the caller gives none
    default_timeout: int = 900


@dataclass
class CommandRunner:
    ctx: ExecutionContext = field(default_factory=ExecutionContext)
    label: Optional[str] = None

    def run(
        self,
        cmd: Sequence[str],
        *,
        check: bool = True,
        timeout: Optional[int] = None,
        env: dict[str, str] | None = None,
        mutating: bool = True,
    ) -> subprocess.CompletedProcess:
        """
        Run a local command with its output captured into the run log.

        - check=True raises CommandError on non-zero exit
        - subprocess.TimeoutExpired propagates (transient for RetryExecutor)
        - dry-run skips commands that change the host (mutating=True)
        """
        label = self.label or "cmd"
        cmd_str = " ".join(map(str, cmd))
        log.debug(f"[{label}] $ {cmd_str}")

        if self.ctx.dry_run and mutating:
            log.info(f"[{label}] dry-run: skipped {cmd_str}")
            return subprocess.CompletedProcess(args=list(cmd), returncode=0, stdout="", stderr="")

        start = time.time()
        result = subprocess.run(
            list(map(str, cmd)),
            capture_output=True,
            text=True,
            env=env,
            timeout=timeout or self.ctx.default_timeout,
        )
        duration = time.time() - start

        if result.stdout:
            log.debug(f"[{label}][stdout]\n{result.stdout.rstrip()}")
        if result.stderr:
            log.debug(f"[{label}][stderr]\n{result.stderr.rstrip()}")
        log.debug(f"[{label}][exit {result.returncode}] ({duration:.2f}s)")

        if check and result.returncode != 0:
            raise CommandError(list(cmd), result.returncode, result.stdout or "", result.stderr or "")
        return result
