# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

#src/bootstage/logging/log.py

from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path

LOGGER_NAME = "bootstage"
FORMAT = "%(asctime)s | %(levelname)-7s | %(message)s"
DATEFMT = "%Y-%m-%d %H:%M:%S"


def prune_run_logs(base_dir: Path, name: str = LOGGER_NAME, keep: int = 20) -> list[Path]:
    """Delete all but the newest *keep* per-invocation log files."""
    logs = sorted(base_dir.glob(f"{name}-*.log"), key=lambda p: p.stat().st_mtime, reverse=True)
    removed = []
    for old in logs[keep:]:
        try:
            old.unlink()
            removed.append(old)
        except OSError as exc:
            logging.getLogger(name).warning("could not remove old log %s: %s", old, exc)
    return removed


def init_logging(
    *,
    base_dir: Path | None = None,
    name: str = LOGGER_NAME,
    verbose: bool = False,
    keep: int = 20,
) -> tuple[logging.Logger, str, Path]:
    """
    Initializes:
      - full DEBUG trace in a per-invocation log file (0600, may echo config)
      - console output (INFO, DEBUG with --verbose); under the continuation
        unit this lands in the journal
      - returns run_id so observers and the lock record can reuse it

    One provisioning run spans several invocations (one per boot), so the
    log directory holds their files side by side; older ones beyond *keep*
    are pruned.
    """
    run_id = str(uuid.uuid4())

    if base_dir is None:
        base_dir = Path("/var/log") / name
    base_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    log_path = base_dir / f"{name}-{ts}-{run_id}.log"
    os.close(os.open(str(log_path), os.O_WRONLY | os.O_CREAT, 0o600))

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()
    logger.propagate = False

    formatter = logging.Formatter(FORMAT, datefmt=DATEFMT)

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(formatter)

    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(formatter)

    logger.addHandler(fh)
    logger.addHandler(ch)

    for old in prune_run_logs(base_dir, name, keep):
        logger.debug("pruned old log %s", old.name)

    logger.info("=== bootstage invocation started ===")
    logger.info("run_id=%s pid=%s", run_id, os.getpid())
    logger.info("log_file=%s", log_path)

    return logger, run_id, log_path
