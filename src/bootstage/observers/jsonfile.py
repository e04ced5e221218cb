# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/observers/jsonfile.py
from __future__ import annotations

import json
import os
from pathlib import Path

from .events import BaseEvent, RebootRequested, RunSummary


class JsonFileObserver:
    """
    Appends one JSON object per event to a log that survives reboots,
    so a provisioning run spanning several boots reads as one timeline.
    """

    # the process may be gone (reboot, exit) right after these
    _SYNC_ON = (RebootRequested, RunSummary)

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def notify(self, event: BaseEvent) -> None:
        line = json.dumps({"type": type(event).__name__, **event.dict()}, default=str)
        fd = os.open(str(self.path), os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
        with os.fdopen(fd, "a", encoding="utf-8") as f:
            f.write(line + "\n")
            if isinstance(event, self._SYNC_ON):
                f.flush()
                os.fsync(f.fileno())
