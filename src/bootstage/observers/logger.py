# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/observers/logger.py
from __future__ import annotations

import logging

from .events import BaseEvent, StageFailed, StageMessage, StageRetryScheduled

_EVENT_LEVELS = {
    StageFailed: logging.ERROR,
    StageRetryScheduled: logging.WARNING,
}

# correlation fields already carried by the run log itself
_OMIT = ("ts", "run_id", "hostname")


class LoggerObserver:
    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def notify(self, event: BaseEvent) -> None:
        if isinstance(event, StageMessage):
            level = logging.getLevelName(event.level.upper())
            if not isinstance(level, int):
                level = logging.INFO
            self.logger.log(level, "[%s] %s", event.stage, event.message)
            return

        fields = ", ".join(f"{k}={v}" for k, v in event.dict().items() if k not in _OMIT)
        level = _EVENT_LEVELS.get(type(event), logging.INFO)
        self.logger.log(level, "[EVENT] %s: %s", type(event).__name__, fields)
