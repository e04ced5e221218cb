# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/observers/interface.py
from __future__ import annotations

from typing import Protocol

from .events import BaseEvent


class Observer(Protocol):
    """
    Receives every lifecycle event of a run. Called synchronously from the
    scheduler; an exception here is logged by the EventBus and dropped.
    """

    def notify(self, event: BaseEvent) -> None: ...
