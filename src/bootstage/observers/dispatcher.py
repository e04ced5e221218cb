# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/observers/dispatcher.py
from __future__ import annotations

import logging
from typing import List, Optional

from .events import BaseEvent
from .interface import Observer

log = logging.getLogger("bootstage")


class EventBus:
    """
    Fan-out of lifecycle events. Delivery is fire-and-forget: an observer
    that raises is skipped, the stage that emitted the event carries on.
    """

    def __init__(self, observers: Optional[List[Observer]] = None):
        self._observers: List[Observer] = list(observers or [])

    def subscribe(self, observer: Observer) -> None:
        self._observers.append(observer)

    def emit(self, event: BaseEvent) -> None:
        for ob in self._observers:
            try:
                ob.notify(event)
            except Exception as exc:  # observers must not break stages
                log.debug("observer %s dropped %s: %s", type(ob).__name__, type(event).__name__, exc)
