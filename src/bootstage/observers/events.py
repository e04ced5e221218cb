# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict, field
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single invocation
    hostname: str

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(run_id: str, hostname: str) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "run_id": run_id,
        "hostname": hostname,
    }


# ---------------------------------------------------------------------
# Invocation lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RunStarted(BaseEvent):
    stage: str
    status: str

@dataclass(frozen=True)
class RunResumed(BaseEvent):
    stage: str
    advanced: bool    # completion fact found, stage skipped

@dataclass(frozen=True)
class RunSummary(BaseEvent):
    stage: str
    status: str
    exit_code: int
    error: Optional[str] = None


# ---------------------------------------------------------------------
# Stage lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class StageStarted(BaseEvent):
    stage: str
    attempt: int

@dataclass(frozen=True)
class StageSucceeded(BaseEvent):
    stage: str
    duration_ms: int
    facts: List[str] = field(default_factory=list)

@dataclass(frozen=True)
class StageRetryScheduled(BaseEvent):
    stage: str
    attempt: int
    error: str

@dataclass(frozen=True)
class StageFailed(BaseEvent):
    stage: str
    attempt: int
    error: str
    exhausted: bool = False

@dataclass(frozen=True)
class StageMessage(BaseEvent):
    stage: str
    level: str
    message: str


# ---------------------------------------------------------------------
# Reboot continuation
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RebootRequested(BaseEvent):
    stage: str
    delay_s: int

@dataclass(frozen=True)
class HookArmed(BaseEvent):
    target: str

@dataclass(frozen=True)
class HookDisarmed(BaseEvent):
    target: str
