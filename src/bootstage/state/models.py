# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/state/models.py

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field, StrictBool, StrictStr

FactValue = Union[StrictBool, StrictStr]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Status(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_REBOOT = "awaiting-reboot"
    FAILED = "failed"
    COMPLETE = "complete"


class StageRecord(BaseModel):
    """One audit entry: what happened to a stage and when."""

    stage: str
    outcome: str
    at: datetime = Field(default_factory=utcnow)
    detail: Optional[str] = None

    model_config = {"extra": "forbid"}


class ExecutionState(BaseModel):
    """
    The persisted record. Mutated only by the scheduler; never deleted
    automatically so it doubles as the post-mortem trail.
    """

    current_stage: str
    status: Status = Status.PENDING
    attempts: Dict[str, int] = Field(default_factory=dict)
    last_error: Optional[str] = None
    facts: Dict[str, FactValue] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=utcnow)
    hostname: str = ""
    run_id: Optional[str] = None
    history: List[StageRecord] = Field(default_factory=list)

    model_config = {"extra": "forbid", "validate_assignment": True}

    def attempt_count(self, stage: Optional[str] = None) -> int:
        return self.attempts.get(stage or self.current_stage, 0)

    def fact(self, key: str, default: Optional[FactValue] = None) -> Optional[FactValue]:
        return self.facts.get(key, default)

    def merge_facts(self, facts: Dict[str, FactValue]) -> None:
        if facts:
            self.facts = {**self.facts, **facts}

    def note(self, stage: str, outcome: str, detail: Optional[str] = None) -> None:
        self.history = [*self.history, StageRecord(stage=stage, outcome=outcome, detail=detail)]
