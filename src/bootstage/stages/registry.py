# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/stages/registry.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Sequence, Tuple, Union

from bootstage.errors import UnknownStageError

log = logging.getLogger("bootstage")

FactValue = Union[bool, str]

# boot id current when a reboot was requested
REBOOT_BOOT_FACT = "reboot.boot_id"


class StageKind(str, Enum):
    NORMAL = "normal"
    REBOOT = "reboot-inducing"
    TERMINAL = "terminal"


# ------------------ outcomes ------------------

@dataclass(frozen=True)
class Success:
    facts: Dict[str, FactValue] = field(default_factory=dict)


@dataclass(frozen=True)
class RequiresReboot:
    """The stage's work is done; the host must reboot before the next stage."""
    facts: Dict[str, FactValue] = field(default_factory=dict)


@dataclass(frozen=True)
class RetryableFailure:
    reason: str


@dataclass(frozen=True)
class FatalFailure:
    reason: str


StageOutcome = Union[Success, RequiresReboot, RetryableFailure, FatalFailure]


# ------------------ context handed to run functions ------------------

class StageContext:
    """
    What a run function may touch: config, the recorded facts, the
    collaborators, and a retry executor.

    ``record_fact`` persists immediately so a side effect is remembered
    even if the process dies before the stage returns.
    """

    def __init__(
        self,
        stage: "Stage",
        *,
        config: Any,
        facts: Mapping[str, FactValue],
        record_fact: Callable[[str, FactValue], None],
        record: Callable[[str, str, str], None],
        services: Any,
        executor: Any,
    ):
        self.stage = stage
        self.config = config
        self._facts = facts
        self._record_fact = record_fact
        self._record = record
        self.services = services
        self.executor = executor

    @property
    def facts(self) -> Mapping[str, FactValue]:
        return MappingProxyType(dict(self._facts))

    def fact(self, key: str, default: Optional[FactValue] = None) -> Optional[FactValue]:
        return self._facts.get(key, default)

    def done(self, key: str) -> bool:
        return self._facts.get(key) is True

    def record_fact(self, key: str, value: FactValue = True) -> None:
        self._record_fact(key, value)

    def record(self, level: str, message: str) -> None:
        """Logger.record(level, stage, message): fire-and-forget."""
        try:
            self._record(level, self.stage.name, message)
        except Exception as exc:
            log.debug("record dropped for stage %s: %s", self.stage.name, exc)

    def info(self, message: str) -> None:
        self.record("info", message)

    def warn(self, message: str) -> None:
        self.record("warning", message)


# ------------------ stage & registry ------------------

RunFn = Callable[[StageContext], StageOutcome]


@dataclass(frozen=True)
class Stage:
    name: str
    run: RunFn = field(compare=False)
    kind: StageKind = StageKind.NORMAL
    # fact a reboot stage records before asking for the reboot
    completion_fact: Optional[str] = None
    description: str = ""


class StageRegistry:
    """
    Fixed, ordered list of stages. Validated once at construction; stage
    objects are never mutated afterwards.
    """

    def __init__(self, stages: Sequence[Stage]):
        self._stages: Tuple[Stage, ...] = tuple(stages)
        self._index: Dict[str, int] = {}
        self._validate()

    def _validate(self) -> None:
        if not self._stages:
            raise ValueError("registry needs at least one stage")
        for i, s in enumerate(self._stages):
            if s.name in self._index:
                raise ValueError(f"duplicate stage name '{s.name}'")
            self._index[s.name] = i
            if s.kind == StageKind.REBOOT and not s.completion_fact:
                raise ValueError(f"reboot stage '{s.name}' must declare a completion_fact")
        terminals = [s for s in self._stages if s.kind == StageKind.TERMINAL]
        if len(terminals) != 1 or self._stages[-1].kind != StageKind.TERMINAL:
            raise ValueError("registry needs exactly one terminal stage, in last position")

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages)

    def __len__(self) -> int:
        return len(self._stages)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    @property
    def first(self) -> Stage:
        return self._stages[0]

    @property
    def terminal(self) -> Stage:
        return self._stages[-1]

    def names(self) -> list[str]:
        return [s.name for s in self._stages]

    def get(self, name: str) -> Stage:
        try:
            return self._stages[self._index[name]]
        except KeyError:
            raise UnknownStageError(
                f"unknown stage '{name}' (known: {', '.join(self.names())})"
            ) from None

    def ordinal(self, name: str) -> int:
        self.get(name)
        return self._index[name]

    def next_after(self, name: str) -> Optional[Stage]:
        i = self.ordinal(name) + 1
        return self._stages[i] if i < len(self._stages) else None
