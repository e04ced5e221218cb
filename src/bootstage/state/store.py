# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/state/store.py
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from pydantic import ValidationError

from bootstage.errors import StateCorrupt, StateWriteError
from .models import ExecutionState, Status, utcnow

if TYPE_CHECKING:
    from bootstage.stages.registry import StageRegistry

log = logging.getLogger("bootstage")


class StateStore:
    """
    One JSON record per host. ``save`` goes through a temporary file in the
    same directory and ``os.replace``, so a reader only ever sees the old
    record or the new one.
    """

    def __init__(self, path: Path, registry: "StageRegistry", hostname: str = ""):
        self.path = Path(path)
        self.registry = registry
        self.hostname = hostname

    def exists(self) -> bool:
        return self.path.exists()

    def default(self) -> ExecutionState:
        return ExecutionState(
            current_stage=self.registry.first.name,
            status=Status.PENDING,
            hostname=self.hostname,
        )

    def load(self) -> ExecutionState:
        if not self.path.exists():
            log.debug("No state at %s, starting fresh", self.path)
            return self.default()

        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StateCorrupt(f"cannot read {self.path}: {exc}") from exc

        try:
            state = ExecutionState.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as exc:
            raise StateCorrupt(f"malformed state record {self.path}: {exc}") from exc

        if state.current_stage not in self.registry:
            raise StateCorrupt(
                f"state record {self.path} references unknown stage '{state.current_stage}'"
            )
        if state.status == Status.COMPLETE and state.current_stage != self.registry.terminal.name:
            raise StateCorrupt(
                f"state record {self.path} is complete at non-terminal stage '{state.current_stage}'"
            )
        return state

    def save(self, state: ExecutionState) -> None:
        state.updated_at = utcnow()
        payload = state.model_dump_json(indent=2)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_name: Optional[str] = None
        try:
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
            tmp_name = None
            self._fsync_dir()
        except OSError as exc:
            raise StateWriteError(f"cannot persist state to {self.path}: {exc}") from exc
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except FileNotFoundError:
                    pass

        log.debug("State saved: stage=%s status=%s", state.current_stage, state.status.value)

    def clear(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        self._fsync_dir()
        log.info("State cleared: %s", self.path)
        return True

    def _fsync_dir(self) -> None:
        try:
            dfd = os.open(str(self.path.parent), os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dfd)
        except OSError:
            pass  # not supported on every filesystem
        finally:
            os.close(dfd)
