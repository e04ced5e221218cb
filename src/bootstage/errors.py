# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/errors.py
from __future__ import annotations

from typing import Optional, Sequence


class BootstageError(RuntimeError):
    """Base class for orchestrator failures."""


class TransientExternalFailure(BootstageError):
    """Network/timeout class failure. Retried within the attempt ceiling."""


class PermanentExternalFailure(BootstageError):
    """Bad credentials, unsupported OS, missing package. Never retried."""


class ExhaustedFailure(BootstageError):
    """Raised when a transient failure outlives its retry policy."""

    def __init__(self, description: str, attempts: int, last_error: Optional[BaseException] = None):
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"{description} failed after {attempts} attempts{detail}")


class TrustedKeyMissing(PermanentExternalFailure):
    """A key the remote side already trusts is gone; a new one would not be accepted."""


class StateCorrupt(BootstageError):
    """Persisted state is unreadable or references an unknown stage."""


class StateWriteError(BootstageError):
    """Persisting state failed; the previous record is still intact."""


class AlreadyLocked(BootstageError):
    """Another live orchestrator instance holds the host lock."""

    def __init__(self, message: str, holder: Optional[dict] = None):
        super().__init__(message)
        self.holder = holder or {}


class RebootHookFailure(BootstageError):
    """The init-system continuation could not be registered."""


class UnknownStageError(BootstageError, KeyError):
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown stage"


class ConfigError(BootstageError):
    """Configuration could not be resolved or validated."""


class CommandError(BootstageError):
    """A local command exited non-zero."""

    def __init__(self, cmd: Sequence[str], returncode: int, stdout: str = "", stderr: str = ""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        tail = (stderr or stdout).strip().splitlines()[-1:] or [""]
        super().__init__(f"{' '.join(self.cmd)} exited {returncode}: {tail[0]}")
