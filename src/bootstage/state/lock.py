# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/state/lock.py
from __future__ import annotations

import fcntl
import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Callable, Dict, Iterator, Optional

from bootstage.errors import AlreadyLocked
from .models import utcnow

log = logging.getLogger("bootstage")


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@dataclass
class Lock:
    path: Path
    record: Dict[str, Any]
    handle: IO[str] = field(repr=False)
    manager: "LockManager" = field(repr=False)

    @property
    def reboot_pending(self) -> bool:
        return bool(self.record.get("reboot_pending"))

    def mark_reboot_pending(self) -> None:
        """
        Keep the lock across the reboot: the record stays on disk after the
        process exits, and the post-reboot invocation claims it as its own
        continuation.
        """
        self.record["reboot_pending"] = True
        self.record["boot_id"] = self.manager.boot_id()
        self.manager._write(self.handle, self.record)
        log.info("Lock marked reboot-pending (boot_id=%s)", self.record["boot_id"])


class LockManager:
    """
    One exclusive lock per host.

    ``flock`` on the lock file gives exclusion between live processes and is
    dropped by the kernel when its holder dies. The JSON record inside
    tells who held it, from which boot, and whether that run is waiting for
    a reboot.
    """

    def __init__(
        self,
        path: Path,
        boot_id: Callable[[], str],
        *,
        hostname: str = "",
        pid: Optional[int] = None,
        pid_alive: Callable[[int], bool] = pid_alive,
    ):
        self.path = Path(path)
        self.boot_id = boot_id
        self.hostname = hostname
        self.pid = pid if pid is not None else os.getpid()
        self.pid_alive = pid_alive

    # ------------------ record io ------------------

    @staticmethod
    def _parse(text: str) -> Optional[Dict[str, Any]]:
        if not text.strip():
            return None
        try:
            data = json.loads(text)
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    @staticmethod
    def _write(handle: IO[str], record: Dict[str, Any]) -> None:
        handle.seek(0)
        handle.truncate()
        handle.write(json.dumps(record, sort_keys=True))
        handle.flush()
        os.fsync(handle.fileno())

    def read(self) -> Optional[Dict[str, Any]]:
        """Current lock record, without taking the lock."""
        try:
            return self._parse(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None

    # ------------------ acquire / release ------------------

    def acquire(self, run_id: str) -> Lock:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o600)
        handle = os.fdopen(fd, "r+", encoding="utf-8")

        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = self._parse(handle.read()) or {}
            handle.close()
            raise AlreadyLocked(
                f"bootstage already running with PID {holder.get('pid', '?')}", holder
            )

        try:
            previous = self._parse(handle.read())
            current_boot = self.boot_id()
            if previous:
                self._check_previous(previous, current_boot)

            record = {
                "pid": self.pid,
                "hostname": self.hostname,
                "run_id": run_id,
                "boot_id": current_boot,
                "acquired_at": utcnow().isoformat(),
                "reboot_pending": False,
            }
            self._write(handle, record)
        except BaseException:
            self._unlock(handle)
            raise

        log.info("Acquired lock %s (pid=%s)", self.path, self.pid)
        return Lock(path=self.path, record=record, handle=handle, manager=self)

    def _check_previous(self, previous: Dict[str, Any], current_boot: str) -> None:
        same_boot = previous.get("boot_id") == current_boot
        pid = int(previous.get("pid") or 0)

        if previous.get("reboot_pending"):
            if same_boot:
                raise AlreadyLocked(
                    f"run {previous.get('run_id')} is waiting for a reboot", previous
                )
            log.info("Claiming reboot-pending lock of run %s as its continuation", previous.get("run_id"))
            return

        # the flock is ours, so a live recorded pid is a reused pid, not a bootstage run
        if same_boot and pid != self.pid and self.pid_alive(pid):
            log.warning("Lock record names live PID %s but nothing holds the lock; PID was reused", pid)

        log.warning("Removing stale lock left by PID %s", pid)

    def release(self, lock: Lock) -> None:
        """Best effort. A reboot-pending record is left in place for the continuation."""
        try:
            if not lock.reboot_pending:
                lock.handle.seek(0)
                lock.handle.truncate()
                lock.handle.flush()
        except OSError as exc:
            log.warning("Could not clear lock record %s: %s", self.path, exc)
        finally:
            self._unlock(lock.handle)
        log.debug("Released lock %s", self.path)

    @staticmethod
    def _unlock(handle: IO[str]) -> None:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError:
            pass  # closing the descriptor drops the flock anyway
        finally:
            handle.close()

    @contextmanager
    def hold(self, run_id: str) -> Iterator[Lock]:
        lock = self.acquire(run_id)
        try:
            yield lock
        finally:
            self.release(lock)
