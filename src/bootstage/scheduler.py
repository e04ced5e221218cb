# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/bootstage/scheduler.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, List, Optional

from bootstage.errors import RebootHookFailure, StateCorrupt, StateWriteError
from bootstage.observers.dispatcher import EventBus
from bootstage.observers.events import (
    new_ctx,
    HookArmed,
    HookDisarmed,
    RebootRequested,
    RunResumed,
    RunStarted,
    RunSummary,
    StageFailed,
    StageMessage,
    StageRetryScheduled,
    StageStarted,
    StageSucceeded,
)
from bootstage.stages.registry import (
    REBOOT_BOOT_FACT,
    FatalFailure,
    RequiresReboot,
    RetryableFailure,
    Stage,
    StageContext,
    StageKind,
    StageOutcome,
    StageRegistry,
    Success,
)
from bootstage.state.lock import Lock
from bootstage.state.models import ExecutionState, Status
from bootstage.state.store import StateStore
from bootstage.utils.retry import RetryExecutor

log = logging.getLogger("bootstage")


class ExitCode(IntEnum):
    OK = 0
    USAGE = 2
    LOCKED = 10
    STATE_CORRUPT = 11
    FATAL = 12
    EXHAUSTED = 13
    RETRY = 14


@dataclass
class RunResult:
    exit_code: ExitCode
    state: Optional[ExecutionState] = None
    message: str = ""

    @property
    def awaiting_reboot(self) -> bool:
        return self.state is not None and self.state.status == Status.AWAITING_REBOOT


class Scheduler:
    """
    Loads the persisted state, runs stages back-to-back from the current
    one, and stops at the first mandatory interruption: a reboot, a
    failure, or completion of the terminal stage.

    Attempt counts record failed attempts; a stage that has failed
    ``config.stage_attempts`` times is parked as failed and never retried
    automatically.
    """

    def __init__(
        self,
        registry: StageRegistry,
        store: StateStore,
        hook: Any,
        host: Any,
        *,
        config: Any,
        services: Any = None,
        executor: Optional[RetryExecutor] = None,
        bus: Optional[EventBus] = None,
        run_id: str = "",
        hostname: str = "",
        resume_command: Optional[List[str]] = None,
    ):
        self.registry = registry
        self.store = store
        self.hook = hook
        self.host = host
        self.config = config
        self.services = services
        self.executor = executor or RetryExecutor()
        self.bus = bus or EventBus()
        self.run_id = run_id
        self.hostname = hostname
        self.resume_command = resume_command or []

    @property
    def ceiling(self) -> int:
        return self.config.stage_attempts

    def _ctx(self) -> dict:
        return new_ctx(self.run_id, self.hostname)

    # ------------------ entry point ------------------

    def run(self, lock: Optional[Lock] = None, start_stage: Optional[str] = None) -> RunResult:
        try:
            state = self.store.load()
        except StateCorrupt as exc:
            log.error("Refusing to guess: %s", exc)
            return RunResult(ExitCode.STATE_CORRUPT, None, str(exc))

        state.run_id = self.run_id
        if self.hostname:
            state.hostname = self.hostname
        self.bus.emit(RunStarted(stage=state.current_stage, status=state.status.value, **self._ctx()))

        try:
            if start_stage:
                self._override(state, start_stage)
            elif state.status == Status.RUNNING:
                early = self._interrupted(state)
                if early:
                    return self._finish(early)

            if state.status == Status.AWAITING_REBOOT:
                early = self._resume_after_reboot(state, lock)
                if early:
                    return self._finish(early)

            return self._finish(self._loop(state, lock))
        except StateWriteError as exc:
            log.error("State could not be persisted: %s", exc)
            return self._finish(RunResult(ExitCode.FATAL, state, str(exc)))

    def _finish(self, result: RunResult) -> RunResult:
        st = result.state
        self.bus.emit(
            RunSummary(
                stage=st.current_stage if st else "-",
                status=st.status.value if st else "unknown",
                exit_code=int(result.exit_code),
                error=(st.last_error if st else result.message) or None,
                **self._ctx(),
            )
        )
        return result

    # ------------------ pre-loop transitions ------------------

    def _override(self, state: ExecutionState, name: str) -> None:
        """Explicit --stage: operator intervention. Facts are kept."""
        self.registry.get(name)
        if state.status == Status.AWAITING_REBOOT:
            self._disarm_hook()
        log.info("Starting from specified stage: %s", name)
        state.current_stage = name
        state.status = Status.PENDING
        state.attempts = {**state.attempts, name: 0}
        state.last_error = None
        state.note(name, "override")
        self.store.save(state)

    def _interrupted(self, state: ExecutionState) -> Optional[RunResult]:
        """A record left in 'running' means the previous process died mid-stage."""
        name = state.current_stage
        attempt = state.attempt_count(name) + 1
        log.warning("Previous run was interrupted during stage %s", name)
        state.attempts = {**state.attempts, name: attempt}
        state.last_error = "interrupted while running"
        if attempt >= self.ceiling:
            state.status = Status.FAILED
            state.note(name, "exhausted", state.last_error)
            self.store.save(state)
            return RunResult(ExitCode.EXHAUSTED, state, state.last_error)
        state.status = Status.PENDING
        state.note(name, "interrupted")
        self.store.save(state)
        return None

    def _resume_after_reboot(self, state: ExecutionState, lock: Optional[Lock]) -> Optional[RunResult]:
        stage = self.registry.get(state.current_stage)

        requested_on = state.fact(REBOOT_BOOT_FACT)
        if requested_on and requested_on == self.host.boot_id():
            log.info("Stage %s is still waiting for a reboot; re-requesting it", stage.name)
            return self._request_reboot(state, stage, lock)

        self._disarm_hook()
        advanced = bool(stage.completion_fact) and state.fact(stage.completion_fact) is True
        if advanced:
            nxt = self.registry.next_after(stage.name)
            state.note(stage.name, "rebooted")
            if nxt is None:
                state.status = Status.COMPLETE
                self.store.save(state)
                return RunResult(ExitCode.OK, state)
            log.info("Resuming after reboot: %s done, next stage %s", stage.name, nxt.name)
            state.current_stage = nxt.name
        else:
            log.warning("Resuming after reboot: %s has no completion fact, re-running it", stage.name)
            state.note(stage.name, "rebooted", "completion fact missing")
        state.status = Status.PENDING
        self.store.save(state)
        self.bus.emit(RunResumed(stage=stage.name, advanced=advanced, **self._ctx()))
        return None

    # ------------------ main loop ------------------

    def _loop(self, state: ExecutionState, lock: Optional[Lock]) -> RunResult:
        while True:
            if state.status == Status.COMPLETE:
                log.info("Provisioning already complete")
                return RunResult(ExitCode.OK, state)

            if state.status == Status.FAILED:
                exhausted = state.attempt_count() >= self.ceiling
                log.error(
                    "Stage %s is failed (%d attempts): %s",
                    state.current_stage, state.attempt_count(), state.last_error,
                )
                return RunResult(ExitCode.EXHAUSTED if exhausted else ExitCode.FATAL, state, state.last_error or "")

            stage = self.registry.get(state.current_stage)
            attempt = state.attempt_count(stage.name) + 1

            log.info("STAGE: %s - %s", stage.name.upper(), stage.description or stage.kind.value)
            state.status = Status.RUNNING
            self.store.save(state)
            self.bus.emit(StageStarted(stage=stage.name, attempt=attempt, **self._ctx()))

            t0 = time.time()
            outcome = self._invoke(stage, state)

            if isinstance(outcome, Success):
                state.merge_facts(outcome.facts)
                state.last_error = None
                state.note(stage.name, "success")
                self.bus.emit(
                    StageSucceeded(
                        stage=stage.name,
                        duration_ms=int((time.time() - t0) * 1000),
                        facts=sorted(outcome.facts),
                        **self._ctx(),
                    )
                )
                if stage.kind == StageKind.TERMINAL:
                    state.status = Status.COMPLETE
                    self.store.save(state)
                    log.info("Provisioning complete")
                    return RunResult(ExitCode.OK, state)
                state.current_stage = self.registry.next_after(stage.name).name
                state.status = Status.PENDING
                self.store.save(state)
                continue

            if isinstance(outcome, RequiresReboot):
                state.merge_facts(outcome.facts)
                return self._request_reboot(state, stage, lock)

            if isinstance(outcome, RetryableFailure):
                state.attempts = {**state.attempts, stage.name: attempt}
                state.last_error = outcome.reason
                if attempt >= self.ceiling:
                    state.status = Status.FAILED
                    state.note(stage.name, "exhausted", outcome.reason)
                    self.store.save(state)
                    self.bus.emit(StageFailed(stage=stage.name, attempt=attempt, error=outcome.reason, exhausted=True, **self._ctx()))
                    log.error("Stage %s exhausted %d attempts: %s", stage.name, attempt, outcome.reason)
                    return RunResult(ExitCode.EXHAUSTED, state, outcome.reason)
                state.status = Status.PENDING
                state.note(stage.name, "retryable-failure", outcome.reason)
                self.store.save(state)
                self.bus.emit(StageRetryScheduled(stage=stage.name, attempt=attempt, error=outcome.reason, **self._ctx()))
                log.warning("Stage %s failed (attempt %d/%d): %s", stage.name, attempt, self.ceiling, outcome.reason)
                return RunResult(ExitCode.RETRY, state, outcome.reason)

            return self._fail(state, stage, attempt, outcome.reason)

    def _fail(self, state: ExecutionState, stage: Stage, attempt: int, reason: str) -> RunResult:
        state.attempts = {**state.attempts, stage.name: attempt}
        state.status = Status.FAILED
        state.last_error = reason
        state.note(stage.name, "fatal-failure", reason)
        self.store.save(state)
        self.bus.emit(StageFailed(stage=stage.name, attempt=attempt, error=reason, **self._ctx()))
        log.error("Stage %s failed fatally: %s", stage.name, reason)
        return RunResult(ExitCode.FATAL, state, reason)

    def _invoke(self, stage: Stage, state: ExecutionState) -> StageOutcome:
        def record_fact(key, value) -> None:
            state.merge_facts({key: value})
            self.store.save(state)

        def record(level: str, stage_name: str, message: str) -> None:
            self.bus.emit(StageMessage(stage=stage_name, level=level, message=message, **self._ctx()))

        ctx = StageContext(
            stage,
            config=self.config,
            facts=state.facts,
            record_fact=record_fact,
            record=record,
            services=self.services,
            executor=self.executor,
        )
        try:
            outcome = stage.run(ctx)
        except StateWriteError:
            raise
        except Exception as exc:
            log.exception("Stage %s raised unexpectedly", stage.name)
            return RetryableFailure(f"{type(exc).__name__}: {exc}")

        if not isinstance(outcome, (Success, RequiresReboot, RetryableFailure, FatalFailure)):
            return FatalFailure(f"stage {stage.name} returned {outcome!r}")
        return outcome

    # ------------------ reboot continuation ------------------

    def _request_reboot(self, state: ExecutionState, stage: Stage, lock: Optional[Lock]) -> RunResult:
        # the hook must be in place before anything commits us to a reboot
        try:
            self.hook.arm(self.resume_command)
        except RebootHookFailure as exc:
            attempt = state.attempt_count(stage.name) + 1
            return self._fail(state, stage, attempt, f"continuation hook could not be armed: {exc}")
        self.bus.emit(HookArmed(target=str(getattr(self.hook, "target", type(self.hook).__name__)), **self._ctx()))

        state.merge_facts({REBOOT_BOOT_FACT: self.host.boot_id()})
        state.status = Status.AWAITING_REBOOT
        state.last_error = None
        state.note(stage.name, "reboot-requested")
        self.store.save(state)

        if lock is not None:
            try:
                lock.mark_reboot_pending()
            except OSError as exc:
                log.warning("Could not mark lock reboot-pending: %s", exc)

        delay = self.config.reboot_delay
        self.bus.emit(RebootRequested(stage=stage.name, delay_s=delay, **self._ctx()))
        try:
            self.host.reboot(delay)
        except Exception as exc:
            reason = f"reboot trigger failed: {exc}"
            log.error("%s; reboot the host manually to continue", reason)
            state.last_error = reason
            self.store.save(state)
            if lock is not None:
                lock.record["reboot_pending"] = False
            return RunResult(ExitCode.FATAL, state, reason)

        log.info("Reboot scheduled in %ss. Provisioning continues after restart.", delay)
        return RunResult(ExitCode.OK, state, "awaiting reboot")

    def _disarm_hook(self) -> None:
        try:
            if self.hook.disarm():
                self.bus.emit(HookDisarmed(target=str(getattr(self.hook, "target", type(self.hook).__name__)), **self._ctx()))
        except Exception as exc:
            log.warning("Could not disarm continuation hook: %s", exc)
