from __future__ import annotations

import logging
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from .errors import ActionError, ActionTimeoutError
from .executors import Executor, LocalExecutor
from .prober import StateProber
from .state import HostState
from .types import (
    Action,
    ActionResult,
    ExecutionResult,
    ExecutionStatus,
    HostConfig,
    Plan,
    ProbeStatus,
    RunReport,
)

logger = logging.getLogger(__name__)

SATISFIED = {ExecutionStatus.SKIPPED, ExecutionStatus.APPLIED, ExecutionStatus.PLANNED}


@dataclass
class ActionEvent:
    timestamp: datetime
    action_id: str
    status: str
    duration_ms: int

    def format(self) -> str:
        stamp = self.timestamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        return f"{stamp} {self.action_id} {self.status} {self.duration_ms}"


EventCallback = Callable[[ActionEvent], None]


class PlanRunner:
    """Walks a Plan in order: probe, then apply what is missing.

    A failed action halts the rest of the plan unless it is ``non_fatal``;
    actions that depend on a failed action are never applied. Nothing that
    already succeeded is undone.
    """

    def __init__(
        self,
        plan: Plan,
        *,
        dry_run: bool = False,
        executor: Optional[Executor] = None,
        prober: Optional[StateProber] = None,
        event_callback: Optional[EventCallback] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.plan = plan
        self.dry_run = dry_run
        self.executor = executor or self._executor_for(plan.host)
        self.prober = prober or StateProber()
        self.event_callback = event_callback
        self.sleep = sleep
        self.clock = clock

    def run(self) -> RunReport:
        state = HostState(self.plan.host, self.executor)
        report = RunReport(dry_run=self.dry_run)
        outcome: dict[str, ExecutionStatus] = {}

        for action in self.plan.actions:
            if report.halted_by:
                result = ExecutionResult(
                    action.id, ExecutionStatus.NOT_RUN, reason=f"halted after {report.halted_by} failed"
                )
                self._emit(action.id, result.status.value, 0)
            else:
                blocker = self._blocker(action, outcome)
                if blocker:
                    result = ExecutionResult(
                        action.id, ExecutionStatus.NOT_RUN, reason=f"blocked by {blocker}"
                    )
                    self._emit(action.id, result.status.value, 0)
                else:
                    result = self._run_action(action, state)
            outcome[action.id] = result.status
            report.results.append(result)
            logger.debug("action=%s status=%s", action.id, result.status.value)
            if result.failed and not action.non_fatal and not report.halted_by:
                logger.error("action=%s failed; halting remaining actions", action.id)
                report.halted_by = action.id
        return report

    def _run_action(self, action: Action, state: HostState) -> ExecutionResult:
        started = self.clock()
        probe = self.prober.probe(action, state)

        def finish(status: ExecutionStatus, **kwargs) -> ExecutionResult:
            duration = int((self.clock() - started) * 1000)
            result = ExecutionResult(action.id, status, probe=probe, duration_ms=duration, **kwargs)
            self._emit(action.id, status.value, duration)
            return result

        if probe is ProbeStatus.PRESENT:
            return finish(ExecutionStatus.SKIPPED, details="already in place")
        if self.dry_run:
            return finish(ExecutionStatus.PLANNED, details=f"would apply ({probe.value})")

        self._emit(action.id, "running", 0)
        policy = action.retry
        attempts = 0
        error: Optional[BaseException] = None
        while attempts < policy.max_attempts:
            attempts += 1
            try:
                applied = self._apply(action, state)
            except ActionTimeoutError as exc:
                # whatever the apply did before the deadline is unknown; no retry
                error = exc
                logger.error("action=%s %s", action.id, exc)
                break
            except Exception as exc:  # noqa: BLE001
                error = exc
                logger.warning(
                    "action=%s attempt=%d/%d failed: %s",
                    action.id,
                    attempts,
                    policy.max_attempts,
                    _describe(exc),
                )
                logger.debug("apply traceback for %s", action.id, exc_info=True)
            else:
                return finish(ExecutionStatus.APPLIED, details=applied.details, attempts=attempts)

            if attempts >= policy.max_attempts:
                break
            self._emit(action.id, "retrying", int((self.clock() - started) * 1000))
            self.sleep(policy.delay(attempts))
            if self.prober.probe(action, state) is ProbeStatus.PRESENT:
                return finish(
                    ExecutionStatus.APPLIED,
                    details=f"converged after attempt {attempts}",
                    attempts=attempts,
                )

        return finish(ExecutionStatus.FAILED, reason=_describe(error), attempts=attempts)

    def _apply(self, action: Action, state: HostState) -> ActionResult:
        if action.timeout is None:
            result = action.operation.apply(state)
        else:
            # commands started by the apply are killed at the deadline, and the
            # worker is joined so nothing overlaps the next action
            pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"apply-{action.id}")
            deadline = time.monotonic() + action.timeout
            with self.executor.deadline(action.timeout):
                future = pool.submit(action.operation.apply, state)
                try:
                    result = future.result(timeout=action.timeout)
                except FutureTimeout:
                    raise ActionTimeoutError(action.id, action.timeout) from None
                except subprocess.TimeoutExpired:
                    if time.monotonic() < deadline:
                        raise
                    raise ActionTimeoutError(action.id, action.timeout) from None
                finally:
                    pool.shutdown(wait=True)
        if result.failed:
            raise ActionError(result.details)
        return result

    @staticmethod
    def _blocker(action: Action, outcome: dict[str, ExecutionStatus]) -> Optional[str]:
        for dep in sorted(action.depends_on):
            if outcome.get(dep) not in SATISFIED:
                return dep
        return None

    def _emit(self, action_id: str, status: str, duration_ms: int) -> None:
        if self.event_callback is None:
            return
        self.event_callback(
            ActionEvent(
                timestamp=datetime.now(timezone.utc),
                action_id=action_id,
                status=status,
                duration_ms=duration_ms,
            )
        )

    def _executor_for(self, host: HostConfig) -> Executor:
        if host.connection == "local":
            return LocalExecutor(host, dry_run=self.dry_run)
        raise ValueError(f"Unsupported connection type '{host.connection}'")


def _describe(exc: Optional[BaseException]) -> str:
    if exc is None:
        return "unknown error"
    if isinstance(exc, subprocess.CalledProcessError):
        command = " ".join(str(part) for part in exc.cmd)
        output = (exc.stderr or exc.output or "").strip()
        first = output.splitlines()[0] if output else ""
        text = f"{command} exited {exc.returncode}"
        return f"{text}: {first}" if first else text
    return str(exc) or exc.__class__.__name__
