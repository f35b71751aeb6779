from __future__ import annotations

import logging
import os
import shutil
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .base import Operation, coerce_bool, combine
from ..errors import ActionError
from ..executors import Executor
from ..state import HostState
from ..types import ActionResult, ProbeStatus

logger = logging.getLogger(__name__)


@dataclass
class SystemCtl:
    executable: str = "systemctl"

    def available(self) -> bool:
        return shutil.which(self.executable) is not None

    def is_enabled(self, executor: Executor, service: str) -> bool:
        result = executor.run([self.executable, "is-enabled", service], check=False, mutable=False)
        return result.returncode == 0

    def is_active(self, executor: Executor, service: str) -> bool:
        result = executor.run([self.executable, "is-active", service], check=False, mutable=False)
        return result.returncode == 0

    def needs_daemon_reload(self, executor: Executor, service: str) -> bool:
        value = self._show(executor, service, "NeedDaemonReload")
        return value == "yes"

    def active_since(self, executor: Executor, service: str) -> Optional[float]:
        value = self._show(executor, service, "ActiveEnterTimestamp", "--timestamp=unix")
        if not value or not value.startswith("@"):
            return None
        try:
            return float(value[1:])
        except ValueError:
            return None

    def daemon_reload(self, executor: Executor) -> None:
        executor.run([self.executable, "daemon-reload"])

    def enable(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "enable", service])

    def disable(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "disable", service])

    def start(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "start", service])

    def stop(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "stop", service])

    def restart(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "restart", service])

    def _show(self, executor: Executor, service: str, prop: str, *extra: str) -> Optional[str]:
        result = executor.run(
            [self.executable, "show", "-p", prop, *extra, service], check=False, mutable=False
        )
        if result.returncode != 0:
            return None
        _, _, value = result.stdout.strip().partition("=")
        return value.strip()


class ServiceOperation(Operation):
    """Manage systemd services.

    ``restart_when_changed`` lists files the running service depends on; a
    service that was started before any of them last changed is restarted.
    ``check_command`` is run before any start or restart and must succeed.
    """

    name = "service"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name")
        if not raw_name:
            raise ValueError("service operation requires a name")
        self.service = str(raw_name)
        self._enabled = coerce_bool(spec.get("enabled"))
        self._state = spec.get("state")
        if self._state not in {None, "running", "stopped"}:
            raise ValueError("service state must be 'running' or 'stopped'")
        self.daemon_reload = bool(coerce_bool(spec.get("daemon_reload", False)))
        watched = spec.get("restart_when_changed") or []
        if isinstance(watched, str):
            watched = [watched]
        self.watched = [Path(str(path)) for path in watched]
        check = spec.get("check_command")
        if isinstance(check, str):
            check = shlex.split(check)
        self.check_command = [str(part) for part in check] if check else None
        self.systemctl = SystemCtl()

    def probe(self, state: HostState) -> ProbeStatus:
        self._require_systemctl()
        executor = state.executor
        checks: list[bool] = []
        if self.daemon_reload:
            checks.append(not self.systemctl.needs_daemon_reload(executor, self.service))
        if self._enabled is not None:
            checks.append(self.systemctl.is_enabled(executor, self.service) == self._enabled)
        if self._state is not None:
            active = self.systemctl.is_active(executor, self.service)
            checks.append(active == (self._state == "running"))
            if active and self.watched:
                checks.append(not self._stale(executor))
        if not checks:
            return ProbeStatus.PRESENT
        return combine(checks)

    def apply(self, state: HostState) -> ActionResult:
        self._require_systemctl()
        executor = state.executor
        changes: list[str] = []

        if self.daemon_reload and self.systemctl.needs_daemon_reload(executor, self.service):
            logger.debug("Reloading systemd units for %s", self.service)
            self.systemctl.daemon_reload(executor)
            changes.append("daemon-reloaded")

        if self._enabled is not None:
            enabled = self.systemctl.is_enabled(executor, self.service)
            if self._enabled and not enabled:
                logger.debug("Enabling service %s", self.service)
                self.systemctl.enable(executor, self.service)
                changes.append("enabled")
            elif not self._enabled and enabled:
                logger.debug("Disabling service %s", self.service)
                self.systemctl.disable(executor, self.service)
                changes.append("disabled")

        if self._state is not None:
            active = self.systemctl.is_active(executor, self.service)
            if self._state == "running" and not active:
                self._check(executor)
                logger.debug("Starting service %s", self.service)
                self.systemctl.start(executor, self.service)
                changes.append("started")
            elif self._state == "running" and self.watched and self._stale(executor):
                self._check(executor)
                logger.debug("Restarting service %s after config change", self.service)
                self.systemctl.restart(executor, self.service)
                changes.append("restarted")
            elif self._state == "stopped" and active:
                logger.debug("Stopping service %s", self.service)
                self.systemctl.stop(executor, self.service)
                changes.append("stopped")

        changed = bool(changes)
        detail = ", ".join(changes) if changes else "noop"
        return self._result(state, changed, detail)

    def _require_systemctl(self) -> None:
        if not self.systemctl.available():
            raise RuntimeError("systemctl is not available on this host")

    def _stale(self, executor: Executor) -> bool:
        since = self.systemctl.active_since(executor, self.service)
        if since is None:
            return False
        for path in self.watched:
            try:
                if os.stat(path).st_mtime > since:
                    return True
            except FileNotFoundError:
                continue
        return False

    def _check(self, executor: Executor) -> None:
        if not self.check_command:
            return
        result = executor.run(self.check_command, check=False, mutable=False)
        if result.returncode != 0:
            output = (result.stderr or result.stdout).strip()
            raise ActionError(f"{' '.join(self.check_command)} failed (rc={result.returncode}): {output}")
