from __future__ import annotations

import logging
import pwd
from dataclasses import dataclass
from typing import Any, Optional

from .base import Operation, coerce_bool
from ..executors import Executor
from ..state import HostState
from ..types import ActionResult, ProbeStatus

logger = logging.getLogger(__name__)


@dataclass
class UserInfo:
    name: str
    shell: str
    home: str


class UserManager:
    def get(self, username: str) -> Optional[UserInfo]:
        try:
            entry = pwd.getpwnam(username)
        except KeyError:
            return None
        return UserInfo(name=entry.pw_name, shell=entry.pw_shell, home=entry.pw_dir)

    def add(
        self,
        executor: Executor,
        name: str,
        *,
        shell: Optional[str],
        home: Optional[str],
        system: bool,
        create_home: bool,
        comment: Optional[str],
    ) -> None:
        cmd = ["useradd"]
        if shell:
            cmd += ["--shell", shell]
        if home:
            cmd += ["--home-dir", home]
        if create_home:
            cmd.append("--create-home")
        if system:
            cmd.append("--system")
        if comment:
            cmd += ["--comment", comment]
        cmd.append(name)
        executor.run(cmd)

    def delete(self, executor: Executor, name: str, *, remove_home: bool) -> None:
        cmd = ["userdel"]
        if remove_home:
            cmd.append("--remove")
        cmd.append(name)
        executor.run(cmd)

    def set_shell(self, executor: Executor, name: str, shell: str) -> None:
        executor.run(["usermod", "--shell", shell, name])

    def set_home(self, executor: Executor, name: str, home: str) -> None:
        executor.run(["usermod", "--home", home, "--move-home", name])


class UserOperation(Operation):
    """Ensure a user account exists with the requested shell and home."""

    name = "user"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name")
        if not raw_name:
            raise ValueError("user operation requires a name")
        self.username = str(raw_name)
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("user operation state must be 'present' or 'absent'")
        self.shell = str(spec["shell"]) if spec.get("shell") else None
        self.home = str(spec["home"]) if spec.get("home") else None
        self.system = bool(coerce_bool(spec.get("system", False)))
        create_home = coerce_bool(spec.get("create_home"))
        self.create_home = True if create_home is None else create_home
        self.remove_home = bool(coerce_bool(spec.get("remove_home", False)))
        self.comment = spec.get("comment")
        self.manager = UserManager()

    def probe(self, state: HostState) -> ProbeStatus:
        info = self.manager.get(self.username)
        if self.state == "absent":
            return ProbeStatus.ABSENT if info else ProbeStatus.PRESENT
        if info is None:
            return ProbeStatus.ABSENT
        if self._drift(info):
            return ProbeStatus.PARTIAL
        return ProbeStatus.PRESENT

    def apply(self, state: HostState) -> ActionResult:
        executor = state.executor
        info = self.manager.get(self.username)
        changes: list[str] = []

        if self.state == "present":
            if not info:
                logger.debug("Creating user %s", self.username)
                self.manager.add(
                    executor,
                    self.username,
                    shell=self.shell,
                    home=self.home,
                    system=self.system,
                    create_home=self.create_home,
                    comment=str(self.comment) if self.comment else None,
                )
                changes.append("created")
            else:
                if self.shell and info.shell != self.shell:
                    logger.debug("Updating shell for %s", self.username)
                    self.manager.set_shell(executor, self.username, self.shell)
                    changes.append("shell")
                if self.home and info.home != self.home:
                    logger.debug("Moving home for %s", self.username)
                    self.manager.set_home(executor, self.username, self.home)
                    changes.append("home")
        elif info:
            logger.debug("Removing user %s", self.username)
            self.manager.delete(executor, self.username, remove_home=self.remove_home)
            changes.append("removed")

        changed = bool(changes)
        detail = ", ".join(changes) if changes else "noop"
        return self._result(state, changed, detail)

    def _drift(self, info: UserInfo) -> bool:
        if self.shell and info.shell != self.shell:
            return True
        return bool(self.home and info.home != self.home)
