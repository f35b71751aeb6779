from typing import Optional

import pytest

from provision_automation.operations.user import UserInfo, UserManager, UserOperation
from provision_automation.state import HostState
from provision_automation.types import HostConfig, ProbeStatus


class FakeManager(UserManager):
    def __init__(self, existing: Optional[UserInfo] = None):
        self._info = existing
        self.actions: list[tuple[str, tuple]] = []

    def get(self, username: str):  # type: ignore[override]
        return self._info

    def add(self, executor, name, *, shell, home, system, create_home, comment):  # type: ignore[override]
        self.actions.append(("add", (name, shell, home, system, create_home, comment)))
        self._info = UserInfo(name=name, shell=shell or "/bin/sh", home=home or f"/home/{name}")

    def delete(self, executor, name, *, remove_home):  # type: ignore[override]
        self.actions.append(("delete", (name, remove_home)))
        self._info = None

    def set_shell(self, executor, name, shell):  # type: ignore[override]
        self.actions.append(("shell", (name, shell)))
        self._info = UserInfo(name=name, shell=shell, home=self._info.home)

    def set_home(self, executor, name, home):  # type: ignore[override]
        self.actions.append(("home", (name, home)))
        self._info = UserInfo(name=name, shell=self._info.shell, home=home)


class Stub:
    dry_run = False


def build_state() -> HostState:
    return HostState(HostConfig("local"), Stub())


def test_user_created_with_home_and_shell():
    op = UserOperation({"name": "dhis", "home": "/home/dhis", "shell": "/bin/bash"})
    manager = FakeManager()
    op.manager = manager
    state = build_state()

    assert op.probe(state) is ProbeStatus.ABSENT
    result = op.apply(state)

    assert result.changed is True
    assert result.details == "created"
    assert manager.actions == [("add", ("dhis", "/bin/bash", "/home/dhis", False, True, None))]
    assert op.probe(state) is ProbeStatus.PRESENT


def test_user_shell_drift_is_partial_and_fixed():
    op = UserOperation({"name": "dhis", "shell": "/bin/bash"})
    manager = FakeManager(UserInfo(name="dhis", shell="/bin/sh", home="/home/dhis"))
    op.manager = manager
    state = build_state()

    assert op.probe(state) is ProbeStatus.PARTIAL
    result = op.apply(state)

    assert result.details == "shell"
    assert op.probe(state) is ProbeStatus.PRESENT


def test_user_existing_matches_is_noop():
    op = UserOperation({"name": "dhis", "home": "/home/dhis", "shell": "/bin/bash"})
    op.manager = FakeManager(UserInfo(name="dhis", shell="/bin/bash", home="/home/dhis"))

    result = op.apply(build_state())

    assert result.changed is False
    assert result.details == "noop"


def test_user_absent_removes_account():
    op = UserOperation({"name": "olduser", "state": "absent", "remove_home": True})
    manager = FakeManager(UserInfo(name="olduser", shell="/bin/bash", home="/home/olduser"))
    op.manager = manager
    state = build_state()

    assert op.probe(state) is ProbeStatus.ABSENT
    op.apply(state)

    assert manager.actions == [("delete", ("olduser", True))]
    assert op.probe(state) is ProbeStatus.PRESENT


def test_user_requires_name():
    with pytest.raises(ValueError):
        UserOperation({})
