from pathlib import Path

import pytest

from provision_automation.executors import LocalExecutor
from provision_automation.operations.exec import ExecOperation
from provision_automation.state import HostState
from provision_automation.types import HostConfig, ProbeStatus


def build_state(dry_run: bool = False) -> HostState:
    host = HostConfig("local")
    return HostState(host, LocalExecutor(host, dry_run=dry_run))


def test_exec_runs_command(tmp_path: Path) -> None:
    target = tmp_path / "out.txt"
    op = ExecOperation({"name": "write-file", "command": f"echo hi > {target}"})
    result = op.apply(build_state())

    assert target.read_text().strip() == "hi"
    assert result.changed is True
    assert "ran" in result.details


def test_exec_creates_guard_makes_it_present(tmp_path: Path) -> None:
    target = tmp_path / "fullchain.pem"
    op = ExecOperation({"name": "certbot", "command": f"touch {target}", "creates": str(target)})
    state = build_state()

    assert op.probe(state) is ProbeStatus.ABSENT
    op.apply(state)

    assert op.probe(state) is ProbeStatus.PRESENT
    result = op.apply(state)
    assert result.changed is False
    assert "creates" in result.details


def test_exec_only_if_and_unless_guards() -> None:
    state = build_state()
    op_only_if = ExecOperation({"name": "guarded", "command": "echo skip", "only_if": "false"})
    op_unless = ExecOperation({"name": "guarded2", "command": "echo skip", "unless": "true"})

    assert op_only_if.probe(state) is ProbeStatus.PRESENT
    assert op_unless.probe(state) is ProbeStatus.PRESENT
    assert "only_if" in op_only_if.apply(state).details
    assert "unless" in op_unless.apply(state).details


def test_exec_without_guard_is_never_present() -> None:
    op = ExecOperation({"name": "always", "command": "true"})

    assert op.probe(build_state()) is ProbeStatus.ABSENT


def test_exec_guards_run_during_dry_run(tmp_path: Path) -> None:
    marker = tmp_path / "marker"
    op = ExecOperation(
        {"name": "upgrade", "command": f"touch {marker}", "unless": f"test -e {tmp_path}"}
    )

    assert op.probe(build_state(dry_run=True)) is ProbeStatus.PRESENT


def test_exec_dry_run_skips_command(tmp_path: Path) -> None:
    marker = tmp_path / "marker"
    op = ExecOperation({"name": "touch", "command": f"touch {marker}"})

    result = op.apply(build_state(dry_run=True))

    assert result.details == "dry-run"
    assert not marker.exists()


def test_exec_respects_allowed_returns() -> None:
    state = build_state()
    ok = ExecOperation({"name": "rc-allowed", "command": "exit 3", "returns": [0, 3]}).apply(state)
    fail = ExecOperation({"name": "rc-fail", "command": "echo broken >&2; exit 5"}).apply(state)

    assert ok.changed is True
    assert ok.failed is False
    assert fail.failed is True
    assert fail.details == "rc=5: broken"


def test_exec_passes_env() -> None:
    op = ExecOperation({"name": "env-check", "command": 'test "$FOO" = bar', "env": {"FOO": "bar"}})
    result = op.apply(build_state())

    assert result.failed is False
    assert result.changed is True


def test_exec_env_list_and_relative_creates(tmp_path: Path) -> None:
    op = ExecOperation(
        {
            "name": "unpack",
            "command": "touch done",
            "env": ["LANG=C"],
            "cwd": str(tmp_path),
            "creates": "done",
        }
    )
    state = build_state()

    assert op.env == {"LANG": "C"}
    op.apply(state)

    assert (tmp_path / "done").exists()
    assert op.probe(state) is ProbeStatus.PRESENT


def test_exec_validation() -> None:
    with pytest.raises(ValueError):
        ExecOperation({"command": "true"})
    with pytest.raises(ValueError):
        ExecOperation({"name": "x"})
    with pytest.raises(ValueError):
        ExecOperation({"name": "x", "command": "true", "env": ["NOEQUALS"]})
    with pytest.raises(ValueError):
        ExecOperation({"name": "x", "command": "true", "command_timeout": "soon"})
