from pathlib import Path

import pytest

from provision_automation.executors import CommandResult, LocalExecutor
from provision_automation.operations.apt_repository import AptRepositoryOperation
from provision_automation.state import HostState
from provision_automation.types import HostConfig, ProbeStatus


class RecordingExecutor(LocalExecutor):
    def __init__(self, host: HostConfig):
        super().__init__(host)
        self.commands: list[list[str]] = []

    def run(self, command, **kwargs):  # type: ignore[override]
        self.commands.append(list(command))
        return CommandResult(list(command), "", "", 0)


def build_state(monkeypatch) -> HostState:
    monkeypatch.setattr(HostState, "codename", lambda self: "jammy")
    host = HostConfig("local")
    return HostState(host, RecordingExecutor(host))


def repo_spec(tmp_path: Path, **overrides) -> dict:
    key = tmp_path / "ACCC4CF8.asc"
    key.write_text("-----BEGIN PGP PUBLIC KEY BLOCK-----\n")
    spec = {
        "name": "pgdg",
        "uri": "http://apt.postgresql.org/pub/repos/apt",
        "suite_suffix": "-pgdg",
        "key_url": str(key),
        "keyring": str(tmp_path / "keyrings" / "pgdg.asc"),
        "path": str(tmp_path / "sources.list.d" / "pgdg.list"),
    }
    spec.update(overrides)
    return spec


def test_repository_written_with_signed_by(tmp_path: Path, monkeypatch) -> None:
    op = AptRepositoryOperation(repo_spec(tmp_path))
    state = build_state(monkeypatch)

    assert op.probe(state) is ProbeStatus.ABSENT
    result = op.apply(state)

    keyring = tmp_path / "keyrings" / "pgdg.asc"
    source = tmp_path / "sources.list.d" / "pgdg.list"
    assert keyring.read_text().startswith("-----BEGIN PGP")
    assert source.read_text() == (
        f"deb [signed-by={keyring}] http://apt.postgresql.org/pub/repos/apt jammy-pgdg main\n"
    )
    assert result.changed is True
    assert "cache-updated" in result.details
    assert state.executor.commands == [["apt-get", "update"]]
    assert op.probe(state) is ProbeStatus.PRESENT


def test_repository_second_apply_does_not_refresh(tmp_path: Path, monkeypatch) -> None:
    op = AptRepositoryOperation(repo_spec(tmp_path))
    state = build_state(monkeypatch)
    op.apply(state)
    state.executor.commands.clear()

    result = op.apply(state)

    assert result.changed is False
    assert state.executor.commands == []


def test_repository_missing_key_is_partial(tmp_path: Path, monkeypatch) -> None:
    op = AptRepositoryOperation(repo_spec(tmp_path, suite="bookworm", arch="amd64"))
    state = build_state(monkeypatch)
    op.apply(state)
    (tmp_path / "keyrings" / "pgdg.asc").unlink()

    assert op.probe(state) is ProbeStatus.PARTIAL
    assert "deb [arch=amd64 signed-by=" in (tmp_path / "sources.list.d" / "pgdg.list").read_text()
    assert "bookworm-pgdg" in (tmp_path / "sources.list.d" / "pgdg.list").read_text()


def test_repository_absent_removes_source(tmp_path: Path, monkeypatch) -> None:
    source = tmp_path / "sources.list.d" / "pgdg.list"
    source.parent.mkdir()
    source.write_text("deb http://example.org stable main\n")
    op = AptRepositoryOperation(repo_spec(tmp_path, state="absent"))
    state = build_state(monkeypatch)

    assert op.probe(state) is ProbeStatus.ABSENT
    op.apply(state)

    assert not source.exists()
    assert op.probe(state) is ProbeStatus.PRESENT


def test_repository_requires_uri() -> None:
    with pytest.raises(ValueError):
        AptRepositoryOperation({"name": "pgdg"})
