from pathlib import Path
import textwrap

import pytest

from provision_automation import cli
from provision_automation.types import ExecutionResult, ExecutionStatus


def write_config(tmp_path: Path, catalog: str) -> Path:
    catalog_path = tmp_path / "catalog.toml"
    catalog_path.write_text(textwrap.dedent(catalog))
    cfg_path = tmp_path / "provision.toml"
    cfg_path.write_text(
        textwrap.dedent(
            """
            db_name = "dhis2"
            db_user = "dhis"
            db_password = "s3cret"
            domain = "dhis.example.org"

            [engine]
            catalog = "catalog.toml"
            """
        )
    )
    return cfg_path


def test_format_result_failed(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    result = ExecutionResult("create_db", ExecutionStatus.FAILED, reason="psql statement failed (rc=1)")
    line = cli.format_result(result, "dhis2")
    assert line == "create_db[dhis2] failed - psql statement failed (rc=1)"


def test_format_result_applied_with_attempts(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    result = ExecutionResult("deploy_dhis2", ExecutionStatus.APPLIED, details="downloaded", attempts=2)
    line = cli.format_result(result)
    assert line == "deploy_dhis2 applied - downloaded (attempts=2)"


def test_summary_counts_statuses(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    summary = cli.Summary()
    for status in (ExecutionStatus.APPLIED, ExecutionStatus.SKIPPED, ExecutionStatus.SKIPPED, ExecutionStatus.NOT_RUN):
        summary.add(ExecutionResult("x", status))

    assert summary.render() == "Applied: 1 | Skipped: 2 | Not run: 1 | Failures: 0"


def test_only_is_split_on_commas():
    args = cli.parse_args(["--config", "c.toml", "--only", "install_db, create_db,"])
    assert args.only == ["install_db", "create_db"]


def test_main_applies_then_skips(tmp_path: Path, capsys, monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    marker = tmp_path / "marker"
    cfg_path = write_config(
        tmp_path,
        f"""
        [[actions]]
        id = "touch_marker"
        type = "exec"
        name = "touch"
        command = "touch {marker}"
        creates = "{marker}"
        """,
    )

    assert cli.main(["--config", str(cfg_path)]) == cli.EXIT_OK
    first = capsys.readouterr().out
    assert marker.exists()
    assert " touch_marker running 0" in first
    assert "touch_marker[touch] applied" in first

    assert cli.main(["--config", str(cfg_path)]) == cli.EXIT_OK
    second = capsys.readouterr().out
    assert "touch_marker[touch] skipped" in second
    assert "Applied: 0 | Skipped: 1" in second


def test_main_dry_run_changes_nothing(tmp_path: Path, capsys, monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    marker = tmp_path / "marker"
    cfg_path = write_config(
        tmp_path,
        f"""
        [[actions]]
        id = "touch_marker"
        type = "exec"
        name = "touch"
        command = "touch {marker}"
        creates = "{marker}"
        """,
    )

    assert cli.main(["--config", str(cfg_path), "--dry-run"]) == cli.EXIT_OK
    assert not marker.exists()
    assert "touch_marker[touch] planned" in capsys.readouterr().out


def test_main_reports_failures(tmp_path: Path, capsys, monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    cfg_path = write_config(
        tmp_path,
        """
        [[actions]]
        id = "broken"
        type = "exec"
        name = "broken"
        command = "echo nope >&2; exit 4"

        [[actions]]
        id = "later"
        type = "exec"
        name = "later"
        command = "true"
        """,
    )

    assert cli.main(["--config", str(cfg_path)]) == cli.EXIT_FAILED
    captured = capsys.readouterr()
    assert "broken[broken] failed - rc=4: nope" in captured.out
    assert "later[later] not_run - halted after broken failed" in captured.out
    assert "Halted after broken failed" in captured.err


def test_main_cycle_exit_code(tmp_path: Path, capsys):
    cfg_path = write_config(
        tmp_path,
        """
        [[actions]]
        id = "a"
        type = "exec"
        name = "a"
        command = "true"
        depends_on = ["b"]

        [[actions]]
        id = "b"
        type = "exec"
        name = "b"
        command = "true"
        depends_on = ["a"]
        """,
    )

    assert cli.main(["--config", str(cfg_path)]) == cli.EXIT_CYCLE
    assert "dependency cycle detected" in capsys.readouterr().err


def test_main_config_error_exit_code(tmp_path: Path, capsys):
    assert cli.main(["--config", str(tmp_path / "missing.toml")]) == cli.EXIT_CONFIG
    assert "does not exist" in capsys.readouterr().err


@pytest.mark.parametrize("only", ["nope", "a,ghost"])
def test_main_unknown_only_is_config_error(tmp_path: Path, only):
    cfg_path = write_config(
        tmp_path,
        """
        [[actions]]
        id = "a"
        type = "exec"
        name = "a"
        command = "true"
        """,
    )

    assert cli.main(["--config", str(cfg_path), "--only", only]) == cli.EXIT_CONFIG
