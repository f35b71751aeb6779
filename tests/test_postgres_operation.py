import pytest

from provision_automation.errors import ActionError
from provision_automation.executors import CommandResult
from provision_automation.operations.postgres import (
    PostgresDatabaseOperation,
    PostgresExtensionOperation,
    PostgresRoleOperation,
    quote_ident,
    quote_literal,
)
from provision_automation.state import HostState
from provision_automation.types import HostConfig, ProbeStatus


class FakeCluster:
    """Answers the catalog queries psql would run against a real cluster."""

    def __init__(self, roles=None, databases=None, extensions=None, fail_statements=False):
        self.roles = dict(roles or {})
        self.databases = dict(databases or {})
        self.extensions = set(extensions or ())
        self.fail_statements = fail_statements
        self.statements: list[str] = []
        self.users: list[str] = []
        self.commands: list[list[str]] = []
        self.host = HostConfig("local")
        self.dry_run = False

    def run(self, command, *, check=True, mutable=True, user=None, input=None, **kwargs):  # noqa: ARG002
        self.users.append(user)
        self.commands.append(list(command))
        sql = input.rstrip().rstrip(";")
        database = command[command.index("-d") + 1]
        if sql.startswith("SELECT rolcanlogin"):
            name = sql.split("'")[1]
            value = self.roles.get(name)
            out = "" if value is None else ("t" if value else "f")
            return CommandResult(list(command), out + "\n", "", 0)
        if sql.startswith("SELECT pg_get_userbyid"):
            name = sql.split("'")[1]
            return CommandResult(list(command), self.databases.get(name, "") + "\n", "", 0)
        if sql.startswith("SELECT 1 FROM pg_extension"):
            name = sql.split("'")[1]
            out = "1" if (database, name) in self.extensions else ""
            return CommandResult(list(command), out, "", 0)
        self.statements.append(sql)
        if self.fail_statements:
            return CommandResult(list(command), "", "ERROR:  permission denied", 1)
        return CommandResult(list(command), "", "", 0)


def build_state(cluster: FakeCluster) -> HostState:
    return HostState(cluster.host, cluster)


def test_quoting():
    assert quote_ident('we"ird') == '"we""ird"'
    assert quote_literal("it's") == "'it''s'"


def test_role_created_with_password():
    cluster = FakeCluster()
    op = PostgresRoleOperation({"name": "dhis", "password": "s3'cret"})
    state = build_state(cluster)

    assert op.probe(state) is ProbeStatus.ABSENT
    result = op.apply(state)

    assert result.details == "created"
    assert cluster.statements == ["""CREATE ROLE "dhis" LOGIN PASSWORD 's3''cret'"""]
    assert set(cluster.users) == {"postgres"}


def test_role_present_is_untouched():
    cluster = FakeCluster(roles={"dhis": True})
    op = PostgresRoleOperation({"name": "dhis", "password": "other"})
    state = build_state(cluster)

    assert op.probe(state) is ProbeStatus.PRESENT
    assert op.apply(state).changed is False
    assert cluster.statements == []


def test_role_without_login_is_partial():
    cluster = FakeCluster(roles={"dhis": False})
    op = PostgresRoleOperation({"name": "dhis"})
    state = build_state(cluster)

    assert op.probe(state) is ProbeStatus.PARTIAL
    op.apply(state)
    assert cluster.statements == ['ALTER ROLE "dhis" LOGIN']


def test_database_created_and_granted():
    cluster = FakeCluster(roles={"dhis": True})
    op = PostgresDatabaseOperation({"name": "dhis2", "owner": "dhis", "port": "5433"})
    state = build_state(cluster)

    assert op.probe(state) is ProbeStatus.ABSENT
    result = op.apply(state)

    assert result.details == "created, granted"
    assert cluster.statements == [
        "CREATE DATABASE \"dhis2\" ENCODING 'UTF8' TEMPLATE \"template0\" OWNER \"dhis\"",
        'GRANT ALL PRIVILEGES ON DATABASE "dhis2" TO "dhis"',
    ]
    assert op.psql.port == 5433


def test_database_wrong_owner_is_partial():
    cluster = FakeCluster(databases={"dhis2": "postgres"})
    op = PostgresDatabaseOperation({"name": "dhis2", "owner": "dhis"})
    state = build_state(cluster)

    assert op.probe(state) is ProbeStatus.PARTIAL
    result = op.apply(state)

    assert result.details == "owner->dhis, granted"
    assert cluster.statements[0] == 'ALTER DATABASE "dhis2" OWNER TO "dhis"'


def test_database_present():
    cluster = FakeCluster(databases={"dhis2": "dhis"})
    op = PostgresDatabaseOperation({"name": "dhis2", "owner": "dhis"})

    assert op.probe(build_state(cluster)) is ProbeStatus.PRESENT
    assert op.apply(build_state(cluster)).changed is False


def test_extension_created_in_database():
    cluster = FakeCluster()
    op = PostgresExtensionOperation({"name": "postgis", "database": "dhis2"})
    state = build_state(cluster)

    assert op.probe(state) is ProbeStatus.ABSENT
    op.apply(state)

    assert cluster.statements == ['CREATE EXTENSION IF NOT EXISTS "postgis"']
    assert op.resource() == "dhis2.postgis"

    cluster.extensions.add(("dhis2", "postgis"))
    assert op.probe(state) is ProbeStatus.PRESENT


def test_failed_statement_does_not_leak_password():
    cluster = FakeCluster(fail_statements=True)
    op = PostgresRoleOperation({"name": "dhis", "password": "hunter2"})

    with pytest.raises(ActionError) as excinfo:
        op.apply(build_state(cluster))

    assert "permission denied" in str(excinfo.value)
    assert "hunter2" not in str(excinfo.value)


def test_validation():
    with pytest.raises(ValueError):
        PostgresRoleOperation({})
    with pytest.raises(ValueError):
        PostgresExtensionOperation({"name": "postgis"})
    with pytest.raises(ValueError):
        PostgresDatabaseOperation({"name": "dhis2", "port": "abc"})


def test_password_is_sent_on_stdin_not_argv():
    cluster = FakeCluster()
    op = PostgresRoleOperation({"name": "dhis", "password": "hunter2"})

    op.apply(build_state(cluster))

    assert cluster.statements == ["CREATE ROLE \"dhis\" LOGIN PASSWORD 'hunter2'"]
    assert all("hunter2" not in " ".join(command) for command in cluster.commands)
    assert cluster.commands[-1][-2:] == ["-f", "-"]
