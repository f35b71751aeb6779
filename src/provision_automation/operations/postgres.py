from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from .base import Operation, coerce_bool
from ..errors import ActionError
from ..executors import Executor
from ..state import HostState
from ..types import ActionResult, ProbeStatus

logger = logging.getLogger(__name__)


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _script(sql: str) -> str:
    return sql.rstrip().rstrip(";") + ";\n"


@dataclass
class Psql:
    """Runs SQL through ``psql`` as the cluster superuser."""

    executable: str = "psql"
    superuser: str = "postgres"
    port: int = 5432

    def scalar(self, executor: Executor, sql: str, *, database: str = "postgres") -> str:
        result = executor.run(
            self._command(database),
            check=False,
            mutable=False,
            user=self.superuser,
            input=_script(sql),
        )
        if result.returncode != 0:
            raise RuntimeError(f"psql query failed (rc={result.returncode}): {result.stderr.strip()}")
        return result.stdout.strip()

    def execute(self, executor: Executor, sql: str, *, database: str = "postgres") -> None:
        result = executor.run(
            self._command(database),
            check=False,
            user=self.superuser,
            input=_script(sql),
        )
        if result.returncode != 0:
            # never echo the statement; it may carry a password
            raise ActionError(f"psql statement failed (rc={result.returncode}): {result.stderr.strip()}")

    def _command(self, database: str) -> list[str]:
        # SQL goes in on stdin so passwords never show up in the process list
        return [
            self.executable,
            "-X",
            "-v",
            "ON_ERROR_STOP=1",
            "-p",
            str(self.port),
            "-d",
            database,
            "-tA",
            "-f",
            "-",
        ]


class _PostgresOperation(Operation):
    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name")
        if not raw_name:
            raise ValueError(f"{self.name} operation requires a name")
        self.object_name = str(raw_name)
        try:
            port = int(spec.get("port", 5432))
        except (TypeError, ValueError):
            raise ValueError(f"{self.name} port must be an integer") from None
        self.psql = Psql(superuser=str(spec.get("superuser", "postgres")), port=port)


class PostgresRoleOperation(_PostgresOperation):
    """Ensure a login role exists.

    The password is only set when the role is created; an existing role's
    password cannot be compared without reading hashed credentials.
    """

    name = "postgres_role"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        password = spec.get("password")
        self.password: Optional[str] = str(password) if password else None
        login = coerce_bool(spec.get("login"))
        self.login = True if login is None else login

    def probe(self, state: HostState) -> ProbeStatus:
        value = self._can_login(state.executor)
        if value is None:
            return ProbeStatus.ABSENT
        return ProbeStatus.PRESENT if value == self.login else ProbeStatus.PARTIAL

    def apply(self, state: HostState) -> ActionResult:
        executor = state.executor
        current = self._can_login(executor)
        login = "LOGIN" if self.login else "NOLOGIN"
        if current is None:
            sql = f"CREATE ROLE {quote_ident(self.object_name)} {login}"
            if self.password:
                sql += f" PASSWORD {quote_literal(self.password)}"
            logger.debug("Creating role %s", self.object_name)
            self.psql.execute(executor, sql)
            return self._result(state, True, "created")
        if current != self.login:
            self.psql.execute(executor, f"ALTER ROLE {quote_ident(self.object_name)} {login}")
            return self._result(state, True, login.lower())
        return self._result(state, False, "noop")

    def _can_login(self, executor: Executor) -> Optional[bool]:
        value = self.psql.scalar(
            executor,
            f"SELECT rolcanlogin FROM pg_roles WHERE rolname = {quote_literal(self.object_name)}",
        )
        if not value:
            return None
        return value == "t"


class PostgresDatabaseOperation(_PostgresOperation):
    """Ensure a database exists, is owned by ``owner`` and grants it all privileges."""

    name = "postgres_database"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        owner = spec.get("owner")
        self.owner: Optional[str] = str(owner) if owner else None
        self.encoding = str(spec.get("encoding", "UTF8"))
        self.template = str(spec.get("template", "template0"))

    def probe(self, state: HostState) -> ProbeStatus:
        owner = self._current_owner(state.executor)
        if owner is None:
            return ProbeStatus.ABSENT
        if self.owner and owner != self.owner:
            return ProbeStatus.PARTIAL
        return ProbeStatus.PRESENT

    def apply(self, state: HostState) -> ActionResult:
        executor = state.executor
        database = quote_ident(self.object_name)
        owner = self._current_owner(executor)
        changes: list[str] = []
        if owner is None:
            sql = f"CREATE DATABASE {database} ENCODING {quote_literal(self.encoding)} TEMPLATE {quote_ident(self.template)}"
            if self.owner:
                sql += f" OWNER {quote_ident(self.owner)}"
            logger.debug("Creating database %s", self.object_name)
            self.psql.execute(executor, sql)
            changes.append("created")
        elif self.owner and owner != self.owner:
            self.psql.execute(executor, f"ALTER DATABASE {database} OWNER TO {quote_ident(self.owner)}")
            changes.append(f"owner->{self.owner}")
        if changes and self.owner:
            self.psql.execute(
                executor, f"GRANT ALL PRIVILEGES ON DATABASE {database} TO {quote_ident(self.owner)}"
            )
            changes.append("granted")
        detail = ", ".join(changes) if changes else "noop"
        return self._result(state, bool(changes), detail)

    def _current_owner(self, executor: Executor) -> Optional[str]:
        value = self.psql.scalar(
            executor,
            "SELECT pg_get_userbyid(datdba) FROM pg_database "
            f"WHERE datname = {quote_literal(self.object_name)}",
        )
        return value or None


class PostgresExtensionOperation(_PostgresOperation):
    """Ensure an extension is installed in ``database``."""

    name = "postgres_extension"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        database = spec.get("database")
        if not database:
            raise ValueError("postgres_extension operation requires a database")
        self.database = str(database)

    def resource(self) -> Optional[str]:
        return f"{self.database}.{self.object_name}"

    def probe(self, state: HostState) -> ProbeStatus:
        return ProbeStatus.PRESENT if self._installed(state.executor) else ProbeStatus.ABSENT

    def apply(self, state: HostState) -> ActionResult:
        executor = state.executor
        if self._installed(executor):
            return self._result(state, False, "noop")
        self.psql.execute(
            executor,
            f"CREATE EXTENSION IF NOT EXISTS {quote_ident(self.object_name)}",
            database=self.database,
        )
        return self._result(state, True, "created")

    def _installed(self, executor: Executor) -> bool:
        value = self.psql.scalar(
            executor,
            f"SELECT 1 FROM pg_extension WHERE extname = {quote_literal(self.object_name)}",
            database=self.database,
        )
        return value == "1"
