from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Optional, Sequence
import logging

from .base import Operation
from ..executors import CommandResult, Executor
from ..state import HostState
from ..types import ActionResult, ProbeStatus

logger = logging.getLogger(__name__)


class ExecOperation(Operation):
    """Run a command guarded by ``creates``/``unless``/``only_if``, like Puppet's exec.

    Without a guard the command is never considered done and runs on every
    pass, so catalog entries should always carry one.
    """

    name = "exec"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name")
        if not raw_name:
            raise ValueError("exec operation requires a name")
        self.label = str(raw_name)

        raw_command = spec.get("command") or spec.get("cmd")
        if raw_command is None:
            raise ValueError("exec operation requires a command")
        self.command = self._normalize_command(raw_command)

        self.only_if = self._normalize_command(spec["only_if"]) if spec.get("only_if") else None
        self.unless = self._normalize_command(spec["unless"]) if spec.get("unless") else None

        self.creates = Path(str(spec["creates"])) if spec.get("creates") else None
        self.cwd = Path(str(spec["cwd"])) if spec.get("cwd") else None
        self.user = str(spec["user"]) if spec.get("user") else None

        self.env = self._normalize_env(spec.get("env") or spec.get("environment"))
        self.allowed_returns = self._normalize_returns(spec.get("returns", [0]))
        self.timeout = self._normalize_timeout(spec.get("command_timeout"))

    def probe(self, state: HostState) -> ProbeStatus:
        return ProbeStatus.PRESENT if self._satisfied(state.executor) else ProbeStatus.ABSENT

    def apply(self, state: HostState) -> ActionResult:
        executor = state.executor
        reason = self._satisfied(executor)
        if reason:
            return self._result(state, False, f"skipped ({reason})")

        result = executor.run(
            self.command,
            check=False,
            mutable=True,
            env=self.env,
            cwd=self.cwd,
            timeout=self.timeout,
            user=self.user,
        )

        if result.returncode not in self.allowed_returns:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "exec failed name=%s rc=%s cmd=%s",
                    self.label,
                    result.returncode,
                    " ".join(self.command),
                )
            return self._result(state, False, self._error_detail(result), failed=True)

        detail = "dry-run" if executor.dry_run else f"ran (rc={result.returncode})"
        return self._result(state, True, detail)

    def _satisfied(self, executor: Executor) -> Optional[str]:
        """Return why the command need not run, or ``None`` when it must."""

        if self.creates and self._resolve_path(self.creates).exists():
            return f"creates {self._resolve_path(self.creates)}"
        if self.only_if:
            guard = self._run_guard(self.only_if, executor)
            if guard.returncode != 0:
                return f"only_if rc={guard.returncode}"
        if self.unless:
            guard = self._run_guard(self.unless, executor)
            if guard.returncode == 0:
                return f"unless rc={guard.returncode}"
        return None

    def _run_guard(self, command: Sequence[str], executor: Executor) -> CommandResult:
        return executor.run(
            command,
            check=False,
            mutable=False,
            env=self.env,
            cwd=self.cwd,
            timeout=self.timeout,
            user=self.user,
        )

    def _resolve_path(self, path: Path) -> Path:
        if path.is_absolute() or self.cwd is None:
            return path
        return self.cwd / path

    @staticmethod
    def _normalize_command(value: Any) -> list[str]:
        if isinstance(value, str):
            return ["sh", "-c", value]
        if isinstance(value, Sequence):
            return [str(v) for v in value]
        raise ValueError("exec command must be a string or list")

    @staticmethod
    def _normalize_env(value: Any) -> Optional[dict[str, str]]:
        if value is None:
            return None
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        if isinstance(value, Iterable) and not isinstance(value, (str, bytes)):
            env: dict[str, str] = {}
            for item in value:
                key, sep, val = str(item).partition("=")
                if not sep:
                    raise ValueError("env list entries must be KEY=VALUE")
                env[key] = val
            return env
        raise ValueError("exec env must be a mapping or list of KEY=VALUE strings")

    @staticmethod
    def _normalize_returns(value: Any) -> list[int]:
        if value is None:
            return [0]
        if isinstance(value, int):
            return [int(value)]
        if isinstance(value, Iterable):
            return [int(v) for v in value]
        raise ValueError("exec returns must be an int or list of ints")

    @staticmethod
    def _normalize_timeout(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError("exec command_timeout must be numeric") from exc

    @staticmethod
    def _error_detail(result: CommandResult) -> str:
        for text in (result.stderr, result.stdout):
            stripped = (text or "").strip()
            if not stripped:
                continue
            line = stripped.splitlines()[0]
            line = (line[:157] + "...") if len(line) > 160 else line
            return f"rc={result.returncode}: {line}"
        return f"rc={result.returncode}"
