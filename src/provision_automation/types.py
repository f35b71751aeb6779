from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ProbeStatus(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"
    PARTIAL = "partial"


class ExecutionStatus(str, Enum):
    SKIPPED = "skipped"
    APPLIED = "applied"
    FAILED = "failed"
    NOT_RUN = "not_run"
    PLANNED = "planned"


@dataclass
class HostConfig:
    name: str
    connection: str = "local"
    address: Optional[str] = None
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 1
    backoff: float = 0.0
    multiplier: float = 2.0

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed ``attempt`` (1-based)."""

        if self.backoff <= 0:
            return 0.0
        return self.backoff * self.multiplier ** (attempt - 1)


@dataclass
class ActionSpec:
    """Catalog entry before parameters are rendered and the operation is bound."""

    id: str
    type: str
    data: dict[str, Any]
    description: str = ""
    depends_on: list[str] = field(default_factory=list)
    non_fatal: bool = False
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeout: Optional[float] = None


@dataclass(frozen=True)
class Action:
    id: str
    type: str
    operation: Any
    description: str = ""
    depends_on: frozenset[str] = frozenset()
    non_fatal: bool = False
    retry: RetryPolicy = RetryPolicy()
    timeout: Optional[float] = None


@dataclass(frozen=True)
class Plan:
    host: HostConfig
    actions: tuple[Action, ...]

    def ids(self) -> list[str]:
        return [action.id for action in self.actions]

    def get(self, action_id: str) -> Action:
        for action in self.actions:
            if action.id == action_id:
                return action
        raise KeyError(action_id)


@dataclass
class ActionResult:
    host: str
    action: str
    changed: bool
    details: str
    failed: bool = False
    resource: Optional[str] = None


@dataclass
class ExecutionResult:
    action_id: str
    status: ExecutionStatus
    probe: Optional[ProbeStatus] = None
    reason: Optional[str] = None
    details: str = ""
    attempts: int = 0
    duration_ms: int = 0

    @property
    def failed(self) -> bool:
        return self.status is ExecutionStatus.FAILED


@dataclass
class RunReport:
    results: list[ExecutionResult] = field(default_factory=list)
    halted_by: Optional[str] = None
    dry_run: bool = False

    @property
    def failed(self) -> list[ExecutionResult]:
        return [result for result in self.results if result.failed]

    def status_of(self, action_id: str) -> ExecutionStatus:
        for result in self.results:
            if result.action_id == action_id:
                return result.status
        raise KeyError(action_id)
