from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from ..state import HostState
from ..types import ActionResult, ProbeStatus


class Operation(ABC):
    """Shared surface for provisioning actions.

    ``probe`` must not change the host. ``apply`` must converge from any
    partial state and be safe to call again once it has succeeded.
    """

    name = "operation"

    def __init__(self, spec: dict[str, Any]):
        self.spec = spec

    @abstractmethod
    def probe(self, state: HostState) -> ProbeStatus:
        """Report whether the target state already holds on ``state.host``."""

    @abstractmethod
    def apply(self, state: HostState) -> ActionResult:
        """Bring ``state.host`` to the target state."""

    def resource(self) -> Optional[str]:
        for key in ("name", "path", "dest", "database"):
            value = self.spec.get(key)
            if value:
                return str(value)
        return None

    def _result(self, state: HostState, changed: bool, details: str, failed: bool = False) -> ActionResult:
        return ActionResult(
            host=state.host.name,
            action=self.name,
            changed=changed,
            details=details,
            failed=failed,
            resource=self.resource(),
        )


def coerce_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "on", "1"}:
            return True
        if lowered in {"false", "no", "off", "0"}:
            return False
        raise ValueError(f"Unable to interpret boolean value '{value}'")
    return bool(value)


def parse_mode(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    # mode strings are always octal, with or without the leading zero
    try:
        return int(text, 8)
    except ValueError:
        raise ValueError(f"invalid file mode '{text}'") from None


def combine(statuses: list[bool]) -> ProbeStatus:
    """Fold per-item "already in place" checks into a probe status."""

    if statuses and all(statuses):
        return ProbeStatus.PRESENT
    if any(statuses):
        return ProbeStatus.PARTIAL
    return ProbeStatus.ABSENT
