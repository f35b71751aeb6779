from __future__ import annotations

from typing import Iterable, Optional


class ProvisionError(Exception):
    """Base class for errors raised by the provisioning engine."""


class ConfigError(ProvisionError, ValueError):
    """Bad or missing input detected before anything touches the host."""

    def __init__(self, message: str, problems: Optional[Iterable[str]] = None):
        self.problems = list(problems or [])
        if self.problems:
            message = f"{message}: " + "; ".join(self.problems)
        super().__init__(message)


class CycleError(ProvisionError):
    """The action dependency graph contains a cycle."""

    def __init__(self, members: Iterable[str]):
        self.members = list(members)
        path = self.members + self.members[:1]
        super().__init__("dependency cycle detected: " + " -> ".join(path))


class ProbeError(ProvisionError):
    """A probe could not query the host."""

    def __init__(self, action_id: str, cause: BaseException):
        self.action_id = action_id
        self.cause = cause
        super().__init__(f"probe for {action_id} failed: {cause}")


class ActionError(ProvisionError):
    """Applying an action failed."""


class ActionTimeoutError(ActionError):
    def __init__(self, action_id: str, timeout: float):
        self.action_id = action_id
        self.timeout = timeout
        super().__init__(f"{action_id} did not finish within {timeout:g}s")
