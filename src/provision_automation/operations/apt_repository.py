from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from .base import Operation, coerce_bool, combine, parse_mode
from .package import APT_ENV
from .remote_file import RemoteFetcher
from ..state import HostState
from ..types import ActionResult, ProbeStatus


class AptRepositoryOperation(Operation):
    """Manage an apt source under /etc/apt/sources.list.d with its signing key.

    The key is stored in a dedicated keyring and referenced with
    ``signed-by`` rather than added to the global trust store.
    """

    name = "apt_repository"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name")
        if not raw_name:
            raise ValueError("apt_repository requires a name")
        self.repo = str(raw_name)
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("apt_repository state must be 'present' or 'absent'")

        self.uri = spec.get("uri")
        if self.state == "present" and not self.uri:
            raise ValueError("apt_repository requires a uri when state=present")
        self.suite: Optional[str] = str(spec["suite"]) if spec.get("suite") else None
        self.suite_suffix = str(spec.get("suite_suffix", ""))
        components = spec.get("components", ["main"])
        if isinstance(components, str):
            components = components.split()
        self.components = [str(item) for item in components]
        self.arch = spec.get("arch")
        self.key_url = spec.get("key_url")
        self.keyring = Path(str(spec.get("keyring") or f"/etc/apt/keyrings/{self.repo}.asc"))
        self.path = Path(str(spec.get("path") or f"/etc/apt/sources.list.d/{self.repo}.list"))
        self.mode = parse_mode(spec.get("mode", "0644"))
        self.update_cache = bool(coerce_bool(spec.get("update_cache", True)))

    def probe(self, state: HostState) -> ProbeStatus:
        if self.state == "absent":
            return ProbeStatus.PRESENT if not state.exists(self.path) else ProbeStatus.ABSENT
        checks = [state.read_text(self.path) == self._render(state)]
        if self.key_url:
            checks.append(state.exists(self.keyring))
        return combine(checks)

    def apply(self, state: HostState) -> ActionResult:
        executor = state.executor
        if self.state == "absent":
            removed = executor.remove_path(self.path)
            return self._result(state, removed, "removed" if removed else "noop")

        changes: list[str] = []
        if self.key_url and not state.exists(self.keyring):
            fetcher = RemoteFetcher(executor)
            tmp = fetcher.fetch(str(self.key_url))
            try:
                executor.ensure_directory(self.keyring.parent, mode=0o755)
                executor.install_file(tmp, self.keyring, mode=0o644)
            finally:
                RemoteFetcher.cleanup(tmp)
            changes.append("key")

        changed, detail = executor.write_file(self.path, content=self._render(state), mode=self.mode)
        if changed:
            changes.append(f"source ({detail})")
        if changes and self.update_cache:
            executor.run(["apt-get", "update"], env=APT_ENV)
            changes.append("cache-updated")

        detail = ", ".join(changes) if changes else "noop"
        return self._result(state, bool(changes), detail)

    def _render(self, state: HostState) -> str:
        suite = (self.suite or state.codename()) + self.suite_suffix
        options: list[str] = []
        if self.arch:
            options.append(f"arch={self.arch}")
        if self.key_url:
            options.append(f"signed-by={self.keyring}")
        prefix = f"deb [{' '.join(options)}]" if options else "deb"
        return f"{prefix} {self.uri} {suite} {' '.join(self.components)}\n"
