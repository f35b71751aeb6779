from __future__ import annotations

import hashlib
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Optional

from .base import Operation, parse_mode
from ..errors import ActionError
from ..executors import Executor
from ..state import HostState
from ..types import ActionResult, ProbeStatus


class RemoteFetcher:
    def __init__(self, executor: Executor):
        self.executor = executor

    def fetch(self, source: str) -> Path:
        tmp_fd, tmp_name = tempfile.mkstemp(prefix="provision-fetch-")
        os.close(tmp_fd)
        tmp_path = Path(tmp_name)
        try:
            if source.startswith(("http://", "https://")):
                self.executor.run(["curl", "-fsSL", "--retry", "2", source, "-o", str(tmp_path)])
            elif source.startswith("file://"):
                shutil.copyfile(Path(source[7:]), tmp_path)
            else:
                local = Path(source)
                if not local.exists():
                    raise FileNotFoundError(f"Source {source} not found")
                shutil.copyfile(local, tmp_path)
        except BaseException:
            self.cleanup(tmp_path)
            raise
        return tmp_path

    @staticmethod
    def cleanup(path: Path) -> None:
        path.unlink(missing_ok=True)


class RemoteFileOperation(Operation):
    """Download a file (WAR, tarball, key) once and keep its mode and owner.

    Without a ``checksum`` an existing destination is trusted; with one, a
    mismatching destination is fetched again.
    """

    name = "remote_file"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.source = spec.get("source")
        if not self.source:
            raise ValueError("remote_file requires a source")
        raw_dest = spec.get("dest") or spec.get("path")
        if not raw_dest:
            raise ValueError("remote_file requires a dest/path")
        self.dest = Path(str(raw_dest))
        self.mode = parse_mode(spec.get("mode"))
        self.owner = spec.get("owner") or None
        self.group = spec.get("group") or None
        checksum = spec.get("checksum")
        self.checksum_algo: Optional[str] = None
        self.checksum_value: Optional[str] = None
        if checksum:
            text = str(checksum)
            if ":" in text:
                algo, value = text.split(":", 1)
                self.checksum_algo = algo.lower()
                self.checksum_value = value.strip().lower()
            else:
                self.checksum_algo = "sha256"
                self.checksum_value = text.strip().lower()
            if self.checksum_algo not in hashlib.algorithms_available:
                raise ValueError(f"remote_file checksum algorithm '{self.checksum_algo}' is not supported")

    def probe(self, state: HostState) -> ProbeStatus:
        facts = state.stat(self.dest)
        if facts is None:
            return ProbeStatus.ABSENT
        if not self._content_ok(state):
            return ProbeStatus.PARTIAL
        if self.mode is not None and facts.mode != self.mode:
            return ProbeStatus.PARTIAL
        if self.owner and facts.uid != state.uid_for(str(self.owner)):
            return ProbeStatus.PARTIAL
        if self.group and facts.gid != state.gid_for(str(self.group)):
            return ProbeStatus.PARTIAL
        return ProbeStatus.PRESENT

    def apply(self, state: HostState) -> ActionResult:
        executor = state.executor
        changes: list[str] = []
        if not state.exists(self.dest) or not self._content_ok(state):
            fetcher = RemoteFetcher(executor)
            tmp = fetcher.fetch(str(self.source))
            try:
                self._verify(tmp)
                changed, detail = executor.install_file(tmp, self.dest, mode=self.mode)
            finally:
                RemoteFetcher.cleanup(tmp)
            if changed:
                changes.append(f"downloaded ({detail})")
        elif self.mode is not None and state.stat(self.dest).mode != self.mode:
            if not executor.dry_run:
                os.chmod(self.dest, self.mode)
            changes.append(f"mode->{self.mode:04o}")

        if self.owner or self.group:
            uid = state.uid_for(str(self.owner)) if self.owner else None
            gid = state.gid_for(str(self.group)) if self.group else None
            if (self.owner and uid is None) or (self.group and gid is None):
                raise ActionError(f"unknown owner {self.owner}:{self.group} for {self.dest}")
            chown_changed, chown_detail = executor.set_ownership(self.dest, uid=uid, gid=gid)
            if chown_changed:
                changes.append(chown_detail)

        detail = ", ".join(changes) if changes else "noop"
        return self._result(state, bool(changes), detail)

    def _content_ok(self, state: HostState) -> bool:
        if not self.checksum_algo:
            return True
        return state.digest(self.dest, self.checksum_algo) == self.checksum_value

    def _verify(self, path: Path) -> None:
        if not self.checksum_algo:
            return
        digest = hashlib.new(self.checksum_algo, path.read_bytes()).hexdigest().lower()
        if digest != self.checksum_value:
            raise ActionError(
                f"checksum mismatch for {self.source}: expected {self.checksum_value}, got {digest}"
            )
