from __future__ import annotations

import grp
import hashlib
import os
import pwd
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from .executors import CommandResult, Executor
from .types import HostConfig

OS_RELEASE = Path("/etc/os-release")


@dataclass
class FileFacts:
    kind: str  # "file", "directory", "symlink"
    mode: int
    uid: int
    gid: int


class HostState:
    """Live view of host facts.

    Every query goes to the host. Nothing is remembered between calls, so a
    probe always sees changes made out-of-band since the last run.
    """

    def __init__(self, host: HostConfig, executor: Executor):
        self.host = host
        self.executor = executor

    @property
    def dry_run(self) -> bool:
        return self.executor.dry_run

    def run(self, command: Sequence[str], **kwargs) -> CommandResult:
        return self.executor.run(command, **kwargs)

    def query(self, command: Sequence[str], **kwargs) -> CommandResult:
        """Run a read-only command; a non-zero exit is returned, not raised."""

        kwargs.setdefault("check", False)
        return self.executor.run(command, mutable=False, **kwargs)

    # Filesystem ---------------------------------------------------------
    def stat(self, path: Path) -> Optional[FileFacts]:
        try:
            st = os.lstat(path)
        except FileNotFoundError:
            return None
        if stat.S_ISLNK(st.st_mode):
            kind = "symlink"
        elif stat.S_ISDIR(st.st_mode):
            kind = "directory"
        else:
            kind = "file"
        return FileFacts(kind=kind, mode=stat.S_IMODE(st.st_mode), uid=st.st_uid, gid=st.st_gid)

    def exists(self, path: Path) -> bool:
        return self.stat(path) is not None

    def link_target(self, path: Path) -> Optional[str]:
        try:
            return os.readlink(path)
        except (FileNotFoundError, OSError):
            return None

    def read_text(self, path: Path) -> Optional[str]:
        return self.executor.read_file(path)

    def digest(self, path: Path, algorithm: str = "sha256") -> Optional[str]:
        data = self.executor.read_bytes(path)
        if data is None:
            return None
        return hashlib.new(algorithm, data).hexdigest()

    # Accounts -----------------------------------------------------------
    def user(self, name: str) -> Optional[pwd.struct_passwd]:
        try:
            return pwd.getpwnam(name)
        except KeyError:
            return None

    def uid_for(self, owner: str) -> Optional[int]:
        entry = self.user(owner)
        return entry.pw_uid if entry else None

    def gid_for(self, group: str) -> Optional[int]:
        try:
            return grp.getgrnam(group).gr_gid
        except KeyError:
            return None

    # Distribution -------------------------------------------------------
    def os_release(self) -> dict[str, str]:
        text = self.read_text(OS_RELEASE) or ""
        facts: dict[str, str] = {}
        for line in text.splitlines():
            key, sep, value = line.partition("=")
            if not sep:
                continue
            facts[key.strip()] = value.strip().strip('"')
        return facts

    def codename(self) -> str:
        facts = self.os_release()
        name = facts.get("VERSION_CODENAME") or facts.get("UBUNTU_CODENAME")
        if not name:
            raise RuntimeError(f"cannot determine distribution codename from {OS_RELEASE}")
        return name
