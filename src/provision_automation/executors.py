from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Sequence, Union
import os
import pwd
import shutil
import signal
import stat
import subprocess
import time

from .types import HostConfig


@dataclass
class CommandResult:
    command: list[str]
    stdout: str
    stderr: str
    returncode: int


class Executor:
    """Base executor abstraction used by operations and probes."""

    def __init__(self, host: HostConfig, *, dry_run: bool = False):
        self.host = host
        self.dry_run = dry_run
        self._deadline: Optional[float] = None

    @contextmanager
    def deadline(self, seconds: float) -> Iterator[None]:
        """Bound every command started inside the block to ``seconds`` in total."""

        previous = self._deadline
        self._deadline = time.monotonic() + seconds
        try:
            yield
        finally:
            self._deadline = previous

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
        user: Optional[str] = None,
        input: Optional[str] = None,
    ) -> CommandResult:
        """Run ``command`` and skip it during dry-runs when it changes the host.

        ``user`` runs the command through ``sudo -u`` unless the current
        process already is that user. ``input`` is written to stdin.
        """

        cmd_list = list(command)
        if user and not self._is_current_user(user):
            cmd_list = ["sudo", "-u", user, "--", *cmd_list]
        if self.dry_run and mutable:
            return CommandResult(cmd_list, "", "skipped (dry-run)", 0)

        exec_env = None
        if env:
            exec_env = os.environ.copy()
            exec_env.update(env)

        timeout = self._bounded(cmd_list, timeout)
        with subprocess.Popen(
            cmd_list,
            stdin=subprocess.PIPE if input is not None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=exec_env,
            cwd=str(cwd) if cwd is not None else None,
            start_new_session=timeout is not None,
        ) as proc:
            try:
                stdout, stderr = proc.communicate(input=input, timeout=timeout)
            except subprocess.TimeoutExpired:
                # the whole group goes, so `sh -c` children do not linger
                os.killpg(proc.pid, signal.SIGKILL)
                proc.communicate()
                raise
        if check and proc.returncode != 0:
            raise subprocess.CalledProcessError(
                proc.returncode,
                cmd_list,
                stdout,
                stderr,
            )
        return CommandResult(cmd_list, stdout, stderr, proc.returncode)

    def _bounded(self, cmd_list: list[str], timeout: Optional[float]) -> Optional[float]:
        if self._deadline is None:
            return timeout
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            raise subprocess.TimeoutExpired(cmd_list, 0)
        return remaining if timeout is None else min(timeout, remaining)

    @staticmethod
    def _is_current_user(user: str) -> bool:
        try:
            return pwd.getpwuid(os.geteuid()).pw_name == user
        except KeyError:
            return False

    # File primitives -----------------------------------------------------
    def read_file(self, path: Path) -> Optional[str]:
        raise NotImplementedError

    def read_bytes(self, path: Path) -> Optional[bytes]:
        raise NotImplementedError

    def write_file(self, path: Path, *, content: str, mode: Optional[int]) -> tuple[bool, str]:
        raise NotImplementedError

    def install_file(self, source: Path, path: Path, *, mode: Optional[int]) -> tuple[bool, str]:
        raise NotImplementedError

    def ensure_directory(self, path: Path, *, mode: Optional[int]) -> tuple[bool, str]:
        raise NotImplementedError

    def ensure_symlink(self, path: Path, target: str) -> tuple[bool, str]:
        raise NotImplementedError

    def set_ownership(
        self, path: Path, *, uid: Optional[int], gid: Optional[int]
    ) -> tuple[bool, str]:
        raise NotImplementedError

    def remove_path(self, path: Path) -> bool:
        raise NotImplementedError


class LocalExecutor(Executor):
    """Executor that acts directly on the local host."""

    def read_file(self, path: Path) -> Optional[str]:
        try:
            return path.read_text()
        except FileNotFoundError:
            return None

    def read_bytes(self, path: Path) -> Optional[bytes]:
        try:
            return path.read_bytes()
        except (FileNotFoundError, IsADirectoryError):
            return None

    def write_file(self, path: Path, *, content: str, mode: Optional[int]) -> tuple[bool, str]:
        current = self.read_file(path)
        changed = False
        reasons: list[str] = []

        if current != content:
            changed = True
            reasons.append("content")
            if not self.dry_run:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(content)

        changed, reasons = self._ensure_mode(path, mode, changed, reasons)
        detail = ", ".join(reasons) if reasons else "noop"
        return changed, detail

    def install_file(self, source: Path, path: Path, *, mode: Optional[int]) -> tuple[bool, str]:
        changed = False
        reasons: list[str] = []
        if self.read_bytes(path) != source.read_bytes():
            changed = True
            reasons.append("content")
            if not self.dry_run:
                path.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(source, path)

        changed, reasons = self._ensure_mode(path, mode, changed, reasons)
        detail = ", ".join(reasons) if reasons else "noop"
        return changed, detail

    def ensure_directory(self, path: Path, *, mode: Optional[int]) -> tuple[bool, str]:
        changed = False
        reasons: list[str] = []

        if not path.exists():
            changed = True
            reasons.append("created")
            if not self.dry_run:
                path.mkdir(parents=True, exist_ok=True)
        elif not path.is_dir():
            changed = True
            reasons.append("replaced-non-dir")
            if not self.dry_run:
                self.remove_path(path)
                path.mkdir(parents=True, exist_ok=True)

        changed, reasons = self._ensure_mode(path, mode, changed, reasons)
        detail = ", ".join(reasons) if reasons else "noop"
        return changed, detail

    def ensure_symlink(self, path: Path, target: str) -> tuple[bool, str]:
        current = os.readlink(path) if path.is_symlink() else None
        if current == target:
            return False, "noop"
        if not self.dry_run:
            if path.is_symlink() or path.exists():
                self.remove_path(path)
            path.parent.mkdir(parents=True, exist_ok=True)
            os.symlink(target, path)
        return True, f"link->{target}"

    def set_ownership(
        self, path: Path, *, uid: Optional[int], gid: Optional[int]
    ) -> tuple[bool, str]:
        try:
            st = path.stat()
        except FileNotFoundError:
            # dry-run never created the path; report the intent
            return (uid is not None or gid is not None), "owner"
        want_uid = st.st_uid if uid is None else uid
        want_gid = st.st_gid if gid is None else gid
        if (st.st_uid, st.st_gid) == (want_uid, want_gid):
            return False, "noop"
        if not self.dry_run:
            os.chown(path, want_uid, want_gid)
        return True, f"owner->{want_uid}:{want_gid}"

    def remove_path(self, path: Path) -> bool:
        if not path.exists() and not path.is_symlink():
            return False
        if self.dry_run:
            return True
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
        return True

    def _ensure_mode(
        self, path: Path, mode: Optional[int], changed: bool, reasons: list[str]
    ) -> tuple[bool, list[str]]:
        if mode is None:
            return changed, reasons
        existing_mode = self._file_mode(path)
        if existing_mode != mode:
            changed = True
            reasons.append(f"mode->{mode:04o}")
            if not self.dry_run:
                # ``chmod`` fails if the path is absent, so guard it.
                if path.exists():
                    os.chmod(path, mode)
        return changed, reasons

    @staticmethod
    def _file_mode(path: Path) -> Optional[int]:
        try:
            return stat.S_IMODE(path.stat().st_mode)
        except FileNotFoundError:
            return None
