from __future__ import annotations

import hashlib
import re
from pathlib import Path
from string import Template
from typing import Any, Optional

import jinja2

from .base import Operation, parse_mode
from ..state import HostState
from ..types import ActionResult, ProbeStatus


class FileOperation(Operation):
    """Ensure files, directories and symlinks exist with the requested contents."""

    name = "file"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_path = spec.get("path")
        if not raw_path:
            raise ValueError("file operation requires a path")
        self.path = Path(str(raw_path))
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent", "directory"}:
            raise ValueError("file operation state must be 'present', 'absent', or 'directory'")
        raw_content = spec.get("content")
        self.content = "" if raw_content is None else str(raw_content)
        self.mode = parse_mode(spec.get("mode"))
        self.template = spec.get("template")
        self.variables = spec.get("variables", {})
        self.catalog_dir = spec.get("_catalog_dir")
        self.link_target = spec.get("link_target") or spec.get("target")
        self.owner = spec.get("owner") if spec.get("owner") != "" else None
        self.group = spec.get("group") if spec.get("group") != "" else None
        if self.template is not None:
            self.template = str(self.template)
        if not isinstance(self.variables, dict):
            raise ValueError("file operation variables must be a mapping")
        if self.catalog_dir is not None:
            self.catalog_dir = Path(str(self.catalog_dir))
        if self.link_target is not None:
            self.link_target = str(self.link_target)
        if self.template and raw_content is not None:
            raise ValueError("file operation accepts either content or template, not both")

    def probe(self, state: HostState) -> ProbeStatus:
        facts = state.stat(self.path)
        if self.state == "absent":
            return ProbeStatus.ABSENT if facts else ProbeStatus.PRESENT
        if facts is None:
            return ProbeStatus.ABSENT
        if self.link_target:
            if facts.kind == "symlink" and state.link_target(self.path) == self.link_target:
                return ProbeStatus.PRESENT
            return ProbeStatus.PARTIAL
        if self.state == "directory":
            if facts.kind != "directory":
                return ProbeStatus.PARTIAL
        else:
            expected = hashlib.sha256(self._render_content(state).encode()).hexdigest()
            if facts.kind != "file" or state.digest(self.path) != expected:
                return ProbeStatus.PARTIAL
        if self.mode is not None and facts.mode != self.mode:
            return ProbeStatus.PARTIAL
        uid, gid = self._ownership(state, strict=False)
        if (self.owner is not None and facts.uid != uid) or (self.group is not None and facts.gid != gid):
            return ProbeStatus.PARTIAL
        return ProbeStatus.PRESENT

    def apply(self, state: HostState) -> ActionResult:
        executor = state.executor
        if self.state == "absent":
            removed = executor.remove_path(self.path)
            return self._result(state, removed, "removed" if removed else "noop")
        if self.link_target:
            changed, detail = executor.ensure_symlink(self.path, self.link_target)
            return self._result(state, changed, detail)
        if self.state == "directory":
            changed, detail = executor.ensure_directory(self.path, mode=self.mode)
        else:
            content = self._render_content(state)
            changed, detail = executor.write_file(self.path, content=content, mode=self.mode)
        changed, detail = self._apply_ownership(state, changed, detail)
        return self._result(state, changed, detail)

    def _render_content(self, state: HostState) -> str:
        if not self.template:
            return self.content
        template_text = self._template_path().read_text()
        context: dict[str, object] = dict(state.host.variables)
        context.update(self.variables)
        if self._looks_like_jinja(template_text):
            env = jinja2.Environment(
                undefined=jinja2.StrictUndefined, autoescape=False, keep_trailing_newline=True
            )
            return env.from_string(template_text).render(**context)
        return Template(template_text).safe_substitute(context)

    def _template_path(self) -> Path:
        template_path = Path(str(self.template)).expanduser()
        if not template_path.is_absolute() and self.catalog_dir is not None:
            template_path = self.catalog_dir / template_path
        return template_path

    def _apply_ownership(self, state: HostState, changed: bool, detail: str) -> tuple[bool, str]:
        uid, gid = self._ownership(state, strict=True)
        if uid is None and gid is None:
            return changed, detail
        chown_changed, chown_detail = state.executor.set_ownership(self.path, uid=uid, gid=gid)
        if chown_changed:
            changed = True
            detail = f"{detail}, {chown_detail}" if detail and detail != "noop" else chown_detail
        return changed, detail

    def _ownership(self, state: HostState, *, strict: bool) -> tuple[Optional[int], Optional[int]]:
        # Owners are looked up on the host at run time; the account may be
        # created by an earlier action in the same plan.
        uid = self._lookup(self.owner, state.uid_for, "user", strict)
        gid = self._lookup(self.group, state.gid_for, "group", strict)
        return uid, gid

    @staticmethod
    def _lookup(value: Optional[object], resolver, kind: str, strict: bool) -> Optional[int]:
        if value is None:
            return None
        if isinstance(value, int):
            return value
        text = str(value).strip()
        if not text:
            return None
        if text.isdigit():
            return int(text)
        resolved = resolver(text)
        if resolved is None and strict:
            raise RuntimeError(f"unknown {kind} '{text}'")
        return resolved

    @staticmethod
    def _looks_like_jinja(template_text: str) -> bool:
        return bool(re.search(r"{[{%]", template_text))
