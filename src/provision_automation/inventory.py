from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .errors import ConfigError
from .types import ActionSpec, RetryPolicy

CATALOG_DIR = Path(__file__).parent / "catalogs"
DEFAULT_CATALOG = CATALOG_DIR / "dhis2.toml"

RESERVED_KEYS = {"id", "type", "description", "depends_on", "non_fatal", "retry", "timeout"}


class CatalogLoader:
    """Loads action catalogs from TOML files.

    A catalog is a list of ``[[actions]]`` tables. Reserved keys describe the
    action itself; every other key is passed to the operation untouched, so
    ``${param}`` placeholders survive until plan assembly.
    """

    def load(self, path: Optional[Path] = None) -> list[ActionSpec]:
        path = Path(path) if path is not None else DEFAULT_CATALOG
        try:
            data = tomllib.loads(path.read_text())
        except FileNotFoundError:
            raise ConfigError(f"catalog {path} does not exist") from None
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"{path}: {exc}") from None
        return self.parse(data, base_dir=path.parent, source=str(path))

    def parse(self, data: dict[str, Any], *, base_dir: Optional[Path] = None, source: str = "catalog") -> list[ActionSpec]:
        raw_actions = data.get("actions", [])
        if not isinstance(raw_actions, list):
            raise ConfigError(f"{source}: 'actions' must be an array of tables")
        problems: list[str] = []
        specs: list[ActionSpec] = []
        for index, raw in enumerate(raw_actions, start=1):
            try:
                spec = self._parse_action(raw, index)
            except ValueError as exc:
                problems.append(str(exc))
                continue
            if base_dir is not None:
                spec.data.setdefault("_catalog_dir", str(base_dir))
            specs.append(spec)
        if problems:
            raise ConfigError(f"{source}: invalid catalog", problems)
        return specs

    @staticmethod
    def _parse_action(raw: Any, index: int) -> ActionSpec:
        if not isinstance(raw, dict):
            raise ValueError(f"action {index} must be a table")
        action_id = raw.get("id")
        if not action_id:
            raise ValueError(f"action {index} is missing an id")
        action_type = raw.get("type")
        if not action_type:
            raise ValueError(f"action {action_id} is missing a type")
        depends = raw.get("depends_on", [])
        if isinstance(depends, str):
            depends_list = [depends]
        else:
            depends_list = [str(dep) for dep in depends or []]
        non_fatal = raw.get("non_fatal", False)
        if not isinstance(non_fatal, bool):
            raise ValueError(f"action {action_id}: non_fatal must be true or false")
        data = {k: v for k, v in raw.items() if k not in RESERVED_KEYS}
        return ActionSpec(
            id=str(action_id),
            type=str(action_type),
            data=data,
            description=str(raw.get("description", "")),
            depends_on=depends_list,
            non_fatal=non_fatal,
            retry=CatalogLoader._parse_retry(raw.get("retry"), str(action_id)),
            timeout=CatalogLoader._parse_timeout(raw.get("timeout"), str(action_id)),
        )

    @staticmethod
    def _parse_retry(value: Any, action_id: str) -> RetryPolicy:
        if value is None:
            return RetryPolicy()
        if isinstance(value, int) and not isinstance(value, bool):
            value = {"attempts": value}
        if not isinstance(value, dict):
            raise ValueError(f"action {action_id}: retry must be a table or an attempt count")
        try:
            attempts = int(value.get("attempts", 1))
            backoff = float(value.get("backoff", 0.0))
            multiplier = float(value.get("multiplier", 2.0))
        except (TypeError, ValueError):
            raise ValueError(f"action {action_id}: retry values must be numeric") from None
        if attempts < 1 or backoff < 0 or multiplier < 1:
            raise ValueError(
                f"action {action_id}: retry needs attempts >= 1, backoff >= 0, multiplier >= 1"
            )
        return RetryPolicy(max_attempts=attempts, backoff=backoff, multiplier=multiplier)

    @staticmethod
    def _parse_timeout(value: Any, action_id: str) -> Optional[float]:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ValueError(f"action {action_id}: timeout must be a positive number of seconds")
        return float(value)
