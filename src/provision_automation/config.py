from __future__ import annotations

import ipaddress
import logging
import re
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .errors import ConfigError
from .secrets import SecretResolver

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = Path("/etc/provision/provision.toml")

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")
HOSTNAME_LABEL_RE = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")
VERSION_RE = re.compile(r"^\d+\.\d+\.\d+$")
MODE_RE = re.compile(r"^0?[0-7]{3,4}$")
EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)+$")


@dataclass(frozen=True)
class EngineSettings:
    catalog: Optional[Path] = None
    host: str = "local"
    default_timeout: Optional[float] = None
    plugin_dirs: tuple[Path, ...] = ()
    plugin_modules: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProvisionConfig:
    """Validated parameters for one provisioning run."""

    db_name: str
    db_user: str
    db_password: str = field(repr=False)
    domain: str
    db_port: int = 5432
    server_ip: Optional[str] = None
    dhis2_version: str = "40.4.0"
    tomcat_version: str = "9.0.64"
    postgres_version: str = "16"
    java_package: str = "openjdk-11-jdk"
    java_home: str = "/usr/lib/jvm/java-11-openjdk-amd64"
    dhis2_user: str = "dhis"
    dhis2_home: str = "/home/dhis/config"
    tomcat_home: str = "/opt/tomcat9"
    dhis2_config_mode: str = "0600"
    certbot_email: Optional[str] = None
    engine: EngineSettings = field(default_factory=EngineSettings)

    def parameters(self) -> dict[str, Any]:
        """Parameter values available to catalog placeholders and templates."""

        values = asdict(self)
        values.pop("engine")
        return values


def _identifier(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not IDENTIFIER_RE.match(value):
        return "must be an identifier of letters, digits and underscores (max 63)"
    return None


def _non_empty(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        return "must be a non-empty string"
    return None


def _domain(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value:
        return "must be a non-empty domain name"
    labels = value.rstrip(".").split(".")
    if len(value) > 253 or len(labels) < 2 or not all(HOSTNAME_LABEL_RE.match(label) for label in labels):
        return f"'{value}' is not a valid domain name"
    return None


def _port(value: Any) -> Optional[str]:
    if isinstance(value, bool) or not isinstance(value, int):
        return f"'{value}' is not an integer port"
    if not 1 <= value <= 65535:
        return f"{value} is outside 1-65535"
    return None


def _ip(value: Any) -> Optional[str]:
    try:
        ipaddress.ip_address(str(value))
    except ValueError:
        return f"'{value}' is not an IP address"
    return None


def _version(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not VERSION_RE.match(value):
        return f"'{value}' is not a MAJOR.MINOR.PATCH version"
    return None


def _integer_string(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value.isdigit():
        return f"'{value}' must be a quoted integer"
    return None


def _absolute(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value.startswith("/"):
        return f"'{value}' must be an absolute path"
    return None


def _mode(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not MODE_RE.match(value):
        return f"'{value}' must be an octal mode string such as \"0600\""
    return None


def _email(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not EMAIL_RE.fullmatch(value):
        return f"'{value}' is not an email address"
    return None


VALIDATORS: dict[str, Callable[[Any], Optional[str]]] = {
    "db_name": _identifier,
    "db_user": _identifier,
    "db_password": _non_empty,
    "domain": _domain,
    "db_port": _port,
    "server_ip": _ip,
    "dhis2_version": _version,
    "tomcat_version": _version,
    "postgres_version": _integer_string,
    "java_package": _non_empty,
    "java_home": _absolute,
    "dhis2_user": _identifier,
    "dhis2_home": _absolute,
    "tomcat_home": _absolute,
    "dhis2_config_mode": _mode,
    "certbot_email": _email,
}

REQUIRED = ("db_name", "db_user", "db_password", "domain")
ENGINE_KEYS = {f.name for f in fields(EngineSettings)}


def load_config(path: Path, resolver: Optional[SecretResolver] = None) -> ProvisionConfig:
    path = Path(path)
    try:
        text = path.read_text()
    except FileNotFoundError:
        raise ConfigError(f"configuration file {path} does not exist") from None
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{path}: {exc}") from None
    return parse_config(data, base_dir=path.parent, resolver=resolver)


def parse_config(
    data: dict[str, Any],
    *,
    base_dir: Optional[Path] = None,
    resolver: Optional[SecretResolver] = None,
) -> ProvisionConfig:
    """Validate a raw mapping, reporting every problem at once."""

    data = dict(data)
    engine_data = data.pop("engine", {})
    problems: list[str] = []

    unknown = sorted(key for key in data if key not in VALIDATORS)
    if unknown:
        problems.append("unknown keys: " + ", ".join(unknown))
    missing = [key for key in REQUIRED if key not in data]
    if missing:
        problems.append("missing required keys: " + ", ".join(missing))

    resolver = resolver or SecretResolver()
    known: dict[str, Any] = {}
    for key, value in data.items():
        if key not in VALIDATORS:
            continue
        try:
            known.update(resolver.resolve({key: value}))
        except ConfigError as exc:
            problems.append(str(exc))

    for key, value in known.items():
        if isinstance(value, dict):
            problems.append(f"{key}: unsupported reference {sorted(value)}")
            continue
        error = VALIDATORS[key](value)
        if error:
            problems.append(f"{key}: {error}")

    engine: Optional[EngineSettings] = None
    if not isinstance(engine_data, dict):
        problems.append("engine: must be a table")
    else:
        engine, engine_problems = _parse_engine(engine_data, base_dir)
        problems.extend(engine_problems)

    if problems:
        raise ConfigError("invalid configuration", problems)

    if "dhis2_config_mode" in known:
        known["dhis2_config_mode"] = f"{int(known['dhis2_config_mode'], 8):04o}"
    config = ProvisionConfig(engine=engine or EngineSettings(), **known)
    _warn_on_open_mode(config)
    return config


def _parse_engine(data: dict[str, Any], base_dir: Optional[Path]) -> tuple[EngineSettings, list[str]]:
    problems: list[str] = []
    unknown = sorted(key for key in data if key not in ENGINE_KEYS)
    if unknown:
        problems.append("unknown engine keys: " + ", ".join(unknown))

    def _path(value: Any) -> Path:
        candidate = Path(str(value)).expanduser()
        if not candidate.is_absolute() and base_dir is not None:
            candidate = base_dir / candidate
        return candidate

    catalog = _path(data["catalog"]) if data.get("catalog") else None
    host = str(data.get("host", "local"))
    timeout = data.get("default_timeout")
    if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0):
        problems.append(f"engine.default_timeout: '{timeout}' must be a positive number")
        timeout = None
    plugin_dirs = data.get("plugin_dirs", [])
    plugin_modules = data.get("plugin_modules", [])
    if not isinstance(plugin_dirs, list):
        problems.append("engine.plugin_dirs: must be a list")
        plugin_dirs = []
    if not isinstance(plugin_modules, list):
        problems.append("engine.plugin_modules: must be a list")
        plugin_modules = []
    settings = EngineSettings(
        catalog=catalog,
        host=host,
        default_timeout=float(timeout) if timeout is not None else None,
        plugin_dirs=tuple(_path(item) for item in plugin_dirs),
        plugin_modules=tuple(str(item) for item in plugin_modules),
    )
    return settings, problems


def _warn_on_open_mode(config: ProvisionConfig) -> None:
    # dhis.conf carries the database password; earlier install scripts
    # disagreed on 0600 versus 0755, so an open mode is surfaced, not fixed.
    mode = int(config.dhis2_config_mode, 8)
    if mode & 0o077:
        logger.warning(
            "dhis2_config_mode=%s lets group/other read dhis.conf, which holds the database password",
            config.dhis2_config_mode,
        )
