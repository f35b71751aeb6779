from __future__ import annotations

import base64
import json
import os
from typing import Any, Optional

from .errors import ConfigError

try:  # pragma: no cover
    import boto3  # type: ignore
except Exception:  # pragma: no cover
    boto3 = None


class SecretResolver:
    """Resolves secret references in configuration values.

    ``{aws_secret = "name", key = "field"}`` reads AWS Secrets Manager and
    ``{env = "VAR"}`` reads the process environment. Anything else is
    returned unchanged.
    """

    def __init__(self):
        self._cache: dict[tuple[str, Optional[str]], Any] = {}

    def resolve(self, values: dict[str, Any]) -> dict[str, Any]:
        return {k: self._resolve_value(k, v) for k, v in values.items()}

    def _resolve_value(self, name: str, value: Any) -> Any:
        if isinstance(value, dict):
            if "aws_secret" in value:
                return self._resolve_aws_secret(name, value)
            if "env" in value:
                return self._resolve_env(name, value)
        return value

    @staticmethod
    def _resolve_env(name: str, spec: dict[str, Any]) -> str:
        var = str(spec["env"])
        if var not in os.environ:
            raise ConfigError(f"{name}: environment variable {var} is not set")
        return os.environ[var]

    def _resolve_aws_secret(self, name: str, spec: dict[str, Any]) -> Any:
        if boto3 is None:
            raise ConfigError(f"{name}: boto3 is required to resolve aws_secret references")
        secret = str(spec["aws_secret"])
        key = spec.get("key")
        cache_key = (secret, key if key is None else str(key))
        if cache_key in self._cache:
            return self._cache[cache_key]

        try:
            client = boto3.client("secretsmanager")
            response = client.get_secret_value(SecretId=secret)
        except Exception as exc:  # noqa: BLE001
            raise ConfigError(f"{name}: cannot read secret {secret}: {exc}") from exc
        secret_str = response.get("SecretString")
        if secret_str is None:
            binary = response.get("SecretBinary")
            if binary is None:
                raise ConfigError(f"{name}: secret {secret} has no SecretString or SecretBinary")
            secret_str = base64.b64decode(binary).decode()

        value: Any = secret_str
        if key is not None:
            try:
                payload = json.loads(secret_str)
            except json.JSONDecodeError:
                # plain-text secret; the key only labels it
                payload = None
            if isinstance(payload, dict):
                if str(key) not in payload:
                    raise ConfigError(f"{name}: secret {secret} has no key '{key}'")
                value = payload[str(key)]

        self._cache[cache_key] = value
        return value
