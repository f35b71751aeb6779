from __future__ import annotations

import logging
import shlex
from dataclasses import replace
from string import Template
from typing import Any, Iterable, Optional, Sequence

from . import operations
from .config import ProvisionConfig
from .errors import ConfigError
from .graph import topological_order, with_prerequisites
from .types import Action, ActionSpec, HostConfig, Plan

logger = logging.getLogger(__name__)


class Placeholder(Template):
    """``${name}`` placeholders only; bare ``$word`` is left for the shell."""

    pattern = r"""
    \$(?:
      (?P<escaped>\$) |
      \{(?P<braced>[_a-z][_a-z0-9]*)\} |
      (?P<named>(?!)) |
      (?P<invalid>(?!))
    )
    """


def derived_parameters(config: ProvisionConfig) -> dict[str, Any]:
    """Config values plus derived ones.

    Every value also gets a ``<name>_q`` twin quoted for ``sh -c`` commands.
    """

    values = config.parameters()
    values["dhis2_release"] = config.dhis2_version.split(".", 1)[0]
    values["tomcat_major"] = config.tomcat_version.split(".", 1)[0]
    for key, value in list(values.items()):
        if value is not None:
            values[f"{key}_q"] = shlex.quote(str(value))
    if config.certbot_email:
        values["certbot_account_args"] = f"--agree-tos -m {shlex.quote(config.certbot_email)}"
    else:
        values["certbot_account_args"] = "--agree-tos --register-unsafely-without-email"
    return values


class PlanBuilder:
    """Turns a catalog and a validated configuration into an ordered Plan.

    Everything here happens before the host is touched: placeholder
    rendering, operation construction and dependency ordering all fail with
    ``ConfigError`` or ``CycleError``.
    """

    def __init__(self, registry: Optional[dict[str, type]] = None):
        self._registry = registry

    @property
    def registry(self) -> dict[str, type]:
        # looked up late so plugins registered after import are visible
        return self._registry if self._registry is not None else operations.OPERATION_REGISTRY

    def build(
        self,
        config: ProvisionConfig,
        specs: Sequence[ActionSpec],
        *,
        only: Optional[Iterable[str]] = None,
    ) -> Plan:
        params = derived_parameters(config)
        problems: list[str] = []
        rendered: list[ActionSpec] = []
        for spec in specs:
            try:
                rendered.append(self._render_spec(spec, params))
            except ConfigError as exc:
                problems.extend(exc.problems or [str(exc)])
        if problems:
            raise ConfigError("cannot render catalog", problems)

        ordered = topological_order(rendered)
        if only is not None:
            ordered = with_prerequisites(ordered, only)

        actions: list[Action] = []
        for spec in ordered:
            try:
                actions.append(self._bind(spec, config))
            except ConfigError as exc:
                problems.append(str(exc))
        if problems:
            raise ConfigError("invalid actions", problems)

        host = HostConfig(name=config.engine.host, variables=params)
        plan = Plan(host=host, actions=tuple(actions))
        logger.debug("plan=%s", ",".join(plan.ids()))
        return plan

    def _bind(self, spec: ActionSpec, config: ProvisionConfig) -> Action:
        operation_cls = self.registry.get(spec.type)
        if operation_cls is None:
            raise ConfigError(f"action {spec.id}: unknown operation type '{spec.type}'")
        try:
            operation = operation_cls(spec.data)
        except ValueError as exc:
            raise ConfigError(f"action {spec.id}: {exc}") from None
        timeout = spec.timeout if spec.timeout is not None else config.engine.default_timeout
        return Action(
            id=spec.id,
            type=spec.type,
            operation=operation,
            description=spec.description,
            depends_on=frozenset(spec.depends_on),
            non_fatal=spec.non_fatal,
            retry=spec.retry,
            timeout=timeout,
        )

    def _render_spec(self, spec: ActionSpec, params: dict[str, Any]) -> ActionSpec:
        missing: set[str] = set()
        data = {key: self._render(value, params, missing) for key, value in spec.data.items()}
        description = self._render(spec.description, params, missing)
        depends_on = [self._render(dep, params, missing) for dep in spec.depends_on]
        if missing:
            raise ConfigError(
                f"action {spec.id}",
                [f"action {spec.id}: unknown parameter '${{{name}}}'" for name in sorted(missing)],
            )
        return replace(spec, data=data, description=description, depends_on=depends_on)

    def _render(self, value: Any, params: dict[str, Any], missing: set[str]) -> Any:
        if isinstance(value, str):
            template = Placeholder(value)
            for match in template.pattern.finditer(value):
                name = match.group("braced")
                if name and name not in params:
                    missing.add(name)
            values = {key: "" if val is None else str(val) for key, val in params.items()}
            return template.safe_substitute(values)
        if isinstance(value, list):
            return [self._render(item, params, missing) for item in value]
        if isinstance(value, dict):
            return {key: self._render(item, params, missing) for key, item in value.items()}
        return value
