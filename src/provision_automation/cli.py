from __future__ import annotations

import argparse
import importlib
import importlib.util
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from . import operations
from .config import DEFAULT_CONFIG, EngineSettings, load_config
from .errors import ConfigError, CycleError, ProvisionError
from .inventory import CatalogLoader
from .planner import PlanBuilder
from .runner import ActionEvent, PlanRunner
from .types import ExecutionResult, ExecutionStatus, Plan

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_CYCLE = 2
EXIT_FAILED = 3


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    ORANGE = "\033[38;5;208m"
    RESET = "\033[0m"


STATUS_COLORS = {
    ExecutionStatus.APPLIED: Ansi.GREEN,
    ExecutionStatus.SKIPPED: Ansi.BLUE,
    ExecutionStatus.PLANNED: Ansi.YELLOW,
    ExecutionStatus.NOT_RUN: Ansi.ORANGE,
    ExecutionStatus.FAILED: Ansi.RED,
}


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"


def _id_list(value: str) -> list[str]:
    ids = [item.strip() for item in value.split(",") if item.strip()]
    if not ids:
        raise argparse.ArgumentTypeError("expected a comma-separated list of action ids")
    return ids


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="provision",
        description="Idempotent DHIS2 host provisioning",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help=f"Path to the provisioning config file (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument("--dry-run", action="store_true", help="Probe only and print projected statuses")
    parser.add_argument(
        "--only",
        type=_id_list,
        default=None,
        help="Comma-separated action ids to run (their prerequisites are included)",
    )
    parser.add_argument(
        "--catalog",
        type=Path,
        default=None,
        help="Action catalog to use (default: engine.catalog or the bundled DHIS2 catalog)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(name)s - %(message)s",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        plan = build_plan(args.config, catalog=args.catalog, only=args.only)
    except CycleError as exc:
        print(colorize(f"Plan validation failed: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_CYCLE
    except ConfigError as exc:
        print(colorize(f"Configuration error: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_CONFIG

    runner = PlanRunner(plan, dry_run=args.dry_run, event_callback=print_event)
    try:
        report = runner.run()
    except Exception as exc:  # noqa: BLE001
        if logging.getLogger().isEnabledFor(logging.DEBUG):
            raise
        print(colorize(f"Execution failed: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_FAILED

    resources = {action.id: action.operation.resource() for action in plan.actions}
    summary = Summary()
    for result in report.results:
        summary.add(result)
        print(format_result(result, resources.get(result.action_id)))
    print(summary.render())
    if report.halted_by:
        print(colorize(f"Halted after {report.halted_by} failed", Ansi.RED), file=sys.stderr)

    return EXIT_FAILED if report.failed else EXIT_OK


def build_plan(
    config_path: Path,
    *,
    catalog: Optional[Path] = None,
    only: Optional[Sequence[str]] = None,
) -> Plan:
    config = load_config(config_path)
    _load_plugins(config.engine)
    specs = CatalogLoader().load(catalog or config.engine.catalog)
    return PlanBuilder().build(config, specs, only=only)


def print_event(event: ActionEvent) -> None:
    print(event.format(), flush=True)


def format_result(result: ExecutionResult, resource: Optional[str] = None) -> str:
    suffix = f"[{resource}]" if resource else ""
    text = result.reason if result.reason else result.details
    line = f"{result.action_id}{suffix} {result.status.value}"
    if text:
        line += f" - {text}"
    if result.attempts > 1:
        line += f" (attempts={result.attempts})"
    return colorize(line, STATUS_COLORS.get(result.status))


class Summary:
    def __init__(self) -> None:
        self.counts = {status: 0 for status in ExecutionStatus}

    def add(self, result: ExecutionResult) -> None:
        self.counts[result.status] += 1

    @property
    def failures(self) -> int:
        return self.counts[ExecutionStatus.FAILED]

    def render(self) -> str:
        parts = [
            f"Applied: {self.counts[ExecutionStatus.APPLIED]}",
            f"Skipped: {self.counts[ExecutionStatus.SKIPPED]}",
        ]
        if self.counts[ExecutionStatus.PLANNED]:
            parts.append(f"Planned: {self.counts[ExecutionStatus.PLANNED]}")
        parts.append(f"Not run: {self.counts[ExecutionStatus.NOT_RUN]}")
        parts.append(f"Failures: {self.failures}")
        text = " | ".join(parts)
        color = Ansi.GREEN if self.failures == 0 else Ansi.RED
        return colorize(text, color)


def _load_plugins(settings: EngineSettings) -> None:
    """Let plugin files and modules add operation types to the registry.

    A plugin exposes ``register_operations(registry)``; the registry is the
    live ``operations.OPERATION_REGISTRY`` mapping.
    """

    registry = operations.OPERATION_REGISTRY
    for directory in settings.plugin_dirs:
        directory = Path(directory)
        if not directory.is_dir():
            raise ConfigError(f"plugin directory {directory} does not exist")
        for path in sorted(directory.glob("*.py")):
            if path.name.startswith("_"):
                continue
            module_name = f"provision_plugin_{path.stem}"
            spec = importlib.util.spec_from_file_location(module_name, path)
            if spec is None or spec.loader is None:
                raise ConfigError(f"cannot load plugin {path}")
            module = importlib.util.module_from_spec(spec)
            try:
                spec.loader.exec_module(module)
            except Exception as exc:  # noqa: BLE001
                raise ConfigError(f"plugin {path} failed to load: {exc}") from exc
            _register(module, registry, str(path))

    for name in settings.plugin_modules:
        try:
            module = importlib.import_module(name)
        except ImportError as exc:
            raise ConfigError(f"plugin module {name} cannot be imported: {exc}") from exc
        _register(module, registry, name)


def _register(module, registry: dict, source: str) -> None:
    hook = getattr(module, "register_operations", None)
    if hook is None:
        logger.warning("plugin %s has no register_operations(); ignoring", source)
        return
    before = set(registry)
    hook(registry)
    added = sorted(set(registry) - before)
    logger.debug("plugin=%s operations=%s", source, ",".join(added) or "-")


if __name__ == "__main__":
    raise SystemExit(main())
