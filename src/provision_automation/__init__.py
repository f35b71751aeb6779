"""Idempotent DHIS2 host provisioning engine."""

from .config import load_config
from .inventory import CatalogLoader
from .planner import PlanBuilder
from .runner import PlanRunner

__all__ = ["CatalogLoader", "PlanBuilder", "PlanRunner", "load_config"]
