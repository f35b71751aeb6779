"""Dependency ordering for catalog actions.

Kahn's algorithm, with the ready set kept in a heap keyed on declaration
position: among actions whose prerequisites are satisfied, the one declared
first always runs first. The same input therefore always yields the same
order.
"""

from __future__ import annotations

import heapq
from typing import Iterable, Sequence, TypeVar

from .errors import ConfigError, CycleError

T = TypeVar("T")


def topological_order(items: Sequence[T]) -> list[T]:
    """Return ``items`` ordered so every item follows its ``depends_on``.

    Items need ``id`` and ``depends_on`` attributes. Raises ``ConfigError``
    for duplicate ids or unknown prerequisites and ``CycleError`` when no
    order exists.
    """

    position: dict[str, int] = {}
    problems: list[str] = []
    for pos, item in enumerate(items):
        if item.id in position:
            problems.append(f"duplicate action id '{item.id}'")
            continue
        position[item.id] = pos

    deps: dict[str, list[str]] = {}
    for item in items:
        unique = list(dict.fromkeys(item.depends_on))
        for dep in unique:
            if dep not in position:
                problems.append(f"action '{item.id}' depends on unknown action '{dep}'")
        deps[item.id] = [dep for dep in unique if dep in position]
    if problems:
        raise ConfigError("invalid action graph", problems)

    dependents: dict[str, list[str]] = {aid: [] for aid in position}
    in_degree: dict[str, int] = {}
    for aid, prerequisites in deps.items():
        in_degree[aid] = len(prerequisites)
        for dep in prerequisites:
            dependents[dep].append(aid)

    ready = [(position[aid], aid) for aid, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)
    ordered: list[str] = []
    while ready:
        _, current = heapq.heappop(ready)
        ordered.append(current)
        for child in dependents[current]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                heapq.heappush(ready, (position[child], child))

    if len(ordered) != len(position):
        done = set(ordered)
        remaining = sorted((aid for aid in position if aid not in done), key=position.get)
        raise CycleError(_find_cycle(remaining, deps, position))

    by_id = {item.id: item for item in items}
    return [by_id[aid] for aid in ordered]


def _find_cycle(
    remaining: list[str], deps: dict[str, list[str]], position: dict[str, int]
) -> list[str]:
    # Every node left over by Kahn's algorithm still waits on another
    # leftover node, so walking prerequisites must eventually repeat.
    left = set(remaining)
    path: list[str] = []
    seen: dict[str, int] = {}
    current = remaining[0]
    while current not in seen:
        seen[current] = len(path)
        path.append(current)
        waiting = sorted((dep for dep in deps[current] if dep in left), key=position.get)
        current = waiting[0]
    return path[seen[current]:]


def with_prerequisites(items: Sequence[T], selected: Iterable[str]) -> list[T]:
    """Keep ``selected`` ids plus everything they transitively depend on."""

    selected = list(selected)
    by_id = {item.id: item for item in items}
    unknown = [aid for aid in selected if aid not in by_id]
    if unknown:
        raise ConfigError("unknown action ids in selection", [f"'{aid}'" for aid in unknown])
    keep: set[str] = set()
    stack = list(selected)
    while stack:
        aid = stack.pop()
        if aid in keep:
            continue
        keep.add(aid)
        stack.extend(dep for dep in by_id[aid].depends_on if dep in by_id)
    return [item for item in items if item.id in keep]
