import pytest

from provision_automation.errors import ConfigError, CycleError
from provision_automation.graph import topological_order, with_prerequisites
from provision_automation.types import ActionSpec


def spec(action_id: str, *depends_on: str) -> ActionSpec:
    return ActionSpec(id=action_id, type="exec", data={}, depends_on=list(depends_on))


def ids(items) -> list[str]:
    return [item.id for item in items]


def test_dependencies_come_first():
    items = [spec("c", "b"), spec("b", "a"), spec("a")]

    assert ids(topological_order(items)) == ["a", "b", "c"]


def test_ties_break_by_declaration_order():
    items = [
        spec("install_db"),
        spec("install_proxy"),
        spec("create_db", "install_db"),
        spec("configure_tls", "install_proxy"),
    ]

    assert ids(topological_order(items)) == [
        "install_db",
        "install_proxy",
        "create_db",
        "configure_tls",
    ]


def test_dependent_declared_early_runs_once_ready():
    items = [
        spec("install_db"),
        spec("create_db", "install_db"),
        spec("install_proxy"),
        spec("configure_tls", "install_proxy", "create_db"),
    ]

    assert ids(topological_order(items)) == [
        "install_db",
        "create_db",
        "install_proxy",
        "configure_tls",
    ]


def test_order_is_identical_across_calls():
    items = [spec("d", "a"), spec("a"), spec("c", "a"), spec("b"), spec("e", "b", "c")]

    first = ids(topological_order(items))
    for _ in range(5):
        assert ids(topological_order(list(items))) == first


def test_every_action_follows_its_prerequisites():
    items = [
        spec("f", "e", "b"),
        spec("a"),
        spec("e", "d"),
        spec("b", "a"),
        spec("d", "a", "c"),
        spec("c"),
    ]

    ordered = ids(topological_order(items))
    for item in items:
        for dep in item.depends_on:
            assert ordered.index(dep) < ordered.index(item.id)


def test_cycle_names_its_members():
    items = [spec("a"), spec("b", "a", "d"), spec("c", "b"), spec("d", "c")]

    with pytest.raises(CycleError) as excinfo:
        topological_order(items)

    assert sorted(excinfo.value.members) == ["b", "c", "d"]
    assert "a" not in excinfo.value.members
    assert "dependency cycle detected" in str(excinfo.value)


def test_self_dependency_is_a_cycle():
    with pytest.raises(CycleError) as excinfo:
        topological_order([spec("a", "a")])

    assert excinfo.value.members == ["a"]


def test_unknown_and_duplicate_ids_are_reported_together():
    items = [spec("a", "missing"), spec("a"), spec("b", "ghost")]

    with pytest.raises(ConfigError) as excinfo:
        topological_order(items)

    problems = excinfo.value.problems
    assert any("duplicate action id 'a'" in p for p in problems)
    assert any("'missing'" in p for p in problems)
    assert any("'ghost'" in p for p in problems)


def test_selection_pulls_in_transitive_prerequisites():
    items = [spec("a"), spec("b", "a"), spec("c", "b"), spec("d")]

    assert ids(with_prerequisites(items, ["c"])) == ["a", "b", "c"]


def test_selection_rejects_unknown_ids():
    with pytest.raises(ConfigError) as excinfo:
        with_prerequisites([spec("a")], ["a", "nope"])

    assert excinfo.value.problems == ["'nope'"]
