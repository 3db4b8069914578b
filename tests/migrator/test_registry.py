import pytest

from legacy_bridge.migrator.registry import get_step_registry, next_step_after, resolve_steps


def test_registry_runs_parents_before_children():
    names = list(get_step_registry())
    assert names[0] == "Tenants"
    assert names.index("Users") < names.index("Permissions") < names.index("Tasks")
    assert names.index("Flows") < names.index("Channels")
    assert names.index("Contacts") < names.index("Tickets") < names.index("Messages")
    assert len(names) == 17


def test_resolve_steps_is_case_insensitive_and_keeps_execution_order():
    steps = resolve_steps(["messages", "TENANTS"])
    assert [descriptor.name for descriptor in steps] == ["Tenants", "Messages"]
    assert steps[1].source_table == "Messages"
    assert steps[1].destination_table == "messages"


def test_resolve_steps_rejects_unknown_names():
    with pytest.raises(ValueError, match="Unknown migration steps: Bogus"):
        resolve_steps(["Tenants", "Bogus"])
    with pytest.raises(ValueError, match="Nope"):
        resolve_steps(from_step="Nope")


def test_resolve_steps_from_step_drops_earlier_steps():
    steps = resolve_steps(from_step="tickets")
    assert [descriptor.name for descriptor in steps] == ["Tickets", "Messages", "InternalMessages"]


def test_next_step_after():
    assert next_step_after(None) == "Tenants"
    assert next_step_after("Tenants") == "Departments"
    assert next_step_after("Users") == "Permissions"
    assert next_step_after("InternalMessages") is None
