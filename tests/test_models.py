"""Test core data structures."""

import itertools

from aifactory.models import (
    EXECUTION_TRANSITIONS,
    AllocationSet,
    Execution,
    QueueEntry,
    ResourceAllocation,
    ResourceDefinition,
    can_transition,
    generate_id,
)


def test_generate_id():
    id1 = generate_id()
    id2 = generate_id()
    assert len(id1) == 12
    assert id1 != id2


def test_only_documented_transitions_are_allowed():
    allowed = {
        ("pending", "running"),
        ("pending", "cancelled"),
        ("running", "completed"),
        ("running", "failed"),
        ("running", "cancelled"),
    }
    for source, target in itertools.product(EXECUTION_TRANSITIONS, repeat=2):
        assert can_transition(source, target) == ((source, target) in allowed)


def test_terminal_statuses_have_no_exits():
    for status in ("completed", "failed", "cancelled"):
        assert Execution("e", "c", "t", status=status).is_terminal
        assert not EXECUTION_TRANSITIONS[status]


def test_queue_entry_key_orders_priority_then_time():
    low = QueueEntry("a", priority="low", submitted_at=1.0, seq=0)
    critical = QueueEntry("b", priority="critical", submitted_at=5.0, seq=1)
    normal_early = QueueEntry("c", priority="normal", submitted_at=2.0, seq=2)
    normal_late = QueueEntry("d", priority="normal", submitted_at=3.0, seq=3)
    ordered = sorted([low, normal_late, critical, normal_early], key=lambda e: e.key)
    assert [e.execution_id for e in ordered] == ["b", "c", "d", "a"]


def test_allocation_held_until_released_or_expired():
    alloc = ResourceAllocation("x", "e", "api", "r", 2, allocated_at=0, expires_at=10)
    assert alloc.is_held(5)
    assert not alloc.is_held(10)
    alloc.status = "released"
    assert not alloc.is_held(5)


def test_allocation_set_quantity_by_name_skips_released():
    a = ResourceAllocation("a", "e", "api", "r1", 2, 0, 10)
    b = ResourceAllocation("b", "e", "api", "r1", 1, 0, 10)
    c = ResourceAllocation("c", "e", "api", "r2", 3, 0, 10, status="released")
    assert AllocationSet("e", [a, b, c]).quantity_by_name() == {"r1": 3}


def test_resource_definition_unlimited():
    assert ResourceDefinition("free").unlimited
    assert not ResourceDefinition("capped", limit=5).unlimited
