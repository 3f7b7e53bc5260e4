"""
Tests for insert ordering and cycle detection among newly created entities.
"""
import pytest

from attrsql.delta import Delta, EntityRef, Tempid
from attrsql.dependency import CycleStatus, InsertDependencyGraph, order_operations
from attrsql.errors import UnresolvableDependencyError
from attrsql.ownership import OwnershipEngine
from attrsql.planner import DeltaPlanner, OperationKind


@pytest.fixture
def plan_of(registry):
    planner = DeltaPlanner(registry)
    ownership = OwnershipEngine(registry)

    def _plan(raw):
        return ownership.apply(planner.plan(Delta.from_dict(raw)))
    return _plan


def _position(ordered, ref):
    return [op.ref for op in ordered].index(ref)


def test_referenced_insert_goes_first(registry, plan_of):
    item, account = Tempid(), Tempid()
    # the referencing entity is listed first on purpose
    plan = plan_of({
        ("item/id", item): {"item/account": {"after": ("account/id", account)}},
        ("account/id", account): {"account/name": {"after": "Acme"}},
    })
    ordered = order_operations(plan, registry)
    assert _position(ordered, EntityRef.of("account/id", account)) < _position(ordered, EntityRef.of("item/id", item))


def test_chain_through_reverse_reference(registry, plan_of):
    account, item, line = Tempid(), Tempid(), Tempid()
    plan = plan_of({
        ("line-item/id", line): {"line-item/qty": {"after": 1}},
        ("item/id", item): {"item/line-items": {"after": [("line-item/id", line)]}},
        ("account/id", account): {"account/items": {"after": [("item/id", item)]}},
    })
    ordered = order_operations(plan, registry)
    refs = [op.ref for op in ordered]
    assert refs == [EntityRef.of("account/id", account), EntityRef.of("item/id", item),
                    EntityRef.of("line-item/id", line)]


def test_independent_inserts_keep_delta_order(registry, plan_of):
    tags = [Tempid() for _ in range(3)]
    plan = plan_of({("tag/id", t): {"tag/name": {"after": f"t{i}"}} for i, t in enumerate(tags)})
    assert [op.ref.id for op in order_operations(plan, registry)] == tags


def test_updates_and_deletes_follow_inserts(registry, plan_of):
    new = Tempid()
    plan = plan_of({
        ("tag/id", 1): {"delete": True},
        ("tag/id", 2): {"tag/name": {"after": "renamed"}},
        ("tag/id", new): {"tag/name": {"after": "new"}},
    })
    kinds = [op.kind for op in order_operations(plan, registry)]
    assert kinds == [OperationKind.INSERT, OperationKind.UPDATE, OperationKind.DELETE]


def test_cycle_is_reported(registry, plan_of):
    a, b = Tempid(), Tempid()
    plan = plan_of({
        ("category/id", a): {"category/parent": {"after": ("category/id", b)}},
        ("category/id", b): {"category/parent": {"after": ("category/id", a)}},
    })
    graph = InsertDependencyGraph()
    assert graph.build_graph(plan, registry) == CycleStatus.CYCLE_DETECTED
    assert graph.get_cycles()
    with pytest.raises(UnresolvableDependencyError) as exc_info:
        order_operations(plan, registry)
    assert exc_info.value.condition == "dependency-cycle"
    assert set(exc_info.value.cycle) >= {EntityRef.of("category/id", a), EntityRef.of("category/id", b)}


def test_reference_to_persisted_row_adds_no_edge(registry, plan_of):
    child = Tempid()
    plan = plan_of({("category/id", child): {"category/parent": {"after": ("category/id", 3)}}})
    graph = InsertDependencyGraph()
    assert graph.build_graph(plan, registry) == CycleStatus.NO_CYCLE
    assert graph.nodes[EntityRef.of("category/id", child)].dependencies == set()


def test_self_reference_is_not_a_cycle(registry, plan_of):
    node = Tempid()
    plan = plan_of({("category/id", node): {"category/parent": {"after": ("category/id", node)}}})
    ordered = order_operations(plan, registry)
    assert [op.ref.id for op in ordered] == [node]


LONG_CHAIN = 1500


def _category_chain(length):
    """Categories in delta order, each one's parent being the next one listed."""
    tempids = [Tempid() for _ in range(length)]
    raw = {}
    for i, tempid in enumerate(tempids):
        changes = {"category/name": {"after": f"c{i}"}}
        if i + 1 < length:
            changes["category/parent"] = {"after": ("category/id", tempids[i + 1])}
        raw[("category/id", tempid)] = changes
    return tempids, raw


def test_long_chain_is_ordered(registry, plan_of):
    tempids, raw = _category_chain(LONG_CHAIN)
    ordered = order_operations(plan_of(raw), registry)
    assert [op.ref.id for op in ordered] == list(reversed(tempids))


def test_long_cycle_is_reported(registry, plan_of):
    tempids, raw = _category_chain(LONG_CHAIN)
    raw[("category/id", tempids[-1])]["category/parent"] = {"after": ("category/id", tempids[0])}
    with pytest.raises(UnresolvableDependencyError) as exc_info:
        order_operations(plan_of(raw), registry)
    assert len(exc_info.value.cycle) == LONG_CHAIN + 1


def test_many_independent_inserts_keep_delta_order(registry, plan_of):
    tags = [Tempid() for _ in range(2000)]
    plan = plan_of({("tag/id", t): {"tag/name": {"after": f"t{i}"}} for i, t in enumerate(tags)})
    assert [op.ref.id for op in order_operations(plan, registry)] == tags
