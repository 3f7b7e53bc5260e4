"""
Tests for the delta model and the planning phase.
"""
from uuid import uuid4

import pytest

from attrsql.attributes import AttributeRegistry, AttributeSpec, ValueType
from attrsql.delta import ChangeRecord, Delta, EntityRef, Tempid, as_entity_ref
from attrsql.errors import ValidationError
from attrsql.planner import DeltaPlanner, OperationKind


@pytest.fixture
def planner(registry):
    return DeltaPlanner(registry)


class TestDelta:
    def test_from_dict_accepts_pairs_and_tombstones(self):
        t = Tempid()
        delta = Delta.from_dict({
            ("item/id", t): {"item/name": {"after": "Widget"}},
            ("item/id", 7): {"delete": True},
        })
        assert len(delta) == 2
        assert delta[EntityRef.of("item/id", t)]["item/name"] == ChangeRecord(after="Widget")
        assert delta.is_tombstone(EntityRef.of("item/id", 7))
        assert delta.tempids() == [t]

    def test_tombstone_cannot_carry_changes(self):
        with pytest.raises(ValidationError):
            Delta.from_dict({("item/id", 7): {"delete": True, "item/name": {"after": "x"}}})

    def test_malformed_change(self):
        with pytest.raises(ValidationError):
            Delta.from_dict({("item/id", 7): {"item/name": "Widget"}})

    def test_key_must_be_entity_ref(self):
        with pytest.raises(ValidationError):
            Delta.from_dict({"item/id": {"item/name": {"after": "x"}}})

    def test_entity_ref_coercion(self):
        assert as_entity_ref(("item/id", 1)) == EntityRef.of("item/id", 1)
        assert as_entity_ref(["a", "b"]) is None
        assert as_entity_ref("item/id") is None

    def test_tempids_are_distinct_and_hashable(self):
        a, b = Tempid(), Tempid()
        assert a != b
        assert len({a, b, a}) == 2
        assert EntityRef.of("item/id", a).is_new
        assert not EntityRef.of("item/id", 1).is_new


class TestClassification:
    def test_insert_update_delete(self, planner):
        t = Tempid()
        delta = Delta.from_dict({
            ("item/id", t): {"item/name": {"after": "New"}},
            ("item/id", 1): {"item/name": {"before": "Old", "after": "Renamed"}},
            ("item/id", 2): {"delete": True},
        })
        plan = planner.plan(delta)
        kinds = {ref.id: op.kind for ref, op in plan.operations.items()}
        assert kinds == {t: OperationKind.INSERT, 1: OperationKind.UPDATE, 2: OperationKind.DELETE}
        assert plan.schema_name == "main"

    def test_tombstone_on_placeholder(self, planner):
        with pytest.raises(ValidationError):
            planner.plan(Delta.from_dict({("item/id", Tempid()): {"delete": True}}))

    def test_identifier_plan_is_part_of_the_plan(self, planner):
        acc, item = Tempid(), Tempid()
        plan = planner.plan(Delta.from_dict({
            ("account/id", acc): {"account/name": {"after": "Acme"}},
            ("item/id", item): {"item/account": {"after": ("account/id", acc)}},
        }))
        assert plan.identifier_plan.uuid_tempids == [acc]
        assert plan.identifier_plan.sequence_tempids == {"item_id_seq": [item]}


class TestValidation:
    def test_unknown_attribute(self, planner):
        with pytest.raises(ValidationError, match="Unknown attribute"):
            planner.plan(Delta.from_dict({("item/id", 1): {"item/colour": {"after": "red"}}}))

    def test_attribute_of_another_entity(self, planner):
        with pytest.raises(ValidationError, match="does not belong"):
            planner.plan(Delta.from_dict({("item/id", 1): {"account/name": {"after": "x"}}}))

    def test_unknown_identity(self, planner):
        with pytest.raises(ValidationError):
            planner.plan(Delta.from_dict({("widget/id", 1): {"item/name": {"after": "x"}}}))

    def test_type_mismatch(self, planner):
        with pytest.raises(ValidationError) as exc_info:
            planner.plan(Delta.from_dict({("line-item/id", 1): {"line-item/qty": {"after": "three"}}}))
        assert exc_info.value.entity_ref == EntityRef.of("line-item/id", 1)

    def test_max_length(self, planner):
        with pytest.raises(ValidationError, match="max length"):
            planner.plan(Delta.from_dict({("item/id", 1): {"item/name": {"after": "x" * 51}}}))

    def test_reference_to_wrong_entity_type(self, planner):
        with pytest.raises(ValidationError, match="must reference"):
            planner.plan(Delta.from_dict({("item/id", 1): {"item/account": {"after": ("item/id", 2)}}}))

    def test_reference_to_placeholder_outside_delta(self, planner):
        with pytest.raises(ValidationError, match="not part of the delta"):
            planner.plan(Delta.from_dict({
                ("item/id", 1): {"item/account": {"after": ("account/id", Tempid())}},
            }))

    def test_to_many_requires_collection(self, planner):
        with pytest.raises(ValidationError, match="collection"):
            planner.plan(Delta.from_dict({
                ("item/id", 1): {"item/line-items": {"after": ("line-item/id", 3)}},
            }))

    def test_identity_cannot_change(self, planner):
        with pytest.raises(ValidationError, match="cannot change"):
            planner.plan(Delta.from_dict({("item/id", 1): {"item/id": {"after": 2}}}))

    def test_identity_echo_is_dropped(self, planner):
        plan = planner.plan(Delta.from_dict({("item/id", 1): {"item/id": {"after": 1}}}))
        assert plan.operations[EntityRef.of("item/id", 1)].changes == {}

    def test_references_are_normalised(self, planner):
        account = uuid4()
        plan = planner.plan(Delta.from_dict({
            ("item/id", 1): {
                "item/account": {"after": ("account/id", account)},
                "item/line-items": {"before": [("line-item/id", 3)], "after": []},
            },
        }))
        changes = plan.operations[EntityRef.of("item/id", 1)].changes
        assert changes["item/account"].after == EntityRef.of("account/id", account)
        assert changes["item/line-items"].before == [EntityRef.of("line-item/id", 3)]
        assert changes["item/line-items"].after == []

    def test_delta_spanning_schemas(self):
        registry = AttributeRegistry([
            AttributeSpec(key="a/id", type=ValueType.INT, identity=True, table="a"),
            AttributeSpec(key="b/id", type=ValueType.INT, identity=True, table="b", schema_name="archive"),
        ])
        with pytest.raises(ValidationError, match="several schemas"):
            DeltaPlanner(registry).plan(Delta.from_dict({("a/id", 1): {}, ("b/id", 1): {}}))
