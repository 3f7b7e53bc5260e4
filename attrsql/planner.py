"""
Delta planning: validation, operation classification and identifier planning.

Nothing in this module touches the database; every ValidationError is raised
before a connection is acquired.
"""
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from attrsql.attributes import AttributeRegistry, AttributeSpec
from attrsql.converters import check_model_value
from attrsql.delta import ChangeRecord, Delta, EntityRef, as_entity_ref
from attrsql.errors import ValidationError
from attrsql.ids import IdentifierPlan, IdentifierResolver


class OperationKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class EntityOperation(BaseModel):
    """A classified per-entity operation with validated, normalised changes."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    ref: EntityRef
    kind: OperationKind
    changes: Dict[str, ChangeRecord] = Field(default_factory=dict)


class OwnershipResolution(BaseModel):
    """
    Where the foreign key of one reference change is physically written.

    `action` is "set" (store source in the column), "clear" (null the column)
    or "delete-orphan" (delete the formerly referenced row after the main
    write phase).
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    attribute_key: str
    owner_key: str
    row: EntityRef
    table: str
    column: str
    value: Optional[EntityRef] = None
    action: str = "set"


class SavePlan(BaseModel):
    """Output of planning: one operation per entity plus the identifier plan."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    schema_name: Optional[str] = None
    operations: Dict[EntityRef, EntityOperation] = Field(default_factory=dict)
    identifier_plan: IdentifierPlan = Field(default_factory=IdentifierPlan)
    resolutions: List[OwnershipResolution] = Field(default_factory=list)
    orphan_deletes: List[EntityRef] = Field(default_factory=list)

    def of_kind(self, kind: OperationKind) -> List[EntityOperation]:
        return [op for op in self.operations.values() if op.kind == kind]


class DeltaPlanner:
    """
    Turns a raw Delta into a SavePlan.
    """

    def __init__(self, registry: AttributeRegistry, resolver: Optional[IdentifierResolver] = None) -> None:
        self._registry = registry
        self._resolver = resolver or IdentifierResolver(registry)
        self._logger = logging.getLogger("DeltaPlanner")

    def classify(self, delta: Delta, ref: EntityRef) -> OperationKind:
        """Placeholders are inserts, tombstones on persisted ids are deletes, the rest updates."""
        if ref.is_new:
            if delta.is_tombstone(ref):
                raise ValidationError("Cannot delete an entity that was never saved", entity_ref=ref)
            return OperationKind.INSERT
        if delta.is_tombstone(ref):
            return OperationKind.DELETE
        return OperationKind.UPDATE

    def plan(self, delta: Delta) -> SavePlan:
        """
        Validate a delta and classify its operations.

        Args:
            delta: The change-set to plan

        Returns:
            SavePlan with operations in delta order

        Raises:
            ValidationError: On unknown attributes, type mismatches or dangling references
        """
        new_refs: Set[EntityRef] = {ref for ref in delta if ref.is_new}
        schemas: Set[str] = set()
        operations: Dict[EntityRef, EntityOperation] = {}

        for ref, diff in delta.items():
            id_attr = self._registry.get(ref.ident_key)
            if id_attr is None or not id_attr.identity:
                raise ValidationError(f"'{ref.ident_key}' is not a registered identity attribute",
                                      entity_ref=ref)
            if ref.id is None:
                raise ValidationError("Entity identifier is missing", entity_ref=ref)
            schemas.add(id_attr.schema_name)
            kind = self.classify(delta, ref)
            changes: Dict[str, ChangeRecord] = {}
            if kind != OperationKind.DELETE:
                for attr_key, change in diff.items():  # type: ignore[union-attr]
                    normalized = self._normalize_change(ref, attr_key, change, new_refs)
                    if normalized is not None:
                        changes[attr_key] = normalized
            operations[ref] = EntityOperation(ref=ref, kind=kind, changes=changes)

        if len(schemas) > 1:
            raise ValidationError(f"Delta spans several schemas {sorted(schemas)}; "
                                  f"a save runs in one transaction against one database")

        plan = SavePlan(
            schema_name=next(iter(schemas), None),
            operations=operations,
            identifier_plan=self._resolver.plan_identifiers(delta),
        )
        self._logger.info(
            f"Planned save: {len(plan.of_kind(OperationKind.INSERT))} inserts, "
            f"{len(plan.of_kind(OperationKind.UPDATE))} updates, "
            f"{len(plan.of_kind(OperationKind.DELETE))} deletes")
        return plan

    def _normalize_change(self, ref: EntityRef, attr_key: str, change: ChangeRecord,
                          new_refs: Set[EntityRef]) -> Optional[ChangeRecord]:
        attr = self._registry.get(attr_key)
        if attr is None:
            raise ValidationError(f"Unknown attribute '{attr_key}'", entity_ref=ref)
        if not self._registry.belongs_to(attr, ref.ident_key):
            raise ValidationError(f"Attribute '{attr_key}' does not belong to '{ref.ident_key}'",
                                  entity_ref=ref)
        if attr.identity:
            if change.after is not None and change.after != ref.id:
                raise ValidationError(f"Identity '{attr_key}' cannot change", entity_ref=ref)
            return None
        if not attr.is_ref:
            problem = check_model_value(attr, change.after)
            if problem:
                raise ValidationError(f"Invalid value for '{attr_key}': {problem}", entity_ref=ref)
            return change
        if attr.is_to_many:
            return ChangeRecord(
                before=[self._check_ref(ref, attr, v, new_refs) for v in self._as_list(ref, attr, change.before)],
                after=[self._check_ref(ref, attr, v, new_refs) for v in self._as_list(ref, attr, change.after)],
            )
        return ChangeRecord(
            before=self._check_ref(ref, attr, change.before, new_refs) if change.before is not None else None,
            after=self._check_ref(ref, attr, change.after, new_refs) if change.after is not None else None,
        )

    def _as_list(self, ref: EntityRef, attr: AttributeSpec, value: Any) -> List[Any]:
        if value is None:
            return []
        if isinstance(value, (list, tuple, set, frozenset)) and as_entity_ref(value) is None:
            return list(value)
        raise ValidationError(f"To-many attribute '{attr.key}' expects a collection of references",
                              entity_ref=ref)

    def _check_ref(self, ref: EntityRef, attr: AttributeSpec, value: Any,
                   new_refs: Set[EntityRef]) -> EntityRef:
        target = as_entity_ref(value)
        if target is None:
            raise ValidationError(f"'{attr.key}' expects an entity reference, got {value!r}", entity_ref=ref)
        if target.ident_key != attr.target:
            raise ValidationError(f"'{attr.key}' must reference '{attr.target}', got '{target.ident_key}'",
                                  entity_ref=ref)
        if target.is_new and target not in new_refs:
            raise ValidationError(f"'{attr.key}' references placeholder {target!r} that is not part of the delta",
                                  entity_ref=ref)
        return target
