"""
Identifier resolution for placeholders.

Each placeholder is resolved by exactly one path, chosen by the value type of
its entity's identity attribute: UUID identities get a random UUID without a
database round trip, integer identities draw from the entity table's sequence.
Sequence placeholders are grouped per sequence and each group is allocated with
one batched request.
"""
import logging
from typing import Dict, Iterable, List
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from attrsql.attributes import SEQUENCE_TYPES, AttributeRegistry, ValueType
from attrsql.delta import EntityRef, Tempid
from attrsql.errors import SequenceAllocationError, ValidationError
from attrsql.tracer import timer
from attrsql.vendor import VendorAdapter

UUID_STRATEGY = "uuid"
SEQUENCE_STRATEGY = "sequence"


class IdentifierPlan(BaseModel):
    """
    Partition of a delta's placeholders into the UUID group and one group per
    sequence name. Group lists keep the order in which placeholders first
    appear in the delta.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    uuid_tempids: List[Tempid] = Field(default_factory=list)
    sequence_tempids: Dict[str, List[Tempid]] = Field(default_factory=dict)

    def all_tempids(self) -> List[Tempid]:
        result = list(self.uuid_tempids)
        for group in self.sequence_tempids.values():
            result.extend(group)
        return result


class IdentifierResolver:
    """
    Plans and resolves placeholder identifiers.
    """

    def __init__(self, registry: AttributeRegistry) -> None:
        self._registry = registry
        self._logger = logging.getLogger("IdentifierResolver")

    def identity_strategy(self, ident_key: str) -> str:
        """
        Determine how identifiers of an entity are generated.

        Raises:
            ValidationError: If the identity type is neither UUID nor sequence based
        """
        id_attr = self._registry.identity_attribute(ident_key)
        if id_attr.type == ValueType.UUID:
            return UUID_STRATEGY
        if id_attr.type in SEQUENCE_TYPES:
            return SEQUENCE_STRATEGY
        raise ValidationError(
            f"Identity attribute '{ident_key}' has type '{id_attr.type.value}', "
            f"which has no identifier generation strategy")

    def group_by_sequence(self, refs: Iterable[EntityRef]) -> Dict[str, List[Tempid]]:
        """
        Group new sequence-identified entities by the sequence of their table.

        Args:
            refs: Entity refs in delta order; persisted refs and UUID entities are skipped

        Returns:
            Mapping of sequence name to placeholders in first-appearance order
        """
        groups: Dict[str, Dict[Tempid, None]] = {}
        for ref in refs:
            if not ref.is_new or self.identity_strategy(ref.ident_key) != SEQUENCE_STRATEGY:
                continue
            groups.setdefault(self._registry.sequence_name(ref.ident_key), {})[ref.id] = None
        return {name: list(group) for name, group in groups.items()}

    def plan_identifiers(self, refs: Iterable[EntityRef]) -> IdentifierPlan:
        refs = [ref for ref in refs if ref.is_new]
        uuid_tempids = [ref.id for ref in refs if self.identity_strategy(ref.ident_key) == UUID_STRATEGY]
        plan = IdentifierPlan(uuid_tempids=uuid_tempids, sequence_tempids=self.group_by_sequence(refs))
        self._logger.debug(f"Planned {len(plan.uuid_tempids)} uuid ids and "
                           f"{len(plan.sequence_tempids)} sequence groups")
        return plan

    def resolve_uuid_tempids(self, tempids: Iterable[Tempid]) -> Dict[Tempid, object]:
        return {tempid: uuid4() for tempid in tempids}

    def allocate_sequence_ids(self, connection: Connection, adapter: VendorAdapter,
                              sequence_tempids: Dict[str, List[Tempid]],
                              auto_create: bool = False) -> Dict[Tempid, int]:
        """
        Allocate one batch per sequence and zip values onto placeholders.

        Raises:
            SequenceAllocationError: If the database call fails or returns too few values
        """
        resolved: Dict[Tempid, int] = {}
        for sequence_name, tempids in sequence_tempids.items():
            n = len(tempids)
            try:
                with timer("allocate-sequence", sequence=sequence_name, n=n):
                    if auto_create:
                        adapter.ensure_sequence(connection, sequence_name)
                    values = adapter.allocate_sequence(connection, sequence_name, n)
            except SQLAlchemyError as e:
                self._logger.error(f"Sequence allocation from {sequence_name} failed: {e}")
                raise SequenceAllocationError(
                    f"Allocation of {n} ids from sequence '{sequence_name}' failed",
                    condition=adapter.error_condition(e)) from e
            except NotImplementedError as e:
                raise SequenceAllocationError(
                    f"Dialect '{adapter.dialect}' cannot allocate from sequence '{sequence_name}'") from e
            if len(values) < n:
                raise SequenceAllocationError(
                    f"Sequence '{sequence_name}' returned {len(values)} values, {n} requested",
                    condition="insufficient-values")
            resolved.update(zip(tempids, values))
            self._logger.debug(f"Allocated {n} ids from {sequence_name}: {values[0]}..{values[n - 1]}")
        return resolved

    def resolve(self, connection: Connection, adapter: VendorAdapter, plan: IdentifierPlan,
                auto_create: bool = False) -> Dict[Tempid, object]:
        """Resolve every placeholder of the plan. Returns {tempid: persisted id}."""
        resolved: Dict[Tempid, object] = {}
        resolved.update(self.allocate_sequence_ids(connection, adapter, plan.sequence_tempids, auto_create))
        resolved.update(self.resolve_uuid_tempids(plan.uuid_tempids))
        self._logger.info(f"Resolved {len(resolved)} placeholders")
        return resolved
