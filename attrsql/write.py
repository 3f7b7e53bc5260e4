"""
Transactional execution of a planned save.

A save runs `plan -> ownership -> order` without touching the database, then
acquires one connection and executes `begin -> resolve ids -> ordered
operations -> orphan deletes -> commit`. Any failure inside the transaction
rolls it back as a whole and surfaces as a single AttrSqlError; placeholders
of a failed save stay unresolved and may be reused by a retry.
"""
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import sqlalchemy as sa
from sqlalchemy.engine import Connection
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError, StatementError
from sqlalchemy.sql.expression import TableClause

from attrsql.attributes import AttributeRegistry, AttributeSpec
from attrsql.connection import Environment
from attrsql.converters import sql_type_for, to_storage_value
from attrsql.delta import Delta, EntityRef, Tempid
from attrsql.dependency import order_operations
from attrsql.errors import (
    AttrSqlError,
    ConstraintViolationError,
    DatabaseConnectionError,
    ValueConversionError,
)
from attrsql.ids import IdentifierResolver
from attrsql.ownership import OwnershipEngine
from attrsql.planner import DeltaPlanner, EntityOperation, OperationKind, SavePlan
from attrsql.tracer import timer, traced
from attrsql.vendor import VendorAdapter


class WriteExecutor:
    """
    Plans a delta and executes it inside one transaction.
    """

    def __init__(self, registry: AttributeRegistry) -> None:
        self._registry = registry
        self._resolver = IdentifierResolver(registry)
        self._planner = DeltaPlanner(registry, self._resolver)
        self._ownership = OwnershipEngine(registry)
        self._logger = logging.getLogger("WriteExecutor")

    ##############################
    # Planning phase
    ##############################

    def prepare(self, delta: Delta) -> Tuple[SavePlan, List[EntityOperation]]:
        """
        Run every planning step. Nothing here touches the database.

        Returns:
            The ownership-expanded plan and its operations in execution order

        Raises:
            ValidationError: If the delta is malformed
            UnresolvableDependencyError: If new entities reference each other in a cycle
        """
        plan = self._planner.plan(delta)
        plan = self._ownership.apply(plan)
        for resolution in plan.resolutions:
            self._logger.debug(f"Writing {resolution.attribute_key} through {resolution.owner_key} "
                               f"on {resolution.row} ({resolution.action})")
        ordered = order_operations(plan, self._registry)
        return plan, ordered

    ##############################
    # Execution phase
    ##############################

    def execute(self, connection: Connection, adapter: VendorAdapter, plan: SavePlan,
                ordered: List[EntityOperation], tempids: List[Tempid],
                auto_create: bool = False) -> Dict[Tempid, Any]:
        """
        Execute a prepared plan in a single transaction.

        Args:
            connection: Connection with no transaction in progress
            adapter: Vendor adapter used for sequence allocation and error conditions
            plan: Output of prepare()
            ordered: Operations in execution order
            tempids: Placeholders that appear as entity identifiers in the delta
            auto_create: Create missing sequences before allocating

        Returns:
            Mapping of every placeholder in `tempids` to its persisted identifier
        """
        try:
            with connection.begin():
                resolved = self._resolver.resolve(connection, adapter, plan.identifier_plan, auto_create)
                for op in ordered:
                    self._run_operation(connection, adapter, op, resolved)
                for orphan in plan.orphan_deletes:
                    self._logger.debug(f"Deleting orphan {orphan}")
                    self._run_statement(connection, adapter, orphan, self._delete_statement(orphan, resolved))
        except AttrSqlError as e:
            self._logger.error(f"Save rolled back: {e}")
            raise
        except StatementError as e:
            failure = self._translate(e, None, adapter)
            self._logger.error(f"Save rolled back: {failure}")
            raise failure from e
        self._logger.info(f"Committed {len(ordered)} operations and {len(plan.orphan_deletes)} orphan deletions")
        return {tempid: resolved[tempid] for tempid in tempids}

    def _run_operation(self, connection: Connection, adapter: VendorAdapter, op: EntityOperation,
                       resolved: Dict[Tempid, Any]) -> None:
        try:
            if op.kind == OperationKind.INSERT:
                stmt = self._insert_statement(op, resolved)
            elif op.kind == OperationKind.UPDATE:
                stmt = self._update_statement(op, resolved)
            else:
                stmt = self._delete_statement(op.ref, resolved)
        except ValueConversionError as e:
            e.entity_ref = op.ref
            raise
        if stmt is None:
            self._logger.debug(f"No column changes for {op.ref}")
            return
        self._run_statement(connection, adapter, op.ref, stmt)

    def _run_statement(self, connection: Connection, adapter: VendorAdapter, ref: EntityRef,
                       stmt: sa.sql.Executable) -> None:
        try:
            with timer("write", entity=str(ref)):
                connection.execute(stmt)
        except StatementError as e:
            raise self._translate(e, ref, adapter) from e

    def _translate(self, exc: StatementError, ref: Optional[EntityRef], adapter: VendorAdapter) -> AttrSqlError:
        """Map a driver error onto the error taxonomy."""
        if isinstance(exc, IntegrityError):
            condition = adapter.error_condition(exc)
            return ConstraintViolationError(f"Write rejected by the database: {condition}",
                                            entity_ref=ref, condition=condition)
        if isinstance(exc, (OperationalError, InterfaceError)) or \
                (isinstance(exc, DBAPIError) and exc.connection_invalidated):
            return DatabaseConnectionError(f"Database connection failed: {exc.orig}",
                                           entity_ref=ref, condition=adapter.error_condition(exc))
        if isinstance(exc, DBAPIError):
            condition = adapter.error_condition(exc)
            return ConstraintViolationError(f"Write rejected by the database: {condition}",
                                            entity_ref=ref, condition=condition)
        return ValueConversionError(f"Value could not be bound: {exc}", entity_ref=ref,
                                    condition="conversion-failure")

    ##############################
    # Statement construction
    ##############################

    def _table(self, ident_key: str, attrs: List[AttributeSpec]) -> TableClause:
        id_attr = self._registry.identity_attribute(ident_key)
        columns = {}
        for attr in [id_attr] + attrs:
            name = self._registry.column_name(attr)
            columns.setdefault(name, sa.column(name, sql_type_for(attr, self._registry)))
        return sa.table(self._registry.table_name(ident_key), *columns.values())

    def _id_value(self, ref: EntityRef, resolved: Dict[Tempid, Any]) -> Any:
        value = resolved[ref.id] if ref.is_new else ref.id
        return to_storage_value(self._registry.identity_attribute(ref.ident_key), value)

    def _storage_value(self, attr: AttributeSpec, value: Any, resolved: Dict[Tempid, Any]) -> Any:
        if value is None:
            return None
        if attr.is_ref:
            target: EntityRef = value
            target_id = resolved[target.id] if target.is_new else target.id
            if attr.model_to_storage is not None:
                return to_storage_value(attr, target_id)
            return to_storage_value(self._registry.identity_attribute(target.ident_key), target_id)
        return to_storage_value(attr, value)

    def _column_changes(self, op: EntityOperation, resolved: Dict[Tempid, Any],
                        skip_missing: bool) -> Dict[AttributeSpec, Any]:
        values: Dict[AttributeSpec, Any] = {}
        for attr_key, change in op.changes.items():
            attr = self._registry.attribute(attr_key)
            if not attr.stores_column:
                continue
            if change.after is None and skip_missing:
                continue
            values[attr] = self._storage_value(attr, change.after, resolved)
        return values

    def _insert_statement(self, op: EntityOperation, resolved: Dict[Tempid, Any]) -> sa.Insert:
        values = self._column_changes(op, resolved, skip_missing=True)
        table = self._table(op.ref.ident_key, list(values))
        id_attr = self._registry.identity_attribute(op.ref.ident_key)
        row = {self._registry.column_name(id_attr): self._id_value(op.ref, resolved)}
        row.update({self._registry.column_name(attr): value for attr, value in values.items()})
        return sa.insert(table).values(**row)

    def _update_statement(self, op: EntityOperation, resolved: Dict[Tempid, Any]) -> Optional[sa.Update]:
        values = self._column_changes(op, resolved, skip_missing=False)
        if not values:
            return None
        table = self._table(op.ref.ident_key, list(values))
        id_column = self._registry.column_name(self._registry.identity_attribute(op.ref.ident_key))
        return (
            sa.update(table)
            .where(table.c[id_column] == self._id_value(op.ref, resolved))
            .values(**{self._registry.column_name(attr): value for attr, value in values.items()})
        )

    def _delete_statement(self, ref: EntityRef, resolved: Dict[Tempid, Any]) -> sa.Delete:
        table = self._table(ref.ident_key, [])
        id_column = self._registry.column_name(self._registry.identity_attribute(ref.ident_key))
        return sa.delete(table).where(table.c[id_column] == self._id_value(ref, resolved))


@traced("save")
def save(env: Environment, delta: Union[Delta, Mapping[Any, Any]]) -> Dict[Tempid, Any]:
    """
    Persist a delta atomically.

    Args:
        env: Registry and connection pools
        delta: A Delta or a plain mapping accepted by Delta.from_dict

    Returns:
        Mapping of every placeholder used as an entity identifier to its persisted id

    Raises:
        ValidationError, UnresolvableDependencyError: Before any database call
        SequenceAllocationError, ConstraintViolationError, ValueConversionError,
        DatabaseConnectionError: After the transaction has been rolled back
    """
    if not isinstance(delta, Delta):
        delta = Delta.from_dict(delta)
    executor = WriteExecutor(env.registry)
    plan, ordered = executor.prepare(delta)
    if not ordered and not plan.orphan_deletes:
        return {}
    schema_name = plan.schema_name
    with env.pools.connection(schema_name) as connection:
        return executor.execute(
            connection,
            env.pools.adapter(schema_name),
            plan,
            ordered,
            delta.tempids(),
            auto_create=env.pools.auto_create(schema_name),
        )
