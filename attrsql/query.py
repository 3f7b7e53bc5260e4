"""
Query resolver: compiles a requested attribute subtree into batched SELECTs.

A subtree is a list whose items are attribute keys or single-entry mappings
from a reference attribute to a nested subtree:

    ["item/name", {"item/line-items": ["line-item/qty", {"line-item/product": ["product/sku"]}]}]

Every entity level of the subtree becomes one statement that is executed once
for the whole batch of parent keys, so N roots cost the same number of round
trips as one. Rows are grouped back onto their parents in Python.
"""
import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import sqlalchemy as sa
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.engine import Connection
from sqlalchemy.exc import InterfaceError, OperationalError

from attrsql.attributes import AttributeRegistry, AttributeSpec
from attrsql.connection import Environment
from attrsql.converters import sql_type_for, to_model_value, to_storage_value
from attrsql.delta import EntityRef, as_entity_ref
from attrsql.errors import DatabaseConnectionError, ValidationError
from attrsql.tracer import timer, traced

KEY_LABEL = "attrsql_key"
FORWARD = "forward"
REVERSE = "reverse"

Subtree = Sequence[Union[str, Mapping[str, Any]]]


class JoinPlan(BaseModel):
    """
    One reference attribute of a node.

    A forward join follows a foreign key stored on the parent row. A reverse
    join selects target rows whose `link` column points back at the parent.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    attribute: AttributeSpec
    direction: str
    link: AttributeSpec
    node: "NodePlan"

    @property
    def many(self) -> bool:
        return self.attribute.is_to_many

    @property
    def fetches(self) -> bool:
        """Forward joins that only ask for the identity are answered from the parent row."""
        return self.direction == REVERSE or bool(self.node.attributes or self.node.joins)


class NodePlan(BaseModel):
    """One entity level: the rows selected, keyed by `key`, and their child joins."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    ident_key: str
    identity: AttributeSpec
    key: AttributeSpec
    attributes: List[AttributeSpec] = Field(default_factory=list)
    joins: List[JoinPlan] = Field(default_factory=list)
    order_by: Optional[AttributeSpec] = None
    statement: Any = None


JoinPlan.model_rebuild()


class QueryPlan(BaseModel):
    """Compiled plan for one identity type and one subtree."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    root: NodePlan

    def statements(self) -> List[sa.Select]:
        """All statements of the plan in level order; one per fetched node."""
        result: List[sa.Select] = []
        level = [self.root]
        while level:
            next_level: List[NodePlan] = []
            for node in level:
                result.append(node.statement)
                next_level.extend(join.node for join in node.joins if join.fetches)
            level = next_level
        return result

    def depth(self) -> int:
        def node_depth(node: NodePlan) -> int:
            return 1 + max((node_depth(j.node) for j in node.joins if j.fetches), default=0)
        return node_depth(self.root)


class QueryResolver:
    """
    Compiles and runs subtree queries for batches of roots.
    """

    def __init__(self, registry: AttributeRegistry) -> None:
        self._registry = registry
        self._logger = logging.getLogger("QueryResolver")

    ##############################
    # Compilation
    ##############################

    def compile(self, ident_key: str, subtree: Subtree) -> QueryPlan:
        """
        Compile a subtree for roots of one identity type.

        Raises:
            ValidationError: If the subtree names attributes the entity does not have
        """
        identity = self._registry.identity_attribute(ident_key)
        root = self._compile_node(ident_key, subtree, key=identity)
        return QueryPlan(root=root)

    def _parse(self, subtree: Subtree) -> List[Tuple[str, Optional[Subtree]]]:
        if isinstance(subtree, (str, Mapping)):
            subtree = [subtree]
        items: List[Tuple[str, Optional[Subtree]]] = []
        for item in subtree:
            if isinstance(item, str):
                items.append((item, None))
            elif isinstance(item, Mapping):
                items.extend((key, nested) for key, nested in item.items())
            else:
                raise ValidationError(f"Invalid subtree element {item!r}")
        return items

    def _compile_node(self, ident_key: str, subtree: Subtree, key: AttributeSpec,
                      order_by: Optional[AttributeSpec] = None) -> NodePlan:
        identity = self._registry.identity_attribute(ident_key)
        node = NodePlan(ident_key=ident_key, identity=identity, key=key, order_by=order_by)
        for attr_key, nested in self._parse(subtree):
            attr = self._registry.get(attr_key)
            if attr is None:
                raise ValidationError(f"Unknown attribute '{attr_key}' in query")
            if not self._registry.belongs_to(attr, ident_key):
                raise ValidationError(f"Attribute '{attr_key}' does not belong to '{ident_key}'")
            if attr.identity:
                continue
            if not attr.is_ref:
                if nested is not None:
                    raise ValidationError(f"Attribute '{attr_key}' is not a reference and cannot be expanded")
                if attr not in node.attributes:
                    node.attributes.append(attr)
                continue
            node.joins.append(self._compile_join(attr, nested or []))
        node.statement = self._node_statement(node)
        return node

    def _compile_join(self, attr: AttributeSpec, nested: Subtree) -> JoinPlan:
        target_identity = self._registry.identity_attribute(attr.target)  # type: ignore[arg-type]
        if attr.fk_owner_of is None:
            child = self._compile_node(attr.target, nested, key=target_identity)  # type: ignore[arg-type]
            return JoinPlan(attribute=attr, direction=FORWARD, link=attr, node=child)
        link = self._registry.attribute(attr.fk_owner_of)
        order_by = self._registry.attribute(attr.order_by) if attr.order_by else None
        child = self._compile_node(attr.target, nested, key=link, order_by=order_by)  # type: ignore[arg-type]
        return JoinPlan(attribute=attr, direction=REVERSE, link=link, node=child)

    def _node_statement(self, node: NodePlan) -> sa.Select:
        registry = self._registry
        forward_links = [j.link for j in node.joins if j.direction == FORWARD]
        needed = [node.identity, node.key] + node.attributes + forward_links
        if node.order_by is not None:
            needed.append(node.order_by)
        columns: Dict[str, sa.ColumnClause] = {}
        for attr in needed:
            name = registry.column_name(attr)
            columns.setdefault(name, sa.column(name, sql_type_for(attr, registry)))
        table = sa.table(registry.table_name(node.ident_key), *columns.values())

        selected = [table.c[registry.column_name(node.key)].label(KEY_LABEL),
                    table.c[registry.column_name(node.identity)].label(node.identity.key)]
        for attr in node.attributes + forward_links:
            selected.append(table.c[registry.column_name(attr)].label(attr.key))
        stmt = sa.select(*selected).where(
            table.c[registry.column_name(node.key)].in_(sa.bindparam("keys", expanding=True)))
        if node.order_by is not None:
            stmt = stmt.order_by(table.c[registry.column_name(node.order_by)])
        return stmt

    ##############################
    # Execution
    ##############################

    def run(self, connection: Connection, roots: Iterable[Any], subtree: Subtree) -> List[Optional[Dict[str, Any]]]:
        """
        Resolve a subtree for a batch of roots.

        Args:
            connection: Open connection; only read
            roots: EntityRefs or (ident_key, id) pairs
            subtree: Requested attributes

        Returns:
            One result per root in input order; None for roots with no row
        """
        refs = self.coerce_roots(roots)
        by_identity: Dict[str, List[EntityRef]] = {}
        for ref in refs:
            by_identity.setdefault(ref.ident_key, []).append(ref)

        found: Dict[Tuple[str, Any], Dict[str, Any]] = {}
        for ident_key, group in by_identity.items():
            plan = self.compile(ident_key, subtree)
            identity = plan.root.identity
            keys = list(dict.fromkeys(to_storage_value(identity, ref.id) for ref in group))
            with timer("query", entity=ident_key, roots=len(keys), levels=plan.depth()):
                for key, entity in self._run_node(connection, plan.root, keys):
                    found[(ident_key, key)] = entity
        return [found.get((ref.ident_key, to_storage_value(self._registry.identity_attribute(ref.ident_key), ref.id)))
                for ref in refs]

    def coerce_roots(self, roots: Iterable[Any]) -> List[EntityRef]:
        refs = []
        for root in roots:
            ref = as_entity_ref(root)
            if ref is None or ref.is_new:
                raise ValidationError(f"Query root {root!r} is not a persisted entity reference")
            self._registry.identity_attribute(ref.ident_key)
            refs.append(ref)
        return refs

    def _run_node(self, connection: Connection, node: NodePlan, keys: List[Any]) -> List[Tuple[Any, Dict[str, Any]]]:
        if not keys:
            return []
        self._logger.debug(f"Fetching {node.ident_key} for {len(keys)} keys")
        rows = connection.execute(node.statement, {"keys": keys}).mappings().all()
        results: List[Tuple[Any, Dict[str, Any]]] = []
        for row in rows:
            entity = {node.identity.key: to_model_value(node.identity, row[node.identity.key])}
            for attr in node.attributes:
                entity[attr.key] = to_model_value(attr, row[attr.key])
            results.append((row[KEY_LABEL], entity))
        for join in node.joins:
            if join.direction == FORWARD:
                self._resolve_forward(connection, join, rows, results)
            else:
                self._resolve_reverse(connection, node, join, rows, results)
        return results

    def _resolve_forward(self, connection: Connection, join: JoinPlan, rows: Sequence[Mapping[str, Any]],
                         results: List[Tuple[Any, Dict[str, Any]]]) -> None:
        label = join.link.key
        fks = list(dict.fromkeys(row[label] for row in rows if row[label] is not None))
        if join.fetches:
            children = dict(self._run_node(connection, join.node, fks))
        else:
            identity = join.node.identity
            children = {fk: {identity.key: to_model_value(identity, fk)} for fk in fks}
        for row, (_, entity) in zip(rows, results):
            fk = row[label]
            child = children.get(fk) if fk is not None else None
            entity[join.attribute.key] = dict(child) if child is not None else None

    def _resolve_reverse(self, connection: Connection, parent: NodePlan, join: JoinPlan, rows: Sequence[Mapping[str, Any]],
                         results: List[Tuple[Any, Dict[str, Any]]]) -> None:
        id_label = parent.identity.key
        parent_ids = list(dict.fromkeys(row[id_label] for row in rows))
        grouped: Dict[Any, List[Dict[str, Any]]] = defaultdict(list)
        for key, child in self._run_node(connection, join.node, parent_ids):
            grouped[key].append(child)
        for row, (_, entity) in zip(rows, results):
            children = grouped.get(row[id_label], [])
            if join.many:
                entity[join.attribute.key] = list(children)
            else:
                entity[join.attribute.key] = children[0] if children else None


@traced("run-query")
def run_query(env: Environment, roots: Iterable[Any], subtree: Subtree) -> List[Optional[Dict[str, Any]]]:
    """
    Query entry point: resolve `subtree` for every root.

    Each logical schema involved gets its own scoped connection.

    Raises:
        ValidationError: If roots or subtree are malformed
        DatabaseConnectionError: If a connection cannot be acquired or is lost
    """
    resolver = QueryResolver(env.registry)
    refs = resolver.coerce_roots(roots)
    by_schema: Dict[str, List[EntityRef]] = {}
    for ref in refs:
        by_schema.setdefault(env.registry.schema_of(ref.ident_key), []).append(ref)

    found: Dict[EntityRef, Optional[Dict[str, Any]]] = {}
    for schema_name, group in by_schema.items():
        with env.pools.connection(schema_name) as connection:
            try:
                results = resolver.run(connection, group, subtree)
            except (OperationalError, InterfaceError) as e:
                raise DatabaseConnectionError(f"Query against '{schema_name}' failed: {e.orig}",
                                              condition=env.pools.adapter(schema_name).error_condition(e)) from e
        found.update(zip(group, results))
    return [found[ref] for ref in refs]
