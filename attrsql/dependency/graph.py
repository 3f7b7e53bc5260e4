"""
Dependency graph over newly created entities.

An edge A -> B means the insert of A stores a foreign key pointing at the
not-yet-persisted B, so B must be inserted first. Cycles cannot be satisfied
without a follow-up update and are reported as errors.
"""
import heapq
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from attrsql.attributes import AttributeRegistry
from attrsql.delta import EntityRef
from attrsql.errors import UnresolvableDependencyError
from attrsql.planner import EntityOperation, OperationKind, SavePlan

logger = logging.getLogger("DependencyOrderer")


class CycleStatus(Enum):
    """Status of cycle detection."""
    NO_CYCLE = 0
    CYCLE_DETECTED = 1


class GraphNode(BaseModel):
    """Represents one insert operation in the dependency graph."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    operation: Any = Field(exclude=True)
    ref: EntityRef
    dependencies: Set[EntityRef] = Field(default_factory=set)  # rows that must exist first
    dependents: Set[EntityRef] = Field(default_factory=set)  # rows that point at this one

    def add_dependency(self, ref: EntityRef) -> None:
        self.dependencies.add(ref)

    def add_dependent(self, ref: EntityRef) -> None:
        self.dependents.add(ref)

    def __str__(self) -> str:
        return f"Node({self.ref}, deps={len(self.dependencies)}, dependents={len(self.dependents)})"

    def __repr__(self) -> str:
        return self.__str__()


class InsertDependencyGraph(BaseModel):
    """
    Computes and maintains the dependency graph of insert operations.

    This class provides methods to:
    1. Build the graph from a save plan
    2. Detect cycles
    3. Produce a topological order (referenced rows first)
    """
    nodes: Dict[EntityRef, GraphNode] = Field(default_factory=dict)
    cycles: List[List[EntityRef]] = Field(default_factory=list)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def add_operation(self, operation: EntityOperation, dependencies: Optional[List[EntityRef]] = None) -> None:
        """
        Add an insert operation with optional dependencies.

        Args:
            operation: The insert operation
            dependencies: Refs of inserts this operation depends on
        """
        ref = operation.ref
        if ref not in self.nodes:
            self.nodes[ref] = GraphNode(operation=operation, ref=ref)
        for dep in dependencies or []:
            if dep == ref:
                continue
            if dep not in self.nodes:
                raise KeyError(f"Dependency {dep} has not been added to the graph")
            self.nodes[ref].add_dependency(dep)
            self.nodes[dep].add_dependent(ref)

    def build_graph(self, plan: SavePlan, registry: AttributeRegistry) -> CycleStatus:
        """
        Build the graph from the insert operations of a plan.

        Only column-backed to-one references count: after ownership expansion
        those are the only changes that write a foreign key on the inserted row.

        Returns:
            CycleStatus indicating if any cycles were detected
        """
        self.nodes.clear()
        self.cycles.clear()
        inserts = plan.of_kind(OperationKind.INSERT)
        for op in inserts:
            self.add_operation(op)
        for op in inserts:
            deps = []
            for attr_key, change in op.changes.items():
                attr = registry.attribute(attr_key)
                if attr.is_ref and attr.stores_column and isinstance(change.after, EntityRef) \
                        and change.after in self.nodes:
                    deps.append(change.after)
            self.add_operation(op, deps)
        status = self.detect_cycles()
        logger.info(f"Built dependency graph with {len(self.nodes)} inserts")
        return status

    def detect_cycles(self) -> CycleStatus:
        """
        Depth-first search over dependencies with an explicit stack, recording
        every back edge as a cycle.
        """
        position = self._positions()
        visited: Set[EntityRef] = set()
        for root in self.nodes:
            if root in visited:
                continue
            path: List[EntityRef] = [root]
            on_path: Set[EntityRef] = {root}
            stack = [iter(self._dependencies_of(root, position))]
            while stack:
                dep = next(stack[-1], None)
                if dep is None:
                    stack.pop()
                    done = path.pop()
                    on_path.discard(done)
                    visited.add(done)
                    continue
                if dep in on_path:
                    cycle = path[path.index(dep):] + [dep]
                    logger.warning(f"Detected cycle: {cycle}")
                    self.cycles.append(cycle)
                    continue
                if dep in visited:
                    continue
                path.append(dep)
                on_path.add(dep)
                stack.append(iter(self._dependencies_of(dep, position)))
        return CycleStatus.CYCLE_DETECTED if self.cycles else CycleStatus.NO_CYCLE

    def _positions(self) -> Dict[EntityRef, int]:
        return {ref: i for i, ref in enumerate(self.nodes)}

    def _dependencies_of(self, ref: EntityRef, position: Dict[EntityRef, int]) -> List[EntityRef]:
        return sorted(self.nodes[ref].dependencies, key=position.__getitem__)

    def get_topological_sort(self) -> List[EntityOperation]:
        """
        Return insert operations with dependencies first.

        Independent operations keep their delta order.

        Raises:
            UnresolvableDependencyError: If the graph contains a cycle
        """
        cycles = self.get_cycles()
        if cycles:
            raise UnresolvableDependencyError(
                f"Newly created entities reference each other in a cycle: {cycles[0]}",
                cycle=cycles[0])
        position = self._positions()
        remaining = {ref: len(node.dependencies) for ref, node in self.nodes.items()}
        order: List[EntityOperation] = []
        # (delta position, ref); positions are unique so refs are never compared
        ready = [(position[ref], ref) for ref, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        while ready:
            _, ref = heapq.heappop(ready)
            order.append(self.nodes[ref].operation)
            for dependent in self.nodes[ref].dependents:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, (position[dependent], dependent))
        if len(order) != len(self.nodes):
            raise UnresolvableDependencyError("Dependency graph could not be fully ordered")
        return order

    def get_cycles(self) -> List[List[EntityRef]]:
        return self.cycles


def order_operations(plan: SavePlan, registry: AttributeRegistry) -> List[EntityOperation]:
    """
    Order a plan's operations for execution: inserts in dependency order, then
    updates, then deletes.

    Raises:
        UnresolvableDependencyError: If inserts reference each other in a cycle
    """
    graph = InsertDependencyGraph()
    graph.build_graph(plan, registry)
    ordered = graph.get_topological_sort()
    ordered.extend(plan.of_kind(OperationKind.UPDATE))
    ordered.extend(plan.of_kind(OperationKind.DELETE))
    return ordered
