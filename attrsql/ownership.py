"""
Foreign-key ownership and referential integrity.

A reference attribute without an ownership pointer stores the foreign key in a
column of its own entity's row. A reference with `fk_owner_of` is a reverse
view: writes to it are translated into writes of the owning attribute's column
on the referenced rows. Removing a reference through a view either clears that
column or, when the view is flagged `delete_orphan`, schedules the formerly
referenced row for deletion after the main write phase.

Known limitation: when one delta removes an entity from one owner's
delete-orphan collection and adds it to another owner, the orphan deletion
still runs and the entity is deleted. Removal is applied before addition.
"""
import logging
from typing import Dict, List, Optional

from attrsql.attributes import AttributeRegistry, AttributeSpec
from attrsql.delta import ChangeRecord, EntityRef
from attrsql.planner import EntityOperation, OperationKind, OwnershipResolution, SavePlan


class OwnershipEngine:
    """
    Expands reverse-reference changes into owning-column writes.
    """

    def __init__(self, registry: AttributeRegistry) -> None:
        self._registry = registry
        self._logger = logging.getLogger("OwnershipEngine")

    def storing_attribute(self, attr: AttributeSpec) -> AttributeSpec:
        """The attribute whose column physically holds the foreign key for `attr`."""
        if attr.fk_owner_of is None:
            return attr
        return self._registry.attribute(attr.fk_owner_of)

    def resolve(self, attr: AttributeSpec, source: EntityRef, target: Optional[EntityRef],
                removed: bool = False) -> OwnershipResolution:
        """
        Resolve where the foreign key of a single reference change is written.

        Args:
            attr: The changed reference attribute
            source: The entity the change was submitted on
            target: The referenced (or formerly referenced) entity
            removed: Whether the reference is being removed
        """
        owner = self.storing_attribute(attr)
        if attr.fk_owner_of is None:
            row, value = source, (None if removed else target)
            table = self._registry.table_name(source.ident_key)
        else:
            row, value = target, (None if removed else source)  # type: ignore[assignment]
            table = self._registry.table_name(attr.target)  # type: ignore[arg-type]
        if not removed:
            action = "set"
        elif attr.delete_orphan:
            action = "delete-orphan"
        else:
            action = "clear"
        return OwnershipResolution(
            attribute_key=attr.key,
            owner_key=owner.key,
            row=row,  # type: ignore[arg-type]
            table=table,
            column=self._registry.column_name(owner),
            value=value,
            action=action,
        )

    def _split(self, attr: AttributeSpec, change: ChangeRecord):
        if attr.is_to_many:
            before = list(dict.fromkeys(change.before or []))
            after = list(dict.fromkeys(change.after or []))
            return [t for t in after if t not in before], [t for t in before if t not in after]
        added = [change.after] if change.after is not None and change.after != change.before else []
        removed = [change.before] if change.before is not None and change.before != change.after else []
        return added, removed

    def apply(self, plan: SavePlan) -> SavePlan:
        """
        Translate every reverse-reference change of a plan.

        Returns:
            A new plan whose operations only carry column-backed changes, with
            the ownership resolutions and orphan deletions recorded
        """
        operations: Dict[EntityRef, EntityOperation] = {}
        pending: Dict[EntityRef, Dict[str, ChangeRecord]] = {}
        resolutions: List[OwnershipResolution] = []
        orphans: List[EntityRef] = []

        for ref, op in plan.operations.items():
            local: Dict[str, ChangeRecord] = {}
            for attr_key, change in op.changes.items():
                attr = self._registry.attribute(attr_key)
                if not attr.is_ref:
                    local[attr_key] = change
                    continue
                added, removed = self._split(attr, change)
                # removals first; a later addition of the same row wins the column
                for target in removed:
                    resolution = self.resolve(attr, ref, target, removed=True)
                    resolutions.append(resolution)
                    if attr.fk_owner_of is None:
                        continue
                    if resolution.action == "delete-orphan":
                        if target not in orphans:
                            orphans.append(target)
                    else:
                        columns = pending.setdefault(target, {})
                        if resolution.owner_key not in columns:
                            columns[resolution.owner_key] = ChangeRecord(before=ref, after=None)
                for target in added:
                    resolution = self.resolve(attr, ref, target)
                    resolutions.append(resolution)
                    if attr.fk_owner_of is not None:
                        pending.setdefault(target, {})[resolution.owner_key] = ChangeRecord(after=ref)
                if attr.fk_owner_of is None:
                    local[attr_key] = change
            operations[ref] = op.model_copy(update={"changes": local})

        for target, columns in pending.items():
            existing = operations.get(target)
            if existing is None:
                operations[target] = EntityOperation(ref=target, kind=OperationKind.UPDATE, changes=columns)
                continue
            if existing.kind == OperationKind.DELETE:
                self._logger.debug(f"Skipping foreign key writes on deleted row {target}")
                continue
            merged = dict(existing.changes)
            for owner_key, change in columns.items():
                if change.after is not None or owner_key not in merged:
                    merged[owner_key] = change
            operations[target] = existing.model_copy(update={"changes": merged})

        orphans = [o for o in orphans
                   if not (o in operations and operations[o].kind == OperationKind.DELETE)]
        if orphans:
            self._logger.info(f"Scheduled {len(orphans)} orphan deletions")
        return plan.model_copy(update={
            "operations": operations,
            "resolutions": resolutions,
            "orphan_deletes": orphans,
        })
