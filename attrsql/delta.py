"""
Delta model: the sparse change-set submitted for one save.

A Delta maps EntityRefs to either a mapping of attribute key -> ChangeRecord
or a tombstone ({"delete": True}). Identifiers are either persisted values or
Tempid placeholders issued by the caller before the save.
"""
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from attrsql.errors import ValidationError


class Tempid(BaseModel):
    """Opaque placeholder for an identifier that is not yet known."""
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)

    def __repr__(self) -> str:
        return f"Tempid({str(self.id)[:8]})"


def is_tempid(value: Any) -> bool:
    return isinstance(value, Tempid)


class EntityRef(BaseModel):
    """An (identity key, identifier) pair, e.g. ("item/id", 42)."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    ident_key: str
    id: Any

    @classmethod
    def of(cls, ident_key: str, id: Any) -> "EntityRef":
        return cls(ident_key=ident_key, id=id)

    @property
    def is_new(self) -> bool:
        return is_tempid(self.id)

    def __repr__(self) -> str:
        return f"[{self.ident_key} {self.id!r}]"

    __str__ = __repr__


def as_entity_ref(value: Any) -> Optional[EntityRef]:
    """Coerce an EntityRef or an (ident_key, id) pair; anything else gives None."""
    if isinstance(value, EntityRef):
        return value
    if isinstance(value, (tuple, list)) and len(value) == 2 and isinstance(value[0], str) \
            and "/" in value[0]:
        return EntityRef.of(value[0], value[1])
    return None


class ChangeRecord(BaseModel):
    """Before/after values of one attribute. A missing after means removal."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    before: Any = None
    after: Any = None


DELETE = "delete"
EntityDiff = Union[Dict[str, ChangeRecord], str]


class Delta:
    """
    Ordered change-set for a single save.

    Iteration order follows insertion order; it only matters for stable
    enumeration of placeholders when allocating sequence values.
    """

    def __init__(self, entries: Optional[Dict[EntityRef, EntityDiff]] = None) -> None:
        self._entries: Dict[EntityRef, EntityDiff] = dict(entries or {})

    @classmethod
    def from_dict(cls, raw: Mapping[Any, Any]) -> "Delta":
        """
        Build a Delta from a plain mapping.

        Keys may be EntityRefs or (ident_key, id) pairs. Values are either
        {"delete": True} or {attr_key: {"before": ..., "after": ...}}.

        Raises:
            ValidationError: If an entry is malformed
        """
        entries: Dict[EntityRef, EntityDiff] = {}
        for raw_ref, raw_diff in raw.items():
            ref = as_entity_ref(raw_ref)
            if ref is None:
                raise ValidationError(f"Delta key {raw_ref!r} is not an entity reference")
            if ref in entries:
                raise ValidationError("Duplicate entity in delta", entity_ref=ref)
            if not isinstance(raw_diff, Mapping):
                raise ValidationError("Entity changes must be a mapping", entity_ref=ref)
            if raw_diff.get(DELETE) is True:
                if len(raw_diff) != 1:
                    raise ValidationError("A tombstone cannot carry attribute changes", entity_ref=ref)
                entries[ref] = DELETE
                continue
            changes: Dict[str, ChangeRecord] = {}
            for attr_key, change in raw_diff.items():
                if isinstance(change, ChangeRecord):
                    changes[attr_key] = change
                elif isinstance(change, Mapping) and set(change) <= {"before", "after"}:
                    changes[attr_key] = ChangeRecord(before=change.get("before"), after=change.get("after"))
                else:
                    raise ValidationError(f"Malformed change for '{attr_key}': {change!r}", entity_ref=ref)
            entries[ref] = changes
        return cls(entries)

    def __iter__(self) -> Iterator[EntityRef]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, ref: object) -> bool:
        return ref in self._entries

    def __getitem__(self, ref: EntityRef) -> EntityDiff:
        return self._entries[ref]

    def items(self) -> Iterator[Tuple[EntityRef, EntityDiff]]:
        return iter(self._entries.items())

    def is_tombstone(self, ref: EntityRef) -> bool:
        return self._entries.get(ref) == DELETE

    def tempids(self) -> List[Tempid]:
        """Placeholders used as entity identifiers, in first-appearance order."""
        return [ref.id for ref in self._entries if ref.is_new]

    def __repr__(self) -> str:
        return f"Delta({self._entries!r})"
