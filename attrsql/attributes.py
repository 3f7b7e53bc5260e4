"""
Attribute metadata: the declarative description every component reads.

An AttributeSpec describes one qualified attribute key ("item/name"). Identity
attributes ("item/id") designate an entity's primary key and, through their
value type, its identifier-generation strategy. Non-identity attributes list the
identity keys of the entities they belong to in `identities`.

The AttributeRegistry is built once, validated at load time and never mutated.
It is passed explicitly to every entry point.
"""
import logging
import re
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger("AttributeRegistry")

DEFAULT_SCHEMA = "main"


class ValueType(str, Enum):
    """Closed set of attribute value types."""
    UUID = "uuid"
    INT = "int"
    LONG = "long"
    STRING = "string"
    DECIMAL = "decimal"
    INSTANT = "instant"
    BOOLEAN = "boolean"
    ENUM = "enum"
    REF = "ref"


class Cardinality(str, Enum):
    ONE = "one"
    MANY = "many"


SEQUENCE_TYPES = frozenset({ValueType.INT, ValueType.LONG})


def snake_case(name: str) -> str:
    """Convert a kebab/camel attribute name to a snake_case SQL identifier."""
    name = re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", name)
    return re.sub(r"[^0-9a-zA-Z]+", "_", name).strip("_").lower()


def key_namespace(key: str) -> str:
    return key.split("/", 1)[0]


def key_name(key: str) -> str:
    return key.split("/", 1)[-1]


class AttributeSpec(BaseModel):
    """
    Declarative description of a single attribute.

    Only reference attributes may carry ownership options. `fk_owner_of` marks a
    reference as a reverse view whose foreign key is physically stored by the
    named attribute on the target entity's table.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    key: str
    type: ValueType
    cardinality: Optional[Cardinality] = None
    identity: bool = False
    identities: FrozenSet[str] = Field(default_factory=frozenset)
    target: Optional[str] = None
    schema_name: str = DEFAULT_SCHEMA
    table: Optional[str] = None
    column_name: Optional[str] = None
    fk_owner_of: Optional[str] = None
    delete_orphan: bool = False
    order_by: Optional[str] = None
    max_length: Optional[int] = None
    model_to_storage: Optional[Callable[[Any], Any]] = None
    storage_to_model: Optional[Callable[[Any], Any]] = None

    @model_validator(mode="before")
    @classmethod
    def _default_cardinality(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("type") in (ValueType.REF, "ref") \
                and data.get("cardinality") is None:
            data = {**data, "cardinality": Cardinality.ONE}
        return data

    @model_validator(mode="after")
    def _check_options(self) -> "AttributeSpec":
        if "/" not in self.key:
            raise ValueError(f"Attribute key '{self.key}' must be qualified (namespace/name)")
        is_ref = self.type == ValueType.REF
        if not is_ref:
            for option in ("cardinality", "target", "fk_owner_of", "order_by"):
                if getattr(self, option) is not None:
                    raise ValueError(f"{self.key}: '{option}' is only valid on reference attributes")
            if self.delete_orphan:
                raise ValueError(f"{self.key}: 'delete_orphan' is only valid on reference attributes")
        else:
            if self.target is None:
                raise ValueError(f"{self.key}: reference attributes require a target")
            if self.identity:
                raise ValueError(f"{self.key}: a reference cannot be an identity attribute")
        if self.delete_orphan and self.fk_owner_of is None:
            raise ValueError(f"{self.key}: 'delete_orphan' requires 'fk_owner_of'")
        if self.order_by is not None:
            if self.fk_owner_of is None or self.cardinality != Cardinality.MANY:
                raise ValueError(f"{self.key}: 'order_by' requires 'fk_owner_of' and cardinality many")
        if self.max_length is not None and self.max_length <= 0:
            raise ValueError(f"{self.key}: 'max_length' must be positive")
        return self

    @property
    def is_ref(self) -> bool:
        return self.type == ValueType.REF

    @property
    def is_to_many(self) -> bool:
        return self.is_ref and self.cardinality == Cardinality.MANY

    @property
    def stores_column(self) -> bool:
        """True when the value lives in a column on the owning entity's own row."""
        return not self.is_ref or (self.fk_owner_of is None and self.cardinality == Cardinality.ONE)


class AttributeRegistry:
    """
    Immutable index of attribute specs by qualified key.
    """

    def __init__(self, attributes: Iterable[AttributeSpec]) -> None:
        by_key: Dict[str, AttributeSpec] = {}
        for attr in attributes:
            if attr.key in by_key:
                raise ValueError(f"Duplicate attribute key '{attr.key}'")
            by_key[attr.key] = attr
        self._by_key = by_key
        self._by_identity: Dict[str, List[AttributeSpec]] = {}
        for attr in by_key.values():
            for identity_key in attr.identities:
                self._by_identity.setdefault(identity_key, []).append(attr)
        self._validate()
        logger.info(f"Loaded attribute registry with {len(by_key)} attributes "
                    f"and {len(self.identity_keys())} entities")

    def _validate(self) -> None:
        for attr in self._by_key.values():
            if attr.identity:
                if not attr.table:
                    raise ValueError(f"{attr.key}: identity attributes require a table")
                continue
            for identity_key in attr.identities:
                owner = self._by_key.get(identity_key)
                if owner is None or not owner.identity:
                    raise ValueError(f"{attr.key}: '{identity_key}' is not an identity attribute")
            if not attr.is_ref:
                continue
            target = self._by_key.get(attr.target)
            if target is None or not target.identity:
                raise ValueError(f"{attr.key}: target '{attr.target}' is not an identity attribute")
            if attr.fk_owner_of is None:
                if attr.cardinality == Cardinality.MANY:
                    raise ValueError(f"{attr.key}: to-many references require 'fk_owner_of'")
                continue
            owner_attr = self._by_key.get(attr.fk_owner_of)
            if owner_attr is None or not owner_attr.is_ref:
                raise ValueError(f"{attr.key}: 'fk_owner_of' must name a reference attribute")
            if owner_attr.cardinality == Cardinality.MANY or owner_attr.fk_owner_of is not None:
                raise ValueError(
                    f"{attr.key}: '{attr.fk_owner_of}' must be a to-one reference that stores its "
                    f"own column; model many-to-many through a join entity")
            if attr.target not in owner_attr.identities:
                raise ValueError(f"{attr.key}: '{attr.fk_owner_of}' does not belong to '{attr.target}'")
            if attr.order_by is not None:
                order_attr = self._by_key.get(attr.order_by)
                if order_attr is None or attr.target not in order_attr.identities:
                    raise ValueError(f"{attr.key}: order_by '{attr.order_by}' is not an attribute of '{attr.target}'")

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def __len__(self) -> int:
        return len(self._by_key)

    def get(self, key: str) -> Optional[AttributeSpec]:
        return self._by_key.get(key)

    def attribute(self, key: str) -> AttributeSpec:
        """Get an attribute by key, raising KeyError if it is not registered."""
        try:
            return self._by_key[key]
        except KeyError:
            raise KeyError(f"Unknown attribute '{key}'") from None

    def identity_keys(self) -> List[str]:
        return [k for k, a in self._by_key.items() if a.identity]

    def identity_attribute(self, identity_key: str) -> AttributeSpec:
        attr = self.attribute(identity_key)
        if not attr.identity:
            raise KeyError(f"'{identity_key}' is not an identity attribute")
        return attr

    def attributes_of(self, identity_key: str) -> List[AttributeSpec]:
        """All non-identity attributes that belong to the given entity."""
        return list(self._by_identity.get(identity_key, []))

    def belongs_to(self, attr: AttributeSpec, identity_key: str) -> bool:
        return attr.key == identity_key or identity_key in attr.identities

    def schema_of(self, identity_key: str) -> str:
        return self.identity_attribute(identity_key).schema_name

    def table_name(self, identity_key: str) -> str:
        return self.identity_attribute(identity_key).table  # type: ignore[return-value]

    def column_name(self, attr: AttributeSpec) -> str:
        return attr.column_name or snake_case(key_name(attr.key))

    def sequence_name(self, identity_key: str) -> str:
        """Sequence backing an integer identity column: <table>_<column>_seq."""
        id_attr = self.identity_attribute(identity_key)
        return f"{self.table_name(identity_key)}_{self.column_name(id_attr)}_seq"

    def get_registry_status(self) -> Dict[str, Any]:
        return {
            "attributes": len(self._by_key),
            "entities": self.identity_keys(),
        }
