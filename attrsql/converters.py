"""
Value conversion between model and storage representations.

One converter per value type, selected by the attribute's declared type. An
attribute's own `model_to_storage` / `storage_to_model` functions take
precedence over the type converter.
"""
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.types import TypeEngine

from attrsql.attributes import AttributeRegistry, AttributeSpec, ValueType
from attrsql.errors import ValueConversionError

##############################
# 1) Converter interface
##############################


class ValueConverter:
    """Conversion interface for one value type."""
    value_type: ValueType

    def accepts(self, value: Any) -> bool:
        """Whether a model value has an acceptable Python type."""
        raise NotImplementedError

    def to_storage(self, value: Any) -> Any:
        return value

    def to_model(self, value: Any) -> Any:
        return value

    def sql_type(self, attr: AttributeSpec) -> TypeEngine:
        raise NotImplementedError


class UUIDConverter(ValueConverter):
    value_type = ValueType.UUID

    def accepts(self, value: Any) -> bool:
        return isinstance(value, UUID)

    def to_storage(self, value: Any) -> Any:
        return value if isinstance(value, UUID) else UUID(str(value))

    def to_model(self, value: Any) -> Any:
        return value if isinstance(value, UUID) else UUID(str(value))

    def sql_type(self, attr: AttributeSpec) -> TypeEngine:
        return sa.Uuid()


class IntegerConverter(ValueConverter):
    def __init__(self, value_type: ValueType) -> None:
        self.value_type = value_type

    def accepts(self, value: Any) -> bool:
        return isinstance(value, int) and not isinstance(value, bool)

    def to_storage(self, value: Any) -> Any:
        return int(value)

    def to_model(self, value: Any) -> Any:
        return int(value)

    def sql_type(self, attr: AttributeSpec) -> TypeEngine:
        return sa.BigInteger() if self.value_type == ValueType.LONG else sa.Integer()


class StringConverter(ValueConverter):
    value_type = ValueType.STRING

    def accepts(self, value: Any) -> bool:
        return isinstance(value, str)

    def sql_type(self, attr: AttributeSpec) -> TypeEngine:
        return sa.String(attr.max_length) if attr.max_length else sa.Text()


class DecimalConverter(ValueConverter):
    value_type = ValueType.DECIMAL

    def accepts(self, value: Any) -> bool:
        return isinstance(value, (Decimal, int, float)) and not isinstance(value, bool)

    def to_storage(self, value: Any) -> Any:
        return value if isinstance(value, Decimal) else Decimal(str(value))

    def to_model(self, value: Any) -> Any:
        return value if isinstance(value, Decimal) else Decimal(str(value))

    def sql_type(self, attr: AttributeSpec) -> TypeEngine:
        return sa.Numeric(asdecimal=True)


class InstantConverter(ValueConverter):
    """Instants are stored and returned as UTC; naive values are taken as UTC."""
    value_type = ValueType.INSTANT

    def accepts(self, value: Any) -> bool:
        return isinstance(value, datetime)

    @staticmethod
    def _as_utc(value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def to_storage(self, value: Any) -> Any:
        return self._as_utc(value)

    def to_model(self, value: Any) -> Any:
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        return self._as_utc(value)

    def sql_type(self, attr: AttributeSpec) -> TypeEngine:
        return sa.DateTime(timezone=True)


class BooleanConverter(ValueConverter):
    value_type = ValueType.BOOLEAN

    def accepts(self, value: Any) -> bool:
        return isinstance(value, bool)

    def to_model(self, value: Any) -> Any:
        return bool(value)

    def sql_type(self, attr: AttributeSpec) -> TypeEngine:
        return sa.Boolean()


class EnumConverter(ValueConverter):
    """Enum members are stored by value (or name, for non-string values) as text."""
    value_type = ValueType.ENUM

    def accepts(self, value: Any) -> bool:
        return isinstance(value, (str, Enum))

    def to_storage(self, value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value if isinstance(value.value, str) else value.name
        return value

    def sql_type(self, attr: AttributeSpec) -> TypeEngine:
        return sa.String(attr.max_length or 255)


class ReferenceConverter(ValueConverter):
    """To-one references store the target's identifier."""
    value_type = ValueType.REF

    def accepts(self, value: Any) -> bool:
        return True

    def to_storage(self, value: Any) -> Any:
        return getattr(value, "id", value)

    def sql_type(self, attr: AttributeSpec) -> TypeEngine:
        raise TypeError("Reference column types depend on the target identity; use sql_type_for()")


_CONVERTERS: Dict[ValueType, ValueConverter] = {
    ValueType.UUID: UUIDConverter(),
    ValueType.INT: IntegerConverter(ValueType.INT),
    ValueType.LONG: IntegerConverter(ValueType.LONG),
    ValueType.STRING: StringConverter(),
    ValueType.DECIMAL: DecimalConverter(),
    ValueType.INSTANT: InstantConverter(),
    ValueType.BOOLEAN: BooleanConverter(),
    ValueType.ENUM: EnumConverter(),
    ValueType.REF: ReferenceConverter(),
}

##############################
# 2) Attribute-level helpers
##############################


def converter_for(attr: AttributeSpec) -> ValueConverter:
    return _CONVERTERS[attr.type]


def sql_type_for(attr: AttributeSpec, registry: AttributeRegistry) -> TypeEngine:
    """SQLAlchemy column type for an attribute; references take their target's id type."""
    if attr.is_ref:
        target = registry.identity_attribute(attr.target)  # type: ignore[arg-type]
        return converter_for(target).sql_type(target)
    return converter_for(attr).sql_type(attr)


def to_storage_value(attr: AttributeSpec, value: Any) -> Any:
    """
    Convert a model value to its storage representation.

    Raises:
        ValueConversionError: If the converter rejects the value
    """
    if value is None:
        return None
    try:
        if attr.model_to_storage is not None:
            return attr.model_to_storage(value)
        return converter_for(attr).to_storage(value)
    except (TypeError, ValueError, InvalidOperation, AttributeError) as e:
        raise ValueConversionError(
            f"Cannot convert value {value!r} of '{attr.key}' for storage: {e}",
            condition="conversion-failure") from e


def to_model_value(attr: AttributeSpec, value: Any) -> Any:
    """Convert a stored value back to its model representation."""
    if value is None:
        return None
    if attr.storage_to_model is not None:
        return attr.storage_to_model(value)
    return converter_for(attr).to_model(value)


def check_model_value(attr: AttributeSpec, value: Any) -> Optional[str]:
    """
    Check a scalar model value against the attribute's type and max length.

    Returns:
        A description of the problem, or None when the value is acceptable
    """
    if value is None or attr.is_ref:
        return None
    if attr.model_to_storage is None and not converter_for(attr).accepts(value):
        return f"expected {attr.type.value}, got {type(value).__name__}"
    if attr.max_length is not None and isinstance(value, str) and len(value) > attr.max_length:
        return f"length {len(value)} exceeds max length {attr.max_length}"
    return None
