"""
Attribute-metadata-driven relational persistence.

`save(env, delta)` turns a sparse change-set into one transaction of SQL
writes; `run_query(env, roots, subtree)` compiles a nested attribute request
into one batched SELECT per level.
"""
from .attributes import AttributeRegistry, AttributeSpec, Cardinality, ValueType
from .config import DatabaseConfig, database_config_from_env, load_database_configs
from .connection import ConnectionPools, Environment
from .delta import ChangeRecord, Delta, EntityRef, Tempid
from .errors import (
    AttrSqlError,
    ConstraintViolationError,
    DatabaseConnectionError,
    SequenceAllocationError,
    UnresolvableDependencyError,
    ValidationError,
    ValueConversionError,
)
from .query import QueryPlan, QueryResolver, run_query
from .write import WriteExecutor, save

__all__ = [
    "AttributeRegistry", "AttributeSpec", "Cardinality", "ValueType",
    "DatabaseConfig", "database_config_from_env", "load_database_configs",
    "ConnectionPools", "Environment",
    "ChangeRecord", "Delta", "EntityRef", "Tempid",
    "AttrSqlError", "ConstraintViolationError", "DatabaseConnectionError", "SequenceAllocationError",
    "UnresolvableDependencyError", "ValidationError", "ValueConversionError",
    "QueryPlan", "QueryResolver", "run_query",
    "WriteExecutor", "save",
]
