"""
Database vendor adapters.

Adapters hide the dialect-specific parts of a save: drawing batches of values
from a named sequence, creating a missing sequence and translating driver
errors into semantic condition names.
"""
import logging
from typing import Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine

logger = logging.getLogger("VendorAdapter")

# SQLSTATE -> semantic condition
SQLSTATE_CONDITIONS: Dict[str, str] = {
    "08003": "connection-does-not-exist",
    "08006": "connection-failure",
    "22001": "string-data-too-long",
    "22021": "invalid-encoding",
    "22P02": "invalid-text-representation",
    "23502": "not-null-violation",
    "23503": "foreign-key-violation",
    "23505": "unique-violation",
    "23514": "check-violation",
    "40001": "serialization-failure",
    "53300": "too-many-connections",
    "57014": "timeout",
}


def sql_state(exc: BaseException) -> Optional[str]:
    """Extract the SQLSTATE code from a SQLAlchemy or DBAPI exception, if the driver exposes one."""
    orig = getattr(exc, "orig", exc)
    for attr in ("sqlstate", "pgcode"):
        code = getattr(orig, attr, None)
        if isinstance(code, str):
            return code
    diag = getattr(orig, "diag", None)
    code = getattr(diag, "sqlstate", None)
    return code if isinstance(code, str) else None


class VendorAdapter:
    """Base adapter; subclasses implement sequence handling for their dialect."""
    dialect = "generic"

    def allocate_sequence(self, connection: Connection, sequence_name: str, n: int) -> List[int]:
        """Draw n values from a sequence in a single round trip, ascending."""
        raise NotImplementedError

    def ensure_sequence(self, connection: Connection, sequence_name: str) -> None:
        raise NotImplementedError

    def error_condition(self, exc: BaseException) -> str:
        code = sql_state(exc)
        if code is not None:
            return SQLSTATE_CONDITIONS.get(code, "unknown")
        return self._message_condition(str(getattr(exc, "orig", exc)).lower())

    def _message_condition(self, message: str) -> str:
        if "foreign key" in message:
            return "foreign-key-violation"
        if "unique" in message:
            return "unique-violation"
        if "not null" in message:
            return "not-null-violation"
        if "check constraint" in message:
            return "check-violation"
        return "unknown"


class PostgreSQLAdapter(VendorAdapter):
    dialect = "postgresql"

    def allocate_sequence(self, connection: Connection, sequence_name: str, n: int) -> List[int]:
        if n == 1:
            stmt = sa.text("SELECT nextval(:seq) AS id")
            rows = connection.execute(stmt, {"seq": sequence_name}).all()
        else:
            stmt = sa.text("SELECT nextval(:seq) AS id FROM generate_series(1, :n)")
            rows = connection.execute(stmt, {"seq": sequence_name, "n": n}).all()
        return sorted(row.id for row in rows)

    def ensure_sequence(self, connection: Connection, sequence_name: str) -> None:
        preparer = connection.dialect.identifier_preparer
        connection.execute(sa.text(f"CREATE SEQUENCE IF NOT EXISTS {preparer.quote(sequence_name)}"))


class SQLiteAdapter(VendorAdapter):
    """
    SQLite has no sequences; values come from a counter table that is
    updated inside the save transaction.
    """
    dialect = "sqlite"
    SEQUENCE_TABLE = "attrsql_sequences"

    _sequences = sa.table(
        SEQUENCE_TABLE,
        sa.column("name", sa.String()),
        sa.column("value", sa.BigInteger()),
    )

    def ensure_sequence(self, connection: Connection, sequence_name: str) -> None:
        connection.execute(sa.text(
            f"CREATE TABLE IF NOT EXISTS {self.SEQUENCE_TABLE} "
            "(name TEXT PRIMARY KEY, value BIGINT NOT NULL)"))
        connection.execute(sa.text(
            f"INSERT OR IGNORE INTO {self.SEQUENCE_TABLE} (name, value) VALUES (:name, 0)"),
            {"name": sequence_name})

    def allocate_sequence(self, connection: Connection, sequence_name: str, n: int) -> List[int]:
        seq = self._sequences
        result = connection.execute(
            sa.update(seq).where(seq.c.name == sequence_name).values(value=seq.c.value + n))
        if result.rowcount != 1:
            return []
        last = connection.execute(sa.select(seq.c.value).where(seq.c.name == sequence_name)).scalar_one()
        return list(range(last - n + 1, last + 1))


_ADAPTERS: Dict[str, type] = {
    "postgresql": PostgreSQLAdapter,
    "sqlite": SQLiteAdapter,
}


def adapter_for(engine: Engine) -> VendorAdapter:
    """Pick the adapter matching the engine's dialect."""
    adapter_cls = _ADAPTERS.get(engine.dialect.name)
    if adapter_cls is None:
        logger.warning(f"No vendor adapter for dialect '{engine.dialect.name}', sequences unsupported")
        return VendorAdapter()
    return adapter_cls()
