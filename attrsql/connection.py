"""
Connection pools and the environment passed to save and query entry points.

Every logical schema is served by one SQLAlchemy Engine, which owns the pool.
Connections are only handed out through a context manager so they are
released on every exit path.
"""
import logging
from contextlib import contextmanager
from typing import Dict, Iterator, Mapping, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from attrsql.attributes import AttributeRegistry
from attrsql.config import DatabaseConfig
from attrsql.errors import DatabaseConnectionError
from attrsql.vendor import VendorAdapter, adapter_for


class ConnectionPools:
    """
    Owns one engine per logical schema name.
    """

    def __init__(self, engines: Mapping[str, Engine],
                 adapters: Optional[Mapping[str, VendorAdapter]] = None,
                 auto_create: Optional[Mapping[str, bool]] = None) -> None:
        self._logger = logging.getLogger("ConnectionPools")
        self._engines: Dict[str, Engine] = dict(engines)
        self._adapters: Dict[str, VendorAdapter] = dict(adapters or {})
        self._auto_create: Dict[str, bool] = dict(auto_create or {})
        for schema_name, engine in self._engines.items():
            if schema_name not in self._adapters:
                self._adapters[schema_name] = adapter_for(engine)

    @classmethod
    def from_configs(cls, configs: Mapping[str, DatabaseConfig]) -> "ConnectionPools":
        """Create an engine for every configured database, keyed by its schema name."""
        engines: Dict[str, Engine] = {}
        auto_create: Dict[str, bool] = {}
        for name, config in configs.items():
            logging.getLogger("ConnectionPools").info(f"Creating pool for {name} ({config.schema_name})")
            engines[config.schema_name] = create_engine(config.url, **config.pool_options)
            auto_create[config.schema_name] = config.auto_create_missing
        return cls(engines, auto_create=auto_create)

    def schema_names(self):
        return list(self._engines)

    def engine(self, schema_name: str) -> Engine:
        try:
            return self._engines[schema_name]
        except KeyError:
            raise DatabaseConnectionError(
                f"No connection pool configured for schema '{schema_name}' "
                f"(available: {sorted(self._engines)})", condition="missing-pool") from None

    def adapter(self, schema_name: str) -> VendorAdapter:
        self.engine(schema_name)
        return self._adapters[schema_name]

    def auto_create(self, schema_name: str) -> bool:
        return self._auto_create.get(schema_name, False)

    @contextmanager
    def connection(self, schema_name: str) -> Iterator[Connection]:
        """
        Check a connection out of the schema's pool for the duration of the block.

        Raises:
            DatabaseConnectionError: If the pool is missing, exhausted or the database is unreachable
        """
        engine = self.engine(schema_name)
        try:
            conn = engine.connect()
        except (OperationalError, InterfaceError, PoolTimeoutError) as e:
            self._logger.error(f"Unable to acquire connection for '{schema_name}': {e}")
            raise DatabaseConnectionError(f"Unable to acquire connection for '{schema_name}'",
                                          condition="connection-failure") from e
        except DBAPIError as e:
            raise DatabaseConnectionError(f"Unable to acquire connection for '{schema_name}'",
                                          condition="connection-failure") from e
        try:
            yield conn
        finally:
            conn.close()

    def dispose(self) -> None:
        for schema_name, engine in self._engines.items():
            self._logger.info(f"Shutting down pool {schema_name}")
            engine.dispose()


class Environment(BaseModel):
    """Registry plus connection pools; passed explicitly to save() and run_query()."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    registry: AttributeRegistry
    pools: ConnectionPools
