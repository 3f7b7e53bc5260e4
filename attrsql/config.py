"""
Per-database configuration.

Each named database maps to a connection URL, engine/pool options, the logical
schema name attributes refer to and whether missing sequences may be created
on demand.
"""
import logging
import os
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger("DatabaseConfig")

ENV_PREFIX = "ATTRSQL"


class DatabaseConfig(BaseModel):
    """Connection settings for one logical schema."""
    model_config = ConfigDict(extra="forbid")

    url: str
    pool_options: Dict[str, Any] = Field(default_factory=dict)
    schema_name: str = "main"
    auto_create_missing: bool = False


def load_database_configs(raw: Mapping[str, Mapping[str, Any]]) -> Dict[str, DatabaseConfig]:
    """
    Build DatabaseConfigs from a plain mapping of name -> settings.

    A missing schema_name defaults to the database's name.
    """
    configs: Dict[str, DatabaseConfig] = {}
    for name, settings in raw.items():
        settings = dict(settings)
        settings.setdefault("schema_name", name)
        configs[name] = DatabaseConfig(**settings)
    logger.info(f"Loaded configuration for databases: {sorted(configs)}")
    return configs


def _env_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def database_config_from_env(name: str = "main", dotenv_path: Optional[str] = None) -> DatabaseConfig:
    """
    Read a DatabaseConfig from ATTRSQL_<NAME>_* environment variables.

    Variables: URL (required), SCHEMA, AUTO_CREATE, POOL_SIZE, MAX_OVERFLOW,
    POOL_TIMEOUT. A .env file is loaded first if present.

    Raises:
        ValueError: If the URL variable is not set
    """
    load_dotenv(dotenv_path)
    prefix = f"{ENV_PREFIX}_{name.upper()}_"
    url = os.getenv(prefix + "URL")
    if not url:
        raise ValueError(f"Environment variable {prefix}URL is not set")
    pool_options: Dict[str, Any] = {}
    for option in ("POOL_SIZE", "MAX_OVERFLOW", "POOL_TIMEOUT"):
        value = os.getenv(prefix + option)
        if value:
            pool_options[option.lower()] = int(value)
    return DatabaseConfig(
        url=url,
        pool_options=pool_options,
        schema_name=os.getenv(prefix + "SCHEMA", name),
        auto_create_missing=_env_flag(os.getenv(prefix + "AUTO_CREATE")),
    )
