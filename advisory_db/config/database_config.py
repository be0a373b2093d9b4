"""
Database Configuration Module

Builds asyncpg connection parameters from Settings and creates the connection pool the
document store runs on. Pool connections decode JSONB columns into Python objects.
"""

import json
from typing import Any, Dict, Optional

import asyncpg

from ..sources.base.exceptions import ConfigException
from .settings import Settings, settings as default_settings

REQUIRED_FIELDS = ['host', 'port', 'database', 'user', 'password']


def get_database_config(config_settings: Optional[Settings] = None) -> Dict[str, Any]:
    """
    Get database configuration from settings

    Args:
        config_settings: Settings instance, module settings when omitted

    Returns:
        Dictionary with database connection parameters
    """
    s = config_settings or default_settings
    config = {
        'host': s.DB_HOST,
        'port': s.DB_PORT,
        'database': s.DB_NAME,
        'user': s.DB_USER,
        'password': s.DB_PASSWORD,
        'min_connections': s.DB_MIN_CONNECTIONS,
        'max_connections': s.DB_POOL_SIZE,
    }

    missing_fields = [field for field in REQUIRED_FIELDS if not config.get(field)]
    if missing_fields:
        raise ConfigException(f"Missing required database configuration fields: {missing_fields}",
                              config_key=missing_fields[0])
    if config['min_connections'] > config['max_connections']:
        raise ConfigException("DB_MIN_CONNECTIONS must not exceed DB_POOL_SIZE",
                              config_key='DB_MIN_CONNECTIONS')
    return config


def get_database_url(config: Dict[str, Any], mask_password: bool = True) -> str:
    """PostgreSQL connection URL, password masked unless asked otherwise"""
    password = '***' if mask_password else config['password']
    return f"postgresql://{config['user']}:{password}@{config['host']}:{config['port']}/{config['database']}"


async def _init_connection(conn: asyncpg.Connection):
    await conn.set_type_codec('jsonb', encoder=json.dumps, decoder=json.loads, schema='pg_catalog')


async def create_database_pool(config: Dict[str, Any]) -> asyncpg.Pool:
    """
    Create database connection pool

    Args:
        config: Database configuration dictionary from get_database_config()

    Returns:
        AsyncPG connection pool
    """
    return await asyncpg.create_pool(
        host=config['host'],
        port=config['port'],
        database=config['database'],
        user=config['user'],
        password=config['password'],
        min_size=config.get('min_connections', 1),
        max_size=config.get('max_connections', 10),
        init=_init_connection,
    )
