# bulkstage/etl/schema.py
"""
Schema resolvers for bulk insert operations.

A schema resolver is a zero-argument callable returning an ordered mapping of
column name to Python type. Operations call it once per execution, before any
connection for the load itself is opened.
"""

import datetime as dt
import decimal
import logging
from typing import Callable, Dict, Mapping, Optional

from ..exceptions import ConfigurationError
from ..utils import ParamStyle, validate_identifier

logger = logging.getLogger(__name__)

Schema = Dict[str, type]
SchemaResolver = Callable[[], Schema]

# Checked in order: the first fragment found in the declared type wins
_TYPE_AFFINITY = (
    ('INTERVAL', dt.timedelta),
    ('TIMESTAMP', dt.datetime),
    ('DATETIME', dt.datetime),
    ('DATE', dt.date),
    ('TIME', dt.time),
    ('BOOL', bool),
    ('BIT', bool),
    ('INT', int),
    ('CHAR', str),
    ('CLOB', str),
    ('TEXT', str),
    ('STRING', str),
    ('UUID', str),
    ('BLOB', bytes),
    ('BINARY', bytes),
    ('BYTEA', bytes),
    ('RAW', bytes),
    ('REAL', float),
    ('FLOA', float),
    ('DOUB', float),
    ('DEC', decimal.Decimal),
    ('NUMERIC', decimal.Decimal),
    ('NUMBER', decimal.Decimal),
    ('MONEY', decimal.Decimal),
)


def python_type(declared_type: Optional[str]) -> type:
    """Map a declared database column type to the Python type its values arrive as."""
    if not declared_type:
        return object
    declared = declared_type.upper()
    for fragment, py_type in _TYPE_AFFINITY:
        if fragment in declared:
            return py_type
    return object


def static_schema(columns: Mapping[str, type]) -> SchemaResolver:
    """
    Resolver for a schema declared in code.

    Example:
        resolver = static_schema({'nomad_id': str, 'name': str, 'airbending_level': int})
    """
    if not columns:
        raise ConfigurationError("A static schema needs at least one column")
    schema = dict(columns)

    def resolve() -> Schema:
        return dict(schema)

    return resolve


def _split_table_name(table: str):
    parts = validate_identifier(table).split('.')
    if len(parts) == 1:
        return None, parts[0]
    return parts[-2], parts[-1]


def read_table_schema(db, table: str) -> Schema:
    """
    Read the declared column types of ``table`` from the database catalog.

    Columns come back in table order with their names as the catalog reports them.
    The table name is matched exactly as the catalog stores it, the same way
    BulkCopy quotes it (unquoted Oracle names are stored upper case).
    """
    db_type = db.database_type
    owner, table_name = _split_table_name(table)
    cursor = db.cursor()

    if db_type == 'sqlite':
        query = f"PRAGMA table_info({table_name})" if owner is None else f"PRAGMA {owner}.table_info({table_name})"
        cursor.execute(query)
        rows = [tuple(row.values())[1:3] for row in cursor.fetchall()]
    elif db_type == 'oracle':
        marks = ParamStyle.placeholders(cursor.paramstyle, 2 if owner else 1)
        query = f"""
            SELECT column_name, data_type
            FROM all_tab_columns
            WHERE table_name = {marks[0]}
            {f'AND owner = {marks[1]}' if owner else ''}
            ORDER BY column_id"""
        params = (table_name, owner) if owner else (table_name,)
        cursor.execute(query, params)
        rows = [tuple(row.values())[:2] for row in cursor.fetchall()]
    elif db_type in ('postgres', 'mysql', 'sqlserver'):
        marks = ParamStyle.placeholders(cursor.paramstyle, 2 if owner else 1)
        query = f"""
            SELECT column_name, data_type
            FROM information_schema.columns
            WHERE table_name = {marks[0]}
            {f'AND table_schema = {marks[1]}' if owner else ''}
            ORDER BY ordinal_position"""
        params = (table_name, owner) if owner else (table_name,)
        cursor.execute(query, params)
        rows = [tuple(row.values())[:2] for row in cursor.fetchall()]
    else:
        raise ConfigurationError(f"Schema introspection not supported for database type: {db_type}")

    if not rows:
        raise ConfigurationError(f"Table {table} not found or has no columns")
    return {name: python_type(declared) for name, declared in rows}


def table_schema(connection_name: str, table: str, connect: Optional[Callable] = None) -> SchemaResolver:
    """
    Resolver that introspects ``table`` on the named connection each time it runs.

    Example:
        op = BulkInsertOperation('warehouse', 'air_nomad_training',
                                 schema_resolver=table_schema('warehouse', 'air_nomad_training'))
    """
    if connect is None:
        from ..config import connect

    def resolve() -> Schema:
        with connect(connection_name) as db:
            schema = read_table_schema(db, table)
        logger.debug(f"Resolved schema for {table}: {', '.join(schema)}")
        return schema

    return resolve
