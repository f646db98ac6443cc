# bulkstage/database.py
"""
Database connection wrapper that provides a uniform interface
to different database adapters, plus scoped transactions.
"""

import importlib
import importlib.util
import os
import logging
from typing import Any, Optional, List
from contextlib import contextmanager

from .cursors import Cursor
from .utils import ParamStyle

logger = logging.getLogger(__name__)

# users can define their own drivers in the config file
_user_drivers = {}


DRIVERS = {
    # PostgreSQL Drivers
    'psycopg2': {
        'database_type': 'postgres',
        'priority': 11,
        'param_map': {'database': 'dbname'},
        'required_params': [{'host', 'database', 'user'}],
        'optional_params': {'port', 'password', 'sslmode', 'connect_timeout', 'application_name',
                            'options', 'sslcert', 'sslkey', 'sslrootcert'},
        'connection_method': 'connection_string',
        'default_port': 5432,
    },
    'psycopg': {  # psycopg3
        'database_type': 'postgres',
        'priority': 12,
        'param_map': {'database': 'dbname'},
        'required_params': [{'host', 'database', 'user'}],
        'optional_params': {'port', 'password', 'sslmode', 'connect_timeout', 'application_name',
                            'options', 'sslcert', 'sslkey', 'sslrootcert'},
        'connection_method': 'connection_string',
        'default_port': 5432,
    },

    # Oracle Drivers
    'oracledb': {
        'database_type': 'oracle',
        'priority': 11,
        'param_map': {'database': 'service_name'},
        'required_params': [{'dsn', 'user'}, {'host', 'port', 'database', 'user'}],
        'optional_params': {'password', 'config_dir', 'wallet_location', 'wallet_password'},
        'connection_method': 'dsn',
        'default_port': 1521
    },

    # MySQL Drivers
    'pymysql': {
        'database_type': 'mysql',
        'priority': 11,
        'param_map': {'database': 'db', 'password': 'passwd'},
        'required_params': [{'host', 'database', 'user'}],
        'optional_params': {'port', 'password', 'charset', 'connect_timeout', 'read_timeout',
                            'write_timeout', 'unix_socket'},
        'connection_method': 'kwargs',
        'default_port': 3306
    },
    'mysql.connector': {
        'database_type': 'mysql',
        'priority': 12,
        'param_map': {},
        'required_params': [{'host', 'database', 'user'}],
        'optional_params': {'port', 'password', 'charset', 'collation', 'connection_timeout'},
        'connection_method': 'kwargs',
        'default_port': 3306
    },

    # SQL Server Drivers
    'pyodbc_sqlserver': {
        'module': 'pyodbc',
        'database_type': 'sqlserver',
        'priority': 11,
        'param_map': {'host': 'SERVER', 'database': 'DATABASE', 'user': 'UID', 'password': 'PWD'},
        'required_params': [{'host', 'database', 'user'}],
        'optional_params': {'password', 'port', 'trusted_connection', 'encrypt', 'trustservercertificate'},
        'connection_method': 'odbc_string',
        'odbc_driver_name': 'ODBC Driver 17 for SQL Server',
        'default_port': 1433
    },
    'pymssql': {
        'database_type': 'sqlserver',
        'priority': 12,
        'param_map': {'host': 'server'},
        'required_params': [{'host', 'database', 'user'}],
        'optional_params': {'password', 'port', 'timeout', 'login_timeout', 'charset', 'appname'},
        'connection_method': 'kwargs',
        'default_port': 1433
    },

    # SQLite Driver
    'sqlite3': {
        'database_type': 'sqlite',
        'priority': 1,
        'param_map': {},
        'required_params': [{'database'}],
        'optional_params': {'timeout', 'detect_types', 'isolation_level', 'check_same_thread',
                            'cached_statements', 'uri'},
        'connection_method': 'kwargs'
    }
}


def register_user_drivers(drivers_config: dict) -> None:
    """Register drivers from config file."""
    _user_drivers.update(drivers_config)


def get_all_drivers() -> dict:
    """Get combined built-in and user drivers."""
    return {**DRIVERS, **_user_drivers}


def _driver_module(driver_name: str) -> str:
    return get_all_drivers()[driver_name].get('module', driver_name)


def get_drivers_for_database(db_type: str, valid_only: bool = True) -> List[str]:
    """
    Gets a list of drivers available for the specified database type, sorted by priority.

    Parameters:
        db_type (str): The type of database for which to retrieve drivers.
        valid_only (bool): Only include drivers whose module is importable.
    """
    all_drivers = get_all_drivers()
    available_drivers = []

    for driver_name, info in all_drivers.items():
        if info['database_type'] != db_type:
            continue
        if valid_only:
            try:
                spec = importlib.util.find_spec(_driver_module(driver_name))
            except ModuleNotFoundError:
                spec = None
            if spec is None:
                continue
        available_drivers.append(driver_name)

    def sort_key(driver_name):
        priority = all_drivers[driver_name]['priority']
        # User drivers get slight priority boost for tie-breaking
        if driver_name in _user_drivers:
            priority -= 0.5
        return priority

    available_drivers.sort(key=sort_key)
    return available_drivers


def get_params_for_database(db_type: str) -> set:
    """Get all valid parameters for a database type from DRIVERS metadata."""
    valid_params = set()
    for driver_info in get_all_drivers().values():
        if driver_info['database_type'] == db_type:
            for param_set in driver_info['required_params']:
                valid_params.update(param_set)
            valid_params.update(driver_info.get('optional_params', set()))
    return valid_params


def validate_connection_params(driver_name: str, **params) -> dict:
    """
    Validate connection parameters against driver requirements.

    Returns:
        Dict of validated parameters with extras removed and names mapped for the driver

    Raises:
        ValueError: If the driver is unknown or required parameters are missing
    """
    all_drivers = get_all_drivers()
    if driver_name not in all_drivers:
        raise ValueError(f"Unknown driver: {driver_name}")

    driver_info = all_drivers[driver_name]

    if 'port' not in params and driver_info.get('default_port'):
        params['port'] = driver_info['default_port']

    # Any one required set must be satisfied
    if not any(required.issubset(params.keys()) for required in driver_info['required_params']):
        raise ValueError(f"Missing required parameters. Need one of: {driver_info['required_params']}")

    all_valid_params = set()
    for req_set in driver_info['required_params']:
        all_valid_params.update(req_set)
    all_valid_params.update(driver_info.get('optional_params', set()))

    param_map = driver_info.get('param_map', {})
    return {param_map.get(key, key): value for key, value in params.items()
            if key in all_valid_params and value is not None}


def get_connection_string(**kwargs) -> str:
    """ Get connection string from keyword arguments."""
    return " ".join([f"{key}={value}" for key, value in kwargs.items()])


def get_odbc_connection_string(odbc_driver_name: Optional[str] = None, **kwargs) -> str:
    """ Get connection string for ODBC from keyword arguments."""
    server = kwargs.pop('SERVER', 'localhost')
    port = kwargs.pop('port', None)
    params = {'SERVER': f'{server},{port}' if port else server}
    params.update({key.upper(): value for key, value in kwargs.items()})
    conn_str = ";".join([f"{key}={value}" for key, value in params.items()])
    if odbc_driver_name:
        return f"DRIVER={{{odbc_driver_name}}};" + conn_str
    return conn_str


class Transaction:
    """
    A transaction scoped to a ``with`` block.

    The caller decides between commit() and rollback(). Leaving the block
    without either, normally or through an exception, rolls the transaction
    back so no transaction outlives its scope.

    Example
    -------
    ::

        with db.begin() as tx:
            cursor.executemany(sql, params)
            if pipeline_failed:
                tx.rollback()
            else:
                tx.commit()
    """

    ACTIVE = 'active'
    COMMITTED = 'committed'
    ROLLED_BACK = 'rolled_back'

    def __init__(self, database: 'Database'):
        self.database = database
        self.state = self.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.state == self.ACTIVE

    def commit(self) -> None:
        if not self.is_active:
            raise RuntimeError(f"Cannot commit a transaction that is already {self.state}")
        self.database.commit()
        self.state = self.COMMITTED

    def rollback(self) -> None:
        if not self.is_active:
            raise RuntimeError(f"Cannot roll back a transaction that is already {self.state}")
        # Mark first: a failed rollback must not be retried on exit
        self.state = self.ROLLED_BACK
        self.database.rollback()

    def __enter__(self) -> 'Transaction':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self.is_active:
            return None
        if exc_type is None:
            logger.warning(f"Transaction on {self.database} left open, rolling back")
            self.rollback()
            return None
        try:
            self.rollback()
        except Exception as e:
            # Keep the original exception; the rollback failure is secondary
            logger.warning(f"Rollback failed on {self.database}: {e}")
        return None


class Database:
    """
    Database connection wrapper that provides uniform interface
    across different database adapters.
    """

    # Attributes stored locally, others delegated to _connection
    _local_attrs = [
        '_connection', 'database_type', 'database_name', 'interface',
        'name', 'placeholder', 'cursor_settings'
    ]

    def __init__(self, connection, interface, database_name: Optional[str] = None,
                 database_type: Optional[str] = None, cursor_settings: Optional[dict] = None):
        """
        Initialize Database wrapper.

        Args:
            connection: Underlying database connection object
            interface: Database adapter module (psycopg2, sqlite3, etc.)
            database_name: Name of the database
            database_type: Database type; derived from the interface when omitted
            cursor_settings: Default keyword arguments for cursor()
        """
        self._connection = connection
        self.interface = interface
        self.database_name = database_name
        self.name = database_name
        self.cursor_settings = cursor_settings or {}

        paramstyle = getattr(interface, 'paramstyle', ParamStyle.DEFAULT)
        self.placeholder = ParamStyle.get_placeholder(paramstyle)

        if database_type is None:
            info = get_all_drivers().get(interface.__name__)
            database_type = info['database_type'] if info else 'unknown'
        self.database_type = database_type

    def __getattr__(self, key: str) -> Any:
        """Delegate attribute access to underlying connection."""
        return getattr(self._connection, key)

    def __setattr__(self, key: str, value: Any) -> None:
        """Set attributes locally or delegate to connection."""
        if key in self._local_attrs:
            self.__dict__[key] = value
        else:
            setattr(self._connection, key, value)

    def __str__(self) -> str:
        """String representation of the database connection."""
        if self.database_name:
            return f'Database({self.database_name}:{self.database_type})'
        return f'Database({self.database_type})'

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - close connection."""
        self.close()

    def cursor(self, **kwargs) -> Cursor:
        """
        Create a cursor.

        Args:
            **kwargs: Cursor settings (batch_size, debug) and arguments for the driver cursor
        """
        settings = {**self.cursor_settings, **kwargs}
        return Cursor(self, **settings)

    def begin(self) -> Transaction:
        """
        Start a transaction scope.

        DB-API connections open a transaction implicitly on the first statement,
        so this only hands back the object that owns the commit/rollback decision.
        """
        logger.debug(f"Beginning transaction on {self}")
        return Transaction(self)

    @contextmanager
    def transaction(self):
        """
        Context manager for database transactions.

        Example:
            with db.transaction():
                cursor = db.cursor()
                cursor.execute("INSERT ...")
                # Auto-commit on success, rollback on exception
        """
        with self.begin() as tx:
            yield self
            tx.commit()

    @classmethod
    def create(cls, db_type: str, driver: str = None, cursor_settings: Optional[dict] = None,
               **kwargs) -> 'Database':
        """
        Factory method to create database connections.

        Args:
            db_type: Database type ('postgres', 'oracle', 'mysql', 'sqlserver', 'sqlite')
            driver: Specific driver name, otherwise the best available one is used
            cursor_settings: Default settings for cursors created from this connection
            **kwargs: Connection parameters

        Returns:
            Database instance
        """
        all_drivers = get_all_drivers()
        db_driver = None
        driver_name = None
        if driver:
            if driver not in all_drivers:
                raise ValueError(f"Unknown driver: {driver}")
            if all_drivers[driver]['database_type'] != db_type:
                raise ValueError(f"Driver '{driver}' is not compatible with database type '{db_type}'")
            try:
                db_driver = importlib.import_module(_driver_module(driver))
                driver_name = driver
            except ImportError:
                logger.warning(f"Driver '{driver}' not available, falling back to default")

        if db_driver is None:
            for candidate in get_drivers_for_database(db_type):
                try:
                    db_driver = importlib.import_module(_driver_module(candidate))
                    driver_name = candidate
                    break
                except ImportError:
                    pass

        if db_driver is None:
            raise ImportError(f"No database driver found for database type '{db_type}'")

        database_name = kwargs.get('database')
        params = validate_connection_params(driver_name, **kwargs)
        driver_conf = all_drivers[driver_name]
        method = driver_conf['connection_method']
        if method == 'kwargs':
            connection = db_driver.connect(**params)
        elif method == 'connection_string':
            connection = db_driver.connect(get_connection_string(**params))
        elif method == 'dsn':
            if hasattr(db_driver, 'makedsn') and 'dsn' not in params:
                host = params.pop('host', 'localhost')
                port = params.pop('port', 1521)
                service_name = params.pop('service_name', None)
                params['dsn'] = db_driver.makedsn(host, port, service_name=service_name)
            connection = db_driver.connect(**params)
        elif method == 'odbc_string':
            connection = db_driver.connect(
                get_odbc_connection_string(driver_conf.get('odbc_driver_name'), **params))
        else:
            raise ValueError(f"Unknown connection method '{method}' for driver {driver_name}")

        logger.debug(f"Connected to {db_type} database {database_name} using {driver_name}")
        return cls(connection, db_driver, database_name, database_type=db_type,
                   cursor_settings=cursor_settings)


def sqlite(database: str, **kwargs) -> Database:
    """Create SQLite connection."""
    import sqlite3

    connection = sqlite3.connect(database, **kwargs)
    return Database(connection, sqlite3, os.path.basename(database), database_type='sqlite')
