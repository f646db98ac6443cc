# bulkstage/cursors.py
"""
Cursor wrapper around DB-API cursors.
The cursor delegates to the underlying database cursor stored in _cursor.
"""

import logging
from typing import List, Any, Optional, Iterator, Callable

from .record import Row
from .defaults import settings

logger = logging.getLogger(__name__)
__all__ = ['Cursor']


class Cursor:
    """
    Cursor that returns query results as Row objects.

    Wraps a database-specific cursor and adds bulk execution helpers used by
    BulkCopy. Attribute access falls through to the underlying cursor, so all
    native cursor functionality stays available.

    Attributes
    ----------
    connection : Database
        The database connection this cursor belongs to
    paramstyle : str
        Parameter style of the underlying database ('qmark', 'named', etc.)
    batch_size : int
        Default number of parameter sets sent per executemany() call

    Example
    -------
    ::

        cursor = db.cursor()
        cursor.execute("SELECT nomad_id, name FROM air_nomad_training")
        for row in cursor:
            print(row.nomad_id, row['name'])
    """
    # Attributes that live on this class and are not delegated to the underlying cursor
    _local_attrs = [
        'connection', 'debug', 'paramstyle', 'batch_size',
        '_cursor', '_bulk_method'
    ]

    def __init__(self,
                 connection,
                 batch_size: Optional[int] = None,
                 debug: Optional[bool] = False,
                 **kwargs):
        """
        Initialize a cursor for database operations.

        Parameters
        ----------
        connection : Database
            Database connection object
        batch_size: int, optional
            How many rows to send at a time when using executemany()
        debug : bool, default False
            Log queries and bind variables at DEBUG level
        **kwargs
            Additional arguments passed to the underlying database cursor
        """
        self.connection = connection
        self.debug = debug
        if batch_size is None:
            batch_size = settings.get('default_batch_size', 1000)
        self.batch_size = batch_size
        self._bulk_method = None            # Allows us to override executemany if needed
        try:
            if hasattr(self.connection, '_connection'):
                self._cursor = self.connection._connection.cursor(**kwargs)
            else:
                self._cursor = self.connection.cursor(**kwargs)
        except Exception as e:
            raise TypeError(f'First argument must be a database connection object: {e}')

        self.paramstyle = self.connection.interface.paramstyle

    def __getattr__(self, key: str) -> Any:
        """Delegate attribute access to underlying cursor."""
        return getattr(self._cursor, key)

    def __setattr__(self, key: str, value: Any) -> None:
        """Set attributes on this cursor or delegate to underlying cursor."""
        if key in self._local_attrs:
            self.__dict__[key] = value
        else:
            setattr(self._cursor, key, value)

    def __iter__(self) -> Iterator[Row]:
        return self

    def __next__(self) -> Row:
        row = self.fetchone()
        if row is not None:
            return row
        raise StopIteration

    def _detect_bulk_method(self) -> Callable:
        """
        Detect and return the fastest bulk execution method for this cursor.

        Called once per cursor, on first executemany(). Stored in self._bulk_method.
        """
        adapter = self.connection.interface.__name__
        if adapter == 'psycopg2':
            try:
                from psycopg2.extras import execute_batch

                def psycopg_batch(cur, sql, argslist):
                    return execute_batch(cur, sql, argslist, page_size=self.batch_size)

                logger.debug("Cursor upgraded: executemany → psycopg2.extras.execute_batch")
                return psycopg_batch
            except ImportError:
                logger.debug("psycopg2.extras not available, using native executemany")
        elif adapter == 'pyodbc':
            if hasattr(self._cursor, 'fast_executemany') and not getattr(self._cursor, 'fast_executemany', False):
                self._cursor.fast_executemany = True
                logger.debug("pyodbc: enabled fast_executemany for bulk operations")

        # Fallback for everything else (SQLite, MySQL, etc.)
        return lambda cur, sql, argslist: cur.executemany(sql, argslist)

    def columns(self) -> List[str]:
        """Return list of column names from the last query, case preserved."""
        if not self._cursor.description:
            return []
        return [c[0] for c in self._cursor.description]

    def execute(self, query: str, bind_vars: tuple = ()) -> None:
        """Execute a database query."""
        if self.debug:
            logger.debug(f'Query:\n{query}')
            logger.debug(f'Bind vars:\n{bind_vars}')
        self._cursor.execute(query, bind_vars)

    def executemany(self, query: str, bind_vars: List[tuple]) -> None:
        """Execute a query against multiple parameter sets."""
        if not bind_vars:
            return
        if self.debug:
            logger.debug(f'Executemany - Query:\n{query}')
            logger.debug(f'Bind vars (first row):\n{bind_vars[0]}')

        if self._bulk_method is None:
            self._bulk_method = self._detect_bulk_method()

        self._bulk_method(self._cursor, query, bind_vars)

    def fetchone(self) -> Optional[Row]:
        """Fetch the next row."""
        row = self._cursor.fetchone()
        if row is None:
            return None
        return Row.from_pairs(self.columns(), row)

    def fetchall(self) -> List[Row]:
        """Fetch all remaining rows."""
        cols = self.columns()
        return [Row.from_pairs(cols, row) for row in self._cursor.fetchall()]
