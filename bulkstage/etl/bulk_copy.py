# bulkstage/etl/bulk_copy.py
"""
Streaming bulk writes of a forward-only reader into a database table.

BulkCopy pulls rows from a RowSequenceTableAdapter as it needs them and sends
them to the server in executemany() batches on the caller's connection, so the
load participates in whatever transaction the caller has open.
"""

import logging
import math
import time
from typing import Callable, List, Optional, Tuple

from ..defaults import settings
from ..exceptions import BulkCopyTimeout, ConfigurationError
from ..utils import ParamStyle, quote_identifier, quote_name, validate_column_name, validate_identifier
from .options import BulkLoadOptions

logger = logging.getLogger(__name__)

# Connection attribute that bounds each round trip, and its units per second
DRIVER_TIMEOUTS = {
    'oracledb': ('call_timeout', 1000),
    'cx_Oracle': ('call_timeout', 1000),
    'pyodbc': ('timeout', 1),
}


def lock_table_sql(database_type: str, table: str) -> Optional[str]:
    """
    Statement that takes an exclusive, transaction-scoped lock on ``table``.

    Returns None where the lock is expressed differently (SQL Server uses a
    TABLOCK hint on the INSERT) or not available inside a transaction.
    """
    if database_type in ('postgres', 'oracle'):
        return f"LOCK TABLE {table} IN EXCLUSIVE MODE"
    return None


class BulkCopy:
    """
    Bulk loads rows from a forward-only reader into a destination table.

    Column mappings pair reader columns with destination columns. Only mapped
    columns are read from each row. At most ``batch_size`` parameter tuples
    are held before they are sent to the server. Destination names are always
    quoted, so they reach the server with their case intact.

    The timeout bounds the whole write. The deadline is checked after every
    row pulled from the reader, and each round trip is limited to the time
    left where the driver supports it: ``statement_timeout`` on PostgreSQL,
    ``call_timeout`` for Oracle drivers, the connection ``timeout`` for
    pyodbc and a progress handler on SQLite.

    Parameters
    ----------
    db : Database
        Open connection; the load runs inside its current transaction
    options : BulkLoadOptions, optional
        table_lock, keep_identity and keep_nulls behaviour
    destination_table : str, optional
        Table to load, may be schema qualified
    timeout : int, optional
        Seconds the whole write may take; 0 disables the limit
    batch_size : int, optional
        Rows per executemany() call, defaults to the cursor's batch_size

    Example
    -------
    ::

        copy = BulkCopy(db, BulkLoadOptions(table_lock=True), 'air_nomad_training')
        copy.add_mapping('trainee_id', 'nomad_id')
        copy.add_mapping('monk_name', 'name')
        copy.write_to_server(adapter)
    """

    # SQLite virtual machine instructions between deadline checks
    progress_interval = 1000

    def __init__(self, db, options: Optional[BulkLoadOptions] = None, destination_table: Optional[str] = None,
                 timeout: Optional[int] = None, batch_size: Optional[int] = None,
                 notify_after: int = 0, on_rows_copied: Optional[Callable[[int], None]] = None):
        self.db = db
        self.cursor = db.cursor()
        self.options = options if options is not None else BulkLoadOptions()
        self.destination_table = destination_table
        self.timeout = settings.get('default_bulk_timeout', 600) if timeout is None else timeout
        self.batch_size = batch_size or self.cursor.batch_size
        self.notify_after = notify_after
        self.on_rows_copied = on_rows_copied
        self.column_mappings: List[Tuple[str, str]] = []
        self.rows_copied = 0
        self.database_type = getattr(db, 'database_type', 'unknown')
        self._notified_at = 0
        self._deadline: Optional[float] = None
        self._driver_timeout = DRIVER_TIMEOUTS.get(getattr(getattr(db, 'interface', None), '__name__', None))
        self._saved_driver_timeout = None
        self._statement_limited = False

    def add_mapping(self, source: str, destination: str) -> None:
        self.column_mappings.append((source, destination))

    # ------------------------------------------------------------------ #
    # SQL generation
    # ------------------------------------------------------------------ #

    def insert_sql(self, table: str, columns: List[str]) -> str:
        """INSERT statement for ``columns`` using the driver's positional placeholders."""
        hint = ' WITH (TABLOCK)' if self.options.table_lock and self.database_type == 'sqlserver' else ''
        if not columns:
            if self.database_type == 'mysql':
                return f"INSERT INTO {table} () VALUES ()"
            return f"INSERT INTO {table}{hint} DEFAULT VALUES"
        col_list = ', '.join(quote_name(c, self.database_type) for c in columns)
        values = ', '.join(ParamStyle.placeholders(self.cursor.paramstyle, len(columns)))
        return f"INSERT INTO {table}{hint} ({col_list}) VALUES ({values})"

    # ------------------------------------------------------------------ #
    # Session setup around the load
    # ------------------------------------------------------------------ #

    def _before_load(self, table: str) -> None:
        if self.options.table_lock:
            sql = lock_table_sql(self.database_type, table)
            if sql:
                self.cursor.execute(sql)
                logger.debug(f"Locked {table}: {sql}")
            elif self.database_type != 'sqlserver':
                logger.info(f"Table lock is not supported for {self.database_type}; loading {table} without it")
        if self.options.keep_identity and self.database_type == 'sqlserver':
            self.cursor.execute(f"SET IDENTITY_INSERT {table} ON")

        if self._deadline is None:
            return
        if self._driver_timeout:
            self._saved_driver_timeout = getattr(self.db, self._driver_timeout[0])
        elif self.database_type == 'sqlite':
            self.db.set_progress_handler(self._expired, self.progress_interval)

    def _after_load(self, table: str, failed: bool = False) -> None:
        try:
            if self.options.keep_identity and self.database_type == 'sqlserver':
                self.cursor.execute(f"SET IDENTITY_INSERT {table} OFF")
            if self._statement_limited and not failed:
                self.cursor.execute("SET LOCAL statement_timeout TO DEFAULT")
        finally:
            self._clear_time_limit()

    # ------------------------------------------------------------------ #
    # Timeout
    # ------------------------------------------------------------------ #

    def _expired(self) -> bool:
        return self._deadline is not None and time.monotonic() > self._deadline

    def _timed_out(self, table: str) -> BulkCopyTimeout:
        return BulkCopyTimeout(
            f"Bulk copy into {table} exceeded its {self.timeout}s timeout after {self.rows_copied:,} rows")

    def _check_deadline(self, table: str) -> None:
        if self._expired():
            raise self._timed_out(table)

    def _limit_round_trip(self, table: str) -> None:
        """Bound the next send by the time left before the deadline."""
        if self._deadline is None:
            return
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            raise self._timed_out(table)
        if self.database_type == 'postgres':
            self.cursor.execute(f"SET LOCAL statement_timeout = {math.ceil(remaining * 1000)}")
            self._statement_limited = True
        elif self._driver_timeout:
            attr, per_second = self._driver_timeout
            setattr(self.db, attr, max(1, math.ceil(remaining * per_second)))

    def _clear_time_limit(self) -> None:
        if self._deadline is None:
            return
        if self._driver_timeout:
            setattr(self.db, self._driver_timeout[0], self._saved_driver_timeout)
        elif self.database_type == 'sqlite':
            self.db.set_progress_handler(None, 0)
        self._statement_limited = False

    # ------------------------------------------------------------------ #
    # Streaming
    # ------------------------------------------------------------------ #

    def _resolve_mappings(self, reader) -> Tuple[List[int], List[str]]:
        ordinals = []
        destinations = []
        for source, destination in self.column_mappings:
            try:
                ordinals.append(reader.get_ordinal(source))
            except KeyError:
                raise ConfigurationError(
                    f"Mapped source column '{source}' is not provided by the reader. Columns: {reader.columns}")
            try:
                destinations.append(validate_column_name(destination))
            except ValueError as e:
                raise ConfigurationError(f"Invalid destination column for '{source}': {e}")
        return ordinals, destinations

    def _send(self, table: str, columns: List[str], batch: List[tuple]) -> None:
        """Send a batch, grouping consecutive rows by which values are None when nulls are not kept."""
        if self.options.keep_nulls:
            self.cursor.executemany(self.insert_sql(table, columns), batch)
            return

        run_key = None
        run: List[tuple] = []
        for params in batch:
            key = tuple(value is not None for value in params)
            if key != run_key and run:
                self._send_run(table, columns, run_key, run)
                run = []
            run_key = key
            run.append(params)
        if run:
            self._send_run(table, columns, run_key, run)

    def _send_run(self, table: str, columns: List[str], present: tuple, run: List[tuple]) -> None:
        cols = [c for c, keep in zip(columns, present) if keep]
        sql = self.insert_sql(table, cols)
        if not cols:
            for _ in run:
                self.cursor.execute(sql)
            return
        params = [tuple(v for v, keep in zip(row, present) if keep) for row in run]
        self.cursor.executemany(sql, params)

    def _flush(self, table: str, columns: List[str], batch: List[tuple]) -> None:
        self._limit_round_trip(table)
        try:
            self._send(table, columns, batch)
        except Exception as e:
            # a driver cancelling the statement at the deadline surfaces as its own error type
            if self._expired():
                raise self._timed_out(table) from e
            raise
        self.rows_copied += len(batch)
        if self.notify_after and self.rows_copied - self._notified_at >= self.notify_after:
            self._notified_at = self.rows_copied
            logger.info(f"Bulk copy into {table}: {self.rows_copied:,} rows copied")
            if self.on_rows_copied is not None:
                self.on_rows_copied(self.rows_copied)
        self._check_deadline(table)

    def write_to_server(self, reader) -> int:
        """
        Stream every remaining row of ``reader`` into the destination table.

        The reader is consumed exactly once. Returns the number of rows copied.

        Raises
        ------
        ConfigurationError
            No destination table, no mappings, or a mapping the reader cannot satisfy
        AdapterReadError
            A row is missing a mapped field
        BulkCopyTimeout
            The write took longer than ``timeout`` seconds
        """
        if not self.destination_table:
            raise ConfigurationError("BulkCopy requires a destination table")
        if not self.column_mappings:
            raise ConfigurationError(f"BulkCopy into {self.destination_table} has no column mappings")
        try:
            table = quote_identifier(validate_identifier(self.destination_table), self.database_type)
        except ValueError as e:
            raise ConfigurationError(f"Invalid destination table: {e}")
        ordinals, columns = self._resolve_mappings(reader)

        self.rows_copied = 0
        self._notified_at = 0
        self._deadline = time.monotonic() + self.timeout if self.timeout else None
        self._before_load(table)
        try:
            batch = []
            while reader.read():
                self._check_deadline(table)
                batch.append(reader.get_values(ordinals))
                if len(batch) >= self.batch_size:
                    self._flush(table, columns, batch)
                    batch = []
            if batch:
                self._flush(table, columns, batch)
        except Exception:
            try:
                self._after_load(table, failed=True)
            except Exception as e:
                logger.warning(f"Failed to restore session settings for {table}: {e}")
            raise
        self._after_load(table)

        logger.debug(f"Bulk copied {self.rows_copied:,} rows into {table}")
        return self.rows_copied
