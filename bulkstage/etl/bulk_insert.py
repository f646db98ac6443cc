# bulkstage/etl/bulk_insert.py
"""
Pipeline sink that bulk loads its input rows into a table in one transaction.

Whether the transaction commits is decided by the pipeline as a whole: a clean
write is still rolled back when any other stage has recorded an error.
"""

import logging
import time
from typing import Any, Callable, Dict, Iterable, Iterator, Mapping, Optional

from ..defaults import settings
from ..exceptions import ConfigurationError
from .bulk_copy import BulkCopy
from .options import BulkLoadOptions
from .pipeline import Operation
from .reader import RowSequenceTableAdapter

logger = logging.getLogger(__name__)

COMMITTED = 'committed'
ROLLED_BACK = 'rolled_back'
FAILED = 'failed'


class BulkInsertOperation(Operation):
    """
    Bulk loads every input row into ``target_table`` and yields nothing.

    The schema resolver describes the incoming rows (column name to type) and
    is called at the start of every execution. Columns without an explicit
    mapping load into the destination column of the same name.

    Parameters
    ----------
    connection_name : str
        Name passed to ``connect`` to open the destination connection
    target_table : str
        Destination table, may be schema qualified
    timeout : int, optional
        Seconds the bulk write may take, defaults to ``default_bulk_timeout`` (600)
    schema_resolver : callable, optional
        Zero-argument callable returning ``{column: type}``; required unless
        a subclass overrides prepare_schema()
    mappings : dict, optional
        Source field to destination column overrides
    options : BulkLoadOptions, optional
        Initial bulk load options, all off by default
    batch_size : int, optional
        Rows per round trip, defaults to the connection's cursor batch size
    connect : callable, optional
        Connection provider, defaults to bulkstage.config.connect
    error_state : optional
        Read-only pipeline error state; the executor supplies one when omitted
    name : str, optional
        Stage name used in log messages

    Example
    -------
    ::

        load = BulkInsertOperation('warehouse', 'air_nomad_training',
                                   schema_resolver=static_schema({'trainee_id': str, 'monk_name': str}),
                                   mappings={'trainee_id': 'nomad_id', 'monk_name': 'name'})
        load.lock_table = True
        PipelineExecutor().execute('load_nomads', [load], rows=source_rows)
    """

    def __init__(self, connection_name: str, target_table: str, timeout: Optional[int] = None,
                 schema_resolver: Optional[Callable[[], Mapping[str, type]]] = None,
                 mappings: Optional[Mapping[str, str]] = None, options: Optional[BulkLoadOptions] = None,
                 batch_size: Optional[int] = None, connect: Optional[Callable] = None,
                 error_state=None, name: Optional[str] = None):
        if not target_table:
            raise ConfigurationError("BulkInsertOperation requires a target table")
        super().__init__(name=name, error_state=error_state)

        if connect is None:
            from ..config import connect

        self.connection_name = connection_name
        self.target_table = target_table
        self.timeout = settings.get('default_bulk_timeout', 600) if timeout is None else timeout
        self.schema_resolver = schema_resolver
        self.schema: Dict[str, type] = {}
        self.mappings: Dict[str, str] = dict(mappings) if mappings else {}
        self.options = options.copy() if options is not None else BulkLoadOptions()
        self.batch_size = batch_size
        self._connect = connect

        self.last_outcome: Optional[str] = None
        self.rows_copied = 0

    # ------------------------------------------------------------------ #
    # Option switches
    # ------------------------------------------------------------------ #

    @property
    def lock_table(self) -> bool:
        return self.options.table_lock

    @lock_table.setter
    def lock_table(self, value: bool) -> None:
        self.options.toggle('table_lock', value)

    @property
    def keep_identity(self) -> bool:
        return self.options.keep_identity

    @keep_identity.setter
    def keep_identity(self, value: bool) -> None:
        self.options.toggle('keep_identity', value)

    @property
    def keep_nulls(self) -> bool:
        return self.options.keep_nulls

    @keep_nulls.setter
    def keep_nulls(self, value: bool) -> None:
        self.options.toggle('keep_nulls', value)

    # ------------------------------------------------------------------ #
    # Preparation
    # ------------------------------------------------------------------ #

    def prepare_schema(self) -> None:
        """Populate ``schema`` from the schema resolver."""
        if self.schema_resolver is None:
            raise ConfigurationError(f"{self.name} has no schema resolver for {self.target_table}")
        schema = self.schema_resolver()
        if not schema:
            raise ConfigurationError(f"Schema resolver for {self.target_table} returned no columns")
        self.schema = dict(schema)

    def prepare_mapping(self) -> None:
        """Map every schema column to itself unless a mapping is already set for it."""
        for column in self.schema:
            self.mappings.setdefault(column, column)

        unknown = [source for source in self.mappings if source not in self.schema]
        if unknown:
            raise ConfigurationError(
                f"Mapped fields {unknown} are not in the schema for {self.target_table}. "
                f"Schema columns: {list(self.schema)}")

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    def execute(self, rows: Iterable[Mapping[str, Any]]) -> Iterator[Mapping[str, Any]]:
        """
        Bulk load ``rows`` when the returned iterator is consumed.

        Raises
        ------
        ValueError
            ``rows`` is None; raised here, before any connection is opened
        """
        if rows is None:
            raise ValueError(f"{self.name} cannot load a null row sequence")
        return self._load(rows)

    def _load(self, rows: Iterable[Mapping[str, Any]]) -> Iterator[Mapping[str, Any]]:
        self.last_outcome = None
        self.rows_copied = 0
        started = time.monotonic()
        try:
            self.prepare_schema()
            self.prepare_mapping()
            with self._connect(self.connection_name) as db:
                with db.begin() as tx:
                    self.rows_copied = self._write(db, rows)
                    if self.pipeline_has_errors:
                        logger.info(f"Rolling back transaction in {self.name}")
                        tx.rollback()
                        logger.info(f"Rolled back transaction in {self.name}")
                        self.last_outcome = ROLLED_BACK
                    else:
                        logger.debug(f"Committing {self.name}")
                        tx.commit()
                        logger.debug(f"Committed {self.name}")
                        self.last_outcome = COMMITTED
        except Exception as e:
            self.last_outcome = FAILED
            logger.error(f"{self.name} failed loading {self.target_table}: {type(e).__name__}: {e}")
            e.add_note(f"{self.name} failed loading {self.target_table}")
            raise

        elapsed = time.monotonic() - started
        logger.info(f"{self.name}: {self.rows_copied:,} rows into {self.target_table}, "
                    f"{self.last_outcome.replace('_', ' ')} in {elapsed:.2f}s")
        yield from ()

    def _write(self, db, rows: Iterable[Mapping[str, Any]]) -> int:
        adapter = RowSequenceTableAdapter(self.schema, rows)
        copy = BulkCopy(db, options=self.options, destination_table=self.target_table,
                        timeout=self.timeout, batch_size=self.batch_size)
        for source, destination in self.mappings.items():
            copy.add_mapping(source, destination)
        with adapter:
            return copy.write_to_server(adapter)

    def run(self, rows: Iterable[Mapping[str, Any]]) -> int:
        """Execute the load immediately and return the number of rows copied."""
        for _ in self.execute(rows):
            pass
        return self.rows_copied

    def __repr__(self) -> str:
        return (f"BulkInsertOperation(name={self.name!r}, connection={self.connection_name!r}, "
                f"table={self.target_table!r}, options={self.options!r})")
