# bulkstage/etl/__init__.py
"""
Pipeline operations for loading row streams into database tables.

- BulkInsertOperation: sink stage that bulk loads rows in one transaction
- RowSequenceTableAdapter: forward-only reader over a lazy row sequence
- BulkCopy: streaming bulk write of a reader into a table
- PipelineExecutor: chains operations and owns the pipeline error state

Example
-------
::

    from bulkstage.etl import BulkInsertOperation, PipelineExecutor, table_schema

    load = BulkInsertOperation('warehouse', 'air_nomad_training',
                               schema_resolver=table_schema('warehouse', 'air_nomad_training'))
    load.lock_table = True

    executor = PipelineExecutor()
    executor.execute('load_nomads', [load], rows=records)
"""

from .options import BulkLoadOptions
from .reader import RowSequenceTableAdapter
from .bulk_copy import BulkCopy
from .pipeline import (ErrorDetail, ErrorStateReader, LoggedErrorState, Operation, PipelineErrorState,
                       PipelineExecutor)
from .schema import python_type, read_table_schema, static_schema, table_schema
from .bulk_insert import BulkInsertOperation

__all__ = [
    'BulkInsertOperation',
    'BulkCopy',
    'BulkLoadOptions',
    'ErrorDetail',
    'ErrorStateReader',
    'LoggedErrorState',
    'Operation',
    'PipelineErrorState',
    'PipelineExecutor',
    'RowSequenceTableAdapter',
    'python_type',
    'read_table_schema',
    'static_schema',
    'table_schema',
]
