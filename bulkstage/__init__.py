# bulkstage/__init__.py
"""
bulkstage - transactional bulk load stage for row-streaming ETL pipelines

Provides:
- BulkInsertOperation: a pipeline sink that streams rows into a table and
  commits or rolls back depending on the state of the whole pipeline
- Uniform interface across different databases (PostgreSQL, Oracle, MySQL, SQL Server, SQLite)
- YAML-based configuration with password encryption
- Logging setup with error counting for unattended runs

Basic usage::

    import bulkstage
    from bulkstage.etl import BulkInsertOperation, PipelineExecutor, static_schema

    bulkstage.setup_logging('load_nomads')
    load = BulkInsertOperation('warehouse', 'air_nomad_training',
                               schema_resolver=static_schema({'nomad_id': str, 'name': str}))
    PipelineExecutor().execute('load_nomads', [load], rows=source_rows)

Direct connections:
    from bulkstage.database import sqlite

    with sqlite('nomads.db') as db:
        cursor = db.cursor()
        cursor.execute("SELECT * FROM air_nomad_training")
"""

__version__ = '0.1.0'

from .database import Database
from .config import connect, set_config_file
from .cursors import Cursor
from .record import Row
from .logging_utils import setup_logging, errors_logged
from . import exceptions
from . import etl

__all__ = [
    'connect',
    'set_config_file',
    'Database',
    'Cursor',
    'Row',
    'etl',
    'exceptions',
    'setup_logging',
    'errors_logged',
]
