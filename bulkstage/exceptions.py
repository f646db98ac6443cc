# bulkstage/exceptions.py
"""Exceptions raised by bulkstage."""


class BulkStageError(Exception):
    """Base class for bulkstage errors."""


class ConfigurationError(BulkStageError, ValueError):
    """
    Invalid stage configuration: missing target table, missing or empty schema,
    or a column mapping that references a column the schema does not declare.

    Raised before any connection is opened and never worth retrying.
    """


class AdapterReadError(BulkStageError):
    """A row could not be read from the row sequence adapter."""


class BulkCopyTimeout(BulkStageError, TimeoutError):
    """The bulk write ran longer than its configured timeout."""
