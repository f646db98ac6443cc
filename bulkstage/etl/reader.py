# bulkstage/etl/reader.py
"""
Forward-only tabular reader over a lazy sequence of rows.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..exceptions import AdapterReadError

logger = logging.getLogger(__name__)

_NOT_STARTED = 'not_started'
_READING = 'reading'
_EXHAUSTED = 'exhausted'
_CLOSED = 'closed'


class RowSequenceTableAdapter:
    """
    Presents an iterable of row mappings as a forward-only, schema-typed cursor.

    Columns and their types come from the schema and are fixed for the life of
    the adapter. Rows are pulled from the source one at a time as read() is
    called and only the current row is held, so memory use does not depend
    on how many rows stream through. The source is iterated exactly once.

    Values are passed through as-is. A row missing a schema column raises
    AdapterReadError when that column is read instead of producing a default.

    Example
    -------
    ::

        adapter = RowSequenceTableAdapter({'nomad_id': str, 'name': str}, rows)
        while adapter.read():
            print(adapter.get_value(0), adapter['name'])
    """

    def __init__(self, schema: Mapping[str, type], rows: Iterable[Mapping[str, Any]]):
        if rows is None:
            raise ValueError("RowSequenceTableAdapter cannot accept a null row sequence")
        self._columns: List[str] = list(schema.keys())
        self._types: List[type] = list(schema.values())
        self._ordinals: Dict[str, int] = {name: i for i, name in enumerate(self._columns)}
        self._rows = iter(rows)
        self._state = _NOT_STARTED
        self.current: Optional[Mapping[str, Any]] = None
        self.rows_read = 0

    # ------------------------------------------------------------------ #
    # Column metadata
    # ------------------------------------------------------------------ #

    @property
    def field_count(self) -> int:
        return len(self._columns)

    @property
    def columns(self) -> List[str]:
        return list(self._columns)

    def get_name(self, ordinal: int) -> str:
        return self._columns[ordinal]

    def get_ordinal(self, name: str) -> int:
        try:
            return self._ordinals[name]
        except KeyError:
            raise KeyError(f"Column '{name}' is not in the schema. Columns: {self._columns}")

    def get_field_type(self, ordinal: int) -> type:
        return self._types[ordinal]

    # ------------------------------------------------------------------ #
    # Forward-only reading
    # ------------------------------------------------------------------ #

    @property
    def is_closed(self) -> bool:
        return self._state == _CLOSED

    def read(self) -> bool:
        """
        Advance to the next row.

        Returns False once the source is exhausted. Reading again after that,
        or after close(), raises AdapterReadError.
        """
        if self._state == _CLOSED:
            raise AdapterReadError("Cannot read from a closed adapter")
        if self._state == _EXHAUSTED:
            raise AdapterReadError("Cannot read past the end of the row sequence")

        # Drop the previous row before pulling the next
        self.current = None
        try:
            row = next(self._rows)
        except StopIteration:
            self._state = _EXHAUSTED
            logger.debug(f"Row sequence exhausted after {self.rows_read:,} rows")
            return False

        self._state = _READING
        self.current = row
        self.rows_read += 1
        return True

    def get_value(self, ordinal: int) -> Any:
        """Value of the column at ``ordinal`` in the current row."""
        if self.current is None:
            raise AdapterReadError("No current row: call read() first")
        name = self._columns[ordinal]
        try:
            return self.current[name]
        except KeyError:
            raise AdapterReadError(
                f"Row {self.rows_read} is missing field '{name}'. Fields present: {list(self.current.keys())}"
            ) from None

    def get_values(self, ordinals: Iterable[int]) -> tuple:
        return tuple(self.get_value(i) for i in ordinals)

    def __getitem__(self, key) -> Any:
        if isinstance(key, str):
            return self.get_value(self.get_ordinal(key))
        return self.get_value(key)

    def close(self) -> None:
        self.current = None
        self._state = _CLOSED

    def __enter__(self) -> 'RowSequenceTableAdapter':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return None

    def __repr__(self) -> str:
        return f"RowSequenceTableAdapter(columns={self._columns}, rows_read={self.rows_read}, state={self._state})"
