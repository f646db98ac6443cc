# bulkstage/record.py
"""
Row class for the pipeline's streaming data model.
"""

from typing import Any, Iterable, List, Mapping


class Row(dict):
    """
    Ordered, case-sensitive mapping of column name to value.

    Row extends dict, so it keeps insertion order and works anywhere a mapping
    is expected. It adds attribute access for column names that are valid
    Python identifiers, which keeps transform code readable.

    Access Patterns
    ---------------
    * **Dictionary-style**: ``row['column_name']`` - raises KeyError if missing
    * **Attribute access**: ``row.column_name`` - raises AttributeError if missing
    * **Containment**: ``'column_name' in row``

    Column names are case-sensitive: ``row['Name']`` and ``row['name']`` are
    different columns. Bulk loads map these names onto destination columns
    verbatim.

    Example
    -------
    ::

        row = Row(nomad_id='AANG001', name='Aang')
        row.temple = 'Southern Air Temple'
        print(row['name'], row.temple)

        row = Row.from_pairs(['nomad_id', 'name'], ['TENZIN001', 'Tenzin'])
    """

    __slots__ = ()

    def __getattr__(self, name: str) -> Any:
        # Called only when normal attribute lookup fails
        try:
            return self[name]
        except KeyError:
            raise AttributeError(f"'Row' object has no attribute '{name}'")

    def __setattr__(self, name: str, value: Any) -> None:
        self[name] = value

    def __delattr__(self, name: str) -> None:
        try:
            del self[name]
        except KeyError:
            raise AttributeError(name)

    def __dir__(self) -> List[str]:
        return sorted(set(super().__dir__()) | {k for k in self.keys() if isinstance(k, str)})

    @classmethod
    def from_pairs(cls, columns: Iterable[str], values: Iterable[Any]) -> 'Row':
        """Build a row from parallel column and value sequences."""
        return cls(zip(columns, values))

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> 'Row':
        """Copy any mapping (dict, Record-like object) into a Row."""
        if hasattr(mapping, 'items'):
            return cls(mapping.items())
        return cls(mapping)

    def copy(self) -> 'Row':
        return self.__class__(self)

    def __repr__(self) -> str:
        items = ", ".join(f"{k!r}: {v!r}" for k, v in self.items())
        return f"{self.__class__.__name__}({{{items}}})"
