# bulkstage/etl/options.py
"""
Named bulk load options.
"""

from typing import Dict, Iterable


class BulkLoadOptions:
    """
    Independent on/off switches that control a bulk load.

    - table_lock: hold an exclusive table lock for the duration of the load
    - keep_identity: insert source identity values instead of letting the
      destination generate them
    - keep_nulls: insert NULL for missing values instead of the column default

    Every option defaults to off. Toggling is idempotent: turning on an option
    that is already on, or off one that is already off, changes nothing.

    Example
    -------
    ::

        options = BulkLoadOptions(table_lock=True)
        options.toggle('keep_nulls', True)
        options.is_on('table_lock')     # True
        options.enabled()               # ['table_lock', 'keep_nulls']
    """

    NAMES = ('table_lock', 'keep_identity', 'keep_nulls')

    __slots__ = NAMES

    def __init__(self, table_lock: bool = False, keep_identity: bool = False, keep_nulls: bool = False):
        self.table_lock = bool(table_lock)
        self.keep_identity = bool(keep_identity)
        self.keep_nulls = bool(keep_nulls)

    @classmethod
    def from_names(cls, names: Iterable[str]) -> 'BulkLoadOptions':
        """Build options with the named flags turned on, e.g. from a config list."""
        options = cls()
        for name in names:
            options.turn_on(name)
        return options

    def _check(self, option: str) -> None:
        if option not in self.NAMES:
            raise ValueError(f"Unknown bulk load option '{option}'. Valid options: {', '.join(self.NAMES)}")

    def is_on(self, option: str) -> bool:
        self._check(option)
        return getattr(self, option)

    def turn_on(self, option: str) -> None:
        self._check(option)
        setattr(self, option, True)

    def turn_off(self, option: str) -> None:
        if self.is_on(option):
            setattr(self, option, False)

    def toggle(self, option: str, on: bool) -> None:
        """Turn ``option`` on or off depending on ``on``."""
        if on:
            self.turn_on(option)
        else:
            self.turn_off(option)

    def enabled(self) -> list:
        return [name for name in self.NAMES if getattr(self, name)]

    def to_dict(self) -> Dict[str, bool]:
        return {name: getattr(self, name) for name in self.NAMES}

    def copy(self) -> 'BulkLoadOptions':
        return BulkLoadOptions(**self.to_dict())

    def __eq__(self, other) -> bool:
        if not isinstance(other, BulkLoadOptions):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"BulkLoadOptions({', '.join(self.enabled()) or 'default'})"
