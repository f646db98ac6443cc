# bulkstage/utils.py
"""
Utility functions for bulkstage.
"""

from typing import List

from .defaults import settings

# Opening and closing quote characters per database type; everything else uses double quotes
_QUOTES = {
    'mysql': ('`', '`'),
    'sqlserver': ('[', ']'),
}


class ParamStyle:
    """
    SQL parameter placeholder styles for different database drivers.

    - QMARK: Question mark placeholders (?, ?) - SQLite, ODBC
    - NUMERIC: Numeric placeholders (:1, :2) - Oracle
    - NAMED: Named placeholders (:name, :email) - Oracle
    - FORMAT: Printf-style (%s, %s) - MySQL, pymssql
    - PYFORMAT: Python format (%(name)s) - psycopg2

    Bulk inserts always bind positionally, so only the positional form of each
    style is generated here.

    Example
    -------
    ::
        >>> ParamStyle.placeholders('qmark', 3)
        ['?', '?', '?']
        >>> ParamStyle.placeholders('named', 2)
        [':1', ':2']
    """
    QMARK = 'qmark'         # id = ?
    NUMERIC = 'numeric'     # id = :1
    NAMED = 'named'         # id = :id  also :1 for positional
    FORMAT = 'format'       # id = %s
    PYFORMAT = 'pyformat'   # id = %(id)s also %s for positional
    DEFAULT = NAMED

    @classmethod
    def get_placeholder(cls, paramstyle: str) -> str:
        if paramstyle == cls.QMARK:
            return '?'
        elif paramstyle in (cls.FORMAT, cls.PYFORMAT):
            return '%s'
        elif paramstyle in (cls.NUMERIC, cls.NAMED):
            # adapters that use named parameters can also use :1 for positional parameters
            return ':1'
        return ''

    @classmethod
    def placeholders(cls, paramstyle: str, count: int) -> List[str]:
        """Positional bind placeholders for ``count`` parameters."""
        if paramstyle in (cls.NUMERIC, cls.NAMED):
            return [f':{i}' for i in range(1, count + 1)]
        placeholder = cls.get_placeholder(paramstyle)
        if not placeholder:
            raise ValueError(f"Unsupported paramstyle: {paramstyle}")
        return [placeholder] * count


def validate_identifier(identifier: str, max_length: int = None) -> str:
    """
    Validate that an identifier is safe for use (even if it needs quoting).
    Returns the identifier if valid, raises ValueError if invalid.
    """
    if max_length is None:
        max_length = settings.get('max_identifier_length', 128)
    if identifier is None:
        raise ValueError("Invalid identifier: cannot be empty")
    if '.' in identifier:
        # Split and recursively validate each part
        parts = identifier.split('.')
        validated_parts = [validate_identifier(part, max_length) for part in parts]
        return '.'.join(validated_parts)

    if not identifier:
        raise ValueError("Invalid identifier: cannot be empty")
    if not (identifier[0].isalpha() or identifier[0] in '_#'):
        raise ValueError(f"Invalid identifier: must start with a letter: {identifier}")
    if len(identifier) > max_length:
        raise ValueError(f"Invalid identifier: exceeds max length of {max_length}")

    # Characters/sequences that could enable injection or break SQL parsing
    dangerous_patterns = ['\x00', '\n', '\r', '"', '`', ';', '\x1a', '--', '/*', '*/']
    for pattern in dangerous_patterns:
        if pattern in identifier:
            raise ValueError(f"Invalid identifier: contains dangerous pattern '{pattern}': {identifier}")

    if identifier.startswith(' ') or identifier.endswith(' '):
        raise ValueError(f"Invalid identifier: has leading/trailing spaces: {identifier}")

    return identifier


def validate_column_name(name: str, max_length: int = None) -> str:
    """
    Validate a destination column name.

    Column names are always quoted, so leading digits, spaces, dots and quote
    characters are allowed. Empty names, NUL bytes and overlong names are not.
    """
    if max_length is None:
        max_length = settings.get('max_identifier_length', 128)
    if not name:
        raise ValueError("Invalid column name: cannot be empty")
    if '\x00' in name:
        raise ValueError(f"Invalid column name: contains a NUL byte: {name!r}")
    if len(name) > max_length:
        raise ValueError(f"Invalid column name: exceeds max length of {max_length}")
    return name


def quote_name(name: str, database_type: str = None) -> str:
    """Quote a single name in the dialect's style, doubling any embedded closing quote."""
    opening, closing = _QUOTES.get(database_type, ('"', '"'))
    return f"{opening}{name.replace(closing, closing * 2)}{closing}"


def quote_identifier(identifier: str, database_type: str = None) -> str:
    """
    Quote every part of a possibly schema qualified identifier.

    Names are always quoted so the server keeps them exactly as given instead
    of folding their case.
    """
    return '.'.join(quote_name(part, database_type) for part in identifier.split('.'))
