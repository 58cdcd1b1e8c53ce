"""
SQL Dialects

Identifier quoting, table-name parsing, hint placement and transaction
primitives for each supported target database. Statement shapes that differ
per database live in ddl_generator and sql_builder; they rely on the dialect
for everything that touches identifiers.
"""

import re
from typing import Any, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

POSTGRESQL = 'postgresql'
MSSQL = 'mssql'
SQLITE = 'sqlite'

_NAME_ALIASES = {
    'postgresql': POSTGRESQL,
    'postgres': POSTGRESQL,
    'psycopg2': POSTGRESQL,
    'mssql': MSSQL,
    'sqlserver': MSSQL,
    'pyodbc': MSSQL,
    'sqlite': SQLITE,
    'sqlite3': SQLITE,
}

_BRACKETED_QUALIFIED = re.compile(r'^\[([^\]]+)\]\.\[([^\]]+)\]$')
_QUOTED_QUALIFIED = re.compile(r'^"((?:[^"]|"")+)"\."((?:[^"]|"")+)"$')


def parse_table_name(entry: str) -> Tuple[Optional[str], str]:
    """
    Split a table reference into (schema, table).

    Handles:
    - Unqualified: "Orders" -> (None, "Orders")
    - Simple format: "dbo.Orders" -> ("dbo", "Orders")
    - Bracketed format: "[dbo].[Order Lines]" -> ("dbo", "Order Lines")
    - Quoted format: '"public"."order lines"' -> ("public", "order lines")

    Args:
        entry: Table reference in any of the formats above

    Returns:
        Tuple of (schema or None, table)

    Raises:
        ValueError: If the reference is empty or has an empty part
    """
    entry = (entry or '').strip()
    if not entry:
        raise ValueError("Invalid table name: cannot be empty")

    match = _BRACKETED_QUALIFIED.match(entry)
    if match:
        return match.group(1), match.group(2)

    match = _QUOTED_QUALIFIED.match(entry)
    if match:
        return match.group(1).replace('""', '"'), match.group(2).replace('""', '"')

    if len(entry) > 2 and entry[0] == '[' and entry[-1] == ']' and ']' not in entry[1:-1]:
        return None, entry[1:-1]

    if len(entry) > 2 and entry[0] == '"' and entry[-1] == '"':
        return None, entry[1:-1].replace('""', '"')

    if '.' not in entry:
        return None, entry

    # Split on first dot only
    schema, table = entry.split('.', 1)
    if not schema.strip() or not table.strip():
        raise ValueError(
            f"Invalid table name '{entry}': must be 'table', 'schema.table' or '[schema].[table]'"
        )
    return schema.strip(), table.strip()


class Dialect:
    """Base dialect using ANSI double-quoted identifiers."""

    name = ''

    # Whether a staging table created from the target keeps its identity property
    staging_keeps_identity = False
    # Whether a timeout set by set_timeout is undone by rolling the transaction back
    timeout_is_transactional = False

    def quote_identifier(self, identifier: str) -> str:
        """
        Quote an identifier safely.

        Always quotes and escapes identifiers so reserved words, mixed case
        and special characters survive.

        Args:
            identifier: Identifier to quote

        Returns:
            Safely quoted identifier
        """
        escaped = identifier.replace('"', '""')
        return f'"{escaped}"'

    def quote_table(self, table: str, schema: Optional[str] = None) -> str:
        if schema:
            return f"{self.quote_identifier(schema)}.{self.quote_identifier(table)}"
        return self.quote_identifier(table)

    def format_table_name(self, table_name: str) -> str:
        """Quote a possibly schema-qualified table reference."""
        schema, table = parse_table_name(table_name)
        return self.quote_table(table, schema)

    def transient_name(self, name: str) -> str:
        """Name used for a session-scoped table."""
        return name

    def table_hint(self, hints: Optional[str]) -> str:
        if hints:
            logger.warning(f"Table hints are not supported by {self.name}; ignoring '{hints}'")
        return ''

    def begin(self, connection: Any) -> None:
        """Start a transaction on the connection (implicit by default)."""

    def timeout_statement(self, seconds: int) -> Optional[str]:
        """Statement that applies a timeout to the current transaction, if any."""
        return None

    def set_timeout(self, transaction: Any, seconds: int) -> Any:
        """
        Apply a statement timeout to the work that follows.

        Returns:
            Whatever restore_timeout needs to put the previous timeout back
        """
        statement = self.timeout_statement(seconds)
        if statement:
            transaction.execute(statement)
        return None

    def restore_timeout(self, transaction: Any, previous: Any) -> None:
        """Put back the timeout that was in force before set_timeout."""

    def savepoint_sql(self, name: str) -> str:
        return f"SAVEPOINT {self.quote_identifier(name)}"

    def rollback_to_savepoint_sql(self, name: str) -> str:
        return f"ROLLBACK TO SAVEPOINT {self.quote_identifier(name)}"

    def release_savepoint_sql(self, name: str) -> Optional[str]:
        return f"RELEASE SAVEPOINT {self.quote_identifier(name)}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class PostgresDialect(Dialect):
    """PostgreSQL via psycopg2."""

    name = POSTGRESQL

    timeout_is_transactional = True

    def timeout_statement(self, seconds: int) -> Optional[str]:
        return f"SET LOCAL statement_timeout = {int(seconds) * 1000}"

    def set_timeout(self, transaction: Any, seconds: int) -> Any:
        cursor = transaction.cursor()
        try:
            cursor.execute("SELECT current_setting('statement_timeout')")
            previous = cursor.fetchone()[0]
        finally:
            cursor.close()
        transaction.execute(self.timeout_statement(seconds))
        return previous

    def restore_timeout(self, transaction: Any, previous: Any) -> None:
        # SET LOCAL lasts until the transaction ends, which may be the caller's transaction
        transaction.execute("SELECT set_config('statement_timeout', %s, true)", (previous,))


class SqlServerDialect(Dialect):
    """Microsoft SQL Server via pyodbc."""

    name = MSSQL
    staging_keeps_identity = True

    def quote_identifier(self, identifier: str) -> str:
        escaped = identifier.replace(']', ']]')
        return f"[{escaped}]"

    def transient_name(self, name: str) -> str:
        return name if name.startswith('#') else f"#{name}"

    def table_hint(self, hints: Optional[str]) -> str:
        if not hints or not hints.strip():
            return ''
        hints = hints.strip()
        if hints.upper().startswith('WITH'):
            return f" {hints}"
        return f" WITH ({hints})"

    def set_timeout(self, transaction: Any, seconds: int) -> Any:
        # pyodbc query timeout applies to every statement on the connection
        connection = transaction.connection
        previous = connection.timeout
        connection.timeout = int(seconds)
        return previous

    def restore_timeout(self, transaction: Any, previous: Any) -> None:
        transaction.connection.timeout = previous

    def savepoint_sql(self, name: str) -> str:
        return f"SAVE TRANSACTION {self.quote_identifier(name)}"

    def rollback_to_savepoint_sql(self, name: str) -> str:
        return f"ROLLBACK TRANSACTION {self.quote_identifier(name)}"

    def release_savepoint_sql(self, name: str) -> Optional[str]:
        return None


class SqliteDialect(Dialect):
    """SQLite via the sqlite3 module."""

    name = SQLITE

    def quote_table(self, table: str, schema: Optional[str] = None) -> str:
        # Temporary tables live in the "temp" schema and cannot be qualified with "main"
        if schema and schema.lower() not in ('main', 'temp'):
            return f"{self.quote_identifier(schema)}.{self.quote_identifier(table)}"
        return self.quote_identifier(table)

    def begin(self, connection: Any) -> None:
        # sqlite3 does not open a transaction before DDL, so open one explicitly
        if not connection.in_transaction:
            connection.execute("BEGIN")


_DIALECTS = {
    POSTGRESQL: PostgresDialect,
    MSSQL: SqlServerDialect,
    SQLITE: SqliteDialect,
}


def get_dialect(name: str) -> Dialect:
    """
    Get a dialect by name.

    Args:
        name: Dialect name or alias (postgresql, postgres, mssql, sqlserver, sqlite)

    Returns:
        Dialect instance

    Raises:
        ValueError: If the name is not a supported dialect
    """
    key = _NAME_ALIASES.get((name or '').strip().lower())
    if key is None:
        raise ValueError(f"Unsupported dialect '{name}'. Supported: {', '.join(sorted(_DIALECTS))}")
    return _DIALECTS[key]()


def detect_dialect(connection: Any) -> Dialect:
    """
    Detect the dialect from the DB-API driver that created the connection.

    Args:
        connection: psycopg2, pyodbc or sqlite3 connection

    Returns:
        Dialect instance

    Raises:
        ValueError: If the driver is not recognized
    """
    module = type(connection).__module__.split('.')[0]
    key = _NAME_ALIASES.get(module.lower())
    if key is None:
        raise ValueError(
            f"Cannot detect dialect for connection type '{type(connection).__module__}."
            f"{type(connection).__name__}'; pass dialect= explicitly"
        )
    return _DIALECTS[key]()


def resolve_dialect(connection: Any, dialect: Any = None) -> Dialect:
    """Return the dialect given explicitly (instance or name) or detected from the connection."""
    if isinstance(dialect, Dialect):
        return dialect
    if dialect:
        return get_dialect(dialect)
    return detect_dialect(connection)
