"""
Schema Snapshot Module

Reads the live column list of a target table (name, nullability, primary key
membership, identity) from the database catalog, using the connection and
transaction of the bulk operation so uncommitted DDL is visible.

Snapshots are cached per connection and table. The cache is shared by all
SchemaExtractor instances in the process and guarded by a lock. Entries are
held through weak references to the connection, so they go away with it.
Connections that cannot be weakly referenced are cached by their DSN, or not
at all when the driver exposes none.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
import asyncio
import logging
import threading
import weakref

from bulk_sync.dialects import MSSQL, POSTGRESQL, SQLITE, Dialect, parse_table_name
from bulk_sync.exceptions import SchemaLookupError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColumnDescriptor:
    """One column of the target table."""

    name: str
    is_primary: bool = False
    is_identity: bool = False
    is_nullable: bool = True
    data_type: Optional[str] = None
    key_ordinal: Optional[int] = None


_POSTGRES_COLUMNS_QUERY = """
SELECT
    a.attname AS column_name,
    NOT a.attnotnull AS is_nullable,
    pk.key_ordinal IS NOT NULL AS is_primary,
    (a.attidentity <> '' OR COALESCE(pg_get_expr(d.adbin, d.adrelid), '') LIKE 'nextval(%%') AS is_identity,
    format_type(a.atttypid, a.atttypmod) AS data_type,
    pk.key_ordinal
FROM pg_attribute a
INNER JOIN pg_class c ON c.oid = a.attrelid
INNER JOIN pg_namespace n ON n.oid = c.relnamespace
LEFT JOIN pg_attrdef d ON d.adrelid = a.attrelid AND d.adnum = a.attnum
LEFT JOIN LATERAL (
    SELECT array_position(i.indkey::int2[], a.attnum) AS key_ordinal
    FROM pg_index i
    WHERE i.indrelid = c.oid AND i.indisprimary AND a.attnum = ANY(i.indkey)
) pk ON true
WHERE c.relname = %s
  AND n.nspname = COALESCE(%s, current_schema())
  AND c.relkind IN ('r', 'p')
  AND a.attnum > 0
  AND NOT a.attisdropped
ORDER BY a.attnum
"""

_MSSQL_COLUMNS_QUERY = """
SELECT
    c.name AS column_name,
    c.is_nullable,
    CAST(CASE WHEN pk.key_ordinal IS NULL THEN 0 ELSE 1 END AS bit) AS is_primary,
    c.is_identity,
    t.name AS data_type,
    pk.key_ordinal
FROM sys.columns c
INNER JOIN sys.types t ON c.user_type_id = t.user_type_id
LEFT JOIN (
    SELECT ic.object_id, ic.column_id, ic.key_ordinal
    FROM sys.index_columns ic
    INNER JOIN sys.indexes i ON ic.object_id = i.object_id AND ic.index_id = i.index_id
    WHERE i.is_primary_key = 1
) pk ON pk.object_id = c.object_id AND pk.column_id = c.column_id
WHERE c.object_id = OBJECT_ID(?)
ORDER BY c.column_id
"""


class SchemaExtractor:
    """Fetch and cache column descriptors for target tables."""

    # Snapshot cache (class-level, shared across instances)
    _cache: "weakref.WeakKeyDictionary[Any, Dict[Tuple[str, str], Tuple[ColumnDescriptor, ...]]]" = (
        weakref.WeakKeyDictionary()
    )
    _dsn_cache: Dict[str, Dict[Tuple[str, str], Tuple[ColumnDescriptor, ...]]] = {}
    _cache_lock = threading.Lock()

    def __init__(self, dialect: Dialect):
        """
        Initialize the schema extractor.

        Args:
            dialect: Dialect of the connections this extractor will query
        """
        self.dialect = dialect

    def get_columns(
        self,
        connection: Any,
        table_name: str,
        transaction: Any = None,
        force_refresh: bool = False,
    ) -> List[ColumnDescriptor]:
        """
        Get the columns of a table in ordinal order.

        Args:
            connection: DB-API connection
            table_name: Target table, optionally schema-qualified
            transaction: Transaction the lookup must run in (its connection is used)
            force_refresh: Bypass and replace any cached snapshot

        Returns:
            List of ColumnDescriptor

        Raises:
            SchemaLookupError: If the table does not exist or cannot be introspected
        """
        if transaction is not None:
            connection = transaction.connection

        key = self._cache_key(table_name)
        if not force_refresh:
            with SchemaExtractor._cache_lock:
                entries = self._entries_for(connection)
                cached = entries.get(key) if entries is not None else None
            if cached is not None:
                logger.debug(f"Using cached schema for {table_name} ({len(cached)} columns)")
                return list(cached)

        try:
            columns = self._fetch_columns(connection, table_name)
        except Exception as e:
            logger.error(f"Error retrieving columns for table '{table_name}': {e}")
            raise SchemaLookupError(f"Could not retrieve columns for table '{table_name}': {e}") from e

        if not columns:
            raise SchemaLookupError(f"Table '{table_name}' was not found or has no columns")

        with SchemaExtractor._cache_lock:
            entries = self._entries_for(connection, create=True)
            if entries is not None:
                entries[key] = tuple(columns)

        logger.debug(f"Loaded schema for {table_name}: {', '.join(c.name for c in columns)}")
        return columns

    async def get_columns_async(
        self,
        connection: Any,
        table_name: str,
        transaction: Any = None,
        force_refresh: bool = False,
    ) -> List[ColumnDescriptor]:
        """Async variant of get_columns; the catalog query runs in a worker thread."""
        return await asyncio.to_thread(
            self.get_columns, connection, table_name, transaction, force_refresh
        )

    @classmethod
    def clear_cache(cls) -> None:
        """Drop every cached snapshot."""
        with cls._cache_lock:
            cls._cache.clear()
            cls._dsn_cache.clear()

    @classmethod
    def _entries_for(
        cls,
        connection: Any,
        create: bool = False,
    ) -> Optional[Dict[Tuple[str, str], Tuple[ColumnDescriptor, ...]]]:
        """Per-connection snapshot dict; the caller holds the lock."""
        try:
            entries = cls._cache.get(connection)
            if entries is None and create:
                entries = cls._cache[connection] = {}
            return entries
        except TypeError:
            pass

        dsn = getattr(connection, 'dsn', None)
        if not isinstance(dsn, str) or not dsn:
            return None
        entries = cls._dsn_cache.get(dsn)
        if entries is None and create:
            entries = cls._dsn_cache[dsn] = {}
        return entries

    def _cache_key(self, table_name: str) -> Tuple[str, str]:
        schema, table = parse_table_name(table_name)
        qualified = f"{schema}.{table}" if schema else table
        return self.dialect.name, qualified.lower()

    def _fetch_columns(self, connection: Any, table_name: str) -> List[ColumnDescriptor]:
        schema, table = parse_table_name(table_name)

        if self.dialect.name == POSTGRESQL:
            rows = _fetch_records(connection, _POSTGRES_COLUMNS_QUERY, (table, schema))
            return [_descriptor_from_catalog_row(row) for row in rows]

        if self.dialect.name == MSSQL:
            rows = _fetch_records(
                connection,
                _MSSQL_COLUMNS_QUERY,
                (self.dialect.quote_table(table, schema),),
            )
            return [_descriptor_from_catalog_row(row) for row in rows]

        if self.dialect.name == SQLITE:
            return self._fetch_sqlite_columns(connection, table, schema)

        raise ValueError(f"Schema lookup is not implemented for {self.dialect.name}")

    def _fetch_sqlite_columns(
        self,
        connection: Any,
        table: str,
        schema: Optional[str],
    ) -> List[ColumnDescriptor]:
        prefix = f"{self.dialect.quote_identifier(schema)}." if schema else ''
        query = f"PRAGMA {prefix}table_info({self.dialect.quote_identifier(table)})"
        # cid, name, type, notnull, dflt_value, pk
        rows = _fetch_records(connection, query)
        pk_rows = [row for row in rows if row[5]]

        columns = []
        for row in rows:
            # A single INTEGER PRIMARY KEY column aliases the rowid and is auto-assigned
            is_identity = (
                len(pk_rows) == 1
                and bool(row[5])
                and (row[2] or '').strip().upper() == 'INTEGER'
            )
            columns.append(ColumnDescriptor(
                name=row[1],
                is_primary=bool(row[5]),
                is_identity=is_identity,
                is_nullable=not row[3],
                data_type=row[2] or None,
                key_ordinal=row[5] or None,
            ))
        return columns


def _descriptor_from_catalog_row(row: Tuple[Any, ...]) -> ColumnDescriptor:
    return ColumnDescriptor(
        name=row[0],
        is_nullable=bool(row[1]),
        is_primary=bool(row[2]),
        is_identity=bool(row[3]),
        data_type=row[4],
        key_ordinal=row[5],
    )


def _fetch_records(
    connection: Any,
    sql: str,
    parameters: Optional[Tuple[Any, ...]] = None,
) -> List[Tuple[Any, ...]]:
    cursor = connection.cursor()
    try:
        if parameters:
            cursor.execute(sql, parameters)
        else:
            cursor.execute(sql)
        return [tuple(row) for row in cursor.fetchall()]
    finally:
        cursor.close()
