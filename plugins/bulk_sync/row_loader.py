"""
Row Loading Module

Streams rows from a RowReader or RowSet into a table through each database's
fastest client-side load path:

- PostgreSQL: COPY ... FROM STDIN fed by a lazy CSV text stream
- SQL Server: INSERT with pyodbc fast_executemany
- SQLite: executemany

Loaders only move rows. They never open or finish transactions; every
statement runs on the transaction they are given.
"""

from datetime import date, datetime, time as dt_time
from decimal import Decimal
from enum import Flag
from io import StringIO, TextIOBase
from itertools import islice
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Tuple
import contextlib
import csv
import logging
import math
import time

from psycopg2 import sql

from bulk_sync.dialects import MSSQL, POSTGRESQL, SQLITE, Dialect, get_dialect, parse_table_name
from bulk_sync.exceptions import NoFieldsError
from bulk_sync.row_sources import ColumnMapping, RowReader, RowSource, RowState, as_row_reader
from bulk_sync.settings import DEFAULT_BATCH_SIZE

logger = logging.getLogger(__name__)

# (source column index, destination column name)
ColumnPlan = List[Tuple[int, str]]


class BulkCopyOptions(Flag):
    """Options for the row load. DEFAULT means no explicit choice was made."""

    DEFAULT = 0
    KEEP_IDENTITY = 1
    TABLE_LOCK = 2


def build_column_plan(
    reader: RowReader,
    fields: Sequence[str],
    mappings: Optional[Sequence[ColumnMapping]] = None,
    identity_column: Optional[str] = None,
    keep_identity: bool = False,
) -> ColumnPlan:
    """
    Pair row-source positions with destination columns.

    Args:
        reader: Row source
        fields: Reconciled destination fields
        mappings: Explicit mappings (only those whose source is a reconciled field are used)
        identity_column: Identity column of the destination, if it has one
        keep_identity: Load explicit identity values instead of letting the database assign them

    Returns:
        Column plan in load order

    Raises:
        ValueError: If a mapping names a source column the reader does not have
        NoFieldsError: If nothing is left to load
    """
    lowered_fields = {field.lower(): field for field in fields}
    plan: ColumnPlan = []

    if mappings:
        for mapping in mappings:
            if mapping.source.lower() not in lowered_fields:
                continue
            index = reader.index_of(mapping.source)
            if index is None:
                raise ValueError(
                    f"The mapped source column '{mapping.source}' is not present in the row source"
                )
            plan.append((index, mapping.destination))
    else:
        for field in fields:
            index = reader.index_of(field)
            if index is not None:
                plan.append((index, field))

    if identity_column and not keep_identity:
        plan = [(index, column) for index, column in plan if column.lower() != identity_column.lower()]

    if not plan:
        raise NoFieldsError("There are no field(s) to load for this operation.")

    return plan


def _batches(rows: Iterable[Tuple[Any, ...]], size: int) -> Iterator[List[Tuple[Any, ...]]]:
    iterator = iter(rows)
    while True:
        batch = list(islice(iterator, size))
        if not batch:
            return
        yield batch


def _project(reader: RowReader, plan: ColumnPlan) -> Iterator[Tuple[Any, ...]]:
    indexes = [index for index, _ in plan]
    for row in reader:
        yield tuple(row[index] for index in indexes)


@contextlib.contextmanager
def statement_timeout(transaction: Any, seconds: Optional[int]) -> Iterator[None]:
    """
    Apply a statement timeout for the duration of the block.

    PostgreSQL uses SET LOCAL, SQL Server the pyodbc connection timeout and
    SQLite has none. The previous timeout is put back when the block ends, so
    a caller's transaction or connection keeps its own setting.
    """
    if not seconds:
        yield
        return

    dialect = transaction.dialect
    previous = dialect.set_timeout(transaction, seconds)
    try:
        yield
    except Exception:
        restore_timeout_quietly(transaction, previous)
        raise
    dialect.restore_timeout(transaction, previous)


def restore_timeout_quietly(transaction: Any, previous: Any) -> None:
    """Restore a timeout on a failure path without masking the original error."""
    try:
        transaction.dialect.restore_timeout(transaction, previous)
    except Exception as e:
        logger.warning(f"Could not restore the statement timeout: {e}")


class RowLoader:
    """Base row loader; subclasses implement _load for one dialect."""

    dialect_name = ''

    def __init__(self) -> None:
        self.dialect: Dialect = get_dialect(self.dialect_name)

    def load(
        self,
        transaction: Any,
        rows: RowSource,
        destination: str,
        fields: Sequence[str],
        mappings: Optional[Sequence[ColumnMapping]] = None,
        keep_identity: bool = False,
        identity_column: Optional[str] = None,
        table_lock: bool = False,
        timeout: Optional[int] = None,
        batch_size: Optional[int] = None,
        row_state: Optional[RowState] = None,
    ) -> int:
        """
        Load rows into a table.

        Args:
            transaction: Transaction to load in
            rows: RowReader or RowSet
            destination: Destination table (optionally schema-qualified)
            fields: Reconciled destination fields
            mappings: Optional column mappings
            keep_identity: Load explicit identity values
            identity_column: Identity column of the destination, if any
            table_lock: Take a table lock for the duration of the load
            timeout: Statement timeout in seconds
            batch_size: Rows per round trip
            row_state: State filter for a RowSet

        Returns:
            Number of rows loaded (0 without touching the database for empty input)
        """
        reader = as_row_reader(rows, row_state)
        if not reader.has_rows():
            logger.info(f"No rows to load into {destination}")
            return 0

        plan = build_column_plan(reader, fields, mappings, identity_column, keep_identity)
        batch_size = batch_size or DEFAULT_BATCH_SIZE
        keep_identity = bool(keep_identity and identity_column and any(
            column.lower() == identity_column.lower() for _, column in plan
        ))

        start_time = time.time()
        with statement_timeout(transaction, timeout):
            loaded = self._load(
                transaction,
                _project(reader, plan),
                destination,
                [column for _, column in plan],
                keep_identity=keep_identity,
                table_lock=table_lock,
                batch_size=batch_size,
            )

        elapsed = time.time() - start_time
        rows_per_second = loaded / elapsed if elapsed > 0 else 0
        logger.info(
            f"Loaded {loaded:,} rows into {destination} in {elapsed:.2f}s "
            f"({rows_per_second:,.0f} rows/sec)"
        )
        return loaded

    def _load(
        self,
        transaction: Any,
        rows: Iterator[Tuple[Any, ...]],
        destination: str,
        columns: List[str],
        keep_identity: bool,
        table_lock: bool,
        batch_size: int,
    ) -> int:
        raise NotImplementedError


class PostgresCopyLoader(RowLoader):
    """Load rows with COPY FROM STDIN in CSV format."""

    dialect_name = POSTGRESQL

    def _load(self, transaction, rows, destination, columns, keep_identity, table_lock, batch_size) -> int:
        schema, table = parse_table_name(destination)
        target = sql.Identifier(schema, table) if schema else sql.Identifier(table)

        # \N marks NULL so empty strings stay empty strings
        copy_sql = sql.SQL(
            'COPY {} ({}) FROM STDIN WITH (FORMAT CSV, DELIMITER E\'\\t\', QUOTE \'"\', NULL \'\\N\')'
        ).format(target, sql.SQL(', ').join([sql.Identifier(column) for column in columns]))

        loaded = 0
        cursor = transaction.cursor()
        try:
            if table_lock:
                cursor.execute(sql.SQL('LOCK TABLE {} IN SHARE ROW EXCLUSIVE MODE').format(target))
            for batch in _batches(rows, batch_size):
                cursor.copy_expert(copy_sql, _CSVRowStream(batch))
                loaded += len(batch)
        finally:
            cursor.close()
        return loaded


class SqlServerRowLoader(RowLoader):
    """Load rows with parameterized INSERT and pyodbc fast_executemany."""

    dialect_name = MSSQL

    def _load(self, transaction, rows, destination, columns, keep_identity, table_lock, batch_size) -> int:
        target = self.dialect.format_table_name(destination)
        column_list = ', '.join(self.dialect.quote_identifier(column) for column in columns)
        placeholders = ', '.join('?' for _ in columns)
        hint = ' WITH (TABLOCK)' if table_lock else ''
        insert_sql = f"INSERT INTO {target}{hint} ({column_list}) VALUES ({placeholders})"

        loaded = 0
        cursor = transaction.cursor()
        cursor.fast_executemany = True
        try:
            if keep_identity:
                cursor.execute(f"SET IDENTITY_INSERT {target} ON")
            try:
                for batch in _batches(rows, batch_size):
                    cursor.executemany(insert_sql, batch)
                    loaded += len(batch)
            except Exception:
                # IDENTITY_INSERT belongs to the session and survives a rollback
                if keep_identity:
                    _identity_insert_off_quietly(cursor, target)
                raise
            if keep_identity:
                cursor.execute(f"SET IDENTITY_INSERT {target} OFF")
        finally:
            cursor.close()
        return loaded


def _identity_insert_off_quietly(cursor: Any, target: str) -> None:
    try:
        cursor.execute(f"SET IDENTITY_INSERT {target} OFF")
    except Exception as e:
        logger.warning(f"Could not turn IDENTITY_INSERT off for {target}: {e}")


class SqliteRowLoader(RowLoader):
    """Load rows with executemany."""

    dialect_name = SQLITE

    def _load(self, transaction, rows, destination, columns, keep_identity, table_lock, batch_size) -> int:
        target = self.dialect.format_table_name(destination)
        column_list = ', '.join(self.dialect.quote_identifier(column) for column in columns)
        placeholders = ', '.join('?' for _ in columns)
        insert_sql = f"INSERT INTO {target} ({column_list}) VALUES ({placeholders})"

        loaded = 0
        cursor = transaction.cursor()
        try:
            for batch in _batches(rows, batch_size):
                cursor.executemany(insert_sql, batch)
                loaded += len(batch)
        finally:
            cursor.close()
        return loaded


_LOADERS = {
    POSTGRESQL: PostgresCopyLoader,
    MSSQL: SqlServerRowLoader,
    SQLITE: SqliteRowLoader,
}


def get_row_loader(dialect: Dialect) -> RowLoader:
    """Return the row loader for a dialect."""
    try:
        return _LOADERS[dialect.name]()
    except KeyError:
        raise ValueError(f"No row loader for dialect '{dialect.name}'") from None


def normalize_copy_value(value: Any) -> Any:
    """
    Normalize a Python value for COPY CSV consumption.

    NULL is written as the \\N marker declared in the COPY options.
    """
    if value is None:
        return '\\N'
    if isinstance(value, datetime):
        return value.isoformat(sep=' ')
    if isinstance(value, (date, dt_time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bool):
        return 't' if value else 'f'
    if isinstance(value, (bytes, bytearray, memoryview)):
        # bytea hex format
        return '\\x' + bytes(value).hex()
    if isinstance(value, float) and not math.isfinite(value):
        return '\\N'
    return value


class _CSVRowStream(TextIOBase):
    """Lazy text stream that feeds COPY FROM without large buffers."""

    def __init__(self, rows: Iterable[Tuple[Any, ...]]):
        self._iterator = iter(rows)
        self._buffer = ''
        self._line = StringIO()
        self._writer = csv.writer(
            self._line,
            delimiter='\t',
            quoting=csv.QUOTE_MINIMAL,
            lineterminator='\n',
        )

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> str:
        while size < 0 or len(self._buffer) < size:
            row = next(self._iterator, None)
            if row is None:
                break
            self._buffer += self._format_row(row)

        if size < 0:
            data, self._buffer = self._buffer, ''
            return data

        data, self._buffer = self._buffer[:size], self._buffer[size:]
        return data

    def _format_row(self, row: Tuple[Any, ...]) -> str:
        self._line.seek(0)
        self._line.truncate()
        self._writer.writerow([normalize_copy_value(value) for value in row])
        return self._line.getvalue()
