"""
Bulk Operations Module

Synchronizes a batch of client-side rows into a target table as one unit of
work:

- bulk_insert: load the rows straight into the target
- bulk_update: stage, index, then UPDATE matching target rows
- bulk_merge: stage, index, then update matching rows and insert the rest
- bulk_delete: stage, index, then delete target rows matching a staged row

Every operation runs as a fixed sequence of steps on one connection and one
transaction. The async variants run each step in a worker thread and observe
cancellation between steps; a step already running is allowed to finish
before the transaction is rolled back, so the connection is never used by two
threads at once. It is still used from a thread other than the caller's, so
sqlite3 connections passed to the async variants must be opened with
check_same_thread=False.
"""

from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, List, Optional, Sequence
import asyncio
import logging
import time

from bulk_sync.ddl_generator import DDLGenerator, StagingTable, staging_table_for
from bulk_sync.dialects import Dialect, resolve_dialect
from bulk_sync.field_reconciler import ReconciledFields, reconcile
from bulk_sync.row_loader import BulkCopyOptions, get_row_loader
from bulk_sync.row_sources import (
    ColumnMapping,
    RowReader,
    RowSource,
    RowState,
    as_row_reader,
    normalize_mappings,
)
from bulk_sync.schema_extractor import ColumnDescriptor, SchemaExtractor
from bulk_sync.settings import get_bulk_settings
from bulk_sync.sql_builder import (
    build_bulk_delete_sql,
    build_bulk_merge_sql,
    build_bulk_update_sql,
    identity_insert_sql,
)
from bulk_sync.transaction import (
    OwnedTransaction,
    Transaction,
    TransactionContext,
    finalize_transaction,
    resolve_transaction,
    validate_transaction_connection,
)

logger = logging.getLogger(__name__)

_DROP_SAVEPOINT = 'bulk_sync_drop_staging'


@dataclass
class _BulkRun:
    """State of one bulk operation as it moves through its steps."""

    operation: str
    connection: Any
    table_name: str
    reader: RowReader
    dialect: Dialect
    qualifiers: Optional[List[str]] = None
    mappings: Optional[List[ColumnMapping]] = None
    options: Optional[BulkCopyOptions] = None
    hints: Optional[str] = None
    timeout: Optional[int] = None
    batch_size: Optional[int] = None
    use_physical_staging: bool = False
    force_refresh: bool = False
    transaction: Optional[Transaction] = None
    columns: List[ColumnDescriptor] = field(default_factory=list)
    timeout_applied: bool = False
    previous_timeout: Any = None
    reconciled: Optional[ReconciledFields] = None
    staging: Optional[StagingTable] = None
    rows_loaded: int = 0
    rows_affected: int = 0

    @property
    def table_lock(self) -> bool:
        return bool(self.options and self.options & BulkCopyOptions.TABLE_LOCK)


def _prepare_run(
    operation: str,
    connection: Any,
    table_name: str,
    rows: RowSource,
    qualifiers: Optional[Sequence[str]] = None,
    mappings: Optional[Sequence[Any]] = None,
    options: Optional[BulkCopyOptions] = None,
    hints: Optional[str] = None,
    timeout: Optional[int] = None,
    batch_size: Optional[int] = None,
    use_physical_staging: Optional[bool] = None,
    row_state: Optional[RowState] = None,
    dialect: Any = None,
) -> _BulkRun:
    """Validate arguments and apply environment defaults; touches no database."""
    if connection is None:
        raise ValueError("connection is required")
    if not table_name or not table_name.strip():
        raise ValueError("table_name is required")

    reader = as_row_reader(rows, row_state)
    settings = get_bulk_settings()

    return _BulkRun(
        operation=operation,
        connection=connection,
        table_name=table_name,
        reader=reader,
        dialect=resolve_dialect(connection, dialect),
        qualifiers=list(qualifiers) if qualifiers else None,
        mappings=normalize_mappings(mappings),
        options=options,
        hints=hints,
        timeout=timeout if timeout is not None else settings.timeout,
        batch_size=batch_size or settings.batch_size,
        use_physical_staging=(
            use_physical_staging if use_physical_staging is not None else settings.use_physical_staging
        ),
        force_refresh=not settings.schema_cache_enabled,
    )


# Steps. Each one performs a single blocking unit of database work.

def _apply_timeout(run: _BulkRun) -> None:
    if run.timeout:
        run.previous_timeout = run.dialect.set_timeout(run.transaction, run.timeout)
        run.timeout_applied = True


def _restore_timeout(run: _BulkRun) -> None:
    if run.timeout_applied:
        run.dialect.restore_timeout(run.transaction, run.previous_timeout)
        run.timeout_applied = False


def _snapshot_schema(run: _BulkRun) -> None:
    run.columns = SchemaExtractor(run.dialect).get_columns(
        run.connection,
        run.table_name,
        transaction=run.transaction,
        force_refresh=run.force_refresh,
    )


def _reconcile_fields(run: _BulkRun) -> None:
    run.reconciled = reconcile(
        run.columns,
        source_columns=run.reader.columns,
        mappings=run.mappings,
        qualifiers=run.qualifiers,
        options=run.options,
        require_qualifiers=run.operation != 'insert',
        table_name=run.table_name,
    )


def _create_staging(run: _BulkRun) -> None:
    run.staging = staging_table_for(
        run.table_name, run.operation, run.dialect, use_physical=run.use_physical_staging
    )
    ddl = DDLGenerator(run.dialect).generate_create_staging_table(
        run.table_name, run.staging, run.reconciled.fields
    )
    run.transaction.execute(ddl)
    logger.debug(f"Created staging table {run.staging.qualified_name}")


def _load_staging(run: _BulkRun) -> None:
    reconciled = run.reconciled
    run.rows_loaded = get_row_loader(run.dialect).load(
        run.transaction,
        run.reader,
        run.staging.qualified_name,
        reconciled.fields,
        mappings=run.mappings,
        keep_identity=reconciled.keep_identity,
        # Only a staging table created by SELECT INTO still has an identity column
        identity_column=reconciled.identity if run.dialect.staging_keeps_identity else None,
        table_lock=run.table_lock,
        batch_size=run.batch_size,
    )


def _load_target(run: _BulkRun) -> None:
    reconciled = run.reconciled
    run.rows_loaded = get_row_loader(run.dialect).load(
        run.transaction,
        run.reader,
        run.table_name,
        reconciled.fields,
        mappings=run.mappings,
        keep_identity=reconciled.keep_identity,
        identity_column=reconciled.identity,
        table_lock=run.table_lock,
        batch_size=run.batch_size,
    )
    run.rows_affected = run.rows_loaded


def _index_staging(run: _BulkRun) -> None:
    run.transaction.execute(
        DDLGenerator(run.dialect).generate_staging_index(run.staging, run.reconciled.qualifiers)
    )


def _build_reconcile_sql(run: _BulkRun) -> List[str]:
    reconciled = run.reconciled
    if run.operation == 'update':
        return build_bulk_update_sql(
            run.dialect,
            run.table_name,
            run.staging,
            reconciled.fields,
            reconciled.qualifiers,
            primary_keys=reconciled.primary_keys,
            identity=reconciled.identity,
            hints=run.hints,
        )
    if run.operation == 'merge':
        return build_bulk_merge_sql(
            run.dialect,
            run.table_name,
            run.staging,
            reconciled.fields,
            reconciled.qualifiers,
            primary_keys=reconciled.primary_keys,
            identity=reconciled.identity,
            keep_identity=reconciled.keep_identity,
            hints=run.hints,
        )
    return build_bulk_delete_sql(
        run.dialect, run.table_name, run.staging, reconciled.qualifiers, hints=run.hints
    )


def _reconcile_target(run: _BulkRun) -> None:
    identity_on = identity_insert_sql(run.dialect, run.table_name, True)
    identity_off = identity_insert_sql(run.dialect, run.table_name, False)
    identity_insert = False

    affected = 0
    try:
        for statement in _build_reconcile_sql(run):
            count = run.transaction.execute(statement)
            if statement == identity_on:
                identity_insert = True
            elif statement == identity_off:
                identity_insert = False
            elif count and count > 0:
                affected += count
    except Exception:
        # IDENTITY_INSERT belongs to the session and survives a rollback
        if identity_insert:
            try:
                run.transaction.execute(identity_off)
            except Exception as e:
                logger.warning(f"Could not turn IDENTITY_INSERT off for {run.table_name}: {e}")
        raise
    run.rows_affected = affected


def _drop_staging(run: _BulkRun) -> None:
    """
    Drop the staging table without putting the finished work at risk.

    The DROP runs inside a savepoint. If it fails, only the savepoint is
    rolled back and the leaked table is reported; the operation still commits.
    """
    transaction = run.transaction
    dialect = run.dialect
    drop_sql = DDLGenerator(dialect).generate_drop_staging_table(run.staging)

    transaction.execute(dialect.savepoint_sql(_DROP_SAVEPOINT))
    try:
        transaction.execute(drop_sql)
    except Exception as e:
        logger.warning(
            f"Could not drop staging table {run.staging.qualified_name}; "
            f"it will be left behind: {e}"
        )
        transaction.execute(dialect.rollback_to_savepoint_sql(_DROP_SAVEPOINT))
        return

    release_sql = dialect.release_savepoint_sql(_DROP_SAVEPOINT)
    if release_sql:
        transaction.execute(release_sql)


_INSERT_STEPS: List[Callable[[_BulkRun], None]] = [
    _apply_timeout,
    _snapshot_schema,
    _reconcile_fields,
    _load_target,
    _restore_timeout,
]

_STAGED_STEPS: List[Callable[[_BulkRun], None]] = [
    _apply_timeout,
    _snapshot_schema,
    _reconcile_fields,
    _create_staging,
    _load_staging,
    _index_staging,
    _reconcile_target,
    _drop_staging,
    _restore_timeout,
]


def _steps_for(operation: str) -> List[Callable[[_BulkRun], None]]:
    return _INSERT_STEPS if operation == 'insert' else _STAGED_STEPS


def _restore_timeout_after_failure(run: _BulkRun, context: TransactionContext) -> None:
    """Put the caller's timeout back on the failure path without masking the error."""
    if not run.timeout_applied:
        return
    if isinstance(context, OwnedTransaction) and run.dialect.timeout_is_transactional:
        # The rollback undoes it
        return
    try:
        _restore_timeout(run)
    except Exception as e:
        logger.warning(f"Could not restore the statement timeout after bulk {run.operation} of {run.table_name}: {e}")


def _log_success(run: _BulkRun, start_time: float) -> None:
    elapsed = time.time() - start_time
    rows_per_second = run.rows_loaded / elapsed if elapsed > 0 else 0
    logger.info(
        f"Bulk {run.operation} of {run.table_name} completed: {run.rows_affected:,} rows affected, "
        f"{run.rows_loaded:,} rows loaded in {elapsed:.2f}s ({rows_per_second:,.0f} rows/sec)"
    )


def _execute(run: _BulkRun, transaction: Optional[Transaction]) -> int:
    if transaction is not None:
        validate_transaction_connection(run.connection, transaction)
    if not run.reader.has_rows():
        logger.info(f"No rows to {run.operation} for {run.table_name}; nothing to do")
        return 0

    logger.info(f"Starting bulk {run.operation} of {run.table_name} ({run.dialect.name})")
    start_time = time.time()

    context = resolve_transaction(run.connection, transaction, run.dialect)
    run.transaction = context.transaction

    failed = True
    try:
        for step in _steps_for(run.operation):
            step(run)
        failed = False
    except Exception as e:
        logger.error(f"Bulk {run.operation} of {run.table_name} failed: {e}")
        raise
    finally:
        if failed:
            _restore_timeout_after_failure(run, context)
        finalize_transaction(context, failed)

    _log_success(run, start_time)
    return run.rows_affected


async def _run_step(func: Callable[..., Any], *args: Any) -> Any:
    """
    Run a blocking call in the default executor.

    If the awaiting task is cancelled, the call is still allowed to finish
    before CancelledError propagates.
    """
    loop = asyncio.get_running_loop()
    future = loop.run_in_executor(None, partial(func, *args))
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        await asyncio.wait({future})
        raise


async def _resolve_transaction_async(run: _BulkRun, transaction: Optional[Transaction]) -> TransactionContext:
    loop = asyncio.get_running_loop()
    future = loop.run_in_executor(
        None, partial(resolve_transaction, run.connection, transaction, run.dialect)
    )
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        await asyncio.wait({future})
        if not future.cancelled() and future.exception() is None:
            finalize_transaction(future.result(), True)
        raise


async def _execute_async(run: _BulkRun, transaction: Optional[Transaction]) -> int:
    if transaction is not None:
        validate_transaction_connection(run.connection, transaction)
    if not await _run_step(run.reader.has_rows):
        logger.info(f"No rows to {run.operation} for {run.table_name}; nothing to do")
        return 0

    logger.info(f"Starting bulk {run.operation} of {run.table_name} ({run.dialect.name})")
    start_time = time.time()

    context = await _resolve_transaction_async(run, transaction)
    run.transaction = context.transaction

    failed = True
    try:
        for step in _steps_for(run.operation):
            await _run_step(step, run)
        failed = False
    except asyncio.CancelledError:
        logger.warning(f"Bulk {run.operation} of {run.table_name} was cancelled")
        raise
    except Exception as e:
        logger.error(f"Bulk {run.operation} of {run.table_name} failed: {e}")
        raise
    finally:
        if failed:
            await _run_step(_restore_timeout_after_failure, run, context)
        await _run_step(finalize_transaction, context, failed)

    _log_success(run, start_time)
    return run.rows_affected


def bulk_insert(
    connection: Any,
    table_name: str,
    rows: RowSource,
    mappings: Optional[Sequence[Any]] = None,
    options: Optional[BulkCopyOptions] = None,
    hints: Optional[str] = None,
    timeout: Optional[int] = None,
    batch_size: Optional[int] = None,
    transaction: Optional[Transaction] = None,
    row_state: Optional[RowState] = None,
    dialect: Any = None,
) -> int:
    """
    Append rows to a table through the driver's bulk load path.

    Args:
        connection: psycopg2, pyodbc or sqlite3 connection
        table_name: Target table, optionally schema-qualified
        rows: RowReader or RowSet
        mappings: Optional ColumnMapping list (or (source, destination) pairs)
        options: BulkCopyOptions; KEEP_IDENTITY loads explicit identity values
        hints: Not used by inserts; accepted for a uniform signature
        timeout: Statement timeout in seconds (BULK_COPY_TIMEOUT when None)
        batch_size: Rows per load batch (BULK_BATCH_SIZE when None)
        transaction: Caller-owned transaction; left open on success and failure
        row_state: RowSet state filter (e.g. RowState.ADDED)
        dialect: Dialect name or instance; detected from the connection when None

    Returns:
        Number of rows inserted
    """
    run = _prepare_run(
        'insert', connection, table_name, rows,
        mappings=mappings, options=options, hints=hints, timeout=timeout,
        batch_size=batch_size, row_state=row_state, dialect=dialect,
    )
    return _execute(run, transaction)


def bulk_update(
    connection: Any,
    table_name: str,
    rows: RowSource,
    qualifiers: Optional[Sequence[str]] = None,
    mappings: Optional[Sequence[Any]] = None,
    options: Optional[BulkCopyOptions] = None,
    hints: Optional[str] = None,
    timeout: Optional[int] = None,
    batch_size: Optional[int] = None,
    use_physical_staging: Optional[bool] = None,
    transaction: Optional[Transaction] = None,
    row_state: Optional[RowState] = None,
    dialect: Any = None,
) -> int:
    """
    Update existing target rows from a batch of rows.

    The rows are loaded into a staging table, indexed on the qualifiers and
    applied with a single UPDATE joined on the qualifiers.

    Args:
        connection: psycopg2, pyodbc or sqlite3 connection
        table_name: Target table, optionally schema-qualified
        rows: RowReader or RowSet
        qualifiers: Match columns (primary key, else identity column, when None)
        mappings: Optional ColumnMapping list (or (source, destination) pairs)
        options: BulkCopyOptions for the staging load
        hints: Table hints for the target (SQL Server)
        timeout: Statement timeout in seconds (BULK_COPY_TIMEOUT when None)
        batch_size: Rows per load batch (BULK_BATCH_SIZE when None)
        use_physical_staging: Durable staging table (BULK_USE_PHYSICAL_STAGING when None)
        transaction: Caller-owned transaction; left open on success and failure
        row_state: RowSet state filter (e.g. RowState.MODIFIED)
        dialect: Dialect name or instance; detected from the connection when None

    Returns:
        Number of target rows updated

    Raises:
        NoFieldsError: If no column is shared by the rows and the target
        MissingKeyError: If no qualifiers were given and the target has no key
        TransactionMismatchError: If transaction belongs to another connection
        SchemaLookupError: If the target cannot be introspected
    """
    run = _prepare_run(
        'update', connection, table_name, rows, qualifiers, mappings, options, hints,
        timeout, batch_size, use_physical_staging, row_state, dialect,
    )
    return _execute(run, transaction)


def bulk_merge(
    connection: Any,
    table_name: str,
    rows: RowSource,
    qualifiers: Optional[Sequence[str]] = None,
    mappings: Optional[Sequence[Any]] = None,
    options: Optional[BulkCopyOptions] = None,
    hints: Optional[str] = None,
    timeout: Optional[int] = None,
    batch_size: Optional[int] = None,
    use_physical_staging: Optional[bool] = None,
    transaction: Optional[Transaction] = None,
    row_state: Optional[RowState] = None,
    dialect: Any = None,
) -> int:
    """
    Update matching target rows and insert the rest.

    Takes the same arguments as bulk_update.

    Returns:
        Number of target rows updated plus rows inserted
    """
    run = _prepare_run(
        'merge', connection, table_name, rows, qualifiers, mappings, options, hints,
        timeout, batch_size, use_physical_staging, row_state, dialect,
    )
    return _execute(run, transaction)


def bulk_delete(
    connection: Any,
    table_name: str,
    rows: RowSource,
    qualifiers: Optional[Sequence[str]] = None,
    mappings: Optional[Sequence[Any]] = None,
    options: Optional[BulkCopyOptions] = None,
    hints: Optional[str] = None,
    timeout: Optional[int] = None,
    batch_size: Optional[int] = None,
    use_physical_staging: Optional[bool] = None,
    transaction: Optional[Transaction] = None,
    row_state: Optional[RowState] = None,
    dialect: Any = None,
) -> int:
    """
    Delete the target rows whose qualifiers match a row of the batch.

    Takes the same arguments as bulk_update.

    Returns:
        Number of target rows deleted
    """
    run = _prepare_run(
        'delete', connection, table_name, rows, qualifiers, mappings, options, hints,
        timeout, batch_size, use_physical_staging, row_state, dialect,
    )
    return _execute(run, transaction)


async def bulk_insert_async(
    connection: Any,
    table_name: str,
    rows: RowSource,
    mappings: Optional[Sequence[Any]] = None,
    options: Optional[BulkCopyOptions] = None,
    hints: Optional[str] = None,
    timeout: Optional[int] = None,
    batch_size: Optional[int] = None,
    transaction: Optional[Transaction] = None,
    row_state: Optional[RowState] = None,
    dialect: Any = None,
) -> int:
    """
    Async variant of bulk_insert; cancellation rolls back an engine-owned transaction.

    Each step runs in a worker thread of the default executor, so the
    connection must allow use from threads other than the one that opened it.
    sqlite3 connections need check_same_thread=False.
    """
    run = _prepare_run(
        'insert', connection, table_name, rows,
        mappings=mappings, options=options, hints=hints, timeout=timeout,
        batch_size=batch_size, row_state=row_state, dialect=dialect,
    )
    return await _execute_async(run, transaction)


async def bulk_update_async(
    connection: Any,
    table_name: str,
    rows: RowSource,
    qualifiers: Optional[Sequence[str]] = None,
    mappings: Optional[Sequence[Any]] = None,
    options: Optional[BulkCopyOptions] = None,
    hints: Optional[str] = None,
    timeout: Optional[int] = None,
    batch_size: Optional[int] = None,
    use_physical_staging: Optional[bool] = None,
    transaction: Optional[Transaction] = None,
    row_state: Optional[RowState] = None,
    dialect: Any = None,
) -> int:
    """
    Async variant of bulk_update; cancellation rolls back an engine-owned transaction.

    Each step runs in a worker thread of the default executor, so the
    connection must allow use from threads other than the one that opened it.
    sqlite3 connections need check_same_thread=False.
    """
    run = _prepare_run(
        'update', connection, table_name, rows, qualifiers, mappings, options, hints,
        timeout, batch_size, use_physical_staging, row_state, dialect,
    )
    return await _execute_async(run, transaction)


async def bulk_merge_async(
    connection: Any,
    table_name: str,
    rows: RowSource,
    qualifiers: Optional[Sequence[str]] = None,
    mappings: Optional[Sequence[Any]] = None,
    options: Optional[BulkCopyOptions] = None,
    hints: Optional[str] = None,
    timeout: Optional[int] = None,
    batch_size: Optional[int] = None,
    use_physical_staging: Optional[bool] = None,
    transaction: Optional[Transaction] = None,
    row_state: Optional[RowState] = None,
    dialect: Any = None,
) -> int:
    """
    Async variant of bulk_merge.

    Each step runs in a worker thread of the default executor, so the
    connection must allow use from threads other than the one that opened it.
    sqlite3 connections need check_same_thread=False.
    """
    run = _prepare_run(
        'merge', connection, table_name, rows, qualifiers, mappings, options, hints,
        timeout, batch_size, use_physical_staging, row_state, dialect,
    )
    return await _execute_async(run, transaction)


async def bulk_delete_async(
    connection: Any,
    table_name: str,
    rows: RowSource,
    qualifiers: Optional[Sequence[str]] = None,
    mappings: Optional[Sequence[Any]] = None,
    options: Optional[BulkCopyOptions] = None,
    hints: Optional[str] = None,
    timeout: Optional[int] = None,
    batch_size: Optional[int] = None,
    use_physical_staging: Optional[bool] = None,
    transaction: Optional[Transaction] = None,
    row_state: Optional[RowState] = None,
    dialect: Any = None,
) -> int:
    """
    Async variant of bulk_delete.

    Each step runs in a worker thread of the default executor, so the
    connection must allow use from threads other than the one that opened it.
    sqlite3 connections need check_same_thread=False.
    """
    run = _prepare_run(
        'delete', connection, table_name, rows, qualifiers, mappings, options, hints,
        timeout, batch_size, use_physical_staging, row_state, dialect,
    )
    return await _execute_async(run, transaction)
