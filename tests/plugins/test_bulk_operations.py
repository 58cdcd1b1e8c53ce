"""
Tests for Bulk Operations Module

End-to-end tests run against in-memory SQLite databases; PostgreSQL and
SQL Server statement flow is checked with mocked connections.
"""

import asyncio
import sqlite3
import threading

import pytest
from unittest.mock import MagicMock, patch
from bulk_sync import bulk_operations
from bulk_sync.bulk_operations import (
    bulk_delete,
    bulk_delete_async,
    bulk_insert,
    bulk_insert_async,
    bulk_merge,
    bulk_merge_async,
    bulk_update,
    bulk_update_async,
)
from bulk_sync.exceptions import MissingKeyError, NoFieldsError, TransactionMismatchError
from bulk_sync.row_loader import BulkCopyOptions
from bulk_sync.row_sources import ColumnMapping, RowReader, RowSet, RowState
from bulk_sync.schema_extractor import ColumnDescriptor
from bulk_sync.transaction import begin_transaction


def _orders(conn):
    return conn.execute("SELECT id, name, amount FROM orders ORDER BY id").fetchall()


def _staging_tables(conn):
    return conn.execute(
        "SELECT name FROM sqlite_temp_master WHERE type = 'table' AND name LIKE '_BulkSync%'"
    ).fetchall()


class TestBulkUpdate:
    """Test bulk update end to end on SQLite."""

    def test_updates_matching_rows(self, sqlite_conn):
        rows = RowSet(['id', 'name', 'amount'], [(1, 'b', 20), (2, 'y', 6), (9, 'zz', 1)])

        affected = bulk_update(sqlite_conn, 'orders', rows)

        assert affected == 2
        assert _orders(sqlite_conn) == [(1, 'b', 20), (2, 'y', 6)]
        assert _staging_tables(sqlite_conn) == []
        assert sqlite_conn.in_transaction is False

    def test_idempotent(self, sqlite_conn):
        """Running the same update twice gives the same values and counts."""
        rows = [(1, 'b', 20), (2, 'y', 6)]

        first = bulk_update(sqlite_conn, 'orders', RowSet(['id', 'name', 'amount'], rows))
        after_first = _orders(sqlite_conn)
        second = bulk_update(sqlite_conn, 'orders', RowSet(['id', 'name', 'amount'], rows))

        assert first == second == 2
        assert _orders(sqlite_conn) == after_first

    def test_duplicate_qualifiers_last_write_wins(self, sqlite_conn):
        """Duplicate ids in the batch: the last row wins and the target row counts once."""
        rows = RowSet(
            ['id', 'name', 'amount'],
            [(1, 'a', 10), (1, 'b', 20)],
            state=RowState.MODIFIED,
        )

        affected = bulk_update(sqlite_conn, 'orders', rows, row_state=RowState.MODIFIED)

        assert affected == 1
        assert _orders(sqlite_conn)[0] == (1, 'b', 20)

    def test_row_state_filter(self, sqlite_conn):
        rows = RowSet(['id', 'name', 'amount'], [(1, 'ignored', 0)], state=RowState.UNCHANGED)
        rows.add((2, 'changed', 7), RowState.MODIFIED)

        affected = bulk_update(sqlite_conn, 'orders', rows, row_state=RowState.MODIFIED)

        assert affected == 1
        assert _orders(sqlite_conn) == [(1, 'a', 10), (2, 'changed', 7)]

    def test_partial_columns_leave_others_untouched(self, sqlite_conn):
        rows = RowReader.from_dicts([{'id': 1, 'amount': 99}])

        bulk_update(sqlite_conn, 'orders', rows)

        assert _orders(sqlite_conn)[0] == (1, 'a', 99)

    def test_mappings_restrict_columns(self, sqlite_conn):
        rows = RowSet(['id', 'name', 'amount'], [(1, 'new', 500)])

        bulk_update(
            sqlite_conn, 'orders', rows,
            mappings=[ColumnMapping('id', 'id'), ('name', 'name')],
        )

        assert _orders(sqlite_conn)[0] == (1, 'new', 10)

    def test_explicit_qualifiers(self, sqlite_conn):
        rows = RowSet(['name', 'amount'], [('x', 50)])

        affected = bulk_update(sqlite_conn, 'orders', rows, qualifiers=['name'])

        assert affected == 1
        assert _orders(sqlite_conn)[1] == (2, 'x', 50)

    def test_physical_staging_is_dropped(self, sqlite_conn):
        rows = RowSet(['id', 'name', 'amount'], [(1, 'p', 1)])

        bulk_update(sqlite_conn, 'orders', rows, use_physical_staging=True)

        leftovers = sqlite_conn.execute(
            "SELECT name FROM sqlite_master WHERE name LIKE '_BulkSync%'"
        ).fetchall()
        assert leftovers == []
        assert _orders(sqlite_conn)[0] == (1, 'p', 1)

    def test_cursor_reader(self, sqlite_conn):
        """Rows can stream from another query's cursor."""
        source = sqlite3.connect(':memory:')
        source.execute("CREATE TABLE feed (id INTEGER, name TEXT)")
        source.executemany("INSERT INTO feed VALUES (?, ?)", [(1, 'fed'), (2, 'fed')])
        cursor = source.execute("SELECT id, name FROM feed")

        affected = bulk_update(sqlite_conn, 'orders', RowReader.from_cursor(cursor, fetch_size=1))

        assert affected == 2
        assert [row[1] for row in _orders(sqlite_conn)] == ['fed', 'fed']
        source.close()


class TestSuccessiveConnections:
    """Test that each connection is reconciled against its own table."""

    def test_new_connection_updates_all_live_columns(self):
        for _ in range(20):
            old = sqlite3.connect(':memory:')
            old.execute("CREATE TABLE t (id INTEGER PRIMARY KEY, name TEXT)")
            old.execute("INSERT INTO t VALUES (1, 'a')")
            old.commit()
            bulk_update(old, 't', RowSet(['id', 'name'], [(1, 'z')]))
            old.close()
            del old

        new = sqlite3.connect(':memory:')
        new.execute("CREATE TABLE t (id INTEGER PRIMARY KEY, name TEXT, amount INTEGER)")
        new.execute("INSERT INTO t VALUES (1, 'a', 10)")
        new.commit()

        affected = bulk_update(new, 't', RowSet(['id', 'name', 'amount'], [(1, 'b', 20)]))

        assert affected == 1
        assert new.execute("SELECT name, amount FROM t").fetchall() == [('b', 20)]
        new.close()


class TestEmptyInput:
    """Zero rows return 0 without touching the database."""

    @pytest.mark.parametrize('operation', [bulk_insert, bulk_update, bulk_merge, bulk_delete])
    def test_empty_row_set(self, operation):
        conn = MagicMock()
        with patch('bulk_sync.bulk_operations.SchemaExtractor') as mock_extractor:
            affected = operation(conn, 'orders', RowSet(['id', 'name']), dialect='sqlite')

        assert affected == 0
        mock_extractor.assert_not_called()
        conn.cursor.assert_not_called()
        conn.execute.assert_not_called()
        conn.commit.assert_not_called()

    def test_row_state_filter_leaves_nothing(self, sqlite_conn):
        rows = RowSet(['id', 'name'], [(1, 'a')], state=RowState.UNCHANGED)

        assert bulk_update(sqlite_conn, 'orders', rows, row_state=RowState.MODIFIED) == 0
        assert sqlite_conn.in_transaction is False

    def test_empty_reader(self, sqlite_conn):
        assert bulk_update(sqlite_conn, 'orders', RowReader(['id'], iter([]))) == 0

    def test_invalid_rows_type(self, sqlite_conn):
        with pytest.raises(TypeError):
            bulk_update(sqlite_conn, 'orders', [(1, 'a', 1)])


class TestFailures:
    """Failures roll back engine-owned work and propagate unchanged."""

    def test_failure_at_reconcile_step_rolls_back(self, sqlite_conn):
        rows = RowSet(['id', 'name', 'amount'], [(1, 'b', 20)])
        before = _orders(sqlite_conn)

        with patch('bulk_sync.bulk_operations.build_bulk_update_sql',
                   return_value=['UPDATE "missing_table" SET x = 1']):
            with pytest.raises(sqlite3.OperationalError, match="missing_table"):
                bulk_update(sqlite_conn, 'orders', rows)

        assert _orders(sqlite_conn) == before
        assert _staging_tables(sqlite_conn) == []
        assert sqlite_conn.in_transaction is False

    def test_failure_after_partial_reconcile_rolls_back(self, sqlite_conn):
        """A second failing statement undoes the first one's changes."""
        rows = RowSet(['id', 'name', 'amount'], [(1, 'b', 20)])
        before = _orders(sqlite_conn)

        with patch('bulk_sync.bulk_operations.build_bulk_update_sql',
                   return_value=['UPDATE orders SET amount = 0', 'UPDATE "missing_table" SET x = 1']):
            with pytest.raises(sqlite3.OperationalError):
                bulk_update(sqlite_conn, 'orders', rows)

        assert _orders(sqlite_conn) == before

    def test_no_fields(self, sqlite_conn):
        with pytest.raises(NoFieldsError):
            bulk_update(sqlite_conn, 'orders', RowSet(['foo'], [(1,)]))
        assert _staging_tables(sqlite_conn) == []

    def test_missing_key(self, sqlite_conn):
        sqlite_conn.execute("CREATE TABLE logs (message TEXT)")
        sqlite_conn.commit()

        with pytest.raises(MissingKeyError, match="logs"):
            bulk_update(sqlite_conn, 'logs', RowSet(['message'], [('hi',)]))

    def test_transaction_mismatch(self, sqlite_conn):
        other = sqlite3.connect(':memory:')
        tx = begin_transaction(other)

        with pytest.raises(TransactionMismatchError):
            bulk_update(sqlite_conn, 'orders', RowSet(['id', 'name'], [(1, 'z')]), transaction=tx)

        tx.rollback()
        other.close()

    def test_transaction_mismatch_with_empty_input(self, sqlite_conn):
        other = sqlite3.connect(':memory:')
        tx = begin_transaction(other)

        with pytest.raises(TransactionMismatchError):
            bulk_update(sqlite_conn, 'orders', RowSet(['id', 'name']), transaction=tx)

        tx.rollback()
        other.close()

    @pytest.mark.asyncio
    async def test_transaction_mismatch_with_empty_input_async(self, sqlite_conn):
        other = sqlite3.connect(':memory:')
        tx = begin_transaction(other)

        with pytest.raises(TransactionMismatchError):
            await bulk_merge_async(sqlite_conn, 'orders', RowSet(['id', 'name']), transaction=tx)

        tx.rollback()
        other.close()


class TestBorrowedTransaction:
    """Caller-supplied transactions are never finished by the engine."""

    def test_success_leaves_transaction_open(self, sqlite_conn):
        tx = begin_transaction(sqlite_conn)
        tx.execute("INSERT INTO orders (id, name, amount) VALUES (3, 'c', 30)")

        affected = bulk_update(
            sqlite_conn, 'orders', RowSet(['id', 'name'], [(1, 'b'), (3, 'cc')]), transaction=tx
        )

        assert affected == 2
        assert tx.is_active is True
        assert sqlite_conn.in_transaction is True

        # Still usable, and the caller decides the outcome
        tx.execute("UPDATE orders SET amount = 99 WHERE id = 3")
        tx.rollback()
        assert _orders(sqlite_conn) == [(1, 'a', 10), (2, 'x', 5)]

    def test_failure_does_not_roll_back(self, sqlite_conn):
        tx = begin_transaction(sqlite_conn)
        tx.execute("INSERT INTO orders (id, name, amount) VALUES (3, 'c', 30)")

        with patch('bulk_sync.bulk_operations.build_bulk_update_sql',
                   return_value=['UPDATE "missing_table" SET x = 1']):
            with pytest.raises(sqlite3.OperationalError):
                bulk_update(sqlite_conn, 'orders', RowSet(['id', 'name'], [(1, 'b')]), transaction=tx)

        assert tx.is_active is True
        assert (3, 'c', 30) in _orders(sqlite_conn)
        tx.commit()
        assert (3, 'c', 30) in _orders(sqlite_conn)

    def test_two_operations_in_one_transaction(self, sqlite_conn):
        with begin_transaction(sqlite_conn) as tx:
            bulk_update(sqlite_conn, 'orders', RowSet(['id', 'name'], [(1, 'one')]), transaction=tx)
            bulk_delete(sqlite_conn, 'orders', RowSet(['id'], [(2,)]), transaction=tx)

        assert _orders(sqlite_conn) == [(1, 'one', 10)]


class TestBulkMerge:
    """Test bulk merge end to end on SQLite."""

    def test_updates_and_inserts(self, sqlite_conn):
        rows = RowSet(['id', 'name', 'amount'], [(2, 'y', 6), (3, 'c', 30)])

        affected = bulk_merge(sqlite_conn, 'orders', rows)

        assert affected == 2
        assert _orders(sqlite_conn) == [(1, 'a', 10), (2, 'y', 6), (3, 'c', 30)]

    def test_duplicate_new_rows_insert_once(self, sqlite_conn):
        rows = RowSet(['id', 'name', 'amount'], [(5, 'first', 1), (5, 'second', 2)])

        affected = bulk_merge(sqlite_conn, 'orders', rows)

        assert affected == 1
        assert _orders(sqlite_conn)[-1] == (5, 'second', 2)

    def test_merge_on_natural_key_generates_identity(self, sqlite_conn):
        """When matching on another column the identity is assigned by the database."""
        rows = RowSet(['id', 'name', 'amount'], [(100, 'x', 55), (200, 'new', 1)])

        affected = bulk_merge(sqlite_conn, 'orders', rows, qualifiers=['name'])

        assert affected == 2
        result = _orders(sqlite_conn)
        assert (2, 'x', 55) in result
        assert (3, 'new', 1) in result


class TestBulkDelete:
    """Test bulk delete end to end on SQLite."""

    def test_deletes_matching_rows(self, sqlite_conn):
        affected = bulk_delete(sqlite_conn, 'orders', RowSet(['id'], [(1,), (1,), (42,)]))

        assert affected == 1
        assert _orders(sqlite_conn) == [(2, 'x', 5)]
        assert _staging_tables(sqlite_conn) == []


class TestBulkInsert:
    """Test bulk insert end to end on SQLite."""

    def test_identity_assigned_by_database(self, sqlite_conn):
        rows = RowSet(['id', 'name', 'amount'], [(100, 'c', 30), (200, 'd', 40)])

        affected = bulk_insert(sqlite_conn, 'orders', rows)

        assert affected == 2
        assert _orders(sqlite_conn)[2:] == [(3, 'c', 30), (4, 'd', 40)]

    def test_keep_identity(self, sqlite_conn):
        rows = RowSet(['id', 'name', 'amount'], [(100, 'c', 30)])

        bulk_insert(sqlite_conn, 'orders', rows, options=BulkCopyOptions.KEEP_IDENTITY)

        assert _orders(sqlite_conn)[-1] == (100, 'c', 30)

    def test_insert_into_keyless_table(self, sqlite_conn):
        sqlite_conn.execute("CREATE TABLE logs (message TEXT)")
        sqlite_conn.commit()

        affected = bulk_insert(sqlite_conn, 'logs', RowReader.from_dicts([{'message': 'a'}, {'message': 'b'}]))

        assert affected == 2
        assert sqlite_conn.execute("SELECT COUNT(*) FROM logs").fetchone()[0] == 2

    def test_failure_rolls_back_all_batches(self, sqlite_conn):
        rows = RowSet(['id', 'name', 'amount'], [(10, 'ok', 1), (1, 'duplicate', 2)])

        with pytest.raises(sqlite3.IntegrityError):
            bulk_insert(sqlite_conn, 'orders', rows, options=BulkCopyOptions.KEEP_IDENTITY, batch_size=1)

        assert len(_orders(sqlite_conn)) == 2


class TestDropFailure:
    """The staging drop is best-effort on the success path."""

    def test_drop_failure_still_commits(self, sqlite_conn, caplog):
        rows = RowSet(['id', 'name', 'amount'], [(1, 'b', 20)])

        with patch('bulk_sync.bulk_operations.DDLGenerator.generate_drop_staging_table',
                   return_value='DROP TABLE "no_such_table"'):
            affected = bulk_update(sqlite_conn, 'orders', rows)

        assert affected == 1
        assert _orders(sqlite_conn)[0] == (1, 'b', 20)
        assert 'Could not drop staging table' in caplog.text


class TestMockedDialects:
    """Statement flow on PostgreSQL and SQL Server with mocked connections."""

    def _connection(self, columns_rows):
        conn = MagicMock()
        conn.autocommit = False
        cursor = MagicMock()
        cursor.fetchall.return_value = columns_rows
        cursor.rowcount = 2
        conn.cursor.return_value = cursor
        return conn, cursor

    def test_sqlserver_update_flow(self):
        conn, cursor = self._connection([
            ('Id', 0, 1, 1, 'int', 1),
            ('Name', 1, 0, 0, 'nvarchar', None),
        ])
        conn.timeout = 0
        seen_timeouts = []
        cursor.executemany.side_effect = lambda sql, batch: seen_timeouts.append(conn.timeout)
        rows = RowSet(['Id', 'Name'], [(1, 'a'), (2, 'b')])

        with patch.dict('os.environ', {'STRICT_CONSISTENCY': 'false'}):
            affected = bulk_update(conn, 'dbo.Orders', rows, hints='TABLOCK', timeout=30, dialect='mssql')

        executed = [c[0][0] for c in cursor.execute.call_args_list]
        assert 'sys.columns' in executed[0]
        assert executed[1].startswith('SELECT TOP (0) [Id], [Name] INTO [#_BulkSync_BulkUpdate_Orders]')
        assert executed[2] == 'SET IDENTITY_INSERT [#_BulkSync_BulkUpdate_Orders] ON'
        assert executed[3] == 'SET IDENTITY_INSERT [#_BulkSync_BulkUpdate_Orders] OFF'
        assert executed[4].startswith('CREATE CLUSTERED INDEX')
        assert executed[5].startswith('UPDATE T SET T.[Name] = S.[Name] FROM [dbo].[Orders] AS T WITH (TABLOCK)')
        assert executed[6] == 'SAVE TRANSACTION [bulk_sync_drop_staging]'
        assert executed[7] == 'DROP TABLE IF EXISTS [#_BulkSync_BulkUpdate_Orders]'
        assert cursor.executemany.call_count == 1
        assert seen_timeouts == [30]
        assert conn.timeout == 0
        assert affected == 2
        conn.commit.assert_called_once()

    def test_postgres_failure_rolls_back(self):
        conn, cursor = self._connection([
            ('id', False, True, True, 'integer', 1),
            ('name', True, False, False, 'text', None),
        ])
        cursor.copy_expert.side_effect = RuntimeError("COPY failed")

        with pytest.raises(RuntimeError, match="COPY failed"):
            bulk_update(conn, 'public.orders', RowSet(['id', 'name'], [(1, 'a')]), dialect='postgresql')

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()

    def test_environment_defaults(self):
        conn, cursor = self._connection([
            ('id', False, True, True, 'integer', 1),
            ('name', True, False, False, 'text', None),
        ])

        with patch.dict('os.environ', {'BULK_COPY_TIMEOUT': '12', 'BULK_BATCH_SIZE': '1'}):
            bulk_update(conn, 'orders', RowSet(['id', 'name'], [(1, 'a'), (2, 'b')]), dialect='postgres')

        executed = [str(c[0][0]) for c in cursor.execute.call_args_list]
        assert 'SET LOCAL statement_timeout = 12000' in executed
        assert cursor.copy_expert.call_count == 2

    def test_borrowed_postgres_transaction_gets_its_timeout_back(self):
        conn, cursor = self._connection([
            ('id', False, True, True, 'integer', 1),
            ('name', True, False, False, 'text', None),
        ])
        cursor.fetchone.return_value = ('1min',)
        tx = begin_transaction(conn, 'postgresql')

        bulk_update(conn, 'orders', RowSet(['id', 'name'], [(1, 'a')]), timeout=5,
                    transaction=tx, dialect='postgresql')

        calls = [c[0] for c in cursor.execute.call_args_list]
        set_index = calls.index(('SET LOCAL statement_timeout = 5000',))
        restore_index = calls.index(("SELECT set_config('statement_timeout', %s, true)", ('1min',)))
        assert set_index < restore_index
        assert tx.is_active is True
        conn.commit.assert_not_called()

    def test_borrowed_sqlserver_connection_timeout_restored_after_failure(self):
        conn, cursor = self._connection([
            ('Id', 0, 1, 1, 'int', 1),
            ('Name', 1, 0, 0, 'nvarchar', None),
        ])
        conn.timeout = 0
        cursor.executemany.side_effect = RuntimeError("String or binary data would be truncated")
        tx = begin_transaction(conn, 'mssql')

        with pytest.raises(RuntimeError, match="truncated"):
            bulk_update(conn, 'dbo.Orders', RowSet(['Id', 'Name'], [(1, 'a')]), timeout=30,
                        transaction=tx, dialect='mssql')

        assert conn.timeout == 0
        conn.rollback.assert_not_called()

    def test_owned_sqlserver_connection_timeout_restored(self):
        conn, _ = self._connection([
            ('Id', 0, 1, 1, 'int', 1),
            ('Name', 1, 0, 0, 'nvarchar', None),
        ])
        conn.timeout = 10

        bulk_insert(conn, 'dbo.Orders', RowSet(['Id', 'Name'], [(1, 'a')]), timeout=30, dialect='mssql')

        assert conn.timeout == 10

    def test_failed_merge_turns_identity_insert_off(self):
        conn, cursor = self._connection([
            ('Id', 0, 1, 1, 'int', 1),
            ('Name', 1, 0, 0, 'nvarchar', None),
        ])

        def execute(statement, *args):
            if str(statement).startswith('MERGE'):
                raise RuntimeError("Violation of PRIMARY KEY constraint")

        cursor.execute.side_effect = execute

        with pytest.raises(RuntimeError, match="PRIMARY KEY"):
            bulk_merge(conn, 'dbo.Orders', RowSet(['Id', 'Name'], [(1, 'a')]), dialect='mssql')

        executed = [c[0][0] for c in cursor.execute.call_args_list]
        assert executed[-3] == 'SET IDENTITY_INSERT [dbo].[Orders] ON;'
        assert executed[-2].startswith('MERGE [dbo].[Orders]')
        assert executed[-1] == 'SET IDENTITY_INSERT [dbo].[Orders] OFF;'
        conn.rollback.assert_called_once()

    def test_identity_insert_statements_not_counted(self):
        conn, cursor = self._connection([
            ('Id', 0, 1, 1, 'int', 1),
            ('Name', 1, 0, 0, 'nvarchar', None),
        ])
        cursor.rowcount = 1

        affected = bulk_merge(conn, 'dbo.Orders', RowSet(['Id', 'Name'], [(1, 'a')]), dialect='mssql')

        assert affected == 1


class TestAsyncOperations:
    """Async variants share the step pipeline and honor cancellation."""

    @pytest.mark.asyncio
    async def test_update_async(self, sqlite_conn):
        affected = await bulk_update_async(sqlite_conn, 'orders', RowSet(['id', 'name'], [(1, 'async')]))

        assert affected == 1
        assert _orders(sqlite_conn)[0] == (1, 'async', 10)

    @pytest.mark.asyncio
    async def test_merge_insert_delete_async(self, sqlite_conn):
        assert await bulk_merge_async(sqlite_conn, 'orders', RowSet(['id', 'name'], [(3, 'm')])) == 1
        assert await bulk_insert_async(sqlite_conn, 'orders', RowSet(['name'], [('i',)])) == 1
        assert await bulk_delete_async(sqlite_conn, 'orders', RowSet(['id'], [(1,), (2,)])) == 2
        assert [row[1] for row in _orders(sqlite_conn)] == ['m', 'i']

    @pytest.mark.asyncio
    async def test_async_empty_input(self):
        conn = MagicMock()
        assert await bulk_update_async(conn, 'orders', RowSet(['id']), dialect='sqlite') == 0
        conn.cursor.assert_not_called()

    @pytest.mark.asyncio
    async def test_async_needs_connection_usable_from_other_threads(self):
        """A default sqlite3 connection is bound to its thread and is rejected by the worker."""
        conn = sqlite3.connect(':memory:')
        conn.execute("CREATE TABLE orders (id INTEGER PRIMARY KEY, name TEXT, amount INTEGER)")
        conn.commit()

        with pytest.raises(sqlite3.ProgrammingError, match="thread"):
            await bulk_insert_async(conn, 'orders', RowSet(['name'], [('a',)]))

        conn.close()

    @pytest.mark.asyncio
    async def test_async_failure_rolls_back(self, sqlite_conn):
        before = _orders(sqlite_conn)

        with patch('bulk_sync.bulk_operations.build_bulk_update_sql',
                   return_value=['UPDATE orders SET amount = 0', 'UPDATE "missing_table" SET x = 1']):
            with pytest.raises(sqlite3.OperationalError):
                await bulk_update_async(sqlite_conn, 'orders', RowSet(['id', 'name'], [(1, 'b')]))

        assert _orders(sqlite_conn) == before

    @pytest.mark.asyncio
    async def test_cancellation_rolls_back_owned_transaction(self, sqlite_conn):
        """Cancelling mid-step waits for the step, rolls back and raises CancelledError."""
        before = _orders(sqlite_conn)
        started = threading.Event()
        release = threading.Event()
        reconcile_target = bulk_operations._reconcile_target

        def blocking_reconcile(run):
            started.set()
            release.wait(5)
            reconcile_target(run)

        steps = [
            blocking_reconcile if step is reconcile_target else step
            for step in bulk_operations._STAGED_STEPS
        ]

        with patch.object(bulk_operations, '_STAGED_STEPS', steps):
            task = asyncio.create_task(
                bulk_update_async(sqlite_conn, 'orders', RowSet(['id', 'name'], [(1, 'cancelled')]))
            )
            await asyncio.to_thread(started.wait, 5)
            task.cancel()
            release.set()

            with pytest.raises(asyncio.CancelledError):
                await task

        assert _orders(sqlite_conn) == before
        assert _staging_tables(sqlite_conn) == []
        assert sqlite_conn.in_transaction is False

    @pytest.mark.asyncio
    async def test_cancellation_leaves_borrowed_transaction_open(self, sqlite_conn):
        tx = begin_transaction(sqlite_conn)
        started = threading.Event()
        release = threading.Event()
        reconcile_target = bulk_operations._reconcile_target

        def blocking_reconcile(run):
            started.set()
            release.wait(5)
            reconcile_target(run)

        steps = [
            blocking_reconcile if step is reconcile_target else step
            for step in bulk_operations._STAGED_STEPS
        ]

        with patch.object(bulk_operations, '_STAGED_STEPS', steps):
            task = asyncio.create_task(
                bulk_update_async(sqlite_conn, 'orders', RowSet(['id', 'name'], [(1, 'z')]), transaction=tx)
            )
            await asyncio.to_thread(started.wait, 5)
            task.cancel()
            release.set()

            with pytest.raises(asyncio.CancelledError):
                await task

        assert tx.is_active is True
        tx.rollback()
        assert _orders(sqlite_conn)[0] == (1, 'a', 10)


class TestStepHelpers:
    """Unit checks on orchestration helpers."""

    def test_reconcile_counts_ignore_negative_rowcounts(self):
        run = MagicMock()
        run.transaction.execute.side_effect = [-1, 3, -1]

        with patch('bulk_sync.bulk_operations._build_reconcile_sql', return_value=['a', 'b', 'c']):
            bulk_operations._reconcile_target(run)

        assert run.rows_affected == 3

    def test_table_name_required(self, sqlite_conn):
        with pytest.raises(ValueError, match="table_name"):
            bulk_update(sqlite_conn, '  ', RowSet(['id'], [(1,)]))

    def test_schema_cache_disabled_forces_refresh(self, sqlite_conn):
        rows = RowSet(['id', 'name'], [(1, 'q')])
        columns = [ColumnDescriptor('id', is_primary=True, is_identity=True, key_ordinal=1),
                   ColumnDescriptor('name'), ColumnDescriptor('amount')]

        with patch.dict('os.environ', {'BULK_SCHEMA_CACHE': 'false'}), \
             patch('bulk_sync.bulk_operations.SchemaExtractor') as MockExtractor:
            MockExtractor.return_value.get_columns.return_value = columns
            bulk_update(sqlite_conn, 'orders', rows)

        kwargs = MockExtractor.return_value.get_columns.call_args[1]
        assert kwargs['force_refresh'] is True
