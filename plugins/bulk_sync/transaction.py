"""
Transaction Envelope

Wraps a DB-API connection in an explicit unit of work and decides who is
responsible for finishing it. A transaction the engine opened itself is an
OwnedTransaction: it is committed on success, rolled back on failure and
always disposed. A transaction handed in by the caller is a
BorrowedTransaction: it is only validated and never committed, rolled back or
disposed by the engine.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Sequence, Union
import logging

from bulk_sync.dialects import Dialect, resolve_dialect
from bulk_sync.exceptions import TransactionMismatchError

logger = logging.getLogger(__name__)


class TransactionState(Enum):
    ACTIVE = 'active'
    COMMITTED = 'committed'
    ROLLED_BACK = 'rolled_back'
    DISPOSED = 'disposed'


class Transaction:
    """
    A unit of work on one DB-API connection.

    Turns driver autocommit off for its lifetime and restores it on dispose.
    Can be used as a context manager by callers who own it:

        with begin_transaction(conn) as tx:
            bulk_update(conn, 'dbo.Orders', rows, transaction=tx)
            tx.execute("UPDATE dbo.Audit SET synced = 1")
    """

    def __init__(self, connection: Any, dialect: Dialect):
        self.connection = connection
        self.dialect = dialect
        self.state = TransactionState.ACTIVE
        self._restore_autocommit = False

        if getattr(connection, 'autocommit', False) is True:
            connection.autocommit = False
            self._restore_autocommit = True

        dialect.begin(connection)
        logger.debug(f"Began {dialect.name} transaction")

    @property
    def is_active(self) -> bool:
        return self.state is TransactionState.ACTIVE

    def cursor(self) -> Any:
        return self.connection.cursor()

    def execute(self, sql: str, parameters: Optional[Sequence[Any]] = None) -> int:
        """
        Execute a statement inside this transaction.

        Args:
            sql: SQL statement to execute
            parameters: Optional parameters for the statement

        Returns:
            Number of rows affected as reported by the driver (-1 when unknown)
        """
        logger.debug(f"Executing: {sql}")
        cursor = self.connection.cursor()
        try:
            if parameters:
                cursor.execute(sql, parameters)
            else:
                cursor.execute(sql)
            return cursor.rowcount
        finally:
            cursor.close()

    def commit(self) -> None:
        if not self.is_active:
            raise RuntimeError(f"Cannot commit a transaction that is {self.state.value}")
        self.connection.commit()
        self.state = TransactionState.COMMITTED

    def rollback(self) -> None:
        if not self.is_active:
            raise RuntimeError(f"Cannot roll back a transaction that is {self.state.value}")
        self.connection.rollback()
        self.state = TransactionState.ROLLED_BACK

    def dispose(self) -> None:
        """Finish the transaction lifecycle; an abandoned active transaction is rolled back."""
        if self.state is TransactionState.DISPOSED:
            return
        try:
            if self.is_active:
                try:
                    self.rollback()
                except Exception:
                    logger.exception("Exception occurred while rolling back an abandoned transaction")
            if self._restore_autocommit:
                self.connection.autocommit = True
        finally:
            self.state = TransactionState.DISPOSED

    def __enter__(self) -> 'Transaction':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if self.is_active:
                if exc_type is None:
                    self.commit()
                else:
                    self.rollback()
        finally:
            self.dispose()


@dataclass(frozen=True)
class OwnedTransaction:
    """Transaction opened by the engine; the engine finishes it."""

    transaction: Transaction


@dataclass(frozen=True)
class BorrowedTransaction:
    """Transaction supplied by the caller; the caller finishes it."""

    transaction: Transaction


TransactionContext = Union[OwnedTransaction, BorrowedTransaction]


def begin_transaction(connection: Any, dialect: Any = None) -> Transaction:
    """
    Open a caller-owned transaction to pass into bulk operations.

    Args:
        connection: DB-API connection
        dialect: Optional dialect name or instance (detected from the connection otherwise)

    Returns:
        Active Transaction
    """
    return Transaction(connection, resolve_dialect(connection, dialect))


def validate_transaction_connection(connection: Any, transaction: Transaction) -> None:
    """
    Ensure a caller-supplied transaction can be used with the connection.

    Raises:
        TypeError: If the object is not a Transaction
        TransactionMismatchError: If it belongs to a different connection
        ValueError: If it has already been finished
    """
    if not isinstance(transaction, Transaction):
        raise TypeError(
            f"transaction must be a bulk_sync Transaction, got {type(transaction).__name__}"
        )
    if transaction.connection is not connection:
        raise TransactionMismatchError(
            "The transaction object is not associated with the connection object."
        )
    if not transaction.is_active:
        raise ValueError(f"The transaction is already {transaction.state.value}")


def resolve_transaction(
    connection: Any,
    transaction: Optional[Transaction],
    dialect: Dialect,
) -> TransactionContext:
    """
    Borrow the caller's transaction or open one owned by the engine.

    Args:
        connection: DB-API connection
        transaction: Caller-supplied transaction or None
        dialect: Dialect of the connection

    Returns:
        BorrowedTransaction or OwnedTransaction
    """
    if transaction is None:
        return OwnedTransaction(Transaction(connection, dialect))
    validate_transaction_connection(connection, transaction)
    return BorrowedTransaction(transaction)


def finalize_transaction(context: TransactionContext, failed: bool) -> None:
    """
    Finish the unit of work according to ownership.

    Owned transactions are committed (or rolled back when failed) and always
    disposed, even if commit or rollback raises. A rollback error never
    replaces the failure that caused it; it is logged instead so the caller
    sees the original exception. Borrowed transactions are left untouched.

    Args:
        context: Transaction context from resolve_transaction
        failed: Whether the operation failed (or was cancelled)
    """
    if isinstance(context, BorrowedTransaction):
        return

    transaction = context.transaction
    try:
        if failed:
            try:
                transaction.rollback()
                logger.info("Rolled back bulk operation transaction")
            except Exception:
                logger.exception("Exception occurred during transaction rollback")
        else:
            transaction.commit()
    finally:
        transaction.dispose()
