"""
Bulk Operation Errors

Exceptions raised by the bulk synchronization engine before or while it
touches the database. Driver errors raised during DDL, DML or row loading are
never wrapped; they reach the caller unchanged.
"""


class BulkOperationError(Exception):
    """Base class for errors raised by bulk_sync itself."""


class NoFieldsError(BulkOperationError):
    """The reconciled field set is empty; nothing can be staged or moved."""


class MissingKeyError(BulkOperationError):
    """No qualifiers were given and the target has no primary or identity key."""


class TransactionMismatchError(BulkOperationError):
    """A caller-supplied transaction belongs to a different connection."""


class SchemaLookupError(BulkOperationError):
    """The target table's columns could not be retrieved."""
