"""
Bulk Table Synchronization

This package pushes large client-side batches of rows into PostgreSQL,
SQL Server or SQLite tables without one statement per row, inside a single
atomic transaction.

Modules:
- bulk_operations: bulk_insert / bulk_update / bulk_merge / bulk_delete (sync and async)
- schema_extractor: Read and cache target table columns
- field_reconciler: Decide which columns are moved and matched on
- ddl_generator: Staging table DDL
- row_loader: COPY / fast_executemany / executemany row loaders
- sql_builder: UPDATE, MERGE and DELETE statements against the staging table
- transaction: Owned and borrowed transaction handling
- row_sources: RowReader, RowSet and ColumnMapping
- dialects: Identifier quoting and per-database primitives
- settings: Environment-driven defaults
- hooks: Airflow connection integration

Configuration Options:
- BULK_BATCH_SIZE=N: Rows per load batch (default 50000)
- BULK_COPY_TIMEOUT=N: Statement timeout in seconds
- BULK_USE_PHYSICAL_STAGING=true: Durable staging tables
- BULK_SCHEMA_CACHE=false: Always re-read the target schema
- STRICT_CONSISTENCY=true: No NOLOCK reads on SQL Server
"""

__version__ = "1.0.0"

# Core modules
from bulk_sync import dialects
from bulk_sync import exceptions
from bulk_sync import settings
from bulk_sync import row_sources
from bulk_sync import schema_extractor
from bulk_sync import field_reconciler
from bulk_sync import ddl_generator
from bulk_sync import row_loader
from bulk_sync import sql_builder
from bulk_sync import transaction
from bulk_sync import bulk_operations

# Optional: Airflow integration (import bulk_sync.hooks where Airflow is installed)
# from bulk_sync import hooks

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
from bulk_sync.exceptions import (
    BulkOperationError,
    MissingKeyError,
    NoFieldsError,
    SchemaLookupError,
    TransactionMismatchError,
)
from bulk_sync.row_loader import BulkCopyOptions
from bulk_sync.row_sources import ColumnMapping, RowReader, RowSet, RowState
from bulk_sync.transaction import begin_transaction

__all__ = [
    "dialects",
    "exceptions",
    "settings",
    "row_sources",
    "schema_extractor",
    "field_reconciler",
    "ddl_generator",
    "row_loader",
    "sql_builder",
    "transaction",
    "bulk_operations",
    "bulk_insert",
    "bulk_update",
    "bulk_merge",
    "bulk_delete",
    "bulk_insert_async",
    "bulk_update_async",
    "bulk_merge_async",
    "bulk_delete_async",
    "BulkCopyOptions",
    "ColumnMapping",
    "RowReader",
    "RowSet",
    "RowState",
    "begin_transaction",
    "BulkOperationError",
    "NoFieldsError",
    "MissingKeyError",
    "TransactionMismatchError",
    "SchemaLookupError",
]
