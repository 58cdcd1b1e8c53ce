"""
Staging DDL Generation Module

Generates the statements that create, index and drop the staging table a
bulk update, merge or delete loads into before reconciling with the target.

The staging table mirrors only the reconciled fields of the target; no
constraints are copied. Its name depends on the operation and the target
table name only, so repeated calls produce the same name.
"""

from dataclasses import dataclass
from typing import Optional, Sequence
import logging

from bulk_sync.dialects import MSSQL, POSTGRESQL, Dialect, parse_table_name
from bulk_sync.settings import is_strict_consistency_mode

logger = logging.getLogger(__name__)

STAGING_PREFIX = '_BulkSync_Bulk'

OPERATIONS = ('update', 'merge', 'delete')


@dataclass(frozen=True)
class StagingTable:
    """A staging table for one target table and operation."""

    name: str
    schema: Optional[str]
    is_temporary: bool

    @property
    def qualified_name(self) -> str:
        """Unquoted reference accepted by parse_table_name and the row loaders."""
        if self.schema:
            return f"{self.schema}.{self.name}"
        return self.name


def staging_table_for(
    table_name: str,
    operation: str,
    dialect: Dialect,
    use_physical: bool = False,
) -> StagingTable:
    """
    Describe the staging table for a target table.

    Args:
        table_name: Target table, optionally schema-qualified
        operation: One of 'update', 'merge', 'delete'
        dialect: Target dialect
        use_physical: Create a durable table in the target's schema instead of a session table

    Returns:
        StagingTable
    """
    if operation not in OPERATIONS:
        raise ValueError(f"Unknown bulk operation '{operation}'. Expected one of: {', '.join(OPERATIONS)}")

    schema, table = parse_table_name(table_name)
    name = f"{STAGING_PREFIX}{operation.capitalize()}_{table}"

    if use_physical:
        return StagingTable(name=name, schema=schema, is_temporary=False)
    return StagingTable(name=dialect.transient_name(name), schema=None, is_temporary=True)


class DDLGenerator:
    """Generate staging table DDL for one dialect."""

    def __init__(self, dialect: Dialect, strict_consistency: Optional[bool] = None):
        """
        Initialize the DDL generator.

        Args:
            dialect: Target dialect
            strict_consistency: Disable NOLOCK reads on SQL Server (defaults to STRICT_CONSISTENCY)
        """
        self.dialect = dialect
        if strict_consistency is None:
            strict_consistency = is_strict_consistency_mode()
        self.strict_consistency = strict_consistency

    def generate_create_staging_table(
        self,
        target_table: str,
        staging: StagingTable,
        fields: Sequence[str],
    ) -> str:
        """
        Generate the statement that creates an empty staging table.

        The column definitions are copied from the target through a zero-row
        SELECT so the staged values keep the target's types.

        Args:
            target_table: Target table, optionally schema-qualified
            staging: Staging table description
            fields: Reconciled fields to mirror

        Returns:
            DDL statement
        """
        if not fields:
            raise ValueError("Cannot create a staging table without fields")

        source = self.dialect.format_table_name(target_table)
        target = self._staging_reference(staging)
        column_list = ', '.join(self.dialect.quote_identifier(field) for field in fields)

        if self.dialect.name == MSSQL:
            # SELECT ... INTO needs no column types and keeps the identity property
            lock_hint = '' if self.strict_consistency else ' WITH (NOLOCK)'
            return f"SELECT TOP (0) {column_list} INTO {target} FROM {source}{lock_hint};"

        if self.dialect.name == POSTGRESQL:
            if staging.is_temporary:
                # ON COMMIT DROP removes a leaked staging table with the transaction
                return (
                    f"CREATE TEMPORARY TABLE {target} ON COMMIT DROP AS "
                    f"SELECT {column_list} FROM {source} WITH NO DATA"
                )
            return f"CREATE TABLE {target} AS SELECT {column_list} FROM {source} WITH NO DATA"

        keyword = 'CREATE TEMP TABLE' if staging.is_temporary else 'CREATE TABLE'
        return f"{keyword} {target} AS SELECT {column_list} FROM {source} WHERE 0"

    def generate_drop_staging_table(self, staging: StagingTable) -> str:
        """
        Generate DROP TABLE statement for a staging table.

        Args:
            staging: Staging table description

        Returns:
            DROP TABLE DDL statement
        """
        return f"DROP TABLE IF EXISTS {self._staging_reference(staging)}"

    def generate_staging_index(self, staging: StagingTable, qualifiers: Sequence[str]) -> str:
        """
        Generate the index covering the qualifier columns, in order.

        SQL Server gets a clustered index; the other dialects a plain B-tree index.

        Args:
            staging: Staging table description
            qualifiers: Qualifier columns

        Returns:
            CREATE INDEX statement
        """
        if not qualifiers:
            raise ValueError("Cannot index a staging table without qualifiers")

        index_name = self.dialect.quote_identifier(f"IX_{staging.name.lstrip('#')}")
        target = self._staging_reference(staging)

        if self.dialect.name == MSSQL:
            columns = ', '.join(f"{self.dialect.quote_identifier(q)} ASC" for q in qualifiers)
            return f"CREATE CLUSTERED INDEX {index_name} ON {target} ({columns});"

        columns = ', '.join(self.dialect.quote_identifier(q) for q in qualifiers)
        return f"CREATE INDEX {index_name} ON {target} ({columns})"

    def _staging_reference(self, staging: StagingTable) -> str:
        return self.dialect.quote_table(staging.name, staging.schema)
