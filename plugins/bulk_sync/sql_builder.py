"""
Reconciliation SQL Generation Module

Builds the statements that apply a loaded staging table to its target:

- bulk update: UPDATE the target joined to the staging table on the qualifiers
- bulk merge: update matching rows, insert the rest
- bulk delete: delete target rows that have a staged counterpart

Each builder returns the statements in execution order. The affected-row
count of an operation is the sum of the non-negative driver row counts.

Duplicate qualifiers in the staging table: PostgreSQL and SQLite read the
staging table through a de-duplicated view keeping the last loaded row per
qualifier tuple, so the last write wins and each target row is touched once.
SQL Server joins the staging table directly; UPDATE then picks an arbitrary
duplicate and MERGE fails with error 8672.
"""

from typing import List, Optional, Sequence
import logging

from bulk_sync.ddl_generator import StagingTable
from bulk_sync.dialects import MSSQL, POSTGRESQL, SQLITE, Dialect

logger = logging.getLogger(__name__)


def _without(names: Sequence[str], excluded: Sequence[Optional[str]]) -> List[str]:
    lowered = {name.lower() for name in excluded if name}
    return [name for name in names if name.lower() not in lowered]


def update_columns(
    fields: Sequence[str],
    qualifiers: Sequence[str],
    primary_keys: Sequence[str] = (),
    identity: Optional[str] = None,
) -> List[str]:
    """
    Columns assigned by the UPDATE branch.

    Qualifiers, primary key columns and the identity column are match keys,
    never payload, so they are never assigned.
    """
    return _without(fields, list(qualifiers) + list(primary_keys) + [identity])


def insert_columns(fields: Sequence[str], identity: Optional[str] = None, keep_identity: bool = False) -> List[str]:
    """Columns written by the INSERT branch of a merge."""
    if keep_identity:
        return list(fields)
    return _without(fields, [identity])


def _staging_reference(dialect: Dialect, staging: StagingTable) -> str:
    return dialect.quote_table(staging.name, staging.schema)


def _join_condition(dialect: Dialect, qualifiers: Sequence[str], left: str = 'S', right: str = 'T') -> str:
    q = dialect.quote_identifier
    return ' AND '.join(f"{left}.{q(qualifier)} = {right}.{q(qualifier)}" for qualifier in qualifiers)


def _deduplicated_source(dialect: Dialect, staging: StagingTable, qualifiers: Sequence[str]) -> str:
    """Staging rows with one row (the last loaded) per qualifier tuple."""
    staging_ref = _staging_reference(dialect, staging)
    keys = ', '.join(dialect.quote_identifier(qualifier) for qualifier in qualifiers)

    if dialect.name == POSTGRESQL:
        return f"(SELECT DISTINCT ON ({keys}) * FROM {staging_ref} ORDER BY {keys}, ctid DESC)"

    if dialect.name == SQLITE:
        return (
            f"(SELECT * FROM {staging_ref} WHERE rowid IN "
            f"(SELECT MAX(rowid) FROM {staging_ref} GROUP BY {keys}))"
        )

    return staging_ref


def identity_insert_sql(dialect: Dialect, target_table: str, enabled: bool) -> str:
    """SQL Server statement switching explicit identity inserts on or off for a table."""
    state = 'ON' if enabled else 'OFF'
    return f"SET IDENTITY_INSERT {dialect.format_table_name(target_table)} {state};"


def _check_qualifiers(qualifiers: Sequence[str]) -> None:
    if not qualifiers:
        raise ValueError("Qualifiers are required to reconcile a staging table")


def build_bulk_update_sql(
    dialect: Dialect,
    target_table: str,
    staging: StagingTable,
    fields: Sequence[str],
    qualifiers: Sequence[str],
    primary_keys: Sequence[str] = (),
    identity: Optional[str] = None,
    hints: Optional[str] = None,
) -> List[str]:
    """
    Build the UPDATE that applies staged rows to matching target rows.

    Args:
        dialect: Target dialect
        target_table: Target table, optionally schema-qualified
        staging: Loaded staging table
        fields: Reconciled fields
        qualifiers: Match columns
        primary_keys: Primary key columns of the target
        identity: Identity column of the target
        hints: Table hints for the target (SQL Server only)

    Returns:
        List with one UPDATE statement, or an empty list when no column is left to assign
    """
    _check_qualifiers(qualifiers)
    columns = update_columns(fields, qualifiers, primary_keys, identity)
    if not columns:
        logger.info(f"No updatable columns for {target_table}; every field is a key column")
        return []

    q = dialect.quote_identifier
    target = dialect.format_table_name(target_table)
    hint = dialect.table_hint(hints)
    condition = _join_condition(dialect, qualifiers)

    if dialect.name == MSSQL:
        assignments = ', '.join(f"T.{q(column)} = S.{q(column)}" for column in columns)
        return [
            f"UPDATE T SET {assignments} "
            f"FROM {target} AS T{hint} "
            f"INNER JOIN {_staging_reference(dialect, staging)} AS S ON ({condition});"
        ]

    assignments = ', '.join(f"{q(column)} = S.{q(column)}" for column in columns)
    source = _deduplicated_source(dialect, staging, qualifiers)
    return [f"UPDATE {target} AS T SET {assignments} FROM {source} AS S WHERE ({condition})"]


def build_bulk_merge_sql(
    dialect: Dialect,
    target_table: str,
    staging: StagingTable,
    fields: Sequence[str],
    qualifiers: Sequence[str],
    primary_keys: Sequence[str] = (),
    identity: Optional[str] = None,
    keep_identity: bool = False,
    hints: Optional[str] = None,
) -> List[str]:
    """
    Build the statements that update matching target rows and insert the rest.

    SQL Server uses a single MERGE (wrapped in IDENTITY_INSERT when explicit
    identity values are inserted). PostgreSQL and SQLite run the UPDATE first
    and then insert staged rows that have no target match, so a row inserted
    by the merge is never updated and counted twice.

    Args:
        dialect: Target dialect
        target_table: Target table, optionally schema-qualified
        staging: Loaded staging table
        fields: Reconciled fields
        qualifiers: Match columns
        primary_keys: Primary key columns of the target
        identity: Identity column of the target
        keep_identity: Insert explicit identity values
        hints: Table hints for the target (SQL Server only)

    Returns:
        Statements in execution order
    """
    _check_qualifiers(qualifiers)
    q = dialect.quote_identifier
    target = dialect.format_table_name(target_table)
    assigned = update_columns(fields, qualifiers, primary_keys, identity)
    inserted = insert_columns(fields, identity, keep_identity)
    condition = _join_condition(dialect, qualifiers)
    explicit_identity = bool(identity) and keep_identity and any(
        column.lower() == identity.lower() for column in inserted
    )

    if dialect.name == MSSQL:
        hint = dialect.table_hint(hints)
        merge = (
            f"MERGE {target}{hint} AS T "
            f"USING {_staging_reference(dialect, staging)} AS S ON ({condition}) "
            f"WHEN NOT MATCHED THEN INSERT ({', '.join(q(c) for c in inserted)}) "
            f"VALUES ({', '.join(f'S.{q(c)}' for c in inserted)})"
        )
        if assigned:
            merge += f" WHEN MATCHED THEN UPDATE SET {', '.join(f'T.{q(c)} = S.{q(c)}' for c in assigned)}"
        merge += ';'

        if explicit_identity:
            return [
                identity_insert_sql(dialect, target_table, True),
                merge,
                identity_insert_sql(dialect, target_table, False),
            ]
        return [merge]

    statements = build_bulk_update_sql(
        dialect, target_table, staging, fields, qualifiers, primary_keys, identity, hints
    )

    overriding = ' OVERRIDING SYSTEM VALUE' if explicit_identity and dialect.name == POSTGRESQL else ''
    source = _deduplicated_source(dialect, staging, qualifiers)
    statements.append(
        f"INSERT INTO {target} ({', '.join(q(c) for c in inserted)}){overriding} "
        f"SELECT {', '.join(f'S.{q(c)}' for c in inserted)} FROM {source} AS S "
        f"WHERE NOT EXISTS (SELECT 1 FROM {target} AS T WHERE {condition})"
    )
    return statements


def build_bulk_delete_sql(
    dialect: Dialect,
    target_table: str,
    staging: StagingTable,
    qualifiers: Sequence[str],
    hints: Optional[str] = None,
) -> List[str]:
    """
    Build the DELETE that removes target rows matching a staged row.

    Args:
        dialect: Target dialect
        target_table: Target table, optionally schema-qualified
        staging: Loaded staging table
        qualifiers: Match columns
        hints: Table hints for the target (SQL Server only)

    Returns:
        List with one DELETE statement
    """
    _check_qualifiers(qualifiers)
    target = dialect.format_table_name(target_table)
    staging_ref = _staging_reference(dialect, staging)
    hint = dialect.table_hint(hints)
    condition = _join_condition(dialect, qualifiers)

    if dialect.name == MSSQL:
        return [f"DELETE T FROM {target} AS T{hint} INNER JOIN {staging_ref} AS S ON ({condition});"]

    if dialect.name == POSTGRESQL:
        return [f"DELETE FROM {target} AS T USING {staging_ref} AS S WHERE ({condition})"]

    return [f"DELETE FROM {target} AS T WHERE EXISTS (SELECT 1 FROM {staging_ref} AS S WHERE {condition})"]
