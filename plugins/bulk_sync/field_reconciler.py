"""
Field Reconciliation Module

Decides which columns a bulk operation moves and which columns it matches on.

The filtering order is fixed: target schema first, then the columns the row
source actually has, then the explicit mappings. Starting from the schema
means a mapping can never introduce a column the target does not have.
All name comparisons are case-insensitive; results use the target's spelling.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence
import logging

from bulk_sync.exceptions import MissingKeyError, NoFieldsError
from bulk_sync.row_loader import BulkCopyOptions
from bulk_sync.row_sources import ColumnMapping
from bulk_sync.schema_extractor import ColumnDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciledFields:
    """Outcome of reconciling a row source against a target table."""

    fields: List[str]
    qualifiers: List[str]
    primary_keys: List[str]
    identity: Optional[str]
    keep_identity: bool


def _contains(names: Sequence[str], name: str) -> bool:
    lowered = name.lower()
    return any(candidate.lower() == lowered for candidate in names)


def reconcile_fields(
    columns: Sequence[ColumnDescriptor],
    source_columns: Optional[Sequence[str]] = None,
    mappings: Optional[Sequence[ColumnMapping]] = None,
) -> List[str]:
    """
    Compute the ordered field list to stage and move.

    Args:
        columns: Target table columns in ordinal order
        source_columns: Columns of the row source (skipped when empty/None)
        mappings: Explicit mappings; when given only fields named by a mapping source survive

    Returns:
        Field names in target order

    Raises:
        NoFieldsError: If no field survives the filters
    """
    fields = [column.name for column in columns]

    if source_columns:
        fields = [field for field in fields if _contains(source_columns, field)]

    if mappings:
        mapped_sources = [mapping.source for mapping in mappings]
        fields = [field for field in fields if _contains(mapped_sources, field)]

    if not fields:
        raise NoFieldsError("There are no field(s) found for this operation.")

    return fields


def primary_key_columns(columns: Sequence[ColumnDescriptor]) -> List[str]:
    """Primary key column names in key order."""
    keys = [column for column in columns if column.is_primary]
    keys.sort(key=lambda column: column.key_ordinal if column.key_ordinal is not None else 0)
    return [column.name for column in keys]


def identity_column(columns: Sequence[ColumnDescriptor]) -> Optional[str]:
    for column in columns:
        if column.is_identity:
            return column.name
    return None


def resolve_qualifiers(
    columns: Sequence[ColumnDescriptor],
    qualifiers: Optional[Sequence[str]] = None,
    table_name: str = '',
) -> List[str]:
    """
    Determine the columns used to match staged rows to target rows.

    Caller qualifiers are used as given (normalized to the target's spelling
    when the column exists). Otherwise the primary key is used, then the
    identity column.

    Args:
        columns: Target table columns
        qualifiers: Optional caller-supplied qualifier names
        table_name: Table name for error messages

    Returns:
        Qualifier column names

    Raises:
        MissingKeyError: If no qualifiers were given and the table has no primary or identity key
    """
    if qualifiers:
        resolved = []
        for qualifier in qualifiers:
            match = next((c.name for c in columns if c.name.lower() == qualifier.lower()), qualifier)
            if not _contains(resolved, match):
                resolved.append(match)
        return resolved

    keys = primary_key_columns(columns)
    if keys:
        return keys

    identity = identity_column(columns)
    if identity:
        return [identity]

    raise MissingKeyError(f"No primary key or identity key found for table '{table_name}'.")


def should_keep_identity(
    identity: Optional[str],
    fields: Sequence[str],
    qualifiers: Sequence[str],
    options: Optional[BulkCopyOptions] = None,
) -> bool:
    """
    Decide whether explicit identity values are loaded.

    Explicit options are honored as given. Without them, identity values are
    kept when the identity column is both moved and matched on; otherwise the
    load would renumber the very keys the reconciliation joins on.
    """
    if options is not None and options != BulkCopyOptions.DEFAULT:
        return bool(options & BulkCopyOptions.KEEP_IDENTITY)
    if identity is None:
        return False
    return _contains(fields, identity) and _contains(qualifiers, identity)


def reconcile(
    columns: Sequence[ColumnDescriptor],
    source_columns: Optional[Sequence[str]] = None,
    mappings: Optional[Sequence[ColumnMapping]] = None,
    qualifiers: Optional[Sequence[str]] = None,
    options: Optional[BulkCopyOptions] = None,
    require_qualifiers: bool = True,
    table_name: str = '',
) -> ReconciledFields:
    """
    Run the full reconciliation for one bulk operation.

    Args:
        columns: Target table columns
        source_columns: Columns of the row source
        mappings: Optional explicit column mappings
        qualifiers: Optional caller-supplied qualifiers
        options: Explicit bulk copy options, if any
        require_qualifiers: Whether the operation matches rows (update/merge/delete)
        table_name: Table name for error messages

    Returns:
        ReconciledFields

    Raises:
        MissingKeyError: If qualifiers are required but cannot be derived or are not moved
        NoFieldsError: If no field survives the filters
    """
    if require_qualifiers:
        resolved_qualifiers = resolve_qualifiers(columns, qualifiers, table_name)
    else:
        resolved_qualifiers = list(qualifiers or [])

    fields = reconcile_fields(columns, source_columns, mappings)

    missing = [qualifier for qualifier in resolved_qualifiers if not _contains(fields, qualifier)]
    if require_qualifiers and missing:
        raise MissingKeyError(
            f"Qualifier column(s) {', '.join(missing)} of table '{table_name}' "
            f"are not present in the row source."
        )

    identity = identity_column(columns)
    keep_identity = should_keep_identity(identity, fields, resolved_qualifiers, options)

    if require_qualifiers:
        logger.debug(f"Qualifiers for {table_name}: {', '.join(resolved_qualifiers)}")
    if keep_identity and (options is None or options == BulkCopyOptions.DEFAULT):
        logger.info(f"Keeping identity values of '{identity}' while staging {table_name}")

    return ReconciledFields(
        fields=fields,
        qualifiers=resolved_qualifiers,
        primary_keys=primary_key_columns(columns),
        identity=identity,
        keep_identity=keep_identity,
    )
