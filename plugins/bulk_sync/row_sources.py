"""
Row Sources

The two shapes a caller can hand to a bulk operation:

- RowReader: a forward-only stream of row tuples with a known column list
  (wraps any iterable, a DB-API cursor, or a stream of dicts)
- RowSet: materialized rows, each tagged with a RowState so a caller can
  push only the rows it added or modified

Plus ColumnMapping, the (source, destination) pair used to select and rename
columns while loading.
"""

from enum import Flag
from typing import Any, Iterable, Iterator, List, Mapping, NamedTuple, Optional, Sequence, Tuple, Union

_NO_ROW = object()


class ColumnMapping(NamedTuple):
    """Maps a column of the row source to a column of the destination table."""

    source: str
    destination: str


class RowState(Flag):
    UNCHANGED = 1
    ADDED = 2
    DELETED = 4
    MODIFIED = 8


def _index_of(columns: Sequence[str], name: str) -> Optional[int]:
    lowered = name.lower()
    for index, column in enumerate(columns):
        if column.lower() == lowered:
            return index
    return None


class RowReader:
    """
    Forward-only row stream.

    Rows are produced lazily and can only be iterated once. has_rows() peeks
    at the first row without losing it, so an empty stream can be detected
    before any database work starts.
    """

    def __init__(self, columns: Sequence[str], rows: Iterable[Sequence[Any]]):
        """
        Initialize the reader.

        Args:
            columns: Column names, in the order values appear in each row
            rows: Iterable of row sequences
        """
        self.columns: List[str] = [str(column) for column in columns]
        self._iterator = iter(rows)
        self._peeked: Any = _NO_ROW

    @classmethod
    def from_cursor(cls, cursor: Any, fetch_size: int = 10000) -> 'RowReader':
        """
        Stream the result set of an executed DB-API cursor.

        Args:
            cursor: Cursor with a pending result set (description must be set)
            fetch_size: Rows fetched per round trip

        Returns:
            RowReader over the cursor's rows
        """
        if cursor.description is None:
            raise ValueError("Cursor has no result set; execute a query first")
        columns = [desc[0] for desc in cursor.description]

        def _fetch() -> Iterator[Sequence[Any]]:
            while True:
                batch = cursor.fetchmany(fetch_size)
                if not batch:
                    return
                for row in batch:
                    yield row

        return cls(columns, _fetch())

    @classmethod
    def from_dicts(
        cls,
        records: Iterable[Mapping[str, Any]],
        columns: Optional[Sequence[str]] = None,
    ) -> 'RowReader':
        """
        Stream dictionaries as rows.

        Args:
            records: Iterable of mappings
            columns: Column order; defaults to the keys of the first record

        Returns:
            RowReader producing one tuple per record (missing keys become None)
        """
        iterator = iter(records)
        first = next(iterator, None)
        if columns is None:
            columns = list(first.keys()) if first is not None else []
        columns = list(columns)

        def _rows() -> Iterator[Tuple[Any, ...]]:
            if first is None:
                return
            yield tuple(first.get(column) for column in columns)
            for record in iterator:
                yield tuple(record.get(column) for column in columns)

        return cls(columns, _rows())

    def has_rows(self) -> bool:
        if self._peeked is _NO_ROW:
            self._peeked = next(self._iterator, _NO_ROW)
        return self._peeked is not _NO_ROW

    def index_of(self, column: str) -> Optional[int]:
        """Case-insensitive position of a column, or None."""
        return _index_of(self.columns, column)

    def __iter__(self) -> Iterator[Tuple[Any, ...]]:
        if self._peeked is not _NO_ROW:
            row, self._peeked = self._peeked, _NO_ROW
            yield tuple(row)
        for row in self._iterator:
            yield tuple(row)


class RowSet:
    """Materialized rows with per-row change state."""

    def __init__(
        self,
        columns: Sequence[str],
        rows: Optional[Iterable[Sequence[Any]]] = None,
        state: RowState = RowState.ADDED,
    ):
        self.columns: List[str] = [str(column) for column in columns]
        self._rows: List[List[Any]] = []
        for values in rows or []:
            self.add(values, state)

    @classmethod
    def from_dicts(
        cls,
        records: Iterable[Mapping[str, Any]],
        columns: Optional[Sequence[str]] = None,
        state: RowState = RowState.ADDED,
    ) -> 'RowSet':
        records = list(records)
        if columns is None:
            columns = list(records[0].keys()) if records else []
        row_set = cls(columns)
        for record in records:
            row_set.add([record.get(column) for column in row_set.columns], state)
        return row_set

    def add(self, values: Sequence[Any], state: RowState = RowState.ADDED) -> None:
        if len(values) != len(self.columns):
            raise ValueError(
                f"Row has {len(values)} values but the row set has {len(self.columns)} columns"
            )
        self._rows.append([tuple(values), state])

    def set_state(self, index: int, state: RowState) -> None:
        self._rows[index][1] = state

    def state_of(self, index: int) -> RowState:
        return self._rows[index][1]

    def accept_changes(self) -> None:
        """Drop deleted rows and mark the rest unchanged."""
        self._rows = [
            [values, RowState.UNCHANGED]
            for values, state in self._rows
            if not state & RowState.DELETED
        ]

    def select(self, row_state: Optional[RowState] = None) -> List[Tuple[Any, ...]]:
        """
        Rows whose state matches the mask.

        Args:
            row_state: State or combination of states (e.g. ADDED | MODIFIED); None selects all

        Returns:
            List of row tuples in insertion order
        """
        if row_state is None:
            return [values for values, _ in self._rows]
        return [values for values, state in self._rows if state & row_state]

    def count(self, row_state: Optional[RowState] = None) -> int:
        if row_state is None:
            return len(self._rows)
        return sum(1 for _, state in self._rows if state & row_state)

    def index_of(self, column: str) -> Optional[int]:
        return _index_of(self.columns, column)

    def reader(self, row_state: Optional[RowState] = None) -> RowReader:
        return RowReader(self.columns, self.select(row_state))

    def __len__(self) -> int:
        return len(self._rows)

    def __repr__(self) -> str:
        return f"RowSet(columns={self.columns!r}, rows={len(self._rows)})"


RowSource = Union[RowReader, RowSet]


def as_row_reader(rows: RowSource, row_state: Optional[RowState] = None) -> RowReader:
    """
    Normalize a row source to a RowReader.

    Args:
        rows: RowReader or RowSet
        row_state: State filter applied to a RowSet (ignored for readers)

    Returns:
        RowReader

    Raises:
        TypeError: If rows is neither a RowReader nor a RowSet
    """
    if isinstance(rows, RowReader):
        return rows
    if isinstance(rows, RowSet):
        return rows.reader(row_state)
    raise TypeError(f"rows must be a RowReader or RowSet, got {type(rows).__name__}")


def source_columns(rows: RowSource) -> List[str]:
    if isinstance(rows, (RowReader, RowSet)):
        return list(rows.columns)
    raise TypeError(f"rows must be a RowReader or RowSet, got {type(rows).__name__}")


def normalize_mappings(
    mappings: Optional[Iterable[Union[ColumnMapping, Tuple[str, str]]]],
) -> Optional[List[ColumnMapping]]:
    """Accept ColumnMapping objects or plain (source, destination) pairs; empty means no mappings."""
    if not mappings:
        return None
    normalized = [
        mapping if isinstance(mapping, ColumnMapping) else ColumnMapping(*mapping)
        for mapping in mappings
    ]
    return normalized or None
