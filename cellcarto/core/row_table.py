from typing import Any

import numpy as np
import polars as pl

ROW_INDEX_COLUMN = "__row_index__"


class RowTable:
    """
    Column-wise table with one row per cell.

    The row count is fixed at construction. Columns are numpy arrays of
    exactly ``n_cells`` entries: float64 for numeric attributes and object
    arrays of ``str`` for categorical ones. Columns are added as they load,
    so the set of columns grows over a session.

    Examples:
        >>> table = RowTable(3)
        >>> table.set_column("barcode", np.array(["a", "b", "c"], dtype=object))
        >>> table.record(1)
        {'barcode': 'b'}
    """

    def __init__(self, n_cells: int):
        if n_cells < 0:
            raise ValueError(f"n_cells must be non-negative, got {n_cells}")
        self.n_cells = int(n_cells)
        self._columns: dict[str, np.ndarray] = {}

    def __len__(self) -> int:
        return self.n_cells

    def __contains__(self, name: str) -> bool:
        return name in self._columns

    def __getitem__(self, name: str) -> np.ndarray:
        return self._columns[name]

    @property
    def columns(self) -> list[str]:
        return list(self._columns)

    def get(self, name: str, default: Any = None) -> np.ndarray | Any:
        return self._columns.get(name, default)

    def set_column(self, name: str, values: np.ndarray) -> None:
        """
        Write a column for every row.

        Raises:
            ValueError: If ``values`` does not have one entry per row.
        """
        values = np.asarray(values)
        if values.ndim != 1 or len(values) != self.n_cells:
            raise ValueError(
                f"Column '{name}' has {values.shape} values, expected ({self.n_cells},)"
            )
        self._columns[name] = values

    def record(self, i: int) -> dict[str, Any]:
        """Row ``i`` as a mapping of column name to scalar value."""
        if not 0 <= i < self.n_cells:
            raise IndexError(f"Row {i} out of range for {self.n_cells} rows")
        row = {}
        for name, values in self._columns.items():
            value = values[i]
            row[name] = value.item() if isinstance(value, np.generic) else value
        return row

    def records(self, indices=None):
        """Iterate over rows (all, or the given indices) as mappings."""
        rows = range(self.n_cells) if indices is None else indices
        for i in rows:
            yield self.record(int(i))

    def to_polars(
        self, columns: list[str] | None = None, with_row_index: bool = False
    ) -> pl.DataFrame:
        """
        Build a polars DataFrame from the selected columns.

        Args:
            columns: Column names to include (all loaded columns by default).
            with_row_index: Prepend a ``__row_index__`` column of row numbers.

        Raises:
            KeyError: If a requested column is not present.
        """
        names = self.columns if columns is None else list(columns)
        data: dict[str, pl.Series] = {}
        if with_row_index:
            data[ROW_INDEX_COLUMN] = pl.Series(
                ROW_INDEX_COLUMN, np.arange(self.n_cells, dtype=np.int64)
            )
        for name in names:
            values = self._columns[name]
            if values.dtype == object:
                data[name] = pl.Series(name, values.tolist(), dtype=pl.String)
            else:
                data[name] = pl.Series(name, values)
        return pl.DataFrame(data, height=self.n_cells) if data else pl.DataFrame()
