"""
Lazy column loading into the row table.

Row attributes are only fetched when something needs them (a filter, a
legend, a tooltip). Each load is idempotent; concurrent requests for the same
column share one in-flight task, and a failed fetch degrades to default values
so the rest of the session keeps working.
"""

import asyncio
import math
from dataclasses import dataclass

import numpy as np
import pandas as pd
import polars as pl
from loguru import logger

from cellcarto.core.errors import EventLog
from cellcarto.core.row_table import RowTable
from cellcarto.data.accessor import ChunkedArrayAccessor, normalize_strings
from cellcarto.data.registry import ColumnDescriptor


@dataclass
class NumericRange:
    """Running min/max over the non-NaN values of a numeric column."""

    min: float = math.inf
    max: float = -math.inf

    def update(self, values: np.ndarray) -> None:
        finite = values[~np.isnan(values)]
        if finite.size:
            self.min = min(self.min, float(finite.min()))
            self.max = max(self.max, float(finite.max()))

    def is_empty(self) -> bool:
        return self.min > self.max


def parse_numeric(values) -> np.ndarray:
    """Parse raw values as float64; unparsable entries become NaN."""
    values = np.asarray(values).ravel()
    if values.dtype.kind in "fiub":
        return values.astype(np.float64)
    return pd.to_numeric(
        pd.Series(normalize_strings(values)), errors="coerce"
    ).to_numpy(dtype=np.float64)


def fit_length(values: np.ndarray, n: int, fill) -> np.ndarray:
    """Pad ``values`` with ``fill`` or truncate it to exactly ``n`` entries."""
    if len(values) >= n:
        return values[:n]
    pad = np.full(n - len(values), fill, dtype=values.dtype)
    return np.concatenate([values, pad])


async def fetch_column(
    accessor: ChunkedArrayAccessor, descriptor: ColumnDescriptor
) -> np.ndarray:
    """Fetch the raw values of a column, decoding categoricals."""
    if descriptor.is_categorical_encoded:
        return await accessor.read_categorical(descriptor.source_path)
    return await accessor.read_path(descriptor.source_path)


class LazyColumnLoader:
    """
    Loads row columns on demand and keeps per-column summaries.

    After a column loads, ``numeric_ranges`` (numeric columns) or
    ``categorical_values`` (categorical columns) hold its summary and the
    column is present in the row table for every row.

    Examples:
        >>> loader = LazyColumnLoader(accessor, table, descriptors, events)
        >>> asyncio.run(loader.ensure_loaded("total_counts"))
        >>> print(loader.numeric_ranges["total_counts"])
        NumericRange(min=112.0, max=40211.0)
    """

    def __init__(
        self,
        accessor: ChunkedArrayAccessor,
        row_table: RowTable,
        descriptors: list[ColumnDescriptor],
        events: EventLog | None = None,
        yield_delay: float = 0.01,
    ):
        self.accessor = accessor
        self.row_table = row_table
        self.descriptors = {d.name: d for d in descriptors}
        self.events = events if events is not None else EventLog()
        self.yield_delay = yield_delay

        self.loaded: set[str] = set()
        self.numeric_ranges: dict[str, NumericRange] = {}
        self.categorical_values: dict[str, set[str]] = {}
        self._in_flight: dict[str, asyncio.Task] = {}

    def is_loaded(self, name: str) -> bool:
        return name in self.loaded

    async def ensure_loaded(self, name: str) -> None:
        """
        Make sure column ``name`` is present in the row table.

        No-op if already loaded. Unknown names are logged and skipped. Fetch
        failures never propagate: the column is filled with ``0`` (numeric)
        or ``""`` (categorical), marked loaded and a degradation event is
        recorded.
        """
        if name in self.loaded:
            return

        descriptor = self.descriptors.get(name)
        if descriptor is None:
            logger.warning(f"Cannot load column {name}: no metadata available")
            return

        task = self._in_flight.get(name)
        if task is None:
            task = asyncio.ensure_future(self._load(descriptor))
            self._in_flight[name] = task
            task.add_done_callback(lambda _: self._in_flight.pop(name, None))

        # A cancelled waiter must not cancel the load other callers share
        await asyncio.shield(task)

    async def ensure_multiple(self, names) -> None:
        """Load several columns one after another, yielding between loads."""
        to_load = [name for name in dict.fromkeys(names) if name not in self.loaded]
        if not to_load:
            return

        logger.debug(f"Loading {len(to_load)} columns: {', '.join(to_load)}")
        for name in to_load:
            await self.ensure_loaded(name)
            await asyncio.sleep(self.yield_delay)

    async def _load(self, descriptor: ColumnDescriptor) -> None:
        name = descriptor.name
        n_cells = self.row_table.n_cells

        try:
            raw = await fetch_column(self.accessor, descriptor)
        except Exception as e:
            self.events.record("column", name, f"{type(e).__name__}: {e}")
            if descriptor.is_numeric:
                self.row_table.set_column(name, np.zeros(n_cells, dtype=np.float64))
                self.numeric_ranges.setdefault(name, NumericRange())
            else:
                self.row_table.set_column(name, np.full(n_cells, "", dtype=object))
                self.categorical_values.setdefault(name, set())
            self.loaded.add(name)
            return

        if descriptor.is_numeric:
            values = fit_length(parse_numeric(raw), n_cells, np.nan)
            value_range = self.numeric_ranges.setdefault(name, NumericRange())
            value_range.update(values)
            self.row_table.set_column(name, values)
            logger.info(
                f"Loaded numeric column {name}: "
                f"range [{value_range.min:.2f}, {value_range.max:.2f}]"
            )
        else:
            values = fit_length(normalize_strings(raw), n_cells, "")
            distinct = self.categorical_values.setdefault(name, set())
            distinct.update(v for v in set(values.tolist()) if v)
            self.row_table.set_column(name, values)
            logger.info(
                f"Loaded categorical column {name}: {len(distinct)} unique values"
            )

        self.loaded.add(name)


class GeneTableLoader:
    """
    Loads every gene (``var``) attribute once into a polars DataFrame.

    The frame has a ``gene`` column followed by one column per attribute.
    Dots in attribute names are replaced with underscores; ``field_names``
    maps each normalised name back to the stored one.
    """

    def __init__(
        self,
        accessor: ChunkedArrayAccessor,
        gene_names: tuple[str, ...],
        descriptors: list[ColumnDescriptor],
    ):
        self.accessor = accessor
        self.gene_names = tuple(gene_names)
        self.descriptors = list(descriptors)
        self.field_names: dict[str, str] = {}
        self._table: pl.DataFrame | None = None

    @property
    def is_loaded(self) -> bool:
        return self._table is not None

    async def ensure_gene_table(self) -> pl.DataFrame:
        if self._table is not None:
            return self._table

        n_genes = len(self.gene_names)
        columns: dict[str, pl.Series] = {
            "gene": pl.Series("gene", list(self.gene_names), dtype=pl.String)
        }

        for descriptor in self.descriptors:
            field_name = descriptor.name.replace(".", "_")
            self.field_names[field_name] = descriptor.name
            try:
                raw = await fetch_column(self.accessor, descriptor)
            except Exception as e:
                logger.warning(f"Could not load var column {descriptor.name}: {e}")
                columns[field_name] = pl.Series(field_name, [None] * n_genes)
                continue

            if descriptor.is_numeric:
                values = fit_length(parse_numeric(raw), n_genes, np.nan)
                columns[field_name] = pl.Series(field_name, values)
            else:
                values = fit_length(normalize_strings(raw), n_genes, "")
                columns[field_name] = pl.Series(
                    field_name, values.tolist(), dtype=pl.String
                )

        self._table = pl.DataFrame(list(columns.values()))
        logger.info(
            f"Loaded statistics for {n_genes} genes "
            f"with {len(self.descriptors)} columns"
        )
        return self._table
