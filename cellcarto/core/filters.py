"""
Filter predicates over row attributes.

A predicate starts unconfigured and becomes categorical (set membership) or
continuous (inclusive range) once an attribute is chosen. Configured
predicates are combined with AND; unconfigured or empty predicates do not
filter anything. The visible index set is always recomputed in full.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np
import polars as pl
from loguru import logger

from cellcarto.core.row_table import ROW_INDEX_COLUMN, RowTable


class FilterKind(str, Enum):
    """Predicate types"""

    CATEGORICAL = "categorical"
    CONTINUOUS = "continuous"


@dataclass
class FilterPredicate:
    """
    One filter row: an attribute plus either selected values or a range.

    Attributes:
        id: Stable identifier within the pipeline.
        attribute: Row attribute the predicate applies to (None until chosen).
        kind: Categorical or continuous (None until chosen).
        selected_values: Accepted strings for categorical predicates.
        value_range: Inclusive ``(min, max)`` for continuous predicates.
    """

    id: str
    attribute: str | None = None
    kind: FilterKind | None = None
    selected_values: set[str] = field(default_factory=set)
    value_range: tuple[float, float] | None = None

    @property
    def is_configured(self) -> bool:
        return self.attribute is not None and self.kind is not None

    @property
    def is_active(self) -> bool:
        """Whether the predicate removes anything when applied."""
        if not self.is_configured:
            return False
        if self.kind == FilterKind.CONTINUOUS:
            return self.value_range is not None
        return len(self.selected_values) > 0

    def expression(self) -> pl.Expr:
        """polars boolean expression selecting the rows this predicate keeps."""
        column = pl.col(self.attribute)
        if self.kind == FilterKind.CONTINUOUS:
            lo, hi = self.value_range
            expr = column.is_between(lo, hi, closed="both") & column.is_not_nan()
        else:
            expr = column.cast(pl.String).is_in(sorted(self.selected_values))
        return expr.fill_null(False)


class FilterPipeline:
    """
    Ordered list of filter predicates.

    Examples:
        >>> pipeline = FilterPipeline()
        >>> predicate = pipeline.add()
        >>> pipeline.configure(predicate.id, "total_counts", FilterKind.CONTINUOUS,
        ...                    NumericRange(min=0.0, max=500.0))
        >>> pipeline.set_range(predicate.id, 100.0, 200.0)
        >>> visible = pipeline.recompute(row_table)
    """

    def __init__(self):
        self.predicates: list[FilterPredicate] = []
        self._next_id = 0

    def __len__(self) -> int:
        return len(self.predicates)

    def __iter__(self):
        return iter(list(self.predicates))

    def add(self) -> FilterPredicate:
        """Append a new unconfigured predicate."""
        predicate = FilterPredicate(id=f"filter_{self._next_id}")
        self._next_id += 1
        self.predicates.append(predicate)
        return predicate

    def get(self, filter_id: str) -> FilterPredicate:
        for predicate in self.predicates:
            if predicate.id == filter_id:
                return predicate
        raise KeyError(f"Unknown filter: {filter_id}")

    def remove(self, filter_id: str) -> None:
        self.predicates.remove(self.get(filter_id))

    def clear(self) -> None:
        self.predicates.clear()

    def configure(
        self, filter_id: str, attribute: str, kind: FilterKind, summary: Any = None
    ) -> FilterPredicate:
        """
        Point a predicate at ``attribute`` and seed its defaults.

        Args:
            filter_id: Predicate to configure.
            attribute: Row attribute name.
            kind: Categorical or continuous.
            summary: Column summary seeding the defaults. A continuous
                predicate takes its ``(min, max)`` (``(0, 1)`` when the range
                is empty or missing); a categorical predicate selects every
                value in the set.
        """
        predicate = self.get(filter_id)
        predicate.attribute = attribute
        predicate.kind = FilterKind(kind)
        predicate.selected_values = set()
        predicate.value_range = None

        if predicate.kind == FilterKind.CONTINUOUS:
            lo = getattr(summary, "min", None)
            hi = getattr(summary, "max", None)
            if lo is None or hi is None or not np.isfinite([lo, hi]).all() or lo > hi:
                lo, hi = 0.0, 1.0
            predicate.value_range = (float(lo), float(hi))
        else:
            predicate.selected_values = {str(v) for v in (summary or ())}
        return predicate

    def set_range(self, filter_id: str, lo: float, hi: float) -> FilterPredicate:
        """Set both bounds of a continuous predicate."""
        if lo > hi:
            raise ValueError(f"Range minimum {lo} exceeds maximum {hi}")
        predicate = self.get(filter_id)
        predicate.value_range = (float(lo), float(hi))
        return predicate

    def set_range_min(self, filter_id: str, value: float) -> FilterPredicate:
        """Move the lower bound; an upper bound below it is pushed up."""
        predicate = self.get(filter_id)
        _, hi = predicate.value_range or (value, value)
        predicate.value_range = (float(value), float(max(hi, value)))
        return predicate

    def set_range_max(self, filter_id: str, value: float) -> FilterPredicate:
        """Move the upper bound; a lower bound above it is pushed down."""
        predicate = self.get(filter_id)
        lo, _ = predicate.value_range or (value, value)
        predicate.value_range = (float(min(lo, value)), float(value))
        return predicate

    def set_values(self, filter_id: str, values) -> FilterPredicate:
        predicate = self.get(filter_id)
        predicate.selected_values = {str(v) for v in values}
        return predicate

    def referenced_attributes(self) -> list[str]:
        """Attributes of configured predicates, in order, without duplicates."""
        return list(
            dict.fromkeys(p.attribute for p in self.predicates if p.is_configured)
        )

    def recompute(
        self, row_table: RowTable, loaded_columns: set[str] | None = None
    ) -> np.ndarray:
        """
        Compute the visible row indices.

        Args:
            row_table: Table holding every referenced attribute.
            loaded_columns: Names known to be fully loaded. Defaults to the
                columns present in the table.

        Returns:
            Ascending int64 array of row indices passing every active predicate.

        Raises:
            ValueError: If a configured predicate references an unloaded attribute.
        """
        loaded = set(row_table.columns) if loaded_columns is None else loaded_columns
        for attribute in self.referenced_attributes():
            if attribute not in loaded or attribute not in row_table:
                raise ValueError(f"Filter attribute '{attribute}' is not loaded")

        expressions = []
        for predicate in self.predicates:
            if not predicate.is_active:
                logger.debug(f"Skipping inactive filter {predicate.id}")
                continue
            values = row_table[predicate.attribute]
            if predicate.kind == FilterKind.CONTINUOUS and values.dtype.kind != "f":
                logger.warning(
                    f"Skipping continuous filter on non-numeric {predicate.attribute}"
                )
                continue
            expressions.append(predicate.expression())

        if not expressions:
            return np.arange(row_table.n_cells, dtype=np.int64)

        frame = row_table.to_polars(
            self.referenced_attributes(), with_row_index=True
        )
        visible = frame.filter(pl.all_horizontal(expressions))
        indices = visible[ROW_INDEX_COLUMN].to_numpy().astype(np.int64)
        logger.debug(
            f"Applied {len(expressions)} filters: "
            f"{row_table.n_cells} -> {len(indices)} rows"
        )
        return indices


class Debouncer:
    """
    Collapses rapid calls into one delayed callback.

    Scheduling while a callback is pending cancels the pending timer and
    starts a new one. A callback that has already started is left to finish.
    """

    def __init__(self, delay: float = 0.1):
        self.delay = delay
        self._pending: asyncio.Task | None = None
        self._callback: Callable[[], Awaitable[Any]] | None = None

    @property
    def pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def schedule(self, callback: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        """Run ``callback`` after the delay unless rescheduled first."""
        self.cancel()
        self._callback = callback
        self._pending = asyncio.ensure_future(self._run(callback))
        return self._pending

    async def _run(self, callback: Callable[[], Awaitable[Any]]) -> Any:
        await asyncio.sleep(self.delay)
        if self._pending is asyncio.current_task():
            self._pending = None
            self._callback = None
        return await callback()

    def cancel(self) -> None:
        """Cancel the pending timer, if any."""
        if self._pending is not None:
            self._pending.cancel()
        self._pending = None
        self._callback = None

    async def flush(self) -> Any:
        """Run the pending callback now instead of waiting for the timer."""
        if not self.pending:
            return None
        callback = self._callback
        self.cancel()
        return await callback()
