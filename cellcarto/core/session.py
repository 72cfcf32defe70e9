import asyncio
from pathlib import Path
from typing import Any

import numpy as np
import polars as pl
from loguru import logger

from cellcarto.config import CartoConfig
from cellcarto.core.errors import EventLog
from cellcarto.core.expression import GeneExpressionCache, SparseGeneResolver
from cellcarto.core.filters import (
    Debouncer,
    FilterKind,
    FilterPipeline,
    FilterPredicate,
)
from cellcarto.core.row_table import RowTable
from cellcarto.core.sampling import sample
from cellcarto.data.accessor import ChunkedArrayAccessor
from cellcarto.data.coordinates import (
    CoordinateCatalog,
    CoordinateSelection,
    CoordinateSource,
)
from cellcarto.data.loader import GeneTableLoader, LazyColumnLoader
from cellcarto.data.registry import (
    ColumnDescriptor,
    ColumnRegistry,
    SparseMatrixHandle,
)
from cellcarto.data.store import ArrayStore, open_store


class CartoSession:
    """
    One opened dataset and everything a viewer needs to explore it.

    A session owns the row table, the lazy column loader, the coordinate
    catalog, the gene resolver with its single-slot cache and the filter
    pipeline. It is created once per dataset and discarded on close; nothing
    is shared between sessions.

    Key Features:
        - Row attributes are fetched only when first needed
        - Per-gene expression is read from the CSC matrix one gene at a time
        - Filters are combined with AND and recomputed in full on each change
        - Failed column and coordinate loads degrade to defaults and are
          recorded in ``events``

    Examples:
        >>> # Open a local store
        >>> session = asyncio.run(CartoSession.open("data/ovary.zarr"))
        >>> print(f"Cells: {session.n_cells:,}")
        Cells: 52,394

        >>> # Filter by cell type
        >>> async def t_cells(session):
        ...     predicate = session.add_filter()
        ...     await session.configure_filter(predicate.id, "cell_type")
        ...     session.filters.set_values(predicate.id, {"T cell"})
        ...     return await session.recompute()
        >>> visible = asyncio.run(t_cells(session))

        >>> # Colour by a gene
        >>> values = asyncio.run(session.select_gene("CD3E"))
        >>> print(values.shape)
        (52394,)
    """

    def __init__(self, store: ArrayStore, config: CartoConfig | None = None):
        """
        Build an empty session over ``store``. Use ``open`` to load a dataset.

        Args:
            store: Array store holding an AnnData-style layout.
            config: Session configuration. Defaults to ``CartoConfig()``.
        """
        self.store = store
        self.config = config or CartoConfig()
        self.events = EventLog(self.config.event_log_size)
        self.accessor = ChunkedArrayAccessor(store)
        self.registry = ColumnRegistry(
            self.accessor, known_numeric_columns=self.config.known_numeric_columns
        )
        self.catalog = CoordinateCatalog(
            self.accessor,
            self.events,
            candidate_embeddings=self.config.candidate_embeddings,
            max_dims=self.config.max_embedding_dims,
            probe_cap=self.config.dim_probe_cap,
        )
        self.filters = FilterPipeline()
        self.gene_cache = GeneExpressionCache()

        self.row_table = RowTable(0)
        self.descriptors: dict[str, ColumnDescriptor] = {}
        self.loader: LazyColumnLoader | None = None
        self.selection: CoordinateSelection | None = None
        self.matrix: SparseMatrixHandle | None = None
        self.resolver: SparseGeneResolver | None = None
        self.gene_loader: GeneTableLoader | None = None
        self.visible_indices = np.empty(0, dtype=np.int64)

        self._debouncer = Debouncer(self.config.filter_debounce)
        self._gene_request = 0

    @classmethod
    async def open(
        cls,
        target: "str | Path | ArrayStore",
        config: CartoConfig | None = None,
        storage_options: dict | None = None,
    ) -> "CartoSession":
        """
        Open a dataset and prepare it for viewing.

        Reads the cell index, discovers row columns and coordinate sources,
        loads the default x/y axes and describes the expression matrix. Row
        attributes themselves are not fetched.

        Args:
            target: Local zarr directory, fsspec URL or an ArrayStore.
            config: Session configuration.
            storage_options: Options forwarded to fsspec for remote targets.

        Returns:
            CartoSession with every row visible.

        Raises:
            NotFoundError: If the cell index or the ``obs`` attributes are missing.
            NoCoordinateSourceError: If fewer than two coordinate sources exist.
        """
        store = open_store(target, storage_options=storage_options)
        session = cls(store, config)
        try:
            await session._bootstrap()
        except Exception:
            await store.close()
            raise
        return session

    async def _bootstrap(self) -> None:
        barcodes = await self.registry.read_index("obs")
        self.row_table = RowTable(len(barcodes))
        self.row_table.set_column("barcode", barcodes)
        logger.info(f"Found {self.n_cells:,} cells")

        columns = await self.registry.discover_row_columns()
        self.descriptors = {c.name: c for c in columns}
        self.loader = LazyColumnLoader(
            self.accessor,
            self.row_table,
            columns,
            events=self.events,
            yield_delay=self.config.yield_delay,
        )

        await self.catalog.discover()
        self.selection = self.catalog.default_selection()
        await self._apply_selection(self.selection)

        await self._discover_genes()

        self.visible_indices = np.arange(self.n_cells, dtype=np.int64)
        self._display_initialization_message()

    async def _discover_genes(self) -> None:
        try:
            self.matrix = await self.registry.discover_matrix()
            gene_columns = await self.registry.discover_gene_columns()
        except Exception as e:
            self.events.record("matrix", "X", f"{type(e).__name__}: {e}")
            self.matrix = None
            return

        if self.matrix.row_count != self.n_cells:
            logger.warning(
                f"Matrix has {self.matrix.row_count:,} rows but the index has "
                f"{self.n_cells:,} cells"
            )
        self.resolver = SparseGeneResolver(self.accessor, self.matrix)
        self.gene_loader = GeneTableLoader(
            self.accessor, self.matrix.gene_names, gene_columns
        )

    async def _apply_selection(self, selection: CoordinateSelection) -> None:
        axes = [selection.x, selection.y] + (
            [selection.z] if selection.z is not None else []
        )
        values = await asyncio.gather(
            *(self.catalog.load_values(source, self.n_cells) for source in axes)
        )
        self.row_table.set_column("x", np.nan_to_num(values[0], nan=0.0))
        self.row_table.set_column("y", np.nan_to_num(values[1], nan=0.0))
        if selection.z is not None:
            self.row_table.set_column("z", np.nan_to_num(values[2], nan=0.0))
        else:
            self.row_table.set_column("z", np.zeros(self.n_cells, dtype=np.float64))
        self.selection = selection
        logger.info(
            f"Selected coordinates: x={selection.x.display_name}, "
            f"y={selection.y.display_name}, "
            f"z={selection.z.display_name if selection.z else 'None'}"
        )

    def _display_initialization_message(self):
        """Log a short summary of the opened dataset"""
        n_genes = self.matrix.col_count if self.matrix else 0
        categorical = len(self.categorical_columns)
        continuous = len(self.continuous_columns)

        logger.info("")
        logger.info("🧬 Dataset opened")
        logger.info(f"   • Shape: {self.n_cells:,} cells × {n_genes:,} genes")
        logger.info(
            f"   • Row attributes: {categorical} categorical, {continuous} continuous"
        )
        logger.info(f"   • Coordinate sources: {len(self.catalog.sources)}")
        if len(self.events):
            logger.info(f"   • Degraded loads: {len(self.events)}")
        logger.info("   • Status: Ready (row attributes load on demand)")
        logger.info("")

    @property
    def n_cells(self) -> int:
        return self.row_table.n_cells

    @property
    def n_genes(self) -> int:
        return self.matrix.col_count if self.matrix else 0

    @property
    def gene_names(self) -> tuple[str, ...]:
        return self.matrix.gene_names if self.matrix else ()

    @property
    def categorical_columns(self) -> list[str]:
        return [name for name, d in self.descriptors.items() if not d.is_numeric]

    @property
    def continuous_columns(self) -> list[str]:
        return [name for name, d in self.descriptors.items() if d.is_numeric]

    @property
    def loaded_columns(self) -> set[str]:
        return set(self.loader.loaded) if self.loader else set()

    async def ensure_loaded(self, name: str) -> None:
        """Load row attribute ``name`` into the row table if needed."""
        await self.loader.ensure_loaded(name)

    async def ensure_multiple(self, names) -> None:
        """Load several row attributes, one after another."""
        await self.loader.ensure_multiple(names)

    # Filters

    def add_filter(self) -> FilterPredicate:
        return self.filters.add()

    async def configure_filter(self, filter_id: str, attribute: str) -> FilterPredicate:
        """
        Point a filter at ``attribute``, loading it first.

        Continuous attributes start with their full range and categorical
        attributes with every value selected, so a freshly configured filter
        keeps every row.

        Raises:
            KeyError: If ``attribute`` is not a known row attribute.
        """
        descriptor = self.descriptors.get(attribute)
        if descriptor is None:
            raise KeyError(f"Unknown row attribute: {attribute}")

        await self.loader.ensure_loaded(attribute)
        if descriptor.is_numeric:
            return self.filters.configure(
                filter_id,
                attribute,
                FilterKind.CONTINUOUS,
                self.loader.numeric_ranges.get(attribute),
            )
        return self.filters.configure(
            filter_id,
            attribute,
            FilterKind.CATEGORICAL,
            self.loader.categorical_values.get(attribute, set()),
        )

    def remove_filter(self, filter_id: str) -> None:
        self.filters.remove(filter_id)

    async def recompute(self) -> np.ndarray:
        """
        Load every filtered attribute, then recompute the visible indices.

        Returns:
            The new visible index set.
        """
        await self.loader.ensure_multiple(self.filters.referenced_attributes())
        self.visible_indices = self.filters.recompute(
            self.row_table, loaded_columns=self.loader.loaded
        )
        logger.info(
            f"Visible cells: {len(self.visible_indices):,} of {self.n_cells:,}"
        )
        return self.visible_indices

    def schedule_recompute(self) -> asyncio.Task:
        """Recompute after the debounce delay, replacing any pending request."""
        return self._debouncer.schedule(self.recompute)

    def render_indices(
        self,
        fraction: float | None = None,
        cap: int | None = None,
        rng: np.random.Generator | None = None,
    ) -> np.ndarray:
        """
        Sample the visible indices for rendering.

        Args:
            fraction: Share of visible cells to keep (config default if omitted).
            cap: Maximum number of indices (``config.max_points`` if omitted).
            rng: Random generator for reproducible samples.
        """
        return sample(
            self.visible_indices,
            fraction=self.config.sample_fraction if fraction is None else fraction,
            cap=self.config.max_points if cap is None else cap,
            rng=rng,
        )

    # Genes

    async def select_gene(self, gene_name: str) -> np.ndarray | None:
        """
        Load ``gene_name`` into the gene cache.

        Returns:
            The expression vector, or None if the gene is unknown or a later
            selection superseded this one while it was loading.
        """
        self._gene_request += 1
        request = self._gene_request

        if self.gene_cache.holds(gene_name):
            return self.gene_cache.values
        if self.resolver is None:
            logger.warning("No expression matrix available")
            return None

        values = await self.resolver.get_expression(gene_name)
        if request != self._gene_request:
            logger.debug(f"Discarding superseded expression for {gene_name}")
            return None
        if values is None:
            return None

        self.gene_cache.store(gene_name, values)
        return values

    def clear_gene(self) -> None:
        # Invalidate any selection still loading
        self._gene_request += 1
        self.gene_cache.clear()

    def suggest_genes(self, query: str, limit: int = 20) -> list[str]:
        """Gene names for autocompletion: prefix matches first, then substrings."""
        if self.resolver is None:
            return []
        return self.resolver.suggest(query, limit=limit)

    async def gene_table(self) -> pl.DataFrame:
        """Per-gene attribute table (``gene`` plus every ``var`` column)."""
        if self.gene_loader is None:
            return pl.DataFrame({"gene": pl.Series("gene", [], dtype=pl.String)})
        return await self.gene_loader.ensure_gene_table()

    # Coordinates

    async def set_coordinates(
        self,
        x: "str | CoordinateSource",
        y: "str | CoordinateSource",
        z: "str | CoordinateSource | None" = None,
    ) -> CoordinateSelection:
        """
        Change the plotted axes and reload ``x``/``y``/``z`` in the row table.

        Args:
            x: Selector (``obsm:<embedding>:<column|index>``) or source.
            y: Selector or source.
            z: Selector, source, or None / ``"none"`` for a flat plot.

        Raises:
            ValueError: If ``x`` or ``y`` does not resolve to a source.
        """
        resolved = [
            axis
            if isinstance(axis, CoordinateSource)
            else self.catalog.parse_selector(axis)
            for axis in (x, y, z)
        ]
        if resolved[0] is None or resolved[1] is None:
            raise ValueError(f"Invalid coordinate selection: x={x!r}, y={y!r}")

        selection = CoordinateSelection(x=resolved[0], y=resolved[1], z=resolved[2])
        await self._apply_selection(selection)
        return selection

    # Lifecycle

    def summary(self) -> dict[str, Any]:
        """Plain-data description of the session state."""
        return {
            "n_cells": self.n_cells,
            "n_genes": self.n_genes,
            "categorical_columns": self.categorical_columns,
            "continuous_columns": self.continuous_columns,
            "loaded_columns": sorted(self.loaded_columns),
            "coordinate_sources": [s.display_name for s in self.catalog.sources],
            "selection": {
                "x": self.selection.x.display_name if self.selection else None,
                "y": self.selection.y.display_name if self.selection else None,
                "z": self.selection.z.display_name
                if self.selection and self.selection.z
                else None,
            },
            "visible": int(len(self.visible_indices)),
            "degraded_loads": len(self.events),
        }

    def info(self):
        """Print information about the session"""
        summary = self.summary()
        output_lines = ["Cellcarto Session"]
        output_lines.append(
            f"  Shape: {summary['n_cells']:,} cells × {summary['n_genes']:,} genes"
        )

        for label, key in (
            ("Categorical attributes", "categorical_columns"),
            ("Continuous attributes", "continuous_columns"),
            ("Coordinate sources", "coordinate_sources"),
        ):
            names = summary[key]
            output_lines.append(f"  {label}: {len(names)}")
            if names:
                output_lines.append(
                    f"    {', '.join(names[:5])}{'...' if len(names) > 5 else ''}"
                )

        selection = summary["selection"]
        output_lines.append("  Selected coordinates:")
        output_lines.append(f"    x: {selection['x']}")
        output_lines.append(f"    y: {selection['y']}")
        output_lines.append(f"    z: {selection['z'] or 'None'}")
        output_lines.append(f"  Visible cells: {summary['visible']:,}")

        if summary["degraded_loads"]:
            output_lines.append(f"  Degraded loads: {summary['degraded_loads']}")
            for event in self.events:
                output_lines.append(
                    f"    [{event.kind}] {event.target}: {event.reason}"
                )

        print("\n".join(output_lines))
        logger.info("Session info displayed")

    async def close(self) -> None:
        """Cancel pending work and release the store."""
        self._debouncer.cancel()
        await self.store.close()

    async def __aenter__(self) -> "CartoSession":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
