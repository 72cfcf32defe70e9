"""
Discovery and loading of plot coordinates from ``obsm`` embeddings.

Every usable axis is a ``CoordinateSource``: one named column of a dataframe
embedding (e.g. ``Global_Spatial/global_x``) or one dimension of an array
embedding (e.g. ``X_umap[:, 1]``). Selectors of the form
``obsm:<embedding>:<column|index>`` identify sources in configuration and
user input.
"""

from dataclasses import dataclass, field

import numpy as np
from loguru import logger

from cellcarto.config import DEFAULT_CANDIDATE_EMBEDDINGS
from cellcarto.core.errors import EventLog, NoCoordinateSourceError, NotFoundError
from cellcarto.data.accessor import ChunkedArrayAccessor, SliceSpec
from cellcarto.data.loader import fit_length, parse_numeric
from cellcarto.data.store import join_path


@dataclass(frozen=True)
class CoordinateSource:
    """One plottable axis."""

    name: str
    embedding: str
    column_index: int
    column_name: str | None = None
    source_kind: str = "obsm"

    @property
    def display_name(self) -> str:
        if self.column_name is not None:
            return f"{self.source_kind}:{self.embedding}:{self.column_name}"
        return f"{self.source_kind}:{self.embedding}:dim{self.column_index}"

    @property
    def selector(self) -> str:
        key = self.column_name if self.column_name is not None else self.column_index
        return f"{self.source_kind}:{self.embedding}:{key}"


@dataclass(frozen=True)
class CoordinateSelection:
    """The sources currently mapped to the x, y and optional z axes."""

    x: CoordinateSource
    y: CoordinateSource
    z: CoordinateSource | None = None


@dataclass(frozen=True)
class CoordinateSources:
    """All discovered sources, in discovery order."""

    obsm: tuple[CoordinateSource, ...] = field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.obsm)

    def __iter__(self):
        return iter(self.obsm)

    def find(self, embedding: str, column_name: str | None = None, column_index=None):
        for source in self.obsm:
            if source.embedding != embedding:
                continue
            if column_name is not None and source.column_name == column_name:
                return source
            if column_index is not None and source.column_index == column_index:
                return source
        return None

    def for_embedding(self, embedding: str) -> list[CoordinateSource]:
        return [s for s in self.obsm if s.embedding == embedding]


def _dims_from_shape(shape) -> int:
    shape = list(shape or [])
    if len(shape) == 2:
        return int(shape[1])
    if len(shape) == 1:
        return 1
    return 0


class CoordinateCatalog:
    """
    Discovers coordinate sources and loads their values.

    Examples:
        >>> catalog = CoordinateCatalog(accessor, events)
        >>> sources = asyncio.run(catalog.discover())
        >>> print([s.display_name for s in sources][:2])
        ['obsm:Global_Spatial:global_x', 'obsm:Global_Spatial:global_y']
        >>> selection = catalog.default_selection()
        >>> x = asyncio.run(catalog.load_values(selection.x, n_cells=1000))
    """

    def __init__(
        self,
        accessor: ChunkedArrayAccessor,
        events: EventLog | None = None,
        candidate_embeddings: tuple[str, ...] = DEFAULT_CANDIDATE_EMBEDDINGS,
        max_dims: int = 20,
        probe_cap: int = 100,
    ):
        self.accessor = accessor
        self.events = events if events is not None else EventLog()
        self.candidate_embeddings = tuple(candidate_embeddings)
        self.max_dims = max_dims
        self.probe_cap = probe_cap
        self.sources = CoordinateSources()

    @property
    def store(self):
        return self.accessor.store

    async def discover(self) -> CoordinateSources:
        """
        Probe the candidate embeddings under ``obsm``.

        Returns:
            CoordinateSources (empty when ``obsm`` has no attribute document).
        """
        try:
            await self.store.get_attrs("obsm")
        except NotFoundError:
            logger.warning("No obsm attributes found; no coordinate sources")
            self.sources = CoordinateSources()
            return self.sources

        found: list[CoordinateSource] = []
        for embedding in dict.fromkeys(self.candidate_embeddings):
            path = join_path("obsm", embedding)
            try:
                attrs = await self.store.get_attrs(path)
            except NotFoundError:
                continue
            logger.debug(f"Found embedding: {embedding}")

            if attrs.get("encoding-type") == "dataframe":
                for i, column in enumerate(attrs.get("column-order", [])):
                    found.append(
                        CoordinateSource(
                            name=str(column),
                            embedding=embedding,
                            column_index=i,
                            column_name=str(column),
                        )
                    )
                continue

            n_dims = await self.count_dimensions(embedding)
            if n_dims is None:
                n_dims = min(self.max_dims, self.probe_cap)
                self.events.record(
                    "embedding",
                    embedding,
                    f"dimension count unknown after {self.probe_cap} probes; "
                    f"exposing the first {n_dims}",
                )
            if n_dims == 0:
                logger.warning(f"Could not determine dimensions for {embedding}")
                continue

            shown = min(n_dims, self.max_dims)
            for dim in range(shown):
                found.append(
                    CoordinateSource(
                        name=f"{embedding}_dim{dim}",
                        embedding=embedding,
                        column_index=dim,
                    )
                )
            logger.debug(f"Added {shown} of {n_dims} dimensions for {embedding}")

        self.sources = CoordinateSources(obsm=tuple(found))
        logger.info(f"Found {len(self.sources)} coordinate sources")
        return self.sources

    async def count_dimensions(self, embedding: str) -> int | None:
        """
        Number of dimensions of an array embedding.

        Uses the opened array's shape, then the raw ``.zarray`` shape, then
        probes ``<dim>.0`` chunk keys.

        Returns:
            The dimension count (0 if nothing was found), or None when every
            probe up to the cap succeeded and the count is unknown.
        """
        path = join_path("obsm", embedding)

        try:
            handle = await self.accessor.open_array(path)
            n_dims = _dims_from_shape(handle.shape)
            if n_dims:
                return n_dims
        except Exception as e:
            logger.debug(f"Could not open {path} as an array: {e}")

        try:
            meta = await self.store.get_array_meta(path)
            n_dims = _dims_from_shape(meta.get("shape"))
            if n_dims:
                return n_dims
        except Exception as e:
            logger.debug(f"No array metadata for {path}: {e}")

        for dim in range(self.probe_cap):
            if not await self.store.contains(join_path(path, f"{dim}.0")):
                return dim
        return None

    async def load_values(self, source: CoordinateSource, n_cells: int) -> np.ndarray:
        """
        Load one axis as a float64 vector of ``n_cells`` values.

        Tries the named column, then a column slice of the 2D array, then the
        concatenation of ``<idx>.<k>`` chunk arrays. Short results are padded
        with zeros. Never raises: on total failure a degradation event is
        recorded and zeros are returned.
        """
        path = join_path("obsm", source.embedding)

        if source.column_name is not None:
            try:
                raw = await self.accessor.read_path(join_path(path, source.column_name))
                return self._fit(raw, n_cells)
            except Exception as e:
                logger.debug(f"Could not load {source.display_name} by name: {e}")

        try:
            handle = await self.accessor.open_array(path)
            if handle.ndim == 2:
                column = SliceSpec(source.column_index, source.column_index + 1, axis=1)
                raw = await self.accessor.read_array(handle, column)
                return self._fit(raw[:, 0], n_cells)
            if handle.ndim == 1 and source.column_index == 0:
                return self._fit(await self.accessor.read_array(handle), n_cells)
        except Exception as e:
            logger.debug(f"Could not slice {path}: {e}")

        chunks = []
        loaded = 0
        chunk_idx = 0
        while loaded < n_cells:
            chunk_path = join_path(path, f"{source.column_index}.{chunk_idx}")
            try:
                chunk = await self.accessor.read_path(chunk_path)
            except Exception:
                break
            chunks.append(parse_numeric(chunk))
            loaded += len(chunks[-1])
            chunk_idx += 1

        if loaded > 0:
            return self._fit(np.concatenate(chunks), n_cells)

        self.events.record(
            "coordinate", source.display_name, "could not load any values; using zeros"
        )
        return np.zeros(n_cells, dtype=np.float64)

    @staticmethod
    def _fit(raw, n_cells: int) -> np.ndarray:
        return fit_length(parse_numeric(raw), n_cells, 0.0)

    def default_selection(self) -> CoordinateSelection:
        """
        Pick the startup axes.

        ``Global_Spatial`` ``global_x``/``global_y`` if present, else
        ``spatial`` (``x`` or index 0, ``y`` or index 1), else the first two
        sources. No z axis.

        Raises:
            NoCoordinateSourceError: If fewer than two sources exist.
        """
        sources = self.sources
        x = sources.find("Global_Spatial", column_name="global_x")
        y = sources.find("Global_Spatial", column_name="global_y")
        if x is not None and y is not None:
            return CoordinateSelection(x=x, y=y)

        x = sources.find("spatial", column_name="x", column_index=0)
        y = sources.find("spatial", column_name="y", column_index=1)
        if x is not None and y is not None:
            return CoordinateSelection(x=x, y=y)

        if len(sources) >= 2:
            return CoordinateSelection(x=sources.obsm[0], y=sources.obsm[1])

        raise NoCoordinateSourceError(
            "No obsm coordinate sources found. Check the zarr store structure."
        )

    def parse_selector(self, value: str | None) -> CoordinateSource | None:
        """
        Resolve ``obsm:<embedding>:<column|index>`` to a discovered source.

        An integer (or ``dimN``) key matches by column index; a name matches
        by column name, falling back to the embedding's first source.
        ``None``, ``""`` and ``"none"`` resolve to None.
        """
        if not value or value == "none":
            return None
        parts = value.split(":", 2)
        if len(parts) < 3 or parts[0] != "obsm":
            return None

        embedding, key = parts[1], parts[2]
        index_key = key[3:] if key.startswith("dim") else key
        try:
            return self.sources.find(embedding, column_index=int(index_key))
        except ValueError:
            pass

        match = self.sources.find(embedding, column_name=key)
        if match is not None:
            return match
        candidates = self.sources.for_embedding(embedding)
        return candidates[0] if candidates else None
