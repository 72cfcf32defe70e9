"""
Per-gene expression access over a CSC matrix.

Only the ``indptr`` array is read in full (one entry per gene plus one). For
each requested gene, the ``[start, end)`` slices of ``indices`` and ``data``
are read and scattered into a dense per-cell vector.
"""

import asyncio
import time
from dataclasses import dataclass

import numpy as np
from loguru import logger

from cellcarto.core.errors import GeneNotFoundError
from cellcarto.data.accessor import ChunkedArrayAccessor, SliceSpec
from cellcarto.data.registry import SparseMatrixHandle
from cellcarto.data.store import ArrayHandle, join_path

CLIP_STEP = 1e-4


@dataclass
class _MatrixArrays:
    indptr: np.ndarray
    indices: ArrayHandle
    data: ArrayHandle


class SparseGeneResolver:
    """
    Resolves gene names to dense expression vectors.

    The first request opens the matrix arrays and reads ``indptr``; concurrent
    first requests share that one initialisation. After that each request
    reads only the non-zero entries of its gene.

    Examples:
        >>> resolver = SparseGeneResolver(accessor, matrix)
        >>> values = asyncio.run(resolver.get_expression("CD3E"))
        >>> print(values.dtype, values.shape)
        float32 (52394,)
    """

    def __init__(self, accessor: ChunkedArrayAccessor, matrix: SparseMatrixHandle):
        self.accessor = accessor
        self.matrix = matrix

        # First occurrence wins for duplicated gene names
        self._gene_index: dict[str, int] = {}
        for i, name in enumerate(matrix.gene_names):
            self._gene_index.setdefault(name, i)

        self._arrays: _MatrixArrays | None = None
        self._init_task: asyncio.Task | None = None

        if not matrix.is_csc:
            logger.warning(
                f"Matrix encoding {matrix.encoding} is not csc_matrix; "
                "per-gene slicing assumes CSC layout"
            )

    @property
    def gene_names(self) -> tuple[str, ...]:
        return self.matrix.gene_names

    def __contains__(self, gene_name: str) -> bool:
        return gene_name in self._gene_index

    def resolve_index(self, gene_name: str) -> int:
        """
        Column index of ``gene_name``.

        Raises:
            GeneNotFoundError: If the gene is not in the matrix.
        """
        try:
            return self._gene_index[gene_name]
        except KeyError:
            raise GeneNotFoundError(gene_name) from None

    async def _open_arrays(self) -> _MatrixArrays:
        base = self.matrix.path
        indptr_handle, indices, data = await asyncio.gather(
            self.accessor.open_array(join_path(base, "indptr")),
            self.accessor.open_array(join_path(base, "indices")),
            self.accessor.open_array(join_path(base, "data")),
        )
        indptr = (await self.accessor.read_array(indptr_handle)).astype(np.int64)
        logger.debug(f"indptr loaded: {len(indptr)} entries")
        return _MatrixArrays(indptr=indptr, indices=indices, data=data)

    async def _ensure_arrays(self) -> _MatrixArrays:
        if self._arrays is not None:
            return self._arrays

        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._open_arrays())
        try:
            self._arrays = await asyncio.shield(self._init_task)
        except Exception:
            # Let the next request retry the initialisation
            self._init_task = None
            raise
        return self._arrays

    async def fetch_expression(self, gene_name: str) -> np.ndarray:
        """
        Dense float32 expression vector for ``gene_name``, one value per cell.

        Raises:
            GeneNotFoundError: If the gene is not in the matrix.
            NotFoundError: If the matrix arrays are missing from the store.
        """
        gene_idx = self.resolve_index(gene_name)
        arrays = await self._ensure_arrays()

        result = np.zeros(self.matrix.row_count, dtype=np.float32)
        start = int(arrays.indptr[gene_idx])
        end = int(arrays.indptr[gene_idx + 1])

        if end <= start:
            logger.debug(f"Gene {gene_name}: no expression (all zeros)")
            return result

        t0 = time.perf_counter()
        span = SliceSpec(start, end)
        indices, data = await asyncio.gather(
            self.accessor.read_array(arrays.indices, span),
            self.accessor.read_array(arrays.data, span),
        )
        result[indices.astype(np.int64)] = data
        logger.debug(
            f"Gene {gene_name}: loaded {len(indices)} non-zero values "
            f"in {(time.perf_counter() - t0) * 1000:.0f}ms"
        )
        return result

    async def get_expression(self, gene_name: str) -> np.ndarray | None:
        """Like ``fetch_expression`` but returns None for an unknown gene."""
        try:
            return await self.fetch_expression(gene_name)
        except GeneNotFoundError as e:
            logger.warning(str(e))
            return None

    def suggest(self, query: str, limit: int = 20) -> list[str]:
        """
        Gene names matching ``query`` case-insensitively.

        Prefix matches come first, then names containing the query elsewhere,
        each in matrix order.
        """
        needle = query.strip().lower()
        if not needle:
            return []
        starts, contains = [], []
        for name in self._gene_index:
            lowered = name.lower()
            if lowered.startswith(needle):
                starts.append(name)
            elif needle in lowered:
                contains.append(name)
        return (starts + contains)[:limit]


class GeneExpressionCache:
    """
    Single-slot cache of the selected gene's expression and display range.

    ``actual_min`` is 0 and ``actual_max`` the largest positive value (1.0
    when the gene has no expression). The clip bounds used for colour
    scaling start at the actual range and always satisfy
    ``clip_min < clip_max``.
    """

    def __init__(self):
        self.clear()

    def clear(self) -> None:
        self.gene_name: str | None = None
        self.values: np.ndarray | None = None
        self.actual_min = 0.0
        self.actual_max = 1.0
        self.clip_min = 0.0
        self.clip_max = 1.0

    def holds(self, gene_name: str) -> bool:
        return self.gene_name == gene_name and self.values is not None

    def store(self, gene_name: str, values: np.ndarray) -> None:
        """Replace the slot with a new gene and reset the clip bounds."""
        positive = values[values > 0]
        self.gene_name = gene_name
        self.values = values
        self.actual_min = 0.0
        self.actual_max = float(positive.max()) if positive.size else 1.0
        self.reset_clip()
        logger.info(f"Gene {gene_name} range: [0, {self.actual_max:.4f}]")

    def reset_clip(self) -> None:
        self.clip_min = self.actual_min
        self.clip_max = self.actual_max

    def set_clip_min(self, value: float) -> bool:
        """
        Move the lower clip bound.

        If the new bound reaches ``clip_max``, the upper bound is pushed to
        ``value + 1e-4`` when that stays within the actual range; otherwise
        the change is rejected.

        Returns:
            True if the bound was updated.
        """
        if np.isnan(value):
            return False
        if value >= self.clip_max:
            pushed = value + CLIP_STEP
            if pushed > self.actual_max:
                return False
            self.clip_max = pushed
        self.clip_min = float(value)
        return True

    def set_clip_max(self, value: float) -> bool:
        """Move the upper clip bound, pushing ``clip_min`` down when needed."""
        if np.isnan(value):
            return False
        if value <= self.clip_min:
            pushed = value - CLIP_STEP
            if pushed < self.actual_min:
                return False
            self.clip_min = pushed
        self.clip_max = float(value)
        return True

    def clipped(self) -> np.ndarray | None:
        """Expression values clipped to ``[clip_min, clip_max]``."""
        if self.values is None:
            return None
        return np.clip(self.values, self.clip_min, self.clip_max)

    def normalized(self) -> np.ndarray | None:
        """Clipped values rescaled to ``[0, 1]`` for colour mapping."""
        clipped = self.clipped()
        if clipped is None:
            return None
        span = self.clip_max - self.clip_min
        if span <= 0:
            return np.zeros_like(clipped)
        return (clipped - self.clip_min) / span
