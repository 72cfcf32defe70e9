import asyncio
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
from loguru import logger

from cellcarto.config import DEFAULT_KNOWN_NUMERIC_COLUMNS
from cellcarto.core.errors import NotFoundError
from cellcarto.data.accessor import ChunkedArrayAccessor
from cellcarto.data.store import join_path


class ColumnKind(str, Enum):
    """How a row attribute is interpreted"""

    NUMERIC = "numeric"
    CATEGORICAL = "categorical"


@dataclass(frozen=True)
class ColumnDescriptor:
    """Schema entry for one discoverable column"""

    name: str
    kind: ColumnKind
    encoding: str
    source_path: str

    @property
    def is_numeric(self) -> bool:
        return self.kind == ColumnKind.NUMERIC

    @property
    def is_categorical_encoded(self) -> bool:
        """Stored as a codes/categories pair rather than a plain array."""
        return self.encoding == "categorical"


@dataclass(frozen=True)
class SparseMatrixHandle:
    """Shape, gene names and encoding of the primary expression matrix."""

    row_count: int
    col_count: int
    gene_names: tuple[str, ...] = field(default_factory=tuple)
    encoding: str = "csc_matrix"
    path: str = "X"

    @property
    def is_csc(self) -> bool:
        return self.encoding == "csc_matrix"


class ColumnRegistry:
    """
    Discovers the columns of an AnnData-style store.

    The registry is the authoritative source of column types: a column is
    numeric iff its encoding is ``array`` or its name is in the known-numeric
    override list; everything else (``categorical``, ``string-array``, ...)
    is treated as categorical.

    Examples:
        >>> registry = ColumnRegistry(ChunkedArrayAccessor(store))
        >>> columns = asyncio.run(registry.discover_row_columns())
        >>> print([(c.name, c.kind.value) for c in columns])
        [('cell_type', 'categorical'), ('total_counts', 'numeric')]
    """

    def __init__(
        self,
        accessor: ChunkedArrayAccessor,
        known_numeric_columns: tuple[str, ...] = DEFAULT_KNOWN_NUMERIC_COLUMNS,
    ):
        self.accessor = accessor
        self.known_numeric_columns = set(known_numeric_columns)

    async def _probe_encoding(self, path: str) -> str:
        try:
            attrs = await self.accessor.store.get_attrs(path)
        except Exception as e:
            # Columns without readable attrs are plain arrays
            logger.debug(f"No encoding for {path} ({e}); assuming array")
            return "array"
        return str(attrs.get("encoding-type") or "array")

    async def _discover(self, group: str, numeric_override: set[str]):
        attrs = await self.accessor.store.get_attrs(group)
        names = [str(name) for name in attrs.get("column-order", [])]

        encodings = await asyncio.gather(
            *(self._probe_encoding(join_path(group, name)) for name in names)
        )

        # First position kept, last occurrence decides the classification
        by_name: dict[str, ColumnDescriptor] = {}
        for name, encoding in zip(names, encodings, strict=True):
            numeric = encoding == "array" or name in numeric_override
            by_name[name] = ColumnDescriptor(
                name=name,
                kind=ColumnKind.NUMERIC if numeric else ColumnKind.CATEGORICAL,
                encoding=encoding,
                source_path=join_path(group, name),
            )
        return list(by_name.values())

    async def discover_row_columns(self) -> list[ColumnDescriptor]:
        """
        Discover the row (``obs``) attributes.

        Returns:
            Column descriptors in manifest order, duplicates removed.

        Raises:
            NotFoundError: If the ``obs`` attribute document is missing.
        """
        columns = await self._discover("obs", self.known_numeric_columns)
        numeric = sum(c.is_numeric for c in columns)
        logger.info(
            f"Discovered {len(columns)} row columns "
            f"({numeric} numeric, {len(columns) - numeric} categorical)"
        )
        return columns

    async def discover_gene_columns(self) -> list[ColumnDescriptor]:
        """Discover the gene (``var``) attributes. No numeric override applies."""
        columns = await self._discover("var", set())
        logger.debug(f"Discovered {len(columns)} gene columns")
        return columns

    async def read_index(self, group: str) -> np.ndarray:
        """
        Read the index array of ``group`` (``obs`` or ``var``).

        Tries the array named by the group's ``_index`` attribute, then
        ``_index``, then ``barcode``.

        Raises:
            NotFoundError: If none of the candidates exists.
        """
        candidates = []
        try:
            attrs = await self.accessor.store.get_attrs(group)
            if attrs.get("_index"):
                candidates.append(str(attrs["_index"]))
        except NotFoundError:
            pass
        for name in ("_index", "barcode"):
            if name not in candidates:
                candidates.append(name)

        last_error: NotFoundError | None = None
        for name in candidates:
            try:
                return await self.accessor.read_strings(join_path(group, name))
            except NotFoundError as e:
                last_error = e
        raise NotFoundError(
            group, f"No index array found under {group} (tried {candidates})"
        ) from last_error

    async def discover_matrix(self, path: str = "X") -> SparseMatrixHandle:
        """
        Describe the primary matrix from its attributes and the gene index.

        Raises:
            NotFoundError: If the matrix attribute document is missing.
        """
        attrs = await self.accessor.store.get_attrs(path)
        shape = attrs.get("shape") or [0, 0]
        encoding = str(attrs.get("encoding-type", "csc_matrix"))

        try:
            gene_names = tuple(str(g) for g in await self.read_index("var"))
        except NotFoundError as e:
            logger.warning(f"Gene names unavailable: {e}")
            gene_names = ()

        handle = SparseMatrixHandle(
            row_count=int(shape[0]),
            col_count=int(shape[1]),
            gene_names=gene_names,
            encoding=encoding,
            path=path,
        )
        logger.info(
            f"Matrix {path}: {handle.row_count:,} cells × {handle.col_count:,} genes "
            f"({encoding})"
        )
        return handle
