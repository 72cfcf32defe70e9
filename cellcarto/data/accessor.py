import asyncio
from dataclasses import dataclass

import numpy as np
from loguru import logger

from cellcarto.core.errors import DecodeError
from cellcarto.data.store import ArrayHandle, ArrayStore, join_path


@dataclass(frozen=True)
class SliceSpec:
    """Contiguous ``[start, stop)`` range along one axis of an array."""

    start: int
    stop: int
    axis: int = 0

    def __post_init__(self):
        if self.start < 0 or self.stop < self.start:
            raise ValueError(f"Invalid slice [{self.start}, {self.stop})")

    def selection(self, ndim: int) -> tuple[slice, ...]:
        """Expand into one slice per dimension of an ``ndim`` array."""
        if not 0 <= self.axis < max(ndim, 1):
            raise ValueError(f"Axis {self.axis} out of range for {ndim}D array")
        parts = [slice(None)] * max(ndim, 1)
        parts[self.axis] = slice(self.start, self.stop)
        return tuple(parts)


def normalize_strings(values) -> np.ndarray:
    """
    Convert raw string payloads into an object array of ``str``.

    Bytes are decoded as UTF-8, ``None`` and NaN become ``""``.
    """
    values = np.asarray(values).ravel()
    out = np.empty(len(values), dtype=object)
    for i, value in enumerate(values):
        if value is None:
            out[i] = ""
        elif isinstance(value, bytes):
            out[i] = value.decode("utf-8", errors="replace")
        elif isinstance(value, float) and np.isnan(value):
            out[i] = ""
        else:
            out[i] = str(value)
    return out


def decode_categorical(codes, categories) -> np.ndarray:
    """
    Decode categorical ``codes`` against ``categories``.

    Code ``-1`` is AnnData's missing marker and decodes to ``""``.

    Args:
        codes: Integer codes, one per row.
        categories: Category labels.

    Returns:
        Object array of ``str`` with ``result[i] == categories[codes[i]]``.

    Raises:
        DecodeError: If any code other than -1 falls outside the categories.

    Examples:
        >>> decode_categorical([0, 1, -1, 0], ["A", "B"]).tolist()
        ['A', 'B', '', 'A']
    """
    codes = np.asarray(codes).astype(np.int64, copy=False).ravel()
    labels = normalize_strings(categories)

    bad = (codes < -1) | (codes >= len(labels))
    if bad.any():
        first = int(codes[np.argmax(bad)])
        raise DecodeError(
            f"Categorical code {first} out of range for {len(labels)} categories"
        )

    # Index -1 lands on the trailing "" slot
    lookup = np.append(labels, np.array([""], dtype=object))
    return lookup[codes]


class ChunkedArrayAccessor:
    """
    Typed reads over an ``ArrayStore``.

    Every read is independent and may be awaited concurrently; paired reads
    such as categorical codes/categories are gathered in parallel.

    Examples:
        >>> accessor = ChunkedArrayAccessor(store)
        >>> values = asyncio.run(accessor.read_categorical("obs/cell_type"))
        >>> print(values[:3])
        ['T cell' 'B cell' 'T cell']
    """

    def __init__(self, store: ArrayStore):
        self.store = store

    async def open_array(self, path: str) -> ArrayHandle:
        """Open an array; raises ``NotFoundError`` if absent."""
        return await self.store.open_array(path)

    async def read_array(
        self, handle: ArrayHandle, slice_spec: SliceSpec | None = None
    ) -> np.ndarray:
        """
        Read a whole array or a contiguous range along one axis.

        Args:
            handle: Array handle from ``open_array``.
            slice_spec: Optional ``[start, stop)`` range.

        Returns:
            numpy array with the requested data.
        """
        if slice_spec is None:
            return await self.store.read(handle.path)
        return await self.store.read(handle.path, slice_spec.selection(handle.ndim))

    async def read_path(self, path: str) -> np.ndarray:
        """Open and fully read the array at ``path``."""
        handle = await self.open_array(path)
        return await self.read_array(handle)

    async def read_categorical(self, base_path: str) -> np.ndarray:
        """
        Read a categorical column stored as ``codes`` and ``categories``.

        Raises:
            NotFoundError: If either array is missing.
            DecodeError: If a code is out of range.
        """
        codes, categories = await asyncio.gather(
            self.read_path(join_path(base_path, "codes")),
            self.read_path(join_path(base_path, "categories")),
        )
        logger.debug(
            f"Decoding {base_path}: {len(codes)} codes, {len(categories)} categories"
        )
        return decode_categorical(codes, categories)

    async def read_strings(self, path: str) -> np.ndarray:
        """Read a string array, normalising bytes and missing values to ``str``."""
        return normalize_strings(await self.read_path(path))
