"""
Storage protocol for chunked array stores.

The rest of the package only needs two kinds of reads from a store: JSON
attribute documents for a node (encoding type, column order, shape) and typed
array payloads for an array path with an optional selection. ``ArrayStore``
captures that contract; ``ZarrArrayStore`` implements it over zarr-python's
async API and ``MemoryArrayStore`` over plain dictionaries.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np
from loguru import logger

from cellcarto.core.errors import NotFoundError


@dataclass(frozen=True)
class ArrayHandle:
    """An opened array: its path, shape and dtype. Holds no data."""

    path: str
    shape: tuple[int, ...]
    dtype: str

    @property
    def ndim(self) -> int:
        return len(self.shape)


def normalize_path(path: str) -> str:
    """Strip leading/trailing separators so paths compare equal."""
    return path.strip("/")


def join_path(*parts: str) -> str:
    """Join store path segments, skipping empty ones."""
    return "/".join(normalize_path(p) for p in parts if normalize_path(p))


class ArrayStore(ABC):
    """
    Abstract interface over a hierarchical chunked array store.

    Paths are ``/``-separated node names relative to the store root, e.g.
    ``obs/cell_type/codes`` or ``X/indptr``. Every read raises
    ``NotFoundError`` when the node does not exist. Reads hold no shared
    mutable state and may be awaited concurrently.
    """

    @abstractmethod
    async def get_attrs(self, path: str) -> dict[str, Any]:
        """
        Return the attribute document of a group or array.

        Args:
            path: Node path relative to the store root ("" for the root).

        Returns:
            Attribute mapping (e.g. ``encoding-type``, ``column-order``, ``shape``).

        Raises:
            NotFoundError: If the node does not exist.
        """
        raise NotImplementedError

    @abstractmethod
    async def get_array_meta(self, path: str) -> dict[str, Any]:
        """
        Return the raw metadata document of an array (``shape``, ``dtype``, ...).

        This is read without opening the array, so it is available even when
        the array's codecs cannot be decoded.
        """
        raise NotImplementedError

    @abstractmethod
    async def open_array(self, path: str) -> ArrayHandle:
        """Open an array and return its handle."""
        raise NotImplementedError

    @abstractmethod
    async def read(
        self, path: str, selection: tuple[slice, ...] | None = None
    ) -> np.ndarray:
        """
        Read an array, or a selection of it.

        Args:
            path: Array path.
            selection: One slice per dimension, or None for the whole array.

        Returns:
            numpy array with the selected data.
        """
        raise NotImplementedError

    async def contains(self, path: str) -> bool:
        """Check whether an array exists at ``path``."""
        try:
            await self.get_array_meta(path)
        except NotFoundError:
            return False
        return True

    async def close(self) -> None:
        """Release any resources held by the store."""
        return None


class MemoryArrayStore(ArrayStore):
    """
    Dictionary-backed store.

    Arrays and attribute documents are keyed by node path. Useful for
    datasets assembled in memory and for exercising the loaders without a
    filesystem or network.

    Examples:
        >>> store = MemoryArrayStore(
        ...     arrays={"obs/_index": np.array(["c0", "c1"])},
        ...     attrs={"obs": {"column-order": []}},
        ... )
        >>> handle = asyncio.run(store.open_array("obs/_index"))
        >>> print(handle.shape)
        (2,)
    """

    def __init__(
        self,
        arrays: dict[str, Any] | None = None,
        attrs: dict[str, dict[str, Any]] | None = None,
    ):
        self.arrays: dict[str, np.ndarray] = {}
        self.attrs: dict[str, dict[str, Any]] = {}
        for path, values in (arrays or {}).items():
            self.set_array(path, values)
        for path, document in (attrs or {}).items():
            self.set_attrs(path, document)

    def set_array(self, path: str, values: Any) -> None:
        self.arrays[normalize_path(path)] = np.asarray(values)

    def set_attrs(self, path: str, document: dict[str, Any]) -> None:
        self.attrs[normalize_path(path)] = dict(document)

    def _array(self, path: str) -> np.ndarray:
        key = normalize_path(path)
        if key not in self.arrays:
            raise NotFoundError(key)
        return self.arrays[key]

    async def get_attrs(self, path: str) -> dict[str, Any]:
        key = normalize_path(path)
        if key not in self.attrs:
            raise NotFoundError(key)
        return dict(self.attrs[key])

    async def get_array_meta(self, path: str) -> dict[str, Any]:
        array = self._array(path)
        return {
            "shape": list(array.shape),
            "dtype": array.dtype.str,
            "chunks": list(array.shape),
            "zarr_format": 2,
        }

    async def open_array(self, path: str) -> ArrayHandle:
        array = self._array(path)
        return ArrayHandle(
            path=normalize_path(path), shape=tuple(array.shape), dtype=array.dtype.str
        )

    async def read(
        self, path: str, selection: tuple[slice, ...] | None = None
    ) -> np.ndarray:
        array = self._array(path)
        if selection is None:
            return array.copy()
        return np.array(array[selection])


class ZarrArrayStore(ArrayStore):
    """
    Store backed by zarr-python's async API.

    Accepts a local directory or any fsspec URL (``https://``, ``s3://``,
    ...). Both zarr v2 (``.zattrs``/``.zarray``) and v3 (``zarr.json``)
    metadata layouts are understood, which covers AnnData stores written by
    either generation of anndata.

    Examples:
        >>> store = ZarrArrayStore("data/ovary.zarr")
        >>> attrs = asyncio.run(store.get_attrs("obs"))
        >>> print(attrs["column-order"][:3])
        ['cell_type', 'batch', 'total_counts']

        >>> remote = ZarrArrayStore("https://example.org/ovary.zarr")
    """

    def __init__(self, target: str | Path, storage_options: dict | None = None):
        """
        Initialize the store.

        Args:
            target: Local directory or fsspec URL of the zarr root.
            storage_options: Options forwarded to fsspec for remote targets.

        Raises:
            NotFoundError: If ``target`` is a local path that does not exist.
        """
        from zarr.storage import FsspecStore, LocalStore

        self.target = str(target)
        if "://" in self.target:
            self._store = FsspecStore.from_url(
                self.target, storage_options=storage_options, read_only=True
            )
        else:
            root = Path(self.target)
            if not root.exists():
                raise NotFoundError(self.target, f"Zarr store not found: {root}")
            self._store = LocalStore(root, read_only=True)

        # Opened arrays, keyed by path; metadata is parsed once per array
        self._arrays: dict[str, Any] = {}

    async def _get_json(self, key: str) -> dict[str, Any] | None:
        from zarr.core.buffer import default_buffer_prototype

        buffer = await self._store.get(key, prototype=default_buffer_prototype())
        if buffer is None:
            return None
        return json.loads(buffer.to_bytes())

    async def get_attrs(self, path: str) -> dict[str, Any]:
        key = normalize_path(path)

        # zarr v2
        document = await self._get_json(join_path(key, ".zattrs"))
        if document is not None:
            return document

        # zarr v3
        document = await self._get_json(join_path(key, "zarr.json"))
        if document is not None:
            return dict(document.get("attributes", {}))

        # v2 node without attributes
        for marker in (".zgroup", ".zarray"):
            if await self._store.exists(join_path(key, marker)):
                return {}

        raise NotFoundError(key)

    async def get_array_meta(self, path: str) -> dict[str, Any]:
        key = normalize_path(path)

        document = await self._get_json(join_path(key, ".zarray"))
        if document is not None:
            return document

        document = await self._get_json(join_path(key, "zarr.json"))
        if document is not None and document.get("node_type") == "array":
            return document

        raise NotFoundError(key)

    async def contains(self, path: str) -> bool:
        key = normalize_path(path)
        # Chunk keys (e.g. "0.0") are plain objects, arrays carry a metadata file
        for candidate in (key, join_path(key, ".zarray"), join_path(key, "zarr.json")):
            if await self._store.exists(candidate):
                return True
        return False

    async def _open(self, path: str):
        import zarr.api.asynchronous as zarr_async

        key = normalize_path(path)
        if key not in self._arrays:
            try:
                self._arrays[key] = await zarr_async.open_array(
                    store=self._store, path=key, mode="r"
                )
            except (FileNotFoundError, KeyError) as err:
                raise NotFoundError(key) from err
            logger.debug(f"Opened zarr array {key}: shape={self._arrays[key].shape}")
        return self._arrays[key]

    async def open_array(self, path: str) -> ArrayHandle:
        array = await self._open(path)
        return ArrayHandle(
            path=normalize_path(path),
            shape=tuple(int(s) for s in array.shape),
            dtype=str(array.dtype),
        )

    async def read(
        self, path: str, selection: tuple[slice, ...] | None = None
    ) -> np.ndarray:
        array = await self._open(path)
        if selection is None:
            selection = tuple(slice(None) for _ in array.shape)
        data = await array.getitem(selection)
        return np.asarray(data)

    async def close(self) -> None:
        self._arrays.clear()
        self._store.close()


def open_store(
    target: "str | Path | ArrayStore", storage_options: dict | None = None
) -> ArrayStore:
    """
    Build a store for ``target``.

    Args:
        target: An existing ArrayStore (returned as is), a local directory,
                or an fsspec URL.
        storage_options: Options forwarded to fsspec for remote targets.

    Returns:
        ArrayStore ready for reads.
    """
    if isinstance(target, ArrayStore):
        return target
    return ZarrArrayStore(target, storage_options=storage_options)
