import asyncio

import numpy as np
import pytest
import zarr
from scipy.sparse import csc_matrix

from cellcarto.data.accessor import ChunkedArrayAccessor
from cellcarto.data.store import MemoryArrayStore, normalize_path

GENE_NAMES = ["CD3E", "CD4", "MS4A1", "CD8A"]
N_CELLS = 10


class RecordingStore(MemoryArrayStore):
    """
    Memory store that records reads and can simulate latency or failures.

    Attributes:
        reads: ``(path, selection)`` for every array read, in order.
        delay: Seconds each read waits before returning.
        fail_paths: Paths whose reads raise ``RuntimeError``.
    """

    def __init__(self, arrays=None, attrs=None, delay=0.0, fail_paths=()):
        super().__init__(arrays, attrs)
        self.reads: list[tuple[str, tuple | None]] = []
        self.delay = delay
        self.fail_paths = {normalize_path(p) for p in fail_paths}
        self.closed = False

    async def read(self, path, selection=None):
        key = normalize_path(path)
        self.reads.append((key, selection))
        if self.delay:
            await asyncio.sleep(self.delay)
        if key in self.fail_paths:
            raise RuntimeError(f"simulated network failure reading {key}")
        return await super().read(path, selection)

    def read_count(self, path: str) -> int:
        return sum(1 for key, _ in self.reads if key == normalize_path(path))

    async def close(self):
        self.closed = True


def expression_dense() -> np.ndarray:
    """Dense cells × genes matrix behind the test stores."""
    dense = np.zeros((N_CELLS, len(GENE_NAMES)), dtype=np.float32)
    dense[3, 0] = 1.5
    dense[7, 0] = 2.0
    # CD4 has no expression
    dense[0, 2] = 0.5
    dense[1, 2] = 3.0
    dense[9, 2] = 1.0
    dense[5, 3] = 0.25
    return dense


def anndata_layout():
    """
    Arrays and attribute documents of a small AnnData-style store.

    Ten cells with a categorical ``cell_type`` (one missing code), a numeric
    ``total_counts``, a string ``batch``, a string-encoded ``global_x`` that
    is numeric by name, and a ``broken`` categorical with no arrays behind it.
    Coordinates live in a ``Global_Spatial`` dataframe and two 2D arrays.
    """
    matrix = csc_matrix(expression_dense())
    cells = np.arange(N_CELLS, dtype=np.float64)

    arrays = {
        "obs/_index": np.array([f"cell_{i}" for i in range(N_CELLS)]),
        "obs/cell_type/codes": np.array(
            [0, 1, 0, 2, 1, 0, -1, 2, 0, 1], dtype=np.int8
        ),
        "obs/cell_type/categories": np.array(["T cell", "B cell", "NK"]),
        "obs/total_counts": np.array(
            [100, 250, 50, 400, 300, 150, 80, 500, 200, 350], dtype=np.float64
        ),
        "obs/batch": np.array(
            ["b1", "b2", "b1", "b1", "b2", "b2", "b1", "b2", "b1", "b2"]
        ),
        "obs/global_x": np.array(
            ["0.5", "1.5", "2.5", "x", "4.5", "5.5", "6.5", "7.5", "8.5", "9.5"]
        ),
        "obsm/Global_Spatial/global_x": cells,
        "obsm/Global_Spatial/global_y": cells * 2,
        "obsm/spatial": np.column_stack([cells * 10, cells * 20]),
        "obsm/X_umap": np.column_stack([cells - 5, cells + 5]),
        "X/indptr": matrix.indptr.astype(np.int64),
        "X/indices": matrix.indices.astype(np.int64),
        "X/data": matrix.data.astype(np.float32),
        "var/_index": np.array(GENE_NAMES),
        "var/highly_variable.flag": np.array([True, False, True, False]),
        "var/n_cells": np.array([2, 0, 3, 1], dtype=np.int64),
        "var/gene_type/codes": np.array([0, 0, 1, 0], dtype=np.int8),
        "var/gene_type/categories": np.array(["protein_coding", "lncRNA"]),
    }

    attrs = {
        "obs": {
            "_index": "_index",
            "column-order": [
                "cell_type",
                "total_counts",
                "batch",
                "global_x",
                "broken",
            ],
            "encoding-type": "dataframe",
        },
        "obs/cell_type": {"encoding-type": "categorical", "ordered": False},
        "obs/total_counts": {"encoding-type": "array"},
        "obs/batch": {"encoding-type": "string-array"},
        "obs/global_x": {"encoding-type": "string-array"},
        "obs/broken": {"encoding-type": "categorical", "ordered": False},
        "obsm": {"encoding-type": "dict"},
        "obsm/Global_Spatial": {
            "_index": "_index",
            "column-order": ["global_x", "global_y"],
            "encoding-type": "dataframe",
        },
        "obsm/spatial": {"encoding-type": "array"},
        "obsm/X_umap": {"encoding-type": "array"},
        "X": {"encoding-type": "csc_matrix", "shape": [N_CELLS, len(GENE_NAMES)]},
        "var": {
            "_index": "_index",
            "column-order": ["highly_variable.flag", "n_cells", "gene_type"],
            "encoding-type": "dataframe",
        },
        "var/highly_variable.flag": {"encoding-type": "array"},
        "var/n_cells": {"encoding-type": "array"},
        "var/gene_type": {"encoding-type": "categorical", "ordered": False},
    }
    return arrays, attrs


def write_zarr_store(path, arrays, attrs) -> None:
    """Write a layout to a zarr v2 directory the way anndata lays it out."""
    root = zarr.open_group(str(path), mode="w", zarr_format=2)
    for name, values in arrays.items():
        array = root.create_array(name, shape=values.shape, dtype=values.dtype)
        array[...] = values
    for name, document in attrs.items():
        node = root[name] if name in root else root.create_group(name)
        node.attrs.update(document)


@pytest.fixture
def layout():
    """Arrays and attrs of the test dataset."""
    return anndata_layout()


@pytest.fixture
def memory_store(layout):
    """Memory store holding the test dataset."""
    arrays, attrs = layout
    return MemoryArrayStore(arrays, attrs)


@pytest.fixture
def recording_store(layout):
    """Memory store holding the test dataset that records every read."""
    arrays, attrs = layout
    return RecordingStore(arrays, attrs)


@pytest.fixture
def accessor(memory_store):
    """Accessor over the memory store."""
    return ChunkedArrayAccessor(memory_store)


@pytest.fixture
def zarr_store_path(tmp_path, layout):
    """The test dataset written as a zarr v2 directory."""
    arrays, attrs = layout
    path = tmp_path / "dataset.zarr"
    write_zarr_store(path, arrays, attrs)
    return path


@pytest.fixture
def store_factory():
    """
    Build recording stores from the test dataset with overrides.

    Arrays or attrs mapped to None are removed from the layout.
    """

    def build(arrays=None, attrs=None, delay=0.0, fail_paths=()):
        base_arrays, base_attrs = anndata_layout()
        for base, overrides in ((base_arrays, arrays), (base_attrs, attrs)):
            for key, value in (overrides or {}).items():
                if value is None:
                    base.pop(key, None)
                else:
                    base[key] = value
        return RecordingStore(
            base_arrays, base_attrs, delay=delay, fail_paths=fail_paths
        )

    return build
