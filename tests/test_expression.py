"""Tests for per-gene expression slicing and the gene cache."""

import asyncio

import numpy as np
import pytest

from cellcarto.core.errors import GeneNotFoundError, NotFoundError
from cellcarto.core.expression import GeneExpressionCache, SparseGeneResolver
from cellcarto.data.accessor import ChunkedArrayAccessor
from cellcarto.data.registry import SparseMatrixHandle

GENE_NAMES = ("CD3E", "CD4", "MS4A1", "CD8A")


def make_resolver(store, gene_names=GENE_NAMES, encoding="csc_matrix"):
    matrix = SparseMatrixHandle(
        row_count=10,
        col_count=len(gene_names),
        gene_names=gene_names,
        encoding=encoding,
    )
    return SparseGeneResolver(ChunkedArrayAccessor(store), matrix)


class TestSparseGeneResolver:
    """Test gene vector reconstruction from CSC slices."""

    def test_expression_vector(self, recording_store):
        """Non-zero entries land at their cell indices, zeros elsewhere."""
        values = asyncio.run(make_resolver(recording_store).get_expression("CD3E"))
        assert values.dtype == np.float32
        np.testing.assert_array_equal(
            values, np.array([0, 0, 0, 1.5, 0, 0, 0, 2.0, 0, 0], dtype=np.float32)
        )

    def test_reads_only_gene_slice(self, recording_store):
        """Only the gene's [start, end) range of indices and data is read."""
        asyncio.run(make_resolver(recording_store).get_expression("MS4A1"))
        slices = [sel for path, sel in recording_store.reads if path == "X/data"]
        assert slices == [(slice(2, 5),)]

    def test_empty_gene_skips_fetch(self, recording_store):
        """A gene without entries returns zeros without reading indices or data."""
        values = asyncio.run(make_resolver(recording_store).get_expression("CD4"))
        np.testing.assert_array_equal(values, np.zeros(10, dtype=np.float32))
        assert recording_store.read_count("X/indices") == 0
        assert recording_store.read_count("X/data") == 0

    def test_unknown_gene(self, recording_store):
        """Unknown genes return None and fetch nothing."""
        resolver = make_resolver(recording_store)
        assert asyncio.run(resolver.get_expression("NOPE")) is None
        assert recording_store.reads == []
        with pytest.raises(GeneNotFoundError) as exc_info:
            resolver.resolve_index("NOPE")
        assert exc_info.value.gene_name == "NOPE"

    def test_indptr_read_once(self, store_factory):
        """Concurrent first requests share one indptr read."""
        store = store_factory(delay=0.01)
        resolver = make_resolver(store)

        async def fetch_all():
            return await asyncio.gather(
                resolver.get_expression("CD3E"),
                resolver.get_expression("MS4A1"),
                resolver.get_expression("CD8A"),
            )

        results = asyncio.run(fetch_all())
        assert store.read_count("X/indptr") == 1
        assert results[2][5] == pytest.approx(0.25)

        asyncio.run(resolver.get_expression("CD3E"))
        assert store.read_count("X/indptr") == 1

    def test_duplicate_gene_names_use_first(self, recording_store):
        """The first occurrence of a duplicated name wins."""
        resolver = make_resolver(
            recording_store, gene_names=("CD3E", "CD4", "CD3E", "CD8A")
        )
        assert resolver.resolve_index("CD3E") == 0

    def test_missing_matrix_arrays(self, store_factory):
        """A store without X arrays raises NotFoundError, and can retry later."""
        store = store_factory(arrays={"X/indptr": None})
        resolver = make_resolver(store)
        with pytest.raises(NotFoundError):
            asyncio.run(resolver.fetch_expression("CD3E"))
        assert resolver._init_task is None

    def test_suggest(self, recording_store):
        """Prefix matches come before substring matches."""
        resolver = make_resolver(
            recording_store, gene_names=("ACD3", "CD3E", "CD4", "MS4A1")
        )
        assert resolver.suggest("cd") == ["CD3E", "CD4", "ACD3"]
        assert resolver.suggest("cd", limit=1) == ["CD3E"]
        assert resolver.suggest("  ") == []

    def test_contains(self, recording_store):
        resolver = make_resolver(recording_store)
        assert "CD4" in resolver
        assert "NOPE" not in resolver


class TestGeneExpressionCache:
    """Test the single-slot gene cache and its clip bounds."""

    def setup_method(self):
        self.cache = GeneExpressionCache()
        self.cache.store("CD3E", np.array([0, 1.5, 0, 2.0], dtype=np.float32))

    def test_store_sets_range(self):
        """The actual range runs from 0 to the largest positive value."""
        assert self.cache.holds("CD3E")
        assert (self.cache.actual_min, self.cache.actual_max) == (0.0, 2.0)
        assert (self.cache.clip_min, self.cache.clip_max) == (0.0, 2.0)

    def test_no_expression_range(self):
        """A gene without expression gets the range [0, 1]."""
        self.cache.store("CD4", np.zeros(4, dtype=np.float32))
        assert self.cache.actual_max == 1.0
        assert not self.cache.holds("CD3E")

    def test_set_clip_min(self):
        """Raising the minimum within range keeps the maximum."""
        assert self.cache.set_clip_min(0.5)
        assert (self.cache.clip_min, self.cache.clip_max) == (0.5, 2.0)

    def test_clip_min_pushes_max(self):
        """A minimum at the maximum pushes the maximum up by one step."""
        self.cache.set_clip_max(1.0)
        assert self.cache.set_clip_min(1.0)
        assert self.cache.clip_max == pytest.approx(1.0001)
        assert self.cache.clip_min < self.cache.clip_max

    def test_clip_min_rejected_at_top(self):
        """A minimum that cannot be separated from the maximum is rejected."""
        assert not self.cache.set_clip_min(2.0)
        assert (self.cache.clip_min, self.cache.clip_max) == (0.0, 2.0)

    def test_clip_max_pushes_min(self):
        """A maximum at the minimum pushes the minimum down by one step."""
        self.cache.set_clip_min(1.0)
        assert self.cache.set_clip_max(1.0)
        assert self.cache.clip_min == pytest.approx(0.9999)

    def test_clip_max_rejected_at_bottom(self):
        assert not self.cache.set_clip_max(0.0)
        assert self.cache.clip_max == 2.0

    def test_clipped_and_normalized(self):
        """Clipping limits values; normalisation rescales to [0, 1]."""
        self.cache.set_clip_max(1.0)
        np.testing.assert_allclose(self.cache.clipped(), [0, 1.0, 0, 1.0])
        np.testing.assert_allclose(self.cache.normalized(), [0, 1.0, 0, 1.0])
        self.cache.reset_clip()
        np.testing.assert_allclose(self.cache.normalized(), [0, 0.75, 0, 1.0])

    def test_clear(self):
        self.cache.clear()
        assert self.cache.gene_name is None
        assert self.cache.clipped() is None
