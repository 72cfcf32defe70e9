from .accessor import ChunkedArrayAccessor, SliceSpec, decode_categorical
from .coordinates import (
    CoordinateCatalog,
    CoordinateSelection,
    CoordinateSource,
    CoordinateSources,
)
from .loader import GeneTableLoader, LazyColumnLoader, NumericRange
from .registry import ColumnDescriptor, ColumnKind, ColumnRegistry, SparseMatrixHandle
from .store import ArrayHandle, ArrayStore, MemoryArrayStore, ZarrArrayStore, open_store

__all__ = [
    # Stores
    "ArrayStore",
    "ArrayHandle",
    "MemoryArrayStore",
    "ZarrArrayStore",
    "open_store",
    # Access and discovery
    "ChunkedArrayAccessor",
    "SliceSpec",
    "decode_categorical",
    "ColumnRegistry",
    "ColumnDescriptor",
    "ColumnKind",
    "SparseMatrixHandle",
    # Loading
    "LazyColumnLoader",
    "GeneTableLoader",
    "NumericRange",
    "CoordinateCatalog",
    "CoordinateSource",
    "CoordinateSelection",
    "CoordinateSources",
]
