try:
    from importlib.metadata import version

    __version__ = version("cellcarto")
except ImportError:
    __version__ = "unknown"

# Core import - always available
from cellcarto.config import CartoConfig
from cellcarto.core import CartoSession


# Lazy imports for store backends
def _import_stores():
    """Lazy import for store backends"""
    from cellcarto.data.store import MemoryArrayStore, ZarrArrayStore, open_store

    return MemoryArrayStore, ZarrArrayStore, open_store


def get_stores():
    """Get store backends (lazy import)"""
    return _import_stores()


__all__ = [
    # Core data structures (always available)
    "CartoSession",
    "CartoConfig",
    # Lazy import functions
    "get_stores",
]
