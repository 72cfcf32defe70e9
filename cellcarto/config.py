"""
Session configuration for cellcarto.

All tunables that shape loading, discovery, filtering and sampling live on a
single frozen dataclass so a session can be opened with a dataset-specific
JSON file in the same way a dataset ships its ``config.json``.
"""

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

# Embedding names probed under obsm, in display order
DEFAULT_CANDIDATE_EMBEDDINGS: tuple[str, ...] = (
    "Global_Spatial",
    "spatial",
    "X_pca",
    "X_pca_harmony",
    "X_umap",
    "X_tsne",
    "X_tsne_3d",
    "X_umap_3d",
    "X_pca_3d",
    "pca",
    "umap",
    "tsne",
    "harmony",
    "X_harmony",
)

# Row columns that are numeric whatever their encoding says
DEFAULT_KNOWN_NUMERIC_COLUMNS: tuple[str, ...] = ("global_x", "global_y", "global_z")

MAX_POINTS = 1_000_000


@dataclass(frozen=True)
class CartoConfig:
    """
    Configuration for a viewer session.

    Attributes:
        max_points: Upper bound on the number of indices handed to the renderer.
        sample_fraction: Default fraction of visible cells to render.
        filter_debounce: Seconds to wait before a scheduled recompute runs.
        yield_delay: Seconds to yield to the event loop between batched loads.
        max_embedding_dims: Maximum dimensions exposed per array embedding.
        dim_probe_cap: Maximum chunk probes when discovering embedding dimensions.
        candidate_embeddings: Embedding names probed under ``obsm``.
        known_numeric_columns: Row columns always treated as numeric.
        event_log_size: Number of degradation events retained by a session.
    """

    max_points: int = MAX_POINTS
    sample_fraction: float = 1.0
    filter_debounce: float = 0.1
    yield_delay: float = 0.01
    max_embedding_dims: int = 20
    dim_probe_cap: int = 100
    candidate_embeddings: tuple[str, ...] = field(
        default=DEFAULT_CANDIDATE_EMBEDDINGS
    )
    known_numeric_columns: tuple[str, ...] = field(
        default=DEFAULT_KNOWN_NUMERIC_COLUMNS
    )
    event_log_size: int = 100

    def __post_init__(self):
        if self.max_points <= 0:
            raise ValueError(f"max_points must be positive, got {self.max_points}")
        if not 0.0 <= self.sample_fraction <= 1.0:
            raise ValueError(
                f"sample_fraction must be within [0, 1], got {self.sample_fraction}"
            )
        if self.max_embedding_dims <= 0:
            raise ValueError("max_embedding_dims must be positive")
        if self.dim_probe_cap <= 0:
            raise ValueError("dim_probe_cap must be positive")

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> "CartoConfig":
        """
        Build a configuration from a plain mapping.

        Args:
            values: Field name to value pairs. Sequences are converted to tuples.

        Returns:
            CartoConfig with the given overrides applied to the defaults.

        Raises:
            ValueError: If an unknown key is present.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")

        kwargs = {}
        for key, value in values.items():
            if isinstance(value, list):
                value = tuple(value)
            kwargs[key] = value
        return cls(**kwargs)

    @classmethod
    def from_json(cls, path: str | Path) -> "CartoConfig":
        """Load a configuration from a JSON file."""
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config not found at {config_path}")

        with open(config_path) as f:
            return cls.from_dict(json.load(f))
