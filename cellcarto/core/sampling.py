"""
Reduction of the visible index set to a renderable sample.
"""

import math

import numpy as np

from cellcarto.config import MAX_POINTS


def target_count(n: int, fraction: float = 1.0, cap: int = MAX_POINTS) -> int:
    """
    Number of indices to keep: ``min(floor(n * fraction), cap)``.

    Raises:
        ValueError: If ``fraction`` is outside ``[0, 1]`` or ``cap`` is negative.
    """
    if not 0.0 <= fraction <= 1.0:
        raise ValueError(f"fraction must be within [0, 1], got {fraction}")
    if cap < 0:
        raise ValueError(f"cap must be non-negative, got {cap}")
    return min(math.floor(n * fraction), cap)


class FisherYatesSampler:
    """
    Uniform sampling without replacement by partial Fisher–Yates shuffle.

    Only the first ``target`` positions of a copy are shuffled, so the cost
    grows with the sample size rather than with the input size.

    Examples:
        >>> sampler = FisherYatesSampler(seed=42)
        >>> picked = sampler.apply(np.arange(10), 3)
        >>> len(picked)
        3
    """

    def __init__(self, seed: int | None = None, rng: np.random.Generator | None = None):
        self.rng = rng if rng is not None else np.random.default_rng(seed)

    def apply(self, indices: np.ndarray, target: int) -> np.ndarray:
        """Return ``target`` distinct entries of ``indices`` in random order."""
        n = len(indices)
        target = max(0, min(target, n))
        if target == 0:
            return np.empty(0, dtype=np.asarray(indices).dtype)

        pool = np.asarray(indices).tolist()
        positions = np.arange(target)
        # j is drawn uniformly from [i, n)
        swaps = positions + np.floor(
            self.rng.random(target) * (n - positions)
        ).astype(np.int64)
        swaps = np.minimum(swaps, n - 1).tolist()

        for i, j in enumerate(swaps):
            pool[i], pool[j] = pool[j], pool[i]

        return np.asarray(pool[:target], dtype=np.asarray(indices).dtype)


def sample(
    indices: np.ndarray,
    fraction: float = 1.0,
    cap: int = MAX_POINTS,
    rng: np.random.Generator | None = None,
) -> np.ndarray:
    """
    Reduce ``indices`` to at most ``min(floor(n * fraction), cap)`` entries.

    When the target covers every index the input is returned unchanged,
    order included.

    Args:
        indices: Visible row indices.
        fraction: Share of indices to keep, within ``[0, 1]``.
        cap: Upper bound on the result size.
        rng: Random generator; fresh randomness per call when omitted.

    Returns:
        numpy array of distinct entries drawn from ``indices``.
    """
    indices = np.asarray(indices)
    target = target_count(len(indices), fraction, cap)
    if target >= len(indices):
        return indices
    return FisherYatesSampler(rng=rng).apply(indices, target)
