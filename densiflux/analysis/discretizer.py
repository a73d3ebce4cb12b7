"""Shared histogram grid for one feature, split by sample group.

The grid is derived from the global min/max of the feature, so every group is
binned on the same edges. Bin membership is strictly exclusive on both sides:
values lying exactly on an edge (including the global min and max) are not
counted in any bin.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd

from densiflux.analysis.results_schema import COL_COUNT, COL_EXPOSURE, COL_GROUP, COL_MIDPOINT


class DegenerateFeatureError(ValueError):
    """The feature cannot be binned (zero-width grid or nothing left to bin)."""


@dataclass(frozen=True)
class HistogramGrid:
    edges: np.ndarray          # (n_bins + 1,)
    midpoints: np.ndarray      # (n_bins,)
    width: float
    levels: tuple              # sorted group labels
    counts: np.ndarray         # (n_groups, n_bins)
    group_sizes: np.ndarray    # members per group (non-missing values)

    @property
    def n_bins(self) -> int:
        return len(self.midpoints)

    @property
    def totals(self) -> np.ndarray:
        """Binned count per group; at most the group size."""
        return self.counts.sum(axis=1)

    def exposure(self, carrier: str = "uniform") -> np.ndarray:
        """
        Per-group Poisson exposure: total binned count times bin width.

        Only the "uniform" carrier exists, so the exposure is constant across
        the bins of a group.
        """
        if carrier != "uniform":
            raise ValueError(f"Unknown carrier policy {carrier!r}")
        return self.totals.astype(float) * self.width

    def to_long(self, carrier: str = "uniform") -> pd.DataFrame:
        """
        Long table with one row per (group, bin).

        Groups with no binned value are left out, their log-exposure is undefined.
        """
        exposure = self.exposure(carrier)
        frames = []
        for g, level in enumerate(self.levels):
            if exposure[g] <= 0:
                continue
            frames.append(pd.DataFrame({
                COL_GROUP: level,
                COL_MIDPOINT: self.midpoints,
                COL_COUNT: self.counts[g],
                COL_EXPOSURE: exposure[g],
            }))
        if not frames:
            return pd.DataFrame(columns=[COL_GROUP, COL_MIDPOINT, COL_COUNT, COL_EXPOSURE])
        return pd.concat(frames, ignore_index=True)


def discretize(values: Sequence[float], groups: Sequence, n_bins: int) -> HistogramGrid:
    """
    Bin one feature's measurements on a grid shared by all groups.

    Args:
        values: Measurements of one feature across samples (NaN = missing).
        groups: Group label per sample, aligned with `values`.
        n_bins: Number of equal-width intervals between min and max.

    Returns:
        HistogramGrid with edges, midpoints, width and per-group counts.

    Raises:
        DegenerateFeatureError: fewer than two distinct non-missing values,
            or `n_bins` < 1.
    """
    if n_bins < 1:
        raise DegenerateFeatureError(f"n_bins must be >= 1, got {n_bins}")

    values = np.asarray(values, dtype=float)
    groups = np.asarray(groups)
    if values.shape != groups.shape:
        raise ValueError(f"values and groups must align, got {values.shape} and {groups.shape}")

    keep = np.isfinite(values)
    values, groups = values[keep], groups[keep]

    if np.unique(values).size < 2:
        raise DegenerateFeatureError(
            f"need at least 2 distinct values to bin, got {np.unique(values).size}"
        )

    vmin, vmax = float(values.min()), float(values.max())
    width = (vmax - vmin) / n_bins
    edges = vmin + width * np.arange(n_bins + 1)
    edges[-1] = vmax
    midpoints = edges[:-1] + width / 2

    levels = tuple(sorted(pd.unique(groups).tolist(), key=str))
    counts = np.zeros((len(levels), n_bins), dtype=int)
    sizes = np.zeros(len(levels), dtype=int)
    for g, level in enumerate(levels):
        v = values[groups == level]
        sizes[g] = v.size
        inside = (v[:, None] > edges[None, :-1]) & (v[:, None] < edges[None, 1:])
        counts[g] = inside.sum(axis=0)

    return HistogramGrid(
        edges=edges,
        midpoints=midpoints,
        width=width,
        levels=levels,
        counts=counts,
        group_sizes=sizes,
    )
