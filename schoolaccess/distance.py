"""Pairwise distances and k-nearest-neighbour rankings among schools.

Distances are Euclidean in the working CRS's linear unit. The full matrix is
O(n**2) in time and memory; at a few thousand schools that is tens of MB,
so callers should bound input size accordingly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy.spatial.distance import pdist, squareform

from .errors import DegenerateInput, InsufficientData
from .geometry import GeometryStore

__all__ = [
    "DistanceMatrix",
    "pairwise_distances",
    "k_nearest",
    "nearest_neighbor_table",
    "mean_nearest_distance",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DistanceMatrix:
    """Symmetric N x N distances with a zero diagonal, plus row labels."""

    values: np.ndarray
    labels: Tuple[Any, ...]

    def __post_init__(self):
        values = np.array(self.values, dtype=float, copy=True)
        if values.ndim != 2 or values.shape[0] != values.shape[1]:
            raise ValueError(f"distance matrix must be square, got shape {values.shape}")
        if len(self.labels) != values.shape[0]:
            raise ValueError("one label is needed per matrix row")
        values.setflags(write=False)
        object.__setattr__(self, "values", values)
        object.__setattr__(self, "labels", tuple(self.labels))

    def __len__(self) -> int:
        return self.values.shape[0]

    def distance(self, i: int, j: int) -> float:
        return float(self.values[i, j])

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.values, index=list(self.labels), columns=list(self.labels))


def pairwise_distances(
    points: Union[GeometryStore, Sequence[Tuple[float, float]], np.ndarray],
    *,
    label_field: Optional[str] = None,
) -> DistanceMatrix:
    """Full planar distance matrix over an ordered point set.

    Coincident points are allowed and simply sit at distance 0.
    """
    if isinstance(points, GeometryStore):
        xy = points.coordinates()
        if label_field is not None:
            labels = tuple(points.column(label_field).tolist())
        else:
            labels = tuple(range(len(points)))
    else:
        xy = np.asarray(points, dtype=float).reshape(-1, 2)
        labels = tuple(range(len(xy)))

    if len(xy) < 2:
        raise DegenerateInput(f"pairwise distances need at least 2 points, got {len(xy)}")
    if not np.isfinite(xy).all():
        raise DegenerateInput("point coordinates must be finite")

    values = squareform(pdist(xy, metric="euclidean"))
    logger.debug("distance.matrix n=%d bytes=%d", len(xy), values.nbytes)
    return DistanceMatrix(values, labels)


def k_nearest(
    matrix: Union[DistanceMatrix, np.ndarray], k: int
) -> List[List[int]]:
    """For each row i, the k column indices j != i with the smallest distance.

    Equal distances are ranked by ascending index (stable sort).
    """
    values = matrix.values if isinstance(matrix, DistanceMatrix) else np.asarray(matrix, dtype=float)
    if values.ndim != 2 or values.shape[0] != values.shape[1]:
        raise ValueError(f"distance matrix must be square, got shape {values.shape}")
    if k <= 0:
        raise ValueError("k must be a positive integer")
    n = values.shape[0]
    if n <= k:
        raise InsufficientData(
            f"k={k} neighbours requested but only {n - 1} other point(s) exist"
        )

    out: List[List[int]] = []
    for i in range(n):
        order = np.argsort(values[i], kind="stable")
        out.append([int(j) for j in order if j != i][:k])
    return out


def nearest_neighbor_table(matrix: DistanceMatrix, k: int) -> pd.DataFrame:
    """Long-format table ``source, rank, neighbor, distance`` (rank starts at 1)."""
    neighbours = k_nearest(matrix, k)
    rows = []
    for i, js in enumerate(neighbours):
        for rank, j in enumerate(js, start=1):
            rows.append(
                {
                    "source_index": i,
                    "source": matrix.labels[i],
                    "rank": rank,
                    "neighbor_index": j,
                    "neighbor": matrix.labels[j],
                    "distance": matrix.distance(i, j),
                }
            )
    return pd.DataFrame(
        rows,
        columns=["source_index", "source", "rank", "neighbor_index", "neighbor", "distance"],
    )


def mean_nearest_distance(matrix: DistanceMatrix) -> float:
    """Average distance from each point to its nearest neighbour."""
    nearest = k_nearest(matrix, 1)
    return float(np.mean([matrix.distance(i, js[0]) for i, js in enumerate(nearest)]))
