"""Voronoi catchments around schools.

``voronoi`` runs Qhull (via ``scipy.spatial.Voronoi``) over the school points
plus four far-away frame generators. The frame closes every school's cell
without moving any bisector between two schools inside the frame's reach, so
cells are exact over the data extent (and any ``extent`` passed in) but still
need clipping to a real boundary with :func:`clip`.

Complexity is O(n log n) in the number of schools.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

import geopandas as gpd
import numpy as np
import pandas as pd
from scipy.spatial import QhullError, Voronoi
from shapely.geometry import Polygon, box
from shapely.geometry.base import BaseGeometry

from .errors import DegenerateInput
from .geometry import POINT, GeometryStore
from .overlay import boundary_geometry, clip as clip_store

__all__ = ["GENERATOR_FIELD", "voronoi", "clip", "catchments", "cells_frame"]

logger = logging.getLogger(__name__)

GENERATOR_FIELD = "generator_index"

# Frame generators sit this many data spans away from the centre.
_FRAME_FACTOR = 10.0


def voronoi(
    points: GeometryStore,
    *,
    extent: Optional[Union[GeometryStore, BaseGeometry]] = None,
) -> GeometryStore:
    """One Voronoi cell per point, in input order.

    Each cell carries its generator's attributes plus ``generator_index``, the
    generator's position in ``points``. That index is the association to the
    originating school; it is never re-derived by point-in-polygon tests.
    """
    if points.family not in (POINT, None):
        raise DegenerateInput(f"voronoi needs points, got {points.family}")
    xy = points.coordinates()
    n = len(xy)
    if n == 0:
        raise DegenerateInput("voronoi needs at least one generator point")
    if len(np.unique(xy, axis=0)) != n:
        raise DegenerateInput(
            f"{points.name or 'points'} contains coincident points; Voronoi cells are undefined"
        )

    bounds = _extent_bounds(xy, points, extent)
    frame_box = _frame_box(bounds)

    if n == 1:
        logger.warning(
            "tessellation.single_generator store=%s; cell covers the whole frame",
            points.name,
        )
        cells = [frame_box]
    else:
        cells = _finite_cells(xy, bounds)

    frame = points.to_frame()
    frame[GENERATOR_FIELD] = np.arange(n, dtype="int64")
    frame["geometry"] = cells
    return points.derive(frame)


def clip(
    cells: GeometryStore, boundary: Union[GeometryStore, BaseGeometry]
) -> GeometryStore:
    """Intersect each cell with ``boundary``; cells wholly outside are dropped."""
    if GENERATOR_FIELD not in cells.fields:
        raise KeyError(f"cells must carry {GENERATOR_FIELD!r} from voronoi()")
    mask = boundary_geometry(boundary, cells, "voronoi.clip")
    clipped = clip_store(cells, mask)
    dropped = len(cells) - len(clipped)
    if dropped:
        logger.info(
            "tessellation.cells_outside_boundary count=%d store=%s", dropped, cells.name
        )
    return clipped


def catchments(
    points: GeometryStore, boundary: Union[GeometryStore, BaseGeometry]
) -> GeometryStore:
    """Voronoi cells of ``points`` clipped to ``boundary``."""
    mask = boundary_geometry(boundary, points, "catchments")
    return clip(voronoi(points, extent=mask), mask)


def _extent_bounds(xy: np.ndarray, points: GeometryStore, extent) -> tuple:
    minx, miny = xy.min(axis=0)
    maxx, maxy = xy.max(axis=0)
    if extent is not None:
        geom = boundary_geometry(extent, points, "voronoi")
        if not geom.is_empty:
            ex0, ey0, ex1, ey1 = geom.bounds
            minx, miny = min(minx, ex0), min(miny, ey0)
            maxx, maxy = max(maxx, ex1), max(maxy, ey1)
    return float(minx), float(miny), float(maxx), float(maxy)


def _frame_box(bounds: tuple) -> Polygon:
    minx, miny, maxx, maxy = bounds
    cx, cy = (minx + maxx) / 2.0, (miny + maxy) / 2.0
    reach = _FRAME_FACTOR * max(maxx - minx, maxy - miny, 1.0)
    return box(cx - reach / 2.0, cy - reach / 2.0, cx + reach / 2.0, cy + reach / 2.0)


def _finite_cells(xy: np.ndarray, bounds: tuple) -> list:
    minx, miny, maxx, maxy = bounds
    cx, cy = (minx + maxx) / 2.0, (miny + maxy) / 2.0
    reach = _FRAME_FACTOR * max(maxx - minx, maxy - miny, 1.0)
    sentinels = np.array(
        [
            [cx - reach, cy - reach],
            [cx + reach, cy - reach],
            [cx + reach, cy + reach],
            [cx - reach, cy + reach],
        ]
    )
    try:
        vor = Voronoi(np.vstack([xy, sentinels]))
    except QhullError as exc:
        raise DegenerateInput(f"Qhull could not tessellate the points: {exc}") from exc

    cells = []
    for i in range(len(xy)):
        region = vor.regions[vor.point_region[i]]
        if not region or -1 in region:
            raise DegenerateInput(f"Voronoi cell {i} is unbounded despite frame generators")
        verts = vor.vertices[region]
        centre = verts.mean(axis=0)
        angles = np.arctan2(verts[:, 1] - centre[1], verts[:, 0] - centre[0])
        cells.append(Polygon(verts[np.argsort(angles)]))
    return cells


def cells_frame(cells: GeometryStore) -> pd.DataFrame:
    """Catchment areas per generator, for tabular export."""
    frame = cells.to_frame()
    out = pd.DataFrame(frame.drop(columns="geometry"))
    out["area"] = gpd.GeoSeries(frame.geometry).area.to_numpy()
    return out
