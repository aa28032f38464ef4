"""Buffer-based accessibility coverage."""

from __future__ import annotations

import logging
from typing import Iterable, Union

import pandas as pd
import shapely
from shapely.geometry.base import BaseGeometry

from .errors import DegenerateGeometry
from .geometry import POINT, GeometryStore
from .overlay import DEFAULT_QUAD_SEGS, boundary_geometry
from .reproject import require_same_crs

__all__ = ["coverage_ratio", "coverage_by_radius", "coverage_by_district"]

logger = logging.getLogger(__name__)


def coverage_ratio(
    features: GeometryStore,
    radius: float,
    region: Union[GeometryStore, BaseGeometry],
    *,
    quad_segs: int = DEFAULT_QUAD_SEGS,
) -> float:
    """Share of ``region`` lying within ``radius`` of any feature.

    ``area(union(buffers) & region) / area(region)``, always in [0, 1]. A bare
    shapely ``region`` is taken to be in ``features``' CRS.
    """
    if radius <= 0:
        raise ValueError("radius must be > 0")
    if features.family not in (POINT, None):
        raise ValueError(f"coverage_ratio expects points, got {features.family}")
    area_geom = boundary_geometry(region, features, "coverage_ratio")
    region_area = area_geom.area
    if region_area <= 0:
        raise DegenerateGeometry("coverage region has zero area")
    if len(features) == 0:
        return 0.0

    buffers = shapely.buffer(features.geometry_values, radius, quad_segs=quad_segs)
    covered = shapely.intersection(shapely.union_all(buffers), area_geom)
    ratio = covered.area / region_area
    return min(1.0, max(0.0, float(ratio)))


def coverage_by_radius(
    features: GeometryStore,
    radii: Iterable[float],
    region: Union[GeometryStore, BaseGeometry],
    *,
    quad_segs: int = DEFAULT_QUAD_SEGS,
) -> pd.DataFrame:
    """Coverage ratio for each radius, sorted ascending."""
    rows = []
    for radius in sorted({float(r) for r in radii}):
        ratio = coverage_ratio(features, radius, region, quad_segs=quad_segs)
        logger.info("accessibility.coverage radius=%g ratio=%.4f", radius, ratio)
        rows.append({"radius": radius, "coverage_ratio": ratio})
    return pd.DataFrame(rows, columns=["radius", "coverage_ratio"])


def coverage_by_district(
    features: GeometryStore,
    radius: float,
    districts: GeometryStore,
    key_field: str,
    *,
    quad_segs: int = DEFAULT_QUAD_SEGS,
) -> pd.DataFrame:
    """Coverage ratio of each district polygon for one radius.

    Schools outside a district still count towards its coverage; catchments do
    not stop at district lines.
    """
    require_same_crs("coverage_by_district", features, districts)
    rows = []
    for feature in districts:
        rows.append(
            {
                key_field: feature.attributes[key_field],
                "radius": float(radius),
                "coverage_ratio": coverage_ratio(
                    features, radius, feature.geometry, quad_segs=quad_segs
                ),
            }
        )
    return pd.DataFrame(rows, columns=[key_field, "radius", "coverage_ratio"])
