"""Reprojection between spatial reference systems.

Distances and areas elsewhere in the package are planar: they are only
meaningful after every store has been moved into one projected working CRS
(BC Albers, ``EPSG:3005``, for the Greater Vancouver datasets).
"""

from __future__ import annotations

import logging
from typing import Any

import numpy as np
import shapely

from .errors import CRSMismatch, DegenerateGeometry, InvalidSRS
from .geometry import GeometryStore, resolve_crs

__all__ = ["reproject", "crs_equal", "require_same_crs", "to_geographic"]

logger = logging.getLogger(__name__)

GEOGRAPHIC_CRS = "EPSG:4326"


def crs_equal(a: Any, b: Any) -> bool:
    """Semantic equality of two SRS descriptors (a missing CRS never matches)."""
    if a is None or b is None:
        return False
    try:
        ca = resolve_crs(a)
        cb = resolve_crs(b)
    except InvalidSRS:
        return False
    return ca.equals(cb)


def require_same_crs(operation: str, *stores: GeometryStore) -> None:
    """Raise :class:`CRSMismatch` unless every store shares the first one's CRS."""
    if not stores:
        return
    first = stores[0].srs
    for other in stores[1:]:
        if not crs_equal(first, other.srs):
            raise CRSMismatch(operation, first, other.srs)


def reproject(store: GeometryStore, target_srs: Any) -> GeometryStore:
    """Return a copy of ``store`` with every coordinate transformed to ``target_srs``."""
    target = resolve_crs(target_srs)
    if crs_equal(store.srs, target):
        return store.derive(store.to_frame())

    moved = store.to_frame().to_crs(target)
    _ensure_finite(moved.geometry.values, store.name, target)
    logger.debug(
        "reproject.done store=%s n=%d src=%s dst=%s",
        store.name,
        len(store),
        store.srs.to_string(),
        target.to_string(),
    )
    return store.derive(moved)


def to_geographic(store: GeometryStore, geographic_crs: Any = GEOGRAPHIC_CRS) -> GeometryStore:
    """Reproject to longitude/latitude for web map sinks."""
    return reproject(store, geographic_crs)


def _ensure_finite(geoms, name: str, target) -> None:
    if len(geoms) == 0:
        return
    coords = shapely.get_coordinates(geoms)
    if coords.size and not np.isfinite(coords).all():
        bad = int((~np.isfinite(coords)).any(axis=1).sum())
        raise DegenerateGeometry(
            f"Reprojecting {name or 'store'} to {target.to_string()} produced "
            f"{bad} non-finite coordinate(s)"
        )
