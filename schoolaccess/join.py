"""Point-in-polygon join and per-polygon aggregation."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import pandas as pd
import shapely

from .entities import District, DistrictAggregate
from .geometry import POINT, POLYGON, GeometryStore
from .reproject import require_same_crs

__all__ = [
    "TIE_BREAK_POLICIES",
    "spatial_join",
    "aggregate_count",
    "district_counts",
    "district_aggregates",
]

logger = logging.getLogger(__name__)

TIE_BREAK_POLICIES = ("first", "smallest_area")


def spatial_join(
    points: GeometryStore,
    polygons: GeometryStore,
    carried_fields: Iterable[str],
    *,
    tie_break: str = "first",
) -> GeometryStore:
    """Left-join polygon attributes onto each point.

    A point matches every polygon that contains it or whose boundary it lies
    on. When several polygons match, ``tie_break`` decides:

    - ``"first"``: the match earliest in the polygon store's order.
    - ``"smallest_area"``: the most specific (smallest) polygon, then order.

    Unmatched points keep the carried fields unset (``None``). The result has
    exactly one feature per input point, in input order.
    """
    require_same_crs("spatial_join", points, polygons)
    if tie_break not in TIE_BREAK_POLICIES:
        raise ValueError(
            f"Unknown tie_break {tie_break!r}; expected one of {TIE_BREAK_POLICIES}"
        )
    if points.family not in (POINT, None):
        raise ValueError(f"spatial_join expects points, got {points.family}")
    if polygons.family not in (POLYGON, None):
        raise ValueError(f"spatial_join expects polygons, got {polygons.family}")

    fields = list(dict.fromkeys(carried_fields))
    missing = [f for f in fields if f not in polygons.fields]
    if missing:
        raise KeyError(f"{polygons.name or 'polygons'} has no field(s) {missing}")
    clashes = [f for f in fields if f in points.fields]
    if clashes:
        raise ValueError(
            f"Carried field(s) {clashes} already exist on {points.name or 'points'}"
        )

    matched = _match_positions(points, polygons, tie_break)

    joined = points.to_frame()
    for f in fields:
        source = polygons.column(f)
        values: List[Any] = [None] * len(joined)
        for pt_idx, poly_idx in matched.items():
            value = source.iat[poly_idx]
            values[pt_idx] = value.item() if isinstance(value, np.generic) else value
        joined[f] = pd.Series(values, index=joined.index, dtype=object)

    unmatched = len(joined) - len(matched)
    if unmatched:
        logger.warning(
            "join.unmatched_points count=%d points=%s polygons=%s",
            unmatched,
            points.name,
            polygons.name,
        )
    return points.derive(joined)


def _match_positions(
    points: GeometryStore, polygons: GeometryStore, tie_break: str
) -> Dict[int, int]:
    if len(points) == 0 or len(polygons) == 0:
        return {}
    pt_idx, poly_idx = polygons.query(points.geometry_values, predicate="intersects")
    if pt_idx.size == 0:
        return {}

    if tie_break == "smallest_area":
        areas = shapely.area(polygons.geometry_values)[poly_idx]
        order = np.lexsort((poly_idx, areas, pt_idx))
    else:
        order = np.lexsort((poly_idx, pt_idx))
    pt_idx = pt_idx[order]
    poly_idx = poly_idx[order]

    counts = np.bincount(pt_idx, minlength=len(points))
    ambiguous = int((counts > 1).sum())
    if ambiguous:
        logger.warning(
            "join.ambiguous_points count=%d policy=%s polygons=%s",
            ambiguous,
            tie_break,
            polygons.name,
        )

    matched: Dict[int, int] = {}
    for p, q in zip(pt_idx.tolist(), poly_idx.tolist()):
        if p not in matched:
            matched[p] = q
    return matched


def aggregate_count(joined_points: GeometryStore, group_by_field: str) -> Dict[Any, int]:
    """Count joined points per value of ``group_by_field``.

    Points whose field is unset (no polygon matched) are excluded, and groups
    with zero members never appear; see :func:`district_counts` to backfill.
    """
    values = joined_points.column(group_by_field).dropna()
    counts = values.value_counts(sort=False).to_dict()
    return {key: int(counts[key]) for key in values.drop_duplicates()}


def district_counts(
    districts: GeometryStore,
    counts: Dict[Any, int],
    key_field: str,
    *,
    count_field: str = "school_count",
) -> GeometryStore:
    """Attach ``counts`` to every district, defaulting districts with no schools to 0."""
    if count_field in districts.fields:
        raise ValueError(f"{districts.name or 'districts'} already has {count_field!r}")
    frame = districts.to_frame()
    keys = districts.column(key_field)
    frame[count_field] = [int(counts.get(k, 0)) for k in keys]
    frame[count_field] = frame[count_field].astype("int64")
    return districts.derive(frame)


def district_aggregates(
    districts: GeometryStore,
    counts: Dict[Any, int],
    key_field: str,
    *,
    name_field: Optional[str] = None,
) -> List[DistrictAggregate]:
    """Typed district aggregate records, zero-filled like :func:`district_counts`."""
    out: List[DistrictAggregate] = []
    for feature in districts:
        raw_key = feature.attributes[key_field]
        district = District.from_feature(feature, key_field=key_field, name_field=name_field)
        out.append(DistrictAggregate(district, int(counts.get(raw_key, 0))))
    return out
