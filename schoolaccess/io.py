"""Vector loaders and result writers.

Reading and writing go through ``geopandas`` with the ``pyogrio`` engine.
Loader failures are reported as :class:`FileNotFound`,
:class:`UnsupportedFormat` or :class:`CorruptGeometry` so callers can tell
a bad path from a bad file.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import geopandas as gpd
import numpy as np
import pandas as pd
import shapely
from pyogrio.errors import DataLayerError, DataSourceError

from .errors import CorruptGeometry, DegenerateGeometry, FileNotFound, InvalidSRS, UnsupportedFormat
from .geometry import GeometryStore, probably_lonlat

__all__ = [
    "VECTOR_SUFFIXES",
    "load",
    "write_store",
    "write_table",
]

logger = logging.getLogger(__name__)

_DRIVERS = {
    ".geojson": "GeoJSON",
    ".json": "GeoJSON",
    ".gpkg": "GPKG",
    ".shp": "ESRI Shapefile",
    ".fgb": "FlatGeobuf",
}
VECTOR_SUFFIXES = tuple(_DRIVERS) + (".zip",)


def _suffix(path: Path) -> str:
    suffixes = [s.lower() for s in path.suffixes]
    if suffixes[-2:] == [".shp", ".zip"]:
        return ".zip"
    return path.suffix.lower()


def load(
    path: str | Path, *, layer: Optional[str] = None, name: Optional[str] = None
) -> GeometryStore:
    """Read a vector file into a non-empty, single-family :class:`GeometryStore`."""
    p = Path(path)
    label = name or p.stem
    if not p.exists():
        raise FileNotFound(f"Vector source not found: {p}")
    ext = _suffix(p)
    if ext not in VECTOR_SUFFIXES:
        raise UnsupportedFormat(
            f"Unsupported vector format {ext or '<none>'!r} for {p.name}; "
            f"expected one of {VECTOR_SUFFIXES}"
        )

    try:
        frame = gpd.read_file(p, layer=layer, engine="pyogrio")
    except (DataSourceError, DataLayerError) as exc:
        raise CorruptGeometry(f"Could not read {p}: {exc}") from exc

    if len(frame) == 0:
        raise CorruptGeometry(f"{p} contains no features")
    null_geoms = frame.geometry.isna() | frame.geometry.is_empty
    if null_geoms.any():
        raise CorruptGeometry(
            f"{p} has {int(null_geoms.sum())} feature(s) with null or empty geometry"
        )
    if frame.crs is None:
        x0, y0, _, _ = frame.total_bounds
        hint = " (coordinates look like lon/lat; EPSG:4326?)" if probably_lonlat(x0, y0) else ""
        raise InvalidSRS(f"{p} declares no CRS{hint}")

    invalid = ~frame.geometry.is_valid
    if invalid.any():
        logger.warning("io.repaired_geometries count=%d path=%s", int(invalid.sum()), p)
        geoms = np.asarray(frame.geometry.values, dtype=object)
        mask = invalid.to_numpy()
        geoms[mask] = shapely.make_valid(geoms[mask])
        frame[frame.geometry.name] = gpd.GeoSeries(geoms, index=frame.index, crs=frame.crs)

    try:
        store = GeometryStore(frame, name=label)
    except DegenerateGeometry as exc:
        raise CorruptGeometry(f"{p}: {exc}") from exc
    logger.info(
        "io.loaded name=%s n=%d family=%s crs=%s path=%s",
        label,
        len(store),
        store.family,
        store.srs.to_string(),
        p,
    )
    return store


def write_store(store: GeometryStore, path: str | Path) -> Path:
    """Write a store as a vector file; the driver follows the file suffix."""
    p = Path(path)
    driver = _DRIVERS.get(p.suffix.lower())
    if driver is None:
        raise UnsupportedFormat(f"Cannot write vector format {p.suffix!r}")
    p.parent.mkdir(parents=True, exist_ok=True)
    store.to_frame().to_file(p, driver=driver, engine="pyogrio")
    logger.info("io.wrote name=%s n=%d path=%s", store.name, len(store), p)
    return p


def write_table(table: pd.DataFrame, path: str | Path) -> Path:
    """Write a plain tabular result (aggregates, neighbour tables) as CSV."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(p, index=False)
    logger.info("io.wrote_table rows=%d path=%s", len(table), p)
    return p
