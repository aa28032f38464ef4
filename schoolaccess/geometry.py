"""Features, geometry families and the immutable Geometry Store."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Iterator, List, Mapping, Optional

import geopandas as gpd
import numpy as np
import pandas as pd
import shapely
from pyproj import CRS
from pyproj.exceptions import CRSError

from .errors import DegenerateGeometry, InvalidSRS

__all__ = [
    "POINT",
    "LINE",
    "POLYGON",
    "Feature",
    "GeometryStore",
    "geometry_family",
    "family_dimension",
    "resolve_crs",
    "probably_lonlat",
]

POINT = "point"
LINE = "line"
POLYGON = "polygon"

_FAMILY_BY_TYPE = {
    "Point": POINT,
    "MultiPoint": POINT,
    "LineString": LINE,
    "LinearRing": LINE,
    "MultiLineString": LINE,
    "Polygon": POLYGON,
    "MultiPolygon": POLYGON,
}

_DIMENSION = {POINT: 0, LINE: 1, POLYGON: 2}


def geometry_family(geom: Any) -> Optional[str]:
    """Return ``"point"``, ``"line"`` or ``"polygon"``; None for collections."""
    if geom is None:
        return None
    return _FAMILY_BY_TYPE.get(geom.geom_type)


def family_dimension(family: str) -> int:
    return _DIMENSION[family]


def resolve_crs(value: Any) -> CRS:
    """Coerce an EPSG code, authority string, WKT or ``pyproj.CRS`` into a CRS."""
    if value is None:
        raise InvalidSRS("SRS descriptor is missing; every store needs an explicit CRS")
    try:
        return CRS.from_user_input(value)
    except CRSError as exc:
        raise InvalidSRS(f"Unrecognized SRS descriptor: {value!r}") from exc


def probably_lonlat(x: float, y: float) -> bool:
    """Return True when (x, y) look like lon/lat coordinates."""

    return -180.0 <= x <= 180.0 and -90.0 <= y <= 90.0


@dataclass(frozen=True, slots=True)
class Feature:
    geometry: Any
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(
            self, "attributes", MappingProxyType(dict(self.attributes))
        )

    @property
    def family(self) -> Optional[str]:
        return geometry_family(self.geometry)


class GeometryStore:
    """Ordered features sharing one SRS and one geometry family.

    The store owns a private copy of its frame; every accessor hands out
    copies, so derived stores never share mutable state with their source.
    """

    __slots__ = ("_frame", "_family", "name")

    def __init__(self, frame: gpd.GeoDataFrame, *, name: str = ""):
        if not isinstance(frame, gpd.GeoDataFrame):
            raise TypeError("GeometryStore expects a GeoDataFrame")
        if frame.crs is None:
            raise InvalidSRS(
                f"GeometryStore {name or '<unnamed>'} has no CRS; SRS is never implicit"
            )
        owned = frame.copy()
        owned = owned.reset_index(drop=True)
        if owned.geometry.name != "geometry":
            owned = owned.rename_geometry("geometry")
        self._family = _store_family(owned, name)
        self._frame = owned
        self.name = name

    @classmethod
    def from_features(
        cls, features: Iterable[Feature], srs: Any, *, name: str = ""
    ) -> "GeometryStore":
        crs = resolve_crs(srs)
        feats = list(features)
        rows = [dict(f.attributes) for f in feats]
        geoms = [f.geometry for f in feats]
        frame = gpd.GeoDataFrame(
            pd.DataFrame(rows, index=range(len(feats))),
            geometry=gpd.GeoSeries(geoms, index=range(len(feats))),
            crs=crs,
        )
        return cls(frame, name=name)

    @classmethod
    def empty_like(cls, other: "GeometryStore", *, name: str = "") -> "GeometryStore":
        return cls(other._frame.iloc[0:0], name=name or other.name)

    def derive(self, frame: gpd.GeoDataFrame, *, name: str = "") -> "GeometryStore":
        """Wrap ``frame`` as a new store named after this one by default."""
        return GeometryStore(frame, name=name or self.name)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def srs(self) -> CRS:
        return self._frame.crs

    crs = srs

    @property
    def family(self) -> Optional[str]:
        return self._family

    @property
    def fields(self) -> List[str]:
        return [c for c in self._frame.columns if c != "geometry"]

    @property
    def geometries(self) -> gpd.GeoSeries:
        return self._frame.geometry.copy()

    @property
    def total_bounds(self) -> np.ndarray:
        return self._frame.total_bounds

    @property
    def geometry_values(self) -> np.ndarray:
        """Geometries as a fresh object array in store order."""
        return np.asarray(self._frame.geometry.values, dtype=object).copy()

    def query(self, geometries: Any, predicate: str = "intersects") -> np.ndarray:
        """Spatial-index pairs: row 0 indexes ``geometries``, row 1 this store."""
        return self._frame.sindex.query(geometries, predicate=predicate)

    def to_frame(self) -> gpd.GeoDataFrame:
        return self._frame.copy()

    def attributes(self) -> pd.DataFrame:
        return pd.DataFrame(self._frame.drop(columns="geometry"))

    def column(self, name: str) -> pd.Series:
        if name not in self._frame.columns:
            raise KeyError(f"{self.name or 'store'} has no field {name!r}")
        return self._frame[name].copy()

    def coordinates(self) -> np.ndarray:
        """Return an (N, 2) array of x/y for a point store, one row per feature."""
        if self._family not in (POINT, None):
            raise DegenerateGeometry(
                f"coordinates() needs a point store, {self.name or 'store'} is {self._family}"
            )
        if len(self._frame) == 0:
            return np.empty((0, 2), dtype=float)
        geoms = self._frame.geometry.values
        if shapely.get_type_id(geoms).max() > 0:
            raise DegenerateGeometry("coordinates() needs single-part points")
        return np.column_stack([shapely.get_x(geoms), shapely.get_y(geoms)])

    def __len__(self) -> int:
        return len(self._frame)

    def __iter__(self) -> Iterator[Feature]:
        fields = self.fields
        records = self._frame[fields].to_dict("records")
        for geom, attrs in zip(self._frame.geometry.values, records):
            yield Feature(geom, {k: _scalar(v) for k, v in attrs.items()})

    def __getitem__(self, idx: int) -> Feature:
        row = self._frame.iloc[idx]
        attrs = {k: _scalar(row[k]) for k in self.fields}
        return Feature(row.geometry, attrs)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return (
            f"<GeometryStore name={self.name!r} n={len(self)} "
            f"family={self._family} crs={self.srs.to_string()}>"
        )


def _scalar(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    return value


def _store_family(frame: gpd.GeoDataFrame, name: str) -> Optional[str]:
    families = set()
    for geom in frame.geometry.values:
        if geom is None or geom.is_empty:
            continue
        fam = geometry_family(geom)
        if fam is None:
            raise DegenerateGeometry(
                f"{name or 'store'} holds a {geom.geom_type}; only point, line "
                "and polygon families are supported"
            )
        families.add(fam)
    if len(families) > 1:
        raise DegenerateGeometry(
            f"{name or 'store'} mixes geometry families: {sorted(families)}"
        )
    return families.pop() if families else None
