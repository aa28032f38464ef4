"""Dataset schemas and typed records (Province, District, School)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

from .errors import DegenerateGeometry
from .geometry import POINT, POLYGON, Feature, GeometryStore, geometry_family

__all__ = [
    "DatasetSchema",
    "Province",
    "District",
    "School",
    "DistrictAggregate",
    "records",
    "as_key",
    "province_schema",
    "district_schema",
    "school_schema",
]


def validate_non_empty_str(name: str):
    """Decorator factory: enforce non-empty string attribute on __post_init__."""

    def deco(cls):
        orig_post = getattr(cls, "__post_init__", None)

        def post(self):
            if not getattr(self, name) or not isinstance(getattr(self, name), str):
                raise ValueError(f"{cls.__name__}.{name} must be a non-empty string")
            if orig_post:
                orig_post(self)

        cls.__post_init__ = post
        return cls

    return deco


@dataclass(frozen=True)
class DatasetSchema:
    """Fixed field schema and geometry family of one input dataset."""

    dataset: str
    family: str
    fields: Tuple[str, ...]

    def missing(self, store: GeometryStore) -> List[str]:
        present = set(store.fields)
        return [f for f in self.fields if f not in present]

    def validate(self, store: GeometryStore) -> GeometryStore:
        missing = self.missing(store)
        if missing:
            raise KeyError(
                f"{self.dataset} is missing field(s) {missing}; available: {store.fields}"
            )
        if store.family is not None and store.family != self.family:
            raise DegenerateGeometry(
                f"{self.dataset} must hold {self.family} geometries, found {store.family}"
            )
        return store


@validate_non_empty_str("name")
@dataclass(slots=True)
class Province:
    name: str
    boundary: Any = field(default=None, repr=False)
    meta: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self):
        _require_family(self.boundary, POLYGON, "Province.boundary")

    @classmethod
    def from_feature(cls, feature: Feature, *, name_field: str) -> "Province":
        attrs = dict(feature.attributes)
        return cls(name=str(attrs.pop(name_field)), boundary=feature.geometry, meta=attrs)


@validate_non_empty_str("key")
@dataclass(slots=True)
class District:
    key: str
    name: Optional[str] = None
    boundary: Any = field(default=None, repr=False)
    meta: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self):
        _require_family(self.boundary, POLYGON, "District.boundary")

    @classmethod
    def from_feature(
        cls, feature: Feature, *, key_field: str, name_field: Optional[str] = None
    ) -> "District":
        attrs = dict(feature.attributes)
        key = as_key(attrs.pop(key_field))
        name = attrs.pop(name_field, None) if name_field else None
        return cls(key=key, name=name, boundary=feature.geometry, meta=attrs)

    @property
    def area(self) -> float:
        return 0.0 if self.boundary is None else float(self.boundary.area)


@validate_non_empty_str("name")
@dataclass(slots=True)
class School:
    name: str
    school_id: Optional[str] = None
    district_key: Optional[str] = None
    point: Any = field(default=None, repr=False)
    meta: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self):
        _require_family(self.point, POINT, "School.point")

    @classmethod
    def from_feature(
        cls,
        feature: Feature,
        *,
        name_field: str,
        id_field: Optional[str] = None,
        district_field: Optional[str] = None,
    ) -> "School":
        attrs = dict(feature.attributes)
        name = str(attrs.pop(name_field))
        school_id = attrs.pop(id_field, None) if id_field else None
        district = attrs.pop(district_field, None) if district_field else None
        return cls(
            name=name,
            school_id=None if school_id is None else str(school_id),
            district_key=None if district is None else as_key(district),
            point=feature.geometry,
            meta=attrs,
        )

    @property
    def coords(self) -> tuple[float, float] | None:
        if self.point is None:
            return None
        return (float(self.point.x), float(self.point.y))


@dataclass(frozen=True, slots=True)
class DistrictAggregate:
    """Per-district school count produced by joining schools to districts."""

    district: District
    school_count: int

    def __post_init__(self):
        if self.school_count < 0:
            raise ValueError("school_count must be >= 0")

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"district_key": self.district.key}
        if self.district.name is not None:
            out["district_name"] = self.district.name
        out["school_count"] = self.school_count
        return out


R = TypeVar("R")


def records(store: GeometryStore, cls: Type[R], **field_names: Any) -> List[R]:
    """Materialise ``store`` as typed records via ``cls.from_feature``."""
    return [cls.from_feature(f, **field_names) for f in store]


def _require_family(geom: Any, family: str, what: str) -> None:
    if geom is None:
        return
    if geometry_family(geom) != family:
        raise DegenerateGeometry(f"{what} must be a {family} geometry, got {geom.geom_type}")


def as_key(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


PROVINCE_FAMILY = POLYGON
DISTRICT_FAMILY = POLYGON
SCHOOL_FAMILY = POINT


def province_schema(name_field: str) -> DatasetSchema:
    return DatasetSchema("provinces", PROVINCE_FAMILY, (name_field,))


def district_schema(key_field: str, name_field: Optional[str] = None) -> DatasetSchema:
    fields: Iterable[str] = (key_field,) if not name_field else (key_field, name_field)
    return DatasetSchema("districts", DISTRICT_FAMILY, tuple(fields))


def school_schema(name_field: str, id_field: Optional[str] = None) -> DatasetSchema:
    fields: Iterable[str] = (name_field,) if not id_field else (name_field, id_field)
    return DatasetSchema("schools", SCHOOL_FAMILY, tuple(fields))
