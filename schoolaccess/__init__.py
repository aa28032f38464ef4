# schoolaccess/__init__.py
from importlib.metadata import PackageNotFoundError, version
import sys
import warnings

_MINIMUM_PYTHON = (3, 11)
_REQUIRED_DEPENDENCIES = {
    "pandas": "2.1",
    "numpy": "1.26",
    "shapely": "2.0",
    "geopandas": "0.14",
    "pyproj": "3.6",
    "scipy": "1.11",
}

_OPTIONAL_DEPENDENCIES = {
    "pyyaml": "6.0",
}

if sys.version_info < _MINIMUM_PYTHON:
    raise RuntimeError(f"Python >= {'.'.join(map(str, _MINIMUM_PYTHON))} is required.")


def _gte(installed: str, required: str) -> bool:
    from packaging import version as pv

    return pv.parse(installed) >= pv.parse(required)


_required_issues: list[str] = []
for pkg, minv in _REQUIRED_DEPENDENCIES.items():
    try:
        v = version(pkg)
    except PackageNotFoundError:
        _required_issues.append(f"{pkg}>={minv} (not installed)")
        continue
    if not _gte(v, minv):
        _required_issues.append(f"{pkg}>={minv} (found {v})")

if _required_issues:
    raise ImportError(
        "schoolaccess requires the following dependencies: "
        + ", ".join(_required_issues)
    ) from None


_optional_issues: list[str] = []
for pkg, minv in _OPTIONAL_DEPENDENCIES.items():
    try:
        v = version(pkg)
    except PackageNotFoundError:
        _optional_issues.append(f"{pkg}>={minv} (not installed)")
        continue
    if not _gte(v, minv):
        _optional_issues.append(f"{pkg}>={minv} (found {v})")

if _optional_issues:
    warnings.warn(
        "Optional dependencies are missing or out of date: "
        + ", ".join(_optional_issues)
        + ". YAML configuration files cannot be read.",
        RuntimeWarning,
        stacklevel=2,
    )


try:
    __version__ = version("schoolaccess")
except PackageNotFoundError:
    __version__ = "0.0.0"

from .errors import (
    CorruptGeometry,
    CRSMismatch,
    DegenerateGeometry,
    DegenerateInput,
    FileNotFound,
    InsufficientData,
    InvalidSRS,
    SchoolAccessError,
    UnsupportedFormat,
)
from .geometry import Feature, GeometryStore
from .reproject import crs_equal, reproject, to_geographic
from .overlay import (
    bounding_box,
    buffer,
    buffer_store,
    clip,
    convex_hull,
    filter_features,
    intersect,
    union,
    where,
)
from .join import aggregate_count, district_counts, spatial_join
from .tessellation import catchments, voronoi
from .distance import DistanceMatrix, k_nearest, nearest_neighbor_table, pairwise_distances
from .accessibility import coverage_by_radius, coverage_ratio
from .config import Config, load_config
from .pipeline import AnalysisResult, export_results, run_analysis

__all__ = [
    "__version__",
    "SchoolAccessError",
    "CRSMismatch",
    "InvalidSRS",
    "DegenerateGeometry",
    "DegenerateInput",
    "InsufficientData",
    "FileNotFound",
    "UnsupportedFormat",
    "CorruptGeometry",
    "Feature",
    "GeometryStore",
    "crs_equal",
    "reproject",
    "to_geographic",
    "filter_features",
    "where",
    "intersect",
    "union",
    "convex_hull",
    "bounding_box",
    "buffer",
    "buffer_store",
    "clip",
    "spatial_join",
    "aggregate_count",
    "district_counts",
    "voronoi",
    "catchments",
    "DistanceMatrix",
    "pairwise_distances",
    "k_nearest",
    "nearest_neighbor_table",
    "coverage_ratio",
    "coverage_by_radius",
    "Config",
    "load_config",
    "AnalysisResult",
    "run_analysis",
    "export_results",
]
