"""End-to-end workflow: load, harmonise CRS, derive the study area, analyse.

Steps run as plain function composition over immutable stores. The
tessellation, distance and coverage branches only read the prepared school
points, so they may run on a thread pool; results are collected before
anything consumes them.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pandas as pd
from shapely.geometry.base import BaseGeometry

from .accessibility import coverage_by_district, coverage_by_radius
from .config import DATASETS, AnalysisOptions, Config, load_config
from .distance import DistanceMatrix, nearest_neighbor_table, pairwise_distances
from .entities import (
    DistrictAggregate,
    Province,
    School,
    as_key,
    district_schema,
    province_schema,
    records,
    school_schema,
)
from .geometry import GeometryStore
from .io import load, write_store, write_table
from .join import aggregate_count, district_aggregates, district_counts, spatial_join
from .overlay import buffer_store, clip, filter_features, intersect, union, where
from .reproject import reproject, to_geographic
from .tessellation import catchments, cells_frame

__all__ = [
    "DISTRICT_KEY",
    "DISTRICT_NAME",
    "Inputs",
    "StudyArea",
    "AnalysisResult",
    "configure_logging",
    "load_inputs",
    "prepare_study_area",
    "analyze",
    "run_analysis",
    "export_results",
    "run_from_config",
]

logger = logging.getLogger(__name__)

DISTRICT_KEY = "district_key"
DISTRICT_NAME = "district_name"


def timeit(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        t0 = time.perf_counter()
        out = func(*args, **kwargs)
        dt = (time.perf_counter() - t0) * 1000
        logger.debug("pipeline.step name=%s ms=%.2f", func.__name__, dt)
        return out

    return wrapper


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@dataclass
class Inputs:
    provinces: GeometryStore
    districts: GeometryStore
    schools: GeometryStore


@dataclass
class StudyArea:
    province: GeometryStore
    districts: GeometryStore
    boundary: BaseGeometry
    schools: GeometryStore


@dataclass
class AnalysisResult:
    study: StudyArea
    schools: GeometryStore
    district_counts: GeometryStore
    aggregates: List[DistrictAggregate]
    catchments: GeometryStore
    distances: DistanceMatrix
    nearest: pd.DataFrame
    coverage: pd.DataFrame
    district_coverage: pd.DataFrame
    options: AnalysisOptions = field(repr=False, default_factory=AnalysisOptions)

    def counts_table(self) -> pd.DataFrame:
        return pd.DataFrame(
            [a.to_dict() for a in self.aggregates],
            columns=["district_key", "district_name", "school_count"],
        )

    def school_records(self, cfg: Config) -> List[School]:
        return records(
            self.schools,
            School,
            name_field=cfg.schools.name_field,
            id_field=cfg.schools.id_field,
            district_field=DISTRICT_KEY,
        )


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


@timeit
def load_inputs(cfg: Config) -> Inputs:
    stores = {ds: load(cfg[ds].path, layer=cfg[ds].layer, name=ds) for ds in DATASETS}
    provinces, districts, schools = (stores[ds] for ds in DATASETS)
    prov, dist, sch = cfg.provinces, cfg.districts, cfg.schools

    province_schema(prov.name_field).validate(provinces)
    district_schema(dist.key_field, dist.name_field).validate(districts)
    school_schema(sch.name_field, sch.id_field).validate(schools)
    return Inputs(provinces, districts, schools)


@timeit
def prepare_study_area(inputs: Inputs, cfg: Config) -> StudyArea:
    """Reproject every layer, then narrow province -> districts -> study area."""
    opts = cfg.analysis
    provinces = reproject(inputs.provinces, opts.working_crs)
    districts = reproject(inputs.districts, opts.working_crs)
    schools = reproject(inputs.schools, opts.working_crs)

    province = where(provinces, **{cfg.provinces.name_field: opts.province})
    if len(province) == 0:
        raise ValueError(
            f"No province named {opts.province!r} in field {cfg.provinces.name_field!r}"
        )
    parts = records(province, Province, name_field=cfg.provinces.name_field)
    logger.info("pipeline.province name=%s parts=%d", parts[0].name, len(parts))

    in_province = intersect(districts, province)
    key_field = cfg.districts.key_field
    if opts.study_districts:
        wanted = set(opts.study_districts)
        study = filter_features(in_province, lambda a: as_key(a[key_field]) in wanted)
        found = {as_key(k) for k in study.column(key_field)} if len(study) else set()
        absent = sorted(wanted - found)
        if absent:
            logger.warning("pipeline.study_districts_missing keys=%s", ",".join(absent))
    else:
        study = in_province
    if len(study) == 0:
        raise ValueError("No districts left in the study area")

    boundary = union(study)
    schools_in_area = clip(schools, boundary)
    logger.info(
        "pipeline.study_area districts=%d schools=%d area=%.0f",
        len(study),
        len(schools_in_area),
        boundary.area,
    )
    return StudyArea(province, study, boundary, schools_in_area)


def _district_join_layer(study: StudyArea, cfg: Config) -> GeometryStore:
    frame = study.districts.to_frame()
    names = {cfg.districts.key_field: DISTRICT_KEY}
    if cfg.districts.name_field:
        names[cfg.districts.name_field] = DISTRICT_NAME
    keep = list(names) + ["geometry"]
    return study.districts.derive(frame[keep].rename(columns=names))


@timeit
def analyze(study: StudyArea, cfg: Config) -> AnalysisResult:
    opts = cfg.analysis
    layer = _district_join_layer(study, cfg)
    carried = [c for c in (DISTRICT_KEY, DISTRICT_NAME) if c in layer.fields]
    joined = spatial_join(study.schools, layer, carried, tie_break=opts.join_tie_break)

    counts = aggregate_count(joined, DISTRICT_KEY)
    counted = district_counts(layer, counts, DISTRICT_KEY)
    aggregates = district_aggregates(
        layer, counts, DISTRICT_KEY, name_field=DISTRICT_NAME if DISTRICT_NAME in carried else None
    )

    branches: Dict[str, Callable[[], Any]] = {
        "catchments": lambda: catchments(joined, study.boundary),
        "distances": lambda: _distance_branch(joined, cfg),
        "coverage": lambda: _coverage_branch(joined, layer, study.boundary, opts),
    }
    out = _run_branches(branches, parallel=opts.parallel)
    distances, nearest = out["distances"]
    coverage, district_coverage = out["coverage"]

    return AnalysisResult(
        study=study,
        schools=joined,
        district_counts=counted,
        aggregates=aggregates,
        catchments=out["catchments"],
        distances=distances,
        nearest=nearest,
        coverage=coverage,
        district_coverage=district_coverage,
        options=opts,
    )


def _distance_branch(schools: GeometryStore, cfg: Config):
    matrix = pairwise_distances(schools, label_field=cfg.schools.name_field)
    return matrix, nearest_neighbor_table(matrix, cfg.analysis.k_neighbors)


def _coverage_branch(
    schools: GeometryStore,
    districts: GeometryStore,
    boundary: BaseGeometry,
    opts: AnalysisOptions,
):
    overall = coverage_by_radius(
        schools, opts.buffer_radii, boundary, quad_segs=opts.buffer_quad_segs
    )
    per_district = pd.concat(
        [
            coverage_by_district(
                schools, r, districts, DISTRICT_KEY, quad_segs=opts.buffer_quad_segs
            )
            for r in sorted(opts.buffer_radii)
        ],
        ignore_index=True,
    )
    return overall, per_district


def _run_branches(branches: Dict[str, Callable[[], Any]], *, parallel: bool) -> Dict[str, Any]:
    if not parallel:
        return {name: fn() for name, fn in branches.items()}
    with ThreadPoolExecutor(max_workers=len(branches)) as pool:
        futures = {name: pool.submit(fn) for name, fn in branches.items()}
        return {name: fut.result() for name, fut in futures.items()}


def run_analysis(cfg: Config, inputs: Optional[Inputs] = None) -> AnalysisResult:
    if inputs is None:
        inputs = load_inputs(cfg)
    study = prepare_study_area(inputs, cfg)
    return analyze(study, cfg)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


@timeit
def export_results(result: AnalysisResult, out_dir: str | Path) -> Dict[str, Path]:
    """Write feature collections (lon/lat GeoJSON) and CSV tables to ``out_dir``."""
    out = Path(out_dir)
    geo_crs = result.options.geographic_crs
    written: Dict[str, Path] = {}

    stores = {
        "district_counts": result.district_counts,
        "schools": result.schools,
        "catchments": result.catchments,
    }
    for radius in result.options.buffer_radii:
        stores[f"school_buffers_{radius:g}m"] = buffer_store(
            result.schools, radius, quad_segs=result.options.buffer_quad_segs
        )
    for name, store in stores.items():
        written[name] = write_store(to_geographic(store, geo_crs), out / f"{name}.geojson")

    tables = {
        "district_counts_table": result.counts_table(),
        "nearest_neighbors": result.nearest,
        "distance_matrix": result.distances.to_frame().reset_index(names="school"),
        "coverage": result.coverage,
        "district_coverage": result.district_coverage,
        "catchment_areas": cells_frame(result.catchments),
    }
    for name, table in tables.items():
        written[name] = write_table(table, out / f"{name}.csv")
    return written


def run_from_config(path: str | Path, *, output_dir: str | Path | None = None) -> AnalysisResult:
    cfg = load_config(path)
    configure_logging(cfg.log_level)
    result = run_analysis(cfg)
    target = output_dir or cfg.output_dir
    if target is not None:
        export_results(result, target)
    return result
