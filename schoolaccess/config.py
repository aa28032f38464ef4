"""
config.py

Config loader + validator for the school accessibility workflow.

Features:
- YAML/TOML config naming the three input layers (provinces, districts, schools)
  together with the field names each layer carries
- Relative source paths resolved against the config file's directory; ~ and $ENV expanded
- Analysis options (working CRS, study districts, buffer radii, k, join policy)
  validated up front so a bad config fails before any data is read
- ``write_template`` drops a starter config for the Greater Vancouver datasets
"""

from __future__ import annotations
from dataclasses import asdict, dataclass, field
from typing import Dict, Any, Optional, List, Tuple
from pathlib import Path
import json
import os

from .errors import InvalidSRS
from .geometry import resolve_crs
from .io import VECTOR_SUFFIXES
from .join import TIE_BREAK_POLICIES

DATASETS = ("provinces", "districts", "schools")

# ------------------------------
# Loading utilities (YAML/TOML)
# ------------------------------


def _load_yaml(text: str) -> dict:
    try:
        import yaml  # PyYAML
    except Exception as e:
        raise RuntimeError(
            "PyYAML is required to read .yaml/.yml configs. pip install pyyaml"
        ) from e
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError("YAML root must be a mapping (dict).")
    return data


def _load_toml(text: str) -> dict:
    import tomllib

    data = tomllib.loads(text)
    if not isinstance(data, dict):
        raise ValueError("TOML root must be a mapping (dict).")
    return data


def _detect_and_load(path: Path) -> dict:
    suffix = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if suffix in (".yaml", ".yml"):
        return _load_yaml(text)
    if suffix == ".toml":
        return _load_toml(text)
    # Last resort: try YAML first, then TOML
    try:
        return _load_yaml(text)
    except Exception:
        return _load_toml(text)


# ------------------------------
# Helpers
# ------------------------------


def _expand_path(value: str) -> str:
    """Expand ~ and $ENV in a path-like string, but leave URLs untouched."""
    if isinstance(value, str) and ("://" not in value):
        return os.path.expandvars(os.path.expanduser(value))
    return value


def _rewrite_relative_paths(raw: dict, base_dir: Path) -> dict:
    """Rewrite relative ``path`` entries under [sources] to be relative to base_dir."""

    def rewrite_value(val: Any) -> Any:
        if not isinstance(val, str):
            return val
        if "://" in val:
            return val
        path = Path(_expand_path(val))
        if path.is_absolute():
            return str(path)
        return str(base_dir / path)

    updated = dict(raw)
    sources = updated.get("sources")
    if isinstance(sources, dict):
        out: dict = {}
        for key, spec in sources.items():
            if isinstance(spec, str):
                out[key] = rewrite_value(spec)
            elif isinstance(spec, dict):
                out[key] = {
                    k: rewrite_value(v) if k == "path" else v for k, v in spec.items()
                }
            else:
                out[key] = spec
        updated["sources"] = out

    options = updated.get("options")
    if isinstance(options, dict) and isinstance(options.get("output_dir"), str):
        updated["options"] = dict(options, output_dir=rewrite_value(options["output_dir"]))
    return updated


# ---------- Sources ----------


@dataclass
class SourceSpec:
    """One input layer: where it lives and which fields identify its features."""

    path: str
    layer: Optional[str] = None
    name_field: Optional[str] = None
    key_field: Optional[str] = None
    id_field: Optional[str] = None

    @staticmethod
    def from_raw(raw: Any, *, dataset: str) -> "SourceSpec":
        if isinstance(raw, str):
            raw = {"path": raw}
        if not isinstance(raw, dict):
            raise ValueError(f"[sources.{dataset}] must be a path or a mapping")
        path = raw.get("path")
        if not isinstance(path, str) or not path.strip():
            raise ValueError(f"[sources.{dataset}] needs a non-empty 'path'")
        unknown = set(raw) - {"path", "layer", "name_field", "key_field", "id_field"}
        if unknown:
            raise ValueError(f"[sources.{dataset}] unknown key(s): {sorted(unknown)}")
        return SourceSpec(
            path=_expand_path(path),
            layer=raw.get("layer"),
            name_field=raw.get("name_field"),
            key_field=raw.get("key_field"),
            id_field=raw.get("id_field"),
        )

    @property
    def suffix(self) -> str:
        name = Path(self.path).name.lower()
        if name.endswith(".shp.zip"):
            return ".zip"
        return Path(name).suffix


_SOURCE_DEFAULTS: Dict[str, Dict[str, str]] = {
    "provinces": {"name_field": "PRENAME"},
    "districts": {"key_field": "SD_NUM", "name_field": "SD_NAME"},
    "schools": {"name_field": "SCHOOL_NAME", "id_field": "SCHOOL_ID"},
}


# ---------- Analysis options ----------


@dataclass
class AnalysisOptions:
    working_crs: str = "EPSG:3005"
    geographic_crs: str = "EPSG:4326"
    province: str = "British Columbia"
    study_districts: List[str] = field(default_factory=list)
    buffer_radii: List[float] = field(default_factory=lambda: [500.0, 1000.0, 2000.0])
    k_neighbors: int = 3
    join_tie_break: str = "first"
    buffer_quad_segs: int = 16
    parallel: bool = False

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "AnalysisOptions":
        if not isinstance(d, dict):
            raise ValueError("[analysis] must be a mapping.")
        known = {f for f in AnalysisOptions.__dataclass_fields__}
        unknown = set(d) - known
        if unknown:
            raise ValueError(f"[analysis] unknown key(s): {sorted(unknown)}")
        opts = AnalysisOptions(**d)
        opts.study_districts = [str(s).strip() for s in (opts.study_districts or [])]
        opts.buffer_radii = [float(r) for r in opts.buffer_radii]
        opts.k_neighbors = int(opts.k_neighbors)
        opts.buffer_quad_segs = int(opts.buffer_quad_segs)
        opts.parallel = bool(opts.parallel)
        opts.validate()
        return opts

    def validate(self) -> None:
        for label, value in (
            ("working_crs", self.working_crs),
            ("geographic_crs", self.geographic_crs),
        ):
            try:
                crs = resolve_crs(value)
            except InvalidSRS as exc:
                raise InvalidSRS(f"[analysis.{label}] {exc}") from exc
            if label == "working_crs" and not crs.is_projected:
                raise InvalidSRS(
                    f"[analysis.working_crs] {value} is not projected; planar "
                    "areas and distances need a projected CRS"
                )
        if not self.buffer_radii or any(r <= 0 for r in self.buffer_radii):
            raise ValueError("[analysis.buffer_radii] must be a non-empty list of values > 0")
        if self.k_neighbors < 1:
            raise ValueError("[analysis.k_neighbors] must be >= 1")
        if self.join_tie_break not in TIE_BREAK_POLICIES:
            raise ValueError(
                f"[analysis.join_tie_break] must be one of {TIE_BREAK_POLICIES}"
            )
        if self.buffer_quad_segs < 1:
            raise ValueError("[analysis.buffer_quad_segs] must be >= 1")


# ---------- Config root ----------


@dataclass
class Config:
    sources: Dict[str, SourceSpec] = field(default_factory=dict)
    analysis: AnalysisOptions = field(default_factory=AnalysisOptions)
    options: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Config":
        if not isinstance(d, dict):
            raise ValueError("Config must be a mapping at the top level.")

        sources_raw = d.get("sources", {})
        analysis_raw = d.get("analysis", {}) or {}
        options = d.get("options", {}) or {}

        if not isinstance(sources_raw, dict):
            raise ValueError("[sources] must be a mapping.")
        if not isinstance(options, dict):
            raise ValueError("[options] must be a mapping.")

        missing = [ds for ds in DATASETS if ds not in sources_raw]
        if missing:
            raise ValueError(f"[sources] is missing dataset(s): {missing}")

        sources: Dict[str, SourceSpec] = {}
        for dataset, raw in sources_raw.items():
            if dataset not in DATASETS:
                raise ValueError(
                    f"[sources] unknown dataset '{dataset}'; expected {list(DATASETS)}"
                )
            spec = SourceSpec.from_raw(raw, dataset=dataset)
            for attr, default in _SOURCE_DEFAULTS[dataset].items():
                if getattr(spec, attr) is None:
                    setattr(spec, attr, default)
            sources[dataset] = spec

        cfg = Config(
            sources=sources,
            analysis=AnalysisOptions.from_dict(analysis_raw),
            options=options,
        )
        cfg.validate_file_types()  # fail fast
        return cfg

    # ---------- Sugar ----------
    def __getitem__(self, dataset: str) -> SourceSpec:
        return self.sources[dataset]

    @property
    def provinces(self) -> SourceSpec:
        return self.sources["provinces"]

    @property
    def districts(self) -> SourceSpec:
        return self.sources["districts"]

    @property
    def schools(self) -> SourceSpec:
        return self.sources["schools"]

    @property
    def log_level(self) -> str:
        return str(self.options.get("log_level", "INFO")).upper()

    @property
    def output_dir(self) -> Optional[Path]:
        out = self.options.get("output_dir")
        return Path(out) if out else None

    def to_json(self) -> str:
        return json.dumps(
            {
                "sources": {k: asdict(v) for k, v in self.sources.items()},
                "analysis": asdict(self.analysis),
                "options": self.options,
            },
            indent=2,
            sort_keys=True,
        )

    # ---------- Validation ----------
    def validate_file_types(self) -> None:
        problems: List[str] = []
        for ds, spec in self.sources.items():
            if spec.suffix not in VECTOR_SUFFIXES:
                problems.append(
                    f"[sources.{ds}] '{Path(spec.path).name}' has extension "
                    f"'{spec.suffix}', expected one of {list(VECTOR_SUFFIXES)}"
                )
        if problems:
            msg = "File-type validation failed:\n  - " + "\n  - ".join(problems)
            raise ValueError(msg)

    def source_paths(self) -> List[Tuple[str, str]]:
        return [(ds, self.sources[ds].path) for ds in DATASETS]


def load_config(path: str | Path) -> Config:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(p)
    raw = _detect_and_load(p)
    raw = _rewrite_relative_paths(raw, p.resolve().parent)
    cfg = Config.from_dict(raw)
    return cfg


# ------------------------------
# Starter config
# ------------------------------

_TEMPLATE_YAML = """\
# School accessibility configuration (YAML)
# Paths are relative to this file unless absolute.

sources:
  provinces:
    path: data/lpr_000b21a_e.shp
    name_field: PRENAME
  districts:
    path: data/school_districts.shp
    key_field: SD_NUM
    name_field: SD_NAME
  schools:
    path: data/k12_schools.geojson
    name_field: SCHOOL_NAME
    id_field: SCHOOL_ID

analysis:
  working_crs: EPSG:3005      # BC Albers, equal-area, metres
  geographic_crs: EPSG:4326
  province: British Columbia
  # Greater Vancouver school districts
  study_districts: ["35", "36", "37", "38", "39", "40", "41", "43", "44", "45"]
  buffer_radii: [500, 1000, 2000]
  k_neighbors: 3
  join_tie_break: first       # or smallest_area
  buffer_quad_segs: 16
  parallel: false

options:
  log_level: INFO
  output_dir: outputs
"""


def write_template(out_path: str | Path) -> Path:
    p = Path(out_path)
    if p.exists():
        raise FileExistsError(f"Refusing to overwrite existing file: {p}")
    p.write_text(_TEMPLATE_YAML, encoding="utf-8")
    return p
