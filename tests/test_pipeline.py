import logging

import pytest
from shapely.geometry import Point, box

from schoolaccess.config import Config
from schoolaccess.entities import School
from schoolaccess.geometry import Feature, GeometryStore
from schoolaccess.io import load, write_store
from schoolaccess.pipeline import (
    export_results,
    load_inputs,
    prepare_study_area,
    run_analysis,
    run_from_config,
)
from schoolaccess.reproject import reproject

CRS = "EPSG:3005"
# metres in BC Albers, shifted into the Lower Mainland
X0, Y0 = 1_200_000.0, 450_000.0


def _box(minx, miny, maxx, maxy):
    return box(X0 + minx, Y0 + miny, X0 + maxx, Y0 + maxy)


def _pt(x, y):
    return Point(X0 + x, Y0 + y)


@pytest.fixture
def datasets(tmp_path):
    provinces = GeometryStore.from_features(
        [
            Feature(_box(0, 0, 10_000, 10_000), {"PRENAME": "British Columbia"}),
            Feature(_box(10_000, 0, 20_000, 10_000), {"PRENAME": "Alberta"}),
        ],
        CRS,
    )
    districts = GeometryStore.from_features(
        [
            Feature(_box(0, 0, 5_000, 5_000), {"SD_NUM": "39", "SD_NAME": "Vancouver"}),
            Feature(_box(5_000, 0, 10_000, 5_000), {"SD_NUM": "41", "SD_NAME": "Burnaby"}),
            Feature(_box(0, 5_000, 10_000, 10_000), {"SD_NUM": "36", "SD_NAME": "Surrey"}),
            Feature(_box(12_000, 0, 15_000, 5_000), {"SD_NUM": "99", "SD_NAME": "Elsewhere"}),
        ],
        CRS,
    )
    schools = GeometryStore.from_features(
        [
            Feature(_pt(1_000, 1_000), {"SCHOOL_NAME": "Kitsilano", "SCHOOL_ID": "A1"}),
            Feature(_pt(2_000, 3_000), {"SCHOOL_NAME": "Britannia", "SCHOOL_ID": "A2"}),
            Feature(_pt(4_000, 1_000), {"SCHOOL_NAME": "Templeton", "SCHOOL_ID": "A3"}),
            Feature(_pt(7_000, 2_000), {"SCHOOL_NAME": "Moscrop", "SCHOOL_ID": "B1"}),
            Feature(_pt(3_000, 8_000), {"SCHOOL_NAME": "Fleetwood", "SCHOOL_ID": "C1"}),
            Feature(_pt(13_000, 1_000), {"SCHOOL_NAME": "Banff", "SCHOOL_ID": "D1"}),
        ],
        CRS,
    )
    data = tmp_path / "data"
    write_store(provinces, data / "provinces.gpkg")
    write_store(districts, data / "districts.gpkg")
    # schools ship in lon/lat like the provincial open data
    write_store(reproject(schools, "EPSG:4326"), data / "schools.geojson")
    return data


def _config(data, **analysis):
    opts = {"study_districts": ["39", "41"], "k_neighbors": 2}
    opts.update(analysis)
    return Config.from_dict(
        {
            "sources": {
                "provinces": str(data / "provinces.gpkg"),
                "districts": str(data / "districts.gpkg"),
                "schools": str(data / "schools.geojson"),
            },
            "analysis": opts,
        }
    )


def test_study_area_is_narrowed_to_selected_districts(datasets):
    cfg = _config(datasets)

    study = prepare_study_area(load_inputs(cfg), cfg)

    assert [f.attributes["SD_NUM"] for f in study.districts] == ["39", "41"]
    assert study.boundary.area == pytest.approx(5.0e7)
    assert len(study.schools) == 4
    assert study.schools.srs.to_epsg() == 3005


def test_missing_study_district_is_logged(datasets, caplog):
    cfg = _config(datasets, study_districts=["39", "77"])

    with caplog.at_level(logging.WARNING, logger="schoolaccess.pipeline"):
        study = prepare_study_area(load_inputs(cfg), cfg)

    assert len(study.districts) == 1
    assert "pipeline.study_districts_missing keys=77" in caplog.text


def test_unknown_province_is_rejected(datasets):
    cfg = _config(datasets, province="Yukon")

    with pytest.raises(ValueError, match="Yukon"):
        run_analysis(cfg)


def test_run_analysis_end_to_end(datasets):
    cfg = _config(datasets)

    result = run_analysis(cfg)

    table = result.counts_table()
    assert table.to_dict("records") == [
        {"district_key": "39", "district_name": "Vancouver", "school_count": 3},
        {"district_key": "41", "district_name": "Burnaby", "school_count": 1},
    ]
    assert [f.attributes["school_count"] for f in result.district_counts] == [3, 1]

    assert len(result.catchments) == 4
    assert sum(f.geometry.area for f in result.catchments) == pytest.approx(5.0e7)

    assert result.distances.labels == ("Kitsilano", "Britannia", "Templeton", "Moscrop")
    assert len(result.nearest) == 4 * 2

    assert result.coverage["radius"].tolist() == [500.0, 1000.0, 2000.0]
    ratios = result.coverage["coverage_ratio"].tolist()
    assert ratios == sorted(ratios)
    assert len(result.district_coverage) == 2 * 3

    schools = result.school_records(cfg)
    assert all(isinstance(s, School) for s in schools)
    assert [s.district_key for s in schools] == ["39", "39", "39", "41"]
    assert schools[3].school_id == "B1"


def test_parallel_branches_match_serial(datasets):
    serial = run_analysis(_config(datasets))
    parallel = run_analysis(_config(datasets, parallel=True))

    assert parallel.counts_table().equals(serial.counts_table())
    assert parallel.nearest.equals(serial.nearest)
    assert parallel.coverage.equals(serial.coverage)
    assert [f.geometry.area for f in parallel.catchments] == pytest.approx(
        [f.geometry.area for f in serial.catchments]
    )


def test_smallest_area_policy_runs_end_to_end(datasets):
    result = run_analysis(_config(datasets, join_tie_break="smallest_area"))

    assert sum(a.school_count for a in result.aggregates) == 4


def test_export_results_writes_geojson_and_tables(datasets, tmp_path):
    result = run_analysis(_config(datasets))

    written = export_results(result, tmp_path / "out")

    for name in (
        "district_counts",
        "schools",
        "catchments",
        "school_buffers_500m",
        "school_buffers_1000m",
        "school_buffers_2000m",
        "district_counts_table",
        "nearest_neighbors",
        "distance_matrix",
        "coverage",
        "district_coverage",
        "catchment_areas",
    ):
        assert written[name].exists()

    counts = load(written["district_counts"])
    assert counts.srs.to_epsg() == 4326
    assert [f.attributes["school_count"] for f in counts] == [3, 1]
    assert written["nearest_neighbors"].suffix == ".csv"


def test_run_from_config_exports_to_configured_dir(datasets, tmp_path):
    cfg_path = tmp_path / "schoolaccess.yaml"
    cfg_path.write_text(
        "sources:\n"
        "  provinces: data/provinces.gpkg\n"
        "  districts: data/districts.gpkg\n"
        "  schools: data/schools.geojson\n"
        "analysis:\n"
        "  study_districts: ['39', '41']\n"
        "  k_neighbors: 1\n"
        "options:\n"
        "  log_level: WARNING\n"
        "  output_dir: results\n",
        encoding="utf-8",
    )

    result = run_from_config(cfg_path)

    assert len(result.schools) == 4
    assert (tmp_path / "results" / "district_counts.geojson").exists()
    assert (tmp_path / "results" / "coverage.csv").exists()


def test_fractional_radii_export_distinct_buffer_layers(datasets, tmp_path):
    result = run_analysis(_config(datasets, buffer_radii=[500, 500.5]))

    written = export_results(result, tmp_path / "out")

    assert written["school_buffers_500m"].name == "school_buffers_500m.geojson"
    assert written["school_buffers_500.5m"].name == "school_buffers_500.5m.geojson"
    assert written["school_buffers_500m"] != written["school_buffers_500.5m"]


def test_province_record_is_logged(datasets, caplog):
    cfg = _config(datasets)

    with caplog.at_level(logging.INFO, logger="schoolaccess.pipeline"):
        prepare_study_area(load_inputs(cfg), cfg)

    assert "pipeline.province name=British Columbia parts=1" in caplog.text
