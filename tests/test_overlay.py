import math

import pytest
from shapely.geometry import MultiPoint, Point, Polygon, box

from schoolaccess.errors import CRSMismatch, DegenerateGeometry
from schoolaccess.geometry import Feature, GeometryStore
from schoolaccess.overlay import (
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

CRS = "EPSG:3005"


def _polygons(specs, crs=CRS, name="layer"):
    return GeometryStore.from_features(
        [Feature(geom, attrs) for geom, attrs in specs], crs, name=name
    )


def _districts():
    return _polygons(
        [
            (box(0, 0, 10, 10), {"SD_NUM": 39, "name": "Vancouver"}),
            (box(10, 0, 20, 10), {"SD_NUM": 41, "name": "Burnaby"}),
            (box(30, 30, 40, 40), {"SD_NUM": 36, "name": "Surrey"}),
        ],
        name="districts",
    )


def _province():
    return _polygons(
        [(box(-5, -5, 25, 8), {"PRENAME": "British Columbia", "name": "BC"})],
        name="provinces",
    )


def test_filter_and_where_select_by_attribute():
    districts = _districts()

    big = filter_features(districts, lambda a: a["SD_NUM"] > 38)
    one = where(districts, name="Surrey")

    assert [f.attributes["name"] for f in big] == ["Vancouver", "Burnaby"]
    assert [f.attributes["SD_NUM"] for f in one] == [36]
    assert len(districts) == 3


def test_where_rejects_unknown_field():
    with pytest.raises(KeyError):
        where(_districts(), NOPE=1)


def test_intersect_clips_and_prefers_left_attributes():
    result = intersect(_districts(), _province())

    assert len(result) == 2
    assert result.fields == ["SD_NUM", "name", "PRENAME"]
    first, second = list(result)
    assert first.attributes["name"] == "Vancouver"
    assert first.attributes["PRENAME"] == "British Columbia"
    assert first.geometry.area == pytest.approx(80.0)
    assert second.geometry.area == pytest.approx(80.0)


def test_intersect_results_lie_inside_both_inputs():
    a = _districts()
    b = _province()

    result = intersect(a, b)
    ua, ub = union(a), union(b)

    for feature in result:
        assert ua.buffer(1e-9).contains(feature.geometry)
        assert ub.buffer(1e-9).contains(feature.geometry)


def test_intersect_is_commutative_up_to_attribute_policy():
    a = _districts()
    b = _province()

    ab = intersect(a, b)
    ba = intersect(b, a)

    assert len(ab) == len(ba)
    assert union(ab).symmetric_difference(union(ba)).area == pytest.approx(0.0)
    assert [f.attributes["name"] for f in ba] == ["BC", "BC"]


def test_intersect_drops_edge_only_contacts():
    a = _polygons([(box(0, 0, 1, 1), {"id": 1})])
    b = _polygons([(box(1, 0, 2, 1), {"other": 2})])

    result = intersect(a, b)

    assert len(result) == 0
    assert result.fields == ["id", "other"]


def test_intersect_requires_matching_crs():
    other = _polygons([(box(0, 0, 1, 1), {"x": 1})], crs="EPSG:4326")

    with pytest.raises(CRSMismatch):
        intersect(_districts(), other)


def test_union_dissolves_everything():
    merged = union(_districts())

    assert merged.area == pytest.approx(300.0)
    assert merged.geom_type == "MultiPolygon"


def test_convex_hull_and_degenerate_hull():
    hull = convex_hull(MultiPoint([(0, 0), (4, 0), (0, 3), (1, 1)]))

    assert isinstance(hull, Polygon)
    assert hull.area == pytest.approx(6.0)
    with pytest.raises(DegenerateGeometry):
        convex_hull(MultiPoint([(0, 0), (1, 1), (2, 2)]))


def test_bounding_box_of_store_and_single_feature():
    assert bounding_box(_districts()).bounds == (0.0, 0.0, 40.0, 40.0)

    single = _polygons([(box(2, 3, 4, 7), {"id": 1})])
    assert bounding_box(single).bounds == (2.0, 3.0, 4.0, 7.0)


def test_bounding_box_of_empty_store_fails():
    empty = filter_features(_districts(), lambda a: False)

    with pytest.raises(DegenerateGeometry):
        bounding_box(empty)


def test_buffer_zero_is_identity_for_polygons():
    square = box(0, 0, 10, 10)

    assert buffer(square, 0).symmetric_difference(square).area == pytest.approx(0.0)


def test_buffered_point_area_within_one_percent():
    circle = buffer(Point(0, 0), 100.0)

    assert circle.area == pytest.approx(math.pi * 100.0**2, rel=0.01)


def test_negative_buffer_is_rejected():
    with pytest.raises(ValueError):
        buffer(Point(0, 0), -1.0)


def test_buffer_store_keeps_attributes():
    schools = GeometryStore.from_features(
        [Feature(Point(0, 0), {"name": "A"}), Feature(Point(50, 0), {"name": "B"})], CRS
    )

    buffers = buffer_store(schools, 10.0)

    assert buffers.family == "polygon"
    assert [f.attributes["name"] for f in buffers] == ["A", "B"]
    assert schools.family == "point"


def test_clip_keeps_points_inside_and_on_boundary():
    schools = GeometryStore.from_features(
        [
            Feature(Point(5, 5), {"name": "inside"}),
            Feature(Point(10, 5), {"name": "edge"}),
            Feature(Point(50, 50), {"name": "outside"}),
        ],
        CRS,
    )

    clipped = clip(schools, box(0, 0, 10, 10))

    assert [f.attributes["name"] for f in clipped] == ["inside", "edge"]


def test_clip_by_store_checks_crs():
    schools = GeometryStore.from_features([Feature(Point(5, 5), {})], CRS)
    boundary = _polygons([(box(0, 0, 10, 10), {})], crs="EPSG:4326")

    with pytest.raises(CRSMismatch):
        clip(schools, boundary)
