import numpy as np
import pytest
from shapely.geometry import Point

from schoolaccess.distance import (
    DistanceMatrix,
    k_nearest,
    mean_nearest_distance,
    nearest_neighbor_table,
    pairwise_distances,
)
from schoolaccess.errors import DegenerateInput, InsufficientData
from schoolaccess.geometry import Feature, GeometryStore


def _schools(coords):
    return GeometryStore.from_features(
        [Feature(Point(x, y), {"school": f"S{i}"}) for i, (x, y) in enumerate(coords)],
        "EPSG:3005",
        name="schools",
    )


TRIANGLE = [(0, 0), (10, 0), (0, 10)]


def test_matrix_is_symmetric_with_zero_diagonal():
    matrix = pairwise_distances(_schools([(0, 0), (3, 4), (6, 8), (-2, 7)]))

    assert np.allclose(matrix.values, matrix.values.T)
    assert np.all(np.diag(matrix.values) == 0.0)
    assert matrix.distance(0, 1) == pytest.approx(5.0)
    assert matrix.distance(0, 2) == pytest.approx(10.0)


def test_matrix_is_read_only_and_labelled():
    matrix = pairwise_distances(_schools(TRIANGLE), label_field="school")

    assert matrix.labels == ("S0", "S1", "S2")
    with pytest.raises(ValueError):
        matrix.values[0, 1] = 1.0
    assert list(matrix.to_frame().columns) == ["S0", "S1", "S2"]


def test_coincident_points_sit_at_zero():
    matrix = pairwise_distances(np.array([[1.0, 1.0], [1.0, 1.0], [4.0, 5.0]]))

    assert matrix.distance(0, 1) == 0.0
    assert k_nearest(matrix, 1) == [[1], [0], [0]]


def test_fewer_than_two_points_is_degenerate():
    with pytest.raises(DegenerateInput):
        pairwise_distances(_schools([(0, 0)]))


def test_non_finite_coordinates_are_degenerate():
    with pytest.raises(DegenerateInput):
        pairwise_distances([(0.0, 0.0), (float("nan"), 1.0)])


def test_k_nearest_excludes_self_and_is_sorted():
    matrix = pairwise_distances(_schools([(0, 0), (1, 0), (5, 0), (12, 0), (2, 0)]))

    neighbours = k_nearest(matrix, 3)

    for i, js in enumerate(neighbours):
        assert i not in js
        assert len(js) == 3
        dists = [matrix.distance(i, j) for j in js]
        assert dists == sorted(dists)
    assert neighbours[0] == [1, 4, 2]


def test_equal_distances_rank_by_index():
    neighbours = k_nearest(pairwise_distances(_schools(TRIANGLE)), 1)

    assert neighbours[0] == [1]


def test_k_must_leave_enough_neighbours():
    matrix = pairwise_distances(_schools(TRIANGLE))

    assert len(k_nearest(matrix, 2)[0]) == 2
    with pytest.raises(InsufficientData):
        k_nearest(matrix, 3)


def test_k_must_be_positive():
    matrix = pairwise_distances(_schools(TRIANGLE))

    with pytest.raises(ValueError):
        k_nearest(matrix, 0)


def test_non_square_matrix_is_rejected():
    with pytest.raises(ValueError):
        DistanceMatrix(np.zeros((2, 3)), ("a", "b"))


def test_nearest_neighbor_table_layout():
    matrix = pairwise_distances(_schools(TRIANGLE), label_field="school")

    table = nearest_neighbor_table(matrix, 2)

    assert len(table) == 6
    first = table.iloc[0].to_dict()
    assert first["source"] == "S0"
    assert first["rank"] == 1
    assert first["neighbor"] == "S1"
    assert first["distance"] == pytest.approx(10.0)


def test_mean_nearest_distance():
    matrix = pairwise_distances(_schools([(0, 0), (3, 4), (100, 0)]))

    expected = (5.0 + 5.0 + np.hypot(97.0, 4.0)) / 3.0
    assert mean_nearest_distance(matrix) == pytest.approx(expected)
