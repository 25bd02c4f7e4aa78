"""
Tests for neighbourhood structure and weights
"""

import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import box

from endemic_epidemic.neighbourhood import (
    adjacency_from_geometry,
    first_order_weights,
    neighbourhood_order,
    powerlaw_weights
)


def path_adjacency(n):
    adjacency = np.zeros((n, n), dtype=int)
    for i in range(n - 1):
        adjacency[i, i + 1] = adjacency[i + 1, i] = 1
    return adjacency


class TestNeighbourhoodOrder:
    """Test path-distance orders"""

    def test_path_graph(self):
        order = neighbourhood_order(path_adjacency(4))
        assert order[0, 1] == 1
        assert order[0, 2] == 2
        assert order[0, 3] == 3
        assert np.all(np.diag(order) == 0)
        assert np.array_equal(order, order.T)

    def test_unreachable_units(self):
        adjacency = np.zeros((3, 3))
        adjacency[0, 1] = adjacency[1, 0] = 1
        order = neighbourhood_order(adjacency)
        assert np.isinf(order[0, 2])
        assert np.isinf(order[2, 1])

    def test_asymmetric_adjacency(self):
        adjacency = np.zeros((2, 2))
        adjacency[0, 1] = 1
        with pytest.raises(ValueError):
            neighbourhood_order(adjacency)

    def test_non_square(self):
        with pytest.raises(ValueError):
            neighbourhood_order(np.zeros((2, 3)))


class TestWeights:
    """Test first-order and power-law weights"""

    def test_first_order_normalized(self):
        weights = first_order_weights(neighbourhood_order(path_adjacency(3)))
        np.testing.assert_allclose(weights.sum(axis=1), 1.0)
        assert weights[1, 0] == pytest.approx(0.5)
        assert weights[0, 2] == 0.0

    def test_first_order_raw(self):
        weights = first_order_weights(neighbourhood_order(path_adjacency(3)), normalize=False)
        assert weights[0, 1] == 1.0
        assert weights[0, 0] == 0.0

    def test_powerlaw_values(self):
        order = neighbourhood_order(path_adjacency(4))
        weights = powerlaw_weights(order, decay=2.0, normalize=False)
        assert weights[0, 1] == pytest.approx(1.0)
        assert weights[0, 2] == pytest.approx(0.25)
        assert weights[0, 3] == pytest.approx(1.0 / 9.0)
        assert np.all(np.diag(weights) == 0)

    def test_powerlaw_rows_sum_to_one(self):
        order = neighbourhood_order(path_adjacency(5))
        weights = powerlaw_weights(order, decay=1.3)
        np.testing.assert_allclose(weights.sum(axis=1), 1.0)

    def test_powerlaw_max_order(self):
        order = neighbourhood_order(path_adjacency(5))
        weights = powerlaw_weights(order, decay=1.0, max_order=2, normalize=False)
        assert weights[0, 2] == pytest.approx(0.5)
        assert weights[0, 3] == 0.0

    def test_unreachable_units_get_no_weight(self):
        order = neighbourhood_order(np.zeros((3, 3)))
        weights = powerlaw_weights(order, decay=2.0)
        assert np.all(weights == 0)

    def test_invalid_decay(self):
        with pytest.raises(ValueError):
            powerlaw_weights(np.zeros((2, 2)), decay=0.0)


class TestAdjacencyFromGeometry:
    """Test adjacency derived from polygons"""

    @pytest.fixture
    def strip(self):
        return gpd.GeoDataFrame(
            {"unit": ["a", "b", "c", "d"]},
            geometry=[box(0, 0, 1, 1), box(1, 0, 2, 1), box(2, 0, 3, 1), box(10, 10, 11, 11)]
        )

    def test_shared_borders(self, strip):
        adjacency = adjacency_from_geometry(strip, unit_column="unit")
        assert adjacency[0, 1] and adjacency[1, 2]
        assert not adjacency[0, 2]
        assert not adjacency[3].any()
        assert not np.diag(adjacency).any()

    def test_unit_order(self, strip):
        adjacency = adjacency_from_geometry(strip, unit_column="unit", units=["c", "a", "b"])
        assert adjacency.shape == (3, 3)
        assert adjacency[0, 2] and adjacency[1, 2]
        assert not adjacency[0, 1]

    def test_missing_unit(self, strip):
        with pytest.raises(ValueError):
            adjacency_from_geometry(strip, unit_column="unit", units=["a", "z"])
