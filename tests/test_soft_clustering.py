"""
Unit tests for soft clustering.
"""

import os
import sys

import numpy as np
import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from kx_library.clustering.soft import cluster_soft, soft_assign
from kx_library.exceptions import InvalidInput
from kx_library.schema import LabeledPoint


@pytest.fixture
def two_groups():
    rng = np.random.default_rng(1)
    points = []
    for g, center in enumerate(([5.0, 0.0, 0.0], [0.0, 5.0, 0.0])):
        for i, row in enumerate(np.array(center) + rng.normal(scale=0.05, size=(8, 3))):
            points.append(LabeledPoint(id=f"g{g}-{i}", embedding=row.tolist()))
    return points


class TestClusterSoft:
    """Tests for cluster_soft()."""

    def test_zero_points(self):
        result = cluster_soft([])
        assert result.num_clusters == 0
        assert result.assignments == []
        assert result.centroids == []

    def test_single_point(self):
        result = cluster_soft([LabeledPoint('only', [0.3, 0.4])])

        assert result.num_clusters == 1
        assert len(result.assignments) == 1
        assert result.assignments[0].point_id == 'only'
        assert result.assignments[0].probability == 1.0
        assert result.centroids[0].vector == [0.3, 0.4]

    def test_bic_selects_two_groups(self, two_groups):
        result = cluster_soft(two_groups, max_clusters=5, random_state=0)

        assert result.selected_k == 2
        assert result.num_clusters == 2
        assert [s.k for s in result.bic_scores] == [1, 2, 3, 4, 5]

    def test_without_bic_uses_max_clusters(self, two_groups):
        result = cluster_soft(two_groups, max_clusters=3, use_bic=False, random_state=0)

        assert result.num_clusters == 3
        assert result.bic_scores is None
        assert result.selected_k is None

    def test_max_clusters_capped_by_points(self):
        points = [LabeledPoint(str(i), [float(i), 0.0]) for i in range(3)]
        result = cluster_soft(points, max_clusters=10, use_bic=False, random_state=0)
        assert result.num_clusters == 3

    def test_probabilities_respect_cutoff(self, two_groups):
        result = cluster_soft(two_groups, max_clusters=4, min_probability=0.2, random_state=0)

        assert all(0.2 <= a.probability <= 1.0 for a in result.assignments)
        assert {a.point_id for a in result.assignments} == {p.id for p in two_groups}

    def test_well_separated_points_are_near_certain(self, two_groups):
        result = cluster_soft(two_groups, max_clusters=2, use_bic=False, random_state=0)

        by_point = {}
        for a in result.assignments:
            by_point.setdefault(a.point_id, []).append(a)
        for memberships in by_point.values():
            assert len(memberships) == 1
            assert memberships[0].probability > 0.99

    def test_invalid_parameters(self, two_groups):
        with pytest.raises(InvalidInput):
            cluster_soft(two_groups, max_clusters=0)
        with pytest.raises(InvalidInput):
            cluster_soft(two_groups, temperature=0)

    def test_dimension_mismatch(self):
        with pytest.raises(InvalidInput):
            cluster_soft([LabeledPoint('a', [1, 2, 3]), LabeledPoint('b', [1, 2])])


class TestSoftAssign:
    """Tests for soft_assign()."""

    def test_equidistant_point_splits_evenly(self):
        centroids = np.array([[1.0, 0.0], [-1.0, 0.0]])
        assignments = soft_assign(['p'], np.array([[0.0, 0.0]]), centroids)

        assert [a.cluster_id for a in assignments] == [0, 1]
        assert assignments[0].probability == pytest.approx(0.5)
        assert assignments[1].probability == pytest.approx(0.5)

    def test_kept_probabilities_not_renormalized(self):
        centroids = np.array([[0.0], [1.0], [10.0]])
        assignments = soft_assign(['p'], np.array([[0.0]]), centroids, temperature=1.0, min_probability=0.01)

        kept = sum(a.probability for a in assignments)
        assert [a.cluster_id for a in assignments] == [0, 1]
        assert kept < 1.0

    def test_lower_temperature_is_sharper(self):
        centroids = np.array([[0.0], [1.0]])
        matrix = np.array([[0.2]])
        warm = soft_assign(['p'], matrix, centroids, temperature=1.0, min_probability=0.0)
        cold = soft_assign(['p'], matrix, centroids, temperature=0.1, min_probability=0.0)
        assert cold[0].probability > warm[0].probability

    def test_underflowed_probability_dropped_without_cutoff(self):
        centroids = np.array([[0.0], [1000.0]])
        assignments = soft_assign(['p'], np.array([[0.0]]), centroids, temperature=0.01, min_probability=0.0)

        assert [a.cluster_id for a in assignments] == [0]
        assert assignments[0].probability == pytest.approx(1.0)
        assert all(0.0 < a.probability <= 1.0 for a in assignments)
