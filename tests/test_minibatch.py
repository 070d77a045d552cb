"""
Unit tests for mini-batch k-means.
"""

import os
import sys
import threading

import numpy as np
import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from kx_library.clustering.minibatch import minibatch_kmeans, online_update
from kx_library.exceptions import InvalidInput, OperationCancelled
from kx_library.schema import LabeledPoint


@pytest.fixture
def blob_points():
    """1000 points in 5 well-separated 32-d blobs."""
    rng = np.random.default_rng(7)
    points = []
    for b in range(5):
        center = np.zeros(32)
        center[b] = 20.0
        for i, row in enumerate(center + rng.normal(scale=0.1, size=(200, 32))):
            points.append(LabeledPoint(id=f"blob{b}-{i}", embedding=row.tolist()))
    return points


class TestMiniBatchKMeans:
    """Tests for minibatch_kmeans()."""

    def test_five_blobs_give_at_least_three_groups(self, blob_points):
        result = minibatch_kmeans(blob_points, 5, batch_size=100, random_state=42)

        non_empty = [c for c in result.centroids if c.size > 0]
        assert len(non_empty) >= 3

    def test_every_point_assigned_exactly_once(self, blob_points):
        result = minibatch_kmeans(blob_points, 5, batch_size=100, random_state=42)

        assert len(result.assignments) == len(blob_points)
        assert [a.point_id for a in result.assignments] == [p.id for p in blob_points]
        assert all(0 <= a.cluster_id < 5 for a in result.assignments)
        assert sum(c.size for c in result.centroids) == len(blob_points)

    def test_blob_members_share_a_cluster(self, blob_points):
        result = minibatch_kmeans(blob_points, 5, batch_size=100, random_state=42)
        labels = result.labels()

        # Most of each blob lands in its majority cluster
        for b in range(5):
            blob_labels = labels[b * 200:(b + 1) * 200]
            majority = max(set(blob_labels), key=blob_labels.count)
            assert blob_labels.count(majority) >= 190

    def test_same_seed_same_result(self, blob_points):
        a = minibatch_kmeans(blob_points, 5, batch_size=50, random_state=3)
        b = minibatch_kmeans(blob_points, 5, batch_size=50, random_state=3)
        assert a.labels() == b.labels()

    def test_batch_larger_than_corpus(self):
        points = [LabeledPoint(id=str(i), embedding=[float(i), 0.0]) for i in range(6)]
        result = minibatch_kmeans(points, 2, batch_size=1000, random_state=0)
        assert len(result.assignments) == 6

    def test_iteration_cap(self, blob_points):
        result = minibatch_kmeans(blob_points, 5, batch_size=10, max_iterations=3, random_state=0)
        assert result.n_iterations <= 3

    def test_converges_early_on_static_data(self):
        points = [LabeledPoint(id=str(i), embedding=[1.0, 1.0]) for i in range(20)]
        result = minibatch_kmeans(points, 1, batch_size=5, max_iterations=100, random_state=0)
        assert result.converged
        assert result.n_iterations == 11

    @pytest.mark.parametrize("kwargs", [
        {"k": 0},
        {"k": 2000},
        {"k": 2, "batch_size": 0},
        {"k": 2, "max_iterations": 0},
    ])
    def test_invalid_parameters(self, blob_points, kwargs):
        with pytest.raises(InvalidInput):
            minibatch_kmeans(blob_points, **kwargs)

    def test_dimension_mismatch(self):
        points = [LabeledPoint('a', [1, 2, 3]), LabeledPoint('b', [1, 2])]
        with pytest.raises(InvalidInput):
            minibatch_kmeans(points, 1)

    def test_cancelled(self, blob_points):
        event = threading.Event()
        event.set()
        with pytest.raises(OperationCancelled):
            minibatch_kmeans(blob_points, 5, cancel_event=event)


class TestOnlineUpdate:
    """Tests for the vectorized online centroid update."""

    def test_matches_sequential_updates(self):
        rng = np.random.default_rng(0)
        centroids = rng.normal(size=(3, 4))
        counts = np.array([2, 0, 5])
        batch = rng.normal(size=(6, 4))
        batch_labels = np.array([0, 2, 0, 2, 2, 0])

        expected = centroids.copy()
        expected_counts = counts.copy()
        for x, label in zip(batch, batch_labels):
            expected_counts[label] += 1
            eta = 1.0 / expected_counts[label]
            expected[label] = (1 - eta) * expected[label] + eta * x

        online_update(centroids, counts, batch, batch_labels)

        np.testing.assert_allclose(centroids, expected)
        np.testing.assert_array_equal(counts, expected_counts)

    def test_untouched_centroid_unchanged(self):
        centroids = np.array([[0.0, 0.0], [5.0, 5.0]])
        counts = np.array([0, 0])
        online_update(centroids, counts, np.array([[2.0, 2.0]]), np.array([0]))

        np.testing.assert_allclose(centroids, [[2.0, 2.0], [5.0, 5.0]])
        assert counts.tolist() == [1, 0]
