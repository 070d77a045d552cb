"""
Full-batch k-means with k-means++ seeding.

Partitions a fixed set of chunk embeddings into exactly k disjoint clusters.
Every iteration reassigns all points and recomputes every centroid from its
members, so cost is O(n * k * d) per iteration; see minibatch.py for corpora
too large to rescan on every step.

Known limitation: a cluster that loses all of its members keeps its previous
centroid (no re-seeding), so it can stay empty for the rest of the run.
Callers can still rely on len(centroids) == k.
"""

import logging
import threading
from typing import List, Optional, Sequence

import numpy as np

from ..exceptions import InvalidInput, OperationCancelled
from ..schema import Centroid, ClusterResult, HardAssignment, LabeledPoint
from .vector_math import as_matrix, make_rng, nearest_centroids, squared_distances

logger = logging.getLogger(__name__)


def validate_k(k: int, n_points: int) -> None:
    """Raise InvalidInput unless 1 <= k <= n_points."""
    if k <= 0:
        raise InvalidInput(f"k must be positive, got {k}", details={'k': k})
    if k > n_points:
        raise InvalidInput(
            f"k cannot exceed number of points: k={k}, n={n_points}",
            details={'k': k, 'n_points': n_points}
        )


def check_cancelled(cancel_event: Optional[threading.Event], what: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled(f"{what} cancelled by caller")


def kmeans_plus_plus(matrix: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    """
    Choose k initial centroids spread apart by distance-weighted sampling.

    The first centroid is a uniformly random point. Each following centroid is
    sampled with probability proportional to its squared distance from the
    nearest centroid chosen so far.

    Args:
        matrix: Points, shape (n, d)
        k: Number of centroids
        rng: Random generator owned by the calling run

    Returns:
        Centroid matrix of shape (k, d) (copies, safe to mutate)
    """
    n = matrix.shape[0]
    centroids = np.empty((k, matrix.shape[1]), dtype=np.float64)

    centroids[0] = matrix[rng.integers(n)]
    min_sq_dist = squared_distances(matrix, centroids[0:1])[:, 0]

    for i in range(1, k):
        total = float(min_sq_dist.sum())
        if total > 0:
            threshold = rng.random() * total
            idx = int(np.searchsorted(np.cumsum(min_sq_dist), threshold, side='left'))
            idx = min(idx, n - 1)
        else:
            # Every point coincides with a chosen centroid
            idx = int(rng.integers(n))

        centroids[i] = matrix[idx]
        min_sq_dist = np.minimum(min_sq_dist, squared_distances(matrix, centroids[i:i + 1])[:, 0])

    return centroids


def build_result(
    ids: Sequence[str],
    matrix: np.ndarray,
    centroids: np.ndarray,
    labels: np.ndarray,
    n_iterations: int,
    converged: bool
) -> ClusterResult:
    """Package centroids and labels; distances are to the final centroids."""
    k = centroids.shape[0]
    sizes = np.bincount(labels, minlength=k)
    distances = np.linalg.norm(matrix - centroids[labels], axis=1)

    clusters = [
        Centroid(cluster_id=i, vector=centroids[i].tolist(), size=int(sizes[i]))
        for i in range(k)
    ]
    assignments = [
        HardAssignment(point_id=point_id, cluster_id=int(label), distance=float(distance))
        for point_id, label, distance in zip(ids, labels, distances)
    ]
    return ClusterResult(
        centroids=clusters,
        assignments=assignments,
        n_iterations=n_iterations,
        converged=converged
    )


def run_lloyd(
    matrix: np.ndarray,
    centroids: np.ndarray,
    max_iterations: int,
    cancel_event: Optional[threading.Event] = None
) -> tuple[np.ndarray, np.ndarray, int, bool]:
    """
    Lloyd iterations on an already-seeded centroid matrix (updated in place).

    Stops when assignments are exactly unchanged between consecutive
    iterations or max_iterations is reached.

    Returns:
        Tuple of (centroids, labels, iterations run, converged)
    """
    k = centroids.shape[0]
    labels = np.full(matrix.shape[0], -1, dtype=np.int64)

    for iteration in range(max_iterations):
        check_cancelled(cancel_event, "k-means run")

        new_labels, _ = nearest_centroids(matrix, centroids)
        if np.array_equal(labels, new_labels):
            logger.debug(f"k-means converged after {iteration} iterations (k={k})")
            return centroids, labels, iteration, True
        labels = new_labels

        sums = np.zeros_like(centroids)
        np.add.at(sums, labels, matrix)
        counts = np.bincount(labels, minlength=k)
        non_empty = counts > 0
        # Empty clusters keep their previous centroid
        centroids[non_empty] = sums[non_empty] / counts[non_empty][:, np.newaxis]

    return centroids, labels, max_iterations, False


def kmeans(
    points: Sequence[LabeledPoint],
    k: int,
    max_iterations: int = 100,
    random_state: Optional[int] = None,
    init_centroids: Optional[np.ndarray] = None,
    cancel_event: Optional[threading.Event] = None
) -> ClusterResult:
    """
    Cluster points into exactly k groups with k-means.

    Args:
        points: Labeled embeddings (identical dimensionality, unique ids)
        k: Number of clusters (1 <= k <= len(points))
        max_iterations: Maximum Lloyd iterations (default: 100)
        random_state: Seed for k-means++ seeding (None = nondeterministic)
        init_centroids: Optional (k, d) starting centroids; skips seeding
        cancel_event: Checked at the top of every iteration

    Returns:
        ClusterResult with k centroids (empty clusters retained) and one
        hard assignment per point

    Raises:
        InvalidInput: Empty points, k out of range, dimension mismatch,
            or max_iterations <= 0
        OperationCancelled: If cancel_event is set between iterations
    """
    ids, matrix = as_matrix(points)
    validate_k(k, len(ids))
    if max_iterations <= 0:
        raise InvalidInput(f"max_iterations must be positive, got {max_iterations}")

    if init_centroids is not None:
        centroids = np.array(init_centroids, dtype=np.float64)
        if centroids.shape != (k, matrix.shape[1]):
            raise InvalidInput(
                f"init_centroids must have shape ({k}, {matrix.shape[1]}), got {centroids.shape}"
            )
    else:
        centroids = kmeans_plus_plus(matrix, k, make_rng(random_state))

    centroids, labels, n_iterations, converged = run_lloyd(
        matrix, centroids, max_iterations, cancel_event
    )

    logger.info(
        f"k-means finished: k={k}, n={len(ids)}, iterations={n_iterations}, converged={converged}"
    )
    return build_result(ids, matrix, centroids, labels, n_iterations, converged)


def centroid_matrix(centroids: List[Centroid]) -> np.ndarray:
    """Stack Centroid vectors back into a (k, d) matrix ordered by cluster id."""
    ordered = sorted(centroids, key=lambda c: c.cluster_id)
    return np.asarray([c.vector for c in ordered], dtype=np.float64)
