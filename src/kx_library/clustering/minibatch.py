"""
Mini-batch k-means for corpora too large to rescan every iteration.

Algorithm:
1. Seed centroids with k-means++ over the full point set (paid once)
2. Each iteration:
   - Sample min(batch_size, n) distinct points uniformly
   - Assign them to their nearest centroid
   - Move each touched centroid toward its points with learning rate
     eta = 1 / count, where count is that centroid's running sample count
   - Every 10th iteration, stop early if the centroid matrix moved less
     than 1e-4 (Frobenius norm) since the previous check
3. Assign every point to its nearest final centroid

Per-iteration cost is O(batch_size * k * d) instead of O(n * k * d).
"""

import logging
import threading
from typing import Optional, Sequence

import numpy as np

from ..exceptions import InvalidInput
from ..schema import ClusterResult, LabeledPoint
from .kmeans import build_result, check_cancelled, kmeans_plus_plus, validate_k
from .vector_math import as_matrix, frobenius_delta, make_rng, nearest_centroids, sample_indices

logger = logging.getLogger(__name__)

CONVERGENCE_THRESHOLD = 1e-4
CONVERGENCE_CHECK_INTERVAL = 10


def online_update(
    centroids: np.ndarray,
    counts: np.ndarray,
    batch: np.ndarray,
    batch_labels: np.ndarray
) -> None:
    """
    Apply the per-point update c <- (1 - eta) * c + eta * x, eta = 1 / count.

    Processing a centroid's batch points one after another with that rule
    gives (count_before * c + sum(x)) / (count_before + m), which is what is
    computed here in one step. centroids and counts are updated in place.
    """
    k = centroids.shape[0]
    batch_counts = np.bincount(batch_labels, minlength=k)
    touched = batch_counts > 0

    sums = np.zeros_like(centroids)
    np.add.at(sums, batch_labels, batch)

    previous = counts[touched].astype(np.float64)
    counts[touched] += batch_counts[touched]
    centroids[touched] = (
        previous[:, np.newaxis] * centroids[touched] + sums[touched]
    ) / counts[touched][:, np.newaxis]


def minibatch_kmeans(
    points: Sequence[LabeledPoint],
    k: int,
    batch_size: int = 100,
    max_iterations: int = 100,
    random_state: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None
) -> ClusterResult:
    """
    Cluster points with mini-batch k-means.

    Args:
        points: Labeled embeddings (identical dimensionality, unique ids)
        k: Number of clusters (1 <= k <= len(points))
        batch_size: Points sampled per iteration (default: 100)
        max_iterations: Maximum iterations (default: 100)
        random_state: Seed for seeding and sampling
        cancel_event: Checked at the top of every iteration

    Returns:
        ClusterResult covering every input point exactly once

    Raises:
        InvalidInput: Same preconditions as kmeans(), plus batch_size <= 0
        OperationCancelled: If cancel_event is set between iterations
    """
    ids, matrix = as_matrix(points)
    n = len(ids)
    validate_k(k, n)
    if batch_size <= 0:
        raise InvalidInput(f"batch_size must be positive, got {batch_size}")
    if max_iterations <= 0:
        raise InvalidInput(f"max_iterations must be positive, got {max_iterations}")

    rng = make_rng(random_state)
    centroids = kmeans_plus_plus(matrix, k, rng)

    # Owned by this call only
    counts = np.zeros(k, dtype=np.int64)
    previous = centroids.copy()

    n_iterations = 0
    converged = False

    for iteration in range(max_iterations):
        check_cancelled(cancel_event, "mini-batch k-means run")

        batch_idx = sample_indices(n, batch_size, rng)
        batch = matrix[batch_idx]
        batch_labels, _ = nearest_centroids(batch, centroids)
        online_update(centroids, counts, batch, batch_labels)
        n_iterations = iteration + 1

        if iteration > 0 and iteration % CONVERGENCE_CHECK_INTERVAL == 0:
            delta = frobenius_delta(previous, centroids)
            logger.debug(f"mini-batch iteration {iteration}: centroid delta={delta:.6f}")
            if delta < CONVERGENCE_THRESHOLD:
                converged = True
                break
            previous = centroids.copy()

    labels, _ = nearest_centroids(matrix, centroids)

    logger.info(
        f"Mini-batch k-means finished: k={k}, n={n}, batch_size={min(batch_size, n)}, "
        f"iterations={n_iterations}, converged={converged}"
    )
    return build_result(ids, matrix, centroids, labels, n_iterations, converged)
