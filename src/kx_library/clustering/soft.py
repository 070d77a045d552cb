"""
Soft (GMM-like) clustering: k-means centroids plus softmax membership.

1. Pick k with the BIC scan (or use min(max_clusters, n))
2. Run k-means at that k for the centroids
3. Turn each point's distances to all centroids into probabilities with
   softmax(-distance / temperature)

Memberships below min_probability are dropped without renormalizing, so a
point's kept probabilities need not sum to 1.
"""

import logging
import threading
from typing import List, Optional, Sequence

import numpy as np

from ..exceptions import InvalidInput
from ..schema import Centroid, LabeledPoint, SoftAssignment, SoftClusterResult
from .kmeans import kmeans
from .model_selection import select_k
from .vector_math import as_matrix, pairwise_distances, softmax

logger = logging.getLogger(__name__)


def soft_assign(
    ids: Sequence[str],
    matrix: np.ndarray,
    centroids: np.ndarray,
    temperature: float = 0.5,
    min_probability: float = 0.01
) -> List[SoftAssignment]:
    """
    Compute soft memberships of points against fixed centroids.

    Args:
        ids: Point ids in matrix row order
        matrix: Points, shape (n, d)
        centroids: Centroids, shape (k, d)
        temperature: Softmax temperature (> 0); lower is sharper
        min_probability: Drop memberships below this probability; zero
            probabilities are always dropped

    Returns:
        SoftAssignments ordered by point, then cluster id
    """
    if temperature <= 0:
        raise InvalidInput(f"temperature must be positive, got {temperature}")

    probabilities = softmax(pairwise_distances(matrix, centroids), temperature)

    assignments = []
    for row, point_id in enumerate(ids):
        # Underflowed probabilities are dropped even when min_probability is 0
        keep = (probabilities[row] > 0) & (probabilities[row] >= min_probability)
        for cluster_id in np.flatnonzero(keep):
            assignments.append(SoftAssignment(
                point_id=point_id,
                cluster_id=int(cluster_id),
                probability=float(probabilities[row, cluster_id])
            ))
    return assignments


def cluster_soft(
    points: Sequence[LabeledPoint],
    max_clusters: int = 10,
    min_probability: float = 0.01,
    use_bic: bool = True,
    temperature: float = 0.5,
    max_iterations: int = 100,
    random_state: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None
) -> SoftClusterResult:
    """
    Cluster points with probability-based membership.

    Args:
        points: Labeled embeddings
        max_clusters: Upper bound on k (default: 10)
        min_probability: Minimum probability kept per membership (default: 0.01)
        use_bic: Select k via BIC; otherwise k = min(max_clusters, n)
        temperature: Softmax temperature (default: 0.5)
        max_iterations: k-means iteration cap
        random_state: Seed for seeding
        cancel_event: Forwarded to every k-means run

    Returns:
        SoftClusterResult; bic_scores/selected_k are set when BIC ran
    """
    if max_clusters <= 0:
        raise InvalidInput(f"max_clusters must be positive, got {max_clusters}")
    if temperature <= 0:
        raise InvalidInput(f"temperature must be positive, got {temperature}")

    if len(points) == 0:
        return SoftClusterResult(num_clusters=0, assignments=[], centroids=[])

    if len(points) == 1:
        point = points[0]
        return SoftClusterResult(
            num_clusters=1,
            assignments=[SoftAssignment(point_id=point.id, cluster_id=0, probability=1.0)],
            centroids=[Centroid(cluster_id=0, vector=[float(x) for x in point.embedding], size=1)]
        )

    ids, matrix = as_matrix(points)
    max_k = min(max_clusters, len(ids))

    bic_scores = None
    selected_k = None
    if use_bic and max_k > 1:
        selection = select_k(
            points, max_k,
            max_iterations=max_iterations,
            random_state=random_state,
            cancel_event=cancel_event
        )
        k = selection.best_k
        bic_scores = selection.scores
        selected_k = k
    else:
        k = max_k

    result = kmeans(
        points, k,
        max_iterations=max_iterations,
        random_state=random_state,
        cancel_event=cancel_event
    )
    centroids = np.asarray([c.vector for c in result.centroids], dtype=np.float64)

    assignments = soft_assign(ids, matrix, centroids, temperature, min_probability)

    logger.info(
        f"Soft clustering: k={k}, {len(assignments)} memberships for {len(ids)} points "
        f"(min_probability={min_probability}, temperature={temperature})"
    )
    return SoftClusterResult(
        num_clusters=k,
        assignments=assignments,
        centroids=result.centroids,
        bic_scores=bic_scores,
        selected_k=selected_k
    )
