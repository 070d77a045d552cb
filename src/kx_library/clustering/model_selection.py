"""
BIC-driven selection of the number of clusters.

BIC = n * ln(RSS / n + eps) + p * ln(n)

where RSS is the sum of squared distances from each point to its assigned
centroid and p = k * d + (k - 1) counts k centroids of dimension d plus
k - 1 free mixing weights. Lower BIC is better.
"""

import logging
import math
import threading
from typing import Optional, Sequence

from ..exceptions import ClusteringError, InvalidInput, OperationCancelled
from ..schema import BICScore, ClusterResult, KSelection, LabeledPoint
from .kmeans import kmeans
from .vector_math import as_matrix

logger = logging.getLogger(__name__)

BIC_EPSILON = 1e-10


def bic_score(result: ClusterResult, n_points: int, dims: int) -> float:
    """
    Bayesian Information Criterion for a hard clustering.

    Args:
        result: Clustering whose assignment distances define the RSS
        n_points: Number of clustered points
        dims: Embedding dimensionality

    Returns:
        BIC value (lower is better)
    """
    k = result.k
    rss = sum(a.distance ** 2 for a in result.assignments)
    num_params = k * dims + (k - 1)
    return n_points * math.log(rss / n_points + BIC_EPSILON) + num_params * math.log(n_points)


def select_k(
    points: Sequence[LabeledPoint],
    max_k: int,
    max_iterations: int = 100,
    random_state: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None
) -> KSelection:
    """
    Run k-means for k = 1..min(max_k, n) and pick the k with the lowest BIC.

    k is scanned ascending with a strict "<" comparison, so ties go to the
    smaller k. A k whose clustering fails is logged and skipped.

    Args:
        points: Labeled embeddings
        max_k: Largest k to try
        max_iterations: Passed to each k-means run
        random_state: Seed used for every k-means run
        cancel_event: Forwarded to each k-means run

    Returns:
        KSelection with the best k and the score of every k that ran

    Raises:
        InvalidInput: Invalid points or max_k <= 0
        ClusteringError: If no k could be scored
    """
    ids, matrix = as_matrix(points)
    if max_k <= 0:
        raise InvalidInput(f"max_k must be positive, got {max_k}", details={'max_k': max_k})

    n, dims = matrix.shape
    upper = min(max_k, n)

    best_k = None
    best_bic = math.inf
    scores = []

    for k in range(1, upper + 1):
        try:
            result = kmeans(
                points, k,
                max_iterations=max_iterations,
                random_state=random_state,
                cancel_event=cancel_event
            )
            bic = bic_score(result, n, dims)
        except (InvalidInput, OperationCancelled):
            raise
        except Exception as e:
            logger.warning(f"Skipping k={k} during BIC selection: {type(e).__name__}: {e}")
            continue

        scores.append(BICScore(k=k, bic=bic))
        logger.debug(f"BIC(k={k}) = {bic:.3f}")

        if bic < best_bic:
            best_bic = bic
            best_k = k

    if best_k is None:
        raise ClusteringError(f"BIC selection failed for every k in 1..{upper}")

    logger.info(f"BIC selected k={best_k} (tested k=1..{upper}, n={n})")
    return KSelection(best_k=best_k, scores=scores)
