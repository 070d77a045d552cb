"""
Vector math shared by all clustering variants.

Distances are Euclidean. Pairwise distances are computed in row blocks so a
few hundred thousand 1024-d embeddings never materialize an (n, k, d) tensor.
"""

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity

from ..exceptions import InvalidInput
from ..schema import LabeledPoint

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_SIZE = 4096


def as_matrix(points: Sequence[LabeledPoint]) -> Tuple[List[str], np.ndarray]:
    """
    Validate labeled points and stack their embeddings.

    Args:
        points: Points to cluster

    Returns:
        Tuple of (ids, matrix of shape (n, d))

    Raises:
        InvalidInput: Empty input, zero-length or mismatched embeddings,
            duplicate ids, or non-finite values
    """
    if len(points) == 0:
        raise InvalidInput("Cannot cluster empty point set", details={'n_points': 0})

    dims = len(points[0].embedding)
    if dims == 0:
        raise InvalidInput(f"Point {points[0].id} has an empty embedding")

    ids: List[str] = []
    seen = set()
    for point in points:
        if len(point.embedding) != dims:
            raise InvalidInput(
                f"Dimension mismatch: point {point.id} has {len(point.embedding)} dims, expected {dims}",
                details={'point_id': point.id, 'dims': len(point.embedding), 'expected': dims}
            )
        if point.id in seen:
            raise InvalidInput(f"Duplicate point id: {point.id}", details={'point_id': point.id})
        seen.add(point.id)
        ids.append(point.id)

    matrix = np.asarray([point.embedding for point in points], dtype=np.float64)
    if not np.all(np.isfinite(matrix)):
        raise InvalidInput("Embeddings contain NaN or infinite values")

    return ids, matrix


def squared_distances(points: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """Squared Euclidean distances, shape (n, k). Clipped at 0 against rounding."""
    points_sq = np.einsum('ij,ij->i', points, points)[:, np.newaxis]
    centroids_sq = np.einsum('ij,ij->i', centroids, centroids)[np.newaxis, :]
    distances = points_sq - 2.0 * (points @ centroids.T) + centroids_sq
    np.maximum(distances, 0.0, out=distances)
    return distances


def pairwise_distances(points: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """Euclidean distances from every point to every centroid, shape (n, k)."""
    return np.sqrt(squared_distances(points, centroids))


def row_distances(points: np.ndarray, centroids: np.ndarray, labels: np.ndarray) -> np.ndarray:
    """Exact distance from each point to its assigned centroid."""
    return np.linalg.norm(points - centroids[labels], axis=1)


def nearest_centroids(
    points: np.ndarray,
    centroids: np.ndarray,
    block_size: int = DEFAULT_BLOCK_SIZE
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Assign every point to its nearest centroid.

    Ties resolve to the lowest cluster id (argmin returns the first minimum).

    Returns:
        Tuple of (labels, distances to the assigned centroid)
    """
    n = points.shape[0]
    labels = np.empty(n, dtype=np.int64)

    for start in range(0, n, block_size):
        block = points[start:start + block_size]
        labels[start:start + block_size] = np.argmin(squared_distances(block, centroids), axis=1)

    return labels, row_distances(points, centroids, labels)


def softmax(distances: np.ndarray, temperature: float = 1.0) -> np.ndarray:
    """
    Convert distances to probabilities along the last axis.

    Uses negated distances so nearer centroids get exponentially more mass.
    Lower temperature sharpens toward a hard assignment.
    """
    if temperature <= 0:
        raise InvalidInput(f"temperature must be positive, got {temperature}")

    scores = -np.asarray(distances, dtype=np.float64) / temperature
    scores = scores - scores.max(axis=-1, keepdims=True)
    exp_scores = np.exp(scores)
    return exp_scores / exp_scores.sum(axis=-1, keepdims=True)


def frobenius_delta(previous: np.ndarray, current: np.ndarray) -> float:
    """Frobenius norm of the change between two centroid matrices."""
    return float(np.linalg.norm(previous - current))


def cosine_similarities(vector: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """
    Cosine similarity of one vector against each row of a matrix.

    Zero vectors get similarity 0 (sklearn normalizes them to zero).
    """
    if matrix.shape[0] == 0:
        return np.empty(0, dtype=np.float64)
    query = np.asarray(vector, dtype=np.float64).reshape(1, -1)
    return cosine_similarity(query, matrix)[0]


def sample_indices(n: int, size: int, rng: np.random.Generator) -> np.ndarray:
    """Uniform sample of min(size, n) distinct indices."""
    return rng.choice(n, size=min(size, n), replace=False)


def make_rng(random_state: Optional[int]) -> np.random.Generator:
    return np.random.default_rng(random_state)
