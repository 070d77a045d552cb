"""
Clustering variant dispatch and quality metrics.

Three algorithms share the math helpers but differ in control flow:
- HARD: full k-means, every point every iteration
- MINI_BATCH: online k-means over random samples, for large corpora
- SOFT: k-means centroids plus softmax membership probabilities

The variant is a closed enum picked at the call site (usually by corpus size
via choose_algorithm), not a class hierarchy.
"""

import logging
import threading
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
from sklearn.metrics import silhouette_score

from ..exceptions import InvalidInput
from ..schema import ClusterResult, KSelection, LabeledPoint, SoftClusterResult
from .kmeans import kmeans
from .minibatch import minibatch_kmeans
from .model_selection import select_k
from .soft import cluster_soft
from .vector_math import as_matrix

logger = logging.getLogger(__name__)

SILHOUETTE_SAMPLE_SIZE = 5000


class ClusteringAlgorithm(str, Enum):
    """Supported clustering variants."""
    HARD = "hard"
    MINI_BATCH = "mini_batch"
    SOFT = "soft"


def choose_algorithm(n_points: int, mini_batch_threshold: int = 10_000) -> ClusteringAlgorithm:
    """Full k-means for small corpora, mini-batch at or above the threshold."""
    if n_points >= mini_batch_threshold:
        return ClusteringAlgorithm.MINI_BATCH
    return ClusteringAlgorithm.HARD


def run_hard_clustering(
    algorithm: ClusteringAlgorithm,
    points: Sequence[LabeledPoint],
    k: int,
    max_iterations: int = 100,
    batch_size: int = 100,
    random_state: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None
) -> ClusterResult:
    """Run full or mini-batch k-means at a fixed k."""
    if algorithm is ClusteringAlgorithm.MINI_BATCH:
        return minibatch_kmeans(
            points, k,
            batch_size=batch_size,
            max_iterations=max_iterations,
            random_state=random_state,
            cancel_event=cancel_event
        )
    if algorithm is ClusteringAlgorithm.HARD:
        return kmeans(
            points, k,
            max_iterations=max_iterations,
            random_state=random_state,
            cancel_event=cancel_event
        )
    raise InvalidInput(f"{algorithm.value} is not a hard clustering algorithm")


class SemanticClusterer:
    """
    Semantic clustering for knowledge chunks using embeddings.

    Args:
        algorithm: Clustering variant ('hard', 'mini_batch' or 'soft')
        n_clusters: k for the hard variants (default: None, selected via BIC)
        max_clusters: Upper bound for BIC selection and soft clustering (default: 10)
        max_iterations: Iteration cap for every variant (default: 100)
        batch_size: Mini-batch sample size (default: 100)
        temperature: Softmax temperature for soft clustering (default: 0.5)
        min_probability: Soft membership cutoff (default: 0.01)
        random_state: Random seed for reproducibility (default: 42)
    """

    def __init__(
        self,
        algorithm: Union[str, ClusteringAlgorithm] = ClusteringAlgorithm.HARD,
        n_clusters: Optional[int] = None,
        max_clusters: int = 10,
        max_iterations: int = 100,
        batch_size: int = 100,
        temperature: float = 0.5,
        min_probability: float = 0.01,
        random_state: Optional[int] = 42
    ):
        try:
            self.algorithm = ClusteringAlgorithm(algorithm)
        except ValueError as e:
            raise InvalidInput(
                f"Unsupported algorithm: {algorithm}. "
                f"Choose one of {[a.value for a in ClusteringAlgorithm]}"
            ) from e

        self.n_clusters = n_clusters
        self.max_clusters = max_clusters
        self.max_iterations = max_iterations
        self.batch_size = batch_size
        self.temperature = temperature
        self.min_probability = min_probability
        self.random_state = random_state

        # Set after fit
        self.result_: Optional[Union[ClusterResult, SoftClusterResult]] = None
        self.selection_: Optional[KSelection] = None
        self.labels_: Optional[np.ndarray] = None

        logger.info(
            f"Initialized SemanticClusterer: algorithm={self.algorithm.value}, "
            f"n_clusters={n_clusters}, max_clusters={max_clusters}"
        )

    def fit(
        self,
        points: Sequence[LabeledPoint],
        cancel_event: Optional[threading.Event] = None
    ) -> Union[ClusterResult, SoftClusterResult]:
        """
        Cluster points with the configured variant.

        Returns:
            ClusterResult for HARD / MINI_BATCH, SoftClusterResult for SOFT
        """
        if self.algorithm is ClusteringAlgorithm.SOFT:
            self.result_ = cluster_soft(
                points,
                max_clusters=self.n_clusters or self.max_clusters,
                min_probability=self.min_probability,
                use_bic=self.n_clusters is None,
                temperature=self.temperature,
                max_iterations=self.max_iterations,
                random_state=self.random_state,
                cancel_event=cancel_event
            )
            return self.result_

        k = self.n_clusters
        if k is None:
            self.selection_ = select_k(
                points, self.max_clusters,
                max_iterations=self.max_iterations,
                random_state=self.random_state,
                cancel_event=cancel_event
            )
            k = self.selection_.best_k

        result = run_hard_clustering(
            self.algorithm, points, k,
            max_iterations=self.max_iterations,
            batch_size=self.batch_size,
            random_state=self.random_state,
            cancel_event=cancel_event
        )

        self.result_ = result
        self.labels_ = np.asarray(result.labels(), dtype=np.int64)
        return result

    def compute_quality_metrics(self, points: Sequence[LabeledPoint]) -> Dict[str, Any]:
        """
        Compute clustering quality metrics for a hard clustering.

        Raises:
            ValueError: If no hard clustering has been performed yet
        """
        if self.labels_ is None or not isinstance(self.result_, ClusterResult):
            raise ValueError("Must call fit() with a hard variant before computing metrics")

        _, matrix = as_matrix(points)
        return compute_quality_metrics(matrix, self.labels_, self.result_, self.random_state)


def compute_quality_metrics(
    matrix: np.ndarray,
    labels: np.ndarray,
    result: Optional[ClusterResult] = None,
    random_state: Optional[int] = None
) -> Dict[str, Any]:
    """
    Silhouette score, inertia and cluster-size statistics.

    Silhouette uses cosine distance and needs at least 2 non-empty clusters
    and fewer clusters than points; it is sampled above 5000 points.
    """
    metrics: Dict[str, Any] = {}
    sizes = np.bincount(labels)
    non_empty = sizes[sizes > 0]
    n_points = len(labels)

    if 2 <= len(non_empty) < n_points:
        try:
            score = silhouette_score(
                matrix, labels,
                metric='cosine',
                sample_size=min(n_points, SILHOUETTE_SAMPLE_SIZE),
                random_state=random_state
            )
            metrics['silhouette_score'] = float(score)
            logger.info(f"Silhouette score: {score:.3f}")
        except ValueError as e:
            logger.warning(f"Failed to compute silhouette score: {e}")
            metrics['silhouette_score'] = None
    else:
        logger.warning("Too few clusters for silhouette score")
        metrics['silhouette_score'] = None

    if result is not None:
        metrics['inertia'] = float(sum(a.distance ** 2 for a in result.assignments))
        metrics['n_empty_clusters'] = sum(1 for c in result.centroids if c.size == 0)

    if len(non_empty):
        metrics['min_cluster_size'] = int(non_empty.min())
        metrics['max_cluster_size'] = int(non_empty.max())
        metrics['mean_cluster_size'] = float(np.mean(non_empty))
        metrics['median_cluster_size'] = float(np.median(non_empty))

    metrics['n_clusters'] = int(len(non_empty))
    return metrics


def create_cluster_mapping(
    chunk_ids: Sequence[str],
    cluster_labels: Sequence[int]
) -> Dict[str, List[str]]:
    """
    Create mapping from chunk IDs to cluster IDs.

    Args:
        chunk_ids: List of chunk document IDs
        cluster_labels: Cluster labels (same length as chunk_ids)

    Returns:
        Dictionary mapping chunk_id -> [cluster_id, ...] (list for multi-cluster support)
    """
    if len(chunk_ids) != len(cluster_labels):
        raise InvalidInput(
            f"Mismatch: {len(chunk_ids)} chunk IDs but {len(cluster_labels)} labels"
        )

    return {
        chunk_id: [f"cluster-{int(label)}"]
        for chunk_id, label in zip(chunk_ids, cluster_labels)
    }
