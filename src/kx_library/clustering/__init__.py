"""
Semantic clustering for the knowledge base.

Groups knowledge chunks by topic similarity with k-means variants on
existing embeddings, picks k by BIC and summarizes each cluster.

Two execution modes:
1. Library calls: kmeans / minibatch_kmeans / cluster_soft / select_k
2. Batch job: python3 -m kx_library.clustering (ClusteringPipeline)
"""

from .clusterer import (
    ClusteringAlgorithm,
    SemanticClusterer,
    choose_algorithm,
    compute_quality_metrics,
    create_cluster_mapping,
    run_hard_clustering,
)
from .concept_mapper import map_cluster, map_clusters
from .kmeans import kmeans
from .minibatch import minibatch_kmeans
from .model_selection import bic_score, select_k
from .soft import cluster_soft, soft_assign

__all__ = [
    'ClusteringAlgorithm',
    'SemanticClusterer',
    'bic_score',
    'choose_algorithm',
    'cluster_soft',
    'compute_quality_metrics',
    'create_cluster_mapping',
    'kmeans',
    'map_cluster',
    'map_clusters',
    'minibatch_kmeans',
    'run_hard_clustering',
    'select_k',
    'soft_assign',
]
