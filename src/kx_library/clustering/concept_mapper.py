"""
Map clusters onto taxonomy concepts by embedding similarity.

A cluster whose centroid is close enough (cosine) to a concept embedding is
labeled with that concept. Otherwise a label is suggested from the first
sentence of the cluster summary, for human or LLM review. Suggestions are
never written to the taxonomy from here.
"""

import logging
import re
from typing import List, Sequence

import numpy as np

from ..schema import ClusterInput, Concept, MapResult
from .vector_math import cosine_similarities

logger = logging.getLogger(__name__)

MAX_LABEL_LENGTH = 50

_SENTENCE_END = re.compile(r'[.!?]')


def suggest_label(summary: str, cluster_id: int, max_length: int = MAX_LABEL_LENGTH) -> str:
    """First sentence of the summary, truncated; never empty."""
    first_sentence = _SENTENCE_END.split(summary or '', maxsplit=1)[0].strip()
    label = first_sentence[:max_length].strip()
    return label or f"Cluster {cluster_id}"


def map_cluster(
    cluster: ClusterInput,
    concepts: Sequence[Concept],
    threshold: float,
    max_label_length: int = MAX_LABEL_LENGTH
) -> MapResult:
    """
    Match a cluster centroid against a concept catalogue.

    Concepts are scanned in input order with a strictly-greater comparison,
    so the first concept reaching the maximum similarity wins ties. Concepts
    with no embedding or a different dimensionality never match.

    Args:
        cluster: Cluster id, summary text and centroid
        concepts: Candidate concepts
        threshold: Minimum cosine similarity for a match
        max_label_length: Bound on the suggested label length

    Returns:
        MapResult with concept_id/confidence when matched, otherwise a
        non-empty suggested_label
    """
    dims = len(cluster.centroid)
    candidates = [
        c for c in concepts
        if c.embedding is not None and len(c.embedding) == dims
    ]
    if len(candidates) < len(concepts):
        logger.debug(
            f"Cluster {cluster.id}: skipped {len(concepts) - len(candidates)} concepts "
            f"without a {dims}-d embedding"
        )

    best_id = None
    best_similarity = -np.inf
    if candidates:
        matrix = np.asarray([c.embedding for c in candidates], dtype=np.float64)
        similarities = cosine_similarities(cluster.centroid, matrix)
        for concept, similarity in zip(candidates, similarities):
            if similarity > best_similarity:
                best_similarity = float(similarity)
                best_id = concept.id

    if best_id is not None and best_similarity >= threshold:
        logger.info(f"Cluster {cluster.id} mapped to concept {best_id} (similarity={best_similarity:.3f})")
        return MapResult(
            cluster_id=cluster.id,
            matched=True,
            concept_id=best_id,
            confidence=best_similarity
        )

    suggested = suggest_label(cluster.summary, cluster.id, max_label_length)
    logger.info(f"Cluster {cluster.id} has no concept above {threshold}; suggesting '{suggested}'")
    return MapResult(cluster_id=cluster.id, matched=False, suggested_label=suggested)


def map_clusters(
    clusters: Sequence[ClusterInput],
    concepts: Sequence[Concept],
    threshold: float
) -> List[MapResult]:
    """Map each cluster independently."""
    return [map_cluster(cluster, concepts, threshold) for cluster in clusters]
