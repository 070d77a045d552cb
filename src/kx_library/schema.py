"""
Schema definitions for clustering and retrieval.

Plain dataclasses shared by the clustering algorithms, the batch pipeline,
the storage adapters and the retrieval merger. Nothing here holds iterator
state; every result is safe to serialize with to_dict().
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

Embedding = Sequence[float]


def _utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def make_slice_id(document_ids: Optional[Sequence[str]]) -> Optional[str]:
    """Order-independent id for a document subset (None for the whole corpus)."""
    if document_ids is None:
        return None
    digest = hashlib.sha1("\n".join(sorted(set(document_ids))).encode('utf-8')).hexdigest()
    return f"slice-{digest[:12]}"


# ============================================================================
# Clustering inputs/outputs
# ============================================================================

@dataclass
class LabeledPoint:
    """A chunk id plus its embedding. Ids are unique within one clustering run."""

    id: str
    embedding: Embedding


@dataclass
class Centroid:
    """Mean vector of a cluster. Empty clusters are kept with size 0."""

    cluster_id: int
    vector: List[float]
    size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cluster_id': self.cluster_id,
            'vector': list(self.vector),
            'size': self.size,
        }


@dataclass
class HardAssignment:
    """Exactly one per point per run."""

    point_id: str
    cluster_id: int
    distance: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'point_id': self.point_id,
            'cluster_id': self.cluster_id,
            'distance': self.distance,
        }


@dataclass
class SoftAssignment:
    """
    Probabilistic membership of a point in a cluster.

    Memberships below the configured cutoff are dropped, so the probabilities
    kept for one point need not sum to 1.
    """

    point_id: str
    cluster_id: int
    probability: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'point_id': self.point_id,
            'cluster_id': self.cluster_id,
            'probability': self.probability,
        }


@dataclass
class ClusterResult:
    """Output shared by full and mini-batch k-means."""

    centroids: List[Centroid]
    assignments: List[HardAssignment]
    n_iterations: int = 0
    converged: bool = False

    @property
    def k(self) -> int:
        return len(self.centroids)

    def labels(self) -> List[int]:
        """Cluster ids in input order."""
        return [a.cluster_id for a in self.assignments]


@dataclass
class BICScore:
    k: int
    bic: float


@dataclass
class KSelection:
    """Result of the BIC scan: best k and the score for every k that ran."""

    best_k: int
    scores: List[BICScore] = field(default_factory=list)

    @property
    def best_bic(self) -> Optional[float]:
        for score in self.scores:
            if score.k == self.best_k:
                return score.bic
        return None


@dataclass
class SoftClusterResult:
    num_clusters: int
    assignments: List[SoftAssignment]
    centroids: List[Centroid]
    bic_scores: Optional[List[BICScore]] = None
    selected_k: Optional[int] = None


# ============================================================================
# Taxonomy / concept mapping
# ============================================================================

@dataclass
class Concept:
    """Taxonomy concept. Read-only here; owned by the taxonomy store."""

    id: str
    pref_label: str
    alt_labels: List[str] = field(default_factory=list)
    embedding: Optional[Embedding] = None
    definition: Optional[str] = None


@dataclass
class ClusterInput:
    id: int
    summary: str
    centroid: Embedding


@dataclass
class MapResult:
    cluster_id: int
    matched: bool
    concept_id: Optional[str] = None
    confidence: Optional[float] = None
    suggested_label: Optional[str] = None


# ============================================================================
# Batch pipeline
# ============================================================================

@dataclass
class ChunkRecord:
    """A stored chunk as seen by the batch clustering job."""

    id: str
    document_id: str
    content: str
    embedding: Optional[Embedding] = None
    page: int = 0
    chunk_index: int = 0
    title: str = ''
    tags: List[str] = field(default_factory=list)


@dataclass
class ClusterSummary:
    """
    Summary of one cluster at one hierarchy level.

    Created once per clustering+summarization pass and superseded (not merged)
    by the next pass over the same corpus slice.
    """

    cluster_id: int
    text: str
    member_count: int
    key_topics: Optional[List[str]] = None
    representative_quote: Optional[str] = None
    concept_id: Optional[str] = None
    concept_confidence: Optional[float] = None
    suggested_label: Optional[str] = None
    level: int = 0
    parent_id: Optional[int] = None
    centroid: Optional[List[float]] = None
    fallback: bool = False
    slice_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utc_now)

    @property
    def doc_id(self) -> str:
        """Stable storage id, unique across hierarchy levels and corpus slices."""
        doc_id = f"level-{self.level}-cluster-{self.cluster_id}"
        if self.slice_id:
            return f"{self.slice_id}-{doc_id}"
        return doc_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cluster_id': self.cluster_id,
            'slice_id': self.slice_id,
            'level': self.level,
            'parent_id': self.parent_id,
            'summary': self.text,
            'member_count': self.member_count,
            'key_topics': self.key_topics or [],
            'representative_quote': self.representative_quote,
            'concept_id': self.concept_id,
            'concept_confidence': self.concept_confidence,
            'suggested_label': self.suggested_label,
            'centroid': self.centroid,
            'fallback_summary': self.fallback,
            'created_at': self.created_at.isoformat(),
        }


@dataclass
class LevelResult:
    """Clustering output of one RAPTOR level."""

    level: int
    result: ClusterResult
    point_ids: List[str]


@dataclass
class ClusteringRun:
    """Everything a batch pass produces, handed to the store in one call."""

    algorithm: str
    selection: Optional[KSelection]
    levels: List[LevelResult]
    summaries: List[ClusterSummary]
    soft_assignments: List[SoftAssignment] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)
    # None means the whole corpus
    document_ids: Optional[List[str]] = None
    # chunk id -> document id for every clustered chunk
    point_documents: Dict[str, str] = field(default_factory=dict)

    @property
    def slice_id(self) -> Optional[str]:
        """Short stable id of the document subset, None for a full-corpus run."""
        return make_slice_id(self.document_ids)

    @property
    def hard_assignments(self) -> List[HardAssignment]:
        """Chunk-level (level 0) hard assignments."""
        if not self.levels:
            return []
        return self.levels[0].result.assignments

    def summaries_at(self, level: int) -> List[ClusterSummary]:
        return [s for s in self.summaries if s.level == level]


# ============================================================================
# Search
# ============================================================================

class MatchType(str, Enum):
    """Provenance of a search hit."""
    VECTOR = "vector"
    KEYWORD = "keyword"
    HYBRID = "hybrid"
    CLUSTER_SUMMARY = "cluster-summary"


@dataclass
class SearchHit:
    """Ephemeral per-query result; never persisted."""

    id: str
    document_id: str
    title: str
    score: float
    match_type: MatchType
    page: int = 0
    chunk_index: int = 0
    content: str = ''
    expanded_content: Optional[str] = None
    expanded_range: Optional[Tuple[int, int]] = None
    cluster_id: Optional[int] = None

    @property
    def dedup_key(self) -> Tuple[str, int, int]:
        return (self.document_id, self.page, self.chunk_index)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'id': self.id,
            'document_id': self.document_id,
            'title': self.title,
            'score': self.score,
            'match_type': self.match_type.value,
            'page': self.page,
            'chunk_index': self.chunk_index,
            'content': self.content,
        }
        if self.cluster_id is not None:
            result['cluster_id'] = self.cluster_id
        if self.expanded_content is not None:
            result['expanded_content'] = self.expanded_content
            result['expanded_range'] = list(self.expanded_range) if self.expanded_range else None
        return result


@dataclass
class SearchOptions:
    """
    Options for RetrievalMerger.search.

    Attributes:
        limit: Maximum number of hits returned
        threshold: Minimum similarity for vector and cluster-summary hits
        tags: Optional tag filter passed to the store
        hybrid: Also run keyword search when an embedding is available
        expand_chars: Character budget for adjacent-chunk expansion (0 = off)
        include_cluster_summaries: Add cluster-summary hits (multi-scale retrieval)
        query_text: Raw query text used for keyword search
        expand_direction: "both", "before" or "after"
    """

    limit: int = 10
    threshold: float = 0.0
    tags: Optional[List[str]] = None
    hybrid: bool = True
    expand_chars: int = 0
    include_cluster_summaries: bool = False
    query_text: Optional[str] = None
    expand_direction: str = "both"


@dataclass
class ExpandedWindow:
    document_id: str
    start: int
    end: int
    content: str

    def covers(self, chunk_index: int) -> bool:
        return self.start <= chunk_index <= self.end
