"""
Vector store contract.

Everything the clustering job and the retrieval merger need from storage.
Implementations raise CollaboratorUnavailable when the backend is unreachable.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from ..schema import ChunkRecord, ClusteringRun, SearchHit
from ..schema import Embedding


class VectorStore(ABC):
    """Chunk, cluster summary and keyword access for one knowledge base."""

    @abstractmethod
    def nearest_chunks(
        self,
        embedding: Embedding,
        limit: int,
        tags: Optional[Sequence[str]] = None
    ) -> List[SearchHit]:
        """Chunks by cosine similarity, best first, as VECTOR hits."""

    @abstractmethod
    def nearest_cluster_summaries(self, embedding: Embedding, limit: int) -> List[SearchHit]:
        """Cluster summaries by centroid similarity, as CLUSTER_SUMMARY hits."""

    @abstractmethod
    def keyword_search(
        self,
        text: str,
        limit: int,
        tags: Optional[Sequence[str]] = None
    ) -> List[SearchHit]:
        """Chunks matching query terms, as KEYWORD hits."""

    @abstractmethod
    def adjacent_chunk(self, document_id: str, chunk_index: int) -> Optional[str]:
        """Content of a chunk by position, None if there is no such chunk."""

    @abstractmethod
    def load_chunks(self, document_ids: Optional[Sequence[str]] = None) -> List[ChunkRecord]:
        """All chunks, or only those of the given documents."""

    @abstractmethod
    def save_clustering(self, run: ClusteringRun) -> None:
        """Persist a run, superseding previous cluster summaries."""
