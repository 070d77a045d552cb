"""
Firestore-backed vector store.

Collections:
    kb_items: chunks with 'embedding' (Vector), 'keywords', 'tags',
              'document_id', 'page', 'chunk_index', and after clustering
              'cluster_id' (list, e.g. ["cluster-3"])
    clusters: one doc per cluster summary ('level-<L>-cluster-<id>', prefixed
              with the slice id for subset runs) with a 'centroid' Vector
              for FIND_NEAREST and a 'slice_id'
    cluster_memberships: soft assignments, one doc per (chunk, cluster),
              carrying 'document_id' and 'slice_id'

Vector queries need a single-field vector index on 'embedding' and 'centroid'
(768 dimensions, COSINE).
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from google.api_core.exceptions import GoogleAPICallError
from google.cloud import firestore
from google.cloud.firestore_v1.base_vector_query import DistanceMeasure
from google.cloud.firestore_v1.vector import Vector

from ..clustering.clusterer import create_cluster_mapping
from ..exceptions import CollaboratorUnavailable
from ..schema import ChunkRecord, ClusteringRun, Embedding, MatchType, SearchHit
from .base import VectorStore

logger = logging.getLogger(__name__)

# Firestore limits
MAX_BATCH_SIZE = 500
MAX_DISJUNCTION = 30
MAX_VECTOR_LIMIT = 1000

DISTANCE_FIELD = 'vector_distance'

_TOKEN = re.compile(r'[a-z0-9]{2,}')


def tokenize(text: str) -> List[str]:
    """Lower-cased unique word tokens in order of appearance."""
    seen = []
    for token in _TOKEN.findall((text or '').lower()):
        if token not in seen:
            seen.append(token)
    return seen


def _embedding_values(embedding: Any) -> Optional[List[float]]:
    """Extract floats from a Firestore Vector or a plain list."""
    if embedding is None:
        return None
    if hasattr(embedding, 'to_map_value'):
        map_value = embedding.to_map_value()
        return [float(v) for v in map_value.get('value', map_value)]
    if isinstance(embedding, (list, tuple)):
        return [float(v) for v in embedding]
    return None


def _similarity(distance: Any) -> float:
    """Cosine distance to a similarity score in [0, 1]."""
    if distance is None:
        return 0.0
    return min(1.0, max(0.0, 1.0 - float(distance)))


class FirestoreVectorStore(VectorStore):
    """
    VectorStore over Firestore collections.

    Args:
        client: Firestore client (created lazily from project if None)
        project: GCP project ID
        chunks_collection: Chunk collection name (default: kb_items)
        clusters_collection: Cluster summary collection (default: clusters)
        memberships_collection: Soft assignment collection (default: cluster_memberships)
    """

    def __init__(
        self,
        client: Optional[firestore.Client] = None,
        project: Optional[str] = None,
        chunks_collection: str = 'kb_items',
        clusters_collection: str = 'clusters',
        memberships_collection: str = 'cluster_memberships'
    ):
        self._client = client
        self.project = project
        self.chunks_collection = chunks_collection
        self.clusters_collection = clusters_collection
        self.memberships_collection = memberships_collection

    @property
    def db(self) -> firestore.Client:
        if self._client is None:
            logger.info(f"Initializing Firestore client for project: {self.project}")
            self._client = firestore.Client(project=self.project)
        return self._client

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def nearest_chunks(
        self,
        embedding: Embedding,
        limit: int,
        tags: Optional[Sequence[str]] = None
    ) -> List[SearchHit]:
        if limit <= 0:
            return []
        query = self.db.collection(self.chunks_collection)
        if tags:
            # Filter must be applied BEFORE find_nearest() in Firestore
            query = query.where('tags', 'array_contains_any', list(tags)[:MAX_DISJUNCTION])

        vector_query = query.find_nearest(
            vector_field='embedding',
            query_vector=Vector(list(embedding)),
            distance_measure=DistanceMeasure.COSINE,
            limit=min(limit, MAX_VECTOR_LIMIT),
            distance_result_field=DISTANCE_FIELD
        )
        docs = self._stream(vector_query, "vector search")

        hits = [self._chunk_hit(doc.id, doc.to_dict(), MatchType.VECTOR) for doc in docs]
        logger.info(f"Found {len(hits)} similar chunks")
        return hits

    def nearest_cluster_summaries(self, embedding: Embedding, limit: int) -> List[SearchHit]:
        if limit <= 0:
            return []
        vector_query = self.db.collection(self.clusters_collection).find_nearest(
            vector_field='centroid',
            query_vector=Vector(list(embedding)),
            distance_measure=DistanceMeasure.COSINE,
            limit=min(limit, MAX_VECTOR_LIMIT),
            distance_result_field=DISTANCE_FIELD
        )
        docs = self._stream(vector_query, "cluster summary search")

        hits = []
        for doc in docs:
            data = doc.to_dict()
            cluster_id = data.get('cluster_id')
            hits.append(SearchHit(
                id=doc.id,
                document_id=doc.id,
                title=data.get('suggested_label') or data.get('concept_id') or f"Cluster {cluster_id}",
                score=_similarity(data.get(DISTANCE_FIELD)),
                match_type=MatchType.CLUSTER_SUMMARY,
                content=data.get('summary', ''),
                cluster_id=cluster_id
            ))
        logger.info(f"Found {len(hits)} similar cluster summaries")
        return hits

    def keyword_search(
        self,
        text: str,
        limit: int,
        tags: Optional[Sequence[str]] = None
    ) -> List[SearchHit]:
        """
        Match query tokens against each chunk's 'keywords' array.

        Score is the fraction of query tokens present in the chunk. Tags are
        filtered after the query since Firestore allows one array_contains_any
        per query.
        """
        terms = tokenize(text)
        if not terms or limit <= 0:
            return []

        query = self.db.collection(self.chunks_collection).where(
            'keywords', 'array_contains_any', terms[:MAX_DISJUNCTION]
        ).limit(max(limit * 10, 100))
        docs = self._stream(query, "keyword search")

        wanted_tags = set(tags or [])
        scored: List[Tuple[float, SearchHit]] = []
        for doc in docs:
            data = doc.to_dict()
            if wanted_tags and not wanted_tags.intersection(data.get('tags') or []):
                continue
            keywords = set(data.get('keywords') or [])
            score = sum(1 for t in terms if t in keywords) / len(terms)
            hit = self._chunk_hit(doc.id, data, MatchType.KEYWORD)
            hit.score = score
            scored.append((score, hit))

        scored.sort(key=lambda pair: pair[0], reverse=True)
        hits = [hit for _, hit in scored[:limit]]
        logger.info(f"Found {len(hits)} keyword matches for {len(terms)} terms")
        return hits

    def adjacent_chunk(self, document_id: str, chunk_index: int) -> Optional[str]:
        if chunk_index < 0:
            return None
        query = (
            self.db.collection(self.chunks_collection)
            .where('document_id', '==', document_id)
            .where('chunk_index', '==', chunk_index)
            .limit(1)
        )
        for doc in self._stream(query, "adjacent chunk lookup"):
            return doc.to_dict().get('content', '')
        return None

    # ------------------------------------------------------------------
    # Batch job
    # ------------------------------------------------------------------

    def load_chunks(self, document_ids: Optional[Sequence[str]] = None) -> List[ChunkRecord]:
        collection = self.db.collection(self.chunks_collection)
        logger.info(f"Loading chunks from Firestore collection: {self.chunks_collection}")

        if document_ids is None:
            docs: Iterable[Any] = self._stream(collection, "chunk load")
        else:
            ids = list(document_ids)
            docs = []
            for start in range(0, len(ids), MAX_DISJUNCTION):
                query = collection.where('document_id', 'in', ids[start:start + MAX_DISJUNCTION])
                docs.extend(self._stream(query, "chunk load"))

        chunks = []
        for doc in docs:
            data = doc.to_dict()
            embedding = _embedding_values(data.get('embedding'))
            if embedding is None:
                logger.warning(f"Chunk {doc.id} missing embedding")
            chunks.append(ChunkRecord(
                id=doc.id,
                document_id=data.get('document_id', ''),
                content=data.get('content', ''),
                embedding=embedding,
                page=data.get('page', 0),
                chunk_index=data.get('chunk_index', 0),
                title=data.get('title', ''),
                tags=list(data.get('tags') or [])
            ))

        logger.info(f"Loaded {len(chunks)} chunks")
        return chunks

    def save_clustering(self, run: ClusteringRun) -> None:
        """
        Replace the run's corpus slice, then tag chunks.

        Only summaries of the same slice and memberships of chunks in the
        run's documents are deleted. A full-corpus run replaces the
        full-corpus summaries and every membership; summaries of subset runs
        are left in place.
        """
        slice_id = run.slice_id
        try:
            deleted = self._delete_slice_summaries(slice_id)
            deleted += self._delete_slice_memberships(run.document_ids)
            logger.info(f"Cleared {deleted} previous cluster documents for {slice_id or 'full corpus'}")

            clusters_ref = self.db.collection(self.clusters_collection)
            summary_writes = []
            for summary in run.summaries:
                data = summary.to_dict()
                if summary.centroid is not None:
                    data['centroid'] = Vector(list(summary.centroid))
                summary_writes.append(('set', clusters_ref.document(summary.doc_id), data))
            self._commit_in_batches(summary_writes)
            logger.info(f"Wrote {len(summary_writes)} cluster summaries")

            memberships_ref = self.db.collection(self.memberships_collection)
            cluster_prefix = f"{slice_id}-cluster" if slice_id else "cluster"
            membership_writes = []
            for a in run.soft_assignments:
                data = a.to_dict()
                data['document_id'] = run.point_documents.get(a.point_id)
                data['slice_id'] = slice_id
                membership_writes.append(
                    ('set', memberships_ref.document(f"{a.point_id}_{cluster_prefix}-{a.cluster_id}"), data)
                )
            self._commit_in_batches(membership_writes)
            if membership_writes:
                logger.info(f"Wrote {len(membership_writes)} soft memberships")

            hard = run.hard_assignments
            mapping = create_cluster_mapping(
                [a.point_id for a in hard],
                [a.cluster_id for a in hard]
            )
            chunks_ref = self.db.collection(self.chunks_collection)
            chunk_writes = [
                ('update', chunks_ref.document(chunk_id), {'cluster_id': cluster_ids})
                for chunk_id, cluster_ids in mapping.items()
            ]
            self._commit_in_batches(chunk_writes)
            logger.info(f"Updated {len(chunk_writes)} chunks with cluster assignments")

        except GoogleAPICallError as e:
            raise CollaboratorUnavailable("firestore", "failed to save clustering run", cause=e) from e

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _chunk_hit(self, doc_id: str, data: Dict[str, Any], match_type: MatchType) -> SearchHit:
        cluster_ids = data.get('cluster_id') or []
        cluster_id = None
        if cluster_ids and isinstance(cluster_ids[0], str) and cluster_ids[0].startswith('cluster-'):
            cluster_id = int(cluster_ids[0][len('cluster-'):])
        return SearchHit(
            id=doc_id,
            document_id=data.get('document_id', ''),
            title=data.get('title', 'Untitled'),
            score=_similarity(data.get(DISTANCE_FIELD)),
            match_type=match_type,
            page=data.get('page', 0),
            chunk_index=data.get('chunk_index', 0),
            content=data.get('content', ''),
            cluster_id=cluster_id
        )

    def _stream(self, query: Any, what: str) -> List[Any]:
        try:
            return list(query.stream())
        except GoogleAPICallError as e:
            logger.error(f"Firestore {what} failed: {e}")
            raise CollaboratorUnavailable("firestore", f"{what} failed", cause=e) from e

    def _delete_docs(self, docs: Iterable[Any]) -> int:
        deletes = [('delete', doc.reference, None) for doc in docs]
        self._commit_in_batches(deletes)
        return len(deletes)

    def _delete_slice_summaries(self, slice_id: Optional[str]) -> int:
        collection = self.db.collection(self.clusters_collection)
        if slice_id:
            return self._delete_docs(collection.where('slice_id', '==', slice_id).stream())
        # Full corpus: summaries written without a slice
        return self._delete_docs(
            doc for doc in collection.stream() if not (doc.to_dict() or {}).get('slice_id')
        )

    def _delete_slice_memberships(self, document_ids: Optional[Sequence[str]]) -> int:
        collection = self.db.collection(self.memberships_collection)
        if document_ids is None:
            return self._delete_docs(collection.stream())
        ids = list(document_ids)
        deleted = 0
        for start in range(0, len(ids), MAX_DISJUNCTION):
            query = collection.where('document_id', 'in', ids[start:start + MAX_DISJUNCTION])
            deleted += self._delete_docs(query.stream())
        return deleted

    def _commit_in_batches(self, operations: Sequence[Tuple[str, Any, Optional[Dict[str, Any]]]]) -> None:
        """Apply (op, ref, data) writes, committing every 500 operations."""
        batch = self.db.batch()
        write_count = 0

        for op, ref, data in operations:
            if op == 'delete':
                batch.delete(ref)
            elif op == 'update':
                batch.update(ref, data)
            else:
                batch.set(ref, data)
            write_count += 1

            if write_count == MAX_BATCH_SIZE:
                batch.commit()
                logger.debug(f"  Committed batch ({write_count} writes)")
                batch = self.db.batch()
                write_count = 0

        if write_count > 0:
            batch.commit()
            logger.debug(f"  Committed final batch ({write_count} writes)")
