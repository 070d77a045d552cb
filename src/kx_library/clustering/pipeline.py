"""
Batch clustering job.

Loads chunk embeddings from the store, clusters them, summarizes each cluster,
maps clusters onto taxonomy concepts, builds a RAPTOR-style hierarchy of
cluster summaries and persists the whole run. A run over a document subset is
a corpus slice; re-running the same slice supersedes its previous summaries
and leaves other slices alone.
"""

import logging
import threading
import time
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from ..config import Settings
from ..embed.embeddings import EmbeddingProvider
from ..exceptions import CollaboratorUnavailable
from ..schema import (
    ChunkRecord,
    ClusterInput,
    ClusteringRun,
    ClusterResult,
    ClusterSummary,
    Concept,
    KSelection,
    LabeledPoint,
    LevelResult,
    SoftAssignment,
    make_slice_id,
)
from ..storage.base import VectorStore
from .clusterer import (
    ClusteringAlgorithm,
    choose_algorithm,
    compute_quality_metrics,
    run_hard_clustering,
)
from .concept_mapper import map_cluster
from .kmeans import centroid_matrix, check_cancelled, kmeans
from .model_selection import select_k
from .soft import soft_assign
from .summarizer import ClusterSummarizer
from .vector_math import as_matrix, make_rng, sample_indices

logger = logging.getLogger(__name__)


class ClusteringPipeline:
    """
    Orchestrates one clustering run over the knowledge base.

    Args:
        store: Source of chunks and sink for the run
        summarizer: Cluster summarizer (LLM with extractive fallback)
        concepts: Taxonomy concepts to map clusters onto (optional)
        settings: Clustering settings (defaults if None)
        embedder: Embeds concepts that arrive without an embedding (optional)
    """

    def __init__(
        self,
        store: VectorStore,
        summarizer: ClusterSummarizer,
        concepts: Optional[Sequence[Concept]] = None,
        settings: Optional[Settings] = None,
        embedder: Optional[EmbeddingProvider] = None
    ):
        self.store = store
        self.summarizer = summarizer
        self.concepts = list(concepts or [])
        self.settings = settings or Settings()
        self.embedder = embedder

    def run(
        self,
        document_ids: Optional[Sequence[str]] = None,
        dry_run: bool = False,
        cancel_event: Optional[threading.Event] = None
    ) -> ClusteringRun:
        """
        Execute the complete clustering workflow.

        Args:
            document_ids: Restrict the run to these documents (default: all)
            dry_run: If True, don't write to the store
            cancel_event: Checked between stages and inside every k-means loop

        Returns:
            ClusteringRun with every level, summary and membership
        """
        settings = self.settings
        start_time = time.time()
        logger.info("=" * 60)
        logger.info("CLUSTERING RUN - START")
        logger.info("=" * 60)
        if dry_run:
            logger.warning("DRY RUN MODE - No writes will be performed")

        # Step 1: Load chunks with embeddings
        check_cancelled(cancel_event, "Clustering run")
        run_documents = list(document_ids) if document_ids is not None else None
        slice_id = make_slice_id(run_documents)
        if slice_id:
            logger.info(f"Clustering {len(run_documents)} documents as {slice_id}")
        chunks = self.store.load_chunks(document_ids)
        usable = [c for c in chunks if c.embedding is not None and len(c.embedding) > 0]
        if len(usable) < len(chunks):
            logger.warning(f"Skipping {len(chunks) - len(usable)} chunks without embeddings")

        if not usable:
            logger.error("No chunks with embeddings found. Nothing to cluster.")
            return ClusteringRun(
                algorithm=ClusteringAlgorithm.HARD.value,
                selection=None,
                levels=[],
                summaries=[],
                document_ids=run_documents
            )

        points = [LabeledPoint(id=c.id, embedding=c.embedding) for c in usable]
        ids, matrix = as_matrix(points)

        # Step 2: Choose k on a sample
        selection = self._select_k(points, cancel_event)

        # Step 3: Hard clustering
        algorithm = choose_algorithm(len(points), settings.mini_batch_threshold)
        logger.info(f"Clustering {len(points)} chunks with {algorithm.value} k-means, k={selection.best_k}")
        result = run_hard_clustering(
            algorithm, points, selection.best_k,
            max_iterations=settings.max_iterations,
            batch_size=settings.batch_size,
            random_state=settings.random_state,
            cancel_event=cancel_event
        )
        labels = result.labels()
        metrics = compute_quality_metrics(
            matrix, np.asarray(labels, dtype=np.int64), result, settings.random_state
        )

        # Step 4: Soft memberships over the same centroids
        soft_assignments: List[SoftAssignment] = []
        if settings.soft_clustering:
            soft_assignments = soft_assign(
                ids, matrix, centroid_matrix(result.centroids),
                temperature=settings.temperature,
                min_probability=settings.min_probability
            )
            logger.info(f"Computed {len(soft_assignments)} soft memberships")

        # Step 5: Summaries and concept mapping for level 0
        concepts = self._prepare_concepts()
        members: Dict[int, List[ChunkRecord]] = {}
        for chunk, label in zip(usable, labels):
            members.setdefault(label, []).append(chunk)

        summaries = self._summarize_level(result, 0, members, concepts, cancel_event)
        levels = [LevelResult(level=0, result=result, point_ids=ids)]

        # Step 6: Hierarchy of cluster summaries
        upper_levels, upper_summaries = self._build_hierarchy(summaries, concepts, cancel_event)
        levels.extend(upper_levels)
        summaries.extend(upper_summaries)
        for summary in summaries:
            summary.slice_id = slice_id

        metrics.update({
            'n_chunks': len(usable),
            'n_skipped': len(chunks) - len(usable),
            'n_levels': len(levels),
            'n_summaries': len(summaries),
            'n_fallback_summaries': sum(1 for s in summaries if s.fallback),
        })
        run = ClusteringRun(
            algorithm=algorithm.value,
            selection=selection,
            levels=levels,
            summaries=summaries,
            soft_assignments=soft_assignments,
            metrics=metrics,
            document_ids=run_documents,
            point_documents={c.id: c.document_id for c in usable}
        )

        # Step 7: Persist
        check_cancelled(cancel_event, "Clustering run")
        if dry_run:
            logger.info("[DRY RUN] Would save clustering run to the store")
        else:
            self.store.save_clustering(run)

        elapsed = time.time() - start_time
        logger.info("=" * 60)
        logger.info("CLUSTERING RUN - COMPLETE")
        logger.info(f"Total time: {elapsed:.2f} seconds")
        logger.info(f"Chunks processed: {len(usable)}")
        logger.info(f"Clusters found: {metrics.get('n_clusters', 0)}")
        logger.info(f"Silhouette score: {metrics.get('silhouette_score', 'N/A')}")
        logger.info("=" * 60)
        return run

    def _select_k(
        self,
        points: Sequence[LabeledPoint],
        cancel_event: Optional[threading.Event]
    ) -> KSelection:
        settings = self.settings
        sample = list(points)
        if len(points) > settings.selection_sample_size:
            indices = sample_indices(len(points), settings.selection_sample_size, make_rng(settings.random_state))
            sample = [points[i] for i in sorted(indices)]
            logger.info(f"Selecting k on a sample of {len(sample)}/{len(points)} chunks")

        selection = select_k(
            sample, settings.max_clusters,
            max_iterations=settings.max_iterations,
            random_state=settings.random_state,
            cancel_event=cancel_event
        )
        logger.info(f"Selected k={selection.best_k} (BIC={selection.best_bic})")
        return selection

    def _prepare_concepts(self) -> List[Concept]:
        """Embed concepts lacking an embedding when an embedder is available."""
        if self.embedder is None:
            return self.concepts

        prepared = []
        for concept in self.concepts:
            if concept.embedding is None:
                text = concept.pref_label if not concept.definition else f"{concept.pref_label}: {concept.definition}"
                try:
                    concept.embedding = self.embedder.embed(text)
                except CollaboratorUnavailable as e:
                    logger.warning(f"Could not embed concept {concept.id}: {e}")
            prepared.append(concept)
        return prepared

    def _summarize_level(
        self,
        result: ClusterResult,
        level: int,
        members: Dict[int, Sequence[Union[ChunkRecord, str]]],
        concepts: Sequence[Concept],
        cancel_event: Optional[threading.Event]
    ) -> List[ClusterSummary]:
        summaries = []
        for centroid in result.centroids:
            if centroid.size == 0:
                continue
            check_cancelled(cancel_event, "Clustering run")

            summary = self.summarizer.summarize(centroid.cluster_id, members.get(centroid.cluster_id, []), level=level)
            summary.centroid = list(centroid.vector)

            if concepts:
                mapping = map_cluster(
                    ClusterInput(id=centroid.cluster_id, summary=summary.text, centroid=centroid.vector),
                    concepts,
                    self.settings.concept_threshold
                )
                summary.concept_id = mapping.concept_id
                summary.concept_confidence = mapping.confidence
                summary.suggested_label = mapping.suggested_label
            summaries.append(summary)

        logger.info(f"Level {level}: summarized {len(summaries)} clusters")
        return summaries

    def _build_hierarchy(
        self,
        base: List[ClusterSummary],
        concepts: Sequence[Concept],
        cancel_event: Optional[threading.Event]
    ) -> Tuple[List[LevelResult], List[ClusterSummary]]:
        """
        Cluster each level's centroids to form the next level.

        Stops after hierarchy_levels levels or when fewer than 2 clusters
        remain to be grouped.
        """
        levels: List[LevelResult] = []
        summaries: List[ClusterSummary] = []
        children = base

        for level in range(1, self.settings.hierarchy_levels + 1):
            if len(children) < 2:
                break
            check_cancelled(cancel_event, "Clustering run")

            points = [LabeledPoint(id=str(s.cluster_id), embedding=s.centroid) for s in children]
            max_k = min(self.settings.max_clusters, len(points) - 1)
            k = select_k(
                points, max_k,
                max_iterations=self.settings.max_iterations,
                random_state=self.settings.random_state,
                cancel_event=cancel_event
            ).best_k
            result = kmeans(
                points, k,
                max_iterations=self.settings.max_iterations,
                random_state=self.settings.random_state,
                cancel_event=cancel_event
            )

            child_groups: Dict[int, List[ClusterSummary]] = {}
            for child, parent_id in zip(children, result.labels()):
                child.parent_id = parent_id
                child_groups.setdefault(parent_id, []).append(child)

            texts = {pid: [c.text for c in group] for pid, group in child_groups.items()}
            parents = self._summarize_level(result, level, texts, concepts, cancel_event)

            levels.append(LevelResult(level=level, result=result, point_ids=[p.id for p in points]))
            summaries.extend(parents)
            logger.info(f"Level {level}: grouped {len(children)} clusters into {len(parents)}")
            children = parents

        return levels, summaries
