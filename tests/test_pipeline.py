"""
Integration tests for the batch clustering pipeline.

Store, LLM and embedder are mocked; clustering runs for real on small
synthetic corpora.
"""

import os
import sys
import threading
import unittest
from unittest.mock import Mock, patch

import numpy as np

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from kx_library.clustering import pipeline as pipeline_module
from kx_library.clustering.pipeline import ClusteringPipeline
from kx_library.clustering.summarizer import ClusterSummarizer, SummaryProvider
from kx_library.config import Settings
from kx_library.embed.embeddings import EmbeddingProvider
from kx_library.exceptions import CollaboratorUnavailable, OperationCancelled
from kx_library.schema import ChunkRecord, Concept
from kx_library.storage.base import VectorStore

TOPICS = ['Habits and routines', 'Distributed databases', 'Sourdough baking']


def make_chunks(n_per_topic=6, dims=4, seed=0):
    """Three well separated topics along the first three axes."""
    rng = np.random.default_rng(seed)
    chunks = []
    for topic, name in enumerate(TOPICS):
        center = np.zeros(dims)
        center[topic] = 10.0
        for i, row in enumerate(center + rng.normal(scale=0.01, size=(n_per_topic, dims))):
            chunks.append(ChunkRecord(
                id=f"topic{topic}-chunk-{i}",
                document_id=f"doc-{topic}",
                content=f"{name} are discussed in chunk number {i}. More detail follows.",
                embedding=row.tolist(),
                chunk_index=i
            ))
    return chunks


class TestClusteringPipeline(unittest.TestCase):
    """Test ClusteringPipeline.run()."""

    def setUp(self):
        self.chunks = make_chunks()
        self.store = Mock(spec=VectorStore)
        self.store.load_chunks.return_value = self.chunks + [
            ChunkRecord(id='no-embedding', document_id='doc-x', content='Pending embedding.')
        ]
        self.settings = Settings(max_clusters=5, hierarchy_levels=2, random_state=0)
        self.summarizer = ClusterSummarizer()

    def make_pipeline(self, **kwargs):
        kwargs.setdefault('settings', self.settings)
        return ClusteringPipeline(self.store, kwargs.pop('summarizer', self.summarizer), **kwargs)

    def test_full_run(self):
        run = self.make_pipeline().run()

        self.assertEqual(run.selection.best_k, 3)
        self.assertEqual(run.algorithm, 'hard')
        self.assertEqual(len(run.hard_assignments), len(self.chunks))
        self.assertEqual(run.metrics['n_chunks'], 18)
        self.assertEqual(run.metrics['n_skipped'], 1)
        self.assertEqual(run.metrics['n_clusters'], 3)
        self.assertGreater(run.metrics['silhouette_score'], 0.9)
        self.store.save_clustering.assert_called_once_with(run)

    def test_each_topic_gets_one_cluster(self):
        run = self.make_pipeline().run()
        labels = [a.cluster_id for a in run.hard_assignments]

        for topic in range(3):
            self.assertEqual(len(set(labels[topic * 6:(topic + 1) * 6])), 1)
        self.assertEqual(len(set(labels)), 3)

    def test_summaries_and_hierarchy(self):
        run = self.make_pipeline().run()

        base = run.summaries_at(0)
        self.assertEqual(len(base), 3)
        self.assertEqual(sorted(s.member_count for s in base), [6, 6, 6])
        for summary in base:
            self.assertTrue(summary.text.startswith('This cluster covers: '))
            self.assertEqual(len(summary.centroid), 4)

        parents = run.summaries_at(1)
        self.assertEqual(len(parents), 1)
        self.assertTrue(all(s.parent_id == parents[0].cluster_id for s in base))
        self.assertEqual(parents[0].member_count, 3)
        self.assertEqual(run.metrics['n_levels'], 2)
        self.assertEqual([lvl.level for lvl in run.levels], [0, 1])

    def test_hierarchy_disabled(self):
        self.settings.hierarchy_levels = 0
        run = self.make_pipeline().run()

        self.assertEqual(len(run.levels), 1)
        self.assertTrue(all(s.parent_id is None for s in run.summaries))

    def test_soft_memberships(self):
        run = self.make_pipeline().run()

        point_ids = {a.point_id for a in run.soft_assignments}
        self.assertEqual(point_ids, {c.id for c in self.chunks})
        self.assertTrue(all(a.probability >= self.settings.min_probability for a in run.soft_assignments))

    def test_soft_memberships_disabled(self):
        self.settings.soft_clustering = False
        self.assertEqual(self.make_pipeline().run().soft_assignments, [])

    def test_dry_run_skips_save(self):
        run = self.make_pipeline().run(dry_run=True)

        self.assertEqual(len(run.summaries_at(0)), 3)
        self.store.save_clustering.assert_not_called()

    def test_document_filter_passed_to_store(self):
        self.make_pipeline().run(document_ids=['doc-0', 'doc-1'])
        self.store.load_chunks.assert_called_once_with(['doc-0', 'doc-1'])

    def test_subset_run_records_its_slice(self):
        run = self.make_pipeline().run(document_ids=['doc-1', 'doc-0'])

        self.assertEqual(run.document_ids, ['doc-1', 'doc-0'])
        self.assertIsNotNone(run.slice_id)
        self.assertTrue(all(s.slice_id == run.slice_id for s in run.summaries))
        self.assertTrue(all(s.doc_id.startswith(run.slice_id) for s in run.summaries))
        self.assertEqual(run.point_documents['topic2-chunk-0'], 'doc-2')

    def test_full_run_has_no_slice(self):
        run = self.make_pipeline().run()

        self.assertIsNone(run.slice_id)
        self.assertTrue(all(s.slice_id is None for s in run.summaries))

    def test_no_chunks(self):
        self.store.load_chunks.return_value = []
        run = self.make_pipeline().run()

        self.assertEqual(run.levels, [])
        self.assertEqual(run.summaries, [])
        self.store.save_clustering.assert_not_called()

    def test_llm_failure_uses_fallback_summaries(self):
        provider = Mock(spec=SummaryProvider)
        provider.summarize.side_effect = RuntimeError('503 Service Unavailable')

        run = self.make_pipeline(summarizer=ClusterSummarizer(provider)).run()

        self.assertEqual(run.metrics['n_fallback_summaries'], run.metrics['n_summaries'])
        self.assertTrue(all(s.fallback for s in run.summaries))
        self.store.save_clustering.assert_called_once()

    def test_concept_mapping(self):
        concepts = [Concept(id='habits', pref_label='Habits', embedding=[1.0, 0.0, 0.0, 0.0])]
        run = self.make_pipeline(concepts=concepts).run()

        mapped = [s for s in run.summaries_at(0) if s.concept_id == 'habits']
        self.assertEqual(len(mapped), 1)
        self.assertGreater(mapped[0].concept_confidence, 0.99)
        self.assertIn('Habits and routines', mapped[0].text)

        unmapped = [s for s in run.summaries if s.concept_id is None]
        self.assertEqual(len(unmapped), 3)
        self.assertTrue(all(s.suggested_label for s in unmapped))

    def test_concepts_embedded_when_missing(self):
        embedder = Mock(spec=EmbeddingProvider)
        embedder.embed.return_value = [0.0, 1.0, 0.0, 0.0]
        concepts = [Concept(id='databases', pref_label='Databases', definition='Storage engines')]

        run = self.make_pipeline(concepts=concepts, embedder=embedder).run()

        embedder.embed.assert_called_once_with('Databases: Storage engines')
        self.assertEqual(sum(1 for s in run.summaries_at(0) if s.concept_id == 'databases'), 1)

    def test_concept_embedding_failure_is_tolerated(self):
        embedder = Mock(spec=EmbeddingProvider)
        embedder.embed.side_effect = CollaboratorUnavailable('embedding', 'quota')
        concepts = [Concept(id='databases', pref_label='Databases')]

        run = self.make_pipeline(concepts=concepts, embedder=embedder).run()

        self.assertTrue(all(s.concept_id is None for s in run.summaries))

    def test_k_selected_on_sample(self):
        self.settings.selection_sample_size = 6

        with patch.object(pipeline_module, 'select_k', wraps=pipeline_module.select_k) as spy:
            self.make_pipeline().run(dry_run=True)

        sampled = spy.call_args_list[0].args[0]
        self.assertEqual(len(sampled), 6)
        positions = [[c.id for c in self.chunks].index(p.id) for p in sampled]
        self.assertEqual(positions, sorted(positions))

    def test_mini_batch_above_threshold(self):
        self.settings.mini_batch_threshold = 10
        run = self.make_pipeline().run(dry_run=True)
        self.assertEqual(run.algorithm, 'mini_batch')

    def test_cancelled(self):
        event = threading.Event()
        event.set()

        with self.assertRaises(OperationCancelled):
            self.make_pipeline().run(cancel_event=event)
        self.store.load_chunks.assert_not_called()
        self.store.save_clustering.assert_not_called()


if __name__ == '__main__':
    unittest.main()
